"""
History ledgers and the compiler/executor generation pair.
"""
import collections.abc
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

from rill.rill_datatypes import InternalConsistencyError, Snippet


class ReadWriteLock:
    """A reader/writer lock with a reentrant writer.

    The thread holding the writer side may re-acquire it (the result binding
    re-enters compile_and_eval) and may also take the reader side.
    """
    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: Optional[int] = None
        self._write_depth = 0
        self._local = threading.local()

    def _held_reads(self) -> int:
        return getattr(self._local, "reads", 0)

    def acquire_read(self):
        me = threading.get_ident()
        with self._cond:
            if self._writer != me:
                while self._writer is not None:
                    self._cond.wait()
                self._readers += 1
            self._local.reads = self._held_reads() + 1

    def release_read(self):
        me = threading.get_ident()
        with self._cond:
            self._local.reads = self._held_reads() - 1
            if self._writer != me:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    def acquire_write(self):
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._write_depth += 1
                return
            if self._held_reads():
                raise RuntimeError("cannot upgrade a read lock to a write lock")
            while self._writer is not None or self._readers > 0:
                self._cond.wait()
            self._writer = me
            self._write_depth = 1

    def release_write(self):
        with self._cond:
            if self._writer != threading.get_ident():
                raise RuntimeError("write lock released by a thread that does not own it")
            self._write_depth -= 1
            if self._write_depth == 0:
                self._writer = None
                self._cond.notify_all()

    @property
    def write_held(self) -> bool:
        return self._writer == threading.get_ident()

    @contextmanager
    def read(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class HistoryLedger(collections.abc.Sequence):
    """Append-only, insertion-ordered log of snippets."""
    def __init__(self, lock: Optional[ReadWriteLock] = None):
        self.lock = lock or ReadWriteLock()
        self._entries: List[Snippet] = []

    def __len__(self):
        with self.lock.read():
            return len(self._entries)

    def __getitem__(self, idx):
        with self.lock.read():
            return self._entries[idx]

    def __iter__(self) -> Iterator[Snippet]:
        # Iterate over a copy so a writer can't shift entries under a reader.
        with self.lock.read():
            entries = list(self._entries)
        return iter(entries)

    def __repr__(self):
        return f"HistoryLedger({[s.id for s in self]})"

    def size(self) -> int:
        return len(self)

    def peek(self) -> Optional[Snippet]:
        with self.lock.read():
            return self._entries[-1] if self._entries else None

    def append(self, snippet: Snippet) -> None:
        with self.lock.write():
            self._entries.append(snippet)

    def reset(self) -> List[Snippet]:
        with self.lock.write():
            removed, self._entries = self._entries, []
            return removed

    def reset_to(self, snippet_id: int) -> List[Snippet]:
        """Drop everything after `snippet_id`, keeping that entry."""
        with self.lock.write():
            for idx in range(len(self._entries) - 1, -1, -1):
                if self._entries[idx].id == snippet_id:
                    removed = self._entries[idx + 1:]
                    del self._entries[idx + 1:]
                    return removed
            raise InternalConsistencyError(f"no snippet with id {snippet_id} in history")

    def find(self, snippet_id: int) -> Optional[Snippet]:
        return self.find_last(lambda s: s.id == snippet_id)

    def find_last(self, predicate: Callable[[Snippet], bool]) -> Optional[Snippet]:
        with self.lock.read():
            for snippet in reversed(self._entries):
                if predicate(snippet):
                    return snippet
        return None

    def ids(self) -> List[int]:
        return [s.id for s in self]


class ReplState:
    """The compiler-side and executor-side views of accumulated program state.

    Each side's generation is the number of snippets it has durably recorded.
    The compiler generation never falls behind the executor generation.
    """
    def __init__(self, lock: Optional[ReadWriteLock] = None):
        self.lock = lock or ReadWriteLock()
        self.compiler_history = HistoryLedger(self.lock)
        self.executor_history = HistoryLedger(self.lock)

    @property
    def history(self) -> HistoryLedger:
        return self.executor_history

    @property
    def compiler_generation(self) -> int:
        return len(self.compiler_history)

    @property
    def executor_generation(self) -> int:
        return len(self.executor_history)

    def check_invariant(self) -> None:
        with self.lock.read():
            compiled, executed = self.compiler_generation, self.executor_generation
        if compiled < executed:
            raise InternalConsistencyError(
                f"compiler generation {compiled} is behind executor generation {executed}")

    def reconcile(self) -> None:
        """Roll the compiler side back to match the executor side."""
        with self.lock.write():
            compiler, executor = self.compiler_history, self.executor_history
            if len(compiler) > len(executor):
                if len(executor) == 0:
                    compiler.reset()
                else:
                    compiler.reset_to(executor.peek().id)
                if len(compiler) != len(executor):
                    raise InternalConsistencyError(
                        f"compiler history {compiler.ids()} does not match executor history {executor.ids()}")
            self.check_invariant()

    def reset(self) -> None:
        with self.lock.write():
            self.compiler_history.reset()
            self.executor_history.reset()

    def reset_to(self, snippet_id: int) -> None:
        with self.lock.write():
            self.executor_history.reset_to(snippet_id)
            self.compiler_history.reset_to(snippet_id)
            self.check_invariant()
