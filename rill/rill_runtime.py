import itertools
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Protocol, TextIO

import pystache

from rill.rill_commands import Command, HelpCommand, HistoryCommand, QuitCommand
from rill.rill_config import RillConfig, _dbg
from rill.rill_datatypes import (
    REPL_CODE_LINE_FIRST_NO, CompileError, CompileOutcome, CompileResult,
    CompiledArtifact, Environment, EvalError, EvalOutcome, EvalResult,
    HistoryMismatch, Incomplete, InternalConsistencyError, Location, Snippet,
    UnknownCommand, Unit, Value,
)
from rill.rill_events import EventManager, OnCompile, OnEval
from rill.rill_history import ReplState
from rill.rill_printer import Printer
from rill.rill_wrappers import WrapperChain

DEFAULT_RESULT_TEMPLATE = "let {{name}} = __res as {{type}}"

# ===================================================================
# 1. Collaborator contracts
# ===================================================================

class Compiler(Protocol):
    result_template: Optional[str]

    def is_complete(self, source: str) -> bool: ...

    def compile(self, snippet: Snippet, environment: Environment) -> CompileResult: ...


class Executor(Protocol):
    def eval(self, artifact: CompiledArtifact, environment: Environment) -> EvalResult: ...


class ConsoleReporter:
    """Prints values to stdout and errors to stderr."""
    def __init__(self, out: Optional[TextIO] = None, err: Optional[TextIO] = None,
                 printer: Optional[Printer] = None):
        self._out = out
        self._err = err
        self.printer = printer or Printer()

    # Resolve the streams lazily so pytest's capsys sees the output.
    @property
    def out(self) -> TextIO:
        return self._out or sys.stdout

    @property
    def err(self) -> TextIO:
        return self._err or sys.stderr

    def println(self, text: str) -> None:
        print(text, file=self.out)

    def report_compile_error(self, message: str, location: Optional[Location]) -> None:
        print(f"Message: {message} Location: {location}", file=self.err)

    def report_eval_error(self, detail: Any) -> None:
        print(str(detail), file=self.err)

    def report_value(self, name: str, type: str, value: Any) -> None:
        print(f"{name}: {type} = {self.printer.pformat(value)}", file=self.out)

    def report_unknown_command(self, line: str) -> None:
        print(f"Unknown command {line}", file=self.err)

    def report_command_error(self, exc: BaseException) -> None:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=self.err)


# ===================================================================
# 2. Snippet Buffer
# ===================================================================

@dataclass(frozen=True)
class Complete:
    source: str
    lines: tuple


@dataclass(frozen=True)
class StillIncomplete:
    pass


class SnippetBuffer:
    """Accumulates raw lines until they form a syntactically complete unit."""
    def __init__(self, compiler: Compiler):
        self.compiler = compiler
        self.pending: List[str] = []

    def __bool__(self):
        return bool(self.pending)

    def submit(self, line: str):
        lines = tuple(self.pending) + (line,)
        source = "\n".join(lines)
        if not self.compiler.is_complete(source):
            self.pending.append(line)
            return StillIncomplete()
        self.pending.clear()
        return Complete(source, lines)

    def restore(self, lines) -> None:
        self.pending[:] = list(lines)

    def clear(self) -> None:
        self.pending.clear()


# ===================================================================
# 3. Session context
# ===================================================================

class Session:
    """Owns the line and result counters and the shared environment."""
    def __init__(self, environment: Optional[Environment] = None, debug: bool = False):
        self.environment = environment or Environment()
        self.debug = debug
        self._lines = itertools.count(REPL_CODE_LINE_FIRST_NO + 1)
        self._results = itertools.count(1)

    def next_line_id(self) -> int:
        return next(self._lines)

    def next_result_name(self) -> str:
        return f"res{next(self._results)}"


# ===================================================================
# 4. Compile/Eval Engine
# ===================================================================

class CycleState(Enum):
    INCOMPLETE = "incomplete"
    COMPILE_ERROR = "compile-error"
    VALUE = "value"
    UNIT = "unit"
    EVAL_ERROR = "eval-error"
    HISTORY_MISMATCH = "history-mismatch"


@dataclass
class CycleResult:
    """The terminal state of one compile/eval cycle."""
    state: CycleState
    snippet: Optional[Snippet] = None
    compile_result: Optional[CompileResult] = None
    eval_result: Optional[EvalResult] = None
    result_name: Optional[str] = None
    bindings: List['CycleResult'] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state in (CycleState.VALUE, CycleState.UNIT)


class Repl:
    """Incremental compile/eval loop over an accumulating history."""

    def __init__(self, compiler: Compiler, executor: Executor, reporter=None,
                 config: Optional[RillConfig] = None, session: Optional[Session] = None):
        self.config = config or RillConfig()
        self.session = session or Session(debug=self.config.debug)
        self.compiler = compiler
        self.executor = executor
        self.reporter = reporter or ConsoleReporter()
        self.state = ReplState()
        self.buffer = SnippetBuffer(compiler)
        self.event_manager = EventManager()
        self.wrappers = WrapperChain()
        self.commands: List[Command] = []
        self.plugins: list = []
        self.result_template = (self.config.result_template
                                or getattr(compiler, "result_template", None)
                                or DEFAULT_RESULT_TEMPLATE)
        self._renderer = pystache.Renderer(escape=lambda u: u)
        for command in (QuitCommand(), HelpCommand(), HistoryCommand()):
            self.register_command(command)

    @property
    def environment(self) -> Environment:
        return self.session.environment

    def _dbg(self, *parts):
        _dbg(self.session.debug, *parts)

    # --- Commands -----------------------------------------------------

    def register_command(self, command: Command) -> None:
        command.repl = self
        self.commands.append(command)

    def find_command(self, line: str) -> Command:
        for command in self.commands:
            if command.match(line):
                return command
        raise UnknownCommand(line)

    def is_quit(self, line: str) -> bool:
        return not self.buffer and line.strip().lower() in (":quit", ":q")

    def execute_command(self, line: str) -> bool:
        """Run a directive line. Returns False when no command matched."""
        try:
            command = self.find_command(line)
        except UnknownCommand:
            self.reporter.report_unknown_command(line)
            return False
        try:
            command.execute(line)
        except InternalConsistencyError:
            raise
        except Exception as e:
            self.reporter.report_command_error(e)
        return True

    def prompt(self) -> str:
        return self.config.continuation_prompt if self.buffer else self.config.prompt

    # --- History ------------------------------------------------------

    def reconcile(self) -> None:
        self.state.reconcile()

    def reset(self) -> None:
        with self.state.lock.write():
            self.state.reset()
            self.buffer.clear()
            self.environment.version = self.state.executor_generation

    def reset_to(self, snippet_id: int) -> None:
        with self.state.lock.write():
            self.state.reset_to(snippet_id)
            self.buffer.clear()
            self.environment.version = self.state.executor_generation

    # --- Compile/eval -------------------------------------------------

    def _new_snippet(self, source: str) -> Snippet:
        return Snippet(id=self.session.next_line_id(),
                       generation=self.state.compiler_generation,
                       source=source)

    def compile(self, source: str) -> CompileResult:
        """Compile without evaluating; leaves no trace in history."""
        with self.state.lock.write():
            result = self.compiler.compile(self._new_snippet(source), self.environment)
            self.reconcile()
            return result

    def compile_and_eval(self, line: str) -> CycleResult:
        with self.state.lock.write():
            submitted = self.buffer.submit(line)
            if isinstance(submitted, StillIncomplete):
                self._dbg("buffered", repr(line))
                return CycleResult(CycleState.INCOMPLETE)
            return self._cycle(submitted)

    def _cycle(self, submitted: Complete, binding: bool = False) -> CycleResult:
        snippet = self._new_snippet(submitted.source)
        self._dbg("compile", snippet.id, "gen", snippet.generation, repr(snippet.source))
        compile_result = self.compiler.compile(snippet, self.environment)

        match compile_result:
            case Incomplete():
                self.buffer.restore(submitted.lines)
                return CycleResult(CycleState.INCOMPLETE,
                                   snippet.with_compile_outcome(CompileOutcome.INCOMPLETE),
                                   compile_result)
            case CompileError(message=message, location=location):
                self.reporter.report_compile_error(message, location)
                self.reconcile()
                self.buffer.clear()
                return CycleResult(CycleState.COMPILE_ERROR,
                                   snippet.with_compile_outcome(CompileOutcome.ERROR),
                                   compile_result)
            case CompiledArtifact():
                return self._evaluate(compile_result, binding)
            case _:
                raise InternalConsistencyError(f"unexpected compile result {compile_result!r}")

    def _evaluate(self, compiled: CompiledArtifact, binding: bool) -> CycleResult:
        snippet = compiled.snippet.with_compile_outcome(CompileOutcome.COMPILED)
        names = compiled.manifest.bound_names()
        if names:
            snippet = snippet.named(compiled.manifest.namespace, names)
        artifact = CompiledArtifact(snippet, compiled.code, compiled.manifest, compiled.type)
        self.state.compiler_history.append(snippet)
        self.event_manager.emit(OnCompile(artifact))

        try:
            eval_result = self.wrappers.invoke(lambda: self.executor.eval(artifact, self.environment))
        except InternalConsistencyError:
            # Drop the snippet from the compiler side before the error propagates.
            self.reconcile()
            self.buffer.clear()
            raise
        self.event_manager.emit(OnEval(eval_result))
        self._dbg("eval", snippet.id, type(eval_result).__name__)

        match eval_result:
            case Value() | Unit():
                is_value = isinstance(eval_result, Value)
                done = snippet.with_eval_outcome(EvalOutcome.VALUE if is_value else EvalOutcome.UNIT)
                self.state.executor_history.append(done)
                self.environment.advance()
                self.buffer.clear()
                self.state.check_invariant()
                cycle = CycleResult(CycleState.VALUE if is_value else CycleState.UNIT,
                                    done, artifact, eval_result)
                # A binding that itself yields a value is not re-bound.
                if is_value and not binding:
                    self.value_result(eval_result, cycle)
                return cycle
            case EvalError() | HistoryMismatch():
                self.reporter.report_eval_error(eval_result)
                self.reconcile()
                self.buffer.clear()
                failed = isinstance(eval_result, EvalError)
                return CycleResult(CycleState.EVAL_ERROR if failed else CycleState.HISTORY_MISMATCH,
                                   snippet.with_eval_outcome(EvalOutcome.ERROR if failed
                                                             else EvalOutcome.HISTORY_MISMATCH),
                                   artifact, eval_result)
            case _:
                raise InternalConsistencyError(f"unexpected eval result {eval_result!r}")

    def value_result(self, result: Value, cycle: CycleResult) -> None:
        """Bind a computed value to the next resN name and report it."""
        name = self.session.next_result_name()
        self.environment.bind_result(result.value)
        source = self._renderer.render(self.result_template, {"name": name, "type": result.type})
        bound = self._cycle(Complete(source, (source,)), binding=True)
        if not bound.ok:
            raise InternalConsistencyError(f"result binding {source!r} failed: {bound.state.value}")
        cycle.result_name = name
        cycle.bindings.append(bound)
        self.reporter.report_value(name, result.type, result.value)

    # --- Plugins ------------------------------------------------------

    def close(self) -> None:
        for plugin in reversed(self.plugins):
            plugin.clean_up()
        self.plugins.clear()


def create_repl(config: Optional[RillConfig] = None, compiler=None, executor=None,
                reporter=None) -> Repl:
    """Build a Repl with its configured plugins; defaults to the Python backend."""
    from rill.rill_plugins import load_plugins
    if compiler is None or executor is None:
        from rill.rill_python import PythonCompiler, PythonExecutor
        compiler = compiler or PythonCompiler()
        executor = executor or PythonExecutor()
    repl = Repl(compiler, executor, reporter=reporter, config=config)
    load_plugins(repl)
    return repl
