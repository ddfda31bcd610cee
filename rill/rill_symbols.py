"""
The symbol table and the extractor that fills it after each evaluation.
"""
import re
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Sequence

from rill.rill_datatypes import (
    RESULT_FIELD_NAME, RUN_FIELD_NAME, CompiledArtifact, Declaration,
    InternalConsistencyError, NamedSnippet, Param, TypeParam, Unit, Value,
)
from rill.rill_history import ReadWriteLock


class SymbolKind(Enum):
    CLASS = "class"
    INSTANCE = "instance"
    FUNCTION = "function"


ALL_KINDS = (SymbolKind.INSTANCE, SymbolKind.FUNCTION, SymbolKind.CLASS)


class Symbol:
    kind: SymbolKind

    def __init__(self, namespace: str, name: str, snippet_id: int):
        self.namespace = namespace
        self.name = name
        self.snippet_id = snippet_id

    def show(self) -> str:
        raise NotImplementedError

    def __str__(self):
        return self.show()

    def __repr__(self):
        return f"<{type(self).__name__} {self.namespace}.{self.name} @{self.snippet_id}>"


class ClassSymbol(Symbol):
    kind = SymbolKind.CLASS

    def show(self) -> str:
        return f"class {self.name}"


class InstanceSymbol(Symbol):
    kind = SymbolKind.INSTANCE

    def __init__(self, namespace: str, name: str, snippet_id: int, value: Any, type: str,
                 mutable: bool = True):
        super().__init__(namespace, name, snippet_id)
        self.value = value
        self.type = type
        self.mutable = mutable

    def show(self) -> str:
        return f"{'var' if self.mutable else 'val'} {self.name}: {self.type}"


class FunctionSymbol(Symbol):
    kind = SymbolKind.FUNCTION

    def __init__(self, namespace: str, name: str, snippet_id: int, params: Sequence[Param] = (),
                 type_params: Sequence[TypeParam] = (), returns: Optional[str] = None):
        super().__init__(namespace, name, snippet_id)
        self.params = tuple(params)
        self.type_params = tuple(type_params)
        self.returns = returns

    def show(self) -> str:
        tp = ""
        if self.type_params:
            parts = []
            for t in self.type_params:
                s = t.name if t.variance == "invariant" else f"{t.variance} {t.name}"
                if t.upper_bounds:
                    s += ": " + ",".join(t.upper_bounds)
                parts.append(s)
            tp = "<" + ",".join(parts) + "> "
        vp = ",".join(f"{p.name}: {p.type}" for p in self.params)
        return f"fun {tp}{self.name}({vp}): {self.returns or 'Unit'}"


class SymbolTable:
    """Append-only record of every symbol seen, filtered through history.

    A symbol is listed when its own snippet is still in history and no later
    named snippet in history binds the same namespace and name.
    """
    def __init__(self, history: Sequence, lock: Optional[ReadWriteLock] = None):
        self.history = history
        self.lock = lock or getattr(history, "lock", None) or ReadWriteLock()
        self._symbols: List[Symbol] = []

    def add(self, symbol: Symbol) -> None:
        with self.lock.write():
            self._symbols.append(symbol)

    def is_empty(self) -> bool:
        with self.lock.read():
            return not self._symbols

    def __len__(self):
        with self.lock.read():
            return len(self._symbols)

    def __str__(self):
        return "\n".join(s.show() for s in self.list())

    def is_live(self, symbol: Symbol) -> bool:
        return any(s.id == symbol.snippet_id for s in self.history)

    def is_shadowed(self, symbol: Symbol) -> bool:
        for snippet in reversed(list(self.history)):
            if snippet.id <= symbol.snippet_id:
                return False
            if isinstance(snippet, NamedSnippet) and snippet.binds(symbol.namespace, symbol.name):
                return True
        return False

    def list(self, pattern: Optional[str] = None,
             kinds: Iterable[SymbolKind] = ALL_KINDS) -> List[Symbol]:
        regex = re.compile(pattern) if pattern else None
        wanted = set(kinds)
        with self.lock.read():
            return [
                s for s in self._symbols
                if s.kind in wanted
                and (regex is None or regex.fullmatch(s.name))
                and self.is_live(s)
                and not self.is_shadowed(s)
            ]


class ExtractSymbols:
    """Around-advice recording the declarations each evaluation introduced.

    `artifact_source` returns the artifact currently being evaluated (the
    runtime plugin feeds it from OnCompile). The wrapped result is returned
    unchanged.
    """
    def __init__(self, table: SymbolTable, artifact_source: Callable[[], Optional[CompiledArtifact]]):
        self.table = table
        self.artifact_source = artifact_source

    def __call__(self, proceed):
        result = proceed()
        match result:
            case Value(environment=env) | Unit(environment=env) if env is not None:
                self.extract(env)
        return result

    def extract(self, env) -> None:
        artifact = self.artifact_source()
        if artifact is None:
            raise InternalConsistencyError("evaluation finished without a compiled artifact")
        namespace = getattr(env, "namespace", None) or type(env).__name__
        snippet_id = artifact.snippet.id

        for decl in artifact.manifest.classes():
            if decl.conditional and not self._bound(env, decl.name):
                continue
            self.table.add(ClassSymbol(namespace, decl.name, snippet_id))

        for decl in artifact.manifest.members():
            if decl.name in (RESULT_FIELD_NAME, RUN_FIELD_NAME):
                continue
            # A path that left the name unbound records nothing.
            if decl.conditional and not self._bound(env, decl.name):
                continue
            self.table.add(self._member_symbol(env, namespace, snippet_id, decl))

    def _member_symbol(self, env, namespace: str, snippet_id: int, decl: Declaration) -> Symbol:
        match decl.kind:
            case "property":
                value = self._read_property(env, decl.name)
                return InstanceSymbol(namespace, decl.name, snippet_id, value,
                                      decl.type or type(value).__name__, decl.mutable)
            case "function":
                return FunctionSymbol(namespace, decl.name, snippet_id,
                                      decl.params, decl.type_params, decl.returns)
            case _:
                raise InternalConsistencyError(f"Unknown symbol: {decl.name} of kind {decl.kind!r}")

    @staticmethod
    def _bound(env, name: str) -> bool:
        try:
            env.read(name)
        except KeyError:
            return False
        return True

    @staticmethod
    def _read_property(env, name: str) -> Any:
        try:
            return env.read(name)
        except KeyError:
            raise InternalConsistencyError(
                f"declared property {name!r} is absent from {getattr(env, 'namespace', env)!r}") from None
