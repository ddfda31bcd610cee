"""
Defines the core data types for the rill shell.

This module provides the snippet records kept in history, the tagged result
variants exchanged with the compiler and executor collaborators, the
declaration manifest a compiler emits alongside each artifact, and the
environment handle both collaborators share.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

# First id handed out is REPL_CODE_LINE_FIRST_NO + 1.
REPL_CODE_LINE_FIRST_NO = 0

# Reserved members every compiled snippet may carry.
RESULT_FIELD_NAME = "__result__"
RUN_FIELD_NAME = "__run__"

# Environment slot the synthesized result binding reads from.
RESULT_SLOT = "__res"


class RillError(Exception):
    """Base class for all rill errors."""


class InternalConsistencyError(RillError):
    """The compiler, executor and extractor contracts have diverged.

    Never downgraded to a user-visible retry; the current operation is
    aborted.
    """


class UnknownCommand(RillError):
    def __init__(self, line: str):
        super().__init__(f"Unknown command {line}")
        self.line = line


class ConfigError(RillError):
    pass


# =================================================================
# Snippets
# =================================================================

class CompileOutcome(Enum):
    PENDING = "pending"
    INCOMPLETE = "incomplete"
    ERROR = "error"
    COMPILED = "compiled"


class EvalOutcome(Enum):
    PENDING = "pending"
    UNIT = "unit"
    VALUE = "value"
    ERROR = "error"
    HISTORY_MISMATCH = "history-mismatch"


@dataclass(frozen=True)
class Snippet:
    """One compiled/evaluated unit of user input."""
    id: int
    generation: int
    source: str
    compile_outcome: CompileOutcome = CompileOutcome.PENDING
    eval_outcome: EvalOutcome = EvalOutcome.PENDING

    def with_compile_outcome(self, outcome: CompileOutcome) -> 'Snippet':
        if self.compile_outcome is not CompileOutcome.PENDING:
            raise InternalConsistencyError(
                f"snippet {self.id} already has compile outcome {self.compile_outcome.value}")
        return replace(self, compile_outcome=outcome)

    def with_eval_outcome(self, outcome: EvalOutcome) -> 'Snippet':
        if self.eval_outcome is not EvalOutcome.PENDING:
            raise InternalConsistencyError(
                f"snippet {self.id} already has eval outcome {self.eval_outcome.value}")
        return replace(self, eval_outcome=outcome)

    def named(self, namespace: str, names: Tuple[str, ...]) -> 'NamedSnippet':
        return NamedSnippet(
            id=self.id,
            generation=self.generation,
            source=self.source,
            compile_outcome=self.compile_outcome,
            eval_outcome=self.eval_outcome,
            namespace=namespace,
            name=names[0],
            names=tuple(names),
        )


@dataclass(frozen=True)
class NamedSnippet(Snippet):
    """A snippet that binds one or more declaration names in a namespace."""
    namespace: str = ""
    name: str = ""
    names: Tuple[str, ...] = ()

    def binds(self, namespace: str, name: str) -> bool:
        return self.namespace == namespace and (name == self.name or name in self.names)


# =================================================================
# Declaration manifest
# =================================================================

@dataclass(frozen=True)
class Location:
    line: Optional[int] = None
    col: Optional[int] = None

    def __str__(self):
        if self.line is None:
            return "<unknown>"
        if self.col is None:
            return f"line {self.line}"
        return f"line {self.line}, col {self.col}"


@dataclass(frozen=True)
class Param:
    name: str
    type: str = "Any"


@dataclass(frozen=True)
class TypeParam:
    name: str
    variance: str = "invariant"   # 'invariant' | 'in' | 'out'
    upper_bounds: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Declaration:
    name: str
    kind: str                     # 'class' | 'property' | 'function'
    type: Optional[str] = None
    mutable: bool = True
    params: Tuple[Param, ...] = ()
    type_params: Tuple[TypeParam, ...] = ()
    returns: Optional[str] = None
    # Bound only on some paths through the snippet (loop targets, branches, del).
    conditional: bool = False


@dataclass(frozen=True)
class Manifest:
    """Declared names, kinds and types of one compiled snippet."""
    namespace: str
    declarations: Tuple[Declaration, ...] = ()

    def latest(self) -> Tuple[Declaration, ...]:
        """One declaration per name: the last one wins, first position kept."""
        by_name: Dict[str, Declaration] = {}
        for d in self.declarations:
            by_name[d.name] = d
        return tuple(by_name.values())

    def classes(self) -> Tuple[Declaration, ...]:
        return tuple(d for d in self.latest() if d.kind == "class")

    def members(self) -> Tuple[Declaration, ...]:
        return tuple(d for d in self.latest() if d.kind != "class")

    def bound_names(self) -> Tuple[str, ...]:
        """User-visible names, in declaration order, without duplicates."""
        seen = []
        for d in self.declarations:
            if d.name in (RESULT_FIELD_NAME, RUN_FIELD_NAME) or d.name in seen:
                continue
            seen.append(d.name)
        return tuple(seen)


# =================================================================
# Compile results
# =================================================================

@dataclass(frozen=True)
class Incomplete:
    pass


@dataclass(frozen=True)
class CompileError:
    message: str
    location: Optional[Location] = None


@dataclass(frozen=True)
class CompiledArtifact:
    snippet: Snippet
    code: Any
    manifest: Manifest
    type: Optional[str] = None


CompileResult = Union[Incomplete, CompileError, CompiledArtifact]


# =================================================================
# Eval results
# =================================================================

@dataclass(frozen=True)
class Value:
    value: Any
    type: str
    environment: Any = None

    def __str__(self):
        return f"{self.value!r}: {self.type}"


@dataclass(frozen=True)
class Unit:
    environment: Any = None


@dataclass(frozen=True)
class EvalError:
    detail: str
    cause: Optional[BaseException] = None

    def __str__(self):
        return f"Error: {self.detail}"


@dataclass(frozen=True)
class HistoryMismatch:
    detail: str

    def __str__(self):
        return f"HistoryMismatch: {self.detail}"


EvalResult = Union[Value, Unit, EvalError, HistoryMismatch]


# =================================================================
# Shared environment
# =================================================================

class Environment:
    """Versioned binding store shared by the compiler and the executor.

    The session owns one Environment and hands it to both collaborators on
    every call; neither looks it up globally.
    """
    def __init__(self, namespace: str = "Session", bindings: Optional[Dict[str, Any]] = None):
        self.namespace = namespace
        self.bindings: Dict[str, Any] = bindings if bindings is not None else {}
        self.version = 0

    def read(self, name: str) -> Any:
        return self.bindings[name]

    def __contains__(self, name: str) -> bool:
        return name in self.bindings

    def bind_result(self, value: Any) -> None:
        self.bindings[RESULT_SLOT] = value

    def advance(self) -> int:
        self.version += 1
        return self.version

    def __repr__(self):
        return f"<Environment {self.namespace} v{self.version} ({len(self.bindings)} bindings)>"
