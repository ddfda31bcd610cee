"""
Plugins extend a Repl with commands, event handlers and execution wrappers.
"""
import importlib
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional

from rill.rill_commands import Command
from rill.rill_config import RillConfig
from rill.rill_datatypes import CompileError, CompiledArtifact, Incomplete, RillError
from rill.rill_events import OnCompile
from rill.rill_symbols import ALL_KINDS, ExtractSymbols, SymbolKind, SymbolTable

if TYPE_CHECKING:
    from rill.rill_runtime import Repl


class Plugin(ABC):
    @abstractmethod
    def init(self, repl: 'Repl', config: RillConfig) -> None:
        """Register commands, handlers and wrappers on `repl`."""

    def clean_up(self) -> None:
        pass


class InferType(Command):
    description = "display the type of an expression without evaluating it"
    params = "<expr>"

    def __init__(self, config: RillConfig):
        super().__init__(name=config.get("type", "name", "type"),
                         short=config.get("type", "short", "t"))

    def execute(self, line: str) -> None:
        expr = self.argument(line)
        match self.repl.compile(expr):
            case Incomplete():
                self.println("Incomplete line")
            case CompileError(message=message, location=location):
                self.repl.reporter.report_compile_error(message, location)
            case CompiledArtifact(type=type_) if type_:
                self.println(type_)


class ListSymbols(Command):
    description = "list defined symbols"
    params = "[pattern] [class|instance|function ...]"

    def __init__(self, config: RillConfig, table: SymbolTable):
        super().__init__(name=config.get("list", "name", "list"),
                         short=config.get("list", "short", "ls"))
        self.table = table

    def execute(self, line: str) -> None:
        pattern, kinds = None, []
        for word in self.argument(line).split():
            try:
                kinds.append(SymbolKind(word))
            except ValueError:
                pattern = word
        for symbol in self.table.list(pattern, kinds or ALL_KINDS):
            self.println(symbol.show())


class RuntimePlugin(Plugin):
    """Symbol extraction plus the :type and :list commands."""

    def __init__(self):
        self.repl: Optional['Repl'] = None
        self.table: Optional[SymbolTable] = None
        self.last_compiled: Optional[CompiledArtifact] = None
        self._extractor: Optional[ExtractSymbols] = None

    def init(self, repl: 'Repl', config: RillConfig) -> None:
        self.repl = repl
        self.table = SymbolTable(repl.state.history, repl.state.lock)
        repl.event_manager.register_event_handler(OnCompile, self._on_compile)
        self._extractor = repl.wrappers.add(ExtractSymbols(self.table, lambda: self.last_compiled))
        repl.register_command(InferType(config))
        repl.register_command(ListSymbols(config, self.table))

    def _on_compile(self, event: OnCompile) -> None:
        self.last_compiled = event.data()

    def clean_up(self) -> None:
        if self.repl is None:
            return
        self.repl.event_manager.unregister_event_handler(OnCompile, self._on_compile)
        if self._extractor is not None:
            self.repl.wrappers.remove(self._extractor)
        self.repl = None


def _import_plugin(path: str) -> type:
    module_name, _, class_name = path.rpartition(".")
    if not module_name:
        raise RillError(f"plugin path must be a dotted class path: {path!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, class_name)
    except AttributeError:
        raise RillError(f"module {module_name!r} has no plugin {class_name!r}") from None


def load_plugins(repl: 'Repl', config: Optional[RillConfig] = None) -> List[Plugin]:
    """Instantiate and initialise every plugin named in the configuration."""
    config = config or repl.config
    loaded = []
    for path in config.plugins:
        plugin_cls = _import_plugin(path)
        if not (isinstance(plugin_cls, type) and issubclass(plugin_cls, Plugin)):
            raise RillError(f"{path} is not a Plugin subclass")
        plugin = plugin_cls()
        plugin.init(repl, config)
        repl.plugins.append(plugin)
        loaded.append(plugin)
    return loaded
