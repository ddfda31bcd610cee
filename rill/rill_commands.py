"""
Directive commands: lines starting with ':' that are not code.
"""
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from rill.rill_runtime import Repl


class Command:
    """A named, optionally short-aliased directive."""
    name: str = ""
    short: Optional[str] = None
    description: str = ""
    params: str = ""

    def __init__(self, name: Optional[str] = None, short: Optional[str] = None,
                 description: Optional[str] = None):
        if name is not None:
            self.name = name
        if short is not None:
            self.short = short
        if description is not None:
            self.description = description
        self.repl: Optional['Repl'] = None

    def match(self, line: str) -> bool:
        parts = line.strip().split(maxsplit=1)
        if not parts:
            return False
        head = parts[0]
        return head == f":{self.name}" or (bool(self.short) and head == f":{self.short}")

    @staticmethod
    def argument(line: str) -> str:
        """Everything after the directive word."""
        parts = line.strip().split(maxsplit=1)
        return parts[1].strip() if len(parts) > 1 else ""

    def execute(self, line: str) -> None:
        raise NotImplementedError

    def help_line(self) -> str:
        alias = f", :{self.short}" if self.short else ""
        params = f" {self.params}" if self.params else ""
        return f":{self.name}{alias}{params}  {self.description}"

    def println(self, text: str) -> None:
        self.repl.reporter.println(text)


class QuitCommand(Command):
    name = "quit"
    short = "q"
    description = "exit the interpreter"

    def execute(self, line: str) -> None:
        # The read loop stops on this directive before dispatching.
        pass


class HelpCommand(Command):
    name = "help"
    short = "h"
    description = "print this summary"

    def execute(self, line: str) -> None:
        for command in self.repl.commands:
            self.println(command.help_line())


class HistoryCommand(Command):
    name = "history"
    short = "hist"
    description = "show the evaluated snippets"

    def execute(self, line: str) -> None:
        for snippet in self.repl.state.history:
            first, *rest = snippet.source.splitlines() or [""]
            more = " ..." if rest else ""
            self.println(f"{snippet.id:>4}  {first}{more}")
