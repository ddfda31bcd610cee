"""
Lifecycle events fired by the compile/eval engine.
"""
from typing import Any, Callable, Dict, List, Type, Union


class Event:
    """Base class for engine events; `data()` returns the payload."""
    def __init__(self, payload: Any):
        self._payload = payload

    def data(self) -> Any:
        return self._payload

    def __repr__(self):
        return f"{type(self).__name__}({self._payload!r})"


class OnCompile(Event):
    """Carries the CompiledArtifact; fired before evaluation begins."""


class OnEval(Event):
    """Carries the EvalResult; fired once the wrapper chain has returned."""


Handler = Union[Callable[[Event], Any], Any]


class EventManager:
    def __init__(self):
        self._handlers: Dict[Type[Event], List[Handler]] = {}

    def register_event_handler(self, event_type: Type[Event], handler: Handler) -> Handler:
        if not (callable(handler) or callable(getattr(handler, "handle", None))):
            raise TypeError(f"event handler must be callable or define handle(): {handler!r}")
        self._handlers.setdefault(event_type, []).append(handler)
        return handler

    def unregister_event_handler(self, event_type: Type[Event], handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers(self, event_type: Type[Event]) -> List[Handler]:
        return list(self._handlers.get(event_type, []))

    def emit(self, event: Event) -> None:
        # Registration order; a raising handler aborts the cycle.
        for handler in self.handlers(type(event)):
            handle = getattr(handler, "handle", None)
            if callable(handle):
                handle(event)
            else:
                handler(event)
