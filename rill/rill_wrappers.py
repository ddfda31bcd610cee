"""
Composable around-advice over the raw "run compiled artifact" call.
"""
from typing import Any, Callable, List

Advice = Callable[[Callable[[], Any]], Any]


def _wrap(inner: Callable[[Callable[[], Any]], Any], advice: Advice):
    def run(body):
        return advice(lambda: inner(body))
    return run


def _call_body(body):
    return body()


class WrapperChain:
    """An ordered chain of around-advice.

    Each advice is called as `advice(proceed)` and must return the result of
    the call it wraps (normally `proceed()`'s). Advice registered later is
    outer: it sees the call boundary first, while earlier advice and the base
    call run inside it. The composed callable is rebuilt on every add/remove
    and never while a call is in flight.
    """
    def __init__(self):
        self._advices: List[Advice] = []
        self._composed = _call_body

    def __len__(self):
        return len(self._advices)

    def __iter__(self):
        return iter(list(self._advices))

    def _recompose(self):
        composed = _call_body
        for advice in self._advices:
            composed = _wrap(composed, advice)
        self._composed = composed

    def add(self, advice: Advice) -> Advice:
        self._advices.append(advice)
        self._recompose()
        return advice

    def remove(self, advice: Advice) -> None:
        self._advices.remove(advice)
        self._recompose()

    def invoke(self, body: Callable[[], Any]) -> Any:
        return self._composed(body)
