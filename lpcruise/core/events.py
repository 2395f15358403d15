"""Subscription registry used for state-change and funds-safety notifications."""
from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Generic, ParamSpec

logger = logging.getLogger(__name__)

P = ParamSpec("P")


class Subscribers(Generic[P]):
    """An explicit list of listeners; sync and async callables are both accepted.

    ``subscribe`` returns a zero-argument callable that removes the listener.
    A listener that raises is logged and the rest still run.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: list[Callable[P, Any]] = []

    def subscribe(self, listener: Callable[P, Any]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def __len__(self) -> int:
        return len(self._listeners)

    async def notify(self, *args: P.args, **kwargs: P.kwargs) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(*args, **kwargs)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error("%s listener %r failed: %s", self.name, listener, exc)
