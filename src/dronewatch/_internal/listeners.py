"""Scoped listener registration.

Every callback registration returns a :class:`Subscription`; cancelling it
(or leaving its ``with`` block) removes the callback, so nothing outlives
the component that registered it.
"""

from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    """Handle for one registered callback."""

    def __init__(self, release: Callable[[], None]) -> None:
        self._release: Callable[[], None] | None = release

    @property
    def active(self) -> bool:
        return self._release is not None

    def cancel(self) -> None:
        """Remove the callback. Safe to call more than once."""
        if self._release is not None:
            release, self._release = self._release, None
            release()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.cancel()


class Listeners(Generic[T]):
    """Delivers each emitted value to all registered callbacks, error-isolated.

    Callbacks may be plain functions or coroutine functions. One callback
    failing does not stop the others from receiving the value.
    """

    def __init__(self) -> None:
        self._callbacks: list[Callable[[T], Awaitable[None] | None]] = []

    def add(self, callback: Callable[[T], Awaitable[None] | None]) -> Subscription:
        """Register *callback* and return its subscription."""
        self._callbacks.append(callback)
        return Subscription(lambda: self._discard(callback))

    def _discard(self, callback: Any) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def __len__(self) -> int:
        return len(self._callbacks)

    def clear(self) -> None:
        self._callbacks.clear()

    async def emit(self, value: T) -> None:
        """Dispatch *value* to every callback registered at call time."""
        for callback in list(self._callbacks):
            try:
                result = callback(value)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Listener %s failed", callback, exc_info=True)
