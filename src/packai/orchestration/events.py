"""Observer notifications and cooperative cancellation primitives."""

from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], None]


class Subscription:
    """Handle returned by ``EventEmitter.subscribe``."""

    def __init__(self, dispose: Callable[[], None]):
        self._dispose = dispose

    def dispose(self) -> None:
        self._dispose()
        self._dispose = lambda: None


class EventEmitter(Generic[T]):
    """Fire-and-forget event fan-out.

    A listener that raises is logged and skipped so one bad observer cannot
    break the emitter's owner. Firing after ``dispose`` is a no-op.
    """

    def __init__(self, name: str = "event"):
        self.name = name
        self._listeners: list[Listener] = []
        self._disposed = False

    def subscribe(self, listener: Listener) -> Subscription:
        if self._disposed:
            return Subscription(lambda: None)
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription(remove)

    def fire(self, data: T) -> None:
        if self._disposed:
            return
        for listener in list(self._listeners):
            try:
                listener(data)
            except Exception:
                logger.exception("Listener for %s raised", self.name)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        self._listeners.clear()
        self._disposed = True


class CancellationToken:
    """Read side of a cancellation signal."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled

    def on_cancellation_requested(self, callback: Callable[[], None]) -> Subscription:
        if self._cancelled:
            callback()
            return Subscription(lambda: None)
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return Subscription(remove)

    def _set(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback raised")


class CancellationTokenSource:
    """Owner side of a cancellation signal."""

    def __init__(self) -> None:
        self.token = CancellationToken()

    def cancel(self) -> None:
        self.token._set()

    def dispose(self) -> None:
        self.token._callbacks.clear()
