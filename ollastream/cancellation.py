"""Cancellation tokens for long-lived streams and pulls."""

from __future__ import annotations

import threading
from typing import Callable, List

from .logging import get_logger

LOGGER = get_logger(__name__)


class CancellationToken:
    """Thread-safe, one-shot cancellation signal.

    ``cancel()`` may be called any number of times from any thread; callbacks
    registered with :meth:`add_callback` run exactly once, on the first call.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - callbacks only close sockets
                LOGGER.debug("Cancellation callback failed", exc_info=True)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return remove
        callback()
        return lambda: None

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)
