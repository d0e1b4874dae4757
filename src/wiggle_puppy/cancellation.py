"""Cooperative cancellation shared between a runner and its controllers."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe, idempotent cancellation flag with wake-up listeners.

    Listeners let a blocked wait (for example a queue read) be interrupted the
    moment :meth:`cancel` is called instead of on its next timeout.

    :meth:`cancel` takes no lock, so it may run from a signal handler on the
    same thread that is registering a listener or sleeping in :meth:`wait`.
    Listeners must be idempotent and must not block.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._lock = threading.Lock()
        self._listeners: list[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        logger.info("Cancellation requested")
        for listener in tuple(self._listeners):
            listener()

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Register ``listener``; it runs immediately if already cancelled."""

        with self._lock:
            self._listeners.append(listener)
        # A cancel that raced the append may have missed the new listener.
        if self._cancelled:
            listener()

    def remove_listener(self, listener: Callable[[], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return ``True`` if cancelled meanwhile."""

        if self._cancelled or seconds <= 0:
            return self._cancelled
        wakeup: queue.SimpleQueue[None] = queue.SimpleQueue()

        def _wake() -> None:
            wakeup.put(None)

        self.add_listener(_wake)
        try:
            wakeup.get(timeout=seconds)
        except queue.Empty:
            pass
        finally:
            self.remove_listener(_wake)
        return self._cancelled
