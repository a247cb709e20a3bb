"""Cooperative cancellation token.

A CancelToken is threaded through every execution boundary (launch options,
the async step, the kill logic). Triggering it never stops anything by
itself: each party that cares registers a listener and reacts.

Example:
    token = CancelToken()
    ctx = exec_({"cmd": "sleep", "args": ["60"], "signal": token})

    # Somewhere else, possibly another thread
    token.cancel("user requested stop")
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

__all__ = ["CancelToken", "CancelListener"]

logger = logging.getLogger(__name__)

CancelListener = Callable[["CancelToken"], None]


class CancelToken:
    """Thread-safe, one-shot cancellation signal.

    The first call to cancel() wins; later calls are no-ops. Listeners are
    called once, outside the internal lock, in registration order. A listener
    added after cancellation is called immediately.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason: Any = None
        self._listeners: list[CancelListener] = []

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._cancelled

    @property
    def reason(self) -> Any:
        """Value passed to cancel(), or None."""
        return self._reason

    def cancel(self, reason: Any = None) -> bool:
        """Trigger cancellation.

        Args:
            reason: Optional value describing why (surfaced to listeners)

        Returns:
            True if this call performed the cancellation
        """
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._reason = reason
            listeners = list(self._listeners)
            self._listeners.clear()

        logger.debug(f"CancelToken cancelled (reason={reason!r}, listeners={len(listeners)})")
        for listener in listeners:
            self._call(listener)
        return True

    def add_listener(self, listener: CancelListener) -> Callable[[], None]:
        """Register a listener for cancellation.

        Args:
            listener: Called with this token when cancellation happens

        Returns:
            A function that removes the listener again
        """
        with self._lock:
            fire_now = self._cancelled
            if not fire_now:
                self._listeners.append(listener)

        if fire_now:
            self._call(listener)

        def remove() -> None:
            self.remove_listener(listener)

        return remove

    def remove_listener(self, listener: CancelListener) -> bool:
        """Remove a listener.

        Returns:
            True if the listener was registered
        """
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
                return True
        return False

    def _call(self, listener: CancelListener) -> None:
        try:
            listener(self)
        except Exception as e:
            logger.warning(f"Error in cancel listener {listener!r}: {e}")

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "pending"
        return f"CancelToken({state}, reason={self._reason!r})"
