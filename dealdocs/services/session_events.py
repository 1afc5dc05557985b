"""Process-wide "session expired" notification.

Any part of the app that sees a 401 fires the signal; subscribers (the
batch progress streams, an auth guard) react on their own. The signal
notifies subscribers once and then stays quiet until it is reset, so a
burst of parallel 401s produces a single notification.
"""

import logging
import threading
from collections.abc import Callable

from dealdocs.services.log_service import get_log_service

logger = logging.getLogger(__name__)

SessionListener = Callable[[str], None]


class SessionExpiredSignal:
    """Fire-once publish/subscribe channel for session expiry."""

    def __init__(self) -> None:
        self._listeners: list[SessionListener] = []
        self._lock = threading.Lock()
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener and return a function that removes it.

        Subscribing the same listener twice registers it once.
        """
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def fire(self, reason: str = "Session expired") -> bool:
        """Notify listeners unless the signal already fired.

        Returns:
            True if this call delivered the notification
        """
        with self._lock:
            if self._fired:
                return False
            self._fired = True
            listeners = list(self._listeners)

        get_log_service().warning("session", "session_expired", reason)

        for listener in listeners:
            try:
                listener(reason)
            except Exception:
                logger.exception("Session-expired listener failed")
        return True

    def reset(self) -> None:
        """Re-arm the signal, e.g. after the user signs in again."""
        with self._lock:
            self._fired = False


_session_signal: SessionExpiredSignal | None = None


def get_session_signal() -> SessionExpiredSignal:
    """Get the process-wide session signal."""
    global _session_signal
    if _session_signal is None:
        _session_signal = SessionExpiredSignal()
    return _session_signal
