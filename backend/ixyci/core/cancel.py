import threading
from typing import Optional
from ixyci.core.errors import JobCancelled


class CancelToken:
    """Cooperative cancellation flag shared between the event loop and worker threads."""

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._lock = threading.Lock()

    def cancel(self, reason: str) -> bool:
        """Request cancellation. Returns False if it was already requested."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise JobCancelled(self._reason or "cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; returns True early if cancelled."""
        return self._event.wait(timeout)
