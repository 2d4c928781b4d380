"""Cooperative cancellation for a run (timeouts and signals)."""

from __future__ import annotations

import threading

from .errors import Cancelled


class CancelToken:
    """Thread-safe cancellation flag.

    The orchestrator checks it between stages; the sandbox polls it while
    the test command runs and kills the command when it trips.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()

    def cancel_after(self, seconds: float) -> None:
        """Arm a timer that cancels the token after ``seconds``."""
        self.disarm()
        timer = threading.Timer(seconds, self.cancel, args=(f"timed out after {seconds:g}s",))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or "cancelled")


__all__ = ["CancelToken"]
