from __future__ import annotations

import threading


class CancelledError(RuntimeError):
    """Raised when a stop request should abort the current polling slice."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def request_cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("cancel_requested")

    def wait(self, timeout_s: float) -> bool:
        """Sleep up to `timeout_s`; returns True early when cancellation is requested."""
        return self._event.wait(timeout=max(0.0, float(timeout_s)))
