"""Cooperative cancellation for in-flight recognition calls."""

import threading


class RecognitionCancelled(Exception):
    """Raised by an engine that noticed its caller gave up on the result."""


class CancellationToken:
    """One-shot flag shared between the orchestrator and an engine call.

    The engine cannot be interrupted mid-call, so it checks the token
    between steps and refuses to deliver progress or a result once
    cancelled. The flag is read from worker threads, hence the event.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RecognitionCancelled(self.reason or "cancelled")
