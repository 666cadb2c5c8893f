import threading
from typing import Optional

from kappsul_devenv.errors import RunInterrupted


class CancellationToken:
    """Cooperative cancellation flag checked at every poll tick and retry boundary."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "interrupted") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    def raise_if_cancelled(self, where: Optional[str] = None) -> None:
        if self._event.is_set():
            detail = f" during {where}" if where else ""
            raise RunInterrupted(f"Run {self.reason}{detail}")

    def sleep(self, seconds: float) -> None:
        # Event.wait returns as soon as cancel() is called.
        if seconds > 0:
            self._event.wait(seconds)
        self.raise_if_cancelled()
