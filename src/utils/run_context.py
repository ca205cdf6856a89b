import threading
import time
from typing import Optional

from src.utils.models import CANCELED, TIMEOUT, PipelineError


class RunContext:
    """
    Cancellation signal plus run-level deadline, owned by exactly one pipeline run.

    Every blocking step (remote generation call, sandbox wait) polls this object
    so a caller can abort a run and a hung step cannot outlive the deadline.
    """

    def __init__(self, deadline_s: Optional[float] = None, cancel_event: Optional[threading.Event] = None):
        self._cancel_event = cancel_event or threading.Event()
        self._deadline = time.monotonic() + deadline_s if deadline_s else None
        self.cancel_reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        self.cancel_reason = reason or "canceled by caller"
        self._cancel_event.set()
        if reason:
            print(f"ABORT_REQUESTED: {reason}")

    @property
    def is_canceled(self) -> bool:
        return self._cancel_event.is_set()

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def bound_timeout(self, timeout_s: float) -> float:
        """The smaller of a step timeout and the time left before the run deadline."""
        remaining = self.remaining()
        return timeout_s if remaining is None else min(timeout_s, remaining)

    def check(self, stage: str) -> None:
        if self.is_canceled:
            raise PipelineError(CANCELED, f"Run canceled during {stage}: {self.cancel_reason or 'canceled by caller'}")
        if self.expired:
            raise PipelineError(TIMEOUT, f"Run deadline exceeded during {stage}")
