import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional


class WaitResult(Enum):
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Outcome(Enum):
    CONTINUE = "continue"
    CANCELLED = "cancelled"
    FAILED = "failed"


class FailureKind(Enum):
    FATAL = "fatal"
    RECOVERABLE = "recoverable"


@dataclass(frozen=True)
class StepResult:
    """Result of a checkpoint or a registration pass: continue, cancelled or failed(kind)."""
    outcome: Outcome
    kind: Optional[FailureKind] = None
    message: str = ""

    @classmethod
    def proceed(cls, message=""):
        return cls(Outcome.CONTINUE, message=message)

    @classmethod
    def cancelled(cls, message="The task was manually cancelled."):
        return cls(Outcome.CANCELLED, message=message)

    @classmethod
    def failed(cls, kind, message):
        return cls(Outcome.FAILED, kind=kind, message=message)

    @property
    def is_cancelled(self):
        return self.outcome is Outcome.CANCELLED

    @property
    def is_fatal(self):
        return self.outcome is Outcome.FAILED and self.kind is FailureKind.FATAL

    @property
    def is_recoverable(self):
        return self.outcome is Outcome.FAILED and self.kind is FailureKind.RECOVERABLE


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StopSignal:
    """
    Cancellable countdown shared by every wait of one task.

    Any thread may call cancel(); it is idempotent and wakes all waiters at once.
    Waits on instants already in the past (or non-positive durations) return
    EXPIRED without blocking, unless the signal was already cancelled.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._condition = threading.Condition()
        self._stopped = False

    def cancel(self) -> None:
        with self._condition:
            self._stopped = True
            self._condition.notify_all()

    def is_set(self) -> bool:
        return self._stopped

    def wait_until(self, instant: datetime) -> WaitResult:
        with self._condition:
            while not self._stopped:
                remaining = (instant - self._clock()).total_seconds()
                if remaining <= 0:
                    return WaitResult.EXPIRED
                self._condition.wait(remaining)
            return WaitResult.CANCELLED

    def wait_for(self, seconds: float) -> WaitResult:
        if self._stopped:
            return WaitResult.CANCELLED
        if seconds <= 0:
            return WaitResult.EXPIRED

        # wait_for() counts down on the monotonic clock, not the injected one
        with self._condition:
            if self._condition.wait_for(lambda: self._stopped, timeout=min(seconds, threading.TIMEOUT_MAX)):
                return WaitResult.CANCELLED
        return WaitResult.EXPIRED
