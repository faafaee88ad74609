import logging
import re
from datetime import datetime, timedelta

import pytz

from cancellation import StepResult, StopSignal, WaitResult, utc_now
from errors import TaskCancelled, UnrecoverableError

# The portal displays registration times in Los Angeles time
PORTAL_TZ = pytz.timezone('America/Los_Angeles')

REGISTRATION_TIME_FORMAT = '%m/%d/%Y %I:%M %p'
REGISTRATION_TIME_PATTERN = re.compile(r'\b(\d{2}/\d{2}/\d{4} \d{2}:\d{2} (?:AM|PM))\b')

PRE_AUTH_LEAD_TIME = timedelta(seconds=5)


def format_duration(delta: timedelta) -> str:
    """Formats a timedelta as '01h 02m 03s' for pause messages."""
    total_seconds = max(int(delta.total_seconds()), 0)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}h {minutes:02d}m {seconds:02d}s"


def parse_registration_time(label: str) -> datetime:
    """
    Converts a portal registration time such as '04/21/2025 09:30 AM' (Los Angeles
    local time) to an aware UTC datetime.

    Raises:
        UnrecoverableError: if the label cannot be parsed.
    """
    try:
        naive = datetime.strptime(label.strip(), REGISTRATION_TIME_FORMAT)
    except (ValueError, AttributeError) as e:
        raise UnrecoverableError(f"Failed to parse registration time: {label}") from e

    # localize() picks the right PST/PDT offset for that date, astimezone() alone would not
    return PORTAL_TZ.localize(naive).astimezone(pytz.utc)


def extract_registration_time(html: str) -> str:
    match = REGISTRATION_TIME_PATTERN.search(html or '')
    if not match:
        raise UnrecoverableError("Error getting registration time.")
    return match.group(1)


class ExecutionScheduler:
    """Owns one task's registration instant and every cancellable wait of that task."""

    def __init__(self, logger=None, clock=utc_now, stop_signal=None):
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._stop = stop_signal or StopSignal(clock)
        self.registration_instant = None
        self.registration_time_label = ""

    # --- Registration time ---
    def has_registration_instant(self) -> bool:
        return self.registration_instant is not None

    def record_registration_instant(self, instant: datetime, label: str) -> None:
        """Saves the registration instant once; later calls are ignored."""
        if self.registration_instant is not None:
            return
        self.registration_instant = instant
        self.registration_time_label = label

    def record_registration_time(self, label: str) -> None:
        if self.registration_instant is not None:
            return
        self.record_registration_instant(parse_registration_time(label), label)

    # --- Sleeping ---
    def sleep_until_pre_auth_window(self) -> WaitResult:
        target = self._require_instant() - PRE_AUTH_LEAD_TIME
        if self._clock() >= target:
            return WaitResult.EXPIRED
        return self.pause_until(target, "before reauthenticating")

    def sleep_until_open(self) -> WaitResult:
        target = self._require_instant()
        if self._clock() >= target:
            return WaitResult.EXPIRED
        return self.pause_until(target, "for registration to open")

    def pause_until(self, instant: datetime, reason: str = "") -> WaitResult:
        if reason:
            remaining = instant - self._clock()
            if remaining.total_seconds() > 0:
                self.logger.info(f"Pausing for {format_duration(remaining)} {reason}.")

        result = self._stop.wait_until(instant)
        if result is WaitResult.CANCELLED:
            self.logger.info("Stop requested. Waking up early.")
        return result

    def sleep_for(self, seconds: float, reason: str = "") -> WaitResult:
        if reason and seconds > 0:
            self.logger.info(f"Pausing for {format_duration(timedelta(seconds=seconds))} {reason}.")

        result = self._stop.wait_for(seconds)
        if result is WaitResult.CANCELLED:
            self.logger.info("Stop requested. Waking up early.")
        return result

    # --- Cancellation ---
    def request_stop(self) -> None:
        self._stop.cancel()

    def is_stop_requested(self) -> bool:
        return self._stop.is_set()

    def checkpoint(self) -> StepResult:
        if self._stop.is_set():
            return StepResult.cancelled()
        return StepResult.proceed()

    def fail_if_stopped(self) -> None:
        if self._stop.is_set():
            raise TaskCancelled()

    def _require_instant(self) -> datetime:
        if self.registration_instant is None:
            raise UnrecoverableError("Registration time has not been fetched.")
        return self.registration_instant
