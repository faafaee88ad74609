import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict


class CourseStatus(Enum):
    CLOSED = "Closed"
    OPEN = "Open"
    WAITLIST_OPEN = "WaitlistOpen"
    WAITLIST_SOON = "WaitlistSoon"


# Labels as they appear on the portal's enrollment info fragment
SEAT_LABELS = {
    "Enrollment Actual": "enrollment_actual",
    "Enrollment Maximum": "enrollment_maximum",
    "Enrollment Seats Available": "enrollment_seats_available",
    "Waitlist Actual": "waitlist_actual",
    "Waitlist Capacity": "waitlist_capacity",
    "Waitlist Seats Available": "waitlist_seats_available",
}

ENROLLMENT_DATA_PATTERN = re.compile(r'<span class="status-bold">([^<:]+):</span>\s*<span[^>]*>(-?\d+)</span>')


@dataclass(frozen=True)
class SeatCounts:
    enrollment_actual: int = 0
    enrollment_maximum: int = 0
    enrollment_seats_available: int = 0
    waitlist_actual: int = 0
    waitlist_capacity: int = 0
    waitlist_seats_available: int = 0


@dataclass(frozen=True)
class EnrollmentInfo:
    status: CourseStatus = CourseStatus.CLOSED
    seats: SeatCounts = field(default_factory=SeatCounts)

    @classmethod
    def from_seats(cls, seats: SeatCounts) -> "EnrollmentInfo":
        return cls(status=classify_seats(seats), seats=seats)

    def is_addable(self, waitlist_allowed: bool) -> bool:
        if self.status is CourseStatus.OPEN:
            return True
        return self.status is CourseStatus.WAITLIST_OPEN and waitlist_allowed

    def describe(self) -> str:
        if self.status is CourseStatus.OPEN:
            return f"Open - Seats Available: {self.seats.enrollment_seats_available}"
        if self.status is CourseStatus.WAITLIST_OPEN:
            return f"Waitlist - Seats Available: {self.seats.waitlist_seats_available}"
        if self.status is CourseStatus.WAITLIST_SOON:
            opening = self.seats.enrollment_seats_available + self.seats.waitlist_seats_available
            return f"Waitlist - Seats Opening Soon: {opening}"
        return "Closed - No Seats Available"


def classify_seats(seats: SeatCounts) -> CourseStatus:
    if seats.enrollment_seats_available > 0 and seats.waitlist_actual == 0:
        return CourseStatus.OPEN

    if seats.waitlist_seats_available > 0:
        return CourseStatus.WAITLIST_OPEN

    # Someone left the main roster but the waitlist hasn't been moved up yet.
    # Waitlist seats can go negative, so the two counts are balanced against each other.
    if seats.enrollment_seats_available + seats.waitlist_seats_available > 0:
        return CourseStatus.WAITLIST_SOON

    return CourseStatus.CLOSED


def parse_seat_counts(html: str) -> SeatCounts:
    values: Dict[str, int] = {}
    for label, number in ENROLLMENT_DATA_PATTERN.findall(html or ''):
        attribute = SEAT_LABELS.get(label.strip())
        if attribute is None:
            raise ValueError(f"Unrecognized seat type name: {label}")
        values[attribute] = int(number)
    return SeatCounts(**values)
