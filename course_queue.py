from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple


@dataclass
class Course:
    """
    One desired course outcome: a primary CRN, backups tried in listed order, and an
    optional CRN to drop once one of them is registered.
    """
    primary: str
    backups: List[str] = field(default_factory=list)
    drop: Optional[str] = None
    prioritize_open_seats: bool = False
    waitlist: bool = True

    def candidate_crns(self) -> List[str]:
        return [self.primary, *self.backups]

    def all_crns(self) -> List[str]:
        crns = self.candidate_crns()
        if self.drop:
            crns.append(self.drop)
        return crns

    def __contains__(self, crn) -> bool:
        return crn in self.all_crns()


class CourseQueueManager:
    """
    Tracks what one task still wants, what it queued for this pass, and what the
    user currently holds. Confined to the task's own thread.
    """

    def __init__(self, courses=None):
        self._courses: List[Course] = list(courses or [])
        self.course_codes: Dict[str, str] = {}

        self._registration_queue: Set[str] = set()
        self._drop_queue: Set[str] = set()
        self._notification_queue: List[Tuple[str, str]] = []
        self._failed_courses = 0

        self._held_snapshot: Optional[list] = None

    # --- Courses ---
    @property
    def courses(self) -> List[Course]:
        return self._courses

    def has_courses(self) -> bool:
        return bool(self._courses)

    def find_course(self, crn: str) -> Optional[Course]:
        for course in self._courses:
            if crn in course:
                return course
        return None

    def remove_course(self, crn: str) -> None:
        """Stops tracking the course that owns this CRN (primary, backup or drop)."""
        course = self.find_course(crn)
        if course is not None:
            self._courses.remove(course)

    def remove_candidate(self, crn: str) -> None:
        """
        Drops a single CRN from its course's candidates. The course itself goes away
        once neither a primary nor a backup is left.
        """
        course = self.find_course(crn)
        if course is None:
            return

        if crn == course.primary:
            if not course.backups:
                self._courses.remove(course)
                return
            course.primary = course.backups.pop(0)
        elif crn in course.backups:
            course.backups.remove(crn)

    def can_waitlist(self, crn: str) -> bool:
        course = self.find_course(crn)
        return course is not None and course.waitlist

    def describe(self, crn: str) -> str:
        code = self.course_codes.get(crn)
        return f"[{crn}] {code}" if code else f"[{crn}]"

    def display_courses(self, logger) -> None:
        for course in self._courses:
            logger.info(f"{self.describe(course.primary)} (Primary)")
            for backup in course.backups:
                logger.info(f"{self.describe(backup)} (Backup for {course.primary})")
            if course.drop:
                logger.info(f"{self.describe(course.drop)} (Dropping for {course.primary})")

    # --- Registration and drop queues ---
    @property
    def registration_queue(self) -> Set[str]:
        return self._registration_queue

    def enqueue_crn(self, crn: str) -> None:
        self._registration_queue.add(crn)

    def dequeue_crn(self, crn: str) -> None:
        self._registration_queue.discard(crn)

    @property
    def drop_queue(self) -> Set[str]:
        return self._drop_queue

    def enqueue_drop(self, crn: str) -> None:
        self._drop_queue.add(crn)

    def dequeue_drop(self, crn: str) -> None:
        self._drop_queue.discard(crn)

    def is_queued(self, crn: str) -> bool:
        return crn in self._registration_queue or crn in self._drop_queue

    def clear_queues(self) -> None:
        self._registration_queue.clear()
        self._drop_queue.clear()

    # --- Failure counter (pass-level signal) ---
    def record_group_unaddable(self) -> None:
        self._failed_courses += 1

    @property
    def failure_count(self) -> int:
        return self._failed_courses

    def has_failures(self) -> bool:
        return self._failed_courses != 0

    def reset_failures(self) -> None:
        self._failed_courses = 0

    # --- Notifications (buffered, flushed once per pass) ---
    def enqueue_notification(self, title: str, message: str) -> None:
        self._notification_queue.append((title, message))

    def drain_notifications(self) -> List[Tuple[str, str]]:
        pending, self._notification_queue = self._notification_queue, []
        return pending

    # --- Held snapshot ---
    def set_held_snapshot(self, models: list) -> None:
        self._held_snapshot = list(models)

    def get_held_snapshot(self) -> list:
        return self._held_snapshot or []

    def clear_held_snapshot(self) -> None:
        self._held_snapshot = None

