import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_loader import TaskConfig
from course_queue import CourseQueueManager
from enrollment import EnrollmentInfo, SeatCounts
from errors import UnrecoverableError
from execution_scheduler import ExecutionScheduler
from registration_task import RegistrationTask

OPEN_SEATS = SeatCounts(enrollment_actual=35, enrollment_maximum=40, enrollment_seats_available=5)
NO_SEATS = SeatCounts(enrollment_actual=40, enrollment_maximum=40, waitlist_actual=15,
                      waitlist_capacity=15)


def open_section():
    return EnrollmentInfo.from_seats(OPEN_SEATS)


def closed_section():
    return EnrollmentInfo.from_seats(NO_SEATS)


def waitlisted_section(waitlist_actual, waitlist_seats_available=3):
    return EnrollmentInfo.from_seats(SeatCounts(
        enrollment_actual=40,
        enrollment_maximum=40,
        waitlist_actual=waitlist_actual,
        waitlist_capacity=waitlist_actual + waitlist_seats_available,
        waitlist_seats_available=waitlist_seats_available,
    ))


def cart_line(crn, actions=("RW", "internal-remove")):
    return {
        "success": True,
        "courseReferenceNumber": crn,
        "message": None,
        "model": {
            "courseReferenceNumber": crn,
            "selectedAction": None,
            "properties": {"registrationActions": [{"courseRegistrationStatus": a} for a in actions]},
        },
    }


def failed_cart_line(crn, message="Invalid CRN or section"):
    return {"success": False, "courseReferenceNumber": crn, "message": message, "model": None}


def held_model(crn):
    return {"courseReferenceNumber": crn, "selectedAction": None, "subject": "MATH", "courseDisplay": "1A"}


def batch_update(crn, status, message=None, subject="CS", course_display="1A"):
    update = {
        "courseReferenceNumber": crn,
        "subject": subject,
        "courseDisplay": course_display,
        "statusDescription": status,
        "messages": [],
    }
    if message:
        update["messages"] = [{"message": message, "type": "error"}]
    return update


def batch_response(*updates, success=True):
    return {"success": success, "data": {"update": list(updates)}}


STATUS_FOR_ACTION = {"RW": "Registered", "WL": "Waitlisted", "DW": "Deleted"}


class FakePortal:
    """Scripted stand-in for MyPortalClient."""

    def __init__(self, enrollment=None, cart=None, response=None, held=None, down=None,
                 open_checks=None, invalid_crns=(), failed_adds=()):
        self.enrollment = dict(enrollment or {})
        self.cart = cart
        self.response = response
        self.held = list(held or [])
        self.down = list(down or [])
        self.open_checks = list(open_checks or [])
        self.invalid_crns = set(invalid_crns)
        self.failed_adds = set(failed_adds)
        self.unique_session_id = "abcde1700000000000"

        self.probed = []
        self.cart_requests = []
        self.submitted = []
        self.prepared = 0
        self.on_probe = None

    def check_enrollment(self, term_code, crn):
        self.probed.append(crn)
        if self.on_probe is not None:
            self.on_probe(crn)
        result = self.enrollment.get(crn, closed_section())
        if isinstance(result, Exception):
            raise result
        return result

    def get_course_code(self, term_code, crn):
        if crn in self.invalid_crns:
            raise UnrecoverableError(f"Failed to get course details for CRN {crn}.")
        return f"CS {crn[-2:]}"

    def registration_is_open(self, term_code):
        return self.open_checks.pop(0) if self.open_checks else True

    def prepare_for_registration(self, term_code):
        self.prepared += 1

    def fetch_held_snapshot(self):
        return self.held

    def add_registration_items(self, term_code, crns):
        self.cart_requests.append(list(crns))
        if self.cart is not None:
            return self.cart
        return {"aaData": [failed_cart_line(crn) if crn in self.failed_adds else cart_line(crn) for crn in crns]}

    def submit_batch(self, batch):
        self.submitted.append(batch)
        if self.response is not None:
            return self.response
        return batch_response(*[
            batch_update(line["courseReferenceNumber"], STATUS_FOR_ACTION[line["selectedAction"]])
            for line in batch["update"]
        ])

    def portal_is_down(self):
        return self.down.pop(0) if self.down else False

    def close(self):
        pass


class FakeAuthenticator:
    def __init__(self, registration_instant=None, error=None):
        self.calls = 0
        self.error = error
        self.registration_instant = registration_instant or datetime.now(timezone.utc) - timedelta(minutes=1)

    def authenticate(self, task):
        task.scheduler.fail_if_stopped()
        self.calls += 1
        if self.error is not None:
            raise self.error
        task.scheduler.record_registration_instant(self.registration_instant, "04/21/2025 09:30 AM")


class FakeNotifier:
    def __init__(self, notify_failures=True):
        self.notify_failures = notify_failures
        self.sent = []

    def send(self, title, message):
        self.sent.append((title, message))
        return True

    def send_failure(self, title, message):
        if not self.notify_failures:
            return False
        return self.send(title, message)

    @property
    def titles(self):
        return [title for title, _ in self.sent]


def build_config(**overrides):
    values = dict(
        cwid="20123456",
        password="hunter22",
        term="2026 Winter De Anza",
        term_code="202632",
        enable_logging=False,
        min_wait_seconds=0.0,
        max_wait_seconds=0.0,
    )
    values.update(overrides)
    return TaskConfig(**values)


@pytest.fixture
def make_task():
    def _make_task(courses, portal=None, authenticator=None, notifier=None, **config_overrides):
        logger = logging.getLogger("tests.task")
        return RegistrationTask(
            config=build_config(**config_overrides),
            courses=CourseQueueManager(courses),
            scheduler=ExecutionScheduler(logger=logger),
            portal=portal or FakePortal(),
            authenticator=authenticator or FakeAuthenticator(),
            notifier=notifier or FakeNotifier(),
            logger=logger,
            task_id="20123456-DA",
        )
    return _make_task
