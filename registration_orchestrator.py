"""
Registration flow for one task.

A pass probes every candidate CRN in parallel, picks the best addable CRN for
each course, sends one batch of adds (plus drops for sections the student
still holds), and reads the per-CRN outcome back into the task's queues.
registration_loop() repeats passes with a jittered pause until every course is
resolved or the task's settings say to stop.
"""

import copy
import random
import time
from concurrent.futures import ThreadPoolExecutor

from cancellation import FailureKind, Outcome, StepResult, WaitResult
from enrollment import CourseStatus
from errors import PortalRequestError, TaskCancelled, UnrecoverableError
from myportal_client import format_course_code

SUCCESS_STATUSES = ("Registered", "Waitlisted", "Dropped")

# Portal errors that are expected while a section is full; anything else that
# isn't a configured ineligible reason is logged for review.
RETRYABLE_REASONS = ("Closed Section", "Closed - ", "Waitlist Full")

REGISTER_ACTION = "RW"   # **Web Registered**
WAITLIST_ACTION = "WL"   # Waitlist
DROP_ACTION = "DW"       # ***Web Dropped***

PORTAL_RECHECK_SECONDS = 5
OPEN_RECHECK_SECONDS = 1

NOTHING_QUEUED = "Nothing to register."
NO_COURSES_ADDED = "Added no courses to batch."
BATCH_SUBMITTED = "Submitted registration batch."


def plural(size):
    return "" if size == 1 else "s"


def log_duration(task, start, stage):
    elapsed_ms = (time.monotonic() - start) * 1000
    task.logger.debug(f"{stage} took {elapsed_ms:.0f} ms")


def notify_results(task):
    for title, message in task.courses.drain_notifications():
        task.notifier.send(title, message)


def notify_failure(task, title, message, always=True):
    task.logger.error(f"{title} - {message}")
    if always:
        task.notifier.send(title, message)
    else:
        task.notifier.send_failure(title, message)


# --- Probe and selection ---
def probe_enrollment(task, crns):
    """
    Checks every CRN at once, one worker per CRN, and joins all of them before
    returning. Each value is either an EnrollmentInfo or the exception its probe raised.
    """
    if not crns:
        return {}

    term_code = task.config.term_code
    with ThreadPoolExecutor(max_workers=len(crns), thread_name_prefix="probe") as pool:
        futures = {crn: pool.submit(task.portal.check_enrollment, term_code, crn) for crn in crns}

    results = {}
    for crn, future in futures.items():
        try:
            info = future.result()
        except Exception as e:
            results[crn] = e
            continue
        results[crn] = info
        task.logger.info(f"{task.courses.describe(crn)} - {info.describe()}")
    return results


def select_best_candidate(candidates, prioritize_open_seats):
    """
    Picks one CRN from (crn, EnrollmentInfo) pairs listed primary first.

    With `prioritize_open_seats` the first Open section wins outright. Otherwise
    (or when nothing is Open) the section with the shortest waitlist wins, ties
    going to the earlier CRN.
    """
    if prioritize_open_seats:
        for crn, info in candidates:
            if info.status is CourseStatus.OPEN:
                return crn

    best_crn, _ = min(candidates, key=lambda candidate: candidate[1].seats.waitlist_actual)
    return best_crn


def select_for_course(task, course, results):
    """
    Returns the CRN to add for this course, or None when nothing is addable.

    Raises:
        Exception: the first probe error, when every probe for the course failed.
    """
    checked = []
    errors = []
    for crn in course.candidate_crns():
        result = results.get(crn)
        if isinstance(result, Exception):
            errors.append((crn, result))
        elif result is not None:
            checked.append((crn, result))

    if errors and not checked:
        raise errors[0][1]

    for crn, error in errors:
        message = f"[{crn}] Error checking course: {error}"
        task.logger.error(message)
        task.courses.enqueue_notification("Error Checking Course", message)

    candidates = [(crn, info) for crn, info in checked if info.is_addable(course.waitlist)]
    if not candidates:
        return None
    return select_best_candidate(candidates, course.prioritize_open_seats)


# --- Batch construction ---
def supports_waitlist(model):
    """True if the cart line itself offers a waitlist action."""
    actions = (model.get("properties") or {}).get("registrationActions") or []
    for action in actions:
        code = action.get("courseRegistrationStatus") if isinstance(action, dict) else action
        if code == WAITLIST_ACTION:
            return True
    return False


def handle_failed_add(task, item):
    model = item.get("model") or {}
    crn = str(item.get("courseReferenceNumber") or model.get("courseReferenceNumber") or "")

    # Without its replacement the drop must not go through either
    course = task.courses.find_course(crn)
    if course is not None and course.drop:
        task.courses.dequeue_drop(course.drop)

    task.courses.dequeue_crn(crn)
    task.courses.remove_candidate(crn)
    # A course with CRNs left to try is still unresolved this pass
    if course is not None and task.courses.find_course(course.primary) is course:
        task.courses.record_group_unaddable()

    message = f"[{crn}] Error adding course: {item.get('message') or 'Unknown error'}"
    task.logger.error(message)
    task.courses.enqueue_notification("Error Adding Course", message)


def add_courses_to_batch(task, cart):
    lines = []
    for item in cart.get("aaData", []):
        if not item.get("success"):
            handle_failed_add(task, item)
            continue

        # Cart lines offer "RW" and "internal-remove"; "WL" only shows up when the section is waitlisted
        model = copy.deepcopy(item.get("model") or {})
        crn = str(model.get("courseReferenceNumber", ""))
        if task.courses.can_waitlist(crn) and supports_waitlist(model):
            model["selectedAction"] = WAITLIST_ACTION
        elif not model.get("selectedAction"):
            model["selectedAction"] = REGISTER_ACTION
        lines.append(model)
    return lines


def add_drops_to_batch(task):
    task.scheduler.fail_if_stopped()

    held = {str(model.get("courseReferenceNumber")): model for model in task.courses.get_held_snapshot()}
    lines = []
    not_held = []
    for crn in sorted(task.courses.drop_queue):
        model = held.get(crn)
        if model is None:
            not_held.append(crn)
            continue

        # A held section only offers "DW" and None
        line = copy.deepcopy(model)
        line["selectedAction"] = DROP_ACTION
        lines.append(line)
        task.logger.info(f"Enqueuing CRN {crn} to drops.")

    for crn in not_held:
        task.courses.dequeue_drop(crn)
        task.logger.info(f"Not currently enrolled in CRN {crn}. Removing from drop queue.")

    return lines


def create_batch(unique_session_id, updates):
    return {
        "create": [],
        "destroy": [],
        "uniqueSessionId": unique_session_id,
        "update": updates,
    }


def prepare_batch(task):
    """Returns the batch payload, or None when no add line survived the cart."""
    task.scheduler.fail_if_stopped()

    start = time.monotonic()
    cart = task.portal.add_registration_items(task.config.term_code, sorted(task.courses.registration_queue))
    log_duration(task, start, "Adding CRNs to cart")
    task.logger.info("Added CRNs to cart.")

    add_lines = add_courses_to_batch(task, cart)
    if not add_lines:
        return None

    drop_lines = add_drops_to_batch(task)
    if drop_lines:
        task.logger.info(f"Added {len(drop_lines)} course{plural(len(drop_lines))} to drop queue.")

    return create_batch(task.portal.unique_session_id, add_lines + drop_lines)


def prepare_for_registration(task):
    task.courses.clear_held_snapshot()
    start = time.monotonic()

    task.authenticator.authenticate(task)
    task.scheduler.fail_if_stopped()
    task.portal.prepare_for_registration(task.config.term_code)
    task.courses.set_held_snapshot(task.portal.fetch_held_snapshot())

    log_duration(task, start, "Preparing for registration")


# --- Submission and review ---
def send_batch(task, batch):
    task.scheduler.fail_if_stopped()

    start = time.monotonic()
    response = task.portal.submit_batch(batch)
    task.logger.info("Sent registration request.")
    log_duration(task, start, "Sending batch")
    return response


def ineligible_reason(message, reasons):
    for reason in reasons:
        if reason in message:
            return reason
    return None


def status_description(status):
    return "Dropped" if status == "Deleted" else status


def first_message(update):
    # The first message is usually the most important one
    messages = update.get("messages") or []
    if messages and isinstance(messages[0], dict):
        return messages[0].get("message") or ""
    return ""


def process_update(task, update):
    crn = str(update.get("courseReferenceNumber", ""))
    if not task.courses.is_queued(crn):
        return

    course_code = format_course_code(update.get("subject", ""), update.get("courseDisplay", ""))
    message = f"[{crn}] {course_code} - "
    status = status_description(update.get("statusDescription", ""))

    if status in SUCCESS_STATUSES:
        message += f"Successfully {status}"
        task.courses.remove_course(crn)
    else:
        error_message = first_message(update) or status
        reason = ineligible_reason(error_message, task.config.ineligible_reasons)
        if reason:
            error_message = reason
            task.courses.remove_course(crn)
        else:
            task.courses.record_group_unaddable()
            if not any(retryable in error_message for retryable in RETRYABLE_REASONS):
                task.logger.warning(f"Unrecognized registration error for CRN {crn}: '{error_message}'. "
                                    f"Retrying; add it to ineligible_reasons if it should stop this course.")
        message += f"{status} - {error_message}"

    task.logger.info(message)
    task.courses.enqueue_notification(course_code, message)


def review_batch_response(task, response):
    task.scheduler.fail_if_stopped()

    if not isinstance(response, dict) or not response.get("success"):
        raise PortalRequestError("Batch response was unsuccessful.")

    for update in (response.get("data") or {}).get("update") or []:
        process_update(task, update)

    task.courses.clear_queues()
    task.courses.clear_held_snapshot()


def finalize_registration(task):
    queue_size = len(task.courses.registration_queue)
    if queue_size == 0:
        return NOTHING_QUEUED

    task.logger.info(f"Added {queue_size} course{plural(queue_size)} to registration queue.")

    start = time.monotonic()
    prepare_for_registration(task)

    batch = prepare_batch(task)
    if batch is None:
        log_duration(task, start, "Registration (no courses)")
        task.logger.error(NO_COURSES_ADDED)
        task.courses.clear_queues()
        task.courses.clear_held_snapshot()
        return NO_COURSES_ADDED

    response = send_batch(task, batch)
    log_duration(task, start, "Registration")

    review_batch_response(task, response)
    return BATCH_SUBMITTED


def process_courses(task):
    """One pass: probe, select, batch, classify. Returns a short outcome description."""
    task.scheduler.fail_if_stopped()

    courses = list(task.courses.courses)
    crns = [crn for course in courses for crn in course.candidate_crns()]
    results = probe_enrollment(task, crns)

    for course in courses:
        best = select_for_course(task, course, results)
        if best is None:
            task.courses.record_group_unaddable()
            continue

        task.courses.enqueue_crn(best)
        if course.drop:
            task.courses.enqueue_drop(course.drop)
        task.logger.info(f"Enqueuing {task.courses.describe(best)}.")

    outcome = finalize_registration(task)
    notify_results(task)
    return outcome


# --- Failure policy ---
def is_transient_failure(error):
    if isinstance(error, PortalRequestError) and error.is_transient:
        return True
    return "HTTP 502" in str(error) or "HTTP 504" in str(error)


def wait_until_portal_online(task):
    announced = False
    while task.portal.portal_is_down():
        if not announced:
            notify_failure(task, "Portal Offline", "The portal is down. Waiting for it to come back online.",
                           always=False)
            announced = True
        if task.scheduler.sleep_for(PORTAL_RECHECK_SECONDS, "for portal to come back online") is WaitResult.CANCELLED:
            return StepResult.cancelled()
    return task.scheduler.checkpoint()


def wait_out_error(task, error):
    """Recovers from a failed pass. Returns CONTINUE, CANCELLED or FAILED(FATAL)."""
    notify_failure(task, "Error", str(error), always=False)
    task.courses.clear_queues()
    task.courses.clear_held_snapshot()
    notify_results(task)

    waited = wait_until_portal_online(task)
    if waited.is_cancelled:
        return waited

    # 502/504 mean the server is rebooting; the session survives that
    if is_transient_failure(error):
        return StepResult.proceed()

    try:
        task.authenticator.authenticate(task)
    except TaskCancelled as e:
        return StepResult.cancelled(str(e))
    except UnrecoverableError as e:
        return StepResult.failed(FailureKind.FATAL, str(e))
    return StepResult.proceed()


def attempt_registration(task):
    """Runs one pass and classifies how it ended."""
    try:
        outcome = process_courses(task)
    except TaskCancelled as e:
        return StepResult.cancelled(str(e))
    except UnrecoverableError as e:
        return StepResult.failed(FailureKind.FATAL, str(e))
    except Exception as e:
        task.logger.error(f"Error - {e}.")
        task.courses.reset_failures()
        recovered = wait_out_error(task, e)
        if recovered.outcome is not Outcome.CONTINUE:
            return recovered
        return StepResult.failed(FailureKind.RECOVERABLE, str(e))

    return StepResult.proceed(outcome)


def registration_loop(task, rng=None):
    """
    Repeats passes until the task is done.

    Returns:
        StepResult: CONTINUE when the loop ended normally, CANCELLED, or FAILED(FATAL).
    """
    rng = rng or random.Random()
    config = task.config
    attempts = 0

    while task.courses.has_courses():
        result = attempt_registration(task)
        if result.is_cancelled or result.is_fatal:
            return result

        # A recovered failure goes straight back to the top of the loop
        if result.is_recoverable:
            continue

        # Either registered for everything or nothing failed this pass
        if not task.courses.has_courses() or not task.courses.has_failures():
            break

        # Some courses were full but the user doesn't want to watch for open seats
        if not config.watch_for_open_seats:
            task.logger.info("Not watching for open seats. Stopping with unresolved courses.")
            break

        attempts += 1
        if attempts >= config.reauthenticate_after:
            try:
                task.authenticator.authenticate(task)
            except TaskCancelled as e:
                return StepResult.cancelled(str(e))
            except UnrecoverableError as e:
                return StepResult.failed(FailureKind.FATAL, str(e))
            attempts = 0

        task.courses.reset_failures()

        delay = rng.uniform(config.min_wait_seconds, config.max_wait_seconds)
        task.logger.info(f"Checking again in {delay:.2f} seconds.")
        if task.scheduler.sleep_for(delay) is WaitResult.CANCELLED:
            return StepResult.cancelled()

        checkpoint = task.scheduler.checkpoint()
        if checkpoint.is_cancelled:
            return checkpoint

    return StepResult.proceed("Registration finished.")


# --- Before registration opens ---
def populate_course_details(task):
    """Looks up every configured CRN; any CRN the portal doesn't know ends the task."""
    invalid = []
    for course in task.courses.courses:
        for crn in course.all_crns():
            task.scheduler.fail_if_stopped()
            try:
                task.courses.course_codes[crn] = task.portal.get_course_code(task.config.term_code, crn)
            except UnrecoverableError:
                invalid.append(crn)

    if invalid:
        raise UnrecoverableError(
            f"The following CRNs are invalid or not available for the term: {', '.join(invalid)}"
        )


def prepare_task(task):
    """
    Signs in, validates the CRNs, and waits until registration opens.

    Raises:
        TaskCancelled, UnrecoverableError, PortalRequestError
    """
    task.scheduler.fail_if_stopped()

    task.authenticator.authenticate(task)
    populate_course_details(task)
    task.courses.display_courses(task.logger)

    if not task.scheduler.has_registration_instant():
        raise UnrecoverableError("Error getting registration time.")
    task.logger.info(f"Registration time: {task.scheduler.registration_time_label}")

    if task.scheduler.sleep_until_pre_auth_window() is WaitResult.CANCELLED:
        raise TaskCancelled()
    task.authenticator.authenticate(task)

    if task.scheduler.sleep_until_open() is WaitResult.CANCELLED:
        raise TaskCancelled()

    # Registration doesn't always open right at the advertised time
    while True:
        task.scheduler.fail_if_stopped()
        try:
            if task.portal.registration_is_open(task.config.term_code):
                break
        except PortalRequestError as e:
            task.logger.warning(f"Could not check whether registration is open: {e}")

        task.logger.info("Registration not yet open. Waiting...")
        if task.scheduler.sleep_for(OPEN_RECHECK_SECONDS) is WaitResult.CANCELLED:
            raise TaskCancelled()

    task.logger.info("Registration is open.")
