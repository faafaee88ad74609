import json
import logging
import random
import string
import time

import requests

from enrollment import EnrollmentInfo, parse_seat_counts
from errors import PortalRequestError, UnrecoverableError

# --- API Endpoints ---
REG_BASE_URL = "https://reg.oci.fhda.edu/StudentRegistrationSsb"

TERM_SELECT_CLASS_REG_URL = f"{REG_BASE_URL}/ssb/term/termSelection?mode=registration"
TERM_CONFIRM_CLASS_REG_URL = f"{REG_BASE_URL}/ssb/term/search?mode=registration"
TERM_CONFIRM_PRE_REG_URL = f"{REG_BASE_URL}/ssb/term/search?mode=preReg"
PREPARE_REG_URL = f"{REG_BASE_URL}/ssb/prepareRegistration/prepareRegistration"
BATCH_URL = f"{REG_BASE_URL}/ssb/classRegistration/submitRegistration/batch"
ADD_CRN_REG_ITEMS_URL = f"{REG_BASE_URL}/ssb/classRegistration/addCRNRegistrationItems"
REG_DASHBOARD_URL = f"{REG_BASE_URL}/ssb/registration"
CLASS_REG_URL = f"{REG_BASE_URL}/ssb/classRegistration/classRegistration"
SECTION_DETAILS_URL = f"{REG_BASE_URL}/ssb/classRegistration/getSectionDetailsFromCRN"
ENROLLMENT_INFO_URL = f"{REG_BASE_URL}/ssb/searchResults/getEnrollmentInfo"
TERMS_URL = f"{REG_BASE_URL}/ssb/classSearch/getTerms"

# --- Headers ---
BASE_COMMON_HEADERS = {
    'accept': '*/*',
    'accept-encoding': 'gzip, deflate, br',
    'accept-language': 'en-US,en;q=0.9',
    'content-type': 'application/x-www-form-urlencoded',
    'user-agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/138.0.0.0 Safari/537.36'
}

REQUEST_TIMEOUT_SECONDS = 30
HEALTH_CHECK_TIMEOUT_SECONDS = 10
ENROLLMENT_CHECK_ATTEMPTS = 3

SUMMARY_MODELS_START = "summaryModels:"
SUMMARY_MODELS_END = "summaryDisplayConfig"
VIEW_ONLY_SUFFIX = " (View Only)"


def get_json_headers():
    headers = BASE_COMMON_HEADERS.copy()
    headers['content-type'] = 'application/json'
    return headers


def generate_unique_session_id():
    """
    Builds an 18-character session id the way the portal's own pages do: five
    lowercase letters (one of which is sometimes a digit) followed by the UNIX
    timestamp in milliseconds.
    """
    chars = [random.choice(string.ascii_lowercase) for _ in range(5)]
    if random.random() < 0.5:
        chars[random.randrange(5)] = random.choice(string.digits)
    return "".join(chars) + str(int(time.time() * 1000))


def portal_is_down():
    """Returns True when the registration portal cannot be reached or reports an internal error."""
    try:
        response = requests.get(TERM_SELECT_CLASS_REG_URL, headers=BASE_COMMON_HEADERS,
                                timeout=HEALTH_CHECK_TIMEOUT_SECONDS, allow_redirects=False)
    except requests.exceptions.RequestException as e:
        logging.debug(f"Portal health check failed: {e}")
        return True

    return response.status_code >= 500 and "internal error" in response.text


def check_response_code(response):
    code = response.status_code
    if 200 <= code < 400:
        return

    message = f"Error: HTTP {code}"
    if code >= 500 and portal_is_down():
        message += " - Portal is down."
    raise PortalRequestError(message, status_code=code)


def parse_json_response(text):
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise PortalRequestError(f"Failed to parse JSON response: {e}") from e


def extract_summary_models(html):
    """
    Pulls the user's currently-registered models out of the class registration page.

    They're embedded in a `window.bootstraps = {...}` script as
    `summaryModels: [ ... ], summaryDisplayConfig: [ ... ]`, so everything between
    those two keys (minus the trailing comma) is a JSON array.
    """
    start = html.find(SUMMARY_MODELS_START)
    if start == -1:
        raise PortalRequestError("Could not find registered courses on the class registration page.")
    start += len(SUMMARY_MODELS_START)

    end = html.find(SUMMARY_MODELS_END, start)
    if end == -1:
        raise PortalRequestError("Could not find the end of the registered courses block.")

    models = html[start:end].strip()
    if models.endswith(','):
        models = models[:-1]

    parsed = parse_json_response(models)
    if not isinstance(parsed, list):
        raise PortalRequestError("Registered courses block was not a list.")
    return parsed


def format_course_code(subject, course_display):
    course_code = f"{subject} {course_display}"
    # The dot looks ugly when we put a hyphen next to it
    return course_code[:-1] if course_code.endswith('.') else course_code


def extract_course_code(details):
    """
    Derives e.g. 'COMM C1000H' from the section details JSON.

    `responseDisplay` is `courseTitle` + ' ' + code + ', ' + `sequenceNumber`; the
    old `courseNumber` field still uses the pre-CCN numbering so it isn't used.
    """
    display = details.get("responseDisplay", "")
    title = details.get("courseTitle", "")
    sequence = details.get("sequenceNumber", "")

    offset = 1
    if "&amp;" in display or "&#39;" in display:
        offset += 4

    code = display[len(title) + offset:]
    if sequence:
        code = code[:-(len(sequence) + 2)]
    return code[:-1] if code.endswith('.') else code


class MyPortalClient:
    """
    HTTP access to the registration portal for one task. Owns that task's
    requests.Session and the portal's `uniqueSessionId`.
    """

    def __init__(self, timeout=REQUEST_TIMEOUT_SECONDS):
        self.timeout = timeout
        self.session = None
        self.unique_session_id = ""
        self.reset_session()

    def reset_session(self):
        if self.session is not None:
            self.session.close()
        self.session = requests.Session()
        self.session.headers.update(BASE_COMMON_HEADERS)
        self.regenerate_session_id()

    def regenerate_session_id(self):
        self.unique_session_id = generate_unique_session_id()

    def send_request(self, method, url, session=None, **kwargs):
        """Sends a request without following redirects and raises PortalRequestError on failure."""
        kwargs.setdefault('timeout', self.timeout)
        kwargs.setdefault('allow_redirects', False)
        try:
            response = (session or self.session).request(method, url, **kwargs)
        except requests.exceptions.RequestException as e:
            raise PortalRequestError(f"Request Exception: {e}") from e

        check_response_code(response)
        return response

    def portal_is_down(self):
        return portal_is_down()

    # --- Term selection ---
    def visit_registration_dashboard(self):
        self.send_request('HEAD', REG_DASHBOARD_URL)

    def select_registration_term(self):
        self.send_request('HEAD', TERM_SELECT_CLASS_REG_URL)

    def confirm_registration_term(self, term_code):
        return self.send_request('POST', TERM_CONFIRM_CLASS_REG_URL, data=self._term_payload(term_code)).text

    def visit_class_registration(self):
        return self.send_request('GET', CLASS_REG_URL).text

    def fetch_registration_time_html(self, term_code):
        self.send_request('POST', TERM_CONFIRM_PRE_REG_URL, data=self._term_payload(term_code))
        return self.send_request('GET', PREPARE_REG_URL).text

    def registration_is_open(self, term_code):
        """
        Registration is open once confirming the term no longer reports
        `studentEligFailures` (e.g. "You have no Registration Time Ticket for the
        current time."); at that point only `fwdURL` comes back.
        """
        self.visit_registration_dashboard()
        self.select_registration_term()
        data = parse_json_response(self.confirm_registration_term(term_code))
        return "studentEligFailures" not in data

    def prepare_for_registration(self, term_code):
        self.visit_registration_dashboard()
        self.select_registration_term()
        self.confirm_registration_term(term_code)

    def _term_payload(self, term_code):
        return {
            "term": term_code,
            "studyPath": "",
            "studyPathText": "",
            "startDatepicker": "",
            "endDatepicker": "",
            "uniqueSessionId": self.unique_session_id,
        }

    # --- Availability ---
    def check_enrollment(self, term_code, crn):
        """
        Probes one CRN's seats. Uses a throwaway session so concurrent probes
        never share connection state with the task's logged-in session.

        Raises:
            PortalRequestError: after ENROLLMENT_CHECK_ATTEMPTS failed attempts.
        """
        params = {"term": term_code, "courseReferenceNumber": crn}
        last_error = None
        for _ in range(ENROLLMENT_CHECK_ATTEMPTS):
            with requests.Session() as probe_session:
                probe_session.headers.update(BASE_COMMON_HEADERS)
                try:
                    html = self.send_request('POST', ENROLLMENT_INFO_URL, session=probe_session, params=params).text
                    return EnrollmentInfo.from_seats(parse_seat_counts(html))
                except (PortalRequestError, ValueError) as e:
                    last_error = e

        raise PortalRequestError(f"[{crn}] Error getting course information ({last_error})")

    def get_course_code(self, term_code, crn):
        response = self.send_request('GET', SECTION_DETAILS_URL,
                                     params={"courseReferenceNumber": crn, "term": term_code})
        details = parse_json_response(response.text)

        # Only really happens when the CRN doesn't exist for the term
        if isinstance(details, dict) and details.get("success") is False:
            raise UnrecoverableError(f"Failed to get course details for CRN {crn}.")
        return extract_course_code(details)

    # --- Cart and batch ---
    def add_registration_items(self, term_code, crns):
        response = self.send_request('POST', ADD_CRN_REG_ITEMS_URL,
                                     data={"crnList": ",".join(crns), "term": term_code})
        cart = parse_json_response(response.text)
        if not isinstance(cart, dict) or not isinstance(cart.get("aaData"), list):
            raise PortalRequestError("Cart response did not contain any registration items.")
        return cart

    def fetch_held_snapshot(self):
        return extract_summary_models(self.visit_class_registration())

    def submit_batch(self, batch):
        response = self.send_request('POST', BATCH_URL, data=json.dumps(batch), headers=get_json_headers())
        return parse_json_response(response.text)

    # --- Terms ---
    def fetch_terms(self):
        """Returns {description: code}, e.g. {'2026 Winter De Anza': '202632'}."""
        response = self.send_request('GET', TERMS_URL, params={"searchTerm": "", "offset": "1", "max": "4"})
        terms = {}
        for term in parse_json_response(response.text):
            description = term.get("description", "")
            if description.endswith(VIEW_ONLY_SUFFIX):
                description = description[:-len(VIEW_ONLY_SUFFIX)]
            terms[description] = term.get("code")
        return terms

    def close(self):
        if self.session is not None:
            self.session.close()
