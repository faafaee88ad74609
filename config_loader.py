import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import yaml

from course_queue import Course
from errors import ConfigError

CONFIG_SUFFIXES = (".yaml", ".yml")
CWID_LENGTH = 8

# Portal messages that mean the student can never add the section this term.
# Matched as substrings of the first error message on a batch update.
DEFAULT_INELIGIBLE_REASONS = (
    "Corequisite",
    "Prereq not met",
    "Class passed. No repeats",
    "Time conflict. Registration prohibited",
    "Exceeded unit maximum",
    "The add period is over",
    "Duplicate Course",
    "Duplicate Equivalent",
    "Authorization required",
    "Cohort Restriction",
    "Program Restriction",
    "Special Projects",
)

SEASON_DIGITS = {"Summer": "1", "Fall": "2", "Winter": "3", "Spring": "4"}
CAMPUS_DIGITS = {"F": "1", "D": "2"}


@dataclass(frozen=True)
class TaskConfig:
    cwid: str
    password: str
    term: str
    term_code: str
    path: str = ""
    display_cwid: bool = True
    enable_logging: bool = True
    watch_for_open_seats: bool = True
    automatically_waitlist: bool = True
    enable_notifications: bool = False
    discord_webhook: str = ""
    notify_failures: bool = True
    min_wait_seconds: float = 3.0
    max_wait_seconds: float = 6.0
    reauthenticate_after: int = 500
    ineligible_reasons: Tuple[str, ...] = field(default=DEFAULT_INELIGIBLE_REASONS)


def is_config_file(path) -> bool:
    return Path(path).suffix.lower() in CONFIG_SUFFIXES


def build_term_code(term_description: str) -> str:
    """
    Converts 'YYYY Season Campus' to 'YYYYSC' without asking the portal.

    Summer -> 1, Fall -> 2, Winter -> 3, Spring -> 4; Summer and Fall belong to the
    next academic year (so 2025 Fall is 202622). Foothill -> 1, De Anza -> 2.
    """
    parts = term_description.split()
    if len(parts) < 3 or not parts[0].isdigit() or parts[1] not in SEASON_DIGITS:
        raise ConfigError(f"Invalid term: {term_description}")

    year = int(parts[0])
    if parts[1] in ("Summer", "Fall"):
        year += 1

    campus = CAMPUS_DIGITS.get(parts[2][:1])
    if campus is None:
        raise ConfigError(f"Invalid term: {term_description}")

    return f"{year}{SEASON_DIGITS[parts[1]]}{campus}"


def resolve_term_code(term_description: str, terms: Optional[Dict[str, str]]) -> str:
    if not terms:
        logging.warning("Could not get terms from server. Manually building term code.")
        return build_term_code(term_description)

    if term_description not in terms:
        raise ConfigError(f"Invalid or out-of-date term in configuration file: {term_description}")
    return terms[term_description]


def _ensure_unique(seen: set, crn: str) -> str:
    crn = str(crn).strip()
    if not crn:
        raise ConfigError("Empty CRN found in config file.")
    if crn in seen:
        raise ConfigError(f"Duplicate CRN {crn} found in config file.")
    seen.add(crn)
    return crn


def _section(parsed: dict, name: str) -> dict:
    section = parsed.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' must be a mapping in config file.")
    return section


def _number(settings: dict, key: str, default, cast):
    try:
        return cast(settings.get(key, default))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'{key}' must be a number.") from e


def read_courses(raw_courses, default_waitlist: bool) -> List[Course]:
    if not raw_courses or not isinstance(raw_courses, list):
        raise ConfigError("No courses listed in config file.")

    seen = set()
    courses = []
    for entry in raw_courses:
        if not isinstance(entry, dict):
            continue
        if "primary" not in entry:
            raise ConfigError("Course missing required 'primary' field.")

        primary = _ensure_unique(seen, entry["primary"])
        raw_backups = entry.get("backups") or []
        if not isinstance(raw_backups, list):
            raise ConfigError(f"'backups' for CRN {primary} must be a list of CRNs.")
        backups = [_ensure_unique(seen, backup) for backup in raw_backups]
        drop = entry.get("drop_on_open")
        if drop:
            drop = _ensure_unique(seen, drop)

        courses.append(Course(
            primary=primary,
            backups=backups,
            drop=drop or None,
            prioritize_open_seats=bool(entry.get("prioritize_open_seats", False)),
            waitlist=bool(entry.get("waitlist", default_waitlist)),
        ))

    if not courses:
        raise ConfigError("No courses listed in config file.")
    return courses


def read_settings(parsed: dict, path: str, terms: Optional[Dict[str, str]]) -> TaskConfig:
    login = _section(parsed, "login")
    term_section = _section(parsed, "term")
    settings = _section(parsed, "settings")
    notifications = _section(parsed, "notifications")

    cwid = str(login.get("username") or "").strip()
    # Passwords can stay out of the config file and live in .env instead
    password = str(login.get("password") or os.getenv("MYPORTAL_PASSWORD") or "")
    term = str(term_section.get("term") or "").strip()

    if not cwid or not password or not term:
        raise ConfigError("Missing required fields in config file.")
    if len(cwid) != CWID_LENGTH:
        raise ConfigError(f"CWID has wrong length (expected {CWID_LENGTH}, got {len(cwid)}).")

    min_wait = _number(settings, "min_wait_seconds", 3.0, float)
    max_wait = _number(settings, "max_wait_seconds", 6.0, float)
    if min_wait < 0 or max_wait < min_wait:
        raise ConfigError("Wait bounds must satisfy 0 <= min_wait_seconds <= max_wait_seconds.")

    reauthenticate_after = _number(settings, "reauthenticate_after", 500, int)
    if reauthenticate_after < 1:
        raise ConfigError("'reauthenticate_after' must be at least 1.")

    reasons = parsed.get("ineligible_reasons")
    if reasons is None:
        reasons = DEFAULT_INELIGIBLE_REASONS
    elif not isinstance(reasons, list):
        raise ConfigError("'ineligible_reasons' must be a list of strings.")

    return TaskConfig(
        cwid=cwid,
        password=password,
        term=term,
        term_code=resolve_term_code(term, terms),
        path=path,
        display_cwid=bool(settings.get("display_cwid", True)),
        enable_logging=bool(settings.get("enable_logging", True)),
        watch_for_open_seats=bool(settings.get("watch_for_open_seats", True)),
        automatically_waitlist=bool(settings.get("automatically_waitlist", True)),
        enable_notifications=bool(notifications.get("enable_notifications", False)),
        discord_webhook=str(notifications.get("discord_webhook") or ""),
        notify_failures=bool(notifications.get("send_failure_notifications", True)),
        min_wait_seconds=min_wait,
        max_wait_seconds=max_wait,
        reauthenticate_after=reauthenticate_after,
        ineligible_reasons=tuple(str(reason) for reason in reasons),
    )


def load_task_config(path, terms_provider: Optional[Callable[[], Dict[str, str]]] = None):
    """
    Reads one job definition.

    Args:
        path: Path to a .yaml/.yml config file.
        terms_provider: Returns the portal's {term description: term code} map.
                        When it is missing or fails, the term code is built locally.

    Returns:
        tuple: (TaskConfig, list[Course])

    Raises:
        ConfigError: if the file is missing, malformed or fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path.name}")
    if not is_config_file(path):
        raise ConfigError(f"Skipping non-YAML file: {path.name}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            parsed = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        raise ConfigError(f"Error reading {path.name}: {e}") from e

    if not isinstance(parsed, dict):
        raise ConfigError(f"{path.name} does not contain a mapping at the top level.")

    terms = None
    if terms_provider is not None:
        try:
            terms = terms_provider()
        except Exception as e:
            logging.warning(f"Failed to fetch terms from the portal: {e}")

    config = read_settings(parsed, str(path), terms)
    courses = read_courses(parsed.get("courses"), config.automatically_waitlist)
    return config, courses
