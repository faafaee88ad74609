import textwrap

import pytest

from config_loader import (
    DEFAULT_INELIGIBLE_REASONS,
    build_term_code,
    is_config_file,
    load_task_config,
    resolve_term_code,
)
from errors import ConfigError

FULL_CONFIG = """
login:
  username: "20123456"
  password: "hunter22"
term:
  term: "2026 Winter De Anza"
settings:
  display_cwid: false
  enable_logging: false
  watch_for_open_seats: true
  automatically_waitlist: false
  min_wait_seconds: 2
  max_wait_seconds: 4
notifications:
  enable_notifications: true
  discord_webhook: "https://discord.com/api/webhooks/123/abc"
  send_failure_notifications: false
courses:
  - primary: "41234"
    backups: ["41235", "41236"]
    drop_on_open: "40001"
    prioritize_open_seats: true
  - primary: 42000
    waitlist: true
"""


def write_config(tmp_path, body, name="student.yaml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def test_load_full_config(tmp_path):
    path = write_config(tmp_path, FULL_CONFIG)

    config, courses = load_task_config(path)

    assert config.cwid == "20123456"
    assert config.term_code == "202632"
    assert config.path == str(path)
    assert not config.display_cwid
    assert not config.automatically_waitlist
    assert config.enable_notifications
    assert not config.notify_failures
    assert (config.min_wait_seconds, config.max_wait_seconds) == (2.0, 4.0)
    assert config.ineligible_reasons == DEFAULT_INELIGIBLE_REASONS

    first, second = courses
    assert first.candidate_crns() == ["41234", "41235", "41236"]
    assert first.drop == "40001"
    assert first.prioritize_open_seats
    # Courses inherit automatically_waitlist unless they say otherwise
    assert not first.waitlist
    assert second.primary == "42000"
    assert second.waitlist


def test_duplicate_crn_is_rejected(tmp_path):
    path = write_config(tmp_path, FULL_CONFIG.replace('"41236"', '"41234"'))
    with pytest.raises(ConfigError, match="Duplicate CRN 41234"):
        load_task_config(path)


def test_missing_courses_is_rejected(tmp_path):
    body = FULL_CONFIG.split("courses:")[0]
    with pytest.raises(ConfigError, match="No courses"):
        load_task_config(write_config(tmp_path, body))


def test_wrong_cwid_length_is_rejected(tmp_path):
    path = write_config(tmp_path, FULL_CONFIG.replace('"20123456"', '"2012"'))
    with pytest.raises(ConfigError, match="CWID"):
        load_task_config(path)


def test_password_falls_back_to_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("MYPORTAL_PASSWORD", "from-env")
    path = write_config(tmp_path, FULL_CONFIG.replace('  password: "hunter22"\n', ''))

    config, _ = load_task_config(path)

    assert config.password == "from-env"


def test_ineligible_reasons_can_be_overridden(tmp_path):
    body = FULL_CONFIG + 'ineligible_reasons:\n  - "Prereq not met"\n  - "Department approval"\n'
    config, _ = load_task_config(write_config(tmp_path, body))
    assert config.ineligible_reasons == ("Prereq not met", "Department approval")


@pytest.mark.parametrize("old, new, error", [
    ('login:\n  username: "20123456"\n  password: "hunter22"\n', 'login: abc\n', "'login' must be a mapping"),
    ('notifications:\n  enable_notifications: true\n', 'notifications: [discord]\nunused:\n  enable_notifications: true\n',
     "'notifications' must be a mapping"),
    ('backups: ["41235", "41236"]', 'backups: 41235', "'backups' for CRN 41234"),
    ('min_wait_seconds: 2', 'min_wait_seconds: soon', "'min_wait_seconds' must be a number"),
])
def test_badly_shaped_sections_are_rejected(tmp_path, old, new, error):
    assert old in FULL_CONFIG
    path = write_config(tmp_path, FULL_CONFIG.replace(old, new))
    with pytest.raises(ConfigError, match=error):
        load_task_config(path)


@pytest.mark.parametrize("value", [0, -5])
def test_reauthenticate_after_must_be_positive(tmp_path, value):
    body = FULL_CONFIG.replace("  max_wait_seconds: 4\n", f"  max_wait_seconds: 4\n  reauthenticate_after: {value}\n")
    with pytest.raises(ConfigError, match="reauthenticate_after"):
        load_task_config(write_config(tmp_path, body))


def test_non_yaml_file_is_rejected(tmp_path):
    path = write_config(tmp_path, FULL_CONFIG, name="student.txt")
    with pytest.raises(ConfigError):
        load_task_config(path)


def test_malformed_yaml_is_rejected(tmp_path):
    path = write_config(tmp_path, "login: [unclosed\n")
    with pytest.raises(ConfigError):
        load_task_config(path)


def test_terms_from_portal_are_preferred(tmp_path):
    path = write_config(tmp_path, FULL_CONFIG)
    config, _ = load_task_config(path, terms_provider=lambda: {"2026 Winter De Anza": "209932"})
    assert config.term_code == "209932"


def test_failing_terms_provider_falls_back_to_local_code(tmp_path):
    def broken_provider():
        raise RuntimeError("portal unreachable")

    config, _ = load_task_config(write_config(tmp_path, FULL_CONFIG), terms_provider=broken_provider)
    assert config.term_code == "202632"


def test_unknown_term_on_portal_is_rejected():
    with pytest.raises(ConfigError):
        resolve_term_code("2019 Fall Foothill", {"2026 Winter De Anza": "202632"})


@pytest.mark.parametrize("term, expected", [
    ("2025 Fall De Anza", "202622"),
    ("2025 Summer Foothill", "202611"),
    ("2026 Winter Foothill", "202631"),
    ("2026 Spring De Anza", "202642"),
])
def test_build_term_code(term, expected):
    assert build_term_code(term) == expected


@pytest.mark.parametrize("term", ["Fall 2025", "2025 Autumn De Anza", "2025 Fall Mission"])
def test_build_term_code_rejects_unknown_terms(term):
    with pytest.raises(ConfigError):
        build_term_code(term)


def test_is_config_file():
    assert is_config_file("configs/a.yaml")
    assert is_config_file("configs/B.YML")
    assert not is_config_file("configs/notes.txt")
