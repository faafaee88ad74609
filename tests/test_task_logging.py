import logging

import pytest

from task_logging import PacificTimeFormatter, close_task_logger, create_task_logger, make_task_id


def test_make_task_id_uses_campus_digit():
    assert make_task_id("20123456", "202632") == "20123456-DA"
    assert make_task_id("20123456", "202631") == "20123456-FH"
    with pytest.raises(ValueError):
        make_task_id("20123456", "202639")


def test_task_logger_prefixes_task_id(caplog):
    adapter = create_task_logger("20123456-DA")
    with caplog.at_level(logging.INFO):
        adapter.info("Successfully signed in.")
    close_task_logger(adapter)

    assert "[20123456-DA] Successfully signed in." in caplog.messages


def test_task_logger_can_hide_id(caplog):
    adapter = create_task_logger("20123456-FH", display_id=False)
    with caplog.at_level(logging.INFO):
        adapter.info("Registration is open.")
    close_task_logger(adapter)

    assert "Registration is open." in caplog.messages


def test_task_logger_writes_debug_file(tmp_path):
    adapter = create_task_logger("20123456-DA", log_to_file=True, logs_dir=tmp_path)
    adapter.debug("Signing in...")
    close_task_logger(adapter)

    log_files = list(tmp_path.glob("20123456-DA_*.txt"))
    assert len(log_files) == 1
    assert "[DEBUG] [20123456-DA] Signing in..." in log_files[0].read_text(encoding="utf-8")
    assert adapter.logger.handlers == []


def test_pacific_formatter_renders_local_time():
    formatter = PacificTimeFormatter(fmt="%(asctime)s %(message)s", datefmt="%Y-%m-%d %I:%M %p %Z")
    record = logging.LogRecord("tests", logging.INFO, __file__, 1, "hello", None, None)
    record.created = 1745253000.0  # 2025-04-21 16:30 UTC

    assert formatter.format(record) == "2025-04-21 09:30 AM PDT hello"
