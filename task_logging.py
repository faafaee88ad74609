import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytz

PACIFIC_TZ = pytz.timezone('America/Los_Angeles')

CONSOLE_FORMAT = '%(asctime)s [%(levelname).1s] %(message)s'
CONSOLE_DATEFMT = '%Y-%m-%d %I:%M:%S %p %Z'
FILE_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'

TASK_LOGGER_PREFIX = "myportal.task"


# --- Custom Logging Formatter for Pacific Time ---
class PacificTimeFormatter(logging.Formatter):
    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created, timezone.utc)
        dt_pt = dt.astimezone(PACIFIC_TZ)
        if datefmt:
            return dt_pt.strftime(datefmt)
        return dt_pt.isoformat(timespec='milliseconds')


def configure_logging(level=logging.INFO):
    """Sets up the operator console log on stdout."""
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(PacificTimeFormatter(fmt=CONSOLE_FORMAT, datefmt=CONSOLE_DATEFMT))
    # Task loggers run at DEBUG for their files, so the console filters on its own
    console_handler.setLevel(level)

    logging.basicConfig(level=level, handlers=[console_handler], force=True)


def make_task_id(cwid, term_code):
    """'20123456' + '202632' -> '20123456-DA'. The last digit of a term code names the campus."""
    campus = {'1': 'FH', '2': 'DA'}.get(term_code[-1:] if term_code else '')
    if campus is None:
        raise ValueError(f"Unknown school in term code: {term_code}")
    return f"{cwid}-{campus}"


class TaskLogAdapter(logging.LoggerAdapter):
    """Prefixes every record with the task id, or nothing when ids are hidden."""

    def process(self, msg, kwargs):
        label = self.extra.get("label")
        return (f"[{label}] {msg}" if label else msg), kwargs


def create_task_logger(task_id, display_id=True, log_to_file=False, logs_dir="logs"):
    """
    Returns a logger adapter for one task. When `log_to_file` is set a debug-level
    file handler is attached; call close_task_logger() when the task ends.
    """
    logger = logging.getLogger(f"{TASK_LOGGER_PREFIX}.{task_id}")
    logger.setLevel(logging.DEBUG)

    if log_to_file:
        logs_path = Path(logs_dir)
        logs_path.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(timezone.utc).astimezone(PACIFIC_TZ).strftime('%Y-%m-%dT%H-%M-%S')
        file_handler = logging.FileHandler(logs_path / f"{task_id}_{timestamp}.txt", encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(PacificTimeFormatter(fmt=FILE_FORMAT))
        logger.addHandler(file_handler)

    return TaskLogAdapter(logger, {"label": task_id if display_id else ""})


def close_task_logger(adapter):
    logger = adapter.logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
