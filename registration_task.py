from dataclasses import dataclass, field
from typing import Any

from config_loader import TaskConfig, load_task_config
from course_queue import CourseQueueManager
from discord_notifier import TaskNotifier
from execution_scheduler import ExecutionScheduler
from myportal_auth import MyPortalAuthenticator
from myportal_client import MyPortalClient
from task_logging import close_task_logger, create_task_logger, make_task_id


@dataclass
class RegistrationTask:
    """
    Everything one registration job owns. Passed explicitly to every step of the
    registration flow; nothing about a task lives in module-level state.
    """
    config: TaskConfig
    courses: CourseQueueManager
    scheduler: ExecutionScheduler
    portal: Any
    authenticator: Any
    notifier: Any
    logger: Any
    task_id: str = field(default="")

    @property
    def path(self) -> str:
        return self.config.path

    def close(self):
        close = getattr(self.portal, "close", None)
        if close is not None:
            close()
        close_task_logger(self.logger)


def create_task(config_path, terms_provider=None) -> RegistrationTask:
    """Builds a fresh task, with empty queues, from a config file. Raises ConfigError."""
    config, courses = load_task_config(config_path, terms_provider)

    task_id = make_task_id(config.cwid, config.term_code)
    logger = create_task_logger(task_id, display_id=config.display_cwid, log_to_file=config.enable_logging)

    return RegistrationTask(
        config=config,
        courses=CourseQueueManager(courses),
        scheduler=ExecutionScheduler(logger=logger),
        portal=MyPortalClient(),
        authenticator=MyPortalAuthenticator(),
        notifier=TaskNotifier(
            webhook_url=config.discord_webhook,
            enabled=config.enable_notifications,
            notify_failures=config.notify_failures,
            footer=config.cwid if config.display_cwid else None,
        ),
        logger=logger,
        task_id=task_id,
    )
