import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from cancellation import FailureKind, StepResult, StopSignal, WaitResult
from config_loader import is_config_file
from errors import ConfigError, TaskCancelled
from myportal_client import portal_is_down
from registration_orchestrator import plural, prepare_task, registration_loop
from registration_task import create_task

DEBOUNCE_SECONDS = 0.2
HEALTH_RECHECK_SECONDS = 5
MONITOR_INTERVAL_SECONDS = 1


class FileAction(Enum):
    ADDED = "added"
    DELETED = "deleted"
    MODIFIED = "modified"
    MOVED = "moved"


def canonical_path(path) -> str:
    return str(Path(path).resolve())


# --- Job runner ---
def report_result(task, result):
    """Logs and notifies how a task ended. Runs exactly once per task."""
    if result.is_cancelled:
        task.logger.info(result.message)
        task.notifier.send("Task Cancelled", result.message)
    elif result.is_fatal:
        task.logger.error(f"Exiting Task - {result.message}")
        task.notifier.send("Exiting Task", result.message)
    else:
        remaining = len(task.courses.courses)
        if remaining:
            task.logger.info(f"Task finished with {remaining} unresolved course{plural(remaining)}.")
        else:
            task.logger.info("Task finished. Every course has been resolved.")


def run_task(task) -> StepResult:
    """Runs one task from sign-in to its last pass and returns how it ended."""
    try:
        prepare_task(task)
        result = registration_loop(task)
    except TaskCancelled as e:
        result = StepResult.cancelled(str(e))
    except Exception as e:
        # Anything escaping preparation ends the task; passes classify their own errors
        result = StepResult.failed(FailureKind.FATAL, str(e))

    report_result(task, result)
    return result


@dataclass
class TaskHandle:
    task: object
    thread: Optional[threading.Thread] = None
    result: Optional[StepResult] = None

    def is_finished(self) -> bool:
        return self.thread is not None and not self.thread.is_alive()


class ConfigEventHandler(FileSystemEventHandler):
    """Forwards config directory changes to the supervisor."""

    def __init__(self, supervisor):
        self.supervisor = supervisor

    def on_created(self, event):
        if not event.is_directory:
            self.supervisor.handle_file_event(FileAction.ADDED, event.src_path)

    def on_deleted(self, event):
        if not event.is_directory:
            self.supervisor.handle_file_event(FileAction.DELETED, event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            self.supervisor.handle_file_event(FileAction.MODIFIED, event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self.supervisor.handle_file_event(FileAction.MOVED, event.dest_path, old_path=event.src_path)


class TaskSupervisor:
    """
    Keeps one running task per config file in `config_dir`, starting, restarting
    and stopping tasks as files are added, edited, renamed or deleted.
    """

    def __init__(self, config_dir="configs", task_factory=create_task, health_probe=portal_is_down,
                 terms_provider=None, clock=time.monotonic, debounce_seconds=DEBOUNCE_SECONDS,
                 observer_factory=Observer):
        self.config_dir = Path(config_dir)
        self.task_factory = task_factory
        self.health_probe = health_probe
        self.terms_provider = terms_provider
        self.clock = clock
        self.debounce_seconds = debounce_seconds
        self.observer_factory = observer_factory

        self._tasks: Dict[str, TaskHandle] = {}
        self._lock = threading.Lock()
        self._last_events: Dict[str, float] = {}
        self._stop_signal = StopSignal()
        self._observer = None

    @property
    def running_paths(self):
        with self._lock:
            return sorted(self._tasks)

    def get_handle(self, path) -> Optional[TaskHandle]:
        with self._lock:
            return self._tasks.get(canonical_path(path))

    # --- Adding and removing tasks ---
    def add(self, path) -> bool:
        """Starts a task for `path` unless one is already running. Returns True if one was started."""
        key = canonical_path(path)
        name = Path(key).name
        if not is_config_file(key):
            logging.debug(f"Ignoring non-YAML file: {name}")
            return False

        with self._lock:
            if key in self._tasks:
                logging.info(f"A task for {name} is already running.")
                return False

        try:
            task = self.task_factory(key, self.terms_provider)
        except (ConfigError, ValueError) as e:
            logging.error(f"Could not start task for {name}: {e}")
            return False
        except Exception:
            logging.exception(f"Unexpected error creating task for {name}")
            return False

        with self._lock:
            if key in self._tasks:
                # Lost a race with another event for the same file
                task.close()
                return False
            handle = TaskHandle(task=task)
            self._tasks[key] = handle
            self.launch_task(handle)

        logging.info(f"Started task for {name}.")
        return True

    def remove(self, path) -> bool:
        """Stops and forgets the task for `path`, waiting for its thread. Returns False if none was running."""
        key = canonical_path(path)
        with self._lock:
            handle = self._tasks.pop(key, None)
        if handle is None:
            return False

        handle.task.scheduler.request_stop()
        if handle.thread is not None:
            handle.thread.join()
        logging.info(f"Removed task for {Path(key).name}.")
        return True

    def launch_task(self, handle):
        handle.thread = threading.Thread(
            target=self._run,
            args=(handle,),
            name=f"task-{getattr(handle.task, 'task_id', '') or 'unknown'}",
            daemon=True,
        )
        handle.thread.start()

    @staticmethod
    def _run(handle):
        try:
            handle.result = run_task(handle.task)
        finally:
            handle.task.close()

    # --- File events ---
    def _debounced(self, key) -> bool:
        now = self.clock()
        with self._lock:
            last = self._last_events.get(key)
            self._last_events[key] = now
        return last is not None and now - last < self.debounce_seconds

    def handle_file_event(self, action, path, old_path=None) -> bool:
        """
        Applies one config directory change. Editors fire several events per save,
        so a second event for the same file within the debounce window is ignored.

        Returns:
            bool: True if the event changed the set of running tasks.
        """
        relevant = is_config_file(path) or (old_path is not None and is_config_file(old_path))
        if not relevant:
            return False

        if self._debounced(canonical_path(path)):
            logging.debug(f"Ignoring repeated {action.value} event for {Path(path).name}.")
            return False

        if action is FileAction.ADDED:
            logging.info(f"Config added: {Path(path).name}")
            return self.add(path)

        if action is FileAction.DELETED:
            logging.info(f"Config deleted: {Path(path).name}")
            return self.remove(path)

        if action is FileAction.MODIFIED:
            logging.info(f"Config modified: {Path(path).name}. Restarting its task.")
            removed = self.remove(path)
            return self.add(path) or removed

        if action is FileAction.MOVED:
            logging.info(f"Config moved: {Path(old_path).name} -> {Path(path).name}")
            removed = old_path is not None and self.remove(old_path)
            return self.add(path) or removed

        return False

    # --- Lifecycle ---
    def wait_for_portal(self) -> bool:
        """Blocks until the portal answers. Returns False if the supervisor was stopped first."""
        while self.health_probe():
            logging.warning(f"MyPortal is down. Checking again in {HEALTH_RECHECK_SECONDS} seconds.")
            if self._stop_signal.wait_for(HEALTH_RECHECK_SECONDS) is WaitResult.CANCELLED:
                return False
        return True

    def load_initial_tasks(self) -> int:
        if not self.wait_for_portal():
            return 0

        started = 0
        for path in sorted(self.config_dir.iterdir()):
            if path.is_file() and is_config_file(path):
                started += int(self.add(path))

        logging.info(f"Loaded {started} task{plural(started)} from {self.config_dir}.")
        return started

    def clean_up_finished_tasks(self):
        """Forgets tasks whose thread has exited and returns their handles."""
        with self._lock:
            finished = [key for key, handle in self._tasks.items() if handle.is_finished()]
            handles = [(key, self._tasks.pop(key)) for key in finished]

        for key, handle in handles:
            name = Path(key).name
            if handle.result is None:
                logging.info(f"Task for {name} ended (unknown).")
            elif handle.result.message:
                logging.info(f"Task for {name} ended ({handle.result.outcome.value}): {handle.result.message}")
            else:
                logging.info(f"Task for {name} ended ({handle.result.outcome.value}).")
        return [handle for _, handle in handles]

    def monitor(self):
        while self._stop_signal.wait_for(MONITOR_INTERVAL_SECONDS) is WaitResult.EXPIRED:
            self.clean_up_finished_tasks()

    def start(self):
        """Loads every config, watches the directory and blocks until stop() is called."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.load_initial_tasks()
            if self._stop_signal.is_set():
                return

            self._observer = self.observer_factory()
            self._observer.schedule(ConfigEventHandler(self), str(self.config_dir), recursive=False)
            self._observer.start()
            logging.info(f"Watching {self.config_dir} for config changes.")

            self.monitor()
        finally:
            self.shutdown()

    def stop(self):
        """Asks start() to return. Safe to call from a signal handler."""
        self._stop_signal.cancel()

    def shutdown(self):
        self._stop_signal.cancel()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None

        with self._lock:
            handles = list(self._tasks.values())
            self._tasks.clear()

        for handle in handles:
            handle.task.scheduler.request_stop()
        for handle in handles:
            if handle.thread is not None:
                handle.thread.join()

        logging.info(f"Stopped {len(handles)} task{plural(len(handles))}.")
