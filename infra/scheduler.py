"""
cyclebot Infrastructure: Task scheduler

A polling thread wakes every ``poll_interval_seconds``, picks the enabled
tasks whose ``next_scheduled_at`` has passed and runs each one on its own
worker thread. Update and new-cycle tasks share one binary semaphore, so at
most one of them touches the cycle store at a time.
"""

import logging
import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

from infra.metrics import get_metrics
from infra.task_store import ScheduledTask, format_interval, format_number, load_tasks, save_tasks
from tools.config_validator import SchedulerSettings

logger = logging.getLogger(__name__)

# task body: (task, deadline as time.monotonic() value)
TaskFn = Callable[[ScheduledTask, float], None]

DB_TASK_TYPES = ("update", "new")
SPECIFIC_TIME_FORMAT = "%H:%M"


def local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class Task:
    config: ScheduledTask
    fn: TaskFn


class Scheduler:
    """
    Runs scheduled tasks on worker threads.

    Args:
        settings: scheduler section of the bot config
        runners: task type -> body used when add_task gets no explicit fn
        tasks_file: persistence file (None disables persistence)
        clock: injectable "now" (timezone-aware)
    """

    def __init__(self, settings: Optional[SchedulerSettings] = None,
                 runners: Optional[Dict[str, TaskFn]] = None,
                 tasks_file: Optional[str] = None,
                 clock: Callable[[], datetime] = local_now):
        self.settings = settings or SchedulerSettings()
        self.runners = dict(runners or {})
        self.tasks_file = tasks_file
        self.clock = clock
        self.tasks: List[Task] = []
        self.metrics = get_metrics()

        self._lock = threading.Lock()
        self._db_semaphore = threading.Semaphore(1)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ----- task list -----

    def _resolve_fn(self, config: ScheduledTask, fn: Optional[TaskFn]) -> TaskFn:
        if fn is not None:
            return fn
        if config.type not in self.runners:
            raise ValueError(f"no runner for task type {config.type!r}")
        return self.runners[config.type]

    @staticmethod
    def _check_schedule(config: ScheduledTask) -> None:
        if config.specific_time:
            datetime.strptime(config.specific_time, SPECIFIC_TIME_FORMAT)
        elif config.interval <= timedelta(0):
            raise ValueError(f"task {config.name}: needs an interval or a specific time")

    def add_task(self, config: ScheduledTask, fn: Optional[TaskFn] = None) -> ScheduledTask:
        """Schedule ``config`` and persist the task list."""
        self._check_schedule(config)
        task = Task(config=replace(config), fn=self._resolve_fn(config, fn))
        with self._lock:
            if any(t.config.name == config.name for t in self.tasks):
                raise ValueError(f"task {config.name} already exists")
            task.config.next_scheduled_at = self.calculate_next_run(task.config, self.clock())
            self.tasks.append(task)
            self._persist()
        logger.info(f"Task added: {config.name} ({self.describe_interval(task.config)}), "
                    f"next run {task.config.next_scheduled_at:%Y-%m-%d %H:%M:%S}")
        return replace(task.config)

    def remove_task(self, name: str) -> None:
        with self._lock:
            for index, task in enumerate(self.tasks):
                if task.config.name == name:
                    del self.tasks[index]
                    self._persist()
                    logger.info(f"Task removed: {name}")
                    return
        raise KeyError(f"task not found: {name}")

    def update_task(self, name: str, config: ScheduledTask, fn: Optional[TaskFn] = None) -> ScheduledTask:
        """Replace the definition of ``name``, keeping its last run time."""
        self._check_schedule(config)
        with self._lock:
            for task in self.tasks:
                if task.config.name != name:
                    continue
                updated = replace(config, last_run_time=task.config.last_run_time,
                                  next_scheduled_at=None)
                updated.next_scheduled_at = self.calculate_next_run(updated, self.clock())
                task.fn = fn or self.runners.get(updated.type, task.fn)
                task.config = updated
                self._persist()
                return replace(updated)
        raise KeyError(f"task not found: {name}")

    def get_all_tasks(self) -> List[ScheduledTask]:
        with self._lock:
            return [replace(task.config) for task in self.tasks]

    def _persist(self) -> None:
        if self.tasks_file:
            save_tasks(self.tasks_file, [task.config for task in self.tasks])

    def load_tasks_from_file(self) -> int:
        """Replace the task list with the persisted one; returns the count."""
        if not self.tasks_file:
            return 0
        now = self.clock()
        loaded = []
        for config in load_tasks(self.tasks_file):
            if config.type not in self.runners:
                logger.warning(f"Skipping task {config.name}: no runner for type {config.type}")
                continue
            if config.next_scheduled_at is None or config.next_scheduled_at < now:
                config.next_scheduled_at = self.calculate_next_run(config, now)
            loaded.append(Task(config=config, fn=self.runners[config.type]))
        with self._lock:
            self.tasks = loaded
        logger.info(f"Loaded {len(loaded)} tasks from {self.tasks_file}")
        return len(loaded)

    def create_default_tasks(self) -> None:
        """Every-5-minutes update plus a daily 09:00 new cycle."""
        self.add_task(ScheduledTask(name="update-cycles", type="update",
                                    interval_value=5, interval_unit="minutes"))
        self.add_task(ScheduledTask(name="create-cycle", type="new",
                                    interval_value=1, interval_unit="days", specific_time="09:00"))

    # ----- timing -----

    @staticmethod
    def calculate_next_run(config: ScheduledTask, now: datetime) -> datetime:
        """
        Next execution time for ``config``.

        A fixed daily time wins (today, or tomorrow once passed); otherwise
        a still-future ``next_scheduled_at`` is kept; otherwise the
        interval is added to the last run (or to ``now``).
        """
        if config.specific_time:
            try:
                at = datetime.strptime(config.specific_time, SPECIFIC_TIME_FORMAT)
            except ValueError:
                logger.warning(f"Task {config.name}: invalid specific time {config.specific_time!r}")
            else:
                target = now.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
                if target <= now:
                    target += timedelta(days=1)
                return target

        if config.next_scheduled_at is not None and config.next_scheduled_at > now:
            return config.next_scheduled_at

        if config.last_run_time is not None:
            return config.last_run_time + config.interval
        return now + config.interval

    @staticmethod
    def describe_interval(config: ScheduledTask) -> str:
        if config.specific_time:
            return f"daily at {config.specific_time}"
        if config.interval_value > 0:
            return f"every {config.interval_value} {config.interval_unit}"
        value, unit = format_interval(config.interval)
        return f"every {value} {unit}"

    # ----- running -----

    def check_and_run_tasks(self, now: Optional[datetime] = None) -> List[threading.Thread]:
        """
        Dispatch every due task.

        Schedules are advanced before dispatch so a task still running at
        the next tick is not started twice.
        """
        now = now or self.clock()
        due: List[Task] = []
        with self._lock:
            for task in self.tasks:
                if task.config.enabled and task.config.next_scheduled_at is not None \
                        and now >= task.config.next_scheduled_at:
                    task.config.last_run_time = now
                    task.config.next_scheduled_at = self.calculate_next_run(task.config, now)
                    due.append(Task(config=replace(task.config), fn=task.fn))
                    logger.info(f"Task {task.config.name} due; next run "
                                f"{task.config.next_scheduled_at:%Y-%m-%d %H:%M:%S}")
            if due:
                self._persist()

        workers = []
        for index, task in enumerate(due):
            if index > 0 and self._stop_event.wait(self.settings.dispatch_stagger_seconds):
                break
            worker = threading.Thread(target=self.execute_task, args=(task,),
                                      name=f"task-{task.config.name}", daemon=True)
            worker.start()
            workers.append(worker)
        return workers

    def execute_task(self, task: Task) -> bool:
        """Run one task body; returns True on success."""
        name = task.config.name
        timeout = self.settings.task_timeout_seconds
        deadline = time.monotonic() + timeout
        started = time.monotonic()

        holds_db = task.config.type in DB_TASK_TYPES
        if holds_db and not self._db_semaphore.acquire(timeout=timeout):
            logger.error(f"Task {name}: timed out after {timeout:.0f}s waiting for the database lock")
            self.metrics.record_task_run(name, "timeout")
            return False

        try:
            task.fn(task.config, deadline)
        except Exception as e:
            logger.error(f"Task {name} failed after {time.monotonic() - started:.1f}s: {e}")
            self.metrics.record_task_run(name, "error")
            return False
        finally:
            if holds_db:
                self._db_semaphore.release()

        elapsed = time.monotonic() - started
        if time.monotonic() >= deadline:
            logger.warning(f"Task {name} overran its {timeout:.0f}s deadline ({elapsed:.1f}s)")
            self.metrics.record_task_run(name, "timeout")
            return True
        logger.info(f"Task {name} finished in {elapsed:.1f}s")
        self.metrics.record_task_run(name, "ok")
        return True

    def _run_loop(self) -> None:
        logger.info("Scheduler started")
        while not self._stop_event.wait(self.settings.poll_interval_seconds):
            try:
                self.check_and_run_tasks()
            except OSError as e:
                logger.error(f"Scheduler tick failed: {e}")
        logger.info("Scheduler stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def wait(self) -> None:
        """Block until stop() is called."""
        self._stop_event.wait()


# ----- task bodies -----

def in_process_runners(engine, creator) -> Dict[str, TaskFn]:
    """Bodies that call the reconciliation engine and cycle creator directly."""

    def run_update(task: ScheduledTask, deadline: float) -> None:
        summary = engine.run(task.exchange or None, deadline=deadline)
        if summary.timed_out:
            logger.warning(f"Task {task.name}: update pass stopped at its deadline")

    def run_new(task: ScheduledTask, deadline: float) -> None:
        creator.create_cycles(task.exchange or None, task.overrides(), deadline=deadline)

    return {"update": run_update, "new": run_new}


def subprocess_command(task: ScheduledTask, config_dir: str, python: str = sys.executable) -> List[str]:
    command = [python, "-m", "runner.main_loop", "--config-dir", config_dir,
               "--update" if task.type == "update" else "--new"]
    if task.exchange:
        command += ["--exchange", task.exchange.upper()]
    return command


def subprocess_env(task: ScheduledTask, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Environment for the child; new-cycle overrides become <EX>_* variables."""
    env = dict(os.environ if base is None else base)
    if task.exchange:
        prefix = task.exchange.upper()
        for key, value in task.overrides().items():
            env[f"{prefix}_{key.upper()}"] = format_number(value)
    return env


def subprocess_runners(settings: SchedulerSettings, config_dir: str,
                       project_dir: Optional[str] = None) -> Dict[str, TaskFn]:
    """Bodies that run each task as ``python -m runner.main_loop``."""
    cwd = project_dir or str(Path(__file__).resolve().parent.parent)

    def run(task: ScheduledTask, deadline: float) -> None:
        timeout = min(settings.subprocess_timeout_seconds, max(1.0, deadline - time.monotonic()))
        result = subprocess.run(
            subprocess_command(task, config_dir),
            cwd=cwd,
            env=subprocess_env(task),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        if result.returncode != 0:
            raise RuntimeError(f"exit code {result.returncode}: {result.stderr.strip()[-500:]}")
        logger.debug(f"Task {task.name} output: {result.stdout.strip()[-500:]}")

    return {"update": run, "new": run}
