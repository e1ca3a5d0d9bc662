"""
Periodic task table.

Each entry enqueues one automation on a five-field cron schedule, evaluated
in UTC. The ticker only submits jobs; the worker pool runs them like any
other. Every task submits under its own dedup key, so a run that is still
queued or running makes the next firing a skip instead of a second job.

Usage:
    ticker = PeriodicTicker(submit)
    ticker.add('cleanup', AutomationType.CLEANUP, '0 2 * * *')
    ticker.start()
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from croniter import croniter

from automation_engine.errors import (
    AutomationError,
    DuplicateJobError,
    UnknownTaskError,
    ValidationError,
)
from automation_engine.models import AutomationType, _iso, utcnow


logger = logging.getLogger("automation.periodic")


@dataclass
class PeriodicTask:
    name: str
    automation_type: AutomationType
    schedule: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: Optional[int] = None
    enabled: bool = True
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_job_id: Optional[str] = None
    run_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        return f"periodic:{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'type': self.automation_type.value,
            'schedule': self.schedule,
            'enabled': self.enabled,
            'next_run_at': _iso(self.next_run_at) if self.enabled else None,
            'last_run_at': _iso(self.last_run_at),
            'last_job_id': self.last_job_id,
            'run_count': self.run_count,
            'skipped_count': self.skipped_count,
            'error_count': self.error_count,
            'last_error': self.last_error,
        }


def next_run(schedule: str, after: datetime) -> datetime:
    """First firing of `schedule` strictly after `after`."""
    return croniter(schedule, after).get_next(datetime)


class PeriodicTicker:
    """
    Args:
        submit: Enqueues a job for the task and returns its id
        poll_interval: Seconds between checks for due tasks
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        submit: Callable[[PeriodicTask], str],
        poll_interval: float = 30.0,
        clock: Callable[[], datetime] = utcnow
    ):
        self._submit = submit
        self.poll_interval = poll_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._tasks: Dict[str, PeriodicTask] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # --- Table ---

    def add(
        self,
        name: str,
        automation_type: AutomationType,
        schedule: str,
        payload: Dict[str, Any] = None,
        priority: int = None,
        enabled: bool = True
    ) -> PeriodicTask:
        """
        Add a task to the table.

        Raises:
            ValidationError: blank or duplicate name, or invalid cron expression
        """
        if not name or not str(name).strip():
            raise ValidationError("Periodic task name cannot be empty")
        if (not isinstance(schedule, str) or len(schedule.split()) != 5
                or not croniter.is_valid(schedule)):
            raise ValidationError(f"Invalid cron schedule for '{name}': {schedule!r}")

        task = PeriodicTask(
            name=name,
            automation_type=AutomationType(automation_type),
            schedule=schedule,
            payload=dict(payload or {}),
            priority=priority,
            enabled=enabled,
            next_run_at=next_run(schedule, self._clock()),
        )
        with self._lock:
            if name in self._tasks:
                raise ValidationError(f"Periodic task '{name}' already exists")
            self._tasks[name] = task

        logger.info(f"Periodic task '{name}' scheduled: {schedule} ({task.automation_type.value})")
        return replace(task)

    def set_enabled(self, name: str, enabled: bool) -> PeriodicTask:
        """Enable or disable a task. Re-enabling never fires missed runs."""
        with self._lock:
            task = self._tasks.get(name)
            if task is None:
                raise UnknownTaskError(name)
            if enabled and not task.enabled:
                task.next_run_at = next_run(task.schedule, self._clock())
            task.enabled = bool(enabled)
            snapshot = replace(task)

        logger.info(f"Periodic task '{name}' {'enabled' if enabled else 'disabled'}")
        return snapshot

    def get(self, name: str) -> PeriodicTask:
        with self._lock:
            task = self._tasks.get(name)
            if task is None:
                raise UnknownTaskError(name)
            return replace(task)

    def tasks(self) -> List[PeriodicTask]:
        with self._lock:
            return [replace(task) for task in self._tasks.values()]

    def statistics(self) -> Dict[str, Any]:
        tasks = self.tasks()
        return {
            'running': self.is_running,
            'total_tasks': len(tasks),
            'enabled_tasks': sum(1 for t in tasks if t.enabled),
            'tasks': {t.name: t.to_dict() for t in tasks},
        }

    # --- Firing ---

    def tick(self, now: datetime = None) -> List[str]:
        """
        Submit every enabled task whose next run is due.

        Missed firings collapse into one; the next run is computed from `now`.

        Returns:
            Names of the tasks that produced a job
        """
        now = now or self._clock()
        with self._lock:
            due = [
                task.name for task in self._tasks.values()
                if task.enabled and task.next_run_at is not None and task.next_run_at <= now
            ]
            for name in due:
                self._tasks[name].next_run_at = next_run(self._tasks[name].schedule, now)
            snapshots = [replace(self._tasks[name]) for name in due]

        fired = []
        for snapshot in snapshots:
            job_id = None
            error = None
            skipped = False
            try:
                job_id = self._submit(snapshot)
            except DuplicateJobError as e:
                skipped = True
                logger.info(f"Periodic task '{snapshot.name}' skipped: previous run {e.existing_job_id} still active")
            except AutomationError as e:
                error = str(e)
                logger.error(f"Periodic task '{snapshot.name}' could not be queued: {e}")
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.exception(f"Periodic task '{snapshot.name}' raised while queueing: {e}")

            with self._lock:
                task = self._tasks[snapshot.name]
                task.last_run_at = now
                if skipped:
                    task.skipped_count += 1
                elif error is not None:
                    task.error_count += 1
                    task.last_error = error
                else:
                    task.run_count += 1
                    task.last_job_id = job_id
            if job_id is not None:
                fired.append(snapshot.name)
        return fired

    # --- Lifecycle ---

    def start(self) -> None:
        if self.is_running:
            return
        stop_event = threading.Event()
        self._stop_event = stop_event
        self._thread = threading.Thread(
            target=self._loop,
            args=(stop_event,),
            name="automation-periodic",
            daemon=True
        )
        self._thread.start()
        logger.info(f"Periodic ticker started ({len(self._tasks)} tasks)")

    def stop(self) -> None:
        thread = self._thread
        self._stop_event.set()
        if thread is not None:
            thread.join(timeout=1.0)
        self._thread = None

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.poll_interval):
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Periodic tick failed: {e}")
