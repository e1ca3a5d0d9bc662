"""
Worker-pool scheduler.

A fixed pool of worker threads drains the JobQueue, resolving handlers
through the TaskRegistry. A watchdog thread fails jobs that overrun their
timeout and runs the periodic retention purge. Handler failures are
isolated per job and never stop a worker.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from automation_engine.config import EngineConfig
from automation_engine.errors import ExecutionError, InvalidStateError, UnknownTypeError
from automation_engine.jobs.base import CancelToken, HandlerResult
from automation_engine.models import Job, JobState


logger = logging.getLogger("automation.scheduler")

SHUTDOWN_TIMEOUT = "ShutdownTimeout"
TIMED_OUT = "TimedOut"


@dataclass
class _InFlight:
    job_id: str
    token: CancelToken
    deadline: Optional[float]
    worker: str
    reaped: bool = False


class Scheduler:
    """
    Usage:
        scheduler = Scheduler(queue, registry, config, analytics=analytics)
        scheduler.start()
        ...
        scheduler.stop(grace=10)
    """

    def __init__(self, queue, registry, config: EngineConfig = None, analytics=None, alerter=None):
        """
        Args:
            queue: JobQueue to drain
            registry: TaskRegistry resolving handlers
            config: Engine tunables
            analytics: Optional AnalyticsAggregator fed with terminal jobs
            alerter: Optional FailureAlerter for final failures
        """
        self.queue = queue
        self.registry = registry
        self.config = config or EngineConfig()
        self.analytics = analytics
        self.alerter = alerter

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._workers: List[threading.Thread] = []
        self._watchdog: Optional[threading.Thread] = None
        self._in_flight: Dict[str, _InFlight] = {}
        self._heartbeat: Optional[float] = None
        self._started = False
        self._last_purge = 0.0

    @property
    def concurrency(self) -> int:
        return self.config.concurrency

    @property
    def is_running(self) -> bool:
        return self._started and not self._stop_event.is_set()

    def heartbeat_age(self) -> Optional[float]:
        """Seconds since any scheduler loop last iterated."""
        if self._heartbeat is None:
            return None
        return time.monotonic() - self._heartbeat

    def in_flight_count(self) -> int:
        with self._lock:
            return sum(1 for entry in self._in_flight.values() if not entry.reaped)

    # --- Lifecycle ---

    def start(self) -> None:
        with self._lock:
            if self._started:
                logger.warning("Scheduler is already running")
                return

            stop_event = threading.Event()
            self._stop_event = stop_event
            self._started = True
            self._beat()
            self._last_purge = time.monotonic()

            self._workers = []
            for i in range(self.concurrency):
                t = threading.Thread(
                    target=self._worker_loop,
                    args=(f"worker-{i + 1}", stop_event),
                    name=f"automation-worker-{i + 1}",
                    daemon=True
                )
                self._workers.append(t)

            self._watchdog = threading.Thread(
                target=self._watchdog_loop,
                args=(stop_event,),
                name="automation-watchdog",
                daemon=True
            )

        for t in self._workers:
            t.start()
        self._watchdog.start()
        logger.info(f"Scheduler started with {self.concurrency} workers")

    def stop(self, grace: float = None) -> List[str]:
        """
        Stop dequeuing, wait up to `grace` seconds for in-flight jobs, then
        fail whatever is still running with ShutdownTimeout.

        Returns:
            Ids of jobs that were force-failed
        """
        grace = self.config.shutdown_grace_seconds if grace is None else max(0.0, grace)

        with self._lock:
            if not self._started:
                return []
            self._stop_event.set()
            workers = list(self._workers)
            watchdog = self._watchdog

        logger.info(f"Stopping scheduler (grace {grace:.1f}s, {self.queue.running_count()} running)")
        self.queue.wake_all()

        deadline = time.monotonic() + grace
        while self.queue.running_count() > 0 and time.monotonic() < deadline:
            time.sleep(min(0.05, max(0.0, deadline - time.monotonic())))

        forced = []
        for job in self.queue.running_jobs():
            failed = self._fail(job.id, SHUTDOWN_TIMEOUT, alert=False)
            self._cancel_token(job.id, SHUTDOWN_TIMEOUT)
            if failed is not None:
                forced.append(job.id)
                logger.warning(f"Job {job.id} ({job.type.value}) failed: {SHUTDOWN_TIMEOUT}")

        with self._lock:
            for entry in self._in_flight.values():
                entry.token.cancel(SHUTDOWN_TIMEOUT)

        # Workers stuck inside handlers are daemons; their late results are discarded
        join_timeout = min(1.0, self.config.poll_interval_seconds * 2)
        for t in workers:
            t.join(timeout=join_timeout)
        if watchdog is not None:
            watchdog.join(timeout=join_timeout)

        with self._lock:
            self._started = False
            self._workers = []
            self._watchdog = None

        logger.info(f"Scheduler stopped ({len(forced)} jobs force-failed)")
        return forced

    # --- Loops ---

    def _beat(self) -> None:
        self._heartbeat = time.monotonic()

    def _worker_loop(self, name: str, stop_event: threading.Event) -> None:
        logger.debug(f"[{name}] started")
        while not stop_event.is_set():
            self._beat()
            try:
                entry, job = self._claim(name, stop_event)
            except Exception as e:
                logger.error(f"[{name}] Failed to dequeue: {e}")
                stop_event.wait(self.config.poll_interval_seconds)
                continue

            if job is None:
                self.queue.wait_for_work(self.config.poll_interval_seconds)
                continue

            try:
                self._execute(job, entry.token, name)
            except Exception as e:
                logger.exception(f"[{name}] Unexpected error handling job {job.id}: {e}")
            finally:
                with self._lock:
                    self._in_flight.pop(job.id, None)
        logger.debug(f"[{name}] stopped")

    def _claim(self, name: str, stop_event: threading.Event):
        """Dequeue and register a job atomically with respect to stop()."""
        with self._lock:
            if stop_event.is_set():
                return None, None
            job = self.queue.dequeue_next(limit=self.concurrency)
            if job is None:
                return None, None
            timeout = job.timeout_seconds or self.config.job_timeout_seconds
            entry = _InFlight(
                job_id=job.id,
                token=CancelToken(timeout=timeout),
                deadline=time.monotonic() + timeout if timeout else None,
                worker=name,
            )
            self._in_flight[job.id] = entry
            return entry, job

    def _watchdog_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.config.poll_interval_seconds):
            self._beat()
            try:
                self.reap_overdue()
                if (self.analytics is not None and
                        time.monotonic() - self._last_purge >= self.config.purge_interval_seconds):
                    self._last_purge = time.monotonic()
                    self.analytics.purge_expired(self.queue)
            except Exception as e:
                logger.error(f"Watchdog iteration failed: {e}")

    def reap_overdue(self) -> List[str]:
        """Fail running jobs past their deadline. Returns the reaped ids."""
        now = time.monotonic()
        with self._lock:
            overdue = [
                entry for entry in self._in_flight.values()
                if not entry.reaped and entry.deadline is not None and now >= entry.deadline
            ]
            for entry in overdue:
                entry.reaped = True
                entry.token.cancel(TIMED_OUT)

        reaped = []
        for entry in overdue:
            if self._fail(entry.job_id, TIMED_OUT) is not None:
                reaped.append(entry.job_id)
                logger.warning(f"Job {entry.job_id} exceeded its timeout on {entry.worker}")
        return reaped

    # --- Execution ---

    def _execute(self, job: Job, token: CancelToken, worker: str) -> None:
        logger.info(
            f"[{worker}] Executing job {job.id} ({job.type.value}, attempt {job.retry_count + 1})"
        )

        try:
            handler = self.registry.resolve(job.type)
        except UnknownTypeError as e:
            self._fail(job.id, str(e))
            return

        try:
            outcome = handler.execute(job.payload, token)
        except ExecutionError as e:
            if token.cancelled:
                # TimedOut or ShutdownTimeout, never retried
                self._fail(job.id, token.reason or str(e))
                return
            self._handle_failure(job, e)
            return
        except Exception as e:
            self._handle_failure(job, ExecutionError(str(e) or type(e).__name__, cause=e))
            return

        if isinstance(outcome, HandlerResult) and not outcome.success:
            self._handle_failure(job, ExecutionError(outcome.error_message or "Handler reported failure"))
            return

        self._succeed(job, _result_dict(outcome))

    def _succeed(self, job: Job, result: Optional[Dict[str, Any]]) -> None:
        try:
            done = self.queue.mark_terminal(job.id, JobState.SUCCEEDED, result=result)
        except InvalidStateError as e:
            logger.warning(f"Discarding result of job {job.id}: {e}")
            return
        if self.analytics is not None:
            self.analytics.record(done)
        logger.info(f"Job {job.id} ({job.type.value}) succeeded")

    def _handle_failure(self, job: Job, error: ExecutionError) -> None:
        max_retries = job.max_retries if job.max_retries is not None else self.config.max_retries
        message = str(error)

        if error.recoverable and job.retry_count < max_retries:
            delay = self.config.retry_base_seconds * 2 ** job.retry_count
            try:
                self.queue.requeue(job.id, delay=delay, error=message)
            except InvalidStateError as e:
                logger.warning(f"Not retrying job {job.id}: {e}")
                return
            logger.warning(
                f"Job {job.id} ({job.type.value}) failed (attempt {job.retry_count + 1}): "
                f"{message}; retrying in {delay:.1f}s"
            )
            return

        self._fail(job.id, message)

    def _fail(self, job_id: str, error: str, alert: bool = True) -> Optional[Job]:
        try:
            failed = self.queue.mark_terminal(job_id, JobState.FAILED, error=error)
        except InvalidStateError as e:
            logger.debug(f"Job {job_id} already settled: {e}")
            return None

        logger.error(f"Job {job_id} ({failed.type.value}) failed: {error}")
        if self.analytics is not None:
            self.analytics.record(failed)
        if alert and self.alerter is not None:
            try:
                self.alerter.job_failed(failed)
            except Exception as e:
                logger.error(f"Failed to send alert for job {job_id}: {e}")
        return failed

    def _cancel_token(self, job_id: str, reason: str) -> None:
        with self._lock:
            entry = self._in_flight.get(job_id)
            if entry is not None:
                entry.reaped = True
                entry.token.cancel(reason)


def _result_dict(outcome: Any) -> Optional[Dict[str, Any]]:
    if outcome is None:
        return None
    if isinstance(outcome, HandlerResult):
        return outcome.to_dict()
    if isinstance(outcome, dict):
        return outcome
    return {'value': outcome}
