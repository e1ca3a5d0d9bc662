"""
Priority job queue with dedup tracking.

Every mutation runs inside one threading.Condition so that selecting the
next job and marking it running is a single atomic step. Ordering is strict
priority (higher first), then earliest submitted_at, then submission order.
Jobs waiting out a retry backoff sit in a separate heap keyed by the time
they become eligible.
"""

import heapq
import itertools
import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from automation_engine.errors import (
    AutomationError,
    DuplicateJobError,
    InvalidStateError,
    QueueUnavailableError,
    UnknownJobError,
    ValidationError,
)
from automation_engine.models import AutomationType, Job, JobState, utcnow
from automation_engine.runner.store import InMemoryJobStore, JobStore


logger = logging.getLogger("automation.queue")


class JobQueue:
    """
    Usage:
        queue = JobQueue()
        job_id = queue.enqueue(Job(type=AutomationType.CLEANUP, priority=5))
        job = queue.dequeue_next()
        queue.mark_terminal(job.id, JobState.SUCCEEDED)
    """

    def __init__(self, store: JobStore = None, clock: Callable[[], datetime] = utcnow):
        """
        Args:
            store: Persistence collaborator, in-memory when omitted
            clock: Returns the current UTC time (overridable in tests)
        """
        self._store = store or InMemoryJobStore()
        self._clock = clock
        self._cond = threading.Condition()
        self._seq = itertools.count()

        self._jobs: Dict[str, Job] = {}
        self._order: Dict[str, int] = {}
        self._ready: List[Tuple[int, datetime, int, str]] = []
        self._delayed: List[Tuple[datetime, int, str]] = []
        self._queued: Set[str] = set()
        self._running: Set[str] = set()
        # dedup key -> id of the active job holding it; evicted on terminal state
        self._dedup: Dict[str, str] = {}
        # ids dropped by purge_terminal stay reserved for the process lifetime
        self._retired: Set[str] = set()

        self._recover()

    # --- Submission ---

    def enqueue(self, job: Job) -> str:
        """
        Add a job to the queue.

        Raises:
            ValidationError: malformed job or reused id
            DuplicateJobError: dedup key held by a queued or running job
            QueueUnavailableError: the store could not persist the job
        """
        record = self._validate(job)

        with self._cond:
            if record.id in self._jobs or record.id in self._retired:
                raise ValidationError(f"Job id '{record.id}' already exists")
            if record.dedup_key is not None and record.dedup_key in self._dedup:
                raise DuplicateJobError(record.dedup_key, self._dedup[record.dedup_key])

            self._store.save(record)

            self._jobs[record.id] = record
            self._order[record.id] = next(self._seq)
            self._queued.add(record.id)
            if record.dedup_key is not None:
                self._dedup[record.dedup_key] = record.id
            self._push(record)
            self._cond.notify_all()

        logger.info(
            f"Job queued: {record.type.value} (priority: {record.priority}, id: {record.id})"
        )
        return record.id

    def _validate(self, job: Job) -> Job:
        if not isinstance(job, Job):
            raise ValidationError("enqueue expects a Job")
        if not job.id or not str(job.id).strip():
            raise ValidationError("Job id cannot be empty")
        try:
            job_type = AutomationType(job.type)
        except ValueError:
            raise ValidationError(f"Invalid automation type: {job.type!r}")
        if isinstance(job.priority, bool) or not isinstance(job.priority, int):
            raise ValidationError("priority must be an integer")
        if job.state is not JobState.QUEUED:
            raise ValidationError("Only queued jobs can be enqueued")
        if job.dedup_key is not None and not str(job.dedup_key).strip():
            raise ValidationError("dedup_key cannot be blank")
        submitted_at = job.submitted_at
        if submitted_at.tzinfo is None:
            submitted_at = submitted_at.replace(tzinfo=timezone.utc)
        return replace(job, type=job_type, submitted_at=submitted_at)

    # --- Dispatch ---

    def dequeue_next(self, limit: Optional[int] = None) -> Optional[Job]:
        """
        Claim the highest-priority eligible job and mark it running.

        Args:
            limit: Refuse to claim when this many jobs are already running

        Returns:
            Snapshot of the claimed job, or None
        """
        with self._cond:
            if limit is not None and len(self._running) >= limit:
                return None

            now = self._clock()
            self._promote_due(now)

            while self._ready:
                _, _, _, job_id = heapq.heappop(self._ready)
                job = self._jobs.get(job_id)
                # Cancelled and purged jobs leave stale heap entries behind
                if job is None or job.state is not JobState.QUEUED:
                    continue

                job.state = JobState.RUNNING
                job.started_at = now
                job.available_at = None
                self._queued.discard(job_id)
                self._running.add(job_id)
                self._persist(job)
                return replace(job)

            return None

    def wait_for_work(self, timeout: float) -> bool:
        """
        Block until a queued job is eligible or timeout elapses.

        Returns:
            True if an eligible job is waiting
        """
        with self._cond:
            if self._has_eligible():
                return True
            wait = timeout
            if self._delayed:
                until_due = (self._delayed[0][0] - self._clock()).total_seconds()
                wait = max(0.0, min(wait, until_due))
            self._cond.wait(wait)
            return self._has_eligible()

    def wake_all(self) -> None:
        """Release every thread blocked in wait_for_work."""
        with self._cond:
            self._cond.notify_all()

    # --- Transitions ---

    def cancel(self, job_id: str) -> Job:
        """Queued -> cancelled. Any other state raises InvalidStateError."""
        with self._cond:
            job = self._lookup(job_id)
            if job.state is not JobState.QUEUED:
                raise InvalidStateError(job_id, job.state, JobState.CANCELLED)

            job.state = JobState.CANCELLED
            job.completed_at = self._clock()
            job.available_at = None
            self._queued.discard(job_id)
            self._release_dedup(job)
            self._persist(job)
            self._cond.notify_all()
            snapshot = replace(job)

        logger.info(f"Job cancelled: {job_id}")
        return snapshot

    def requeue(self, job_id: str, delay: float = 0.0, error: str = None) -> Job:
        """
        Running -> queued for the retry path.

        Priority, dedup key and submitted_at are preserved; retry_count is
        incremented and the job becomes eligible after `delay` seconds.
        """
        with self._cond:
            job = self._lookup(job_id)
            if job.state is not JobState.RUNNING:
                raise InvalidStateError(job_id, job.state, JobState.QUEUED)

            now = self._clock()
            job.state = JobState.QUEUED
            job.retry_count += 1
            job.started_at = None
            job.last_error = error
            job.available_at = now + timedelta(seconds=delay) if delay > 0 else None
            self._running.discard(job_id)
            self._queued.add(job_id)
            self._push(job)
            self._persist(job)
            self._cond.notify_all()
            return replace(job)

    def mark_terminal(
        self,
        job_id: str,
        state: JobState,
        error: str = None,
        result: dict = None
    ) -> Job:
        """Running -> succeeded or failed."""
        state = JobState(state)
        if state not in (JobState.SUCCEEDED, JobState.FAILED):
            raise ValidationError(f"mark_terminal only accepts succeeded/failed, got {state.value}")

        with self._cond:
            job = self._lookup(job_id)
            if job.state is not JobState.RUNNING:
                raise InvalidStateError(job_id, job.state, state)

            job.state = state
            job.completed_at = self._clock()
            if error is not None:
                job.last_error = error
            if result is not None:
                job.result = result
            self._running.discard(job_id)
            self._release_dedup(job)
            self._persist(job)
            self._cond.notify_all()
            return replace(job)

    def wait_for_terminal(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Block until the job is terminal or timeout elapses; return its snapshot."""
        with self._cond:
            job = self._lookup(job_id)
            self._cond.wait_for(lambda: job.state.is_terminal, timeout)
            return replace(job)

    # --- Retention ---

    def purge_terminal(self, older_than: datetime) -> List[Job]:
        """Drop terminal jobs completed before `older_than` and return them."""
        purged = []
        with self._cond:
            for job_id, job in list(self._jobs.items()):
                if not job.state.is_terminal or job.completed_at is None:
                    continue
                if job.completed_at >= older_than:
                    continue
                del self._jobs[job_id]
                self._order.pop(job_id, None)
                self._retired.add(job_id)
                try:
                    self._store.delete(job_id)
                except QueueUnavailableError as e:
                    logger.error(f"Failed to delete purged job {job_id}: {e}")
                purged.append(job)
        return purged

    # --- Reads ---

    def get(self, job_id: str) -> Job:
        with self._cond:
            return replace(self._lookup(job_id))

    def jobs(self, state: JobState = None) -> List[Job]:
        with self._cond:
            selected = [
                replace(job) for job in self._jobs.values()
                if state is None or job.state is JobState(state)
            ]
        return sorted(selected, key=lambda j: (j.submitted_at, self._order.get(j.id, 0)))

    def running_jobs(self) -> List[Job]:
        with self._cond:
            return [replace(self._jobs[job_id]) for job_id in self._running]

    def depth(self) -> int:
        with self._cond:
            return len(self._queued)

    def running_count(self) -> int:
        with self._cond:
            return len(self._running)

    def __len__(self) -> int:
        with self._cond:
            return len(self._jobs)

    # --- Internals (callers hold the lock) ---

    def _lookup(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise UnknownJobError(job_id)
        return job

    def _push(self, job: Job) -> None:
        seq = self._order[job.id]
        if job.available_at is not None and job.available_at > self._clock():
            heapq.heappush(self._delayed, (job.available_at, seq, job.id))
        else:
            heapq.heappush(self._ready, (-job.priority, job.submitted_at, seq, job.id))

    def _promote_due(self, now: datetime) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, seq, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is not None and job.state is JobState.QUEUED:
                heapq.heappush(self._ready, (-job.priority, job.submitted_at, seq, job_id))

    def _has_eligible(self) -> bool:
        self._promote_due(self._clock())
        return any(
            job_id in self._queued for _, _, _, job_id in self._ready
        )

    def _release_dedup(self, job: Job) -> None:
        if job.dedup_key is not None and self._dedup.get(job.dedup_key) == job.id:
            del self._dedup[job.dedup_key]

    def _persist(self, job: Job) -> None:
        # The in-memory transition has already happened; a failed write is logged only
        try:
            self._store.save(job)
        except AutomationError as e:
            logger.error(f"Failed to persist job {job.id} ({job.state.value}): {e}")

    def _recover(self) -> None:
        """Rebuild the in-memory index from the store."""
        recovered = 0
        for job in self._store.load_all():
            if job.state is JobState.RUNNING:
                job.state = JobState.FAILED
                job.completed_at = self._clock()
                job.last_error = "Interrupted"
                self._persist(job)

            self._jobs[job.id] = job
            self._order[job.id] = next(self._seq)

            if job.state is JobState.QUEUED:
                if job.dedup_key is not None:
                    holder = self._dedup.setdefault(job.dedup_key, job.id)
                    if holder != job.id:
                        logger.warning(
                            f"Recovered job {job.id} shares dedup key '{job.dedup_key}' with {holder}"
                        )
                self._queued.add(job.id)
                self._push(job)
                recovered += 1

        if recovered:
            logger.info(f"Recovered {recovered} queued jobs from store")
