"""Unit Tests for the Job Queue - ordering, dedup, cancel and retry bookkeeping"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from automation_engine.errors import (
    DuplicateJobError,
    InvalidStateError,
    QueueUnavailableError,
    UnknownJobError,
    ValidationError,
)
from automation_engine.models import AutomationType, Job, JobState
from automation_engine.runner.queue import JobQueue
from automation_engine.runner.store import InMemoryJobStore


T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


def make_job(priority=0, submitted_at=T0, **kwargs):
    return Job(type=AutomationType.CLEANUP, priority=priority, submitted_at=submitted_at, **kwargs)


class TestOrdering:
    """Strict priority, then earliest submission, then submission order"""

    def test_higher_priority_first(self):
        """A priority-10 job is dequeued before a priority-1 job submitted earlier"""
        queue = JobQueue()
        low = queue.enqueue(make_job(priority=1, submitted_at=T0))
        high = queue.enqueue(make_job(priority=10, submitted_at=T0 + timedelta(seconds=5)))

        assert queue.dequeue_next().id == high
        assert queue.dequeue_next().id == low

    def test_equal_priority_is_fifo(self):
        """Same priority dequeues by submitted_at"""
        queue = JobQueue()
        first = queue.enqueue(make_job(priority=5, submitted_at=T0))
        second = queue.enqueue(make_job(priority=5, submitted_at=T0 + timedelta(seconds=1)))

        assert queue.dequeue_next().id == first
        assert queue.dequeue_next().id == second

    def test_identical_timestamps_use_submission_order(self):
        """Ties on priority and timestamp fall back to enqueue order"""
        queue = JobQueue()
        ids = [queue.enqueue(make_job(priority=3)) for _ in range(5)]

        assert [queue.dequeue_next().id for _ in range(5)] == ids

    def test_dequeue_marks_running(self):
        """Dequeued job is running with started_at set"""
        clock = FakeClock()
        queue = JobQueue(clock=clock)
        job_id = queue.enqueue(make_job())

        job = queue.dequeue_next()
        assert job.id == job_id
        assert job.state is JobState.RUNNING
        assert job.started_at == T0
        assert queue.depth() == 0
        assert queue.running_count() == 1

    def test_empty_queue_returns_none(self):
        """dequeue_next on an empty queue returns None"""
        assert JobQueue().dequeue_next() is None

    def test_limit_blocks_claim(self):
        """No claim once `limit` jobs are running"""
        queue = JobQueue()
        queue.enqueue(make_job())
        queue.enqueue(make_job())

        assert queue.dequeue_next(limit=1) is not None
        assert queue.dequeue_next(limit=1) is None
        assert queue.depth() == 1

    def test_naive_timestamp_is_treated_as_utc(self):
        """Naive and aware submissions can be ordered together"""
        queue = JobQueue()
        naive = queue.enqueue(make_job(submitted_at=datetime(2024, 1, 1, 11, 0, 0)))
        aware = queue.enqueue(make_job(submitted_at=T0))

        assert queue.get(naive).submitted_at.tzinfo is not None
        assert queue.dequeue_next().id == naive
        assert queue.dequeue_next().id == aware


class TestDedup:
    """A dedup key is held while its job is queued or running"""

    def test_duplicate_rejected_while_queued(self):
        """Second enqueue with the same key raises DuplicateJobError"""
        queue = JobQueue()
        first = queue.enqueue(make_job(dedup_key='listing-42'))

        with pytest.raises(DuplicateJobError) as exc:
            queue.enqueue(make_job(dedup_key='listing-42'))
        assert exc.value.existing_job_id == first
        assert len(queue) == 1

    def test_duplicate_rejected_while_running(self):
        """Key is still held after the job starts"""
        queue = JobQueue()
        queue.enqueue(make_job(dedup_key='k'))
        queue.dequeue_next()

        with pytest.raises(DuplicateJobError):
            queue.enqueue(make_job(dedup_key='k'))

    def test_key_released_after_success(self):
        """Enqueue with the same key succeeds once the holder is terminal"""
        queue = JobQueue()
        first = queue.enqueue(make_job(dedup_key='k'))
        queue.dequeue_next()
        queue.mark_terminal(first, JobState.SUCCEEDED)

        second = queue.enqueue(make_job(dedup_key='k'))
        assert second != first

    def test_key_released_after_cancel(self):
        """Cancelling a job frees its dedup key"""
        queue = JobQueue()
        first = queue.enqueue(make_job(dedup_key='k'))
        queue.cancel(first)

        assert queue.enqueue(make_job(dedup_key='k')) != first

    def test_jobs_without_key_never_collide(self):
        """Jobs without a dedup key are always accepted"""
        queue = JobQueue()
        queue.enqueue(make_job())
        queue.enqueue(make_job())
        assert queue.depth() == 2


class TestValidation:
    def test_rejects_non_integer_priority(self):
        """Float priorities are malformed"""
        with pytest.raises(ValidationError):
            JobQueue().enqueue(make_job(priority=1.5))

    def test_rejects_unknown_type(self):
        """Tags outside the closed set are malformed"""
        with pytest.raises(ValidationError):
            JobQueue().enqueue(Job(type='bitcoin_mining'))

    def test_rejects_non_queued_job(self):
        """Only fresh queued jobs can be enqueued"""
        with pytest.raises(ValidationError):
            JobQueue().enqueue(make_job(state=JobState.RUNNING))

    def test_rejects_reused_id(self):
        """An id can only be enqueued once"""
        queue = JobQueue()
        queue.enqueue(make_job(id='job-1'))
        with pytest.raises(ValidationError):
            queue.enqueue(make_job(id='job-1'))

    def test_string_type_is_coerced(self):
        """A valid tag string becomes an AutomationType"""
        queue = JobQueue()
        job_id = queue.enqueue(Job(type='fraud_check'))
        assert queue.get(job_id).type is AutomationType.FRAUD_CHECK


class TestCancel:
    def test_cancel_queued_job(self):
        """Queued -> cancelled, never dispatched"""
        queue = JobQueue()
        job_id = queue.enqueue(make_job())

        cancelled = queue.cancel(job_id)
        assert cancelled.state is JobState.CANCELLED
        assert cancelled.completed_at is not None
        assert queue.dequeue_next() is None
        assert queue.depth() == 0

    def test_cancel_running_job_raises(self):
        """Running jobs cannot be cancelled"""
        queue = JobQueue()
        job_id = queue.enqueue(make_job())
        queue.dequeue_next()

        with pytest.raises(InvalidStateError):
            queue.cancel(job_id)

    def test_cancel_terminal_job_raises(self):
        """Terminal jobs cannot be cancelled"""
        queue = JobQueue()
        job_id = queue.enqueue(make_job())
        queue.dequeue_next()
        queue.mark_terminal(job_id, JobState.FAILED, error='boom')

        with pytest.raises(InvalidStateError):
            queue.cancel(job_id)

    def test_cancel_unknown_job_raises(self):
        """Unknown ids raise UnknownJobError"""
        with pytest.raises(UnknownJobError):
            JobQueue().cancel('missing')


class TestTransitions:
    def test_requeue_increments_retry_count(self):
        """Retry keeps priority and submitted_at"""
        queue = JobQueue()
        job_id = queue.enqueue(make_job(priority=7))
        queue.dequeue_next()

        job = queue.requeue(job_id, error='flaky')
        assert job.state is JobState.QUEUED
        assert job.retry_count == 1
        assert job.priority == 7
        assert job.submitted_at == T0
        assert job.last_error == 'flaky'
        assert queue.dequeue_next().id == job_id

    def test_requeue_with_delay_waits_for_backoff(self):
        """A delayed retry is not eligible until its backoff elapses"""
        clock = FakeClock()
        queue = JobQueue(clock=clock)
        job_id = queue.enqueue(make_job())
        queue.dequeue_next()
        queue.requeue(job_id, delay=30)

        assert queue.dequeue_next() is None
        assert queue.depth() == 1

        clock.advance(30)
        assert queue.dequeue_next().id == job_id

    def test_delayed_job_keeps_priority_after_backoff(self):
        """Once eligible, a retried high-priority job beats a low-priority one"""
        clock = FakeClock()
        queue = JobQueue(clock=clock)
        retried = queue.enqueue(make_job(priority=10))
        queue.dequeue_next()
        queue.requeue(retried, delay=5)
        low = queue.enqueue(make_job(priority=1))

        clock.advance(5)
        assert queue.dequeue_next().id == retried
        assert queue.dequeue_next().id == low

    def test_requeue_requires_running(self):
        """Only running jobs can be requeued"""
        queue = JobQueue()
        job_id = queue.enqueue(make_job())
        with pytest.raises(InvalidStateError):
            queue.requeue(job_id)

    def test_mark_terminal_requires_running(self):
        """A queued job cannot jump to succeeded"""
        queue = JobQueue()
        job_id = queue.enqueue(make_job())
        with pytest.raises(InvalidStateError):
            queue.mark_terminal(job_id, JobState.SUCCEEDED)

    def test_mark_terminal_rejects_non_terminal_state(self):
        """mark_terminal only accepts succeeded or failed"""
        queue = JobQueue()
        job_id = queue.enqueue(make_job())
        queue.dequeue_next()
        with pytest.raises(ValidationError):
            queue.mark_terminal(job_id, JobState.CANCELLED)

    def test_mark_terminal_records_result(self):
        """Result and completed_at are stored"""
        clock = FakeClock()
        queue = JobQueue(clock=clock)
        job_id = queue.enqueue(make_job())
        queue.dequeue_next()
        clock.advance(2)

        job = queue.mark_terminal(job_id, JobState.SUCCEEDED, result={'ok': True})
        assert job.result == {'ok': True}
        assert job.latency_seconds == 2.0
        assert queue.running_count() == 0

    def test_snapshots_are_copies(self):
        """Mutating a returned job does not touch the queue"""
        queue = JobQueue()
        job_id = queue.enqueue(make_job())
        snapshot = queue.get(job_id)
        snapshot.state = JobState.FAILED

        assert queue.get(job_id).state is JobState.QUEUED


class TestWaiting:
    def test_wait_for_terminal_returns_final_state(self):
        """wait_for_terminal wakes when another thread finishes the job"""
        queue = JobQueue()
        job_id = queue.enqueue(make_job())
        queue.dequeue_next()

        timer = threading.Timer(0.05, queue.mark_terminal, args=(job_id, JobState.SUCCEEDED))
        timer.start()
        try:
            job = queue.wait_for_terminal(job_id, timeout=5)
        finally:
            timer.join()
        assert job.state is JobState.SUCCEEDED

    def test_wait_for_terminal_times_out(self):
        """Timeout returns the current, non-terminal snapshot"""
        queue = JobQueue()
        job_id = queue.enqueue(make_job())

        job = queue.wait_for_terminal(job_id, timeout=0.01)
        assert job.state is JobState.QUEUED

    def test_wait_for_work_sees_queued_job(self):
        """wait_for_work returns True immediately when work exists"""
        queue = JobQueue()
        queue.enqueue(make_job())
        assert queue.wait_for_work(0.01) is True


class TestPurge:
    def test_purges_only_old_terminal_jobs(self):
        """Active and recent jobs survive the purge"""
        clock = FakeClock()
        queue = JobQueue(clock=clock)
        old = queue.enqueue(make_job())
        queue.dequeue_next()
        queue.mark_terminal(old, JobState.SUCCEEDED)

        clock.advance(3600)
        recent = queue.enqueue(make_job())
        queue.cancel(recent)
        active = queue.enqueue(make_job())

        purged = queue.purge_terminal(older_than=T0 + timedelta(seconds=60))
        assert [j.id for j in purged] == [old]
        with pytest.raises(UnknownJobError):
            queue.get(old)
        assert queue.get(recent).state is JobState.CANCELLED
        assert queue.get(active).state is JobState.QUEUED

    def test_purged_ids_cannot_be_reused(self):
        """Ids stay unique for the queue's lifetime, even after purge"""
        queue = JobQueue()
        job_id = queue.enqueue(Job(type=AutomationType.CLEANUP, id='nightly-cleanup'))
        queue.cancel(job_id)
        queue.purge_terminal(older_than=datetime.now(timezone.utc) + timedelta(seconds=1))

        with pytest.raises(ValidationError):
            queue.enqueue(Job(type=AutomationType.CLEANUP, id='nightly-cleanup'))


class SaveFailsOnTerminal(InMemoryJobStore):
    """Accepts queued/running writes, rejects terminal ones"""

    def save(self, job):
        if job.state.is_terminal:
            raise QueueUnavailableError('disk full')
        super().save(job)


class TestStoreFailures:
    def test_terminal_transition_survives_store_error(self):
        """A failed write still settles the job, wakes waiters and frees the dedup key"""
        queue = JobQueue(SaveFailsOnTerminal())
        job_id = queue.enqueue(Job(type=AutomationType.CLEANUP, dedup_key='k'))
        queue.dequeue_next()

        waited = []
        waiter = threading.Thread(target=lambda: waited.append(queue.wait_for_terminal(job_id)))
        waiter.start()

        done = queue.mark_terminal(job_id, JobState.SUCCEEDED, result={'ok': True})
        waiter.join(timeout=5)

        assert done.state is JobState.SUCCEEDED
        assert not waiter.is_alive()
        assert waited[0].state is JobState.SUCCEEDED
        assert queue.running_count() == 0
        queue.enqueue(Job(type=AutomationType.CLEANUP, dedup_key='k'))
