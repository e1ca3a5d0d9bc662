"""Unit Tests for the periodic task ticker"""
from datetime import datetime, timezone

import pytest

from automation_engine.errors import DuplicateJobError, UnknownTaskError, ValidationError
from automation_engine.models import AutomationType
from automation_engine.runner.periodic import PeriodicTicker, next_run


# Saturday noon UTC
SATURDAY = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
MONDAY_9AM = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class RecordingSubmit:
    def __init__(self):
        self.submitted = []
        self.error = None

    def __call__(self, task):
        if self.error is not None:
            raise self.error
        self.submitted.append(task.name)
        return f"job-{len(self.submitted)}"


@pytest.fixture
def clock():
    return Clock(SATURDAY)


@pytest.fixture
def submit():
    return RecordingSubmit()


@pytest.fixture
def ticker(submit, clock):
    return PeriodicTicker(submit, poll_interval=0.02, clock=clock)


class TestSchedule:
    def test_next_run_weekly(self):
        """'0 9 * * 1' fires on the following Monday at 09:00 UTC"""
        assert next_run('0 9 * * 1', SATURDAY) == MONDAY_9AM

    def test_add_computes_next_run(self, ticker):
        """New tasks know their first firing"""
        task = ticker.add('cleanup', AutomationType.CLEANUP, '0 2 * * *')
        assert task.next_run_at == datetime(2026, 10, 18, 2, 0, tzinfo=timezone.utc)
        assert task.dedup_key == 'periodic:cleanup'

    @pytest.mark.parametrize('schedule', ['every monday', '61 * * * *', '0 0 * * * *', ''])
    def test_invalid_schedule_rejected(self, ticker, schedule):
        """Only five-field cron expressions are accepted"""
        with pytest.raises(ValidationError):
            ticker.add('bad', AutomationType.CLEANUP, schedule)

    def test_duplicate_name_rejected(self, ticker):
        """Task names are unique"""
        ticker.add('cleanup', AutomationType.CLEANUP, '0 2 * * *')
        with pytest.raises(ValidationError):
            ticker.add('cleanup', AutomationType.CLEANUP, '0 3 * * *')


class TestTick:
    def test_nothing_due_before_schedule(self, ticker, submit):
        """A tick before the first firing submits nothing"""
        ticker.add('weekly_report', AutomationType.WEEKLY_REPORT, '0 9 * * 1')
        assert ticker.tick(SATURDAY) == []
        assert submit.submitted == []

    def test_due_task_fires_once(self, ticker, submit):
        """A due task is submitted and rescheduled for the next week"""
        ticker.add('weekly_report', AutomationType.WEEKLY_REPORT, '0 9 * * 1')

        assert ticker.tick(MONDAY_9AM) == ['weekly_report']
        assert ticker.tick(MONDAY_9AM) == []

        task = ticker.get('weekly_report')
        assert task.run_count == 1
        assert task.last_run_at == MONDAY_9AM
        assert task.last_job_id == 'job-1'
        assert task.next_run_at == datetime(2026, 10, 26, 9, 0, tzinfo=timezone.utc)

    def test_missed_runs_collapse(self, ticker, submit):
        """Three missed days produce a single submission"""
        ticker.add('cleanup', AutomationType.CLEANUP, '0 2 * * *')
        later = datetime(2026, 10, 21, 12, 0, tzinfo=timezone.utc)

        assert ticker.tick(later) == ['cleanup']
        assert submit.submitted == ['cleanup']
        assert ticker.get('cleanup').next_run_at == datetime(2026, 10, 22, 2, 0, tzinfo=timezone.utc)

    def test_duplicate_counts_as_skip(self, ticker, submit):
        """An active previous run turns the firing into a skip"""
        ticker.add('cleanup', AutomationType.CLEANUP, '0 2 * * *')
        submit.error = DuplicateJobError('periodic:cleanup', 'job-0')

        assert ticker.tick(MONDAY_9AM) == []
        task = ticker.get('cleanup')
        assert task.skipped_count == 1
        assert task.error_count == 0

    def test_submit_exception_counts_error(self, ticker, submit):
        """Unexpected submit errors are recorded, not raised"""
        ticker.add('cleanup', AutomationType.CLEANUP, '0 2 * * *')
        submit.error = RuntimeError('queue exploded')

        assert ticker.tick(MONDAY_9AM) == []
        task = ticker.get('cleanup')
        assert task.error_count == 1
        assert task.last_error == 'queue exploded'


class TestEnableDisable:
    def test_disabled_task_is_ignored(self, ticker, submit):
        """Disabled tasks never fire"""
        ticker.add('cleanup', AutomationType.CLEANUP, '0 2 * * *')
        ticker.set_enabled('cleanup', False)
        assert ticker.tick(MONDAY_9AM) == []
        assert ticker.statistics()['enabled_tasks'] == 0
        assert ticker.statistics()['tasks']['cleanup']['next_run_at'] is None

    def test_reenable_skips_missed_runs(self, ticker, clock, submit):
        """Re-enabling schedules from now instead of catching up"""
        ticker.add('cleanup', AutomationType.CLEANUP, '0 2 * * *')
        ticker.set_enabled('cleanup', False)

        clock.now = MONDAY_9AM
        task = ticker.set_enabled('cleanup', True)
        assert task.next_run_at == datetime(2026, 10, 20, 2, 0, tzinfo=timezone.utc)
        assert ticker.tick(MONDAY_9AM) == []

    def test_unknown_task(self, ticker):
        """Unknown names raise UnknownTaskError"""
        with pytest.raises(UnknownTaskError):
            ticker.set_enabled('nope', True)


class TestLifecycle:
    def test_start_and_stop(self, ticker):
        """The ticker thread starts and stops"""
        ticker.start()
        assert ticker.is_running
        assert ticker.statistics()['running'] is True
        ticker.stop()
        assert not ticker.is_running
