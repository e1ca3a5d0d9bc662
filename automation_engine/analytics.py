"""
Analytics aggregator: rolling per-type and per-state counters, EWMA latency
and throughput over a configurable window. Also owns retention of terminal
job records.
"""

import logging
import threading
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, NamedTuple, Optional

from automation_engine.models import (
    AnalyticsSnapshot,
    AutomationType,
    Job,
    JobState,
    TypeStats,
    utcnow,
)


logger = logging.getLogger("automation.analytics")

MAX_EVENTS = 100_000


class CompletionEvent(NamedTuple):
    at: datetime
    type: AutomationType
    state: JobState
    latency: Optional[float]


class AnalyticsAggregator:
    """
    Args:
        window_seconds: Length of the rolling window
        alpha: EWMA smoothing factor for latency (0 < alpha <= 1)
        retention_seconds: How long terminal jobs stay in the queue
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        window_seconds: float = 3600.0,
        alpha: float = 0.2,
        retention_seconds: float = 30 * 24 * 3600.0,
        clock: Callable[[], datetime] = utcnow
    ):
        self.window_seconds = window_seconds
        self.alpha = alpha
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._events: Deque[CompletionEvent] = deque(maxlen=MAX_EVENTS)
        self._latency: Dict[AutomationType, float] = {}
        self._totals: Counter = Counter()
        self._archived = 0

    def record(self, job: Job) -> None:
        """Record a job that just reached a terminal state."""
        if not job.state.is_terminal:
            return

        latency = job.latency_seconds
        with self._lock:
            self._events.append(CompletionEvent(
                at=job.completed_at or self._clock(),
                type=job.type,
                state=job.state,
                latency=latency,
            ))
            self._totals[job.state.value] += 1
            if latency is not None:
                previous = self._latency.get(job.type)
                if previous is None:
                    self._latency[job.type] = latency
                else:
                    self._latency[job.type] = self.alpha * latency + (1 - self.alpha) * previous
            self._prune(self._clock())

    def snapshot(self, queue) -> AnalyticsSnapshot:
        """Build a dashboard snapshot. Reads the queue, never mutates jobs."""
        queue_depth = queue.depth()
        running_count = queue.running_count()

        with self._lock:
            self._prune(self._clock())
            events = list(self._events)
            latency = dict(self._latency)

        per_state = Counter(e.state.value for e in events)
        per_type: Dict[str, TypeStats] = {}
        by_type: Dict[AutomationType, Counter] = {}
        for event in events:
            by_type.setdefault(event.type, Counter())[event.state] += 1

        for automation_type, counts in by_type.items():
            finished = counts[JobState.SUCCEEDED] + counts[JobState.FAILED]
            per_type[automation_type.value] = TypeStats(
                count=sum(counts.values()),
                success_rate=counts[JobState.SUCCEEDED] / finished if finished else 0.0,
                avg_latency=latency.get(automation_type),
            )

        finished_total = per_state[JobState.SUCCEEDED.value] + per_state[JobState.FAILED.value]
        throughput = finished_total / (self.window_seconds / 60.0)

        return AnalyticsSnapshot(
            window_seconds=self.window_seconds,
            per_type=per_type,
            per_state=dict(per_state),
            queue_depth=queue_depth,
            running_count=running_count,
            throughput_per_minute=round(throughput, 4),
            generated_at=self._clock(),
        )

    def purge_expired(self, queue, now: datetime = None) -> int:
        """Drop terminal jobs older than the retention window from the queue."""
        now = now or self._clock()
        purged = queue.purge_terminal(now - timedelta(seconds=self.retention_seconds))
        if purged:
            with self._lock:
                self._archived += len(purged)
            logger.info(f"Purged {len(purged)} expired jobs")
        return len(purged)

    def totals(self) -> Dict[str, int]:
        """Lifetime counters, independent of the rolling window."""
        with self._lock:
            totals = dict(self._totals)
            totals['archived'] = self._archived
        return totals

    def _prune(self, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.window_seconds)
        while self._events and self._events[0].at < cutoff:
            self._events.popleft()
