"""
Data model shared by the queue, scheduler, dispatcher and monitors.
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return uuid.uuid4().hex


class JobState(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})


class AutomationType(str, enum.Enum):
    """Closed set of automation tags. Each is bound to one handler."""
    PRICING_ANALYSIS = "pricing_analysis"
    RECOMMENDATIONS = "recommendations"
    FRAUD_CHECK = "fraud_check"
    SEND_NOTIFICATION = "send_notification"
    CLEANUP = "cleanup"
    WEEKLY_REPORT = "weekly_report"


class HealthStatus(str, enum.Enum):
    UP = "up"
    DEGRADED = "degraded"
    DOWN = "down"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def worst(cls, statuses) -> "HealthStatus":
        """Return the most severe status, UP for an empty iterable."""
        return max(statuses, key=lambda s: s.severity, default=cls.UP)


_SEVERITY = {HealthStatus.UP: 0, HealthStatus.DEGRADED: 1, HealthStatus.DOWN: 2}


class SystemState(str, enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class Job:
    """One unit of automated work and its lifecycle bookkeeping."""
    type: AutomationType
    payload: Any = None
    priority: int = 0
    dedup_key: Optional[str] = None
    owner_user_id: Optional[str] = None
    id: str = field(default_factory=new_job_id)
    state: JobState = JobState.QUEUED
    submitted_at: datetime = field(default_factory=utcnow)
    available_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: Optional[int] = None
    timeout_seconds: Optional[float] = None
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def latency_seconds(self) -> Optional[float]:
        """Time from start to completion, None until both are known."""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'type': self.type.value,
            'payload': self.payload,
            'priority': self.priority,
            'dedup_key': self.dedup_key,
            'owner_user_id': self.owner_user_id,
            'state': self.state.value,
            'submitted_at': _iso(self.submitted_at),
            'available_at': _iso(self.available_at),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'retry_count': self.retry_count,
            'max_retries': self.max_retries,
            'timeout_seconds': self.timeout_seconds,
            'last_error': self.last_error,
            'result': self.result,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data['id'],
            type=AutomationType(data['type']),
            payload=data.get('payload'),
            priority=int(data.get('priority') or 0),
            dedup_key=data.get('dedup_key'),
            owner_user_id=data.get('owner_user_id'),
            state=JobState(data['state']),
            submitted_at=_parse(data['submitted_at']),
            available_at=_parse(data.get('available_at')),
            started_at=_parse(data.get('started_at')),
            completed_at=_parse(data.get('completed_at')),
            retry_count=int(data.get('retry_count') or 0),
            max_retries=data.get('max_retries'),
            timeout_seconds=data.get('timeout_seconds'),
            last_error=data.get('last_error'),
            result=data.get('result'),
        )


@dataclass
class NotificationRequest:
    """A transactional message send. Never persisted as a Job."""
    user_id: str
    template_key: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthReport:
    components: Dict[str, HealthStatus]
    checked_at: datetime = field(default_factory=utcnow)
    details: Dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> HealthStatus:
        return HealthStatus.worst(self.components.values())

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.UP

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'healthy': self.healthy,
            'components': {name: s.value for name, s in self.components.items()},
            'details': dict(self.details),
            'checked_at': _iso(self.checked_at),
        }


@dataclass
class TypeStats:
    count: int = 0
    success_rate: float = 0.0
    avg_latency: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'count': self.count,
            'success_rate': self.success_rate,
            'avg_latency': self.avg_latency,
        }


@dataclass
class AnalyticsSnapshot:
    window_seconds: float
    per_type: Dict[str, TypeStats]
    per_state: Dict[str, int]
    queue_depth: int
    running_count: int
    throughput_per_minute: float
    generated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'window_seconds': self.window_seconds,
            'per_type': {t: s.to_dict() for t, s in self.per_type.items()},
            'per_state': dict(self.per_state),
            'queue_depth': self.queue_depth,
            'running_count': self.running_count,
            'throughput_per_minute': self.throughput_per_minute,
            'generated_at': _iso(self.generated_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
