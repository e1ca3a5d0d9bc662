"""
Engine configuration.

Defaults live on EngineConfig; from_env() overlays AUTOMATION_* variables,
loading a .env file first when python-dotenv finds one.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Optional, get_args

from dotenv import load_dotenv

from automation_engine.errors import ValidationError


# Environment variable -> EngineConfig field
ENV_FIELDS: Dict[str, str] = {
    'AUTOMATION_CONCURRENCY': 'concurrency',
    'AUTOMATION_MAX_RETRIES': 'max_retries',
    'AUTOMATION_RETRY_BASE_SECONDS': 'retry_base_seconds',
    'AUTOMATION_JOB_TIMEOUT_SECONDS': 'job_timeout_seconds',
    'AUTOMATION_SHUTDOWN_GRACE_SECONDS': 'shutdown_grace_seconds',
    'AUTOMATION_POLL_INTERVAL_SECONDS': 'poll_interval_seconds',
    'AUTOMATION_QUEUE_WARNING_DEPTH': 'queue_warning_depth',
    'AUTOMATION_HEARTBEAT_TOLERANCE_SECONDS': 'heartbeat_tolerance_seconds',
    'AUTOMATION_ANALYTICS_WINDOW_SECONDS': 'analytics_window_seconds',
    'AUTOMATION_LATENCY_EWMA_ALPHA': 'latency_ewma_alpha',
    'AUTOMATION_RETENTION_SECONDS': 'retention_seconds',
    'AUTOMATION_PURGE_INTERVAL_SECONDS': 'purge_interval_seconds',
    'AUTOMATION_TRIGGER_PRIORITY': 'trigger_priority',
    'AUTOMATION_PRIORITY_JOB_PRIORITY': 'priority_job_priority',
    'AUTOMATION_PERIODIC_POLL_SECONDS': 'periodic_poll_seconds',
    'AUTOMATION_WEEKLY_REPORT_SCHEDULE': 'weekly_report_schedule',
    'AUTOMATION_CLEANUP_SCHEDULE': 'cleanup_schedule',
    'AUTOMATION_DB_PATH': 'db_path',
    'AUTOMATION_USERS_FILE': 'users_file',
    'AUTOMATION_INFERENCE_URL': 'inference_url',
    'AUTOMATION_INFERENCE_API_KEY': 'inference_api_key',
    'MAIL_PROVIDER': 'mail_provider',
    'FROM_EMAIL': 'from_email',
    'FROM_NAME': 'from_name',
    'SENDGRID_API_KEY': 'sendgrid_api_key',
    'RESEND_API_KEY': 'resend_api_key',
    'GMAIL_USER': 'gmail_user',
    'GMAIL_APP_PASSWORD': 'gmail_password',
    'ALERT_CHANNELS': 'alert_channels',
    'ALERT_EMAIL_RECIPIENT': 'alert_email_recipient',
    'SLACK_WEBHOOK_URL': 'slack_webhook_url',
}

MAIL_PROVIDERS = ('console', 'smtp', 'sendgrid', 'resend')


@dataclass
class EngineConfig:
    """Tunables for the scheduler, monitors and collaborators."""

    # Scheduler
    concurrency: int = 4
    max_retries: int = 3
    retry_base_seconds: float = 30.0
    job_timeout_seconds: Optional[float] = 300.0
    shutdown_grace_seconds: float = 30.0
    poll_interval_seconds: float = 0.5

    # Health
    queue_warning_depth: int = 100
    heartbeat_tolerance_seconds: float = 30.0

    # Analytics / retention
    analytics_window_seconds: float = 3600.0
    latency_ewma_alpha: float = 0.2
    retention_seconds: float = 30 * 24 * 3600.0
    purge_interval_seconds: float = 300.0

    # Command surface defaults
    trigger_priority: int = 5
    priority_job_priority: int = 10

    # Periodic tasks (cron, UTC); None leaves the task out
    periodic_poll_seconds: float = 30.0
    weekly_report_schedule: Optional[str] = '0 9 * * 1'
    cleanup_schedule: Optional[str] = '0 2 * * *'

    # Collaborators
    db_path: Optional[Path] = None
    users_file: Optional[Path] = None
    inference_url: Optional[str] = None
    inference_api_key: Optional[str] = None
    mail_provider: str = 'console'
    from_email: str = 'noreply@automarket.com'
    from_name: str = 'AutoMarket'
    sendgrid_api_key: Optional[str] = None
    resend_api_key: Optional[str] = None
    gmail_user: Optional[str] = None
    gmail_password: Optional[str] = field(default=None, repr=False)

    # Failure alerts
    alert_channels: str = ''
    alert_email_recipient: Optional[str] = None
    slack_webhook_url: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ValidationError if any tunable is out of range."""
        if self.concurrency < 1:
            raise ValidationError("concurrency must be >= 1")
        if self.max_retries < 0:
            raise ValidationError("max_retries must be >= 0")
        for name in ('retry_base_seconds', 'shutdown_grace_seconds',
                     'heartbeat_tolerance_seconds', 'retention_seconds'):
            if getattr(self, name) < 0:
                raise ValidationError(f"{name} must be >= 0")
        for name in ('poll_interval_seconds', 'analytics_window_seconds',
                     'purge_interval_seconds', 'periodic_poll_seconds'):
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name} must be > 0")
        if self.job_timeout_seconds is not None and self.job_timeout_seconds <= 0:
            raise ValidationError("job_timeout_seconds must be > 0")
        if not 0 < self.latency_ewma_alpha <= 1:
            raise ValidationError("latency_ewma_alpha must be in (0, 1]")
        if self.mail_provider not in MAIL_PROVIDERS:
            raise ValidationError(
                f"mail_provider must be one of: {', '.join(MAIL_PROVIDERS)}"
            )

    @classmethod
    def from_env(cls, env_file: Path = None, environ: Dict[str, str] = None) -> "EngineConfig":
        """
        Build a config from environment variables.

        Args:
            env_file: Optional .env file to load first
            environ: Mapping to read instead of os.environ

        Returns:
            Validated EngineConfig
        """
        if environ is None:
            if env_file is not None:
                load_dotenv(env_file)
            else:
                load_dotenv()
            environ = os.environ

        types = {f.name: f.type for f in fields(cls)}
        values = {}
        for env_name, attr in ENV_FIELDS.items():
            raw = environ.get(env_name)
            if raw is None or raw == '':
                continue
            values[attr] = _coerce(env_name, raw, types[attr])
        return cls(**values)


def _coerce(env_name: str, raw: str, annotation):
    """Convert a raw environment string to the field's declared type."""
    args = get_args(annotation)
    optional = type(None) in args
    target = next((a for a in args if a is not type(None)), annotation)
    if optional and raw.lower() in ('none', 'off'):
        return None
    try:
        if target is int:
            return int(raw)
        if target is float:
            return float(raw)
        if target is Path:
            return Path(raw).expanduser()
    except ValueError:
        raise ValidationError(f"{env_name} has invalid value: {raw!r}")
    return raw
