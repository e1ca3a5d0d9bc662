"""
Lifecycle controller: owns the queue, registry, scheduler, dispatcher and
monitors, and exposes the command surface used by HTTP/admin handlers.

Usage:
    controller = build_controller(EngineConfig.from_env())
    controller.initialize()
    controller.trigger_automation('pricing_analysis', {'payload': {'listing_id': 'l-1'}})
    controller.shutdown()
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from automation_engine.analytics import AnalyticsAggregator
from automation_engine.collaborators import (
    InferenceClient,
    Mailer,
    StaticUserDirectory,
    UserDirectory,
    build_inference_client,
    build_mailer,
)
from automation_engine.config import EngineConfig
from automation_engine.errors import QueueUnavailableError, UnknownTemplateError, ValidationError
from automation_engine.health import HealthMonitor
from automation_engine.jobs.inference import (
    FraudCheckHandler,
    PricingAnalysisHandler,
    RecommendationsHandler,
)
from automation_engine.jobs.maintenance import CleanupHandler, WeeklyReportHandler
from automation_engine.jobs.notification import SendNotificationHandler
from automation_engine.models import (
    AnalyticsSnapshot,
    AutomationType,
    HealthReport,
    Job,
    SystemState,
)
from automation_engine.notifications import NotificationDispatcher
from automation_engine.runner.alerts import FailureAlerter
from automation_engine.runner.periodic import PeriodicTask, PeriodicTicker
from automation_engine.runner.queue import JobQueue
from automation_engine.runner.registry import TaskRegistry, coerce_type
from automation_engine.runner.scheduler import Scheduler
from automation_engine.runner.store import JobStore, SqliteJobStore


logger = logging.getLogger("automation.controller")


@dataclass
class TriggerOptions:
    priority: Optional[int] = None
    sync: bool = False
    timeout: Optional[float] = None
    payload: Any = None
    dedup_key: Optional[str] = None

    @classmethod
    def parse(cls, options: Union["TriggerOptions", Dict[str, Any], None]) -> "TriggerOptions":
        """Validate caller-supplied trigger options."""
        if options is None:
            return cls()
        if isinstance(options, cls):
            parsed = options
        elif isinstance(options, dict):
            unknown = set(options) - {'priority', 'sync', 'timeout', 'payload', 'dedup_key'}
            if unknown:
                raise ValidationError(f"Unknown trigger options: {sorted(unknown)}")
            parsed = cls(**options)
        else:
            raise ValidationError("options must be a mapping")

        if parsed.priority is not None and (
                isinstance(parsed.priority, bool) or not isinstance(parsed.priority, int)):
            raise ValidationError("priority must be an integer")
        if parsed.timeout is not None:
            if isinstance(parsed.timeout, bool) or not isinstance(parsed.timeout, (int, float)):
                raise ValidationError("timeout must be a number of seconds")
            if parsed.timeout < 0:
                raise ValidationError("timeout must be >= 0")
        return parsed


class LifecycleController:
    """
    Args:
        config: Engine tunables
        mailer: Mail collaborator
        users: User-lookup collaborator
        inference: Inference collaborator for the analysis handlers
        store: Job persistence collaborator (in-memory when omitted)
    """

    def __init__(
        self,
        config: EngineConfig = None,
        mailer: Mailer = None,
        users: UserDirectory = None,
        inference: InferenceClient = None,
        store: JobStore = None
    ):
        self.config = config or EngineConfig()
        self.mailer = mailer or build_mailer(self.config)
        self.users = users or StaticUserDirectory()
        self.inference = inference or build_inference_client(self.config)

        self.queue = JobQueue(store)
        self.registry = TaskRegistry()
        self.analytics = AnalyticsAggregator(
            window_seconds=self.config.analytics_window_seconds,
            alpha=self.config.latency_ewma_alpha,
            retention_seconds=self.config.retention_seconds,
        )
        self.dispatcher = NotificationDispatcher(self.mailer, self.users)
        self.alerter = FailureAlerter(
            channels=self.config.alert_channels,
            mailer=self.mailer,
            recipient=self.config.alert_email_recipient,
            slack_webhook_url=self.config.slack_webhook_url,
        )
        self.scheduler = Scheduler(
            self.queue, self.registry, self.config,
            analytics=self.analytics, alerter=self.alerter,
        )
        self.health = HealthMonitor(
            self.queue, self.scheduler, self.dispatcher,
            warning_depth=self.config.queue_warning_depth,
            heartbeat_tolerance=self.config.heartbeat_tolerance_seconds,
        )
        self.periodic = PeriodicTicker(self._submit_periodic, poll_interval=self.config.periodic_poll_seconds)
        if self.config.weekly_report_schedule:
            self.periodic.add('weekly_report', AutomationType.WEEKLY_REPORT, self.config.weekly_report_schedule)
        if self.config.cleanup_schedule:
            self.periodic.add('cleanup', AutomationType.CLEANUP, self.config.cleanup_schedule)

        self._lock = threading.Lock()
        self._state = SystemState.STOPPED
        self._started_at: Optional[float] = None
        self._handlers_registered = False

    @property
    def state(self) -> SystemState:
        return self._state

    # --- Lifecycle ---

    def initialize(self) -> Dict[str, Any]:
        """Register built-in handlers and start the worker pool. Idempotent."""
        with self._lock:
            if self._state is SystemState.RUNNING:
                logger.info("Automation system already initialized")
                return self.get_system_status()

            if not self._handlers_registered:
                register_builtin_handlers(self)
                self._handlers_registered = True

            self.scheduler.start()
            self.periodic.start()
            self._state = SystemState.RUNNING
            self._started_at = time.monotonic()

        logger.info(
            f"Automation system initialized: {len(self.registry.registered_types())} handlers, "
            f"{self.config.concurrency} workers"
        )
        return self.get_system_status()

    def shutdown(self, grace: float = None) -> Dict[str, Any]:
        """Drain the scheduler and stop. No-op when already stopped."""
        with self._lock:
            if self._state is SystemState.STOPPED:
                return self.get_system_status()

            logger.info("Shutting down automation system...")
            self.periodic.stop()
            forced = self.scheduler.stop(grace)
            self._state = SystemState.STOPPED
            self._started_at = None

        if forced:
            logger.warning(f"{len(forced)} jobs did not finish before shutdown")
        logger.info("Automation system shutdown complete")
        return self.get_system_status()

    # --- Command surface ---

    def get_system_status(self) -> Dict[str, Any]:
        uptime = time.monotonic() - self._started_at if self._started_at is not None else 0.0
        return {
            'state': self._state.value,
            'queue_depth': self.queue.depth(),
            'running_count': self.queue.running_count(),
            'uptime_seconds': round(uptime, 3),
        }

    def get_analytics_dashboard(self) -> AnalyticsSnapshot:
        return self.analytics.snapshot(self.queue)

    def health_check(self) -> HealthReport:
        return self.health.health_check()

    def trigger_automation(
        self,
        automation_type: Union[AutomationType, str],
        options: Union[TriggerOptions, Dict[str, Any], None] = None
    ) -> Dict[str, Any]:
        """
        Enqueue a job of `automation_type`.

        With options.sync the call blocks until the job is terminal or
        options.timeout elapses; the job is never cancelled on timeout.

        Raises:
            UnknownTypeError: type unknown or not registered
            ValidationError: malformed options
            DuplicateJobError: options.dedup_key already active
            QueueUnavailableError: sync requested while the engine is stopped
        """
        automation_type = coerce_type(automation_type)
        self.registry.resolve(automation_type)
        opts = TriggerOptions.parse(options)
        if opts.sync and self._state is not SystemState.RUNNING:
            raise QueueUnavailableError("Automation system is not running; a sync trigger would never finish")

        priority = opts.priority if opts.priority is not None else self.config.trigger_priority
        job_id = self.queue.enqueue(Job(
            type=automation_type,
            payload=opts.payload if opts.payload is not None else {},
            priority=priority,
            dedup_key=opts.dedup_key,
        ))
        logger.info(f"Triggered automation: {automation_type.value} (ID: {job_id})")

        response = {'job_id': job_id, 'accepted': True}
        if opts.sync:
            job = self._await_terminal(job_id, opts.timeout)
            response['state'] = job.state.value
            if job.last_error:
                response['error'] = job.last_error
        return response

    def _await_terminal(self, job_id: str, timeout: Optional[float]) -> Job:
        """Wait in poll-sized slices so a shutdown releases the caller."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait = self.config.poll_interval_seconds
            if deadline is not None:
                wait = min(wait, max(0.0, deadline - time.monotonic()))
            job = self.queue.wait_for_terminal(job_id, wait)
            if job.state.is_terminal or self._state is not SystemState.RUNNING:
                return job
            if deadline is not None and time.monotonic() >= deadline:
                return job

    def queue_priority_job(
        self,
        automation_type: Union[AutomationType, str],
        payload: Any,
        owner_user_id: str = None,
        dedup_key: str = None
    ) -> str:
        """Enqueue a high-priority job and return its id."""
        automation_type = coerce_type(automation_type)
        self.registry.resolve(automation_type)
        job_id = self.queue.enqueue(Job(
            type=automation_type,
            payload=payload,
            priority=self.config.priority_job_priority,
            dedup_key=dedup_key,
            owner_user_id=owner_user_id,
        ))
        logger.info(f"Priority job queued: {automation_type.value} (ID: {job_id})")
        return job_id

    def send_immediate_notification(self, user_id: str, template_key: str,
                                    data: Dict[str, Any] = None) -> bool:
        """Send a template now, bypassing the queue. Never raises."""
        try:
            return self.dispatcher.send_immediate(user_id, template_key, data or {})
        except UnknownTemplateError as e:
            logger.error(f"Immediate notification rejected: {e}")
            return False
        except Exception as e:
            logger.exception(f"Error sending immediate notification: {e}")
            return False

    def cancel_job(self, job_id: str) -> Job:
        job = self.queue.cancel(job_id)
        self.analytics.record(job)
        return job

    def get_job(self, job_id: str) -> Job:
        return self.queue.get(job_id)

    # --- Periodic tasks ---

    def set_task_enabled(self, name: str, enabled: bool) -> Dict[str, Any]:
        """
        Turn a periodic task on or off.

        Raises:
            UnknownTaskError: no task with this name
        """
        return self.periodic.set_enabled(name, enabled).to_dict()

    def get_task_statistics(self) -> Dict[str, Any]:
        """Per-task run, skip and error counts plus the next firing time."""
        return self.periodic.statistics()

    def _submit_periodic(self, task: PeriodicTask) -> str:
        self.registry.resolve(task.automation_type)
        job_id = self.queue.enqueue(Job(
            type=task.automation_type,
            payload=dict(task.payload),
            priority=task.priority if task.priority is not None else self.config.trigger_priority,
            dedup_key=task.dedup_key,
        ))
        logger.info(f"Periodic task '{task.name}' queued {task.automation_type.value} (ID: {job_id})")
        return job_id


def register_builtin_handlers(controller: LifecycleController) -> None:
    """Bind every built-in AutomationType to its handler."""
    registry = controller.registry
    registry.register(AutomationType.PRICING_ANALYSIS, PricingAnalysisHandler(controller.inference))
    registry.register(AutomationType.RECOMMENDATIONS, RecommendationsHandler(controller.inference))
    registry.register(AutomationType.FRAUD_CHECK, FraudCheckHandler(controller.inference))
    registry.register(AutomationType.SEND_NOTIFICATION, SendNotificationHandler(controller.dispatcher))
    registry.register(AutomationType.CLEANUP, CleanupHandler(controller.queue, controller.analytics))
    registry.register(AutomationType.WEEKLY_REPORT, WeeklyReportHandler(
        controller.queue, controller.analytics, controller.dispatcher,
        recipient=controller.config.alert_email_recipient,
    ))


def build_controller(config: EngineConfig = None) -> LifecycleController:
    """Compose a controller from configuration alone."""
    config = config or EngineConfig.from_env()
    store = SqliteJobStore(config.db_path) if config.db_path else None
    users = StaticUserDirectory.from_json_file(config.users_file) if config.users_file else None
    return LifecycleController(config, users=users, store=store)
