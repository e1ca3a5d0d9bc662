"""
Health monitor.

Checks queue backlog, scheduler liveness and mail reachability. The
composite status is the worst of its parts.
"""

import logging
from typing import Tuple

from automation_engine.models import HealthReport, HealthStatus


logger = logging.getLogger("automation.health")

CheckResult = Tuple[HealthStatus, str]


class HealthMonitor:
    """
    Args:
        queue: JobQueue to read depth from
        scheduler: Scheduler exposing is_running and heartbeat_age()
        dispatcher: NotificationDispatcher exposing ping()
        warning_depth: Queue depth above which the queue is degraded
        heartbeat_tolerance: Seconds without a heartbeat before the scheduler is down
    """

    def __init__(self, queue, scheduler, dispatcher, warning_depth: int = 100,
                 heartbeat_tolerance: float = 30.0):
        self.queue = queue
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.warning_depth = warning_depth
        self.heartbeat_tolerance = heartbeat_tolerance

    def check_queue(self) -> CheckResult:
        depth = self.queue.depth()
        if depth > self.warning_depth:
            return HealthStatus.DEGRADED, f"Queue depth {depth} above threshold {self.warning_depth}"
        return HealthStatus.UP, f"Queue depth {depth}"

    def check_scheduler(self) -> CheckResult:
        if self.scheduler is None or not self.scheduler.is_running:
            return HealthStatus.DOWN, "Scheduler not running"
        age = self.scheduler.heartbeat_age()
        if age is None:
            return HealthStatus.DOWN, "No heartbeat recorded"
        if age > self.heartbeat_tolerance:
            return HealthStatus.DOWN, f"Heartbeat stale: last beat {age:.1f}s ago"
        return HealthStatus.UP, f"Last heartbeat {age:.1f}s ago"

    def check_notifications(self) -> CheckResult:
        try:
            reachable = self.dispatcher.ping()
        except Exception as e:
            logger.warning(f"Mail ping raised: {e}")
            return HealthStatus.DEGRADED, f"Mail ping failed: {e}"
        if not reachable:
            return HealthStatus.DEGRADED, "Mail service unreachable"
        return HealthStatus.UP, "Mail service reachable"

    def health_check(self) -> HealthReport:
        """Run all checks and return a HealthReport."""
        components = {}
        details = {}
        for name, check in (
            ('queue', self.check_queue),
            ('scheduler', self.check_scheduler),
            ('notifications', self.check_notifications),
        ):
            status, detail = check()
            components[name] = status
            details[name] = detail

        report = HealthReport(components=components, details=details)
        if not report.healthy:
            logger.warning(f"Health check {report.status.value}: {details}")
        return report


def format_report(report: HealthReport) -> str:
    """Format a health report as text."""
    lines = [
        "=" * 60,
        "HEALTH CHECK REPORT",
        f"Generated: {report.checked_at.strftime('%Y-%m-%d %H:%M:%S')}",
        "=" * 60,
        ""
    ]

    for name, status in report.components.items():
        status_icon = {
            HealthStatus.UP: '✓',
            HealthStatus.DEGRADED: '⚠',
            HealthStatus.DOWN: '✗',
        }.get(status, '?')
        lines.append(f"{status_icon} {name}: {status.value.upper()}")
        if report.details.get(name):
            lines.append(f"    - {report.details[name]}")
        lines.append("")

    if report.healthy:
        lines.append("All systems healthy!")
    else:
        lines.append(f"Overall: {report.status.value.upper()}")

    return '\n'.join(lines)
