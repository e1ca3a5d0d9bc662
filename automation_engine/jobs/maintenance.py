"""
Scheduled maintenance handlers: retention cleanup and the weekly digest.
"""

from typing import Any

from automation_engine.collaborators import Recipient
from automation_engine.errors import ExecutionError
from automation_engine.jobs.base import BaseHandler, CancelToken, HandlerResult
from automation_engine.models import AutomationType


class CleanupHandler(BaseHandler):
    """Purge terminal jobs that are older than the retention window."""

    automation_type = AutomationType.CLEANUP
    description = "Purge expired terminal jobs"

    def __init__(self, queue, analytics):
        super().__init__()
        self.queue = queue
        self.analytics = analytics

    def run(self, payload: Any, cancel_token: CancelToken) -> HandlerResult:
        cancel_token.raise_if_cancelled()
        purged = self.analytics.purge_expired(self.queue)
        return HandlerResult(result_data={'purged': purged})


class WeeklyReportHandler(BaseHandler):
    """
    Email an analytics digest to the operator.

    Payload (optional):
        recipient: Overrides the configured report address
    """

    automation_type = AutomationType.WEEKLY_REPORT
    description = "Mail the automation analytics digest"

    def __init__(self, queue, analytics, dispatcher, recipient: str = None):
        super().__init__()
        self.queue = queue
        self.analytics = analytics
        self.dispatcher = dispatcher
        self.recipient = recipient

    def run(self, payload: Any, cancel_token: CancelToken) -> HandlerResult:
        address = (payload or {}).get('recipient') if isinstance(payload, dict) else None
        address = address or self.recipient

        snapshot = self.analytics.snapshot(self.queue)
        report = snapshot.to_dict()

        if not address:
            self.logger.warning("No report recipient configured; digest generated but not sent")
            return HandlerResult(result_data={'sent': False, 'report': report})

        cancel_token.raise_if_cancelled()
        operator = Recipient(user_id='operator', email=address, name='Operator')
        if not self.dispatcher.deliver(operator, 'weekly_report', report):
            raise ExecutionError(f"Could not deliver weekly report to {address}")

        return HandlerResult(result_data={'sent': True, 'recipient': address})
