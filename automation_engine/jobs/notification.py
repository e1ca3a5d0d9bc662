"""
Queued transactional notification.

Unlike NotificationDispatcher.send_immediate, a failed send here goes
through the scheduler's retry policy.
"""

from typing import Any

from automation_engine.errors import ExecutionError, ValidationError
from automation_engine.jobs.base import BaseHandler, CancelToken, HandlerResult
from automation_engine.models import AutomationType
from automation_engine.notifications import NotificationDispatcher


class SendNotificationHandler(BaseHandler):
    """
    Payload:
        user_id: Recipient user id
        template_key: Catalog template
        data: Optional template data
    """

    automation_type = AutomationType.SEND_NOTIFICATION
    description = "Send a catalog email template to one user"

    def __init__(self, dispatcher: NotificationDispatcher):
        super().__init__()
        self.dispatcher = dispatcher

    def validate_payload(self, payload: Any) -> None:
        self.require_keys(payload, 'user_id', 'template_key')
        if payload['template_key'] not in self.dispatcher.templates:
            raise ValidationError(f"Unknown notification template: {payload['template_key']}")
        if not isinstance(payload.get('data') or {}, dict):
            raise ValidationError("data must be an object")

    def run(self, payload: Any, cancel_token: CancelToken) -> HandlerResult:
        user_id = payload['user_id']
        template_key = payload['template_key']

        cancel_token.raise_if_cancelled()
        if not self.dispatcher.send_immediate(user_id, template_key, payload.get('data') or {}):
            raise ExecutionError(f"Could not deliver '{template_key}' to user {user_id}")

        return HandlerResult(result_data={'user_id': user_id, 'template_key': template_key, 'sent': True})
