"""
Notification dispatcher: synchronous, template-based transactional mail.

Sends never retry. A False return leaves the retry decision to the caller.
"""

import html
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from automation_engine.collaborators import Mailer, Recipient, UserDirectory
from automation_engine.errors import UnknownTemplateError
from automation_engine.models import NotificationRequest


logger = logging.getLogger("automation.notifications")


@dataclass
class RenderedMessage:
    subject: str
    html: str
    text: str


def _e(value: Any) -> str:
    return html.escape(str(value))


def _layout(title: str, body: str, color: str = '#2563eb') -> str:
    return f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: {color}; color: white; padding: 20px; text-align: center;">
        <h1 style="margin: 0; font-size: 24px;">{title}</h1>
    </div>
    <div style="padding: 30px; color: #374151; line-height: 1.6;">
        {body}
    </div>
    <div style="background: #f8fafc; padding: 16px; text-align: center; color: #6b7280; font-size: 12px;">
        This is an automated message from AutoMarket
    </div>
</div>
"""


def _welcome(recipient: Recipient, data: Dict[str, Any]) -> RenderedMessage:
    name = data.get('user_name') or recipient.name or 'there'
    return RenderedMessage(
        subject='Welcome to AutoMarket!',
        html=_layout('Welcome to AutoMarket!', f"""
            <p>Hi {_e(name)},</p>
            <p>Welcome to AutoMarket, the trusted automotive marketplace. Browse quality
            used cars, save your favourites and list your own car for free.</p>
        """),
        text=f"Hi {name},\n\nWelcome to AutoMarket! Browse cars, save favourites "
             f"and list your own car for free.\n",
    )


def _new_message(recipient: Recipient, data: Dict[str, Any]) -> RenderedMessage:
    sender = data.get('sender_name', 'A buyer')
    listing = data.get('listing_title', 'your listing')
    content = data.get('message', '')
    return RenderedMessage(
        subject=f"New message about {listing}",
        html=_layout('New Message', f"""
            <p>Hi {_e(recipient.name or 'there')},</p>
            <p>{_e(sender)} sent you a message about <strong>{_e(listing)}</strong>:</p>
            <blockquote style="border-left: 4px solid #2563eb; padding-left: 12px;">{_e(content)}</blockquote>
        """),
        text=f"{sender} sent you a message about {listing}:\n\n{content}\n",
    )


def _listing_expiry(recipient: Recipient, data: Dict[str, Any]) -> RenderedMessage:
    listing = data.get('listing_title', 'Your listing')
    days_left = data.get('days_left', 0)
    return RenderedMessage(
        subject=f"Your listing expires in {days_left} days",
        html=_layout('Listing Expiring Soon', f"""
            <p>Hi {_e(recipient.name or 'there')},</p>
            <p><strong>{_e(listing)}</strong> expires in {_e(days_left)} days.
            Renew it to keep it visible to buyers.</p>
        """, color='#f59e0b'),
        text=f"{listing} expires in {days_left} days. Renew it to keep it visible.\n",
    )


def _payment_confirmation(recipient: Recipient, data: Dict[str, Any]) -> RenderedMessage:
    amount = data.get('amount', 0)
    currency = data.get('currency', 'EUR')
    description = data.get('description', '')
    return RenderedMessage(
        subject='Payment confirmation',
        html=_layout('Payment Received', f"""
            <p>Hi {_e(recipient.name or 'there')},</p>
            <p>We received your payment of <strong>{_e(amount)} {_e(currency)}</strong>
            for {_e(description)}.</p>
        """, color='#22c55e'),
        text=f"We received your payment of {amount} {currency} for {description}.\n",
    )


def _price_drop(recipient: Recipient, data: Dict[str, Any]) -> RenderedMessage:
    listing = data.get('listing_title', 'A car you follow')
    old_price = data.get('old_price', '')
    new_price = data.get('new_price', '')
    return RenderedMessage(
        subject=f"Price drop: {listing}",
        html=_layout('Price Drop Alert', f"""
            <p>Good news! <strong>{_e(listing)}</strong> dropped from
            {_e(old_price)} to <strong>{_e(new_price)}</strong>.</p>
        """, color='#22c55e'),
        text=f"{listing} dropped from {old_price} to {new_price}.\n",
    )


def _saved_search_match(recipient: Recipient, data: Dict[str, Any]) -> RenderedMessage:
    search_name = data.get('search_name', 'your saved search')
    count = data.get('match_count', 0)
    return RenderedMessage(
        subject=f"{count} new cars match {search_name}",
        html=_layout('New Matches', f"""
            <p>Hi {_e(recipient.name or 'there')},</p>
            <p>{_e(count)} new listings match <strong>{_e(search_name)}</strong>.</p>
        """),
        text=f"{count} new listings match {search_name}.\n",
    )


def _weekly_report(recipient: Recipient, data: Dict[str, Any]) -> RenderedMessage:
    rows = ''.join(
        f"<tr><td>{_e(t)}</td><td>{_e(s.get('count', 0))}</td>"
        f"<td>{_e(round(s.get('success_rate', 0) * 100, 1))}%</td></tr>"
        for t, s in sorted(data.get('per_type', {}).items())
    )
    generated = data.get('generated_at') or datetime.now().isoformat()
    return RenderedMessage(
        subject='Automation weekly report',
        html=_layout('Automation Report', f"""
            <p>Throughput: {_e(data.get('throughput_per_minute', 0))} jobs/min,
            queue depth: {_e(data.get('queue_depth', 0))}</p>
            <table style="width: 100%; border-collapse: collapse;">
                <tr><th align="left">Type</th><th align="left">Runs</th><th align="left">Success</th></tr>
                {rows}
            </table>
            <p style="color: #888; font-size: 12px;">Generated: {_e(generated)}</p>
        """, color='#374151'),
        text=f"Automation report generated {generated}\n",
    )


TemplateRenderer = Callable[[Recipient, Dict[str, Any]], RenderedMessage]

TEMPLATES: Dict[str, TemplateRenderer] = {
    'welcome': _welcome,
    'new_message': _new_message,
    'listing_expiry': _listing_expiry,
    'payment_confirmation': _payment_confirmation,
    'price_drop': _price_drop,
    'saved_search_match': _saved_search_match,
    'weekly_report': _weekly_report,
}


class NotificationDispatcher:
    """
    Usage:
        dispatcher = NotificationDispatcher(mailer, users)
        sent = dispatcher.send_immediate('user-1', 'welcome', {})
    """

    def __init__(self, mailer: Mailer, users: UserDirectory,
                 templates: Dict[str, TemplateRenderer] = None):
        self.mailer = mailer
        self.users = users
        self.templates = dict(templates if templates is not None else TEMPLATES)
        self._lock = threading.Lock()
        self._sent = 0
        self._failed = 0

    def render(self, template_key: str, recipient: Recipient,
               data: Optional[Dict[str, Any]] = None) -> RenderedMessage:
        renderer = self.templates.get(template_key)
        if renderer is None:
            raise UnknownTemplateError(template_key)
        return renderer(recipient, data or {})

    def send_immediate(self, user_id: str, template_key: str,
                       data: Optional[Dict[str, Any]] = None) -> bool:
        """
        Render a catalog template for one user and send it now.

        Raises:
            UnknownTemplateError: template_key is not in the catalog

        Returns:
            True if the mail collaborator accepted the message
        """
        if template_key not in self.templates:
            raise UnknownTemplateError(template_key)

        try:
            recipient = self.users.lookup(user_id)
        except Exception as e:
            logger.exception(f"User lookup failed for {user_id}; '{template_key}' not sent: {e}")
            self._count(False)
            return False

        if recipient is None or not recipient.email:
            logger.warning(f"No email address for user {user_id}; '{template_key}' not sent")
            self._count(False)
            return False

        return self.deliver(recipient, template_key, data)

    def deliver(self, recipient: Recipient, template_key: str,
                data: Optional[Dict[str, Any]] = None) -> bool:
        """
        Render and send to an already-resolved recipient.

        Only UnknownTemplateError propagates; renderer and transport
        failures are logged and reported as False.
        """
        try:
            message = self.render(template_key, recipient, data)
        except UnknownTemplateError:
            raise
        except Exception as e:
            logger.exception(f"Failed to render '{template_key}' for user {recipient.user_id}: {e}")
            self._count(False)
            return False

        try:
            sent = bool(self.mailer.send(recipient.email, message.subject, message.html, message.text))
        except Exception as e:
            logger.error(f"Mailer raised sending '{template_key}' to user {recipient.user_id}: {e}")
            sent = False

        if sent:
            logger.info(f"Sent '{template_key}' to user {recipient.user_id}")
        else:
            logger.warning(f"Failed to send '{template_key}' to user {recipient.user_id}")
        self._count(sent)
        return sent

    def send(self, request: NotificationRequest) -> bool:
        return self.send_immediate(request.user_id, request.template_key, request.data)

    def ping(self) -> bool:
        return bool(self.mailer.ping())

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {'sent': self._sent, 'failed': self._failed}

    def _count(self, sent: bool) -> None:
        with self._lock:
            if sent:
                self._sent += 1
            else:
                self._failed += 1
