"""
Alert system for final job failures.

Supports Slack (incoming webhook) and email (through the mail collaborator).
"""

import logging
from datetime import datetime
from typing import Optional

import requests

from automation_engine.collaborators import Mailer
from automation_engine.models import Job


logger = logging.getLogger("automation.alerts")


def send_slack_alert(
    webhook_url: str,
    job_name: str,
    error_message: str,
    job_id: str = None
) -> bool:
    """
    Send a Slack notification for a job failure.

    Args:
        webhook_url: Slack incoming webhook URL
        job_name: Automation type of the failed job
        error_message: The error message
        job_id: Optional job id for the message fields

    Returns:
        True if sent successfully
    """
    if not webhook_url:
        logger.warning("No Slack webhook URL configured")
        return False

    fields = [
        {
            "title": "Error",
            "value": error_message or "Unknown error",
            "short": False
        },
        {
            "title": "Time",
            "value": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            "short": True
        }
    ]
    if job_id:
        fields.append({"title": "Job", "value": job_id, "short": True})

    payload = {
        "text": f":x: *Job Failed: {job_name}*",
        "attachments": [{"color": "#dc3545", "fields": fields}]
    }

    try:
        response = requests.post(webhook_url, json=payload, timeout=30)
        response.raise_for_status()
        logger.info(f"Slack webhook alert sent for job '{job_name}'")
        return True
    except requests.RequestException as e:
        logger.error(f"Failed to send Slack webhook: {e}")
        return False


def send_email_alert(
    mailer: Mailer,
    recipient: str,
    job_name: str,
    error_message: str,
    job_id: str = None
) -> bool:
    """
    Send an email notification for a job failure.

    Returns:
        True if sent successfully
    """
    if not recipient:
        logger.warning("No alert recipient configured - skipping email alert")
        return False

    html = f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; max-width: 600px; margin: 0 auto; padding: 30px; border: 1px solid rgba(220, 53, 69, 0.3); border-radius: 12px;">
        <h1 style="color: #dc3545; margin: 0 0 20px 0; font-size: 20px;">Job Failed: {job_name}</h1>
        <h3 style="color: #ff8c00; margin: 0 0 10px 0; font-size: 14px;">Error Message</h3>
        <p style="font-family: monospace;">{error_message or 'Unknown error'}</p>
        <p style="color: #888; font-size: 12px;">Job: {job_id or '-'}<br>Time: {datetime.now().strftime("%Y-%m-%d %H:%M:%S")}</p>
    </div>
    """
    text = f"Job failed: {job_name}\nError: {error_message or 'Unknown error'}\nJob: {job_id or '-'}\n"

    try:
        sent = mailer.send(recipient, f"[Automation Alert] Job Failed: {job_name}", html, text)
    except Exception as e:
        logger.error(f"Failed to send email alert: {e}")
        return False

    if sent:
        logger.info(f"Email alert sent for job '{job_name}' to {recipient}")
    return bool(sent)


class FailureAlerter:
    """
    Sends alerts to the configured channels when a job fails for good.

    Args:
        channels: Comma-separated list of channels ('slack', 'email', or 'slack,email')
        mailer: Mail collaborator for email alerts
        recipient: Email alert recipient
        slack_webhook_url: Slack incoming webhook
    """

    def __init__(
        self,
        channels: str = '',
        mailer: Optional[Mailer] = None,
        recipient: str = None,
        slack_webhook_url: str = None
    ):
        self.channels = [c.strip().lower() for c in (channels or '').split(',') if c.strip()]
        self.mailer = mailer
        self.recipient = recipient
        self.slack_webhook_url = slack_webhook_url

    @property
    def enabled(self) -> bool:
        return bool(self.channels)

    def job_failed(self, job: Job) -> None:
        if not self.channels:
            return

        job_name = job.type.value
        logger.info(f"Sending failure alert for job '{job_name}' via {','.join(self.channels)}")

        if 'slack' in self.channels:
            send_slack_alert(self.slack_webhook_url, job_name, job.last_error, job.id)

        if 'email' in self.channels and self.mailer is not None:
            send_email_alert(self.mailer, self.recipient, job_name, job.last_error, job.id)
