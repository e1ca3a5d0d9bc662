"""
External collaborators the engine talks to: mail delivery, AI inference and
user lookup. The engine holds no long-lived connections; every call opens
what it needs.
"""

import json
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import requests

from automation_engine.config import EngineConfig
from automation_engine.errors import ValidationError


logger = logging.getLogger("automation.collaborators")


# --- Mail ---

class Mailer(ABC):
    """Mail collaborator: send(to, subject, html, text) -> bool."""

    @abstractmethod
    def send(self, to: str, subject: str, html: str, text: str = None) -> bool:
        """Deliver one message. Returns True if the provider accepted it."""

    def ping(self) -> bool:
        """Best-effort reachability check used by the health monitor."""
        return True


class ConsoleMailer(Mailer):
    """Development mailer: logs the message instead of sending it."""

    def __init__(self):
        self.sent: List[Dict[str, str]] = []

    def send(self, to: str, subject: str, html: str, text: str = None) -> bool:
        logger.info(f"Email would be sent to {to}: {subject}")
        self.sent.append({'to': to, 'subject': subject, 'html': html, 'text': text})
        return True


class SmtpMailer(Mailer):
    """Sends through Gmail SMTP with an app password."""

    def __init__(self, user: str, password: str, host: str = 'smtp.gmail.com', port: int = 465,
                 from_name: str = None):
        self.user = user
        self.password = password
        self.host = host
        self.port = port
        self.from_name = from_name

    def send(self, to: str, subject: str, html: str, text: str = None) -> bool:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{self.from_name} <{self.user}>" if self.from_name else self.user
        msg['To'] = to
        if text:
            msg.attach(MIMEText(text, 'plain'))
        msg.attach(MIMEText(html, 'html'))

        try:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=30) as server:
                server.login(self.user, self.password)
                server.send_message(msg)
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send to {to} failed: {e}")
            return False

    def ping(self) -> bool:
        try:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=10) as server:
                return server.noop()[0] == 250
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"SMTP ping failed: {e}")
            return False


class SendGridMailer(Mailer):
    API_URL = 'https://api.sendgrid.com/v3/mail/send'
    PING_URL = 'https://api.sendgrid.com/v3/scopes'

    def __init__(self, api_key: str, from_email: str, from_name: str):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name

    def send(self, to: str, subject: str, html: str, text: str = None) -> bool:
        content = [{'type': 'text/plain', 'value': text}] if text else []
        content.append({'type': 'text/html', 'value': html})
        try:
            response = requests.post(
                self.API_URL,
                headers={
                    'Authorization': f'Bearer {self.api_key}',
                    'Content-Type': 'application/json'
                },
                json={
                    'personalizations': [{'to': [{'email': to}]}],
                    'from': {'email': self.from_email, 'name': self.from_name},
                    'subject': subject,
                    'content': content,
                },
                timeout=30
            )
            return response.ok
        except requests.RequestException as e:
            logger.error(f"SendGrid send to {to} failed: {e}")
            return False

    def ping(self) -> bool:
        try:
            response = requests.get(
                self.PING_URL,
                headers={'Authorization': f'Bearer {self.api_key}'},
                timeout=10
            )
            return response.status_code == 200
        except requests.RequestException as e:
            logger.warning(f"SendGrid ping failed: {e}")
            return False


class ResendMailer(Mailer):
    API_URL = 'https://api.resend.com/emails'
    PING_URL = 'https://api.resend.com/domains'

    def __init__(self, api_key: str, from_email: str, from_name: str):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name

    def send(self, to: str, subject: str, html: str, text: str = None) -> bool:
        body = {
            'from': f"{self.from_name} <{self.from_email}>",
            'to': [to],
            'subject': subject,
            'html': html,
        }
        if text:
            body['text'] = text
        try:
            response = requests.post(
                self.API_URL,
                headers={
                    'Authorization': f'Bearer {self.api_key}',
                    'Content-Type': 'application/json'
                },
                json=body,
                timeout=30
            )
            return response.ok
        except requests.RequestException as e:
            logger.error(f"Resend send to {to} failed: {e}")
            return False

    def ping(self) -> bool:
        try:
            response = requests.get(
                self.PING_URL,
                headers={'Authorization': f'Bearer {self.api_key}'},
                timeout=10
            )
            return response.status_code == 200
        except requests.RequestException as e:
            logger.warning(f"Resend ping failed: {e}")
            return False


def build_mailer(config: EngineConfig) -> Mailer:
    """Pick the mail collaborator named by config.mail_provider."""
    provider = config.mail_provider
    if provider == 'smtp':
        if not config.gmail_user or not config.gmail_password:
            raise ValidationError("GMAIL_USER and GMAIL_APP_PASSWORD are required for smtp")
        return SmtpMailer(config.gmail_user, config.gmail_password, from_name=config.from_name)
    if provider == 'sendgrid':
        if not config.sendgrid_api_key:
            raise ValidationError("SENDGRID_API_KEY is required for sendgrid")
        return SendGridMailer(config.sendgrid_api_key, config.from_email, config.from_name)
    if provider == 'resend':
        if not config.resend_api_key:
            raise ValidationError("RESEND_API_KEY is required for resend")
        return ResendMailer(config.resend_api_key, config.from_email, config.from_name)
    return ConsoleMailer()


# --- Inference ---

class InferenceClient(ABC):
    """AI inference collaborator used by the analysis handlers."""

    @abstractmethod
    def process(self, entity_id: str, capabilities: List[str]) -> Dict[str, Any]:
        """Run the requested capabilities against one entity."""


class InferenceUnavailable(InferenceClient):
    """Placeholder when no inference endpoint is configured."""

    def process(self, entity_id: str, capabilities: List[str]) -> Dict[str, Any]:
        raise ValidationError("No inference endpoint configured (AUTOMATION_INFERENCE_URL)")


class HttpInferenceClient(InferenceClient):
    """
    POSTs {entity_id, capabilities} to an inference service.

    Args:
        base_url: Service root, e.g. http://localhost:8100
        api_key: Optional bearer token
        timeout: Per-request timeout in seconds
    """

    def __init__(self, base_url: str, api_key: str = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout

    def process(self, entity_id: str, capabilities: List[str]) -> Dict[str, Any]:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        response = httpx.post(
            f"{self.base_url}/process",
            json={'entity_id': entity_id, 'capabilities': list(capabilities)},
            headers=headers,
            timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()


def build_inference_client(config: EngineConfig) -> InferenceClient:
    if config.inference_url:
        return HttpInferenceClient(config.inference_url, config.inference_api_key)
    return InferenceUnavailable()


# --- Users ---

@dataclass
class Recipient:
    user_id: str
    email: str
    name: str = ''
    language: str = 'sq'


class UserDirectory(ABC):
    """User-lookup collaborator used by the notification dispatcher."""

    @abstractmethod
    def lookup(self, user_id: str) -> Optional[Recipient]:
        """Return the recipient for a user id, or None if unknown."""


class StaticUserDirectory(UserDirectory):
    def __init__(self, recipients: List[Recipient] = None):
        self._recipients = {r.user_id: r for r in recipients or []}

    def add(self, recipient: Recipient) -> None:
        self._recipients[recipient.user_id] = recipient

    def lookup(self, user_id: str) -> Optional[Recipient]:
        return self._recipients.get(user_id)

    @classmethod
    def from_json_file(cls, path: Path) -> "StaticUserDirectory":
        """
        Load recipients from a JSON list of
        {"user_id": ..., "email": ..., "name": ...} objects.
        """
        with open(path, encoding='utf-8') as f:
            entries = json.load(f)
        if not isinstance(entries, list):
            raise ValidationError(f"{path} must contain a JSON list")
        try:
            return cls([Recipient(**entry) for entry in entries])
        except TypeError as e:
            raise ValidationError(f"Invalid user entry in {path}: {e}")
