"""
Email delivery abstraction.

Providers take an EmailMessage and report an EmailResult. They never raise for
delivery problems; instead the result says whether the failure is worth
retrying (network trouble, rate limiting, provider 5xx) or not (rejected
address, bad request). The outbox handler turns that into job-level retry
decisions.
"""
import asyncio
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Dict, List, Optional

import httpx

from finishing_crm.lib.logging import get_logger
from finishing_crm.lib.metrics import get_metrics_collector
from finishing_crm.lib.settings import settings

logger = get_logger(__name__)


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    text: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class EmailResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class EmailProvider(ABC):
    """Abstract base class for email delivery providers."""

    name: str = "abstract"

    @abstractmethod
    async def send(self, message: EmailMessage) -> EmailResult:
        """
        Deliver one message.

        Returns:
            EmailResult; `retryable` is set when a later attempt may succeed
        """


class ConsoleEmailProvider(EmailProvider):
    """Logs emails instead of sending them (development and tests)."""

    name = "console"

    def __init__(self):
        self.sent: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> EmailResult:
        self.sent.append(message)
        logger.info(
            f"[CONSOLE EMAIL] To: {message.to} | Subject: {message.subject}",
            extra={"to": message.to, "tags": message.tags},
        )
        get_metrics_collector().increment_emails(status="sent")
        return EmailResult(success=True, provider_message_id=f"console-{len(self.sent)}")


def classify_status(status_code: int) -> bool:
    """True when an HTTP failure status is worth retrying."""
    return status_code == 429 or status_code >= 500


class ResendEmailProvider(EmailProvider):
    """Sends through the Resend HTTP API."""

    name = "resend"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.api_url = api_url or settings.resend_api_url
        self.timeout = timeout or settings.email_timeout_seconds
        self.transport = transport
        self.from_header = f"{settings.email_from_name} <{settings.email_from_address}>"

    async def send(self, message: EmailMessage) -> EmailResult:
        metrics = get_metrics_collector()
        if not self.api_key:
            logger.error("Resend API key not configured")
            metrics.increment_emails(status="failed")
            return EmailResult(success=False, error="Resend API key not configured")

        body = {
            "from": self.from_header,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            body["text"] = message.text
        if message.tags:
            body["tags"] = [{"name": k, "value": v} for k, v in message.tags.items()]

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.api_url,
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            logger.warning(f"Resend request failed: {e}", extra={"to": message.to})
            metrics.increment_emails(status="failed")
            return EmailResult(success=False, error=f"Transport error: {e}", retryable=True)

        if response.status_code >= 400:
            retryable = classify_status(response.status_code)
            logger.warning(
                "Resend rejected email",
                extra={"to": message.to, "status_code": response.status_code, "retryable": retryable},
            )
            metrics.increment_emails(status="failed")
            return EmailResult(
                success=False,
                error=f"Resend HTTP {response.status_code}: {response.text[:500]}",
                retryable=retryable,
            )

        metrics.increment_emails(status="sent")
        message_id = None
        try:
            message_id = response.json().get("id")
        except ValueError:
            logger.debug("Resend response was not JSON")
        return EmailResult(success=True, provider_message_id=message_id)


class SMTPEmailProvider(EmailProvider):
    """Sends through an SMTP relay (STARTTLS)."""

    name = "smtp"

    def __init__(self):
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_username = settings.smtp_username
        self.smtp_password = settings.smtp_password
        self.from_email = settings.email_from_address
        self.from_name = settings.email_from_name

    def _build(self, message: EmailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = message.to
        if message.text:
            msg.attach(MIMEText(message.text, "plain"))
        msg.attach(MIMEText(message.html, "html"))
        return msg

    def _send_sync(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=settings.email_timeout_seconds) as server:
            server.starttls()
            if self.smtp_username:
                server.login(self.smtp_username, self.smtp_password)
            server.send_message(self._build(message))

    async def send(self, message: EmailMessage) -> EmailResult:
        metrics = get_metrics_collector()
        try:
            await asyncio.to_thread(self._send_sync, message)
        except smtplib.SMTPRecipientsRefused as e:
            logger.warning(f"SMTP recipient refused: {e}", extra={"to": message.to})
            metrics.increment_emails(status="failed")
            return EmailResult(success=False, error=f"Recipient refused: {e}")
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed: {e}")
            metrics.increment_emails(status="failed")
            return EmailResult(success=False, error=f"SMTP authentication failed: {e}")
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"SMTP send failed: {e}", extra={"to": message.to})
            metrics.increment_emails(status="failed")
            return EmailResult(success=False, error=f"SMTP error: {e}", retryable=True)

        metrics.increment_emails(status="sent")
        logger.info("Email sent via SMTP", extra={"to": message.to})
        return EmailResult(success=True)


# Offer copy keyed by offer_key; unknown keys fall back to the default entry
OFFER_COPY: Dict[str, Dict[str, str]] = {
    "reorder_90_day": {
        "subject": "Time to restock, {{contact.first_name}}?",
        "preview": "It has been a while since {{company.name}} last ordered.",
    },
    "default": {
        "subject": "An offer for {{company.name}}",
        "preview": "We have put together an offer for you.",
    },
}


def substitute(template: str, first_name: str, contact_name: str, company_name: str) -> str:
    return (
        template.replace("{{contact.first_name}}", first_name)
        .replace("{{contact.name}}", contact_name)
        .replace("{{company.name}}", company_name)
    )


def render_offer_email(
    to: str,
    offer_key: str,
    offer_url: str,
    company_name: str,
    first_name: Optional[str] = None,
    contact_name: Optional[str] = None,
    subject: Optional[str] = None,
    preview: Optional[str] = None,
    custom_message: Optional[str] = None,
    tags: Optional[Dict[str, str]] = None,
) -> EmailMessage:
    """Build the offer email for one recipient."""
    copy = OFFER_COPY.get(offer_key, OFFER_COPY["default"])
    first = first_name or contact_name or "there"
    name = contact_name or first_name or ""

    rendered_subject = substitute(subject or copy["subject"], first, name, company_name)
    rendered_preview = substitute(preview or copy["preview"], first, name, company_name)

    paragraphs = [f"Hi {escape(first)},", escape(rendered_preview)]
    if custom_message:
        paragraphs.append(escape(custom_message))
    html = "".join(f"<p>{p}</p>" for p in paragraphs)
    html += f'<p><a href="{escape(offer_url, quote=True)}">View your offer</a></p>'

    text_lines = [f"Hi {first},", rendered_preview]
    if custom_message:
        text_lines.append(custom_message)
    text_lines.append(f"View your offer: {offer_url}")

    return EmailMessage(
        to=to,
        subject=rendered_subject,
        html=html,
        text="\n\n".join(text_lines),
        tags=tags or {},
    )


def get_email_provider(provider: Optional[str] = None) -> EmailProvider:
    """
    Factory for the configured email provider.

    Raises:
        ValueError: Unknown provider name
    """
    name = (provider or settings.email_provider).lower()
    if name == "console":
        return ConsoleEmailProvider()
    if name == "resend":
        return ResendEmailProvider()
    if name == "smtp":
        return SMTPEmailProvider()
    raise ValueError(f"Unknown email provider: {name}")
