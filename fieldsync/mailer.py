import os
from typing import Dict, Optional

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .config import settings
from .logging_config import get_logger
from .models import AlertDecision

logger = get_logger(__name__)

templates = Environment(
    loader=FileSystemLoader(os.path.join(os.path.dirname(__file__), "templates")),
    autoescape=select_autoescape(["html"]),
)

SUBJECTS = {
    "mild": "Low vegetation index on {field_name}",
    "moderate": "Warning: vegetation index dropping on {field_name}",
    "severe": "Urgent: critical vegetation index on {field_name}",
}


class EmailResult:
    def __init__(self, success: bool, id: Optional[str] = None, error: Optional[str] = None):
        self.success = success
        self.id = id
        self.error = error


def render_low_index_email(decision: AlertDecision, recipient_name: Optional[str] = None) -> Dict[str, str]:
    """Subject, HTML and plain-text bodies for a threshold alert"""
    context = {
        "recipient_name": recipient_name or "there",
        "field_name": decision.field_name,
        "severity": decision.severity.value,
        "value": decision.value,
        "threshold": decision.threshold,
        "observation_date": decision.observation_date.isoformat(),
        "episode_start": decision.episode_start.isoformat(),
        "field_url": f"{settings.BASE_URL.rstrip('/')}/fields/{decision.field_id}",
    }
    return {
        "subject": SUBJECTS[decision.severity.value].format(field_name=decision.field_name),
        "html": templates.get_template("low_index.html").render(**context),
        "text": templates.get_template("low_index.txt").render(**context),
    }


class EmailClient:
    """Transactional email over the Resend HTTP API"""

    def __init__(self, api_key: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key or settings.RESEND_API_KEY
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> EmailResult:
        if not self.configured:
            return EmailResult(success=False, error="Email not configured")

        payload = {
            "from": settings.EMAIL_FROM,
            "reply_to": settings.EMAIL_REPLY_TO,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text

        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=settings.EMAIL_TIMEOUT_SECONDS, transport=self.transport) as client:
                response = await client.post(settings.RESEND_API_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Email transport error", extra={"extra": {"to": to, "error": str(e)}})
            return EmailResult(success=False, error=f"Email transport error: {e}")

        if response.status_code >= 400:
            logger.error(
                "Resend rejected email",
                extra={"extra": {"to": to, "status_code": response.status_code, "body": response.text}},
            )
            return EmailResult(success=False, error=f"Resend error {response.status_code}")

        message_id = response.json().get("id") if response.content else None
        logger.info("Email sent", extra={"extra": {"to": to, "id": message_id}})
        return EmailResult(success=True, id=message_id)

    async def send_low_index_alert(self, to: str, decision: AlertDecision, recipient_name: Optional[str] = None) -> EmailResult:
        rendered = render_low_index_email(decision, recipient_name)
        return await self.send(to, rendered["subject"], rendered["html"], rendered["text"])


_email_client: Optional[EmailClient] = None


def get_email_client() -> EmailClient:
    """Process-wide email client, created on first use"""
    global _email_client
    if _email_client is None:
        _email_client = EmailClient()
    return _email_client
