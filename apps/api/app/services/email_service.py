"""Outbound email transport (Resend HTTP API).

Fire-and-forget: ``send_email`` returns True/False and never raises, so a
transport failure can never fail the mutation that triggered it.
"""

from __future__ import annotations

import html as html_module
import logging

import httpx

from app.core.config import settings
from app.core.exceptions import TransportFailure
from app.services.http_service import DEFAULT_RETRY_STATUSES, request_with_retries

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
RESEND_RETRY_BASE_DELAY = 0.5
RESEND_RETRY_MAX_DELAY = 2.0
PORTAL_NAME = "Acclaim Credit Management"


def render_notification_html(heading: str, lines: list[str]) -> str:
    """Minimal HTML body; all dynamic text is escaped."""
    paragraphs = "".join(f"<p>{html_module.escape(line)}</p>" for line in lines if line)
    return (
        f"<h2>{html_module.escape(heading)}</h2>"
        f"{paragraphs}"
        f"<p style=\"color:#666\">{html_module.escape(PORTAL_NAME)}</p>"
    )


def _post(to_email: str, subject: str, html: str, idempotency_key: str | None) -> httpx.Response:
    payload: dict[str, object] = {
        "from": settings.EMAIL_FROM,
        "to": [to_email],
        "subject": subject,
        "html": html,
    }
    headers = {
        "Authorization": f"Bearer {settings.RESEND_API_KEY}",
        "Content-Type": "application/json",
    }
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key

    with httpx.Client(timeout=settings.NOTIFICATION_TIMEOUT_SECONDS) as client:
        response = request_with_retries(
            lambda: client.post(RESEND_SEND_URL, headers=headers, json=payload),
            max_attempts=max(1, settings.NOTIFICATION_MAX_ATTEMPTS),
            base_delay=RESEND_RETRY_BASE_DELAY,
            max_delay=RESEND_RETRY_MAX_DELAY,
            retry_statuses=DEFAULT_RETRY_STATUSES,
        )
    # 409 is an idempotency replay of a message already accepted
    if response.status_code == 409 or 200 <= response.status_code < 300:
        return response
    raise TransportFailure(f"Resend API error: {response.status_code}")


def send_email(
    to_email: str,
    subject: str,
    html: str,
    idempotency_key: str | None = None,
) -> bool:
    """
    Send one email. Returns False (and logs) on any transport failure.

    With no Resend credentials configured the send is skipped and reported
    as not delivered.
    """
    if not settings.email_configured:
        logger.info("Email transport not configured; skipping send to recipient")
        return False
    try:
        _post(to_email, subject, html, idempotency_key)
    except (httpx.HTTPError, TransportFailure) as exc:
        logger.warning("Notification email failed: %s", exc)
        return False
    return True
