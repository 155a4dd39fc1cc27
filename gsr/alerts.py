from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .db import StatusSummary
from .settings import settings

logger = logging.getLogger(__name__)

_ALERTING = {StatusSummary.ERROR, StatusSummary.DEGRADED}


def _missing_smtp_settings() -> list[str]:
    required = {
        "GSR_SMTP_HOST": settings.smtp_host,
        "GSR_SMTP_PORT": settings.smtp_port,
        "GSR_SMTP_USER": settings.smtp_user,
        "GSR_SMTP_PASSWORD": settings.smtp_password,
        "GSR_EMAIL_FROM": settings.email_from,
        "GSR_EMAIL_TO": settings.email_to,
    }
    return [name for name, value in required.items() if not value]


def _recipients() -> list[str]:
    return [addr.strip() for addr in (settings.email_to or "").split(",") if addr.strip()]


def send_email(subject: str, body: str) -> bool:
    """Mail an operator alert when GSR_ENABLE_EMAIL is set and SMTP is configured.

    ``GSR_EMAIL_TO`` may hold several comma-separated addresses. Delivery
    failures are logged and reported as False; they never interrupt a
    reconcile.
    """
    if not settings.enable_email:
        return False
    missing = _missing_smtp_settings()
    if missing:
        logger.warning("Email alerting enabled but SMTP settings are incomplete", extra={"missing": missing})
        return False

    to = _recipients()
    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = ", ".join(to)
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, to, msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("Failed to send alert email", extra={"subject": subject, "error": str(e)})
        return False
    return True


def status_alert(
    deployment_id: str, namespace: str, previous: StatusSummary | None, current: StatusSummary, detail: str
) -> bool:
    """Email on transitions into Error/Degraded and on recovery from them."""
    if previous == current:
        return False
    if current in _ALERTING:
        headline = current.value.upper()
    elif previous in _ALERTING and current == StatusSummary.HEALTHY:
        headline = "RECOVERED"
    else:
        return False
    body = "\n".join(
        [
            f"Deployment: {deployment_id}",
            f"Namespace: {namespace}",
            f"Status: {previous.value if previous else '-'} -> {current.value}",
            f"Detail: {detail}",
        ]
    )
    return send_email(f"GSR {headline}: {namespace} ({deployment_id})", body)
