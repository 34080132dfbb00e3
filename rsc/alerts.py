from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .models import DeploymentEvent, EventKind
from .settings import settings

log = logging.getLogger(__name__)

# Events worth waking someone up for, regardless of level.
ALERT_KINDS = {EventKind.ROLLOUT_STALLED, EventKind.TASK_UNHEALTHY}


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - RSC_ENABLE_EMAIL=true
      - RSC_SMTP_HOST / RSC_SMTP_PORT
      - RSC_SMTP_USER / RSC_SMTP_PASSWORD
      - RSC_EMAIL_FROM / RSC_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        log.warning("Alert email failed: %s", e)
        return False


def format_alert(ev: DeploymentEvent) -> tuple[str, str]:
    subject = f"[{ev.level}] {ev.kind.value}: service {ev.service_id}"
    body = (
        f"Service: {ev.service_id}\n"
        f"Task: {ev.task_id or '-'}\n"
        f"Version: {ev.version if ev.version is not None else '-'}\n"
        f"Time: {ev.ts}\n"
        f"Detail: {ev.message}"
    )
    return subject, body


def email_alert_sink(ev: DeploymentEvent) -> None:
    """EventLog sink: mail ERROR events and the kinds in ALERT_KINDS."""
    if ev.level != "ERROR" and ev.kind not in ALERT_KINDS:
        return
    subject, body = format_alert(ev)
    send_email(subject, body)
