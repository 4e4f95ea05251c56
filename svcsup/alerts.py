from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .models import Service
from .settings import settings


def email_configured() -> bool:
    return settings.enable_email and all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    )


def send_email(subject: str, body: str) -> None:
    """Send a plain-text email. Raises on SMTP failure; callers run this on the background pool.

    Environment variables:
      - SVCSUP_ENABLE_EMAIL=true
      - SVCSUP_SMTP_HOST / SVCSUP_SMTP_PORT
      - SVCSUP_SMTP_USER / SVCSUP_SMTP_PASSWORD
      - SVCSUP_EMAIL_FROM / SVCSUP_EMAIL_TO
    """
    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())


def crash_loop_message(service: Service, restart_count: int, exit_code: int | None, window_s: int) -> tuple[str, str]:
    subject = f"LOCKED: {service.name} (service {service.id}) is crash-looping"
    body = (
        f"Service: {service.name}\n"
        f"Service ID: {service.id}\n"
        f"Project ID: {service.project_id}\n"
        f"Restarts: {restart_count} within {window_s}s\n"
        f"Last exit code: {exit_code if exit_code is not None else 'n/a'}\n"
        "Automatic restarts and health checks are suspended until the service is unlocked."
    )
    return subject, body
