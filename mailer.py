"""Outgoing email over a plain SMTP relay.

Configuration (environment):
    SMTP_HOST, SMTP_PORT, SMTP_USERNAME, SMTP_PASSWORD, SMTP_FROM
    SMTP_USE_TLS (default: true)

When SMTP_HOST is unset (local dev, tests) the message is written to the
application log instead of being sent.
"""

import os
import smtplib
from email.message import EmailMessage

from flask import current_app


def _smtp_settings() -> dict:
    return {
        "host": (os.getenv("SMTP_HOST") or "").strip(),
        "port": int(os.getenv("SMTP_PORT", "587")),
        "username": os.getenv("SMTP_USERNAME") or "",
        "password": os.getenv("SMTP_PASSWORD") or "",
        "sender": os.getenv("SMTP_FROM", "EarnHub <no-reply@earnhub.local>"),
        "use_tls": (os.getenv("SMTP_USE_TLS", "true") or "").strip().lower() not in {"0", "false", "no"},
    }


def send_email(to_email: str, subject: str, body: str) -> bool:
    """Send a text email. Returns False (and logs) instead of raising."""
    cfg = _smtp_settings()
    if not cfg["host"]:
        current_app.logger.info("EMAIL -> to=%s | subject=%s\n%s", to_email, subject, body)
        return True

    message = EmailMessage()
    message["From"] = cfg["sender"]
    message["To"] = to_email
    message["Subject"] = subject
    message.set_content(body)

    try:
        with smtplib.SMTP(cfg["host"], cfg["port"], timeout=20) as server:
            if cfg["use_tls"]:
                server.starttls()
            if cfg["username"]:
                server.login(cfg["username"], cfg["password"])
            server.send_message(message)
    except (smtplib.SMTPException, OSError):
        current_app.logger.exception("Failed to send email to %s", to_email)
        return False
    return True


def app_url() -> str:
    return (os.getenv("APP_URL") or "http://localhost:5000").rstrip("/")


def send_verification_email(to_email: str, name: str, token: str) -> bool:
    link = f"{app_url()}/verify-email?token={token}"
    body = (
        f"Hi {name},\n\n"
        "Welcome to EarnHub! Please confirm your email address:\n\n"
        f"{link}\n\n"
        "If you did not create an account, you can ignore this email.\n"
    )
    return send_email(to_email, "Verify your EarnHub account", body)


def send_password_reset_email(to_email: str, name: str, token: str) -> bool:
    link = f"{app_url()}/reset-password?token={token}"
    body = (
        f"Hi {name},\n\n"
        "We received a request to reset your password. The link is valid for 1 hour:\n\n"
        f"{link}\n\n"
        "If you did not request a reset, no action is needed.\n"
    )
    return send_email(to_email, "Reset your EarnHub password", body)
