"""Operator alerts for failed updates and replica health changes.

Alerts go out over SMTP when FLEETROLL_ENABLE_EMAIL=true and the
FLEETROLL_SMTP_* / FLEETROLL_EMAIL_* settings are complete. A failed send is
recorded in the event log and never interrupts the caller.
"""

from __future__ import annotations

import smtplib
from email.message import EmailMessage
from typing import Any

from . import db
from .settings import settings


def alerts_enabled() -> bool:
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


def build_alert(fleet: str, summary: str, details: dict[str, Any]) -> EmailMessage:
    """Subject names the fleet; each non-empty detail becomes a ``Key: value`` line."""
    msg = EmailMessage()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = f"[fleetroll] {fleet}: {summary}"
    lines = [f"Fleet: {fleet}"]
    lines += [f"{key}: {value}" for key, value in details.items() if value not in (None, "")]
    msg.set_content("\n".join(lines) + "\n")
    return msg


def send_alert(fleet: str, summary: str, details: dict[str, Any]) -> bool:
    if not alerts_enabled():
        return False
    msg = build_alert(fleet, summary, details)
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        db.log_event("WARN", f"Alert not sent ({summary}): {type(e).__name__}: {e}", fleet=fleet)
        return False
    return True
