from types import SimpleNamespace

import requests
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from eduoffice.extensions import db
from eduoffice.models import NotificationLog
from eduoffice.utils.emailer import send_email_smtp


TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


def telegram_configured():
    cfg = current_app.config
    return bool(cfg.get("TELEGRAM_BOT_TOKEN") and cfg.get("TELEGRAM_CHAT_ID"))


def smtp_settings():
    cfg = current_app.config
    if not cfg.get("SMTP_HOST"):
        return None
    return SimpleNamespace(
        host=cfg["SMTP_HOST"],
        port=cfg.get("SMTP_PORT") or 587,
        username=cfg.get("SMTP_USERNAME") or "",
        password=cfg.get("SMTP_PASSWORD") or "",
        from_email=cfg.get("SMTP_FROM") or "",
        use_tls=bool(cfg.get("SMTP_TLS", True)),
    )


def send_telegram(message, chat_id=None):
    """Post ``message`` (HTML parse mode) to the staff chat. Returns False when disabled."""
    if not telegram_configured():
        current_app.logger.debug("Telegram not configured, message skipped")
        return False

    cfg = current_app.config
    response = requests.post(
        TELEGRAM_API_URL.format(token=cfg["TELEGRAM_BOT_TOKEN"]),
        json={
            "chat_id": chat_id or cfg["TELEGRAM_CHAT_ID"],
            "text": message,
            "parse_mode": "HTML",
        },
        timeout=cfg.get("TELEGRAM_TIMEOUT") or 10,
    )
    response.raise_for_status()
    return True


def send_email(to_email, subject, body):
    settings = smtp_settings()
    if settings is None or not to_email:
        return False
    body_html = "<br>".join(body.splitlines())
    send_email_smtp(settings, to_email, subject, body_html, body_text=body)
    return True


def _record(channel, destination, subject, message, status, error=None):
    try:
        db.session.add(
            NotificationLog(
                channel=channel,
                destination=destination,
                subject=subject,
                message=message,
                status=status,
                error=error,
            )
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning("Notification log write failed: %s", exc)


def dispatch_event(event):
    """Deliver one event. Never raises; returns True when the message went out."""
    channel = event.get("channel", "telegram")
    message = event.get("message") or ""
    subject = event.get("subject")
    destination = event.get("to")
    try:
        if channel == "email":
            sent = send_email(destination, subject or "Notification", message)
        else:
            destination = destination or current_app.config.get("TELEGRAM_CHAT_ID")
            sent = send_telegram(message, chat_id=event.get("to"))
    except (requests.RequestException, OSError) as exc:
        current_app.logger.warning("Notification dispatch failed (%s): %s", channel, exc)
        _record(channel, destination, subject, message, "failed", str(exc))
        return False

    _record(channel, destination, subject, message, "sent" if sent else "skipped")
    return sent


def dispatch_events(events):
    """Post-commit fan-out of engine events; returns how many were delivered."""
    delivered = 0
    for event in events or []:
        try:
            if dispatch_event(event):
                delivered += 1
        except Exception:
            current_app.logger.exception("Unexpected notification failure")
    return delivered
