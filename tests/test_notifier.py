import requests

from eduoffice.models import NotificationLog
from eduoffice.utils import notifier


class _Response:
    def raise_for_status(self):
        return None


def test_unconfigured_telegram_is_skipped(app):
    assert notifier.send_telegram("hello") is False
    assert notifier.dispatch_events([{"channel": "telegram", "message": "hello"}]) == 0
    assert NotificationLog.query.one().status == "skipped"


def test_delivery_posts_to_bot_api(app, monkeypatch):
    app.config.update(TELEGRAM_BOT_TOKEN="abc", TELEGRAM_CHAT_ID="-100")
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json))
        return _Response()

    monkeypatch.setattr(notifier.requests, "post", fake_post)
    assert notifier.dispatch_events([{"channel": "telegram", "message": "<b>hi</b>"}]) == 1
    assert calls[0][0].endswith("/botabc/sendMessage")
    assert calls[0][1]["chat_id"] == "-100"
    assert NotificationLog.query.one().status == "sent"


def test_delivery_failure_is_logged_not_raised(app, monkeypatch):
    app.config.update(TELEGRAM_BOT_TOKEN="abc", TELEGRAM_CHAT_ID="-100")

    def broken_post(*args, **kwargs):
        raise requests.ConnectionError("network down")

    monkeypatch.setattr(notifier.requests, "post", broken_post)
    assert notifier.dispatch_events([{"message": "one"}, {"message": "two"}]) == 0
    rows = NotificationLog.query.all()
    assert [r.status for r in rows] == ["failed", "failed"]
    assert "network down" in rows[0].error


def test_email_without_smtp_is_skipped(app):
    assert notifier.dispatch_event({"channel": "email", "to": "parent@example.com", "message": "x"}) is False
