"""Notifications are fire-and-forget; worker failures land in the dead-letter collection."""

import pytest

from conftest import make_user

pytestmark = pytest.mark.asyncio


@pytest.fixture
def notifications_on(monkeypatch):
    from tradehub.core.config import get_settings
    monkeypatch.setattr(get_settings(), "notifications_enabled", True)


async def test_notify_skipped_when_disabled(monkeypatch):
    from tradehub.services import notifications
    from tradehub.worker import tasks
    user = await make_user("pete@example.com")

    async def fail(*args):
        raise AssertionError("should not enqueue")

    monkeypatch.setattr(tasks, "enqueue_notification_email", fail)
    assert await notifications.notify(user, "account_verified") is False


async def test_notify_renders_and_enqueues(monkeypatch, notifications_on):
    from tradehub.services import notifications
    from tradehub.worker import tasks
    user = await make_user("pete@example.com")
    sent = []

    async def enqueue(to, subject, body):
        sent.append((to, subject, body))

    monkeypatch.setattr(tasks, "enqueue_notification_email", enqueue)
    assert await notifications.notify(user, "subscription_renewed", credits=10) is True
    to, subject, body = sent[0]
    assert to == "pete@example.com"
    assert subject == "Your subscription renewed"
    assert "10 credits" in body and "Pete" in body


async def test_enqueue_failure_never_propagates(monkeypatch, notifications_on):
    from tradehub.services import notifications
    from tradehub.worker import tasks
    user = await make_user("pete@example.com")

    async def redis_down(*args):
        raise ConnectionError("redis unavailable")

    monkeypatch.setattr(tasks, "enqueue_notification_email", redis_down)
    assert await notifications.notify(user, "subscription_payment_failed") is False


async def test_failed_email_job_is_dead_lettered(monkeypatch):
    from tradehub.models.failed_event import FailedEvent
    from tradehub.worker import tasks

    async def bounce(to, subject, body):
        raise RuntimeError("SendGrid rejected the message")

    monkeypatch.setattr(tasks, "send_email", bounce)
    with pytest.raises(RuntimeError):
        await tasks.send_notification_email({"job_id": "job-7"}, "pete@example.com", "Hi", "<p>Hi</p>")

    failed = await FailedEvent.find_one(FailedEvent.reference_id == "job-7")
    assert failed.source == "worker"
    assert failed.name == "send_notification_email"
    assert failed.payload == {"to": "pete@example.com", "subject": "Hi"}
