"""Unit tests for waitlist notifiers."""

import json
from datetime import datetime
from uuid import uuid4

import httpx
import pytest

from courtbook.core.config import Settings
from courtbook.core.exceptions import DeliveryError
from courtbook.schemas.notification import NotificationKind, Recipient, SlotDetails
from courtbook.services.notifications import LoggingNotifier, WebhookNotifier, build_notifier

DEADLINE = datetime(2026, 3, 3, 10, 30)


@pytest.fixture
def recipient():
    return Recipient(user_id=uuid4(), name="Ana Reyes", email="ana@example.com")


@pytest.fixture
def slot_details():
    return SlotDetails(
        waitlist_entry_id=uuid4(),
        court_id=uuid4(),
        start_time=datetime(2026, 3, 10, 9),
        end_time=datetime(2026, 3, 10, 10),
        price_amount=1000,
    )


def webhook_with(handler) -> WebhookNotifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotifier("https://hooks.example.com/waitlist", client=client)


@pytest.mark.asyncio
async def test_webhook_posts_json_payload(recipient, slot_details):
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(202)

    await webhook_with(handler).notify(recipient, slot_details, DEADLINE)

    assert len(received) == 1
    request = received[0]
    assert request.method == "POST"
    assert str(request.url) == "https://hooks.example.com/waitlist"
    payload = json.loads(request.content)
    assert payload["type"] == "slot_available"
    assert payload["recipient"]["email"] == "ana@example.com"
    assert payload["slot"]["price_amount"] == 1000
    assert payload["deadline"] == "2026-03-03T10:30:00"


@pytest.mark.asyncio
async def test_webhook_error_status_raises(recipient, slot_details):
    notifier = webhook_with(lambda request: httpx.Response(500))

    with pytest.raises(DeliveryError):
        await notifier.notify(recipient, slot_details, None, kind=NotificationKind.WAITLIST_CANCELLED)


@pytest.mark.asyncio
async def test_webhook_transport_error_raises(recipient, slot_details):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DeliveryError) as exc_info:
        await webhook_with(handler).notify(recipient, slot_details, DEADLINE)

    assert exc_info.value.status_code == 502
    assert "connection refused" in str(exc_info.value)


def test_cancellation_payload_has_no_deadline(recipient, slot_details):
    payload = WebhookNotifier.build_payload(recipient, slot_details, None, NotificationKind.WAITLIST_CANCELLED)
    assert payload["type"] == "waitlist_cancelled"
    assert payload["deadline"] is None


@pytest.mark.asyncio
async def test_logging_notifier_never_raises(recipient, slot_details):
    await LoggingNotifier().notify(recipient, slot_details, DEADLINE)


def test_build_notifier_selects_by_config():
    assert isinstance(build_notifier(Settings(notification_webhook_url=None)), LoggingNotifier)

    webhook = build_notifier(Settings(
        notification_webhook_url="https://hooks.example.com/waitlist",
        notification_timeout_seconds=2.5,
    ))
    assert isinstance(webhook, WebhookNotifier)
    assert webhook.timeout == 2.5
