"""Outbound notifications to waitlisted users."""

import logging
from datetime import datetime
from typing import Optional, Protocol

import httpx

from ..core.config import Settings, settings as app_settings
from ..core.exceptions import DeliveryError
from ..schemas.notification import NotificationKind, Recipient, SlotDetails

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers one message; raises DeliveryError when it cannot."""

    async def notify(
        self,
        recipient: Recipient,
        slot: SlotDetails,
        deadline: Optional[datetime],
        kind: NotificationKind = NotificationKind.SLOT_AVAILABLE,
    ) -> None:
        ...


class LoggingNotifier:
    """Writes notifications to the log instead of sending them."""

    async def notify(
        self,
        recipient: Recipient,
        slot: SlotDetails,
        deadline: Optional[datetime],
        kind: NotificationKind = NotificationKind.SLOT_AVAILABLE,
    ) -> None:
        logger.info(
            "Waitlist notification",
            extra={
                "kind": kind.value,
                "user_id": str(recipient.user_id),
                "email": recipient.email,
                "waitlist_entry_id": str(slot.waitlist_entry_id),
                "court_id": str(slot.court_id),
                "start_time": slot.start_time.isoformat(),
                "end_time": slot.end_time.isoformat(),
                "deadline": deadline.isoformat() if deadline else None,
            }
        )


class WebhookNotifier:
    """
    POSTs notifications as JSON to a webhook.

    Transport failures and non-2xx responses raise DeliveryError.
    """

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    @staticmethod
    def build_payload(
        recipient: Recipient,
        slot: SlotDetails,
        deadline: Optional[datetime],
        kind: NotificationKind,
    ) -> dict:
        return {
            "type": kind.value,
            "recipient": recipient.model_dump(mode="json"),
            "slot": slot.model_dump(mode="json"),
            "deadline": deadline.isoformat() if deadline else None,
        }

    async def notify(
        self,
        recipient: Recipient,
        slot: SlotDetails,
        deadline: Optional[datetime],
        kind: NotificationKind = NotificationKind.SLOT_AVAILABLE,
    ) -> None:
        payload = self.build_payload(recipient, slot, deadline, kind)

        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(
                recipient=recipient.email,
                detail=f"Webhook delivery of '{kind.value}' failed: {e}",
            ) from e

        logger.info(
            "Webhook notification delivered",
            extra={
                "kind": kind.value,
                "user_id": str(recipient.user_id),
                "waitlist_entry_id": str(slot.waitlist_entry_id),
                "status_code": response.status_code,
            }
        )


def build_notifier(config: Settings | None = None) -> Notifier:
    """Webhook notifier when a URL is configured, logging notifier otherwise."""
    config = config or app_settings
    if config.notification_webhook_url:
        return WebhookNotifier(config.notification_webhook_url, timeout=config.notification_timeout_seconds)
    return LoggingNotifier()
