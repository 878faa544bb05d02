"""Notification payload schemas."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class NotificationKind(str, Enum):
    """Kinds of messages sent to waitlisted users."""
    SLOT_AVAILABLE = "slot_available"
    WAITLIST_CANCELLED = "waitlist_cancelled"


class Recipient(BaseModel):
    """Who a notification is addressed to."""

    model_config = ConfigDict(frozen=True)

    user_id: UUID
    name: str
    email: str


class SlotDetails(BaseModel):
    """The slot a notification is about."""

    model_config = ConfigDict(frozen=True)

    waitlist_entry_id: UUID
    court_id: UUID
    start_time: datetime
    end_time: datetime
    price_amount: int
    number_of_players: int = 1


class Notification(BaseModel):
    """A queued outbound message, dispatched after the triggering commit."""

    model_config = ConfigDict(frozen=True)

    kind: NotificationKind
    recipient: Recipient
    slot: SlotDetails
    deadline: Optional[datetime] = Field(None, description="Conversion deadline for slot offers")
