"""Waitlist-related Pydantic schemas."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class JoinWaitlistRequest(BaseModel):
    """Request schema for joining the waitlist of a blocked slot."""

    user_id: UUID = Field(..., description="Requester")
    court_id: UUID = Field(..., description="Court the slot is on")
    start_time: datetime = Field(..., description="Slot start")
    end_time: datetime = Field(..., description="Slot end")
    price_amount: int = Field(..., gt=0, description="Price in minor units")
    number_of_players: int = Field(1, ge=1)
    notes: Optional[str] = Field(None, max_length=2000)
    pending_booking_id: Optional[UUID] = Field(None, description="Booking currently blocking the slot")
    pending_transaction_id: Optional[UUID] = Field(None, description="Transaction owning that booking")

    @model_validator(mode="after")
    def validate_range(self) -> "JoinWaitlistRequest":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class WaitlistEntryRead(BaseModel):
    """Waitlist entry response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    court_id: UUID
    start_time: datetime
    end_time: datetime
    position: int
    status: str
    notified_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    converted_transaction_id: Optional[UUID] = None
