"""Checkout-related Pydantic schemas."""

from datetime import date, datetime, time
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..models.transaction import slot_range


class SlotRequest(BaseModel):
    """One court slot selected in the cart."""

    court_id: UUID = Field(..., description="Court to reserve")
    booking_date: date = Field(..., description="Calendar date the slot starts on")
    start_time: time = Field(..., description="Slot start (wall clock)")
    end_time: time = Field(..., description="Slot end; at or before the start means the next day")
    price_amount: int = Field(..., gt=0, description="Price in minor units")
    number_of_players: int = Field(1, ge=1, description="Players on court")
    notes: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def validate_range(self) -> "SlotRequest":
        """A slot cannot start and end at the same wall-clock time."""
        if self.start_time == self.end_time:
            raise ValueError("start_time and end_time must differ")
        return self

    @property
    def time_range(self) -> tuple[datetime, datetime]:
        """Midnight-normalized [start, end) of the slot."""
        return slot_range(self.booking_date, self.start_time, self.end_time)


class CheckoutRequest(BaseModel):
    """Request schema for checking out a cart."""

    user_id: UUID = Field(..., description="User submitting the cart")
    slots: list[SlotRequest] = Field(..., min_length=1, description="Selected slots")
    payment_method: Optional[str] = Field(None, max_length=50)
    proof_of_payment: Optional[str] = Field(None, description="Reference to an uploaded receipt")
    booking_for_user_id: Optional[UUID] = Field(None, description="User the booking is made for")
    booking_for_user_name: Optional[str] = Field(None, max_length=255)


class CheckoutResult(BaseModel):
    """Outcome of a checkout: the transaction created and the slots queued."""

    model_config = ConfigDict(frozen=True)

    transaction_id: Optional[UUID] = Field(None, description="None when every slot was waitlisted")
    booking_ids: list[UUID] = Field(default_factory=list)
    line_item_ids: list[UUID] = Field(default_factory=list)
    waitlist_entry_ids: list[UUID] = Field(default_factory=list)
