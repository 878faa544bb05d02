"""Waitlist model definition."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


class WaitlistStatus(str, Enum):
    """Waitlist entry status enumeration."""
    PENDING = "pending"
    NOTIFIED = "notified"
    CONVERTED = "converted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Entries still waiting for, or holding an offer on, their slot
OPEN_WAITLIST_STATUSES = (WaitlistStatus.PENDING, WaitlistStatus.NOTIFIED)


class WaitlistEntry(Base):
    """A queued request for a slot blocked by someone else's pending booking."""

    __tablename__ = "booking_waitlists"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Requester
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False, index=True)

    # Requested slot
    court_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("courts.id"),
        nullable=False,
        index=True
    )
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    price_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    number_of_players: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Queue
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[WaitlistStatus] = mapped_column(
        String(20),
        nullable=False,
        default=WaitlistStatus.PENDING,
        index=True
    )
    notified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    # The reservation being waited on, and the one created on conversion
    pending_booking_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    pending_transaction_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    converted_transaction_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=datetime.now,
        onupdate=datetime.now
    )

    # Constraints
    __table_args__ = (
        CheckConstraint("position > 0", name="ck_waitlist_position_positive"),
        CheckConstraint("price_amount >= 0", name="ck_waitlist_price_non_negative"),
        CheckConstraint("end_time > start_time", name="ck_waitlist_time_range"),
        UniqueConstraint("court_id", "start_time", "end_time", "position", name="uq_waitlist_slot_position"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_WAITLIST_STATUSES

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry(id={self.id}, court_id={self.court_id}, "
            f"{self.start_time}-{self.end_time}, position={self.position}, status={self.status})>"
        )
