"""Booking model definition."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base
from .transaction import PaymentStatus


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    PENDING = "pending"
    APPROVED = "approved"
    CHECKED_IN = "checked_in"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# Bookings that block their time range on the court
LIVE_BOOKING_STATUSES = (
    BookingStatus.PENDING,
    BookingStatus.APPROVED,
    BookingStatus.CHECKED_IN,
    BookingStatus.COMPLETED,
)

# Live bookings that can no longer be displaced by a waitlist
CONFIRMED_BOOKING_STATUSES = (
    BookingStatus.APPROVED,
    BookingStatus.CHECKED_IN,
    BookingStatus.COMPLETED,
)


class Booking(Base):
    """
    The court-facing reservation derived from a transaction's active line items.

    Bookings are linked to their transaction by id only, so a booking can
    outlive a transaction that was removed behind the engine's back.
    """

    __tablename__ = "bookings"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    court_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("courts.id"),
        nullable=False,
        index=True
    )
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    booking_for_user_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    booking_for_user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Links back to the originating records
    transaction_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    waitlist_entry_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    # Midnight-normalized time range
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    total_price: Mapped[int] = mapped_column(Integer, nullable=False)
    number_of_players: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[BookingStatus] = mapped_column(
        String(20),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True
    )

    # Payment, mirrored from the transaction
    payment_status: Mapped[PaymentStatus] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentStatus.UNPAID
    )
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    proof_of_payment: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=datetime.now,
        onupdate=datetime.now
    )

    # Constraints
    __table_args__ = (
        CheckConstraint("total_price >= 0", name="ck_booking_total_price_non_negative"),
        CheckConstraint("end_time > start_time", name="ck_booking_time_range"),
    )

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_BOOKING_STATUSES

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Return True when [start, end) intersects this booking's range."""
        return self.start_time < end and start < self.end_time

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, court_id={self.court_id}, "
            f"{self.start_time}-{self.end_time}, status={self.status})>"
        )
