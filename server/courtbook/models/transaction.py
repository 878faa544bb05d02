"""Cart transaction and line item model definitions."""

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Integer, String, Text, Time, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base

if TYPE_CHECKING:
    from .user import User


class TransactionStatus(str, Enum):
    """Transaction lifecycle status."""
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class ApprovalStatus(str, Enum):
    """Administrator approval status."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentStatus(str, Enum):
    """Payment status shared by transactions and bookings."""
    UNPAID = "unpaid"
    PAID = "paid"


class LineItemStatus(str, Enum):
    """Line item status enumeration."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# Items that still reserve time on their court
ACTIVE_ITEM_STATUSES = (LineItemStatus.PENDING, LineItemStatus.APPROVED, LineItemStatus.COMPLETED)


def slot_range(booking_date: date, start: time, end: time) -> tuple[datetime, datetime]:
    """
    Turn a wall-clock slot into a [start, end) datetime range.

    An end at or before the start belongs to the following day.
    """
    start_at = datetime.combine(booking_date, start)
    end_at = datetime.combine(booking_date, end)
    if end_at <= start_at:
        end_at += timedelta(days=1)
    return start_at, end_at


class Transaction(Base):
    """A checkout attempt aggregating one or more reserved slots."""

    __tablename__ = "cart_transactions"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Owner
    user_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id"),
        nullable=False,
        index=True
    )
    booking_for_user_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    booking_for_user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Money is stored as minor units
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Status
    status: Mapped[TransactionStatus] = mapped_column(
        String(20),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True
    )
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        String(20),
        nullable=False,
        default=ApprovalStatus.PENDING,
        index=True
    )
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Payment
    payment_status: Mapped[PaymentStatus] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentStatus.UNPAID
    )
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    proof_of_payment: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Set when the transaction was created by converting a waitlist entry
    converted_from_waitlist_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

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
        CheckConstraint("total_amount >= 0", name="ck_transaction_total_non_negative"),
    )

    # Relationships
    owner: Mapped["User"] = relationship("User", lazy="selectin")

    @property
    def has_proof_of_payment(self) -> bool:
        return bool(self.proof_of_payment)

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, status={self.status}, "
            f"approval={self.approval_status}, total={self.total_amount})>"
        )


class LineItem(Base):
    """One reserved time slot within a transaction."""

    __tablename__ = "cart_items"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Owning transaction; items go with it
    transaction_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("cart_transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    court_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("courts.id"),
        nullable=False,
        index=True
    )
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    booking_for_user_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    booking_for_user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Slot; an end at or before the start crosses midnight
    booking_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)

    price_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    number_of_players: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[LineItemStatus] = mapped_column(
        String(20),
        nullable=False,
        default=LineItemStatus.PENDING,
        index=True
    )

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
        CheckConstraint("price_amount >= 0", name="ck_cart_item_price_non_negative"),
        CheckConstraint("number_of_players > 0", name="ck_cart_item_players_positive"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ITEM_STATUSES

    @property
    def time_range(self) -> tuple[datetime, datetime]:
        return slot_range(self.booking_date, self.start_time, self.end_time)

    def __repr__(self) -> str:
        return (
            f"<LineItem(id={self.id}, court_id={self.court_id}, date={self.booking_date}, "
            f"{self.start_time}-{self.end_time}, status={self.status})>"
        )
