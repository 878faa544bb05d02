"""Models module exporting all database models."""

from .booking import Booking, BookingStatus, CONFIRMED_BOOKING_STATUSES, LIVE_BOOKING_STATUSES
from .court import Court
from .holiday import Holiday
from .transaction import (
    ACTIVE_ITEM_STATUSES,
    ApprovalStatus,
    LineItem,
    LineItemStatus,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    slot_range,
)
from .user import User, UserRole
from .waitlist import OPEN_WAITLIST_STATUSES, WaitlistEntry, WaitlistStatus

__all__ = [
    # Supporting entities
    "User",
    "UserRole",
    "Court",
    "Holiday",

    # Cart entities
    "Transaction",
    "TransactionStatus",
    "ApprovalStatus",
    "PaymentStatus",
    "LineItem",
    "LineItemStatus",
    "ACTIVE_ITEM_STATUSES",
    "slot_range",

    # Booking entity
    "Booking",
    "BookingStatus",
    "LIVE_BOOKING_STATUSES",
    "CONFIRMED_BOOKING_STATUSES",

    # Waitlist entity
    "WaitlistEntry",
    "WaitlistStatus",
    "OPEN_WAITLIST_STATUSES",
]
