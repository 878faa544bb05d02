"""Service layer package."""

from .booking_sync import BookingSynchronizer, LineItemCancelled, LineItemReassigned, SyncResult
from .calendar import CalendarOracle, HolidayCalendar
from .expiration import ExpirationClock
from .grouping import TimeBlock, group_line_items
from .notifications import LoggingNotifier, Notifier, WebhookNotifier, build_notifier
from .reconciliation import ReconciliationAuditor
from .repository import ReservationRepository
from .transaction_service import TransactionService
from .waitlist_service import WaitlistService

__all__ = [
    "BookingSynchronizer",
    "CalendarOracle",
    "ExpirationClock",
    "HolidayCalendar",
    "LineItemCancelled",
    "LineItemReassigned",
    "LoggingNotifier",
    "Notifier",
    "ReconciliationAuditor",
    "ReservationRepository",
    "SyncResult",
    "TimeBlock",
    "TransactionService",
    "WaitlistService",
    "WebhookNotifier",
    "build_notifier",
    "group_line_items",
]
