"""Expiration clock for pending transactions and waitlist offers."""

from datetime import datetime, time, timedelta
from typing import Optional, Protocol

from ..models.transaction import ApprovalStatus
from .calendar import CalendarOracle

# Length of the active countdown; also the grace after opening for overnight arrivals
COUNTDOWN = timedelta(hours=1)


class ExpirableTransaction(Protocol):
    """What the exemption policy needs to know about a transaction."""

    created_at: datetime
    approval_status: str
    proof_of_payment: Optional[str]

    @property
    def owner(self):
        ...


class ExpirationClock:
    """
    Business-hours-aware expiration policy.

    A transaction created during business hours expires one hour later.
    One created before opening expires an hour after opening the same day.
    One created after closing, or on a non-working day, expires an hour
    after opening on the next working day.
    """

    def __init__(self, oracle: CalendarOracle):
        self.oracle = oracle

    def _grace_deadline(self, day) -> datetime:
        return datetime.combine(day, time(hour=self.oracle.hours.start_hour)) + COUNTDOWN

    def calculate_expiration(self, created_at: datetime) -> datetime:
        day = created_at.date()

        if not self.oracle.is_working_day(day) or created_at.hour >= self.oracle.hours.end_hour:
            next_day = self.oracle.next_working_day(day + timedelta(days=1))
            return self._grace_deadline(next_day)

        if created_at.hour < self.oracle.hours.start_hour:
            return self._grace_deadline(day)

        return created_at + COUNTDOWN

    def is_expired(self, created_at: datetime, now: datetime) -> bool:
        return now >= self.calculate_expiration(created_at)

    def remaining(self, created_at: datetime, now: datetime) -> timedelta:
        """Time left before expiration, zero once expired."""
        expires_at = self.calculate_expiration(created_at)
        if now >= expires_at:
            return timedelta(0)
        return expires_at - now

    def remaining_display(self, created_at: datetime, now: datetime) -> str:
        """
        Human-readable countdown.

        Before the countdown window opens: "Pending next business day (Mar 02, 8:00 AM)".
        During it: "45m 30s". Afterwards: "Expired".
        """
        expires_at = self.calculate_expiration(created_at)
        timer_start = expires_at - COUNTDOWN

        if now < timer_start:
            return f"Pending next business day ({_format_timer_start(timer_start)})"

        if now >= expires_at:
            return "Expired"

        seconds = int((expires_at - now).total_seconds())
        minutes, seconds = divmod(seconds, 60)
        return f"{minutes}m {seconds}s"

    @staticmethod
    def is_exempt(transaction: ExpirableTransaction) -> bool:
        """Return True when the transaction must never expire on its own."""
        owner = transaction.owner
        if owner is not None and owner.is_privileged:
            return True
        if transaction.proof_of_payment:
            return True
        return transaction.approval_status == ApprovalStatus.APPROVED

    def should_expire(self, transaction: ExpirableTransaction, now: datetime) -> bool:
        if self.is_exempt(transaction):
            return False
        return self.is_expired(transaction.created_at, now)


def _format_timer_start(instant: datetime) -> str:
    hour = instant.hour % 12 or 12
    suffix = "AM" if instant.hour < 12 else "PM"
    return f"{instant.strftime('%b %d')}, {hour}:{instant.minute:02d} {suffix}"
