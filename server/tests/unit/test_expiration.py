"""Unit tests for the expiration clock."""

from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest

from courtbook.models import ApprovalStatus
from courtbook.services.calendar import CalendarOracle, HolidayCalendar
from courtbook.services.expiration import ExpirationClock


def transaction(created_at, privileged=False, proof=None, approval=ApprovalStatus.PENDING):
    return SimpleNamespace(
        created_at=created_at,
        owner=SimpleNamespace(is_privileged=privileged),
        proof_of_payment=proof,
        approval_status=approval,
    )


def test_created_during_business_hours_expires_an_hour_later(clock):
    created = datetime(2026, 3, 3, 9, 30)  # Tuesday
    assert clock.calculate_expiration(created) == datetime(2026, 3, 3, 10, 30)


def test_created_before_opening_expires_an_hour_after_opening(clock):
    created = datetime(2026, 3, 3, 6, 15)
    assert clock.calculate_expiration(created) == datetime(2026, 3, 3, 9, 0)


def test_created_after_closing_rolls_to_next_working_day(clock):
    friday_evening = datetime(2026, 3, 6, 18, 0)
    assert friday_evening.weekday() == 4
    # Saturday is a working day unless it is a holiday
    assert clock.calculate_expiration(friday_evening) == datetime(2026, 3, 7, 9, 0)


def test_friday_evening_skips_closed_weekend(business_hours):
    saturday = date(2026, 3, 7)
    clock = ExpirationClock(CalendarOracle(business_hours, HolidayCalendar(dates=frozenset({saturday}))))
    assert clock.calculate_expiration(datetime(2026, 3, 6, 18, 0)) == datetime(2026, 3, 9, 9, 0)


def test_created_on_sunday_expires_monday_morning(clock):
    assert clock.calculate_expiration(datetime(2026, 3, 8, 12, 0)) == datetime(2026, 3, 9, 9, 0)


def test_closing_hour_itself_counts_as_after_hours(clock):
    assert clock.calculate_expiration(datetime(2026, 3, 3, 17, 0)) == datetime(2026, 3, 4, 9, 0)


def test_is_expired_boundary(clock):
    created = datetime(2026, 3, 3, 9, 30)
    deadline = clock.calculate_expiration(created)
    assert clock.is_expired(created, deadline)
    assert not clock.is_expired(created, deadline - timedelta(seconds=1))


def test_remaining(clock):
    created = datetime(2026, 3, 3, 9, 30)
    assert clock.remaining(created, datetime(2026, 3, 3, 10, 0)) == timedelta(minutes=30)
    assert clock.remaining(created, datetime(2026, 3, 3, 11, 0)) == timedelta(0)


def test_remaining_display(clock):
    created = datetime(2026, 3, 6, 18, 0)
    assert clock.remaining_display(created, datetime(2026, 3, 6, 19, 0)) == (
        "Pending next business day (Mar 07, 8:00 AM)"
    )
    assert clock.remaining_display(created, datetime(2026, 3, 7, 8, 14, 30)) == "45m 30s"
    assert clock.remaining_display(created, datetime(2026, 3, 7, 9, 0)) == "Expired"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"privileged": True},
        {"proof": "receipt-123.png"},
        {"approval": ApprovalStatus.APPROVED},
    ],
)
def test_exempt_transactions_never_expire(clock, kwargs):
    created = datetime(2026, 3, 3, 9, 30)
    tx = transaction(created, **kwargs)
    assert clock.is_exempt(tx)
    assert not clock.should_expire(tx, created + timedelta(days=30))


def test_should_expire_ordinary_transaction(clock):
    created = datetime(2026, 3, 3, 9, 30)
    tx = transaction(created)
    assert not clock.should_expire(tx, datetime(2026, 3, 3, 10, 29))
    assert clock.should_expire(tx, datetime(2026, 3, 3, 10, 30))
