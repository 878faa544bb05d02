"""Unit tests for checkout and the approval lifecycle."""

from datetime import datetime, time, timedelta
from types import SimpleNamespace
from uuid import uuid4

import pydantic
import pytest
from sqlalchemy import func, select

from conftest import NOW, PLAY_DATE, load_bookings, load_items, load_transaction, slot
from courtbook.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    SlotConflictError,
    ValidationError,
    WaitlistDisabledError,
)
from courtbook.models import (
    ApprovalStatus,
    BookingStatus,
    LineItemStatus,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    UserRole,
)
from courtbook.schemas.checkout import CheckoutRequest, SlotRequest
from courtbook.services.transaction_service import TransactionService


async def count_transactions(session) -> int:
    return (await session.execute(select(func.count(Transaction.id)))).scalar()


# Checkout

def test_slot_request_rejects_empty_range(court):
    with pytest.raises(pydantic.ValidationError):
        SlotRequest(court_id=court.id, booking_date=PLAY_DATE, start_time=time(9), end_time=time(9), price_amount=100)


def test_slot_request_rejects_non_positive_price(court):
    with pytest.raises(pydantic.ValidationError):
        SlotRequest(court_id=court.id, booking_date=PLAY_DATE, start_time=time(9), end_time=time(10), price_amount=0)


@pytest.mark.asyncio
async def test_checkout_rejects_overlapping_slots(test_session, checkout, user, court):
    with pytest.raises(ValidationError):
        await checkout(user, [slot(court, 9, 11), slot(court, 10, 12)])
    assert await count_transactions(test_session) == 0


@pytest.mark.asyncio
async def test_checkout_unknown_court(checkout, user, court):
    ghost = SimpleNamespace(id=uuid4())
    with pytest.raises(NotFoundError):
        await checkout(user, [slot(ghost, 9, 10)])


@pytest.mark.asyncio
async def test_checkout_with_proof_is_paid(test_session, checkout, user, court):
    result = await checkout(
        user,
        [slot(court, 9, 10)],
        payment_method="bank_transfer",
        proof_of_payment="receipt.png",
        booking_for_user_name="Coach Sam",
    )

    transaction = await load_transaction(test_session, result.transaction_id)
    assert transaction.payment_status == PaymentStatus.PAID
    assert transaction.paid_at == NOW

    booking = (await load_bookings(test_session, result.transaction_id))[0]
    assert booking.payment_status == PaymentStatus.PAID
    assert booking.proof_of_payment == "receipt.png"
    assert booking.booking_for_user_name == "Coach Sam"


@pytest.mark.asyncio
async def test_checkout_slot_crossing_midnight(test_session, checkout, user, court):
    result = await checkout(user, [slot(court, 23, 0)])

    booking = (await load_bookings(test_session, result.transaction_id))[0]
    assert booking.start_time == datetime(2026, 3, 10, 23)
    assert booking.end_time == datetime(2026, 3, 11, 0)


@pytest.mark.asyncio
async def test_checkout_blocked_by_confirmed_booking(test_session, service, checkout, make_user, user, court):
    first = await checkout(user, [slot(court, 9, 11)])
    await service.approve(first.transaction_id, user.id, NOW)
    rival = await make_user()
    court_slot = slot(court, 10, 11)

    with pytest.raises(SlotConflictError):
        await checkout(rival, [court_slot])
    assert await count_transactions(test_session) == 1


@pytest.mark.asyncio
async def test_checkout_waitlists_slot_behind_pending_booking(test_session, checkout, make_user, user, court, other_court):
    first = await checkout(user, [slot(court, 9, 10)])
    rival = await make_user()

    result = await checkout(rival, [slot(court, 9, 10), slot(other_court, 9, 10)])

    assert len(result.waitlist_entry_ids) == 1
    assert len(result.line_item_ids) == 1
    items = await load_items(test_session, result.transaction_id)
    assert items[0].court_id == other_court.id

    transaction = await load_transaction(test_session, result.transaction_id)
    assert transaction.total_amount == 1000
    assert first.transaction_id != result.transaction_id


@pytest.mark.asyncio
async def test_checkout_without_waitlist(test_session, clock, notifier, checkout, make_user, user, court):
    await checkout(user, [slot(court, 9, 10)])
    rival = await make_user()
    strict = TransactionService(test_session, clock, notifier=notifier, waitlist_enabled=False)

    with pytest.raises(WaitlistDisabledError):
        await strict.checkout(CheckoutRequest(user_id=rival.id, slots=[slot(court, 9, 10)]), NOW)


# Approval lifecycle

@pytest.mark.asyncio
async def test_approve(test_session, service, checkout, make_user, user, court):
    admin = await make_user(role=UserRole.ADMIN)
    result = await checkout(user, [slot(court, 9, 10), slot(court, 10, 11)])

    transaction = await service.approve(result.transaction_id, admin.id, NOW)

    assert transaction.approval_status == ApprovalStatus.APPROVED
    assert transaction.approved_by == admin.id
    assert transaction.approved_at == NOW
    items = await load_items(test_session, result.transaction_id)
    assert {item.status for item in items} == {LineItemStatus.APPROVED}
    bookings = await load_bookings(test_session, result.transaction_id)
    assert {booking.status for booking in bookings} == {BookingStatus.APPROVED}

    with pytest.raises(InvalidTransitionError):
        await service.approve(result.transaction_id, admin.id, NOW)


@pytest.mark.asyncio
async def test_reject(test_session, service, checkout, user, court):
    result = await checkout(user, [slot(court, 9, 10)])

    transaction = await service.reject(result.transaction_id, "Court under maintenance", NOW)

    assert transaction.status == TransactionStatus.REJECTED
    assert transaction.approval_status == ApprovalStatus.REJECTED
    assert transaction.rejection_reason == "Court under maintenance"
    items = await load_items(test_session, result.transaction_id)
    assert items[0].status == LineItemStatus.REJECTED
    bookings = await load_bookings(test_session, result.transaction_id, live_only=False)
    assert bookings[0].status == BookingStatus.REJECTED


@pytest.mark.asyncio
async def test_rejected_transaction_can_be_reinstated(test_session, service, checkout, user, court):
    result = await checkout(user, [slot(court, 9, 10)])
    await service.reject(result.transaction_id, "Missing payment", NOW)

    transaction = await service.approve(result.transaction_id, user.id, NOW + timedelta(hours=1))

    assert transaction.status == TransactionStatus.PENDING
    assert transaction.approval_status == ApprovalStatus.APPROVED
    assert transaction.rejection_reason is None
    bookings = await load_bookings(test_session, result.transaction_id)
    assert [b.status for b in bookings] == [BookingStatus.APPROVED]


@pytest.mark.asyncio
async def test_mark_paid_requires_proof(service, checkout, user, court):
    result = await checkout(user, [slot(court, 9, 10)])
    with pytest.raises(ValidationError):
        await service.mark_paid(result.transaction_id, "", NOW)


@pytest.mark.asyncio
async def test_complete(test_session, service, checkout, user, court):
    result = await checkout(user, [slot(court, 9, 10)])
    user_id = user.id

    with pytest.raises(InvalidTransitionError):
        await service.complete(result.transaction_id, NOW)

    await service.approve(result.transaction_id, user_id, NOW)
    transaction = await service.complete(result.transaction_id, NOW + timedelta(days=7))

    assert transaction.status == TransactionStatus.COMPLETED
    items = await load_items(test_session, result.transaction_id)
    assert items[0].status == LineItemStatus.COMPLETED
    bookings = await load_bookings(test_session, result.transaction_id)
    assert bookings[0].status == BookingStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_transaction(service):
    with pytest.raises(NotFoundError):
        await service.reject(uuid4(), "n/a", NOW)


# Expiration sweep

@pytest.mark.asyncio
async def test_expire_stale_cancels_only_overdue_unexempt(test_session, service, checkout, make_user, user, court):
    staff = await make_user(role=UserRole.STAFF)
    payer = await make_user()
    ordinary = await checkout(user, [slot(court, 9, 10)])
    by_staff = await checkout(staff, [slot(court, 10, 11)])
    paid = await checkout(payer, [slot(court, 11, 12)], proof_of_payment="receipt.png")
    late = await checkout(user, [slot(court, 12, 13)], now=NOW + timedelta(minutes=30))

    expired = await service.expire_stale(datetime(2026, 3, 3, 10, 30))

    assert expired == [ordinary.transaction_id]
    transaction = await load_transaction(test_session, ordinary.transaction_id)
    assert transaction.status == TransactionStatus.CANCELLED
    items = await load_items(test_session, ordinary.transaction_id)
    assert items[0].status == LineItemStatus.CANCELLED
    assert await load_bookings(test_session, ordinary.transaction_id) == []

    for survivor in (by_staff, paid, late):
        assert (await load_transaction(test_session, survivor.transaction_id)).status == TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_expire_stale_is_a_no_op_before_deadline(service, checkout, user, court):
    await checkout(user, [slot(court, 9, 10)])
    assert await service.expire_stale(datetime(2026, 3, 3, 10, 29)) == []
