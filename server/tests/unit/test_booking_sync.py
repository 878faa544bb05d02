"""Unit tests for booking synchronization."""

from datetime import datetime

import pytest

from conftest import NOW, load_bookings, load_items, load_transaction, slot
from courtbook.core.exceptions import SlotConflictError
from courtbook.models import BookingStatus, LineItemStatus, PaymentStatus, TransactionStatus
from courtbook.services.booking_sync import BookingSynchronizer


def ranges(bookings):
    return [(b.start_time.hour, b.end_time.hour, b.total_price) for b in bookings]


@pytest.mark.asyncio
async def test_contiguous_items_become_one_booking(test_session, checkout, user, court):
    result = await checkout(user, [slot(court, 9, 10, 1000), slot(court, 10, 11, 1200), slot(court, 11, 12, 1500)])

    bookings = await load_bookings(test_session, result.transaction_id)
    assert len(result.booking_ids) == 1
    assert ranges(bookings) == [(9, 12, 3700)]
    assert bookings[0].start_time == datetime(2026, 3, 10, 9)
    assert bookings[0].status == BookingStatus.PENDING

    transaction = await load_transaction(test_session, result.transaction_id)
    assert transaction.total_amount == 3700


@pytest.mark.asyncio
async def test_cancelling_middle_item_splits_booking(test_session, service, checkout, user, court):
    result = await checkout(user, [slot(court, 9, 10), slot(court, 10, 11), slot(court, 11, 12)])
    original_id = result.booking_ids[0]
    middle_id = result.line_item_ids[1]

    sync = await service.cancel_line_item(middle_id, NOW)

    bookings = await load_bookings(test_session, result.transaction_id)
    assert ranges(bookings) == [(9, 10, 1000), (11, 12, 1000)]
    assert bookings[0].id == original_id
    assert len(sync.updated) == 1 and len(sync.created) == 1

    transaction = await load_transaction(test_session, result.transaction_id)
    assert transaction.total_amount == 2000
    assert transaction.status == TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_cancelling_edge_item_shrinks_booking(test_session, service, checkout, user, court):
    result = await checkout(user, [slot(court, 9, 10), slot(court, 10, 11), slot(court, 11, 12)])

    await service.cancel_line_item(result.line_item_ids[2], NOW)

    assert ranges(await load_bookings(test_session, result.transaction_id)) == [(9, 11, 2000)]


@pytest.mark.asyncio
async def test_cancelling_every_item_cancels_booking_and_transaction(test_session, service, checkout, user, court):
    result = await checkout(user, [slot(court, 9, 10), slot(court, 10, 11)])

    for item_id in result.line_item_ids:
        await service.cancel_line_item(item_id, NOW)

    assert await load_bookings(test_session, result.transaction_id) == []
    all_bookings = await load_bookings(test_session, result.transaction_id, live_only=False)
    assert [b.status for b in all_bookings] == [BookingStatus.CANCELLED]

    transaction = await load_transaction(test_session, result.transaction_id)
    assert transaction.status == TransactionStatus.CANCELLED
    assert transaction.total_amount == 0


@pytest.mark.asyncio
async def test_reassigning_last_item_splits_across_courts(test_session, service, checkout, user, court, other_court):
    court_id, other_court_id = court.id, other_court.id
    result = await checkout(user, [slot(court, 9, 10, 1000), slot(court, 10, 11, 1200), slot(court, 11, 12, 1500)])

    await service.reassign_line_item(result.line_item_ids[2], other_court_id, NOW)

    bookings = await load_bookings(test_session, result.transaction_id)
    by_court = {b.court_id: (b.start_time.hour, b.end_time.hour, b.total_price) for b in bookings}
    assert by_court == {court_id: (9, 11, 2200), other_court_id: (11, 12, 1500)}
    assert sum(b.total_price for b in bookings) == 3700


@pytest.mark.asyncio
async def test_reassigning_middle_item_leaves_three_bookings(test_session, service, checkout, user, court, other_court):
    court_id, other_court_id = court.id, other_court.id
    result = await checkout(user, [slot(court, 9, 10), slot(court, 10, 11), slot(court, 11, 12)])

    await service.reassign_line_item(result.line_item_ids[1], other_court_id, NOW)

    bookings = await load_bookings(test_session, result.transaction_id)
    assert [(b.court_id, b.start_time.hour, b.end_time.hour) for b in bookings] == [
        (court_id, 9, 10),
        (other_court_id, 10, 11),
        (court_id, 11, 12),
    ]


@pytest.mark.asyncio
async def test_reassigning_only_item_moves_booking(test_session, service, checkout, user, court, other_court):
    other_court_id = other_court.id
    result = await checkout(user, [slot(court, 9, 10)])

    await service.reassign_line_item(result.line_item_ids[0], other_court_id, NOW)

    bookings = await load_bookings(test_session, result.transaction_id)
    assert len(bookings) == 1
    assert bookings[0].id == result.booking_ids[0]
    assert bookings[0].court_id == other_court_id


@pytest.mark.asyncio
async def test_split_keeps_payment_state(test_session, service, checkout, user, court):
    result = await checkout(user, [slot(court, 9, 10), slot(court, 10, 11), slot(court, 11, 12)])
    await service.mark_paid(result.transaction_id, "receipt-42.png", NOW, payment_method="gcash")

    await service.cancel_line_item(result.line_item_ids[1], NOW)

    bookings = await load_bookings(test_session, result.transaction_id)
    assert len(bookings) == 2
    for booking in bookings:
        assert booking.payment_status == PaymentStatus.PAID
        assert booking.payment_method == "gcash"
        assert booking.proof_of_payment == "receipt-42.png"


@pytest.mark.asyncio
async def test_conflicting_reassignment_changes_nothing(
    test_session, service, checkout, make_user, user, court, other_court
):
    other_court_id = other_court.id
    rival = await make_user()
    await checkout(rival, [slot(other_court, 11, 12)])
    result = await checkout(user, [slot(court, 9, 10), slot(court, 10, 11), slot(court, 11, 12)])
    moved_id = result.line_item_ids[2]

    with pytest.raises(SlotConflictError):
        await service.reassign_line_item(moved_id, other_court_id, NOW)

    items = await load_items(test_session, result.transaction_id)
    assert all(item.court_id != other_court_id for item in items)
    assert ranges(await load_bookings(test_session, result.transaction_id)) == [(9, 12, 3000)]


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(test_session, checkout, user, court):
    court_id = court.id
    result = await checkout(user, [slot(court, 9, 10), slot(court, 11, 12)])
    synchronizer = BookingSynchronizer(test_session)

    plan = await synchronizer.plan_court(result.transaction_id, court_id)

    assert plan.is_empty
    assert not (await synchronizer.reconcile_court(result.transaction_id, court_id)).changed


@pytest.mark.asyncio
async def test_cancelled_item_cannot_be_cancelled_again(test_session, service, checkout, user, court):
    from courtbook.core.exceptions import InvalidTransitionError

    result = await checkout(user, [slot(court, 9, 10), slot(court, 10, 11)])
    await service.cancel_line_item(result.line_item_ids[0], NOW)

    with pytest.raises(InvalidTransitionError):
        await service.cancel_line_item(result.line_item_ids[0], NOW)

    items = await load_items(test_session, result.transaction_id)
    assert [item.status for item in items] == [LineItemStatus.CANCELLED, LineItemStatus.PENDING]
