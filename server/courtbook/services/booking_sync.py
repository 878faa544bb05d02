"""Booking synchronizer: keeps bookings equal to their transaction's active line items."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union
from uuid import UUID

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import SlotConflictError
from ..core.observability import metrics_collector
from ..models.booking import Booking, BookingStatus
from ..models.transaction import ApprovalStatus, Transaction
from .grouping import TimeBlock, group_line_items
from .repository import ReservationRepository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Fields a split-off booking inherits from the booking it was split from
CLONED_FIELDS = (
    "user_id",
    "booking_for_user_id",
    "booking_for_user_name",
    "transaction_id",
    "waitlist_entry_id",
    "number_of_players",
    "notes",
    "admin_notes",
    "status",
    "payment_status",
    "payment_method",
    "proof_of_payment",
    "paid_at",
)


@dataclass(frozen=True)
class LineItemCancelled:
    """A line item left the active set."""

    transaction_id: UUID
    item_id: UUID
    court_id: UUID


@dataclass(frozen=True)
class LineItemReassigned:
    """A line item moved from one court to another; ``start``/``end`` is its range."""

    transaction_id: UUID
    item_id: UUID
    old_court_id: UUID
    new_court_id: UUID
    start: datetime
    end: datetime


SyncEvent = Union[LineItemCancelled, LineItemReassigned]


@dataclass
class BookingUpdate:
    booking: Booking
    block: TimeBlock

    def describe(self) -> dict:
        return {
            "booking_id": str(self.booking.id),
            "before": _booking_values(self.booking),
            "after": _block_values(self.block),
        }


@dataclass
class BookingCreate:
    block: TimeBlock
    template: Optional[Booking]
    players: int = 1

    def describe(self) -> dict:
        return {
            "template_booking_id": str(self.template.id) if self.template else None,
            "after": _block_values(self.block),
        }


@dataclass
class BookingCancel:
    booking: Booking

    def describe(self) -> dict:
        return {
            "booking_id": str(self.booking.id),
            "before": _booking_values(self.booking),
            "after": {"status": BookingStatus.CANCELLED.value},
        }


@dataclass
class SyncPlan:
    """The changes needed to bring one transaction's bookings back in line."""

    transaction: Transaction
    updates: list[BookingUpdate] = field(default_factory=list)
    creates: list[BookingCreate] = field(default_factory=list)
    cancels: list[BookingCancel] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.updates or self.creates or self.cancels)

    def describe(self) -> dict:
        return {
            "updates": [op.describe() for op in self.updates],
            "creates": [op.describe() for op in self.creates],
            "cancels": [op.describe() for op in self.cancels],
        }


@dataclass
class SyncResult:
    """What a synchronization pass changed."""

    updated: list[Booking] = field(default_factory=list)
    created: list[Booking] = field(default_factory=list)
    cancelled: list[Booking] = field(default_factory=list)
    # (court_id, start, end) ranges bookings stopped covering
    released: list[tuple[UUID, datetime, datetime]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.updated or self.created or self.cancelled)

    def merge(self, other: "SyncResult") -> "SyncResult":
        self.updated.extend(other.updated)
        self.created.extend(other.created)
        self.cancelled.extend(other.cancelled)
        self.released.extend(other.released)
        return self


def _booking_values(booking: Booking) -> dict:
    return {
        "court_id": str(booking.court_id),
        "start_time": booking.start_time.isoformat(),
        "end_time": booking.end_time.isoformat(),
        "total_price": booking.total_price,
        "status": getattr(booking.status, "value", booking.status),
    }


def _block_values(block: TimeBlock) -> dict:
    return {
        "court_id": str(block.court_id),
        "start_time": block.start.isoformat(),
        "end_time": block.end.isoformat(),
        "total_price": block.total_price,
    }


class BookingSynchronizer:
    """
    Recomputes bookings from line items after a line item changes.

    Every entry point plans the full set of changes, checks the plan for
    overlaps with other live bookings, and only then mutates anything. It
    never commits; the caller's unit of work covers the triggering change
    and the synchronization together.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repository = ReservationRepository(db)

    async def handle(self, event: SyncEvent) -> SyncResult:
        if isinstance(event, LineItemCancelled):
            return await self.on_line_item_cancelled(event)
        if isinstance(event, LineItemReassigned):
            return await self.on_line_item_reassigned(event)
        raise TypeError(f"Unsupported synchronization event: {event!r}")

    async def on_line_item_cancelled(self, event: LineItemCancelled) -> SyncResult:
        """Shrink, split or cancel the bookings of the item's transaction and court."""
        with tracer.start_as_current_span("booking_sync.line_item_cancelled") as span:
            span.set_attribute("transaction_id", str(event.transaction_id))
            result = await self.reconcile_court(event.transaction_id, event.court_id)

            logger.info(
                "Synchronized bookings after line item cancellation",
                extra={
                    "transaction_id": str(event.transaction_id),
                    "line_item_id": str(event.item_id),
                    "court_id": str(event.court_id),
                    "updated": len(result.updated),
                    "created": len(result.created),
                    "cancelled": len(result.cancelled),
                }
            )
            return result

    async def reconcile_court(self, transaction_id: UUID, court_id: UUID) -> SyncResult:
        """Re-derive every live booking of a transaction on one court from its items."""
        plan = await self.plan_court(transaction_id, court_id)
        if plan.is_empty:
            return SyncResult()
        await self.check_conflicts(plan)
        return await self.apply(plan)

    async def plan_court(self, transaction_id: UUID, court_id: UUID) -> SyncPlan:
        """
        Match the recomputed blocks for one court against its live bookings.

        Each block is paired with the first unclaimed booking overlapping it.
        Blocks left over become new bookings cloned from an overlapping
        booking, which is how a split keeps payment and approval state.
        Bookings left over are cancelled.
        """
        await self.db.flush()
        transaction = await self.repository.get_transaction_or_raise(transaction_id)
        items = await self.repository.line_items_for_transaction(
            transaction_id, court_id=court_id, active_only=True
        )
        bookings = await self.repository.bookings_for_transaction(transaction_id, court_id=court_id)
        blocks = group_line_items(items)
        players = {item.id: item.number_of_players for item in items}

        plan = SyncPlan(transaction=transaction)
        claimed: set[UUID] = set()

        for block in blocks:
            candidates = [b for b in bookings if b.id not in claimed and block.overlaps(b.start_time, b.end_time)]
            exact = [
                b for b in candidates
                if block.matches(b.court_id, b.start_time, b.end_time, b.total_price)
            ]
            chosen = exact[0] if exact else (candidates[0] if candidates else None)

            if chosen is not None:
                claimed.add(chosen.id)
                if not exact:
                    plan.updates.append(BookingUpdate(booking=chosen, block=block))
                continue

            template = next(
                (b for b in bookings if block.overlaps(b.start_time, b.end_time)),
                bookings[0] if bookings else None,
            )
            plan.creates.append(
                BookingCreate(block=block, template=template, players=players.get(block.item_ids[0], 1))
            )

        for booking in bookings:
            if booking.id not in claimed:
                plan.cancels.append(BookingCancel(booking=booking))

        return plan

    async def on_line_item_reassigned(self, event: LineItemReassigned) -> SyncResult:
        """
        Follow an item that moved courts.

        For every booking on the old court that covered the item, the
        relevant items (those still on the old court inside the booking's
        original range, plus the moved item) are regrouped. No group cancels
        the booking. Otherwise the first group stays on the booking record,
        which may move it to the new court, and every further group becomes
        a new booking cloned from it.
        """
        with tracer.start_as_current_span("booking_sync.line_item_reassigned") as span:
            span.set_attribute("transaction_id", str(event.transaction_id))
            await self.db.flush()

            transaction = await self.repository.get_transaction_or_raise(event.transaction_id)
            bookings = [
                booking
                for booking in await self.repository.bookings_for_transaction(
                    event.transaction_id, court_id=event.old_court_id
                )
                if booking.overlaps(event.start, event.end)
            ]
            items = await self.repository.line_items_for_transaction(
                event.transaction_id, active_only=True
            )
            players = {item.id: item.number_of_players for item in items}

            plan = SyncPlan(transaction=transaction)
            placed: set[UUID] = set()

            for booking in bookings:
                relevant = []
                for item in items:
                    if item.id in placed:
                        continue
                    on_old_court = item.court_id == event.old_court_id
                    if not (on_old_court or item.id == event.item_id):
                        continue
                    start, end = item.time_range
                    if booking.overlaps(start, end) or item.id == event.item_id:
                        relevant.append(item)

                blocks = group_line_items(relevant)
                placed.update(item.id for item in relevant)

                if not blocks:
                    plan.cancels.append(BookingCancel(booking=booking))
                    continue

                first, rest = blocks[0], blocks[1:]
                if not first.matches(booking.court_id, booking.start_time, booking.end_time, booking.total_price):
                    plan.updates.append(BookingUpdate(booking=booking, block=first))
                for block in rest:
                    plan.creates.append(
                        BookingCreate(block=block, template=booking, players=players.get(block.item_ids[0], 1))
                    )

            if not bookings:
                logger.warning(
                    "No booking covered the reassigned line item",
                    extra={
                        "transaction_id": str(event.transaction_id),
                        "line_item_id": str(event.item_id),
                        "old_court_id": str(event.old_court_id),
                    }
                )

            if plan.is_empty:
                return SyncResult()

            await self.check_conflicts(plan)
            result = await self.apply(plan)

            logger.info(
                "Synchronized bookings after line item reassignment",
                extra={
                    "transaction_id": str(event.transaction_id),
                    "line_item_id": str(event.item_id),
                    "old_court_id": str(event.old_court_id),
                    "new_court_id": str(event.new_court_id),
                    "updated": len(result.updated),
                    "created": len(result.created),
                    "cancelled": len(result.cancelled),
                }
            )
            return result

    async def check_conflicts(self, plan: SyncPlan) -> None:
        """
        Reject the plan if any resulting range overlaps another live booking.

        Raises:
            SlotConflictError: On the first overlapping booking found
        """
        in_scope = {op.booking.id for op in plan.updates}
        in_scope.update(op.booking.id for op in plan.cancels)
        targets = [op.block for op in plan.updates] + [op.block for op in plan.creates]

        for index, block in enumerate(targets):
            for other in targets[index + 1:]:
                if other.court_id == block.court_id and other.overlaps(block.start, block.end):
                    raise SlotConflictError(
                        court_id=str(block.court_id),
                        start_time=block.start,
                        end_time=block.end,
                    )

            conflicts = await self.repository.live_bookings_overlapping(
                block.court_id, block.start, block.end, exclude_ids=in_scope
            )
            if conflicts:
                logger.warning(
                    "Booking synchronization would double-book a court",
                    extra={
                        "transaction_id": str(plan.transaction.id),
                        "court_id": str(block.court_id),
                        "start_time": block.start.isoformat(),
                        "end_time": block.end.isoformat(),
                        "conflicting_booking_id": str(conflicts[0].id),
                    }
                )
                raise SlotConflictError(
                    court_id=str(block.court_id),
                    start_time=block.start,
                    end_time=block.end,
                    conflicting_booking_id=str(conflicts[0].id),
                )

    async def apply(self, plan: SyncPlan) -> SyncResult:
        """Write a checked plan to the session and flush."""
        result = SyncResult()

        for op in plan.updates:
            booking = op.booking
            result.released.append((booking.court_id, booking.start_time, booking.end_time))
            booking.court_id = op.block.court_id
            booking.start_time = op.block.start
            booking.end_time = op.block.end
            booking.total_price = op.block.total_price
            result.updated.append(booking)

        for op in plan.cancels:
            booking = op.booking
            result.released.append((booking.court_id, booking.start_time, booking.end_time))
            booking.status = BookingStatus.CANCELLED
            result.cancelled.append(booking)

        for op in plan.creates:
            booking = self._new_booking(plan.transaction, op)
            self.db.add(booking)
            result.created.append(booking)

        await self.db.flush()

        metrics_collector.record_booking_sync("updated", len(result.updated))
        metrics_collector.record_booking_sync("created", len(result.created))
        metrics_collector.record_booking_sync("cancelled", len(result.cancelled))
        return result

    @staticmethod
    def _new_booking(transaction: Transaction, op: BookingCreate) -> Booking:
        block = op.block
        if op.template is not None:
            values = {name: getattr(op.template, name) for name in CLONED_FIELDS}
        else:
            values = {
                "user_id": transaction.user_id,
                "booking_for_user_id": transaction.booking_for_user_id,
                "booking_for_user_name": transaction.booking_for_user_name,
                "transaction_id": transaction.id,
                "number_of_players": op.players,
                "status": (
                    BookingStatus.APPROVED
                    if transaction.approval_status == ApprovalStatus.APPROVED
                    else BookingStatus.PENDING
                ),
                "payment_status": transaction.payment_status,
                "payment_method": transaction.payment_method,
                "proof_of_payment": transaction.proof_of_payment,
                "paid_at": transaction.paid_at,
            }
        return Booking(
            court_id=block.court_id,
            start_time=block.start,
            end_time=block.end,
            total_price=block.total_price,
            **values,
        )
