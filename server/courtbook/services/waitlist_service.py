"""Waitlist engine: queueing, promotion, conversion and expiry of waitlist entries."""

import asyncio
import logging
import weakref
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import (
    ConcurrencyError,
    DeliveryError,
    InvalidTransitionError,
    SlotConflictError,
    WaitlistDisabledError,
    WaitlistExpiredError,
)
from ..core.observability import metrics_collector
from ..models.booking import Booking, BookingStatus, LIVE_BOOKING_STATUSES
from ..models.transaction import (
    ACTIVE_ITEM_STATUSES,
    ApprovalStatus,
    LineItem,
    LineItemStatus,
    Transaction,
    TransactionStatus,
)
from ..models.waitlist import WaitlistEntry, WaitlistStatus
from ..schemas.notification import Notification, NotificationKind, Recipient, SlotDetails
from ..schemas.waitlist import JoinWaitlistRequest
from .expiration import ExpirationClock
from .notifications import LoggingNotifier, Notifier
from .repository import ReservationRepository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RETRACTION_REASON = "Original booking was approved - waitlist cancelled"


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds a reference."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[tuple, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __call__(self, key: tuple) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


# Serializes promotion per (court, start, end) within this process
promotion_locks = KeyedLocks()


class WaitlistService:
    """
    Service for waitlist operations.

    State changes are flushed, never committed; notifications are queued in
    ``outbox`` and only sent by ``dispatch_notifications`` once the caller
    has committed.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: ExpirationClock,
        notifier: Optional[Notifier] = None,
        enabled: bool = True,
    ):
        self.db = db
        self.clock = clock
        self.notifier = notifier or LoggingNotifier()
        self.enabled = enabled
        self.repository = ReservationRepository(db)
        self.outbox: list[Notification] = []

    async def enqueue(self, request: JoinWaitlistRequest) -> WaitlistEntry:
        """
        Put a requester at the tail of a slot's queue.

        Joining again while an open entry exists for the same requester and
        slot returns that entry.

        Raises:
            WaitlistDisabledError: If the waitlist is switched off
            ConcurrencyError: If another request took the same position first
        """
        if not self.enabled:
            raise WaitlistDisabledError(str(request.court_id), request.start_time, request.end_time)

        existing = await self._open_entry_for(request.user_id, request.court_id, request.start_time, request.end_time)
        if existing:
            logger.info(
                "User already on waitlist - returning existing entry",
                extra={
                    "waitlist_entry_id": str(existing.id),
                    "user_id": str(request.user_id),
                    "court_id": str(request.court_id),
                    "position": existing.position,
                }
            )
            return existing

        position = await self.repository.max_waitlist_position(
            request.court_id, request.start_time, request.end_time
        ) + 1

        entry = WaitlistEntry(
            user_id=request.user_id,
            court_id=request.court_id,
            start_time=request.start_time,
            end_time=request.end_time,
            price_amount=request.price_amount,
            number_of_players=request.number_of_players,
            notes=request.notes,
            position=position,
            status=WaitlistStatus.PENDING,
            pending_booking_id=request.pending_booking_id,
            pending_transaction_id=request.pending_transaction_id,
        )
        self.db.add(entry)

        try:
            await self.db.flush()
        except IntegrityError as e:
            logger.warning(
                "Waitlist position taken by a concurrent request",
                extra={
                    "court_id": str(request.court_id),
                    "start_time": request.start_time.isoformat(),
                    "position": position,
                }
            )
            raise ConcurrencyError(
                resource_type="waitlist_queue",
                resource_id=f"{request.court_id}@{request.start_time.isoformat()}",
                expected_status=f"position {position} free",
            ) from e

        metrics_collector.record_waitlist_transition(WaitlistStatus.PENDING.value)
        logger.info(
            "User joined waitlist",
            extra={
                "waitlist_entry_id": str(entry.id),
                "user_id": str(request.user_id),
                "court_id": str(request.court_id),
                "start_time": request.start_time.isoformat(),
                "end_time": request.end_time.isoformat(),
                "position": position,
                "pending_booking_id": str(request.pending_booking_id) if request.pending_booking_id else None,
            }
        )
        return entry

    async def queue(self, court_id: UUID, start: datetime, end: datetime) -> list[WaitlistEntry]:
        """Pending entries for a slot, head first."""
        return await self.repository.waitlist_queue(court_id, start, end)

    async def promote(self, court_id: UUID, start: datetime, end: datetime, now: datetime) -> Optional[WaitlistEntry]:
        """
        Notify the head of a slot's queue if the slot is free.

        Nothing happens while another entry for the slot holds an offer or
        while any live booking still overlaps the slot.

        Returns:
            The notified entry, or None
        """
        async with promotion_locks((court_id, start, end)):
            with tracer.start_as_current_span("waitlist.promote") as span:
                span.set_attribute("court_id", str(court_id))
                await self.db.flush()

                notified = await self.repository.waitlist_queue(
                    court_id, start, end, statuses=(WaitlistStatus.NOTIFIED,)
                )
                if notified:
                    logger.debug(
                        "Slot already offered to a waitlisted user",
                        extra={"waitlist_entry_id": str(notified[0].id), "court_id": str(court_id)}
                    )
                    return None

                if await self.repository.live_bookings_overlapping(court_id, start, end):
                    return None

                pending = await self.repository.waitlist_queue(court_id, start, end)
                if not pending:
                    return None

                head = pending[0]
                expires_at = self.clock.calculate_expiration(now)
                await self.repository.compare_and_set(
                    head,
                    WaitlistStatus.PENDING,
                    "waitlist_entry",
                    status=WaitlistStatus.NOTIFIED,
                    notified_at=now,
                    expires_at=expires_at,
                )

                metrics_collector.record_waitlist_transition(WaitlistStatus.NOTIFIED.value)
                logger.info(
                    "Waitlist head notified",
                    extra={
                        "waitlist_entry_id": str(head.id),
                        "user_id": str(head.user_id),
                        "court_id": str(court_id),
                        "position": head.position,
                        "expires_at": expires_at.isoformat(),
                        "still_waiting": len(pending) - 1,
                    }
                )
                await self._queue_notification(head, NotificationKind.SLOT_AVAILABLE, deadline=expires_at)
                return head

    async def promote_released(
        self,
        released: Iterable[tuple[UUID, datetime, datetime]],
        now: datetime,
    ) -> list[WaitlistEntry]:
        """Promote every queue whose slot intersects a range a booking gave up."""
        promoted = []
        seen = set()
        for court_id, start, end in released:
            for key in await self.repository.waitlist_keys_overlapping(court_id, start, end):
                if key in seen:
                    continue
                seen.add(key)
                entry = await self.promote(*key, now=now)
                if entry is not None:
                    promoted.append(entry)
        return promoted

    async def convert(self, entry_id: UUID, now: datetime, payment_method: Optional[str] = None) -> Transaction:
        """
        Turn a notified entry into a pending transaction with its line item and booking.

        Raises:
            NotFoundError: If the entry does not exist
            InvalidTransitionError: If the entry is not notified
            WaitlistExpiredError: If the offer deadline has passed
            SlotConflictError: If the slot was taken in the meantime
            ConcurrencyError: If the entry changed status concurrently
        """
        entry = await self.repository.get_waitlist_entry_or_raise(entry_id)

        if entry.status != WaitlistStatus.NOTIFIED:
            raise InvalidTransitionError("waitlist entry", str(entry.id), str(entry.status), "convert")

        if entry.expires_at is not None and now >= entry.expires_at:
            logger.warning(
                "Waitlist conversion after deadline",
                extra={"waitlist_entry_id": str(entry.id), "expires_at": entry.expires_at.isoformat()}
            )
            raise WaitlistExpiredError(str(entry.id), entry.expires_at)

        conflicts = await self.repository.live_bookings_overlapping(entry.court_id, entry.start_time, entry.end_time)
        if conflicts:
            raise SlotConflictError(
                court_id=str(entry.court_id),
                start_time=entry.start_time,
                end_time=entry.end_time,
                conflicting_booking_id=str(conflicts[0].id),
            )

        transaction = Transaction(
            user_id=entry.user_id,
            total_amount=entry.price_amount,
            status=TransactionStatus.PENDING,
            approval_status=ApprovalStatus.PENDING,
            payment_method=payment_method,
            converted_from_waitlist_id=entry.id,
            created_at=now,
        )
        self.db.add(transaction)
        await self.db.flush()

        self.db.add(LineItem(
            transaction_id=transaction.id,
            court_id=entry.court_id,
            user_id=entry.user_id,
            booking_date=entry.start_time.date(),
            start_time=entry.start_time.time(),
            end_time=entry.end_time.time(),
            price_amount=entry.price_amount,
            number_of_players=entry.number_of_players,
            notes=_join_notes(entry.notes, f"Converted from waitlist position #{entry.position}"),
            status=LineItemStatus.PENDING,
        ))
        booking = Booking(
            court_id=entry.court_id,
            user_id=entry.user_id,
            transaction_id=transaction.id,
            waitlist_entry_id=entry.id,
            start_time=entry.start_time,
            end_time=entry.end_time,
            total_price=entry.price_amount,
            number_of_players=entry.number_of_players,
            notes=f"Auto-created from waitlist position #{entry.position}",
            status=BookingStatus.PENDING,
            payment_method=payment_method,
        )
        self.db.add(booking)

        await self.repository.compare_and_set(
            entry,
            WaitlistStatus.NOTIFIED,
            "waitlist_entry",
            status=WaitlistStatus.CONVERTED,
            converted_transaction_id=transaction.id,
        )

        metrics_collector.record_waitlist_transition(WaitlistStatus.CONVERTED.value)
        logger.info(
            "Converted waitlist entry to booking",
            extra={
                "waitlist_entry_id": str(entry.id),
                "transaction_id": str(transaction.id),
                "booking_id": str(booking.id),
            }
        )
        return transaction

    async def expire_due(self, now: datetime) -> list[WaitlistEntry]:
        """
        Expire notified entries whose deadline has passed.

        The next entry in the queue is not promoted; that stays an
        administrator decision. Entries that changed status underneath the
        sweep are logged and skipped.
        """
        stmt = (
            select(WaitlistEntry)
            .where(
                WaitlistEntry.status == WaitlistStatus.NOTIFIED,
                WaitlistEntry.expires_at <= now,
            )
            .order_by(WaitlistEntry.expires_at)
        )
        result = await self.db.execute(stmt)
        due = list(result.scalars())

        expired = []
        for entry in due:
            try:
                await self.repository.compare_and_set(
                    entry,
                    WaitlistStatus.NOTIFIED,
                    "waitlist_entry",
                    status=WaitlistStatus.EXPIRED,
                )
            except ConcurrencyError:
                logger.warning(
                    "Waitlist entry changed before it could expire",
                    extra={"waitlist_entry_id": str(entry.id)}
                )
                continue

            expired.append(entry)
            metrics_collector.record_waitlist_transition(WaitlistStatus.EXPIRED.value)
            logger.info(
                "Waitlist entry expired",
                extra={
                    "waitlist_entry_id": str(entry.id),
                    "user_id": str(entry.user_id),
                    "expires_at": entry.expires_at.isoformat() if entry.expires_at else None,
                }
            )

        return expired

    async def cancel_for_transaction(self, transaction_id: UUID) -> list[WaitlistEntry]:
        """
        Cancel every waitlist entry queued behind a transaction that was approved.

        Entries that already converted have their transaction, line items
        and bookings rejected, since the slot they were given is gone.
        """
        with tracer.start_as_current_span("waitlist.cancel_for_transaction") as span:
            span.set_attribute("transaction_id", str(transaction_id))

            stmt = (
                select(WaitlistEntry)
                .where(
                    WaitlistEntry.pending_transaction_id == transaction_id,
                    WaitlistEntry.status != WaitlistStatus.CANCELLED,
                )
                .order_by(WaitlistEntry.position, WaitlistEntry.created_at)
            )
            result = await self.db.execute(stmt)
            entries = list(result.scalars())

            for entry in entries:
                previous = entry.status
                if previous == WaitlistStatus.CONVERTED and entry.converted_transaction_id:
                    await self.retract_conversion(entry)

                await self.repository.compare_and_set(
                    entry,
                    previous,
                    "waitlist_entry",
                    status=WaitlistStatus.CANCELLED,
                )
                metrics_collector.record_waitlist_transition(WaitlistStatus.CANCELLED.value)
                logger.info(
                    "Waitlist entry cancelled - blocking booking approved",
                    extra={
                        "waitlist_entry_id": str(entry.id),
                        "previous_status": str(previous),
                        "transaction_id": str(transaction_id),
                    }
                )
                await self._queue_notification(entry, NotificationKind.WAITLIST_CANCELLED)

            return entries

    async def retract_conversion(self, entry: WaitlistEntry) -> None:
        """Reject the transaction, line items and bookings created by converting ``entry``."""
        transaction = await self.repository.get_transaction(entry.converted_transaction_id)
        if transaction is None:
            logger.warning(
                "Converted transaction missing during retraction",
                extra={
                    "waitlist_entry_id": str(entry.id),
                    "transaction_id": str(entry.converted_transaction_id),
                }
            )
            return

        transaction.status = TransactionStatus.REJECTED
        transaction.approval_status = ApprovalStatus.REJECTED
        transaction.rejection_reason = RETRACTION_REASON

        for item in await self.repository.line_items_for_transaction(transaction.id):
            if item.status in ACTIVE_ITEM_STATUSES:
                item.status = LineItemStatus.REJECTED
                item.admin_notes = "Rejected: Original booking was approved"

        for booking in await self.repository.bookings_for_transaction(transaction.id, live_only=False):
            if booking.status in LIVE_BOOKING_STATUSES:
                booking.status = BookingStatus.REJECTED

        await self.db.flush()
        logger.info(
            "Retracted booking created from waitlist",
            extra={"waitlist_entry_id": str(entry.id), "transaction_id": str(transaction.id)}
        )

    async def _open_entry_for(
        self, user_id: UUID, court_id: UUID, start: datetime, end: datetime
    ) -> Optional[WaitlistEntry]:
        entries = await self.repository.waitlist_queue(
            court_id, start, end, statuses=(WaitlistStatus.PENDING, WaitlistStatus.NOTIFIED)
        )
        return next((entry for entry in entries if entry.user_id == user_id), None)

    async def _queue_notification(
        self,
        entry: WaitlistEntry,
        kind: NotificationKind,
        deadline: Optional[datetime] = None,
    ) -> None:
        user = await self.repository.get_user(entry.user_id)
        if user is None:
            logger.warning(
                "Waitlist user missing - notification skipped",
                extra={"waitlist_entry_id": str(entry.id), "user_id": str(entry.user_id)}
            )
            return

        self.outbox.append(Notification(
            kind=kind,
            recipient=Recipient(user_id=user.id, name=user.name, email=user.email),
            slot=SlotDetails(
                waitlist_entry_id=entry.id,
                court_id=entry.court_id,
                start_time=entry.start_time,
                end_time=entry.end_time,
                price_amount=entry.price_amount,
                number_of_players=entry.number_of_players,
            ),
            deadline=deadline,
        ))

    def discard_notifications(self) -> None:
        """Drop queued notifications after the triggering work rolled back."""
        self.outbox.clear()

    async def dispatch_notifications(self) -> int:
        """
        Send queued notifications, best effort.

        Delivery failures are logged and counted; they never propagate.

        Returns:
            Number of notifications delivered
        """
        queued, self.outbox = self.outbox, []
        delivered = 0

        for notification in queued:
            try:
                await self.notifier.notify(
                    notification.recipient,
                    notification.slot,
                    notification.deadline,
                    kind=notification.kind,
                )
            except DeliveryError as e:
                metrics_collector.record_notification_failure(notification.kind.value)
                logger.error(
                    "Failed to notify waitlist user",
                    extra={
                        "waitlist_entry_id": str(notification.slot.waitlist_entry_id),
                        "user_id": str(notification.recipient.user_id),
                        "kind": notification.kind.value,
                        "error": str(e),
                    }
                )
                continue
            delivered += 1

        return delivered


def _join_notes(*parts: Optional[str]) -> str:
    return "\n\n".join(part for part in parts if part)
