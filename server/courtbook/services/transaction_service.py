"""Transaction service: checkout and the approval lifecycle."""

import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar
from uuid import UUID

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..core.config import settings
from ..core.database import unit_of_work
from ..core.exceptions import (
    ConcurrencyError,
    InvalidTransitionError,
    SlotConflictError,
    ValidationError,
    WaitlistDisabledError,
)
from ..core.observability import metrics_collector
from ..models.booking import BookingStatus, CONFIRMED_BOOKING_STATUSES
from ..models.transaction import (
    ApprovalStatus,
    LineItem,
    LineItemStatus,
    PaymentStatus,
    Transaction,
    TransactionStatus,
)
from ..models.waitlist import WaitlistEntry
from ..schemas.checkout import CheckoutRequest, CheckoutResult
from ..schemas.waitlist import JoinWaitlistRequest
from .booking_sync import BookingSynchronizer, LineItemCancelled, LineItemReassigned, SyncResult
from .expiration import ExpirationClock
from .notifications import Notifier
from .repository import ReservationRepository
from .waitlist_service import WaitlistService

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")


class TransactionService:
    """
    Service for cart transactions.

    Every public operation runs in its own unit of work: the status change,
    the booking synchronization and any waitlist promotion commit together.
    Waitlist notifications go out only after that commit.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: ExpirationClock,
        notifier: Optional[Notifier] = None,
        waitlist_enabled: Optional[bool] = None,
    ):
        self.db = db
        self.clock = clock
        self.repository = ReservationRepository(db)
        self.synchronizer = BookingSynchronizer(db)
        self.waitlist = WaitlistService(
            db,
            clock,
            notifier=notifier,
            enabled=settings.waitlist_enabled if waitlist_enabled is None else waitlist_enabled,
        )

    async def _run(self, operation: Callable[..., Awaitable[T]], *args) -> T:
        try:
            async with unit_of_work(self.db):
                result = await operation(*args)
        except Exception:
            self.waitlist.discard_notifications()
            raise
        await self.waitlist.dispatch_notifications()
        return result

    # Checkout

    async def checkout(self, request: CheckoutRequest, now: datetime) -> CheckoutResult:
        """
        Turn a cart into a pending transaction with its line items and bookings.

        Slots blocked by someone else's pending booking are queued on the
        waitlist instead and left out of the transaction.

        Args:
            request: Validated cart contents
            now: Checkout instant; becomes the transaction's creation time

        Returns:
            Ids of the created transaction, bookings, line items and waitlist entries

        Raises:
            ValidationError: If two requested slots overlap on one court
            NotFoundError: If the user or a court does not exist
            SlotConflictError: If a slot overlaps a confirmed booking
            WaitlistDisabledError: If a slot is pending elsewhere and the waitlist is off
        """
        with tracer.start_as_current_span("transactions.checkout"):
            return await self._run(self._checkout, request, now)

    async def _checkout(self, request: CheckoutRequest, now: datetime) -> CheckoutResult:
        await self.repository.get_user_or_raise(request.user_id)

        slots = [(slot, *slot.time_range) for slot in request.slots]
        for index, (slot, start, end) in enumerate(slots):
            for other, other_start, other_end in slots[index + 1:]:
                if other.court_id == slot.court_id and other_start < end and start < other_end:
                    raise ValidationError(
                        detail="Requested slots overlap on the same court",
                        errors={
                            "court_id": str(slot.court_id),
                            "slots": [
                                [start.isoformat(), end.isoformat()],
                                [other_start.isoformat(), other_end.isoformat()],
                            ],
                        },
                    )

        accepted = []
        queued = []
        for slot, start, end in slots:
            await self.repository.get_court_or_raise(slot.court_id)
            conflicts = await self.repository.live_bookings_overlapping(slot.court_id, start, end)
            if not conflicts:
                accepted.append(slot)
                continue

            confirmed = [b for b in conflicts if b.status in CONFIRMED_BOOKING_STATUSES]
            if confirmed:
                logger.warning(
                    "Checkout rejected - slot already booked",
                    extra={
                        "user_id": str(request.user_id),
                        "court_id": str(slot.court_id),
                        "start_time": start.isoformat(),
                        "conflicting_booking_id": str(confirmed[0].id),
                    }
                )
                raise SlotConflictError(
                    court_id=str(slot.court_id),
                    start_time=start,
                    end_time=end,
                    conflicting_booking_id=str(confirmed[0].id),
                )

            if not self.waitlist.enabled:
                raise WaitlistDisabledError(str(slot.court_id), start, end)
            queued.append((slot, start, end, conflicts[0]))

        entry_ids = []
        for slot, start, end, blocking in queued:
            entry = await self.waitlist.enqueue(JoinWaitlistRequest(
                user_id=request.user_id,
                court_id=slot.court_id,
                start_time=start,
                end_time=end,
                price_amount=slot.price_amount,
                number_of_players=slot.number_of_players,
                notes=slot.notes,
                pending_booking_id=blocking.id,
                pending_transaction_id=blocking.transaction_id,
            ))
            entry_ids.append(entry.id)

        if not accepted:
            logger.info(
                "Checkout fully waitlisted",
                extra={"user_id": str(request.user_id), "waitlist_entries": len(entry_ids)}
            )
            return CheckoutResult(waitlist_entry_ids=entry_ids)

        paid = bool(request.proof_of_payment)
        transaction = Transaction(
            user_id=request.user_id,
            booking_for_user_id=request.booking_for_user_id,
            booking_for_user_name=request.booking_for_user_name,
            total_amount=sum(slot.price_amount for slot in accepted),
            status=TransactionStatus.PENDING,
            approval_status=ApprovalStatus.PENDING,
            payment_method=request.payment_method,
            proof_of_payment=request.proof_of_payment,
            payment_status=PaymentStatus.PAID if paid else PaymentStatus.UNPAID,
            paid_at=now if paid else None,
            created_at=now,
        )
        self.db.add(transaction)
        await self.db.flush()

        items = [
            LineItem(
                transaction_id=transaction.id,
                court_id=slot.court_id,
                user_id=request.user_id,
                booking_for_user_id=request.booking_for_user_id,
                booking_for_user_name=request.booking_for_user_name,
                booking_date=slot.booking_date,
                start_time=slot.start_time,
                end_time=slot.end_time,
                price_amount=slot.price_amount,
                number_of_players=slot.number_of_players,
                notes=slot.notes,
                status=LineItemStatus.PENDING,
            )
            for slot in accepted
        ]
        self.db.add_all(items)
        await self.db.flush()

        sync = SyncResult()
        for court_id in dict.fromkeys(item.court_id for item in items):
            sync.merge(await self.synchronizer.reconcile_court(transaction.id, court_id))

        logger.info(
            "Checkout completed",
            extra={
                "transaction_id": str(transaction.id),
                "user_id": str(request.user_id),
                "line_items": len(items),
                "bookings": len(sync.created),
                "waitlist_entries": len(entry_ids),
                "total_amount": transaction.total_amount,
            }
        )
        return CheckoutResult(
            transaction_id=transaction.id,
            booking_ids=[booking.id for booking in sync.created],
            line_item_ids=[item.id for item in items],
            waitlist_entry_ids=entry_ids,
        )

    # Approval lifecycle

    async def approve(self, transaction_id: UUID, approver_id: UUID, now: datetime) -> Transaction:
        """
        Approve a pending or previously rejected transaction.

        Waitlist entries queued behind the transaction are cancelled first,
        which retracts any booking already converted from them.

        Raises:
            NotFoundError: If the transaction does not exist
            InvalidTransitionError: If it is already approved or closed
            SlotConflictError: If reinstating a rejected booking would double-book
            ConcurrencyError: If the transaction changed underneath
        """
        with tracer.start_as_current_span("transactions.approve"):
            return await self._run(self._approve, transaction_id, approver_id, now)

    async def _approve(self, transaction_id: UUID, approver_id: UUID, now: datetime) -> Transaction:
        transaction = await self.repository.get_transaction_or_raise(transaction_id)

        if transaction.approval_status == ApprovalStatus.APPROVED:
            raise InvalidTransitionError("transaction", str(transaction.id), str(transaction.approval_status), "approve")
        if transaction.status in (TransactionStatus.CANCELLED, TransactionStatus.COMPLETED):
            raise InvalidTransitionError("transaction", str(transaction.id), str(transaction.status), "approve")

        # Retract conversions first so their bookings do not block reinstatement
        cancelled_entries = await self.waitlist.cancel_for_transaction(transaction.id)

        bookings = [
            booking
            for booking in await self.repository.bookings_for_transaction(transaction.id, live_only=False)
            if booking.status in (BookingStatus.PENDING, BookingStatus.REJECTED, BookingStatus.APPROVED)
        ]
        own_ids = [booking.id for booking in bookings]
        for booking in bookings:
            if booking.status != BookingStatus.REJECTED:
                continue
            conflicts = await self.repository.live_bookings_overlapping(
                booking.court_id, booking.start_time, booking.end_time, exclude_ids=own_ids
            )
            if conflicts:
                raise SlotConflictError(
                    court_id=str(booking.court_id),
                    start_time=booking.start_time,
                    end_time=booking.end_time,
                    conflicting_booking_id=str(conflicts[0].id),
                )

        previous_approval = transaction.approval_status
        await self._transition_approval(
            transaction,
            previous_approval,
            status=TransactionStatus.PENDING,
            approval_status=ApprovalStatus.APPROVED,
            approved_at=now,
            approved_by=approver_id,
            rejection_reason=None,
        )

        for item in await self.repository.line_items_for_transaction(transaction.id):
            if item.status in (LineItemStatus.PENDING, LineItemStatus.REJECTED):
                item.status = LineItemStatus.APPROVED

        for booking in bookings:
            booking.status = BookingStatus.APPROVED

        await self.db.flush()
        logger.info(
            "Transaction approved",
            extra={
                "transaction_id": str(transaction.id),
                "approved_by": str(approver_id),
                "previous_approval_status": str(previous_approval),
                "bookings_approved": len(bookings),
                "waitlist_entries_cancelled": len(cancelled_entries),
            }
        )
        return transaction

    async def reject(self, transaction_id: UUID, reason: str, now: datetime) -> Transaction:
        """
        Reject a transaction and offer its slots to the waitlist.

        Raises:
            NotFoundError: If the transaction does not exist
            InvalidTransitionError: If it is already rejected or closed
            ConcurrencyError: If the transaction changed underneath
        """
        with tracer.start_as_current_span("transactions.reject"):
            return await self._run(self._reject, transaction_id, reason, now)

    async def _reject(self, transaction_id: UUID, reason: str, now: datetime) -> Transaction:
        transaction = await self.repository.get_transaction_or_raise(transaction_id)

        if transaction.approval_status == ApprovalStatus.REJECTED:
            raise InvalidTransitionError("transaction", str(transaction.id), str(transaction.approval_status), "reject")
        if transaction.status in (TransactionStatus.CANCELLED, TransactionStatus.COMPLETED):
            raise InvalidTransitionError("transaction", str(transaction.id), str(transaction.status), "reject")

        await self._transition_approval(
            transaction,
            transaction.approval_status,
            status=TransactionStatus.REJECTED,
            approval_status=ApprovalStatus.REJECTED,
            rejection_reason=reason,
        )

        for item in await self.repository.line_items_for_transaction(transaction.id):
            if item.status in (LineItemStatus.PENDING, LineItemStatus.APPROVED):
                item.status = LineItemStatus.REJECTED

        released = []
        for booking in await self.repository.bookings_for_transaction(transaction.id):
            released.append((booking.court_id, booking.start_time, booking.end_time))
            booking.status = BookingStatus.REJECTED

        promoted = await self.waitlist.promote_released(released, now)

        logger.info(
            "Transaction rejected",
            extra={
                "transaction_id": str(transaction.id),
                "reason": reason,
                "bookings_released": len(released),
                "waitlist_entries_notified": len(promoted),
            }
        )
        return transaction

    async def mark_paid(
        self,
        transaction_id: UUID,
        proof_of_payment: str,
        now: datetime,
        payment_method: Optional[str] = None,
    ) -> Transaction:
        """Attach proof of payment and copy the payment state onto the bookings."""
        return await self._run(self._mark_paid, transaction_id, proof_of_payment, now, payment_method)

    async def _mark_paid(
        self,
        transaction_id: UUID,
        proof_of_payment: str,
        now: datetime,
        payment_method: Optional[str],
    ) -> Transaction:
        if not proof_of_payment:
            raise ValidationError(detail="Proof of payment is required")

        transaction = await self.repository.get_transaction_or_raise(transaction_id)
        if transaction.status in (TransactionStatus.CANCELLED, TransactionStatus.REJECTED):
            raise InvalidTransitionError("transaction", str(transaction.id), str(transaction.status), "mark paid")

        transaction.payment_status = PaymentStatus.PAID
        transaction.proof_of_payment = proof_of_payment
        transaction.payment_method = payment_method or transaction.payment_method
        transaction.paid_at = now

        bookings = await self.repository.bookings_for_transaction(transaction.id)
        for booking in bookings:
            _copy_payment(transaction, booking)

        await self.db.flush()
        logger.info(
            "Transaction marked paid",
            extra={
                "transaction_id": str(transaction.id),
                "payment_method": transaction.payment_method,
                "bookings_updated": len(bookings),
            }
        )
        return transaction

    async def complete(self, transaction_id: UUID, now: datetime) -> Transaction:
        """Close an approved transaction after play."""
        return await self._run(self._complete, transaction_id, now)

    async def _complete(self, transaction_id: UUID, now: datetime) -> Transaction:
        transaction = await self.repository.get_transaction_or_raise(transaction_id)
        if transaction.approval_status != ApprovalStatus.APPROVED:
            raise InvalidTransitionError(
                "transaction", str(transaction.id), str(transaction.approval_status), "complete"
            )

        await self.repository.compare_and_set(
            transaction,
            TransactionStatus.PENDING,
            "transaction",
            status=TransactionStatus.COMPLETED,
        )

        for item in await self.repository.line_items_for_transaction(transaction.id, active_only=True):
            item.status = LineItemStatus.COMPLETED
        for booking in await self.repository.bookings_for_transaction(transaction.id):
            booking.status = BookingStatus.COMPLETED

        await self.db.flush()
        logger.info(
            "Transaction completed",
            extra={"transaction_id": str(transaction.id), "completed_at": now.isoformat()}
        )
        return transaction

    # Line item changes

    async def cancel_line_item(self, item_id: UUID, now: datetime) -> SyncResult:
        """
        Cancel one line item and re-derive its transaction's bookings.

        Raises:
            NotFoundError: If the item does not exist
            InvalidTransitionError: If the item is not pending or approved
            ConcurrencyError: If the item changed underneath
        """
        with tracer.start_as_current_span("transactions.cancel_line_item"):
            return await self._run(self._cancel_line_item, item_id, now)

    async def _cancel_line_item(self, item_id: UUID, now: datetime) -> SyncResult:
        item = await self.repository.get_line_item_or_raise(item_id)
        if item.status not in (LineItemStatus.PENDING, LineItemStatus.APPROVED):
            raise InvalidTransitionError("line item", str(item.id), str(item.status), "cancel")

        await self.repository.compare_and_set(
            item,
            item.status,
            "line_item",
            status=LineItemStatus.CANCELLED,
        )

        sync = await self.synchronizer.handle(
            LineItemCancelled(transaction_id=item.transaction_id, item_id=item.id, court_id=item.court_id)
        )
        await self._refresh_totals(item.transaction_id)
        await self.waitlist.promote_released(sync.released, now)
        return sync

    async def reassign_line_item(self, item_id: UUID, court_id: UUID, now: datetime) -> SyncResult:
        """
        Move one line item to another court and split or move its booking to match.

        Raises:
            NotFoundError: If the item or court does not exist
            ValidationError: If the item is already on that court
            InvalidTransitionError: If the item is not pending or approved
            SlotConflictError: If the new court is taken for the item's slot
        """
        with tracer.start_as_current_span("transactions.reassign_line_item"):
            return await self._run(self._reassign_line_item, item_id, court_id, now)

    async def _reassign_line_item(self, item_id: UUID, court_id: UUID, now: datetime) -> SyncResult:
        item = await self.repository.get_line_item_or_raise(item_id)
        if item.status not in (LineItemStatus.PENDING, LineItemStatus.APPROVED):
            raise InvalidTransitionError("line item", str(item.id), str(item.status), "reassign")
        if item.court_id == court_id:
            raise ValidationError(detail="Line item is already on that court")
        await self.repository.get_court_or_raise(court_id)

        old_court_id = item.court_id
        start, end = item.time_range
        item.court_id = court_id
        await self.db.flush()

        sync = await self.synchronizer.handle(LineItemReassigned(
            transaction_id=item.transaction_id,
            item_id=item.id,
            old_court_id=old_court_id,
            new_court_id=court_id,
            start=start,
            end=end,
        ))
        await self.waitlist.promote_released(sync.released, now)
        return sync

    # Waitlist

    async def join_waitlist(self, request: JoinWaitlistRequest) -> WaitlistEntry:
        """Queue a requester for a slot held by someone else's pending booking."""
        return await self._run(self.waitlist.enqueue, request)

    async def convert_waitlist_entry(
        self,
        entry_id: UUID,
        now: datetime,
        payment_method: Optional[str] = None,
    ) -> Transaction:
        """
        Check out a notified waitlist entry before its offer runs out.

        Raises:
            InvalidTransitionError: If the entry holds no offer
            WaitlistExpiredError: If the offer deadline has passed
            SlotConflictError: If the slot was taken in the meantime
        """
        with tracer.start_as_current_span("transactions.convert_waitlist_entry"):
            return await self._run(self.waitlist.convert, entry_id, now, payment_method)

    async def expire_waitlist_offers(self, now: datetime) -> list[WaitlistEntry]:
        """Expire notified entries past their deadline; the next entry is not promoted."""
        with tracer.start_as_current_span("waitlist.expire_due"):
            started = time.perf_counter()
            expired = await self._run(self.waitlist.expire_due, now)
            metrics_collector.observe_sweep("waitlist", time.perf_counter() - started)
            return expired

    # Expiration sweep

    async def expire_stale(self, now: datetime) -> list[UUID]:
        """
        Cancel every pending, unapproved transaction whose clock ran out.

        Each transaction is cancelled in its own unit of work; a failure is
        logged and the sweep moves on.

        Returns:
            Ids of the transactions cancelled
        """
        with tracer.start_as_current_span("transactions.expire_stale"):
            started = time.perf_counter()
            stmt = (
                select(Transaction)
                .options(selectinload(Transaction.owner))
                .where(
                    Transaction.status == TransactionStatus.PENDING,
                    Transaction.approval_status == ApprovalStatus.PENDING,
                )
                .order_by(Transaction.created_at)
                .execution_options(populate_existing=True)
            )
            result = await self.db.execute(stmt)
            due = [transaction.id for transaction in result.scalars() if self.clock.should_expire(transaction, now)]

            expired = []
            for transaction_id in due:
                try:
                    await self._run(self._expire_one, transaction_id, now)
                except ConcurrencyError:
                    logger.info(
                        "Transaction changed before it could expire",
                        extra={"transaction_id": str(transaction_id)}
                    )
                    continue
                except Exception as e:
                    logger.error(
                        "Failed to expire transaction",
                        extra={"transaction_id": str(transaction_id), "error": str(e)}
                    )
                    continue
                expired.append(transaction_id)
                metrics_collector.record_transaction_expired()

            metrics_collector.observe_sweep("transactions", time.perf_counter() - started)
            if expired:
                logger.info(
                    "Expired stale transactions",
                    extra={"expired_count": len(expired), "checked": len(due)}
                )
            return expired

    async def _expire_one(self, transaction_id: UUID, now: datetime) -> None:
        transaction = await self.repository.get_transaction_or_raise(transaction_id)

        # Approval or payment landing concurrently wins over expiry
        await self.repository.compare_and_set(
            transaction,
            TransactionStatus.PENDING,
            "transaction",
            criteria=(
                Transaction.approval_status == ApprovalStatus.PENDING,
                Transaction.proof_of_payment.is_(None),
            ),
            status=TransactionStatus.CANCELLED,
        )

        for item in await self.repository.line_items_for_transaction(transaction.id):
            if item.status == LineItemStatus.PENDING:
                item.status = LineItemStatus.CANCELLED

        released = []
        for booking in await self.repository.bookings_for_transaction(transaction.id):
            released.append((booking.court_id, booking.start_time, booking.end_time))
            booking.status = BookingStatus.CANCELLED

        await self.waitlist.promote_released(released, now)
        logger.info(
            "Transaction expired",
            extra={
                "transaction_id": str(transaction.id),
                "created_at": transaction.created_at.isoformat(),
                "expired_at": self.clock.calculate_expiration(transaction.created_at).isoformat(),
                "bookings_released": len(released),
            }
        )

    # Helpers

    async def _transition_approval(self, transaction: Transaction, expected_approval, **values) -> None:
        """Compare-and-set on the approval status, which is what approve and reject race on."""
        await self.repository.compare_and_set(
            transaction,
            transaction.status,
            "transaction",
            criteria=(Transaction.approval_status == expected_approval,),
            **values,
        )

    async def _refresh_totals(self, transaction_id: UUID) -> Transaction:
        """Recompute the total from active items; close the transaction once none remain."""
        transaction = await self.repository.get_transaction_or_raise(transaction_id)
        items = await self.repository.line_items_for_transaction(transaction_id, active_only=True)
        transaction.total_amount = sum(item.price_amount for item in items)
        if not items and transaction.status == TransactionStatus.PENDING:
            transaction.status = TransactionStatus.CANCELLED
            logger.info(
                "Transaction cancelled - no active line items left",
                extra={"transaction_id": str(transaction_id)}
            )
        await self.db.flush()
        return transaction


def _copy_payment(transaction: Transaction, booking) -> None:
    booking.payment_status = transaction.payment_status
    booking.payment_method = transaction.payment_method
    booking.proof_of_payment = transaction.proof_of_payment
    booking.paid_at = transaction.paid_at
