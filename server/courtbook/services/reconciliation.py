"""Reconciliation auditor: finds and repairs divergence between the four aggregates."""

import logging
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from opentelemetry import trace
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ..core.database import unit_of_work
from ..core.exceptions import SlotConflictError
from ..core.observability import get_logger, metrics_collector
from ..models.booking import Booking, BookingStatus, LIVE_BOOKING_STATUSES
from ..models.transaction import (
    ACTIVE_ITEM_STATUSES,
    ApprovalStatus,
    LineItem,
    LineItemStatus,
    PaymentStatus,
    Transaction,
    TransactionStatus,
)
from ..models.waitlist import OPEN_WAITLIST_STATUSES, WaitlistEntry, WaitlistStatus
from ..schemas.audit import AuditFinding, AuditOutcome, AuditReport
from ..schemas.calendar import BusinessHours
from .booking_sync import BookingSynchronizer
from .calendar import CalendarOracle
from .expiration import ExpirationClock
from .waitlist_service import WaitlistService

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)
audit_log = get_logger("courtbook.audit")

CLOSED_TRANSACTION_STATUSES = (TransactionStatus.REJECTED, TransactionStatus.CANCELLED)
TERMINAL_ITEM_STATUSES = (LineItemStatus.REJECTED, LineItemStatus.CANCELLED, LineItemStatus.COMPLETED)

# Highest priority first
ITEM_STATUS_PRIORITY = (
    (LineItemStatus.COMPLETED, TransactionStatus.COMPLETED),
    (LineItemStatus.REJECTED, TransactionStatus.REJECTED),
    (LineItemStatus.CANCELLED, TransactionStatus.CANCELLED),
)


def _value(status) -> Optional[str]:
    return getattr(status, "value", status)


def derive_transaction_status(statuses) -> TransactionStatus:
    """Transaction status implied by its item statuses: completed > rejected > cancelled > pending."""
    present = set(statuses)
    for item_status, transaction_status in ITEM_STATUS_PRIORITY:
        if item_status in present:
            return transaction_status
    return TransactionStatus.PENDING


class ReconciliationAuditor:
    """
    Read-then-repair pass over transactions, line items, bookings and waitlist entries.

    Checks run in a fixed order inside one unit of work. With ``fix`` off the
    run only reports. Repairs are minimal and each one is written to the
    ``courtbook.audit`` log with its before and after values. Broken
    references are never repaired; they are reported for manual review.

    Slot ranges released by a repairing run are handed to the waitlist
    engine for promotion before the unit of work commits; the resulting
    offers are sent after the commit.

    A second run straight after a repairing run finds nothing to repair.
    """

    def __init__(
        self,
        db: AsyncSession,
        synchronizer: Optional[BookingSynchronizer] = None,
        waitlist: Optional[WaitlistService] = None,
    ):
        self.db = db
        self.synchronizer = synchronizer or BookingSynchronizer(db)
        self.waitlist = waitlist or WaitlistService(
            db, ExpirationClock(CalendarOracle(BusinessHours.from_settings()))
        )
        self.released: list[tuple[UUID, datetime, datetime]] = []
        self.checks = (
            ("items_follow_transaction", self._items_follow_transaction),
            ("transaction_status_from_items", self._transaction_status_from_items),
            ("orphaned_line_items", self._orphaned_line_items),
            ("orphaned_bookings", self._orphaned_bookings),
            ("approved_transaction_bookings", self._approved_transaction_bookings),
            ("completed_transaction_bookings", self._completed_transaction_bookings),
            ("closed_transaction_bookings", self._closed_transaction_bookings),
            ("stale_waitlist_entries", self._stale_waitlist_entries),
            ("booking_payment", self._booking_payment),
            ("booking_drift", self._booking_drift),
            ("transaction_total", self._transaction_total),
            ("missing_bookings", self._missing_bookings),
            ("overlapping_bookings", self._overlapping_bookings),
            ("broken_conversions", self._broken_conversions),
        )

    async def run(self, fix: bool = True, now: Optional[datetime] = None) -> AuditReport:
        """
        Run every check once.

        Args:
            fix: Apply repairs; when False the run only reports
            now: Report timestamp

        Returns:
            The findings of this run
        """
        report = AuditReport(started_at=now or datetime.now(), fix=fix)
        self.released = []
        promoted = []

        with tracer.start_as_current_span("reconciliation.run") as span:
            span.set_attribute("fix", fix)
            started = time.perf_counter()

            try:
                async with unit_of_work(self.db):
                    for name, check in self.checks:
                        await check(report, name)
                        await self.db.flush()

                    if self.released:
                        promoted = await self.waitlist.promote_released(self.released, report.started_at)
            except Exception:
                self.waitlist.discard_notifications()
                raise

            await self.waitlist.dispatch_notifications()
            metrics_collector.observe_sweep("reconciliation", time.perf_counter() - started)
            span.set_attribute("findings", len(report.findings))

        logger.info(
            "Reconciliation run finished",
            extra={
                "fix": fix,
                "findings": len(report.findings),
                "repaired": len(report.repaired),
                "manual_review": len(report.manual_review),
                "promoted": len(promoted),
            }
        )
        return report

    def _record(
        self,
        report: AuditReport,
        check: str,
        entity: str,
        entity_id: Any,
        detail: str,
        repairable: bool,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
    ) -> bool:
        """Add a finding; returns True when the caller should apply the repair."""
        if not repairable:
            outcome = AuditOutcome.MANUAL_REVIEW
        elif report.fix:
            outcome = AuditOutcome.REPAIRED
        else:
            outcome = AuditOutcome.DETECTED

        report.findings.append(AuditFinding(
            check=check,
            entity=entity,
            entity_id=str(entity_id),
            detail=detail,
            outcome=outcome,
            before=before,
            after=after,
        ))
        metrics_collector.record_audit_finding(check, outcome.value)

        event = {
            "check": check,
            "entity": entity,
            "entity_id": str(entity_id),
            "outcome": outcome.value,
            "before": before,
            "after": after,
        }
        if outcome == AuditOutcome.MANUAL_REVIEW:
            audit_log.warning(detail, **event)
        else:
            audit_log.info(detail, **event)

        return outcome == AuditOutcome.REPAIRED

    # Status propagation

    async def _items_follow_transaction(self, report: AuditReport, check: str) -> None:
        stmt = (
            select(LineItem, Transaction)
            .join(Transaction, LineItem.transaction_id == Transaction.id)
            .where(
                or_(
                    Transaction.status.in_(CLOSED_TRANSACTION_STATUSES),
                    Transaction.approval_status == ApprovalStatus.REJECTED,
                ),
                LineItem.status.in_(ACTIVE_ITEM_STATUSES),
            )
            .order_by(Transaction.created_at, LineItem.booking_date, LineItem.start_time)
        )
        for item, transaction in (await self.db.execute(stmt)).all():
            rejected = (
                transaction.status == TransactionStatus.REJECTED
                or transaction.approval_status == ApprovalStatus.REJECTED
            )
            target = LineItemStatus.REJECTED if rejected else LineItemStatus.CANCELLED
            if self._record(
                report, check, "line_item", item.id,
                f"Line item still {_value(item.status)} on a {_value(transaction.status)} transaction",
                repairable=True,
                before={"status": _value(item.status)},
                after={"status": target.value},
            ):
                item.status = target

    async def _transaction_status_from_items(self, report: AuditReport, check: str) -> None:
        rows = (await self.db.execute(select(LineItem.transaction_id, LineItem.status))).all()
        statuses: dict[UUID, list] = defaultdict(list)
        for transaction_id, status in rows:
            statuses[transaction_id].append(status)

        for transaction_id, item_statuses in statuses.items():
            if not all(status in TERMINAL_ITEM_STATUSES for status in item_statuses):
                continue
            transaction = await self.db.get(Transaction, transaction_id)
            if transaction is None:
                continue
            target = derive_transaction_status(item_statuses)
            if transaction.status == target:
                continue
            if self._record(
                report, check, "transaction", transaction.id,
                "Transaction status disagrees with its settled line items",
                repairable=True,
                before={"status": _value(transaction.status)},
                after={"status": target.value},
            ):
                transaction.status = target

    # Broken references

    async def _orphaned_line_items(self, report: AuditReport, check: str) -> None:
        stmt = (
            select(LineItem)
            .outerjoin(Transaction, LineItem.transaction_id == Transaction.id)
            .where(Transaction.id.is_(None))
        )
        for item in (await self.db.execute(stmt)).scalars():
            self._record(
                report, check, "line_item", item.id,
                f"Line item references missing transaction {item.transaction_id}",
                repairable=False,
                before={"transaction_id": str(item.transaction_id), "status": _value(item.status)},
            )

    async def _orphaned_bookings(self, report: AuditReport, check: str) -> None:
        stmt = (
            select(Booking)
            .outerjoin(Transaction, Booking.transaction_id == Transaction.id)
            .where(Booking.transaction_id.is_not(None), Transaction.id.is_(None))
        )
        for booking in (await self.db.execute(stmt)).scalars():
            self._record(
                report, check, "booking", booking.id,
                f"Booking references missing transaction {booking.transaction_id}",
                repairable=False,
                before={"transaction_id": str(booking.transaction_id), "status": _value(booking.status)},
            )

    # Bookings against their transaction

    async def _approved_transaction_bookings(self, report: AuditReport, check: str) -> None:
        stmt = (
            select(Booking)
            .join(Transaction, Booking.transaction_id == Transaction.id)
            .where(
                Transaction.approval_status == ApprovalStatus.APPROVED,
                Transaction.status.notin_(CLOSED_TRANSACTION_STATUSES),
                Booking.status == BookingStatus.PENDING,
            )
        )
        for booking in (await self.db.execute(stmt)).scalars():
            if self._record(
                report, check, "booking", booking.id,
                "Pending booking on an approved transaction",
                repairable=True,
                before={"status": BookingStatus.PENDING.value},
                after={"status": BookingStatus.APPROVED.value},
            ):
                booking.status = BookingStatus.APPROVED

    async def _completed_transaction_bookings(self, report: AuditReport, check: str) -> None:
        stmt = (
            select(Booking)
            .join(Transaction, Booking.transaction_id == Transaction.id)
            .where(
                Transaction.status == TransactionStatus.COMPLETED,
                Booking.status.in_((BookingStatus.PENDING, BookingStatus.APPROVED)),
            )
        )
        for booking in (await self.db.execute(stmt)).scalars():
            if self._record(
                report, check, "booking", booking.id,
                f"Booking still {_value(booking.status)} on a completed transaction",
                repairable=True,
                before={"status": _value(booking.status)},
                after={"status": BookingStatus.COMPLETED.value},
            ):
                booking.status = BookingStatus.COMPLETED

    async def _closed_transaction_bookings(self, report: AuditReport, check: str) -> None:
        stmt = (
            select(Booking, Transaction)
            .join(Transaction, Booking.transaction_id == Transaction.id)
            .where(
                or_(
                    Transaction.status.in_(CLOSED_TRANSACTION_STATUSES),
                    Transaction.approval_status == ApprovalStatus.REJECTED,
                ),
                Booking.status.in_(LIVE_BOOKING_STATUSES),
            )
            .order_by(Booking.start_time)
        )
        for booking, transaction in (await self.db.execute(stmt)).all():
            rejected = (
                transaction.status == TransactionStatus.REJECTED
                or transaction.approval_status == ApprovalStatus.REJECTED
            )
            target = BookingStatus.REJECTED if rejected else BookingStatus.CANCELLED
            if self._record(
                report, check, "booking", booking.id,
                f"Booking still {_value(booking.status)} on a {_value(transaction.status)} transaction",
                repairable=True,
                before={"status": _value(booking.status)},
                after={"status": target.value},
            ):
                booking.status = target
                self.released.append((booking.court_id, booking.start_time, booking.end_time))

    async def _booking_payment(self, report: AuditReport, check: str) -> None:
        stmt = (
            select(Booking, Transaction)
            .join(Transaction, Booking.transaction_id == Transaction.id)
            .where(
                Transaction.payment_status == PaymentStatus.PAID,
                Booking.payment_status != PaymentStatus.PAID,
                Booking.status.in_(LIVE_BOOKING_STATUSES),
            )
        )
        for booking, transaction in (await self.db.execute(stmt)).all():
            after = {
                "payment_status": PaymentStatus.PAID.value,
                "payment_method": transaction.payment_method,
                "paid_at": transaction.paid_at.isoformat() if transaction.paid_at else None,
            }
            if self._record(
                report, check, "booking", booking.id,
                "Unpaid booking on a paid transaction",
                repairable=True,
                before={"payment_status": _value(booking.payment_status)},
                after=after,
            ):
                booking.payment_status = transaction.payment_status
                booking.payment_method = transaction.payment_method
                booking.proof_of_payment = transaction.proof_of_payment
                booking.paid_at = transaction.paid_at

    # Derived values against line items

    async def _live_transactions(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.status.notin_(CLOSED_TRANSACTION_STATUSES),
                Transaction.approval_status != ApprovalStatus.REJECTED,
            )
            .order_by(Transaction.created_at)
        )
        return list((await self.db.execute(stmt)).scalars())

    async def _booked_transaction_ids(self) -> set[UUID]:
        stmt = select(Booking.transaction_id).where(Booking.transaction_id.is_not(None)).distinct()
        return set((await self.db.execute(stmt)).scalars())

    async def _booking_drift(self, report: AuditReport, check: str) -> None:
        booked = await self._booked_transaction_ids()

        for transaction in await self._live_transactions():
            if transaction.id not in booked:
                continue

            courts = set(
                (await self.db.execute(
                    select(LineItem.court_id).where(
                        LineItem.transaction_id == transaction.id,
                        LineItem.status.in_(ACTIVE_ITEM_STATUSES),
                    )
                )).scalars()
            )
            courts.update(
                (await self.db.execute(
                    select(Booking.court_id).where(
                        Booking.transaction_id == transaction.id,
                        Booking.status.in_(LIVE_BOOKING_STATUSES),
                    )
                )).scalars()
            )

            for court_id in sorted(courts, key=str):
                plan = await self.synchronizer.plan_court(transaction.id, court_id)
                if plan.is_empty:
                    continue

                changes = plan.describe()
                try:
                    await self.synchronizer.check_conflicts(plan)
                except SlotConflictError as e:
                    self._record(
                        report, check, "transaction", transaction.id,
                        f"Booking recomputation on court {court_id} would overlap another booking",
                        repairable=False,
                        before={"court_id": str(court_id), "conflict": str(e)},
                        after=changes,
                    )
                    continue

                if self._record(
                    report, check, "transaction", transaction.id,
                    f"Bookings on court {court_id} drifted from the active line items",
                    repairable=True,
                    before={"court_id": str(court_id)},
                    after=changes,
                ):
                    result = await self.synchronizer.apply(plan)
                    self.released.extend(result.released)

    async def _transaction_total(self, report: AuditReport, check: str) -> None:
        for transaction in await self._live_transactions():
            stmt = select(LineItem.price_amount).where(
                LineItem.transaction_id == transaction.id,
                LineItem.status.in_(ACTIVE_ITEM_STATUSES),
            )
            expected = sum((await self.db.execute(stmt)).scalars())
            if transaction.total_amount == expected:
                continue
            if self._record(
                report, check, "transaction", transaction.id,
                "Transaction total disagrees with its active line items",
                repairable=True,
                before={"total_amount": transaction.total_amount},
                after={"total_amount": expected},
            ):
                transaction.total_amount = expected

    async def _missing_bookings(self, report: AuditReport, check: str) -> None:
        booked = await self._booked_transaction_ids()

        for transaction in await self._live_transactions():
            if transaction.id in booked:
                continue
            stmt = select(LineItem.id).where(
                LineItem.transaction_id == transaction.id,
                LineItem.status.in_(ACTIVE_ITEM_STATUSES),
            )
            item_ids = list((await self.db.execute(stmt)).scalars())
            if item_ids:
                self._record(
                    report, check, "transaction", transaction.id,
                    "Transaction has active line items but no booking",
                    repairable=False,
                    before={"active_line_item_ids": [str(item_id) for item_id in item_ids]},
                )

    async def _overlapping_bookings(self, report: AuditReport, check: str) -> None:
        other = aliased(Booking)
        stmt = (
            select(Booking, other)
            .join(
                other,
                and_(
                    other.court_id == Booking.court_id,
                    other.id > Booking.id,
                    other.start_time < Booking.end_time,
                    other.end_time > Booking.start_time,
                ),
            )
            .where(
                Booking.status.in_(LIVE_BOOKING_STATUSES),
                other.status.in_(LIVE_BOOKING_STATUSES),
            )
            .order_by(Booking.start_time)
        )
        for booking, overlapping in (await self.db.execute(stmt)).all():
            self._record(
                report, check, "booking", booking.id,
                f"Booking overlaps booking {overlapping.id} on the same court",
                repairable=False,
                before={
                    "court_id": str(booking.court_id),
                    "range": [booking.start_time.isoformat(), booking.end_time.isoformat()],
                    "overlapping_booking_id": str(overlapping.id),
                    "overlapping_range": [overlapping.start_time.isoformat(), overlapping.end_time.isoformat()],
                },
            )

    # Waitlist

    async def _stale_waitlist_entries(self, report: AuditReport, check: str) -> None:
        stmt = (
            select(WaitlistEntry)
            .join(Transaction, WaitlistEntry.pending_transaction_id == Transaction.id)
            .where(
                Transaction.approval_status == ApprovalStatus.APPROVED,
                WaitlistEntry.status.in_(OPEN_WAITLIST_STATUSES + (WaitlistStatus.CONVERTED,)),
            )
            .order_by(WaitlistEntry.position)
        )
        for entry in list((await self.db.execute(stmt)).scalars()):
            before = {"status": _value(entry.status)}
            after = {"status": WaitlistStatus.CANCELLED.value}
            retract = entry.status == WaitlistStatus.CONVERTED and entry.converted_transaction_id is not None
            if retract:
                before["converted_transaction_id"] = str(entry.converted_transaction_id)
                after["converted_transaction_status"] = TransactionStatus.REJECTED.value

            if self._record(
                report, check, "waitlist_entry", entry.id,
                f"Waitlist entry still {_value(entry.status)} behind an approved transaction",
                repairable=True,
                before=before,
                after=after,
            ):
                if retract:
                    await self.waitlist.retract_conversion(entry)
                entry.status = WaitlistStatus.CANCELLED
                metrics_collector.record_waitlist_transition(WaitlistStatus.CANCELLED.value)

    async def _broken_conversions(self, report: AuditReport, check: str) -> None:
        stmt = select(WaitlistEntry).where(WaitlistEntry.status == WaitlistStatus.CONVERTED)
        for entry in (await self.db.execute(stmt)).scalars():
            problems = []
            transaction = None
            if entry.converted_transaction_id is not None:
                transaction = await self.db.get(Transaction, entry.converted_transaction_id)
            if transaction is None:
                problems.append("converted transaction is missing")

            booking_id = (await self.db.execute(
                select(Booking.id).where(Booking.waitlist_entry_id == entry.id).limit(1)
            )).scalar()
            if booking_id is None:
                problems.append("converted booking is missing")

            if problems:
                self._record(
                    report, check, "waitlist_entry", entry.id,
                    f"Converted waitlist entry is broken: {', '.join(problems)}",
                    repairable=False,
                    before={
                        "converted_transaction_id": (
                            str(entry.converted_transaction_id) if entry.converted_transaction_id else None
                        ),
                    },
                )
