"""Query helpers shared by the engine services."""

import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import ConcurrencyError, NotFoundError
from ..models.booking import Booking, LIVE_BOOKING_STATUSES
from ..models.court import Court
from ..models.transaction import ACTIVE_ITEM_STATUSES, LineItem, Transaction
from ..models.user import User
from ..models.waitlist import WaitlistEntry, WaitlistStatus

logger = logging.getLogger(__name__)


def _status_label(expected) -> str:
    if isinstance(expected, (tuple, list, set, frozenset)):
        return "|".join(getattr(status, "value", status) for status in expected)
    return getattr(expected, "value", expected)


class ReservationRepository:
    """Loads and guards the four reservation aggregates."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # Lookups

    async def get_user(self, user_id: UUID) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def get_user_or_raise(self, user_id: UUID) -> User:
        user = await self.get_user(user_id)
        if not user:
            raise NotFoundError(resource_type="user", resource_id=str(user_id))
        return user

    async def get_court_or_raise(self, court_id: UUID) -> Court:
        court = await self.db.get(Court, court_id)
        if not court:
            raise NotFoundError(resource_type="court", resource_id=str(court_id))
        return court

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        return await self.db.get(Transaction, transaction_id)

    async def get_transaction_or_raise(self, transaction_id: UUID) -> Transaction:
        transaction = await self.get_transaction(transaction_id)
        if not transaction:
            logger.warning("Transaction not found", extra={"transaction_id": str(transaction_id)})
            raise NotFoundError(resource_type="transaction", resource_id=str(transaction_id))
        return transaction

    async def get_line_item_or_raise(self, item_id: UUID) -> LineItem:
        item = await self.db.get(LineItem, item_id)
        if not item:
            raise NotFoundError(resource_type="line_item", resource_id=str(item_id))
        return item

    async def get_waitlist_entry_or_raise(self, entry_id: UUID) -> WaitlistEntry:
        entry = await self.db.get(WaitlistEntry, entry_id)
        if not entry:
            raise NotFoundError(resource_type="waitlist_entry", resource_id=str(entry_id))
        return entry

    # Line items

    async def line_items_for_transaction(
        self,
        transaction_id: UUID,
        court_id: Optional[UUID] = None,
        active_only: bool = False,
    ) -> list[LineItem]:
        """Items of a transaction ordered by date, start time and court."""
        stmt = select(LineItem).where(LineItem.transaction_id == transaction_id)
        if court_id is not None:
            stmt = stmt.where(LineItem.court_id == court_id)
        if active_only:
            stmt = stmt.where(LineItem.status.in_(ACTIVE_ITEM_STATUSES))
        stmt = stmt.order_by(LineItem.booking_date, LineItem.start_time, LineItem.court_id)
        result = await self.db.execute(stmt)
        return list(result.scalars())

    # Bookings

    async def bookings_for_transaction(
        self,
        transaction_id: UUID,
        court_id: Optional[UUID] = None,
        live_only: bool = True,
    ) -> list[Booking]:
        stmt = select(Booking).where(Booking.transaction_id == transaction_id)
        if court_id is not None:
            stmt = stmt.where(Booking.court_id == court_id)
        if live_only:
            stmt = stmt.where(Booking.status.in_(LIVE_BOOKING_STATUSES))
        stmt = stmt.order_by(Booking.start_time, Booking.created_at)
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def live_bookings_overlapping(
        self,
        court_id: UUID,
        start: datetime,
        end: datetime,
        exclude_ids: Iterable[UUID] = (),
    ) -> list[Booking]:
        """Live bookings on ``court_id`` whose range intersects [start, end)."""
        stmt = select(Booking).where(
            Booking.court_id == court_id,
            Booking.status.in_(LIVE_BOOKING_STATUSES),
            Booking.start_time < end,
            Booking.end_time > start,
        )
        excluded = list(exclude_ids)
        if excluded:
            stmt = stmt.where(Booking.id.notin_(excluded))
        result = await self.db.execute(stmt.order_by(Booking.start_time))
        return list(result.scalars())

    # Waitlist

    async def waitlist_queue(
        self,
        court_id: UUID,
        start: datetime,
        end: datetime,
        statuses: Sequence[WaitlistStatus] = (WaitlistStatus.PENDING,),
    ) -> list[WaitlistEntry]:
        """Entries for one slot key, head of the queue first."""
        stmt = (
            select(WaitlistEntry)
            .where(
                WaitlistEntry.court_id == court_id,
                WaitlistEntry.start_time == start,
                WaitlistEntry.end_time == end,
                WaitlistEntry.status.in_(statuses),
            )
            .order_by(WaitlistEntry.position, WaitlistEntry.created_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def max_waitlist_position(self, court_id: UUID, start: datetime, end: datetime) -> int:
        stmt = select(func.max(WaitlistEntry.position)).where(
            WaitlistEntry.court_id == court_id,
            WaitlistEntry.start_time == start,
            WaitlistEntry.end_time == end,
        )
        result = await self.db.execute(stmt)
        return result.scalar() or 0

    async def waitlist_keys_overlapping(
        self, court_id: UUID, start: datetime, end: datetime
    ) -> list[tuple[UUID, datetime, datetime]]:
        """Distinct slot keys with pending entries intersecting [start, end)."""
        stmt = (
            select(WaitlistEntry.court_id, WaitlistEntry.start_time, WaitlistEntry.end_time)
            .where(
                WaitlistEntry.court_id == court_id,
                WaitlistEntry.status == WaitlistStatus.PENDING,
                WaitlistEntry.start_time < end,
                WaitlistEntry.end_time > start,
            )
            .distinct()
            .order_by(WaitlistEntry.start_time, WaitlistEntry.end_time)
        )
        result = await self.db.execute(stmt)
        return [tuple(row) for row in result.all()]

    # Guarded transitions

    async def compare_and_set(
        self,
        entity,
        expected,
        resource_type: str,
        criteria: Sequence = (),
        **values,
    ) -> None:
        """
        Apply ``values`` only if ``entity`` is still in the ``expected`` status.

        ``criteria`` adds further column conditions the row must still meet.

        The check and the write are one UPDATE statement, so a concurrent
        writer that moved the row first makes this call fail instead of
        silently overwriting it.

        Raises:
            ConcurrencyError: If the row is no longer in the expected status
        """
        model = type(entity)
        await self.db.flush()

        if isinstance(expected, (tuple, list, set, frozenset)):
            status_clause = model.status.in_(list(expected))
        else:
            status_clause = model.status == expected

        stmt = (
            update(model)
            .where(model.id == entity.id, status_clause, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)

        if result.rowcount != 1:
            logger.warning(
                "Status transition lost a race",
                extra={
                    "resource_type": resource_type,
                    "resource_id": str(entity.id),
                    "expected_status": _status_label(expected),
                    "values": {key: str(value) for key, value in values.items()},
                }
            )
            raise ConcurrencyError(
                resource_type=resource_type,
                resource_id=str(entity.id),
                expected_status=_status_label(expected),
            )

        await self.db.refresh(entity)
