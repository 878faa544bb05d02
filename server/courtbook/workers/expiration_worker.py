"""Background worker that expires stale transactions and waitlist offers."""

import logging
import time
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, settings as app_settings
from ..core.database import async_session_factory
from ..schemas.calendar import BusinessHours
from ..services.calendar import CalendarOracle, HolidayCalendar
from ..services.expiration import ExpirationClock
from ..services.notifications import Notifier, build_notifier
from ..services.transaction_service import TransactionService
from .base import BaseWorker

logger = logging.getLogger(__name__)


class ExpirationSweepWorker(BaseWorker):
    """
    Background worker that runs the expiration sweep.

    Each iteration opens its own session and loads a fresh holiday
    snapshot, then cancels overdue pending transactions (promoting waitlist
    heads for the freed slots) and expires waitlist offers past their
    deadline. The waitlist half runs at most every
    ``waitlist_interval_seconds``.
    """

    def __init__(
        self,
        interval_seconds: Optional[int] = None,
        waitlist_interval_seconds: Optional[int] = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        notifier: Optional[Notifier] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or app_settings
        super().__init__(
            name="ExpirationSweep",
            interval_seconds=interval_seconds or self.config.transaction_sweep_interval_seconds,
        )
        self.waitlist_interval_seconds = (
            waitlist_interval_seconds or self.config.waitlist_sweep_interval_seconds
        )
        self.session_factory = session_factory
        self.notifier = notifier or build_notifier(self.config)
        self.clock = clock
        self._last_waitlist_sweep: Optional[float] = None

    def _waitlist_due(self) -> bool:
        if self._last_waitlist_sweep is None:
            return True
        return time.monotonic() - self._last_waitlist_sweep >= self.waitlist_interval_seconds

    async def process(self) -> None:
        """Expire overdue transactions, then overdue waitlist offers."""
        async with self.session_factory() as db:
            holidays = await HolidayCalendar.load(db)
            clock = ExpirationClock(CalendarOracle(BusinessHours.from_settings(self.config), holidays))
            service = TransactionService(
                db,
                clock,
                notifier=self.notifier,
                waitlist_enabled=self.config.waitlist_enabled,
            )
            now = self.clock()

            expired = await service.expire_stale(now)
            if expired:
                logger.info(
                    f"Expired {len(expired)} stale transactions",
                    extra={"expired_count": len(expired), "worker": self.name}
                )

            if not self._waitlist_due():
                return

            entries = await service.expire_waitlist_offers(now)
            self._last_waitlist_sweep = time.monotonic()

            if entries:
                logger.info(
                    f"Expired {len(entries)} waitlist offers",
                    extra={"expired_count": len(entries), "worker": self.name}
                )
