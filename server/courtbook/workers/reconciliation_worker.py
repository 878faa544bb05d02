"""Background worker that runs the reconciliation auditor."""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, settings as app_settings
from ..core.database import async_session_factory
from ..schemas.audit import AuditReport
from ..schemas.calendar import BusinessHours
from ..services.calendar import CalendarOracle, HolidayCalendar
from ..services.expiration import ExpirationClock
from ..services.notifications import Notifier, build_notifier
from ..services.reconciliation import ReconciliationAuditor
from ..services.waitlist_service import WaitlistService
from .base import BaseWorker

logger = logging.getLogger(__name__)


class ReconciliationWorker(BaseWorker):
    """Background worker that audits and repairs the reservation aggregates."""

    def __init__(
        self,
        interval_seconds: Optional[int] = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        notifier: Optional[Notifier] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or app_settings
        super().__init__(
            name="Reconciliation",
            interval_seconds=interval_seconds or self.config.reconciliation_interval_seconds,
        )
        self.session_factory = session_factory
        self.notifier = notifier or build_notifier(self.config)
        self.clock = clock
        self.last_report: Optional[AuditReport] = None

    async def process(self) -> None:
        async with self.session_factory() as db:
            holidays = await HolidayCalendar.load(db)
            waitlist = WaitlistService(
                db,
                ExpirationClock(CalendarOracle(BusinessHours.from_settings(self.config), holidays)),
                notifier=self.notifier,
                enabled=self.config.waitlist_enabled,
            )
            auditor = ReconciliationAuditor(db, waitlist=waitlist)
            report = await auditor.run(fix=self.config.reconciliation_auto_fix, now=self.clock())

        self.last_report = report
        if report.manual_review:
            logger.warning(
                f"{len(report.manual_review)} records need manual review",
                extra={
                    "manual_review": [finding.entity_id for finding in report.manual_review],
                    "worker": self.name,
                }
            )
