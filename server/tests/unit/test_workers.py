"""Unit tests for the background workers."""

import asyncio
from datetime import timedelta

import pytest

from conftest import NOW, RecordingNotifier, load_entry, load_transaction, slot
from courtbook.core.config import Settings
from courtbook.models import TransactionStatus, WaitlistStatus
from courtbook.workers.base import BaseWorker
from courtbook.workers.expiration_worker import ExpirationSweepWorker
from courtbook.workers.manager import WorkerManager
from courtbook.workers.reconciliation_worker import ReconciliationWorker


class FlakyWorker(BaseWorker):
    def __init__(self, failures: int, **kwargs):
        super().__init__("Flaky", **kwargs)
        self.failures = failures
        self.calls = 0

    async def process(self) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("database unavailable")


@pytest.mark.asyncio
async def test_failures_back_off_exponentially():
    worker = FlakyWorker(failures=5, interval_seconds=60, max_backoff_seconds=300)

    delays = []
    for _ in range(4):
        assert await worker.run_once() is False
        delays.append(worker.backoff_seconds())

    assert delays == [60, 120, 240, 300]
    assert worker.consecutive_failures == 4


@pytest.mark.asyncio
async def test_success_resets_backoff():
    worker = FlakyWorker(failures=2, interval_seconds=30)

    await worker.run_once()
    await worker.run_once()
    assert await worker.run_once() is True

    assert worker.consecutive_failures == 0
    assert worker.backoff_seconds() == 30


@pytest.mark.asyncio
async def test_start_and_stop():
    worker = FlakyWorker(failures=0, interval_seconds=3600)

    await worker.start()
    await asyncio.sleep(0)
    assert worker.is_running
    await worker.stop()

    assert not worker.is_running
    assert worker.calls == 1


@pytest.mark.asyncio
async def test_expiration_worker_sweeps_transactions_and_offers(
    test_session, session_factory, service, checkout, make_user, court
):
    blocking = await checkout(await make_user(), [slot(court, 9, 10)])
    queued = await checkout(await make_user(), [slot(court, 9, 10)])
    await service.reject(blocking.transaction_id, "No payment", NOW)
    stale = await checkout(await make_user(), [slot(court, 14, 15)])

    worker = ExpirationSweepWorker(
        session_factory=session_factory,
        notifier=RecordingNotifier(),
        config=Settings(waitlist_enabled=True),
        clock=lambda: NOW + timedelta(days=2),
    )
    assert await worker.run_once() is True

    transaction = await load_transaction(test_session, stale.transaction_id)
    assert transaction.status == TransactionStatus.CANCELLED
    entry = await load_entry(test_session, queued.waitlist_entry_ids[0])
    assert entry.status == WaitlistStatus.EXPIRED


@pytest.mark.asyncio
async def test_reconciliation_worker_keeps_last_report(test_session, session_factory, checkout, user, court):
    result = await checkout(user, [slot(court, 9, 10)])
    transaction = await load_transaction(test_session, result.transaction_id)
    transaction.total_amount = 1
    await test_session.commit()

    worker = ReconciliationWorker(
        session_factory=session_factory,
        config=Settings(reconciliation_auto_fix=True),
        clock=lambda: NOW,
    )
    assert await worker.run_once() is True

    assert [f.check for f in worker.last_report.repaired] == ["transaction_total"]
    assert (await load_transaction(test_session, result.transaction_id)).total_amount == 1000


@pytest.mark.asyncio
async def test_manager_lists_workers(session_factory):
    manager = WorkerManager(session_factory=session_factory, config=Settings())

    assert manager.get_worker_status() == {"expiration": False, "reconciliation": False}
    assert manager.running_count() == 0
    assert isinstance(manager.get_worker("expiration"), ExpirationSweepWorker)
    with pytest.raises(KeyError):
        manager.get_worker("newsletter")
