"""Test configuration and fixtures."""

import os

# Point the application engine at SQLite before courtbook.core.database is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import date, datetime, time
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from courtbook.core.database import Base
from courtbook.core.exceptions import DeliveryError
from courtbook.models import Booking, Court, LIVE_BOOKING_STATUSES, LineItem, Transaction, User, UserRole, WaitlistEntry
from courtbook.schemas.calendar import BusinessHours
from courtbook.schemas.checkout import CheckoutRequest, SlotRequest
from courtbook.services.calendar import CalendarOracle, HolidayCalendar
from courtbook.services.expiration import ExpirationClock
from courtbook.services.transaction_service import TransactionService

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Tuesday 3 March 2026, inside business hours
NOW = datetime(2026, 3, 3, 9, 30)
PLAY_DATE = date(2026, 3, 10)


class RecordingNotifier:
    """Notifier double that keeps every call; can be told to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def notify(self, recipient, slot, deadline, kind=None):
        if self.fail:
            raise DeliveryError(recipient=recipient.email, detail="mailbox unavailable")
        self.sent.append({"recipient": recipient, "slot": slot, "deadline": deadline, "kind": kind})


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def test_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def business_hours():
    return BusinessHours(start_hour=8, end_hour=17)


@pytest.fixture
def oracle(business_hours):
    return CalendarOracle(business_hours, HolidayCalendar())


@pytest.fixture
def clock(oracle):
    return ExpirationClock(oracle)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(test_session, clock, notifier):
    return TransactionService(test_session, clock, notifier=notifier, waitlist_enabled=True)


@pytest.fixture
def make_user(test_session):
    """Factory for persisted users."""
    counter = {"n": 0}

    async def _make(role: UserRole = UserRole.USER, name: Optional[str] = None) -> User:
        counter["n"] += 1
        user = User(
            name=name or f"Player {counter['n']}",
            email=f"player{counter['n']}@example.com",
            role=role,
        )
        test_session.add(user)
        await test_session.commit()
        return user

    return _make


@pytest.fixture
def make_court(test_session):
    """Factory for persisted courts."""
    counter = {"n": 0}

    async def _make(name: Optional[str] = None) -> Court:
        counter["n"] += 1
        court = Court(name=name or f"Court {counter['n']}")
        test_session.add(court)
        await test_session.commit()
        return court

    return _make


@pytest_asyncio.fixture
async def user(make_user):
    return await make_user()


@pytest_asyncio.fixture
async def court(make_court):
    return await make_court("Court A")


@pytest_asyncio.fixture
async def other_court(make_court):
    return await make_court("Court B")


def slot(court, start_hour: int, end_hour: int, price: int = 1000, day: date = PLAY_DATE) -> SlotRequest:
    """One slot request on ``court`` between two whole hours."""
    return SlotRequest(
        court_id=court.id,
        booking_date=day,
        start_time=time(start_hour),
        end_time=time(end_hour % 24),
        price_amount=price,
    )


@pytest.fixture
def checkout(service):
    """Check out ``slots`` for ``user`` at ``now``."""

    async def _checkout(user, slots, now: datetime = NOW, **fields):
        return await service.checkout(CheckoutRequest(user_id=user.id, slots=slots, **fields), now)

    return _checkout


@pytest_asyncio.fixture(scope="function")
async def test_client():
    """HTTP client against an app without lifespan (no workers)."""
    from courtbook.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def load_bookings(session, transaction_id, live_only: bool = True) -> list[Booking]:
    """Bookings of a transaction, freshly read, in time order."""
    stmt = (
        select(Booking)
        .where(Booking.transaction_id == transaction_id)
        .order_by(Booking.start_time, Booking.court_id)
        .execution_options(populate_existing=True)
    )
    if live_only:
        stmt = stmt.where(Booking.status.in_(LIVE_BOOKING_STATUSES))
    return list((await session.execute(stmt)).scalars())


async def load_items(session, transaction_id) -> list[LineItem]:
    stmt = (
        select(LineItem)
        .where(LineItem.transaction_id == transaction_id)
        .order_by(LineItem.booking_date, LineItem.start_time)
        .execution_options(populate_existing=True)
    )
    return list((await session.execute(stmt)).scalars())


async def load_transaction(session, transaction_id) -> Transaction:
    return await session.get(Transaction, transaction_id, populate_existing=True)


async def load_entry(session, entry_id) -> WaitlistEntry:
    return await session.get(WaitlistEntry, entry_id, populate_existing=True)
