"""Property tests for grouping and expiration."""

from collections import Counter
from datetime import date, datetime, time, timedelta
from itertools import count
from types import SimpleNamespace

from hypothesis import given, settings, strategies as st

from courtbook.schemas.calendar import BusinessHours
from courtbook.services.calendar import CalendarOracle, HolidayCalendar
from courtbook.services.expiration import COUNTDOWN, ExpirationClock
from courtbook.services.grouping import flatten_blocks, group_line_items

PLAY_DATE = date(2026, 3, 10)
COURTS = ("court-a", "court-b", "court-c")


@st.composite
def line_items(draw):
    """Non-overlapping hourly slots spread over a few courts and two days."""
    ids = count(1)
    items = []
    for court in COURTS:
        for offset in (0, 1):
            hours = draw(st.sets(st.integers(min_value=6, max_value=22), max_size=8))
            for hour in hours:
                items.append(SimpleNamespace(
                    id=next(ids),
                    court_id=court,
                    booking_date=PLAY_DATE + timedelta(days=offset),
                    start_time=time(hour),
                    end_time=time(hour + 1),
                    price_amount=draw(st.integers(min_value=1, max_value=5000)),
                ))
    return draw(st.permutations(items))


@given(line_items())
def test_every_item_lands_in_exactly_one_block(items):
    blocks = group_line_items(items)
    assert Counter(flatten_blocks(blocks)) == Counter(item.id for item in items)


@given(line_items())
def test_block_totals_sum_member_prices(items):
    by_id = {item.id: item for item in items}
    blocks = group_line_items(items)

    for block in blocks:
        assert block.total_price == sum(by_id[i].price_amount for i in block.item_ids)
    assert sum(block.total_price for block in blocks) == sum(item.price_amount for item in items)


@given(line_items())
def test_blocks_on_one_court_neither_overlap_nor_touch(items):
    blocks = group_line_items(items)

    for court in COURTS:
        ranges = sorted((b.start, b.end) for b in blocks if b.court_id == court)
        for (_, end), (next_start, _) in zip(ranges, ranges[1:]):
            assert end < next_start


@given(line_items())
def test_grouping_ignores_input_order(items):
    assert group_line_items(items) == group_line_items(list(reversed(items)))


business_hours = st.tuples(
    st.integers(min_value=0, max_value=12),
    st.integers(min_value=13, max_value=23),
).map(lambda pair: BusinessHours(start_hour=pair[0], end_hour=pair[1]))

instants = st.datetimes(min_value=datetime(2026, 1, 1), max_value=datetime(2027, 12, 31))
holiday_sets = st.frozensets(st.dates(min_value=date(2026, 1, 1), max_value=date(2028, 1, 31)), max_size=20)


@settings(max_examples=200)
@given(business_hours, holiday_sets, instants)
def test_expiration_follows_creation(hours, holidays, created_at):
    oracle = CalendarOracle(hours, HolidayCalendar(dates=holidays))
    clock = ExpirationClock(oracle)

    expires_at = clock.calculate_expiration(created_at)

    assert expires_at > created_at
    assert expires_at == clock.calculate_expiration(created_at)
    if expires_at != created_at + COUNTDOWN:
        assert oracle.is_working_day(expires_at.date())
        assert expires_at - COUNTDOWN == datetime.combine(expires_at.date(), time(hours.start_hour))


@given(business_hours, instants)
def test_expiry_boundary_is_inclusive(hours, created_at):
    clock = ExpirationClock(CalendarOracle(hours))
    expires_at = clock.calculate_expiration(created_at)

    assert clock.is_expired(created_at, expires_at)
    assert not clock.is_expired(created_at, expires_at - timedelta(microseconds=1))
    assert clock.remaining(created_at, expires_at) == timedelta(0)
