"""Unit tests for resource-time grouping."""

from datetime import date, datetime, time
from types import SimpleNamespace

from courtbook.services.grouping import flatten_blocks, group_line_items

DAY = date(2026, 3, 10)


def item(item_id, start, end, court="A", price=500, day=DAY):
    return SimpleNamespace(
        id=item_id,
        court_id=court,
        booking_date=day,
        start_time=time(*start) if isinstance(start, tuple) else time(start),
        end_time=time(*end) if isinstance(end, tuple) else time(end),
        price_amount=price,
    )


def test_contiguous_items_collapse_into_one_block():
    blocks = group_line_items([item(1, 9, 10), item(2, 10, 11), item(3, 11, 12)])

    assert len(blocks) == 1
    block = blocks[0]
    assert block.start == datetime(2026, 3, 10, 9)
    assert block.end == datetime(2026, 3, 10, 12)
    assert block.total_price == 1500
    assert block.item_ids == (1, 2, 3)


def test_gap_starts_a_new_block():
    blocks = group_line_items([item(1, 9, 10), item(3, 11, 12)])
    assert [(b.start.hour, b.end.hour) for b in blocks] == [(9, 10), (11, 12)]


def test_input_order_does_not_matter():
    blocks = group_line_items([item(3, 11, 12), item(1, 9, 10), item(2, 10, 11)])
    assert len(blocks) == 1
    assert blocks[0].item_ids == (1, 2, 3)


def test_courts_and_dates_group_separately():
    blocks = group_line_items([
        item(1, 9, 10, court="A"),
        item(2, 10, 11, court="B"),
        item(3, 11, 12, court="A"),
        item(4, 12, 13, court="A", day=date(2026, 3, 11)),
    ])
    assert [(b.court_id, b.item_ids) for b in blocks] == [("A", (1,)), ("B", (2,)), ("A", (3,)), ("A", (4,))]


def test_interleaved_courts_still_extend_their_own_block():
    blocks = group_line_items([
        item(1, 9, 10, court="A"),
        item(2, 9, 10, court="B"),
        item(3, 10, 11, court="A"),
    ])
    assert [(b.court_id, b.item_ids) for b in blocks] == [("A", (1, 3)), ("B", (2,))]


def test_midnight_crossing_slot_ends_next_day():
    blocks = group_line_items([item(1, 22, 23), item(2, 23, 0)])
    assert len(blocks) == 1
    assert blocks[0].end == datetime(2026, 3, 11, 0, 0)


def test_flatten_restores_sorted_item_order():
    items = [item(2, 10, 11), item(1, 9, 10), item(4, 14, 15), item(3, 11, 12)]
    assert flatten_blocks(group_line_items(items)) == [1, 2, 3, 4]


def test_empty_input():
    assert group_line_items([]) == []


def test_simultaneous_slots_on_different_courts_order_by_court():
    forward = group_line_items([item(1, 6, 7, court="b"), item(2, 6, 7, court="c")])
    backward = group_line_items([item(2, 6, 7, court="c"), item(1, 6, 7, court="b")])

    assert [b.court_id for b in forward] == ["b", "c"]
    assert forward == backward
