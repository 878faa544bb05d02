"""Resource-time grouping of line items into reservation blocks."""

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Hashable, Iterable, Protocol, Sequence

from ..models.transaction import slot_range


class SlotLike(Protocol):
    """Anything carrying a court slot; line items and test doubles alike."""

    id: Hashable
    court_id: Hashable
    booking_date: date
    start_time: time
    end_time: time
    price_amount: int


@dataclass(frozen=True)
class TimeBlock:
    """A contiguous run of slots on one court, the shape of a single booking."""

    court_id: Hashable
    start: datetime
    end: datetime
    total_price: int
    item_ids: tuple

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end

    def matches(self, court_id: Hashable, start: datetime, end: datetime, price: int) -> bool:
        """Return True when a booking with these values already mirrors the block."""
        return (
            self.court_id == court_id
            and self.start == start
            and self.end == end
            and self.total_price == price
        )


def sort_slots(items: Iterable[SlotLike]) -> list[SlotLike]:
    """Order slots by date, start time, then court."""
    return sorted(items, key=lambda item: (item.booking_date, item.start_time, str(item.court_id)))


def group_line_items(items: Iterable[SlotLike]) -> list[TimeBlock]:
    """
    Collapse contiguous slots into reservation blocks.

    Slots are walked in date and start-time order. A slot extends the open
    block for its (court, date) key when it starts exactly where that block
    ends; otherwise it opens a new block. Blocks come back in the order they
    were opened, so a single-court input yields blocks in time order.

    Args:
        items: Active line items (or slot-like objects) to group

    Returns:
        Ordered list of blocks with summed prices and member item ids
    """
    blocks: list[dict] = []
    open_blocks: dict[tuple, dict] = {}

    for item in sort_slots(items):
        start, end = slot_range(item.booking_date, item.start_time, item.end_time)
        key = (item.court_id, item.booking_date)
        current = open_blocks.get(key)

        if current is not None and current["end"] == start:
            current["end"] = end
            current["total_price"] += item.price_amount
            current["item_ids"].append(item.id)
            continue

        current = {
            "court_id": item.court_id,
            "start": start,
            "end": end,
            "total_price": item.price_amount,
            "item_ids": [item.id],
        }
        open_blocks[key] = current
        blocks.append(current)

    return [
        TimeBlock(
            court_id=block["court_id"],
            start=block["start"],
            end=block["end"],
            total_price=block["total_price"],
            item_ids=tuple(block["item_ids"]),
        )
        for block in blocks
    ]


def flatten_blocks(blocks: Sequence[TimeBlock]) -> list:
    """Member item ids of every block, in block order."""
    return [item_id for block in blocks for item_id in block.item_ids]
