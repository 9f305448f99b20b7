"""
Read Batcher

Groups data point reads into contiguous register (or bit) spans so a
poll costs as few Modbus requests as possible.

Guarantees for the spans returned by build_groups:
- sorted by start address and non-overlapping
- no span longer than max_span
- the union of span addresses equals the union of requested addresses
  (gaps between items are never read)

Overlapping or adjacent items merge while the merged span fits. An item
that overlaps the current span but would push it past max_span continues
in a new span starting right after the current one, so a value may be
split across two requests. Decoding therefore looks words up in a
per-cycle address map instead of slicing a single response.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable

from ...common.exceptions import CodecError


@dataclass
class ReadItem:
    key: str
    address: int
    length: int
    payload: Any = None

    @property
    def end(self) -> int:
        return self.address + self.length - 1


@dataclass
class ReadGroup:
    start: int
    end: int
    items: list[ReadItem] = field(default_factory=list)

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def build_groups(items: Iterable[ReadItem], max_span: int = 120) -> list[ReadGroup]:
    """
    Build the minimal sorted list of spans covering every item.

    Raises:
        CodecError: an item is longer than max_span
    """
    if max_span < 1:
        raise CodecError(f"max span must be positive, got {max_span}")

    ordered = sorted(items, key=lambda it: (it.address, it.length))
    groups: list[ReadGroup] = []
    current: ReadGroup | None = None

    for item in ordered:
        if item.length < 1:
            raise CodecError(f"{item.key}: invalid length {item.length}")
        if item.length > max_span:
            raise CodecError(
                f"{item.key}: {item.length} units exceed the maximum span of {max_span}"
            )

        if current is None:
            current = ReadGroup(item.address, item.end, [item])
            continue

        if item.address > current.end + 1:
            # Gap: never read addresses nobody asked for
            groups.append(current)
            current = ReadGroup(item.address, item.end, [item])
            continue

        new_end = max(current.end, item.end)
        if new_end - current.start + 1 <= max_span:
            current.end = new_end
            current.items.append(item)
            continue

        # Overlaps but does not fit: continue after the current span
        groups.append(current)
        current = ReadGroup(current.end + 1, item.end, [item])

    if current is not None:
        groups.append(current)
    return groups


def covered_addresses(groups: Iterable[ReadGroup]) -> set[int]:
    out: set[int] = set()
    for group in groups:
        out.update(range(group.start, group.end + 1))
    return out


def requested_addresses(items: Iterable[ReadItem]) -> set[int]:
    out: set[int] = set()
    for item in items:
        out.update(range(item.address, item.end + 1))
    return out
