"""Tests for read batching."""

import pytest

from fieldbridge.common.exceptions import CodecError
from fieldbridge.drivers.modbus.batcher import (
    ReadItem,
    build_groups,
    covered_addresses,
    requested_addresses,
)


def spans(groups):
    return [(g.start, g.end) for g in groups]


def test_adjacent_items_merge():
    items = [ReadItem("a", 0, 2), ReadItem("b", 2, 1), ReadItem("c", 3, 2)]
    assert spans(build_groups(items)) == [(0, 4)]


def test_gap_splits_groups():
    """Addresses between items are never read."""
    items = [ReadItem("a", 0, 1), ReadItem("b", 5, 1)]
    groups = build_groups(items)
    assert spans(groups) == [(0, 0), (5, 5)]
    assert covered_addresses(groups) == requested_addresses(items)


def test_unsorted_input():
    items = [ReadItem("b", 10, 2), ReadItem("a", 0, 2), ReadItem("c", 2, 2)]
    assert spans(build_groups(items)) == [(0, 3), (10, 11)]


def test_overlapping_items_merge():
    items = [ReadItem("a", 0, 4), ReadItem("b", 2, 4)]
    groups = build_groups(items)
    assert spans(groups) == [(0, 5)]
    assert [i.key for i in groups[0].items] == ["a", "b"]


def test_max_span_split():
    items = [ReadItem(str(i), i, 1) for i in range(10)]
    groups = build_groups(items, max_span=4)
    assert spans(groups) == [(0, 3), (4, 7), (8, 9)]
    assert all(g.length <= 4 for g in groups)


def test_overlap_past_max_span_continues_after_span():
    """The overflowing item continues right after the current span."""
    items = [ReadItem("a", 0, 3), ReadItem("b", 2, 3)]
    groups = build_groups(items, max_span=3)
    assert spans(groups) == [(0, 2), (3, 4)]
    assert covered_addresses(groups) == requested_addresses(items)


def test_item_longer_than_max_span():
    with pytest.raises(CodecError):
        build_groups([ReadItem("a", 0, 10)], max_span=4)


def test_empty_input():
    assert build_groups([]) == []
