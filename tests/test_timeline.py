"""Tests for timeline block sequencing."""

from __future__ import annotations

import pytest

from domain.typing_video import RenderValidationError, TimelineBlock
from service.reveal_clock import compute_visible_count
from service.timeline import (
    NO_ACTIVE_BLOCK,
    compute_block_chars_per_second,
    find_active_block_index,
    sort_blocks,
)


def two_blocks() -> tuple[TimelineBlock, ...]:
    """Blocks ``AB`` over [0, 1] and ``CD`` over [2, 3]."""
    return (
        TimelineBlock(text="AB", start_seconds=0.0, duration_seconds=1.0),
        TimelineBlock(text="CD", start_seconds=2.0, duration_seconds=1.0),
    )


def test_active_block_lookup_with_gap() -> None:
    """Gaps between blocks have no active block; ends are inclusive."""
    blocks = two_blocks()
    assert find_active_block_index(blocks, 0.5) == 0
    assert find_active_block_index(blocks, 1.0) == 0
    assert find_active_block_index(blocks, 1.5) == NO_ACTIVE_BLOCK
    assert find_active_block_index(blocks, 2.0) == 1
    assert find_active_block_index(blocks, 3.5) == NO_ACTIVE_BLOCK


def test_overlapping_blocks_pick_first_match() -> None:
    """The earlier block wins while blocks overlap."""
    blocks = (
        TimelineBlock(text="one", start_seconds=0.0, duration_seconds=2.0),
        TimelineBlock(text="two", start_seconds=1.0, duration_seconds=2.0),
    )
    assert find_active_block_index(blocks, 1.5) == 0
    assert find_active_block_index(blocks, 2.5) == 1


def test_sort_blocks_orders_by_start() -> None:
    """Blocks are ordered by start time."""
    late = TimelineBlock(text="late", start_seconds=4.0, duration_seconds=1.0)
    early = TimelineBlock(text="early", start_seconds=1.0, duration_seconds=1.0)
    assert sort_blocks([late, early]) == (early, late)


def test_block_speed_spreads_text_over_duration() -> None:
    """Each block types out exactly over its own duration."""
    blocks = two_blocks()
    chars_per_second = compute_block_chars_per_second(2, blocks[1].duration_seconds)
    assert chars_per_second == pytest.approx(2.0)

    visible_at = [
        compute_visible_count(frame, 10, chars_per_second, 2, blocks[1].start_seconds)
        for frame in (20, 25, 30)
    ]
    assert visible_at == [0, 1, 2]


def test_block_speed_rejects_empty_block() -> None:
    """A block without characters has no speed."""
    with pytest.raises(RenderValidationError):
        compute_block_chars_per_second(0, 1.0)


def test_gap_example_with_two_second_blocks() -> None:
    """Blocks AB [0, 2] and CD [3, 5]: t=2.5 is a gap, t=1 types AB at 1 cps."""
    blocks = (
        TimelineBlock(text="AB", start_seconds=0.0, duration_seconds=2.0),
        TimelineBlock(text="CD", start_seconds=3.0, duration_seconds=2.0),
    )
    assert find_active_block_index(blocks, 2.5) == NO_ACTIVE_BLOCK
    assert find_active_block_index(blocks, 1.0) == 0
    assert compute_block_chars_per_second(2, blocks[0].duration_seconds) == pytest.approx(1.0)
