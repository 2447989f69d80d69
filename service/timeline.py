"""Timeline sequencing for multi-block renders."""

from __future__ import annotations

from typing import Sequence, Tuple

from domain.typing_video import (
    INVALID_BLOCK_CODE,
    RenderValidationError,
    TimelineBlock,
)

NO_ACTIVE_BLOCK = -1


def sort_blocks(blocks: Sequence[TimelineBlock]) -> Tuple[TimelineBlock, ...]:
    """Order blocks by start time (stable for equal starts)."""
    return tuple(sorted(blocks, key=lambda block: block.start_seconds))


def find_active_block_index(blocks: Sequence[TimelineBlock], time_seconds: float) -> int:
    """Return the first block covering ``time_seconds`` (ends inclusive)."""
    for index_value, block in enumerate(blocks):
        if block.start_seconds <= time_seconds <= block.end_seconds:
            return index_value
    return NO_ACTIVE_BLOCK


def compute_block_chars_per_second(total_chars: int, duration_seconds: float) -> float:
    """Typing speed that spreads a block's text across its full duration."""
    if total_chars <= 0:
        raise RenderValidationError(INVALID_BLOCK_CODE, "timeline block has no characters")
    return total_chars / duration_seconds
