"""Frame-time math for the typing reveal."""

from __future__ import annotations

import math

from domain.typing_video import INVALID_CONFIG_CODE, RenderValidationError


def compute_visible_count(
    frame_index: int,
    fps: int,
    chars_per_second: float,
    total_chars: int,
    start_seconds: float = 0.0,
) -> int:
    """Return how many characters are visible at ``frame_index``.

    ``start_seconds`` shifts the clock origin for timeline blocks; before
    the origin no character is visible.
    """
    elapsed = frame_index / fps - start_seconds
    return max(0, int(math.floor(min(total_chars, elapsed * chars_per_second))))


def compute_start_frame(
    char_index: int,
    fps: int,
    chars_per_second: float,
    start_seconds: float = 0.0,
) -> float:
    """Return the (fractional) frame at which a character is scheduled."""
    return (char_index / chars_per_second) * fps + start_seconds * fps


def compute_reveal_progress(
    frame_index: int,
    sub_sample_offset: float,
    start_frame: float,
    reveal_frames: int,
) -> float:
    """Return reveal progress in units of ``reveal_frames``."""
    return (frame_index + sub_sample_offset - start_frame) / reveal_frames


def ease_out_cubic(value: float) -> float:
    """Cubic ease-out on [0, 1]."""
    return 1 - (1 - value) ** 3


def compute_single_total_frames(
    total_chars: int, chars_per_second: float, end_hold: float, fps: int
) -> int:
    """Total frames for a single block: type-out time plus the end hold."""
    total_frames = int(math.ceil(((total_chars / chars_per_second) + end_hold) * fps))
    if total_frames <= 0:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "text and end hold produce zero frames"
        )
    return total_frames


def compute_timeline_total_frames(total_duration: float, fps: int) -> int:
    """Total frames for a timeline render of ``total_duration`` seconds."""
    total_frames = int(math.ceil(total_duration * fps))
    if total_frames <= 0:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "duration and fps produce zero frames"
        )
    return total_frames


def is_typing_active(
    frame_index: int,
    visible_count: int,
    total_chars: int,
    fps: int,
    chars_per_second: float,
    reveal_frames: int,
    start_seconds: float = 0.0,
) -> bool:
    """Return True while characters are still appearing or settling."""
    if visible_count < total_chars:
        return True
    last_start = compute_start_frame(
        total_chars - 1, fps, chars_per_second, start_seconds
    )
    return frame_index - last_start < reveal_frames


def is_cursor_visible(frame_index: int, fps: int, cursor_speed: float) -> bool:
    """Blink phase: on for ``fps / (2 * cursor_speed)`` frames, then off."""
    half_period = fps / (2 * cursor_speed)
    return int(math.floor(frame_index / half_period)) % 2 == 0
