"""Tests for reveal clock math."""

from __future__ import annotations

import pytest

from domain.typing_video import RenderValidationError
from service.reveal_clock import (
    compute_reveal_progress,
    compute_single_total_frames,
    compute_start_frame,
    compute_timeline_total_frames,
    compute_visible_count,
    ease_out_cubic,
    is_cursor_visible,
    is_typing_active,
)


def test_single_total_frames_includes_end_hold() -> None:
    """Twenty characters at 10 cps plus a 1.5 s hold at 30 fps."""
    assert compute_single_total_frames(20, 10.0, 1.5, 30) == 105


def test_single_total_frames_rejects_empty_render() -> None:
    """Zero characters and no hold produce no frames."""
    with pytest.raises(RenderValidationError):
        compute_single_total_frames(0, 10.0, 0.0, 30)


def test_timeline_total_frames_rounds_up() -> None:
    """Partial frames are rounded up."""
    assert compute_timeline_total_frames(2.05, 10) == 21
    with pytest.raises(RenderValidationError):
        compute_timeline_total_frames(0.0, 30)


def test_visible_count_grows_and_clamps() -> None:
    """Visible count follows the clock and never exceeds the text."""
    assert compute_visible_count(0, 30, 10.0, 20) == 0
    assert compute_visible_count(15, 30, 10.0, 20) == 5
    assert compute_visible_count(16, 30, 10.0, 20) == 5
    assert compute_visible_count(300, 30, 10.0, 20) == 20


def test_visible_count_is_monotonic() -> None:
    """Visible count never decreases from frame to frame."""
    counts = [compute_visible_count(frame, 30, 7.0, 40) for frame in range(200)]
    assert counts == sorted(counts)


def test_visible_count_respects_start_offset() -> None:
    """Nothing is visible before a block starts."""
    assert compute_visible_count(10, 10, 2.0, 2, start_seconds=2.0) == 0
    assert compute_visible_count(25, 10, 2.0, 2, start_seconds=2.0) == 1
    assert compute_visible_count(30, 10, 2.0, 2, start_seconds=2.0) == 2


def test_start_frame_and_progress() -> None:
    """Progress is measured in reveal-frame units from the start frame."""
    start_frame = compute_start_frame(3, 30, 10.0)
    assert start_frame == pytest.approx(9.0)
    assert compute_reveal_progress(9, 0.0, start_frame, 3) == pytest.approx(0.0)
    assert compute_reveal_progress(12, 0.0, start_frame, 3) == pytest.approx(1.0)
    assert compute_reveal_progress(12, -0.5, start_frame, 3) == pytest.approx(2.5 / 3)
    assert compute_start_frame(0, 10, 2.0, start_seconds=2.0) == pytest.approx(20.0)


def test_ease_out_cubic_endpoints() -> None:
    """Easing starts at 0, ends at 1 and front-loads motion."""
    assert ease_out_cubic(0.0) == 0.0
    assert ease_out_cubic(1.0) == 1.0
    assert ease_out_cubic(0.5) == pytest.approx(0.875)


def test_typing_active_until_last_character_settles() -> None:
    """Typing stays active for reveal_frames after the last start."""
    assert is_typing_active(0, 0, 2, 10, 10.0, 3)
    last_start = compute_start_frame(1, 10, 10.0)
    assert is_typing_active(int(last_start) + 2, 2, 2, 10, 10.0, 3)
    assert not is_typing_active(int(last_start) + 3, 2, 2, 10, 10.0, 3)


def test_cursor_blinks_with_half_period() -> None:
    """At 30 fps and speed 1 the cursor is on for 15 frames, then off."""
    assert all(is_cursor_visible(frame, 30, 1.0) for frame in range(15))
    assert not any(is_cursor_visible(frame, 30, 1.0) for frame in range(15, 30))
    assert is_cursor_visible(30, 30, 1.0)
    assert not is_cursor_visible(8, 30, 2.0)
