"""Tests for per-character reveal states and shake."""

from __future__ import annotations

import math
import random

import pytest

from domain.typing_video import GLITCH_SYMBOLS, AnimationStyle, GlitchCharset
from service.reveal_clock import compute_reveal_progress, compute_start_frame, ease_out_cubic
from service.reveal_state import (
    CharacterDrawState,
    ShakeEngine,
    compute_motion_samples,
    compute_sample_offsets,
    glitch_substitution,
    resolve_character_state,
    should_draw,
    was_fully_revealed,
)


def resolve(style: AnimationStyle, char_index: int, visible_count: int, progress: float) -> CharacterDrawState:
    """Resolve a state for the letter ``x`` with default effect settings."""
    return resolve_character_state(
        style,
        char_index,
        "x",
        visible_count,
        progress,
        frame_index=7,
        reveal_offset_px=18.0,
        glitch_charset=GlitchCharset.SYMBOLS,
        glitch_speed=0.5,
    )


def test_default_style_hides_unrevealed_characters() -> None:
    """Characters at or beyond the visible count stay hidden."""
    assert resolve(AnimationStyle.DEFAULT, 3, 3, 5.0).opacity == 0.0


def test_default_style_eases_newest_character() -> None:
    """The newest visible character fades and slides in."""
    state = resolve(AnimationStyle.DEFAULT, 2, 3, 0.5)
    assert state.opacity == pytest.approx(0.875)
    assert state.x_offset == pytest.approx(18.0 * 0.125)
    assert state.glyph == "x"

    assert resolve(AnimationStyle.DEFAULT, 2, 3, 0.0).opacity == 0.0
    settled = resolve(AnimationStyle.DEFAULT, 2, 3, 1.0)
    assert (settled.opacity, settled.x_offset) == (1.0, 0.0)


def test_default_style_shows_older_characters_fully() -> None:
    """Earlier characters are fully opaque regardless of progress."""
    state = resolve(AnimationStyle.DEFAULT, 0, 3, 0.2)
    assert (state.opacity, state.x_offset) == (1.0, 0.0)


def test_typewriter_style_is_binary() -> None:
    """Typewriter characters pop in once progress passes zero."""
    assert resolve(AnimationStyle.TYPEWRITER, 0, 0, 0.0).opacity == 0.0
    assert resolve(AnimationStyle.TYPEWRITER, 0, 0, 0.01).opacity == 1.0


def test_glitch_style_phases() -> None:
    """Glitch characters lead, scramble, then settle on the real glyph."""
    assert resolve(AnimationStyle.GLITCH, 0, 0, -1.0).opacity == 0.0

    scrambled = resolve(AnimationStyle.GLITCH, 0, 0, 0.0)
    assert scrambled.opacity == 1.0
    assert scrambled.glyph in GLITCH_SYMBOLS
    assert abs(scrambled.x_offset) <= 3.0

    settled = resolve(AnimationStyle.GLITCH, 0, 0, 1.6)
    assert (settled.glyph, settled.x_offset, settled.opacity) == ("x", 0.0, 1.0)


def test_glitch_substitution_is_deterministic() -> None:
    """The same frame and index always give the same glyph and offset."""
    first = glitch_substitution(12, 4, 0.5, GlitchCharset.NUMBERS)
    second = glitch_substitution(12, 4, 0.5, GlitchCharset.NUMBERS)
    assert first == second
    assert first[0] in GlitchCharset.NUMBERS.characters


def test_glitch_substitution_stays_in_charset() -> None:
    """Every substituted glyph comes from the selected alphabet."""
    for frame_index in range(60):
        for char_index in range(8):
            glyph, x_offset = glitch_substitution(
                frame_index, char_index, 0.7, GlitchCharset.LETTERS
            )
            assert glyph in GlitchCharset.LETTERS.characters
            assert -3.0 <= x_offset <= 3.0


def test_should_draw_skips_faint_and_blank_glyphs() -> None:
    """Near-transparent samples and whitespace are skipped."""
    assert should_draw(CharacterDrawState(opacity=1.0, x_offset=0.0, glyph="a"))
    assert not should_draw(CharacterDrawState(opacity=0.005, x_offset=0.0, glyph="a"))
    assert not should_draw(CharacterDrawState(opacity=1.0, x_offset=0.0, glyph=" "))


def test_shake_disabled_without_jitter() -> None:
    """Zero jitter never offsets the text."""
    engine = ShakeEngine(0.0, random.Random(1))
    for _ in range(10):
        assert engine.advance(True, 3) == (0.0, 0.0)


def test_shake_rearms_and_decays() -> None:
    """A new character re-arms trauma, which then decays to rest."""
    engine = ShakeEngine(10.0, random.Random(3))
    offset_x, offset_y = engine.advance(True, 1)
    assert engine.trauma == 10.0
    assert abs(offset_x) <= 10.0 and abs(offset_y) <= 10.0

    engine.advance(False, 1)
    assert engine.trauma == pytest.approx(9.0)

    offsets = [engine.advance(False, 1) for _ in range(40)]
    assert offsets[-1] == (0.0, 0.0)
    assert engine.trauma <= 0.5


def test_shake_ignores_empty_reveal() -> None:
    """A count change to zero does not re-arm trauma."""
    engine = ShakeEngine(10.0, random.Random(3))
    assert engine.advance(True, 0) == (0.0, 0.0)
    assert engine.trauma == 0.0


def test_shake_is_reproducible_with_seeded_rng() -> None:
    """Same seed, same offsets."""
    first = ShakeEngine(6.0, random.Random(11))
    second = ShakeEngine(6.0, random.Random(11))
    for visible_count in range(1, 6):
        assert first.advance(True, visible_count) == second.advance(True, visible_count)


def test_motion_samples_scale_with_blur() -> None:
    """No blur means one sample; small blur still uses two."""
    assert compute_motion_samples(0.0) == 1
    assert compute_motion_samples(0.01) == 2
    assert compute_motion_samples(0.5) == 20


def test_sample_offsets_span_previous_frame() -> None:
    """Offsets start at the current frame and step back evenly."""
    assert compute_sample_offsets(1) == (0.0,)
    assert compute_sample_offsets(4) == (0.0, -0.25, -0.5, -0.75)


def test_was_fully_revealed_uses_previous_frame() -> None:
    """A character counts as settled once it was settled a frame ago."""
    assert not was_fully_revealed(3, 0.0, 3)
    assert was_fully_revealed(4, 0.0, 3)


def test_default_style_settles_after_reveal_frames() -> None:
    """Once reveal_frames have passed, the newest character is fully settled."""
    start_frame = compute_start_frame(4, 30, 10.0)
    for frame_index in range(math.ceil(start_frame) + 3, math.ceil(start_frame) + 30):
        progress = compute_reveal_progress(frame_index, 0.0, start_frame, 3)
        state = resolve(AnimationStyle.DEFAULT, 4, 5, progress)
        assert (state.opacity, state.x_offset) == (1.0, 0.0)


def test_ease_out_cubic_is_monotonic() -> None:
    """Easing never decreases on [0, 1]."""
    samples = [ease_out_cubic(step / 100) for step in range(101)]
    assert samples == sorted(samples)
