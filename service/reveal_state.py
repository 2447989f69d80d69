"""Per-character reveal states, shake trauma and motion-blur sampling."""

from __future__ import annotations

from dataclasses import dataclass
import math
import random
from typing import Tuple

from domain.typing_video import AnimationStyle, GlitchCharset
from service.reveal_clock import ease_out_cubic

MIN_DRAW_OPACITY = 0.01
GLITCH_INDEX_SCATTER = 13.37
GLITCH_SEED_SCALE = 10000.0
GLITCH_MAX_OFFSET_PX = 6.0
GLITCH_HOLD_PROGRESS = 1.5
GLITCH_LEAD_PROGRESS = -1.0
SHAKE_DECAY = 0.9
SHAKE_THRESHOLD = 0.5
MOTION_SAMPLES_PER_UNIT = 40
MIN_MOTION_SAMPLES = 2


@dataclass(frozen=True)
class CharacterDrawState:
    """Resolved draw parameters for one character in one sample."""

    opacity: float
    x_offset: float
    glyph: str


def _fraction(value: float) -> float:
    return value - math.floor(value)


def glitch_substitution(
    frame_index: int,
    char_index: int,
    glitch_speed: float,
    charset: GlitchCharset,
) -> Tuple[str, float]:
    """Return the substituted glyph and its horizontal jitter.

    Pure function of its arguments: the pseudo-random pair is derived from
    ``sin``/``cos`` of an integer phase, so renders are reproducible.
    """
    phase = math.floor(frame_index * glitch_speed + char_index * GLITCH_INDEX_SCATTER)
    seed_primary = _fraction(math.sin(phase) * GLITCH_SEED_SCALE)
    seed_secondary = _fraction(math.cos(phase) * GLITCH_SEED_SCALE)
    characters = charset.characters
    glyph_index = min(len(characters) - 1, int(math.floor(seed_primary * len(characters))))
    x_offset = (seed_secondary - 0.5) * GLITCH_MAX_OFFSET_PX
    return characters[glyph_index], x_offset


def resolve_character_state(
    style: AnimationStyle,
    char_index: int,
    char: str,
    visible_count: int,
    progress: float,
    frame_index: int,
    reveal_offset_px: float,
    glitch_charset: GlitchCharset,
    glitch_speed: float,
) -> CharacterDrawState:
    """Resolve opacity, offset and glyph for a character."""
    if style == AnimationStyle.DEFAULT:
        if char_index >= visible_count:
            return CharacterDrawState(opacity=0.0, x_offset=0.0, glyph=char)
        if char_index == visible_count - 1:
            if progress <= 0:
                return CharacterDrawState(opacity=0.0, x_offset=0.0, glyph=char)
            if progress < 1:
                eased = ease_out_cubic(progress)
                return CharacterDrawState(
                    opacity=eased,
                    x_offset=reveal_offset_px * (1 - eased),
                    glyph=char,
                )
        return CharacterDrawState(opacity=1.0, x_offset=0.0, glyph=char)

    if style == AnimationStyle.TYPEWRITER:
        opacity = 0.0 if progress <= 0 else 1.0
        return CharacterDrawState(opacity=opacity, x_offset=0.0, glyph=char)

    if style == AnimationStyle.GLITCH:
        if progress <= GLITCH_LEAD_PROGRESS:
            return CharacterDrawState(opacity=0.0, x_offset=0.0, glyph=char)
        if progress <= GLITCH_HOLD_PROGRESS:
            glyph, x_offset = glitch_substitution(
                frame_index, char_index, glitch_speed, glitch_charset
            )
            return CharacterDrawState(opacity=1.0, x_offset=x_offset, glyph=glyph)
        return CharacterDrawState(opacity=1.0, x_offset=0.0, glyph=char)

    raise ValueError(f"unsupported animation style: {style!r}")


def should_draw(state: CharacterDrawState) -> bool:
    """Skip invisible samples and whitespace glyphs."""
    return state.opacity > MIN_DRAW_OPACITY and bool(state.glyph.strip())


class ShakeEngine:
    """Exponentially decaying trauma driving a per-frame text offset."""

    def __init__(self, jitter: float, rng: random.Random) -> None:
        self.jitter = jitter
        self.trauma = 0.0
        self._rng = rng

    def advance(self, visible_count_changed: bool, visible_count: int) -> Tuple[float, float]:
        """Decay, re-arm on a newly revealed character, and return (dx, dy)."""
        self.trauma *= SHAKE_DECAY
        if visible_count_changed and visible_count > 0 and self.jitter > 0:
            self.trauma = self.jitter
        if self.trauma <= SHAKE_THRESHOLD:
            return (0.0, 0.0)
        offset_x = (self._rng.random() - 0.5) * self.trauma * 2
        offset_y = (self._rng.random() - 0.5) * self.trauma * 2
        return (offset_x, offset_y)


def compute_motion_samples(motion_blur: float) -> int:
    """Number of sub-samples per output frame (1 when blur is off)."""
    if motion_blur <= 0:
        return 1
    return max(MIN_MOTION_SAMPLES, int(math.floor(motion_blur * MOTION_SAMPLES_PER_UNIT)))


def compute_sample_offsets(sample_count: int) -> Tuple[float, ...]:
    """Sub-frame offsets in [-1, 0], newest sample first."""
    return tuple(-(sample / sample_count) for sample in range(sample_count))


def was_fully_revealed(frame_index: int, start_frame: float, reveal_frames: int) -> bool:
    """Return True when the character had settled by the previous frame."""
    return ((frame_index - 1) - start_frame) / reveal_frames >= 1
