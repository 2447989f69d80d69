"""Domain types and parsing for render_typing_video."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
import re
from typing import Mapping, Sequence, Tuple

INVALID_COLOR_CODE = "render_typing_video.input.invalid_color"
INVALID_CONFIG_CODE = "render_typing_video.input.invalid_config"
INVALID_TIMELINE_CODE = "render_typing_video.input.invalid_timeline"
INVALID_BLOCK_CODE = "render_typing_video.input.invalid_block"
INVALID_COLOR_TAG_CODE = "render_typing_video.input.invalid_color_tag"
EMPTY_TEXT_CODE = "render_typing_video.input.empty_text"
INPUT_FILE_CODE = "render_typing_video.input.file_error"
FONT_DIR_CODE = "render_typing_video.input.fonts_missing"
FONT_LOAD_CODE = "render_typing_video.input.fonts_unloadable"
AUDIO_FILE_CODE = "render_typing_video.input.audio_track"
INVALID_CHOICE_CODE = "render_typing_video.input.invalid_choice"

COLOR_TAG_PATTERN = re.compile(
    r"\[color=(?P<color>#[0-9a-fA-F]{6})\](?P<body>.*?)\[/color\]", re.DOTALL
)
HEX_COLOR_PATTERN = re.compile(r"#([0-9a-fA-F]{6})")

GLITCH_SYMBOLS = "!@#$%^&*<>/?010101XY"
GLITCH_LETTERS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
GLITCH_NUMBERS = "0123456789"
GLITCH_MIXED = GLITCH_LETTERS + GLITCH_NUMBERS + "!@#$%^&*<>/?"

Rgba = Tuple[int, int, int, int]


class RenderValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class AnimationStyle(str, Enum):
    """Per-character reveal styles."""

    DEFAULT = "default"
    TYPEWRITER = "typewriter"
    GLITCH = "glitch"


class GlitchCharset(str, Enum):
    """Replacement alphabets for the glitch style."""

    SYMBOLS = "symbols"
    LETTERS = "letters"
    NUMBERS = "numbers"
    MIXED = "mixed"

    @property
    def characters(self) -> str:
        return GLITCH_CHARSETS[self]


GLITCH_CHARSETS = {
    GlitchCharset.SYMBOLS: GLITCH_SYMBOLS,
    GlitchCharset.LETTERS: GLITCH_LETTERS,
    GlitchCharset.NUMBERS: GLITCH_NUMBERS,
    GlitchCharset.MIXED: GLITCH_MIXED,
}


class TextAlign(str, Enum):
    """Horizontal alignment of lines inside the text block."""

    LEFT = "left"
    CENTER = "center"
    RIGHT = "right"


class ExportFormat(str, Enum):
    """Output flavours; decides background clearing and encoder."""

    MP4 = "mp4"
    MP4_GREEN = "mp4_green"
    MOV_PRORES = "mov_prores"
    WEBM_PREVIEW = "webm_preview"

    @property
    def is_transparent(self) -> bool:
        return self in (ExportFormat.MOV_PRORES, ExportFormat.WEBM_PREVIEW)

    @property
    def is_chroma_key(self) -> bool:
        return self == ExportFormat.MP4_GREEN


class ChromaBlend(str, Enum):
    """Blend mode for the chromatic-aberration layers."""

    AUTO = "auto"
    SCREEN = "screen"
    SOURCE_OVER = "source_over"


@dataclass(frozen=True)
class AnimationConfig:
    """Validated, immutable per-render configuration."""

    width: int
    height: int
    fps: int = 30
    chars_per_second: float = 10.0
    reveal_frames: int = 3
    reveal_offset_px: float = 18.0
    end_hold: float = 1.5
    animation_style: AnimationStyle = AnimationStyle.DEFAULT
    jitter: float = 0.0
    motion_blur: float = 0.0
    blur: float = 0.0
    drop_shadow: float = 0.0
    chroma: float = 0.0
    chroma_opacity: float = 0.5
    chroma_blend: ChromaBlend = ChromaBlend.AUTO
    glitch_charset: GlitchCharset = GlitchCharset.SYMBOLS
    glitch_speed: float = 0.5
    show_cursor: bool = False
    cursor_style: str = "|"
    cursor_speed: float = 1.0
    text_align: TextAlign = TextAlign.LEFT
    text_rgba: Rgba = (255, 255, 255, 255)
    background_rgba: Rgba = (0, 255, 0, 255)
    export_format: ExportFormat = ExportFormat.MP4
    padding_ratio: float = 0.0
    is_preview: bool = False
    font_family: str | None = None
    font_size: int | None = None
    line_height: float = 1.2

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "width and height must be positive"
            )
        if self.fps <= 0:
            raise RenderValidationError(INVALID_CONFIG_CODE, "fps must be positive")
        if self.chars_per_second <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "chars_per_second must be positive"
            )
        if self.reveal_frames < 1:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "reveal_frames must be at least 1"
            )
        if self.end_hold < 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "end_hold must be non-negative"
            )
        if not 0 <= self.motion_blur < 1:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "motion_blur must be in [0, 1)"
            )
        for field_name in ("jitter", "blur", "drop_shadow", "chroma"):
            if getattr(self, field_name) < 0:
                raise RenderValidationError(
                    INVALID_CONFIG_CODE, f"{field_name} must be non-negative"
                )
        if not 0 < self.chroma_opacity <= 1:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "chroma_opacity must be in (0, 1]"
            )
        if self.glitch_speed <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "glitch_speed must be positive"
            )
        if not self.cursor_style:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "cursor_style must be non-empty"
            )
        if self.cursor_speed <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "cursor_speed must be positive"
            )
        if not 0 <= self.padding_ratio < 0.5:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "padding_ratio must be in [0, 0.5)"
            )
        if self.font_size is not None and self.font_size <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "font_size must be positive"
            )
        if self.line_height <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "line_height must be positive"
            )
        for label, rgba in (
            ("text_rgba", self.text_rgba),
            ("background_rgba", self.background_rgba),
        ):
            if len(rgba) != 4:
                raise RenderValidationError(INVALID_CONFIG_CODE, f"{label} is invalid")
            for channel in rgba:
                if channel < 0 or channel > 255:
                    raise RenderValidationError(
                        INVALID_CONFIG_CODE, f"{label} channel out of range"
                    )
        if not isinstance(self.animation_style, AnimationStyle):
            raise RenderValidationError(
                INVALID_CHOICE_CODE, "animation_style is invalid"
            )
        if not isinstance(self.export_format, ExportFormat):
            raise RenderValidationError(INVALID_CHOICE_CODE, "export_format is invalid")

    @property
    def clears_to_transparent(self) -> bool:
        """Return True when frames start from a transparent canvas."""
        return self.export_format.is_transparent


@dataclass(frozen=True)
class Character:
    """One laid-out glyph of the flattened text."""

    index: int
    char: str
    x: float
    y: float
    color_rgba: Rgba | None = None


@dataclass(frozen=True)
class TimelineBlock:
    """A text segment placed on the timeline."""

    text: str
    start_seconds: float
    duration_seconds: float

    def __post_init__(self) -> None:
        if not self.text.strip():
            raise RenderValidationError(
                INVALID_BLOCK_CODE, "timeline block text must be non-empty"
            )
        if self.start_seconds < 0:
            raise RenderValidationError(
                INVALID_BLOCK_CODE, "timeline block start must be non-negative"
            )
        if self.duration_seconds <= 0:
            raise RenderValidationError(
                INVALID_BLOCK_CODE, "timeline block duration must be positive"
            )

    @property
    def end_seconds(self) -> float:
        return self.start_seconds + self.duration_seconds


def parse_choice(enum_type: type[Enum], value: str, label: str) -> Enum:
    """Parse a CLI token into a member of ``enum_type``."""
    normalized = value.strip().lower()
    try:
        return enum_type(normalized)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_type)
        raise RenderValidationError(
            INVALID_CHOICE_CODE, f"invalid {label}: {value!r} (expected {allowed})"
        ) from exc


def parse_hex_color(color_value: str) -> Rgba:
    """Parse a ``#RRGGBB`` token into an opaque RGBA tuple."""
    match_value = HEX_COLOR_PATTERN.fullmatch(color_value.strip())
    if not match_value:
        raise RenderValidationError(
            INVALID_COLOR_CODE, f"invalid color value: {color_value!r}"
        )
    rgb_hex = match_value.group(1)
    return (
        int(rgb_hex[0:2], 16),
        int(rgb_hex[2:4], 16),
        int(rgb_hex[4:6], 16),
        255,
    )


def extract_text_and_colors(raw_text: str) -> Tuple[str, Mapping[int, Rgba]]:
    """Strip inline ``[color=#RRGGBB]...[/color]`` tags.

    Returns the clean text and a mapping from clean-text character index to
    the RGBA override for that character. Tags do not nest; a stray opening
    or closing tag is rejected.
    """
    clean_parts: list[str] = []
    color_map: dict[int, Rgba] = {}
    cursor = 0
    clean_length = 0
    for match in COLOR_TAG_PATTERN.finditer(raw_text):
        before = raw_text[cursor : match.start()]
        clean_parts.append(before)
        clean_length += len(before)
        rgba = parse_hex_color(match.group("color"))
        body = match.group("body")
        if "[color=" in body:
            raise RenderValidationError(
                INVALID_COLOR_TAG_CODE, "color tags cannot be nested"
            )
        for offset in range(len(body)):
            color_map[clean_length + offset] = rgba
        clean_parts.append(body)
        clean_length += len(body)
        cursor = match.end()
    clean_parts.append(raw_text[cursor:])
    clean_text = "".join(clean_parts)
    if "[color=" in clean_text or "[/color]" in clean_text:
        raise RenderValidationError(
            INVALID_COLOR_TAG_CODE, "unbalanced color tag in text"
        )
    return clean_text, color_map


def normalize_input_text(text_value: str) -> str:
    """Drop a BOM and surrounding whitespace; reject empty text."""
    normalized = text_value.replace("\ufeff", "").replace("\r\n", "\n").strip()
    if not normalized:
        raise RenderValidationError(EMPTY_TEXT_CODE, "input text is empty")
    return normalized


def parse_timeline_blocks(json_text: str) -> Tuple[TimelineBlock, ...]:
    """Parse a JSON timeline: a list of ``{"text", "start", "duration"}``."""
    try:
        payload = json.loads(json_text)
    except json.JSONDecodeError as exc:
        raise RenderValidationError(
            INVALID_TIMELINE_CODE, f"timeline is not valid JSON: {exc.msg}"
        ) from exc
    if isinstance(payload, dict):
        payload = payload.get("blocks")
    if not isinstance(payload, list) or not payload:
        raise RenderValidationError(
            INVALID_TIMELINE_CODE, "timeline must contain a non-empty list of blocks"
        )

    blocks: list[TimelineBlock] = []
    for position, entry in enumerate(payload):
        if not isinstance(entry, dict):
            raise RenderValidationError(
                INVALID_TIMELINE_CODE, f"timeline block {position} is not an object"
            )
        text_value = entry.get("text")
        start_value = entry.get("start", entry.get("startTime"))
        duration_value = entry.get("duration")
        if not isinstance(text_value, str):
            raise RenderValidationError(
                INVALID_TIMELINE_CODE, f"timeline block {position} has no text"
            )
        if not _is_number(start_value) or not _is_number(duration_value):
            raise RenderValidationError(
                INVALID_TIMELINE_CODE,
                f"timeline block {position} needs numeric start and duration",
            )
        clean_text, _ = extract_text_and_colors(text_value)
        if not clean_text.strip():
            raise RenderValidationError(
                INVALID_BLOCK_CODE, f"timeline block {position} has no visible text"
            )
        blocks.append(
            TimelineBlock(
                text=text_value,
                start_seconds=float(start_value),
                duration_seconds=float(duration_value),
            )
        )
    return tuple(blocks)


def compute_timeline_end_seconds(blocks: Sequence[TimelineBlock]) -> float:
    """Return the end time of the last-ending block."""
    if not blocks:
        raise RenderValidationError(INVALID_TIMELINE_CODE, "timeline has no blocks")
    return max(block.end_seconds for block in blocks)


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
