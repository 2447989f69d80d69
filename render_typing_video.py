#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1",
#   "numpy>=1.26"
# ]
# ///
"""Render a typing-reveal text animation into a video through ffmpeg."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import math
import os
import random
import re
import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Mapping, Protocol, Sequence, Tuple

import numpy as np
from PIL import Image, ImageColor, ImageDraw, ImageFilter, ImageFont

from domain.typing_video import (
    AUDIO_FILE_CODE,
    EMPTY_TEXT_CODE,
    FONT_DIR_CODE,
    FONT_LOAD_CODE,
    INPUT_FILE_CODE,
    INVALID_COLOR_CODE,
    INVALID_CONFIG_CODE,
    AnimationConfig,
    AnimationStyle,
    Character,
    ChromaBlend,
    ExportFormat,
    GlitchCharset,
    Rgba,
    RenderValidationError,
    TextAlign,
    TimelineBlock,
    compute_timeline_end_seconds,
    extract_text_and_colors,
    normalize_input_text,
    parse_choice,
    parse_timeline_blocks,
)
from service.reveal_clock import (
    compute_reveal_progress,
    compute_single_total_frames,
    compute_start_frame,
    compute_timeline_total_frames,
    compute_visible_count,
    is_cursor_visible,
    is_typing_active,
)
from service.reveal_state import (
    ShakeEngine,
    compute_motion_samples,
    compute_sample_offsets,
    resolve_character_state,
    should_draw,
    was_fully_revealed,
)
from service.timeline import (
    NO_ACTIVE_BLOCK,
    compute_block_chars_per_second,
    find_active_block_index,
    sort_blocks,
)

LOGGER = logging.getLogger("render_typing_video")

FFMPEG_NOT_FOUND_CODE = "render_typing_video.ffmpeg.not_found"
FFMPEG_EXEC_CODE = "render_typing_video.ffmpeg.exec_error"
FFMPEG_UNSUPPORTED_CODE = "render_typing_video.ffmpeg.unsupported"
FFMPEG_PROCESS_CODE = "render_typing_video.ffmpeg.process_failed"
FFMPEG_PROBE_CODE = "render_typing_video.ffmpeg.probe_error"
PIPE_WRITE_CODE = "render_typing_video.pipe.write_failed"

PRORES_PROFILE = "4444"
PRORES_PIXEL_FORMAT = "yuva444p10le"
PRORES_QSCALE_BASE = 15
PRORES_QSCALE_MAX = 28
PRORES_QSCALE_REFERENCE_PIXELS = 1920 * 1080
PRORES_ALPHA_BITS = "8"
H264_CODEC = "libx264"
H264_PIXEL_FORMAT = "yuv420p"
H264_CRF = "18"
H264_PRESET = "veryfast"
VP9_CODEC = "libvpx-vp9"
VP9_PIXEL_FORMAT = "yuva420p"
VP9_CRF = "32"
VP9_DEADLINE = "realtime"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
AUDIO_PAD_FILTER = "apad"

YIELD_EVERY_FRAMES = 10
EARLY_EXIT_WAIT_SECONDS = 5.0
PREVIEW_MAX_DIMENSION = 500
LAYOUT_MARGIN_RATIO = 0.08
FONT_SIZE_MIN = 8
DEFAULT_FONT_FAMILY = "default"
SHADOW_ALPHA = 204
WHITE_RGB = (255, 255, 255)
BLACK_RGB = (0, 0, 0)
CHROMA_RED_RGB = (255, 0, 0)
CHROMA_BLUE_RGB = (0, 0, 255)
DEFAULT_OUTPUT_STEM = "typing_video"
UNSAFE_FILENAME_PATTERN = re.compile(r"[^a-zA-Zа-яА-ЯёЁ0-9_-]")


class RenderPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class EncoderExitError(RenderPipelineError):
    """The encoder exited with a non-zero status."""

    def __init__(self, return_code: int, stderr_text: str) -> None:
        super().__init__(
            FFMPEG_PROCESS_CODE,
            f"ffmpeg failed with exit code {return_code}. {stderr_text}".strip(),
        )
        self.return_code = return_code
        self.stderr_text = stderr_text


class FrameWriter(Protocol):
    """Byte sink with asyncio ``StreamWriter`` backpressure semantics."""

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


@dataclass(frozen=True)
class VideoEncodingSpec:
    """Encoder settings for an output flavour."""

    codec: str
    pix_fmt: str
    args_builder: Callable[[int, int], Tuple[str, ...]]
    encoder_name: str
    alpha_bits: str | None
    extension: str


@dataclass(frozen=True)
class CanvasGeometry:
    """Canvas size, including safe-zone margins around the text area."""

    width: int
    height: int
    margin_x: int
    margin_y: int
    inner_width: int
    inner_height: int


@dataclass(frozen=True)
class LayoutLine:
    """One wrapped line; ``start_index`` points into the clean text."""

    text: str
    start_index: int
    width: float


@dataclass(frozen=True)
class TextLayout:
    """Result of fitting text into the canvas."""

    font_size: int
    lines: Tuple[LayoutLine, ...]
    block_width: float
    block_height: float
    line_advance: float


@dataclass(frozen=True)
class GlyphSprite:
    """Opaque glyph image plus the offset of its box from the draw point."""

    image: Image.Image
    offset: Tuple[int, int]


@dataclass(frozen=True)
class GlyphDraw:
    """A glyph to composite for the current frame."""

    glyph: str
    x: float
    y: float
    opacity: float
    color_rgba: Rgba | None


@dataclass(frozen=True)
class RevealSegment:
    """Text revealed on one clock: the whole clip or one timeline block."""

    text: str
    color_map: Mapping[int, Rgba]
    chars_per_second: float
    start_seconds: float

    @property
    def total_chars(self) -> int:
        return len(self.text)

    def start_frame(self, char_index: int, fps: int) -> float:
        return compute_start_frame(
            char_index, fps, self.chars_per_second, self.start_seconds
        )


@dataclass
class FrameState:
    """Mutable per-render state; discarded when the render ends."""

    shake: ShakeEngine
    frame_index: int = 0
    visible_count: int = 0
    last_visible_count: int = -1
    active_block_index: int = NO_ACTIVE_BLOCK
    history: Image.Image | None = None
    layout: TextLayout | None = None
    font: ImageFont.FreeTypeFont | None = None
    origin: Tuple[float, float] = (0.0, 0.0)
    characters: Tuple[Character, ...] = ()


@dataclass
class FontRegistry:
    """Font families registered at most once per process."""

    families: dict[str, str] = field(default_factory=dict)
    scanned_dirs: set[str] = field(default_factory=set)
    fonts: dict[Tuple[str, int], ImageFont.FreeTypeFont] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def register_dir(self, fonts_dir: str) -> None:
        """Register every loadable font file of ``fonts_dir`` by file stem."""
        normalized = os.path.abspath(fonts_dir)
        with self.lock:
            if normalized in self.scanned_dirs:
                return
            for font_file_path in filter_loadable_fonts(list_font_files(normalized)):
                family = os.path.splitext(os.path.basename(font_file_path))[0]
                if family in self.families:
                    continue
                self.families[family] = font_file_path
                LOGGER.debug("registered font family %s from %s", family, font_file_path)
            self.scanned_dirs.add(normalized)

    def load_font(self, family: str | None, font_size: int) -> ImageFont.FreeTypeFont:
        """Load a font and cache it by family and size."""
        family_name = family or DEFAULT_FONT_FAMILY
        cache_key = (family_name, font_size)
        cached_font = self.fonts.get(cache_key)
        if cached_font is not None:
            return cached_font
        if family_name == DEFAULT_FONT_FAMILY:
            font = ImageFont.load_default(size=font_size)
        else:
            font_file_path = self.families.get(family_name)
            if font_file_path is None:
                raise RenderValidationError(
                    FONT_LOAD_CODE, f"font family is not registered: {family_name}"
                )
            try:
                font = ImageFont.truetype(
                    font_file_path, size=font_size, layout_engine=ImageFont.Layout.BASIC
                )
            except Exception as exc:
                raise RenderValidationError(
                    FONT_LOAD_CODE,
                    f"failed to load font {font_file_path} at size {font_size}",
                ) from exc
        with self.lock:
            self.fonts.setdefault(cache_key, font)
        return font


_FONT_REGISTRY: FontRegistry | None = None
_FONT_REGISTRY_LOCK = threading.Lock()


def ensure_fonts_loaded(fonts_dir: str | None = None) -> FontRegistry:
    """Return the process-wide font registry, creating it on first use."""
    global _FONT_REGISTRY
    with _FONT_REGISTRY_LOCK:
        if _FONT_REGISTRY is None:
            _FONT_REGISTRY = FontRegistry()
        registry = _FONT_REGISTRY
    if fonts_dir is not None:
        registry.register_dir(fonts_dir)
    return registry


def reset_font_registry() -> None:
    """Forget registered fonts (tests only)."""
    global _FONT_REGISTRY
    with _FONT_REGISTRY_LOCK:
        _FONT_REGISTRY = None


def configure_logging() -> None:
    """Configure logging for CLI output."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def parse_color_to_rgba(color_value: str) -> Rgba:
    """Parse ``transparent``, ``#RRGGBB``, CSS names or ``rgb()`` into RGBA."""
    normalized = color_value.strip()
    if normalized.lower() == "transparent":
        return (0, 0, 0, 0)
    try:
        channels = ImageColor.getrgb(normalized)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_COLOR_CODE, f"invalid color value: {color_value!r}"
        ) from exc
    if len(channels) == 3:
        return (channels[0], channels[1], channels[2], 255)
    return (channels[0], channels[1], channels[2], channels[3])


def ensure_ffmpeg_available() -> None:
    """Ensure ffmpeg is installed and executable."""
    ffmpeg_path = shutil.which("ffmpeg")
    if not ffmpeg_path:
        raise RenderPipelineError(FFMPEG_NOT_FOUND_CODE, "ffmpeg not on PATH")
    try:
        subprocess.run(
            [ffmpeg_path, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except Exception as exc:
        raise RenderPipelineError(
            FFMPEG_EXEC_CODE, "ffmpeg exists but could not be executed"
        ) from exc


def ensure_ffprobe_available() -> None:
    """Ensure ffprobe is installed and executable."""
    ffprobe_path = shutil.which("ffprobe")
    if not ffprobe_path:
        raise RenderPipelineError(FFMPEG_NOT_FOUND_CODE, "ffprobe not on PATH")
    try:
        subprocess.run(
            [ffprobe_path, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except Exception as exc:
        raise RenderPipelineError(
            FFMPEG_EXEC_CODE, "ffprobe exists but could not be executed"
        ) from exc


def read_utf8_text_strict(file_path: str) -> str:
    """Read a UTF-8 file with strict decoding."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise RenderValidationError(
            INPUT_FILE_CODE, f"input file not found: {file_path}"
        ) from exc

    try:
        return file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise RenderValidationError(
            INPUT_FILE_CODE,
            f"input file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc


def get_audio_duration_seconds(audio_path: str) -> float:
    """Return the audio duration in seconds for the provided file."""
    if not os.path.isfile(audio_path):
        raise RenderValidationError(
            AUDIO_FILE_CODE, f"audio track not found: {audio_path}"
        )
    ensure_ffprobe_available()
    result = subprocess.run(
        [
            "ffprobe",
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            audio_path,
        ],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        stderr_text = result.stderr.strip()
        raise RenderPipelineError(
            FFMPEG_PROBE_CODE,
            f"ffprobe failed for audio track: {stderr_text}",
        )
    try:
        duration_seconds = float(result.stdout.strip())
    except ValueError as exc:
        raise RenderValidationError(
            AUDIO_FILE_CODE, f"audio track duration unavailable: {audio_path}"
        ) from exc
    if duration_seconds <= 0:
        raise RenderValidationError(
            AUDIO_FILE_CODE, f"audio track duration invalid: {audio_path}"
        )
    return duration_seconds


def list_font_files(fonts_dir: str) -> list[str]:
    """List font files from the fonts directory."""
    if not os.path.isdir(fonts_dir):
        raise RenderValidationError(
            FONT_DIR_CODE, f"fonts directory does not exist: {fonts_dir}"
        )

    font_files: list[str] = []
    for entry_name in sorted(os.listdir(fonts_dir)):
        lower_name = entry_name.lower()
        if lower_name.endswith(".ttf") or lower_name.endswith(".otf"):
            font_files.append(os.path.join(fonts_dir, entry_name))

    if not font_files:
        raise RenderValidationError(
            FONT_DIR_CODE,
            f"no font files found in {fonts_dir}",
        )
    return font_files


def filter_loadable_fonts(font_files: Sequence[str], sample_size: int = 24) -> list[str]:
    """Filter font files to those loadable at the sample size."""
    loadable_fonts: list[str] = []
    for font_file_path in font_files:
        try:
            ImageFont.truetype(
                font_file_path, size=sample_size, layout_engine=ImageFont.Layout.BASIC
            )
        except Exception as exc:
            LOGGER.warning(
                "%s: skipped font %s (%s)",
                FONT_LOAD_CODE,
                font_file_path,
                str(exc).strip(),
            )
            continue
        loadable_fonts.append(font_file_path)

    if not loadable_fonts:
        raise RenderValidationError(
            FONT_LOAD_CODE, "failed to load any fonts from fonts directory"
        )

    return loadable_fonts


def compute_canvas_geometry(config: AnimationConfig) -> CanvasGeometry:
    """Compute the frame size, capping previews and padding exports."""
    inner_width = config.width
    inner_height = config.height
    if config.is_preview:
        inner_width = min(inner_width, PREVIEW_MAX_DIMENSION)
        inner_height = min(inner_height, PREVIEW_MAX_DIMENSION)
    margin_x = 0
    margin_y = 0
    if config.padding_ratio > 0 and not config.is_preview:
        margin_x = int(round(inner_width * config.padding_ratio))
        margin_y = int(round(inner_height * config.padding_ratio))
    return CanvasGeometry(
        width=inner_width + margin_x * 2,
        height=inner_height + margin_y * 2,
        margin_x=margin_x,
        margin_y=margin_y,
        inner_width=inner_width,
        inner_height=inner_height,
    )


def measure_text_width(font: ImageFont.FreeTypeFont, text_value: str) -> float:
    """Measure the advance width of text using font metrics."""
    if not text_value:
        return 0.0
    return float(font.getlength(text_value))


def wrap_paragraph(
    paragraph: str,
    start_index: int,
    font: ImageFont.FreeTypeFont,
    max_width: float,
) -> list[LayoutLine]:
    """Greedily wrap one paragraph at spaces.

    Spaces consumed by a break are not part of any line; the trailing spaces
    of the final line are kept so the cursor can advance past them.
    """
    words = list(re.finditer(r"\S+", paragraph))
    if not words:
        return [LayoutLine(text=paragraph, start_index=start_index, width=0.0)]

    lines: list[LayoutLine] = []
    line_start = 0
    line_end = words[0].end()
    for word in words[1:]:
        candidate = paragraph[line_start : word.end()]
        if measure_text_width(font, candidate) <= max_width:
            line_end = word.end()
            continue
        line_text = paragraph[line_start:line_end]
        lines.append(
            LayoutLine(
                text=line_text,
                start_index=start_index + line_start,
                width=measure_text_width(font, line_text),
            )
        )
        line_start = word.start()
        line_end = word.end()

    line_text = paragraph[line_start:]
    lines.append(
        LayoutLine(
            text=line_text,
            start_index=start_index + line_start,
            width=measure_text_width(font, line_text.rstrip()),
        )
    )
    return lines


def wrap_text_lines(
    text_value: str, font: ImageFont.FreeTypeFont, max_width: float
) -> Tuple[LayoutLine, ...]:
    """Split on explicit newlines, then wrap each paragraph."""
    if not text_value:
        return ()
    lines: list[LayoutLine] = []
    paragraph_start = 0
    for paragraph in text_value.split("\n"):
        lines.extend(wrap_paragraph(paragraph, paragraph_start, font, max_width))
        paragraph_start += len(paragraph) + 1
    return tuple(lines)


def fit_font_size(
    text_value: str,
    family: str | None,
    fonts: FontRegistry,
    max_width: float,
    max_height: float,
    line_height: float,
) -> int:
    """Return the largest font size whose wrapped text fits the box."""
    fit_text = text_value if text_value.strip() else "M"
    low_size = FONT_SIZE_MIN
    high_size = max(FONT_SIZE_MIN, int(max_height))
    best_size = FONT_SIZE_MIN
    while low_size <= high_size:
        candidate_size = (low_size + high_size) // 2
        font = fonts.load_font(family, candidate_size)
        lines = wrap_text_lines(fit_text, font, max_width)
        block_width = max(line.width for line in lines)
        block_height = len(lines) * candidate_size * line_height
        if block_width <= max_width and block_height <= max_height:
            best_size = candidate_size
            low_size = candidate_size + 1
        else:
            high_size = candidate_size - 1
    return best_size


def compute_layout(
    text_value: str,
    config: AnimationConfig,
    geometry: CanvasGeometry,
    fonts: FontRegistry,
) -> TextLayout:
    """Fit and wrap text inside the inner canvas area."""
    max_width = geometry.inner_width * (1 - 2 * LAYOUT_MARGIN_RATIO)
    max_height = geometry.inner_height * (1 - 2 * LAYOUT_MARGIN_RATIO)
    if config.font_size is not None:
        font_size = config.font_size
    else:
        font_size = fit_font_size(
            text_value,
            config.font_family,
            fonts,
            max_width,
            max_height,
            config.line_height,
        )
    font = fonts.load_font(config.font_family, font_size)
    lines = wrap_text_lines(text_value, font, max_width)
    line_advance = font_size * config.line_height
    block_width = max((line.width for line in lines), default=0.0)
    return TextLayout(
        font_size=font_size,
        lines=lines,
        block_width=block_width,
        block_height=len(lines) * line_advance,
        line_advance=line_advance,
    )


def compute_line_x(
    origin_x: float, block_width: float, line: LayoutLine, text_align: TextAlign
) -> float:
    if text_align == TextAlign.CENTER:
        return origin_x + (block_width - line.width) / 2.0
    if text_align == TextAlign.RIGHT:
        return origin_x + block_width - line.width
    return origin_x


def flatten_character_positions(
    lines: Sequence[LayoutLine],
    origin_x: float,
    origin_y: float,
    font: ImageFont.FreeTypeFont,
    line_advance: float,
    block_width: float,
    text_align: TextAlign,
    color_map: Mapping[int, Rgba],
) -> Tuple[Character, ...]:
    """Place every character of the wrapped lines in canvas space."""
    characters: list[Character] = []
    for line_number, line in enumerate(lines):
        line_x = compute_line_x(origin_x, block_width, line, text_align)
        line_y = origin_y + line_number * line_advance
        for offset, character in enumerate(line.text):
            char_index = line.start_index + offset
            characters.append(
                Character(
                    index=char_index,
                    char=character,
                    x=line_x + measure_text_width(font, line.text[:offset]),
                    y=line_y,
                    color_rgba=color_map.get(char_index),
                )
            )
    return tuple(characters)


def render_glyph_sprite(
    glyph: str,
    font: ImageFont.FreeTypeFont,
    color_rgb: Tuple[int, int, int],
    draw_context: ImageDraw.ImageDraw,
) -> GlyphSprite:
    """Render a glyph into an RGBA sprite aligned to its bounding box."""
    left, top, right, bottom = draw_context.textbbox(
        (0, 0), glyph, font=font, anchor="la"
    )
    sprite_width = max(1, right - left)
    sprite_height = max(1, bottom - top)
    sprite = Image.new("RGBA", (sprite_width, sprite_height), (0, 0, 0, 0))
    sprite_draw = ImageDraw.Draw(sprite)
    sprite_draw.text(
        (-left, -top), glyph, font=font, fill=color_rgb + (255,), anchor="la"
    )
    return GlyphSprite(image=sprite, offset=(left, top))


def apply_opacity(image: Image.Image, opacity: float) -> Image.Image:
    """Return a copy of an RGBA image with its alpha scaled by ``opacity``."""
    if opacity >= 1.0:
        return image
    pixels = np.array(image, dtype=np.uint8)
    alpha = pixels[..., 3].astype(np.float32) * max(0.0, opacity)
    pixels[..., 3] = np.rint(alpha).astype(np.uint8)
    return Image.fromarray(pixels)


def composite_sprite(
    layer: Image.Image, sprite: GlyphSprite, x_value: float, y_value: float, opacity: float
) -> None:
    """Alpha-composite a sprite onto a layer, clipping at the layer edges."""
    left = int(round(x_value)) + sprite.offset[0]
    top = int(round(y_value)) + sprite.offset[1]
    clip_left = max(0, -left)
    clip_top = max(0, -top)
    clip_right = min(sprite.image.width, layer.width - left)
    clip_bottom = min(sprite.image.height, layer.height - top)
    if clip_right <= clip_left or clip_bottom <= clip_top:
        return
    piece = sprite.image
    if (clip_left, clip_top, clip_right, clip_bottom) != (0, 0) + piece.size:
        piece = piece.crop((clip_left, clip_top, clip_right, clip_bottom))
    layer.alpha_composite(
        apply_opacity(piece, opacity), dest=(left + clip_left, top + clip_top)
    )


def blend_with_opacity(
    base: Image.Image, overlay: Image.Image, opacity: float
) -> Image.Image:
    """Source-over blend of ``overlay`` at a global alpha."""
    return Image.alpha_composite(base, apply_opacity(overlay, opacity))


def blend_screen(base: Image.Image, overlay: Image.Image) -> Image.Image:
    """Screen-blend ``overlay`` onto ``base`` with source-over alpha."""
    base_pixels = np.asarray(base, dtype=np.float32) / 255.0
    overlay_pixels = np.asarray(overlay, dtype=np.float32) / 255.0
    base_rgb = base_pixels[..., :3]
    overlay_rgb = overlay_pixels[..., :3]
    base_alpha = base_pixels[..., 3:4]
    overlay_alpha = overlay_pixels[..., 3:4]

    screened = overlay_rgb + base_rgb - overlay_rgb * base_rgb
    out_alpha = overlay_alpha + base_alpha * (1 - overlay_alpha)
    premultiplied = (
        overlay_alpha * (1 - base_alpha) * overlay_rgb
        + base_alpha * (1 - overlay_alpha) * base_rgb
        + overlay_alpha * base_alpha * screened
    )
    out_rgb = np.divide(
        premultiplied,
        out_alpha,
        out=np.zeros_like(premultiplied),
        where=out_alpha > 0,
    )
    result = np.concatenate([out_rgb, out_alpha], axis=-1)
    return Image.fromarray(np.rint(np.clip(result, 0, 1) * 255).astype(np.uint8))


def select_chroma_blend(config: AnimationConfig) -> ChromaBlend:
    """Screen everywhere except on a chroma-key background."""
    if config.chroma_blend != ChromaBlend.AUTO:
        return config.chroma_blend
    if config.export_format.is_chroma_key:
        return ChromaBlend.SOURCE_OVER
    return ChromaBlend.SCREEN


def shadow_rgba_for(color_rgba: Rgba) -> Rgba:
    """White glow for white text, dark shadow otherwise."""
    if color_rgba[:3] == WHITE_RGB:
        return WHITE_RGB + (SHADOW_ALPHA,)
    return BLACK_RGB + (SHADOW_ALPHA,)


@dataclass
class RenderContext:
    """Per-render collaborators and caches."""

    config: AnimationConfig
    geometry: CanvasGeometry
    fonts: FontRegistry
    sample_offsets: Tuple[float, ...]
    measure_draw: ImageDraw.ImageDraw
    sprites: dict[Tuple[str, int, Tuple[int, int, int]], GlyphSprite] = field(
        default_factory=dict
    )

    def sprite_for(
        self,
        glyph: str,
        font: ImageFont.FreeTypeFont,
        font_size: int,
        color_rgb: Tuple[int, int, int],
    ) -> GlyphSprite:
        cache_key = (glyph, font_size, color_rgb)
        sprite = self.sprites.get(cache_key)
        if sprite is None:
            sprite = render_glyph_sprite(glyph, font, color_rgb, self.measure_draw)
            self.sprites[cache_key] = sprite
        return sprite


def build_render_context(config: AnimationConfig, fonts: FontRegistry) -> RenderContext:
    """Create the collaborators shared by every frame of one render."""
    return RenderContext(
        config=config,
        geometry=compute_canvas_geometry(config),
        fonts=fonts,
        sample_offsets=compute_sample_offsets(compute_motion_samples(config.motion_blur)),
        measure_draw=ImageDraw.Draw(Image.new("RGBA", (1, 1))),
    )


def build_segment(
    raw_text: str,
    chars_per_second: float | None,
    start_seconds: float = 0.0,
    duration_seconds: float | None = None,
) -> RevealSegment:
    """Strip color tags and bind the text to its reveal clock."""
    clean_text, color_map = extract_text_and_colors(raw_text)
    if not clean_text:
        raise RenderValidationError(EMPTY_TEXT_CODE, "text has no characters")
    if duration_seconds is not None:
        chars_per_second = compute_block_chars_per_second(len(clean_text), duration_seconds)
    if chars_per_second is None:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "segment needs a speed or a duration"
        )
    return RevealSegment(
        text=clean_text,
        color_map=color_map,
        chars_per_second=chars_per_second,
        start_seconds=start_seconds,
    )


def new_frame_state(config: AnimationConfig, rng: random.Random | None) -> FrameState:
    """Fresh state for one render."""
    shake_rng = rng if rng is not None else random.Random()
    return FrameState(shake=ShakeEngine(config.jitter, shake_rng))


def relayout(
    context: RenderContext, state: FrameState, segment: RevealSegment, visible_count: int
) -> None:
    """Recompute layout and character positions for the visible text."""
    config = context.config
    geometry = context.geometry
    if config.animation_style == AnimationStyle.DEFAULT:
        layout_text = segment.text[:visible_count]
    else:
        layout_text = segment.text
    layout = compute_layout(layout_text, config, geometry, context.fonts)
    font = context.fonts.load_font(config.font_family, layout.font_size)
    origin_x = geometry.margin_x + (geometry.inner_width - layout.block_width) / 2.0
    origin_y = geometry.margin_y + (geometry.inner_height - layout.block_height) / 2.0
    state.layout = layout
    state.font = font
    state.origin = (origin_x, origin_y)
    state.characters = flatten_character_positions(
        layout.lines,
        origin_x,
        origin_y,
        font,
        layout.line_advance,
        layout.block_width,
        config.text_align,
        segment.color_map,
    )


def advance_segment_state(
    context: RenderContext,
    state: FrameState,
    segment: RevealSegment,
    frame_index: int,
    force_relayout: bool = False,
) -> Tuple[float, float]:
    """Advance clock, shake and layout for a frame; return the shake offset."""
    config = context.config
    visible_count = compute_visible_count(
        frame_index,
        config.fps,
        segment.chars_per_second,
        segment.total_chars,
        segment.start_seconds,
    )
    changed = visible_count != state.last_visible_count or force_relayout
    shake_offset = state.shake.advance(changed, visible_count)
    if changed:
        relayout(context, state, segment, visible_count)
        state.last_visible_count = visible_count
    state.visible_count = visible_count
    return shake_offset


def collect_glyph_draws(
    context: RenderContext,
    state: FrameState,
    segment: RevealSegment,
    frame_index: int,
    sample_offsets: Sequence[float],
) -> list[GlyphDraw]:
    """Resolve every character sample that contributes to this frame."""
    config = context.config
    typing_active = is_typing_active(
        frame_index,
        state.visible_count,
        segment.total_chars,
        config.fps,
        segment.chars_per_second,
        config.reveal_frames,
        segment.start_seconds,
    )
    sub_sampled = len(sample_offsets) > 1 and typing_active
    offsets = tuple(sample_offsets) if sub_sampled else (0.0,)
    weight = 1.0 / len(offsets)

    draws: list[GlyphDraw] = []

    def add_draw(
        character: Character,
        start_frame: float,
        sample_offset: float,
        opacity_mult: float,
    ) -> None:
        progress = compute_reveal_progress(
            frame_index, sample_offset, start_frame, config.reveal_frames
        )
        draw_state = resolve_character_state(
            config.animation_style,
            character.index,
            character.char,
            state.visible_count,
            progress,
            frame_index,
            config.reveal_offset_px,
            config.glitch_charset,
            config.glitch_speed,
        )
        if should_draw(draw_state):
            draws.append(
                GlyphDraw(
                    glyph=draw_state.glyph,
                    x=character.x + draw_state.x_offset,
                    y=character.y,
                    opacity=draw_state.opacity * opacity_mult,
                    color_rgba=character.color_rgba,
                )
            )

    for sample_number, sample_offset in enumerate(offsets):
        for character in state.characters:
            if not character.char.strip():
                continue
            start_frame = segment.start_frame(character.index, config.fps)
            if sub_sampled and was_fully_revealed(frame_index, start_frame, config.reveal_frames):
                if sample_number == 0:
                    add_draw(character, start_frame, 0.0, 1.0)
                continue
            add_draw(character, start_frame, sample_offset, weight)
    return draws


def render_glyph_layer(
    context: RenderContext,
    state: FrameState,
    draws: Sequence[GlyphDraw],
    offset: Tuple[float, float],
    color_for: Callable[[GlyphDraw], Rgba],
) -> Image.Image:
    """Composite glyph draws onto a transparent canvas-sized layer."""
    geometry = context.geometry
    layer = Image.new("RGBA", (geometry.width, geometry.height), (0, 0, 0, 0))
    if state.font is None or state.layout is None:
        return layer
    for draw in draws:
        color_rgba = color_for(draw)
        sprite = context.sprite_for(
            draw.glyph, state.font, state.layout.font_size, color_rgba[:3]
        )
        composite_sprite(
            layer,
            sprite,
            draw.x + offset[0],
            draw.y + offset[1],
            draw.opacity * (color_rgba[3] / 255.0),
        )
    return layer


def compute_cursor_position(context: RenderContext, state: FrameState) -> Tuple[float, float]:
    """Position just past the last visible character, or the block origin.

    The visible prefix is located in the wrapped lines by text index, so a
    prefix ending in a newline or in a wrap-consumed space puts the cursor
    at the start of the following line.
    """
    layout = state.layout
    visible_count = state.visible_count
    if layout is None or state.font is None or visible_count <= 0:
        return state.origin
    origin_x, origin_y = state.origin
    cursor_line_number = None
    for line_number, line in enumerate(layout.lines):
        if line.start_index <= visible_count:
            cursor_line_number = line_number
    if cursor_line_number is None:
        return state.origin
    line = layout.lines[cursor_line_number]
    line_x = compute_line_x(
        origin_x, layout.block_width, line, context.config.text_align
    )
    visible_text = line.text[: visible_count - line.start_index]
    return (
        line_x + measure_text_width(state.font, visible_text),
        origin_y + cursor_line_number * layout.line_advance,
    )


def draw_cursor(
    context: RenderContext,
    state: FrameState,
    layer: Image.Image,
    frame_index: int,
    offset: Tuple[float, float],
) -> None:
    """Draw the blinking cursor glyph onto the main text layer."""
    config = context.config
    if state.font is None or state.layout is None:
        return
    if not is_cursor_visible(frame_index, config.fps, config.cursor_speed):
        return
    cursor_x, cursor_y = compute_cursor_position(context, state)
    sprite = context.sprite_for(
        config.cursor_style, state.font, state.layout.font_size, config.text_rgba[:3]
    )
    composite_sprite(
        layer,
        sprite,
        cursor_x + offset[0],
        cursor_y + offset[1],
        config.text_rgba[3] / 255.0,
    )


def apply_static_blur(layer: Image.Image, radius: float) -> Image.Image:
    """Uniform blur of a whole text layer (no-op when radius is zero)."""
    if radius <= 0:
        return layer
    return layer.filter(ImageFilter.GaussianBlur(radius))


def new_background(context: RenderContext) -> Image.Image:
    """Opaque background fill, or a transparent clear for alpha exports."""
    config = context.config
    geometry = context.geometry
    fill = (0, 0, 0, 0) if config.clears_to_transparent else config.background_rgba
    return Image.new("RGBA", (geometry.width, geometry.height), fill)


def compose_frame(
    context: RenderContext,
    state: FrameState,
    segment: RevealSegment | None,
    frame_index: int,
    shake_offset: Tuple[float, float],
) -> Image.Image:
    """Compose one frame in strict layer order and update the history buffer."""
    config = context.config
    frame = new_background(context)
    if config.motion_blur > 0 and frame_index > 0 and state.history is not None:
        frame = blend_with_opacity(frame, state.history, config.motion_blur)

    if segment is not None:
        if config.chroma > 0:
            chroma_draws = collect_glyph_draws(context, state, segment, frame_index, (0.0,))
            chroma_alpha = int(round(config.chroma_opacity * 255))
            chroma_blend = select_chroma_blend(config)
            for tint_rgb, shift in (
                (CHROMA_RED_RGB, -config.chroma),
                (CHROMA_BLUE_RGB, config.chroma),
            ):
                chroma_layer = render_glyph_layer(
                    context,
                    state,
                    chroma_draws,
                    (shake_offset[0] + shift, shake_offset[1]),
                    lambda _draw, tint=tint_rgb: tint + (chroma_alpha,),
                )
                chroma_layer = apply_static_blur(chroma_layer, config.blur)
                if chroma_blend == ChromaBlend.SCREEN:
                    frame = blend_screen(frame, chroma_layer)
                else:
                    frame = Image.alpha_composite(frame, chroma_layer)

        main_draws = collect_glyph_draws(
            context, state, segment, frame_index, context.sample_offsets
        )

        def text_color(draw: GlyphDraw) -> Rgba:
            return draw.color_rgba or config.text_rgba

        if config.drop_shadow > 0:
            shadow_layer = render_glyph_layer(
                context,
                state,
                main_draws,
                shake_offset,
                lambda draw: shadow_rgba_for(text_color(draw)),
            )
            shadow_radius = math.hypot(config.blur, config.drop_shadow / 2.0)
            frame = Image.alpha_composite(frame, apply_static_blur(shadow_layer, shadow_radius))

        main_layer = render_glyph_layer(context, state, main_draws, shake_offset, text_color)
        if config.show_cursor:
            draw_cursor(context, state, main_layer, frame_index, shake_offset)
        frame = Image.alpha_composite(frame, apply_static_blur(main_layer, config.blur))

    if config.motion_blur > 0:
        state.history = frame.copy()
    return frame


def plan_single_render(text_value: str, config: AnimationConfig) -> Tuple[RevealSegment, int]:
    """Bind text to the configured speed and count its frames."""
    segment = build_segment(text_value, config.chars_per_second)
    total_frames = compute_single_total_frames(
        segment.total_chars, config.chars_per_second, config.end_hold, config.fps
    )
    return segment, total_frames


def iter_single_frames(
    text_value: str,
    config: AnimationConfig,
    fonts: FontRegistry,
    rng: random.Random | None = None,
) -> Iterator[bytes]:
    """Yield raw RGBA frames for a single-block render."""
    segment, total_frames = plan_single_render(text_value, config)
    context = build_render_context(config, fonts)
    state = new_frame_state(config, rng)
    for frame_index in range(total_frames):
        state.frame_index = frame_index
        shake_offset = advance_segment_state(context, state, segment, frame_index)
        frame = compose_frame(context, state, segment, frame_index, shake_offset)
        yield frame.tobytes()


def iter_timeline_frames(
    blocks: Sequence[TimelineBlock],
    config: AnimationConfig,
    total_duration: float,
    fonts: FontRegistry,
    rng: random.Random | None = None,
) -> Iterator[bytes]:
    """Yield raw RGBA frames for a multi-block timeline render."""
    ordered_blocks = sort_blocks(blocks)
    segments = tuple(
        build_segment(
            block.text,
            None,
            start_seconds=block.start_seconds,
            duration_seconds=block.duration_seconds,
        )
        for block in ordered_blocks
    )
    total_frames = compute_timeline_total_frames(total_duration, config.fps)
    context = build_render_context(config, fonts)
    state = new_frame_state(config, rng)
    for frame_index in range(total_frames):
        state.frame_index = frame_index
        block_index = find_active_block_index(ordered_blocks, frame_index / config.fps)
        if block_index == NO_ACTIVE_BLOCK:
            state.active_block_index = NO_ACTIVE_BLOCK
            state.shake.advance(False, 0)
            frame = compose_frame(context, state, None, frame_index, (0.0, 0.0))
        else:
            is_new_block = block_index != state.active_block_index
            state.active_block_index = block_index
            segment = segments[block_index]
            shake_offset = advance_segment_state(
                context, state, segment, frame_index, force_relayout=is_new_block
            )
            frame = compose_frame(context, state, segment, frame_index, shake_offset)
        yield frame.tobytes()


def render_still_image(
    text_value: str, config: AnimationConfig, fonts: FontRegistry
) -> Image.Image:
    """Render the fully revealed text as a single image."""
    still_config = dataclasses.replace(
        config, jitter=0.0, motion_blur=0.0, show_cursor=False
    )
    segment, total_frames = plan_single_render(text_value, still_config)
    context = build_render_context(still_config, fonts)
    state = new_frame_state(still_config, random.Random(0))
    final_frame = total_frames - 1
    state.frame_index = final_frame
    advance_segment_state(context, state, segment, final_frame)
    return compose_frame(context, state, segment, final_frame, (0.0, 0.0))


def compute_prores_qscale(width: int, height: int) -> int:
    """Compute a ProRes quantizer based on the frame size."""
    pixel_count = width * height
    scale = pixel_count / PRORES_QSCALE_REFERENCE_PIXELS
    qscale = int(round(PRORES_QSCALE_BASE * math.sqrt(scale)))
    return max(PRORES_QSCALE_BASE, min(PRORES_QSCALE_MAX, qscale))


def build_prores_args(width: int, height: int) -> Tuple[str, ...]:
    """Build ProRes codec arguments."""
    qscale = compute_prores_qscale(width, height)
    return (
        "-profile:v",
        PRORES_PROFILE,
        "-qscale:v",
        str(qscale),
        "-alpha_bits",
        PRORES_ALPHA_BITS,
    )


def build_h264_args(width: int, height: int) -> Tuple[str, ...]:
    """Build H.264 codec arguments."""
    return ("-crf", H264_CRF, "-preset", H264_PRESET)


def build_vp9_args(width: int, height: int) -> Tuple[str, ...]:
    """Build VP9 arguments tuned for fast previews."""
    return ("-crf", VP9_CRF, "-b:v", "0", "-deadline", VP9_DEADLINE)


H264_ENCODING = VideoEncodingSpec(
    codec=H264_CODEC,
    pix_fmt=H264_PIXEL_FORMAT,
    args_builder=build_h264_args,
    encoder_name=H264_CODEC,
    alpha_bits=None,
    extension="mp4",
)
PRORES_ENCODING = VideoEncodingSpec(
    codec="prores_ks",
    pix_fmt=PRORES_PIXEL_FORMAT,
    args_builder=build_prores_args,
    encoder_name="prores_ks",
    alpha_bits=PRORES_ALPHA_BITS,
    extension="mov",
)
VP9_ENCODING = VideoEncodingSpec(
    codec=VP9_CODEC,
    pix_fmt=VP9_PIXEL_FORMAT,
    args_builder=build_vp9_args,
    encoder_name=VP9_CODEC,
    alpha_bits=None,
    extension="webm",
)
ENCODING_SPECS = {
    ExportFormat.MP4: H264_ENCODING,
    ExportFormat.MP4_GREEN: H264_ENCODING,
    ExportFormat.MOV_PRORES: PRORES_ENCODING,
    ExportFormat.WEBM_PREVIEW: VP9_ENCODING,
}


def select_encoding(config: AnimationConfig) -> VideoEncodingSpec:
    """Previews always go to VP9 WebM; exports follow the export format."""
    if config.is_preview:
        return VP9_ENCODING
    return ENCODING_SPECS[config.export_format]


def build_ffmpeg_command(
    geometry: CanvasGeometry,
    fps: int,
    encoding: VideoEncodingSpec,
    audio_track: str | None,
    output_path: str,
) -> list[str]:
    """Build the ffmpeg command for a raw RGBA frame stream on stdin."""
    ffmpeg_cmd = [
        "ffmpeg",
        "-y",
        "-f",
        "rawvideo",
        "-pix_fmt",
        "rgba",
        "-s",
        f"{geometry.width}x{geometry.height}",
        "-r",
        str(fps),
        "-i",
        "-",
    ]
    if audio_track:
        ffmpeg_cmd.extend(["-i", audio_track, "-map", "0:v:0", "-map", "1:a:0"])
    else:
        ffmpeg_cmd.append("-an")
    ffmpeg_cmd.extend(["-c:v", encoding.codec])
    ffmpeg_cmd.extend(encoding.args_builder(geometry.width, geometry.height))
    if audio_track:
        ffmpeg_cmd.extend(
            [
                "-c:a",
                AUDIO_CODEC,
                "-b:a",
                AUDIO_BITRATE,
                "-af",
                AUDIO_PAD_FILTER,
                "-shortest",
            ]
        )
    ffmpeg_cmd.extend(["-pix_fmt", encoding.pix_fmt])
    if encoding.extension in ("mp4", "mov"):
        ffmpeg_cmd.extend(["-movflags", "+faststart"])
    ffmpeg_cmd.append(output_path)
    return ffmpeg_cmd


def validate_even_dimensions(geometry: CanvasGeometry, encoding: VideoEncodingSpec) -> None:
    """Chroma-subsampled pixel formats need even frame dimensions."""
    if "420" in encoding.pix_fmt and (geometry.width % 2 or geometry.height % 2):
        raise RenderValidationError(
            INVALID_CONFIG_CODE,
            f"frame size {geometry.width}x{geometry.height} must be even for {encoding.pix_fmt}",
        )


def unique_output_path(output_path: str) -> str:
    """Append ``_1``, ``_2``, ... until the path does not exist."""
    if not os.path.exists(output_path):
        return output_path
    directory = os.path.dirname(output_path)
    stem, extension = os.path.splitext(os.path.basename(output_path))
    counter = 1
    while True:
        candidate = os.path.join(directory, f"{stem}_{counter}{extension}")
        if not os.path.exists(candidate):
            return candidate
        counter += 1


def default_output_path(text_value: str, config: AnimationConfig) -> str:
    """Name the output after the first word of the text."""
    words = text_value.strip().split()
    first_word = words[0] if words else ""
    safe_name = UNSAFE_FILENAME_PATTERN.sub("_", first_word) or DEFAULT_OUTPUT_STEM
    return f"{safe_name}.{select_encoding(config).extension}"


async def emit_frames(frames: Iterable[bytes], writer: FrameWriter) -> int:
    """Write frames in order, honoring backpressure.

    Every frame waits for ``drain`` before the next one is composed, and
    every ``YIELD_EVERY_FRAMES`` frames control goes back to the event loop
    even when the pipe never pushes back.
    """
    frame_count = 0
    for frame_index, frame_bytes in enumerate(frames):
        if frame_index % YIELD_EVERY_FRAMES == 0:
            await asyncio.sleep(0)
        try:
            writer.write(frame_bytes)
            await writer.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise RenderPipelineError(
                PIPE_WRITE_CODE,
                f"encoder stopped accepting frames at frame {frame_index}",
            ) from exc
        frame_count += 1
    return frame_count


async def open_encoder_process(command: Sequence[str]) -> asyncio.subprocess.Process:
    """Start ffmpeg with a writable stdin pipe."""
    try:
        return await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise RenderPipelineError(FFMPEG_NOT_FOUND_CODE, "ffmpeg not found") from exc


async def raise_for_early_exit(
    ffmpeg_process: asyncio.subprocess.Process,
    stderr_task: asyncio.Task[bytes],
    pipe_error: RenderPipelineError,
) -> None:
    """Raise the encoder's exit status once it has stopped reading frames."""
    try:
        return_code = await asyncio.wait_for(
            ffmpeg_process.wait(), timeout=EARLY_EXIT_WAIT_SECONDS
        )
    except asyncio.TimeoutError:
        return
    stderr_bytes = await stderr_task
    if return_code != 0:
        stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()
        raise EncoderExitError(return_code, stderr_text) from pipe_error


async def encode_frames(
    frames: Iterable[bytes],
    config: AnimationConfig,
    output_path: str,
    audio_track: str | None = None,
) -> str:
    """Stream frames into ffmpeg and return the written path."""
    geometry = compute_canvas_geometry(config)
    encoding = select_encoding(config)
    validate_even_dimensions(geometry, encoding)
    final_path = unique_output_path(output_path)
    command = build_ffmpeg_command(geometry, config.fps, encoding, audio_track, final_path)
    ffmpeg_process = await open_encoder_process(command)
    if ffmpeg_process.stdin is None or ffmpeg_process.stderr is None:
        raise RenderPipelineError(FFMPEG_PROCESS_CODE, "ffmpeg pipes unavailable")
    stderr_task = asyncio.create_task(ffmpeg_process.stderr.read())

    try:
        try:
            frame_count = await emit_frames(frames, ffmpeg_process.stdin)
            ffmpeg_process.stdin.close()
            try:
                await ffmpeg_process.stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise RenderPipelineError(
                    PIPE_WRITE_CODE, "encoder closed its input early"
                ) from exc
        except RenderPipelineError as exc:
            if exc.code != PIPE_WRITE_CODE:
                raise
            await raise_for_early_exit(ffmpeg_process, stderr_task, exc)
            raise
        return_code = await ffmpeg_process.wait()
        stderr_bytes = await stderr_task
    finally:
        if ffmpeg_process.returncode is None:
            ffmpeg_process.kill()
            await ffmpeg_process.wait()
        if not stderr_task.done():
            stderr_task.cancel()

    if return_code != 0:
        stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()
        raise EncoderExitError(return_code, stderr_text)
    LOGGER.info("render_typing_video.render.done: %d frames -> %s", frame_count, final_path)
    return final_path


async def render_video(
    text_value: str,
    config: AnimationConfig,
    output_path: str,
    fonts: FontRegistry | None = None,
    audio_track: str | None = None,
    rng: random.Random | None = None,
) -> str:
    """Render a single text block to ``output_path`` (deduplicated)."""
    registry = fonts if fonts is not None else ensure_fonts_loaded()
    _, total_frames = plan_single_render(text_value, config)
    LOGGER.info(
        "render_typing_video.render.start: style=%s cursor=%s frames=%d",
        config.animation_style.value,
        config.show_cursor,
        total_frames,
    )
    frames = iter_single_frames(text_value, config, registry, rng)
    return await encode_frames(frames, config, output_path, audio_track)


async def render_timeline(
    blocks: Sequence[TimelineBlock],
    config: AnimationConfig,
    total_duration: float,
    output_path: str,
    fonts: FontRegistry | None = None,
    audio_track: str | None = None,
    rng: random.Random | None = None,
) -> str:
    """Render timeline blocks over ``total_duration`` seconds."""
    registry = fonts if fonts is not None else ensure_fonts_loaded()
    LOGGER.info(
        "render_typing_video.render.start: style=%s blocks=%d frames=%d",
        config.animation_style.value,
        len(blocks),
        compute_timeline_total_frames(total_duration, config.fps),
    )
    frames = iter_timeline_frames(blocks, config, total_duration, registry, rng)
    return await encode_frames(frames, config, output_path, audio_track)


@dataclass(frozen=True)
class RenderRequest:
    """Parsed CLI request and runtime options."""

    config: AnimationConfig
    text: str | None
    timeline_blocks: Tuple[TimelineBlock, ...] | None
    output_path: str
    fonts_dir: str | None
    audio_track: str | None
    total_duration: float | None
    jitter_seed: int | None
    screenshot_path: str | None


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="render_typing_video.py", add_help=True)
    parser.add_argument("--text", default=None)
    parser.add_argument("--input-text-file", default=None)
    parser.add_argument("--timeline-file", default=None)
    parser.add_argument("--output-video-file", default=None)
    parser.add_argument("--screenshot", default=None)
    parser.add_argument("--width", type=int, default=1080)
    parser.add_argument("--height", type=int, default=1080)
    parser.add_argument("--fps", type=int, default=30)
    parser.add_argument("--chars-per-second", type=float, default=10.0)
    parser.add_argument("--reveal-frames", type=int, default=3)
    parser.add_argument("--reveal-offset-px", type=float, default=18.0)
    parser.add_argument("--end-hold", type=float, default=1.5)
    parser.add_argument("--animation-style", default="default")
    parser.add_argument("--jitter", type=float, default=0.0)
    parser.add_argument("--jitter-seed", type=int, default=None)
    parser.add_argument("--motion-blur", type=float, default=0.0)
    parser.add_argument("--blur", type=float, default=0.0)
    parser.add_argument("--drop-shadow", type=float, default=0.0)
    parser.add_argument("--chroma", type=float, default=0.0)
    parser.add_argument("--chroma-opacity", type=float, default=0.5)
    parser.add_argument("--chroma-blend", default="auto")
    parser.add_argument("--glitch-charset", default="symbols")
    parser.add_argument("--glitch-speed", type=float, default=0.5)
    parser.add_argument("--show-cursor", action="store_true")
    parser.add_argument("--cursor-style", default="|")
    parser.add_argument("--cursor-speed", type=float, default=1.0)
    parser.add_argument("--text-align", default="left")
    parser.add_argument("--text-color", default="#ffffff")
    parser.add_argument(
        "--background", default="#00ff00", help="#RRGGBB, CSS color or transparent"
    )
    parser.add_argument("--export-format", default="mp4")
    parser.add_argument("--padding-ratio", type=float, default=0.0)
    parser.add_argument("--preview", action="store_true")
    parser.add_argument("--fonts-dir", default=None)
    parser.add_argument("--font-family", default=None)
    parser.add_argument("--font-size", type=int, default=None)
    parser.add_argument("--line-height", type=float, default=1.2)
    parser.add_argument("--audio-track", default=None)
    parser.add_argument("--duration-seconds", type=float, default=None)
    return parser


def parse_args(argv: Sequence[str]) -> RenderRequest:
    """Parse CLI arguments into a RenderRequest."""
    parsed = build_arg_parser().parse_args(argv)

    sources = [
        name
        for name, value in (
            ("text", parsed.text),
            ("input-text-file", parsed.input_text_file),
            ("timeline-file", parsed.timeline_file),
        )
        if value is not None
    ]
    if len(sources) != 1:
        raise RenderValidationError(
            INVALID_CONFIG_CODE,
            "exactly one of text, input-text-file or timeline-file is required",
        )

    text_value: str | None = None
    timeline_blocks: Tuple[TimelineBlock, ...] | None = None
    if parsed.timeline_file is not None:
        timeline_blocks = parse_timeline_blocks(read_utf8_text_strict(parsed.timeline_file))
    elif parsed.input_text_file is not None:
        text_value = normalize_input_text(read_utf8_text_strict(parsed.input_text_file))
    else:
        text_value = normalize_input_text(parsed.text)

    if timeline_blocks is None:
        if parsed.duration_seconds is not None:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "duration-seconds requires timeline-file"
            )
        if parsed.audio_track is not None:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "audio-track requires timeline-file"
            )
    elif parsed.screenshot is not None:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "screenshot is not supported for timeline-file"
        )

    if parsed.font_family is not None and parsed.fonts_dir is None:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "font-family requires fonts-dir"
        )

    config = AnimationConfig(
        width=parsed.width,
        height=parsed.height,
        fps=parsed.fps,
        chars_per_second=parsed.chars_per_second,
        reveal_frames=parsed.reveal_frames,
        reveal_offset_px=parsed.reveal_offset_px,
        end_hold=parsed.end_hold,
        animation_style=parse_choice(AnimationStyle, parsed.animation_style, "animation-style"),
        jitter=parsed.jitter,
        motion_blur=parsed.motion_blur,
        blur=parsed.blur,
        drop_shadow=parsed.drop_shadow,
        chroma=parsed.chroma,
        chroma_opacity=parsed.chroma_opacity,
        chroma_blend=parse_choice(ChromaBlend, parsed.chroma_blend, "chroma-blend"),
        glitch_charset=parse_choice(GlitchCharset, parsed.glitch_charset, "glitch-charset"),
        glitch_speed=parsed.glitch_speed,
        show_cursor=parsed.show_cursor,
        cursor_style=parsed.cursor_style,
        cursor_speed=parsed.cursor_speed,
        text_align=parse_choice(TextAlign, parsed.text_align, "text-align"),
        text_rgba=parse_color_to_rgba(parsed.text_color),
        background_rgba=parse_color_to_rgba(parsed.background),
        export_format=parse_choice(ExportFormat, parsed.export_format, "export-format"),
        padding_ratio=parsed.padding_ratio,
        is_preview=parsed.preview,
        font_family=parsed.font_family,
        font_size=parsed.font_size,
        line_height=parsed.line_height,
    )

    total_duration: float | None = None
    if timeline_blocks is not None:
        if parsed.duration_seconds is not None:
            if parsed.duration_seconds <= 0:
                raise RenderValidationError(
                    INVALID_CONFIG_CODE, "duration-seconds must be positive"
                )
            total_duration = parsed.duration_seconds
        elif parsed.audio_track is not None:
            total_duration = get_audio_duration_seconds(parsed.audio_track)
        else:
            total_duration = compute_timeline_end_seconds(timeline_blocks)

    output_path = parsed.output_video_file
    if output_path is None:
        if text_value is not None:
            naming_text = text_value
        else:
            naming_text, _ = extract_text_and_colors(timeline_blocks[0].text)
        output_path = default_output_path(naming_text, config)

    return RenderRequest(
        config=config,
        text=text_value,
        timeline_blocks=timeline_blocks,
        output_path=output_path,
        fonts_dir=parsed.fonts_dir,
        audio_track=parsed.audio_track,
        total_duration=total_duration,
        jitter_seed=parsed.jitter_seed,
        screenshot_path=parsed.screenshot,
    )


def validate_ffmpeg_capabilities(
    encoding: VideoEncodingSpec, audio_track: str | None
) -> None:
    """Validate ffmpeg encoders and pixel formats for output."""
    ensure_ffmpeg_available()
    encoders_result = subprocess.run(
        ["ffmpeg", "-hide_banner", "-encoders"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=True,
    )
    if encoding.encoder_name not in encoders_result.stdout:
        raise RenderPipelineError(
            FFMPEG_UNSUPPORTED_CODE,
            f"ffmpeg does not support {encoding.encoder_name} encoder",
        )

    if encoding.alpha_bits is not None:
        encoder_help = subprocess.run(
            ["ffmpeg", "-hide_banner", "-h", f"encoder={encoding.encoder_name}"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=True,
        )
        if "alpha_bits" not in encoder_help.stdout:
            raise RenderPipelineError(
                FFMPEG_UNSUPPORTED_CODE,
                f"ffmpeg {encoding.encoder_name} encoder does not support alpha_bits",
            )

    if audio_track and AUDIO_CODEC not in encoders_result.stdout:
        raise RenderPipelineError(
            FFMPEG_UNSUPPORTED_CODE,
            f"ffmpeg does not support {AUDIO_CODEC} encoder",
        )

    pixfmts_result = subprocess.run(
        ["ffmpeg", "-hide_banner", "-pix_fmts"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=True,
    )
    if encoding.pix_fmt not in pixfmts_result.stdout:
        raise RenderPipelineError(
            FFMPEG_UNSUPPORTED_CODE,
            f"ffmpeg does not support {encoding.pix_fmt} pixel format",
        )


def run_request(request: RenderRequest) -> str:
    """Execute a parsed request and return the written path."""
    fonts = ensure_fonts_loaded(request.fonts_dir)
    rng = random.Random(request.jitter_seed) if request.jitter_seed is not None else None

    if request.screenshot_path is not None:
        if request.text is None:
            raise RenderValidationError(INVALID_CONFIG_CODE, "screenshot requires text")
        image = render_still_image(request.text, request.config, fonts)
        screenshot_path = unique_output_path(request.screenshot_path)
        image.save(screenshot_path, format="PNG")
        return screenshot_path

    validate_ffmpeg_capabilities(select_encoding(request.config), request.audio_track)
    if request.timeline_blocks is not None:
        if request.total_duration is None:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "timeline render needs a total duration"
            )
        return asyncio.run(
            render_timeline(
                request.timeline_blocks,
                request.config,
                request.total_duration,
                request.output_path,
                fonts=fonts,
                audio_track=request.audio_track,
                rng=rng,
            )
        )
    if request.text is None:
        raise RenderValidationError(EMPTY_TEXT_CODE, "no text to render")
    return asyncio.run(
        render_video(
            request.text,
            request.config,
            request.output_path,
            fonts=fonts,
            rng=rng,
        )
    )


def main() -> int:
    """CLI entrypoint."""
    configure_logging()

    try:
        request = parse_args(sys.argv[1:])
        written_path = run_request(request)
        sys.stdout.write(written_path + "\n")
        return 0
    except RenderValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except RenderPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("render_typing_video.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
