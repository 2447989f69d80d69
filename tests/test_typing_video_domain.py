"""Tests for domain parsing and validation."""

from __future__ import annotations

import json

import pytest

from domain.typing_video import (
    EMPTY_TEXT_CODE,
    INVALID_BLOCK_CODE,
    INVALID_CHOICE_CODE,
    INVALID_COLOR_TAG_CODE,
    INVALID_CONFIG_CODE,
    INVALID_TIMELINE_CODE,
    AnimationConfig,
    AnimationStyle,
    ExportFormat,
    GlitchCharset,
    RenderValidationError,
    TimelineBlock,
    compute_timeline_end_seconds,
    extract_text_and_colors,
    normalize_input_text,
    parse_choice,
    parse_hex_color,
    parse_timeline_blocks,
)


@pytest.mark.parametrize(
    "overrides",
    [
        {"fps": 0},
        {"chars_per_second": 0.0},
        {"reveal_frames": 0},
        {"motion_blur": 1.0},
        {"padding_ratio": 0.5},
        {"chroma_opacity": 0.0},
        {"jitter": -1.0},
        {"cursor_style": ""},
        {"font_size": 0},
        {"text_rgba": (255, 255, 255, 256)},
    ],
)
def test_config_rejects_invalid_values(overrides: dict) -> None:
    """Out-of-range settings fail at construction."""
    with pytest.raises(RenderValidationError) as exc_info:
        AnimationConfig(width=64, height=64, **overrides)
    assert exc_info.value.code == INVALID_CONFIG_CODE


def test_config_defaults() -> None:
    """Defaults match the documented configuration."""
    config = AnimationConfig(width=1080, height=1920)
    assert config.fps == 30
    assert config.chars_per_second == 10.0
    assert config.reveal_frames == 3
    assert config.animation_style == AnimationStyle.DEFAULT
    assert config.background_rgba == (0, 255, 0, 255)
    assert not config.clears_to_transparent


def test_export_format_flags() -> None:
    """Alpha exports clear to transparent; mp4_green is the chroma-key flavour."""
    assert ExportFormat.MOV_PRORES.is_transparent
    assert ExportFormat.WEBM_PREVIEW.is_transparent
    assert not ExportFormat.MP4.is_transparent
    assert ExportFormat.MP4_GREEN.is_chroma_key
    config = AnimationConfig(width=8, height=8, export_format=ExportFormat.MOV_PRORES)
    assert config.clears_to_transparent


def test_parse_choice() -> None:
    """CLI tokens are case-insensitive; unknown tokens are rejected."""
    assert parse_choice(GlitchCharset, "Mixed", "glitch-charset") == GlitchCharset.MIXED
    with pytest.raises(RenderValidationError) as exc_info:
        parse_choice(AnimationStyle, "bounce", "animation-style")
    assert exc_info.value.code == INVALID_CHOICE_CODE


def test_parse_hex_color() -> None:
    """Hex colors become opaque RGBA."""
    assert parse_hex_color("#FF8000") == (255, 128, 0, 255)
    with pytest.raises(RenderValidationError):
        parse_hex_color("#ff80")


def test_extract_text_and_colors() -> None:
    """Tags are removed and their characters carry the override color."""
    clean_text, color_map = extract_text_and_colors("a[color=#ff0000]bc[/color]d")
    assert clean_text == "abcd"
    assert color_map == {1: (255, 0, 0, 255), 2: (255, 0, 0, 255)}


def test_extract_text_without_tags() -> None:
    """Plain text passes through with no overrides."""
    assert extract_text_and_colors("plain text") == ("plain text", {})


@pytest.mark.parametrize(
    "raw_text",
    [
        "[color=#ff0000]a[color=#00ff00]b[/color][/color]",
        "a[color=#ff0000]b",
        "a[/color]b",
    ],
)
def test_extract_rejects_malformed_tags(raw_text: str) -> None:
    """Nested or unbalanced tags are rejected."""
    with pytest.raises(RenderValidationError) as exc_info:
        extract_text_and_colors(raw_text)
    assert exc_info.value.code == INVALID_COLOR_TAG_CODE


def test_normalize_input_text() -> None:
    """BOM and CRLF are normalized; blank text is rejected."""
    assert normalize_input_text("\ufeffHello\r\nworld  \n") == "Hello\nworld"
    with pytest.raises(RenderValidationError) as exc_info:
        normalize_input_text(" \n\t")
    assert exc_info.value.code == EMPTY_TEXT_CODE


def test_timeline_block_validation() -> None:
    """Blocks need text, a non-negative start and a positive duration."""
    block = TimelineBlock(text="hi", start_seconds=1.0, duration_seconds=2.5)
    assert block.end_seconds == pytest.approx(3.5)
    for kwargs in (
        {"text": " ", "start_seconds": 0.0, "duration_seconds": 1.0},
        {"text": "a", "start_seconds": -1.0, "duration_seconds": 1.0},
        {"text": "a", "start_seconds": 0.0, "duration_seconds": 0.0},
    ):
        with pytest.raises(RenderValidationError) as exc_info:
            TimelineBlock(**kwargs)
        assert exc_info.value.code == INVALID_BLOCK_CODE


def test_parse_timeline_blocks_list_and_object() -> None:
    """Both a bare list and a ``blocks`` object are accepted."""
    entries = [
        {"text": "AB", "start": 0, "duration": 1},
        {"text": "CD", "startTime": 2.0, "duration": 1.0},
    ]
    from_list = parse_timeline_blocks(json.dumps(entries))
    from_object = parse_timeline_blocks(json.dumps({"blocks": entries}))
    assert from_list == from_object
    assert [block.start_seconds for block in from_list] == [0.0, 2.0]
    assert compute_timeline_end_seconds(from_list) == pytest.approx(3.0)


@pytest.mark.parametrize(
    "json_text",
    [
        "not json",
        "[]",
        '[{"text": "a", "start": 0}]',
        '[{"text": "a", "start": true, "duration": 1}]',
        '["a"]',
    ],
)
def test_parse_timeline_blocks_rejects_bad_input(json_text: str) -> None:
    """Malformed timelines fail with the timeline error code."""
    with pytest.raises(RenderValidationError) as exc_info:
        parse_timeline_blocks(json_text)
    assert exc_info.value.code == INVALID_TIMELINE_CODE


def test_parse_timeline_rejects_tag_only_block() -> None:
    """A block whose text is only tags has nothing to type."""
    with pytest.raises(RenderValidationError) as exc_info:
        parse_timeline_blocks('[{"text": "[color=#ff0000][/color]", "start": 0, "duration": 1}]')
    assert exc_info.value.code == INVALID_BLOCK_CODE
