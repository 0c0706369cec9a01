"""
Video type classifier: background layer vs click-to-play.

Walks independent signal categories on a <video>/<iframe> element (and its
immediate surroundings) and hands the fired signals to score_video_signals.
"""

import re
from typing import List, Optional
from urllib.parse import parse_qs, urlsplit

from bs4 import Tag

from .signals import VideoClassification, VideoSignal, score_video_signals

BACKGROUND_DATA_ATTRIBUTES = ("data-bg-video", "data-background-video")

BACKGROUND_CLASS_PATTERNS = (
    "bg-video",
    "background-video",
    "hero-video",
    "video-bg",
    "full-bg",
    "section-bg",
    "video-background",
    "fullscreen-video",
)

PAGE_BUILDER_CLASSES = (
    "elementor-background-video-container",
    "elementor-background-video",
    "wp-block-cover",
)

_Z_INDEX_RE = re.compile(r"z-index\s*:\s*(-?\d+)", re.I)
_POSITION_RE = re.compile(r"position\s*:\s*(absolute|fixed)", re.I)
_FULL_WIDTH_RE = re.compile(r"(?<![-\w])width\s*:\s*100(%|vw)", re.I)
_FULL_HEIGHT_RE = re.compile(r"(?<![-\w])height\s*:\s*100(%|vh)", re.I)
_SIBLING_POSITION_RE = re.compile(r"position\s*:\s*(absolute|relative|fixed)", re.I)
_PLAY_CLASS_RE = re.compile(r"(^|[-_])play([-_]|btn|button|$)", re.I)


def _classes(element: Tag) -> List[str]:
    value = element.get("class") or []
    if isinstance(value, str):
        value = value.split()
    return [c.lower() for c in value]


def _style(element: Tag) -> str:
    return (element.get("style") or "").lower()


def _has_attr(element: Tag, name: str) -> bool:
    return element.has_attr(name)


def _check_data_attributes(element: Tag, signals: List[VideoSignal]) -> None:
    if (element.get("data-video-type") or "").lower() == "background":
        signals.append(VideoSignal("data_attribute", "data-video-type"))
    for attr in BACKGROUND_DATA_ATTRIBUTES:
        if _has_attr(element, attr):
            signals.append(VideoSignal("data_attribute", attr))


def _check_class_conventions(element: Tag, signals: List[VideoSignal]) -> None:
    candidates = _classes(element)
    parent = element.parent if isinstance(element.parent, Tag) else None
    if parent is not None:
        candidates += _classes(parent)
    joined = " ".join(candidates)
    for pattern in BACKGROUND_CLASS_PATTERNS:
        if pattern in joined:
            signals.append(VideoSignal("class_convention", pattern))


def _check_positioning(element: Tag, signals: List[VideoSignal]) -> None:
    style = _style(element)
    if not _POSITION_RE.search(style):
        return
    full_width = bool(_FULL_WIDTH_RE.search(style))
    full_height = bool(_FULL_HEIGHT_RE.search(style))
    if full_width and full_height:
        signals.append(VideoSignal("full_bleed_position"))
    elif full_width or full_height or "object-fit" in style:
        signals.append(VideoSignal("partial_position"))


def _check_native_attributes(element: Tag, signals: List[VideoSignal]) -> None:
    if element.name != "video":
        return
    has_controls = _has_attr(element, "controls")
    if (_has_attr(element, "autoplay") and _has_attr(element, "muted")
            and _has_attr(element, "loop") and not has_controls):
        signals.append(VideoSignal("autoplay_muted_loop"))
    if has_controls:
        signals.append(VideoSignal("native_controls"))
    if element.get("poster"):
        signals.append(VideoSignal("poster_image"))


def _check_layering(element: Tag, signals: List[VideoSignal]) -> None:
    match = _Z_INDEX_RE.search(_style(element))
    if match and int(match.group(1)) < 0:
        signals.append(VideoSignal("negative_z_index", match.group(1)))

    for sibling in element.find_next_siblings(limit=5) + element.find_previous_siblings(limit=5):
        style = _style(sibling)
        z_match = _Z_INDEX_RE.search(style)
        if _SIBLING_POSITION_RE.search(style) and z_match and int(z_match.group(1)) > 0:
            signals.append(VideoSignal("overlay_sibling", sibling.name or ""))
            break


def _check_page_builder(element: Tag, signals: List[VideoSignal]) -> None:
    for node in [element] + list(element.parents)[:4]:
        if not isinstance(node, Tag) or node.name == "[document]":
            continue
        classes = _classes(node)
        for name in PAGE_BUILDER_CLASSES:
            if name in classes:
                signals.append(VideoSignal("page_builder_markup", name))
                return
        if (node.get("data-elementor-background-type") or "").lower() == "video":
            signals.append(VideoSignal("page_builder_markup", "data-elementor-background-type"))
            return


def _check_embed_params(element: Tag, signals: List[VideoSignal]) -> None:
    if element.name != "iframe":
        return
    src = element.get("src") or element.get("data-src") or ""
    params = {k: v[-1] for k, v in parse_qs(urlsplit(src).query).items()}
    autoplay = params.get("autoplay") == "1"
    muted = params.get("mute") == "1" or params.get("muted") == "1"
    if (autoplay and muted) or params.get("background") == "1":
        signals.append(VideoSignal("embed_autoplay_muted"))
    if params.get("loop") == "1" and params.get("controls") == "0":
        signals.append(VideoSignal("embed_loop_no_controls"))


def _check_play_button(element: Tag, signals: List[VideoSignal]) -> None:
    for sibling in element.find_next_siblings(limit=5) + element.find_previous_siblings(limit=5):
        if any(_PLAY_CLASS_RE.search(c) for c in _classes(sibling)) or sibling.get("role") == "button":
            signals.append(VideoSignal("play_button_sibling", sibling.name or ""))
            return


_CHECKS = (
    _check_data_attributes,
    _check_class_conventions,
    _check_positioning,
    _check_native_attributes,
    _check_layering,
    _check_page_builder,
    _check_embed_params,
    _check_play_button,
)


def collect_video_signals(element: Tag) -> List[VideoSignal]:
    """Run every signal category against one element."""
    signals: List[VideoSignal] = []
    for check in _CHECKS:
        check(element, signals)
    return signals


def classify_video(element: Tag, extra_signals: Optional[List[VideoSignal]] = None) -> VideoClassification:
    """
    Classify a <video> or <iframe> element.

    Args:
        element: The media element
        extra_signals: Additional externally-detected signals

    Returns:
        VideoClassification with type, confidence and fired signals
    """
    signals = collect_video_signals(element)
    if extra_signals:
        signals.extend(extra_signals)
    return score_video_signals(signals)
