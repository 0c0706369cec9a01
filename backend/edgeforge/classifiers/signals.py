"""
Named signal weights for video classification.

Weights live in lookup tables (never inline literals) so thresholds are
testable without parsing any HTML. Each signal votes for exactly one branch.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List


class VideoType(str, Enum):
    """Pipeline branch selected for a video element."""

    BACKGROUND = "background"  # Keep muted autoplay layer, no facade
    CLICK_TO_PLAY = "click-to-play"  # Replace with a facade / lazy player


# Safer branch: never silently autoplay on a tie or when nothing is known
DEFAULT_VIDEO_TYPE = VideoType.CLICK_TO_PLAY

# Confidence reported when no signal fired at all
NO_SIGNAL_CONFIDENCE = 0.5


VIDEO_SIGNAL_WEIGHTS: Dict[str, int] = {
    # Explicit markup conventions
    "data_attribute": 3,
    "class_convention": 3,
    # CSS layering
    "full_bleed_position": 4,
    "partial_position": 2,
    "negative_z_index": 3,
    "overlay_sibling": 2,
    # Native <video> attributes
    "autoplay_muted_loop": 5,
    "native_controls": 5,
    "poster_image": 1,
    # Page builder background-video markup
    "page_builder_markup": 4,
    # Platform embed URL parameters
    "embed_autoplay_muted": 3,
    "embed_loop_no_controls": 2,
    # Visible play affordance
    "play_button_sibling": 3,
}

VIDEO_SIGNAL_BRANCH: Dict[str, VideoType] = {
    "data_attribute": VideoType.BACKGROUND,
    "class_convention": VideoType.BACKGROUND,
    "full_bleed_position": VideoType.BACKGROUND,
    "partial_position": VideoType.BACKGROUND,
    "negative_z_index": VideoType.BACKGROUND,
    "overlay_sibling": VideoType.BACKGROUND,
    "autoplay_muted_loop": VideoType.BACKGROUND,
    "native_controls": VideoType.CLICK_TO_PLAY,
    "poster_image": VideoType.CLICK_TO_PLAY,
    "page_builder_markup": VideoType.BACKGROUND,
    "embed_autoplay_muted": VideoType.BACKGROUND,
    "embed_loop_no_controls": VideoType.BACKGROUND,
    "play_button_sibling": VideoType.CLICK_TO_PLAY,
}

BACKGROUND_SIGNALS: FrozenSet[str] = frozenset(
    name for name, branch in VIDEO_SIGNAL_BRANCH.items() if branch is VideoType.BACKGROUND
)


@dataclass(frozen=True)
class VideoSignal:
    """One fired signal, with the detail that triggered it."""

    name: str
    detail: str = ""

    @property
    def weight(self) -> int:
        return VIDEO_SIGNAL_WEIGHTS[self.name]

    @property
    def branch(self) -> VideoType:
        return VIDEO_SIGNAL_BRANCH[self.name]


@dataclass(frozen=True)
class VideoClassification:
    """Per-element decision. Never persisted; only selects a pipeline branch."""

    type: VideoType
    confidence: float
    signals: List[VideoSignal]
    background_score: int = 0
    click_to_play_score: int = 0

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "confidence": self.confidence,
            "signals": [f"{s.name}:{s.detail}" if s.detail else s.name for s in self.signals],
            "background_score": self.background_score,
            "click_to_play_score": self.click_to_play_score,
        }


def score_video_signals(signals: Iterable[VideoSignal]) -> VideoClassification:
    """
    Turn fired signals into a decision.

    Background wins only with a strictly higher score; ties and the absence
    of signals fall back to DEFAULT_VIDEO_TYPE.
    """
    signals = list(signals)
    background = sum(s.weight for s in signals if s.branch is VideoType.BACKGROUND)
    click_to_play = sum(s.weight for s in signals if s.branch is VideoType.CLICK_TO_PLAY)
    total = background + click_to_play

    video_type = VideoType.BACKGROUND if background > click_to_play else DEFAULT_VIDEO_TYPE
    if total == 0:
        confidence = NO_SIGNAL_CONFIDENCE
    else:
        confidence = round(max(background, click_to_play) / total, 3)

    return VideoClassification(
        type=video_type,
        confidence=confidence,
        signals=signals,
        background_score=background,
        click_to_play_score=click_to_play,
    )
