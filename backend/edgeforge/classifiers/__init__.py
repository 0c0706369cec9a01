"""
Heuristic asset classifiers.

Pure functions over DOM elements that select pipeline branches:
video type, third-party widget identity, LCP candidate and
above-fold/critical placement. Results are never persisted.
"""

from .signals import (
    VideoType,
    VideoSignal,
    VideoClassification,
    VIDEO_SIGNAL_WEIGHTS,
    VIDEO_SIGNAL_BRANCH,
    DEFAULT_VIDEO_TYPE,
    score_video_signals,
)
from .video import classify_video, collect_video_signals
from .widgets import (
    WidgetCategory,
    WidgetFingerprint,
    WidgetMatch,
    WIDGET_REGISTRY,
    classify_widget,
    classify_widgets,
    get_fingerprint,
)
from .placement import detect_lcp_image, in_hero_landmark, is_above_fold, is_critical

__all__ = [
    "VideoType",
    "VideoSignal",
    "VideoClassification",
    "VIDEO_SIGNAL_WEIGHTS",
    "VIDEO_SIGNAL_BRANCH",
    "DEFAULT_VIDEO_TYPE",
    "score_video_signals",
    "classify_video",
    "collect_video_signals",
    "WidgetCategory",
    "WidgetFingerprint",
    "WidgetMatch",
    "WIDGET_REGISTRY",
    "classify_widget",
    "classify_widgets",
    "get_fingerprint",
    "detect_lcp_image",
    "in_hero_landmark",
    "is_above_fold",
    "is_critical",
]
