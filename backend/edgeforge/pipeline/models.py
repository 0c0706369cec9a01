"""
Build data models.

A Build is one run of the optimization pipeline for one site. Its status is
validated externally (see state.py); the orchestrator is the only writer
while the build is in flight, the build queue writes it on cancellation.

settings_snapshot is the resolved settings tree taken when the build starts.
It is never re-read from the settings store mid-build.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..optimizers.base import ByteStats
from ..settings import DEFAULT_SETTINGS, OptimizationSettings


class BuildStatus(str, Enum):
    QUEUED = "queued"  # Persisted, waiting for a worker
    CRAWLING = "crawling"  # Fetching pages from the crawl collaborator
    OPTIMIZING = "optimizing"  # Running optimizer stages
    DEPLOYING = "deploying"  # Handing the output tree to the deployer
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BuildScope(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    SINGLE_PAGE = "single_page"


class Stage(str, Enum):
    """Optimizer stages, declared in execution order."""

    HTML = "html"
    CSS = "css"
    JS = "js"
    FONTS = "fonts"
    IMAGES = "images"
    VIDEO_FACADES = "video_facades"
    WIDGET_FACADES = "widget_facades"
    SEO = "seo"
    RESOURCE_HINTS = "resource_hints"
    MIGRATION = "migration"
    FINALIZE = "finalize"


STAGE_ORDER: List[Stage] = list(Stage)


def stages_after(stage: Optional[Stage]) -> List[Stage]:
    """Stages still to run once `stage` has completed (all of them for None)."""
    if stage is None:
        return list(STAGE_ORDER)
    return STAGE_ORDER[STAGE_ORDER.index(stage) + 1:]


class BuildStats(BaseModel):
    """Aggregate byte and count statistics for one build."""

    model_config = ConfigDict(extra="forbid")

    js_original_bytes: int = 0
    js_optimized_bytes: int = 0
    css_original_bytes: int = 0
    css_optimized_bytes: int = 0
    image_original_bytes: int = 0
    image_optimized_bytes: int = 0
    facades_applied: int = 0
    scripts_removed: int = 0
    pages_processed: int = 0
    fonts_self_hosted: int = 0
    svg_symbols: int = 0
    meta_tags_injected: int = 0
    images_migrated: int = 0
    files_failed: int = 0

    def add_js(self, stats: ByteStats) -> None:
        self.js_original_bytes += stats.original_bytes
        self.js_optimized_bytes += stats.optimized_bytes

    def add_css(self, stats: ByteStats) -> None:
        self.css_original_bytes += stats.original_bytes
        self.css_optimized_bytes += stats.optimized_bytes

    def add_images(self, stats: ByteStats) -> None:
        self.image_original_bytes += stats.original_bytes
        self.image_optimized_bytes += stats.optimized_bytes

    @property
    def total_saved_bytes(self) -> int:
        return (
            (self.js_original_bytes - self.js_optimized_bytes)
            + (self.css_original_bytes - self.css_optimized_bytes)
            + (self.image_original_bytes - self.image_optimized_bytes)
        )


class Build(BaseModel):
    """
    One optimization pipeline run.

    started_at is set once, when the build leaves `queued`; completed_at is
    set once, on the terminal transition. Neither is ever overwritten.
    """

    model_config = ConfigDict(extra="forbid")

    # Identity
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    site_id: str

    # Scope
    scope: BuildScope = BuildScope.FULL
    pages: List[str] = Field(default_factory=list)  # Page paths for partial/single_page

    # State
    status: BuildStatus = BuildStatus.QUEUED
    current_stage: Optional[Stage] = None
    attempt: int = 0

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Outcome
    stats: BuildStats = Field(default_factory=BuildStats)
    settings_snapshot: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    error_details: Dict[str, Any] = Field(default_factory=dict)
    deploy_url: Optional[str] = None

    @property
    def settings(self) -> OptimizationSettings:
        """The frozen resolved settings this build runs with."""
        if not self.settings_snapshot:
            return DEFAULT_SETTINGS
        return OptimizationSettings.model_validate(self.settings_snapshot)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Build":
        return cls.model_validate(data)
