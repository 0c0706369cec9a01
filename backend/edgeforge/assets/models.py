"""
Asset identity data models.

An ImageRecord is one reference to an image at one location in one page.
Several records can share a resolved URL; migration works on the unique
resolved URL and yields exactly one MigrationResult per URL.
"""

import hashlib
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class LocationType(str, Enum):
    """Where in the document an image reference was found."""

    IMG_SRC = "img-src"
    IMG_SRCSET = "img-srcset"
    CSS_BACKGROUND = "css-background"
    STYLE_BLOCK_BACKGROUND = "style-block-background"
    DATA_SRC = "data-src"
    DATA_SRCSET = "data-srcset"
    META_OG = "meta-og"
    LINK_REL_ICON = "link-rel-icon"
    PICTURE_SOURCE = "picture-source"
    CSS_CONTENT = "css-content"
    BUILDER_BACKGROUND = "builder-background"


class MigrationStatus(str, Enum):
    MIGRATED = "migrated"
    EXISTING = "existing"
    SKIPPED = "skipped"
    FAILED = "failed"


SUCCESSFUL_STATUSES = frozenset({MigrationStatus.MIGRATED, MigrationStatus.EXISTING})


def record_id(resolved_url: str) -> str:
    return "ef-img-" + hashlib.md5(resolved_url.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ImageRecord:
    id: str
    original_url: str
    resolved_url: str
    location_type: LocationType
    page_path: str = "/"
    attribute: str = ""
    width: Optional[int] = None
    height: Optional[int] = None
    above_fold: bool = False
    critical: bool = False
    descriptor: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["location_type"] = self.location_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageRecord":
        data = dict(data)
        data["location_type"] = LocationType(data["location_type"])
        return cls(**data)


@dataclass(frozen=True)
class MigrationResult:
    """
    Outcome for one unique resolved URL.

    delivery_url is the store's "public" variant URL for migrated/existing
    results and the source URL otherwise.
    """

    url: str
    status: MigrationStatus
    delivery_url: str
    key: str = ""
    width: Optional[int] = None
    height: Optional[int] = None
    failure_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESSFUL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationResult":
        data = dict(data)
        data["status"] = MigrationStatus(data["status"])
        return cls(**data)
