"""
Shared optimizer types.

Every optimizer is a pure function: (content, context, settings) -> result.
No optimizer keeps module-level mutable state, so independent files can be
processed in parallel.
"""

import hashlib
import posixpath
from dataclasses import dataclass, field
from typing import Any, Dict, List

from bs4 import BeautifulSoup, Tag

# Length of the hex digest embedded in content-addressed filenames
HASH_LENGTH = 8


def content_hash(content: bytes, length: int = HASH_LENGTH) -> str:
    return hashlib.sha256(content).hexdigest()[:length]


def hashed_filename(filename: str, content: bytes) -> str:
    """
    Content-addressed filename: "dir/name.<hash>.ext".

    Example: "css/style.css" -> "css/style.3fa9c1d2.css"
    """
    directory, base = posixpath.split(filename)
    stem, ext = posixpath.splitext(base)
    hashed = f"{stem}.{content_hash(content)}{ext}"
    return posixpath.join(directory, hashed) if directory else hashed


@dataclass
class ByteStats:
    """Original vs optimized size of one file (or an aggregate)."""

    original_bytes: int = 0
    optimized_bytes: int = 0

    @property
    def saved_bytes(self) -> int:
        return self.original_bytes - self.optimized_bytes

    def add(self, other: "ByteStats") -> None:
        self.original_bytes += other.original_bytes
        self.optimized_bytes += other.optimized_bytes

    def to_dict(self) -> Dict[str, int]:
        return {"original_bytes": self.original_bytes, "optimized_bytes": self.optimized_bytes}


@dataclass
class HtmlStepResult:
    """Outcome of an optimizer that edits a parsed page in place."""

    changed: int = 0
    facades_applied: int = 0
    scripts_removed: int = 0
    notes: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)


def ensure_head(soup: BeautifulSoup) -> Tag:
    """Return the document <head>, creating it if the page has none."""
    if soup.head is not None:
        return soup.head
    head = soup.new_tag("head")
    if soup.html is not None:
        soup.html.insert(0, head)
    else:
        soup.insert(0, head)
    return head
