"""
URL pattern matching for asset-level overrides.

Pattern forms:
- glob: "**" matches anything, "*" matches within one path segment,
  "?" matches one character. Example: "/blog/**", "*.example.com/*.jpg"
- regex: prefixed with "re:", e.g. "re:\\.(png|jpe?g)$"

A pattern is tested against the full URL and against its path.
Malformed or empty patterns are accepted but match nothing; they never raise.
"""

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List, Optional, Pattern, Protocol
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

REGEX_PREFIX = "re:"


class HasUrlPattern(Protocol):
    url_pattern: str


def glob_to_regex(pattern: str) -> str:
    """Translate a glob pattern into an anchored regex source string."""
    out = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "*":
            if pattern[i:i + 2] == "**":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif char == "?":
            out.append(".")
        else:
            out.append(re.escape(char))
        i += 1
    return "^" + "".join(out) + "$"


@lru_cache(maxsize=512)
def compile_url_pattern(pattern: str) -> Optional[Pattern[str]]:
    """
    Compile a URL pattern.

    Returns:
        Compiled regex, or None if the pattern is empty or malformed
    """
    if not pattern or not pattern.strip():
        return None

    pattern = pattern.strip()
    if pattern.startswith(REGEX_PREFIX):
        source = pattern[len(REGEX_PREFIX):]
    else:
        source = glob_to_regex(pattern)

    try:
        return re.compile(source)
    except re.error as e:
        logger.warning(f"[Settings] Ignoring malformed URL pattern {pattern!r}: {e}")
        return None


def matches_url(pattern: str, url: str) -> bool:
    """Check if a URL matches a pattern. Malformed patterns never match."""
    compiled = compile_url_pattern(pattern)
    if compiled is None or not url:
        return False

    if compiled.search(url):
        return True

    path = urlsplit(url).path
    return bool(path) and path != url and compiled.search(path) is not None


def matching_overrides(overrides: Iterable[HasUrlPattern], url: str) -> List[HasUrlPattern]:
    """Return overrides whose pattern matches url, in declaration order."""
    return [override for override in overrides if matches_url(override.url_pattern, url)]


@dataclass(frozen=True)
class AssetOverride:
    """A sparse settings override scoped to URLs matching url_pattern."""

    id: str
    site_id: str
    url_pattern: str
    settings: dict
    position: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "site_id": self.site_id,
            "url_pattern": self.url_pattern,
            "settings": self.settings,
            "position": self.position,
        }
