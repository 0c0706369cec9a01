"""
SEO tag hygiene.

Ensures, in place:
- <title> (first <h1>, else default_title, suffixed with site_name)
- meta description (first substantial paragraph, else default_description)
- viewport (zoom-blocking viewports are reset)
- canonical link (site_url + page path, else the crawled page URL)
- robots meta (index, follow); a noindex/nofollow is only lifted when
  seo.fix_robots_noindex is set
- img alt text derived from title / filename / class
- OpenGraph and Twitter card tags that are not already present

Existing non-empty tags are never overwritten.
"""

import logging
import posixpath
import re
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from ..settings.schema import SeoSettings
from .base import ensure_head

logger = logging.getLogger(__name__)

DEFAULT_VIEWPORT = "width=device-width, initial-scale=1"
DEFAULT_ROBOTS = "index, follow"
FALLBACK_TITLE = "Page Title"
DESCRIPTION_MIN_CHARS = 20
DESCRIPTION_MAX_CHARS = 160

_ZOOM_BLOCKING_RE = re.compile(r"user-scalable\s*=\s*(no|0)|maximum-scale\s*=\s*1(\.0)?\b", re.I)


@dataclass
class SeoResult:
    meta_tags_injected: int = 0
    alt_attributes_added: int = 0
    social_tags_injected: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "meta_tags_injected": self.meta_tags_injected,
            "alt_attributes_added": self.alt_attributes_added,
            "social_tags_injected": self.social_tags_injected,
        }


def _meta(soup: BeautifulSoup, attr: str, key: str) -> Optional[Tag]:
    return soup.find("meta", attrs={attr: key})


def ensure_title(soup: BeautifulSoup, settings: SeoSettings) -> int:
    title = soup.find("title")
    if title is not None and title.get_text(strip=True):
        return 0

    h1 = soup.find("h1")
    base = (h1.get_text(" ", strip=True) if h1 else "") or settings.default_title or FALLBACK_TITLE
    text = f"{base} | {settings.site_name}" if settings.site_name else base

    if title is None:
        title = soup.new_tag("title")
        ensure_head(soup).insert(0, title)
    title.string = text
    return 1


def ensure_meta_description(soup: BeautifulSoup, settings: SeoSettings) -> int:
    meta = _meta(soup, "name", "description")
    if meta is not None and (meta.get("content") or "").strip():
        return 0

    description = ""
    for paragraph in soup.find_all("p"):
        text = paragraph.get_text(" ", strip=True)
        if DESCRIPTION_MIN_CHARS < len(text):
            description = text
            break
    description = (description or settings.default_description)[:DESCRIPTION_MAX_CHARS]
    if not description:
        return 0

    if meta is None:
        meta = soup.new_tag("meta", attrs={"name": "description"})
        ensure_head(soup).append(meta)
    meta["content"] = description
    return 1


def ensure_viewport(soup: BeautifulSoup) -> int:
    meta = _meta(soup, "name", "viewport")
    if meta is None:
        ensure_head(soup).insert(0, soup.new_tag("meta", attrs={"name": "viewport", "content": DEFAULT_VIEWPORT}))
        return 1
    if _ZOOM_BLOCKING_RE.search(meta.get("content") or ""):
        meta["content"] = DEFAULT_VIEWPORT
        return 1
    return 0


def canonical_url(settings: SeoSettings, page_url: str) -> str:
    if not settings.site_url:
        return page_url
    path = urlsplit(page_url).path or "/"
    return urljoin(settings.site_url.rstrip("/") + "/", path.lstrip("/"))


def ensure_canonical(soup: BeautifulSoup, settings: SeoSettings, page_url: str) -> int:
    if soup.find("link", rel="canonical") is not None or not (page_url or settings.site_url):
        return 0
    ensure_head(soup).append(soup.new_tag("link", rel="canonical", href=canonical_url(settings, page_url)))
    return 1


def ensure_robots(soup: BeautifulSoup, settings: SeoSettings) -> int:
    meta = _meta(soup, "name", "robots")
    if meta is None:
        ensure_head(soup).append(soup.new_tag("meta", attrs={"name": "robots", "content": DEFAULT_ROBOTS}))
        return 1
    content = (meta.get("content") or "").lower()
    if settings.fix_robots_noindex and ("noindex" in content or "nofollow" in content):
        logger.info(f"[SEO] Lifting robots directive {content!r}")
        meta["content"] = DEFAULT_ROBOTS
        return 1
    return 0


def generate_alt_text(img: Tag) -> str:
    if img.get("title"):
        return img["title"].strip()
    src = img.get("src") or img.get("data-src") or ""
    stem = posixpath.splitext(posixpath.basename(urlsplit(src).path))[0]
    cleaned = re.sub(r"\s+", " ", re.sub(r"\d+", "", re.sub(r"[-_]+", " ", stem))).strip()
    if len(cleaned) > 2:
        return cleaned[0].upper() + cleaned[1:]
    classes = " ".join(img.get("class") or [])
    if "logo" in classes:
        return "Company logo"
    if "icon" in classes:
        return "Icon"
    return "Image"


def ensure_alt_text(soup: BeautifulSoup, settings: SeoSettings) -> int:
    added = 0
    for img in soup.find_all("img"):
        if img.get("alt"):
            continue
        # An explicit empty alt on a presentational image is intentional
        if img.has_attr("alt") and img.get("role") == "presentation":
            continue
        img["alt"] = generate_alt_text(img) if settings.auto_generate_alt_text else ""
        added += 1
    return added


def _absolute(url: str, settings: SeoSettings, page_url: str) -> str:
    return urljoin(settings.site_url or page_url, url) if (settings.site_url or page_url) else url


def _add_social(soup: BeautifulSoup, attr: str, key: str, content: str) -> int:
    if not content or _meta(soup, attr, key) is not None:
        return 0
    ensure_head(soup).append(soup.new_tag("meta", attrs={attr: key, "content": content}))
    return 1


def ensure_social_tags(soup: BeautifulSoup, settings: SeoSettings, page_url: str) -> int:
    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""
    description_tag = _meta(soup, "name", "description")
    description = description_tag.get("content", "") if description_tag else ""
    canonical = soup.find("link", rel="canonical")
    url = canonical["href"] if canonical is not None and canonical.get("href") else page_url
    first_image = soup.find("img", src=True)
    image = _absolute(first_image["src"], settings, page_url) if first_image else ""

    added = 0
    if settings.open_graph_tags:
        added += _add_social(soup, "property", "og:title", title)
        added += _add_social(soup, "property", "og:description", description)
        added += _add_social(soup, "property", "og:url", url)
        added += _add_social(soup, "property", "og:type", "website")
        added += _add_social(soup, "property", "og:site_name", settings.site_name)
        added += _add_social(soup, "property", "og:image", image)
    if settings.twitter_card:
        added += _add_social(soup, "name", "twitter:card", "summary_large_image")
        added += _add_social(soup, "name", "twitter:title", title)
        added += _add_social(soup, "name", "twitter:description", description)
        added += _add_social(soup, "name", "twitter:image", image)
    return added


def optimize_seo(soup: BeautifulSoup, settings: SeoSettings, page_url: str = "") -> SeoResult:
    """Apply every enabled SEO fix to one parsed page."""
    result = SeoResult()
    if not settings.enabled:
        return result

    if settings.meta_tag_injection:
        result.meta_tags_injected += ensure_title(soup, settings)
        result.meta_tags_injected += ensure_meta_description(soup, settings)
        result.meta_tags_injected += ensure_viewport(soup)
        result.meta_tags_injected += ensure_canonical(soup, settings, page_url)
        result.meta_tags_injected += ensure_robots(soup, settings)

    result.alt_attributes_added = ensure_alt_text(soup, settings)
    result.social_tags_injected = ensure_social_tags(soup, settings, page_url)
    return result
