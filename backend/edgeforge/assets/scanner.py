"""
Image reference scanner.

Walks every reference shape in a page:
- <img src>, lazy-load data attributes, srcset / data-srcset
- inline style backgrounds and page-builder background data attributes
- <style> block backgrounds and generated content (content: url())
- <picture><source srcset>
- og:image / twitter:image meta, icon links

Every URL is resolved against the page URL. data:, blob: and fragment
references are skipped, as are SKIP_DOMAINS (analytics, font hosts and
existing CDN delivery hosts).
"""

import logging
import re
from typing import Iterable, List, Optional, Set, Tuple
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from ..classifiers.placement import in_hero_landmark, is_above_fold, is_critical
from .models import ImageRecord, LocationType, record_id

logger = logging.getLogger(__name__)

SKIP_DOMAINS: Tuple[str, ...] = (
    "gravatar.com",
    "google.com",
    "googleapis.com",
    "gstatic.com",
    "googletagmanager.com",
    "google-analytics.com",
    "imagedelivery.net",
    "cloudflare.com",
    "cloudflareinsights.com",
)

LAZY_SRC_ATTRIBUTES = ("data-src", "data-lazy-src", "data-ll-src")
BUILDER_BACKGROUND_ATTRIBUTES = ("data-bg", "data-background-image", "data-background")
ICON_RELS = ("icon", "shortcut", "apple-touch-icon")
META_IMAGE_KEYS = (("property", "og:image"), ("name", "twitter:image"))

BACKGROUND_URL_RE = re.compile(r"background(?:-image)?\s*:[^;{}]*?url\(\s*['\"]?([^'\")\s]+)['\"]?\s*\)", re.I)
CONTENT_URL_RE = re.compile(r"content\s*:\s*url\(\s*['\"]?([^'\")\s]+)['\"]?\s*\)", re.I)
_BARE_URL_RE = re.compile(r"url\(\s*['\"]?([^'\")\s]+)['\"]?\s*\)", re.I)


def resolve_url(url: str, base_url: Optional[str]) -> str:
    url = url.strip()
    if url.startswith("//"):
        return "https:" + url
    if url.startswith(("http://", "https://")):
        return url
    return urljoin(base_url, url) if base_url else url


def should_skip(url: str, skip_domains: Iterable[str] = SKIP_DOMAINS) -> bool:
    if not url or url.startswith(("data:", "blob:", "#")):
        return True
    host = (urlsplit(url).hostname or "").lower()
    return any(host == d or host.endswith("." + d) for d in skip_domains)


def parse_srcset(srcset: str) -> List[Tuple[str, str]]:
    """[(url, descriptor)] for a srcset value, dropping data: entries."""
    entries = []
    for part in srcset.split(","):
        pieces = part.strip().split()
        if not pieces or pieces[0].startswith("data:"):
            continue
        entries.append((pieces[0], pieces[1] if len(pieces) > 1 else ""))
    return entries


def _int_attr(element: Tag, name: str) -> Optional[int]:
    value = (element.get(name) or "").strip()
    return int(value) if value.isdigit() and int(value) > 0 else None


class _Collector:
    def __init__(self, base_url: str, page_path: str, skip_domains: Tuple[str, ...]):
        self.base_url = base_url
        self.page_path = page_path
        self.skip_domains = skip_domains
        self.records: List[ImageRecord] = []
        self._seen: Set[Tuple[str, LocationType]] = set()

    def add(
        self,
        url: str,
        location: LocationType,
        attribute: str,
        element: Optional[Tag] = None,
        index: Optional[int] = None,
        descriptor: str = "",
        critical: Optional[bool] = None,
    ) -> None:
        if not url or url.startswith(("data:", "blob:", "#")):
            return
        resolved = resolve_url(url, self.base_url)
        if should_skip(resolved, self.skip_domains) or not resolved.startswith(("http://", "https://")):
            return
        key = (resolved, location)
        if key in self._seen:
            return
        self._seen.add(key)

        above = False
        if element is not None:
            above = is_above_fold(element, index) if index is not None else in_hero_landmark(element)
        if critical is None:
            critical = is_critical(element) if element is not None else False
        self.records.append(ImageRecord(
            id=record_id(resolved),
            original_url=url,
            resolved_url=resolved,
            location_type=location,
            page_path=self.page_path,
            attribute=attribute,
            width=_int_attr(element, "width") if element is not None and element.name == "img" else None,
            height=_int_attr(element, "height") if element is not None and element.name == "img" else None,
            above_fold=above,
            critical=critical,
            descriptor=descriptor,
        ))


def scan(
    html: str,
    base_url: str,
    page_path: str = "/",
    skip_domains: Iterable[str] = (),
) -> List[ImageRecord]:
    """
    Collect every image reference in a page.

    Args:
        html: Page markup
        base_url: Absolute URL of the page (relative references resolve against it)
        page_path: Site-relative page path recorded on each record
        skip_domains: Extra hosts to ignore, on top of SKIP_DOMAINS

    Returns:
        Records deduplicated by (resolved URL, location type), document order
    """
    soup = BeautifulSoup(html, "html.parser")
    collector = _Collector(base_url, page_path, SKIP_DOMAINS + tuple(skip_domains))
    add = collector.add

    images = soup.find_all("img")
    image_index = {id(img): i for i, img in enumerate(images)}
    for index, img in enumerate(images):
        add(img.get("src") or "", LocationType.IMG_SRC, "src", img, index)
        for attr in LAZY_SRC_ATTRIBUTES:
            add(img.get(attr) or "", LocationType.DATA_SRC, attr, img, index)
        for url, descriptor in parse_srcset(img.get("srcset") or ""):
            add(url, LocationType.IMG_SRCSET, "srcset", img, index, descriptor)
        for url, descriptor in parse_srcset(img.get("data-srcset") or ""):
            add(url, LocationType.DATA_SRCSET, "data-srcset", img, index, descriptor)

    for picture in soup.find_all("picture"):
        img = picture.find("img")
        index = image_index.get(id(img)) if img is not None else None
        for source in picture.find_all("source", srcset=True):
            for url, descriptor in parse_srcset(source["srcset"]):
                add(url, LocationType.PICTURE_SOURCE, "srcset", picture, index, descriptor)

    for element in soup.find_all(style=True):
        for url in BACKGROUND_URL_RE.findall(element["style"]):
            add(url, LocationType.CSS_BACKGROUND, "style", element)

    for element in soup.find_all(lambda tag: any(tag.has_attr(a) for a in BUILDER_BACKGROUND_ATTRIBUTES)):
        for attr in BUILDER_BACKGROUND_ATTRIBUTES:
            value = (element.get(attr) or "").strip()
            match = _BARE_URL_RE.search(value)
            add(match.group(1) if match else value, LocationType.BUILDER_BACKGROUND, attr, element)

    for style in soup.find_all("style"):
        css = style.string or style.get_text() or ""
        for url in BACKGROUND_URL_RE.findall(css):
            add(url, LocationType.STYLE_BLOCK_BACKGROUND, "background-image", critical=False)
        for url in CONTENT_URL_RE.findall(css):
            add(url, LocationType.CSS_CONTENT, "content", critical=False)

    for attr, key in META_IMAGE_KEYS:
        for meta in soup.find_all("meta", attrs={attr: key}):
            add(meta.get("content") or "", LocationType.META_OG, "content", critical=True)

    for link in soup.find_all("link", href=True):
        rels = [r.lower() for r in (link.get("rel") or [])]
        if any(r in ICON_RELS for r in rels):
            add(link["href"], LocationType.LINK_REL_ICON, "href", critical=True)

    logger.debug(f"[Scanner] {page_path}: {len(collector.records)} image reference(s)")
    return collector.records
