"""
Image URL replacement.

Rewrites every reference shape found by the scanner to its delivery URL,
choosing a size variant per context:

    <img src>, lazy data-src        -> public
    srcset entries <= 640w          -> thumb (wider entries -> public)
    og:image / twitter:image        -> og
    icon links                      -> icon
    image preload links             -> public
    backgrounds (inline, <style>,
      page-builder data attributes) -> bg-desktop
    content: url(...)               -> public

Lazy-load attributes become native src/srcset. Missing width/height are
filled from the migration result, then every <img> gets a loading priority:
the first EAGER_IMAGE_COUNT images and anything in a header/hero landmark are
eager with fetchpriority=high, the rest lazy with async decode.

A final sweep over the serialized document replaces any remaining resolved
URL with a successful result, so no migrated source URL survives.
"""

import html as html_lib
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from bs4 import BeautifulSoup

from ..classifiers.placement import is_above_fold
from .content_store import variant_url
from .models import ImageRecord, MigrationResult
from .scanner import (
    BUILDER_BACKGROUND_ATTRIBUTES,
    ICON_RELS,
    LAZY_SRC_ATTRIBUTES,
    META_IMAGE_KEYS,
    resolve_url,
)

logger = logging.getLogger(__name__)

THUMB_MAX_WIDTH = 640
LAZY_STATE_ATTRIBUTES = ("data-lazyloaded", "data-ll-status", "data-lazy-loaded")

_DECLARATION_RE = re.compile(r"([\w-]+)(\s*:\s*)([^;{}]*)")
_URL_TOKEN_RE = re.compile(r"url\(\s*(['\"]?)([^'\")\s]+)\1\s*\)", re.I)
# End of a URL token: a quote, whitespace, a closing paren, a comma or a tag bracket
_URL_END = r"(?=[\"'\s),<>]|&quot;|&#x27;|&#39;|$)"


@dataclass
class ReplacementOutcome:
    html: str
    replaced: int = 0
    dimensions_added: int = 0


def srcset_variant(descriptor: str) -> str:
    descriptor = descriptor.strip().lower()
    if descriptor.endswith("w") and descriptor[:-1].isdigit():
        return "thumb" if int(descriptor[:-1]) <= THUMB_MAX_WIDTH else "public"
    return "public"


class _Rewriter:
    def __init__(self, url_map: Dict[str, MigrationResult], base_url: Optional[str]):
        self.url_map = url_map
        self.base_url = base_url
        self.replaced = 0

    def lookup(self, url: str) -> Optional[MigrationResult]:
        url = (url or "").strip()
        if not url:
            return None
        return self.url_map.get(url) or self.url_map.get(resolve_url(url, self.base_url))

    def url(self, url: str, variant: str) -> Optional[str]:
        result = self.lookup(url)
        if result is None:
            return None
        self.replaced += 1
        return variant_url(result.delivery_url, variant)

    def srcset(self, srcset: str) -> str:
        entries = []
        for part in srcset.split(","):
            pieces = part.strip().split()
            if not pieces:
                continue
            descriptor = pieces[1] if len(pieces) > 1 else ""
            new = self.url(pieces[0], srcset_variant(descriptor))
            entries.append(f"{new or pieces[0]} {descriptor}".strip())
        return ", ".join(entries)

    def css(self, css: str) -> str:
        def declaration(match: "re.Match[str]") -> str:
            prop = match.group(1).lower()
            variant = "bg-desktop" if prop.startswith("background") else "public"

            def token(url_match: "re.Match[str]") -> str:
                new = self.url(url_match.group(2), variant)
                if new is None:
                    return url_match.group(0)
                quote = url_match.group(1)
                return f"url({quote}{new}{quote})"

            return match.group(1) + match.group(2) + _URL_TOKEN_RE.sub(token, match.group(3))

        return _DECLARATION_RE.sub(declaration, css)


def build_url_map(records: Iterable[ImageRecord], results: Iterable[MigrationResult]) -> Dict[str, MigrationResult]:
    """Map original and resolved URLs to their successful migration result."""
    by_url = {r.url: r for r in results if r.succeeded}
    url_map: Dict[str, MigrationResult] = dict(by_url)
    for record in records:
        result = by_url.get(record.resolved_url)
        if result is not None:
            url_map.setdefault(record.original_url, result)
    return url_map


def _rewrite_images(soup: BeautifulSoup, rw: _Rewriter) -> None:
    for img in soup.find_all("img"):
        src = img.get("src")
        if src:
            new = rw.url(src, "public")
            if new:
                img["src"] = new

        for attr in LAZY_SRC_ATTRIBUTES:
            value = img.get(attr)
            if not value:
                continue
            img["src"] = rw.url(value, "public") or value
            del img[attr]

        if img.get("srcset"):
            img["srcset"] = rw.srcset(img["srcset"])
        if img.get("data-srcset"):
            img["srcset"] = rw.srcset(img["data-srcset"])
            del img["data-srcset"]

        for attr in LAZY_STATE_ATTRIBUTES:
            if img.has_attr(attr):
                del img[attr]

    for source in soup.select("picture source[srcset]"):
        source["srcset"] = rw.srcset(source["srcset"])


def _rewrite_backgrounds(soup: BeautifulSoup, rw: _Rewriter) -> None:
    for element in soup.find_all(style=True):
        element["style"] = rw.css(element["style"])

    for element in soup.find_all(lambda tag: any(tag.has_attr(a) for a in BUILDER_BACKGROUND_ATTRIBUTES)):
        for attr in BUILDER_BACKGROUND_ATTRIBUTES:
            value = (element.get(attr) or "").strip()
            if not value:
                continue
            if _URL_TOKEN_RE.search(value):
                element[attr] = rw.css(f"background-image: {value}").split(":", 1)[1].strip()
            else:
                element[attr] = rw.url(value, "bg-desktop") or value

    for style in soup.find_all("style"):
        css = style.string or ""
        new_css = rw.css(css)
        if new_css != css:
            style.string = new_css


def _rewrite_head_images(soup: BeautifulSoup, rw: _Rewriter) -> None:
    for attr, key in META_IMAGE_KEYS:
        for meta in soup.find_all("meta", attrs={attr: key}):
            new = rw.url(meta.get("content") or "", "og")
            if new:
                meta["content"] = new

    for link in soup.find_all("link", href=True):
        rel = link.get("rel") or []
        rels = rel.split() if isinstance(rel, str) else rel
        if any(r.lower() in ICON_RELS for r in rels):
            new = rw.url(link["href"], "icon")
            if new:
                link["href"] = new
        elif "preload" in rels and link.get("as") == "image":
            new = rw.url(link["href"], "public")
            if new:
                link["href"] = new
                if link.has_attr("type"):
                    del link["type"]


def _add_dimensions(soup: BeautifulSoup, rw: _Rewriter) -> int:
    added = 0
    delivery_results = {r.delivery_url: r for r in rw.url_map.values()}
    for img in soup.find_all("img"):
        if img.get("width") and img.get("height"):
            continue
        src = img.get("src") or ""
        result = delivery_results.get(src) or rw.lookup(src)
        if result is None or not result.width or not result.height:
            continue
        if not img.get("width"):
            img["width"] = str(result.width)
            added += 1
        if not img.get("height"):
            img["height"] = str(result.height)
            added += 1
    return added


def apply_loading_priority(soup: BeautifulSoup) -> None:
    for index, img in enumerate(soup.find_all("img")):
        if is_above_fold(img, index):
            img["fetchpriority"] = "high"
            img["loading"] = "eager"
            if img.has_attr("decoding"):
                del img["decoding"]
        else:
            if not img.get("loading"):
                img["loading"] = "lazy"
            if not img.get("decoding"):
                img["decoding"] = "async"
            if img.has_attr("fetchpriority"):
                del img["fetchpriority"]


def _sweep(markup: str, url_map: Dict[str, MigrationResult]) -> Tuple[str, int]:
    replaced = 0
    for url in sorted(url_map, key=len, reverse=True):
        if not url.startswith(("http://", "https://")):
            continue
        public = variant_url(url_map[url].delivery_url, "public")
        for form in {url, html_lib.escape(url, quote=True)}:
            pattern = re.compile(re.escape(form) + _URL_END)
            markup, count = pattern.subn(lambda _m: public, markup)
            replaced += count
    return markup, replaced


def replace_all_urls(
    html: str,
    records: Iterable[ImageRecord],
    results: Iterable[MigrationResult],
    base_url: Optional[str] = None,
) -> ReplacementOutcome:
    """
    Rewrite every image reference in a page to its delivery URL.

    Args:
        html: Page markup
        records: Scanner records for this page (maps relative originals)
        results: Migration results; failed/skipped ones leave the source URL
        base_url: Page URL for resolving references the records don't cover

    Returns:
        ReplacementOutcome with the new markup and counters
    """
    url_map = build_url_map(records, results)
    soup = BeautifulSoup(html, "html.parser")
    rw = _Rewriter(url_map, base_url)

    _rewrite_images(soup, rw)
    _rewrite_backgrounds(soup, rw)
    _rewrite_head_images(soup, rw)
    dimensions_added = _add_dimensions(soup, rw)
    apply_loading_priority(soup)

    markup, swept = _sweep(str(soup), url_map)
    if swept:
        logger.debug(f"[Replacer] Swept {swept} leftover reference(s)")
    return ReplacementOutcome(html=markup, replaced=rw.replaced + swept, dimensions_added=dimensions_added)
