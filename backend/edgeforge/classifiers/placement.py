"""
Placement heuristics for images: LCP candidate, above-fold, critical.

Above-fold: one of the first EAGER_IMAGE_COUNT images of the page, or inside
a header/hero landmark. Critical: brand/identity assets (in <head>, logos,
hero imagery).
"""

import re
from typing import Optional

from bs4 import BeautifulSoup, Tag

# Images at document positions below this index are loaded eagerly
EAGER_IMAGE_COUNT = 3

_HERO_TOKEN_RE = re.compile(r"(^|[-_\s])(hero|banner|intro|masthead|jumbotron)([-_\s]|$)", re.I)
_LOGO_RE = re.compile(r"logo", re.I)

LCP_CONTAINER_SELECTORS = (
    "main img[src]",
    "article img[src]",
    "header img[src]",
    ".hero img[src]",
    ".banner img[src]",
    '[class*="hero"] img[src]',
)


def _tokens(element: Tag) -> str:
    classes = element.get("class") or []
    if isinstance(classes, str):
        classes = classes.split()
    return " ".join(list(classes) + [element.get("id") or ""])


def in_hero_landmark(element: Tag) -> bool:
    """True if the element sits inside <header> or a hero/banner/intro block."""
    for parent in element.parents:
        if not isinstance(parent, Tag) or parent.name == "[document]":
            continue
        if parent.name == "header":
            return True
        if _HERO_TOKEN_RE.search(_tokens(parent)):
            return True
    return False


def is_above_fold(element: Tag, index: int) -> bool:
    """
    Args:
        element: The image element
        index: Zero-based position of the image among the page's images
    """
    return index < EAGER_IMAGE_COUNT or in_hero_landmark(element)


def is_critical(element: Tag) -> bool:
    """Logo, hero or head-context image."""
    if element.find_parent("head") is not None or element.name in ("meta", "link"):
        return True
    haystack = " ".join([
        element.get("alt") or "",
        _tokens(element),
        element.get("src") or "",
    ])
    if _LOGO_RE.search(haystack):
        return True
    return in_hero_landmark(element)


def _first_src(srcset: str) -> Optional[str]:
    first = srcset.split(",")[0].strip()
    return first.split()[0] if first else None


def detect_lcp_image(soup: BeautifulSoup) -> Optional[str]:
    """
    Pick the likely Largest Contentful Paint image.

    Priority: first image in main/article/header/hero containers (preferring a
    modern <picture> source), then the first image on the page.
    """
    for selector in LCP_CONTAINER_SELECTORS:
        img = soup.select_one(selector)
        if img is None:
            continue
        src = img.get("src") or ""
        if not src or src.startswith("data:"):
            continue
        picture = img.find_parent("picture")
        if picture is not None:
            for mime in ("image/avif", "image/webp"):
                source = picture.find("source", attrs={"type": mime})
                if source is not None and source.get("srcset"):
                    candidate = _first_src(source["srcset"])
                    if candidate:
                        return candidate
        return src

    img = soup.find("img", src=True)
    if img is not None and not img["src"].startswith("data:"):
        return img["src"]
    return None
