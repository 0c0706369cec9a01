"""
Resource hint injection and cleanup.

Order of operations:
1. Preload the LCP image (typed for webp/avif)
2. Custom preconnect and dns-prefetch domains
3. Auto-preconnect every external origin the page references
4. Remove preconnect/dns-prefetch hints for origins nothing references
5. Deduplicate preconnect/dns-prefetch/preload by (rel, href)

Hint links themselves never count as a reference to their origin.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set

from bs4 import BeautifulSoup, Tag

from ..classifiers.placement import detect_lcp_image
from ..settings.schema import ResourceHintSettings
from .base import ensure_head

logger = logging.getLogger(__name__)

HINT_RELS = ("preconnect", "dns-prefetch")
DEDUPED_RELS = ("preconnect", "dns-prefetch", "preload")


@dataclass
class ResourceHintResult:
    lcp_preload: Optional[str] = None
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    duplicates_removed: int = 0


def origin_of(url: str) -> Optional[str]:
    """scheme://host[:port] of an absolute http(s) URL, else None."""
    if not url or (url.startswith(("/", "data:", "#")) and not url.startswith("//")):
        return None
    if url.startswith("//"):
        url = "https:" + url
    scheme, sep, rest = url.partition("://")
    if not sep or scheme.lower() not in ("http", "https"):
        return None
    host = rest.split("/", 1)[0].split("?", 1)[0].split("#", 1)[0]
    if not host:
        return None
    return f"{scheme.lower()}://{host.lower()}"


def domain_to_origin(domain: str) -> Optional[str]:
    href = domain if domain.startswith(("http://", "https://")) else f"https://{domain}"
    return origin_of(href)


def _rels(link: Tag) -> List[str]:
    rel = link.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return [r.lower() for r in rel]


def _is_hint(link: Tag) -> bool:
    return any(rel in HINT_RELS for rel in _rels(link))


def referenced_origins(soup: BeautifulSoup) -> Set[str]:
    origins: Set[str] = set()

    def add(url: Optional[str]) -> None:
        origin = origin_of((url or "").strip())
        if origin:
            origins.add(origin)

    for script in soup.find_all("script", src=True):
        add(script["src"])
    for link in soup.find_all("link", href=True):
        if not _is_hint(link):
            add(link["href"])
    for img in soup.find_all("img"):
        add(img.get("src"))
        for part in (img.get("srcset") or "").split(","):
            pieces = part.strip().split()
            if pieces:
                add(pieces[0])
    for source in soup.find_all("source", srcset=True):
        for part in source["srcset"].split(","):
            pieces = part.strip().split()
            if pieces:
                add(pieces[0])
    return origins


def _has_hint(soup: BeautifulSoup, rel: str, href: str) -> bool:
    for link in soup.find_all("link", href=True):
        if rel in _rels(link) and link["href"].rstrip("/") == href.rstrip("/"):
            return True
    return False


def _prepend_hint(soup: BeautifulSoup, rel: str, href: str, **attrs: str) -> None:
    tag = soup.new_tag("link", rel=rel, href=href, attrs=attrs)
    ensure_head(soup).insert(0, tag)


def inject_resource_hints(soup: BeautifulSoup, settings: ResourceHintSettings) -> ResourceHintResult:
    """Add, prune and deduplicate resource hints in place."""
    result = ResourceHintResult()
    if not settings.enabled:
        return result

    if settings.auto_preload_lcp_image:
        lcp = detect_lcp_image(soup)
        if lcp and not _has_hint(soup, "preload", lcp):
            attrs = {"as": "image"}
            if lcp.lower().endswith(".avif"):
                attrs["type"] = "image/avif"
            elif lcp.lower().endswith(".webp"):
                attrs["type"] = "image/webp"
            _prepend_hint(soup, "preload", lcp, **attrs)
            result.lcp_preload = lcp

    custom_preconnect: Set[str] = set()
    for rel, domains in (("preconnect", settings.custom_preconnect_domains),
                         ("dns-prefetch", settings.custom_dns_prefetch_domains)):
        for domain in domains:
            origin = domain_to_origin(domain)
            if origin is None:
                logger.warning(f"[Hints] Ignoring invalid custom {rel} domain {domain!r}")
                continue
            if rel == "preconnect":
                custom_preconnect.add(origin)
            if not _has_hint(soup, rel, origin):
                _prepend_hint(soup, rel, origin)
                result.added.append(f"{rel}:{origin}")

    origins = referenced_origins(soup)
    if settings.auto_preconnect:
        for origin in sorted(origins - custom_preconnect):
            if not _has_hint(soup, "preconnect", origin):
                _prepend_hint(soup, "preconnect", origin)
                result.added.append(f"preconnect:{origin}")

    keep = origins | custom_preconnect | {
        o for o in (domain_to_origin(d) for d in settings.custom_dns_prefetch_domains) if o
    }
    if settings.remove_unused_preconnects:
        for link in soup.find_all("link", href=True):
            if not _is_hint(link):
                continue
            origin = origin_of(link["href"])
            if origin is None or origin not in keep:
                result.removed.append(link["href"])
                link.decompose()

    seen: Set[str] = set()
    for link in soup.find_all("link", href=True):
        rels = [r for r in _rels(link) if r in DEDUPED_RELS]
        if not rels:
            continue
        key = f"{rels[0]}|{link['href'].rstrip('/')}"
        if key in seen:
            link.decompose()
            result.duplicates_removed += 1
        else:
            seen.add(key)

    if result.removed:
        logger.debug(f"[Hints] Removed stale hints: {result.removed}")
    return result
