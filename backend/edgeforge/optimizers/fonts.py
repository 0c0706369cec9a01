"""
Google Fonts self-hosting.

For every <link href*="fonts.googleapis.com"> stylesheet:
1. Fetch the CSS with a browser user agent (woff2 is only served to those)
2. Download each url() font file to /assets/fonts/<basename>
3. Rewrite the URLs and force font-display
4. Inline the rewritten @font-face rules in one <style> in <head>
5. Preload the first preload_count fonts
6. Remove the original links and the now-unused fonts preconnect hints

A stylesheet whose CSS cannot be fetched keeps its original <link>. A font
file that cannot be downloaded keeps its remote URL.
"""

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Dict, List
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from ..fetch import BROWSER_USER_AGENT, FetchError, Fetcher
from ..settings.schema import FontSettings
from .base import ensure_head
from .css import apply_font_display

logger = logging.getLogger(__name__)

FONTS_WEB_DIR = "/assets/fonts"

# Legacy user agent: Google Fonts answers with woff instead of woff2
LEGACY_USER_AGENT = "Mozilla/5.0 (Windows NT 6.1; rv:31.0) Gecko/20100101 Firefox/31.0"

GOOGLE_FONT_HOSTS = ("fonts.googleapis.com", "fonts.gstatic.com")

_URL_RE = re.compile(r"url\(\s*(['\"]?)([^)'\"]+)\1\s*\)")


@dataclass
class FontOptimizeResult:
    files: Dict[str, bytes] = field(default_factory=dict)
    font_face_css: str = ""
    preload_paths: List[str] = field(default_factory=list)
    removed_links: int = 0
    failed_stylesheets: List[str] = field(default_factory=list)

    @property
    def fonts_downloaded(self) -> int:
        return len(self.files)


def _stylesheet_url(href: str, settings: FontSettings) -> str:
    if href.startswith("//"):
        href = "https:" + href
    if settings.subsets and "subset=" not in href:
        separator = "&" if "?" in href else "?"
        href = f"{href}{separator}subset={','.join(settings.subsets)}"
    return href


def _font_filename(url: str, index: int, settings: FontSettings) -> str:
    name = posixpath.basename(urlsplit(url).path)
    if not name:
        ext = "woff" if settings.format_preference == "woff" else "woff2"
        name = f"font-{index}.{ext}"
    return name


def _download_and_rewrite(
    css: str,
    fetcher: Fetcher,
    settings: FontSettings,
    result: FontOptimizeResult,
) -> str:
    downloads: Dict[str, str] = {}
    for _, url in _URL_RE.findall(css):
        url = url.strip()
        if url.startswith("data:") or url in downloads:
            continue
        try:
            response = fetcher.fetch(url, headers={"User-Agent": BROWSER_USER_AGENT})
        except FetchError as e:
            logger.warning(f"[Fonts] Keeping remote font {url}: {e.reason}")
            continue
        web_path = f"{FONTS_WEB_DIR}/{_font_filename(url, len(result.files), settings)}"
        result.files[web_path.lstrip("/")] = response.content
        downloads[url] = web_path
        if settings.preload_critical_fonts and len(result.preload_paths) < settings.preload_count:
            result.preload_paths.append(web_path)

    for original, local in downloads.items():
        css = css.replace(original, local)
    css, _ = apply_font_display(css, settings.font_display)
    return css


def _remove_font_hints(soup: BeautifulSoup) -> int:
    removed = 0
    for link in soup.find_all("link", href=True):
        rel = [r.lower() for r in (link.get("rel") or [])]
        if not ({"preconnect", "dns-prefetch"} & set(rel)):
            continue
        if any(host in link["href"] for host in GOOGLE_FONT_HOSTS):
            link.decompose()
            removed += 1
    return removed


def optimize_fonts(soup: BeautifulSoup, settings: FontSettings, fetcher: Fetcher) -> FontOptimizeResult:
    """
    Self-host the page's Google Fonts in place.

    Returns:
        FontOptimizeResult whose files map workspace paths to font bytes
    """
    result = FontOptimizeResult()
    if not (settings.enabled and settings.self_host_google_fonts):
        return result

    links = soup.select('link[href*="fonts.googleapis.com"]')
    links = [link for link in links if "stylesheet" in (link.get("rel") or [])
             or link.get("as") == "style"]
    if not links:
        return result

    logger.info(f"[Fonts] Found {len(links)} Google Fonts stylesheet(s)")
    user_agent = LEGACY_USER_AGENT if settings.format_preference == "woff" else BROWSER_USER_AGENT

    rules: List[str] = []
    for link in links:
        url = _stylesheet_url(link["href"], settings)
        try:
            response = fetcher.fetch(url, headers={"User-Agent": user_agent})
        except FetchError as e:
            logger.warning(f"[Fonts] Keeping Google Fonts link {link['href']}: {e.reason}")
            result.failed_stylesheets.append(link["href"])
            continue
        rules.append(_download_and_rewrite(response.text, fetcher, settings, result))
        link.decompose()
        result.removed_links += 1

    if not rules:
        return result

    if not result.failed_stylesheets:
        _remove_font_hints(soup)

    result.font_face_css = "\n".join(r.strip() for r in rules if r.strip())
    head = ensure_head(soup)

    if result.font_face_css:
        style = soup.new_tag("style")
        style.string = result.font_face_css
        head.append(style)

    font_type = "font/woff" if settings.format_preference == "woff" else "font/woff2"
    for path in reversed(result.preload_paths):
        preload = soup.new_tag("link", rel="preload", href=path, attrs={"as": "font", "type": font_type})
        preload["crossorigin"] = ""
        head.insert(0, preload)

    logger.info(
        f"[Fonts] Self-hosted {result.fonts_downloaded} font file(s), "
        f"removed {result.removed_links} Google Fonts link(s)"
    )
    return result

