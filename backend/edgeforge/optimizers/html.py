"""
HTML cleanup and minification.

clean_html edits a parsed page in place:
- WordPress core bloat: emoji/embed inline bootstraps (per the
  js.remove_scripts toggles), core stylesheets, <head> meta/link tags and
  duotone SVG filters
- Plugin css/js on pages that carry none of the plugin's markup
- Analytics tags and inline trackers, only with remove_analytics; every
  other stage treats them as critical and leaves them alone

minify_html works on serialized markup. <pre>, <textarea>, <script> and
<style> bodies pass through untouched and conditional comments are kept.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple

from bs4 import BeautifulSoup, Tag

from ..settings.schema import HtmlMinifySettings, HtmlSettings, JsSettings

logger = logging.getLogger(__name__)


# js.remove_scripts toggle -> inline bootstrap signature
INLINE_CORE_SCRIPTS: Dict[str, "re.Pattern[str]"] = {
    "wp_emoji": re.compile(r"window\._wpemojiSettings|wp\.emoji"),
    "wp_embed": re.compile(r"wp\.receiveEmbedMessage|window\._wpEmbedSettings"),
}

# js.remove_scripts toggle -> inline <style> ids that only serve the script
INLINE_CORE_STYLES: Dict[str, Tuple[str, ...]] = {
    "wp_emoji": ("wp-emoji-styles-inline-css",),
}

# remove_core_styles toggle -> (href substrings, element ids)
CORE_STYLES: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    "admin_bar": (("admin-bar",), ("admin-bar-css", "admin-bar-inline-css")),
    "dashicons": (("dashicons",), ("dashicons-css",)),
    "wp_block_library": (("block-library/style",), ("wp-block-library-css", "wp-block-library-inline-css")),
    "wp_block_library_theme": (("block-library/theme", "wp-block-library-theme"), ("wp-block-library-theme-css",)),
    "classic_theme_styles": (
        ("classic-theme-styles", "classic-themes"),
        ("classic-theme-styles-css", "classic-theme-styles-inline-css"),
    ),
}


@dataclass(frozen=True)
class PluginAssets:
    """A plugin whose assets are only needed where its markup renders."""

    name: str
    markers: Tuple[str, ...]  # class names
    paths: Tuple[str, ...]  # asset URL substrings


PLUGIN_ASSETS: Tuple[PluginAssets, ...] = (
    PluginAssets("woocommerce", ("woocommerce",), ("plugins/woocommerce/assets",)),
    PluginAssets("contact-form-7", ("wpcf7",), ("plugins/contact-form-7",)),
    PluginAssets("elementor", ("elementor",), ("plugins/elementor/assets",)),
    PluginAssets("slider-revolution", ("rev_slider", "rs-module-wrap"), ("plugins/revslider",)),
)

ANALYTICS_SRC_PATTERNS: Tuple[str, ...] = (
    "googletagmanager.com/gtag",
    "googletagmanager.com/gtm.js",
    "google-analytics.com/analytics.js",
    "google-analytics-for-wordpress",
)

ANALYTICS_INLINE_RE = re.compile(
    r"gtag\s*\(|__gaTracker|GoogleAnalyticsObject|google-analytics\.com/analytics|googletagmanager\.com/gtm\.js"
)

BOOLEAN_ATTRIBUTES: Tuple[str, ...] = (
    "allowfullscreen", "async", "autofocus", "autoplay", "checked", "controls", "default", "defer",
    "disabled", "formnovalidate", "hidden", "inert", "ismap", "itemscope", "loop", "multiple", "muted",
    "nomodule", "novalidate", "open", "playsinline", "readonly", "required", "reversed", "selected",
)

# Whitespace next to these tags never renders
BLOCK_TAGS = frozenset((
    "html", "head", "body", "title", "meta", "link", "base", "script", "style", "noscript", "template",
    "div", "p", "ul", "ol", "li", "dl", "dt", "dd", "section", "article", "aside", "header", "footer",
    "nav", "main", "h1", "h2", "h3", "h4", "h5", "h6", "table", "thead", "tbody", "tfoot", "tr", "td",
    "th", "caption", "colgroup", "col", "form", "fieldset", "legend", "figure", "figcaption",
    "blockquote", "pre", "hr", "br", "picture", "source", "svg", "iframe", "video", "audio", "option",
))

_PROTECTED_RE = re.compile(r"(<(pre|textarea|script|style)\b[^>]*>)(.*?)(</\2\s*>)", re.I | re.S)
_PLACEHOLDER_RE = re.compile("\x00(\\d+)\x00")
_COMMENT_RE = re.compile(r"<!--(?!\[if)[\s\S]*?-->")
_DOCTYPE_RE = re.compile(r"^\s*<!doctype[^>]*>", re.I)
_TAG_SPLIT_RE = re.compile(r"(<[^>]+>)")
_TAG_NAME_RE = re.compile(r"^</?([a-zA-Z][a-zA-Z0-9-]*)")
# HTML inter-element whitespace; U+00A0 (&nbsp;) is content
HTML_SPACE = " \t\n\r\f"
_WHITESPACE_RE = re.compile(r"[ \t\n\r\f]+")
_SCRIPT_TYPE_RE = re.compile(r"""\s+type\s*=\s*(["']?)(?:text|application)/javascript\1(?=[\s/>])""", re.I)
_STYLE_TYPE_RE = re.compile(r"""\s+type\s*=\s*(["']?)text/css\1(?=[\s/>])""", re.I)
_BOOLEAN_ATTR_RE = re.compile(
    r"""(\s)(""" + "|".join(BOOLEAN_ATTRIBUTES) + r""")\s*=\s*(?:""|''|"\2"|'\2')(?=[\s/>])""",
    re.I,
)


@dataclass
class HtmlCleanupResult:
    scripts_removed: int = 0
    styles_removed: int = 0
    head_tags_removed: int = 0
    svg_filters_removed: int = 0
    plugins_stripped: List[str] = field(default_factory=list)
    # src/href of every removed <script> and stylesheet
    removed_urls: List[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return self.scripts_removed + self.styles_removed + self.head_tags_removed + self.svg_filters_removed


def _rels(tag: Tag) -> List[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return [r.lower() for r in rel]


def _is_link(rel: str) -> Callable[[Tag], bool]:
    return lambda tag: tag.name == "link" and rel in _rels(tag)


def _is_feed(tag: Tag) -> bool:
    kind = (tag.get("type") or "").lower()
    return tag.name == "link" and "alternate" in _rels(tag) and ("rss" in kind or "atom" in kind)


def _is_comments_feed(tag: Tag) -> bool:
    return _is_feed(tag) and "comments/feed" in (tag.get("href") or "")


# wp_head_bloat toggle -> matcher over <meta>/<link> tags
HEAD_BLOAT: Dict[str, Callable[[Tag], bool]] = {
    "meta_generator": lambda t: t.name == "meta" and (t.get("name") or "").lower() == "generator",
    "wlwmanifest": _is_link("wlwmanifest"),
    "edit_uri": _is_link("edituri"),
    "api_wp_org": _is_link("https://api.w.org/"),
    "shortlink": _is_link("shortlink"),
    "rss_feed_links": lambda t: _is_feed(t) and not _is_comments_feed(t),
    "comments_feed_link": _is_comments_feed,
    "pingback": _is_link("pingback"),
    "dns_prefetch_wp_org": lambda t: _is_link("dns-prefetch")(t) and "s.w.org" in (t.get("href") or ""),
    "oembed_discovery": lambda t: _is_link("alternate")(t) and "oembed" in (t.get("type") or "").lower(),
    "prev_next_links": lambda t: _is_link("prev")(t) or _is_link("next")(t),
}


class _Remover:
    """Decomposes tags once each and tallies what went."""

    def __init__(self, result: HtmlCleanupResult):
        self.result = result

    def __call__(self, tag: Tag) -> None:
        if tag.decomposed:
            return
        if tag.name == "script":
            self.result.scripts_removed += 1
            if tag.get("src"):
                self.result.removed_urls.append(tag["src"])
        elif tag.name == "style" or "stylesheet" in _rels(tag):
            self.result.styles_removed += 1
            if tag.get("href"):
                self.result.removed_urls.append(tag["href"])
        elif tag.name == "svg":
            self.result.svg_filters_removed += 1
        else:
            self.result.head_tags_removed += 1
        tag.decompose()


def _asset_tags(soup: BeautifulSoup) -> List[Tuple[Tag, str]]:
    """(tag, url) for every external script and linked stylesheet."""
    tags = [(s, s["src"]) for s in soup.find_all("script", src=True)]
    tags.extend((link, link["href"]) for link in soup.find_all("link", href=True) if "stylesheet" in _rels(link))
    return tags


def _remove_core_bloat(soup: BeautifulSoup, settings: HtmlSettings, js: JsSettings, drop: _Remover) -> None:
    if js.enabled:
        for toggle, pattern in INLINE_CORE_SCRIPTS.items():
            if not getattr(js.remove_scripts, toggle):
                continue
            for script in soup.find_all("script", src=False):
                if pattern.search(script.string or ""):
                    drop(script)
            for style_id in INLINE_CORE_STYLES.get(toggle, ()):
                for style in soup.find_all("style", id=style_id):
                    drop(style)

    for toggle, (hrefs, ids) in CORE_STYLES.items():
        if not getattr(settings.remove_core_styles, toggle):
            continue
        for link in soup.find_all("link", href=True):
            if "stylesheet" in _rels(link) and any(h in link["href"] for h in hrefs):
                drop(link)
        for tag in soup.find_all(["link", "style"], id=list(ids)):
            drop(tag)

    enabled = [matcher for toggle, matcher in HEAD_BLOAT.items() if getattr(settings.wp_head_bloat, toggle)]
    if enabled:
        for tag in soup.find_all(["meta", "link"]):
            if any(matcher(tag) for matcher in enabled):
                drop(tag)

    if settings.remove_duotone_filters:
        for svg in soup.find_all("svg"):
            if "wp-duotone-" in svg.decode_contents():
                drop(svg)


def _remove_unused_plugin_assets(soup: BeautifulSoup, drop: _Remover, result: HtmlCleanupResult) -> None:
    for plugin in PLUGIN_ASSETS:
        if any(soup.find(class_=marker) is not None for marker in plugin.markers):
            continue
        stripped = False
        for tag, url in _asset_tags(soup):
            if any(path in url for path in plugin.paths):
                drop(tag)
                stripped = True
        if stripped:
            result.plugins_stripped.append(plugin.name)


def _remove_analytics(soup: BeautifulSoup, drop: _Remover) -> None:
    for script in soup.find_all("script"):
        src = script.get("src") or ""
        if any(p in src for p in ANALYTICS_SRC_PATTERNS) or ANALYTICS_INLINE_RE.search(script.string or ""):
            drop(script)
    for noscript in soup.find_all("noscript"):
        if "googletagmanager.com/ns.html" in noscript.decode_contents():
            drop(noscript)


def clean_html(soup: BeautifulSoup, settings: HtmlSettings, js: JsSettings) -> HtmlCleanupResult:
    """
    Strip WordPress and plugin bloat from a parsed page in place.

    Args:
        soup: Parsed page
        settings: Resolved html settings section
        js: Resolved js settings section; its remove_scripts toggles also
            govern the matching inline bootstraps

    Returns:
        HtmlCleanupResult; removed_urls lets the caller drop files no page
        references any more
    """
    result = HtmlCleanupResult()
    if not settings.enabled:
        return result
    drop = _Remover(result)

    _remove_core_bloat(soup, settings, js, drop)
    if settings.remove_unused_plugin_assets:
        _remove_unused_plugin_assets(soup, drop, result)
    if settings.remove_analytics:
        _remove_analytics(soup, drop)

    if result.changed:
        logger.debug(f"[HTML] Removed {result.scripts_removed} script(s), {result.styles_removed} style(s), "
                     f"{result.head_tags_removed} head tag(s), {result.svg_filters_removed} svg filter(s)")
    return result


def _tag_name(markup: str) -> str:
    match = _TAG_NAME_RE.match(markup)
    return match.group(1).lower() if match else ""


def _is_block_boundary(markup: str) -> bool:
    return markup.startswith("<!") or _tag_name(markup) in BLOCK_TAGS


def _minify_tag(markup: str, settings: HtmlMinifySettings) -> str:
    name = _tag_name(markup)
    if name == "script" and settings.remove_script_type_attributes:
        markup = _SCRIPT_TYPE_RE.sub("", markup)
    elif name in ("style", "link") and settings.remove_style_link_type_attributes:
        markup = _STYLE_TYPE_RE.sub("", markup)
    if settings.collapse_boolean_attributes:
        markup = _BOOLEAN_ATTR_RE.sub(r"\1\2", markup)
    return markup


def minify_html(html: str, settings: HtmlMinifySettings) -> str:
    """
    Minify serialized markup.

    Text runs collapse to a single space; whitespace next to a block-level
    tag is dropped entirely. Whitespace between inline elements survives as
    one space so rendered text keeps its word breaks.
    """
    protected: List[str] = []

    def stash(match: "re.Match[str]") -> str:
        protected.append(match.group(3))
        return f"{match.group(1)}\x00{len(protected) - 1}\x00{match.group(4)}"

    text = _PROTECTED_RE.sub(stash, html)
    if settings.remove_comments:
        text = _COMMENT_RE.sub("", text)
    if settings.use_short_doctype:
        text = _DOCTYPE_RE.sub("<!DOCTYPE html>", text, count=1)

    # Even indices are text, odd indices are tags
    parts = _TAG_SPLIT_RE.split(text)
    for i in range(1, len(parts), 2):
        parts[i] = _minify_tag(parts[i], settings)
    if settings.collapse_whitespace:
        for i in range(0, len(parts), 2):
            part = _WHITESPACE_RE.sub(" ", parts[i])
            if i > 0 and _is_block_boundary(parts[i - 1]):
                part = part.lstrip(HTML_SPACE)
            if i + 1 < len(parts) and _is_block_boundary(parts[i + 1]):
                part = part.rstrip(HTML_SPACE)
            parts[i] = part

    text = "".join(parts)
    if settings.collapse_whitespace:
        text = text.strip(HTML_SPACE)
    return _PLACEHOLDER_RE.sub(lambda m: protected[int(m.group(1))], text)
