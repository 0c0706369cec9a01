"""
JS optimizer.

File level:
- Dead scripts (matched by filename substring, per toggleable category)
  are deleted outright
- Everything else: drop console/debugger, then minify with rjsmin
- The minified output must still reference every RESERVED_GLOBALS name the
  input referenced; otherwise the original is kept

Page level:
- apply_loading_strategy: defer/async/module on external scripts, except
  critical (analytics/tag-manager) scripts and synchronous-write scripts
- relocate_head_scripts: move head inline scripts to end of body, except
  tiny config blocks, JSON metadata, CSS-variable setup and critical scripts
"""

import logging
import posixpath
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import rjsmin
from bs4 import BeautifulSoup, Tag

from ..settings.schema import JsSettings
from .base import ByteStats, HtmlStepResult, hashed_filename

logger = logging.getLogger(__name__)


# category toggle -> filename substrings (lower-case)
DEAD_SCRIPT_CATEGORIES: Dict[str, Tuple[str, ...]] = {
    "wp_emoji": ("wp-emoji-release.min.js", "wp-emoji.js", "wp-emoji-loader"),
    "wp_embed": ("wp-embed.min.js", "wp-embed.js"),
    "jquery_migrate": ("jquery-migrate.min.js", "jquery-migrate.js"),
    "comment_reply": ("comment-reply.min.js", "comment-reply.js"),
    "wp_polyfill": ("wp-polyfill.min.js", "wp-polyfill.js"),
    "hover_intent": ("hoverintent-js.min.js", "hoverintent.min.js"),
    "admin_bar": ("admin-bar.min.js", "admin-bar.js"),
    "tracking_pixels": ("fbevents.js", "pixel.min.js", "insight.min.js"),
    "cart_fragments": ("cart-fragments.min.js", "cart-fragments.js"),
}

JQUERY_PATTERNS: Tuple[str, ...] = ("jquery.min.js", "jquery.js")

# Globals third-party integrations look up by name; never renamed or dropped
RESERVED_GLOBALS: Tuple[str, ...] = (
    "jQuery", "$", "wp", "ajaxurl", "dataLayer", "gtag", "ga", "_gaq", "fbq",
    "google", "grecaptcha", "Stripe", "Shopify", "WooCommerce", "wc_add_to_cart_params",
    "elementorFrontend", "elementorFrontendConfig", "Intercom", "drift", "zE",
    "Tawk_API", "$crisp", "hbspt", "YT", "Vimeo", "Swiper", "gform",
)

CRITICAL_SCRIPT_RE = re.compile(
    r"googletagmanager\.com|google-analytics\.com|gtm\.js|gtag\s*\(|dataLayer|"
    r"analytics\.js|plausible\.io|clarity\.ms|consent",
    re.I,
)

_DOCUMENT_WRITE_RE = re.compile(r"document\.write(ln)?\s*\(")
_CSS_VAR_SETUP_RE = re.compile(r"setProperty\(\s*['\"]--|:root\s*\{|--[A-Za-z0-9-]+\s*:")
_CONSOLE_RE = re.compile(
    r"\bconsole\.(?:log|debug|info|warn|trace|dir|table|time|timeEnd|group|groupEnd)"
    r"\s*\((?:[^()]|\((?:[^()]|\([^()]*\))*\))*\)"
)
_DEBUGGER_RE = re.compile(r"\bdebugger\s*;")

# Inline scripts shorter than this are config blocks and stay in <head>
TINY_SCRIPT_CHARS = 200

JS_TYPES = ("", "text/javascript", "application/javascript", "module")


@dataclass
class JsOptimizeResult:
    content: str
    filename: str
    hashed_name: Optional[str]
    stats: ByteStats
    removed: bool = False
    matched_pattern: Optional[str] = None
    kept_original: bool = False


def dead_script_patterns(settings: JsSettings) -> List[str]:
    """Filename substrings to delete, honouring each category toggle."""
    patterns: List[str] = []
    toggles = settings.remove_scripts
    for category, substrings in DEAD_SCRIPT_CATEGORIES.items():
        if getattr(toggles, category):
            patterns.extend(substrings)
    if settings.remove_jquery:
        patterns.extend(JQUERY_PATTERNS)
    patterns.extend(p.lower() for p in settings.custom_remove_patterns if p)
    return patterns


def _basename(url_or_path: str) -> str:
    return posixpath.basename(urlsplit(url_or_path).path).lower()


def match_dead_script(filename: str, settings: JsSettings) -> Optional[str]:
    """Return the matching dead-script pattern, or None."""
    name = _basename(filename)
    full = filename.lower()
    for pattern in dead_script_patterns(settings):
        target = full if "/" in pattern else name
        if pattern in target:
            return pattern
    return None


def is_dead_script(filename: str, settings: JsSettings) -> bool:
    return match_dead_script(filename, settings) is not None


def _referenced_globals(js: str) -> List[str]:
    found = []
    for name in RESERVED_GLOBALS:
        if re.search(rf"(?<![\w$]){re.escape(name)}(?![\w$])", js):
            found.append(name)
    return found


def strip_debug_statements(js: str, drop_console: bool, drop_debugger: bool) -> str:
    if drop_console:
        js = _CONSOLE_RE.sub("void 0", js)
    if drop_debugger:
        js = _DEBUGGER_RE.sub(";", js)
    return js


def optimize_js(js: str, filename: str, settings: JsSettings) -> JsOptimizeResult:
    """
    Optimize one script file.

    Args:
        js: Script source
        filename: Workspace-relative path or original URL
        settings: Resolved js settings section
    """
    original_bytes = len(js.encode("utf-8"))

    pattern = match_dead_script(filename, settings) if settings.enabled else None
    if pattern is not None:
        logger.debug(f"[JS] Removing dead script {filename} (pattern {pattern})")
        return JsOptimizeResult(
            content="",
            filename=filename,
            hashed_name=None,
            stats=ByteStats(original_bytes=original_bytes, optimized_bytes=0),
            removed=True,
            matched_pattern=pattern,
        )

    content = js
    kept_original = False
    if settings.enabled and settings.minify_enabled:
        candidate = strip_debug_statements(js, settings.drop_console, settings.drop_debugger)
        candidate = rjsmin.jsmin(candidate, keep_bang_comments=True)
        missing = set(_referenced_globals(js)) - set(_referenced_globals(candidate))
        if missing:
            logger.warning(f"[JS] Minified {filename} lost reserved globals {sorted(missing)}; keeping original")
            kept_original = True
        else:
            content = candidate

    encoded = content.encode("utf-8")
    return JsOptimizeResult(
        content=content,
        filename=filename,
        hashed_name=hashed_filename(filename, encoded),
        stats=ByteStats(original_bytes=original_bytes, optimized_bytes=len(encoded)),
        kept_original=kept_original,
    )


def _script_type(script: Tag) -> str:
    return (script.get("type") or "").strip().lower()


def is_critical_script(script: Tag) -> bool:
    return bool(CRITICAL_SCRIPT_RE.search(script.get("src") or "") or
                CRITICAL_SCRIPT_RE.search(script.string or ""))


def uses_document_write(script: Tag) -> bool:
    return bool(_DOCUMENT_WRITE_RE.search(script.string or ""))


def remove_dead_script_tags(soup: BeautifulSoup, settings: JsSettings) -> HtmlStepResult:
    """Drop <script src> tags whose file is a dead script."""
    result = HtmlStepResult()
    if not settings.enabled:
        return result
    for script in soup.find_all("script", src=True):
        if is_dead_script(script["src"], settings):
            script.decompose()
            result.scripts_removed += 1
            result.changed += 1
    return result


def apply_loading_strategy(soup: BeautifulSoup, settings: JsSettings) -> HtmlStepResult:
    """Add defer/async/module to external scripts that can safely wait."""
    result = HtmlStepResult()
    if not settings.enabled:
        return result

    strategy = settings.default_loading_strategy
    for script in soup.find_all("script", src=True):
        if script.has_attr("defer") or script.has_attr("async"):
            continue
        script_type = _script_type(script)
        if script_type not in JS_TYPES or script_type == "module":
            continue
        if is_critical_script(script) or uses_document_write(script):
            continue
        if script.has_attr("data-no-defer"):
            continue

        if strategy == "module":
            script["type"] = "module"
        else:
            script[strategy] = ""
        result.changed += 1
    return result


def relocate_head_scripts(soup: BeautifulSoup, settings: JsSettings) -> HtmlStepResult:
    """Move eligible head inline scripts to the end of <body>, keeping order."""
    result = HtmlStepResult()
    if not (settings.enabled and settings.move_to_body_end):
        return result
    head, body = soup.head, soup.body
    if head is None or body is None:
        return result

    movable = []
    for script in head.find_all("script"):
        if script.get("src"):
            continue
        text = script.string or ""
        if _script_type(script) not in JS_TYPES:
            continue
        if len(text.strip()) < TINY_SCRIPT_CHARS:
            continue
        if is_critical_script(script) or uses_document_write(script):
            continue
        if _CSS_VAR_SETUP_RE.search(text):
            continue
        movable.append(script)

    for script in movable:
        body.append(script.extract())
        result.changed += 1
    return result
