"""
CSS optimizer: purge unused selectors, normalise font-display, minify.

Purge rules:
- Content tokens are every [A-Za-z0-9_-]+ word found in the crawled HTML set
  (markup, inline scripts and attribute values alike)
- A selector survives if every class, id and tag it names is a known token
- Safelist tiers by aggressiveness:
    safe       -> standard + deep + greedy
    moderate   -> standard + deep
    aggressive -> standard only
- Blocklist patterns always remove a matching selector
- @font-face, @keyframes, @import and similar at-rules are never purged
- Test mode reports would-remove selectors but leaves the CSS intact
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern, Sequence, Set, Tuple

import csscompressor

from ..settings.schema import CssSettings
from .base import ByteStats, hashed_filename
from .errors import OptimizerError

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z0-9_-]+")
_COMMENT_RE = re.compile(r"/\*.*?\*/", re.S)
_PSEUDO_RE = re.compile(r"::?[A-Za-z-]+(\((?:[^()]|\([^()]*\))*\))?")
_ATTR_RE = re.compile(r"\[[^\]]*\]")
_CLASS_RE = re.compile(r"\.((?:\\.|[A-Za-z0-9_-])+)")
_ID_RE = re.compile(r"#((?:\\.|[A-Za-z0-9_-])+)")
_TAG_RE = re.compile(r"(?:^|[\s>+~])([A-Za-z][A-Za-z0-9-]*)")
_FONT_FACE_RE = re.compile(r"@font-face\s*\{([^{}]*)\}", re.I)
_FONT_DISPLAY_RE = re.compile(r"font-display\s*:\s*[^;}]+", re.I)

# At-rules whose body holds nested style rules that can be purged
NESTED_AT_RULES = ("@media", "@supports", "@document", "@layer", "@container")

# Selectors naming only these are always considered used
ALWAYS_USED_TAGS = frozenset({"html", "body"})


@dataclass
class CssOptimizeResult:
    content: str
    filename: str
    hashed_name: str
    stats: ByteStats
    removed_selectors: List[str] = field(default_factory=list)
    would_remove: List[str] = field(default_factory=list)
    test_mode: bool = False
    font_display_rules: int = 0


@dataclass(frozen=True)
class Safelist:
    standard: frozenset
    deep: Tuple[Pattern[str], ...]
    greedy: Tuple[Pattern[str], ...]
    blocklist: Tuple[Pattern[str], ...] = ()


def _compile_all(patterns: Iterable[str], kind: str) -> Tuple[Pattern[str], ...]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            logger.warning(f"[CSS] Ignoring invalid {kind} pattern {pattern!r}: {e}")
    return tuple(compiled)


def build_safelist(settings: CssSettings) -> Safelist:
    """Safelist for the configured aggressiveness tier."""
    tier = settings.purge_aggressiveness
    safelist = settings.purge_safelist
    return Safelist(
        standard=frozenset(safelist.standard),
        deep=_compile_all(safelist.deep, "deep") if tier in ("safe", "moderate") else (),
        greedy=_compile_all(safelist.greedy, "greedy") if tier == "safe" else (),
        blocklist=_compile_all(settings.purge_blocklist_patterns, "blocklist"),
    )


def extract_tokens(html_documents: Iterable[str]) -> Set[str]:
    """Every identifier-like word in the HTML set."""
    tokens: Set[str] = set()
    for html in html_documents:
        tokens.update(_TOKEN_RE.findall(html))
    return tokens


def _unescape(name: str) -> str:
    return re.sub(r"\\(.)", r"\1", name)


def selector_is_used(selector: str, tokens: Set[str], safelist: Safelist) -> bool:
    """Decide whether one (comma-free) selector must be kept."""
    selector = selector.strip()
    if not selector:
        return False

    if any(p.search(selector) for p in safelist.blocklist):
        return False
    if any(p.search(selector) for p in safelist.greedy):
        return True

    bare = _PSEUDO_RE.sub("", _ATTR_RE.sub("", selector))
    classes = [_unescape(c) for c in _CLASS_RE.findall(bare)]
    ids = [_unescape(i) for i in _ID_RE.findall(bare)]
    names = classes + ids

    if any(name in safelist.standard for name in names):
        return True
    if any(p.search(name) for p in safelist.deep for name in names):
        return True

    stripped = _ID_RE.sub(" ", _CLASS_RE.sub(" ", bare))
    tags = [t.lower() for t in _TAG_RE.findall(" " + stripped)]

    for name in names:
        if name not in tokens:
            return False
    for tag in tags:
        if tag not in ALWAYS_USED_TAGS and tag not in tokens:
            return False
    return True


def split_selectors(prelude: str) -> List[str]:
    """Split a selector list on top-level commas."""
    parts, depth, current = [], 0, []
    for char in prelude:
        if char in "([":
            depth += 1
        elif char in ")]":
            depth = max(0, depth - 1)
        if char == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def _find_block_end(css: str, open_index: int) -> int:
    """Index of the brace closing the block opened at open_index."""
    depth = 0
    quote: Optional[str] = None
    i = open_index
    while i < len(css):
        char = css[i]
        if quote:
            if char == "\\":
                i += 2
                continue
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise OptimizerError("css", "<stylesheet>", "unbalanced braces")


def _purge_block(css: str, tokens: Set[str], safelist: Safelist, removed: List[str]) -> str:
    out: List[str] = []
    i = 0
    while i < len(css):
        brace = css.find("{", i)
        semi = css.find(";", i)
        if brace == -1:
            tail = css[i:].strip()
            if tail:
                out.append(tail)
            break
        if semi != -1 and semi < brace and css[i:semi].strip().startswith("@"):
            out.append(css[i:semi + 1].strip())
            i = semi + 1
            continue

        prelude = css[i:brace].strip()
        end = _find_block_end(css, brace)
        body = css[brace + 1:end]
        i = end + 1

        if prelude.startswith("@"):
            if prelude.lower().startswith(NESTED_AT_RULES):
                inner = _purge_block(body, tokens, safelist, removed)
                if inner.strip():
                    out.append(f"{prelude}{{{inner}}}")
            else:
                out.append(f"{prelude}{{{body}}}")
            continue

        selectors = split_selectors(prelude)
        kept = []
        for selector in selectors:
            if selector_is_used(selector, tokens, safelist):
                kept.append(selector)
            else:
                removed.append(selector)
        if kept:
            out.append(f"{','.join(kept)}{{{body}}}")
    return "\n".join(out)


def purge_css(css: str, html_documents: Sequence[str], settings: CssSettings) -> Tuple[str, List[str]]:
    """
    Remove unreferenced selectors.

    Returns:
        (purged css, removed selectors)
    """
    tokens = extract_tokens(html_documents)
    safelist = build_safelist(settings)
    removed: List[str] = []
    purged = _purge_block(_COMMENT_RE.sub("", css), tokens, safelist, removed)
    return purged, removed


def apply_font_display(css: str, font_display: str) -> Tuple[str, int]:
    """Inject or normalise font-display in every @font-face rule."""
    count = 0

    def _rewrite(match: "re.Match[str]") -> str:
        nonlocal count
        body = match.group(1)
        if _FONT_DISPLAY_RE.search(body):
            new_body = _FONT_DISPLAY_RE.sub(f"font-display:{font_display}", body)
        else:
            new_body = body.rstrip().rstrip(";") + f";font-display:{font_display};"
        if new_body != body:
            count += 1
        return "@font-face{" + new_body + "}"

    return _FONT_FACE_RE.sub(_rewrite, css), count


def minify_css(css: str, preset: str = "default") -> str:
    return csscompressor.compress(css, preserve_exclamation_comments=(preset == "lite"))


def optimize_css(
    css: str,
    html_documents: Sequence[str],
    settings: CssSettings,
    filename: str = "style.css",
) -> CssOptimizeResult:
    """
    Optimize one stylesheet against the crawled HTML set.

    Args:
        css: Raw stylesheet text
        html_documents: Every crawled page's HTML
        settings: Resolved css settings section
        filename: Workspace-relative path (used for the hashed name)

    Raises:
        OptimizerError: If the stylesheet cannot be parsed
    """
    original_bytes = len(css.encode("utf-8"))
    removed: List[str] = []
    would_remove: List[str] = []
    content = css

    if settings.enabled and settings.purge:
        purged, candidates = purge_css(css, html_documents, settings)
        if settings.purge_test_mode:
            would_remove = candidates
            logger.info(f"[CSS] Test mode: {len(candidates)} selectors would be removed from {filename}")
        else:
            content = purged
            removed = candidates

    font_rules = 0
    if settings.enabled:
        content, font_rules = apply_font_display(content, settings.font_display)

    if settings.enabled and settings.minify:
        try:
            content = minify_css(content, settings.minify_preset)
        except Exception as e:
            raise OptimizerError("css", filename, f"minify failed: {e}") from e

    encoded = content.encode("utf-8")
    return CssOptimizeResult(
        content=content,
        filename=filename,
        hashed_name=hashed_filename(filename, encoded),
        stats=ByteStats(original_bytes=original_bytes, optimized_bytes=len(encoded)),
        removed_selectors=removed,
        would_remove=would_remove,
        test_mode=settings.purge_test_mode,
        font_display_rules=font_rules,
    )
