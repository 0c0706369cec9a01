"""
Inline SVG sprite deduplication.

Identical inline <svg> icons (same inner markup) repeated SPRITE_MIN_OCCURRENCES
or more times on a page are hoisted into one hidden sprite of <symbol>s and
every occurrence becomes <svg ...><use href="#icon-<hash>"></use></svg>.

Skipped: SVGs that already contain <symbol>/<use>, hidden SVGs, empty SVGs.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, List

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

SPRITE_MIN_OCCURRENCES = 3
SVG_NAMESPACE = "http://www.w3.org/2000/svg"

# Attributes carried from each occurrence onto its <use> wrapper
_KEPT_ATTRIBUTES = ("class", "aria-hidden", "width", "height")


@dataclass
class SvgSpriteResult:
    sprite_created: bool = False
    symbol_count: int = 0
    replacements: int = 0
    saved_bytes: int = 0


def _view_box(svg: Tag) -> str:
    # html.parser lower-cases attribute names
    return svg.get("viewBox") or svg.get("viewbox") or ""


def _is_hidden(svg: Tag) -> bool:
    style = (svg.get("style") or "").replace(" ", "").lower()
    return "display:none" in style


def _inner_markup(svg: Tag) -> str:
    return "".join(str(child) for child in svg.contents).strip()


def symbol_id_for(inner_markup: str) -> str:
    return "icon-" + hashlib.md5(inner_markup.encode("utf-8")).hexdigest()[:8]


def build_svg_sprite(soup: BeautifulSoup) -> SvgSpriteResult:
    """Deduplicate repeated inline SVGs in place."""
    result = SvgSpriteResult()
    svgs = soup.find_all("svg")
    if len(svgs) < SPRITE_MIN_OCCURRENCES or soup.body is None:
        return result

    groups: Dict[str, List[Tag]] = {}
    for svg in svgs:
        if svg.find(["symbol", "use"]) is not None or _is_hidden(svg):
            continue
        if svg.find_parent("svg") is not None:
            continue
        inner = _inner_markup(svg)
        if not inner:
            continue
        symbol_id = symbol_id_for(inner)
        groups.setdefault(symbol_id, []).append(svg)

    repeated = {sid: items for sid, items in groups.items() if len(items) >= SPRITE_MIN_OCCURRENCES}
    if not repeated:
        return result

    sprite = soup.new_tag("svg", attrs={"style": "display:none", "xmlns": SVG_NAMESPACE})
    for symbol_id, items in repeated.items():
        symbol_attrs = {"id": symbol_id}
        view_box = _view_box(items[0])
        if view_box:
            symbol_attrs["viewBox"] = view_box
        sizes = [len(str(svg).encode("utf-8")) for svg in items]
        symbol = soup.new_tag("symbol", attrs=symbol_attrs)
        for child in list(items[0].contents):
            symbol.append(child.extract())
        sprite.append(symbol)

        for svg, before in zip(items, sizes):
            attrs = {name: svg[name] for name in _KEPT_ATTRIBUTES if svg.has_attr(name)}
            if isinstance(attrs.get("class"), list):
                attrs["class"] = " ".join(attrs["class"])
            occurrence_view_box = _view_box(svg)
            if occurrence_view_box:
                attrs["viewBox"] = occurrence_view_box
            replacement = soup.new_tag("svg", attrs=attrs)
            replacement.append(soup.new_tag("use", attrs={"href": f"#{symbol_id}"}))

            after = len(str(replacement).encode("utf-8"))
            result.saved_bytes += max(0, before - after)
            svg.replace_with(replacement)
            result.replacements += 1

    soup.body.insert(0, sprite)
    result.sprite_created = True
    result.symbol_count = len(repeated)
    logger.info(
        f"[SvgSprite] {result.symbol_count} symbol(s), {result.replacements} replacement(s), "
        f"~{result.saved_bytes / 1024:.1f}KB saved"
    )
    return result
