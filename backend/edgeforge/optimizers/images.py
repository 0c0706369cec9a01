"""
Image optimizer (Pillow).

Rules:
- Raster images are resized to images.max_width and re-encoded with the
  format's quality; the re-encode is kept only if it is smaller
- Secondary formats (WebP, AVIF when the Pillow build supports it) and
  responsive widths are emitted as variants
- SVG gets a light, palette-preserving markup cleanup
- GIF, ICO and any animated image pass through untouched
"""

import io
import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import List, Optional

from PIL import Image, UnidentifiedImageError

from ..settings.schema import ImageSettings
from .base import ByteStats
from .errors import UnsupportedFormatError

logger = logging.getLogger(__name__)

PASSTHROUGH_EXTENSIONS = (".gif", ".ico")
SVG_EXTENSIONS = (".svg",)

_PIL_FORMAT_EXT = {
    "JPEG": ".jpg",
    "PNG": ".png",
    "WEBP": ".webp",
    "AVIF": ".avif",
}

_XML_COMMENT_RE = re.compile(r"<!--.*?-->", re.S)
_METADATA_RE = re.compile(r"<metadata\b.*?</metadata>", re.S | re.I)
_EDITOR_ELEMENT_RE = re.compile(r"<(sodipodi|inkscape):[^>]*?(/>|>.*?</\1:[^>]*>)", re.S)
_EDITOR_ATTR_RE = re.compile(r"\s(?:sodipodi|inkscape):[\w-]+=\"[^\"]*\"")
_EDITOR_XMLNS_RE = re.compile(r"\sxmlns:(?:sodipodi|inkscape)=\"[^\"]*\"")
_BETWEEN_TAGS_RE = re.compile(r">\s+<")


@dataclass
class ImageVariant:
    filename: str
    format: str
    width: int
    height: int
    content: bytes
    responsive: bool = False  # a srcset width, not an alternate format


@dataclass
class ImageOptimizeResult:
    content: bytes
    filename: str
    format: str
    stats: ByteStats
    width: Optional[int] = None
    height: Optional[int] = None
    variants: List[ImageVariant] = field(default_factory=list)
    passthrough: bool = False
    reencoded: bool = False


def avif_supported() -> bool:
    Image.init()
    return "AVIF" in Image.SAVE


def optimize_svg_markup(svg: str) -> str:
    """Drop comments, editor metadata and inter-tag whitespace. Colours are untouched."""
    svg = _XML_COMMENT_RE.sub("", svg)
    svg = _METADATA_RE.sub("", svg)
    svg = _EDITOR_ELEMENT_RE.sub("", svg)
    svg = _EDITOR_ATTR_RE.sub("", svg)
    svg = _EDITOR_XMLNS_RE.sub("", svg)
    svg = _BETWEEN_TAGS_RE.sub("><", svg)
    return svg.strip()


def _looks_like_svg(data: bytes) -> bool:
    head = data[:512].lstrip().lower()
    return head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in data[:2048].lower())


def _encode(img: Image.Image, pil_format: str, quality: int, settings: ImageSettings) -> bytes:
    buffer = io.BytesIO()
    if pil_format == "JPEG":
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        img.save(buffer, format="JPEG", quality=quality, optimize=True,
                 progressive=settings.jpeg.progressive)
    elif pil_format == "PNG":
        img.save(buffer, format="PNG", optimize=True)
    elif pil_format == "WEBP":
        img.save(buffer, format="WEBP", quality=quality, lossless=settings.webp.lossless, method=6)
    elif pil_format == "AVIF":
        img.save(buffer, format="AVIF", quality=quality)
    else:
        img.save(buffer, format=pil_format)
    return buffer.getvalue()


def _quality_for(pil_format: str, settings: ImageSettings, tier: Optional[str]) -> int:
    if tier:
        return getattr(settings.quality_tiers, tier)
    if pil_format == "JPEG":
        return settings.jpeg.quality
    if pil_format == "WEBP":
        return settings.webp.quality
    if pil_format == "AVIF":
        return settings.avif.quality
    return settings.png.quality


def _resize(img: Image.Image, width: int) -> Image.Image:
    height = max(1, round(img.height * width / img.width))
    return img.resize((width, height), Image.Resampling.LANCZOS)


def _variant_name(filename: str, ext: str, width: Optional[int] = None) -> str:
    stem, _ = posixpath.splitext(filename)
    suffix = f"-{width}w" if width else ""
    return f"{stem}{suffix}{ext}"


def optimize_image(
    data: bytes,
    filename: str,
    settings: ImageSettings,
    tier: Optional[str] = None,
) -> ImageOptimizeResult:
    """
    Optimize one image payload.

    Args:
        data: Raw image bytes
        filename: Workspace-relative path
        settings: Resolved images settings section
        tier: Optional quality tier ("hero", "standard", "thumbnail")

    Raises:
        UnsupportedFormatError: If a raster payload cannot be decoded
    """
    original = len(data)
    ext = posixpath.splitext(filename.lower())[1]

    def passthrough(fmt: str) -> ImageOptimizeResult:
        return ImageOptimizeResult(
            content=data, filename=filename, format=fmt,
            stats=ByteStats(original, original), passthrough=True,
        )

    if not settings.enabled:
        return passthrough(ext.lstrip(".") or "unknown")

    if ext in SVG_EXTENSIONS or _looks_like_svg(data):
        if not settings.optimize_svg:
            return passthrough("svg")
        cleaned = optimize_svg_markup(data.decode("utf-8", errors="replace")).encode("utf-8")
        if len(cleaned) >= original:
            return passthrough("svg")
        return ImageOptimizeResult(
            content=cleaned, filename=filename, format="svg",
            stats=ByteStats(original, len(cleaned)), reencoded=True,
        )

    if ext in PASSTHROUGH_EXTENSIONS:
        return passthrough(ext.lstrip("."))

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise UnsupportedFormatError(filename, str(e)) from e

    pil_format = (img.format or "").upper()
    if getattr(img, "is_animated", False) or pil_format in ("GIF", "ICO"):
        return passthrough(pil_format.lower())

    source_size = img.size
    resized = False
    if img.width > settings.max_width:
        img = _resize(img, settings.max_width)
        resized = True

    output = data
    reencoded = False
    if pil_format in _PIL_FORMAT_EXT:
        encoded = _encode(img, pil_format, _quality_for(pil_format, settings, tier), settings)
        if len(encoded) < original:
            output = encoded
            reencoded = True
        elif resized:
            logger.debug(f"[Images] Resized {filename} is not smaller; keeping original bytes")

    width, height = img.size if reencoded else source_size

    variants: List[ImageVariant] = []
    if settings.convert_to_webp and pil_format != "WEBP":
        webp = _encode(img, "WEBP", _quality_for("WEBP", settings, tier), settings)
        if len(webp) < len(output):
            variants.append(ImageVariant(_variant_name(filename, ".webp"), "webp", img.width, img.height, webp))

    if settings.convert_to_avif and pil_format != "AVIF":
        if avif_supported():
            avif = _encode(img, "AVIF", _quality_for("AVIF", settings, tier), settings)
            variants.append(ImageVariant(_variant_name(filename, ".avif"), "avif", img.width, img.height, avif))
        else:
            logger.debug("[Images] AVIF requested but not supported by this Pillow build")

    if settings.generate_srcset:
        responsive_format = "WEBP" if settings.convert_to_webp else pil_format
        if responsive_format in _PIL_FORMAT_EXT:
            for breakpoint in sorted(set(settings.breakpoints)):
                if breakpoint >= img.width:
                    continue
                scaled = _resize(img, breakpoint)
                content = _encode(scaled, responsive_format, _quality_for(responsive_format, settings, tier), settings)
                variants.append(ImageVariant(
                    _variant_name(filename, _PIL_FORMAT_EXT[responsive_format], breakpoint),
                    responsive_format.lower(), scaled.width, scaled.height, content, responsive=True,
                ))

    return ImageOptimizeResult(
        content=output,
        filename=filename,
        format=pil_format.lower(),
        stats=ByteStats(original, len(output)),
        width=width,
        height=height,
        variants=variants,
        reencoded=reencoded,
    )
