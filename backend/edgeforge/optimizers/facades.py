"""
Lightweight facades for heavy embeds.

Video:
- YouTube / Vimeo / Wistia iframes become a thumbnail + play button that
  swaps in the real iframe (with autoplay) on click; per-platform toggles
- Native <video>: classified; background videos are left alone,
  click-to-play videos get preload="none"

Widgets (driven by classifiers.WIDGET_REGISTRY):
- chat-button: scripts and widget DOM removed; a floating button loads the
  original scripts on click
- social-card: embed script removed; the blockquote fallback is styled
- schedule-link: inline scheduler replaced by a plain booking link
- map-placeholder: iframe replaced by a click-to-load placeholder
  (gated by video.google_maps_use_facade)
"""

import html
import io
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup, Tag
from PIL import Image, ImageOps, UnidentifiedImageError

from ..classifiers import VideoClassification, VideoType, classify_video, classify_widgets
from ..classifiers.widgets import WidgetMatch
from ..fetch import FetchError, Fetcher
from ..settings.schema import VideoSettings
from .base import HtmlStepResult

logger = logging.getLogger(__name__)

VIDEO_EMBED_PATTERNS: Dict[str, Tuple["re.Pattern[str]", ...]] = {
    "youtube": (
        re.compile(r"youtube\.com/embed/([A-Za-z0-9_-]{11})"),
        re.compile(r"youtube-nocookie\.com/embed/([A-Za-z0-9_-]{11})"),
    ),
    "vimeo": (re.compile(r"player\.vimeo\.com/video/(\d+)"),),
    "wistia": (re.compile(r"fast\.wistia\.net/embed/iframe/([A-Za-z0-9]+)"),),
}

THUMBNAIL_DIR = "assets/video-thumbnails"
THUMBNAIL_SIZE = (640, 360)
THUMBNAIL_QUALITY = 80

_MAP_ICON_PATH = (
    "M12 2C8.13 2 5 5.13 5 9c0 5.25 7 13 7 13s7-7.75 7-13c0-3.87-3.13-7-7-7zm0 9.5"
    "c-1.38 0-2.5-1.12-2.5-2.5s1.12-2.5 2.5-2.5 2.5 1.12 2.5 2.5-1.12 2.5-2.5 2.5z"
)

SOCIAL_CARD_STYLE = (
    "border:1px solid #e1e8ed;border-radius:12px;padding:16px;margin:16px 0;"
    "font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;max-width:550px;"
)

VIDEO_FACADE_TEMPLATE = (
    '<div class="ef-video-facade" data-platform="{platform}" data-video-id="{video_id}" '
    'data-original-src="{src}" style="position:relative;width:{width};max-width:100%;'
    'aspect-ratio:16/9;cursor:pointer;overflow:hidden;background:#000;border-radius:8px;">'
    '{thumbnail}'
    '<div style="position:absolute;top:50%;left:50%;transform:translate(-50%,-50%);width:68px;'
    'height:48px;background:rgba(0,0,0,0.7);border-radius:14px;display:flex;align-items:center;'
    'justify-content:center;"><svg width="24" height="24" viewBox="0 0 24 24" fill="white">'
    '<path d="M8 5v14l11-7z"></path></svg></div></div>'
)

VIDEO_FACADE_LOADER = """
document.querySelectorAll('.ef-video-facade').forEach(function(el) {
  el.addEventListener('click', function() {
    var src = el.getAttribute('data-original-src');
    var sep = src.indexOf('?') !== -1 ? '&' : '?';
    var iframe = document.createElement('iframe');
    iframe.src = src + sep + 'autoplay=1';
    iframe.style.cssText = 'position:absolute;top:0;left:0;width:100%;height:100%;border:0;';
    iframe.allow = 'autoplay; encrypted-media; picture-in-picture';
    iframe.allowFullscreen = true;
    el.innerHTML = '';
    el.appendChild(iframe);
  }, { once: true });
});
"""

CHAT_FACADE_TEMPLATE = (
    '<div class="ef-chat-facade ef-chat-{name}" role="button" aria-label="Open chat" '
    'style="position:fixed;bottom:20px;right:20px;z-index:999999;width:60px;height:60px;'
    'border-radius:50%;background:{color};cursor:pointer;display:flex;align-items:center;'
    'justify-content:center;box-shadow:0 4px 12px rgba(0,0,0,0.15);">'
    '<svg width="28" height="28" viewBox="0 0 24 24" fill="white" xmlns="http://www.w3.org/2000/svg">'
    '<path d="M20 2H4c-1.1 0-2 .9-2 2v18l4-4h14c1.1 0 2-.9 2-2V4c0-1.1-.9-2-2-2zm0 14H6l-2 2V4h16v12z">'
    '</path></svg></div>'
)

CHAT_FACADE_LOADER = """
(function() {{
  var facade = document.querySelector('.ef-chat-{name}');
  if (!facade) return;
  facade.addEventListener('click', function() {{
    facade.remove();
    {loader}
  }}, {{ once: true }});
}})();
"""

SCHEDULE_LINK_TEMPLATE = (
    '<div class="ef-schedule-facade" style="text-align:center;padding:20px;">'
    '<a href="{url}" target="_blank" rel="noopener" style="display:inline-block;padding:12px 24px;'
    'background:{color};color:#fff;border-radius:8px;text-decoration:none;font-weight:600;'
    'font-size:16px;">Schedule a Meeting</a></div>'
)

MAP_FACADE_TEMPLATE = (
    '<div class="ef-map-facade" data-original-src="{src}" style="position:relative;width:{width};'
    'height:{height};max-width:100%;background:#e8e8e8;border-radius:8px;cursor:pointer;display:flex;'
    'align-items:center;justify-content:center;overflow:hidden;">{placeholder}</div>'
)

MAP_STATIC_PREVIEW = (
    '<div style="width:100%;height:100%;background:linear-gradient(135deg,#e8e8e8 0%,#c8d4e0 50%,'
    '#d0d8e4 100%);display:flex;align-items:center;justify-content:center;">'
    '<svg width="48" height="48" viewBox="0 0 24 24" fill="#5a6a7a"><path d="' + _MAP_ICON_PATH + '">'
    '</path></svg><span style="margin-left:8px;color:#5a6a7a;font-size:14px;">Click to load map</span></div>'
)

MAP_ICON_PREVIEW = (
    '<div style="text-align:center;padding:20px;"><svg width="48" height="48" viewBox="0 0 24 24" '
    'fill="#666" xmlns="http://www.w3.org/2000/svg"><path d="' + _MAP_ICON_PATH + '"></path></svg>'
    '<p style="margin:8px 0 0;color:#666;font-size:14px;">Click to load interactive map</p></div>'
)

MAP_FACADE_LOADER = """
document.querySelectorAll('.ef-map-facade').forEach(function(el) {
  el.addEventListener('click', function() {
    var iframe = document.createElement('iframe');
    iframe.src = el.getAttribute('data-original-src');
    iframe.style.cssText = 'width:100%;height:100%;border:0;border-radius:8px;';
    iframe.loading = 'lazy';
    iframe.allowFullscreen = true;
    el.replaceWith(iframe);
  }, { once: true });
});
"""


@dataclass
class FacadeResult(HtmlStepResult):
    """HtmlStepResult plus files to write into the workspace."""

    files: Dict[str, bytes] = field(default_factory=dict)
    classifications: List[VideoClassification] = field(default_factory=list)


def _attr(value: str) -> str:
    return html.escape(value, quote=True)


def _css_length(value: Optional[str], default: str) -> str:
    if not value:
        return default
    value = value.strip()
    return f"{value}px" if value.isdigit() else value


def _replace_with_markup(element: Tag, markup: str) -> None:
    fragment = BeautifulSoup(markup, "html.parser")
    element.replace_with(*list(fragment.contents))


def _append_script(soup: BeautifulSoup, body: str) -> None:
    script = soup.new_tag("script")
    script.string = body
    (soup.body or soup).append(script)


def _alive(element: Tag) -> bool:
    return not getattr(element, "decomposed", False) and element.parent is not None


def match_video_embed(src: str) -> Optional[Tuple[str, str]]:
    """(platform, video_id) for a known embed URL, else None."""
    for platform, patterns in VIDEO_EMBED_PATTERNS.items():
        for pattern in patterns:
            match = pattern.search(src)
            if match:
                return platform, match.group(1)
    return None


class ThumbnailFetcher:
    """
    Fetches, crops and re-encodes poster thumbnails for video facades.

    Results are cached per instance, so one build fetches each video once.
    Any failure (network, oEmbed payload, image decode) yields None and the
    facade is rendered without a poster.
    """

    def __init__(self, fetcher: Fetcher, poster_quality: str = "sddefault"):
        self.fetcher = fetcher
        self.poster_quality = poster_quality
        self._cache: Dict[Tuple[str, str], Optional[Tuple[str, bytes]]] = {}
        self._lock = threading.Lock()

    def thumbnail_url(self, platform: str, video_id: str) -> Optional[str]:
        if platform == "youtube":
            return f"https://i.ytimg.com/vi/{video_id}/{self.poster_quality}.jpg"
        if platform == "vimeo":
            oembed = f"https://vimeo.com/api/oembed.json?url=https://vimeo.com/{video_id}"
        elif platform == "wistia":
            oembed = f"https://fast.wistia.com/oembed?url=https://home.wistia.com/medias/{video_id}"
        else:
            return None
        payload = json.loads(self.fetcher.fetch(oembed).text)
        return payload.get("thumbnail_url")

    def _render(self, content: bytes) -> bytes:
        with Image.open(io.BytesIO(content)) as img:
            poster = ImageOps.fit(img.convert("RGB"), THUMBNAIL_SIZE, Image.Resampling.LANCZOS)
        buffer = io.BytesIO()
        poster.save(buffer, format="WEBP", quality=THUMBNAIL_QUALITY)
        return buffer.getvalue()

    def fetch(self, platform: str, video_id: str) -> Optional[Tuple[str, bytes]]:
        """(workspace path, webp bytes) for a video's poster, or None."""
        key = (platform, video_id)
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        thumbnail: Optional[Tuple[str, bytes]] = None
        try:
            url = self.thumbnail_url(platform, video_id)
            if url:
                content = self.fetcher.fetch(url).content
                thumbnail = (f"{THUMBNAIL_DIR}/{platform}-{video_id}.webp", self._render(content))
        except (FetchError, ValueError, KeyError) as e:
            logger.warning(f"[Facades] No thumbnail for {platform}:{video_id}: {e}")
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"[Facades] Thumbnail for {platform}:{video_id} is not a readable image: {e}")

        with self._lock:
            self._cache[key] = thumbnail
        return thumbnail


def _original_src(src: str, platform: str, settings: VideoSettings) -> str:
    if src.startswith("//"):
        src = "https:" + src
    if platform == "youtube" and settings.use_nocookie:
        src = src.replace("www.youtube.com/embed/", "www.youtube-nocookie.com/embed/")
        src = src.replace("//youtube.com/embed/", "//www.youtube-nocookie.com/embed/")
    return src


def apply_video_facades(
    soup: BeautifulSoup,
    settings: VideoSettings,
    thumbnails: Optional[ThumbnailFetcher] = None,
) -> FacadeResult:
    """Replace video embeds in place and tune native <video> preloading."""
    result = FacadeResult()
    if not settings.facades_enabled:
        return result

    for iframe in soup.find_all("iframe", src=True):
        embed = match_video_embed(iframe["src"])
        if embed is None:
            continue
        platform, video_id = embed
        if not getattr(settings.platforms, platform):
            continue

        thumbnail_markup = ""
        if thumbnails is not None:
            thumbnail = thumbnails.fetch(platform, video_id)
            if thumbnail is not None:
                path, content = thumbnail
                result.files[path] = content
                thumbnail_markup = (
                    f'<img src="/{_attr(path)}" alt="Video thumbnail" loading="lazy" decoding="async" '
                    'width="640" height="360" style="width:100%;height:100%;object-fit:cover;">'
                )

        markup = VIDEO_FACADE_TEMPLATE.format(
            platform=platform,
            video_id=_attr(video_id),
            src=_attr(_original_src(iframe["src"], platform, settings)),
            width=_attr(_css_length(iframe.get("width"), "100%")),
            thumbnail=thumbnail_markup,
        )
        _replace_with_markup(iframe, markup)
        result.facades_applied += 1
        result.changed += 1

    if result.facades_applied:
        _append_script(soup, VIDEO_FACADE_LOADER)

    if settings.classify_native_video:
        for video in soup.find_all("video"):
            classification = classify_video(video)
            result.classifications.append(classification)
            if classification.type == VideoType.CLICK_TO_PLAY and not video.has_attr("autoplay"):
                if video.get("preload") != "none":
                    video["preload"] = "none"
                    result.changed += 1

    return result


def _script_loader(match: WidgetMatch) -> str:
    parts = []
    for script in match.scripts:
        src = json.dumps(script["src"])
        parts.append(f"var s=document.createElement('script');s.src={src};s.async=true;document.body.appendChild(s);")
    if not parts:
        for script in match.inline_scripts:
            parts.append(script.string or script.get_text() or "")
    return "\n    ".join(parts)


def _remove_scripts(match: WidgetMatch, result: HtmlStepResult) -> None:
    for script in match.scripts + match.inline_scripts:
        if _alive(script):
            script.decompose()
            result.scripts_removed += 1


def _apply_chat(soup: BeautifulSoup, match: WidgetMatch, result: HtmlStepResult) -> None:
    loader = _script_loader(match)
    _remove_scripts(match, result)
    for element in match.elements:
        if _alive(element):
            element.decompose()

    body = soup.body or soup
    fragment = BeautifulSoup(
        CHAT_FACADE_TEMPLATE.format(name=match.name, color=match.fingerprint.facade_color), "html.parser"
    )
    for node in list(fragment.contents):
        body.append(node)
    _append_script(soup, CHAT_FACADE_LOADER.format(name=match.name, loader=loader))
    result.facades_applied += 1


def _apply_social(match: WidgetMatch, result: HtmlStepResult) -> None:
    _remove_scripts(match, result)
    for element in match.elements:
        if _alive(element):
            existing = (element.get("style") or "").strip()
            if existing and not existing.endswith(";"):
                existing += ";"
            element["style"] = existing + SOCIAL_CARD_STYLE
    result.facades_applied += 1


def _apply_schedule(match: WidgetMatch, result: HtmlStepResult) -> None:
    _remove_scripts(match, result)
    for element in match.elements:
        if not _alive(element):
            continue
        markup = SCHEDULE_LINK_TEMPLATE.format(
            url=_attr(element.get("data-url") or ""), color=match.fingerprint.facade_color
        )
        _replace_with_markup(element, markup)
        result.facades_applied += 1


def _apply_map(match: WidgetMatch, settings: VideoSettings, result: HtmlStepResult) -> int:
    placeholder = MAP_STATIC_PREVIEW if settings.google_maps_static_preview else MAP_ICON_PREVIEW
    replaced = 0
    for iframe in match.elements:
        if not _alive(iframe):
            continue
        markup = MAP_FACADE_TEMPLATE.format(
            src=_attr(iframe.get("src") or ""),
            width=_attr(_css_length(iframe.get("width"), "100%")),
            height=_attr(_css_length(iframe.get("height"), "450px")),
            placeholder=placeholder,
        )
        _replace_with_markup(iframe, markup)
        replaced += 1
    result.facades_applied += replaced
    return replaced


def apply_widget_facades(soup: BeautifulSoup, settings: VideoSettings) -> HtmlStepResult:
    """Replace every detected third-party widget with its facade, in place."""
    result = HtmlStepResult()
    maps_replaced = 0

    for match in classify_widgets(soup):
        facade = match.fingerprint.facade
        if facade == "map-placeholder":
            if settings.google_maps_use_facade:
                maps_replaced += _apply_map(match, settings, result)
            continue
        if not settings.widget_facades_enabled:
            continue
        if facade == "chat-button":
            _apply_chat(soup, match, result)
        elif facade == "social-card":
            _apply_social(match, result)
        elif facade == "schedule-link":
            _apply_schedule(match, result)
        result.notes.append(f"{match.name}: {', '.join(match.signals)}")

    if maps_replaced:
        _append_script(soup, MAP_FACADE_LOADER)

    result.changed = result.facades_applied
    if result.facades_applied:
        logger.debug(f"[Facades] {result.facades_applied} widget facade(s), {result.scripts_removed} script(s) removed")
    return result
