"""
Third-party widget fingerprint registry and matcher.

Every registry entry is fully declarative:
- detection_selectors: CSS selectors of widget DOM
- script_patterns: substrings of <script src> URLs
- inline_script_patterns: regexes over inline <script> bodies
- facade: id of the replacement facade template
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Pattern, Tuple

from bs4 import BeautifulSoup, Tag


class WidgetCategory(str, Enum):
    CHAT = "chat"
    SOCIAL = "social"
    SCHEDULING = "scheduling"
    MAPS = "maps"


@dataclass(frozen=True)
class WidgetFingerprint:
    name: str
    category: WidgetCategory
    detection_selectors: Tuple[str, ...] = ()
    script_patterns: Tuple[str, ...] = ()
    inline_script_patterns: Tuple[Pattern[str], ...] = ()
    facade: str = "chat-button"
    facade_color: str = "#333333"


def _rx(*patterns: str, flags: int = 0) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p, flags) for p in patterns)


WIDGET_REGISTRY: Tuple[WidgetFingerprint, ...] = (
    # Chat
    WidgetFingerprint(
        name="intercom",
        category=WidgetCategory.CHAT,
        detection_selectors=("#intercom-container", ".intercom-lightweight-app", "#intercom-frame"),
        script_patterns=("intercom",),
        inline_script_patterns=_rx(r"Intercom\s*\(", r"intercomSettings"),
        facade_color="#0071B2",
    ),
    WidgetFingerprint(
        name="drift",
        category=WidgetCategory.CHAT,
        detection_selectors=("#drift-widget", "#drift-frame", ".drift-widget-container"),
        script_patterns=("js.driftt.com", "drift"),
        inline_script_patterns=_rx(r"drift\.load\s*\(", r"driftt\.com"),
        facade_color="#4C8BF5",
    ),
    WidgetFingerprint(
        name="zendesk",
        category=WidgetCategory.CHAT,
        detection_selectors=("#ze-snippet", 'iframe[data-product="web_widget"]'),
        script_patterns=("zendesk", "zdassets.com"),
        inline_script_patterns=_rx(r"\bzE\s*\(", r"zendesk", flags=re.I),
        facade_color="#17494D",
    ),
    WidgetFingerprint(
        name="hubspot",
        category=WidgetCategory.CHAT,
        detection_selectors=("#hubspot-messages-iframe-container", "#hubspot-conversations-inline-parent"),
        script_patterns=("hs-scripts", "hubspot"),
        inline_script_patterns=_rx(r"hbspt\.", r"hs-script-loader"),
        facade_color="#FF7A59",
    ),
    WidgetFingerprint(
        name="livechat",
        category=WidgetCategory.CHAT,
        detection_selectors=("#chat-widget-container",),
        script_patterns=("livechatinc.com", "livechat"),
        inline_script_patterns=_rx(r"LiveChatWidget", r"livechatinc\.com"),
        facade_color="#FF5100",
    ),
    WidgetFingerprint(
        name="tidio",
        category=WidgetCategory.CHAT,
        detection_selectors=("#tidio-chat", "#tidio-chat-iframe"),
        script_patterns=("tidio",),
        inline_script_patterns=_rx(r"tidioChatCode", r"tidio\.co"),
        facade_color="#0066FF",
    ),
    WidgetFingerprint(
        name="crisp",
        category=WidgetCategory.CHAT,
        detection_selectors=("#crisp-chatbox", ".crisp-client"),
        script_patterns=("client.crisp.chat", "crisp"),
        inline_script_patterns=_rx(r"\$crisp", r"crisp\.chat"),
        facade_color="#5D47FF",
    ),
    WidgetFingerprint(
        name="tawk",
        category=WidgetCategory.CHAT,
        script_patterns=("embed.tawk.to", "tawk"),
        inline_script_patterns=_rx(r"Tawk_API", r"tawk\.to"),
        facade_color="#03A84E",
    ),
    WidgetFingerprint(
        name="olark",
        category=WidgetCategory.CHAT,
        detection_selectors=("#habla_window_div", "#olark-box-wrapper"),
        script_patterns=("olark",),
        inline_script_patterns=_rx(r"olark\.identify", r"olark\.configure"),
        facade_color="#44C1F7",
    ),
    # Social
    WidgetFingerprint(
        name="twitter",
        category=WidgetCategory.SOCIAL,
        detection_selectors=("blockquote.twitter-tweet",),
        script_patterns=("platform.twitter.com/widgets.js",),
        facade="social-card",
    ),
    WidgetFingerprint(
        name="instagram",
        category=WidgetCategory.SOCIAL,
        detection_selectors=("blockquote.instagram-media",),
        script_patterns=("instagram.com/embed.js",),
        facade="social-card",
    ),
    WidgetFingerprint(
        name="facebook",
        category=WidgetCategory.SOCIAL,
        detection_selectors=(".fb-post", ".fb-video", ".fb-page"),
        script_patterns=("connect.facebook.net",),
        facade="social-card",
    ),
    # Scheduling
    WidgetFingerprint(
        name="calendly",
        category=WidgetCategory.SCHEDULING,
        detection_selectors=(".calendly-inline-widget", ".calendly-badge-widget"),
        script_patterns=("assets.calendly.com",),
        facade="schedule-link",
        facade_color="#006BFF",
    ),
    # Maps
    WidgetFingerprint(
        name="google-maps",
        category=WidgetCategory.MAPS,
        detection_selectors=('iframe[src*="google.com/maps/embed"]', 'iframe[src*="maps.google.com"]'),
        facade="map-placeholder",
    ),
)


def get_fingerprint(name: str) -> Optional[WidgetFingerprint]:
    for fingerprint in WIDGET_REGISTRY:
        if fingerprint.name == name:
            return fingerprint
    return None


@dataclass
class WidgetMatch:
    """Everything in a document that belongs to one detected widget."""

    fingerprint: WidgetFingerprint
    elements: List[Tag] = field(default_factory=list)
    scripts: List[Tag] = field(default_factory=list)
    inline_scripts: List[Tag] = field(default_factory=list)
    signals: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.fingerprint.name


def script_matches(script: Tag, fingerprint: WidgetFingerprint) -> bool:
    src = script.get("src") or ""
    return bool(src) and any(p in src for p in fingerprint.script_patterns)


def inline_script_matches(script: Tag, fingerprint: WidgetFingerprint) -> bool:
    if script.get("src"):
        return False
    body = script.string or script.get_text() or ""
    return any(p.search(body) for p in fingerprint.inline_script_patterns)


def match_widget(soup: BeautifulSoup, fingerprint: WidgetFingerprint) -> Optional[WidgetMatch]:
    """Collect DOM, external and inline script evidence for one fingerprint."""
    match = WidgetMatch(fingerprint=fingerprint)

    for selector in fingerprint.detection_selectors:
        for element in soup.select(selector):
            if not any(existing is element for existing in match.elements):
                match.elements.append(element)
                match.signals.append(f"selector:{selector}")

    for script in soup.find_all("script"):
        if script_matches(script, fingerprint):
            match.scripts.append(script)
            match.signals.append(f"script:{script.get('src')}")
        elif inline_script_matches(script, fingerprint):
            match.inline_scripts.append(script)
            match.signals.append("inline-script")

    if not match.signals:
        return None
    return match


def classify_widgets(soup: BeautifulSoup) -> List[WidgetMatch]:
    """Detect every registered widget present in a document, in registry order."""
    matches = []
    for fingerprint in WIDGET_REGISTRY:
        match = match_widget(soup, fingerprint)
        if match is not None:
            matches.append(match)
    return matches


def classify_widget(element: Tag) -> Optional[WidgetFingerprint]:
    """
    Identify which registered widget a single element belongs to.

    Checks detection selectors against the element itself, then script
    signatures if the element is a <script>.
    """
    for fingerprint in WIDGET_REGISTRY:
        for selector in fingerprint.detection_selectors:
            if element.css.match(selector):
                return fingerprint
        if element.name == "script" and (
            script_matches(element, fingerprint) or inline_script_matches(element, fingerprint)
        ):
            return fingerprint
    return None
