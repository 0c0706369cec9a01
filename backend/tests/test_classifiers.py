"""
Asset classifier tests.

Video classification is checked both as a pure scoring function and against
real markup; widget detection against the declarative registry.
"""

from bs4 import BeautifulSoup

from edgeforge.classifiers import (
    VIDEO_SIGNAL_WEIGHTS,
    VideoSignal,
    VideoType,
    WIDGET_REGISTRY,
    WidgetCategory,
    classify_video,
    classify_widget,
    classify_widgets,
    detect_lcp_image,
    get_fingerprint,
    is_above_fold,
    is_critical,
    score_video_signals,
)


def soup_of(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


# =============================================================================
# Video scoring (pure)
# =============================================================================

class TestScoreVideoSignals:
    """score_video_signals() over named signals, no DOM."""

    def test_weights_table(self):
        """The weight table carries the documented values."""
        assert VIDEO_SIGNAL_WEIGHTS["data_attribute"] == 3
        assert VIDEO_SIGNAL_WEIGHTS["full_bleed_position"] == 4
        assert VIDEO_SIGNAL_WEIGHTS["autoplay_muted_loop"] == 5
        assert VIDEO_SIGNAL_WEIGHTS["native_controls"] == 5
        assert VIDEO_SIGNAL_WEIGHTS["play_button_sibling"] == 3

    def test_no_signals_is_click_to_play(self):
        """Absence of evidence never autoplays."""
        result = score_video_signals([])
        assert result.type == VideoType.CLICK_TO_PLAY
        assert result.confidence == 0.5

    def test_tie_is_click_to_play(self):
        """autoplay_muted_loop (5) vs native_controls (5) is a tie."""
        result = score_video_signals([VideoSignal("autoplay_muted_loop"), VideoSignal("native_controls")])
        assert result.background_score == result.click_to_play_score == 5
        assert result.type == VideoType.CLICK_TO_PLAY

    def test_background_needs_strictly_higher_score(self):
        result = score_video_signals([VideoSignal("data_attribute"), VideoSignal("poster_image")])
        assert result.type == VideoType.BACKGROUND
        assert result.confidence == 0.75


# =============================================================================
# Video classification (DOM)
# =============================================================================

class TestClassifyVideo:
    """classify_video() on real markup."""

    def test_background_hero_video(self):
        """Muted looping full-bleed video in a bg container is background."""
        soup = soup_of(
            '<div class="hero-video"><video autoplay muted loop playsinline '
            'style="position:absolute;width:100%;height:100%;z-index:-1">'
            '<source src="/bg.mp4"></video></div>'
        )
        result = classify_video(soup.video)
        assert result.type == VideoType.BACKGROUND
        names = {s.name for s in result.signals}
        assert {"autoplay_muted_loop", "class_convention", "full_bleed_position", "negative_z_index"} <= names

    def test_video_with_controls_is_click_to_play(self):
        soup = soup_of('<video controls poster="/p.jpg"><source src="/a.mp4"></video>')
        result = classify_video(soup.video)
        assert result.type == VideoType.CLICK_TO_PLAY
        assert result.click_to_play_score == 6

    def test_bare_video_defaults_to_click_to_play(self):
        soup = soup_of('<video><source src="/a.mp4"></video>')
        assert classify_video(soup.video).type == VideoType.CLICK_TO_PLAY

    def test_embed_background_params(self):
        """A Vimeo background embed is background."""
        soup = soup_of(
            '<iframe src="https://player.vimeo.com/video/1?background=1&amp;loop=1&amp;controls=0"></iframe>'
        )
        result = classify_video(soup.iframe)
        assert result.type == VideoType.BACKGROUND

    def test_play_button_sibling(self):
        for cls in ("play-button", "vjs-big-play-button", "playbtn", "video_play"):
            soup = soup_of(f'<div><video src="/a.mp4"></video><span class="{cls}"></span></div>')
            names = {s.name for s in classify_video(soup.video).signals}
            assert "play_button_sibling" in names, cls

    def test_classes_merely_containing_play_are_not_buttons(self):
        soup = soup_of(
            '<div><h1 class="display-4">Title</h1><video src="/a.mp4"></video>'
            '<div class="autoplay-banner player"></div></div>'
        )
        names = {s.name for s in classify_video(soup.video).signals}
        assert "play_button_sibling" not in names

    def test_page_builder_markup(self):
        soup = soup_of(
            '<div class="elementor-background-video-container"><video autoplay muted loop></video></div>'
        )
        names = {s.name for s in classify_video(soup.video).signals}
        assert "page_builder_markup" in names


# =============================================================================
# Widgets
# =============================================================================

class TestWidgetRegistry:
    """Declarative widget fingerprints."""

    def test_registry_covers_categories(self):
        names = {f.name for f in WIDGET_REGISTRY}
        assert {"intercom", "drift", "zendesk", "hubspot", "livechat", "tidio", "crisp", "tawk", "olark"} <= names
        assert {"twitter", "instagram", "facebook", "calendly", "google-maps"} <= names
        assert get_fingerprint("calendly").category == WidgetCategory.SCHEDULING

    def test_classify_widgets_by_script_and_dom(self):
        """Script URLs, inline signatures and DOM selectors all count as evidence."""
        soup = soup_of(
            "<html><body>"
            '<div id="intercom-container"></div>'
            '<script src="https://widget.intercom.io/widget/abc"></script>'
            "<script>window.Tawk_API = window.Tawk_API || {};</script>"
            '<iframe src="https://www.google.com/maps/embed?pb=1"></iframe>'
            "</body></html>"
        )
        matches = {m.name: m for m in classify_widgets(soup)}
        assert set(matches) == {"intercom", "tawk", "google-maps"}
        assert len(matches["intercom"].elements) == 1
        assert len(matches["intercom"].scripts) == 1
        assert len(matches["tawk"].inline_scripts) == 1

    def test_no_widgets(self):
        assert classify_widgets(soup_of("<p>plain</p>")) == []

    def test_classify_single_element(self):
        soup = soup_of('<blockquote class="twitter-tweet"><p>hi</p></blockquote>')
        assert classify_widget(soup.blockquote).name == "twitter"
        assert classify_widget(soup.p) is None


# =============================================================================
# Placement
# =============================================================================

class TestPlacement:
    """LCP detection and above-fold / critical flags."""

    def test_lcp_prefers_hero_container(self):
        soup = soup_of(
            '<body><img src="/logo.png"><main><img src="/hero.jpg"></main></body>'
        )
        assert detect_lcp_image(soup) == "/hero.jpg"

    def test_lcp_prefers_modern_picture_source(self):
        soup = soup_of(
            '<main><picture><source type="image/webp" srcset="/hero.webp 1x">'
            '<img src="/hero.jpg"></picture></main>'
        )
        assert detect_lcp_image(soup) == "/hero.webp"

    def test_lcp_falls_back_to_first_image(self):
        assert detect_lcp_image(soup_of('<div><img src="/a.jpg"><img src="/b.jpg"></div>')) == "/a.jpg"
        assert detect_lcp_image(soup_of("<p>none</p>")) is None

    def test_first_three_images_are_above_fold(self):
        soup = soup_of("<div>" + "".join(f'<img src="/{i}.jpg">' for i in range(5)) + "</div>")
        flags = [is_above_fold(img, i) for i, img in enumerate(soup.find_all("img"))]
        assert flags == [True, True, True, False, False]

    def test_hero_landmark_is_above_fold(self):
        soup = soup_of("<div>" + '<img src="/x.jpg">' * 4 + '<section class="page-hero"><img src="/h.jpg"></section></div>')
        imgs = soup.find_all("img")
        assert is_above_fold(imgs[4], 4)

    def test_logo_is_critical(self):
        soup = soup_of('<footer><img src="/brand/site-logo.svg" alt="Acme"></footer>')
        assert is_critical(soup.img)
        assert not is_critical(soup_of('<footer><img src="/a.jpg"></footer>').img)
