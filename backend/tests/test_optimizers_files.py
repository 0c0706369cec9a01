"""
File optimizer tests: CSS, JS and images.

Tests:
1. CSS purge tiers, blocklist, at-rules and test mode
2. font-display normalisation and content-hashed names
3. Dead script removal and reserved-global guard
4. Script loading strategy and head relocation
5. Image resize, variants, passthrough and SVG cleanup
"""

import re

import pytest
from bs4 import BeautifulSoup

from edgeforge.optimizers import (
    OptimizerError,
    UnsupportedFormatError,
    apply_font_display,
    apply_loading_strategy,
    hashed_filename,
    is_dead_script,
    optimize_css,
    optimize_image,
    optimize_js,
    purge_css,
    relocate_head_scripts,
    remove_dead_script_tags,
)
from edgeforge.optimizers.images import avif_supported
from edgeforge.settings.schema import CssSettings, ImageSettings, JsSettings, RemoveScripts


# =============================================================================
# CSS
# =============================================================================

class TestCssPurge:
    """Selector purge against the crawled HTML set."""

    HTML = ['<html><body><div class="used" id="main"><p>Hi</p></div></body></html>']

    def test_test_mode_reports_but_keeps(self):
        """Test mode lists would-remove selectors and writes the CSS untouched."""
        css = ".used{color:red}\n.unused{color:blue}"
        settings = CssSettings(purge_test_mode=True)

        result = optimize_css(css, self.HTML, settings)

        assert ".unused" in result.would_remove
        assert result.removed_selectors == []
        assert ".unused" in result.content
        assert result.test_mode is True

    def test_purge_removes_unused(self):
        css = ".used{color:red}\n.unused{color:blue}\n#main{margin:0}\nul li{padding:0}"
        result = optimize_css(css, self.HTML, CssSettings())

        assert ".used" in result.content
        assert "#main" in result.content
        assert ".unused" not in result.content
        assert set(result.removed_selectors) == {".unused", "ul li"}

    def test_selector_list_keeps_used_members(self):
        purged, removed = purge_css(".used, .gone{color:red}", self.HTML, CssSettings())
        assert purged.startswith(".used{")
        assert removed == [".gone"]

    def test_pseudo_and_attribute_parts_ignored(self):
        purged, removed = purge_css(
            '.used:hover{color:red} .used[data-x="1"]::before{content:""}', self.HTML, CssSettings()
        )
        assert removed == []

    def test_safelist_tiers(self):
        """Greedy survives only on safe; standard survives on every tier."""
        css = ".modal-open{overflow:hidden}\n.active{color:red}\n.wp-block-x{margin:0}"

        safe, _ = purge_css(css, self.HTML, CssSettings(purge_aggressiveness="safe"))
        moderate, _ = purge_css(css, self.HTML, CssSettings(purge_aggressiveness="moderate"))
        aggressive, _ = purge_css(css, self.HTML, CssSettings(purge_aggressiveness="aggressive"))

        assert ".modal-open" in safe and ".wp-block-x" in safe
        assert ".modal-open" not in moderate and ".wp-block-x" in moderate
        assert ".modal-open" not in aggressive and ".wp-block-x" not in aggressive
        assert ".active" in aggressive

    def test_blocklist_wins(self):
        settings = CssSettings(purge_blocklist_patterns=[r"^\.used$"])
        purged, removed = purge_css(".used{color:red}", self.HTML, settings)
        assert removed == [".used"]
        assert purged == ""

    def test_at_rules(self):
        """@font-face survives; @media bodies are purged and dropped when empty."""
        css = (
            "@import url(base.css);\n"
            "@font-face{font-family:X;src:url(x.woff2)}\n"
            "@media (max-width:600px){.unused{color:red}}\n"
            "@media print{.used{color:black}}\n"
            "@keyframes spin{from{opacity:0}to{opacity:1}}"
        )
        purged, removed = purge_css(css, self.HTML, CssSettings())
        assert "@import url(base.css);" in purged
        assert "@font-face" in purged
        assert "max-width:600px" not in purged
        assert "@media print{.used{color:black}}" in purged
        assert "@keyframes spin" in purged
        assert removed == [".unused"]

    def test_unbalanced_braces_raise(self):
        with pytest.raises(OptimizerError):
            optimize_css(".used{color:red", self.HTML, CssSettings())


class TestCssOutput:

    def test_font_display_injected_and_normalised(self):
        css, count = apply_font_display("@font-face{font-family:X;src:url(x.woff2)}", "swap")
        assert count == 1
        assert "font-display:swap" in css

        css, count = apply_font_display("@font-face{font-family:X;font-display:block}", "optional")
        assert count == 1
        assert "font-display:optional" in css and "block" not in css

    def test_minify_and_hashed_name(self):
        css = ".used {\n  color: red;\n}\n"
        result = optimize_css(css, ['<b class="used">'], CssSettings(), filename="css/site.css")
        assert result.content == ".used{color:red}"
        assert re.fullmatch(r"css/site\.[0-9a-f]{8}\.css", result.hashed_name)
        assert result.stats.optimized_bytes < result.stats.original_bytes

    def test_disabled_is_identity(self):
        css = ".unused { color: red; }"
        result = optimize_css(css, [], CssSettings(enabled=False))
        assert result.content == css

    def test_hashed_filename_is_content_addressed(self):
        assert hashed_filename("a.css", b"x") == hashed_filename("a.css", b"x")
        assert hashed_filename("a.css", b"x") != hashed_filename("a.css", b"y")


# =============================================================================
# JS
# =============================================================================

class TestJsFiles:
    """optimize_js() per file."""

    def test_dead_script_removed(self):
        result = optimize_js("/* emoji */", "https://x.test/wp-includes/js/wp-emoji-release.min.js", JsSettings())
        assert result.removed is True
        assert result.content == ""
        assert result.hashed_name is None
        assert result.stats.optimized_bytes == 0

    def test_category_toggle(self):
        settings = JsSettings(remove_scripts=RemoveScripts(wp_emoji=False))
        assert not is_dead_script("wp-emoji-release.min.js", settings)
        assert is_dead_script("jquery-migrate.min.js", settings)

    def test_jquery_only_when_enabled(self):
        assert not is_dead_script("/js/jquery.min.js", JsSettings())
        assert is_dead_script("/js/jquery.min.js", JsSettings(remove_jquery=True))

    def test_custom_patterns(self):
        settings = JsSettings(custom_remove_patterns=["legacy-slider"])
        assert is_dead_script("/assets/Legacy-Slider.bundle.js", settings)

    def test_minify_drops_console_and_debugger(self):
        js = "function f(a) {\n  console.log('value', g(a));\n  debugger;\n  return a;\n}\n"
        result = optimize_js(js, "app.js", JsSettings())
        assert "console" not in result.content
        assert "debugger" not in result.content
        assert "return a" in result.content
        assert result.kept_original is False

    def test_reserved_globals_survive(self):
        js = "jQuery(function ($) {\n  $('.menu').hide();\n  window.dataLayer = window.dataLayer || [];\n});\n"
        result = optimize_js(js, "app.js", JsSettings())
        assert "jQuery" in result.content and "dataLayer" in result.content
        assert result.kept_original is False

    def test_lost_global_keeps_original(self):
        """If stripping would drop a reserved global, the original is kept."""
        js = "console.log(dataLayer);\nvar x = 1;\n"
        result = optimize_js(js, "app.js", JsSettings())
        assert result.kept_original is True
        assert result.content == js

    def test_minify_disabled(self):
        js = "var  x = 1 ;"
        assert optimize_js(js, "a.js", JsSettings(minify_enabled=False)).content == js


class TestJsPage:
    """Page-level script handling."""

    def test_loading_strategy(self):
        soup = BeautifulSoup(
            '<head><script src="/app.js"></script>'
            '<script src="/b.js" async></script>'
            '<script src="https://www.googletagmanager.com/gtm.js?id=GTM-1"></script>'
            '<script type="module" src="/m.js"></script>'
            '<script src="/legacy.js" data-no-defer></script></head>',
            "html.parser",
        )
        result = apply_loading_strategy(soup, JsSettings())
        scripts = {s["src"]: s for s in soup.find_all("script")}
        assert scripts["/app.js"].has_attr("defer")
        assert not scripts["/b.js"].has_attr("defer")
        assert not scripts["https://www.googletagmanager.com/gtm.js?id=GTM-1"].has_attr("defer")
        assert not scripts["/m.js"].has_attr("defer")
        assert not scripts["/legacy.js"].has_attr("defer")
        assert result.changed == 1

    def test_async_strategy(self):
        soup = BeautifulSoup('<script src="/app.js"></script>', "html.parser")
        apply_loading_strategy(soup, JsSettings(default_loading_strategy="async"))
        assert soup.script.has_attr("async")

    def test_relocate_head_scripts(self):
        big = "var config = {" + ", ".join(f"k{i}: {i}" for i in range(60)) + "};"
        soup = BeautifulSoup(
            "<html><head>"
            f"<script>{big}</script>"
            "<script>window.x = 1;</script>"
            f'<script type="application/ld+json">{{"@type": "Organization", "pad": "{"p" * 300}"}}</script>'
            f"<script>gtag('config', 'G-1'); {big}</script>"
            "</head><body><p>x</p></body></html>",
            "html.parser",
        )
        result = relocate_head_scripts(soup, JsSettings())

        assert result.changed == 1
        assert soup.body.find_all("script")[-1].string == big
        assert len(soup.head.find_all("script")) == 3

    def test_remove_dead_script_tags(self):
        soup = BeautifulSoup(
            '<script src="/wp-includes/js/wp-embed.min.js"></script><script src="/app.js"></script>',
            "html.parser",
        )
        result = remove_dead_script_tags(soup, JsSettings())
        assert result.scripts_removed == 1
        assert [s["src"] for s in soup.find_all("script")] == ["/app.js"]


# =============================================================================
# Images
# =============================================================================

class TestImages:
    """optimize_image() with Pillow."""

    def test_resize_and_reencode(self, make_image):
        data = make_image(800, 600)
        settings = ImageSettings(max_width=400, breakpoints=[320, 1024])

        result = optimize_image(data, "img/photo.jpg", settings)

        assert result.reencoded is True
        assert (result.width, result.height) == (400, 300)
        assert result.stats.optimized_bytes < result.stats.original_bytes
        responsive = [v for v in result.variants if v.responsive]
        assert [v.width for v in responsive] == [320]
        assert responsive[0].filename == "img/photo-320w.webp"

    def test_no_srcset_when_disabled(self, make_image):
        settings = ImageSettings(generate_srcset=False, convert_to_webp=False)
        result = optimize_image(make_image(800, 600), "a.jpg", settings)
        assert result.variants == []

    def test_avif_follows_pillow_support(self, make_image):
        settings = ImageSettings(convert_to_avif=True, generate_srcset=False)
        result = optimize_image(make_image(200, 100), "a.jpg", settings)
        has_avif = any(v.format == "avif" for v in result.variants)
        assert has_avif == avif_supported()

    def test_gif_passthrough(self, make_image):
        data = make_image(100, 100, fmt="GIF")
        result = optimize_image(data, "anim.gif", ImageSettings())
        assert result.passthrough is True
        assert result.content == data

    def test_disabled_passthrough(self, make_image):
        data = make_image(100, 100)
        result = optimize_image(data, "a.jpg", ImageSettings(enabled=False))
        assert result.passthrough and result.content == data

    def test_corrupt_payload(self):
        with pytest.raises(UnsupportedFormatError):
            optimize_image(b"definitely not an image", "broken.jpg", ImageSettings())

    def test_svg_cleanup_keeps_colours(self):
        svg = (
            '<?xml version="1.0"?>\n<svg xmlns="http://www.w3.org/2000/svg" '
            'xmlns:inkscape="http://www.inkscape.org/namespaces/inkscape" viewBox="0 0 10 10">\n'
            "  <!-- exported -->\n  <metadata><rdf>junk</rdf></metadata>\n"
            '  <rect inkscape:label="bg" fill="#ff0000" width="10" height="10"/>\n</svg>\n'
        ).encode("utf-8")

        result = optimize_image(svg, "icons/logo.svg", ImageSettings())

        text = result.content.decode("utf-8")
        assert result.format == "svg"
        assert "exported" not in text and "metadata" not in text and "inkscape" not in text
        assert 'fill="#ff0000"' in text
        assert result.stats.optimized_bytes < result.stats.original_bytes
