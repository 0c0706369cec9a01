"""
Optimization settings schema.

Every leaf has a documented default. A site stores only a SPARSE override
(the leaves that differ from these defaults); the resolved tree is always
produced by validating defaults + overrides against this schema.

Rules:
- Sections are tagged per asset type (html, css, js, images, fonts, video,
  seo) plus resource_hints and build
- Unknown keys are rejected (extra="forbid")
- Leaves are strictly typed (strict=True): "true" is not a bool
- Resolved settings are frozen; a build holds a snapshot that never changes
"""

from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)


FontDisplay = Literal["swap", "optional", "fallback", "block"]


# ============================================================================
# IMAGES
# ============================================================================

class WebpSettings(_Section):
    quality: int = Field(default=80, ge=1, le=100)
    lossless: bool = False


class AvifSettings(_Section):
    quality: int = Field(default=50, ge=1, le=100)


class JpegSettings(_Section):
    quality: int = Field(default=80, ge=1, le=100)
    progressive: bool = True


class PngSettings(_Section):
    quality: int = Field(default=80, ge=1, le=100)


class QualityTiers(_Section):
    """Re-encode quality per image role."""

    hero: int = Field(default=88, ge=1, le=100)
    standard: int = Field(default=78, ge=1, le=100)
    thumbnail: int = Field(default=65, ge=1, le=100)


class ImageSettings(_Section):
    enabled: bool = True
    max_width: int = Field(default=2560, ge=1)
    webp: WebpSettings = WebpSettings()
    avif: AvifSettings = AvifSettings()
    jpeg: JpegSettings = JpegSettings()
    png: PngSettings = PngSettings()
    quality_tiers: QualityTiers = QualityTiers()
    convert_to_webp: bool = True
    convert_to_avif: bool = False
    breakpoints: List[int] = Field(default_factory=lambda: [320, 640, 768, 1024, 1280, 1920])
    generate_srcset: bool = True
    strip_metadata: bool = True
    add_dimensions: bool = True
    optimize_svg: bool = True
    lazy_load_enabled: bool = True
    migrate_to_cdn: bool = True


# ============================================================================
# VIDEO / EMBEDS
# ============================================================================

class VideoPlatforms(_Section):
    youtube: bool = True
    vimeo: bool = True
    wistia: bool = True


class VideoSettings(_Section):
    facades_enabled: bool = True
    platforms: VideoPlatforms = VideoPlatforms()
    poster_quality: Literal["default", "mqdefault", "hqdefault", "sddefault", "maxresdefault"] = "sddefault"
    use_nocookie: bool = True
    classify_native_video: bool = True
    google_maps_use_facade: bool = True
    google_maps_static_preview: bool = True
    widget_facades_enabled: bool = True


# ============================================================================
# CSS
# ============================================================================

class PurgeSafelist(_Section):
    """
    Selectors that must never be purged.

    standard: exact class names
    deep: regex; matching selectors AND their descendants are kept
    greedy: regex; any selector containing a match is kept
    """

    standard: List[str] = Field(default_factory=lambda: [
        "active", "open", "visible", "show", "hide", "collapsed", "hidden", "current-menu-item",
    ])
    deep: List[str] = Field(default_factory=lambda: [
        "^wp-", "^is-", "^has-", "^alignwide", "^alignfull", "^gallery", "^swiper-", "^slick-",
        "^woocommerce",
    ])
    greedy: List[str] = Field(default_factory=lambda: [
        "modal", "dropdown", "tooltip", "popover", "carousel", "slider", "swiper",
    ])


class CssSettings(_Section):
    enabled: bool = True
    purge: bool = True
    purge_aggressiveness: Literal["safe", "moderate", "aggressive"] = "safe"
    purge_safelist: PurgeSafelist = PurgeSafelist()
    purge_blocklist_patterns: List[str] = Field(default_factory=list)
    purge_test_mode: bool = False
    minify: bool = True
    minify_preset: Literal["default", "advanced", "lite"] = "default"
    font_display: FontDisplay = "swap"


# ============================================================================
# JS
# ============================================================================

class RemoveScripts(_Section):
    """Individually toggleable dead-script categories."""

    wp_emoji: bool = True
    wp_embed: bool = True
    jquery_migrate: bool = True
    comment_reply: bool = True
    wp_polyfill: bool = True
    hover_intent: bool = True
    admin_bar: bool = True
    tracking_pixels: bool = True
    cart_fragments: bool = True


class JsSettings(_Section):
    enabled: bool = True
    default_loading_strategy: Literal["defer", "async", "module"] = "defer"
    remove_scripts: RemoveScripts = RemoveScripts()
    remove_jquery: bool = False
    custom_remove_patterns: List[str] = Field(default_factory=list)
    minify_enabled: bool = True
    move_to_body_end: bool = True
    drop_console: bool = True
    drop_debugger: bool = True


# ============================================================================
# HTML
# ============================================================================

class HtmlMinifySettings(_Section):
    collapse_whitespace: bool = True
    remove_comments: bool = True
    remove_script_type_attributes: bool = True
    remove_style_link_type_attributes: bool = True
    collapse_boolean_attributes: bool = True
    use_short_doctype: bool = True


class WpHeadBloat(_Section):
    """WordPress <head> tags with no use on a static site."""

    meta_generator: bool = True
    wlwmanifest: bool = True
    edit_uri: bool = True
    api_wp_org: bool = True
    shortlink: bool = True
    rss_feed_links: bool = True
    comments_feed_link: bool = True
    pingback: bool = True
    dns_prefetch_wp_org: bool = True
    oembed_discovery: bool = True
    prev_next_links: bool = False


class CoreStyles(_Section):
    admin_bar: bool = True
    dashicons: bool = True
    wp_block_library: bool = False
    wp_block_library_theme: bool = True
    classic_theme_styles: bool = True


class HtmlSettings(_Section):
    enabled: bool = True
    minify: HtmlMinifySettings = HtmlMinifySettings()
    wp_head_bloat: WpHeadBloat = WpHeadBloat()
    remove_core_styles: CoreStyles = CoreStyles()
    remove_duotone_filters: bool = True
    # Drop plugin css/js on pages without the plugin's markup
    remove_unused_plugin_assets: bool = True
    remove_analytics: bool = False


# ============================================================================
# FONTS
# ============================================================================

class FontSettings(_Section):
    enabled: bool = True
    self_host_google_fonts: bool = True
    preload_critical_fonts: bool = True
    preload_count: int = Field(default=2, ge=0, le=5)
    font_display: FontDisplay = "swap"
    subsets: List[str] = Field(default_factory=lambda: ["latin"])
    format_preference: Literal["woff2", "woff", "both"] = "woff2"


# ============================================================================
# SEO
# ============================================================================

class SeoSettings(_Section):
    enabled: bool = True
    meta_tag_injection: bool = True
    auto_generate_alt_text: bool = True
    open_graph_tags: bool = True
    twitter_card: bool = True
    fix_robots_noindex: bool = False
    site_url: str = ""
    site_name: str = ""
    default_title: str = ""
    default_description: str = ""


# ============================================================================
# RESOURCE HINTS
# ============================================================================

class ResourceHintSettings(_Section):
    enabled: bool = True
    auto_preload_lcp_image: bool = True
    auto_preconnect: bool = True
    remove_unused_preconnects: bool = True
    custom_preconnect_domains: List[str] = Field(default_factory=list)
    custom_dns_prefetch_domains: List[str] = Field(default_factory=list)


# ============================================================================
# BUILD
# ============================================================================

class BuildSettings(_Section):
    max_pages: int = Field(default=100, ge=1, le=500)
    exclude_patterns: List[str] = Field(default_factory=lambda: ["/wp-admin/**", "/wp-login.php"])
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_backoff_ms: int = Field(default=5000, ge=0)
    max_concurrent_pages: int = Field(default=3, ge=1, le=10)
    pipeline_timeout_minutes: int = Field(default=15, ge=5, le=60)
    auto_deploy_on_success: bool = True


# ============================================================================
# ROOT
# ============================================================================

class OptimizationSettings(_Section):
    """Complete, immutable, resolved optimization settings."""

    html: HtmlSettings = HtmlSettings()
    css: CssSettings = CssSettings()
    js: JsSettings = JsSettings()
    images: ImageSettings = ImageSettings()
    fonts: FontSettings = FontSettings()
    video: VideoSettings = VideoSettings()
    seo: SeoSettings = SeoSettings()
    resource_hints: ResourceHintSettings = ResourceHintSettings()
    build: BuildSettings = BuildSettings()


DEFAULT_SETTINGS = OptimizationSettings()


def default_settings_dict() -> dict:
    """Fresh (mutable) copy of the default tree."""
    return DEFAULT_SETTINGS.model_dump()
