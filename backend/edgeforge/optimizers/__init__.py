"""
Per-asset-type optimizers.

File optimizers (css, js, images) take content and return a result with the
new content and byte stats. Page optimizers (html cleanup, fonts, svg sprite,
facades, seo, resource hints) edit a parsed BeautifulSoup document in place;
minify_html works on the final serialized markup.
"""

from .base import ByteStats, HtmlStepResult, content_hash, ensure_head, hashed_filename
from .errors import OptimizerError, UnsupportedFormatError
from .html import HtmlCleanupResult, clean_html, minify_html
from .css import CssOptimizeResult, optimize_css, purge_css, apply_font_display
from .js import (
    JsOptimizeResult,
    RESERVED_GLOBALS,
    apply_loading_strategy,
    dead_script_patterns,
    is_dead_script,
    optimize_js,
    relocate_head_scripts,
    remove_dead_script_tags,
)
from .images import ImageOptimizeResult, ImageVariant, optimize_image
from .fonts import FontOptimizeResult, optimize_fonts
from .svg_sprite import SvgSpriteResult, build_svg_sprite
from .facades import FacadeResult, ThumbnailFetcher, apply_video_facades, apply_widget_facades
from .seo import SeoResult, optimize_seo
from .resource_hints import ResourceHintResult, inject_resource_hints

__all__ = [
    "ByteStats",
    "HtmlStepResult",
    "content_hash",
    "ensure_head",
    "hashed_filename",
    "OptimizerError",
    "UnsupportedFormatError",
    "HtmlCleanupResult",
    "clean_html",
    "minify_html",
    "CssOptimizeResult",
    "optimize_css",
    "purge_css",
    "apply_font_display",
    "JsOptimizeResult",
    "RESERVED_GLOBALS",
    "apply_loading_strategy",
    "dead_script_patterns",
    "is_dead_script",
    "optimize_js",
    "relocate_head_scripts",
    "remove_dead_script_tags",
    "ImageOptimizeResult",
    "ImageVariant",
    "optimize_image",
    "FontOptimizeResult",
    "optimize_fonts",
    "SvgSpriteResult",
    "build_svg_sprite",
    "FacadeResult",
    "ThumbnailFetcher",
    "apply_video_facades",
    "apply_widget_facades",
    "SeoResult",
    "optimize_seo",
    "ResourceHintResult",
    "inject_resource_hints",
]
