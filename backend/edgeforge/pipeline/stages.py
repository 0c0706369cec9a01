"""
Pipeline stage implementations.

Each stage takes the BuildContext and transforms its working pages/files.
Per-file and per-page work runs on a bounded thread pool; the work function
only computes, and its result is applied to the context on the calling
thread.

Failure policy:
- A single file or page failing keeps its current content, counts toward
  files_failed and emits a warn log event; the stage carries on
- BuildCancelledError / PipelineTimeoutError stop the stage immediately
- MigrationSubsystemError (migration stage) propagates: it is build-fatal
"""

import logging
import posixpath
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, TypeVar

from bs4 import BeautifulSoup

from ..assets import ImageRecord, MigrationResult, migrate_all, replace_all_urls, scan
from ..assets.content_store import ContentStore
from ..classifiers.placement import EAGER_IMAGE_COUNT, in_hero_landmark
from ..fetch import Fetcher
from ..optimizers import (
    ThumbnailFetcher,
    apply_loading_strategy,
    apply_video_facades,
    apply_widget_facades,
    build_svg_sprite,
    clean_html,
    inject_resource_hints,
    minify_html,
    optimize_css,
    optimize_fonts,
    optimize_image,
    optimize_js,
    optimize_seo,
    relocate_head_scripts,
    remove_dead_script_tags,
)
from ..settings import OptimizationSettings
from .context import BuildContext, PageState
from .errors import BuildCancelledError, PipelineTimeoutError
from .events import BuildEventBus, LogLevel
from .models import Stage

logger = logging.getLogger(__name__)

T = TypeVar("T")

CSS_EXTENSIONS = (".css",)
JS_EXTENSIONS = (".js", ".mjs")
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".gif", ".svg", ".avif", ".ico")

# (tag, attribute) pairs that can point at a renamed css/js file
_ASSET_REFERENCES = (("link", "href"), ("script", "src"))


def _ext(path: str) -> str:
    return posixpath.splitext(path.lower())[1]


class StageRunner:
    """Runs pipeline stages against a BuildContext."""

    def __init__(
        self,
        fetcher: Fetcher,
        content_store: ContentStore,
        events: BuildEventBus,
        concurrency: int = 4,
        migration_concurrency: int = 10,
        migration_max_size_mb: float = 10.0,
    ):
        self.fetcher = fetcher
        self.content_store = content_store
        self.events = events
        self.concurrency = max(1, concurrency)
        self.migration_concurrency = migration_concurrency
        self.migration_max_size_mb = migration_max_size_mb
        self._stages: Dict[Stage, Callable[[BuildContext], None]] = {
            Stage.HTML: self.run_html,
            Stage.CSS: self.run_css,
            Stage.JS: self.run_js,
            Stage.FONTS: self.run_fonts,
            Stage.IMAGES: self.run_images,
            Stage.VIDEO_FACADES: self.run_video_facades,
            Stage.WIDGET_FACADES: self.run_widget_facades,
            Stage.SEO: self.run_seo,
            Stage.RESOURCE_HINTS: self.run_resource_hints,
            Stage.MIGRATION: self.run_migration,
            Stage.FINALIZE: self.run_finalize,
        }

    def run(self, stage: Stage, ctx: BuildContext) -> None:
        self._stages[stage](ctx)

    # ------------------------------------------------------------------
    # Fan-out helpers
    # ------------------------------------------------------------------

    def _for_each(
        self,
        ctx: BuildContext,
        stage: Stage,
        items: Sequence[str],
        work: Callable[[str], T],
        apply: Callable[[str, T], None],
        describe: Callable[[str], Dict[str, Any]],
    ) -> int:
        """
        Run work(item) on the pool and apply(item, result) on this thread.

        Returns:
            Number of items that failed
        """
        if not items:
            return 0
        failures = 0
        build_id = ctx.build.id
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=f"stage-{stage.value}") as pool:
            futures = {pool.submit(self._guarded, ctx, work, item): item for item in items}
            for done, future in enumerate(as_completed(futures), start=1):
                item = futures[future]
                try:
                    result = future.result()
                    apply(item, result)
                except (BuildCancelledError, PipelineTimeoutError):
                    for pending in futures:
                        pending.cancel()
                    raise
                except Exception as e:
                    failures += 1
                    ctx.add_stats(lambda s: setattr(s, "files_failed", s.files_failed + 1))
                    logger.warning(f"[Pipeline] {stage.value}: {item} kept original: {e}")
                    self.events.log(build_id, LogLevel.WARN, stage.value,
                                    f"Optimization failed, original kept: {e}", **describe(item))
                self.events.progress(build_id, stage.value, done, len(items), item)
        return failures

    @staticmethod
    def _guarded(ctx: BuildContext, work: Callable[[str], T], item: str) -> T:
        ctx.check_cancelled()
        return work(item)

    def _for_each_page(
        self,
        ctx: BuildContext,
        stage: Stage,
        edit: Callable[[PageState, BeautifulSoup, OptimizationSettings], Optional[Dict[str, bytes]]],
        finish: Optional[Callable[[str, OptimizationSettings], str]] = None,
    ) -> int:
        """
        Parse each page, let edit() change it in place, keep the new markup.

        finish, when given, rewrites the serialized markup before it is kept.
        """

        def work(path: str):
            page = ctx.pages[path]
            settings = ctx.settings_for(page.url)
            soup = BeautifulSoup(page.html, "html.parser")
            files = edit(page, soup, settings)
            html = str(soup)
            if finish is not None:
                html = finish(html, settings)
            return html, files or {}

        def apply(path: str, result) -> None:
            html, files = result
            ctx.pages[path].html = html
            ctx.files.update(files)

        return self._for_each(ctx, stage, list(ctx.pages), work, apply,
                              lambda path: {"page_url": ctx.pages[path].url})

    def _files_with(self, ctx: BuildContext, extensions: Sequence[str]) -> List[str]:
        return sorted(path for path in ctx.files if _ext(path) in extensions)

    def _replace_file(self, ctx: BuildContext, rel_path: str, new_path: str, data: bytes) -> None:
        if new_path != rel_path:
            ctx.files.pop(rel_path, None)
            for original, current in list(ctx.renames.items()):
                if current == rel_path:
                    ctx.renames[original] = new_path
            ctx.renames.setdefault(rel_path, new_path)
        ctx.files[new_path] = data

    def _log_savings(self, ctx: BuildContext, stage: Stage, rel_path: str, original: int, optimized: int) -> None:
        if original > optimized:
            self.events.log(ctx.build.id, LogLevel.INFO, stage.value,
                            f"{rel_path}: {original} -> {optimized} bytes",
                            asset_url=ctx.file_url(rel_path), savings=original - optimized)

    # ------------------------------------------------------------------
    # Markup cleanup
    # ------------------------------------------------------------------

    def run_html(self, ctx: BuildContext) -> None:
        """Strip WordPress and plugin bloat, then drop files no page references any more."""
        dropped: Dict[str, Set[str]] = {}

        def edit(page: PageState, soup: BeautifulSoup, settings: OptimizationSettings):
            result = clean_html(soup, settings.html, settings.js)
            if result.scripts_removed:
                ctx.add_stats(lambda s: setattr(s, "scripts_removed", s.scripts_removed + result.scripts_removed))
            if result.plugins_stripped:
                self.events.log(ctx.build.id, LogLevel.INFO, Stage.HTML.value,
                                f"Removed unused plugin assets: {', '.join(result.plugins_stripped)}",
                                page_url=page.url)
            paths = (ctx.local_path(url, page.url) for url in result.removed_urls)
            dropped[page.path] = {path for path in paths if path}
            return None

        self._for_each_page(ctx, Stage.HTML, edit)

        candidates = {path for paths in dropped.values() for path in paths if path in ctx.files}
        if not candidates:
            return
        orphans = sorted(candidates - self._referenced_files(ctx))
        for rel_path in orphans:
            size = len(ctx.files.pop(rel_path))
            ctx.removed.append(rel_path)
            self.events.log(ctx.build.id, LogLevel.INFO, Stage.HTML.value,
                            f"Dropped {rel_path}: no page references it",
                            asset_url=ctx.file_url(rel_path), savings=size)

    def _referenced_files(self, ctx: BuildContext) -> Set[str]:
        referenced: Set[str] = set()
        for page in ctx.pages.values():
            soup = BeautifulSoup(page.html, "html.parser")
            for tag_name, attr in _ASSET_REFERENCES:
                for tag in soup.find_all(tag_name, attrs={attr: True}):
                    local = ctx.local_path(tag[attr], page.url)
                    if local:
                        referenced.add(local)
        return referenced

    # ------------------------------------------------------------------
    # File stages
    # ------------------------------------------------------------------

    def run_css(self, ctx: BuildContext) -> None:
        html_documents = [page.html for page in ctx.pages.values()]

        def work(rel_path: str):
            settings = ctx.settings_for(ctx.file_url(rel_path)).css
            css = ctx.files[rel_path].decode("utf-8", errors="replace")
            return optimize_css(css, html_documents, settings, filename=rel_path)

        def apply(rel_path: str, result) -> None:
            ctx.add_stats(lambda s: s.add_css(result.stats))
            self._replace_file(ctx, rel_path, result.hashed_name, result.content.encode("utf-8"))
            if result.test_mode or result.would_remove:
                self.events.log(ctx.build.id, LogLevel.INFO, Stage.CSS.value,
                                f"{rel_path}: test mode, {len(result.would_remove)} selector(s) would be removed",
                                asset_url=ctx.file_url(rel_path))
            self._log_savings(ctx, Stage.CSS, rel_path, result.stats.original_bytes, result.stats.optimized_bytes)

        self._for_each(ctx, Stage.CSS, self._files_with(ctx, CSS_EXTENSIONS), work, apply,
                       lambda p: {"asset_url": ctx.file_url(p)})

    def run_js(self, ctx: BuildContext) -> None:
        def work(rel_path: str):
            settings = ctx.settings_for(ctx.file_url(rel_path)).js
            js = ctx.files[rel_path].decode("utf-8", errors="replace")
            return optimize_js(js, rel_path, settings)

        def apply(rel_path: str, result) -> None:
            ctx.add_stats(lambda s: s.add_js(result.stats))
            if result.removed:
                ctx.files.pop(rel_path, None)
                ctx.removed.append(rel_path)
                self.events.log(ctx.build.id, LogLevel.INFO, Stage.JS.value,
                                f"Removed dead script {rel_path} ({result.matched_pattern})",
                                asset_url=ctx.file_url(rel_path), savings=result.stats.original_bytes)
                return
            self._replace_file(ctx, rel_path, result.hashed_name, result.content.encode("utf-8"))
            self._log_savings(ctx, Stage.JS, rel_path, result.stats.original_bytes, result.stats.optimized_bytes)

        self._for_each(ctx, Stage.JS, self._files_with(ctx, JS_EXTENSIONS), work, apply,
                       lambda p: {"asset_url": ctx.file_url(p)})

        def edit(page: PageState, soup: BeautifulSoup, settings: OptimizationSettings):
            removed = remove_dead_script_tags(soup, settings.js)
            apply_loading_strategy(soup, settings.js)
            relocate_head_scripts(soup, settings.js)
            if removed.scripts_removed:
                ctx.add_stats(lambda s: setattr(s, "scripts_removed", s.scripts_removed + removed.scripts_removed))
            return None

        self._for_each_page(ctx, Stage.JS, edit)

    def _hero_images(self, ctx: BuildContext) -> Set[str]:
        """Workspace paths of images shown above the fold on any page."""
        hero: Set[str] = set()
        for page in ctx.pages.values():
            soup = BeautifulSoup(page.html, "html.parser")
            for index, img in enumerate(soup.find_all("img", src=True)):
                if index < EAGER_IMAGE_COUNT or in_hero_landmark(img):
                    local = ctx.local_path(img["src"], page.url)
                    if local:
                        hero.add(local)
        return hero

    def run_images(self, ctx: BuildContext) -> None:
        hero = self._hero_images(ctx)

        def work(rel_path: str):
            settings = ctx.settings_for(ctx.file_url(rel_path)).images
            tier = "hero" if rel_path in hero else None
            return optimize_image(ctx.files[rel_path], rel_path, settings, tier=tier)

        def apply(rel_path: str, result) -> None:
            ctx.add_stats(lambda s: s.add_images(result.stats))
            ctx.files[rel_path] = result.content
            if result.width and result.height:
                ctx.image_dimensions[rel_path] = (result.width, result.height)
            responsive = []
            for variant in result.variants:
                ctx.files[variant.filename] = variant.content
                if variant.responsive:
                    responsive.append((variant.filename, variant.width))
            if responsive:
                ctx.srcset_variants[rel_path] = responsive
            self._log_savings(ctx, Stage.IMAGES, rel_path, result.stats.original_bytes, result.stats.optimized_bytes)

        self._for_each(ctx, Stage.IMAGES, self._files_with(ctx, IMAGE_EXTENSIONS), work, apply,
                       lambda p: {"asset_url": ctx.file_url(p)})

        def edit(page: PageState, soup: BeautifulSoup, settings: OptimizationSettings):
            for img in soup.find_all("img", src=True):
                local = ctx.local_path(img["src"], page.url)
                if local is None:
                    continue
                dims = ctx.image_dimensions.get(local)
                if settings.images.add_dimensions and dims and not (img.get("width") or img.get("height")):
                    img["width"], img["height"] = str(dims[0]), str(dims[1])
                variants = ctx.srcset_variants.get(local)
                if settings.images.generate_srcset and variants and not img.get("srcset"):
                    entries = [f"/{path} {width}w" for path, width in variants]
                    if dims:
                        entries.append(f"{img['src']} {dims[0]}w")
                    img["srcset"] = ", ".join(entries)
                    if not img.get("sizes"):
                        img["sizes"] = "100vw"
            sprite = build_svg_sprite(soup)
            if sprite.symbol_count:
                ctx.add_stats(lambda s: setattr(s, "svg_symbols", s.svg_symbols + sprite.symbol_count))
            return None

        self._for_each_page(ctx, Stage.IMAGES, edit)

    # ------------------------------------------------------------------
    # Page stages
    # ------------------------------------------------------------------

    def run_fonts(self, ctx: BuildContext) -> None:
        def edit(page: PageState, soup: BeautifulSoup, settings: OptimizationSettings):
            result = optimize_fonts(soup, settings.fonts, self.fetcher)
            if result.fonts_downloaded:
                ctx.add_stats(lambda s: setattr(s, "fonts_self_hosted", s.fonts_self_hosted + result.fonts_downloaded))
            for stylesheet in result.failed_stylesheets:
                self.events.log(ctx.build.id, LogLevel.WARN, Stage.FONTS.value,
                                "Font stylesheet unavailable, remote link kept",
                                page_url=page.url, asset_url=stylesheet)
            return result.files

        self._for_each_page(ctx, Stage.FONTS, edit)

    def run_video_facades(self, ctx: BuildContext) -> None:
        thumbnails = ThumbnailFetcher(self.fetcher)

        def edit(page: PageState, soup: BeautifulSoup, settings: OptimizationSettings):
            result = apply_video_facades(soup, settings.video, thumbnails)
            if result.facades_applied:
                ctx.add_stats(lambda s: setattr(s, "facades_applied", s.facades_applied + result.facades_applied))
            return result.files

        self._for_each_page(ctx, Stage.VIDEO_FACADES, edit)

    def run_widget_facades(self, ctx: BuildContext) -> None:
        def edit(page: PageState, soup: BeautifulSoup, settings: OptimizationSettings):
            result = apply_widget_facades(soup, settings.video)

            def count(s):
                s.facades_applied += result.facades_applied
                s.scripts_removed += result.scripts_removed

            ctx.add_stats(count)
            return None

        self._for_each_page(ctx, Stage.WIDGET_FACADES, edit)

    def run_seo(self, ctx: BuildContext) -> None:
        def edit(page: PageState, soup: BeautifulSoup, settings: OptimizationSettings):
            result = optimize_seo(soup, settings.seo, page.url)
            injected = result.meta_tags_injected + result.social_tags_injected
            if injected:
                ctx.add_stats(lambda s: setattr(s, "meta_tags_injected", s.meta_tags_injected + injected))
            return None

        self._for_each_page(ctx, Stage.SEO, edit)

    def run_resource_hints(self, ctx: BuildContext) -> None:
        def edit(page: PageState, soup: BeautifulSoup, settings: OptimizationSettings):
            inject_resource_hints(soup, settings.resource_hints)
            return None

        self._for_each_page(ctx, Stage.RESOURCE_HINTS, edit)

    # ------------------------------------------------------------------
    # Migration and finalize
    # ------------------------------------------------------------------

    def run_migration(self, ctx: BuildContext) -> None:
        """
        Move every image into the content store and rewrite references.

        Raises:
            MigrationSubsystemError: If every transfer failed
        """
        if not ctx.settings.images.migrate_to_cdn:
            self.events.log(ctx.build.id, LogLevel.INFO, Stage.MIGRATION.value, "Image migration disabled")
            return

        records_by_page: Dict[str, List[ImageRecord]] = {}
        for page in ctx.pages.values():
            records_by_page[page.path] = scan(page.html, page.url or ctx.site_url + page.path, page.path)
        all_records = [r for records in records_by_page.values() for r in records]
        if not all_records:
            return

        def local_source(url: str) -> Optional[bytes]:
            local = ctx.local_path(url, ctx.site_url + "/")
            return ctx.files.get(local) if local else None

        def on_progress(done: int, total: int, url: str) -> None:
            self.events.progress(ctx.build.id, Stage.MIGRATION.value, done, total, url)

        ctx.check_cancelled()
        results: List[MigrationResult] = migrate_all(
            all_records,
            self.content_store,
            self.fetcher,
            concurrency_limit=self.migration_concurrency,
            max_size_mb=self.migration_max_size_mb,
            local_source=local_source,
            on_progress=on_progress,
        )
        migrated = sum(1 for r in results if r.succeeded)
        ctx.add_stats(lambda s: setattr(s, "images_migrated", s.images_migrated + migrated))
        for result in results:
            if result.failure_reason and not result.succeeded:
                self.events.log(ctx.build.id, LogLevel.WARN, Stage.MIGRATION.value,
                                f"Image not migrated ({result.status.value}): {result.failure_reason}",
                                asset_url=result.url)

        def work(path: str):
            page = ctx.pages[path]
            return replace_all_urls(page.html, records_by_page[path], results,
                                    base_url=page.url or ctx.site_url + page.path)

        def apply(path: str, outcome) -> None:
            ctx.pages[path].html = outcome.html

        self._for_each(ctx, Stage.MIGRATION, list(ctx.pages), work, apply,
                       lambda path: {"page_url": ctx.pages[path].url})

    def run_finalize(self, ctx: BuildContext) -> None:
        """Point every page at the content-hashed css/js names, then minify it."""
        removed = set(ctx.removed)

        def edit(page: PageState, soup: BeautifulSoup, settings: OptimizationSettings):
            for tag_name, attr in _ASSET_REFERENCES:
                for tag in soup.find_all(tag_name, attrs={attr: True}):
                    local = ctx.local_path(tag[attr], page.url)
                    if local is None:
                        continue
                    if local in ctx.renames:
                        tag[attr] = "/" + ctx.renames[local]
                    elif local in removed and tag_name == "script":
                        tag.decompose()
            return None

        def finish(html: str, settings: OptimizationSettings) -> str:
            if not settings.html.enabled:
                return html
            return minify_html(html, settings.html.minify)

        self._for_each_page(ctx, Stage.FINALIZE, edit, finish)
        ctx.add_stats(lambda s: setattr(s, "pages_processed", len(ctx.pages)))
