"""
BuildOrchestrator end-to-end tests.

Runs real builds through every stage with in-process collaborators:
StaticCrawler, LocalContentStore, LocalDirectoryDeployer and a canned
fetcher for Google Fonts.

Tests:
1. A full build of one page: fonts self-hosted, images migrated with
   eager/lazy priority, css/js renamed to content-hashed files, deployed
2. Stage-fatal errors (crawl, deploy) fail the build with the phase
3. Busy workspace leaves the build untouched
4. Cancellation, both via cancel_check and via an external terminal write
5. Resume from checkpoint after a worker crash, including a crash between
   writing a stage's work tree and saving its checkpoint
"""

import re
from typing import Dict, List, Optional

import pytest
from bs4 import BeautifulSoup

from edgeforge.assets import LocalContentStore
from edgeforge.fetch import FetchError, FetchResult, Fetcher
from edgeforge.pipeline import (
    Build,
    BuildEventBus,
    BuildEventType,
    BuildOrchestrator,
    BuildScope,
    BuildStatus,
    CheckpointStore,
    CrawledAsset,
    CrawledPage,
    Deployer,
    DeployError,
    LocalDirectoryDeployer,
    Stage,
    StageRunner,
    StaticCrawler,
    WorkspaceBusyError,
    WorkspaceManager,
)

SITE_URL = "https://example.com"

GOOGLE_CSS = (
    "@font-face {\n"
    "  font-family: 'Inter';\n"
    "  font-weight: 400;\n"
    "  src: url(https://fonts.gstatic.com/s/inter/v1/inter-400.woff2) format('woff2');\n"
    "}\n"
).encode("utf-8")

HOME_HTML = (
    "<!DOCTYPE html><html><head><title>Example Store</title>"
    '<link rel="preconnect" href="https://fonts.googleapis.com">'
    '<link rel="stylesheet" href="https://fonts.googleapis.com/css2?family=Inter:wght@400&amp;display=swap">'
    '<link rel="stylesheet" href="/css/site.css">'
    "</head><body><main>"
    '<h1 class="headline">Welcome</h1>'
    + "".join(f'<img src="/img/p{i}.jpg" alt="Product {i}">' for i in range(5))
    + "</main>"
    '<script src="/js/app.js"></script>'
    "</body></html>"
)

SITE_CSS = b".headline { color: #222222; font-size: 2rem; }\n.never-used { color: red; }\n"
APP_JS = b"function greet(name) {\n  return 'hi ' + name;\n}\nwindow.greet = greet;\n"


class FontFetcher(Fetcher):
    """Serves Google Fonts; everything else is a 404."""

    ROUTES = {
        "https://fonts.googleapis.com/": GOOGLE_CSS,
        "https://fonts.gstatic.com/": b"wOF2-font-bytes",
    }

    def __init__(self):
        self.requests: List[str] = []

    def fetch(self, url: str, headers: Optional[Dict[str, str]] = None) -> FetchResult:
        self.requests.append(url)
        for prefix, body in self.ROUTES.items():
            if url.startswith(prefix):
                return FetchResult(url=url, content=body)
        raise FetchError(url, "HTTP 404", status=404)


class CountingCrawler(StaticCrawler):

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = 0

    def crawl(self, site_url, scope, pages):
        self.calls += 1
        return super().crawl(site_url, scope, pages)


class BrokenDeployer(Deployer):

    def deploy(self, output_dir, build):
        raise DeployError(build.id, "edge rejected upload")


class CrashingStageRunner(StageRunner):
    """Records stages and crashes the worker once at a chosen stage."""

    def __init__(self, *args, crash_at: Optional[Stage] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.crash_at = crash_at
        self.ran: List[Stage] = []

    def run(self, stage, ctx):
        if stage == self.crash_at:
            self.crash_at = None
            raise RuntimeError("worker killed")
        self.ran.append(stage)
        super().run(stage, ctx)


class CrashingCheckpointStore(CheckpointStore):
    """Kills the worker once, after a stage's work tree is written but before its checkpoint is saved."""

    def __init__(self, persistence, crash_at: Optional[Stage] = None):
        super().__init__(persistence)
        self.crash_at = crash_at

    def save(self, checkpoint):
        if self.crash_at is not None and checkpoint.last_stage == self.crash_at:
            self.crash_at = None
            raise RuntimeError("worker killed")
        return super().save(checkpoint)


def home_page(make_image) -> CrawledPage:
    assets = [CrawledAsset(path=f"img/p{i}.jpg", content=make_image(400, 300)) for i in range(5)]
    assets.append(CrawledAsset(path="css/site.css", content=SITE_CSS))
    assets.append(CrawledAsset(path="js/app.js", content=APP_JS))
    return CrawledPage(path="/", url=SITE_URL + "/", html=HOME_HTML, assets=assets)


class Harness:
    """Wires an orchestrator over a temp directory."""

    def __init__(self, tmp_path, persistence, settings_service, crawler, deployer=None, stage_runner_cls=StageRunner,
                 checkpoints=None, **runner_kwargs):
        self.persistence = persistence
        self.settings = settings_service
        self.events = BuildEventBus(persistence)
        self.fetcher = FontFetcher()
        self.store = LocalContentStore(tmp_path / "cdn", base_url="https://cdn.test")
        self.workspaces = WorkspaceManager(tmp_path / "workspaces")
        self.checkpoints = checkpoints or CheckpointStore(persistence)
        self.crawler = crawler
        self.stages = stage_runner_cls(self.fetcher, self.store, self.events, concurrency=2, **runner_kwargs)
        self.orchestrator = BuildOrchestrator(
            persistence,
            settings_service,
            crawler,
            deployer or LocalDirectoryDeployer(tmp_path / "deploy", base_url="https://edge.test"),
            self.stages,
            self.events,
            self.checkpoints,
            self.workspaces,
        )

    def queue_build(self, **kwargs) -> Build:
        build = Build(site_id="site-1", **kwargs)
        self.persistence.save_build(build.to_dict())
        return build


@pytest.fixture
def crawler(make_image):
    return CountingCrawler({SITE_URL: [home_page(make_image)]})


@pytest.fixture
def harness(tmp_path, persistence, settings_service, site, crawler):
    return Harness(tmp_path, persistence, settings_service, crawler)


# =============================================================================
# Full build
# =============================================================================

@pytest.mark.integration
class TestFullBuild:
    """One page through every stage."""

    @pytest.fixture(autouse=True)
    def run_build(self, harness, tmp_path):
        self.harness = harness
        self.build = harness.orchestrator.run(harness.queue_build())
        self.output = tmp_path / "deploy" / "site-1" / self.build.id
        self.soup = BeautifulSoup((self.output / "index.html").read_text(), "html.parser")

    def test_build_succeeds_and_deploys(self):
        assert self.build.status == BuildStatus.SUCCESS
        assert self.build.deploy_url == f"https://edge.test/site-1/{self.build.id}/"
        assert self.build.started_at is not None
        assert self.build.completed_at >= self.build.started_at
        assert self.build.current_stage is None

        stored = self.harness.persistence.load_build(self.build.id)
        assert stored["status"] == "success"
        assert stored["settings_snapshot"]["css"]["purge"] is True

    def test_loading_priority(self):
        """First three images are eager with high priority; the rest lazy."""
        images = self.soup.find_all("img")
        assert len(images) == 5
        for img in images[:3]:
            assert img["loading"] == "eager"
            assert img["fetchpriority"] == "high"
        for img in images[3:]:
            assert img["loading"] == "lazy"
            assert not img.has_attr("fetchpriority")

    def test_images_migrated_to_content_store(self):
        for img in self.soup.find_all("img"):
            assert img["src"].startswith("https://cdn.test/")
            assert img["width"] and img["height"]
        assert "/img/p0.jpg" not in str(self.soup)
        assert self.build.stats.images_migrated >= 5

    def test_fonts_self_hosted(self):
        """The Google stylesheet is replaced by inline @font-face with swap."""
        assert self.soup.find("link", href=re.compile("fonts.googleapis.com")) is None
        style = " ".join(s.get_text() for s in self.soup.find_all("style"))
        assert "font-display:swap" in style
        assert "/assets/fonts/inter-400.woff2" in style
        assert (self.output / "assets" / "fonts" / "inter-400.woff2").read_bytes() == b"wOF2-font-bytes"
        assert self.build.stats.fonts_self_hosted >= 1

    def test_css_and_js_renamed(self):
        stylesheet = self.soup.find("link", rel="stylesheet")
        assert re.fullmatch(r"/css/site\.[0-9a-f]{8}\.css", stylesheet["href"])
        assert (self.output / stylesheet["href"].lstrip("/")).exists()
        assert not (self.output / "css" / "site.css").exists()

        script = self.soup.find("script", src=True)
        assert re.fullmatch(r"/js/app\.[0-9a-f]{8}\.js", script["src"])
        assert script.has_attr("defer")

    def test_stats(self):
        stats = self.build.stats
        assert stats.pages_processed == 1
        assert stats.css_original_bytes == len(SITE_CSS)
        assert stats.css_optimized_bytes < stats.css_original_bytes
        assert stats.js_original_bytes == len(APP_JS)
        assert stats.files_failed == 0

    def test_events(self):
        events = self.harness.events.replay(self.build.id)
        seqs = [e.seq for e in events]
        assert seqs == list(range(1, len(events) + 1))

        phases = [(e.data["phase"], e.data["status"]) for e in events if e.type == BuildEventType.PHASE]
        assert phases[0] == ("crawling", "started")
        assert ("css", "completed") in phases
        assert ("finalize", "completed") in phases
        assert ("deploying", "started") in phases

        assert events[-1].type == BuildEventType.COMPLETE
        assert events[-1].data["status"] == "success"
        assert events[-1].data["deploy_url"] == self.build.deploy_url

    def test_cleanup(self):
        assert self.harness.checkpoints.load(self.build.id) is None
        assert self.harness.workspaces.holder("site-1") is None


# =============================================================================
# Failure handling
# =============================================================================

class TestFailures:
    """Stage-fatal errors mark the build failed with the failing phase."""

    def test_unreachable_site(self, tmp_path, persistence, settings_service, site):
        harness = Harness(tmp_path, persistence, settings_service, StaticCrawler())
        build = harness.orchestrator.run(harness.queue_build())

        assert build.status == BuildStatus.FAILED
        assert "site not reachable" in build.error_message
        assert build.error_details["phase"] == "crawling"
        assert harness.workspaces.holder("site-1") is None

    def test_all_pages_excluded(self, tmp_path, persistence, settings_service, site, crawler):
        settings_service.update("site-1", {"build": {"exclude_patterns": ["/**"]}}, "test")
        harness = Harness(tmp_path, persistence, settings_service, crawler)

        build = harness.orchestrator.run(harness.queue_build())

        assert build.status == BuildStatus.FAILED
        assert "no pages crawled" in build.error_message

    def test_deploy_failure_keeps_checkpoint(self, tmp_path, persistence, settings_service, site, crawler):
        harness = Harness(tmp_path, persistence, settings_service, crawler, deployer=BrokenDeployer())
        build = harness.orchestrator.run(harness.queue_build())

        assert build.status == BuildStatus.FAILED
        assert build.error_details["phase"] == "deploying"
        assert "edge rejected upload" in build.error_message
        checkpoint = harness.checkpoints.load(build.id)
        assert checkpoint.last_stage == Stage.FINALIZE

    def test_missing_site(self, tmp_path, persistence, settings_service, crawler):
        harness = Harness(tmp_path, persistence, settings_service, crawler)
        build = harness.orchestrator.run(harness.queue_build())
        assert build.status == BuildStatus.FAILED
        assert build.error_message == "Site not found: site-1"

    def test_auto_deploy_disabled(self, tmp_path, persistence, settings_service, site, crawler):
        settings_service.update("site-1", {"build": {"auto_deploy_on_success": False}}, "test")
        harness = Harness(tmp_path, persistence, settings_service, crawler)

        build = harness.orchestrator.run(harness.queue_build())

        assert build.status == BuildStatus.SUCCESS
        assert build.deploy_url is None
        assert (tmp_path / "workspaces" / "site-1" / "output" / "index.html").exists()

    def test_terminal_build_is_not_rerun(self, harness):
        build = harness.queue_build(status=BuildStatus.CANCELLED)
        assert harness.orchestrator.run(build) is build
        assert harness.crawler.calls == 0


class TestWorkspaceContention:

    def test_busy_workspace_leaves_build_queued(self, harness):
        harness.workspaces.acquire("site-1", "other-build")
        build = harness.queue_build()

        with pytest.raises(WorkspaceBusyError):
            harness.orchestrator.run(build)

        assert build.status == BuildStatus.QUEUED
        assert harness.persistence.load_build(build.id)["status"] == "queued"
        assert harness.workspaces.holder("site-1") == "other-build"


# =============================================================================
# Cancellation
# =============================================================================

class TestCancellation:

    def test_cancel_check(self, harness):
        build = harness.orchestrator.run(harness.queue_build(), cancel_check=lambda: "Cancelled by user")

        assert build.status == BuildStatus.CANCELLED
        assert build.error_message == "Cancelled by user"
        assert harness.workspaces.holder("site-1") is None
        events = harness.events.replay(build.id)
        assert events[-1].data["status"] == "cancelled"

    def test_external_terminal_write_wins(self, tmp_path, persistence, settings_service, site, crawler):
        """A build marked failed elsewhere (site deleted) stops at its next save."""

        class SiteDeletingRunner(StageRunner):
            def run(self, stage, ctx):
                super().run(stage, ctx)
                if stage == Stage.CSS:
                    stored = persistence.load_build(ctx.build.id)
                    stored.update(status="failed", error_message="Site deleted")
                    persistence.save_build(stored)

        harness = Harness(tmp_path, persistence, settings_service, crawler, stage_runner_cls=SiteDeletingRunner)
        build = harness.orchestrator.run(harness.queue_build())

        assert build.status == BuildStatus.FAILED
        assert build.error_message == "Site deleted"
        assert persistence.load_build(build.id)["status"] == "failed"
        assert harness.events.replay(build.id)[-1].type == BuildEventType.COMPLETE


# =============================================================================
# Resume
# =============================================================================

class TestResume:
    """A crashed worker resumes after the last completed stage."""

    def test_resume_skips_completed_stages(self, tmp_path, persistence, settings_service, site, crawler):
        harness = Harness(tmp_path, persistence, settings_service, crawler,
                          stage_runner_cls=CrashingStageRunner, crash_at=Stage.SEO)
        build = harness.queue_build()

        with pytest.raises(RuntimeError):
            harness.orchestrator.run(build)
        assert build.status == BuildStatus.OPTIMIZING
        assert harness.workspaces.holder("site-1") is None
        assert harness.checkpoints.load(build.id).last_stage == Stage.WIDGET_FACADES

        harness.stages.ran.clear()
        build = harness.orchestrator.run(build)

        assert build.status == BuildStatus.SUCCESS
        assert build.attempt == 2
        assert crawler.calls == 1
        assert harness.stages.ran == [Stage.SEO, Stage.RESOURCE_HINTS, Stage.MIGRATION, Stage.FINALIZE]
        assert build.stats.fonts_self_hosted >= 1

    def test_crash_before_checkpoint_resumes_from_previous_tree(self, tmp_path, persistence, settings_service, site,
                                                                crawler):
        """Output of a stage whose checkpoint was never saved is discarded, not re-processed."""
        checkpoints = CrashingCheckpointStore(persistence, crash_at=Stage.JS)
        harness = Harness(tmp_path, persistence, settings_service, crawler, checkpoints=checkpoints)
        build = harness.queue_build()

        with pytest.raises(RuntimeError):
            harness.orchestrator.run(build)
        assert checkpoints.load(build.id).last_stage == Stage.CSS

        build = harness.orchestrator.run(build)

        assert build.status == BuildStatus.SUCCESS
        assert crawler.calls == 1
        assert build.stats.js_original_bytes == len(APP_JS)
        output = tmp_path / "deploy" / "site-1" / build.id
        css_files = [p.name for p in (output / "css").iterdir()]
        js_files = [p.name for p in (output / "js").iterdir()]
        assert len(css_files) == 1 and re.fullmatch(r"site\.[0-9a-f]{8}\.css", css_files[0])
        assert len(js_files) == 1 and re.fullmatch(r"app\.[0-9a-f]{8}\.js", js_files[0])

        soup = BeautifulSoup((output / "index.html").read_text(), "html.parser")
        assert soup.find("link", rel="stylesheet")["href"] == f"/css/{css_files[0]}"
        assert soup.find("script", src=True)["src"] == f"/js/{js_files[0]}"

    def test_partial_scope(self, tmp_path, persistence, settings_service, site, make_image):
        crawler = StaticCrawler({SITE_URL: [
            home_page(make_image),
            CrawledPage(path="/about/", url=SITE_URL + "/about/", html="<html><head></head><body><p>About</p></body></html>"),
        ]})
        harness = Harness(tmp_path, persistence, settings_service, crawler)

        build = harness.orchestrator.run(harness.queue_build(scope=BuildScope.PARTIAL, pages=["/about/"]))

        assert build.status == BuildStatus.SUCCESS
        assert build.stats.pages_processed == 1
        output = tmp_path / "deploy" / "site-1" / build.id
        assert (output / "about" / "index.html").exists()
        assert not (output / "index.html").exists()


# =============================================================================
# WordPress markup
# =============================================================================

WP_HTML = (
    "<!DOCTYPE html><html><head><title>Journal</title>\n"
    '<meta name="generator" content="WordPress 6.4.2">\n'
    '<link rel="EditURI" type="application/rsd+xml" href="https://example.com/xmlrpc.php?rsd">\n'
    '<link rel="stylesheet" href="/wp-content/plugins/woocommerce/assets/css/woocommerce.css">\n'
    '<script type="text/javascript">window._wpemojiSettings = {"baseUrl": "https://s.w.org/"};</script>\n'
    "</head><body>\n"
    "<!-- site header -->\n"
    '<main>\n  <h1 class="headline">Welcome</h1>\n'
    "  <pre>line one\n    indented</pre>\n"
    "</main>\n"
    '<script type="text/javascript" src="/wp-content/plugins/woocommerce/assets/js/woocommerce.min.js"></script>\n'
    '<script src="/js/app.js"></script>\n'
    "</body></html>"
)

WOO_CSS_PATH = "wp-content/plugins/woocommerce/assets/css/woocommerce.css"
WOO_JS_PATH = "wp-content/plugins/woocommerce/assets/js/woocommerce.min.js"


@pytest.mark.integration
class TestWordPressPage:
    """WordPress bloat is stripped before the asset stages and the page ships minified."""

    @pytest.fixture(autouse=True)
    def run_build(self, tmp_path, persistence, settings_service, site):
        crawler = StaticCrawler({SITE_URL: [CrawledPage(path="/", url=SITE_URL + "/", html=WP_HTML, assets=[
            CrawledAsset(path=WOO_CSS_PATH, content=b".woocommerce { display: block; }\n"),
            CrawledAsset(path=WOO_JS_PATH, content=b"jQuery(function () { window.wc = 1; });\n"),
            CrawledAsset(path="js/app.js", content=APP_JS),
        ])]})
        self.harness = Harness(tmp_path, persistence, settings_service, crawler)
        self.build = self.harness.orchestrator.run(self.harness.queue_build())
        self.output = tmp_path / "deploy" / "site-1" / self.build.id
        self.html = (self.output / "index.html").read_text()
        self.soup = BeautifulSoup(self.html, "html.parser")

    def test_core_bloat_removed(self):
        assert self.build.status == BuildStatus.SUCCESS
        assert self.soup.find("meta", attrs={"name": "generator"}) is None
        assert self.soup.find("link", rel="EditURI") is None
        assert "_wpemojiSettings" not in self.html

    def test_unused_plugin_assets_dropped(self):
        """No .woocommerce markup on the page: its css/js go from the page and the output."""
        assert "woocommerce" not in self.html
        assert not (self.output / "wp-content").exists()
        assert self.build.stats.js_original_bytes == len(APP_JS)
        messages = [e.data["message"] for e in self.harness.events.replay(self.build.id)
                    if e.type == BuildEventType.LOG]
        assert f"Dropped {WOO_JS_PATH}: no page references it" in messages

    def test_output_is_minified(self):
        assert "<!--" not in self.html
        assert 'type="text/javascript"' not in self.html
        assert "\n<main>" not in self.html
        assert self.soup.find("pre").get_text() == "line one\n    indented"
        assert self.soup.find("script", src=True).has_attr("defer")
