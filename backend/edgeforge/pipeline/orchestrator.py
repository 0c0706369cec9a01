"""
Build orchestrator.

Runs one build end to end:

    queued → crawling → optimizing → deploying → success
                   ↘ failed / cancelled (from any in-flight state)

1. Acquire the site's workspace (WorkspaceBusyError if another build holds it;
   the build is left queued so the queue can delay it)
2. Snapshot resolved settings; they are never re-read during the build
3. Crawl (or restore from a fresh checkpoint); zero pages is a crawl error
4. Run the stages in order, checkpointing after each
5. Write the output tree and hand it to the deployer
6. Finalize stats, emit complete, close the build's event channel

Stage-fatal errors (crawl, migration subsystem, workspace, deploy, timeout)
mark the build failed with error_message and error_details.phase. The last
checkpoint is kept for diagnostics and resume.
"""

import logging
import threading
import time
from typing import Callable, List, Optional

from ..assets.errors import MigrationSubsystemError
from ..settings import SettingsError, SettingsService
from ..settings.patterns import AssetOverride, matches_url
from .checkpoints import Checkpoint, CheckpointStore
from .collaborators import CrawledPage, Crawler, Deployer
from .context import BuildContext, PageState
from .errors import (
    BuildCancelledError,
    CrawlError,
    DeployError,
    PipelineError,
    PipelineTimeoutError,
    WorkspaceError,
)
from .events import BuildEventBus, LogLevel
from .models import Build, BuildStatus, Stage, stages_after
from .stages import StageRunner
from .state import advance_build, is_build_terminal, transition_build
from .workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], Optional[str]]
CRAWL_TREE = "crawl"


class BuildOrchestrator:
    """
    Runs builds against the crawl, content-store and deploy collaborators.

    One orchestrator is shared by all build workers; all per-build state
    lives in the BuildContext created by run().
    """

    def __init__(
        self,
        persistence,
        settings: SettingsService,
        crawler: Crawler,
        deployer: Deployer,
        stages: StageRunner,
        events: BuildEventBus,
        checkpoints: CheckpointStore,
        workspaces: WorkspaceManager,
    ):
        self._persistence = persistence
        self._settings = settings
        self._crawler = crawler
        self._deployer = deployer
        self._stages = stages
        self._events = events
        self._checkpoints = checkpoints
        self._workspaces = workspaces

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _save(self, build: Build) -> None:
        """
        Persist the build unless someone else already finished it.

        Raises:
            BuildCancelledError: If the stored build is terminal but this one is not
        """
        stored = self._persistence.load_build(build.id)
        if stored is not None and not is_build_terminal(build.status):
            stored_status = BuildStatus(stored["status"])
            if is_build_terminal(stored_status):
                raise BuildCancelledError(build.id, stored.get("error_message") or stored_status.value)
        self._persistence.save_build(build.to_dict())

    def _enter(self, build: Build, status: BuildStatus) -> None:
        if advance_build(build, status):
            self._save(build)
            self._events.phase(build.id, status.value, "started")
            logger.info(f"[Pipeline] Build {build.id} {status.value}")

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, build: Build, cancel_check: Optional[CancelCheck] = None) -> Build:
        """
        Run a build to a terminal state.

        Args:
            build: A queued (or resumed in-flight) build
            cancel_check: Polled between items; returns a reason to stop

        Returns:
            The build in its terminal state

        Raises:
            WorkspaceBusyError: If another build holds the site's workspace
                (the build is not modified)
        """
        if is_build_terminal(build.status):
            logger.info(f"[Pipeline] Build {build.id} already {build.status.value}; nothing to run")
            return build

        site = self._persistence.get_site(build.site_id)
        if site is None:
            return self._fail(build, f"Site not found: {build.site_id}", "queued")

        workspace = self._workspaces.acquire(build.site_id, build.id)
        try:
            return self._run(build, site["url"], workspace, cancel_check)
        finally:
            self._workspaces.release(build.site_id, build.id)

    def _run(self, build: Build, site_url: str, workspace: Workspace, cancel_check: Optional[CancelCheck]) -> Build:
        phase = build.current_stage.value if build.current_stage else build.status.value
        try:
            build.attempt += 1
            checkpoint = self._load_checkpoint(build, workspace)
            ctx = self._prepare_context(build, site_url, workspace, checkpoint, cancel_check)

            phase = BuildStatus.CRAWLING.value
            self._enter(build, BuildStatus.CRAWLING)
            if checkpoint is None:
                self._crawl(ctx)
                checkpoint = self._checkpoint(ctx, None)

            self._enter(build, BuildStatus.OPTIMIZING)
            for stage in stages_after(checkpoint.last_stage):
                phase = stage.value
                ctx.check_cancelled()
                self._run_stage(ctx, stage)
                checkpoint = self._checkpoint(ctx, stage)

            phase = BuildStatus.DEPLOYING.value
            ctx.check_cancelled()
            self._enter(build, BuildStatus.DEPLOYING)
            self._deploy(ctx)

            transition_build(build, BuildStatus.SUCCESS)
            build.current_stage = None
            self._save(build)
            self._checkpoints.clear(build.id)
            logger.info(
                f"[Pipeline] Build {build.id} succeeded: {build.stats.pages_processed} page(s), "
                f"{build.stats.total_saved_bytes} bytes saved"
            )
            return self._finish(build)

        except BuildCancelledError as e:
            return self._cancel(build, e.reason)
        except (CrawlError, MigrationSubsystemError, WorkspaceError, DeployError, PipelineTimeoutError) as e:
            return self._fail(build, str(e), phase)
        except SettingsError as e:
            return self._fail(build, f"Settings unavailable: {e}", phase)
        except OSError as e:
            return self._fail(build, f"Workspace unavailable: {e}", phase)
        except PipelineError as e:
            logger.error(f"[Pipeline] Build {build.id} pipeline error in {phase}: {e}")
            return self._fail(build, str(e), phase)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _load_checkpoint(self, build: Build, workspace: Workspace) -> Optional[Checkpoint]:
        if not build.settings_snapshot:
            self._checkpoints.clear(build.id)
            return None
        checkpoint = self._checkpoints.load(build.id)
        if checkpoint is None:
            return None
        tree = checkpoint.state.get("work_tree")
        if not checkpoint.state.get("pages") or not tree or not workspace.has_work_tree(tree):
            logger.info(f"[Pipeline] Build {build.id} checkpoint has no matching work tree; starting over")
            self._checkpoints.clear(build.id)
            return None
        self._events.log(build.id, LogLevel.INFO, "resume",
                         f"Resuming after stage {checkpoint.last_stage.value if checkpoint.last_stage else 'crawl'}")
        return checkpoint

    def _prepare_context(
        self,
        build: Build,
        site_url: str,
        workspace: Workspace,
        checkpoint: Optional[Checkpoint],
        cancel_check: Optional[CancelCheck],
    ) -> BuildContext:
        if checkpoint is not None:
            state = checkpoint.state
            ctx = BuildContext(
                build,
                state.get("site_url") or site_url,
                workspace,
                site_override=state.get("site_override") or {},
                asset_overrides=[AssetOverride(**o) for o in state.get("asset_overrides") or []],
                cancel_check=cancel_check,
            )
            ctx.restore(state)
            return ctx

        # Fresh run: snapshot settings now
        build.settings_snapshot = self._settings.get_resolved(build.site_id).model_dump()
        site_override = self._settings.get_site_settings(build.site_id)
        asset_overrides = self._settings.asset_overrides(build.site_id)
        workspace.prepare()
        return BuildContext(build, site_url, workspace, site_override, asset_overrides, cancel_check)

    def _crawl(self, ctx: BuildContext) -> None:
        build = ctx.build
        pages = self._crawler.crawl(ctx.site_url, build.scope, build.pages)
        pages = self._filter_pages(ctx, pages)
        if not pages:
            raise CrawlError(ctx.site_url, "no pages crawled")

        for crawled in pages:
            url = crawled.url or ctx.site_url + crawled.path
            ctx.pages[crawled.path] = PageState(path=crawled.path, url=url, html=crawled.html)
            for asset in crawled.assets:
                ctx.files.setdefault(asset.path.lstrip("/"), asset.content)

        self._events.log(build.id, LogLevel.INFO, BuildStatus.CRAWLING.value,
                         f"Crawled {len(ctx.pages)} page(s), {len(ctx.files)} asset(s)")

    def _filter_pages(self, ctx: BuildContext, pages: List[CrawledPage]) -> List[CrawledPage]:
        build_settings = ctx.settings.build
        kept = []
        for page in pages:
            if any(matches_url(p, page.path) for p in build_settings.exclude_patterns):
                logger.debug(f"[Pipeline] Excluding {page.path}")
                continue
            kept.append(page)
        if len(kept) > build_settings.max_pages:
            logger.info(f"[Pipeline] Capping {len(kept)} pages at max_pages={build_settings.max_pages}")
            kept = kept[:build_settings.max_pages]
        return kept

    def _run_stage(self, ctx: BuildContext, stage: Stage) -> None:
        build = ctx.build
        build.current_stage = stage
        self._save(build)
        self._events.phase(build.id, stage.value, "started")
        started = time.monotonic()
        self._stages.run(stage, ctx)
        duration_ms = int((time.monotonic() - started) * 1000)
        self._events.log(build.id, LogLevel.INFO, stage.value, f"Stage {stage.value} completed",
                         duration=duration_ms)
        self._events.phase(build.id, stage.value, "completed")
        logger.info(f"[Pipeline] Build {build.id} stage {stage.value} completed in {duration_ms}ms")

    def _checkpoint(self, ctx: BuildContext, stage: Optional[Stage]) -> Checkpoint:
        tree = stage.value if stage else CRAWL_TREE
        ctx.save_to_workspace(tree)
        checkpoint = Checkpoint(
            build_id=ctx.build.id,
            last_stage=stage,
            page_progress={path: stage.value if stage else CRAWL_TREE for path in ctx.pages},
            state=ctx.to_state(),
        )
        self._save(ctx.build)
        checkpoint = self._checkpoints.save(checkpoint)
        ctx.workspace.prune_work_trees(keep=tree)
        return checkpoint

    def _deploy(self, ctx: BuildContext) -> None:
        build = ctx.build
        output_dir = ctx.workspace.write_output(
            {page.path: page.html for page in ctx.pages.values()}, ctx.files
        )
        if not ctx.settings.build.auto_deploy_on_success:
            self._events.log(build.id, LogLevel.INFO, BuildStatus.DEPLOYING.value,
                             "Auto-deploy disabled; output written to workspace")
            return
        build.deploy_url = self._deployer.deploy(output_dir, build)
        self._events.log(build.id, LogLevel.INFO, BuildStatus.DEPLOYING.value,
                         f"Deployed to {build.deploy_url}")

    # ------------------------------------------------------------------
    # Terminal handling
    # ------------------------------------------------------------------

    def _finish(self, build: Build) -> Build:
        self._events.complete(build.id, build.status.value, {
            "stats": build.stats.model_dump(),
            "deploy_url": build.deploy_url,
            "error_message": build.error_message,
        })
        self._events.close_channel(build.id)
        return build

    def _fail(self, build: Build, message: str, phase: str) -> Build:
        stored = self._persistence.load_build(build.id)
        if stored is not None and is_build_terminal(BuildStatus(stored["status"])):
            return self._finish(Build.from_dict(stored))

        logger.error(f"[Pipeline] Build {build.id} failed in {phase}: {message}")
        transition_build(build, BuildStatus.FAILED)
        build.error_message = message
        build.error_details = {**build.error_details, "phase": phase}
        self._persistence.save_build(build.to_dict())
        self._events.log(build.id, LogLevel.ERROR, phase, message)
        return self._finish(build)

    def _cancel(self, build: Build, reason: str) -> Build:
        stored = self._persistence.load_build(build.id)
        if stored is not None and is_build_terminal(BuildStatus(stored["status"])):
            # Whoever cancelled already recorded the outcome
            return self._finish(Build.from_dict(stored))

        logger.info(f"[Pipeline] Build {build.id} cancelled: {reason}")
        transition_build(build, BuildStatus.CANCELLED)
        build.error_message = reason
        self._persistence.save_build(build.to_dict())
        return self._finish(build)


def cancel_flag(event: threading.Event, reason: str = "Cancelled") -> CancelCheck:
    """Adapt a threading.Event to the orchestrator's cancel_check callable."""
    return lambda: reason if event.is_set() else None

