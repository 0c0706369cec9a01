"""
EdgeForge service: settings, build admission and build logs over HTTP.

create_app() wires the persistence, settings, pipeline and queue objects
onto app.state; routes read them from there. Workers start with the app's
lifespan unless start_workers is False.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from .assets import ContentStore, LocalContentStore
from .config import RuntimeConfig, configure_logging
from .fetch import Fetcher, HttpFetcher
from .jobs import BuildQueue
from .persistence import PersistenceManager
from .pipeline import (
    BuildEventBus,
    BuildOrchestrator,
    CheckpointStore,
    Crawler,
    Deployer,
    LocalDirectoryDeployer,
    StageRunner,
    StaticCrawler,
    WorkspaceManager,
)
from .routes import builds, settings, sites
from .settings import SettingsCache, SettingsService

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[RuntimeConfig] = None,
    crawler: Optional[Crawler] = None,
    deployer: Optional[Deployer] = None,
    fetcher: Optional[Fetcher] = None,
    content_store: Optional[ContentStore] = None,
    start_workers: bool = True,
) -> FastAPI:
    """
    Build the FastAPI app and its service graph.

    Args:
        config: Runtime config (defaults to RuntimeConfig.from_env())
        crawler: Crawl collaborator (defaults to an empty StaticCrawler)
        deployer: Deploy collaborator (defaults to a local directory deployer)
        fetcher: Network fetcher (defaults to HttpFetcher)
        content_store: Image store (defaults to a local content store)
        start_workers: Start the build queue with the app's lifespan
    """
    config = config or RuntimeConfig.from_env()

    persistence = PersistenceManager(db_path=config.db_path)
    settings_service = SettingsService(persistence, SettingsCache(config.settings_cache_ttl_seconds))
    events = BuildEventBus(persistence, max_pending=config.event_subscriber_max_pending)
    workspaces = WorkspaceManager(Path(config.workspace_root))

    stages = StageRunner(
        fetcher or HttpFetcher(),
        content_store or LocalContentStore(Path(config.content_store_root), config.content_store_base_url),
        events,
        concurrency=config.optimizer_concurrency,
        migration_concurrency=config.migration_concurrency,
        migration_max_size_mb=config.migration_max_size_mb,
    )
    orchestrator = BuildOrchestrator(
        persistence,
        settings_service,
        crawler or StaticCrawler(),
        deployer or LocalDirectoryDeployer(Path(config.workspace_root) / "_deploys"),
        stages,
        events,
        CheckpointStore(persistence, max_age_seconds=config.checkpoint_max_age_seconds),
        workspaces,
    )
    build_queue = BuildQueue.from_config(config, persistence, orchestrator, workspaces)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_workers:
            build_queue.start()
        try:
            yield
        finally:
            if start_workers:
                build_queue.stop(timeout=30.0)

    app = FastAPI(title="EdgeForge", version="0.1.0", lifespan=lifespan)

    app.state.config = config
    app.state.persistence = persistence
    app.state.settings_service = settings_service
    app.state.events = events
    app.state.workspaces = workspaces
    app.state.orchestrator = orchestrator
    app.state.build_queue = build_queue

    app.include_router(sites.router)
    app.include_router(settings.router)
    app.include_router(builds.router)

    @app.get("/")
    async def root():
        return {"service": "edgeforge", "status": "running"}

    return app


def main() -> FastAPI:
    """Entry point for `uvicorn edgeforge.main:main --factory`."""
    configure_logging()
    config = RuntimeConfig.from_env()
    logger.info(f"[Main] Starting EdgeForge (db={config.db_path}, workspaces={config.workspace_root})")
    return create_app(config)
