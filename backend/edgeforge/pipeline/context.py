"""
In-flight build state shared by the pipeline stages.

BuildContext holds the working copy of every page and asset for one build,
the frozen settings snapshot and the bookkeeping finalize needs (renamed and
removed files). Stages mutate it; the orchestrator checkpoints it.

Thread safety: stages fan out per file / per page, and every per-item job
only touches its own page or file. Shared counters go through add_stats().
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote, urljoin, urlsplit

from ..settings import OptimizationSettings, resolve
from ..settings.patterns import AssetOverride, matching_overrides
from .errors import BuildCancelledError, PipelineTimeoutError
from .models import Build, BuildStats
from .workspace import Workspace

logger = logging.getLogger(__name__)


@dataclass
class PageState:
    path: str
    url: str
    html: str


class BuildContext:
    def __init__(
        self,
        build: Build,
        site_url: str,
        workspace: Workspace,
        site_override: Dict[str, Any],
        asset_overrides: List[AssetOverride],
        cancel_check: Optional[Callable[[], Optional[str]]] = None,
    ):
        """
        Args:
            build: The build being run (its settings_snapshot must be set)
            site_url: Site origin, e.g. "https://example.com"
            workspace: Acquired workspace for the site
            site_override: Site sparse override captured at build start
            asset_overrides: Asset overrides captured at build start
            cancel_check: Returns a reason string once the build should stop
        """
        self.build = build
        self.site_url = site_url.rstrip("/")
        self.workspace = workspace
        self.settings: OptimizationSettings = build.settings
        self.site_override = site_override
        self.asset_overrides = asset_overrides
        self._cancel_check = cancel_check

        self.pages: Dict[str, PageState] = {}
        self.files: Dict[str, bytes] = {}
        self.renames: Dict[str, str] = {}
        self.removed: List[str] = []
        # original image path -> [(variant path, width)]
        self.srcset_variants: Dict[str, List[Tuple[str, int]]] = {}
        self.image_dimensions: Dict[str, Tuple[int, int]] = {}
        # Work tree the last checkpoint was written to
        self.work_tree: Optional[str] = None

        self._stats_lock = threading.Lock()
        self._settings_memo: Dict[Tuple[str, ...], OptimizationSettings] = {}
        self._started = time.monotonic()

    @property
    def stats(self) -> BuildStats:
        return self.build.stats

    def add_stats(self, fn: Callable[[BuildStats], None]) -> None:
        with self._stats_lock:
            fn(self.build.stats)

    # Settings

    def settings_for(self, url: str) -> OptimizationSettings:
        """Build settings narrowed by any asset overrides matching url."""
        matched = matching_overrides(self.asset_overrides, url)
        if not matched:
            return self.settings
        key = tuple(o.id for o in matched)
        with self._stats_lock:
            cached = self._settings_memo.get(key)
        if cached is None:
            cached = resolve(self.site_override, [o.settings for o in matched])
            with self._stats_lock:
                self._settings_memo[key] = cached
        return cached

    # Paths

    def file_url(self, rel_path: str) -> str:
        return f"{self.site_url}/{rel_path}"

    def local_path(self, ref: str, page_url: str) -> Optional[str]:
        """
        Workspace path for a reference on a page, or None if the reference
        points off-site (or at nothing the build holds).
        """
        ref = (ref or "").strip()
        if not ref or ref.startswith(("data:", "blob:", "#", "mailto:", "javascript:")):
            return None
        absolute = urljoin(page_url or self.site_url + "/", ref)
        parts = urlsplit(absolute)
        if parts.netloc and parts.netloc != urlsplit(self.site_url).netloc:
            return None
        path = unquote(parts.path).lstrip("/")
        return path or None

    # Cancellation

    def check_cancelled(self) -> None:
        """
        Raises:
            BuildCancelledError: If cancellation was requested
            PipelineTimeoutError: If the build ran past its timeout
        """
        if self._cancel_check is not None:
            reason = self._cancel_check()
            if reason:
                raise BuildCancelledError(self.build.id, reason)
        timeout = self.settings.build.pipeline_timeout_minutes
        if time.monotonic() - self._started > timeout * 60:
            raise PipelineTimeoutError(self.build.id, timeout)

    # Checkpoint state

    def to_state(self) -> Dict[str, Any]:
        return {
            "site_url": self.site_url,
            "work_tree": self.work_tree,
            "pages": [{"path": p.path, "url": p.url} for p in self.pages.values()],
            "renames": dict(self.renames),
            "removed": list(self.removed),
            "srcset_variants": {k: [list(v) for v in vs] for k, vs in self.srcset_variants.items()},
            "image_dimensions": {k: list(v) for k, v in self.image_dimensions.items()},
            "site_override": self.site_override,
            "asset_overrides": [o.to_dict() for o in self.asset_overrides],
            "stats": self.build.stats.model_dump(),
        }

    def save_to_workspace(self, tree: str) -> None:
        """Snapshot the working pages and files as the named work tree."""
        self.workspace.write_work_tree(tree, {p.path: p.html for p in self.pages.values()}, self.files)
        self.work_tree = tree

    def restore(self, state: Dict[str, Any]) -> None:
        """Reload working pages and files from the work tree named in checkpoint state."""
        tree = state["work_tree"]
        self.pages = {}
        for entry in state.get("pages", []):
            self.pages[entry["path"]] = PageState(
                path=entry["path"], url=entry["url"], html=self.workspace.read_page(tree, entry["path"])
            )
        self.files = {}
        for rel_path in self.workspace.list_files(tree):
            data = self.workspace.read_file(tree, rel_path)
            if data is not None:
                self.files[rel_path] = data
        self.work_tree = tree
        self.renames = dict(state.get("renames") or {})
        self.removed = list(state.get("removed") or [])
        self.srcset_variants = {
            k: [(v[0], int(v[1])) for v in vs] for k, vs in (state.get("srcset_variants") or {}).items()
        }
        self.image_dimensions = {
            k: (int(v[0]), int(v[1])) for k, v in (state.get("image_dimensions") or {}).items()
        }
        if state.get("stats"):
            self.build.stats = BuildStats.model_validate(state["stats"])
        logger.info(f"[Pipeline] Build {self.build.id} restored {len(self.pages)} page(s), "
                    f"{len(self.files)} file(s) from work tree {tree}")
