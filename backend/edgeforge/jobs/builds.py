"""
Build queue.

Admits build requests, runs them on a bounded JobQueue and cancels them when
their site goes away.

Rules:
- enqueue_build persists a `queued` Build before the job exists, so every
  job has a row to run against
- A build whose site workspace is held by another build is delayed, never
  run next to it
- The orchestrator polls cancel_check between work items; each poll also
  renews the job's lock
- A job that runs out of attempts leaves its build `failed`, never in flight
- cancel_site leaves no queued or in-flight build row for the site
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Sequence

from ..config import RuntimeConfig
from ..pipeline import (
    ACTIVE_BUILD_STATES,
    Build,
    BuildOrchestrator,
    BuildScope,
    BuildStatus,
    WorkspaceBusyError,
    WorkspaceManager,
    is_build_terminal,
    transition_build,
)
from ..settings import SiteNotFoundError
from .errors import JobDelayedError
from .queue import Job, JobQueue

logger = logging.getLogger(__name__)

SITE_DELETED = "Site deleted"


class BuildQueue:
    """Build admission and execution on top of a JobQueue."""

    def __init__(
        self,
        persistence,
        orchestrator: BuildOrchestrator,
        workspaces: WorkspaceManager,
        concurrency: int = 2,
        attempts: int = 2,
        backoff_seconds: float = 30.0,
        lock_duration_seconds: float = 600.0,
        stalled_interval_seconds: float = 30.0,
        busy_delay_seconds: Optional[float] = None,
        cancel_wait_seconds: float = 30.0,
    ):
        """
        Args:
            persistence: PersistenceManager holding sites and builds
            orchestrator: Runs one build
            workspaces: The same manager the orchestrator acquires from
            busy_delay_seconds: Delay for a build whose workspace is held
                (defaults to backoff_seconds)
            cancel_wait_seconds: How long cancel_site waits for an in-flight
                build to let go of the workspace
        """
        self._persistence = persistence
        self._orchestrator = orchestrator
        self._workspaces = workspaces
        self._busy_delay = backoff_seconds if busy_delay_seconds is None else busy_delay_seconds
        self._cancel_wait = cancel_wait_seconds

        self._cancel_events: Dict[str, threading.Event] = {}
        self._cancel_lock = threading.Lock()

        self.queue = JobQueue(
            "builds",
            self._handle,
            concurrency=concurrency,
            attempts=attempts,
            backoff_seconds=backoff_seconds,
            lock_duration_seconds=lock_duration_seconds,
            stalled_interval_seconds=stalled_interval_seconds,
            on_failed=self._on_job_failed,
        )

    @classmethod
    def from_config(
        cls,
        config: RuntimeConfig,
        persistence,
        orchestrator: BuildOrchestrator,
        workspaces: WorkspaceManager,
    ) -> "BuildQueue":
        return cls(
            persistence,
            orchestrator,
            workspaces,
            concurrency=config.max_concurrent_builds,
            attempts=config.build_attempts,
            backoff_seconds=config.build_backoff_seconds,
            lock_duration_seconds=config.lock_duration_seconds,
            stalled_interval_seconds=config.stalled_interval_seconds,
        )

    # Lifecycle

    def start(self) -> None:
        self.queue.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.queue.stop(timeout)

    def drain(self, timeout: Optional[float] = None) -> bool:
        return self.queue.drain(timeout)

    def counts(self) -> Dict[str, int]:
        return self.queue.counts()

    # Admission

    def enqueue_build(
        self,
        site_id: str,
        scope: BuildScope = BuildScope.FULL,
        pages: Optional[Sequence[str]] = None,
    ) -> Build:
        """
        Create a queued build for a site and add it to the queue.

        Raises:
            SiteNotFoundError: If the site does not exist
            ValueError: If a partial or single-page build names no pages
        """
        if self._persistence.get_site(site_id) is None:
            raise SiteNotFoundError(site_id)
        pages = list(pages or [])
        if scope != BuildScope.FULL and not pages:
            raise ValueError(f"{scope.value} build needs at least one page")
        if scope == BuildScope.SINGLE_PAGE and len(pages) != 1:
            raise ValueError("single_page build takes exactly one page")

        build = Build(site_id=site_id, scope=scope, pages=pages)
        self._persistence.save_build(build.to_dict())
        self.queue.add({"build_id": build.id, "site_id": site_id}, job_id=build.id)
        logger.info(f"[BuildQueue] Build {build.id} enqueued for site {site_id} ({scope.value})")
        return build

    # Execution

    def _cancel_check(self, job: Job, event: threading.Event):
        def check() -> Optional[str]:
            self.queue.heartbeat(job.id)
            return SITE_DELETED if event.is_set() else None
        return check

    def _handle(self, job: Job) -> Dict[str, Any]:
        build_id = job.data["build_id"]
        stored = self._persistence.load_build(build_id)
        if stored is None:
            logger.warning(f"[BuildQueue] Build {build_id} no longer exists; dropping job")
            return {"build_id": build_id, "status": None}

        build = Build.from_dict(stored)
        if is_build_terminal(build.status):
            logger.info(f"[BuildQueue] Build {build_id} already {build.status.value}; skipping")
            return {"build_id": build_id, "status": build.status.value}

        event = threading.Event()
        with self._cancel_lock:
            self._cancel_events[build_id] = event
        try:
            result = self._orchestrator.run(build, cancel_check=self._cancel_check(job, event))
        except WorkspaceBusyError as e:
            logger.info(f"[BuildQueue] Build {build_id} waiting for workspace held by {e.holder_build_id}")
            raise JobDelayedError(self._busy_delay, f"workspace held by build {e.holder_build_id}") from e
        finally:
            with self._cancel_lock:
                self._cancel_events.pop(build_id, None)

        return {"build_id": build_id, "status": result.status.value}

    def _on_job_failed(self, job: Job, error: BaseException) -> None:
        """Leave the build failed once its job is out of attempts."""
        build_id = job.data.get("build_id")
        stored = self._persistence.load_build(build_id) if build_id else None
        if stored is None:
            return
        build = Build.from_dict(stored)
        if is_build_terminal(build.status):
            return
        phase = build.current_stage.value if build.current_stage else build.status.value
        transition_build(build, BuildStatus.FAILED)
        build.error_message = f"Worker failed: {error}"
        build.error_details = {**build.error_details, "phase": phase, "attempts": job.attempts_made}
        self._persistence.save_build(build.to_dict())
        logger.error(f"[BuildQueue] Build {build_id} failed after {job.attempts_made} attempt(s): {error}")

    # Cancellation

    def _fail_active_builds(self, site_id: str, message: str) -> List[str]:
        failed = []
        statuses = [s.value for s in ACTIVE_BUILD_STATES]
        for stored in self._persistence.list_builds(site_id=site_id, statuses=statuses):
            build = Build.from_dict(stored)
            phase = build.current_stage.value if build.current_stage else build.status.value
            transition_build(build, BuildStatus.FAILED)
            build.error_message = message
            build.error_details = {**build.error_details, "phase": phase}
            self._persistence.save_build(build.to_dict())
            failed.append(build.id)
        return failed

    def _wait_for_release(self, site_id: str) -> bool:
        deadline = time.monotonic() + self._cancel_wait
        while self._workspaces.holder(site_id) is not None:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.05)
        return True

    def cancel_site(self, site_id: str) -> Dict[str, Any]:
        """
        Cancel everything queued or running for a site.

        Removes its waiting/delayed jobs, marks its queued and in-flight builds
        failed with "Site deleted", signals running builds to stop, then
        waits for the workspace to be released and deletes it.

        Returns:
            Summary with removed job ids and failed build ids
        """
        removed = self.queue.remove(lambda job: job.data.get("site_id") == site_id)
        failed = self._fail_active_builds(site_id, SITE_DELETED)

        with self._cancel_lock:
            for build_id in failed:
                event = self._cancel_events.get(build_id)
                if event is not None:
                    event.set()

        released = self._wait_for_release(site_id)
        if not released:
            holder = self._workspaces.holder(site_id)
            logger.warning(f"[BuildQueue] Build {holder} did not release site {site_id} workspace "
                           f"within {self._cancel_wait}s; forcing release")
            self._workspaces.release(site_id)

        # A worker may have saved progress between the first pass and stopping
        for build_id in self._fail_active_builds(site_id, SITE_DELETED):
            if build_id not in failed:
                failed.append(build_id)

        self._workspaces.remove(site_id)
        logger.info(f"[BuildQueue] Site {site_id} cancelled: {len(removed)} job(s) removed, "
                    f"{len(failed)} build(s) failed")
        return {
            "site_id": site_id,
            "removed_jobs": [job.id for job in removed],
            "failed_builds": failed,
            "workspace_released": released,
        }
