"""
Job queue tests.

Tests:
1. JobQueue: FIFO order, retry with backoff, delay without using an attempt,
   stall detection and late result discard
2. BuildQueue: admission, workspace contention, failure bookkeeping and
   site cancellation
3. AgentQueue: runs never overlap
4. MonitorScheduler: one pending comparison per site
"""

import threading
import time
from typing import Any, Dict, List, Optional

import pytest

from edgeforge.jobs import (
    SITE_DELETED,
    AgentQueue,
    AgentRunner,
    BuildQueue,
    DuplicateJobError,
    JobDelayedError,
    JobQueue,
    JobStalledError,
    JobState,
    MonitorScheduler,
    PerformanceComparator,
    QueueStoppedError,
)
from edgeforge.pipeline import (
    ACTIVE_BUILD_STATES,
    Build,
    BuildScope,
    BuildStatus,
    WorkspaceBusyError,
    WorkspaceManager,
    advance_build,
)
from edgeforge.settings import SiteNotFoundError


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# =============================================================================
# JobQueue
# =============================================================================

class TestJobQueueBasics:
    """Queue bookkeeping without worker threads."""

    def test_backoff_is_exponential(self):
        queue = JobQueue("q", lambda job: None, attempts=4, backoff_seconds=30)
        assert [queue.backoff_delay(n) for n in (1, 2, 3)] == [30, 60, 120]

    def test_invalid_sizing(self):
        with pytest.raises(ValueError):
            JobQueue("q", lambda job: None, concurrency=0)
        with pytest.raises(ValueError):
            JobQueue("q", lambda job: None, attempts=0)

    def test_duplicate_pending_id(self):
        queue = JobQueue("q", lambda job: None)
        queue.add({"n": 1}, job_id="a")
        with pytest.raises(DuplicateJobError):
            queue.add({"n": 2}, job_id="a")

    def test_remove_waiting_and_delayed(self):
        queue = JobQueue("q", lambda job: None)
        queue.add({"site_id": "s1"}, job_id="a")
        queue.add({"site_id": "s2"}, job_id="b")
        queue.add({"site_id": "s1"}, job_id="c", delay_seconds=60)

        removed = queue.remove(lambda job: job.data["site_id"] == "s1")

        assert sorted(job.id for job in removed) == ["a", "c"]
        assert queue.get_job("a") is None
        assert queue.counts()["waiting"] == 1
        assert queue.counts()["delayed"] == 0

    def test_heartbeat_needs_active_job(self):
        queue = JobQueue("q", lambda job: None)
        queue.add({}, job_id="a")
        assert queue.heartbeat("a") is False
        assert queue.heartbeat("missing") is False

    def test_add_after_stop(self):
        queue = JobQueue("q", lambda job: None)
        queue.stop()
        with pytest.raises(QueueStoppedError):
            queue.add({})


@pytest.mark.slow
class TestJobQueueWorkers:
    """Real worker threads with short timings."""

    def setup_method(self):
        self.queues: List[JobQueue] = []

    def teardown_method(self):
        for queue in self.queues:
            queue.stop(timeout=2)

    def make(self, handler, **kwargs) -> JobQueue:
        queue = JobQueue("test", handler, **kwargs)
        self.queues.append(queue)
        return queue

    def test_fifo_single_worker(self):
        order = []
        queue = self.make(lambda job: order.append(job.data["n"]))
        for n in range(5):
            queue.add({"n": n})
        queue.start()

        assert queue.drain(timeout=5)
        assert order == [0, 1, 2, 3, 4]
        assert queue.counts()["completed"] == 5

    def test_concurrency_bound(self):
        lock = threading.Lock()
        running = {"now": 0, "max": 0}

        def handler(job):
            with lock:
                running["now"] += 1
                running["max"] = max(running["max"], running["now"])
            time.sleep(0.05)
            with lock:
                running["now"] -= 1

        queue = self.make(handler, concurrency=2)
        for _ in range(6):
            queue.add({})
        queue.start()

        assert queue.drain(timeout=5)
        assert running["max"] == 2

    def test_retry_then_complete(self):
        calls = []

        def handler(job):
            calls.append(job.attempts_made)
            if job.attempts_made == 1:
                raise RuntimeError("transient")
            return "ok"

        queue = self.make(handler, attempts=3, backoff_seconds=0.01)
        job = queue.add({})
        queue.start()

        assert queue.drain(timeout=5)
        assert calls == [1, 2]
        assert job.state == JobState.COMPLETED
        assert job.result == "ok"
        assert job.error is None

    def test_attempts_exhausted(self):
        failures = []
        queue = self.make(lambda job: 1 / 0, attempts=2, on_failed=lambda job, e: failures.append((job.id, e)))
        job = queue.add({}, job_id="doomed")
        queue.start()

        assert queue.drain(timeout=5)
        assert job.state == JobState.FAILED
        assert job.attempts_made == 2
        assert "division by zero" in job.error
        assert len(failures) == 1
        assert isinstance(failures[0][1], ZeroDivisionError)

    def test_delay_does_not_use_an_attempt(self):
        def handler(job):
            if not job.data.get("waited"):
                job.data["waited"] = True
                raise JobDelayedError(0.02, "busy")
            return job.attempts_made

        queue = self.make(handler, attempts=1)
        job = queue.add({})
        queue.start()

        assert queue.drain(timeout=5)
        assert job.state == JobState.COMPLETED
        assert job.result == 1

    def test_stalled_job_fails_on_last_attempt(self):
        """An expired lock on the last attempt fails the job; the late result is dropped."""
        release = threading.Event()
        failures = []

        def handler(job):
            release.wait(5)
            return "late"

        queue = self.make(handler, attempts=1, lock_duration_seconds=0.05, stalled_interval_seconds=60,
                          on_failed=lambda job, e: failures.append(e))
        job = queue.add({})
        queue.start()
        assert wait_until(lambda: job.state == JobState.ACTIVE)
        time.sleep(0.1)

        assert queue.check_stalled() == [job.id]
        assert job.state == JobState.FAILED
        assert isinstance(failures[0], JobStalledError)

        release.set()
        time.sleep(0.1)
        assert job.state == JobState.FAILED
        assert job.result is None

    def test_stalled_job_is_requeued(self):
        release = threading.Event()
        calls = []

        def handler(job):
            calls.append(job.attempts_made)
            if len(calls) == 1:
                release.wait(5)
                return "late"
            return "fresh"

        queue = self.make(handler, attempts=2, lock_duration_seconds=0.05, stalled_interval_seconds=60)
        job = queue.add({})
        queue.start()
        assert wait_until(lambda: job.state == JobState.ACTIVE)
        time.sleep(0.1)

        assert queue.check_stalled() == [job.id]
        assert job.state == JobState.WAITING

        release.set()
        assert queue.drain(timeout=5)
        assert calls == [1, 2]
        assert job.result == "fresh"

    def test_heartbeat_keeps_lock(self):
        release = threading.Event()

        def handler(job):
            for _ in range(10):
                queue.heartbeat(job.id)
                time.sleep(0.02)
            release.wait(5)

        queue = self.make(handler, lock_duration_seconds=0.1, stalled_interval_seconds=60)
        job = queue.add({})
        queue.start()
        assert wait_until(lambda: job.state == JobState.ACTIVE)
        time.sleep(0.05)

        assert queue.check_stalled() == []
        release.set()
        assert queue.drain(timeout=5)


# =============================================================================
# BuildQueue
# =============================================================================

class BlockingOrchestrator:
    """Holds the workspace and polls cancel_check until told to stop."""

    def __init__(self, persistence, workspaces: WorkspaceManager):
        self.persistence = persistence
        self.workspaces = workspaces
        self.started = threading.Event()

    def run(self, build: Build, cancel_check=None) -> Build:
        with self.workspaces.hold(build.site_id, build.id):
            advance_build(build, BuildStatus.CRAWLING)
            self.persistence.save_build(build.to_dict())
            self.started.set()
            while not cancel_check():
                time.sleep(0.01)
        return Build.from_dict(self.persistence.load_build(build.id))


class BusyOrchestrator:

    def run(self, build: Build, cancel_check=None) -> Build:
        raise WorkspaceBusyError(build.site_id, "other-build")


class TestBuildQueueAdmission:

    def test_enqueue_persists_queued_build(self, persistence, site, tmp_path):
        builds = BuildQueue(persistence, BusyOrchestrator(), WorkspaceManager(tmp_path))
        build = builds.enqueue_build("site-1", BuildScope.PARTIAL, ["/about/"])

        stored = persistence.load_build(build.id)
        assert stored["status"] == "queued"
        assert stored["pages"] == ["/about/"]
        assert builds.queue.get_job(build.id).data == {"build_id": build.id, "site_id": "site-1"}

    def test_enqueue_validation(self, persistence, site, tmp_path):
        builds = BuildQueue(persistence, BusyOrchestrator(), WorkspaceManager(tmp_path))
        with pytest.raises(SiteNotFoundError):
            builds.enqueue_build("nope")
        with pytest.raises(ValueError):
            builds.enqueue_build("site-1", BuildScope.PARTIAL)
        with pytest.raises(ValueError):
            builds.enqueue_build("site-1", BuildScope.SINGLE_PAGE, ["/a/", "/b/"])

    def test_busy_workspace_delays_job(self, persistence, site, tmp_path):
        builds = BuildQueue(persistence, BusyOrchestrator(), WorkspaceManager(tmp_path), busy_delay_seconds=7)
        build = builds.enqueue_build("site-1")

        with pytest.raises(JobDelayedError) as exc:
            builds._handle(builds.queue.get_job(build.id))
        assert exc.value.delay_seconds == 7
        assert "other-build" in exc.value.reason

    def test_terminal_build_is_skipped(self, persistence, site, tmp_path):
        builds = BuildQueue(persistence, BusyOrchestrator(), WorkspaceManager(tmp_path))
        build = builds.enqueue_build("site-1")
        persistence.save_build(dict(persistence.load_build(build.id), status="cancelled"))

        result = builds._handle(builds.queue.get_job(build.id))
        assert result == {"build_id": build.id, "status": "cancelled"}

    def test_exhausted_job_fails_build(self, persistence, site, tmp_path):
        """A build never stays in flight after its job gives up."""
        builds = BuildQueue(persistence, BusyOrchestrator(), WorkspaceManager(tmp_path))
        build = builds.enqueue_build("site-1")
        advance_build(build, BuildStatus.OPTIMIZING)
        persistence.save_build(build.to_dict())
        job = builds.queue.get_job(build.id)
        job.attempts_made = 2

        builds._on_job_failed(job, RuntimeError("worker crashed"))

        stored = Build.from_dict(persistence.load_build(build.id))
        assert stored.status == BuildStatus.FAILED
        assert stored.error_message == "Worker failed: worker crashed"
        assert stored.error_details == {"phase": "optimizing", "attempts": 2}
        assert stored.completed_at is not None


@pytest.mark.slow
class TestCancelSite:
    """Deleting a site leaves none of its builds queued or in flight."""

    def test_cancel_queued_and_running(self, persistence, site, tmp_path):
        workspaces = WorkspaceManager(tmp_path)
        orchestrator = BlockingOrchestrator(persistence, workspaces)
        builds = BuildQueue(persistence, orchestrator, workspaces, concurrency=1, cancel_wait_seconds=5)
        running = builds.enqueue_build("site-1")
        waiting = builds.enqueue_build("site-1")
        builds.start()
        try:
            assert orchestrator.started.wait(5)

            summary = builds.cancel_site("site-1")

            assert summary["removed_jobs"] == [waiting.id]
            assert set(summary["failed_builds"]) == {running.id, waiting.id}
            assert summary["workspace_released"] is True
            assert builds.drain(timeout=5)
        finally:
            builds.stop(timeout=2)

        active = [s.value for s in ACTIVE_BUILD_STATES]
        assert persistence.list_builds(site_id="site-1", statuses=active) == []
        for build_id in (running.id, waiting.id):
            stored = persistence.load_build(build_id)
            assert stored["status"] == "failed"
            assert stored["error_message"] == SITE_DELETED
        assert persistence.load_build(running.id)["error_details"]["phase"] == "crawling"
        assert workspaces.holder("site-1") is None

    def test_cancel_forces_release_after_timeout(self, persistence, site, tmp_path):
        workspaces = WorkspaceManager(tmp_path)
        builds = BuildQueue(persistence, BusyOrchestrator(), workspaces, cancel_wait_seconds=0.05)
        workspaces.acquire("site-1", "stuck-build")

        summary = builds.cancel_site("site-1")

        assert summary["workspace_released"] is False
        assert workspaces.holder("site-1") is None

    def test_cancel_site_without_builds(self, persistence, site, tmp_path):
        builds = BuildQueue(persistence, BusyOrchestrator(), WorkspaceManager(tmp_path))
        summary = builds.cancel_site("site-1")
        assert summary == {"site_id": "site-1", "removed_jobs": [], "failed_builds": [], "workspace_released": True}


# =============================================================================
# Agent queue
# =============================================================================

class RecordingRunner(AgentRunner):

    def __init__(self):
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.calls: List[tuple] = []

    def run(self, site_id: str, build_id: Optional[str] = None) -> Dict[str, Any]:
        with self.lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls.append((site_id, build_id))
        time.sleep(0.02)
        with self.lock:
            self.active -= 1
        return {"site_id": site_id, "changes": 0}


@pytest.mark.slow
class TestAgentQueue:

    def test_runs_are_serialized(self):
        runner = RecordingRunner()
        agent = AgentQueue(runner)
        jobs = [agent.enqueue("site-1", "b1"), agent.enqueue("site-2"), agent.enqueue("site-1")]
        agent.start()
        try:
            assert agent.drain(timeout=5)
        finally:
            agent.stop(timeout=2)

        assert runner.max_active == 1
        assert runner.calls == [("site-1", "b1"), ("site-2", None), ("site-1", None)]
        assert jobs[1].result == {"site_id": "site-2", "changes": 0}


# =============================================================================
# Monitor
# =============================================================================

class RecordingComparator(PerformanceComparator):

    def __init__(self):
        self.calls = []

    def compare(self, site_id: str, origin_url: str, edge_url: str) -> Dict[str, Any]:
        self.calls.append((site_id, origin_url, edge_url))
        return {"origin_lcp_ms": 2400, "edge_lcp_ms": 900}


class TestMonitorScheduler:

    def setup_method(self):
        self.comparator = RecordingComparator()

    def deployed(self, persistence, site_id, url, created_at):
        build = Build(site_id=site_id, status=BuildStatus.SUCCESS, deploy_url=url)
        data = build.to_dict()
        data["created_at"] = created_at
        persistence.save_build(data)

    def test_scan_enqueues_monitored_sites_once(self, persistence):
        persistence.create_site("A", "https://a.test", site_id="a", monitor_enabled=True)
        persistence.create_site("B", "https://b.test", site_id="b")
        monitor = MonitorScheduler(persistence, self.comparator)

        assert [job.id for job in monitor.scan()] == ["compare:a"]
        assert monitor.scan() == []
        assert monitor.run_now("a") is None

    def test_compares_against_latest_deploy(self, persistence):
        persistence.create_site("A", "https://a.test", site_id="a", monitor_enabled=True)
        self.deployed(persistence, "a", "https://edge.test/a/old/", "2026-01-01T00:00:00")
        self.deployed(persistence, "a", "https://edge.test/a/new/", "2026-02-01T00:00:00")
        monitor = MonitorScheduler(persistence, self.comparator)

        result = monitor._handle(monitor.run_now("a"))

        assert self.comparator.calls == [("a", "https://a.test", "https://edge.test/a/new/")]
        assert monitor.latest("a") == result

    def test_never_deployed_site_is_skipped(self, persistence):
        persistence.create_site("A", "https://a.test", site_id="a", monitor_enabled=True)
        monitor = MonitorScheduler(persistence, self.comparator)

        assert monitor._handle(monitor.run_now("a")) is None
        assert self.comparator.calls == []
        assert monitor.latest("a") is None
