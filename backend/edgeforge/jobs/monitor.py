"""
Performance monitor scheduling.

A timer thread scans every `interval_seconds` for monitor-enabled sites and
enqueues one comparison job per site into a single-worker queue. A
comparison measures the origin site against its latest deployed build.

Rules:
- At most one pending comparison per site; a scan skips sites whose
  previous comparison has not finished
- Sites that have never deployed are skipped
- Comparison failures fail that job only; the schedule keeps running
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..config import RuntimeConfig
from ..pipeline import BuildStatus
from .errors import DuplicateJobError
from .queue import Job, JobQueue

logger = logging.getLogger(__name__)


class PerformanceComparator(ABC):
    """Measures a site's origin against its optimized deployment."""

    @abstractmethod
    def compare(self, site_id: str, origin_url: str, edge_url: str) -> Dict[str, Any]:
        pass


class MonitorScheduler:
    def __init__(
        self,
        persistence,
        comparator: PerformanceComparator,
        interval_seconds: float = 1800.0,
        lock_duration_seconds: float = 300.0,
        stalled_interval_seconds: float = 120.0,
    ):
        self._persistence = persistence
        self._comparator = comparator
        self.interval_seconds = interval_seconds
        self._results: Dict[str, Dict[str, Any]] = {}
        self._results_lock = threading.Lock()
        self._stopping = threading.Event()
        self._timer: Optional[threading.Thread] = None

        self.queue = JobQueue(
            "monitor",
            self._handle,
            concurrency=1,
            attempts=1,
            lock_duration_seconds=lock_duration_seconds,
            stalled_interval_seconds=stalled_interval_seconds,
        )

    @classmethod
    def from_config(cls, config: RuntimeConfig, persistence, comparator: PerformanceComparator) -> "MonitorScheduler":
        return cls(
            persistence,
            comparator,
            interval_seconds=config.monitor_interval_seconds,
            lock_duration_seconds=config.monitor_lock_duration_seconds,
        )

    # Lifecycle

    def start(self) -> None:
        """Start the comparison worker and the repeating scan timer."""
        self.queue.start()
        if self._timer is None:
            self._timer = threading.Thread(target=self._tick, name="monitor-timer", daemon=True)
            self._timer.start()
        logger.info(f"[Monitor] Scheduled performance monitoring every {self.interval_seconds}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopping.set()
        if self._timer is not None:
            self._timer.join(timeout)
            self._timer = None
        self.queue.stop(timeout)

    def drain(self, timeout: Optional[float] = None) -> bool:
        return self.queue.drain(timeout)

    def _tick(self) -> None:
        while not self._stopping.wait(self.interval_seconds):
            self.scan()

    # Scheduling

    def scan(self) -> List[Job]:
        """Enqueue a comparison for every monitor-enabled site."""
        sites = self._persistence.list_sites(monitor_enabled=True)
        logger.info(f"[Monitor] Found {len(sites)} monitored site(s)")
        jobs = []
        for site in sites:
            job = self.run_now(site["id"])
            if job is not None:
                jobs.append(job)
        return jobs

    def run_now(self, site_id: str) -> Optional[Job]:
        """Enqueue an on-demand comparison; None if one is already pending."""
        try:
            return self.queue.add({"site_id": site_id}, job_id=f"compare:{site_id}")
        except DuplicateJobError:
            logger.debug(f"[Monitor] Comparison for site {site_id} already pending")
            return None

    def latest(self, site_id: str) -> Optional[Dict[str, Any]]:
        with self._results_lock:
            return self._results.get(site_id)

    # Execution

    def _edge_url(self, site_id: str) -> Optional[str]:
        for build in self._persistence.list_builds(site_id=site_id, statuses=[BuildStatus.SUCCESS.value]):
            if build.get("deploy_url"):
                return build["deploy_url"]
        return None

    def _handle(self, job: Job) -> Optional[Dict[str, Any]]:
        site_id = job.data["site_id"]
        site = self._persistence.get_site(site_id)
        edge_url = self._edge_url(site_id) if site else None
        if site is None or edge_url is None:
            logger.warning(f"[Monitor] Site {site_id} not found or has no deployment")
            return None

        logger.info(f"[Monitor] Running comparison for {site['url']} vs {edge_url}")
        result = self._comparator.compare(site_id, site["url"], edge_url)
        with self._results_lock:
            self._results[site_id] = result
        return result
