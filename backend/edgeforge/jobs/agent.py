"""
Agent queue.

Automated optimization runs call slow external services and must never
interleave with each other, so they get their own single-worker queue with a
long lock, independent of build concurrency.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..config import RuntimeConfig
from .queue import Job, JobQueue

logger = logging.getLogger(__name__)


class AgentRunner(ABC):
    """Runs one automated optimization pass for a site."""

    @abstractmethod
    def run(self, site_id: str, build_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Args:
            site_id: Site to optimize
            build_id: Build the run reacts to, if any

        Returns:
            A JSON-serializable summary stored on the job
        """
        pass


class AgentQueue:
    def __init__(
        self,
        runner: AgentRunner,
        lock_duration_seconds: float = 1800.0,
        stalled_interval_seconds: float = 300.0,
    ):
        self._runner = runner
        self.queue = JobQueue(
            "agent",
            self._handle,
            concurrency=1,
            attempts=1,
            lock_duration_seconds=lock_duration_seconds,
            stalled_interval_seconds=stalled_interval_seconds,
        )

    @classmethod
    def from_config(cls, config: RuntimeConfig, runner: AgentRunner) -> "AgentQueue":
        return cls(
            runner,
            lock_duration_seconds=config.agent_lock_duration_seconds,
            stalled_interval_seconds=config.agent_stalled_interval_seconds,
        )

    def start(self) -> None:
        self.queue.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.queue.stop(timeout)

    def drain(self, timeout: Optional[float] = None) -> bool:
        return self.queue.drain(timeout)

    def enqueue(self, site_id: str, build_id: Optional[str] = None) -> Job:
        job = self.queue.add({"site_id": site_id, "build_id": build_id})
        logger.info(f"[AgentQueue] Run {job.id} enqueued for site {site_id}")
        return job

    def _handle(self, job: Job) -> Dict[str, Any]:
        site_id = job.data["site_id"]
        logger.info(f"[AgentQueue] Starting optimization agent for site {site_id}")
        return self._runner.run(site_id, job.data.get("build_id"))
