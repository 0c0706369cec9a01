"""
Job queues and worker pools.

JobQueue is the generic in-process queue. BuildQueue runs builds on it,
AgentQueue serializes automated optimization runs and MonitorScheduler
re-runs performance comparisons on a timer.
"""

from .errors import (
    QueueError,
    DuplicateJobError,
    JobDelayedError,
    JobStalledError,
    QueueStoppedError,
)
from .queue import Job, JobQueue, JobState, FINISHED_JOB_STATES
from .builds import BuildQueue, SITE_DELETED
from .agent import AgentQueue, AgentRunner
from .monitor import MonitorScheduler, PerformanceComparator

__all__ = [
    # Errors
    "QueueError",
    "DuplicateJobError",
    "JobDelayedError",
    "JobStalledError",
    "QueueStoppedError",
    # Queue
    "Job",
    "JobQueue",
    "JobState",
    "FINISHED_JOB_STATES",
    # Queues
    "BuildQueue",
    "SITE_DELETED",
    "AgentQueue",
    "AgentRunner",
    "MonitorScheduler",
    "PerformanceComparator",
]
