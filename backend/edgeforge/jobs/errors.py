"""
Job queue error types.

All errors inherit from QueueError for easy catching.
"""


class QueueError(Exception):
    """Base exception for all queue failures."""
    pass


class DuplicateJobError(QueueError):
    """Raised when a job id is added while a job with that id is still pending."""

    def __init__(self, queue_name: str, job_id: str):
        self.queue_name = queue_name
        self.job_id = job_id
        super().__init__(f"Job already pending in {queue_name}: {job_id}")


class JobDelayedError(QueueError):
    """
    Raised by a handler to put its job back on the delayed set without
    consuming an attempt (e.g. the site's workspace is held by another build).
    """

    def __init__(self, delay_seconds: float, reason: str = ""):
        self.delay_seconds = delay_seconds
        self.reason = reason
        super().__init__(f"Job delayed {delay_seconds}s: {reason}" if reason else f"Job delayed {delay_seconds}s")


class JobStalledError(QueueError):
    """Recorded on a job whose lock expired more often than its attempts allow."""

    def __init__(self, queue_name: str, job_id: str):
        self.queue_name = queue_name
        self.job_id = job_id
        super().__init__(f"Job {job_id} in {queue_name} stalled more than the allowed attempts")


class QueueStoppedError(QueueError):
    """Raised when adding to a queue that has been stopped."""

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"Queue {queue_name} is stopped")
