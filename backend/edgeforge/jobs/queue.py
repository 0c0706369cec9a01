"""
In-process job queue with a bounded worker pool.

Jobs move through:

    waiting → active → completed
       ↑        ↓
    delayed ← (handler error, attempts left)
                ↓
              failed (attempts exhausted or stalled out)

Rules:
- FIFO: waiting jobs start in the order they were added (stalled jobs go
  back to the front)
- At most `concurrency` handlers run at once, one worker thread each
- A failed attempt is retried after backoff * 2**(attempt-1) seconds, up to
  `attempts` attempts in total
- A handler may raise JobDelayedError to be re-run later without using up
  an attempt
- Each active job holds a lock that expires after lock_duration_seconds
  unless renewed with heartbeat(). The stall check requeues expired jobs;
  a job that stalls on its last attempt is failed
- A stalled handler's thread keeps running; whatever it returns afterwards
  is discarded
"""

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from .errors import DuplicateJobError, JobDelayedError, JobStalledError, QueueStoppedError

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


FINISHED_JOB_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


@dataclass
class Job:
    id: str
    data: Dict[str, Any]
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    run_at: float = 0.0  # Monotonic time a delayed job becomes ready
    lock_expires_at: Optional[float] = None
    lock_token: int = 0
    error: Optional[str] = None
    result: Any = None


Handler = Callable[[Job], Any]
FailureCallback = Callable[[Job, BaseException], None]


class JobQueue:
    """
    A named FIFO job queue served by a pool of worker threads.

    The queue is not started on construction; call start() to spawn the
    workers and the stall checker, stop() to shut them down.
    """

    def __init__(
        self,
        name: str,
        handler: Handler,
        concurrency: int = 1,
        attempts: int = 1,
        backoff_seconds: float = 0.0,
        lock_duration_seconds: float = 600.0,
        stalled_interval_seconds: float = 30.0,
        on_failed: Optional[FailureCallback] = None,
        keep_finished: int = 100,
    ):
        """
        Args:
            name: Queue name used in logs and thread names
            handler: Called with each Job; its return value is stored on the job
            concurrency: Number of worker threads
            attempts: Total attempts per job (1 = no retry)
            backoff_seconds: Base delay of the exponential retry backoff
            lock_duration_seconds: Time an active job may go without a heartbeat
            stalled_interval_seconds: How often the stall check runs
            on_failed: Called once when a job ends up failed
            keep_finished: Completed/failed jobs kept for inspection
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if attempts < 1:
            raise ValueError("attempts must be >= 1")

        self.name = name
        self.handler = handler
        self.concurrency = concurrency
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.lock_duration_seconds = lock_duration_seconds
        self.stalled_interval_seconds = stalled_interval_seconds
        self._on_failed = on_failed
        self._keep_finished = keep_finished

        self._cond = threading.Condition(threading.Lock())
        self._jobs: Dict[str, Job] = {}
        self._waiting: Deque[str] = deque()
        self._delayed: Set[str] = set()
        self._active: Set[str] = set()
        self._finished: Deque[str] = deque()

        self._stopping = threading.Event()
        self._threads: List[threading.Thread] = []
        self._started = False

    # ------------------------------------------------------------------
    # Adding and inspecting jobs
    # ------------------------------------------------------------------

    def add(self, data: Dict[str, Any], job_id: Optional[str] = None, delay_seconds: float = 0.0) -> Job:
        """
        Add a job.

        Raises:
            DuplicateJobError: If a job with this id is still pending or active
            QueueStoppedError: If the queue has been stopped
        """
        job_id = job_id or str(uuid.uuid4())
        with self._cond:
            if self._stopping.is_set():
                raise QueueStoppedError(self.name)
            existing = self._jobs.get(job_id)
            if existing is not None and existing.state not in FINISHED_JOB_STATES:
                raise DuplicateJobError(self.name, job_id)

            job = Job(id=job_id, data=dict(data))
            self._jobs[job_id] = job
            if delay_seconds > 0:
                self._delay(job, delay_seconds)
            else:
                self._waiting.append(job_id)
            self._cond.notify_all()

        logger.info(f"[JobQueue] {self.name}: job {job_id} added")
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._cond:
            return self._jobs.get(job_id)

    def jobs(self, state: Optional[JobState] = None) -> List[Job]:
        with self._cond:
            return [j for j in self._jobs.values() if state is None or j.state == state]

    def counts(self) -> Dict[str, int]:
        with self._cond:
            counts = {state.value: 0 for state in JobState}
            for job in self._jobs.values():
                counts[job.state.value] += 1
            return counts

    def remove(self, predicate: Callable[[Job], bool]) -> List[Job]:
        """
        Remove waiting and delayed jobs matching predicate. Active jobs are
        left alone; the caller cancels those through its own channel.

        Returns:
            The removed jobs
        """
        with self._cond:
            removed = [
                self._jobs[job_id]
                for job_id in list(self._waiting) + sorted(self._delayed)
                if predicate(self._jobs[job_id])
            ]
            for job in removed:
                if job.id in self._delayed:
                    self._delayed.discard(job.id)
                else:
                    self._waiting.remove(job.id)
                del self._jobs[job.id]
            if removed:
                self._cond.notify_all()

        for job in removed:
            logger.info(f"[JobQueue] {self.name}: job {job.id} removed")
        return removed

    def backoff_delay(self, attempts_made: int) -> float:
        return self.backoff_seconds * 2 ** (attempts_made - 1)

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def heartbeat(self, job_id: str) -> bool:
        """
        Renew an active job's lock.

        Returns:
            True if the job is active and its lock was extended
        """
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.ACTIVE:
                return False
            job.lock_expires_at = time.monotonic() + self.lock_duration_seconds
            return True

    def check_stalled(self) -> List[str]:
        """
        Requeue active jobs whose lock expired; fail those out of attempts.

        Returns:
            Ids of the jobs found stalled
        """
        now = time.monotonic()
        stalled: List[str] = []
        failed: List[Job] = []
        with self._cond:
            for job_id in sorted(self._active):
                job = self._jobs[job_id]
                if job.lock_expires_at is None or job.lock_expires_at > now:
                    continue
                self._active.discard(job_id)
                job.lock_expires_at = None
                stalled.append(job_id)
                if job.attempts_made < self.attempts:
                    job.state = JobState.WAITING
                    self._waiting.appendleft(job_id)
                else:
                    job.error = str(JobStalledError(self.name, job_id))
                    self._finish(job, JobState.FAILED)
                    failed.append(job)
            if stalled:
                self._cond.notify_all()

        for job_id in stalled:
            logger.warning(f"[JobQueue] {self.name}: job {job_id} stalled (lock expired)")
        for job in failed:
            logger.error(f"[JobQueue] {self.name}: job {job.id} failed after stalling "
                         f"{job.attempts_made} time(s)")
            self._notify_failed(job, JobStalledError(self.name, job.id))
        return stalled

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._started and not self._stopping.is_set()

    def start(self) -> None:
        """Spawn the worker threads and the stall checker."""
        with self._cond:
            if self._started:
                return
            self._started = True

        for i in range(self.concurrency):
            thread = threading.Thread(target=self._work, name=f"{self.name}-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        checker = threading.Thread(target=self._stall_loop, name=f"{self.name}-stalls", daemon=True)
        checker.start()
        self._threads.append(checker)
        logger.info(f"[JobQueue] {self.name}: started {self.concurrency} worker(s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop taking jobs and wait for running handlers to return.
        Waiting and delayed jobs stay queued.
        """
        with self._cond:
            self._stopping.set()
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info(f"[JobQueue] {self.name}: stopped")

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no job is waiting, delayed or active.

        Returns:
            True if the queue drained before the timeout
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._waiting and not self._delayed and not self._active,
                timeout,
            )

    # ------------------------------------------------------------------
    # Workers (callers of the underscore helpers hold self._cond)
    # ------------------------------------------------------------------

    def _delay(self, job: Job, seconds: float) -> None:
        job.state = JobState.DELAYED
        job.run_at = time.monotonic() + seconds
        self._delayed.add(job.id)

    def _finish(self, job: Job, state: JobState) -> None:
        job.state = state
        self._finished.append(job.id)
        while len(self._finished) > self._keep_finished:
            old_id = self._finished.popleft()
            old = self._jobs.get(old_id)
            if old is not None and old.state in FINISHED_JOB_STATES:
                del self._jobs[old_id]

    def _owns(self, job: Job, token: int) -> bool:
        return self._jobs.get(job.id) is job and job.state == JobState.ACTIVE and job.lock_token == token

    def _promote_delayed(self) -> Optional[float]:
        """Move due delayed jobs to waiting; return seconds until the next one is due."""
        now = time.monotonic()
        next_due: Optional[float] = None
        for job_id in sorted(self._delayed, key=lambda j: self._jobs[j].run_at):
            job = self._jobs[job_id]
            if job.run_at <= now:
                self._delayed.discard(job_id)
                job.state = JobState.WAITING
                self._waiting.append(job_id)
            else:
                next_due = job.run_at - now
                break
        return next_due

    def _take(self) -> Optional[Tuple[Job, int]]:
        with self._cond:
            while not self._stopping.is_set():
                wait = self._promote_delayed()
                if self._waiting:
                    job = self._jobs[self._waiting.popleft()]
                    job.state = JobState.ACTIVE
                    job.attempts_made += 1
                    job.lock_token += 1
                    job.lock_expires_at = time.monotonic() + self.lock_duration_seconds
                    self._active.add(job.id)
                    return job, job.lock_token
                self._cond.wait(wait)
            return None

    def _work(self) -> None:
        while True:
            taken = self._take()
            if taken is None:
                return
            self._process(*taken)

    def _process(self, job: Job, token: int) -> None:
        logger.debug(f"[JobQueue] {self.name}: job {job.id} attempt {job.attempts_made} started")
        try:
            result = self.handler(job)
        except JobDelayedError as e:
            with self._cond:
                if not self._owns(job, token):
                    return
                self._active.discard(job.id)
                job.attempts_made -= 1
                job.lock_expires_at = None
                self._delay(job, e.delay_seconds)
                self._cond.notify_all()
            logger.info(f"[JobQueue] {self.name}: job {job.id} delayed {e.delay_seconds}s {e.reason}".rstrip())
            return
        except Exception as e:
            self._handle_failure(job, token, e)
            return

        with self._cond:
            if not self._owns(job, token):
                logger.warning(f"[JobQueue] {self.name}: job {job.id} finished after losing its lock; "
                               "result discarded")
                return
            self._active.discard(job.id)
            job.lock_expires_at = None
            job.result = result
            job.error = None
            self._finish(job, JobState.COMPLETED)
            self._cond.notify_all()
        logger.info(f"[JobQueue] {self.name}: job {job.id} completed")

    def _handle_failure(self, job: Job, token: int, error: Exception) -> None:
        with self._cond:
            if not self._owns(job, token):
                logger.warning(f"[JobQueue] {self.name}: job {job.id} failed after losing its lock: {error}")
                return
            self._active.discard(job.id)
            job.lock_expires_at = None
            job.error = str(error)
            retry = job.attempts_made < self.attempts
            if retry:
                delay = self.backoff_delay(job.attempts_made)
                if delay > 0:
                    self._delay(job, delay)
                else:
                    job.state = JobState.WAITING
                    self._waiting.append(job.id)
            else:
                self._finish(job, JobState.FAILED)
            self._cond.notify_all()

        if retry:
            logger.warning(f"[JobQueue] {self.name}: job {job.id} attempt {job.attempts_made} failed, "
                           f"retrying in {delay}s: {error}")
        else:
            logger.error(f"[JobQueue] {self.name}: job {job.id} failed after "
                         f"{job.attempts_made} attempt(s): {error}")
            self._notify_failed(job, error)

    def _notify_failed(self, job: Job, error: BaseException) -> None:
        if self._on_failed is None:
            return
        try:
            self._on_failed(job, error)
        except Exception as e:
            logger.exception(f"[JobQueue] {self.name}: failure callback for job {job.id} raised: {e}")

    def _stall_loop(self) -> None:
        while not self._stopping.wait(self.stalled_interval_seconds):
            self.check_stalled()
