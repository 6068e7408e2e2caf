"""
In-memory job queue with bounded concurrency and rate-limit retries.

Lifecycle:
  pending → in-progress → completed | failed

Scheduling rules:
  1. At most `max_concurrent` jobs are in progress at any time
  2. Pending jobs start in creation order whenever a slot frees up
  3. Jobs started together are staggered by `start_stagger` seconds each
  4. Terminal jobs are never picked up again

Each in-progress job runs on its own daemon thread. The dispatcher does the
provider call; the queue only owns state transitions and the retry loop.
"""
from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from config import JOB_START_STAGGER_SECONDS, MAX_CONCURRENT_JOBS, MAX_RETRIES
from retry_policy import backoff_seconds, error_message, is_rate_limit_error
from schemas import Job, JobPayload, JobStats, JobStatus, JobType

logger = logging.getLogger("job_queue")

_ACTIVE_STATUSES = frozenset({JobStatus.pending, JobStatus.in_progress})
SHUTDOWN_ERROR = "Job queue is shut down"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_job_id() -> str:
    return f"job-{uuid.uuid4().hex}"


class QueueClosedError(RuntimeError):
    """Raised when jobs are submitted after shutdown()."""


class JobQueue:
    """
    Thread-safe job queue.

    `dispatcher` must provide run(job) -> str, on_rate_limit(job) and forget(job_id).
    `sleep` and `backoff` are injectable so tests can run without real waits.
    """

    def __init__(
        self,
        dispatcher: Any,
        *,
        max_concurrent: int = MAX_CONCURRENT_JOBS,
        max_attempts: int = MAX_RETRIES,
        start_stagger: float = JOB_START_STAGGER_SECONDS,
        sleep: Optional[Callable[[float], Any]] = None,
        backoff: Callable[[int], float] = backoff_seconds,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.dispatcher = dispatcher
        self.max_concurrent = max_concurrent
        self.max_attempts = max(1, max_attempts)
        self.start_stagger = start_stagger
        self._backoff = backoff
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._cond = threading.Condition()
        # Insertion order doubles as creation order.
        self._jobs: dict[str, Job] = {}
        self._claimed: set[str] = set()

    # ─── Submission ───────────────────────────────────────────────────────────

    def add_jobs(self, requests: Iterable[tuple[JobType, JobPayload]]) -> list[Job]:
        """Queue several jobs at once. Returns snapshots of the new jobs."""
        created: list[Job] = []
        with self._cond:
            if self._stop.is_set():
                raise QueueClosedError(SHUTDOWN_ERROR)
            for job_type, payload in requests:
                now = _now()
                job = Job(
                    id=_new_job_id(),
                    type=JobType(job_type),
                    payload=payload,
                    created_at=now,
                    updated_at=now,
                )
                self._jobs[job.id] = job
                created.append(job.model_copy(deep=True))
                logger.info("job_added job_id=%s type=%s", job.id, job.type.value)
            self._schedule_locked()
        return created

    def add_job(self, job_type: JobType, payload: JobPayload) -> Job:
        return self.add_jobs([(job_type, payload)])[0]

    # ─── Queries ──────────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._cond:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def get_jobs(self, job_ids: Iterable[str]) -> list[Job]:
        """Snapshots of the known jobs among `job_ids`, in creation order."""
        wanted = set(job_ids)
        with self._cond:
            return [j.model_copy(deep=True) for j in self._jobs.values() if j.id in wanted]

    def list_jobs(self) -> list[Job]:
        """All jobs, newest first."""
        with self._cond:
            return [j.model_copy(deep=True) for j in reversed(list(self._jobs.values()))]

    def stats(self) -> JobStats:
        counts = {status: 0 for status in JobStatus}
        with self._cond:
            for job in self._jobs.values():
                counts[job.status] += 1
        return JobStats(
            pending=counts[JobStatus.pending],
            in_progress=counts[JobStatus.in_progress],
            completed=counts[JobStatus.completed],
            failed=counts[JobStatus.failed],
        )

    def clear_finished(self) -> int:
        """Drop completed and failed jobs. Returns how many were removed."""
        with self._cond:
            finished = [job_id for job_id, job in self._jobs.items() if job.is_terminal]
            for job_id in finished:
                del self._jobs[job_id]
        if finished:
            logger.info("jobs_cleared count=%s", len(finished))
        return len(finished)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is pending or in progress. False on timeout."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not any(j.status in _ACTIVE_STATUSES for j in self._jobs.values()),
                timeout=timeout,
            )

    def shutdown(self) -> None:
        """Stop scheduling, cut short any retry wait and fail jobs that never started."""
        self._stop.set()
        with self._cond:
            abandoned = 0
            for job in self._jobs.values():
                if job.status == JobStatus.pending and job.id not in self._claimed:
                    job.status = JobStatus.failed
                    job.error = SHUTDOWN_ERROR
                    job.updated_at = _now()
                    abandoned += 1
            self._cond.notify_all()
        logger.info("job_queue_shutdown abandoned=%s", abandoned)

    # ─── Scheduling ───────────────────────────────────────────────────────────

    def _schedule_locked(self) -> None:
        if self._stop.is_set():
            return
        running = sum(1 for j in self._jobs.values() if j.status == JobStatus.in_progress)
        capacity = self.max_concurrent - running
        if capacity <= 0:
            return
        pending = [
            j for j in self._jobs.values()
            if j.status == JobStatus.pending and j.id not in self._claimed
        ]
        for index, job in enumerate(pending[:capacity]):
            self._claimed.add(job.id)
            job.status = JobStatus.in_progress
            job.updated_at = _now()
            worker = threading.Thread(
                target=self._process,
                args=(job.id, index * self.start_stagger),
                name=f"job-worker-{job.id}",
                daemon=True,
            )
            worker.start()
            logger.info("job_started job_id=%s type=%s delay=%.2f", job.id, job.type.value, index * self.start_stagger)

    def _record_attempt(self, job_id: str, attempts: int, error: str) -> None:
        with self._cond:
            job = self._jobs.get(job_id)
            if job is not None:
                job.attempts = attempts
                job.error = error
                job.updated_at = _now()

    def _process(self, job_id: str, delay: float) -> None:
        if delay > 0:
            self._sleep(delay)
        if self._stop.is_set():
            self._finish(job_id, None, SHUTDOWN_ERROR)
            return

        with self._cond:
            job = self._jobs.get(job_id)
            snapshot = job.model_copy(deep=True) if job else None
        if snapshot is None:
            return

        attempt = 0
        result: Optional[str] = None
        last_error: Optional[str] = None

        while attempt < self.max_attempts:
            try:
                result = self.dispatcher.run(snapshot)
                break
            except Exception as exc:
                last_error = error_message(exc) or exc.__class__.__name__
                if not is_rate_limit_error(exc):
                    logger.warning(
                        "job_fatal_error job_id=%s type=%s error=%s",
                        job_id, snapshot.type.value, last_error,
                    )
                    break

                attempt += 1
                self._record_attempt(job_id, attempt, last_error)
                if attempt >= self.max_attempts:
                    logger.warning("job_retries_exhausted job_id=%s attempts=%s error=%s", job_id, attempt, last_error)
                    break

                self.dispatcher.on_rate_limit(snapshot)
                wait = self._backoff(attempt)
                logger.info(
                    "job_rate_limited job_id=%s attempt=%s/%s wait=%.1fs error=%s",
                    job_id, attempt, self.max_attempts, wait, last_error,
                )
                self._sleep(wait)
                if self._stop.is_set():
                    break

        self._finish(job_id, result, last_error)

    def _finish(self, job_id: str, result: Optional[str], error: Optional[str]) -> None:
        with self._cond:
            self._claimed.discard(job_id)
            job = self._jobs.get(job_id)
            if job is not None:
                if result:
                    job.status = JobStatus.completed
                    job.result = result
                    job.error = None
                else:
                    job.status = JobStatus.failed
                    job.error = error or "Unknown error"
                job.updated_at = _now()
                logger.info("job_finished job_id=%s status=%s", job_id, job.status.value)
            self._schedule_locked()
            self._cond.notify_all()
        self.dispatcher.forget(job_id)
