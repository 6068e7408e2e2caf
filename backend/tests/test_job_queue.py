"""
Unit tests for backend/job_queue.py
Uses a scripted dispatcher: no providers, no network, no real waits.
"""
from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from typing import Callable

import pytest

BACKEND = str(Path(__file__).parent.parent)
if BACKEND not in sys.path:
    sys.path.insert(0, BACKEND)

from job_queue import JobQueue, QueueClosedError
from providers.base import ProviderError
from retry_policy import MissingCredentialError
from schemas import Job, JobPayload, JobStatus, JobType

RESULT = "data:image/png;base64,AAAA"


class ScriptedDispatcher:
    """Dispatcher stand-in driven by a handler(job, call_no) callable."""

    def __init__(self, handler: Callable[[Job, int], str] | None = None):
        self.handler = handler or (lambda job, n: RESULT)
        self.calls: list[str] = []
        self.rotations: list[str] = []
        self.forgotten: list[str] = []
        self._lock = threading.Lock()

    def run(self, job: Job) -> str:
        with self._lock:
            self.calls.append(job.id)
            call_no = self.calls.count(job.id)
        return self.handler(job, call_no)

    def on_rate_limit(self, job: Job) -> None:
        with self._lock:
            self.rotations.append(job.id)

    def forget(self, job_id: str) -> None:
        with self._lock:
            self.forgotten.append(job_id)


def _prompt(text: str = "a red fox") -> JobPayload:
    return JobPayload(prompt=text)


def _queue(dispatcher, no_sleep, **kwargs) -> JobQueue:
    kwargs.setdefault("start_stagger", 0)
    kwargs.setdefault("backoff", lambda attempt: float(attempt))
    return JobQueue(dispatcher, sleep=no_sleep, **kwargs)


class TestSuccess:
    def test_job_completes_with_result(self, no_sleep):
        dispatcher = ScriptedDispatcher()
        q = _queue(dispatcher, no_sleep)

        job = q.add_job(JobType.text_to_image, _prompt())
        assert job.status in (JobStatus.pending, JobStatus.in_progress)
        assert job.id.startswith("job-")
        assert q.wait_idle(5)

        done = q.get_job(job.id)
        assert done.status == JobStatus.completed
        assert done.result == RESULT
        assert done.error is None

    def test_empty_result_fails_with_unknown_error(self, no_sleep):
        q = _queue(ScriptedDispatcher(lambda job, n: ""), no_sleep)
        job = q.add_job(JobType.text_to_image, _prompt())
        assert q.wait_idle(5)

        failed = q.get_job(job.id)
        assert failed.status == JobStatus.failed
        assert failed.error == "Unknown error"


class TestFailures:
    def test_fatal_error_fails_without_retry(self, no_sleep):
        def _handler(job, n):
            raise ProviderError("No image was generated. The response may have been blocked.")

        dispatcher = ScriptedDispatcher(_handler)
        q = _queue(dispatcher, no_sleep)
        job = q.add_job(JobType.text_to_image, _prompt())
        assert q.wait_idle(5)

        failed = q.get_job(job.id)
        assert failed.status == JobStatus.failed
        assert failed.error.startswith("No image was generated")
        assert len(dispatcher.calls) == 1
        assert dispatcher.rotations == []
        assert no_sleep.calls == []

    def test_missing_credentials_fail_immediately(self, no_sleep):
        def _handler(job, n):
            raise MissingCredentialError("PhotoRoom API key is missing.")

        dispatcher = ScriptedDispatcher(_handler)
        q = _queue(dispatcher, no_sleep)
        job = q.add_job(JobType.remove_background, JobPayload(image_data="data:image/png;base64,AAAA"))
        assert q.wait_idle(5)

        failed = q.get_job(job.id)
        assert failed.status == JobStatus.failed
        assert failed.error == "PhotoRoom API key is missing."
        assert len(dispatcher.calls) == 1

    def test_rate_limit_then_success(self, no_sleep):
        def _handler(job, n):
            if n <= 2:
                raise ProviderError("Gemini error 429: Resource has been exhausted", status_code=429)
            return RESULT

        dispatcher = ScriptedDispatcher(_handler)
        q = _queue(dispatcher, no_sleep)
        job = q.add_job(JobType.text_to_image, _prompt())
        assert q.wait_idle(5)

        done = q.get_job(job.id)
        assert done.status == JobStatus.completed
        assert done.result == RESULT
        assert done.error is None
        assert done.attempts == 2
        assert len(dispatcher.calls) == 3
        assert dispatcher.rotations == [job.id, job.id]
        assert no_sleep.calls == [1.0, 2.0]

    def test_exhausted_retries_keep_last_error(self, no_sleep):
        def _handler(job, n):
            raise ProviderError(f"Gemini error 503: overloaded (call {n})", status_code=503)

        dispatcher = ScriptedDispatcher(_handler)
        q = _queue(dispatcher, no_sleep, max_attempts=3)
        job = q.add_job(JobType.text_to_image, _prompt())
        assert q.wait_idle(5)

        failed = q.get_job(job.id)
        assert failed.status == JobStatus.failed
        assert failed.error == "Gemini error 503: overloaded (call 3)"
        assert failed.attempts == 3
        assert len(dispatcher.calls) == 3
        # No wait after the final attempt.
        assert no_sleep.calls == [1.0, 2.0]
        assert len(dispatcher.rotations) == 2

    def test_default_attempt_cap_is_ten(self, no_sleep):
        def _handler(job, n):
            raise ProviderError("429 Too Many Requests")

        dispatcher = ScriptedDispatcher(_handler)
        q = JobQueue(dispatcher, sleep=no_sleep, start_stagger=0)
        job = q.add_job(JobType.text_to_image, _prompt())
        assert q.wait_idle(5)

        assert q.get_job(job.id).status == JobStatus.failed
        assert len(dispatcher.calls) == 10

    def test_terminal_job_is_not_retried(self, no_sleep):
        def _handler(job, n):
            raise ProviderError("blocked")

        dispatcher = ScriptedDispatcher(_handler)
        q = _queue(dispatcher, no_sleep)
        job = q.add_job(JobType.text_to_image, _prompt())
        assert q.wait_idle(5)
        # A later submission must not pick the failed job up again.
        q.add_job(JobType.text_to_image, _prompt("second"))
        assert q.wait_idle(5)
        assert dispatcher.calls.count(job.id) == 1


class TestConcurrency:
    def test_single_slot_runs_in_creation_order(self, no_sleep):
        release = threading.Event()

        def _handler(job, n):
            release.wait(5)
            return RESULT

        dispatcher = ScriptedDispatcher(_handler)
        q = _queue(dispatcher, no_sleep, max_concurrent=1)
        jobs = q.add_jobs([(JobType.text_to_image, _prompt(f"p{i}")) for i in range(3)])

        stats = q.stats()
        assert stats.in_progress == 1
        assert stats.pending == 2

        release.set()
        assert q.wait_idle(5)
        assert dispatcher.calls == [j.id for j in jobs]
        assert q.stats().completed == 3

    def test_never_exceeds_limit(self, no_sleep):
        running = 0
        peak = 0
        lock = threading.Lock()

        def _handler(job, n):
            nonlocal running, peak
            with lock:
                running += 1
                peak = max(peak, running)
            time.sleep(0.02)
            with lock:
                running -= 1
            return RESULT

        q = _queue(ScriptedDispatcher(_handler), no_sleep, max_concurrent=2)
        q.add_jobs([(JobType.text_to_image, _prompt(f"p{i}")) for i in range(6)])
        assert q.wait_idle(5)
        assert peak <= 2
        assert q.stats().completed == 6

    def test_batch_start_is_staggered(self, no_sleep):
        q = JobQueue(
            ScriptedDispatcher(),
            max_concurrent=3,
            start_stagger=0.3,
            sleep=no_sleep,
        )
        q.add_jobs([(JobType.text_to_image, _prompt(f"p{i}")) for i in range(3)])
        assert q.wait_idle(5)
        assert sorted(no_sleep.calls) == pytest.approx([0.3, 0.6])

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            JobQueue(ScriptedDispatcher(), max_concurrent=0)


class TestBookkeeping:
    def test_list_newest_first(self, no_sleep):
        q = _queue(ScriptedDispatcher(), no_sleep)
        first = q.add_job(JobType.text_to_image, _prompt("one"))
        second = q.add_job(JobType.text_to_image, _prompt("two"))
        assert q.wait_idle(5)
        assert [j.id for j in q.list_jobs()] == [second.id, first.id]

    def test_clear_finished_keeps_active_jobs(self, no_sleep):
        release = threading.Event()

        def _handler(job, n):
            if job.payload.prompt == "slow":
                release.wait(5)
                return RESULT
            raise ProviderError("blocked")

        q = _queue(ScriptedDispatcher(_handler), no_sleep, max_concurrent=2)
        failed = q.add_job(JobType.text_to_image, _prompt("fast"))
        deadline = time.monotonic() + 5
        while q.get_job(failed.id).status != JobStatus.failed and time.monotonic() < deadline:
            time.sleep(0.01)
        slow = q.add_job(JobType.text_to_image, _prompt("slow"))

        assert q.clear_finished() == 1
        assert q.get_job(failed.id) is None
        assert q.get_job(slow.id) is not None

        release.set()
        assert q.wait_idle(5)
        assert q.clear_finished() == 1
        assert q.list_jobs() == []

    def test_get_jobs_filters_unknown_ids(self, no_sleep):
        q = _queue(ScriptedDispatcher(), no_sleep)
        job = q.add_job(JobType.text_to_image, _prompt())
        assert q.wait_idle(5)
        assert [j.id for j in q.get_jobs([job.id, "job-missing"])] == [job.id]

    def test_snapshots_are_detached(self, no_sleep):
        q = _queue(ScriptedDispatcher(), no_sleep)
        job = q.add_job(JobType.text_to_image, _prompt())
        assert q.wait_idle(5)
        snapshot = q.get_job(job.id)
        snapshot.status = JobStatus.pending
        assert q.get_job(job.id).status == JobStatus.completed


class TestShutdown:
    def test_shutdown_cuts_retry_wait(self):
        def _handler(job, n):
            raise ProviderError("429 quota")

        q = JobQueue(
            ScriptedDispatcher(_handler),
            start_stagger=0,
            backoff=lambda attempt: 30.0,
        )
        job = q.add_job(JobType.text_to_image, _prompt())
        deadline = time.monotonic() + 5
        while q.get_job(job.id).attempts < 1 and time.monotonic() < deadline:
            time.sleep(0.01)

        q.shutdown()
        assert q.wait_idle(5)
        failed = q.get_job(job.id)
        assert failed.status == JobStatus.failed
        assert failed.error == "429 quota"

    def test_shutdown_fails_jobs_still_waiting_for_a_slot(self):
        def _handler(job, n):
            raise ProviderError("429 quota")

        dispatcher = ScriptedDispatcher(_handler)
        q = JobQueue(
            dispatcher,
            max_concurrent=1,
            start_stagger=0,
            backoff=lambda attempt: 30.0,
        )
        first = q.add_job(JobType.text_to_image, _prompt("a"))
        second = q.add_job(JobType.text_to_image, _prompt("b"))
        deadline = time.monotonic() + 5
        while q.get_job(first.id).attempts < 1 and time.monotonic() < deadline:
            time.sleep(0.01)

        q.shutdown()
        assert q.wait_idle(5)
        assert q.get_job(first.id).status == JobStatus.failed
        waiting = q.get_job(second.id)
        assert waiting.status == JobStatus.failed
        assert waiting.error == "Job queue is shut down"
        assert dispatcher.calls == [first.id]

    def test_shutdown_during_start_delay_skips_provider_call(self):
        dispatcher = ScriptedDispatcher()
        q = JobQueue(dispatcher, max_concurrent=2, start_stagger=30)
        first, second = q.add_jobs([
            (JobType.text_to_image, _prompt("a")),
            (JobType.text_to_image, _prompt("b")),
        ])
        deadline = time.monotonic() + 5
        while q.get_job(first.id).status != JobStatus.completed and time.monotonic() < deadline:
            time.sleep(0.01)

        q.shutdown()
        assert q.wait_idle(5)
        delayed = q.get_job(second.id)
        assert delayed.status == JobStatus.failed
        assert delayed.error == "Job queue is shut down"
        assert dispatcher.calls == [first.id]

    def test_add_after_shutdown_raises(self, no_sleep):
        q = _queue(ScriptedDispatcher(), no_sleep)
        q.shutdown()
        with pytest.raises(QueueClosedError):
            q.add_job(JobType.text_to_image, _prompt())
