"""
Tests for the job worker, supervisor and kick trigger.
"""

import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from ranksheet.data.config import QueueConfig
from ranksheet.data.models import BatchResult, RefreshResult
from ranksheet.jobs.queue import JobState, JobStatus, RefreshAllDetail, RefreshOneDetail
from ranksheet.jobs.worker import JobWorker, KickTrigger, WorkerSupervisor

QUEUED_AT = datetime(2025, 3, 10, 5, 0, tzinfo=timezone.utc)


def make_job(job_name="refresh_one", slug="wireless-mouse", detail=None):
    if detail is None:
        detail = RefreshOneDetail(keyword=slug) if job_name == "refresh_one" else RefreshAllDetail()
    return JobState(
        id="job-1",
        job_name=job_name,
        status=JobStatus.RUNNING,
        queued_at=QUEUED_AT,
        keyword_slug=slug if job_name == "refresh_one" else None,
        detail=detail,
    )


class TestJobWorkerRunOnce:
    """Tests for single job execution."""

    def setup_method(self):
        """Set up test fixtures."""
        self.queue = MagicMock()
        self.orchestrator = MagicMock()
        self.keywords = MagicMock()
        self.worker = JobWorker(self.queue, self.orchestrator, self.keywords, QueueConfig())

    def finished(self):
        job_id, status, duration_ms, detail = self.queue.mark_finished.call_args[0]
        return status, detail

    def test_empty_queue(self):
        """Nothing claimed -> None and nothing marked."""
        self.queue.claim_next.return_value = None

        assert self.worker.run_once() is None
        self.queue.mark_finished.assert_not_called()

    def test_refresh_one_success(self):
        """ok result -> SUCCESS with the result stored in detail."""
        self.queue.claim_next.return_value = make_job()
        self.orchestrator.refresh_keyword_by_slug.return_value = RefreshResult(
            ok=True, slug="wireless-mouse", valid_count=12,
        )

        job = self.worker.run_once()

        self.orchestrator.refresh_keyword_by_slug.assert_called_once_with("wireless-mouse")
        status, detail = self.finished()
        assert status == JobStatus.SUCCESS
        assert detail.result["ok"] is True
        assert job.status == JobStatus.SUCCESS

    def test_refresh_one_failure_result(self):
        """Failure result -> FAILED, no exception."""
        self.queue.claim_next.return_value = make_job()
        self.orchestrator.refresh_keyword_by_slug.return_value = RefreshResult.failure(
            "wireless-mouse", "keyword_not_found",
        )

        self.worker.run_once()

        status, detail = self.finished()
        assert status == JobStatus.FAILED
        assert detail.result["error"] == "keyword_not_found"

    def test_exception_marks_failed_with_error(self):
        """A raising job ends FAILED with the message in detail.error."""
        self.queue.claim_next.return_value = make_job()
        self.orchestrator.refresh_keyword_by_slug.side_effect = RuntimeError("db gone")

        self.worker.run_once()

        status, detail = self.finished()
        assert status == JobStatus.FAILED
        assert detail.error == "db gone"

    @patch("ranksheet.jobs.worker.refresh_all_keywords")
    def test_refresh_all_success_when_no_failures(self, mock_refresh_all):
        """refresh_all is SUCCESS only if no keyword failed."""
        self.queue.claim_next.return_value = make_job("refresh_all", detail=RefreshAllDetail(concurrency=4, limit=50))
        mock_refresh_all.return_value = BatchResult(total=2, success=2, failed=0, results=[
            RefreshResult(ok=True, slug="a"), RefreshResult(ok=True, slug="b"),
        ])

        self.worker.run_once()

        _, kwargs = mock_refresh_all.call_args
        assert kwargs == {"concurrency": 4, "limit": 50}
        status, detail = self.finished()
        assert status == JobStatus.SUCCESS
        assert detail.summary["total"] == 2

    @patch("ranksheet.jobs.worker.refresh_all_keywords")
    def test_refresh_all_failed_with_sample_errors(self, mock_refresh_all):
        """Any failed keyword -> FAILED with at most 20 sample errors."""
        self.queue.claim_next.return_value = make_job("refresh_all")
        failures = [RefreshResult.failure(f"kw-{i}", "refresh_failed", "boom") for i in range(25)]
        mock_refresh_all.return_value = BatchResult(total=25, success=0, failed=25, results=failures)

        self.worker.run_once()

        status, detail = self.finished()
        assert status == JobStatus.FAILED
        assert detail.summary["failed"] == 25
        assert len(detail.summary["sample_errors"]) == 20
        assert detail.summary["sample_errors"][0] == {"slug": "kw-0", "error": "refresh_failed", "detail": "boom"}

    def test_unknown_job_type(self):
        """Unknown job names fail with unknown_job_type."""
        self.queue.claim_next.return_value = make_job("reindex", detail={"x": 1})

        self.worker.run_once()

        status, detail = self.finished()
        assert status == JobStatus.FAILED
        assert detail == {"x": 1, "error": "unknown_job_type"}

    def test_mark_finished_retried_once(self):
        """A failed result write is retried before giving up."""
        self.queue.claim_next.return_value = make_job()
        self.orchestrator.refresh_keyword_by_slug.return_value = RefreshResult(ok=True, slug="wireless-mouse")
        self.queue.mark_finished.side_effect = [RuntimeError("connection reset"), None]

        job = self.worker.run_once()

        assert self.queue.mark_finished.call_count == 2
        assert self.finished()[0] == JobStatus.SUCCESS
        assert job.status == JobStatus.SUCCESS

    def test_mark_finished_second_failure_raises(self):
        """Two failed writes propagate to the worker loop."""
        self.queue.claim_next.return_value = make_job()
        self.orchestrator.refresh_keyword_by_slug.return_value = RefreshResult(ok=True, slug="wireless-mouse")
        self.queue.mark_finished.side_effect = RuntimeError("connection reset")

        with pytest.raises(RuntimeError):
            self.worker.run_once()
        assert self.queue.mark_finished.call_count == 2


class TestJobWorkerLoop:
    """Tests for run_forever."""

    def test_stale_sweep_failure_is_logged_not_raised(self):
        """The loop starts even if the stale sweep fails."""
        queue = MagicMock()
        queue.fail_stale_jobs.side_effect = RuntimeError("db down")
        stop = threading.Event()

        def claim():
            stop.set()
            return None

        queue.claim_next.side_effect = claim
        worker = JobWorker(queue, MagicMock(), MagicMock(), QueueConfig(idle_sleep=0, busy_sleep=0))

        worker.run_forever(stop)

        queue.fail_stale_jobs.assert_called_once_with(12)
        queue.claim_next.assert_called_once()

    def test_loop_survives_claim_errors(self):
        """A failing claim is logged and retried on the next iteration."""
        queue = MagicMock()
        queue.fail_stale_jobs.return_value = 0
        stop = threading.Event()
        calls = []

        def claim():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("connection reset")
            stop.set()
            return None

        queue.claim_next.side_effect = claim
        worker = JobWorker(queue, MagicMock(), MagicMock(), QueueConfig(idle_sleep=0, busy_sleep=0))

        worker.run_forever(stop)

        assert len(calls) == 2


class TestWorkerSupervisor:
    """Tests for the start-once supervisor."""

    def test_start_once(self):
        """Second start while running is a no-op."""
        started = threading.Event()
        worker = MagicMock()

        def run_forever(stop_event):
            started.set()
            stop_event.wait(5)

        worker.run_forever.side_effect = run_forever
        supervisor = WorkerSupervisor(worker)

        assert supervisor.start() is True
        started.wait(1)
        assert supervisor.start() is False
        assert supervisor.is_running

        supervisor.stop(timeout=2)
        assert not supervisor.is_running
        assert worker.run_forever.call_count == 1

    def test_restart_after_stop(self):
        """A stopped supervisor can be started again."""
        worker = MagicMock()
        worker.run_forever.side_effect = lambda stop_event: stop_event.wait(5)
        supervisor = WorkerSupervisor(worker)

        supervisor.start()
        supervisor.stop(timeout=2)

        assert supervisor.start() is True
        supervisor.stop(timeout=2)


class TestKickTrigger:
    """Tests for the debounced kick."""

    def test_debounce_window(self):
        """Kicks within 10 seconds of the last accepted one are ignored."""
        supervisor = MagicMock()
        now = [100.0]
        kick = KickTrigger(supervisor, min_interval=10, clock=lambda: now[0])

        assert kick() is True
        now[0] = 105.0
        assert kick() is False
        now[0] = 110.0
        assert kick() is True
        assert supervisor.start.call_count == 2
