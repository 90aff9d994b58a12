"""Test the bounded-concurrency dispatcher"""

import threading
import time

import pytest

from trackmaster.core.dispatcher import DispatchOptions, Dispatcher, RunContext
from trackmaster.core.exceptions import (
    DispatchError,
    NoJobsAvailableError,
    RunCancelledError,
    TooManyErrorsError,
)
from trackmaster.core.models import Job
from trackmaster.core.progress import JobProgressBar


def make_jobs(count):
    return [Job(id=f"{i:04d}", source=f"https://cdn.example.com/{i}.mp3") for i in range(1, count + 1)]


class PagedSource:
    """next_page over a fixed job list, recording every cursor"""

    def __init__(self, jobs):
        self.jobs = jobs
        self.cursors = []

    def __call__(self, after_id, page_size):
        self.cursors.append(after_id)
        return [job for job in self.jobs if job.id > after_id][:page_size]


class Recorder:
    """Worker that records finished jobs and the peak concurrency"""

    def __init__(self, delay=0.0, fail=lambda job: False):
        self.delay = delay
        self.fail = fail
        self.done = []
        self.running = 0
        self.peak = 0
        self._lock = threading.Lock()

    def __call__(self, job, context):
        with self._lock:
            self.running += 1
            self.peak = max(self.peak, self.running)
        try:
            time.sleep(self.delay)
            if self.fail(job):
                raise RuntimeError(f"job {job.id} failed")
            with self._lock:
                self.done.append(job.id)
        finally:
            with self._lock:
                self.running -= 1


class TestDispatchOptions:
    """Test option validation"""

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValueError):
            DispatchOptions(concurrency=0)

    def test_negative_limit_is_rejected(self):
        with pytest.raises(ValueError):
            DispatchOptions(limit=-1)


class TestDispatcher:
    """Test dispatching, stop conditions and the breaker"""

    def test_runs_every_job_once(self):
        """Every job is processed exactly once across pages"""
        jobs = make_jobs(7)
        source = PagedSource(jobs)
        worker = Recorder()

        stats = Dispatcher("test", source, worker, DispatchOptions(page_size=3)).run()

        assert sorted(worker.done) == [job.id for job in jobs]
        assert stats.dispatched == 7
        assert stats.succeeded == 7
        assert stats.failed == 0

    def test_cursor_advances_to_last_id_of_each_page(self):
        """next_page is called with the last id of the previous page"""
        source = PagedSource(make_jobs(5))
        Dispatcher("test", source, Recorder(), DispatchOptions(page_size=2)).run()
        assert source.cursors == ["", "0002", "0004", "0005"]

    def test_start_after(self):
        """The first page starts after the given cursor"""
        source = PagedSource(make_jobs(5))
        worker = Recorder()
        Dispatcher("test", source, worker, start_after="0003").run()
        assert sorted(worker.done) == ["0004", "0005"]

    def test_concurrency_cap(self):
        """No more than `concurrency` jobs run at the same time"""
        worker = Recorder(delay=0.05)
        options = DispatchOptions(concurrency=3, page_size=5)

        Dispatcher("test", PagedSource(make_jobs(15)), worker, options).run()

        assert len(worker.done) == 15
        assert 1 < worker.peak <= 3

    def test_empty_first_page(self):
        """A run with nothing to do raises NoJobsAvailableError"""
        with pytest.raises(NoJobsAvailableError):
            Dispatcher("test", PagedSource([]), Recorder()).run()

    def test_empty_later_page_ends_run(self):
        """Exhausting the source after the first page is a normal end"""
        worker = Recorder()
        stats = Dispatcher("test", PagedSource(make_jobs(4)), worker, DispatchOptions(page_size=2)).run()
        assert stats.dispatched == 4

    def test_limit(self):
        """The run stops admitting jobs once the limit is reached"""
        worker = Recorder()
        options = DispatchOptions(concurrency=2, page_size=3, limit=4)

        stats = Dispatcher("test", PagedSource(make_jobs(10)), worker, options).run()

        assert stats.dispatched == 4
        assert len(worker.done) == 4

    def test_timeout_ends_run_successfully(self):
        """Jobs stop being admitted once the wall-clock budget is spent"""
        worker = Recorder(delay=0.2)
        options = DispatchOptions(concurrency=1, timeout=0.5)

        stats = Dispatcher("test", PagedSource(make_jobs(50)), worker, options).run()

        assert 0 < stats.dispatched < 50
        assert len(worker.done) == stats.dispatched

    def test_breaker_trips_on_consecutive_failures(self):
        """More than error_threshold failures in a row abort the run"""
        worker = Recorder(fail=lambda job: True)
        options = DispatchOptions(concurrency=1, error_threshold=2)

        with pytest.raises(TooManyErrorsError) as exc_info:
            Dispatcher("test", PagedSource(make_jobs(10)), worker, options).run()

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.details["consecutive_errors"] == 3

    def test_breaker_counts_failures_of_last_jobs(self):
        """Failures of jobs still running when the source runs out trip the breaker"""
        worker = Recorder(fail=lambda job: True)
        options = DispatchOptions(concurrency=1, error_threshold=2)

        with pytest.raises(TooManyErrorsError) as exc_info:
            Dispatcher("test", PagedSource(make_jobs(3)), worker, options).run()

        assert exc_info.value.details["consecutive_errors"] == 3

    def test_breaker_counts_all_running_jobs(self):
        """Every in-flight failure is counted before the run ends"""
        worker = Recorder(fail=lambda job: True)
        options = DispatchOptions(concurrency=5, error_threshold=10)

        with pytest.raises(TooManyErrorsError):
            Dispatcher("test", PagedSource(make_jobs(14)), worker, options).run()

    def test_breaker_counts_failures_after_limit(self):
        """Jobs admitted before the limit still feed the breaker"""
        worker = Recorder(fail=lambda job: True)
        options = DispatchOptions(concurrency=2, error_threshold=2, limit=3)

        with pytest.raises(TooManyErrorsError):
            Dispatcher("test", PagedSource(make_jobs(10)), worker, options).run()

    def test_failures_within_threshold_end_normally(self):
        """Trailing failures at or below the threshold are not an abort"""
        worker = Recorder(fail=lambda job: job.id != "0001")
        options = DispatchOptions(concurrency=1, error_threshold=2)

        stats = Dispatcher("test", PagedSource(make_jobs(3)), worker, options).run()

        assert stats.failed == 2

    def test_success_resets_breaker(self):
        """Isolated failures never trip the breaker"""
        worker = Recorder(fail=lambda job: int(job.id) % 2 == 0)
        options = DispatchOptions(concurrency=1, error_threshold=1)

        stats = Dispatcher("test", PagedSource(make_jobs(10)), worker, options).run()

        assert stats.failed == 5
        assert stats.succeeded == 5

    def test_page_that_does_not_advance(self):
        """A source that keeps returning the same page is an error"""
        jobs = make_jobs(2)
        with pytest.raises(DispatchError):
            Dispatcher("test", lambda after, size: jobs, Recorder()).run()

    def test_cancelled_run(self):
        """A cancelled context stops the run before dispatching"""
        context = RunContext()
        context.cancel()
        worker = Recorder()

        with pytest.raises(RunCancelledError):
            Dispatcher("test", PagedSource(make_jobs(3)), worker, context=context).run()

        assert worker.done == []

    def test_progress_counts_outcomes(self):
        """The progress bar sees every finished job"""
        worker = Recorder(fail=lambda job: job.id == "0003")
        with JobProgressBar("Test") as progress:
            Dispatcher("test", PagedSource(make_jobs(4)), worker, progress=progress).run()

        assert progress.completed == 4
        assert progress.succeeded == 3
        assert progress.failed == 1

    def test_failures_reach_job_failure_log(self, caplog):
        """Failed jobs are logged with their id and source"""
        worker = Recorder(fail=lambda job: job.id == "0002")
        Dispatcher("test", PagedSource(make_jobs(3)), worker).run()

        records = [r for r in caplog.records if getattr(r, "failed_job_id", None)]
        assert [r.failed_job_id for r in records] == ["0002"]
        assert records[0].failed_job_source == "https://cdn.example.com/2.mp3"


class TestRunContext:
    """Test named locks and cancellation"""

    def test_named_lock_is_exclusive(self):
        """Only one holder of a named lock at a time"""
        context = RunContext()
        inside = []
        overlap = []

        def hold():
            with context.lock("mastering"):
                if inside:
                    overlap.append(True)
                inside.append(True)
                time.sleep(0.02)
                inside.pop()

        threads = [threading.Thread(target=hold) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlap == []

    def test_lock_on_cancelled_context(self):
        """Acquiring a lock after cancellation raises"""
        context = RunContext()
        context.cancel()
        with pytest.raises(RunCancelledError):
            with context.lock("upload"):
                pass
