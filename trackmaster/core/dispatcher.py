"""
Bounded-concurrency job runner shared by every batch command.

A Dispatcher pulls pages of jobs in ascending id order from a caller
supplied next_page function and hands each job to a worker thread. It
stops when the job source is exhausted, the wall-clock budget is spent,
the dispatch limit is reached, the run is cancelled, or too many jobs
fail in a row.

Admission control:
    A results queue holding `concurrency` slots is pre-seeded with None
    tokens. Taking an item from the queue admits one job; every worker
    puts its outcome (None or the raised exception) back when it ends.
    At most `concurrency` jobs are therefore in flight at any time.

Breaker:
    Every outcome taken from the queue is folded into a consecutive
    failure counter. A success resets it. Once it exceeds
    `error_threshold` the run aborts with TooManyErrorsError chained
    from the last error.

Usage:
    def next_page(after_id, page_size):
        return db.list_jobs(after_id, page_size, processed=False)

    def work(job, context):
        with context.lock("mastering"):
            limiter.master(...)

    stats = Dispatcher("process", next_page, work, DispatchOptions(concurrency=2)).run()
"""

import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Generator

from trackmaster.core.exceptions import (
    DispatchError,
    NoJobsAvailableError,
    RunCancelledError,
    TooManyErrorsError,
)
from trackmaster.core.logger import get_logger, log_job_failure
from trackmaster.core.progress import JobProgressBar


logger = get_logger(__name__)

# How often the dispatch loop wakes up to check cancellation and the deadline
POLL_INTERVAL = 0.5

# Log a heartbeat line every this many seconds of a long run
HEARTBEAT_INTERVAL = 60 * 60


class RunContext:
    """
    Execution context shared by the dispatcher and its workers.

    Holds the run-wide cancellation event and the named process-wide
    locks guarding external resources ("mastering", "upload").

    Thread Safety:
        All methods are safe to call from any thread.
    """

    def __init__(self, cancel_event: threading.Event | None = None) -> None:
        self.cancel_event = cancel_event or threading.Event()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def cancel(self) -> None:
        """Signal cancellation to the dispatcher, workers and subprocesses."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        """
        Raise RunCancelledError if the run was cancelled.

        Raises:
            RunCancelledError: When cancel() has been called.
        """
        if self.cancel_event.is_set():
            raise RunCancelledError("Run cancelled")

    def _get_lock(self, name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    @contextmanager
    def lock(self, name: str) -> Generator[None, None, None]:
        """
        Hold the named lock for the duration of the block.

        Keep the block as narrow as the external call it protects.
        Cancellation is checked again once the lock is acquired, since
        waiting for it may take a long time.

        Raises:
            RunCancelledError: If the run was cancelled while waiting.
        """
        lock = self._get_lock(name)
        while not lock.acquire(timeout=POLL_INTERVAL):
            self.check_cancelled()
        try:
            self.check_cancelled()
            yield
        finally:
            lock.release()


@dataclass(frozen=True)
class DispatchOptions:
    """
    Tuning knobs of a dispatcher run.

    Attributes:
        concurrency: Maximum number of jobs in flight.
        page_size: Jobs requested per next_page call.
        limit: Stop admitting after this many jobs (0 for no limit).
        timeout: Wall-clock budget in seconds (0 for none). When spent the
                 run ends successfully.
        error_threshold: Consecutive failures tolerated.
    """
    concurrency: int = 1
    page_size: int = 100
    limit: int = 0
    timeout: float = 0.0
    error_threshold: int = 10

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.page_size < 1:
            raise ValueError("page_size must be at least 1")
        if self.limit < 0 or self.timeout < 0 or self.error_threshold < 0:
            raise ValueError("limit, timeout and error_threshold must not be negative")


@dataclass
class DispatchStats:
    """Counters of a finished run. elapsed and average are in seconds."""
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    elapsed: float = 0.0

    @property
    def average(self) -> float:
        if self.dispatched == 0:
            return 0.0
        return self.elapsed / self.dispatched


class Dispatcher:
    """
    Cursor-paginated runner with bounded concurrency and a failure breaker.

    Args:
        name: Command name used in log lines and the failures report.
        next_page: Callable(after_id, page_size) -> list of jobs with
                   ids strictly greater than after_id, ascending.
        process: Callable(job, context) doing the work for one job.
                 Any exception it raises counts as a failure.
        options: DispatchOptions for this run.
        context: Shared RunContext (a fresh one if omitted).
        key: Extracts the sortable id from a job.
        start_after: Initial cursor ("" starts from the first job).
        progress: Optional JobProgressBar updated as jobs finish.
    """

    def __init__(
        self,
        name: str,
        next_page: Callable[[str, int], list],
        process: Callable[[Any, RunContext], None],
        options: DispatchOptions | None = None,
        context: RunContext | None = None,
        key: Callable[[Any], str] = lambda job: job.id,
        start_after: str = "",
        progress: JobProgressBar | None = None,
    ) -> None:
        self.name = name
        self.next_page = next_page
        self.process = process
        self.options = options or DispatchOptions()
        self.context = context or RunContext()
        self.key = key
        self.start_after = start_after
        self.progress = progress

        self._stats = DispatchStats()
        self._stats_lock = threading.Lock()
        self._consecutive_errors = 0

    def run(self) -> DispatchStats:
        """
        Dispatch jobs until a stop condition is met.

        Returns:
            DispatchStats when the source is exhausted, the limit was
            reached or the timeout expired.

        Raises:
            NoJobsAvailableError: The first page was empty.
            TooManyErrorsError: Consecutive failures exceeded the threshold.
            RunCancelledError: The run was cancelled.
            DispatchError: next_page returned a page that does not advance the cursor.
            KeyboardInterrupt: Re-raised after cancelling the context.

        In-flight jobs are always waited for before this method returns
        or raises.
        """
        options = self.options
        self._stats = DispatchStats()
        start = time.monotonic()
        deadline = start + options.timeout if options.timeout else None

        results: queue.Queue = queue.Queue(maxsize=options.concurrency)
        for _ in range(options.concurrency):
            results.put(None)

        executor = ThreadPoolExecutor(
            max_workers=options.concurrency,
            thread_name_prefix=self.name,
        )

        logger.info(f"{self.name}: started (concurrency {options.concurrency})")
        try:
            self._dispatch(executor, results, deadline, start)
        except KeyboardInterrupt:
            logger.warning(f"{self.name}: interrupted, waiting for running jobs")
            self.context.cancel()
            raise
        finally:
            executor.shutdown(wait=True)
            self._stats.elapsed = time.monotonic() - start
            stats = self._stats
            logger.info(
                f"{self.name}: ended ({stats.dispatched} dispatched, "
                f"{stats.succeeded} ok, {stats.failed} failed)"
            )
            logger.info(
                f"{self.name}: total time {stats.elapsed:.1f}s, "
                f"average time {stats.average:.1f}s"
            )

        return self._stats

    def _dispatch(
        self,
        executor: ThreadPoolExecutor,
        results: queue.Queue,
        deadline: float | None,
        start: float
    ) -> None:
        options = self.options
        cursor = self.start_after
        first_page = True
        self._consecutive_errors = 0
        last_heartbeat = start

        while True:
            if options.limit and self._stats.dispatched >= options.limit:
                logger.info(f"{self.name}: limit of {options.limit} jobs reached")
                self._drain(results, options.concurrency)
                return

            page = self.next_page(cursor, options.page_size)
            if not page:
                if first_page:
                    raise NoJobsAvailableError(
                        f"{self.name}: no jobs available",
                        details={"after_id": cursor}
                    )
                logger.info(f"{self.name}: no more jobs")
                self._drain(results, options.concurrency)
                return
            first_page = False

            last_id = self.key(page[-1])
            if last_id <= cursor:
                raise DispatchError(
                    f"{self.name}: page does not advance the cursor",
                    details={"after_id": cursor, "last_id": last_id}
                )

            for job in page:
                outcome = self._wait_for_slot(results, deadline)
                if outcome is _TIMED_OUT:
                    logger.info(f"{self.name}: timeout reached")
                    return

                self._count(outcome)

                if options.limit and self._stats.dispatched >= options.limit:
                    logger.info(f"{self.name}: limit of {options.limit} jobs reached")
                    self._drain(results, options.concurrency - 1)
                    return

                self._stats.dispatched += 1
                executor.submit(self._work, job, results)

                now = time.monotonic()
                if now - last_heartbeat > HEARTBEAT_INTERVAL:
                    last_heartbeat = now
                    logger.info(f"{self.name}: iteration {self._stats.dispatched}")

            cursor = last_id

    def _count(self, outcome: Exception | None) -> None:
        """
        Feed one job outcome to the breaker.

        Raises:
            TooManyErrorsError: If consecutive failures exceed the threshold.
        """
        if outcome is None:
            self._consecutive_errors = 0
            return

        self._consecutive_errors += 1
        if self._consecutive_errors > self.options.error_threshold:
            raise TooManyErrorsError(
                f"{self.name}: too many consecutive errors: {outcome}",
                details={"consecutive_errors": self._consecutive_errors, "last_error": outcome}
            ) from outcome

    def _drain(self, results: queue.Queue, slots: int) -> None:
        """Wait for the jobs still running and count their outcomes."""
        for _ in range(slots):
            self._count(self._wait_for_slot(results, None))

    def _wait_for_slot(self, results: queue.Queue, deadline: float | None) -> Any:
        """
        Block until a worker slot frees up.

        Returns:
            The outcome posted with the slot (None or an exception), or
            _TIMED_OUT when the deadline passed first.

        Raises:
            RunCancelledError: If the run is cancelled while waiting.
        """
        while True:
            self.context.check_cancelled()
            wait = POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return _TIMED_OUT
                wait = min(wait, remaining)
            try:
                return results.get(timeout=wait)
            except queue.Empty:
                continue

    def _work(self, job: Any, results: queue.Queue) -> None:
        job_id = self.key(job)
        error: Exception | None = None
        logger.debug(f"{self.name}: start {job_id}")
        try:
            self.process(job, self.context)
        except Exception as e:
            error = e
            log_job_failure(logger, self.name, job_id, getattr(job, "source", ""), str(e))
            logger.debug(f"{self.name}: traceback for {job_id}", exc_info=True)
        logger.debug(f"{self.name}: end {job_id}")

        with self._stats_lock:
            if error is None:
                self._stats.succeeded += 1
            else:
                self._stats.failed += 1
        if self.progress is not None:
            self.progress.update(success=error is None)

        results.put(error)


class _TimedOut:
    def __repr__(self) -> str:
        return "<timed out>"


_TIMED_OUT = _TimedOut()
