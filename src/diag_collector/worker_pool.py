"""Fixed-size worker pool for large batches of one-shot jobs.

Jobs are zero-argument callables. A job that raises is logged and counted as
failed; it never stops sibling jobs or the pool.

Usage:
    pool = WorkerPool(4, queue_size=len(ids))
    for query_id in ids:
        pool.submit(functools.partial(download, query_id))
    pool.start()
    stats = pool.wait_for_completion()

``submit`` blocks while the queue is full, so when submitting more jobs than
``queue_size`` call :meth:`WorkerPool.start` first.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from diag_collector.exceptions import WorkerPoolError

Job = Callable[[], Any]

# large enough that the collector never blocks on submit for its own batches
DEFAULT_QUEUE_SIZE = 4_000_000
DEFAULT_LOGGING_FREQUENCY = 100

# how often an idle worker checks whether the pool is closing
_POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class PoolStats:
    submitted: int
    succeeded: int
    failed: int


class WorkerPool:
    def __init__(
        self,
        number_of_workers: int,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        logging_frequency: int = DEFAULT_LOGGING_FREQUENCY,
        logger: logging.Logger | None = None,
    ) -> None:
        if number_of_workers < 1:
            raise WorkerPoolError(
                f"invalid number of workers {number_of_workers}, at least 1 is required",
                context={"number_of_workers": number_of_workers},
            )
        if queue_size < 1:
            raise WorkerPoolError(
                f"invalid queue size {queue_size}, at least 1 is required",
                context={"queue_size": queue_size},
            )
        self.number_of_workers = number_of_workers
        self.logging_frequency = max(1, logging_frequency)
        self.logger = logger or logging.getLogger(__name__)
        self._jobs: queue.Queue[Any] = queue.Queue(maxsize=queue_size)
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._stop = threading.Event()
        self._closed = False
        self._pending = 0
        self._total = 0
        self._completed = 0
        self._failed = 0

    @property
    def pending_jobs(self) -> int:
        with self._lock:
            return self._pending

    @property
    def started(self) -> bool:
        with self._lock:
            return self._executor is not None

    def submit(self, job: Job) -> None:
        with self._lock:
            if self._closed:
                raise WorkerPoolError("cannot submit to a worker pool that has already completed")
            self._pending += 1
            self._total += 1
        self._jobs.put(job)

    def start(self) -> None:
        """Start exactly ``number_of_workers`` workers; calling it again is a no-op."""
        with self._lock:
            if self._executor is not None:
                return
            self._executor = ThreadPoolExecutor(
                max_workers=self.number_of_workers, thread_name_prefix="diag-worker"
            )
            executor = self._executor
        for _ in range(self.number_of_workers):
            executor.submit(self._worker)

    def _worker(self) -> None:
        while not self._stop.is_set():
            try:
                job = self._jobs.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if self._stop.is_set():
                self._drop_job()
                return
            failed = False
            try:
                job()
            except Exception as exc:
                failed = True
                self.logger.error("failed to execute job: %s", exc)
            finally:
                self._record_done(failed)
                self._jobs.task_done()

    def _record_done(self, failed: bool) -> None:
        with self._lock:
            self._pending -= 1
            self._completed += 1
            if failed:
                self._failed += 1
            completed = self._completed
            total = self._total
        if completed % self.logging_frequency == 0:
            self.logger.info("%d/%d tasks completed", completed, total)

    def _drop_job(self) -> None:
        with self._lock:
            self._pending -= 1
        self._jobs.task_done()

    def _close(self, executor: ThreadPoolExecutor, *, wait: bool) -> int:
        """Stop the workers and discard queued jobs; returns how many were discarded."""
        with self._lock:
            self._closed = True
        self._stop.set()
        dropped = 0
        while True:
            try:
                self._jobs.get_nowait()
            except queue.Empty:
                break
            self._drop_job()
            dropped += 1
        executor.shutdown(wait=wait)
        return dropped

    def wait_for_completion(self) -> PoolStats:
        """Block until every submitted job has returned, then close the pool.

        Raises:
            WorkerPoolError: if the pool was never started or no job was submitted.
        """
        with self._lock:
            executor = self._executor
            total = self._total
            if self._closed:
                raise WorkerPoolError("worker pool wait called twice")
        if executor is None:
            raise WorkerPoolError("worker pool wait called before the pool was started")
        if total == 0:
            self._close(executor, wait=True)
            raise WorkerPoolError("worker pool wait called with no submitted jobs, this is unexpected")

        try:
            self._jobs.join()
        except BaseException:
            # running jobs finish on their own, queued ones never start
            dropped = self._close(executor, wait=False)
            self.logger.warning("worker pool interrupted, %d queued jobs dropped", dropped)
            raise
        self._close(executor, wait=True)

        with self._lock:
            stats = PoolStats(
                submitted=self._total,
                succeeded=self._completed - self._failed,
                failed=self._failed,
            )
        self.logger.info("%d/%d tasks completed", stats.submitted, stats.submitted)
        return stats

    def process_and_wait(self) -> PoolStats:
        """Start the workers and wait; fails fast when nothing was submitted."""
        if self.pending_jobs == 0 and not self.started:
            raise WorkerPoolError("worker pool wait called with no pending jobs, this is unexpected")
        self.start()
        return self.wait_for_completion()
