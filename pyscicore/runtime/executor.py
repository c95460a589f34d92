"""
Worker pool and chunked execution.

WorkerPool owns a fixed set of long-lived daemon threads fed by a bounded
queue. A job splits its workload into the partitions of an ExecutionPlan;
up to plan.worker_count runners (the calling thread is one of them) pull
partition indices from a shared counter until the workload is exhausted.
Partial results are stored by partition index and merged in index order,
so the merged result never depends on which worker finished first.

Threads rather than processes: the kernels are NumPy/SciPy/LAPACK calls that
release the GIL, and threads avoid copying operands between processes.
ContextVar values of the submitting thread are propagated to every runner.

Failure semantics:
    - The first failing unit cancels the job; units not yet started are skipped
    - Partial results are discarded
    - pyscicore errors propagate unchanged; any other exception is wrapped in
      WorkerFailureError with the original chained as __cause__
"""

from __future__ import annotations

import contextvars
import logging
import queue
import threading
from typing import Any, Callable, Sequence, TypeVar

import numpy as np

from pyscicore.core.exceptions import PyScicoreError, WorkerFailureError
from pyscicore.core.validation import check_positive
from pyscicore.core.protocols import ChunkKernel
from pyscicore.runtime.selector import ExecutionPlan

_logger = logging.getLogger(__name__)

T = TypeVar('T')

_STOP = object()
_local = threading.local()


class _Job:
    """Shared state of one submitted job."""

    def __init__(self, n_units: int, unit: Callable[[int], Any], fp_errors: str):
        self.n_units = n_units
        self.unit = unit
        self.fp_errors = fp_errors
        self.partials: list[Any] = [None] * n_units
        self.cancelled = threading.Event()
        self.done = threading.Event()
        self.error: BaseException | None = None
        self.error_index: int | None = None
        self.units_run = 0
        self._next = 0
        self._runners = 0
        self._lock = threading.Lock()

    def add_runner(self) -> None:
        with self._lock:
            self._runners += 1

    @property
    def claimed(self) -> int:
        """Units handed to a runner, whether or not they completed."""
        with self._lock:
            return self._next

    def _claim(self) -> int | None:
        with self._lock:
            if self.cancelled.is_set() or self._next >= self.n_units:
                return None
            index = self._next
            self._next += 1
            return index

    def _fail(self, index: int, exc: BaseException) -> None:
        with self._lock:
            if self.error is None:
                self.error = exc
                self.error_index = index
        self.cancelled.set()

    def run(self) -> None:
        """Process units until none remain or the job is cancelled."""
        try:
            with np.errstate(all=self.fp_errors):
                while True:
                    index = self._claim()
                    if index is None:
                        break
                    try:
                        self.partials[index] = self.unit(index)
                    except Exception as e:
                        self._fail(index, e)
                        break
                    with self._lock:
                        self.units_run += 1
        finally:
            with self._lock:
                self._runners -= 1
                finished = self._runners == 0
            if finished:
                self.done.set()


class WorkerPool:
    """
    Fixed-size pool of worker threads.

    Created once per RuntimeContext and reused by every request. Safe to call
    from many threads at once; each call gets its own job state.

    Usage:
        pool = WorkerPool(size=8)
        total = pool.run(lambda start, stop: x[start:stop].sum(), plan, operator.add)
        pool.shutdown()
    """

    def __init__(self, size: int, queue_depth: int = 256, name: str = 'pyscicore-worker'):
        check_positive(size, "size")
        check_positive(queue_depth, "queue_depth")
        self._size = size
        self._queue: queue.Queue = queue.Queue(maxsize=queue_depth)
        self._closed = False
        self._lock = threading.Lock()
        self._stats = {
            'jobs': 0, 'inline_jobs': 0, 'units': 0, 'cancelled_units': 0, 'failures': 0,
        }
        self._threads = [
            threading.Thread(target=self._worker_loop, name=f"{name}-{i}", daemon=True)
            for i in range(size)
        ]
        for thread in self._threads:
            thread.start()
        _logger.debug("Started worker pool with %d threads", size)

    @property
    def size(self) -> int:
        return self._size

    @property
    def closed(self) -> bool:
        return self._closed

    def _worker_loop(self) -> None:
        _local.pool = self
        while True:
            task = self._queue.get()
            try:
                if task is _STOP:
                    return
                task()
            except Exception:
                # Job.run records unit failures itself; anything here is a pool bug
                _logger.exception("Unexpected error in worker thread")
            finally:
                self._queue.task_done()

    def in_worker(self) -> bool:
        """True when called from one of this pool's worker threads."""
        return getattr(_local, 'pool', None) is self

    def _execute(
        self,
        n_units: int,
        unit: Callable[[int], Any],
        worker_count: int,
        fp_errors: str,
    ) -> list[Any]:
        if self._closed:
            raise PyScicoreError("WorkerPool has been shut down")

        job = _Job(n_units, unit, fp_errors)
        runners = max(1, min(worker_count, self._size, n_units))
        # Nested submissions from a worker run inline so workers never wait on themselves
        inline = runners == 1 or self.in_worker()

        job.add_runner()
        if not inline:
            for _ in range(runners - 1):
                job.add_runner()
                ctx = contextvars.copy_context()
                self._queue.put(lambda ctx=ctx: ctx.run(job.run))
        job.run()
        job.done.wait()

        with self._lock:
            self._stats['jobs'] += 1
            self._stats['inline_jobs'] += int(inline)
            self._stats['units'] += job.units_run
            if job.error is not None:
                # Units never claimed because the job was cancelled
                self._stats['cancelled_units'] += n_units - job.claimed
            self._stats['failures'] += int(job.error is not None)

        if job.error is not None:
            job.partials = []
            error, index = job.error, job.error_index
            if isinstance(error, PyScicoreError):
                raise error
            raise WorkerFailureError(
                f"work unit {index} failed: {type(error).__name__}: {error}",
                chunk_index=index,
                cause=error,
            ) from error
        return job.partials

    def run(
        self,
        kernel: ChunkKernel[T],
        plan: ExecutionPlan,
        combine: Callable[[T, T], T],
        *,
        fp_errors: str = 'ignore',
        initial: T | None = None,
    ) -> T | None:
        """
        Run kernel over every partition of plan and merge the partials.

        Args:
            kernel: kernel(start, stop) computes the partial for [start, stop)
            plan: Supplies chunk_size, worker_count and the workload size
            combine: Associative merge of two partials; applied left to right
                in partition order
            fp_errors: numpy floating-point error policy inside each unit
            initial: Returned when the workload is empty

        Returns:
            The merged result

        Raises:
            WorkerFailureError: A unit raised a non-pyscicore exception
            PyScicoreError: A unit raised a pyscicore error (propagated unchanged)
        """
        bounds = list(plan.partitions())
        if not bounds:
            return initial

        def unit(index: int) -> T:
            _, start, stop = bounds[index]
            return kernel(start, stop)

        partials = self._execute(len(bounds), unit, plan.worker_count, fp_errors)
        merged = partials[0]
        for partial in partials[1:]:
            merged = combine(merged, partial)
        return merged

    def parallel_map(
        self,
        func: Callable[..., T],
        args_list: Sequence[tuple],
        max_workers: int | None = None,
    ) -> list[T]:
        """
        Execute func(*args) for each args in args_list on the pool.

        Returns:
            Results in the same order as args_list
        """
        if not args_list:
            return []
        workers = self._size if max_workers is None else max_workers
        return self._execute(
            len(args_list), lambda i: func(*args_list[i]), workers, 'ignore'
        )

    def stats(self) -> dict[str, int]:
        with self._lock:
            stats = dict(self._stats)
        stats['size'] = self._size
        return stats

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker threads. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for _ in self._threads:
            self._queue.put(_STOP)
        if wait:
            for thread in self._threads:
                thread.join()
        _logger.debug("Worker pool shut down")

    def __enter__(self) -> WorkerPool:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()
