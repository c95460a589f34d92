"""
Tests for the worker pool and chunked execution.
"""

import contextvars
import dataclasses
import operator
import threading
import time

import numpy as np
import pytest

from pyscicore.core.exceptions import PyScicoreError, ValidationError, WorkerFailureError
from pyscicore.runtime.executor import WorkerPool
from pyscicore.runtime.selector import ExecutionPlan


def make_plan(n, chunk, workers=4):
    return ExecutionPlan(
        strategy='parallel',
        chunk_size=chunk,
        worker_count=workers,
        workload_size=n,
        dtype=np.dtype(np.float64),
    )


@pytest.fixture
def pool():
    p = WorkerPool(size=4, queue_depth=16)
    yield p
    p.shutdown()


# ═══════════════════════════════════════════════════════════════════════
# Results and merge order
# ═══════════════════════════════════════════════════════════════════════


class TestRun:

    def test_sum_matches_numpy(self, pool, rng):
        x = rng.standard_normal(100_000)
        total = pool.run(lambda s, e: x[s:e].sum(), make_plan(x.size, 4096), operator.add)
        np.testing.assert_allclose(total, x.sum(), rtol=1e-12)

    def test_merge_in_partition_order(self, pool):
        def kernel(start, stop):
            # Early partitions finish last
            time.sleep(0.002 * (10 - start // 10))
            return [start]

        merged = pool.run(kernel, make_plan(100, 10), operator.add)
        assert merged == list(range(0, 100, 10))

    @pytest.mark.parametrize("workers", [1, 2, 3, 4])
    def test_worker_count_does_not_change_result(self, pool, rng, workers):
        x = rng.standard_normal(50_000)
        base = make_plan(x.size, 1000)
        reference = pool.run(lambda s, e: x[s:e].sum(), dataclasses.replace(base, worker_count=1), operator.add)
        result = pool.run(
            lambda s, e: x[s:e].sum(),
            dataclasses.replace(base, worker_count=workers),
            operator.add,
        )
        assert result == reference

    def test_empty_workload_returns_initial(self, pool):
        plan = make_plan(0, 10)
        assert pool.run(lambda s, e: 1, plan, operator.add, initial=0.0) == 0.0

    def test_units_run_concurrently(self, pool):
        second_started = threading.Event()
        observed = []

        def kernel(start, stop):
            if start == 0:
                observed.append(second_started.wait(timeout=5))
            else:
                second_started.set()
            return None

        pool.run(kernel, make_plan(2, 1, workers=2), lambda a, b: None)
        assert observed == [True]

    def test_context_vars_propagate(self, pool):
        request_id = contextvars.ContextVar('request_id', default=None)
        request_id.set('req-42')
        seen = pool.run(
            lambda s, e: {request_id.get()},
            make_plan(64, 1),
            operator.or_,
        )
        assert seen == {'req-42'}

    def test_nested_run_executes_inline(self):
        other_started = threading.Event()
        in_worker = []

        with WorkerPool(size=2) as small:
            def kernel(start, stop):
                # Hold unit 0 until unit 1 runs, so the two run on different threads
                if start == 0:
                    other_started.wait(timeout=5)
                else:
                    other_started.set()
                in_worker.append(small.in_worker())
                return small.run(lambda s, e: e - s, make_plan(10, 1), operator.add)

            total = small.run(kernel, make_plan(2, 1, workers=2), operator.add)
            stats = small.stats()

        assert total == 20
        assert sorted(in_worker) == [False, True]
        assert stats['inline_jobs'] == 1


# ═══════════════════════════════════════════════════════════════════════
# Failures and cancellation
# ═══════════════════════════════════════════════════════════════════════


class TestFailures:

    def test_foreign_error_wrapped(self, pool):
        def kernel(start, stop):
            if start == 30:
                raise ZeroDivisionError("bad chunk")
            return 1

        with pytest.raises(WorkerFailureError) as exc_info:
            pool.run(kernel, make_plan(100, 10), operator.add)
        err = exc_info.value
        assert err.chunk_index == 3
        assert isinstance(err.cause, ZeroDivisionError)
        assert err.__cause__ is err.cause
        assert "ZeroDivisionError" in str(err)

    def test_library_error_propagates_unchanged(self, pool):
        def kernel(start, stop):
            raise ValidationError("chunk rejected")

        with pytest.raises(ValidationError, match="chunk rejected"):
            pool.run(kernel, make_plan(100, 10), operator.add)

    def test_remaining_units_cancelled(self, pool):
        calls = []

        def kernel(start, stop):
            calls.append(start)
            if start == 20:
                raise RuntimeError("stop here")
            return 0

        with pytest.raises(WorkerFailureError):
            pool.run(kernel, make_plan(100, 10, workers=1), operator.add)
        assert calls == [0, 10, 20]
        stats = pool.stats()
        assert stats['failures'] == 1
        assert stats['cancelled_units'] == 7

    def test_simultaneous_failures_count_unclaimed_units(self, pool):
        both_running = threading.Barrier(2, timeout=5)

        def kernel(start, stop):
            both_running.wait()
            raise RuntimeError(f"unit at {start} failed")

        with pytest.raises(WorkerFailureError):
            pool.run(kernel, make_plan(10, 1, workers=2), operator.add)
        stats = pool.stats()
        assert stats['units'] == 0
        assert stats['failures'] == 1
        assert stats['cancelled_units'] == 8

    def test_pool_usable_after_failure(self, pool):
        with pytest.raises(WorkerFailureError):
            pool.run(lambda s, e: 1 / 0, make_plan(10, 1), operator.add)
        assert pool.run(lambda s, e: e - s, make_plan(10, 1), operator.add) == 10

    def test_fp_errors_raise(self, pool):
        x = np.ones(100)
        zeros = np.zeros(100)

        with pytest.raises(WorkerFailureError) as exc_info:
            pool.run(
                lambda s, e: (x[s:e] / zeros[s:e]).sum(),
                make_plan(100, 10),
                operator.add,
                fp_errors='raise',
            )
        assert isinstance(exc_info.value.cause, FloatingPointError)

    def test_fp_errors_ignore(self, pool):
        x = np.ones(100)
        zeros = np.zeros(100)
        total = pool.run(
            lambda s, e: (x[s:e] / zeros[s:e]).sum(),
            make_plan(100, 10),
            operator.add,
        )
        assert np.isinf(total)


# ═══════════════════════════════════════════════════════════════════════
# parallel_map and lifecycle
# ═══════════════════════════════════════════════════════════════════════


class TestParallelMap:

    def test_preserves_order(self, pool):
        results = pool.parallel_map(pow, [(2, i) for i in range(20)])
        assert results == [2 ** i for i in range(20)]

    def test_empty(self, pool):
        assert pool.parallel_map(pow, []) == []

    def test_max_workers(self, pool):
        names = pool.parallel_map(
            lambda: threading.current_thread().name, [()] * 10, max_workers=1
        )
        assert len(set(names)) == 1


class TestLifecycle:

    def test_invalid_size(self):
        with pytest.raises(ValidationError, match="size"):
            WorkerPool(size=0)

    def test_invalid_queue_depth(self):
        with pytest.raises(ValidationError, match="queue_depth: must be > 0"):
            WorkerPool(size=2, queue_depth=0)

    def test_shutdown_idempotent(self):
        p = WorkerPool(size=2)
        p.shutdown()
        p.shutdown()
        assert p.closed

    def test_run_after_shutdown(self):
        p = WorkerPool(size=2)
        p.shutdown()
        with pytest.raises(PyScicoreError, match="shut down"):
            p.run(lambda s, e: 0, make_plan(10, 1), operator.add)

    def test_context_manager(self):
        with WorkerPool(size=2) as p:
            assert p.size == 2
        assert p.closed

    def test_stats(self, pool):
        pool.run(lambda s, e: 0, make_plan(40, 10), operator.add)
        stats = pool.stats()
        assert stats['jobs'] == 1
        assert stats['units'] == 4
        assert stats['size'] == 4
