"""
Tests for the pooled memory manager.
"""

import threading
import time

import numpy as np
import pytest

from pyscicore.core.datasource import ChunkSource
from pyscicore.core.exceptions import (
    AllocationExhaustedError,
    OwnershipError,
    ValidationError,
)
from pyscicore.runtime.memory import MIN_SIZE_CLASS, MemoryManager, size_class

KiB = 1024
MiB = 1024 * KiB


@pytest.fixture
def memory():
    return MemoryManager(ceiling_bytes=4 * MiB, pool_cap_bytes=2 * MiB, working_set_bytes=1 * MiB)


# ═══════════════════════════════════════════════════════════════════════
# Size classes
# ═══════════════════════════════════════════════════════════════════════


class TestSizeClass:

    @pytest.mark.parametrize("nbytes, expected", [
        (0, MIN_SIZE_CLASS),
        (1, MIN_SIZE_CLASS),
        (4096, 4096),
        (4097, 8192),
        (1_000_000, 1 << 20),
        (1 << 20, 1 << 20),
    ])
    def test_power_of_two(self, nbytes, expected):
        assert size_class(nbytes) == expected


# ═══════════════════════════════════════════════════════════════════════
# Acquire / release / reuse
# ═══════════════════════════════════════════════════════════════════════


class TestAcquireRelease:

    def test_buffer_metadata(self, memory):
        buf = memory.acquire((10, 20), 'f8')
        assert buf.shape == (10, 20)
        assert buf.dtype == np.float64
        assert buf.nbytes == 1600
        assert buf.size_class == MIN_SIZE_CLASS
        assert buf.capacity == MIN_SIZE_CLASS // 8
        assert buf.strides == (160, 8)
        assert buf.array.shape == (10, 20)

    def test_buffer_writable(self, memory):
        buf = memory.acquire(5, np.int32)
        buf.array[:] = np.arange(5)
        np.testing.assert_array_equal(np.asarray(buf), [0, 1, 2, 3, 4])

    def test_round_trip_reuses_storage(self, memory):
        first = memory.acquire((100, 100), 'f8')
        first.release()
        allocations = memory.stats().allocations

        second = memory.acquire((100, 100), 'f8')
        stats = memory.stats()
        assert stats.allocations == allocations
        assert stats.reuses == 1
        second.release()

    def test_same_class_different_shape_reuses(self, memory):
        memory.acquire((1000,), 'f8').release()
        buf = memory.acquire((2000,), 'f4')
        assert memory.stats().reuses == 1
        buf.release()

    def test_accounting(self, memory):
        a = memory.acquire(1000, 'f8')
        b = memory.acquire(10, 'f4')
        stats = memory.stats()
        assert stats.in_use_bytes == 8192 + 4096
        assert stats.live_buffers == 2
        a.release()
        b.release()
        stats = memory.stats()
        assert stats.in_use_bytes == 0
        assert stats.pooled_bytes == 8192 + 4096
        assert stats.releases == 2
        assert stats.peak_bytes == 8192 + 4096

    def test_pool_cap_drops_excess(self):
        mm = MemoryManager(ceiling_bytes=1 * MiB, pool_cap_bytes=8 * KiB)
        bufs = [mm.acquire(4096, 'u1') for _ in range(4)]
        for b in bufs:
            b.release()
        assert mm.stats().pooled_bytes == 8 * KiB

    def test_trim(self, memory):
        memory.acquire(1000, 'f8').release()
        assert memory.trim() == 8192
        assert memory.stats().pooled_bytes == 0

    def test_reset_peak(self, memory):
        memory.acquire(1000, 'f8').release()
        memory.reset_peak()
        assert memory.stats().peak_bytes == 0

    def test_invalid_shape(self, memory):
        with pytest.raises(ValidationError):
            memory.acquire((-1, 3))

    def test_invalid_dtype(self, memory):
        with pytest.raises(ValidationError):
            memory.acquire(3, 'f2')

    def test_invalid_ceiling(self):
        with pytest.raises(ValidationError, match="ceiling_bytes"):
            MemoryManager(ceiling_bytes=100)


# ═══════════════════════════════════════════════════════════════════════
# Ownership
# ═══════════════════════════════════════════════════════════════════════


class TestOwnership:

    def test_use_after_release(self, memory):
        buf = memory.acquire(10)
        buf.release()
        assert not buf.valid
        with pytest.raises(OwnershipError, match="released"):
            buf.array

    def test_double_release(self, memory):
        buf = memory.acquire(10)
        buf.release()
        with pytest.raises(OwnershipError):
            buf.release()

    def test_transfer_invalidates_old_handle(self, memory):
        buf = memory.acquire(4)
        buf.array[:] = 7.0
        moved = buf.transfer()
        assert not buf.valid
        assert moved.valid
        np.testing.assert_array_equal(moved.array, 7.0)
        with pytest.raises(OwnershipError):
            buf.array
        moved.release()
        assert memory.stats().live_buffers == 0

    def test_foreign_manager(self, memory):
        other = MemoryManager(ceiling_bytes=1 * MiB)
        buf = other.acquire(4)
        with pytest.raises(OwnershipError, match="different MemoryManager"):
            memory.release(buf)

    def test_context_manager_releases(self, memory):
        with memory.acquire(10) as buf:
            buf.array[:] = 1.0
        assert not buf.valid

    def test_scoped_buffer_kept_after_transfer(self, memory):
        with memory.buffer(10) as buf:
            kept = buf.transfer()
        assert kept.valid
        kept.release()

    def test_from_array_copies(self, memory, rng):
        x = rng.standard_normal((3, 4))
        buf = memory.from_array(x)
        buf.array[0, 0] = 99.0
        assert x[0, 0] != 99.0
        np.testing.assert_array_equal(buf.array[1:], x[1:])

    def test_from_arrays(self, memory, rng):
        x = rng.standard_normal(10)
        n = np.arange(6, dtype=np.int64).reshape(2, 3)
        bufs = memory.from_arrays([x, n])
        assert [b.shape for b in bufs] == [(10,), (2, 3)]
        np.testing.assert_array_equal(bufs[1].array, n)
        assert memory.stats().live_buffers == 2


# ═══════════════════════════════════════════════════════════════════════
# Ceiling
# ═══════════════════════════════════════════════════════════════════════


class TestCeiling:

    def test_request_above_ceiling_fails_fast(self, memory):
        with pytest.raises(AllocationExhaustedError) as exc_info:
            memory.acquire(8 * MiB, 'u1')
        assert exc_info.value.requested_bytes == 8 * MiB
        assert exc_info.value.ceiling_bytes == 4 * MiB

    def test_ceiling_reached_fails_fast(self, memory):
        held = [memory.acquire(1 * MiB, 'u1') for _ in range(4)]
        with pytest.raises(AllocationExhaustedError) as exc_info:
            memory.acquire(1 * MiB, 'u1')
        assert exc_info.value.in_use_bytes == 4 * MiB
        for buf in held:
            buf.release()

    def test_from_arrays_all_or_nothing(self, memory):
        with pytest.raises(AllocationExhaustedError):
            # 4 KiB + 2 MiB fit; the second 2 MiB copy crosses the 4 MiB ceiling
            memory.from_arrays([np.zeros(16), np.zeros(MiB // 4), np.zeros(MiB // 4)])
        stats = memory.stats()
        assert stats.in_use_bytes == 0
        assert stats.live_buffers == 0
        assert stats.releases == 2

    def test_pool_trimmed_before_failing(self, memory):
        for buf in [memory.acquire(1 * MiB, 'u1') for _ in range(2)]:
            buf.release()
        assert memory.stats().pooled_bytes == 2 * MiB
        # 4 MiB class does not fit next to 2 MiB pooled; the pool gives way
        big = memory.acquire(4 * MiB, 'u1')
        assert memory.stats().pooled_bytes == 0
        big.release()

    def test_in_use_plus_pooled_within_ceiling(self, memory, rng):
        held = []
        for size in rng.integers(1, 512 * KiB, size=200):
            try:
                held.append(memory.acquire(int(size), 'u1'))
            except AllocationExhaustedError:
                held.pop(0).release()
            stats = memory.stats()
            assert stats.in_use_bytes + stats.pooled_bytes <= stats.ceiling_bytes
        for buf in held:
            buf.release()

    def test_blocking_acquire_waits_for_release(self):
        mm = MemoryManager(ceiling_bytes=1 * MiB, block_on_exhaustion=True, acquire_timeout=5)
        held = mm.acquire(1 * MiB, 'u1')
        acquired = []

        def waiter():
            acquired.append(mm.acquire(512 * KiB, 'u1'))

        t = threading.Thread(target=waiter)
        t.start()
        time.sleep(0.05)
        assert not acquired
        held.release()
        t.join(timeout=5)
        assert len(acquired) == 1
        acquired[0].release()

    def test_blocking_acquire_times_out(self):
        mm = MemoryManager(ceiling_bytes=1 * MiB, block_on_exhaustion=True, acquire_timeout=0.05)
        held = mm.acquire(1 * MiB, 'u1')
        with pytest.raises(AllocationExhaustedError):
            mm.acquire(4096, 'u1')
        held.release()


# ═══════════════════════════════════════════════════════════════════════
# Chunked views
# ═══════════════════════════════════════════════════════════════════════


class TestChunkedView:

    def test_windows_cover_source_in_order(self, memory, rng):
        x = rng.standard_normal((10_000, 8))
        pieces, offsets = [], []
        for view in memory.with_chunked_view(x, chunk_bytes=64 * KiB):
            offsets.append(view.offset)
            pieces.append(view.array.copy())
        np.testing.assert_array_equal(np.concatenate(pieces), x)
        assert offsets == sorted(offsets)
        assert offsets[0] == 0

    def test_views_released_between_windows(self, memory, rng):
        x = rng.standard_normal(100_000)
        for view in memory.with_chunked_view(x, chunk_bytes=32 * KiB):
            assert memory.stats().live_buffers == 1
        assert memory.stats().live_buffers == 0

    def test_peak_bounded_by_window(self, memory):
        # 80 MB logical array through a 1 MiB working set
        n = 10_000_000
        src = ChunkSource.from_function(
            lambda start, stop: np.arange(start, stop, dtype=np.float64), shape=(n,)
        )
        memory.reset_peak()
        total = 0.0
        for view in memory.with_chunked_view(src):
            total += view.array.sum()
        assert total == pytest.approx(n * (n - 1) / 2)
        assert memory.stats().peak_bytes <= memory.working_set_bytes

    def test_window_rows(self, memory):
        src = ChunkSource.from_array(np.zeros((1000, 16)))
        # 100 KB hint rounds down to a 64 KiB class; rows are 128 bytes
        assert memory.window_rows(src, 100_000) == 512

    def test_row_larger_than_window(self, memory):
        src = ChunkSource.from_array(np.zeros((2, 1_000_000)))
        with pytest.raises(ValidationError, match="one row needs"):
            list(memory.with_chunked_view(src))

    def test_invalid_chunk_bytes(self, memory):
        with pytest.raises(ValidationError, match="chunk_bytes"):
            list(memory.with_chunked_view(np.zeros(10), chunk_bytes=0))

    def test_memory_mapped_file(self, memory, tmp_path, rng):
        x = rng.standard_normal((5000, 4))
        path = tmp_path / "big.npy"
        np.save(path, x)
        total = sum(view.array.sum() for view in memory.with_chunked_view(path, 16 * KiB))
        np.testing.assert_allclose(total, x.sum(), rtol=1e-12)

    def test_kept_window_must_be_transferred(self, memory):
        kept = []
        for view in memory.with_chunked_view(np.arange(10_000, dtype=np.float64), 8 * KiB):
            if view.offset == 0:
                kept.append(view.transfer())
        assert kept[0].valid
        np.testing.assert_array_equal(kept[0].array[:3], [0, 1, 2])
        kept[0].release()
