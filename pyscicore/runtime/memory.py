"""
Pooled buffer management.

MemoryManager hands out Buffer objects backed by raw byte storage taken from
power-of-two size classes. Released storage goes back on a per-class free
list so steady-state workloads stop allocating; the free lists are capped at
pool_cap_bytes and excess storage is dropped. Bytes held by live buffers
plus bytes held on free lists never exceed the memory ceiling.

Ownership:
    - acquire() returns a Buffer the caller exclusively owns
    - release() hands the storage back; the handle becomes invalid
    - transfer() moves ownership to a new handle; the old one becomes invalid
    - touching an invalid handle raises OwnershipError

Thread safety:
    - All bookkeeping is guarded by one Condition; acquire() and release()
      may be called from any thread
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from math import prod
from typing import Any, Iterator

import numpy as np
from numpy.typing import NDArray

from pyscicore.core.config import RuntimeSettings
from pyscicore.core.datasource import ChunkSource
from pyscicore.core.exceptions import (
    AllocationExhaustedError,
    OwnershipError,
    ValidationError,
)
from pyscicore.core.backends.precision import as_dtype
from pyscicore.core.validation import check_positive, check_shape

_logger = logging.getLogger(__name__)

MIN_SIZE_CLASS = 4096


def size_class(nbytes: int) -> int:
    """Smallest power of two >= nbytes, never below MIN_SIZE_CLASS."""
    if nbytes <= MIN_SIZE_CLASS:
        return MIN_SIZE_CLASS
    return 1 << (nbytes - 1).bit_length()


class Buffer:
    """
    Owned, typed view onto pooled storage.

    Attributes:
        shape: Logical shape
        dtype: Element type
        offset: Row offset of this buffer in its source (streaming views)
    """

    def __init__(
        self,
        manager: MemoryManager,
        storage: NDArray[np.uint8],
        shape: tuple[int, ...],
        dtype: np.dtype,
        offset: int = 0,
    ):
        self._manager = manager
        self._storage = storage
        self._valid = True
        self.shape = shape
        self.dtype = dtype
        self.offset = offset

    def __repr__(self) -> str:
        state = 'valid' if self._valid else 'released'
        return f"Buffer(shape={self.shape}, dtype={self.dtype}, {state})"

    @property
    def valid(self) -> bool:
        return self._valid

    @property
    def nbytes(self) -> int:
        return prod(self.shape) * self.dtype.itemsize

    @property
    def size_class(self) -> int:
        """Bytes of storage backing this buffer."""
        return self._storage.nbytes

    @property
    def capacity(self) -> int:
        """Elements the backing storage could hold."""
        return self.size_class // self.dtype.itemsize

    @property
    def strides(self) -> tuple[int, ...]:
        return self.array.strides

    @property
    def array(self) -> NDArray[Any]:
        """Writable ndarray view of the buffer contents."""
        if not self._valid:
            raise OwnershipError(
                f"{self!r} was released or transferred; its storage belongs to another owner"
            )
        return self._storage[:self.nbytes].view(self.dtype).reshape(self.shape)

    def __array__(self, dtype=None, copy=None):
        arr = self.array
        if dtype is not None:
            arr = arr.astype(dtype, copy=False)
        return arr.copy() if copy else arr

    def release(self) -> None:
        """Return the storage to the manager."""
        self._manager.release(self)

    def transfer(self) -> Buffer:
        """Move ownership to a new handle; this handle becomes invalid."""
        return self._manager.transfer(self)

    def __enter__(self) -> Buffer:
        return self

    def __exit__(self, *exc: Any) -> None:
        if self._valid:
            self.release()


@dataclass(frozen=True)
class MemoryStats:
    """Snapshot of MemoryManager counters."""
    in_use_bytes: int
    pooled_bytes: int
    peak_bytes: int
    ceiling_bytes: int
    live_buffers: int
    allocations: int
    reuses: int
    releases: int


class MemoryManager:
    """
    Size-class buffer pool with a hard memory ceiling.

    Args:
        ceiling_bytes: Upper bound on in-use + pooled bytes
        pool_cap_bytes: Maximum bytes retained on free lists
        working_set_bytes: Upper bound on a streaming window
        block_on_exhaustion: Wait for releases at the ceiling instead of
            raising AllocationExhaustedError
        acquire_timeout: Seconds a blocked acquire waits (None = forever)

    Example:
        >>> mm = MemoryManager(ceiling_bytes=2**30, pool_cap_bytes=2**28)
        >>> buf = mm.acquire((1000, 1000), 'f8')
        >>> buf.array[:] = 0.0
        >>> buf.release()
    """

    def __init__(
        self,
        ceiling_bytes: int,
        pool_cap_bytes: int | None = None,
        working_set_bytes: int | None = None,
        block_on_exhaustion: bool = False,
        acquire_timeout: float | None = None,
    ):
        if ceiling_bytes < MIN_SIZE_CLASS:
            raise ValidationError(
                f"ceiling_bytes: must be >= {MIN_SIZE_CLASS}, got {ceiling_bytes}"
            )
        self.ceiling_bytes = ceiling_bytes
        self.pool_cap_bytes = ceiling_bytes if pool_cap_bytes is None else pool_cap_bytes
        self.working_set_bytes = ceiling_bytes if working_set_bytes is None else working_set_bytes
        self.block_on_exhaustion = block_on_exhaustion
        self.acquire_timeout = acquire_timeout

        self._cond = threading.Condition()
        self._free: dict[int, list[NDArray[np.uint8]]] = {}
        self._in_use = 0
        self._pooled = 0
        self._peak = 0
        self._live = 0
        self._allocations = 0
        self._reuses = 0
        self._releases = 0

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> MemoryManager:
        return cls(
            ceiling_bytes=settings.memory_ceiling_bytes,
            pool_cap_bytes=settings.pool_cap_bytes,
            working_set_bytes=settings.working_set_bytes,
            block_on_exhaustion=settings.block_on_exhaustion,
            acquire_timeout=settings.acquire_timeout,
        )

    # === Internal bookkeeping (caller holds self._cond) ===

    def _take_free(self, cls: int) -> NDArray[np.uint8] | None:
        bucket = self._free.get(cls)
        if not bucket:
            return None
        storage = bucket.pop()
        self._pooled -= cls
        return storage

    def _trim_locked(self, needed: int) -> int:
        """Drop pooled storage, largest classes first, until needed bytes are freed."""
        freed = 0
        for cls in sorted(self._free, reverse=True):
            bucket = self._free[cls]
            while bucket and freed < needed:
                bucket.pop()
                self._pooled -= cls
                freed += cls
            if freed >= needed:
                break
        return freed

    def _exhausted(self, cls: int) -> AllocationExhaustedError:
        return AllocationExhaustedError(
            f"Cannot acquire {cls} bytes: {self._in_use} in use, {self._pooled} pooled, "
            f"ceiling {self.ceiling_bytes}",
            requested_bytes=cls,
            in_use_bytes=self._in_use,
            pooled_bytes=self._pooled,
            ceiling_bytes=self.ceiling_bytes,
        )

    # === Public API ===

    def acquire(self, shape: Any, dtype: Any = np.float64) -> Buffer:
        """
        Acquire an owned buffer of the given shape and dtype.

        Contents are uninitialized.

        Raises:
            AllocationExhaustedError: The ceiling would be exceeded (after
                trimming free lists), or a blocked wait timed out
            ValidationError: Invalid shape or dtype
        """
        shape = check_shape(shape)
        dt = as_dtype(dtype)
        cls = size_class(prod(shape) * dt.itemsize)

        with self._cond:
            if cls > self.ceiling_bytes:
                raise self._exhausted(cls)

            deadline = None
            if self.acquire_timeout is not None:
                deadline = time.monotonic() + self.acquire_timeout

            storage = None
            while True:
                storage = self._take_free(cls)
                if storage is not None:
                    self._reuses += 1
                    break
                overflow = self._in_use + self._pooled + cls - self.ceiling_bytes
                if overflow <= 0:
                    break
                if self._pooled and self._trim_locked(overflow) >= overflow:
                    _logger.debug("Trimmed pooled storage to fit %d-byte request", cls)
                    break
                if not self.block_on_exhaustion:
                    raise self._exhausted(cls)
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise self._exhausted(cls)
                self._cond.wait(timeout=remaining)

            # Reserve before allocating outside the lock
            self._in_use += cls
            self._live += 1
            self._peak = max(self._peak, self._in_use)

        if storage is None:
            try:
                storage = np.empty(cls, dtype=np.uint8)
            except MemoryError as e:
                with self._cond:
                    self._in_use -= cls
                    self._live -= 1
                    self._cond.notify_all()
                raise AllocationExhaustedError(
                    f"System allocation of {cls} bytes failed",
                    requested_bytes=cls,
                    ceiling_bytes=self.ceiling_bytes,
                ) from e
            with self._cond:
                self._allocations += 1

        return Buffer(self, storage, shape, dt)

    def _check_owner(self, buffer: Buffer) -> None:
        if buffer._manager is not self:
            raise OwnershipError(f"{buffer!r} belongs to a different MemoryManager")
        if not buffer._valid:
            raise OwnershipError(f"{buffer!r} was already released or transferred")

    def release(self, buffer: Buffer) -> None:
        """
        Return a buffer's storage to the pool.

        Raises:
            OwnershipError: The handle is not valid or not from this manager
        """
        with self._cond:
            self._check_owner(buffer)
            buffer._valid = False
            storage = buffer._storage
            cls = storage.nbytes
            self._in_use -= cls
            self._live -= 1
            self._releases += 1
            if self._pooled + cls <= self.pool_cap_bytes:
                self._free.setdefault(cls, []).append(storage)
                self._pooled += cls
            self._cond.notify_all()
        buffer._storage = None

    def transfer(self, buffer: Buffer) -> Buffer:
        """Move ownership of buffer's storage to a new handle."""
        with self._cond:
            self._check_owner(buffer)
            buffer._valid = False
            moved = Buffer(self, buffer._storage, buffer.shape, buffer.dtype, buffer.offset)
        buffer._storage = None
        return moved

    def from_array(self, array: Any) -> Buffer:
        """Acquire a buffer holding a copy of array."""
        arr = np.asarray(array)
        buf = self.acquire(arr.shape, arr.dtype)
        np.copyto(buf.array, arr)
        return buf

    def from_arrays(self, arrays: Any) -> tuple[Buffer, ...]:
        """
        Copy several arrays into owned buffers, all or nothing.

        Raises:
            AllocationExhaustedError: One copy does not fit; buffers already
                acquired for earlier arrays are released first
        """
        buffers: list[Buffer] = []
        try:
            for array in arrays:
                buffers.append(self.from_array(array))
        except BaseException:
            for buf in buffers:
                buf.release()
            raise
        return tuple(buffers)

    @contextmanager
    def buffer(self, shape: Any, dtype: Any = np.float64) -> Iterator[Buffer]:
        """Scoped acquire; released on exit unless ownership was transferred."""
        buf = self.acquire(shape, dtype)
        try:
            yield buf
        finally:
            if buf.valid:
                buf.release()

    def window_rows(self, source: ChunkSource, chunk_bytes: int | None = None) -> int:
        """
        Rows per streaming window for source.

        The window's size class never exceeds min(chunk_bytes, working_set_bytes).

        Raises:
            ValidationError: A single row does not fit in the window
        """
        limit = self.working_set_bytes
        if chunk_bytes is not None:
            check_positive(chunk_bytes, "chunk_bytes")
            limit = min(limit, chunk_bytes)
        # Largest size class that fits in the limit
        budget = max(MIN_SIZE_CLASS, 1 << (limit.bit_length() - 1))
        row_bytes = source.row_bytes
        if row_bytes == 0:
            return max(1, source.n_rows)
        rows = budget // row_bytes
        if rows == 0:
            raise ValidationError(
                f"chunk_bytes: one row needs {row_bytes} bytes but the window is {budget}"
            )
        return rows

    def with_chunked_view(
        self,
        source: Any,
        chunk_bytes: int | None = None,
    ) -> Iterator[Buffer]:
        """
        Stream a logical array through bounded windows.

        Yields one Buffer per window of consecutive rows, in row order. Each
        window is released before the next is acquired, so resident bytes
        stay within one window regardless of the source's total size. A
        consumer that needs to keep a window must transfer() it.

        Args:
            source: ChunkSource, ndarray, or .npy path
            chunk_bytes: Window size hint, bounded by working_set_bytes
        """
        source = ChunkSource.build(source)
        rows = self.window_rows(source, chunk_bytes)
        for start in range(0, source.n_rows, rows):
            stop = min(start + rows, source.n_rows)
            view = self.acquire((stop - start,) + source.row_shape, source.dtype)
            view.offset = start
            try:
                source.read_rows(start, stop, view.array)
                yield view
            finally:
                if view.valid:
                    view.release()

    def trim(self) -> int:
        """Drop all pooled storage. Returns the bytes freed."""
        with self._cond:
            freed = self._pooled
            self._free.clear()
            self._pooled = 0
            self._cond.notify_all()
        return freed

    def reset_peak(self) -> None:
        with self._cond:
            self._peak = self._in_use

    def stats(self) -> MemoryStats:
        with self._cond:
            return MemoryStats(
                in_use_bytes=self._in_use,
                pooled_bytes=self._pooled,
                peak_bytes=self._peak,
                ceiling_bytes=self.ceiling_bytes,
                live_buffers=self._live,
                allocations=self._allocations,
                reuses=self._reuses,
                releases=self._releases,
            )
