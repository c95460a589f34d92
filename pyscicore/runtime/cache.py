"""
Computation cache.

Memoizes the outputs of cache-eligible compute requests keyed by a content
fingerprint of (operation, inputs, configuration, plan). At most one
computation per fingerprint is in flight: concurrent callers with the same
fingerprint wait for the first caller's result instead of recomputing.

Cached arrays are owned by the cache and marked read-only. Callers receive
independent copies acquired from the MemoryManager, or borrow the cached
arrays through lease(), which pins the entry against eviction until the
lease ends. Eviction is least-recently-used among unpinned entries once the
cached bytes exceed the budget.

A computation that raises is never cached; every caller waiting on it sees
the same exception.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Sequence

import numpy as np
from numpy.typing import NDArray

from pyscicore.core.config import ComputeConfig, RuntimeSettings
from pyscicore.core.exceptions import ValidationError
from pyscicore.runtime.memory import Buffer, MemoryManager

_logger = logging.getLogger(__name__)

ComputeFn = Callable[[], Sequence[NDArray[Any]]]


def fingerprint(
    operation: str,
    inputs: Sequence[Any],
    config: ComputeConfig,
    plan: Any = None,
) -> str:
    """
    Content hash identifying a compute request.

    Covers the operation id, the result-affecting configuration, the chosen
    strategy and chunking (when a plan is given), and every input's dtype,
    shape and bytes.
    """
    h = hashlib.blake2b(digest_size=20)
    h.update(operation.encode())
    h.update(b'\x00')
    h.update(config.cache_key().encode())
    if plan is not None:
        h.update(f"\x00{plan.strategy};{plan.chunk_size}".encode())
    for value in inputs:
        arr = np.ascontiguousarray(value)
        h.update(f"\x00{arr.dtype.str}{arr.shape}".encode())
        h.update(arr.reshape(-1).view(np.uint8))
    return h.hexdigest()


@dataclass
class CacheEntry:
    """Cached outputs of one computation."""
    key: str
    arrays: tuple[NDArray[Any], ...]
    nbytes: int
    readers: int = 0
    hits: int = 0
    last_access: float = field(default_factory=time.monotonic)
    meta: Any = None


@dataclass
class _InFlight:
    done: threading.Event = field(default_factory=threading.Event)
    arrays: tuple[NDArray[Any], ...] | None = None
    error: BaseException | None = None
    meta: Any = None


@dataclass(frozen=True)
class CacheStats:
    entries: int
    cached_bytes: int
    budget_bytes: int
    hits: int
    misses: int
    computations: int
    evictions: int
    pinned: int


class ComputationCache:
    """
    Thread-safe single-flight result cache with an LRU byte budget.

    Example:
        >>> cache = ComputationCache(memory, budget_bytes=2**28)
        >>> key = fingerprint('matmul', (a, b), config)
        >>> outputs, hit = cache.get_or_compute(key, lambda: (a @ b,))
    """

    def __init__(self, memory: MemoryManager, budget_bytes: int, enabled: bool = True):
        if budget_bytes < 0:
            raise ValidationError(f"budget_bytes: must be >= 0, got {budget_bytes}")
        self._memory = memory
        self.budget_bytes = budget_bytes
        self.enabled = enabled
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._in_flight: dict[str, _InFlight] = {}
        self._cached_bytes = 0
        self._hits = 0
        self._misses = 0
        self._computations = 0
        self._evictions = 0

    @classmethod
    def from_settings(cls, memory: MemoryManager, settings: RuntimeSettings) -> ComputationCache:
        return cls(memory, settings.cache_budget_bytes, enabled=settings.cache_enabled)

    def _copy_out(self, arrays: Sequence[NDArray[Any]]) -> tuple[Buffer, ...]:
        return self._memory.from_arrays(arrays)

    def _evict_locked(self) -> None:
        """Evict least-recently-used unpinned entries until within budget."""
        for key in list(self._entries):
            if self._cached_bytes <= self.budget_bytes:
                return
            entry = self._entries[key]
            if entry.readers:
                continue
            del self._entries[key]
            self._cached_bytes -= entry.nbytes
            self._evictions += 1
            _logger.debug("Evicted cache entry %s (%d bytes)", key[:8], entry.nbytes)

    def _store_locked(self, key: str, arrays: tuple[NDArray[Any], ...], meta: Any = None) -> None:
        nbytes = sum(a.nbytes for a in arrays)
        if nbytes > self.budget_bytes:
            _logger.debug(
                "Result %s (%d bytes) exceeds cache budget %d; not cached",
                key[:8], nbytes, self.budget_bytes,
            )
            return
        self._entries[key] = CacheEntry(key=key, arrays=arrays, nbytes=nbytes, meta=meta)
        self._cached_bytes += nbytes
        self._evict_locked()

    def get_or_compute(self, key: str, compute_fn: ComputeFn) -> tuple[tuple[Buffer, ...], bool]:
        """
        Return cached outputs for key, computing them at most once.

        Args:
            key: Fingerprint from fingerprint()
            compute_fn: Produces the output arrays on a miss

        Returns:
            (owned output buffers, hit). hit is False for the caller that ran
            compute_fn and True for callers served from the cache or from
            another caller's in-flight computation.

        Raises:
            Whatever compute_fn raises; nothing is cached in that case
        """
        outputs, hit, _ = self.get_or_compute_with_meta(key, lambda: (compute_fn(), None))
        return outputs, hit

    def get_or_compute_with_meta(
        self,
        key: str,
        compute_fn: Callable[[], tuple[Sequence[NDArray[Any]], Any]],
    ) -> tuple[tuple[Buffer, ...], bool, Any]:
        """
        get_or_compute() for computations that also describe how they ran.

        compute_fn returns (arrays, meta). meta is stored with the entry and
        handed back unchanged to every caller served from it, so a hit reports
        what the computing caller actually did.

        Returns:
            (owned output buffers, hit, meta)
        """
        if not self.enabled:
            with self._lock:
                self._computations += 1
            arrays, meta = compute_fn()
            return self._copy_out(arrays), False, meta

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
                entry.hits += 1
                entry.last_access = time.monotonic()
                entry.readers += 1
                self._hits += 1
                leader = False
                pending = None
            else:
                pending = self._in_flight.get(key)
                leader = pending is None
                if leader:
                    pending = _InFlight()
                    self._in_flight[key] = pending
                    self._misses += 1
                    self._computations += 1
                else:
                    self._hits += 1

        if pending is None:
            try:
                return self._copy_out(entry.arrays), True, entry.meta
            finally:
                with self._lock:
                    entry.readers -= 1

        if not leader:
            pending.done.wait()
            if pending.error is not None:
                raise pending.error
            return self._copy_out(pending.arrays), True, pending.meta

        try:
            arrays, meta = compute_fn()
            outputs = tuple(np.array(a, copy=True) for a in arrays)
        except BaseException as e:
            pending.error = e
            with self._lock:
                del self._in_flight[key]
            pending.done.set()
            raise

        for a in outputs:
            a.flags.writeable = False
        pending.arrays = outputs
        pending.meta = meta
        with self._lock:
            self._store_locked(key, outputs, meta)
            del self._in_flight[key]
        pending.done.set()
        return self._copy_out(outputs), False, meta

    @contextmanager
    def lease(self, key: str) -> Iterator[tuple[NDArray[Any], ...] | None]:
        """
        Borrow cached arrays without copying.

        Yields the read-only arrays, or None on a miss. The entry cannot be
        evicted while the lease is held.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.readers += 1
                entry.hits += 1
                self._hits += 1
                self._entries.move_to_end(key)
                entry.last_access = time.monotonic()
        if entry is None:
            yield None
            return
        try:
            yield entry.arrays
        finally:
            with self._lock:
                entry.readers -= 1
                self._evict_locked()

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def invalidate(self, key: str) -> bool:
        """Drop one entry. Pinned entries are kept. Returns True if removed."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.readers:
                return False
            del self._entries[key]
            self._cached_bytes -= entry.nbytes
            return True

    def clear(self) -> None:
        """Drop every unpinned entry."""
        with self._lock:
            for key in [k for k, e in self._entries.items() if not e.readers]:
                self._cached_bytes -= self._entries.pop(key).nbytes
            if self._entries:
                _logger.info("Cache cleared; %d pinned entries kept", len(self._entries))

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                entries=len(self._entries),
                cached_bytes=self._cached_bytes,
                budget_bytes=self.budget_bytes,
                hits=self._hits,
                misses=self._misses,
                computations=self._computations,
                evictions=self._evictions,
                pinned=sum(1 for e in self._entries.values() if e.readers),
            )
