"""
Execution strategy selection.

select() turns (workload size, dtype, per-call configuration) plus the
immutable CapabilityDescriptor and RuntimeSettings into an ExecutionPlan.
It is a pure function of its arguments: identical inputs always produce an
identical plan, which keeps results reproducible across runs.

Policy (thresholds come from RuntimeSettings, never constants):
    - GPU when workload_size > gpu_threshold and a device is usable for dtype
    - parallel (SIMD + multi-threaded) when workload_size > parallel_threshold
      and the CPU vectorizes
    - SIMD when workload_size >= simd_threshold and the CPU vectorizes
    - scalar otherwise

Tie-break: workloads below simd_threshold take the lowest-overhead strategy
the host offers (scalar < SIMD < parallel < GPU); larger workloads take the
highest-throughput strategy whose threshold they pass.

A strategy hint forces a strategy. If the host cannot honour it the plan
falls back along GPU -> parallel -> SIMD -> scalar, records why in
ExecutionPlan.fallbacks and emits a RuntimeWarning.
"""

from __future__ import annotations

from dataclasses import dataclass
from math import ceil
from typing import Iterable
import warnings

import numpy as np

from pyscicore.core.capabilities import (
    STRATEGY_AUTO,
    STRATEGY_GPU,
    STRATEGY_ORDER,
    STRATEGY_PARALLEL,
    STRATEGY_SCALAR,
    STRATEGY_SIMD,
)
from pyscicore.core.config import ComputeConfig, RuntimeSettings
from pyscicore.core.exceptions import CapabilityUnavailableError, ValidationError
from pyscicore.core.backends.precision import resolve_dtype
from pyscicore.runtime.detector import CapabilityDescriptor


@dataclass(frozen=True)
class ExecutionPlan:
    """
    How one compute request will run.

    Attributes:
        strategy: One of STRATEGY_SCALAR / SIMD / PARALLEL / GPU
        chunk_size: Elements per work unit
        worker_count: Workers the request may occupy
        workload_size: Total elements in the workload
        dtype: Element type the computation runs in
        vector_width: Vector width in bits the chunks are aligned for (0 = none)
        device: 'cpu' or a torch device string ('cuda:0', 'mps')
        fallbacks: (strategy, reason) pairs for hinted strategies the host refused
    """
    strategy: str
    chunk_size: int
    worker_count: int
    workload_size: int
    dtype: np.dtype
    vector_width: int = 0
    device: str = 'cpu'
    fallbacks: tuple[tuple[str, str], ...] = ()

    @property
    def n_chunks(self) -> int:
        if self.workload_size == 0:
            return 0
        return ceil(self.workload_size / self.chunk_size)

    @property
    def is_gpu(self) -> bool:
        return self.strategy == STRATEGY_GPU

    def partitions(self) -> Iterable[tuple[int, int, int]]:
        """Yield (index, start, stop) for every chunk, in partition order."""
        for index in range(self.n_chunks):
            start = index * self.chunk_size
            yield index, start, min(start + self.chunk_size, self.workload_size)


def _rank(strategy: str) -> int:
    return STRATEGY_ORDER.index(strategy)


def require_strategy(
    strategy: str,
    descriptor: CapabilityDescriptor,
    dtype: np.dtype,
    max_workers: int | None = None,
) -> None:
    """
    Check the host can run strategy for dtype.

    Raises:
        CapabilityUnavailableError: With the reason the host refuses it
    """
    if strategy == STRATEGY_SCALAR:
        return
    if strategy in (STRATEGY_SIMD, STRATEGY_PARALLEL) and not descriptor.simd_available:
        raise CapabilityUnavailableError(
            f"{strategy} requested but the CPU reports no vector instruction set",
            strategy=strategy,
            reason='no_simd',
        )
    if strategy == STRATEGY_PARALLEL:
        workers = min(descriptor.worker_pool_size, max_workers or descriptor.worker_pool_size)
        if workers < 2:
            raise CapabilityUnavailableError(
                f"parallel requested but only {workers} worker is available",
                strategy=strategy,
                reason='single_worker',
            )
    if strategy == STRATEGY_GPU:
        if descriptor.accelerator is None:
            raise CapabilityUnavailableError(
                "gpu requested but no CUDA or MPS device is available",
                strategy=strategy,
                reason='no_device',
            )
        if dtype.itemsize >= 8 and dtype.kind == 'f' and not descriptor.accelerator.supports_fp64:
            raise CapabilityUnavailableError(
                f"gpu requested for {dtype} but {descriptor.accelerator.device_type} "
                "has no float64 support",
                strategy=strategy,
                reason='no_fp64',
            )
        if dtype.kind == 'c' and dtype.itemsize >= 16 and not descriptor.accelerator.supports_fp64:
            raise CapabilityUnavailableError(
                f"gpu requested for {dtype} but {descriptor.accelerator.device_type} "
                "has no complex128 support",
                strategy=strategy,
                reason='no_fp64',
            )


def _host_ok(strategy, descriptor, dtype, max_workers) -> bool:
    try:
        require_strategy(strategy, descriptor, dtype, max_workers)
    except CapabilityUnavailableError:
        return False
    return True


def _lanes(descriptor: CapabilityDescriptor, dtype: np.dtype) -> int:
    return max(1, (descriptor.max_vector_width // 8) // dtype.itemsize)


def _align_up(value: int, multiple: int) -> int:
    return ((value + multiple - 1) // multiple) * multiple


def _build_plan(
    strategy: str,
    workload_size: int,
    dtype: np.dtype,
    config: ComputeConfig,
    descriptor: CapabilityDescriptor,
    settings: RuntimeSettings,
    fallbacks: tuple[tuple[str, str], ...],
) -> ExecutionPlan:
    itemsize = dtype.itemsize
    ws_elements = max(1, settings.working_set_bytes // itemsize)
    size = max(1, workload_size)

    if strategy == STRATEGY_SCALAR:
        return ExecutionPlan(
            strategy=strategy,
            chunk_size=min(size, ws_elements),
            worker_count=1,
            workload_size=workload_size,
            dtype=dtype,
            fallbacks=fallbacks,
        )

    if strategy == STRATEGY_GPU:
        chunk = size
        memory = descriptor.accelerator.memory_bytes
        if memory:
            # Leave room for inputs, outputs and temporaries on the device
            chunk = min(chunk, max(1, memory // (4 * itemsize)))
        return ExecutionPlan(
            strategy=strategy,
            chunk_size=chunk,
            worker_count=1,
            workload_size=workload_size,
            dtype=dtype,
            device=descriptor.accelerator.torch_device,
            fallbacks=fallbacks,
        )

    lanes = _lanes(descriptor, dtype)
    width = descriptor.max_vector_width

    if strategy == STRATEGY_SIMD:
        chunk = min(size, ws_elements)
        if chunk > lanes:
            chunk -= chunk % lanes
        return ExecutionPlan(
            strategy=strategy,
            chunk_size=chunk,
            worker_count=1,
            workload_size=workload_size,
            dtype=dtype,
            vector_width=width,
            fallbacks=fallbacks,
        )

    workers = descriptor.worker_pool_size
    if config.max_workers is not None:
        workers = min(workers, config.max_workers)
    target = ceil(size / (workers * settings.chunks_per_worker))
    chunk = _align_up(max(settings.min_chunk_elements, target), lanes)
    # All in-flight chunks together stay inside the working set
    chunk = min(chunk, max(lanes, ws_elements // workers))
    chunk = max(1, min(chunk, size))
    n_chunks = ceil(size / chunk)
    return ExecutionPlan(
        strategy=strategy,
        chunk_size=chunk,
        worker_count=max(1, min(workers, n_chunks)),
        workload_size=workload_size,
        dtype=dtype,
        vector_width=width,
        fallbacks=fallbacks,
    )


def select(
    workload_size: int,
    dtype,
    config: ComputeConfig,
    descriptor: CapabilityDescriptor,
    settings: RuntimeSettings,
    *,
    allowed: Iterable[str] = STRATEGY_ORDER,
) -> ExecutionPlan:
    """
    Choose an execution strategy for one unit of work.

    Args:
        workload_size: Number of elements the request processes
        dtype: Input element type (precision from config is applied)
        config: Per-call configuration (strategy hint, precision, max_workers)
        descriptor: Host capabilities
        settings: Runtime thresholds and limits
        allowed: Strategies the operation implements; others are never chosen

    Returns:
        ExecutionPlan

    Raises:
        ValidationError: If workload_size is negative or allowed is empty
    """
    if workload_size < 0:
        raise ValidationError(f"workload_size: must be >= 0, got {workload_size}")
    allowed = tuple(s for s in STRATEGY_ORDER if s in set(allowed))
    if not allowed:
        raise ValidationError("allowed: at least one strategy is required")

    dt = resolve_dtype(dtype, config.precision)
    fallbacks: list[tuple[str, str]] = []

    if config.strategy != STRATEGY_AUTO:
        # Walk the fallback chain from the hinted strategy downwards
        for strategy in reversed(STRATEGY_ORDER[:_rank(config.strategy) + 1]):
            if strategy not in allowed:
                fallbacks.append((strategy, f"operation has no {strategy} implementation"))
                continue
            try:
                require_strategy(strategy, descriptor, dt, config.max_workers)
            except CapabilityUnavailableError as e:
                fallbacks.append((strategy, str(e)))
                continue
            if fallbacks:
                warnings.warn(
                    f"strategy {config.strategy!r} unavailable, falling back to {strategy!r}: "
                    + "; ".join(reason for _, reason in fallbacks),
                    RuntimeWarning,
                    stacklevel=2,
                )
            return _build_plan(
                strategy, workload_size, dt, config, descriptor, settings, tuple(fallbacks)
            )
        # Scalar missing from allowed: fall through to automatic choice

    capable = [
        s for s in allowed
        if _host_ok(s, descriptor, dt, config.max_workers)
    ]
    if not capable:
        capable = [allowed[0]]

    if workload_size < settings.simd_threshold:
        chosen = min(capable, key=_rank)
    else:
        thresholds = {
            STRATEGY_SCALAR: -1,
            STRATEGY_SIMD: settings.simd_threshold - 1,
            STRATEGY_PARALLEL: settings.parallel_threshold,
            STRATEGY_GPU: settings.gpu_threshold,
        }
        passing = [s for s in capable if workload_size > thresholds[s]]
        chosen = max(passing, key=_rank) if passing else min(capable, key=_rank)

    return _build_plan(chosen, workload_size, dt, config, descriptor, settings, tuple(fallbacks))
