"""
Runtime context and the compute-request API.

RuntimeContext is constructed explicitly and holds every runtime component:
the capability descriptor, settings, memory manager, worker pool, cache and
linear-algebra adapter. Nothing reads ambient globals after construction, so
tests and embedding applications can run several independently configured
contexts side by side. default_context() lazily builds one shared instance
for callers that don't need their own.

Request pipeline (context.compute):
    validate inputs -> select plan -> (cache) -> execute via pool or
    linear-algebra adapter -> copy outputs into owned Buffers -> Result
"""

from __future__ import annotations

import atexit
import dataclasses
import logging
import threading
import warnings
from typing import Any, Callable, TypeVar

from pyscicore.core.capabilities import STRATEGY_AUTO, STRATEGY_GPU
from pyscicore.core.backends.precision import dtype_tag
from pyscicore.core.compute.timing import Timer
from pyscicore.core.config import ComputeConfig, RuntimeSettings, get_settings
from pyscicore.core.exceptions import BackendUnavailableError, PyScicoreError, ValidationError
from pyscicore.core.result import Result
from pyscicore.core.validation import check_array
from pyscicore.linalg.adapter import LinalgAdapter
from pyscicore.runtime.cache import ComputationCache, fingerprint
from pyscicore.runtime.detector import CapabilityDescriptor, detect
from pyscicore.runtime.executor import WorkerPool
from pyscicore.runtime.memory import Buffer, MemoryManager
from pyscicore.runtime.operations import Operation, get_operation
from pyscicore.runtime.selector import ExecutionPlan, select

_logger = logging.getLogger(__name__)

T = TypeVar('T')
_NOTHING = object()


class RuntimeContext:
    """
    Dependency-injected container for the runtime components.

    Build with RuntimeContext.create() unless components need replacing
    (tests inject synthetic descriptors this way).

    Example:
        >>> with RuntimeContext.create() as ctx:
        ...     result = ctx.compute('matmul', A, B)
        ...     C = result.output.array
    """

    def __init__(
        self,
        descriptor: CapabilityDescriptor,
        settings: RuntimeSettings,
        memory: MemoryManager,
        pool: WorkerPool,
        cache: ComputationCache,
        linalg: LinalgAdapter,
    ):
        self.descriptor = descriptor
        self.settings = settings
        self.memory = memory
        self.pool = pool
        self.cache = cache
        self.linalg = linalg
        self._closed = False

    @classmethod
    def create(
        cls,
        settings: RuntimeSettings | None = None,
        descriptor: CapabilityDescriptor | None = None,
    ) -> RuntimeContext:
        """
        Build a context from settings.

        Args:
            settings: Defaults to get_settings()
            descriptor: Defaults to detect(settings); pass a synthetic one to
                plan for a different host
        """
        settings = settings or get_settings()
        descriptor = descriptor or detect(settings)
        memory = MemoryManager.from_settings(settings)
        return cls(
            descriptor=descriptor,
            settings=settings,
            memory=memory,
            pool=WorkerPool(descriptor.worker_pool_size, settings.queue_depth),
            cache=ComputationCache.from_settings(memory, settings),
            linalg=LinalgAdapter(descriptor, settings),
        )

    @property
    def closed(self) -> bool:
        return self._closed

    # === Compute API ===

    def _prepare(
        self,
        operation: str | Operation,
        inputs: tuple[Any, ...],
    ) -> tuple[Operation, tuple[Any, ...]]:
        if self._closed:
            raise PyScicoreError("RuntimeContext is closed")
        op = operation if isinstance(operation, Operation) else get_operation(operation)
        if len(inputs) != op.arity:
            raise ValidationError(
                f"{op.name}: expected {op.arity} inputs, got {len(inputs)}"
            )
        arrays = tuple(check_array(x, f"{op.name} input {i}") for i, x in enumerate(inputs))
        if op.validate is not None:
            op.validate(arrays)
        return op, arrays

    def _select(self, op: Operation, arrays: tuple[Any, ...], config: ComputeConfig, allowed=None):
        return select(
            op.workload(arrays),
            op.dtype_of(arrays),
            config,
            self.descriptor,
            self.settings,
            allowed=op.strategies if allowed is None else allowed,
        )

    def plan(
        self,
        operation: str | Operation,
        *inputs: Any,
        config: ComputeConfig | None = None,
    ) -> ExecutionPlan:
        """The ExecutionPlan compute() would use, without running anything."""
        op, arrays = self._prepare(operation, inputs)
        return self._select(op, arrays, config or ComputeConfig())

    def compute(
        self,
        operation: str | Operation,
        *inputs: Any,
        config: ComputeConfig | None = None,
    ) -> Result[Buffer]:
        """
        Execute a compute request.

        Args:
            operation: Registered operation name (or an Operation)
            *inputs: Array-likes or Buffers; never modified
            config: Per-call configuration

        Returns:
            Result whose outputs are Buffers owned by the caller. info holds
            'operation', 'strategy', 'chunk_size', 'worker_count', 'device',
            'dtype' and 'cache_hit'.

        Raises:
            ValidationError: Unknown operation or invalid inputs
            BackendError: Normalized linear-algebra failure
            WorkerFailureError: A work unit failed
            AllocationExhaustedError: Outputs do not fit under the memory ceiling
        """
        config = config or ComputeConfig()
        op, arrays = self._prepare(operation, inputs)

        timer = Timer()
        timer.start()
        with timer.section('select'):
            plan = self._select(op, arrays, config)
        if plan.is_gpu:
            timer.attach_device(plan.device)
        notes = [f"{strategy} unavailable: {reason}" for strategy, reason in plan.fallbacks]
        _logger.debug(
            "%s: %s plan, %d elements, %s",
            op.name, plan.strategy, plan.workload_size, dtype_tag(plan.dtype),
        )

        def execute():
            executed = plan
            runtime_notes = []
            if executed.is_gpu:
                try:
                    # Raises BackendUnavailableError if torch or the device is missing
                    backend = self.linalg.backend_for(executed.device)
                    with backend.device_errors(op.name):
                        return op.gpu(self, arrays, executed), (executed, ())
                except BackendUnavailableError as e:
                    message = f"GPU execution failed ({e}); falling back to CPU"
                    warnings.warn(message, RuntimeWarning, stacklevel=3)
                    runtime_notes.append(message)
                    executed = self._select(
                        op,
                        arrays,
                        dataclasses.replace(config, strategy=STRATEGY_AUTO),
                        allowed=tuple(s for s in op.strategies if s != STRATEGY_GPU),
                    )
            return op.cpu(self, arrays, executed, config), (executed, tuple(runtime_notes))

        if config.cacheable and self.cache.enabled:
            with timer.section('fingerprint'):
                key = fingerprint(op.name, arrays, config, plan)
            with timer.section('execute'):
                outputs, hit, (plan, runtime_notes) = self.cache.get_or_compute_with_meta(
                    key, execute
                )
        else:
            with timer.section('execute'):
                raw, (plan, runtime_notes) = execute()
            with timer.section('copy_out'):
                outputs = self.memory.from_arrays(raw)
            hit = False
        notes.extend(runtime_notes)
        timer.stop()

        info = {
            'operation': op.name,
            'strategy': plan.strategy,
            'chunk_size': plan.chunk_size,
            'worker_count': plan.worker_count,
            'workload_size': plan.workload_size,
            'device': plan.device,
            'dtype': str(plan.dtype),
            'cache_hit': hit,
        }
        if self.linalg.initialized:
            info['blas_vendor'] = self.linalg.handle.vendor

        backend_name = plan.device if plan.is_gpu else f"cpu_{plan.strategy}"
        return Result(
            outputs=outputs,
            info=info,
            timing=timer.result(),
            backend_name=backend_name,
            warnings=tuple(notes),
        )

    def reduce_chunks(
        self,
        source: Any,
        fn: Callable[[Any], T],
        combine: Callable[[T, T], T],
        *,
        chunk_bytes: int | None = None,
        initial: Any = _NOTHING,
    ) -> T:
        """
        Fold fn over a logical array streamed through bounded windows.

        Args:
            source: ChunkSource, ndarray or .npy path
            fn: Maps one window (ndarray, rows in order) to a partial result;
                must not keep a reference to the window
            combine: Associative merge, applied in row order
            chunk_bytes: Window size hint, bounded by working_set_bytes
            initial: Result for an empty source

        Raises:
            ValidationError: Empty source without an initial value
        """
        result = initial
        for view in self.memory.with_chunked_view(source, chunk_bytes):
            partial = fn(view.array)
            result = partial if result is _NOTHING else combine(result, partial)
        if result is _NOTHING:
            raise ValidationError("source: empty source and no initial value")
        return result

    # === Lifecycle ===

    def close(self) -> None:
        """Shut down the pool, tear down backend handles, drop pooled memory."""
        if self._closed:
            return
        self._closed = True
        self.pool.shutdown()
        self.linalg.close()
        self.cache.clear()
        self.memory.trim()
        _logger.debug("Runtime context closed")

    def __enter__(self) -> RuntimeContext:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


_default: RuntimeContext | None = None
_default_lock = threading.Lock()


def _close_default() -> None:
    global _default
    with _default_lock:
        if _default is not None:
            _default.close()
            _default = None


def default_context() -> RuntimeContext:
    """
    The process-wide shared context, built on first call.

    Closed automatically at interpreter exit.
    """
    global _default
    ctx = _default
    if ctx is not None and not ctx.closed:
        return ctx
    with _default_lock:
        if _default is None or _default.closed:
            _default = RuntimeContext.create()
            atexit.register(_close_default)
        return _default


def reset_default_context() -> None:
    """Close and forget the shared context (for testing)."""
    _close_default()


def compute(operation: str | Operation, *inputs: Any, config: ComputeConfig | None = None) -> Result[Buffer]:
    """compute() on the default context."""
    return default_context().compute(operation, *inputs, config=config)
