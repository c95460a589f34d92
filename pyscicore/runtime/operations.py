"""
Operation registry and built-in operations.

An Operation bundles what the runtime needs to execute one kind of request:
input validation, the workload size the selector plans for, a CPU
implementation (run through the worker pool or the linear-algebra adapter),
and optionally a GPU implementation. Numeric packages add their own through
register_operation().

Built-ins:
    Elementwise:  add, subtract, multiply, scale
    Reductions:   sum, dot, norm
    Linear algebra: matmul, lu, cholesky, qr, solve, lstsq, eigh, eig, det

Elementwise operations and reductions partition the flattened input; matmul
partitions rows of A. Factorizations and solvers run as a single unit on the
CPU LAPACK backend or on the GPU.

Operation implementations must not write to their inputs.
"""

from __future__ import annotations

import dataclasses
import operator
import threading
from dataclasses import dataclass
from math import prod
from typing import Any, Callable, TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

from pyscicore.core.capabilities import (
    STRATEGY_GPU,
    STRATEGY_PARALLEL,
    STRATEGY_SCALAR,
    STRATEGY_SIMD,
)
from pyscicore.core.config import ComputeConfig
from pyscicore.core.exceptions import ValidationError
from pyscicore.core.validation import (
    check_1d,
    check_2d,
    check_consistent_length,
    check_matmul_shapes,
    check_same_shape,
)
from pyscicore.runtime.selector import ExecutionPlan

if TYPE_CHECKING:
    from pyscicore.runtime.context import RuntimeContext

Inputs = tuple[NDArray[Any], ...]
Outputs = tuple[NDArray[Any], ...]
CpuImpl = Callable[['RuntimeContext', Inputs, ExecutionPlan, ComputeConfig], Outputs]
GpuImpl = Callable[['RuntimeContext', Inputs, ExecutionPlan], Outputs]


def _first_size(inputs: Inputs) -> int:
    return int(inputs[0].size)


def _common_dtype(inputs: Inputs) -> np.dtype:
    return np.result_type(*inputs)


@dataclass(frozen=True)
class Operation:
    """
    A registered compute operation.

    Attributes:
        name: Registry key
        arity: Number of inputs
        cpu: cpu(ctx, inputs, plan, config) -> outputs
        gpu: gpu(ctx, inputs, plan) -> outputs, or None if CPU only
        validate: Raises ValidationError for bad inputs (shapes already arrays)
        workload: Elements the selector plans for
        dtype_of: Element type the computation runs in, before precision
        partitionable: Whether the CPU implementation splits across workers
        description: One-line description
    """
    name: str
    arity: int
    cpu: CpuImpl
    gpu: GpuImpl | None = None
    validate: Callable[[Inputs], None] | None = None
    workload: Callable[[Inputs], int] = _first_size
    dtype_of: Callable[[Inputs], np.dtype] = _common_dtype
    partitionable: bool = True
    description: str = ''

    @property
    def strategies(self) -> tuple[str, ...]:
        """Strategies this operation implements."""
        strategies = [STRATEGY_SCALAR, STRATEGY_SIMD]
        if self.partitionable:
            strategies.append(STRATEGY_PARALLEL)
        if self.gpu is not None:
            strategies.append(STRATEGY_GPU)
        return tuple(strategies)


# === Helpers ===

def _cast(inputs: Inputs, dtype: np.dtype) -> Inputs:
    return tuple(np.asarray(a, dtype=dtype) for a in inputs)


def _discard(a: Any, b: Any) -> None:
    return None


def _tensor(array: NDArray[Any], device: str):
    import torch
    return torch.from_numpy(np.ascontiguousarray(array)).to(device)


def _host(tensor) -> NDArray[Any]:
    return tensor.detach().cpu().numpy()


def _flat(array: NDArray[Any]) -> NDArray[Any]:
    return array.reshape(-1)


# === Elementwise ===

def _binary(ufunc: np.ufunc) -> CpuImpl:
    def cpu(ctx, inputs, plan, config):
        a, b = _cast(inputs, plan.dtype)
        out = np.empty(a.shape, dtype=plan.dtype)
        fa, fb, fo = _flat(a), _flat(b), _flat(out)

        def kernel(start, stop):
            ufunc(fa[start:stop], fb[start:stop], out=fo[start:stop])

        ctx.pool.run(kernel, plan, _discard, fp_errors=config.fp_errors)
        return (out,)
    return cpu


def _torch_binary(name: str) -> GpuImpl:
    def gpu(ctx, inputs, plan):
        import torch
        a, b = (_tensor(x, plan.device) for x in _cast(inputs, plan.dtype))
        return (_host(getattr(torch, name)(a, b)),)
    return gpu


def _validate_binary(inputs: Inputs) -> None:
    check_same_shape(inputs[0], inputs[1], ('a', 'b'))


def _validate_scale(inputs: Inputs) -> None:
    if inputs[1].size != 1:
        raise ValidationError(
            f"alpha: expected a scalar, got array of shape {inputs[1].shape}"
        )


def _scale_cpu(ctx, inputs, plan, config):
    (x,) = _cast(inputs[:1], plan.dtype)
    alpha = np.asarray(inputs[1]).reshape(()).astype(plan.dtype)
    out = np.empty(x.shape, dtype=plan.dtype)
    fx, fo = _flat(x), _flat(out)

    def kernel(start, stop):
        np.multiply(fx[start:stop], alpha, out=fo[start:stop])

    ctx.pool.run(kernel, plan, _discard, fp_errors=config.fp_errors)
    return (out,)


def _scale_gpu(ctx, inputs, plan):
    x = _tensor(np.asarray(inputs[0], dtype=plan.dtype), plan.device)
    alpha = np.asarray(inputs[1]).reshape(()).astype(plan.dtype).item()
    return (_host(x * alpha),)


# === Reductions ===

def _sum_cpu(ctx, inputs, plan, config):
    (x,) = _cast(inputs, plan.dtype)
    fx = _flat(x)
    total = ctx.pool.run(
        lambda start, stop: fx[start:stop].sum(dtype=plan.dtype),
        plan,
        operator.add,
        fp_errors=config.fp_errors,
        initial=plan.dtype.type(0),
    )
    return (np.asarray(total, dtype=plan.dtype),)


def _sum_gpu(ctx, inputs, plan):
    x = _tensor(np.asarray(inputs[0], dtype=plan.dtype), plan.device)
    return (_host(x.sum()),)


def _validate_dot(inputs: Inputs) -> None:
    check_1d(inputs[0], 'x')
    check_1d(inputs[1], 'y')
    check_consistent_length(inputs[0], inputs[1], names=('x', 'y'))


def _dot_cpu(ctx, inputs, plan, config):
    x, y = _cast(inputs, plan.dtype)
    total = ctx.pool.run(
        lambda start, stop: np.dot(x[start:stop], y[start:stop]),
        plan,
        operator.add,
        fp_errors=config.fp_errors,
        initial=plan.dtype.type(0),
    )
    return (np.asarray(total, dtype=plan.dtype),)


def _dot_gpu(ctx, inputs, plan):
    x, y = (_tensor(a, plan.device) for a in _cast(inputs, plan.dtype))
    return (_host((x * y).sum()),)


def _nrm2_partial(chunk: NDArray[Any]) -> tuple[float, float]:
    """(scale, scaled sum of squares) of one chunk, as in LAPACK's dnrm2."""
    absx = np.abs(chunk)
    scale = absx.max() if absx.size else absx.dtype.type(0)
    if scale == 0:
        return scale, absx.dtype.type(0)
    if not np.isfinite(scale):
        return scale, absx.dtype.type(1)
    return scale, np.sum(np.square(absx / scale))


def _nrm2_combine(p: tuple[float, float], q: tuple[float, float]) -> tuple[float, float]:
    (s1, q1), (s2, q2) = p, q
    s = np.maximum(s1, s2)
    if s == 0 or not np.isfinite(s):
        return s, q1 + q2
    return s, q1 * (s1 / s) ** 2 + q2 * (s2 / s) ** 2


def _norm_cpu(ctx, inputs, plan, config):
    (x,) = _cast(inputs, plan.dtype)
    fx = _flat(x)
    real = np.finfo(plan.dtype).dtype
    scale, ssq = ctx.pool.run(
        lambda start, stop: _nrm2_partial(fx[start:stop]),
        plan,
        _nrm2_combine,
        fp_errors=config.fp_errors,
        initial=(real.type(0), real.type(0)),
    )
    return (np.asarray(scale * np.sqrt(ssq), dtype=real),)


def _norm_gpu(ctx, inputs, plan):
    import torch
    x = _tensor(np.asarray(inputs[0], dtype=plan.dtype), plan.device)
    return (_host(torch.linalg.vector_norm(x.reshape(-1))),)


# === Linear algebra ===

def _validate_matmul(inputs: Inputs) -> None:
    check_matmul_shapes(inputs[0], inputs[1])


def _matmul_workload(inputs: Inputs) -> int:
    return int(inputs[0].shape[0] * inputs[1].shape[1])


def _matmul_cpu(ctx, inputs, plan, config):
    a, b = _cast(inputs, plan.dtype)
    m, n = a.shape[0], b.shape[1]
    if plan.strategy != STRATEGY_PARALLEL or m == 0 or n == 0:
        with np.errstate(all=config.fp_errors):
            return (ctx.linalg.matmul(a, b),)

    # Partition rows of A; chunk_size counts output elements
    rows = dataclasses.replace(plan, workload_size=m, chunk_size=max(1, plan.chunk_size // n))
    out = np.empty((m, n), dtype=plan.dtype)

    def kernel(start, stop):
        out[start:stop] = ctx.linalg.matmul(a[start:stop], b)

    ctx.pool.run(kernel, rows, _discard, fp_errors=config.fp_errors)
    return (out,)


def _matmul_gpu(ctx, inputs, plan):
    a, b = _cast(inputs, plan.dtype)
    return (ctx.linalg.matmul(a, b, device=plan.device),)


def _validate_matrix(inputs: Inputs) -> None:
    check_2d(inputs[0], 'A')


def _matrix_workload(inputs: Inputs) -> int:
    return int(prod(inputs[0].shape))


def _float_dtype(inputs: Inputs) -> np.dtype:
    dt = _common_dtype(inputs)
    return dt if dt.kind in 'fc' else np.dtype(np.float64)


def _as_outputs(value: Any) -> Outputs:
    if isinstance(value, tuple):
        return tuple(np.asarray(v) for v in value)
    return (np.asarray(value),)


def _linalg(routine: str) -> tuple[CpuImpl, GpuImpl]:
    def cpu(ctx, inputs, plan, config):
        with np.errstate(all=config.fp_errors):
            return _as_outputs(getattr(ctx.linalg, routine)(*_cast(inputs, plan.dtype)))

    def gpu(ctx, inputs, plan):
        return _as_outputs(
            getattr(ctx.linalg, routine)(*_cast(inputs, plan.dtype), device=plan.device)
        )
    return cpu, gpu


def _qr_outputs(q, r, rank) -> Outputs:
    return q, r, np.asarray(rank, dtype=np.int64)


def _qr_cpu(ctx, inputs, plan, config):
    (a,) = _cast(inputs, plan.dtype)
    with np.errstate(all=config.fp_errors):
        return _qr_outputs(*ctx.linalg.qr(a))


def _qr_gpu(ctx, inputs, plan):
    (a,) = _cast(inputs, plan.dtype)
    return _qr_outputs(*ctx.linalg.qr(a, device=plan.device))


def _validate_system(inputs: Inputs) -> None:
    check_2d(inputs[0], 'A')
    if inputs[1].ndim not in (1, 2):
        raise ValidationError(f"b: expected 1D or 2D, got {inputs[1].ndim}D")


# === Registry ===

_REGISTRY: dict[str, Operation] = {}
_registry_lock = threading.Lock()


def register_operation(op: Operation, *, replace: bool = False) -> Operation:
    """
    Add an operation to the registry.

    Args:
        op: Operation to register
        replace: Allow overwriting an existing registration

    Raises:
        ValidationError: Duplicate name (without replace) or bad arity
    """
    if not op.name:
        raise ValidationError("name: operation name must be non-empty")
    if op.arity < 1:
        raise ValidationError(f"arity: must be >= 1, got {op.arity}")
    with _registry_lock:
        if op.name in _REGISTRY and not replace:
            raise ValidationError(
                f"operation {op.name!r} is already registered; pass replace=True to override"
            )
        _REGISTRY[op.name] = op
    return op


def get_operation(name: str) -> Operation:
    """
    Look up a registered operation.

    Raises:
        ValidationError: Unknown operation
    """
    with _registry_lock:
        op = _REGISTRY.get(name)
    if op is None:
        raise ValidationError(
            f"Unknown operation {name!r}. Available: {', '.join(available_operations())}"
        )
    return op


def available_operations() -> tuple[str, ...]:
    with _registry_lock:
        return tuple(sorted(_REGISTRY))


def _register_builtins() -> None:
    for name, ufunc, torch_name in (
        ('add', np.add, 'add'),
        ('subtract', np.subtract, 'subtract'),
        ('multiply', np.multiply, 'multiply'),
    ):
        register_operation(Operation(
            name=name,
            arity=2,
            cpu=_binary(ufunc),
            gpu=_torch_binary(torch_name),
            validate=_validate_binary,
            description=f"Elementwise {name}",
        ))

    register_operation(Operation(
        name='scale', arity=2, cpu=_scale_cpu, gpu=_scale_gpu,
        validate=_validate_scale,
        dtype_of=lambda inputs: inputs[0].dtype,
        description="alpha * x",
    ))
    register_operation(Operation(
        name='sum', arity=1, cpu=_sum_cpu, gpu=_sum_gpu,
        description="Sum of all elements",
    ))
    register_operation(Operation(
        name='dot', arity=2, cpu=_dot_cpu, gpu=_dot_gpu,
        validate=_validate_dot,
        description="Inner product of two vectors (no conjugation)",
    ))
    register_operation(Operation(
        name='norm', arity=1, cpu=_norm_cpu, gpu=_norm_gpu,
        dtype_of=_float_dtype,
        description="Euclidean norm of all elements",
    ))
    register_operation(Operation(
        name='matmul', arity=2, cpu=_matmul_cpu, gpu=_matmul_gpu,
        validate=_validate_matmul,
        workload=_matmul_workload,
        description="Matrix product A @ B",
    ))
    register_operation(Operation(
        name='qr', arity=1, cpu=_qr_cpu, gpu=_qr_gpu,
        validate=_validate_matrix,
        workload=_matrix_workload,
        dtype_of=_float_dtype,
        partitionable=False,
        description="Reduced QR; outputs (Q, R, rank)",
    ))

    for name, arity, description in (
        ('lu', 1, "LU with partial pivoting; outputs (P, L, U)"),
        ('cholesky', 1, "Lower Cholesky factor"),
        ('eigh', 1, "Hermitian eigendecomposition; outputs (w, V)"),
        ('eig', 1, "General eigendecomposition; outputs (w, V)"),
        ('det', 1, "Determinant"),
        ('solve', 2, "Solve A x = b"),
        ('lstsq', 2, "Minimum-norm least-squares solution of A x = b"),
    ):
        cpu, gpu = _linalg(name)
        register_operation(Operation(
            name=name,
            arity=arity,
            cpu=cpu,
            gpu=gpu,
            validate=_validate_system if arity == 2 else _validate_matrix,
            workload=_matrix_workload,
            dtype_of=_float_dtype,
            partitionable=False,
            description=description,
        ))


_register_builtins()
