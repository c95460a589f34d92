"""
Numerical precision helpers and dtype resolution.

Provides machine epsilon, element type tags, and the rules that turn a
request's precision setting into the concrete dtype a kernel runs in.
"""

import numpy as np
from typing import Any

from pyscicore.core.exceptions import ValidationError


# Element type tags understood by the runtime
SUPPORTED_DTYPES = frozenset({
    np.dtype(np.float32),
    np.dtype(np.float64),
    np.dtype(np.complex64),
    np.dtype(np.complex128),
    np.dtype(np.int32),
    np.dtype(np.int64),
    np.dtype(np.uint8),
})

_FP32_OF = {
    np.dtype(np.float64): np.dtype(np.float32),
    np.dtype(np.complex128): np.dtype(np.complex64),
}
_FP64_OF = {
    np.dtype(np.float32): np.dtype(np.float64),
    np.dtype(np.complex64): np.dtype(np.complex128),
}


def as_dtype(dtype: Any) -> np.dtype:
    """
    Normalize a dtype-like to a supported numpy dtype.

    Raises:
        ValidationError: If the dtype is not an element type the runtime handles
    """
    try:
        dt = np.dtype(dtype)
    except TypeError as e:
        raise ValidationError(f"dtype: not a valid dtype: {dtype!r}") from e
    if dt not in SUPPORTED_DTYPES:
        raise ValidationError(
            f"dtype: {dt} not supported, expected one of "
            f"{sorted(str(d) for d in SUPPORTED_DTYPES)}"
        )
    return dt


def dtype_tag(dtype: Any) -> str:
    """Short element type tag, e.g. 'f8' for float64."""
    dt = np.dtype(dtype)
    return f"{dt.kind}{dt.itemsize}"


def resolve_dtype(dtype: Any, precision: str) -> np.dtype:
    """
    Apply a precision request to an input dtype.

    Args:
        dtype: Input element type
        precision: 'auto' (keep), 'fp32' or 'fp64'

    Returns:
        The dtype computation should run in. Integer inputs are promoted to
        float64 ('auto'/'fp64') or float32 ('fp32').
    """
    dt = np.dtype(dtype)
    if dt.kind in 'iub':
        dt = np.dtype(np.float32 if precision == 'fp32' else np.float64)
    if precision == 'fp32':
        return _FP32_OF.get(dt, dt)
    if precision == 'fp64':
        return _FP64_OF.get(dt, dt)
    return dt


def machine_epsilon(dtype: np.dtype | type = np.float64) -> float:
    """
    Get machine epsilon for a given dtype.

    Args:
        dtype: NumPy dtype or type

    Returns:
        Machine epsilon for the dtype
    """
    return float(np.finfo(dtype).eps)
