"""
Input validation utilities for pyscicore.

These validators follow the "fail fast, fail loud" principle. They raise
immediately with clear error messages rather than silently correcting
or making assumptions about caller intent. Compute entry points validate at
the boundary and trust everything downstream.

Design principles:
    - No silent type coercion (except np.asarray on array-likes)
    - Clear, actionable error messages with actual values
    - Each function validates ONE thing
    - Parameter names included in all error messages
"""

import numpy as np
from numpy.typing import ArrayLike, NDArray
from typing import Any

from pyscicore.core.exceptions import (
    ValidationError,
    DimensionError,
    DimensionMismatchError,
)


def check_array(
    array: ArrayLike,
    name: str,
    *,
    allow_complex: bool = True,
) -> NDArray[Any]:
    """
    Validate and convert input to a numeric numpy array.

    Accepts any array-like and converts to numpy array. Rejects inputs
    that result in object dtype (indicating mixed types or non-numeric data).
    Integer and boolean input is promoted to float64; floating and complex
    dtypes are preserved.

    Args:
        array: Input to validate
        name: Parameter name for error messages
        allow_complex: If False, complex input is rejected

    Returns:
        numpy.ndarray with floating (or complex) dtype

    Raises:
        ValidationError: If input cannot be converted to numeric array
    """
    try:
        result = np.asarray(array)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"{name}: cannot convert to array: {e}") from e

    if result.dtype == object:
        raise ValidationError(
            f"{name}: converted to object dtype, indicating mixed types or non-numeric data"
        )

    if result.dtype == np.bool_:
        return result.astype(np.float64)

    if not np.issubdtype(result.dtype, np.number):
        raise ValidationError(
            f"{name}: non-numeric dtype {result.dtype}, expected numeric data"
        )

    if np.issubdtype(result.dtype, np.complexfloating):
        if not allow_complex:
            raise ValidationError(f"{name}: complex dtype {result.dtype} not supported here")
        return result

    if not np.issubdtype(result.dtype, np.floating):
        result = result.astype(np.float64)

    return result


def check_finite(array: NDArray[Any], name: str) -> None:
    """
    Verify array contains no NaN or Inf values.

    Args:
        array: Array to check
        name: Parameter name for error messages

    Raises:
        ValidationError: If array contains non-finite values
    """
    if not np.all(np.isfinite(array)):
        n_nan = int(np.sum(np.isnan(array)))
        n_inf = int(np.sum(np.isinf(array)))
        raise ValidationError(
            f"{name}: contains non-finite values ({n_nan} NaN, {n_inf} Inf)"
        )


def check_ndim(array: NDArray[Any], ndim: int, name: str) -> None:
    """
    Verify array has exactly the specified number of dimensions.

    Raises:
        DimensionError: If array has wrong number of dimensions
    """
    if array.ndim != ndim:
        raise DimensionError(
            f"{name}: expected {ndim}D array, got {array.ndim}D with shape {array.shape}"
        )


def check_1d(array: NDArray[Any], name: str) -> None:
    """Verify array is 1-dimensional."""
    check_ndim(array, 1, name)


def check_2d(array: NDArray[Any], name: str) -> None:
    """Verify array is 2-dimensional."""
    check_ndim(array, 2, name)


def check_square(array: NDArray[Any], name: str) -> None:
    """
    Verify array is a square 2D matrix.

    Raises:
        DimensionError: If array is not 2D
        DimensionMismatchError: If array is 2D but not square
    """
    check_2d(array, name)
    n, m = array.shape
    if n != m:
        raise DimensionMismatchError(
            f"{name}: expected square matrix, got shape {array.shape}",
            expected=(n, n),
            actual=array.shape,
        )


def check_same_shape(
    a: NDArray[Any],
    b: NDArray[Any],
    names: tuple[str, str],
) -> None:
    """
    Verify two arrays have identical shapes (elementwise operations).

    Raises:
        DimensionMismatchError: If shapes differ
    """
    if a.shape != b.shape:
        raise DimensionMismatchError(
            f"Shape mismatch: {names[0]}={a.shape}, {names[1]}={b.shape}",
            expected=a.shape,
            actual=b.shape,
        )


def check_matmul_shapes(
    a: NDArray[Any],
    b: NDArray[Any],
    names: tuple[str, str] = ('A', 'B'),
) -> None:
    """
    Verify two 2D arrays can be multiplied (inner dimensions agree).

    Raises:
        DimensionError: If either operand is not 2D
        DimensionMismatchError: If inner dimensions differ
    """
    check_2d(a, names[0])
    check_2d(b, names[1])
    if a.shape[1] != b.shape[0]:
        raise DimensionMismatchError(
            f"Inner dimensions differ: {names[0]}{a.shape} @ {names[1]}{b.shape}",
            expected=a.shape[1],
            actual=b.shape[0],
        )


def check_consistent_length(
    *arrays: NDArray[Any],
    names: tuple[str, ...]
) -> None:
    """
    Verify all arrays have the same length (first dimension).

    Args:
        *arrays: Arrays to check
        names: Parameter names for error messages (must match number of arrays)

    Raises:
        ValueError: If number of names doesn't match number of arrays
        DimensionMismatchError: If arrays have inconsistent lengths
    """
    if len(arrays) != len(names):
        raise ValueError(
            f"Number of arrays ({len(arrays)}) must match number of names ({len(names)})"
        )

    if len(arrays) < 2:
        return

    lengths = [arr.shape[0] for arr in arrays]
    if len(set(lengths)) > 1:
        details = ", ".join(f"{name}={length}" for name, length in zip(names, lengths))
        raise DimensionMismatchError(
            f"Inconsistent lengths: {details}",
            expected=lengths[0],
            actual=tuple(lengths),
        )


def check_shape(shape: Any, name: str = 'shape') -> tuple[int, ...]:
    """
    Validate a buffer shape and normalize it to a tuple of ints.

    Args:
        shape: An int or a sequence of non-negative ints
        name: Parameter name for error messages

    Returns:
        Normalized shape tuple

    Raises:
        ValidationError: If the shape contains negative or non-integer entries
    """
    if isinstance(shape, (int, np.integer)):
        shape = (int(shape),)
    try:
        dims = tuple(int(d) for d in shape)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name}: expected a sequence of ints, got {shape!r}") from e
    if any(d < 0 for d in dims):
        raise ValidationError(f"{name}: dimensions must be non-negative, got {dims}")
    return dims


def check_positive(value: int | float, name: str) -> None:
    """
    Verify a scalar setting is strictly positive.

    Raises:
        ValidationError: If value <= 0
    """
    if value <= 0:
        raise ValidationError(f"{name}: must be > 0, got {value}")
