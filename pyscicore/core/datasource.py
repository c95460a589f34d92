"""
Logical arrays for streaming computation.

A ChunkSource is the "I have a (possibly huge) array" abstraction. It knows
its shape and dtype and can copy any contiguous range of rows into a caller
supplied buffer. It does not know or care whether the rows live in memory,
in a memory-mapped file, or are generated on demand, so a 10 GB logical
array can be streamed through a 100 MB working set.

Usage:
    from pyscicore.core.datasource import ChunkSource

    src = ChunkSource.from_array(x)
    src = ChunkSource.from_file("data.npy")           # memory-mapped
    src = ChunkSource.from_function(gen, shape=(n,), dtype='f8')

    for view in memory.with_chunked_view(src, chunk_bytes=64 * 2**20):
        partial = view.array.sum()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from math import prod
from pathlib import Path
from typing import Any, Callable

import numpy as np
from numpy.typing import NDArray

from pyscicore.core.exceptions import DimensionError, ValidationError
from pyscicore.core.capabilities import (
    SOURCE_FILE_BACKED,
    SOURCE_MATERIALIZED,
    SOURCE_REPEATABLE,
)
from pyscicore.core.backends.precision import as_dtype
from pyscicore.core.validation import check_shape

RowReader = Callable[[int, int], NDArray[Any]]


@dataclass
class ChunkSource:
    """
    Row-addressable logical array. Construct via factory classmethods.

    Rows are slices along the first axis; for 1D sources a row is a single
    element.
    """
    _shape: tuple[int, ...]
    _dtype: np.dtype
    _reader: RowReader
    _capabilities: frozenset[str]
    _metadata: dict[str, Any] = field(default_factory=dict)

    # === Properties ===

    @property
    def shape(self) -> tuple[int, ...]:
        return self._shape

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def n_rows(self) -> int:
        return self._shape[0] if self._shape else 1

    @property
    def row_shape(self) -> tuple[int, ...]:
        return self._shape[1:]

    @property
    def row_bytes(self) -> int:
        """Bytes occupied by one row."""
        return prod(self.row_shape) * self._dtype.itemsize

    @property
    def nbytes(self) -> int:
        return self.n_rows * self.row_bytes

    @property
    def metadata(self) -> dict[str, Any]:
        return self._metadata.copy()

    def supports(self, capability: str) -> bool:
        """
        Check if this source supports a capability.

        Note:
            Unknown capabilities return False, never raise.
        """
        return capability in self._capabilities

    # === Access ===

    def read_rows(self, start: int, stop: int, out: NDArray[Any]) -> None:
        """
        Copy rows [start, stop) into out.

        Args:
            start: First row (inclusive)
            stop: Last row (exclusive)
            out: Destination with shape (stop - start, *row_shape)

        Raises:
            ValidationError: If the range is outside the source
            DimensionError: If the reader returns the wrong shape
        """
        if not (0 <= start <= stop <= self.n_rows):
            raise ValidationError(
                f"row range [{start}, {stop}) outside source with {self.n_rows} rows"
            )
        block = self._reader(start, stop)
        expected = (stop - start,) + self.row_shape
        if tuple(np.shape(block)) != expected:
            raise DimensionError(
                f"source reader returned shape {np.shape(block)}, expected {expected}"
            )
        np.copyto(out, block, casting='same_kind')

    # === Factory Methods ===

    @classmethod
    def from_array(cls, array: NDArray[Any]) -> ChunkSource:
        """Wrap an in-memory (or memory-mapped) numpy array without copying."""
        arr = np.asarray(array)
        if arr.ndim == 0:
            arr = arr.reshape(1)
        dtype = as_dtype(arr.dtype)
        capabilities = {SOURCE_REPEATABLE}
        if isinstance(arr, np.memmap):
            capabilities.add(SOURCE_FILE_BACKED)
        else:
            capabilities.add(SOURCE_MATERIALIZED)
        return cls(
            _shape=tuple(arr.shape),
            _dtype=dtype,
            _reader=lambda start, stop: arr[start:stop],
            _capabilities=frozenset(capabilities),
            _metadata={'source': 'array'},
        )

    @classmethod
    def from_file(cls, path: str | Path) -> ChunkSource:
        """Memory-map a .npy file; rows are paged in only when read."""
        path = Path(path)
        if path.suffix.lower() != '.npy':
            raise ValidationError(f"Unknown file format: {path.suffix}")
        arr = np.load(path, mmap_mode='r')
        source = cls.from_array(arr)
        source._capabilities = frozenset({SOURCE_REPEATABLE, SOURCE_FILE_BACKED})
        source._metadata = {'source': 'file', 'source_path': str(path)}
        return source

    @classmethod
    def from_function(
        cls,
        reader: RowReader,
        *,
        shape: Any,
        dtype: Any = np.float64,
        repeatable: bool = True,
    ) -> ChunkSource:
        """
        Construct a generated source.

        Args:
            reader: reader(start, stop) returns rows [start, stop) as an array
            shape: Logical shape of the whole array
            dtype: Element type
            repeatable: Whether reader is deterministic and may be re-read
        """
        shape = check_shape(shape)
        if not shape:
            raise DimensionError("shape: a generated source needs at least one dimension")
        capabilities = {SOURCE_REPEATABLE} if repeatable else set()
        return cls(
            _shape=shape,
            _dtype=as_dtype(dtype),
            _reader=reader,
            _capabilities=frozenset(capabilities),
            _metadata={'source': 'function'},
        )

    @classmethod
    def build(cls, obj: Any, **kwargs: Any) -> ChunkSource:
        """
        Convenience factory that dispatches to the appropriate from_* method.

        Examples:
            ChunkSource.build(x)            # from_array
            ChunkSource.build("data.npy")   # from_file
        """
        if isinstance(obj, ChunkSource):
            return obj
        if isinstance(obj, (str, Path)):
            return cls.from_file(obj)
        if callable(obj):
            return cls.from_function(obj, **kwargs)
        return cls.from_array(obj)
