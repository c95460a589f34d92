"""
Tests for ChunkSource logical arrays.
"""

import numpy as np
import pytest

from pyscicore.core.capabilities import (
    SOURCE_FILE_BACKED,
    SOURCE_MATERIALIZED,
    SOURCE_REPEATABLE,
)
from pyscicore.core.datasource import ChunkSource
from pyscicore.core.exceptions import DimensionError, ValidationError


class TestFromArray:

    def test_shape_and_dtype(self, rng):
        x = rng.standard_normal((100, 3))
        src = ChunkSource.from_array(x)
        assert src.shape == (100, 3)
        assert src.dtype == np.float64
        assert src.n_rows == 100
        assert src.row_shape == (3,)
        assert src.row_bytes == 24
        assert src.nbytes == x.nbytes

    def test_read_rows(self, rng):
        x = rng.standard_normal((10, 2))
        src = ChunkSource.from_array(x)
        out = np.empty((3, 2))
        src.read_rows(4, 7, out)
        np.testing.assert_array_equal(out, x[4:7])

    def test_scalar_becomes_one_row(self):
        src = ChunkSource.from_array(np.float64(3.0))
        assert src.shape == (1,)

    def test_capabilities(self):
        src = ChunkSource.from_array(np.zeros(4))
        assert src.supports(SOURCE_MATERIALIZED)
        assert src.supports(SOURCE_REPEATABLE)
        assert not src.supports(SOURCE_FILE_BACKED)
        assert not src.supports('nonexistent')

    def test_unsupported_dtype(self):
        with pytest.raises(ValidationError, match="float16"):
            ChunkSource.from_array(np.zeros(4, dtype=np.float16))

    def test_out_of_range(self):
        src = ChunkSource.from_array(np.zeros(4))
        with pytest.raises(ValidationError, match="outside source"):
            src.read_rows(2, 6, np.empty(4))


class TestFromFile:

    def test_memory_mapped(self, tmp_path, rng):
        x = rng.standard_normal((50, 4))
        path = tmp_path / "data.npy"
        np.save(path, x)
        src = ChunkSource.from_file(path)
        assert src.shape == (50, 4)
        assert src.supports(SOURCE_FILE_BACKED)
        assert not src.supports(SOURCE_MATERIALIZED)
        assert src.metadata['source_path'] == str(path)
        out = np.empty((10, 4))
        src.read_rows(40, 50, out)
        np.testing.assert_array_equal(out, x[40:])

    def test_unknown_format(self, tmp_path):
        with pytest.raises(ValidationError, match="Unknown file format"):
            ChunkSource.from_file(tmp_path / "data.csv")


class TestFromFunction:

    def test_generated_rows(self):
        src = ChunkSource.from_function(
            lambda start, stop: np.arange(start, stop, dtype=np.float64),
            shape=(1000,),
        )
        out = np.empty(5)
        src.read_rows(10, 15, out)
        np.testing.assert_array_equal(out, [10, 11, 12, 13, 14])

    def test_wrong_reader_shape(self):
        src = ChunkSource.from_function(lambda start, stop: np.zeros(2), shape=(10,))
        with pytest.raises(DimensionError, match="reader returned shape"):
            src.read_rows(0, 5, np.empty(5))

    def test_not_repeatable(self):
        src = ChunkSource.from_function(
            lambda start, stop: np.zeros(stop - start), shape=(4,), repeatable=False
        )
        assert not src.supports(SOURCE_REPEATABLE)

    def test_scalar_shape_rejected(self):
        with pytest.raises(DimensionError):
            ChunkSource.from_function(lambda start, stop: None, shape=())


class TestBuild:

    def test_passthrough(self):
        src = ChunkSource.from_array(np.zeros(3))
        assert ChunkSource.build(src) is src

    def test_array(self):
        assert ChunkSource.build(np.zeros((2, 2))).shape == (2, 2)

    def test_path(self, tmp_path):
        path = tmp_path / "x.npy"
        np.save(path, np.ones(8))
        assert ChunkSource.build(str(path)).supports(SOURCE_FILE_BACKED)

    def test_callable(self):
        src = ChunkSource.build(lambda start, stop: np.ones(stop - start), shape=(6,))
        assert src.n_rows == 6
