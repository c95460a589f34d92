"""
GPU backend tests for linear algebra.

Validates torch.linalg results against the CPU LAPACK backend.
Skipped if no GPU is available.
"""

from __future__ import annotations

import numpy as np
import pytest

try:
    import torch
    HAS_CUDA = torch.cuda.is_available()
    HAS_GPU = HAS_CUDA or (
        hasattr(torch.backends, 'mps') and torch.backends.mps.is_available()
    )
except ImportError:
    HAS_CUDA = False
    HAS_GPU = False

pytestmark = pytest.mark.skipif(not HAS_GPU, reason="No GPU available")

from pyscicore.core.compute.tolerances import select_tolerance
from pyscicore.core.config import ComputeConfig
from pyscicore.core.exceptions import NotPositiveDefiniteError, SingularMatrixError
from pyscicore.linalg.backends.cpu import LapackBackend
from pyscicore.linalg.backends.gpu import TorchBackend
from pyscicore.runtime.context import RuntimeContext
from pyscicore.runtime.detector import detect

DEVICE = 'cuda' if HAS_CUDA else 'mps'
# MPS has no float64; compare in single precision there
DTYPE = np.float64 if HAS_CUDA else np.float32
TOL = select_tolerance('gpu', DTYPE)


@pytest.fixture
def gpu():
    return TorchBackend(DEVICE)


@pytest.fixture
def cpu():
    return LapackBackend('openblas')


@pytest.fixture
def spd(rng):
    a = rng.standard_normal((64, 64))
    return (a @ a.T + 64 * np.eye(64)).astype(DTYPE)


class TestGPUvsCPU:
    """Compare GPU results against the CPU reference for each primitive."""

    def test_matmul(self, gpu, cpu, rng):
        a = rng.standard_normal((128, 64)).astype(DTYPE)
        b = rng.standard_normal((64, 32)).astype(DTYPE)
        assert TOL.allclose(gpu.matmul(a, b), cpu.matmul(a, b))

    def test_cholesky(self, gpu, cpu, spd):
        assert TOL.allclose(gpu.cholesky(spd), cpu.cholesky(spd))

    def test_solve(self, gpu, cpu, spd, rng):
        b = rng.standard_normal(64).astype(DTYPE)
        assert TOL.allclose(gpu.solve(spd, b), cpu.solve(spd, b))

    def test_lstsq(self, gpu, cpu, rng):
        a = rng.standard_normal((100, 8)).astype(DTYPE)
        b = rng.standard_normal(100).astype(DTYPE)
        assert TOL.allclose(gpu.lstsq(a, b), cpu.lstsq(a, b))

    def test_eigh_values(self, gpu, cpu, spd):
        w_gpu, _ = gpu.eigh(spd)
        w_cpu, _ = cpu.eigh(spd)
        assert TOL.allclose(w_gpu, w_cpu)

    def test_qr_reconstructs(self, gpu, rng):
        a = rng.standard_normal((40, 10)).astype(DTYPE)
        q, r = gpu.qr(a)
        assert TOL.allclose(q @ r, a)

    def test_det(self, gpu, cpu, rng):
        a = (rng.standard_normal((6, 6)) + 6 * np.eye(6)).astype(DTYPE)
        np.testing.assert_allclose(gpu.det(a), cpu.det(a), rtol=TOL.rtol * 10)

    def test_output_dtype_matches_input(self, gpu, spd):
        assert gpu.cholesky(spd).dtype == spd.dtype


class TestGPUErrors:

    def test_not_positive_definite(self, gpu):
        a = np.array([[1.0, 2.0], [2.0, 1.0]], dtype=DTYPE)
        with pytest.raises(NotPositiveDefiniteError):
            gpu.cholesky(a)

    def test_singular_solve(self, gpu):
        a = np.zeros((3, 3), dtype=DTYPE)
        with pytest.raises(SingularMatrixError):
            gpu.solve(a, np.ones(3, dtype=DTYPE))


class TestGPUThroughContext:

    def test_gpu_strategy_on_real_host(self, make_settings, rng):
        settings = make_settings(gpu_threshold=1 << 16)
        with RuntimeContext.create(settings=settings, descriptor=detect(settings)) as ctx:
            a = rng.standard_normal((300, 300)).astype(DTYPE)
            config = ComputeConfig(strategy='gpu')
            result = ctx.compute('matmul', a, a, config=config)
            assert result.info['strategy'] == 'gpu'
            assert result.backend_name == ctx.descriptor.accelerator.torch_device
            assert TOL.allclose(result.output.array, a @ a)
