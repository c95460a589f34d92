"""
pytest configuration and shared fixtures.
"""

import pytest
import numpy as np

from pyscicore.core.backends.blas import BlasInfo
from pyscicore.core.backends.device import DeviceInfo
from pyscicore.core.config import GiB, MiB, RuntimeSettings
from pyscicore.runtime.context import RuntimeContext
from pyscicore.runtime.detector import CapabilityDescriptor


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(42)


def _settings(**overrides) -> RuntimeSettings:
    """Small, environment-independent settings for tests."""
    values = dict(
        worker_threads=4,
        queue_depth=64,
        memory_ceiling_bytes=256 * MiB,
        pool_cap_bytes=64 * MiB,
        working_set_bytes=8 * MiB,
        cache_budget_bytes=32 * MiB,
        simd_threshold=1024,
        parallel_threshold=1 << 16,
        gpu_threshold=1 << 22,
        min_chunk_elements=1024,
        linalg_backend='auto',
    )
    values.update(overrides)
    return RuntimeSettings(_env_file=None, **values)


def _descriptor(
    workers: int = 4,
    widths=(128, 256),
    features=('sse2', 'avx', 'avx2'),
    gpu: str | None = None,
    blas_vendor: str = 'openblas',
) -> CapabilityDescriptor:
    """Synthetic host description; no probing."""
    accelerator = None
    if gpu == 'cuda':
        accelerator = DeviceInfo(
            device_type='cuda',
            device_index=0,
            name='Test GPU',
            memory_bytes=16 * GiB,
            compute_capability=(8, 0),
        )
    elif gpu == 'mps':
        accelerator = DeviceInfo(
            device_type='mps',
            device_index=0,
            name='Apple Silicon GPU',
            memory_bytes=None,
            compute_capability=None,
        )
    return CapabilityDescriptor(
        vector_widths=frozenset(widths),
        cpu_features=frozenset(features),
        worker_pool_size=workers,
        logical_cpus=workers,
        cpu=DeviceInfo('cpu', None, 'Test CPU', None, None),
        accelerator=accelerator,
        blas=BlasInfo(vendor=blas_vendor, library=f"scipy-{blas_vendor}", version=None, source='numpy'),
        platform='Linux-x86_64',
    )


@pytest.fixture
def settings():
    return _settings()


@pytest.fixture
def descriptor():
    """4-worker AVX2 host without a GPU."""
    return _descriptor()


@pytest.fixture
def ctx(settings, descriptor):
    """Runtime context on the synthetic CPU host."""
    context = RuntimeContext.create(settings=settings, descriptor=descriptor)
    yield context
    context.close()


@pytest.fixture
def square_matrix(rng):
    """Well-conditioned 50x50 matrix."""
    return rng.standard_normal((50, 50)) + 50 * np.eye(50)


@pytest.fixture
def spd_matrix(rng):
    """Symmetric positive definite 40x40 matrix."""
    A = rng.standard_normal((40, 40))
    return A @ A.T + 40 * np.eye(40)


@pytest.fixture
def make_settings():
    """Factory for RuntimeSettings with overrides."""
    return _settings


@pytest.fixture
def make_descriptor():
    """Factory for synthetic CapabilityDescriptors."""
    return _descriptor
