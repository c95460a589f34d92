"""
Tolerance tiers for comparing results across execution strategies.

A cached, scalar, SIMD, parallel and GPU execution of the same request must
agree. Chunked reductions re-associate floating-point sums and GPUs may run
in single precision, so agreement is defined per tier:

- CPU FP64: scalar/SIMD/parallel in double precision
- CPU FP32: same, single precision
- GPU FP64: CUDA double precision
- GPU FP32: CUDA/MPS single precision (relaxed)
"""

from dataclasses import dataclass

import numpy as np

from pyscicore.core.capabilities import STRATEGY_GPU


@dataclass(frozen=True)
class ToleranceTier:
    """Tolerance specification for numerical comparison."""
    rtol: float
    atol: float
    name: str
    description: str

    def allclose(self, actual, expected) -> bool:
        """True if actual matches expected within this tier."""
        return bool(np.allclose(actual, expected, rtol=self.rtol, atol=self.atol))


CPU_FP64 = ToleranceTier(
    rtol=1e-10,
    atol=1e-12,
    name='cpu_fp64',
    description='CPU double precision, any chunking',
)

CPU_FP32 = ToleranceTier(
    rtol=1e-5,
    atol=1e-6,
    name='cpu_fp32',
    description='CPU single precision, any chunking',
)

GPU_FP64 = ToleranceTier(
    rtol=1e-6,
    atol=1e-9,
    name='gpu_fp64',
    description='GPU double precision, matches CPU reference',
)

GPU_FP32 = ToleranceTier(
    rtol=1e-4,
    atol=1e-5,
    name='gpu_fp32',
    description='GPU single precision, statistically equivalent',
)

# MPS (Apple Silicon GPU) has no FP64
MPS_FP32 = GPU_FP32


def select_tolerance(strategy: str, dtype) -> ToleranceTier:
    """Select the tolerance tier for a strategy running in dtype."""
    single = np.dtype(dtype) in (np.dtype(np.float32), np.dtype(np.complex64))
    if strategy == STRATEGY_GPU:
        return GPU_FP32 if single else GPU_FP64
    return CPU_FP32 if single else CPU_FP64
