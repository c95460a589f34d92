"""
Capability and strategy string constants for pyscicore.

This module is the SINGLE SOURCE OF TRUTH for capability, strategy and
linear-algebra vendor strings. Import from here, never use raw strings.

Usage:
    from pyscicore.core.capabilities import CAPABILITY_SIMD, STRATEGY_GPU

    if descriptor.supports(CAPABILITY_SIMD):
        ...
"""

# === Host capabilities (CapabilityDescriptor.supports) ===

# CPU exposes at least one vector instruction set (SSE2/AVX/NEON/...)
CAPABILITY_SIMD = 'simd'

# More than one worker thread is available
CAPABILITY_PARALLEL = 'parallel'

# An accelerator device (CUDA or MPS) is usable through PyTorch
CAPABILITY_GPU = 'gpu'

# The accelerator supports float64 arithmetic (CUDA yes, MPS no)
CAPABILITY_GPU_FP64 = 'gpu_fp64'

# A LAPACK-capable BLAS vendor was identified
CAPABILITY_LAPACK = 'lapack'

# Data can be yielded in windows (for arrays larger than the working set)
CAPABILITY_STREAMING = 'streaming'

ALL_CAPABILITIES = frozenset({
    CAPABILITY_SIMD,
    CAPABILITY_PARALLEL,
    CAPABILITY_GPU,
    CAPABILITY_GPU_FP64,
    CAPABILITY_LAPACK,
    CAPABILITY_STREAMING,
})

# === Execution strategies, ordered by dispatch overhead (lowest first) ===

STRATEGY_SCALAR = 'scalar'
STRATEGY_SIMD = 'simd'
STRATEGY_PARALLEL = 'parallel'
STRATEGY_GPU = 'gpu'

STRATEGY_ORDER = (
    STRATEGY_SCALAR,
    STRATEGY_SIMD,
    STRATEGY_PARALLEL,
    STRATEGY_GPU,
)

# Strategy hint meaning "let the selector decide"
STRATEGY_AUTO = 'auto'

# === Linear-algebra vendors (mutually exclusive per runtime) ===

BLAS_OPENBLAS = 'openblas'
BLAS_MKL = 'intel-mkl'
BLAS_NETLIB = 'netlib'
BLAS_ACCELERATE = 'accelerate'
BLAS_UNKNOWN = 'unknown'

ALL_BLAS_VENDORS = frozenset({
    BLAS_OPENBLAS,
    BLAS_MKL,
    BLAS_NETLIB,
    BLAS_ACCELERATE,
})

# === Data-source capabilities (ChunkSource.supports) ===

# Source is fully resident in memory as a numpy array
SOURCE_MATERIALIZED = 'materialized'

# Source can be re-read from the start
SOURCE_REPEATABLE = 'repeatable'

# Source is backed by a file on disk
SOURCE_FILE_BACKED = 'file_backed'

__all__ = [
    'CAPABILITY_SIMD',
    'CAPABILITY_PARALLEL',
    'CAPABILITY_GPU',
    'CAPABILITY_GPU_FP64',
    'CAPABILITY_LAPACK',
    'CAPABILITY_STREAMING',
    'ALL_CAPABILITIES',
    'STRATEGY_SCALAR',
    'STRATEGY_SIMD',
    'STRATEGY_PARALLEL',
    'STRATEGY_GPU',
    'STRATEGY_ORDER',
    'STRATEGY_AUTO',
    'BLAS_OPENBLAS',
    'BLAS_MKL',
    'BLAS_NETLIB',
    'BLAS_ACCELERATE',
    'BLAS_UNKNOWN',
    'ALL_BLAS_VENDORS',
    'SOURCE_MATERIALIZED',
    'SOURCE_REPEATABLE',
    'SOURCE_FILE_BACKED',
]
