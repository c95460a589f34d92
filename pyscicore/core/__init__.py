"""
Core infrastructure for pyscicore.

Shared abstractions used by the runtime and the linear-algebra adapter.

Key components:
    protocols: ChunkKernel, LinalgBackend protocols
    result: Generic Result[B] envelope
    exceptions: Exception hierarchy
    validation: Input validators
    config: RuntimeSettings (environment) and ComputeConfig (per request)
    datasource: ChunkSource logical arrays for streaming
    backends: Hardware and BLAS detection, precision rules
    compute: Timing and cross-strategy tolerances
"""

from pyscicore.core.protocols import ChunkKernel, LinalgBackend
from pyscicore.core.result import Result
from pyscicore.core.config import ComputeConfig, RuntimeSettings, get_settings, reload_settings
from pyscicore.core.datasource import ChunkSource
from pyscicore.core.exceptions import (
    PyScicoreError,
    ValidationError,
    DimensionError,
    NumericalError,
    CapabilityUnavailableError,
    AllocationExhaustedError,
    OwnershipError,
    WorkerFailureError,
    BackendError,
    SingularMatrixError,
    NotPositiveDefiniteError,
    DimensionMismatchError,
    BackendUnavailableError,
    NumericDivergenceError,
)

__all__ = [
    # Protocols
    "ChunkKernel",
    "LinalgBackend",
    # Result
    "Result",
    # Configuration
    "ComputeConfig",
    "RuntimeSettings",
    "get_settings",
    "reload_settings",
    # Data
    "ChunkSource",
    # Exceptions
    "PyScicoreError",
    "ValidationError",
    "DimensionError",
    "NumericalError",
    "CapabilityUnavailableError",
    "AllocationExhaustedError",
    "OwnershipError",
    "WorkerFailureError",
    "BackendError",
    "SingularMatrixError",
    "NotPositiveDefiniteError",
    "DimensionMismatchError",
    "BackendUnavailableError",
    "NumericDivergenceError",
]
