"""
pyscicore: backend-abstraction runtime for numeric computing.

Numeric packages hand pyscicore a request (operation + arrays + config) and
get back owned result buffers. The runtime decides, per request, whether to
run scalar, vectorized, multi-threaded, or on a GPU, streams large inputs
through a bounded working set, and memoizes repeated requests.

Submodules:
    core: Exceptions, configuration, validation, results, device detection
    runtime: Selector, worker pool, memory manager, cache, compute API
    linalg: LAPACK / torch.linalg adapter

Usage:
    import pyscicore

    result = pyscicore.compute('matmul', A, B)
    C = result.output.array
"""

__version__ = "0.1.0"

from pyscicore.core.config import ComputeConfig, RuntimeSettings, get_settings
from pyscicore.core.logging_config import configure_logging
from pyscicore.core.result import Result
from pyscicore.runtime import (
    Buffer,
    RuntimeContext,
    compute,
    default_context,
    detect,
    register_operation,
)

__all__ = [
    "__version__",
    "ComputeConfig",
    "RuntimeSettings",
    "get_settings",
    "configure_logging",
    "Result",
    "Buffer",
    "RuntimeContext",
    "compute",
    "default_context",
    "detect",
    "register_operation",
]
