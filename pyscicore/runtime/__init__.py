"""
Execution runtime: capability detection, strategy selection, the worker
pool, pooled memory, the computation cache, and the compute-request API.
"""

from pyscicore.runtime.detector import CapabilityDescriptor, detect, reset_detection
from pyscicore.runtime.selector import ExecutionPlan, select
from pyscicore.runtime.executor import WorkerPool
from pyscicore.runtime.memory import Buffer, MemoryManager, MemoryStats
from pyscicore.runtime.cache import ComputationCache, CacheStats, fingerprint
from pyscicore.runtime.operations import (
    Operation,
    available_operations,
    get_operation,
    register_operation,
)
from pyscicore.runtime.context import (
    RuntimeContext,
    compute,
    default_context,
    reset_default_context,
)

__all__ = [
    "CapabilityDescriptor",
    "detect",
    "reset_detection",
    "ExecutionPlan",
    "select",
    "WorkerPool",
    "Buffer",
    "MemoryManager",
    "MemoryStats",
    "ComputationCache",
    "CacheStats",
    "fingerprint",
    "Operation",
    "available_operations",
    "get_operation",
    "register_operation",
    "RuntimeContext",
    "compute",
    "default_context",
    "reset_default_context",
]
