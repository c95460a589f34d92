"""
Vendor-neutral dense linear algebra.

LinalgAdapter fronts exactly one CPU LAPACK vendor per process (OpenBLAS,
Intel MKL, netlib reference, or Apple Accelerate) plus an optional PyTorch
GPU path, and normalizes backend failures into the BackendError family.
"""

from pyscicore.linalg.adapter import BackendHandle, LinalgAdapter

__all__ = [
    "BackendHandle",
    "LinalgAdapter",
]
