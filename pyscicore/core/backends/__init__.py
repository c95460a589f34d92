"""
Host probing shared by the runtime.

Submodules:
    device: CPU/GPU detection, CPU vector features
    blas: Identification of the linked BLAS/LAPACK vendor
    precision: Element type tags and precision resolution
"""

from pyscicore.core.backends.device import (
    DeviceInfo,
    detect_cpu_features,
    detect_gpu,
    get_cpu_info,
    logical_cpu_count,
    vector_widths,
)
from pyscicore.core.backends.blas import BlasInfo, detect_blas, normalize_vendor

__all__ = [
    # Device detection
    "DeviceInfo",
    "detect_gpu",
    "get_cpu_info",
    "detect_cpu_features",
    "vector_widths",
    "logical_cpu_count",
    # BLAS identification
    "BlasInfo",
    "detect_blas",
    "normalize_vendor",
]
