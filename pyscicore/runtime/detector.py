"""
Capability detection.

detect() inspects the host once per process (CPU vector features, worker
count, accelerator device, linked BLAS vendor) and returns an immutable
CapabilityDescriptor that every component reads. Detection is synchronized
so the probes run exactly once even when many threads race to the first
call. A failed probe degrades that feature to "unavailable"; detect() itself
never raises for an unsupported host.
"""

from __future__ import annotations

import logging
import platform
import threading
from dataclasses import dataclass, field

from pyscicore.core.backends.blas import BlasInfo, detect_blas
from pyscicore.core.backends.device import (
    DeviceInfo,
    detect_cpu_features,
    detect_gpu,
    get_cpu_info,
    logical_cpu_count,
    vector_widths,
)
from pyscicore.core.capabilities import (
    BLAS_UNKNOWN,
    CAPABILITY_GPU,
    CAPABILITY_GPU_FP64,
    CAPABILITY_LAPACK,
    CAPABILITY_PARALLEL,
    CAPABILITY_SIMD,
    CAPABILITY_STREAMING,
)
from pyscicore.core.config import RuntimeSettings, get_settings

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapabilityDescriptor:
    """
    Immutable snapshot of what the current host supports.

    Attributes:
        vector_widths: Supported vector register widths in bits (empty = scalar only)
        cpu_features: Lower-case CPU feature flags (e.g. 'avx2', 'neon')
        worker_pool_size: Number of worker threads the pool runs
        logical_cpus: Logical CPUs usable by the process
        cpu: CPU DeviceInfo
        accelerator: GPU DeviceInfo, or None when no device is usable
        blas: Linked BLAS/LAPACK library
        platform: Platform string, e.g. 'Linux-x86_64'
    """
    vector_widths: frozenset[int]
    cpu_features: frozenset[str]
    worker_pool_size: int
    logical_cpus: int
    cpu: DeviceInfo
    accelerator: DeviceInfo | None
    blas: BlasInfo
    platform: str = field(default_factory=lambda: f"{platform.system()}-{platform.machine()}")

    # === Convenience flags ===

    @property
    def simd_available(self) -> bool:
        return bool(self.vector_widths)

    @property
    def max_vector_width(self) -> int:
        """Widest vector register in bits, 0 when scalar only."""
        return max(self.vector_widths, default=0)

    @property
    def gpu_available(self) -> bool:
        return self.accelerator is not None

    @property
    def cuda_available(self) -> bool:
        return self.accelerator is not None and self.accelerator.device_type == 'cuda'

    @property
    def mps_available(self) -> bool:
        return self.accelerator is not None and self.accelerator.device_type == 'mps'

    @property
    def avx2(self) -> bool:
        return 'avx2' in self.cpu_features

    @property
    def avx512(self) -> bool:
        return 'avx512f' in self.cpu_features

    @property
    def neon(self) -> bool:
        return 'neon' in self.cpu_features

    @property
    def blas_vendor(self) -> str:
        return self.blas.vendor

    def supports(self, capability: str) -> bool:
        """
        Check if the host supports a capability.

        Args:
            capability: Use constants from pyscicore.core.capabilities

        Note:
            Unknown capabilities return False, never raise.
        """
        if capability == CAPABILITY_SIMD:
            return self.simd_available
        if capability == CAPABILITY_PARALLEL:
            return self.worker_pool_size > 1
        if capability == CAPABILITY_GPU:
            return self.gpu_available
        if capability == CAPABILITY_GPU_FP64:
            return self.gpu_available and self.accelerator.supports_fp64
        if capability == CAPABILITY_LAPACK:
            return self.blas.vendor != BLAS_UNKNOWN
        if capability == CAPABILITY_STREAMING:
            return True
        return False

    def summary(self) -> str:
        """Human-readable multi-line description."""
        widths = ", ".join(str(w) for w in sorted(self.vector_widths)) or "none"
        lines = [
            f"Platform:     {self.platform}",
            f"CPU:          {self.cpu.name} ({self.logical_cpus} logical)",
            f"Vector bits:  {widths}",
            f"Workers:      {self.worker_pool_size}",
            f"Accelerator:  {self.accelerator if self.accelerator else 'none'}",
            f"BLAS:         {self.blas}",
        ]
        return "\n".join(lines)


_descriptor: CapabilityDescriptor | None = None
_detect_lock = threading.Lock()


def _probe(settings: RuntimeSettings) -> CapabilityDescriptor:
    features = detect_cpu_features()
    cpus = logical_cpu_count()
    gpu = detect_gpu()
    blas = detect_blas()
    workers = settings.worker_threads or cpus
    descriptor = CapabilityDescriptor(
        vector_widths=vector_widths(features),
        cpu_features=features,
        worker_pool_size=workers,
        logical_cpus=cpus,
        cpu=get_cpu_info(),
        accelerator=gpu,
        blas=blas,
    )
    _logger.info("Detected host capabilities:\n%s", descriptor.summary())
    return descriptor


def detect(settings: RuntimeSettings | None = None) -> CapabilityDescriptor:
    """
    Return the process-wide CapabilityDescriptor, probing the host on first call.

    Idempotent and safe to call concurrently: the probes run exactly once and
    every caller receives the same instance.

    Args:
        settings: Settings used on the first call (worker-pool override);
            defaults to get_settings(). Ignored once detection has run.
    """
    global _descriptor
    descriptor = _descriptor
    if descriptor is not None:
        return descriptor
    with _detect_lock:
        if _descriptor is None:
            _descriptor = _probe(settings or get_settings())
        return _descriptor


def reset_detection() -> None:
    """Forget the cached descriptor (for testing)."""
    global _descriptor
    with _detect_lock:
        _descriptor = None
