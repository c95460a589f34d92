"""
Hardware detection and device management.

Provides a unified interface for detecting available compute devices
and their capabilities, regardless of the underlying framework. Every probe
degrades to "unavailable" instead of raising: a host without a GPU, without
/proc/cpuinfo, or without PyTorch is a valid host.
"""

from dataclasses import dataclass
from typing import Literal
import logging
import os
import platform

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceInfo:
    """
    Information about a compute device.

    Attributes:
        device_type: Type of device ('cpu', 'cuda', 'mps')
        device_index: Device index (None for CPU)
        name: Human-readable device name
        memory_bytes: Total device memory in bytes (None if unknown)
        compute_capability: CUDA compute capability as (major, minor), None for non-CUDA
    """
    device_type: Literal['cpu', 'cuda', 'mps']
    device_index: int | None
    name: str
    memory_bytes: int | None
    compute_capability: tuple[int, int] | None

    def __str__(self) -> str:
        if self.device_type == 'cpu':
            return f"CPU ({self.name})"
        mem_str = ""
        if self.memory_bytes is not None:
            mem_gb = self.memory_bytes / (1024**3)
            mem_str = f", {mem_gb:.1f}GB"
        return f"{self.device_type.upper()}:{self.device_index} ({self.name}{mem_str})"

    @property
    def is_gpu(self) -> bool:
        """True if this is a GPU device."""
        return self.device_type in ('cuda', 'mps')

    @property
    def supports_fp64(self) -> bool:
        """MPS has no float64 kernels; CPU and CUDA do."""
        return self.device_type != 'mps'

    @property
    def torch_device(self) -> str:
        """Device string accepted by torch.device()."""
        if self.device_type == 'cuda':
            return f"cuda:{self.device_index or 0}"
        return self.device_type


def detect_gpu() -> DeviceInfo | None:
    """
    Detect available GPU, if any.

    Returns:
        DeviceInfo for the best available GPU, or None if no GPU available.

    Priority: CUDA > MPS (Apple Silicon)

    Note:
        This function imports torch lazily to avoid import overhead
        when GPU detection isn't needed.
    """
    try:
        import torch
    except ImportError:
        _logger.debug("PyTorch not installed; GPU offload unavailable")
        return None

    try:
        if torch.cuda.is_available():
            idx = torch.cuda.current_device()
            props = torch.cuda.get_device_properties(idx)
            return DeviceInfo(
                device_type='cuda',
                device_index=idx,
                name=props.name,
                memory_bytes=props.total_memory,
                compute_capability=(props.major, props.minor)
            )
    except RuntimeError as e:
        _logger.debug("CUDA probe failed: %s", e)

    try:
        if hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
            return DeviceInfo(
                device_type='mps',
                device_index=0,
                name='Apple Silicon GPU',
                memory_bytes=None,  # MPS doesn't expose memory info easily
                compute_capability=None
            )
    except RuntimeError as e:
        _logger.debug("MPS probe failed: %s", e)

    return None


def get_cpu_info() -> DeviceInfo:
    """
    Get CPU device info.

    Returns:
        DeviceInfo for the CPU
    """
    processor = platform.processor()
    if not processor:
        processor = platform.machine() or "Unknown CPU"

    return DeviceInfo(
        device_type='cpu',
        device_index=None,
        name=processor,
        memory_bytes=None,
        compute_capability=None
    )


# cpuinfo flag -> canonical feature name, widest first within each family
_X86_FLAGS = (
    'avx512f', 'avx512dq', 'avx512bw', 'avx512vl',
    'avx2', 'fma', 'avx',
    'sse4_2', 'sse4_1', 'ssse3', 'sse3', 'sse2', 'sse',
)
_ARM_FLAGS = ('sve2', 'sve', 'asimd', 'neon')


def detect_cpu_features() -> frozenset[str]:
    """
    Detect CPU vector instruction features.

    Reads /proc/cpuinfo on Linux; on other platforms infers the baseline
    feature set from the machine architecture (SSE2 is mandatory on x86-64,
    NEON on arm64).

    Returns:
        frozenset of lower-case feature names; empty if nothing is known
    """
    features: set[str] = set()
    machine = platform.machine().lower()

    if platform.system() == 'Linux':
        try:
            with open('/proc/cpuinfo', 'r') as f:
                flags_text = ''
                for line in f:
                    key = line.split(':', 1)[0].strip().lower()
                    if key in ('flags', 'features'):
                        flags_text = line.split(':', 1)[1].lower()
                        break
            tokens = set(flags_text.split())
            for flag in _X86_FLAGS + _ARM_FLAGS:
                if flag in tokens:
                    features.add(flag)
            if 'asimd' in features:
                features.add('neon')
        except OSError as e:
            _logger.debug("Could not read /proc/cpuinfo: %s", e)

    if not features:
        if machine in ('x86_64', 'amd64'):
            features.update({'sse', 'sse2'})
        elif machine in ('arm64', 'aarch64'):
            features.add('neon')

    return frozenset(features)


def vector_widths(features: frozenset[str]) -> frozenset[int]:
    """
    Map CPU features to supported vector register widths in bits.

    Args:
        features: Output of detect_cpu_features()

    Returns:
        frozenset of widths, e.g. {128, 256} for an AVX2 machine
    """
    widths: set[int] = set()
    if features & {'sse', 'sse2', 'sse3', 'ssse3', 'sse4_1', 'sse4_2', 'neon', 'asimd'}:
        widths.add(128)
    if features & {'avx', 'avx2', 'fma'}:
        widths.add(256)
    if 'avx512f' in features:
        widths.add(512)
    if features & {'sve', 'sve2'}:
        # SVE is length-agnostic; 128 is the architectural minimum
        widths.add(128)
    return frozenset(widths)


def logical_cpu_count() -> int:
    """Number of CPUs usable by this process (affinity-aware where possible)."""
    if hasattr(os, 'sched_getaffinity'):
        try:
            return max(1, len(os.sched_getaffinity(0)))
        except OSError:
            pass
    return max(1, os.cpu_count() or 1)
