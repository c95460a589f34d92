"""
Runtime configuration.

Two layers:
    RuntimeSettings: process-wide tunables read once from PYSCICORE_*
        environment variables (pydantic-settings). Memoized by get_settings().
    ComputeConfig: per-request configuration passed with each compute call
        (precision, strategy hint, cache eligibility, floating-point policy).

Thresholds for choosing among scalar/SIMD/parallel/GPU execution are
platform-dependent and therefore settings, not constants.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pyscicore.core.capabilities import (
    BLAS_ACCELERATE,
    BLAS_MKL,
    BLAS_NETLIB,
    BLAS_OPENBLAS,
    STRATEGY_AUTO,
    STRATEGY_ORDER,
)
from pyscicore.core.exceptions import ValidationError

_logger = logging.getLogger(__name__)

MiB = 1024 * 1024
GiB = 1024 * MiB

LinalgBackendChoice = Literal['auto', 'openblas', 'intel-mkl', 'netlib', 'accelerate']
PrecisionChoice = Literal['auto', 'fp32', 'fp64']
StrategyHint = Literal['auto', 'scalar', 'simd', 'parallel', 'gpu']
FPErrorPolicy = Literal['ignore', 'warn', 'raise']


class RuntimeSettings(BaseSettings):
    """Process-wide runtime tunables.

    Every field can be overridden through an environment variable with the
    PYSCICORE_ prefix, e.g. PYSCICORE_WORKER_THREADS=8.
    """

    model_config = SettingsConfigDict(
        env_prefix="PYSCICORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Worker pool
    worker_threads: int | None = Field(
        default=None,
        ge=1,
        le=1024,
        description="Worker-pool size override (None = logical core count)",
    )

    queue_depth: int = Field(
        default=256,
        ge=1,
        description="Capacity of the bounded work queue feeding the worker pool",
    )

    # Memory manager
    memory_ceiling_bytes: int = Field(
        default=4 * GiB,
        ge=4096,
        description="Upper bound on in-use + pooled buffer bytes",
    )

    pool_cap_bytes: int = Field(
        default=1 * GiB,
        ge=0,
        description="Maximum bytes retained on free lists after release",
    )

    working_set_bytes: int = Field(
        default=100 * MiB,
        ge=4096,
        description="Maximum bytes a streaming computation keeps resident",
    )

    block_on_exhaustion: bool = Field(
        default=False,
        description="Block acquisitions at the ceiling instead of failing fast",
    )

    acquire_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds a blocked acquisition waits before failing (None = forever)",
    )

    # Computation cache
    cache_enabled: bool = Field(
        default=True,
        description="Enable memoization of cache-eligible compute requests",
    )

    cache_budget_bytes: int = Field(
        default=256 * MiB,
        ge=0,
        description="Maximum bytes held by cached results",
    )

    # Strategy selection thresholds (elements)
    simd_threshold: int = Field(
        default=1024,
        ge=0,
        description="Minimum workload size for SIMD execution",
    )

    parallel_threshold: int = Field(
        default=1 << 16,
        ge=0,
        description="Workload size above which multi-threaded execution is preferred",
    )

    gpu_threshold: int = Field(
        default=1 << 22,
        ge=0,
        description="Workload size above which GPU offload is preferred",
    )

    chunks_per_worker: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Target number of chunks per worker for load balancing",
    )

    min_chunk_elements: int = Field(
        default=4096,
        ge=1,
        description="Lower bound on the size of a parallel chunk",
    )

    # Linear algebra
    linalg_backend: LinalgBackendChoice = Field(
        default='auto',
        description="CPU LAPACK vendor; 'auto' uses the library NumPy is linked against",
    )

    use_openblas: bool = Field(default=False, description="Legacy vendor flag")
    use_mkl: bool = Field(default=False, description="Legacy vendor flag")
    use_netlib: bool = Field(default=False, description="Legacy vendor flag")
    use_accelerate: bool = Field(default=False, description="Legacy vendor flag")

    workspace_bytes: int = Field(
        default=16 * MiB,
        ge=0,
        description="Scratch workspace reserved by the linear-algebra backend handle",
    )

    # Diagnostics
    log_level: str = Field(
        default="WARNING",
        description="Log level for pyscicore loggers",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a standard logging level name."""
        normalized = v.upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"log_level must be a logging level name, got {v!r}")
        return normalized

    @model_validator(mode="after")
    def validate_thresholds(self) -> "RuntimeSettings":
        """Thresholds must be ordered simd <= parallel <= gpu."""
        if not (self.simd_threshold <= self.parallel_threshold <= self.gpu_threshold):
            raise ValueError(
                "thresholds must satisfy simd_threshold <= parallel_threshold <= "
                f"gpu_threshold, got {self.simd_threshold}, "
                f"{self.parallel_threshold}, {self.gpu_threshold}"
            )
        if self.pool_cap_bytes > self.memory_ceiling_bytes:
            raise ValueError(
                f"pool_cap_bytes ({self.pool_cap_bytes}) exceeds "
                f"memory_ceiling_bytes ({self.memory_ceiling_bytes})"
            )
        return self

    @model_validator(mode="after")
    def validate_vendor_exclusive(self) -> "RuntimeSettings":
        """At most one linear-algebra vendor may be selected."""
        flagged = [
            vendor
            for vendor, on in (
                (BLAS_OPENBLAS, self.use_openblas),
                (BLAS_MKL, self.use_mkl),
                (BLAS_NETLIB, self.use_netlib),
                (BLAS_ACCELERATE, self.use_accelerate),
            )
            if on
        ]
        if len(flagged) > 1:
            raise ValueError(
                f"linear-algebra backends are mutually exclusive, got {flagged}"
            )
        if flagged:
            if self.linalg_backend not in ('auto', flagged[0]):
                raise ValueError(
                    f"linalg_backend={self.linalg_backend!r} conflicts with "
                    f"legacy flag for {flagged[0]!r}"
                )
            self.linalg_backend = flagged[0]
        return self

    @property
    def requested_vendor(self) -> str | None:
        """Explicitly requested vendor, or None for 'auto'."""
        return None if self.linalg_backend == 'auto' else self.linalg_backend


_settings: RuntimeSettings | None = None


def get_settings() -> RuntimeSettings:
    """Get or create the settings singleton.

    Environment variables are read once, on first call.
    """
    global _settings
    if _settings is None:
        _settings = RuntimeSettings()
        _logger.debug("Loaded runtime settings: %s", _settings.model_dump())
    return _settings


def reload_settings() -> RuntimeSettings:
    """Reload settings from the environment (for testing)."""
    global _settings
    _settings = None
    return get_settings()


@dataclass(frozen=True)
class ComputeConfig:
    """
    Per-request configuration.

    Attributes:
        precision: 'fp64', 'fp32', or 'auto' (keep the input dtype)
        strategy: Strategy hint; 'auto' lets the selector decide
        cacheable: Whether the result may be memoized
        fp_errors: numpy floating-point error policy inside work units
        max_workers: Upper bound on workers for this request (None = pool size)
    """
    precision: PrecisionChoice = 'auto'
    strategy: StrategyHint = 'auto'
    cacheable: bool = False
    fp_errors: FPErrorPolicy = 'ignore'
    max_workers: int | None = None

    def __post_init__(self) -> None:
        if self.precision not in ('auto', 'fp32', 'fp64'):
            raise ValidationError(
                f"precision: expected 'auto', 'fp32' or 'fp64', got {self.precision!r}"
            )
        if self.strategy != STRATEGY_AUTO and self.strategy not in STRATEGY_ORDER:
            raise ValidationError(
                f"strategy: expected one of {(STRATEGY_AUTO,) + STRATEGY_ORDER}, "
                f"got {self.strategy!r}"
            )
        if self.fp_errors not in ('ignore', 'warn', 'raise'):
            raise ValidationError(
                f"fp_errors: expected 'ignore', 'warn' or 'raise', got {self.fp_errors!r}"
            )
        if self.max_workers is not None and self.max_workers < 1:
            raise ValidationError(f"max_workers: must be >= 1, got {self.max_workers}")

    def cache_key(self) -> str:
        """Stable text form of the fields that affect numeric results."""
        return f"precision={self.precision};fp_errors={self.fp_errors}"
