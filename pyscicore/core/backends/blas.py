"""
Identification of the BLAS/LAPACK library the process is linked against.

NumPy and SciPy record their build dependencies; the linked library name is
normalized here to one of the vendor constants in core.capabilities.
"""

from dataclasses import dataclass
import logging

import numpy as np

from pyscicore.core.capabilities import (
    BLAS_ACCELERATE,
    BLAS_MKL,
    BLAS_NETLIB,
    BLAS_OPENBLAS,
    BLAS_UNKNOWN,
)

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlasInfo:
    """
    Linked BLAS/LAPACK library.

    Attributes:
        vendor: Normalized vendor constant (BLAS_OPENBLAS, BLAS_MKL, ...)
        library: Library name as reported by the build configuration
        version: Library version string, if reported
        source: Which package reported it ('numpy', 'scipy', or 'none')
    """
    vendor: str
    library: str
    version: str | None
    source: str

    def __str__(self) -> str:
        version = f" {self.version}" if self.version else ""
        return f"{self.vendor} ({self.library}{version}, via {self.source})"


def normalize_vendor(library_name: str | None) -> str:
    """
    Map a reported library name to a vendor constant.

    Examples:
        'scipy-openblas' -> 'openblas'
        'mkl-sdl'        -> 'intel-mkl'
        'accelerate'     -> 'accelerate'
        'blas'/'lapack'  -> 'netlib'
    """
    if not library_name:
        return BLAS_UNKNOWN
    name = library_name.lower()
    if 'openblas' in name:
        return BLAS_OPENBLAS
    if 'mkl' in name:
        return BLAS_MKL
    if 'accelerate' in name or 'veclib' in name:
        return BLAS_ACCELERATE
    if name in ('blas', 'lapack', 'cblas', 'refblas', 'netlib') or 'netlib' in name:
        return BLAS_NETLIB
    return BLAS_UNKNOWN


def _from_show_config(module, source: str) -> BlasInfo | None:
    try:
        config = module.show_config(mode='dicts')
    except TypeError:
        # Releases before the structured show_config only print
        return None
    if not isinstance(config, dict):
        return None
    deps = config.get('Build Dependencies', {})
    blas = deps.get('blas') or deps.get('lapack')
    if not blas or not blas.get('found', True):
        return None
    library = str(blas.get('name', ''))
    return BlasInfo(
        vendor=normalize_vendor(library),
        library=library,
        version=blas.get('version'),
        source=source,
    )


def detect_blas() -> BlasInfo:
    """
    Detect the BLAS/LAPACK library NumPy (or, failing that, SciPy) uses.

    Never raises: if the build configuration cannot be read the vendor is
    reported as BLAS_UNKNOWN.
    """
    try:
        info = _from_show_config(np, 'numpy')
        if info is not None and info.vendor != BLAS_UNKNOWN:
            return info
    except (AttributeError, KeyError, ValueError) as e:
        _logger.debug("numpy build configuration unreadable: %s", e)

    try:
        import scipy
        info = _from_show_config(scipy, 'scipy')
        if info is not None:
            return info
    except (ImportError, AttributeError, KeyError, ValueError) as e:
        _logger.debug("scipy build configuration unreadable: %s", e)

    return BlasInfo(vendor=BLAS_UNKNOWN, library='unknown', version=None, source='none')
