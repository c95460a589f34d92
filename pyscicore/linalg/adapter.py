"""
Uniform front end over the linear-algebra backends.

LinalgAdapter exposes one set of primitives (matmul, lu, cholesky, qr, solve,
lstsq, eigh, eig, det) regardless of which LAPACK vendor, or GPU, does the
work. It

    - resolves the configured vendor against the linked library once, on
      first use, and creates a BackendHandle for it
    - validates operand shapes before any backend is called
    - serializes calls into non-reentrant backends with a lock
    - guarantees only BackendError-family errors leave a backend call

The vendor choice is made once per process: it comes from
RuntimeSettings.linalg_backend (or one legacy PYSCICORE_USE_* flag) and can
only name the library the process actually loads.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

from pyscicore.core.capabilities import BLAS_UNKNOWN
from pyscicore.core.config import RuntimeSettings
from pyscicore.core.exceptions import (
    BackendError,
    BackendUnavailableError,
    DimensionMismatchError,
    NumericDivergenceError,
    SingularMatrixError,
)
from pyscicore.core.protocols import LinalgBackend
from pyscicore.core.validation import (
    check_1d,
    check_2d,
    check_finite,
    check_matmul_shapes,
    check_square,
)
from pyscicore.linalg.backends.cpu import LapackBackend, numerical_rank

if TYPE_CHECKING:
    from pyscicore.runtime.detector import CapabilityDescriptor

_logger = logging.getLogger(__name__)


@dataclass
class BackendHandle:
    """
    Live handle on the process's CPU linear-algebra backend.

    Attributes:
        vendor: Vendor constant the handle was created for
        backend: The backend instance
        workspace_bytes: Scratch budget reserved for the backend
        created_at: time.time() at creation
    """
    vendor: str
    backend: LapackBackend
    workspace_bytes: int
    created_at: float = field(default_factory=time.time)
    closed: bool = False

    @property
    def reentrant(self) -> bool:
        return self.backend.reentrant


class LinalgAdapter:
    """
    Vendor-neutral linear algebra.

    Args:
        descriptor: Host capabilities (linked BLAS vendor, accelerator)
        settings: Vendor selection and workspace budget
    """

    def __init__(self, descriptor: CapabilityDescriptor, settings: RuntimeSettings):
        self._descriptor = descriptor
        self._settings = settings
        self._handle: BackendHandle | None = None
        self._gpu_backends: dict[str, LinalgBackend] = {}
        self._init_lock = threading.Lock()
        self._call_lock = threading.Lock()

    # === Lifecycle ===

    def _resolve_vendor(self) -> str:
        linked = self._descriptor.blas_vendor
        requested = self._settings.requested_vendor
        if requested is None:
            return linked
        if linked != BLAS_UNKNOWN and requested != linked:
            raise BackendUnavailableError(
                f"linalg_backend={requested!r} but this process is linked against "
                f"{self._descriptor.blas}; rebuild NumPy/SciPy against {requested} "
                "or set PYSCICORE_LINALG_BACKEND=auto",
                backend_name=requested,
            )
        if linked == BLAS_UNKNOWN:
            _logger.debug("Linked BLAS unknown; trusting configured vendor %s", requested)
        return requested

    @property
    def handle(self) -> BackendHandle:
        """The CPU backend handle, created on first access."""
        handle = self._handle
        if handle is not None and not handle.closed:
            return handle
        with self._init_lock:
            if self._handle is None or self._handle.closed:
                vendor = self._resolve_vendor()
                self._handle = BackendHandle(
                    vendor=vendor,
                    backend=LapackBackend(vendor),
                    workspace_bytes=self._settings.workspace_bytes,
                )
                _logger.info(
                    "Initialized %s linear-algebra backend (reentrant=%s)",
                    vendor, self._handle.reentrant,
                )
            return self._handle

    @property
    def initialized(self) -> bool:
        return self._handle is not None and not self._handle.closed

    def close(self) -> None:
        """Tear down the backend handle. A later call re-creates it."""
        with self._init_lock:
            if self._handle is not None and not self._handle.closed:
                self._handle.closed = True
                _logger.debug("Closed %s backend handle", self._handle.vendor)
            self._gpu_backends.clear()

    # === Dispatch ===

    def backend_for(self, device: str = 'cpu') -> LinalgBackend:
        """CPU handle backend, or the torch backend for a GPU device string."""
        if device == 'cpu':
            return self.handle.backend
        backend = self._gpu_backends.get(device)
        if backend is None:
            from pyscicore.linalg.backends.gpu import TorchBackend
            with self._init_lock:
                backend = self._gpu_backends.get(device)
                if backend is None:
                    backend = TorchBackend(device)
                    self._gpu_backends[device] = backend
        return backend

    def _call(self, routine: str, device: str, *operands: NDArray[Any]):
        backend = self.backend_for(device)
        guard = nullcontext() if backend.reentrant else self._call_lock
        errors = nullcontext() if device == 'cpu' else backend.device_errors(routine)
        with guard, errors:
            try:
                return getattr(backend, routine)(*operands)
            except BackendError:
                raise
            except np.linalg.LinAlgError as e:
                # Backends translate their own failures; this catches strays
                raise SingularMatrixError(
                    f"{routine} failed in {backend.name}: {e}",
                    backend_name=backend.name,
                ) from e
            except ValueError as e:
                raise DimensionMismatchError(
                    f"{routine} rejected operands in {backend.name}: {e}",
                    backend_name=backend.name,
                ) from e

    # === Primitives ===

    def matmul(self, a: NDArray[Any], b: NDArray[Any], device: str = 'cpu') -> NDArray[Any]:
        check_matmul_shapes(a, b)
        return self._call('matmul', device, a, b)

    def lu(self, a: NDArray[Any], device: str = 'cpu'):
        """Return (P, L, U) with A = P @ L @ U."""
        check_square(a, 'A')
        check_finite(a, 'A')
        return self._call('lu', device, a)

    def cholesky(self, a: NDArray[Any], device: str = 'cpu') -> NDArray[Any]:
        """Lower-triangular L with A = L @ L^H."""
        check_square(a, 'A')
        check_finite(a, 'A')
        return self._call('cholesky', device, a)

    def qr(self, a: NDArray[Any], device: str = 'cpu'):
        """
        Reduced QR.

        Returns:
            (Q, R, rank) where rank is the numerical rank read off R's diagonal
        """
        check_2d(a, 'A')
        check_finite(a, 'A')
        q, r = self._call('qr', device, a)
        return q, r, numerical_rank(r, a.shape)

    def solve(self, a: NDArray[Any], b: NDArray[Any], device: str = 'cpu') -> NDArray[Any]:
        check_square(a, 'A')
        self._check_rhs(a, b)
        check_finite(a, 'A')
        check_finite(b, 'b')
        return self._call('solve', device, a, b)

    def lstsq(self, a: NDArray[Any], b: NDArray[Any], device: str = 'cpu') -> NDArray[Any]:
        check_2d(a, 'A')
        self._check_rhs(a, b)
        check_finite(a, 'A')
        check_finite(b, 'b')
        return self._call('lstsq', device, a, b)

    def eigh(self, a: NDArray[Any], device: str = 'cpu'):
        check_square(a, 'A')
        check_finite(a, 'A')
        return self._call('eigh', device, a)

    def eig(self, a: NDArray[Any], device: str = 'cpu'):
        check_square(a, 'A')
        check_finite(a, 'A')
        return self._call('eig', device, a)

    def det(self, a: NDArray[Any], device: str = 'cpu') -> NDArray[Any]:
        check_square(a, 'A')
        check_finite(a, 'A')
        d = self._call('det', device, a)
        if not np.all(np.isfinite(d)):
            raise NumericDivergenceError(
                "det overflowed; use a log-determinant for matrices of this scale",
                reason='non_finite',
            )
        return d

    @staticmethod
    def _check_rhs(a: NDArray[Any], b: NDArray[Any]) -> None:
        if b.ndim == 1:
            check_1d(b, 'b')
        elif b.ndim != 2:
            raise DimensionMismatchError(
                f"b: expected 1D or 2D right-hand side, got {b.ndim}D",
                expected=2,
                actual=b.ndim,
            )
        if b.shape[0] != a.shape[0]:
            raise DimensionMismatchError(
                f"Row mismatch: A{a.shape} and b{b.shape}",
                expected=a.shape[0],
                actual=b.shape[0],
            )
