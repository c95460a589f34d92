"""
CPU linear-algebra backends (LAPACK via SciPy).

One backend class serves every vendor: SciPy dispatches to whichever LAPACK
the process is linked against, so the vendor only decides the backend's name
and whether concurrent calls are safe. Raw LAPACK `info` status codes are
translated into the BackendError family here and never escape.

LAPACK info convention:
    info == 0   success
    info < 0    the -info-th argument had an illegal value
    info > 0    routine-specific numerical failure (singular pivot, leading
                minor not positive definite, no convergence)
"""

from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray
import scipy.linalg
from scipy.linalg import lapack

from pyscicore.core.capabilities import (
    BLAS_ACCELERATE,
    BLAS_MKL,
    BLAS_NETLIB,
    BLAS_OPENBLAS,
    BLAS_UNKNOWN,
)
from pyscicore.core.backends.precision import machine_epsilon
from pyscicore.core.exceptions import (
    BackendError,
    BackendUnavailableError,
    NotPositiveDefiniteError,
    NumericDivergenceError,
    SingularMatrixError,
)


@dataclass(frozen=True)
class VendorSpec:
    """
    Per-vendor properties.

    Attributes:
        name: Vendor constant
        reentrant: Whether the library tolerates concurrent calls
        description: Human-readable description
    """
    name: str
    reentrant: bool
    description: str


VENDORS: dict[str, VendorSpec] = {
    BLAS_OPENBLAS: VendorSpec(BLAS_OPENBLAS, True, "OpenBLAS"),
    BLAS_MKL: VendorSpec(BLAS_MKL, True, "Intel oneMKL"),
    # Reference LAPACK keeps SAVE'd state in some routines
    BLAS_NETLIB: VendorSpec(BLAS_NETLIB, False, "Reference BLAS/LAPACK (netlib)"),
    BLAS_ACCELERATE: VendorSpec(BLAS_ACCELERATE, True, "Apple Accelerate"),
    BLAS_UNKNOWN: VendorSpec(BLAS_UNKNOWN, True, "Unidentified LAPACK"),
}


def check_info(info: int, routine: str, backend_name: str, matrix_name: str = 'A') -> None:
    """
    Translate a LAPACK info code.

    Raises:
        BackendError: info < 0 (illegal argument; a runtime bug, not user error)
        SingularMatrixError: info > 0 for factorizations and solves
        NotPositiveDefiniteError: info > 0 for potrf
        NumericDivergenceError: info > 0 for iterative eigen/SVD drivers
    """
    if info == 0:
        return
    if info < 0:
        raise BackendError(
            f"{routine}: argument {-info} had an illegal value",
            backend_name=backend_name,
            status=info,
        )
    if routine.endswith('potrf'):
        raise NotPositiveDefiniteError(
            f"{matrix_name} is not positive definite: leading minor of order {info} "
            f"is not positive ({routine} info={info})",
            matrix_name=matrix_name,
            backend_name=backend_name,
            status=info,
        )
    if routine.endswith(('getrf', 'gesv')):
        raise SingularMatrixError(
            f"{matrix_name} is exactly singular: U[{info - 1}, {info - 1}] is zero "
            f"({routine} info={info})",
            matrix_name=matrix_name,
            backend_name=backend_name,
            status=info,
        )
    raise NumericDivergenceError(
        f"{routine} failed to converge ({info} off-diagonal elements did not converge)",
        reason='max_iterations',
        backend_name=backend_name,
        status=info,
    )


def numerical_rank(R: NDArray[Any], shape: tuple[int, ...]) -> int:
    """Numerical rank from the diagonal of an upper-triangular factor."""
    diag_R = np.abs(np.diag(R))
    if len(diag_R) == 0 or diag_R.max() == 0:
        return 0
    tol = max(shape) * machine_epsilon(R.dtype) * diag_R.max()
    return int(np.sum(diag_R > tol))


class LapackBackend:
    """
    LAPACK-backed CPU implementation of the LinalgBackend protocol.

    Args:
        vendor: Vendor constant; selects name and reentrancy
    """

    def __init__(self, vendor: str):
        if vendor not in VENDORS:
            raise BackendUnavailableError(
                f"Unknown LAPACK vendor {vendor!r}; expected one of {sorted(VENDORS)}",
                backend_name=vendor,
            )
        self._spec = VENDORS[vendor]

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def reentrant(self) -> bool:
        return self._spec.reentrant

    def __repr__(self) -> str:
        return f"LapackBackend({self._spec.description})"

    def _funcs(self, names: tuple[str, ...], *arrays: NDArray[Any]):
        return lapack.get_lapack_funcs(names, arrays)

    # === Products ===

    def matmul(self, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        return np.matmul(a, b)

    # === Factorizations ===

    def lu(self, a: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any], NDArray[Any]]:
        # getrf reports exact singularity through info, but P, L, U are still a
        # valid factorization then, so no error is raised here
        p, l, u = scipy.linalg.lu(a, check_finite=False)
        return p, l, u

    def cholesky(self, a: NDArray[Any]) -> NDArray[Any]:
        (potrf,) = self._funcs(('potrf',), a)
        c, info = potrf(a, lower=True, clean=True, overwrite_a=False)
        check_info(info, potrf.typecode + 'potrf', self.name)
        return c

    def qr(self, a: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any]]:
        q, r = scipy.linalg.qr(a, mode='economic', check_finite=False)
        return q, r

    # === Solvers ===

    def solve(self, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        vector = b.ndim == 1
        rhs = b[:, np.newaxis] if vector else b
        (gesv,) = self._funcs(('gesv',), a, rhs)
        _, _, x, info = gesv(a, rhs, overwrite_a=False, overwrite_b=False)
        check_info(info, gesv.typecode + 'gesv', self.name)
        return x[:, 0] if vector else x

    def lstsq(self, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        try:
            x, _, _, _ = scipy.linalg.lstsq(a, b, lapack_driver='gelsd', check_finite=False)
        except np.linalg.LinAlgError as e:
            raise NumericDivergenceError(
                f"gelsd: SVD did not converge: {e}",
                reason='max_iterations',
                backend_name=self.name,
            ) from e
        return x

    # === Spectral ===

    def eigh(self, a: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any]]:
        try:
            w, v = scipy.linalg.eigh(a, driver='evd', check_finite=False)
        except np.linalg.LinAlgError as e:
            raise NumericDivergenceError(
                f"evd: eigenvalue iteration did not converge: {e}",
                reason='max_iterations',
                backend_name=self.name,
            ) from e
        return w, v

    def eig(self, a: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any]]:
        try:
            w, v = scipy.linalg.eig(a, check_finite=False)
        except np.linalg.LinAlgError as e:
            raise NumericDivergenceError(
                f"geev: QR algorithm did not converge: {e}",
                reason='max_iterations',
                backend_name=self.name,
            ) from e
        return w, v

    def det(self, a: NDArray[Any]) -> NDArray[Any]:
        if a.shape[0] == 0:
            return np.asarray(1.0, dtype=a.dtype)
        (getrf,) = self._funcs(('getrf',), a)
        lu, piv, info = getrf(a, overwrite_a=False)
        if info < 0:
            check_info(info, getrf.typecode + 'getrf', self.name)
        if info > 0:
            # Exactly singular
            return np.zeros((), dtype=a.dtype)
        swaps = np.count_nonzero(piv != np.arange(piv.shape[0]))
        sign = -1.0 if swaps % 2 else 1.0
        return np.asarray(sign * np.prod(np.diag(lu)), dtype=a.dtype)
