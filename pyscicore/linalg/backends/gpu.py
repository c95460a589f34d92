"""
GPU linear-algebra backend using PyTorch.

Supports CUDA (Linux/Windows) and MPS (macOS Apple Silicon). Operands are
copied to the device, computed with torch.linalg, and copied back as NumPy
arrays. torch's LinAlgError and non-finite outputs are translated into the
BackendError family so callers see the same failure kinds as on the CPU.
"""

from contextlib import contextmanager
from typing import Any, Iterator

import numpy as np
from numpy.typing import NDArray

from pyscicore.core.exceptions import (
    BackendUnavailableError,
    NotPositiveDefiniteError,
    NumericDivergenceError,
    SingularMatrixError,
)


class TorchBackend:
    """
    torch.linalg implementation of the LinalgBackend protocol.

    Args:
        device: torch device string ('cuda', 'cuda:0', 'mps')
    """

    def __init__(self, device: str = 'cuda'):
        try:
            import torch
        except ImportError as e:
            raise BackendUnavailableError(
                "PyTorch is not installed; install pyscicore[gpu] for GPU offload",
                backend_name='torch',
            ) from e

        if device.startswith('cuda'):
            if not torch.cuda.is_available():
                raise BackendUnavailableError(
                    "CUDA not available. Install PyTorch with CUDA support, "
                    "or run with strategy='parallel'.",
                    backend_name='torch_cuda',
                )
        elif device == 'mps':
            if not (hasattr(torch.backends, 'mps') and torch.backends.mps.is_available()):
                raise BackendUnavailableError(
                    "MPS not available. Requires macOS with Apple Silicon "
                    "and PyTorch with MPS support.",
                    backend_name='torch_mps',
                )
        else:
            raise BackendUnavailableError(
                f"Unknown GPU device: {device!r}. Use 'cuda' or 'mps'.",
                backend_name='torch',
            )
        self._torch = torch
        self.device = torch.device(device)
        self._device_type = self.device.type

    @property
    def name(self) -> str:
        return f"torch_{self._device_type}"

    @property
    def reentrant(self) -> bool:
        return True

    @contextmanager
    def device_errors(self, routine: str = 'GPU operation') -> Iterator[None]:
        """
        Translate torch runtime failures inside the block into BackendErrors.

        torch.linalg.LinAlgError becomes NumericDivergenceError. Any other
        RuntimeError (out of memory, lost device, failed kernel launch) becomes
        BackendUnavailableError, which the runtime answers by retrying on the CPU.
        """
        try:
            yield
        except self._torch.linalg.LinAlgError as e:
            raise NumericDivergenceError(
                f"{routine} failed on {self.device}: {e}",
                reason='linalg_error',
                backend_name=self.name,
            ) from e
        except RuntimeError as e:
            raise BackendUnavailableError(
                f"{routine} failed on {self.device}: {type(e).__name__}: {e}",
                backend_name=self.name,
            ) from e

    # === Transfer ===

    def _to_device(self, a: NDArray[Any]):
        if self._device_type == 'mps':
            if a.dtype == np.float64:
                a = a.astype(np.float32)
            elif a.dtype == np.complex128:
                a = a.astype(np.complex64)
        return self._torch.from_numpy(np.ascontiguousarray(a)).to(self.device)

    def _to_host(self, t, dtype: np.dtype) -> NDArray[Any]:
        out = t.detach().cpu().numpy()
        if out.dtype.kind == dtype.kind and out.dtype != dtype:
            out = out.astype(dtype)
        return out

    def _check_finite(self, t, routine: str) -> None:
        if not bool(self._torch.isfinite(t).all()):
            raise NumericDivergenceError(
                f"{routine} produced non-finite values on {self.device}",
                reason='non_finite',
                backend_name=self.name,
            )

    def _singular(self, e: Exception, routine: str) -> SingularMatrixError:
        return SingularMatrixError(
            f"{routine}: matrix is singular on {self.device}: {e}",
            matrix_name='A',
            backend_name=self.name,
        )

    # === Operations ===

    def matmul(self, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        out = self._to_device(a) @ self._to_device(b)
        return self._to_host(out, np.result_type(a, b))

    def lu(self, a: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any], NDArray[Any]]:
        P, L, U = self._torch.linalg.lu(self._to_device(a))
        return tuple(self._to_host(t, a.dtype) for t in (P, L, U))

    def cholesky(self, a: NDArray[Any]) -> NDArray[Any]:
        L, info = self._torch.linalg.cholesky_ex(self._to_device(a))
        status = int(info)
        if status > 0:
            raise NotPositiveDefiniteError(
                f"A is not positive definite: leading minor of order {status} "
                "is not positive",
                matrix_name='A',
                backend_name=self.name,
                status=status,
            )
        return self._to_host(L, a.dtype)

    def qr(self, a: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any]]:
        Q, R = self._torch.linalg.qr(self._to_device(a), mode='reduced')
        return self._to_host(Q, a.dtype), self._to_host(R, a.dtype)

    def solve(self, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        try:
            x = self._torch.linalg.solve(self._to_device(a), self._to_device(b))
        except self._torch.linalg.LinAlgError as e:
            raise self._singular(e, 'solve') from e
        self._check_finite(x, 'solve')
        return self._to_host(x, np.result_type(a, b))

    def lstsq(self, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        A, B = self._to_device(a), self._to_device(b)
        vector = B.ndim == 1
        if vector:
            B = B.unsqueeze(-1)
        # Only 'gels' runs on CUDA and it assumes full rank; go through the
        # pseudo-inverse so rank-deficient systems match the CPU minimum-norm answer
        x = self._torch.linalg.pinv(A) @ B
        if vector:
            x = x.squeeze(-1)
        self._check_finite(x, 'lstsq')
        return self._to_host(x, np.result_type(a, b))

    def eigh(self, a: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any]]:
        try:
            w, v = self._torch.linalg.eigh(self._to_device(a))
        except self._torch.linalg.LinAlgError as e:
            raise NumericDivergenceError(
                f"eigh did not converge on {self.device}: {e}",
                reason='max_iterations',
                backend_name=self.name,
            ) from e
        real = np.dtype(a.dtype.char.lower()) if a.dtype.kind == 'c' else a.dtype
        return self._to_host(w, real), self._to_host(v, a.dtype)

    def eig(self, a: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any]]:
        try:
            w, v = self._torch.linalg.eig(self._to_device(a))
        except self._torch.linalg.LinAlgError as e:
            raise NumericDivergenceError(
                f"eig did not converge on {self.device}: {e}",
                reason='max_iterations',
                backend_name=self.name,
            ) from e
        complex_dtype = np.result_type(a.dtype, np.complex64)
        return self._to_host(w, complex_dtype), self._to_host(v, complex_dtype)

    def det(self, a: NDArray[Any]) -> NDArray[Any]:
        d = self._torch.linalg.det(self._to_device(a))
        return np.asarray(self._to_host(d, a.dtype))
