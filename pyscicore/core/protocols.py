"""
Core protocols for pyscicore.

These define structural interfaces that pluggable implementations must
satisfy. We use Protocol (structural typing) rather than ABC (nominal typing)
so numeric packages can supply their own kernels and backends without
inheriting from runtime classes.

Design Principles:
    - Minimal contracts: prescribe only what's truly universal
    - Capability-driven: backends advertise what they can do
    - Backends never leak vendor status codes: they raise the normalized
      BackendError family from core.exceptions
"""

from typing import Protocol, TypeVar, Any, runtime_checkable

from numpy.typing import NDArray

T = TypeVar('T')  # Partial result type


@runtime_checkable
class ChunkKernel(Protocol[T]):
    """
    Work performed on one partition of a workload.

    Called with the half-open element range [start, stop) of the partition
    and returns that partition's partial result. Must not mutate shared state
    other than its own output slot.
    """

    def __call__(self, start: int, stop: int) -> T:
        ...


@runtime_checkable
class LinalgBackend(Protocol):
    """
    Protocol for dense linear-algebra backends.

    Each backend wraps one concrete library (a LAPACK vendor on the CPU, or
    torch.linalg on a GPU). Inputs are never overwritten. All arrays returned
    are NumPy arrays on the host.
    """

    @property
    def name(self) -> str:
        """
        Backend identifier.

        Examples: 'openblas', 'intel-mkl', 'netlib', 'accelerate', 'torch_cuda'
        """
        ...

    @property
    def reentrant(self) -> bool:
        """False if concurrent calls must be serialized by the adapter."""
        ...

    def matmul(self, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        ...

    def lu(self, a: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any], NDArray[Any]]:
        """Return (P, L, U) with A = P @ L @ U."""
        ...

    def cholesky(self, a: NDArray[Any]) -> NDArray[Any]:
        """Return lower-triangular L with A = L @ L^H."""
        ...

    def qr(self, a: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any]]:
        """Return reduced (Q, R)."""
        ...

    def solve(self, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        ...

    def lstsq(self, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        ...

    def eigh(self, a: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any]]:
        """Return (eigenvalues ascending, eigenvectors) of a Hermitian matrix."""
        ...

    def eig(self, a: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any]]:
        """Return (eigenvalues, right eigenvectors) of a general matrix."""
        ...

    def det(self, a: NDArray[Any]) -> NDArray[Any]:
        ...

