"""
Exception hierarchy for pyscicore.

All exceptions inherit from PyScicoreError so numeric packages can catch any
runtime error with one clause. Backend-specific status codes never escape the
runtime: they are normalized into the BackendError family below.

Design principles:
    - Exceptions carry diagnostic information as attributes
    - Error messages are actionable with actual vs expected values
    - Never catch and re-raise with less information
"""


class PyScicoreError(Exception):
    """Base exception for all pyscicore errors."""
    pass


class ValidationError(PyScicoreError):
    """
    Input validation failed.

    Raised when caller-provided inputs or configuration fail validation checks.
    """
    pass


class DimensionError(ValidationError):
    """
    Array dimensions are incorrect or inconsistent.

    Raised when array shapes don't match expected dimensions or
    when multiple arrays have inconsistent shapes.
    """
    pass


class NumericalError(PyScicoreError):
    """
    Numerical computation failed.

    Base class for errors arising from numerical issues during computation
    (singularity, divergence, overflow). Never silently corrected.
    """
    pass


class CapabilityUnavailableError(PyScicoreError):
    """
    Requested execution strategy is not supported on this host.

    Recoverable: the selector catches this and falls back to a safer
    strategy. Raised to the caller only when no fallback exists.

    Attributes:
        strategy: The strategy that was requested
        reason: Why the host cannot provide it
    """

    def __init__(
        self,
        message: str,
        strategy: str | None = None,
        reason: str | None = None,
    ):
        super().__init__(message)
        self.strategy = strategy
        self.reason = reason


class AllocationExhaustedError(PyScicoreError):
    """
    Memory ceiling reached.

    Surfaced to the caller, never retried automatically.

    Attributes:
        requested_bytes: Size of the request that could not be satisfied
        in_use_bytes: Bytes held by live buffers at the time of the request
        pooled_bytes: Bytes held by free lists at the time of the request
        ceiling_bytes: Configured memory ceiling
    """

    def __init__(
        self,
        message: str,
        requested_bytes: int | None = None,
        in_use_bytes: int | None = None,
        pooled_bytes: int | None = None,
        ceiling_bytes: int | None = None,
    ):
        super().__init__(message)
        self.requested_bytes = requested_bytes
        self.in_use_bytes = in_use_bytes
        self.pooled_bytes = pooled_bytes
        self.ceiling_bytes = ceiling_bytes


class OwnershipError(PyScicoreError):
    """
    A buffer handle was used after it was released or transferred.
    """
    pass


class WorkerFailureError(PyScicoreError):
    """
    A parallel work unit failed.

    Carries the first observed failure; remaining units were cancelled
    best-effort and partial results discarded. The original exception is
    chained as __cause__.

    Attributes:
        chunk_index: Partition index of the failing unit
        cause: The exception raised by the unit
    """

    def __init__(
        self,
        message: str,
        chunk_index: int | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.chunk_index = chunk_index
        self.cause = cause


# Normalized linear-algebra failure kinds
KIND_SINGULAR_MATRIX = 'singular_matrix'
KIND_DIMENSION_MISMATCH = 'dimension_mismatch'
KIND_BACKEND_UNAVAILABLE = 'backend_unavailable'
KIND_NUMERIC_DIVERGENCE = 'numeric_divergence'


class BackendError(PyScicoreError):
    """
    Normalized linear-algebra backend failure.

    Attributes:
        kind: One of the KIND_* constants
        backend_name: Backend that produced the failure (e.g. 'openblas', 'torch')
        status: Raw backend status code (e.g. LAPACK info), if any
    """

    kind: str = 'backend_error'

    def __init__(
        self,
        message: str,
        backend_name: str | None = None,
        status: int | None = None,
    ):
        super().__init__(message)
        self.backend_name = backend_name
        self.status = status


class SingularMatrixError(BackendError, NumericalError):
    """
    Matrix is singular or nearly singular.

    Raised when a matrix operation requires invertibility but the matrix
    is singular or numerically rank-deficient.

    Attributes:
        matrix_name: Name/description of the problematic matrix
        condition_number: Estimated condition number, if available
        rank: Numerical rank, if computed
        expected_rank: Expected rank (typically min(n, p))
    """

    kind = KIND_SINGULAR_MATRIX

    def __init__(
        self,
        message: str,
        matrix_name: str | None = None,
        condition_number: float | None = None,
        rank: int | None = None,
        expected_rank: int | None = None,
        backend_name: str | None = None,
        status: int | None = None,
    ):
        super().__init__(message, backend_name=backend_name, status=status)
        self.matrix_name = matrix_name
        self.condition_number = condition_number
        self.rank = rank
        self.expected_rank = expected_rank


class NotPositiveDefiniteError(SingularMatrixError):
    """
    Matrix is not positive definite.

    Raised when an operation requires a positive definite matrix
    (e.g., Cholesky decomposition) but the matrix fails this requirement.

    Attributes:
        min_eigenvalue: Minimum eigenvalue, if computed
    """

    def __init__(
        self,
        message: str,
        matrix_name: str | None = None,
        min_eigenvalue: float | None = None,
        backend_name: str | None = None,
        status: int | None = None,
    ):
        super().__init__(
            message,
            matrix_name=matrix_name,
            backend_name=backend_name,
            status=status,
        )
        self.min_eigenvalue = min_eigenvalue


class DimensionMismatchError(BackendError, DimensionError):
    """
    Operand shapes are incompatible for a linear-algebra primitive.

    Attributes:
        expected: Expected shape or dimension, if known
        actual: Actual shape or dimension, if known
    """

    kind = KIND_DIMENSION_MISMATCH

    def __init__(
        self,
        message: str,
        expected: tuple | int | None = None,
        actual: tuple | int | None = None,
        backend_name: str | None = None,
        status: int | None = None,
    ):
        super().__init__(message, backend_name=backend_name, status=status)
        self.expected = expected
        self.actual = actual


class BackendUnavailableError(BackendError):
    """
    The selected linear-algebra backend cannot be used in this process.

    Raised when the configured vendor is not the library the process is
    linked against, or when an optional dependency (PyTorch) is missing.
    """

    kind = KIND_BACKEND_UNAVAILABLE


class NumericDivergenceError(BackendError, NumericalError):
    """
    Iterative backend routine failed to converge.

    Raised when, e.g., an eigenvalue solver exhausts its iterations or a
    result contains non-finite values.

    Attributes:
        iterations: Number of iterations completed, if known
        reason: Why convergence failed (e.g., 'max_iterations', 'non_finite')
    """

    kind = KIND_NUMERIC_DIVERGENCE

    def __init__(
        self,
        message: str,
        iterations: int | None = None,
        reason: str | None = None,
        backend_name: str | None = None,
        status: int | None = None,
    ):
        super().__init__(message, backend_name=backend_name, status=status)
        self.iterations = iterations
        self.reason = reason
