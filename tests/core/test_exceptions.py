"""
Tests for the pyscicore exception hierarchy.

Validates:
    - Inheritance chain (all exceptions catchable via PyScicoreError)
    - BackendError family: kind, backend_name, status
    - Diagnostic attributes on SingularMatrixError, NotPositiveDefiniteError,
      NumericDivergenceError, AllocationExhaustedError, WorkerFailureError
    - Default attribute values (None for optional attributes)
"""

import pytest

from pyscicore.core.exceptions import (
    KIND_BACKEND_UNAVAILABLE,
    KIND_DIMENSION_MISMATCH,
    KIND_NUMERIC_DIVERGENCE,
    KIND_SINGULAR_MATRIX,
    AllocationExhaustedError,
    BackendError,
    BackendUnavailableError,
    CapabilityUnavailableError,
    DimensionError,
    DimensionMismatchError,
    NotPositiveDefiniteError,
    NumericalError,
    NumericDivergenceError,
    OwnershipError,
    PyScicoreError,
    SingularMatrixError,
    ValidationError,
    WorkerFailureError,
)


# ═══════════════════════════════════════════════════════════════════════
# Inheritance hierarchy
# ═══════════════════════════════════════════════════════════════════════


class TestInheritance:
    """Every exception is catchable via PyScicoreError."""

    @pytest.mark.parametrize("exc_type", [
        ValidationError,
        DimensionError,
        NumericalError,
        CapabilityUnavailableError,
        AllocationExhaustedError,
        OwnershipError,
        WorkerFailureError,
        BackendError,
        SingularMatrixError,
        NotPositiveDefiniteError,
        DimensionMismatchError,
        BackendUnavailableError,
        NumericDivergenceError,
    ])
    def test_catchable_as_base(self, exc_type):
        with pytest.raises(PyScicoreError):
            raise exc_type("failure")

    def test_dimension_error_is_validation_error(self):
        with pytest.raises(ValidationError):
            raise DimensionError("wrong shape")

    def test_singular_matrix_is_backend_and_numerical(self):
        err = SingularMatrixError("singular")
        assert isinstance(err, BackendError)
        assert isinstance(err, NumericalError)

    def test_not_positive_definite_is_singular(self):
        with pytest.raises(SingularMatrixError):
            raise NotPositiveDefiniteError("not PD")

    def test_dimension_mismatch_is_backend_and_dimension(self):
        err = DimensionMismatchError("inner dims differ")
        assert isinstance(err, BackendError)
        assert isinstance(err, DimensionError)
        assert isinstance(err, ValidationError)

    def test_divergence_is_numerical(self):
        assert isinstance(NumericDivergenceError("nan"), NumericalError)

    def test_unavailable_is_not_numerical(self):
        assert not isinstance(BackendUnavailableError("missing"), NumericalError)

    def test_capability_error_is_not_backend_error(self):
        assert not isinstance(CapabilityUnavailableError("no gpu"), BackendError)


# ═══════════════════════════════════════════════════════════════════════
# BackendError family
# ═══════════════════════════════════════════════════════════════════════


class TestBackendErrorKinds:
    """Each normalized failure carries its kind constant."""

    @pytest.mark.parametrize("exc_type, kind", [
        (SingularMatrixError, KIND_SINGULAR_MATRIX),
        (NotPositiveDefiniteError, KIND_SINGULAR_MATRIX),
        (DimensionMismatchError, KIND_DIMENSION_MISMATCH),
        (BackendUnavailableError, KIND_BACKEND_UNAVAILABLE),
        (NumericDivergenceError, KIND_NUMERIC_DIVERGENCE),
    ])
    def test_kind(self, exc_type, kind):
        assert exc_type("failure").kind == kind

    def test_backend_name_and_status(self):
        err = SingularMatrixError("singular", backend_name="openblas", status=3)
        assert err.backend_name == "openblas"
        assert err.status == 3

    def test_defaults_are_none(self):
        err = BackendError("failure")
        assert err.backend_name is None
        assert err.status is None


# ═══════════════════════════════════════════════════════════════════════
# SingularMatrixError / NotPositiveDefiniteError
# ═══════════════════════════════════════════════════════════════════════


class TestSingularMatrixError:
    """SingularMatrixError carries matrix diagnostic attributes."""

    def test_all_attributes(self):
        err = SingularMatrixError(
            "A is singular",
            matrix_name="A",
            condition_number=1e18,
            rank=3,
            expected_rank=5,
        )
        assert str(err) == "A is singular"
        assert err.matrix_name == "A"
        assert err.condition_number == 1e18
        assert err.rank == 3
        assert err.expected_rank == 5

    def test_defaults_are_none(self):
        err = SingularMatrixError("singular")
        assert err.matrix_name is None
        assert err.condition_number is None
        assert err.rank is None
        assert err.expected_rank is None

    def test_not_positive_definite_attributes(self):
        err = NotPositiveDefiniteError(
            "Cholesky failed",
            matrix_name="covariance",
            min_eigenvalue=-0.001,
            status=2,
        )
        assert err.matrix_name == "covariance"
        assert err.min_eigenvalue == -0.001
        assert err.status == 2
        assert err.rank is None


# ═══════════════════════════════════════════════════════════════════════
# Runtime errors with diagnostics
# ═══════════════════════════════════════════════════════════════════════


class TestRuntimeErrors:

    def test_capability_unavailable(self):
        err = CapabilityUnavailableError("no gpu", strategy="gpu", reason="no_device")
        assert err.strategy == "gpu"
        assert err.reason == "no_device"

    def test_allocation_exhausted(self):
        err = AllocationExhaustedError(
            "ceiling reached",
            requested_bytes=8192,
            in_use_bytes=4096,
            pooled_bytes=0,
            ceiling_bytes=8192,
        )
        assert err.requested_bytes == 8192
        assert err.in_use_bytes == 4096
        assert err.pooled_bytes == 0
        assert err.ceiling_bytes == 8192

    def test_worker_failure(self):
        cause = ZeroDivisionError("boom")
        err = WorkerFailureError("unit 3 failed", chunk_index=3, cause=cause)
        assert err.chunk_index == 3
        assert err.cause is cause

    def test_divergence_attributes(self):
        err = NumericDivergenceError("no convergence", iterations=30, reason="max_iterations")
        assert err.iterations == 30
        assert err.reason == "max_iterations"

    def test_dimension_mismatch_attributes(self):
        err = DimensionMismatchError("mismatch", expected=3, actual=4)
        assert err.expected == 3
        assert err.actual == 4
