"""Exception hierarchy for JAX-based contact-implicit trajectory optimization.

Exceptions are reserved for caller mistakes (bad timesteps, bad homotopy
parameters, mismatched dimensions). Numerical failures are reported through
status values instead.
"""

from __future__ import annotations

from .types import ErrorCode


class CitoException(Exception):
    """Base exception class for jaxcito errors."""

    def __init__(self, message: str, error_code: ErrorCode) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message

    def __str__(self) -> str:
        return f"jaxcito Error {self.error_code.value}: {self.message}"


class DimensionError(CitoException):
    """Exception for dimension-related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.DIMENSION_MISMATCH) -> None:
        super().__init__(message, error_code)


class InitializationError(CitoException):
    """Exception for data used before it was populated."""

    def __init__(
        self, message: str, error_code: ErrorCode = ErrorCode.DERIVATIVES_NOT_COMPUTED
    ) -> None:
        super().__init__(message, error_code)


def error_code_to_string(error_code: ErrorCode) -> str:
    """Convert error code to a descriptive string."""
    error_messages = {
        ErrorCode.NO_ERROR: "no error",
        ErrorCode.DIMENSION_MISMATCH: "dimension mismatch",
        ErrorCode.NON_POSITIVE: "expected a positive value",
        ErrorCode.TIMESTEP_NOT_POSITIVE: "timestep not positive",
        ErrorCode.EMPTY_ENSEMBLE: "ensemble has no members",
        ErrorCode.DERIVATIVES_NOT_COMPUTED: "derivatives not computed",
        ErrorCode.INVALID_OBJECTIVE_MODE: "objective mode must be 'nominal' or 'current'",
        ErrorCode.BACKWARD_PASS_FAILED: "Backward pass failed. Try increasing regularization",
        ErrorCode.FORWARD_PASS_FAILED: "Forward pass failed to find a step with sufficient cost reduction",
        ErrorCode.FEASIBILITY_LINE_SEARCH_FAILED: "Feasibility backtracking failed to keep the iterate inside its cones",
        ErrorCode.MERIT_LINE_SEARCH_FAILED: "Merit backtracking failed to reduce the residual norm",
        ErrorCode.NEWTON_NOT_CONVERGED: "Newton iteration did not reach the residual tolerance",
        ErrorCode.NONFINITE_STEP: "Newton step is not finite. The residual Jacobian is singular",
    }
    return error_messages.get(error_code, "unknown error")


def _cito_throw(message: str, error_code: ErrorCode) -> None:
    """Raise a CitoException."""
    raise CitoException(message, error_code)
