"""Core type definitions for JAX-based contact-implicit trajectory optimization.

This module provides the JAX-compatible type aliases and enums shared by the
contact step solver and the ensemble DDP engine.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import TypeAlias

from jax import Array


# Core JAX array types
StateVector: TypeAlias = Array  # DDP state x
ControlInput: TypeAlias = Array  # DDP control u or contact control u1
DisturbanceVector: TypeAlias = Array  # DDP disturbance w
ConfigurationVector: TypeAlias = Array  # generalized positions q

# Scalar types
Float: TypeAlias = float

# Differentiation oracle: same calling convention as jax.jacfwd / jax.jacrev
JacobianOracle: TypeAlias = Callable[..., Callable[..., Array]]


class StepStatus(Enum):
    """Termination status of one complementarity step solve."""

    CONVERGED = "Converged"
    ITERATION_EXHAUSTED = "IterationExhausted"
    FEASIBILITY_BACKTRACK_EXHAUSTED = "FeasibilityBacktrackExhausted"
    MERIT_BACKTRACK_EXHAUSTED = "MeritBacktrackExhausted"
    NONFINITE_STEP = "NonfiniteStep"


class SolveStatus(Enum):
    """DDP termination status."""

    SUCCESS = "Success"
    UNSOLVED = "Unsolved"
    MAX_ITERATIONS = "MaxIterations"
    BACKWARD_PASS_FAILED = "BackwardPassFailed"
    FORWARD_PASS_FAILED = "ForwardPassFailed"


class ObjectiveMode(Enum):
    """Which trajectory an ensemble objective is evaluated on."""

    NOMINAL = "nominal"
    CURRENT = "current"


class Verbosity(Enum):
    """Verbosity levels, ordered from quiet to chatty."""

    SILENT = "Silent"
    OUTER = "Outer"
    INNER = "Inner"
    LINE_SEARCH = "LineSearch"


_VERBOSITY_RANK = {
    Verbosity.SILENT: 0,
    Verbosity.OUTER: 1,
    Verbosity.INNER: 2,
    Verbosity.LINE_SEARCH: 3,
}


def verbosity_at_least(verbose: Verbosity, level: Verbosity) -> bool:
    """Return True when ``verbose`` enables messages at ``level``."""
    return _VERBOSITY_RANK[verbose] >= _VERBOSITY_RANK[level]


class ErrorCode(Enum):
    """Error codes shared by exceptions and solver statistics."""

    NO_ERROR = "NoError"
    DIMENSION_MISMATCH = "DimensionMismatch"
    NON_POSITIVE = "NonPositive"
    TIMESTEP_NOT_POSITIVE = "TimestepNotPositive"
    EMPTY_ENSEMBLE = "EmptyEnsemble"
    DERIVATIVES_NOT_COMPUTED = "DerivativesNotComputed"
    INVALID_OBJECTIVE_MODE = "InvalidObjectiveMode"
    BACKWARD_PASS_FAILED = "BackwardPassFailed"
    FORWARD_PASS_FAILED = "ForwardPassFailed"
    FEASIBILITY_LINE_SEARCH_FAILED = "FeasibilityLineSearchFailed"
    MERIT_LINE_SEARCH_FAILED = "MeritLineSearchFailed"
    NEWTON_NOT_CONVERGED = "NewtonNotConverged"
    NONFINITE_STEP = "NonfiniteStep"
