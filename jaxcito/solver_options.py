from __future__ import annotations

from dataclasses import dataclass

from .types import Float, Verbosity


@dataclass(frozen=True)
class StepSolverOptions:
    # Newton convergence
    tol: Float = 1e-8
    max_iterations: int = 100

    # Homotopy schedule used when no barrier parameter is supplied
    num_stages: int = 4
    mu_initial: Float = 1.0
    mu_scaling: Float = 0.1

    # Backtracking
    max_backtracks: int = 50
    backtrack_factor: Float = 0.5
    armijo: Float = 1e-3

    # Offset added to the scalar part of the initial cone slacks
    cone_offset: Float = 1.0

    compute_sensitivities: bool = True

    verbose: Verbosity = Verbosity.SILENT

    def __post_init__(self) -> None:
        """Validate option values after initialization."""
        if self.tol <= 0:
            raise ValueError("tol must be positive")
        if self.max_iterations <= 0:
            raise ValueError("max_iterations must be positive")
        if self.num_stages <= 0:
            raise ValueError("num_stages must be positive")
        if self.mu_initial <= 0:
            raise ValueError("mu_initial must be positive")
        if not 0 < self.mu_scaling < 1:
            raise ValueError("mu_scaling must lie in (0, 1)")
        if self.max_backtracks < 0:
            raise ValueError("max_backtracks must be non-negative")
        if not 0 < self.backtrack_factor < 1:
            raise ValueError("backtrack_factor must lie in (0, 1)")
        if not 0 <= self.armijo < 1:
            raise ValueError("armijo must lie in [0, 1)")
        if self.cone_offset <= 0:
            raise ValueError("cone_offset must be positive")


@dataclass(frozen=True)
class DDPOptions:
    # Outer loop
    max_iterations: int = 100
    grad_tol: Float = 1e-5

    # Quu regularization
    reg_initial: Float = 0.0
    reg_min: Float = 1e-6
    reg_scaling: Float = 10.0
    reg_max_retries: int = 10
    pd_tol: Float = 1e-12

    # Forward pass
    min_reduction_ratio: Float = 1e-4
    max_step_halvings: int = 50

    # Keep the f_xx, f_uu, f_ux terms in the action-value expansion
    second_order_dynamics: bool = False

    # "mean" or "sum" over ensemble members
    objective_reduction: str = "mean"

    # Thread pool size for per-member work (None uses the executor default)
    num_workers: int | None = None

    verbose: Verbosity = Verbosity.SILENT

    def __post_init__(self) -> None:
        """Validate option values after initialization."""
        if self.max_iterations <= 0:
            raise ValueError("max_iterations must be positive")
        if self.grad_tol <= 0:
            raise ValueError("grad_tol must be positive")
        if self.reg_initial < 0:
            raise ValueError("reg_initial must be non-negative")
        if self.reg_min <= 0:
            raise ValueError("reg_min must be positive")
        if self.reg_scaling <= 1:
            raise ValueError("reg_scaling must be greater than 1")
        if self.reg_max_retries < 0:
            raise ValueError("reg_max_retries must be non-negative")
        if not 0 < self.min_reduction_ratio < 1:
            raise ValueError("min_reduction_ratio must lie in (0, 1)")
        if self.max_step_halvings < 0:
            raise ValueError("max_step_halvings must be non-negative")
        if self.objective_reduction not in ("mean", "sum"):
            raise ValueError("objective_reduction must be 'mean' or 'sum'")
        if self.num_workers is not None and self.num_workers <= 0:
            raise ValueError("num_workers must be positive")
