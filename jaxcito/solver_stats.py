"""Solver statistics for the ensemble DDP engine.

``SolverData`` is allocated once per optimization run and updated in place by
the outer loop and the forward pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .types import ErrorCode, Float, SolveStatus


@dataclass
class SolverData:
    """Aggregate objective, convergence measure and termination status."""

    # Aggregate ensemble objective of the nominal trajectories
    obj: Float = 0.0

    # Infinity norm of the feedforward terms from the last backward pass
    gradient_norm: Float = float("inf")

    # True once the gradient tolerance has been met
    status: bool = False

    solve_status: SolveStatus = SolveStatus.UNSOLVED
    error_code: ErrorCode = ErrorCode.NO_ERROR

    iterations: int = 0
    alpha: Float = 0.0
    step_halvings: int = 0

    # Objective after every accepted forward pass, starting with the initial one
    cost_history: list[Float] = field(default_factory=list)

    # Timing information (in milliseconds)
    solve_time: Float = 0.0

    def reset(self) -> None:
        """Reset all statistics to initial values."""
        self.obj = 0.0
        self.gradient_norm = float("inf")
        self.status = False
        self.solve_status = SolveStatus.UNSOLVED
        self.error_code = ErrorCode.NO_ERROR
        self.iterations = 0
        self.alpha = 0.0
        self.step_halvings = 0
        self.cost_history = []
        self.solve_time = 0.0

    def is_converged(self) -> bool:
        return self.solve_status == SolveStatus.SUCCESS
