"""Ensemble Differential Dynamic Programming solver.

Each outer iteration linearizes every ensemble member around its nominal
trajectory, computes one shared feedback policy in the backward pass, and
accepts a new set of nominal trajectories in the forward pass.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace

from .backward_pass import backward_pass
from .forward_pass import forward_pass
from .exceptions import error_code_to_string
from .model_data import EnsembleBundle
from .policy import PolicyData
from .solver_options import DDPOptions
from .solver_stats import SolverData
from .types import ErrorCode, Float, SolveStatus, Verbosity, verbosity_at_least


logger = logging.getLogger(__name__)


class DDPSolver:
    """Robust DDP over an ensemble of perturbed models.

    ``policy`` and ``solver_data`` are allocated once and updated in place, so
    they can be inspected after ``solve`` returns. ``options`` apply to the
    ensemble only while ``solve`` runs.
    """

    def __init__(self, ensemble: EnsembleBundle, options: DDPOptions | None = None):
        self.ensemble = ensemble
        self.opts = options if options is not None else ensemble.options

        self.policy = PolicyData(
            num_states=ensemble.num_states,
            num_inputs=ensemble.num_inputs,
            horizon=ensemble.horizon,
            num_members=len(ensemble),
            reg=self.opts.reg_initial,
        )
        self.solver_data = SolverData()

    def solve(self) -> SolverData:
        with self.ensemble.session(self.opts):
            return self._solve()

    def _solve(self) -> SolverData:
        opts = self.opts
        data = self.solver_data
        data.reset()
        log_outer = verbosity_at_least(opts.verbose, Verbosity.OUTER)

        start_time = time.time()
        data.obj = self.ensemble.evaluate_objective("nominal")
        data.cost_history.append(data.obj)

        if log_outer:
            logger.info("STARTING ENSEMBLE DDP SOLVE (%d members)", len(self.ensemble))
            logger.info("  Initial Cost: %.6e", data.obj)

        for iteration in range(opts.max_iterations):
            data.iterations = iteration + 1

            self.ensemble.compute_derivatives()

            result = backward_pass(self.policy, self.ensemble, opts)
            if result != ErrorCode.NO_ERROR:
                self._fail(SolveStatus.BACKWARD_PASS_FAILED, result)
                break

            data.gradient_norm = self.policy.feedforward_norm()
            if data.gradient_norm < opts.grad_tol:
                data.status = True
                data.solve_status = SolveStatus.SUCCESS
                self._log_iteration(iteration, 0.0)
                break

            result = forward_pass(self.policy, self.ensemble, data, opts)
            if result != ErrorCode.NO_ERROR:
                self._fail(SolveStatus.FORWARD_PASS_FAILED, result)
                break

            data.cost_history.append(data.obj)
            self._log_iteration(iteration, data.alpha)
        else:
            data.solve_status = SolveStatus.MAX_ITERATIONS

        data.solve_time = (time.time() - start_time) * 1000  # Convert to milliseconds

        if log_outer:
            logger.info("ENSEMBLE DDP SOLVE FINISHED: %s", data.solve_status.value)

        return data

    def _fail(self, status: SolveStatus, error_code: ErrorCode) -> None:
        self.solver_data.status = False
        self.solver_data.solve_status = status
        self.solver_data.error_code = error_code
        logger.warning(
            "DDP stopped at iteration %d: %s",
            self.solver_data.iterations,
            error_code_to_string(error_code),
        )

    def _log_iteration(self, iteration: int, alpha: Float) -> None:
        if verbosity_at_least(self.opts.verbose, Verbosity.OUTER):
            data = self.solver_data
            logger.info(
                "  iter = %3d, cost = %12.6e, grad_norm = %8.3e, alpha = %8.3g, "
                "halvings = %2d, reg = %7.2g",
                iteration,
                data.obj,
                data.gradient_norm,
                alpha,
                data.step_halvings,
                self.policy.reg,
            )


def ddp_solve(
    ensemble: EnsembleBundle,
    max_iter: int = 100,
    grad_tol: Float = 1e-5,
    options: DDPOptions | None = None,
) -> tuple[SolverData, PolicyData]:
    """Optimize one shared policy for every member of ``ensemble``.

    ``max_iter`` and ``grad_tol`` override the corresponding fields of
    ``options`` (or of ``ensemble.options``).

    Returns:
        Tuple of (solver_data, policy)
        solver_data: final status, objective and gradient norm
        policy: shared gains ``K``, ``k`` of the last backward pass
    """
    base = options if options is not None else ensemble.options
    opts = replace(base, max_iterations=max_iter, grad_tol=grad_tol)
    solver = DDPSolver(ensemble, opts)
    return solver.solve(), solver.policy
