"""Ratio-tested forward pass of the ensemble DDP engine."""

from __future__ import annotations

import logging
import math

import jax.numpy as jnp
from jax import Array

from .line_search import BacktrackingLineSearch
from .model_data import EnsembleBundle, ModelData
from .policy import PolicyData
from .solver_options import DDPOptions
from .solver_stats import SolverData
from .types import ErrorCode, Float, ObjectiveMode, Verbosity, verbosity_at_least


logger = logging.getLogger(__name__)

# Smallest predicted reduction used as the ratio denominator
_MIN_EXPECTED_REDUCTION = 1e-16


def policy_rollout(
    ensemble: EnsembleBundle, member: ModelData, K: Array, k: Array, alpha: Float
) -> None:
    """Roll out ``member`` under the shared policy into its current trajectory.

    ``u_t = u_bar_t + alpha k_t + K_t (x_t - x_bar_t)`` with the true dynamics;
    ``K`` and ``k`` are stacked over stages.
    """
    member.x, member.u = ensemble.functions_for(member).closed_loop_rollout(
        member.x_bar, member.u_bar, member.w, member.h, K, k, alpha
    )


def forward_pass(
    policy: PolicyData,
    ensemble: EnsembleBundle,
    solver_data: SolverData,
    options: DDPOptions,
) -> ErrorCode:
    """Search for a step length whose actual reduction matches the prediction.

    On success the current trajectories become the nominal ones and
    ``solver_data.obj`` holds the new objective. On failure nominal
    trajectories are left unchanged.
    """
    J_prev = solver_data.obj
    log_ls = verbosity_at_least(options.verbose, Verbosity.LINE_SEARCH)
    trial: dict[str, Float] = {}

    K = jnp.stack(policy.K)
    k = jnp.stack(policy.k)

    def accept(alpha: Float) -> bool:
        ensemble.map_members(lambda member: policy_rollout(ensemble, member, K, k, alpha))
        J = ensemble.evaluate_objective(ObjectiveMode.CURRENT)

        expected = max(-policy.expected_change(alpha), _MIN_EXPECTED_REDUCTION)
        ratio = (J_prev - J) / expected
        trial["J"] = J

        if log_ls:
            logger.debug(
                "  alpha = %.3e, J = %.6e, expected = %.3e, ratio = %.3e",
                alpha,
                J,
                expected,
                ratio,
            )
        return math.isfinite(J) and ratio >= options.min_reduction_ratio

    line_search = BacktrackingLineSearch(
        max_iters=options.max_step_halvings, beta_decrease=0.5, label="forward pass"
    )
    alpha = line_search.run(accept, 1.0)
    solver_data.alpha = alpha
    solver_data.step_halvings = line_search.iterations()

    if not line_search.succeeded():
        logger.warning(
            "Forward pass failed after %d halvings (J = %.6e)",
            line_search.iterations(),
            J_prev,
        )
        return ErrorCode.FORWARD_PASS_FAILED

    ensemble.commit_current()
    solver_data.obj = trial["J"]
    return ErrorCode.NO_ERROR
