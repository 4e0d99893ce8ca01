"""Implicit contact step solver.

Each call solves one timestep of a variational integrator with frictional
contact. The unknowns are stacked as

    z = [q3; n; s_phi; sb; db]

where ``q3`` is the next configuration, ``n`` the normal impulse, ``s_phi`` a
slack on the signed distance, ``sb`` the friction cone variable (its vector
part is the friction impulse) and ``db`` the dual cone variable. The
complementarity conditions are relaxed by a barrier parameter ``mu`` and solved
by a damped Newton method that keeps ``n, s_phi > 0`` and ``sb, db`` inside
their cones.

Two entry points are provided: :func:`solve_step` anneals ``mu`` over a fixed
number of stages, :func:`solve_step_with_external_mu` performs a single solve at
a caller-supplied ``mu``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, cast

import jax
import jax.numpy as jnp
from jax import Array

from .cones import cone_identity, cone_product, in_cone, project_to_cone
from .contact_model import ContactModel
from .exceptions import DimensionError, _cito_throw
from .line_search import BacktrackingLineSearch
from .sensitivity import (
    StepSensitivities,
    implicit_sensitivity,
    sensitivities_are_finite,
    split_sensitivities,
)
from .solver_options import StepSolverOptions
from .types import ErrorCode, Float, JacobianOracle, StepStatus, Verbosity, verbosity_at_least


logger = logging.getLogger(__name__)

# Size of z beyond the configuration: n, s_phi, sb (3), db (3)
NUM_CONTACT_VARIABLES = 8
CONE_DIM = 3

# Compiled residual/Jacobian functions keyed by (model, oracle)
_compiled_functions_cache: dict[tuple[Any, ...], Any] = {}

_HARD_FAILURES = (
    StepStatus.FEASIBILITY_BACKTRACK_EXHAUSTED,
    StepStatus.MERIT_BACKTRACK_EXHAUSTED,
    StepStatus.NONFINITE_STEP,
)


def unpack_variables(z: Array, nq: int) -> tuple[Array, Array, Array, Array, Array]:
    """Split ``z`` into (q3, n, s_phi, sb, db)."""
    return (
        z[:nq],
        z[nq],
        z[nq + 1],
        z[nq + 2 : nq + 2 + CONE_DIM],
        z[nq + 2 + CONE_DIM : nq + 2 + 2 * CONE_DIM],
    )


def complementarity_residual(
    model: ContactModel, z: Array, theta: Array, h: Float, mu: Float
) -> Array:
    """Relaxed optimality conditions of the contact step, ``r(z, theta) = 0``.

    ``theta = [q1; q2; u1]``. Rows: Euler-Lagrange residual (nq), signed-distance
    slack (1), relaxed normal complementarity (1), maximum dissipation (2),
    friction cone scalar (1), relaxed cone complementarity (3).
    """
    nq, nu = model.nq, model.nu
    q3, n, s_phi, sb, db = unpack_variables(z, nq)
    q1 = theta[:nq]
    q2 = theta[nq : 2 * nq]
    u1 = theta[2 * nq : 2 * nq + nu]

    lam = jnp.concatenate([sb[1:], jnp.array([n])])
    phi = model.signed_distance(q3)
    v_tangent = model.tangent_velocity(q2, q3, h)

    return jnp.concatenate(
        [
            model.dynamics(q1, q2, q3, u1, lam, h),
            jnp.array([s_phi - phi, n * s_phi - mu]),
            v_tangent - db[1:],
            jnp.array([sb[0] - model.friction_coeff * n]),
            cone_product(db, sb) - mu * cone_identity(CONE_DIM),
        ]
    )


def _make_is_feasible(nq: int):
    @jax.jit
    def is_feasible(z: Array) -> Array:
        _, n, s_phi, sb, db = unpack_variables(z, nq)
        return (n > 0.0) & (s_phi > 0.0) & in_cone(sb) & in_cone(db)

    return is_feasible


@dataclass(frozen=True)
class _StepFunctions:
    residual: Any
    jac_z: Any
    jac_theta: Any
    jac_mu: Any
    is_feasible: Any


def _get_or_create_step_functions(model: ContactModel, oracle: JacobianOracle) -> _StepFunctions:
    """Get or create compiled residual and Jacobian functions for a model."""
    cache_key = ("step", model, oracle)

    if cache_key not in _compiled_functions_cache:
        residual = partial(complementarity_residual, model)
        _compiled_functions_cache[cache_key] = _StepFunctions(
            residual=jax.jit(residual),
            jac_z=jax.jit(oracle(residual, argnums=0)),
            jac_theta=jax.jit(oracle(residual, argnums=1)),
            jac_mu=jax.jit(oracle(residual, argnums=3)),
            is_feasible=_make_is_feasible(model.nq),
        )

    return cast(_StepFunctions, _compiled_functions_cache[cache_key])


def initial_iterate(q2: Array, nq: int, cone_offset: Float = 1.0) -> Array:
    """Warm start at rest with strictly feasible cone slacks."""
    z = jnp.ones(nq + NUM_CONTACT_VARIABLES).at[:nq].set(q2)
    _, _, _, sb, db = unpack_variables(z, nq)

    sb, _ = project_to_cone(sb)
    db, _ = project_to_cone(db)
    sb = sb.at[0].add(cone_offset)
    db = db.at[0].add(cone_offset)

    return z.at[nq + 2 : nq + 2 + CONE_DIM].set(sb).at[nq + 2 + CONE_DIM :].set(db)


@dataclass(frozen=True)
class StepResult:
    """Outcome of one contact step.

    ``q3``, ``n`` and ``b`` must not be trusted when ``success`` is False; they
    hold the last iterate for diagnostics.
    """

    q3: Array
    n: Array
    b: Array
    success: bool
    status: StepStatus
    z: Array
    mu: Float
    residual_norm: Float
    iterations: int
    sensitivities: StepSensitivities | None = None

    @property
    def friction(self) -> Array:
        """Tangential friction impulse (vector part of ``b``)."""
        return self.b[1:]

    @property
    def error_code(self) -> ErrorCode:
        return _STATUS_TO_ERROR_CODE[self.status]


_STATUS_TO_ERROR_CODE = {
    StepStatus.CONVERGED: ErrorCode.NO_ERROR,
    StepStatus.ITERATION_EXHAUSTED: ErrorCode.NEWTON_NOT_CONVERGED,
    StepStatus.FEASIBILITY_BACKTRACK_EXHAUSTED: ErrorCode.FEASIBILITY_LINE_SEARCH_FAILED,
    StepStatus.MERIT_BACKTRACK_EXHAUSTED: ErrorCode.MERIT_LINE_SEARCH_FAILED,
    StepStatus.NONFINITE_STEP: ErrorCode.NONFINITE_STEP,
}


class ContactStepSolver:
    """Complementarity step solver bound to one contact model.

    The solver holds no per-call state, so one instance may be shared between
    threads solving independent steps.
    """

    def __init__(
        self,
        model: ContactModel,
        options: StepSolverOptions | None = None,
        oracle: JacobianOracle = jax.jacfwd,
    ):
        self.model = model
        self.options = options if options is not None else StepSolverOptions()
        self.oracle = oracle
        self._functions = _get_or_create_step_functions(model, oracle)

    def step(
        self, q1: Array, q2: Array, u1: Array, h: Float, mu: Float | None = None
    ) -> StepResult:
        """Solve one step, annealing ``mu`` unless one is supplied."""
        if mu is not None:
            return self.step_with_external_mu(q1, q2, u1, h, mu)

        q1, q2, u1 = self._validate_inputs(q1, q2, u1, h)
        theta = jnp.concatenate([q1, q2, u1])
        opts = self.options

        z = initial_iterate(q2, self.model.nq, opts.cone_offset)
        mu = opts.mu_initial
        total_iterations = 0
        status = StepStatus.ITERATION_EXHAUSTED
        res_norm = float("inf")

        for stage in range(opts.num_stages):
            z, status, iterations, res_norm = self._newton_solve(z, theta, h, mu)
            total_iterations += iterations

            if verbosity_at_least(opts.verbose, Verbosity.OUTER):
                logger.info(
                    "stage %d: mu = %.1e, status = %s, iters = %d, |r| = %.3e",
                    stage,
                    mu,
                    status.value,
                    iterations,
                    res_norm,
                )

            if status in _HARD_FAILURES:
                break

            if stage < opts.num_stages - 1:
                mu = opts.mu_scaling * mu

        return self._finalize(z, theta, h, mu, status, res_norm, total_iterations, False)

    def step_with_external_mu(
        self, q1: Array, q2: Array, u1: Array, h: Float, mu: Float
    ) -> StepResult:
        """Solve one step at a fixed, caller-managed barrier parameter."""
        q1, q2, u1 = self._validate_inputs(q1, q2, u1, h)
        if mu <= 0.0:
            _cito_throw("Barrier parameter mu must be positive", ErrorCode.NON_POSITIVE)

        theta = jnp.concatenate([q1, q2, u1])
        z = initial_iterate(q2, self.model.nq, self.options.cone_offset)
        z, status, iterations, res_norm = self._newton_solve(z, theta, h, mu)

        return self._finalize(z, theta, h, mu, status, res_norm, iterations, True)

    def _validate_inputs(
        self, q1: Array, q2: Array, u1: Array, h: Float
    ) -> tuple[Array, Array, Array]:
        if h <= 0.0:
            _cito_throw("Timestep must be positive", ErrorCode.TIMESTEP_NOT_POSITIVE)

        q1 = jnp.asarray(q1, dtype=float)
        q2 = jnp.asarray(q2, dtype=float)
        u1 = jnp.asarray(u1, dtype=float)
        nq, nu = self.model.nq, self.model.nu

        if q1.shape != (nq,) or q2.shape != (nq,):
            raise DimensionError(
                f"Configurations must have shape ({nq},), got {q1.shape} and {q2.shape}"
            )
        if u1.shape != (nu,):
            raise DimensionError(f"Control must have shape ({nu},), got {u1.shape}")

        return q1, q2, u1

    def _newton_solve(
        self, z: Array, theta: Array, h: Float, mu: Float
    ) -> tuple[Array, StepStatus, int, Float]:
        """Damped Newton iteration at fixed ``mu``.

        Returns (z, status, iterations, residual norm).
        """
        opts = self.options
        funcs = self._functions
        log_inner = verbosity_at_least(opts.verbose, Verbosity.INNER)

        feasibility_search = BacktrackingLineSearch(
            max_iters=opts.max_backtracks,
            beta_decrease=opts.backtrack_factor,
            label="feasibility backtrack",
        )
        merit_search = BacktrackingLineSearch(
            max_iters=opts.max_backtracks,
            beta_decrease=opts.backtrack_factor,
            c1=opts.armijo,
            label="merit backtrack",
        )
        log_ls = verbosity_at_least(opts.verbose, Verbosity.LINE_SEARCH)
        feasibility_search.set_verbose(log_ls)
        merit_search.set_verbose(log_ls)

        for iteration in range(opts.max_iterations):
            res = funcs.residual(z, theta, h, mu)
            res_norm = float(jnp.linalg.norm(res))

            if log_inner:
                logger.debug("  iter = %3d, mu = %.1e, |r| = %.3e", iteration, mu, res_norm)

            if res_norm < opts.tol:
                return z, StepStatus.CONVERGED, iteration, res_norm

            jac = funcs.jac_z(z, theta, h, mu)
            delta = jnp.linalg.solve(jac, res)
            if not bool(jnp.all(jnp.isfinite(delta))):
                logger.warning("Newton step is not finite (mu = %.1e, |r| = %.3e)", mu, res_norm)
                return z, StepStatus.NONFINITE_STEP, iteration, res_norm

            alpha = feasibility_search.run(
                lambda a, z=z, delta=delta: bool(funcs.is_feasible(z - a * delta))
            )
            if not feasibility_search.succeeded():
                logger.warning(
                    "Feasibility backtracking failed after %d halvings (mu = %.1e, |r| = %.3e)",
                    feasibility_search.iterations(),
                    mu,
                    res_norm,
                )
                return z, StepStatus.FEASIBILITY_BACKTRACK_EXHAUSTED, iteration, res_norm

            alpha = merit_search.run_sufficient_decrease(
                lambda a, z=z, delta=delta: float(
                    jnp.sum(funcs.residual(z - a * delta, theta, h, mu) ** 2)
                ),
                res_norm**2,
                alpha,
            )
            if not merit_search.succeeded():
                logger.warning(
                    "Merit backtracking failed after %d halvings (mu = %.1e, |r| = %.3e)",
                    merit_search.iterations(),
                    mu,
                    res_norm,
                )
                return z, StepStatus.MERIT_BACKTRACK_EXHAUSTED, iteration, res_norm

            z = z - alpha * delta

        res_norm = float(jnp.linalg.norm(funcs.residual(z, theta, h, mu)))
        if res_norm < opts.tol:
            return z, StepStatus.CONVERGED, opts.max_iterations, res_norm
        return z, StepStatus.ITERATION_EXHAUSTED, opts.max_iterations, res_norm

    def _finalize(
        self,
        z: Array,
        theta: Array,
        h: Float,
        mu: Float,
        status: StepStatus,
        res_norm: Float,
        iterations: int,
        external_mu: bool,
    ) -> StepResult:
        nq, nu = self.model.nq, self.model.nu
        q3, n, _, sb, _ = unpack_variables(z, nq)
        success = status == StepStatus.CONVERGED

        if status == StepStatus.ITERATION_EXHAUSTED:
            logger.warning(
                "Newton iteration did not converge in %d iterations (mu = %.1e, |r| = %.3e)",
                iterations,
                mu,
                res_norm,
            )

        sensitivities = None
        if success and self.options.compute_sensitivities:
            sensitivities = self._sensitivities(z, theta, h, mu, external_mu)
            if not sensitivities_are_finite(sensitivities):
                logger.warning("Step sensitivities are not finite; residual Jacobian is singular")

        return StepResult(
            q3=q3,
            n=n,
            b=sb,
            success=success,
            status=status,
            z=z,
            mu=mu,
            residual_norm=res_norm,
            iterations=iterations,
            sensitivities=sensitivities,
        )

    def _sensitivities(
        self, z: Array, theta: Array, h: Float, mu: Float, external_mu: bool
    ) -> StepSensitivities:
        funcs = self._functions
        jac_z = funcs.jac_z(z, theta, h, mu)
        jac_theta = funcs.jac_theta(z, theta, h, mu)
        if external_mu:
            jac_theta = jnp.hstack([jac_theta, funcs.jac_mu(z, theta, h, mu)[:, None]])

        dz_dtheta = implicit_sensitivity(jac_z, jac_theta)
        return split_sensitivities(dz_dtheta, self.model.nq, self.model.nu)


def solve_step(
    model: ContactModel,
    q1: Array,
    q2: Array,
    u1: Array,
    h: Float,
    mu: Float | None = None,
    options: StepSolverOptions | None = None,
    oracle: JacobianOracle = jax.jacfwd,
) -> StepResult:
    """Solve one contact step.

    Args:
        model: Contact model providing dynamics, signed distance and friction
        q1: Configuration two steps back
        q2: Previous configuration
        u1: Control applied over the step
        h: Timestep, must be positive
        mu: Barrier parameter. When None, mu is annealed over
            ``options.num_stages`` stages; otherwise a single solve is run.
            Annealing ends at ``mu_initial * mu_scaling**(num_stages - 1)``,
            which sets the residual contact gap ``s_phi = mu / n``; add
            stages for tighter contact
        options: Solver options
        oracle: Differentiation oracle with the calling convention of ``jax.jacfwd``

    Returns:
        StepResult with q3, n, b, success flag, status and sensitivities
    """
    return ContactStepSolver(model, options, oracle).step(q1, q2, u1, h, mu)


def solve_step_with_external_mu(
    model: ContactModel,
    q1: Array,
    q2: Array,
    u1: Array,
    h: Float,
    mu: Float,
    options: StepSolverOptions | None = None,
    oracle: JacobianOracle = jax.jacfwd,
) -> StepResult:
    """Solve one contact step at a fixed barrier parameter managed by the caller."""
    return ContactStepSolver(model, options, oracle).step_with_external_mu(q1, q2, u1, h, mu)
