"""Implicit-function sensitivities of a converged complementarity step.

At a root ``r(z, theta) = 0`` with nonsingular ``dr/dz``, the implicit function
theorem gives ``dz/dtheta = -(dr/dz)^{-1} dr/dtheta``. The Jacobian is
factorized once and the factorization is reused for every parameter column.
"""

from __future__ import annotations

from dataclasses import dataclass

import jax
import jax.numpy as jnp
import jax.scipy as jsp
from jax import Array


@dataclass(frozen=True)
class StepSensitivities:
    """Derivatives of the solved step with respect to its parameters.

    ``dz_dtheta`` has one row per entry of ``z`` and one column per entry of
    ``theta = [q1; q2; u1]`` (plus a trailing ``mu`` column in fixed-mu mode).
    """

    dz_dtheta: Array
    dq3_dq1: Array
    dq3_dq2: Array
    dq3_du1: Array
    dq3_dmu: Array | None = None


@jax.jit
def implicit_sensitivity(jac_z: Array, jac_theta: Array) -> Array:
    """Solve ``dz/dtheta = -jac_z^{-1} jac_theta`` with one LU factorization."""
    lu_and_piv = jsp.linalg.lu_factor(jac_z)
    return -jsp.linalg.lu_solve(lu_and_piv, jac_theta)


def split_sensitivities(dz_dtheta: Array, nq: int, nu: int) -> StepSensitivities:
    """Slice the configuration rows of ``dz_dtheta`` into per-parameter blocks."""
    dq3 = dz_dtheta[:nq]
    dq3_dmu = None
    if dz_dtheta.shape[1] == 2 * nq + nu + 1:
        dq3_dmu = dq3[:, 2 * nq + nu]

    return StepSensitivities(
        dz_dtheta=dz_dtheta,
        dq3_dq1=dq3[:, :nq],
        dq3_dq2=dq3[:, nq : 2 * nq],
        dq3_du1=dq3[:, 2 * nq : 2 * nq + nu],
        dq3_dmu=dq3_dmu,
    )


def sensitivities_are_finite(sensitivities: StepSensitivities) -> bool:
    return bool(jnp.all(jnp.isfinite(sensitivities.dz_dtheta)))
