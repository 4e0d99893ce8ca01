"""Ensemble-averaged Riccati backward pass.

Every member expands its action-value function around its own nominal
trajectory. The control-dependent blocks are averaged over the ensemble to
form one shared policy, and each member then propagates its own value
function under that policy.
"""

from __future__ import annotations

import logging

import jax
import jax.numpy as jnp
import jax.scipy as jsp
from jax import Array

from .model_data import EnsembleBundle
from .policy import PolicyData
from .solver_options import DDPOptions
from .types import ErrorCode, Float, Verbosity, verbosity_at_least


logger = logging.getLogger(__name__)


def _action_value_expansion(
    fx: Array,
    fu: Array,
    gx: Array,
    gu: Array,
    gxx: Array,
    guu: Array,
    gux: Array,
    Vx_next: Array,
    Vxx_next: Array,
) -> tuple[Array, Array, Array, Array, Array]:
    """Gauss-Newton expansion of Q(x, u) for one member at one stage."""
    fxT_Vxx = fx.T @ Vxx_next
    fuT_Vxx = fu.T @ Vxx_next

    Qx = gx + fx.T @ Vx_next
    Qu = gu + fu.T @ Vx_next
    Qxx = gxx + fxT_Vxx @ fx
    Quu = guu + fuT_Vxx @ fu
    Qux = gux + fuT_Vxx @ fx
    return Qx, Qu, Qxx, Quu, Qux


def _second_order_terms(
    fxx: Array, fuu: Array, fux: Array, Vx_next: Array
) -> tuple[Array, Array, Array]:
    """Contractions of the next value gradient with the dynamics Hessians."""
    return (
        jnp.einsum("i,ijk->jk", Vx_next, fxx),
        jnp.einsum("i,ijk->jk", Vx_next, fuu),
        jnp.einsum("i,ijk->jk", Vx_next, fux),
    )


def _value_update(
    Qx: Array, Qu: Array, Qxx: Array, Quu: Array, Qux: Array, K: Array, k: Array
) -> tuple[Array, Array]:
    """Value derivatives of one member under the shared gains (K, k)."""
    KtQuu = K.T @ Quu
    Vx = Qx + KtQuu @ k + K.T @ Qu + Qux.T @ k
    Vxx = Qxx + KtQuu @ K + K.T @ Qux + Qux.T @ K
    return Vx, 0.5 * (Vxx + Vxx.T)


_ensemble_expansion = jax.jit(jax.vmap(_action_value_expansion))
_ensemble_second_order_terms = jax.jit(jax.vmap(_second_order_terms))
_ensemble_value_update = jax.jit(
    jax.vmap(_value_update, in_axes=(0, 0, 0, 0, 0, None, None))
)


@jax.jit
def _regularized_gains(
    Qu: Array, Quu: Array, Qux: Array, reg: Float, pd_tol: Float
) -> tuple[Array, Array, Array]:
    """Gains from ``Quu + reg I``; returns (K, k, success)."""
    m = Quu.shape[0]
    Quu_reg = 0.5 * (Quu + Quu.T) + reg * jnp.eye(m)

    min_eigenval = jnp.linalg.eigvalsh(Quu_reg).min()
    cholesky_success = min_eigenval > pd_tol

    def successful_decomp():
        Quu_chol = jsp.linalg.cholesky(Quu_reg, lower=True)

        K = jsp.linalg.solve_triangular(Quu_chol, -Qux, lower=True)
        K = jsp.linalg.solve_triangular(Quu_chol.T, K, lower=False)

        k = jsp.linalg.solve_triangular(Quu_chol, -Qu, lower=True)
        k = jsp.linalg.solve_triangular(Quu_chol.T, k, lower=False)
        return K, k

    def failed_decomp():
        return jnp.zeros_like(Qux), jnp.zeros_like(Qu)

    K, k = jax.lax.cond(cholesky_success, successful_decomp, failed_decomp)
    return K, k, cholesky_success


def _stack(ensemble: EnsembleBundle, name: str) -> Array:
    return jnp.stack([getattr(member, name) for member in ensemble.members])


def backward_pass(
    policy: PolicyData, ensemble: EnsembleBundle, options: DDPOptions
) -> ErrorCode:
    """Compute the shared gains ``K``, ``k`` from terminal to initial stage.

    ``Quu`` is regularized by ``policy.reg * I``. When the regularized matrix is
    not positive definite the regularization grows by ``options.reg_scaling``
    (at least to ``options.reg_min``) and the stage is retried, at most
    ``options.reg_max_retries`` times.

    On failure the gains and value derivatives of ``policy`` are left as they
    were; only ``policy.reg`` records the regularization that was reached.
    """
    for member in ensemble.members:
        member.assert_derivatives()

    T = ensemble.horizon
    num_members = len(ensemble)
    second_order = options.second_order_dynamics

    fx, fu = _stack(ensemble, "fx"), _stack(ensemble, "fu")
    gx, gu = _stack(ensemble, "gx"), _stack(ensemble, "gu")
    gxx, guu, gux = _stack(ensemble, "gxx"), _stack(ensemble, "guu"), _stack(ensemble, "gux")
    if second_order:
        fxx, fuu, fux = _stack(ensemble, "fxx"), _stack(ensemble, "fuu"), _stack(ensemble, "fux")

    # Terminal cost-to-go
    Vx = _stack(ensemble, "gx_terminal")
    Vxx = _stack(ensemble, "gxx_terminal")

    # Gains and value derivatives are copied into the policy only after every stage succeeds
    K = [None] * (T - 1)
    k = [None] * (T - 1)
    Vx_list = [None] * (T - 1) + [Vx]
    Vxx_list = [None] * (T - 1) + [Vxx]

    delta_V = jnp.zeros(2)
    reg = policy.reg

    for t in range(T - 2, -1, -1):
        Qx, Qu, Qxx, Quu, Qux = _ensemble_expansion(
            fx[:, t], fu[:, t], gx[:, t], gu[:, t], gxx[:, t], guu[:, t], gux[:, t], Vx, Vxx
        )
        if second_order:
            dQxx, dQuu, dQux = _ensemble_second_order_terms(fxx[:, t], fuu[:, t], fux[:, t], Vx)
            Qxx, Quu, Qux = Qxx + dQxx, Quu + dQuu, Qux + dQux

        Qu_avg = jnp.mean(Qu, axis=0)
        Quu_avg = jnp.mean(Quu, axis=0)
        Qux_avg = jnp.mean(Qux, axis=0)

        for _ in range(options.reg_max_retries + 1):
            K_t, k_t, success = _regularized_gains(Qu_avg, Quu_avg, Qux_avg, reg, options.pd_tol)
            if bool(success):
                break
            reg = max(reg * options.reg_scaling, options.reg_min)
            if verbosity_at_least(options.verbose, Verbosity.INNER):
                logger.debug("  t = %d: Quu not positive definite, reg -> %.1e", t, reg)
        else:
            logger.warning(
                "Backward pass failed at t = %d: Quu not positive definite with reg = %.1e",
                t,
                reg,
            )
            policy.reg = reg
            return ErrorCode.BACKWARD_PASS_FAILED

        K[t] = K_t
        k[t] = k_t

        Vx, Vxx = _ensemble_value_update(Qx, Qu, Qxx, Quu, Qux, K_t, k_t)
        Vx_list[t] = Vx
        Vxx_list[t] = Vxx

        # Expected change of the mean objective
        delta_V = delta_V.at[0].add(k_t @ Qu_avg)
        delta_V = delta_V.at[1].add(0.5 * k_t @ Quu_avg @ k_t)

    if options.objective_reduction == "sum":
        delta_V = num_members * delta_V
    policy.K, policy.k = K, k
    policy.Vx, policy.Vxx = Vx_list, Vxx_list
    policy.delta_V = delta_V

    # Relax regularization after a successful pass
    reg = reg / options.reg_scaling
    policy.reg = reg if reg >= options.reg_min else 0.0

    return ErrorCode.NO_ERROR
