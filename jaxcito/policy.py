"""Shared feedback policy of the ensemble DDP engine.

One ``PolicyData`` is allocated per optimization run. The backward pass writes
the gains; during the forward pass every ensemble member reads them without
modification.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import jax
import jax.numpy as jnp
from jax import Array

from .ddp_model import DynamicsModel, Objective
from .exceptions import DimensionError
from .types import Float


@dataclass
class PolicyData:
    """Per-timestep gains and per-member value function derivatives."""

    num_states: int
    num_inputs: int
    horizon: int
    num_members: int

    # Feedback gain and feedforward term, one entry per stage
    K: list[Array] = field(default_factory=list)
    k: list[Array] = field(default_factory=list)

    # Value function derivatives, one entry per knot point, stacked over members
    Vx: list[Array] = field(default_factory=list)  # each (N, n)
    Vxx: list[Array] = field(default_factory=list)  # each (N, n, n)

    # Quu regularization carried between iterations
    reg: Float = 0.0

    # Expected change coefficients: dJ(alpha) = alpha * delta_V[0] + alpha^2 * delta_V[1]
    delta_V: Array = field(default_factory=lambda: jnp.zeros(2))

    def __post_init__(self) -> None:
        n, m, T, N = self.num_states, self.num_inputs, self.horizon, self.num_members
        if not self.K:
            self.K = [jnp.zeros((m, n)) for _ in range(T - 1)]
        if not self.k:
            self.k = [jnp.zeros(m) for _ in range(T - 1)]
        if not self.Vx:
            self.Vx = [jnp.zeros((N, n)) for _ in range(T)]
        if not self.Vxx:
            self.Vxx = [jnp.zeros((N, n, n)) for _ in range(T)]

    def expected_change(self, alpha: Float) -> Float:
        """Predicted objective change of a forward pass with step length ``alpha``."""
        return float(alpha * self.delta_V[0] + alpha**2 * self.delta_V[1])

    def feedforward_norm(self) -> Float:
        """Infinity norm of the feedforward terms over the horizon."""
        if not self.k:
            return 0.0
        return float(jnp.max(jnp.abs(jnp.stack(self.k))))


@jax.jit
def policy_control(
    u_bar: Array, k: Array, K: Array, x: Array, x_bar: Array, alpha: Float
) -> Array:
    """``u = u_bar + alpha k + K (x - x_bar)``."""
    return u_bar + alpha * k + K @ (x - x_bar)


def simulate_policy(
    model: DynamicsModel,
    objective: Objective,
    K: list[Array],
    x_ref: Array,
    u_ref: Array,
    x1: Array,
    w: Array,
    h: Float,
) -> tuple[Array, Array, Float]:
    """Closed-loop rollout of the linear feedback policy around a reference.

    Returns:
        Tuple of (x, u, J)
        x: states ``(T, n)``
        u: controls ``(T - 1, m)``
        J: total cost of the rollout under ``objective``
    """
    x_ref = jnp.asarray(x_ref, dtype=float)
    u_ref = jnp.asarray(u_ref, dtype=float)
    w = jnp.asarray(w, dtype=float)
    num_stages = u_ref.shape[0]

    if len(K) != num_stages or x_ref.shape[0] != num_stages + 1 or w.shape[0] != num_stages:
        raise DimensionError(
            f"Policy of {len(K)} stages does not match references of {num_stages} stages "
            f"and {w.shape[0]} disturbances"
        )

    xs = [jnp.asarray(x1, dtype=float)]
    us = []
    cost = 0.0
    for t in range(num_stages):
        u_t = policy_control(u_ref[t], jnp.zeros_like(u_ref[t]), K[t], xs[t], x_ref[t], 0.0)
        cost += float(objective.stage_cost(xs[t], u_t, jnp.asarray(t)))
        us.append(u_t)
        xs.append(model.dynamics(xs[t], u_t, w[t], h))
    cost += float(objective.terminal_cost(xs[-1]))

    return jnp.stack(xs), jnp.stack(us), cost
