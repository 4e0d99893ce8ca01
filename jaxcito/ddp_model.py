"""Dynamics and cost providers for the ensemble DDP engine.

The DDP engine only calls ``DynamicsModel.dynamics`` and the two ``Objective``
cost functions; derivatives are taken with JAX. Costs receive the timestep
index ``t`` as an integer array so that they can be vectorized over the
horizon with ``jax.vmap``.
"""

from __future__ import annotations

from dataclasses import dataclass

import jax
import jax.numpy as jnp
from jax import Array

from .exceptions import DimensionError
from .types import ControlInput, DisturbanceVector, Float, StateVector


class DynamicsModel:
    """Discrete-time dynamics ``x_{t+1} = f(x_t, u_t, w_t, h)``."""

    n: int  # state dimension
    m: int  # control dimension
    d: int  # disturbance dimension

    def dynamics(
        self, x: StateVector, u: ControlInput, w: DisturbanceVector, h: Float
    ) -> StateVector:
        raise NotImplementedError


class MidpointModel(DynamicsModel):
    """Explicit midpoint discretization of continuous dynamics ``xdot = f(x, u, w)``."""

    def continuous_dynamics(
        self, x: StateVector, u: ControlInput, w: DisturbanceVector
    ) -> StateVector:
        raise NotImplementedError

    def dynamics(
        self, x: StateVector, u: ControlInput, w: DisturbanceVector, h: Float
    ) -> StateVector:
        x_mid = x + 0.5 * h * self.continuous_dynamics(x, u, w)
        return x + h * self.continuous_dynamics(x_mid, u, w)


@dataclass(frozen=True, eq=False)
class DoubleIntegrator(MidpointModel):
    """Double integrator with additive and multiplicative disturbances.

    State ``[position, velocity]``; ``w = [velocity noise, force noise, gain noise]``.
    """

    n: int = 2
    m: int = 1
    d: int = 3

    def continuous_dynamics(
        self, x: StateVector, u: ControlInput, w: DisturbanceVector
    ) -> StateVector:
        return jnp.array([x[1] + w[0], (1.0 + w[2]) * u[0] + w[1]])


class Objective:
    """Stage and terminal costs of a horizon of ``T`` knot points."""

    def stage_cost(self, x: StateVector, u: ControlInput, t: Array) -> Array:
        raise NotImplementedError

    def terminal_cost(self, x: StateVector) -> Array:
        raise NotImplementedError


@dataclass(eq=False)
class QuadraticCost(Objective):
    """Tracking cost ``h (dx' Q dx + du' R du)`` per stage and ``dx' Q_T dx`` at the end.

    References default to zero. ``x_ref`` has one row per knot point, ``u_ref``
    one row per stage.
    """

    Q: Array
    R: Array
    Q_terminal: Array
    h: Float
    x_ref: Array | None = None
    u_ref: Array | None = None

    def _state_reference(self, t: Array) -> Array:
        if self.x_ref is None:
            return jnp.zeros(self.Q.shape[0])
        return self.x_ref[t]

    def _control_reference(self, t: Array) -> Array:
        if self.u_ref is None:
            return jnp.zeros(self.R.shape[0])
        return self.u_ref[t]

    def stage_cost(self, x: StateVector, u: ControlInput, t: Array) -> Array:
        dx = x - self._state_reference(t)
        du = u - self._control_reference(t)
        return self.h * (dx @ self.Q @ dx + du @ self.R @ du)

    def terminal_cost(self, x: StateVector) -> Array:
        if self.x_ref is None:
            dx = x
        else:
            dx = x - self.x_ref[-1]
        return dx @ self.Q_terminal @ dx


def rollout(
    model: DynamicsModel, x1: StateVector, u: Array, w: Array, h: Float
) -> Array:
    """Open-loop rollout; returns states stacked as ``(T, n)`` with ``T = len(u) + 1``."""
    x1 = jnp.asarray(x1, dtype=float)
    u = jnp.asarray(u, dtype=float)
    w = jnp.asarray(w, dtype=float)

    if x1.shape != (model.n,):
        raise DimensionError(f"Initial state must have shape ({model.n},), got {x1.shape}")
    if u.ndim != 2 or u.shape[1] != model.m:
        raise DimensionError(f"Controls must have shape (T-1, {model.m}), got {u.shape}")
    if w.shape != (u.shape[0], model.d):
        raise DimensionError(
            f"Disturbances must have shape ({u.shape[0]}, {model.d}), got {w.shape}"
        )

    def step(x, uw):
        u_t, w_t = uw
        x_next = model.dynamics(x, u_t, w_t, h)
        return x_next, x_next

    _, xs = jax.lax.scan(step, x1, (u, w))
    return jnp.concatenate([x1[None, :], xs], axis=0)
