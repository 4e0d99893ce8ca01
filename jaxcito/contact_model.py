"""Contact provider boundary for the complementarity step solver.

A contact model supplies the discrete Euler-Lagrange residual, the signed
distance to the contact surface, the tangential velocity used by the maximum
dissipation conditions, and the friction coefficient. The step solver treats
these as opaque functions and differentiates through them with JAX.

Models are frozen dataclasses so that they are hashable and can key the
compiled-function cache in :mod:`jaxcito.step_solver`.
"""

from __future__ import annotations

from dataclasses import dataclass

import jax.numpy as jnp
from jax import Array

from .types import ConfigurationVector, ControlInput, Float


@dataclass(frozen=True)
class ContactModel:
    """Base class for single-contact models with a 3-D friction cone.

    Subclasses set ``nq``, ``nu`` and ``friction_coeff`` and implement the
    three methods below. The contact impulse passed to ``dynamics`` is stacked
    as ``lam = [b_tangent_1, b_tangent_2, n]``.
    """

    nq: int
    nu: int
    friction_coeff: Float

    def dynamics(
        self,
        q1: ConfigurationVector,
        q2: ConfigurationVector,
        q3: ConfigurationVector,
        u1: ControlInput,
        lam: Array,
        h: Float,
    ) -> Array:
        raise NotImplementedError

    def signed_distance(self, q: ConfigurationVector) -> Array:
        raise NotImplementedError

    def tangent_velocity(
        self, q2: ConfigurationVector, q3: ConfigurationVector, h: Float
    ) -> Array:
        raise NotImplementedError


@dataclass(frozen=True)
class Particle(ContactModel):
    """Point mass above the plane ``z = 0``.

    Configuration ``q = [x, y, z]``, control is a force on the particle.
    """

    nq: int = 3
    nu: int = 3
    friction_coeff: Float = 0.5
    mass: Float = 1.0
    gravity: Float = 9.81

    def mass_matrix(self) -> Array:
        return self.mass * jnp.eye(self.nq)

    def gravity_force(self) -> Array:
        return jnp.array([0.0, 0.0, -self.mass * self.gravity])

    def dynamics(
        self,
        q1: ConfigurationVector,
        q2: ConfigurationVector,
        q3: ConfigurationVector,
        u1: ControlInput,
        lam: Array,
        h: Float,
    ) -> Array:
        """Discrete Euler-Lagrange residual of the variational integrator."""
        M = self.mass_matrix()
        return M @ (2.0 * q2 - q1 - q3) / h + h * (self.gravity_force() + u1 + lam)

    def signed_distance(self, q: ConfigurationVector) -> Array:
        return q[2]

    def tangent_velocity(
        self, q2: ConfigurationVector, q3: ConfigurationVector, h: Float
    ) -> Array:
        return (q3[:2] - q2[:2]) / h
