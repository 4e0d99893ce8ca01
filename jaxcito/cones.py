"""Second-order cone utilities for the contact complementarity solver.

Cone vectors are stacked scalar part first, ``v = [v0; vbar]``, and the cone is
``{v : v0 >= ||vbar||}``. All functions are traceable and can be used inside
``jax.jit`` or differentiated by JAX.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp
from jax import Array


def cone_identity(dim: int) -> Array:
    """Return the cone identity ``e = [1; 0; ...; 0]`` of size ``dim``."""
    return jnp.zeros(dim).at[0].set(1.0)


@jax.jit
def in_cone(v: Array) -> Array:
    """Membership test ``v0 >= ||vbar||`` (boundary included)."""
    return jnp.linalg.norm(v[1:]) <= v[0]


@jax.jit
def project_to_cone(v: Array) -> tuple[Array, Array]:
    """Project ``v`` onto the second-order cone.

    Returns:
        Tuple of (s, in_cone)
        s: projected vector
        in_cone: whether the input ``v`` already satisfied the membership test
    """
    v0 = v[0]
    vbar = v[1:]
    vbar_norm = jnp.linalg.norm(vbar)

    # Safe division: avoid division by zero during JAX tracing
    safe_norm = jnp.where(vbar_norm == 0.0, 1.0, vbar_norm)
    a = 0.5 * (1.0 + v0 / safe_norm)
    outside = jnp.concatenate([jnp.array([a * vbar_norm]), a * vbar])

    is_in_cone = vbar_norm <= v0
    below = vbar_norm <= -v0
    s = jnp.where(is_in_cone, v, jnp.where(below, jnp.zeros_like(v), outside))
    return s, is_in_cone


@jax.jit
def cone_product(a: Array, b: Array) -> Array:
    """Jordan product ``a o b = [a.b; a0 bbar + b0 abar]``."""
    return jnp.concatenate([jnp.array([jnp.dot(a, b)]), a[0] * b[1:] + b[0] * a[1:]])
