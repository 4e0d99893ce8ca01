import jax.numpy as jnp
import pytest

from jaxcito.cones import cone_identity, cone_product, in_cone, project_to_cone


@pytest.mark.parametrize(
    "v",
    [
        [2.0, 1.0, -0.5],
        [1.0, 3.0, 4.0],
        [-6.0, 3.0, 4.0],
        [0.0, 0.0, 0.0],
        [-1.0, 0.0, 0.0],
    ],
)
def test_projection_is_idempotent(v) -> None:
    s, _ = project_to_cone(jnp.array(v))
    s_again, inside = project_to_cone(s)

    assert bool(in_cone(s + 1e-12 * cone_identity(3)))
    assert jnp.allclose(s_again, s, atol=1e-12)
    assert bool(inside) or jnp.linalg.norm(s[1:]) == pytest.approx(float(s[0]))


def test_projection_keeps_interior_points() -> None:
    v = jnp.array([2.0, 1.0, -0.5])
    s, inside = project_to_cone(v)

    assert bool(inside)
    assert jnp.array_equal(s, v)


def test_projection_of_polar_cone_is_origin() -> None:
    s, inside = project_to_cone(jnp.array([-6.0, 3.0, 4.0]))

    assert not bool(inside)
    assert jnp.allclose(s, jnp.zeros(3))


def test_projection_outside_lands_on_boundary() -> None:
    # ||vbar|| = 5, a = 0.5 * (1 + 1 / 5)
    s, inside = project_to_cone(jnp.array([1.0, 3.0, 4.0]))

    assert not bool(inside)
    assert jnp.allclose(s, 0.6 * jnp.array([5.0, 3.0, 4.0]))


def test_cone_identity_is_product_identity() -> None:
    a = jnp.array([3.0, -1.0, 2.0])
    e = cone_identity(3)

    assert jnp.array_equal(e, jnp.array([1.0, 0.0, 0.0]))
    assert jnp.allclose(cone_product(a, e), a)
    assert jnp.allclose(cone_product(e, a), a)


def test_cone_product_formula() -> None:
    a = jnp.array([2.0, 1.0, 0.0])
    b = jnp.array([3.0, 0.0, -1.0])

    assert jnp.allclose(cone_product(a, b), jnp.array([6.0, 3.0, -2.0]))
