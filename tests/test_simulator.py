import jax.numpy as jnp

from jaxcito import Particle, StepSolverOptions, simulate


def test_sliding_particle_comes_to_rest_gradually() -> None:
    h = 0.01
    q1 = jnp.zeros(3)
    q2 = jnp.array([0.01, 0.0, 0.0])
    controls = jnp.zeros((5, 3))

    sim = simulate(Particle(), q1, q2, controls, h)

    assert sim.success
    assert sim.failed_step is None
    assert sim.q.shape == (7, 3)
    assert sim.n.shape == (5,)
    assert sim.b.shape == (5, 3)

    velocities = jnp.diff(sim.q[:, 0]) / h
    assert bool(jnp.all(jnp.diff(velocities) < 0.0))
    assert bool(jnp.all(sim.q[:, 2] > -1e-8))


def test_simulation_stops_at_first_failed_step() -> None:
    options = StepSolverOptions(max_iterations=1, compute_sensitivities=False)
    q = jnp.zeros(3)

    sim = simulate(Particle(), q, q, jnp.zeros((3, 3)), 0.01, options=options)

    assert not sim.success
    assert sim.failed_step == 0
    assert sim.q.shape == (2, 3)
    assert sim.n.shape == (0,)
    assert len(sim.steps) == 1
