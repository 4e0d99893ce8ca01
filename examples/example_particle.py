"""Frictional particle example for jaxcito.

Slides a particle along the ground until friction stops it, printing the
contact impulses, then shows the step sensitivities of one solve.
"""

import logging

import jax.numpy as jnp

from jaxcito import Particle, StepSolverOptions, Verbosity, simulate, solve_step


def slide_particle(num_steps=30, h=0.01, speed=1.0):
    model = Particle(friction_coeff=0.5)
    q1 = jnp.zeros(3)
    q2 = jnp.array([speed * h, 0.0, 0.0])
    controls = jnp.zeros((num_steps, model.nu))

    sim = simulate(model, q1, q2, controls, h)

    print(f"Simulated {len(sim.steps)} steps, success = {sim.success}")
    for t in range(0, sim.n.shape[0], 5):
        velocity = (sim.q[t + 2, 0] - sim.q[t + 1, 0]) / h
        print(
            f"  t={t * h:.2f}: x={sim.q[t + 2, 0]:.4f}, v={velocity:.4f}, "
            f"n={sim.n[t]:.4f}, b={sim.b[t, 1:]}"
        )
    return sim


def show_sensitivities(h=0.1):
    model = Particle()
    q = jnp.array([0.0, 0.0, 1.0])
    options = StepSolverOptions(verbose=Verbosity.OUTER)

    result = solve_step(model, q, q, jnp.zeros(model.nu), h, options=options)

    print("\nFree-flight step:")
    print(f"  q3 = {result.q3}")
    print(f"  status = {result.status.value}, iterations = {result.iterations}")
    if result.sensitivities is not None:
        print(f"  dq3/du1 =\n{result.sensitivities.dq3_du1}")
    return result


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    print("jaxcito Particle Example")
    print("=" * 50)

    slide_particle()
    show_sensitivities()
