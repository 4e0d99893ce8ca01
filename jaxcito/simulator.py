"""Multi-step contact simulation built on the complementarity step solver."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import jax
import jax.numpy as jnp
from jax import Array

from .contact_model import ContactModel
from .solver_options import StepSolverOptions
from .step_solver import ContactStepSolver, StepResult
from .types import Float, JacobianOracle


logger = logging.getLogger(__name__)


@dataclass
class SimulationResult:
    """Configurations and impulses of a simulated trajectory.

    ``q`` starts with the two initial configurations, so a run of ``T`` steps
    produces ``T + 2`` configurations. On failure the arrays stop at the last
    successful step and ``failed_step`` holds the index of the failing one.
    """

    q: Array
    n: Array
    b: Array
    success: bool
    failed_step: int | None = None
    steps: list[StepResult] = field(default_factory=list)


def simulate(
    model: ContactModel,
    q1: Array,
    q2: Array,
    controls: Array,
    h: Float,
    mu: Float | None = None,
    options: StepSolverOptions | None = None,
    oracle: JacobianOracle = jax.jacfwd,
) -> SimulationResult:
    """Advance the model through ``controls`` (one row per step).

    Each step calls the step solver with the last two configurations and
    stops at the first step that fails.
    """
    solver = ContactStepSolver(model, options, oracle)
    controls = jnp.atleast_2d(jnp.asarray(controls, dtype=float))

    q = [jnp.asarray(q1, dtype=float), jnp.asarray(q2, dtype=float)]
    n_hist: list[Array] = []
    b_hist: list[Array] = []
    steps: list[StepResult] = []
    failed_step = None

    for t in range(controls.shape[0]):
        result = solver.step(q[-2], q[-1], controls[t], h, mu)
        steps.append(result)

        if not result.success:
            logger.warning("Simulation stopped at step %d: %s", t, result.status.value)
            failed_step = t
            break

        q.append(result.q3)
        n_hist.append(result.n)
        b_hist.append(result.b)

    return SimulationResult(
        q=jnp.stack(q),
        n=jnp.array(n_hist),
        b=jnp.stack(b_hist) if b_hist else jnp.zeros((0, 3)),
        success=failed_step is None,
        failed_step=failed_step,
        steps=steps,
    )
