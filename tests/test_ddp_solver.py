import jax.numpy as jnp
import pytest

from jaxcito import (
    DDPOptions,
    DDPSolver,
    DoubleIntegrator,
    EnsembleBundle,
    ErrorCode,
    Objective,
    PolicyData,
    QuadraticCost,
    SolverData,
    SolveStatus,
    backward_pass,
    ddp_solve,
    forward_pass,
)


H = 0.1
T = 11


def _riccati_gains(Q, R, Q_terminal, h: float, T: int) -> list:
    """Discrete LQR gains of the midpoint double integrator with the cost's factor of 2."""
    A = jnp.array([[1.0, h], [0.0, 1.0]])
    B = jnp.array([[0.5 * h**2], [h]])

    P = 2.0 * Q_terminal
    gains = [None] * (T - 1)
    for t in range(T - 2, -1, -1):
        Quu = 2.0 * h * R + B.T @ P @ B
        Qux = B.T @ P @ A
        K = -jnp.linalg.solve(Quu, Qux)
        P = 2.0 * h * Q + A.T @ P @ A + Qux.T @ K
        gains[t] = K
    return gains


def test_single_member_recovers_lqr_gains() -> None:
    Q, R, Q_terminal = jnp.eye(2), 0.1 * jnp.eye(1), 10.0 * jnp.eye(2)
    ensemble = EnsembleBundle.from_rollout(
        DoubleIntegrator(),
        QuadraticCost(Q=Q, R=R, Q_terminal=Q_terminal, h=H),
        jnp.array([[1.0, 0.0]]),
        jnp.zeros((T - 1, 1)),
        jnp.zeros((1, T - 1, 3)),
        H,
    )

    solver_data, policy = ddp_solve(ensemble, max_iter=20, grad_tol=1e-5)

    assert solver_data.status
    assert solver_data.solve_status == SolveStatus.SUCCESS
    assert solver_data.gradient_norm < 1e-5
    assert solver_data.iterations <= 3

    for K_ddp, K_lqr in zip(policy.K, _riccati_gains(Q, R, Q_terminal, H, T)):
        assert jnp.allclose(K_ddp, K_lqr, atol=1e-6)


def test_ensemble_cost_is_monotone() -> None:
    num_members = 3
    x1s = jnp.array([[1.0, 0.0], [0.8, 0.2], [1.2, -0.1]])
    ws = jnp.stack(
        [
            jnp.tile(jnp.array([0.01, -0.02, 0.1]), (T - 1, 1)),
            jnp.tile(jnp.array([-0.01, 0.03, -0.2]), (T - 1, 1)),
            jnp.tile(jnp.array([0.0, 0.01, 0.05]), (T - 1, 1)),
        ]
    )
    ensemble = EnsembleBundle.from_rollout(
        DoubleIntegrator(),
        QuadraticCost(Q=jnp.eye(2), R=0.1 * jnp.eye(1), Q_terminal=10.0 * jnp.eye(2), h=H),
        x1s,
        jnp.zeros((T - 1, 1)),
        ws,
        H,
        DDPOptions(num_workers=2),
    )
    assert len(ensemble) == num_members

    solver = DDPSolver(ensemble)
    solver_data = solver.solve()

    history = solver_data.cost_history
    assert len(history) >= 2
    assert all(later <= earlier for earlier, later in zip(history, history[1:]))
    assert history[-1] < history[0]
    assert solver_data.obj == pytest.approx(history[-1])
    assert len(solver.policy.K) == T - 1
    assert solver.policy.Vx[0].shape == (num_members, 2)


def _nonconvex_ensemble(options: DDPOptions) -> EnsembleBundle:
    cost = QuadraticCost(
        Q=jnp.zeros((2, 2)), R=-0.01 * jnp.eye(1), Q_terminal=jnp.zeros((2, 2)), h=H
    )
    ensemble = EnsembleBundle.from_rollout(
        DoubleIntegrator(),
        cost,
        jnp.array([[1.0, 0.0]]),
        jnp.zeros((3, 1)),
        jnp.zeros((1, 3, 3)),
        H,
        options,
    )
    ensemble.compute_derivatives()
    return ensemble


def test_backward_pass_grows_regularization() -> None:
    # Quu = -0.002 at every stage; reg must reach 1e-2 before Quu + reg I > 0
    options = DDPOptions()
    ensemble = _nonconvex_ensemble(options)
    policy = PolicyData(2, 1, 4, 1, reg=options.reg_initial)

    assert backward_pass(policy, ensemble, options) == ErrorCode.NO_ERROR
    # Relaxed by one factor after the pass
    assert policy.reg == pytest.approx(1e-3)


def test_backward_pass_failure_is_reported() -> None:
    options = DDPOptions(reg_max_retries=0)
    ensemble = _nonconvex_ensemble(options)
    policy = PolicyData(2, 1, 4, 1)

    assert backward_pass(policy, ensemble, options) == ErrorCode.BACKWARD_PASS_FAILED

    solver_data, _ = ddp_solve(ensemble, options=options)
    assert not solver_data.status
    assert solver_data.solve_status == SolveStatus.BACKWARD_PASS_FAILED
    assert solver_data.error_code == ErrorCode.BACKWARD_PASS_FAILED


def test_max_iterations_status() -> None:
    ensemble = EnsembleBundle.from_rollout(
        DoubleIntegrator(),
        QuadraticCost(Q=jnp.eye(2), R=0.1 * jnp.eye(1), Q_terminal=10.0 * jnp.eye(2), h=H),
        jnp.array([[1.0, 0.0], [0.5, 0.5]]),
        jnp.zeros((T - 1, 1)),
        jnp.stack([jnp.zeros((T - 1, 3)), jnp.tile(jnp.array([0.0, 0.0, 0.5]), (T - 1, 1))]),
        H,
    )

    solver_data, _ = ddp_solve(ensemble, max_iter=1, grad_tol=1e-12)

    assert solver_data.solve_status == SolveStatus.MAX_ITERATIONS
    assert solver_data.iterations == 1
    assert not solver_data.status


class _NonconvexFirstStage(Objective):
    """Tracking cost whose control weight is strongly negative at the first stage only."""

    def stage_cost(self, x, u, t):
        weight = jnp.where(t == 0, -100.0, 1.0)
        return H * (x @ x + weight * (u @ u))

    def terminal_cost(self, x):
        return 10.0 * (x @ x)


def _single_member(objective: Objective, options: DDPOptions | None = None, T: int = 6):
    ensemble = EnsembleBundle.from_rollout(
        DoubleIntegrator(),
        objective,
        jnp.array([[1.0, 0.0]]),
        jnp.zeros((T - 1, 1)),
        jnp.zeros((1, T - 1, 3)),
        H,
        options,
    )
    ensemble.compute_derivatives()
    return ensemble


def test_failed_backward_pass_keeps_previous_policy() -> None:
    convex = _single_member(
        QuadraticCost(Q=jnp.eye(2), R=0.1 * jnp.eye(1), Q_terminal=10.0 * jnp.eye(2), h=H)
    )
    policy = PolicyData(2, 1, 6, 1)
    assert backward_pass(policy, convex, convex.options) == ErrorCode.NO_ERROR

    K_before = [K.copy() for K in policy.K]
    k_before = [k.copy() for k in policy.k]
    Vxx_before = [Vxx.copy() for Vxx in policy.Vxx]
    delta_V_before = policy.delta_V

    # Stages 4..1 succeed, stage 0 runs out of regularization retries
    options = DDPOptions(reg_max_retries=0)
    nonconvex = _single_member(_NonconvexFirstStage(), options)
    assert backward_pass(policy, nonconvex, options) == ErrorCode.BACKWARD_PASS_FAILED

    for t in range(5):
        assert jnp.array_equal(policy.K[t], K_before[t])
        assert jnp.array_equal(policy.k[t], k_before[t])
    for t in range(6):
        assert jnp.array_equal(policy.Vxx[t], Vxx_before[t])
    assert jnp.array_equal(policy.delta_V, delta_V_before)


class _FrozenTerminal(Objective):
    """Quadratic cost that is infinite unless the trajectory ends at ``x_final``."""

    def __init__(self, x_final):
        self.x_final = x_final

    def stage_cost(self, x, u, t):
        return H * (x @ x + 0.1 * (u @ u))

    def terminal_cost(self, x):
        penalty = jnp.where(jnp.all(x == self.x_final), 0.0, jnp.inf)
        return 10.0 * (x @ x) + penalty


def test_forward_pass_rejection_keeps_nominal_trajectory() -> None:
    # Zero controls keep the double integrator at rest at its initial state
    ensemble = _single_member(
        _FrozenTerminal(jnp.array([1.0, 0.0])), DDPOptions(max_step_halvings=2)
    )
    x_bar = ensemble[0].x_bar
    u_bar = ensemble[0].u_bar

    solver_data = DDPSolver(ensemble).solve()

    assert not solver_data.status
    assert solver_data.solve_status == SolveStatus.FORWARD_PASS_FAILED
    assert solver_data.error_code == ErrorCode.FORWARD_PASS_FAILED
    assert solver_data.step_halvings == 2
    assert solver_data.cost_history == [solver_data.obj]
    assert jnp.array_equal(ensemble[0].x_bar, x_bar)
    assert jnp.array_equal(ensemble[0].u_bar, u_bar)


def test_forward_pass_rejects_overpredicted_reduction() -> None:
    options = DDPOptions(max_step_halvings=2, min_reduction_ratio=0.5)
    ensemble = _single_member(
        QuadraticCost(Q=jnp.eye(2), R=0.1 * jnp.eye(1), Q_terminal=10.0 * jnp.eye(2), h=H),
        options,
    )
    policy = PolicyData(2, 1, 6, 1)
    assert backward_pass(policy, ensemble, options) == ErrorCode.NO_ERROR

    # The quadratic model is exact here; a tenfold prediction gives a ratio of 0.1
    policy.delta_V = 10.0 * policy.delta_V
    solver_data = SolverData(obj=ensemble.evaluate_objective())
    x_bar = ensemble[0].x_bar

    assert forward_pass(policy, ensemble, solver_data, options) == ErrorCode.FORWARD_PASS_FAILED
    assert solver_data.step_halvings == 2
    assert jnp.array_equal(ensemble[0].x_bar, x_bar)
    assert ensemble[0].derivatives_up_to_date


def test_solve_overrides_do_not_leak_into_ensemble() -> None:
    options = DDPOptions(objective_reduction="sum")
    ensemble = _single_member(
        QuadraticCost(Q=jnp.eye(2), R=0.1 * jnp.eye(1), Q_terminal=10.0 * jnp.eye(2), h=H),
        options,
    )

    ddp_solve(ensemble, max_iter=3, grad_tol=1e-3)

    assert ensemble.options is options
