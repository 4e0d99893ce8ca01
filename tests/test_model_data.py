import threading

import jax.numpy as jnp
import pytest

from jaxcito import (
    CitoException,
    DDPOptions,
    DimensionError,
    DoubleIntegrator,
    EnsembleBundle,
    ErrorCode,
    InitializationError,
    ModelData,
    ObjectiveMode,
    PolicyData,
    QuadraticCost,
    backward_pass,
    rollout,
    simulate_policy,
)


H = 0.1
T = 6


def _cost() -> QuadraticCost:
    return QuadraticCost(Q=jnp.eye(2), R=0.1 * jnp.eye(1), Q_terminal=10.0 * jnp.eye(2), h=H)


def _ensemble(num_members: int = 2, options: DDPOptions | None = None) -> EnsembleBundle:
    x1s = jnp.stack([jnp.array([1.0, 0.0]) + 0.1 * i for i in range(num_members)])
    ws = jnp.stack([0.01 * (i + 1) * jnp.ones((T - 1, 3)) for i in range(num_members)])
    return EnsembleBundle.from_rollout(
        DoubleIntegrator(), _cost(), x1s, 0.5 * jnp.ones((T - 1, 1)), ws, H, options
    )


def test_rollout_shapes_and_midpoint_step() -> None:
    model = DoubleIntegrator()
    u = jnp.ones((3, 1))
    x = rollout(model, jnp.zeros(2), u, jnp.zeros((3, 3)), H)

    assert x.shape == (4, 2)
    assert jnp.allclose(x[1], jnp.array([0.5 * H**2, H]))


def test_rollout_rejects_bad_shapes() -> None:
    with pytest.raises(DimensionError):
        rollout(DoubleIntegrator(), jnp.zeros(3), jnp.ones((3, 1)), jnp.zeros((3, 3)), H)
    with pytest.raises(DimensionError):
        rollout(DoubleIntegrator(), jnp.zeros(2), jnp.ones((3, 1)), jnp.zeros((2, 3)), H)


def test_current_trajectory_defaults_to_nominal() -> None:
    ensemble = _ensemble()

    nominal = ensemble.evaluate_objective(ObjectiveMode.NOMINAL)
    assert ensemble.evaluate_objective("current") == pytest.approx(nominal)

    member = ensemble[0]
    member.u = member.u_bar + 1.0
    assert ensemble.member_objective(member, "current") != pytest.approx(
        ensemble.member_objective(member, "nominal")
    )


def test_objective_reductions() -> None:
    mean_value = _ensemble(3).evaluate_objective()
    sum_value = _ensemble(3, DDPOptions(objective_reduction="sum")).evaluate_objective()

    assert sum_value == pytest.approx(3.0 * mean_value)


def test_member_objective_matches_hand_computation() -> None:
    ensemble = _ensemble(1)
    member = ensemble[0]
    cost = _cost()

    expected = sum(
        H * (member.x_bar[t] @ member.x_bar[t] + 0.1 * member.u_bar[t] @ member.u_bar[t])
        for t in range(T - 1)
    )
    expected += 10.0 * member.x_bar[-1] @ member.x_bar[-1]

    assert ensemble.member_objective(member) == pytest.approx(float(expected))
    assert float(cost.terminal_cost(member.x_bar[-1])) == pytest.approx(
        float(10.0 * member.x_bar[-1] @ member.x_bar[-1])
    )


def test_invalid_objective_mode() -> None:
    with pytest.raises(CitoException) as excinfo:
        _ensemble().evaluate_objective("best")
    assert excinfo.value.error_code == ErrorCode.INVALID_OBJECTIVE_MODE


def test_empty_ensemble() -> None:
    with pytest.raises(DimensionError) as excinfo:
        EnsembleBundle([])
    assert excinfo.value.error_code == ErrorCode.EMPTY_ENSEMBLE


def test_mismatched_members() -> None:
    model, cost = DoubleIntegrator(), _cost()
    short = ModelData(model, cost, jnp.zeros((3, 2)), jnp.zeros((2, 1)), jnp.zeros((2, 3)), H)
    long = ModelData(model, cost, jnp.zeros((4, 2)), jnp.zeros((3, 1)), jnp.zeros((3, 3)), H, 1)

    with pytest.raises(DimensionError):
        EnsembleBundle([short, long])


def test_member_validation() -> None:
    model, cost = DoubleIntegrator(), _cost()
    with pytest.raises(DimensionError):
        ModelData(model, cost, jnp.zeros((4, 2)), jnp.zeros((2, 1)), jnp.zeros((3, 3)), H)
    with pytest.raises(CitoException) as excinfo:
        ModelData(model, cost, jnp.zeros((4, 2)), jnp.zeros((3, 1)), jnp.zeros((3, 3)), 0.0)
    assert excinfo.value.error_code == ErrorCode.TIMESTEP_NOT_POSITIVE


def test_derivative_shapes() -> None:
    ensemble = _ensemble(2, DDPOptions(second_order_dynamics=True))
    ensemble.compute_derivatives()

    for member in ensemble:
        assert member.derivatives_up_to_date
        assert member.fx.shape == (T - 1, 2, 2)
        assert member.fu.shape == (T - 1, 2, 1)
        assert member.fxx.shape == (T - 1, 2, 2, 2)
        assert member.fuu.shape == (T - 1, 2, 1, 1)
        assert member.fux.shape == (T - 1, 2, 1, 2)
        assert member.gx.shape == (T - 1, 2)
        assert member.guu.shape == (T - 1, 1, 1)
        assert member.gux.shape == (T - 1, 1, 2)
        assert member.gx_terminal.shape == (2,)
        assert jnp.allclose(member.gxx_terminal, 20.0 * jnp.eye(2))
        assert jnp.allclose(member.gxx[0], 2.0 * H * jnp.eye(2))


def test_backward_pass_requires_derivatives() -> None:
    ensemble = _ensemble()
    policy = PolicyData(2, 1, T, len(ensemble))

    with pytest.raises(InitializationError):
        backward_pass(policy, ensemble, ensemble.options)


def test_commit_marks_derivatives_stale() -> None:
    ensemble = _ensemble()
    ensemble.compute_derivatives()
    ensemble[0].x = ensemble[0].x_bar + 1.0

    ensemble.commit_current()

    assert not ensemble[0].derivatives_up_to_date
    assert jnp.array_equal(ensemble[0].x_bar, ensemble[0].x)


def test_mean_trajectories() -> None:
    ensemble = _ensemble(2)
    x_ref, u_ref = ensemble.mean_trajectories()

    assert jnp.allclose(x_ref, 0.5 * (ensemble[0].x_bar + ensemble[1].x_bar))
    assert jnp.allclose(u_ref, 0.5 * jnp.ones((T - 1, 1)))


def test_simulate_policy_without_feedback_is_open_loop() -> None:
    ensemble = _ensemble(1)
    member = ensemble[0]
    K = [jnp.zeros((1, 2)) for _ in range(T - 1)]

    x, u, J = simulate_policy(
        member.model, member.objective, K, member.x_bar, member.u_bar, member.x_bar[0], member.w, H
    )

    assert jnp.allclose(x, member.x_bar)
    assert jnp.allclose(u, member.u_bar)
    assert J == pytest.approx(ensemble.member_objective(member))


def test_simulate_policy_rejects_mismatched_horizon() -> None:
    member = _ensemble(1)[0]
    with pytest.raises(DimensionError):
        simulate_policy(
            member.model, member.objective, [jnp.zeros((1, 2))], member.x_bar,
            member.u_bar, member.x_bar[0], member.w, H,
        )


def _pool_name(member: ModelData) -> str:
    return threading.current_thread().name.rsplit("_", 1)[0]


def test_session_shares_one_worker_pool() -> None:
    ensemble = _ensemble(3)
    options = DDPOptions(num_workers=2, objective_reduction="sum")

    with ensemble.session(options):
        assert ensemble.options is options
        first = set(ensemble.map_members(_pool_name))
        second = set(ensemble.map_members(_pool_name))

    assert len(first) == 1
    assert first == second
    assert ensemble.options is not options

    outside_first = set(ensemble.map_members(_pool_name))
    outside_second = set(ensemble.map_members(_pool_name))
    assert outside_first != outside_second
