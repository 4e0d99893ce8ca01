"""Per-member trajectory data and the ensemble bundle used by DDP.

Each ``ModelData`` owns the trajectories and derivative caches of one sampled
initial condition / disturbance realization. The ``EnsembleBundle`` runs
per-member work on a thread pool and reduces member objectives to one scalar.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

import jax
import jax.numpy as jnp
from jax import Array

from .ddp_model import DynamicsModel, Objective, rollout
from .exceptions import CitoException, DimensionError, InitializationError
from .policy import policy_control
from .solver_options import DDPOptions
from .types import ErrorCode, Float, JacobianOracle, ObjectiveMode


_T = TypeVar("_T")


@dataclass(frozen=True)
class _MemberFunctions:
    trajectory_cost: Any
    dynamics_jacobians: Any
    dynamics_hessians: Any
    stage_cost_derivatives: Any
    terminal_cost_derivatives: Any
    closed_loop_rollout: Any


def _build_derivative_functions(
    model: DynamicsModel, objective: Objective, oracle: JacobianOracle
) -> _MemberFunctions:
    """Compile the vectorized cost and derivative functions of one (model, objective) pair."""
    dynamics = model.dynamics
    stage = objective.stage_cost
    terminal = objective.terminal_cost

    fx = oracle(dynamics, argnums=0)
    fu = oracle(dynamics, argnums=1)
    fxx = oracle(fx, argnums=0)
    fuu = oracle(fu, argnums=1)
    fux = oracle(fu, argnums=0)

    gx = oracle(stage, argnums=0)
    gu = oracle(stage, argnums=1)
    gxx = oracle(gx, argnums=0)
    guu = oracle(gu, argnums=1)
    gux = oracle(gu, argnums=0)

    gx_terminal = oracle(terminal)
    gxx_terminal = oracle(gx_terminal)

    over_horizon = (0, 0, 0, None)

    @jax.jit
    def trajectory_cost(x: Array, u: Array) -> Array:
        t = jnp.arange(u.shape[0])
        return jnp.sum(jax.vmap(stage)(x[:-1], u, t)) + terminal(x[-1])

    @jax.jit
    def dynamics_jacobians(x: Array, u: Array, w: Array, h: Float) -> tuple[Array, Array]:
        return jax.vmap(lambda *a: (fx(*a), fu(*a)), in_axes=over_horizon)(x[:-1], u, w, h)

    @jax.jit
    def dynamics_hessians(x: Array, u: Array, w: Array, h: Float) -> tuple[Array, Array, Array]:
        return jax.vmap(lambda *a: (fxx(*a), fuu(*a), fux(*a)), in_axes=over_horizon)(
            x[:-1], u, w, h
        )

    @jax.jit
    def stage_cost_derivatives(x: Array, u: Array) -> tuple[Array, ...]:
        t = jnp.arange(u.shape[0])
        return jax.vmap(lambda *a: (gx(*a), gu(*a), gxx(*a), guu(*a), gux(*a)))(x[:-1], u, t)

    @jax.jit
    def terminal_cost_derivatives(x_terminal: Array) -> tuple[Array, Array]:
        return gx_terminal(x_terminal), gxx_terminal(x_terminal)

    @jax.jit
    def closed_loop_rollout(
        x_bar: Array, u_bar: Array, w: Array, h: Float, K: Array, k: Array, alpha: Float
    ) -> tuple[Array, Array]:
        def step(x, stage_data):
            x_bar_t, u_bar_t, w_t, K_t, k_t = stage_data
            u_t = policy_control(u_bar_t, k_t, K_t, x, x_bar_t, alpha)
            return dynamics(x, u_t, w_t, h), (x, u_t)

        x_terminal, (xs, us) = jax.lax.scan(step, x_bar[0], (x_bar[:-1], u_bar, w, K, k))
        return jnp.concatenate([xs, x_terminal[None, :]], axis=0), us

    return _MemberFunctions(
        trajectory_cost=trajectory_cost,
        closed_loop_rollout=closed_loop_rollout,
        dynamics_jacobians=dynamics_jacobians,
        dynamics_hessians=dynamics_hessians,
        stage_cost_derivatives=stage_cost_derivatives,
        terminal_cost_derivatives=terminal_cost_derivatives,
    )


@dataclass
class ModelData:
    """Trajectories and derivative caches of one ensemble member.

    Trajectories are stacked over time: states ``(T, n)``, controls and
    disturbances ``(T - 1, .)``. Derivative caches are stacked the same way and
    filled by ``EnsembleBundle.compute_derivatives``.
    """

    model: DynamicsModel
    objective: Objective

    # Nominal trajectory
    x_bar: Array
    u_bar: Array

    # Disturbance sequence and timestep
    w: Array
    h: Float

    member_index: int = 0

    # Current trajectory (forward pass scratch)
    x: Array | None = None
    u: Array | None = None

    # Dynamics expansion data
    fx: Array | None = None  # (T-1, n, n)
    fu: Array | None = None  # (T-1, n, m)
    fxx: Array | None = None  # (T-1, n, n, n)
    fuu: Array | None = None  # (T-1, n, m, m)
    fux: Array | None = None  # (T-1, n, m, n)

    # Cost expansion data
    gx: Array | None = None  # (T-1, n)
    gu: Array | None = None  # (T-1, m)
    gxx: Array | None = None  # (T-1, n, n)
    guu: Array | None = None  # (T-1, m, m)
    gux: Array | None = None  # (T-1, m, n)
    gx_terminal: Array | None = None  # (n,)
    gxx_terminal: Array | None = None  # (n, n)

    derivatives_up_to_date: bool = False

    def __post_init__(self) -> None:
        self.x_bar = jnp.asarray(self.x_bar, dtype=float)
        self.u_bar = jnp.asarray(self.u_bar, dtype=float)
        self.w = jnp.asarray(self.w, dtype=float)

        if self.h <= 0.0:
            raise CitoException("Timestep must be positive", ErrorCode.TIMESTEP_NOT_POSITIVE)
        if self.x_bar.ndim != 2 or self.x_bar.shape[1] != self.model.n:
            raise DimensionError(
                f"Member {self.member_index}: states must have shape (T, {self.model.n})"
            )
        if self.u_bar.shape != (self.x_bar.shape[0] - 1, self.model.m):
            raise DimensionError(
                f"Member {self.member_index}: controls must have shape "
                f"({self.x_bar.shape[0] - 1}, {self.model.m}), got {self.u_bar.shape}"
            )
        if self.w.shape != (self.u_bar.shape[0], self.model.d):
            raise DimensionError(
                f"Member {self.member_index}: disturbances must have shape "
                f"({self.u_bar.shape[0]}, {self.model.d}), got {self.w.shape}"
            )

        if self.x is None:
            self.x = self.x_bar
        if self.u is None:
            self.u = self.u_bar

    @property
    def horizon(self) -> int:
        """Number of knot points ``T``."""
        return int(self.x_bar.shape[0])

    def assert_derivatives(self) -> None:
        if not self.derivatives_up_to_date:
            raise InitializationError(
                f"Derivatives of member {self.member_index} have not been computed"
            )


class EnsembleBundle:
    """Independent ensemble members optimized under one shared policy."""

    def __init__(
        self,
        members: Sequence[ModelData],
        options: DDPOptions | None = None,
        oracle: JacobianOracle = jax.jacfwd,
    ):
        if len(members) == 0:
            raise DimensionError("Ensemble must contain at least one member", ErrorCode.EMPTY_ENSEMBLE)

        first = members[0]
        for member in members[1:]:
            if member.x_bar.shape != first.x_bar.shape or member.u_bar.shape != first.u_bar.shape:
                raise DimensionError(
                    f"Member {member.member_index} trajectory shapes "
                    f"{member.x_bar.shape}, {member.u_bar.shape} do not match "
                    f"{first.x_bar.shape}, {first.u_bar.shape}"
                )

        self.members = list(members)
        self.options = options if options is not None else DDPOptions()
        self.oracle = oracle
        self._functions: dict[tuple[int, int], _MemberFunctions] = {}
        self._executor: ThreadPoolExecutor | None = None

    @classmethod
    def from_rollout(
        cls,
        model: DynamicsModel,
        objective: Objective,
        x1s: Array,
        u_init: Array,
        ws: Array,
        h: Float,
        options: DDPOptions | None = None,
        oracle: JacobianOracle = jax.jacfwd,
    ) -> EnsembleBundle:
        """Build the ensemble by rolling out each member open loop.

        Args:
            model: Dynamics shared by every member
            objective: Cost shared by every member
            x1s: Initial states, one row per member
            u_init: Initial controls, ``(T-1, m)`` shared or ``(N, T-1, m)`` per member
            ws: Disturbance sequences, ``(N, T-1, d)``
            h: Timestep
        """
        x1s = jnp.atleast_2d(jnp.asarray(x1s, dtype=float))
        u_init = jnp.asarray(u_init, dtype=float)
        ws = jnp.asarray(ws, dtype=float)
        num_members = x1s.shape[0]

        if u_init.ndim == 2:
            u_init = jnp.broadcast_to(u_init, (num_members, *u_init.shape))
        if u_init.shape[0] != num_members or ws.shape[0] != num_members:
            raise DimensionError(
                f"Expected {num_members} control and disturbance sequences, "
                f"got {u_init.shape[0]} and {ws.shape[0]}"
            )

        members = [
            ModelData(
                model=model,
                objective=objective,
                x_bar=rollout(model, x1s[i], u_init[i], ws[i], h),
                u_bar=u_init[i],
                w=ws[i],
                h=h,
                member_index=i,
            )
            for i in range(num_members)
        ]
        return cls(members, options, oracle)

    def __len__(self) -> int:
        return len(self.members)

    def __iter__(self) -> Iterator[ModelData]:
        return iter(self.members)

    def __getitem__(self, index: int) -> ModelData:
        return self.members[index]

    @property
    def horizon(self) -> int:
        return self.members[0].horizon

    @property
    def num_states(self) -> int:
        return self.members[0].model.n

    @property
    def num_inputs(self) -> int:
        return self.members[0].model.m

    def functions_for(self, member: ModelData) -> _MemberFunctions:
        key = (id(member.model), id(member.objective))
        if key not in self._functions:
            self._functions[key] = _build_derivative_functions(
                member.model, member.objective, self.oracle
            )
        return self._functions[key]

    def map_members(self, fn: Callable[[ModelData], _T]) -> list[_T]:
        """Apply ``fn`` to every member on the thread pool and join."""
        for member in self.members:
            # Compile outside the pool so that workers never race on the cache
            self.functions_for(member)

        if len(self.members) == 1:
            return [fn(self.members[0])]

        if self._executor is not None:
            return list(self._executor.map(fn, self.members))

        with ThreadPoolExecutor(max_workers=self.options.num_workers) as executor:
            return list(executor.map(fn, self.members))

    @contextmanager
    def session(self, options: DDPOptions | None = None) -> Iterator[EnsembleBundle]:
        """Run with ``options`` and one shared worker pool until the block exits.

        The previous options are restored on exit, so per-solve overrides do
        not leak into the caller's ensemble.
        """
        previous = self.options
        if options is not None:
            self.options = options

        executor = None
        if len(self.members) > 1:
            executor = ThreadPoolExecutor(max_workers=self.options.num_workers)
        self._executor = executor
        try:
            yield self
        finally:
            self._executor = None
            self.options = previous
            if executor is not None:
                executor.shutdown()

    def member_objective(self, member: ModelData, mode: ObjectiveMode | str = ObjectiveMode.NOMINAL) -> Float:
        mode = _parse_mode(mode)
        if mode == ObjectiveMode.NOMINAL:
            x, u = member.x_bar, member.u_bar
        else:
            x, u = member.x, member.u
        return float(self.functions_for(member).trajectory_cost(x, u))

    def evaluate_objective(self, mode: ObjectiveMode | str = ObjectiveMode.NOMINAL) -> Float:
        """Mean (or sum) over members of stage plus terminal costs."""
        mode = _parse_mode(mode)
        costs = self.map_members(lambda member: self.member_objective(member, mode))
        total = sum(costs)
        if self.options.objective_reduction == "mean":
            return total / len(self.members)
        return total

    def compute_derivatives(self) -> None:
        """Populate dynamics Jacobians and cost gradients/Hessians of every member."""
        second_order = self.options.second_order_dynamics

        def compute(member: ModelData) -> None:
            funcs = self.functions_for(member)
            x, u = member.x_bar, member.u_bar

            member.fx, member.fu = funcs.dynamics_jacobians(x, u, member.w, member.h)
            if second_order:
                member.fxx, member.fuu, member.fux = funcs.dynamics_hessians(
                    x, u, member.w, member.h
                )
            (
                member.gx,
                member.gu,
                member.gxx,
                member.guu,
                member.gux,
            ) = funcs.stage_cost_derivatives(x, u)
            member.gx_terminal, member.gxx_terminal = funcs.terminal_cost_derivatives(x[-1])
            member.derivatives_up_to_date = True

        self.map_members(compute)

    def mean_trajectories(self) -> tuple[Array, Array]:
        """Ensemble mean of the nominal states and controls."""
        x_ref = jnp.mean(jnp.stack([member.x_bar for member in self.members]), axis=0)
        u_ref = jnp.mean(jnp.stack([member.u_bar for member in self.members]), axis=0)
        return x_ref, u_ref

    def commit_current(self) -> None:
        """Accept the current trajectories as the new nominal trajectories."""
        for member in self.members:
            member.x_bar = member.x
            member.u_bar = member.u
            member.derivatives_up_to_date = False


def _parse_mode(mode: ObjectiveMode | str) -> ObjectiveMode:
    if isinstance(mode, ObjectiveMode):
        return mode
    try:
        return ObjectiveMode(mode)
    except ValueError:
        raise CitoException(
            f"Unknown objective mode: {mode}", ErrorCode.INVALID_OBJECTIVE_MODE
        ) from None
