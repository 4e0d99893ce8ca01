import pytest

from jaxcito import (
    CitoException,
    DDPOptions,
    DimensionError,
    ErrorCode,
    SolverData,
    SolveStatus,
    StepSolverOptions,
    Verbosity,
    error_code_to_string,
)
from jaxcito.types import verbosity_at_least


def test_step_solver_defaults() -> None:
    opts = StepSolverOptions()

    assert opts.num_stages == 4
    assert opts.mu_initial == 1.0
    assert opts.mu_scaling == 0.1
    assert opts.max_backtracks == 50
    assert opts.backtrack_factor == 0.5
    assert opts.armijo == 1e-3


@pytest.mark.parametrize(
    "kwargs",
    [
        {"tol": 0.0},
        {"num_stages": 0},
        {"mu_initial": -1.0},
        {"mu_scaling": 1.5},
        {"backtrack_factor": 1.0},
        {"cone_offset": 0.0},
    ],
)
def test_step_solver_rejects_invalid(kwargs) -> None:
    with pytest.raises(ValueError):
        StepSolverOptions(**kwargs)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"grad_tol": 0.0},
        {"reg_scaling": 1.0},
        {"min_reduction_ratio": 0.0},
        {"objective_reduction": "max"},
        {"num_workers": 0},
    ],
)
def test_ddp_rejects_invalid(kwargs) -> None:
    with pytest.raises(ValueError):
        DDPOptions(**kwargs)


def test_solver_data_reset() -> None:
    data = SolverData()
    data.obj = 3.0
    data.cost_history.append(3.0)
    data.solve_status = SolveStatus.SUCCESS

    assert data.is_converged()
    data.reset()

    assert data.obj == 0.0
    assert data.cost_history == []
    assert data.solve_status == SolveStatus.UNSOLVED
    assert not data.is_converged()


def test_verbosity_ordering() -> None:
    assert verbosity_at_least(Verbosity.LINE_SEARCH, Verbosity.INNER)
    assert verbosity_at_least(Verbosity.OUTER, Verbosity.OUTER)
    assert not verbosity_at_least(Verbosity.SILENT, Verbosity.OUTER)


def test_exception_formatting() -> None:
    err = DimensionError("bad shape")

    assert isinstance(err, CitoException)
    assert err.error_code == ErrorCode.DIMENSION_MISMATCH
    assert str(err) == "jaxcito Error DimensionMismatch: bad shape"
    assert error_code_to_string(ErrorCode.EMPTY_ENSEMBLE) == "ensemble has no members"
