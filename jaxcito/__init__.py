"""JAX-based contact-implicit trajectory optimization package.

This package provides the numerical core for contact-aware trajectory
computation: an implicit frictional contact step solver based on
homotopy-continued Newton iteration over a cone complementarity problem, and a
robust Differential Dynamic Programming solver over an ensemble of perturbed
models. JAX supplies every Jacobian and Hessian.
"""

from __future__ import annotations

import jax


# Enable 64-bit precision for numerical stability
jax.config.update("jax_enable_x64", True)

# Ensemble DDP
from .backward_pass import backward_pass

# Cone utilities
from .cones import cone_identity, cone_product, in_cone, project_to_cone

# Contact models
from .contact_model import ContactModel, Particle
from .ddp_model import (
    DoubleIntegrator,
    DynamicsModel,
    MidpointModel,
    Objective,
    QuadraticCost,
    rollout,
)
from .ddp_solver import DDPSolver, ddp_solve

# Exception hierarchy
from .exceptions import (
    CitoException,
    DimensionError,
    InitializationError,
    error_code_to_string,
)
from .forward_pass import forward_pass
from .line_search import BacktrackingLineSearch, LineSearchReturnCode
from .model_data import EnsembleBundle, ModelData
from .policy import PolicyData, simulate_policy
from .sensitivity import StepSensitivities, implicit_sensitivity

# Simulation
from .simulator import SimulationResult, simulate

# Configuration classes
from .solver_options import DDPOptions, StepSolverOptions
from .solver_stats import SolverData

# Contact step solver
from .step_solver import (
    ContactStepSolver,
    StepResult,
    complementarity_residual,
    solve_step,
    solve_step_with_external_mu,
)

# Type definitions
from .types import (
    ErrorCode,
    JacobianOracle,
    ObjectiveMode,
    SolveStatus,
    StepStatus,
    Verbosity,
)


# Version information
__version__ = "0.1.0"
__license__ = "MIT"

# Public API
__all__ = [
    "BacktrackingLineSearch",
    "CitoException",
    "ContactModel",
    "ContactStepSolver",
    "DDPOptions",
    "DDPSolver",
    "DimensionError",
    "DoubleIntegrator",
    "DynamicsModel",
    "EnsembleBundle",
    "ErrorCode",
    "InitializationError",
    "JacobianOracle",
    "LineSearchReturnCode",
    "MidpointModel",
    "ModelData",
    "Objective",
    "ObjectiveMode",
    "Particle",
    "PolicyData",
    "QuadraticCost",
    "SimulationResult",
    "SolveStatus",
    "SolverData",
    "StepResult",
    "StepSensitivities",
    "StepSolverOptions",
    "StepStatus",
    "Verbosity",
    "__license__",
    "__version__",
    "backward_pass",
    "complementarity_residual",
    "cone_identity",
    "cone_product",
    "ddp_solve",
    "error_code_to_string",
    "forward_pass",
    "implicit_sensitivity",
    "in_cone",
    "project_to_cone",
    "rollout",
    "simulate",
    "simulate_policy",
    "solve_step",
    "solve_step_with_external_mu",
]
