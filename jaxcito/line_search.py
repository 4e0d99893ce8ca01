"""Bounded backtracking line search.

Used by the contact step solver (feasibility and merit backtracks) and by the
DDP forward pass (reduction-ratio test). The step length starts at ``alpha0``
and is multiplied by ``beta_decrease`` until the acceptance test passes or
``max_iters`` reductions have been tried.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .types import Float


logger = logging.getLogger(__name__)

AcceptanceTest = Callable[[Float], bool]

# Merit function for sufficient-decrease backtracking
MeritFunction = Callable[[Float], Float]


class LineSearchReturnCode(Enum):
    """Return codes for the backtracking line search."""

    NO_ERROR = "BLS_NOERROR"
    STEP_ACCEPTED = "BLS_STEP_ACCEPTED"
    MAX_ITERATIONS = "BLS_MAX_ITERS"
    GOT_NONFINITE_STEP_SIZE = "BLS_GOT_NONFINITE_STEP_SIZE"


@dataclass
class BacktrackingLineSearch:
    """Backtracking line search with a hard bound on the number of reductions."""

    # Options
    max_iters: int = 50
    beta_decrease: Float = 0.5
    c1: Float = 1e-3  # sufficient decrease parameter
    label: str = "line search"

    # State variables
    n_iters: int = 0
    alpha: Float = 0.0
    phi0: Float = 0.0
    phi: Float = 0.0
    return_code: LineSearchReturnCode = LineSearchReturnCode.NO_ERROR
    verbose: bool = False

    def set_verbose(self, verbose: bool) -> bool:
        """Set verbosity level."""
        old_verbose = self.verbose
        self.verbose = verbose
        return old_verbose

    def get_status(self) -> LineSearchReturnCode:
        return self.return_code

    def succeeded(self) -> bool:
        return self.return_code == LineSearchReturnCode.STEP_ACCEPTED

    def iterations(self) -> int:
        """Number of step reductions performed."""
        return self.n_iters

    def run(self, accept: AcceptanceTest, alpha0: Float = 1.0) -> Float:
        """Reduce ``alpha`` from ``alpha0`` until ``accept(alpha)`` holds.

        Returns the accepted step length, or the last one tried on failure
        (check ``succeeded()``).
        """
        self.n_iters = 0
        self.return_code = LineSearchReturnCode.NO_ERROR

        alpha = alpha0
        if not math.isfinite(alpha) or alpha <= 0.0:
            self.alpha = alpha
            self.return_code = LineSearchReturnCode.GOT_NONFINITE_STEP_SIZE
            return alpha

        while True:
            if accept(alpha):
                self.alpha = alpha
                self.return_code = LineSearchReturnCode.STEP_ACCEPTED
                if self.verbose:
                    logger.debug(
                        "  %s: accepted alpha = %.3e after %d reductions",
                        self.label,
                        alpha,
                        self.n_iters,
                    )
                return alpha

            if self.n_iters >= self.max_iters:
                self.alpha = alpha
                self.return_code = LineSearchReturnCode.MAX_ITERATIONS
                return alpha

            alpha = self.beta_decrease * alpha
            self.n_iters += 1
            if self.verbose:
                logger.debug("  %s: iter = %d, alpha = %.3e", self.label, self.n_iters, alpha)

    def run_sufficient_decrease(
        self, merit_fun: MeritFunction, phi0: Float, alpha0: Float = 1.0
    ) -> Float:
        """Backtrack until ``merit_fun(alpha) <= (1 - c1 * alpha) * phi0``."""
        self.phi0 = phi0
        self.phi = phi0

        def accept(alpha: Float) -> bool:
            phi = merit_fun(alpha)
            self.phi = phi
            return math.isfinite(phi) and phi <= (1.0 - self.c1 * alpha) * phi0

        return self.run(accept, alpha0)
