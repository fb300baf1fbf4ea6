# src/stage_engine/nonlinear_solvers.py
"""Reference nonlinear solvers driving one implicit stage solve.

Both solvers consume the same callback bundle (`StageCallbacks`) that the stage
controller binds per attempt:

- `system(zcor, out, iteration)` writes the residual (root-finding) or the
  fixed-point update (fixed-point) for the trial correction,
- `conv_test(zcor, delta, tol, weights, iteration)` classifies the update,
- `lsetup(jbad) -> jcur` / `lsolve(b, iteration)` reach the linear solver
  (Newton only).

Callbacks raise `StageSolveError` on failure. Recoverable errors are absorbed
here (a Newton pass with a stale Jacobian is retried once after a forced
setup); fatal errors propagate unchanged.

Iteration counters follow the usual convention: `current_iteration` is the
0-based index handed to callbacks, `num_iterations` counts corrections applied
during the last solve (across retries) and `num_conv_fails` counts failed
passes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from .config import SolverCategory
from .errors import StageSolveError, raise_invalid_config
from .results import ConvergenceDecision, NonlinearStatus

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .convergence import ConvergenceTest
    from .linear_bridge import LinearSetupFunction, LinearSolveFunction
    from .stage_system import SystemFunction

_MAX_ITERS_MSG = "max_iterations must be >= 1; got {value}"
_BETA_RANGE_MSG = "beta must be in (0, 1]; got {value}"
_LSOLVE_REQUIRED_MSG = "NewtonSolver requires a linear solve callback"


@dataclass(slots=True, frozen=True)
class StageCallbacks:
    """Callbacks bound to one stage-solve attempt.

    Attributes:
        system: Residual or fixed-point map.
        conv_test: Convergence test.
        lsetup: Linear setup, or None without a linear solver.
        lsolve: Linear solve, or None without a linear solver.
    """

    system: SystemFunction
    conv_test: ConvergenceTest
    lsetup: LinearSetupFunction | None = None
    lsolve: LinearSolveFunction | None = None


class NonlinearSolver(Protocol):
    """Iteration driver consumed by StageSolveController."""

    category: SolverCategory
    max_iterations: int
    current_iteration: int
    num_iterations: int
    num_conv_fails: int

    def solve(
        self,
        callbacks: StageCallbacks,
        zcor: NDArray[np.floating],
        weights: NDArray[np.floating],
        tol: float,
        *,
        call_setup: bool,
    ) -> NonlinearStatus:
        """Iterate `zcor` in place until convergence or a recoverable failure."""
        ...


class _CountersMixin:
    """Shared counter bookkeeping."""

    max_iterations: int
    current_iteration: int
    num_iterations: int
    num_conv_fails: int

    def _init_counters(self, max_iterations: int) -> None:
        if max_iterations < 1:
            raise_invalid_config(_MAX_ITERS_MSG.format(value=max_iterations))
        self.max_iterations = int(max_iterations)
        self.current_iteration = 0
        self.num_iterations = 0
        self.num_conv_fails = 0

    def _reset_counters(self) -> None:
        self.current_iteration = 0
        self.num_iterations = 0
        self.num_conv_fails = 0


class NewtonSolver(_CountersMixin):
    """Modified Newton iteration on the stage residual.

    One pass:

        r = system(zcor)           (iteration 0)
        setup(jbad)                (if recommended)
        repeat:
            delta = -solve(r)
            zcor += delta
            test(delta)            -> converged / diverged / continue
            r = system(zcor)

    A pass that fails recoverably (divergence, iteration budget, or a
    recoverable callback error) is retried once from the initial correction
    with a forced setup, provided the Jacobian was not already fresh.
    """

    category = SolverCategory.ROOT_FINDING

    def __init__(self, *, max_iterations: int = 3) -> None:
        """Initialize the solver.

        Args:
            max_iterations: Max corrections per pass.
        """
        self._init_counters(max_iterations)

    def solve(
        self,
        callbacks: StageCallbacks,
        zcor: NDArray[np.floating],
        weights: NDArray[np.floating],
        tol: float,
        *,
        call_setup: bool,
    ) -> NonlinearStatus:
        """Solve the root-finding problem for `zcor` in place.

        Args:
            callbacks: Bound attempt callbacks.
            zcor: Initial correction, overwritten with the result.
            weights: Inverse error weights for the convergence test.
            tol: Nonlinear tolerance.
            call_setup: Whether the controller recommends a linear setup.

        Raises:
            ConfigurationError: If no linear solve callback is bound.
            StageSolveError: On a fatal callback failure.

        Returns:
            CONVERGED or CONV_RECOVERABLE.
        """
        if callbacks.lsolve is None:
            raise_invalid_config(_LSOLVE_REQUIRED_MSG)
        lsolve = callbacks.lsolve
        lsetup = callbacks.lsetup

        self._reset_counters()
        zcor0 = zcor.copy()
        delta = np.empty_like(zcor)
        do_setup = call_setup and lsetup is not None
        jbad = False
        jcur = False

        while True:
            self.current_iteration = 0
            try:
                callbacks.system(zcor, delta, self.current_iteration)
                if do_setup and lsetup is not None:
                    jcur = lsetup(jbad)
                    do_setup = False

                while True:
                    np.negative(delta, out=delta)
                    lsolve(delta, self.current_iteration)
                    zcor += delta
                    decision = callbacks.conv_test(
                        zcor, delta, tol, weights, self.current_iteration
                    )
                    self.current_iteration += 1
                    self.num_iterations += 1

                    if decision is ConvergenceDecision.CONVERGED:
                        return NonlinearStatus.CONVERGED
                    if decision is ConvergenceDecision.DIVERGED:
                        break
                    if self.current_iteration >= self.max_iterations:
                        break
                    callbacks.system(zcor, delta, self.current_iteration)
            except StageSolveError as exc:
                if not exc.recoverable:
                    raise

            self.num_conv_fails += 1
            if jcur or jbad or lsetup is None:
                return NonlinearStatus.CONV_RECOVERABLE

            jbad = True
            do_setup = True
            np.copyto(zcor, zcor0)


class FixedPointSolver(_CountersMixin):
    """Fixed-point iteration `zcor <- g(zcor)`, optionally damped.

    With damping `beta < 1` the update is
    `zcor <- (1 - beta) * zcor + beta * g(zcor)`. No linear solver is used, so
    the setup recommendation is ignored.
    """

    category = SolverCategory.FIXED_POINT

    def __init__(self, *, max_iterations: int = 3, beta: float | None = None) -> None:
        """Initialize the solver.

        Args:
            max_iterations: Max fixed-point iterations.
            beta: Optional damping factor in (0, 1].
        """
        self._init_counters(max_iterations)
        if beta is not None and not (0.0 < beta <= 1.0):
            raise_invalid_config(_BETA_RANGE_MSG.format(value=beta))
        self.beta = beta

    def solve(
        self,
        callbacks: StageCallbacks,
        zcor: NDArray[np.floating],
        weights: NDArray[np.floating],
        tol: float,
        *,
        call_setup: bool,  # noqa: ARG002
    ) -> NonlinearStatus:
        """Iterate the fixed-point map on `zcor` in place.

        Args:
            callbacks: Bound attempt callbacks (linear callbacks unused).
            zcor: Initial correction, overwritten with the result.
            weights: Inverse error weights for the convergence test.
            tol: Nonlinear tolerance.
            call_setup: Ignored.

        Raises:
            StageSolveError: On a fatal callback failure.

        Returns:
            CONVERGED or CONV_RECOVERABLE.
        """
        self._reset_counters()
        g = np.empty_like(zcor)
        delta = np.empty_like(zcor)

        try:
            while self.current_iteration < self.max_iterations:
                callbacks.system(zcor, g, self.current_iteration)
                if self.beta is not None and self.beta != 1.0:
                    g *= self.beta
                    g += (1.0 - self.beta) * zcor
                np.subtract(g, zcor, out=delta)
                np.copyto(zcor, g)

                decision = callbacks.conv_test(
                    zcor, delta, tol, weights, self.current_iteration
                )
                self.current_iteration += 1
                self.num_iterations += 1

                if decision is ConvergenceDecision.CONVERGED:
                    return NonlinearStatus.CONVERGED
                if decision is ConvergenceDecision.DIVERGED:
                    break
        except StageSolveError as exc:
            if not exc.recoverable:
                raise

        self.num_conv_fails += 1
        return NonlinearStatus.CONV_RECOVERABLE
