# src/stage_engine/stage_solver.py
"""Top-level controller for one implicit stage solve.

`StageSolveController.solve_stage` runs a single attempt:

1. Build a fresh SolverState (zcor = 0, residual-norm estimate reset).
2. Ask the LinearSolverBridge whether a linear setup should be recommended,
   given why this attempt is happening (AttemptFlag).
3. Bind the system function, convergence test and linear callbacks to this
   attempt and hand them to the nonlinear solver.
4. Fold the solver's counters into the cumulative NonlinearStats and translate
   the outcome into a StageSolveResult:

       converged                         -> SUCCESS
       divergence / iteration budget /
       recoverable callback failure      -> RECOVERABLE (CONV_FAIL)
       fatal callback failure            -> FATAL (reason of the failing call)

The controller owns the setup memory (SetupHistory) and the cumulative
counters; everything else is scoped to one attempt.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .config import MassKind, NonlinearSolveConfig, SolverCategory, StageProblemConfig
from .convergence import ConvergenceMonitor
from .errors import FailureReason, StageSolveError, raise_invalid_config
from .linear_bridge import LinearSolverBridge
from .nonlinear_solvers import StageCallbacks
from .results import NonlinearStatus, SolveStatus, StageSolveResult
from .stage_system import (
    AttemptFlag,
    NonlinearStats,
    SetupHistory,
    SolverState,
    StageSystemFormulator,
)

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from .linear_bridge import LinearSolver
    from .nonlinear_solvers import NonlinearSolver
    from .stage_system import MassOperator, RHSFunction, StageContext

logger = logging.getLogger(__name__)

_NO_ATTEMPT_MSG = "nonlinear_system_data is only available during or after a solve"
_NEWTON_NEEDS_LS_MSG = "a root-finding nonlinear solver requires a linear solver"


class StageSolveController:
    """Solve implicit ARK stage equations with a pluggable nonlinear solver."""

    def __init__(
        self,
        rhs: RHSFunction,
        nonlinear_solver: NonlinearSolver,
        *,
        problem: StageProblemConfig | None = None,
        config: NonlinearSolveConfig | None = None,
        linear_solver: LinearSolver | None = None,
        mass: MassOperator | None = None,
        nls_rhs: RHSFunction | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            rhs: Implicit RHS Fi(t, y).
            nonlinear_solver: Newton-like or fixed-point iteration driver. Its
                `max_iterations` is overwritten with `config.maxcor`, which is
                where the iteration limit is set.
            problem: Structural problem configuration.
            config: Nonlinear tunables.
            linear_solver: Linear solver for root-finding solvers.
            mass: Mass operator (required for non-identity mass).
            nls_rhs: Optional replacement for `rhs` inside nonlinear solves.
        """
        self.problem = (problem or StageProblemConfig()).resolved()
        self.config = config or NonlinearSolveConfig()
        self.nonlinear_solver = nonlinear_solver
        self.nonlinear_solver.max_iterations = self.config.maxcor

        category = SolverCategory(nonlinear_solver.category)
        if category is SolverCategory.ROOT_FINDING and linear_solver is None:
            raise_invalid_config(_NEWTON_NEEDS_LS_MSG)

        self.stats = NonlinearStats()
        self.history = SetupHistory()

        self.formulator = StageSystemFormulator(
            nls_rhs if nls_rhs is not None else rhs,
            category=category,
            problem=self.problem,
            mass=mass if self.problem.mass_kind is not MassKind.IDENTITY else None,
            mass_tol=self.config.nlscoef,
            stats=self.stats,
        )
        self.monitor = ConvergenceMonitor(self.config, linear=self.problem.linear)
        self.bridge = LinearSolverBridge(
            linear_solver if category is SolverCategory.ROOT_FINDING else None,
            self.history,
            config=self.config,
            problem=self.problem,
        )

        self._context: StageContext | None = None
        self._state: SolverState | None = None

    @property
    def nsetups(self) -> int:
        """Cumulative number of linear setups."""
        return self.history.nsetups

    def solve_stage(
        self,
        context: StageContext,
        attempt: AttemptFlag = AttemptFlag.FIRST_CALL,
        *,
        weights: NDArray[np.floating],
    ) -> StageSolveResult:
        """Run one attempt at solving the stage equation.

        Args:
            context: Stage inputs. `context.fi[context.stage_index]` is updated.
            attempt: Why this attempt is happening.
            weights: Inverse error weights for the convergence test.

        Returns:
            Result with status, reason, counters and (on success) the stage.
        """
        attempt = AttemptFlag(attempt)
        self.stats.attempts += 1

        state = SolverState.start(context, self.history, self.config)
        self._context = context
        self._state = state

        call_setup = self.bridge.recommend_setup(state, attempt, context.step_index)
        state.zcor.fill(0.0)

        lsetup, lsolve = self.bridge.bind(context, state)
        callbacks = StageCallbacks(
            system=self.formulator.bind(context, state),
            conv_test=self.monitor.bind(state),
            lsetup=lsetup,
            lsolve=lsolve,
        )

        tol = float(self.config.nlscoef)
        logger.debug(
            "stage %d at t=%g: begin nonlinear solve (tol=%g, attempt=%s, setup=%s)",
            context.stage_index,
            context.time,
            tol,
            attempt.value,
            call_setup,
        )

        nls = self.nonlinear_solver
        try:
            status = nls.solve(
                callbacks, state.zcor, weights, tol, call_setup=call_setup
            )
        except StageSolveError as exc:
            self._accumulate()
            reason = FailureReason.CONV_FAIL if exc.recoverable else exc.reason
            logger.debug(
                "stage %d at t=%g: nonlinear solve failed (%s)",
                context.stage_index,
                context.time,
                exc.reason.value,
            )
            return StageSolveResult.from_reason(
                reason,
                iterations=nls.num_iterations,
                conv_fails=nls.num_conv_fails,
            )

        self._accumulate()
        logger.debug(
            "stage %d at t=%g: end nonlinear solve (status=%s, iters=%d, fails=%d)",
            context.stage_index,
            context.time,
            status.value,
            nls.num_iterations,
            nls.num_conv_fails,
        )

        if status is NonlinearStatus.CONVERGED:
            self.history.jcur = False
            return StageSolveResult(
                status=SolveStatus.SUCCESS,
                iterations=nls.num_iterations,
                conv_fails=nls.num_conv_fails,
                stage=state.ycur.copy(),
            )

        return StageSolveResult.from_reason(
            FailureReason.CONV_FAIL,
            iterations=nls.num_iterations,
            conv_fails=nls.num_conv_fails,
        )

    def _accumulate(self) -> None:
        self.stats.nls_iters += self.nonlinear_solver.num_iterations
        self.stats.nls_fails += self.nonlinear_solver.num_conv_fails

    def nonlinear_system_data(
        self,
    ) -> tuple[
        float,
        NDArray[np.floating],
        NDArray[np.floating],
        NDArray[np.floating],
        float,
        NDArray[np.floating],
    ]:
        """Return (time, zpred, ycur, fi, gamma, sdata) for the latest attempt.

        `fi` is the active stage's cached implicit RHS (a writable view).

        Raises:
            RuntimeError: If no attempt has been started.

        Returns:
            Tuple of stage data.
        """
        if self._context is None or self._state is None:
            raise RuntimeError(_NO_ATTEMPT_MSG)
        ctx = self._context
        return (
            float(ctx.time),
            ctx.zpred,
            self._state.ycur,
            ctx.fi_stage,
            float(ctx.gamma),
            ctx.sdata,
        )
