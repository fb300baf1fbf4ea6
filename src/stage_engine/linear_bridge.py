# src/stage_engine/linear_bridge.py
"""Adapter between the nonlinear solver and an external linear solver.

The bridge exposes `setup(jbad) -> jcur` and `solve(b, iteration)` to the
nonlinear solver, and decides once per attempt whether a setup (Jacobian /
preconditioner refresh) should be recommended. A setup is recommended if any
of these hold:

- no setup has happened yet (first stage),
- the setup frequency `msbp` is negative ("always"),
- `|gamma/gammap - 1| > dgmax`,
- linearly implicit problem with a time-dependent Jacobian,
- nonlinearly implicit problem and the previous attempt failed to converge or
  failed the step error test, or at least `|msbp|` steps passed since the last
  setup.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol, TypeAlias

import numpy as np
from numpy.typing import NDArray

from .errors import FailureReason
from .stage_system import AttemptFlag, ConvFailHint, callback_guard

if TYPE_CHECKING:
    from .config import NonlinearSolveConfig, StageProblemConfig
    from .stage_system import SetupHistory, SolverState, StageContext


LinearSetupFunction: TypeAlias = Callable[[bool], bool]
LinearSolveFunction: TypeAlias = Callable[[NDArray[np.floating], int], None]


class LinearSolver(Protocol):
    """Linear solver interface consumed by the bridge.

    Implementations signal failures by raising RecoverableCallbackError or
    FatalCallbackError.
    """

    def setup(
        self,
        convfail: ConvFailHint,
        t: float,
        y: NDArray[np.floating],
        fy: NDArray[np.floating],
        gamma: float,
    ) -> bool:
        """Prepare to solve with `M - gamma*J(t, y)`; return True if J was refreshed."""
        ...

    def solve(
        self,
        b: NDArray[np.floating],
        t: float,
        y: NDArray[np.floating],
        fy: NDArray[np.floating],
        gamma: float,
        tol: float,
        iteration: int,
    ) -> None:
        """Overwrite b with the solution of the prepared linear system."""
        ...


class LinearSolverBridge:
    """Setup/solve wrappers plus the Jacobian-refresh heuristic."""

    def __init__(
        self,
        linear_solver: LinearSolver | None,
        history: SetupHistory,
        *,
        config: NonlinearSolveConfig,
        problem: StageProblemConfig,
    ) -> None:
        """Initialize the bridge.

        Args:
            linear_solver: External linear solver, or None (fixed-point / matrix-free
                without setup).
            history: Persistent setup memory (mutated by setup calls).
            config: Supplies dgmax and msbp.
            problem: Supplies the linear / linear_timedep flags.
        """
        self.linear_solver = linear_solver
        self.history = history
        self.config = config
        self.problem = problem

    # ------------------------------------------------------------------
    # Per-attempt decisions
    # ------------------------------------------------------------------

    def classify_failure(self, attempt: AttemptFlag) -> ConvFailHint:
        """Translate the caller's attempt flag into the setup hint.

        Args:
            attempt: Why this attempt is happening.

        Returns:
            NO_FAILURES or FAIL_OTHER.
        """
        if self.problem.linear:
            clean = attempt is AttemptFlag.FIRST_CALL
        else:
            clean = attempt in {AttemptFlag.FIRST_CALL, AttemptFlag.PREV_ERR_FAIL}
        return ConvFailHint.NO_FAILURES if clean else ConvFailHint.FAIL_OTHER

    def recommend_setup(
        self,
        state: SolverState,
        attempt: AttemptFlag,
        step_index: int,
    ) -> bool:
        """Decide whether to recommend a setup for this attempt.

        Also stores the convfail hint on `state`. Without a linear solver the
        convergence rate is reset and no setup is recommended.

        Args:
            state: Attempt state (gamrat is read, convfail/crate written).
            attempt: Why this attempt is happening.
            step_index: Number of completed steps.

        Returns:
            True if the nonlinear solver should call setup before iterating.
        """
        if self.linear_solver is None:
            state.crate = 1.0
            return False

        state.convfail = self.classify_failure(attempt)

        hist = self.history
        msbp = self.config.msbp
        call = (
            hist.first_stage
            or msbp < 0
            or abs(state.gamrat - 1.0) > self.config.dgmax
        )
        if self.problem.linear:
            return call or self.problem.linear_timedep

        return (
            call
            or attempt in {AttemptFlag.PREV_CONV_FAIL, AttemptFlag.PREV_ERR_FAIL}
            or step_index >= hist.nstlp + abs(msbp)
        )

    # ------------------------------------------------------------------
    # Wrappers handed to the nonlinear solver
    # ------------------------------------------------------------------

    def setup(self, context: StageContext, state: SolverState, jbad: bool) -> bool:
        """Call linear-solver setup and record the new reference gamma.

        Args:
            context: Stage inputs.
            state: Attempt state.
            jbad: The nonlinear solver suspects the Jacobian is stale.

        Raises:
            StageSolveError: CONV_FAIL if setup fails recoverably, LSETUP_FAIL if
                it fails fatally.

        Returns:
            True if the Jacobian was refreshed.
        """
        if self.linear_solver is None:
            return False
        if jbad:
            state.convfail = ConvFailHint.FAIL_BAD_J

        hist = self.history
        hist.nsetups += 1
        jcur = False
        try:
            with callback_guard(FailureReason.CONV_FAIL, FailureReason.LSETUP_FAIL):
                jcur = bool(
                    self.linear_solver.setup(
                        state.convfail,
                        float(context.time),
                        state.ycur,
                        context.fi_stage,
                        state.gamma,
                    )
                )
        finally:
            hist.jcur = jcur
            hist.first_stage = False
            hist.gammap = state.gamma
            hist.nstlp = int(context.step_index)
            state.gamrat = 1.0
            state.crate = 1.0
        return jcur

    def solve(
        self,
        context: StageContext,
        state: SolverState,
        b: NDArray[np.floating],
        iteration: int,
    ) -> None:
        """Solve the prepared linear system in place.

        Args:
            context: Stage inputs.
            state: Attempt state.
            b: Right-hand side, overwritten with the solution.
            iteration: Current nonlinear iteration.

        Raises:
            StageSolveError: CONV_FAIL if the solve fails recoverably,
                LSOLVE_FAIL if it fails fatally.
        """
        if self.linear_solver is None:
            return
        with callback_guard(FailureReason.CONV_FAIL, FailureReason.LSOLVE_FAIL):
            self.linear_solver.solve(
                b,
                float(context.time),
                state.ycur,
                context.fi_stage,
                state.gamma,
                state.residual_norm,
                iteration,
            )

    def bind(
        self,
        context: StageContext,
        state: SolverState,
    ) -> tuple[LinearSetupFunction | None, LinearSolveFunction | None]:
        """Return (setup, solve) callbacks for one attempt.

        Args:
            context: Stage inputs.
            state: Attempt state.

        Returns:
            Pair of callables, or (None, None) without a linear solver.
        """
        if self.linear_solver is None:
            return None, None

        def lsetup(jbad: bool) -> bool:
            return self.setup(context, state, jbad)

        def lsolve(b: NDArray[np.floating], iteration: int) -> None:
            self.solve(context, state, b, iteration)

        return lsetup, lsolve
