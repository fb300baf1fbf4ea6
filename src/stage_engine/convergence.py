# src/stage_engine/convergence.py
"""Nonlinear convergence test for implicit stage solves.

Standard mode, assuming linear convergence of the corrections:

    delnorm = ||del||_WRMS
    m == 0:  crate = 1
    m >= 1:  crate = max(crdown * crate, delnorm / delp)
    dcon = min(crate, 1) * delnorm / tol

    dcon <= 1                        -> converged
    m >= 1 and delnorm > rdiv * delp -> diverged (recoverable)
    otherwise                        -> continue, delp = delnorm

Linearly implicit mode: the test is bypassed and every call reports
convergence, so one exact linear solve finishes the stage.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, TypeAlias

import numpy as np

from .matrix_ops import wrms_norm
from .results import ConvergenceDecision

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .config import NonlinearSolveConfig
    from .stage_system import SolverState

# conv_test(ycor, delta, tol, weights, iteration) -> decision
ConvergenceTest: TypeAlias = Callable[
    ["NDArray[np.floating]", "NDArray[np.floating]", float, "NDArray[np.floating]", int],
    ConvergenceDecision,
]


class ConvergenceMonitor:
    """Linear-rate convergence/divergence test bound to one SolverState."""

    def __init__(
        self,
        config: NonlinearSolveConfig,
        *,
        linear: bool = False,
    ) -> None:
        """Initialize the monitor.

        Args:
            config: Supplies crdown and rdiv.
            linear: Bypass the test (linearly implicit problem).
        """
        self.crdown = float(config.crdown)
        self.rdiv = float(config.rdiv)
        self.linear = bool(linear)

    def check(
        self,
        state: SolverState,
        delta: NDArray[np.floating],
        tol: float,
        weights: NDArray[np.floating],
        iteration: int,
    ) -> ConvergenceDecision:
        """Classify the latest correction update.

        Args:
            state: Attempt state holding crate and delp (updated in place).
            delta: Latest correction update.
            tol: Nonlinear tolerance.
            weights: Inverse error weights for the WRMS norm.
            iteration: Current nonlinear iteration (0-based).

        Returns:
            CONVERGED, DIVERGED or CONTINUE.
        """
        if self.linear:
            return ConvergenceDecision.CONVERGED

        delnorm = wrms_norm(delta, weights)

        if iteration == 0:
            state.crate = 1.0
        else:
            state.crate = max(self.crdown * state.crate, _ratio(delnorm, state.delp))

        dcon = min(state.crate, 1.0) * delnorm / tol
        if dcon <= 1.0:
            return ConvergenceDecision.CONVERGED

        if iteration >= 1 and delnorm > self.rdiv * state.delp:
            return ConvergenceDecision.DIVERGED

        state.delp = delnorm
        return ConvergenceDecision.CONTINUE

    def bind(self, state: SolverState) -> ConvergenceTest:
        """Return a convergence-test callback for one attempt.

        Args:
            state: Attempt state.

        Returns:
            Callable (ycor, delta, tol, weights, iteration) -> decision.
        """

        def conv_test(
            _ycor: NDArray[np.floating],
            delta: NDArray[np.floating],
            tol: float,
            weights: NDArray[np.floating],
            iteration: int,
        ) -> ConvergenceDecision:
            return self.check(state, delta, tol, weights, iteration)

        return conv_test


def _ratio(delnorm: float, delp: float) -> float:
    if delp > 0.0:
        return delnorm / delp
    return 0.0 if delnorm == 0.0 else float("inf")
