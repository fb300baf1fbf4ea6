# src/stage_engine/results.py
"""Caller-facing outcome types for implicit stage solves."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from .errors import FailureReason

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray


class SolveStatus(StrEnum):
    """Three-way outcome of a stage solve."""

    SUCCESS = "success"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


class ConvergenceDecision(StrEnum):
    """Per-iteration verdict of the convergence test."""

    CONVERGED = "converged"
    DIVERGED = "diverged"
    CONTINUE = "continue"


class NonlinearStatus(StrEnum):
    """Outcome reported by a nonlinear solver object for one solve."""

    CONVERGED = "converged"
    CONV_RECOVERABLE = "conv_recoverable"


@dataclass(slots=True, frozen=True)
class StageSolveResult:
    """Result of one StageSolveController.solve_stage call.

    Attributes:
        status: SUCCESS, RECOVERABLE or FATAL.
        reason: Failure subtype, None on success.
        iterations: Nonlinear iterations spent in this attempt.
        conv_fails: Nonlinear convergence failures in this attempt.
        stage: Copy of the converged stage vector (zpred + zcor) on success.
    """

    status: SolveStatus
    reason: FailureReason | None = None
    iterations: int = 0
    conv_fails: int = 0
    stage: NDArray[np.floating] | None = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        """Return True on success."""
        return self.status is SolveStatus.SUCCESS

    @property
    def recoverable(self) -> bool:
        """Return True if the caller may shrink the step and retry."""
        return self.status is SolveStatus.RECOVERABLE

    @property
    def fatal(self) -> bool:
        """Return True if integration must abort."""
        return self.status is SolveStatus.FATAL

    @classmethod
    def from_reason(
        cls,
        reason: FailureReason,
        *,
        iterations: int = 0,
        conv_fails: int = 0,
    ) -> StageSolveResult:
        """Build a failure result, classifying the reason as recoverable or fatal.

        Args:
            reason: Failure subtype.
            iterations: Nonlinear iterations spent in this attempt.
            conv_fails: Nonlinear convergence failures in this attempt.

        Returns:
            Failure result with the matching status.
        """
        status = SolveStatus.RECOVERABLE if reason.recoverable else SolveStatus.FATAL
        return cls(
            status=status,
            reason=reason,
            iterations=iterations,
            conv_fails=conv_fails,
        )
