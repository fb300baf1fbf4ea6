# src/stage_engine/errors.py
"""Error types for stage_engine.

This module centralizes:
- the failure-reason taxonomy shared by results and exceptions,
- exceptions that user callbacks raise to signal recoverable/fatal failures, and
- the internal exception that carries a failure reason through the engine.

Design intent:
- callbacks never encode failure in a signed integer; they raise
  RecoverableCallbackError or FatalCallbackError instead
- the engine attaches a FailureReason so the controller can report *which*
  collaborator failed
- anything else raised by user code is a bug and propagates untouched
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Machine-readable classification for stage_engine exceptions."""

    INVALID_CONFIG = "invalid_config"
    CALLBACK_RECOVERABLE = "callback_recoverable"
    CALLBACK_FATAL = "callback_fatal"
    STAGE_FAILURE = "stage_failure"


class FailureReason(StrEnum):
    """Subtype of a failed stage solve.

    Recoverable reasons let the caller retry (typically with a smaller step);
    fatal reasons must abort the integration.
    """

    CONV_FAIL = "conv_fail"
    RHS_RECOVERABLE = "rhs_recoverable"
    MASS_RECOVERABLE = "mass_recoverable"
    RHS_FAIL = "rhs_fail"
    MASS_MULT_FAIL = "mass_mult_fail"
    MASS_SOLVE_FAIL = "mass_solve_fail"
    LSETUP_FAIL = "lsetup_fail"
    LSOLVE_FAIL = "lsolve_fail"

    @property
    def recoverable(self) -> bool:
        """Return True if a retry with a different correction or step may succeed."""
        return self in _RECOVERABLE_REASONS


_RECOVERABLE_REASONS = frozenset(
    {
        FailureReason.CONV_FAIL,
        FailureReason.RHS_RECOVERABLE,
        FailureReason.MASS_RECOVERABLE,
    }
)


class StageEngineError(Exception):
    """Base exception for stage_engine."""

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        """
        Initialize a StageEngineError.

        Args:
            message: Human-readable error message.
            code: Optional machine-readable error code classifying the error.
        """
        super().__init__(message)
        self.code: ErrorCode | None = code


class ConfigurationError(StageEngineError, ValueError):
    """Raised when a solver/problem configuration is invalid or inconsistent."""

    def __init__(self, message: str) -> None:
        """Initialize with the INVALID_CONFIG code."""
        super().__init__(message, code=ErrorCode.INVALID_CONFIG)


class RecoverableCallbackError(StageEngineError):
    """Raised by a user callback when the failure may go away on retry.

    Typical use: the RHS hits a non-physical state (negative concentration,
    NaN from a trial iterate) that a different correction or a smaller step
    would avoid.
    """

    def __init__(self, message: str = "recoverable callback failure") -> None:
        """Initialize with the CALLBACK_RECOVERABLE code."""
        super().__init__(message, code=ErrorCode.CALLBACK_RECOVERABLE)


class FatalCallbackError(StageEngineError):
    """Raised by a user callback when integration cannot continue."""

    def __init__(self, message: str = "unrecoverable callback failure") -> None:
        """Initialize with the CALLBACK_FATAL code."""
        super().__init__(message, code=ErrorCode.CALLBACK_FATAL)


class StageSolveError(StageEngineError):
    """Internal failure raised inside a stage solve, tagged with its reason."""

    def __init__(self, reason: FailureReason, detail: str | None = None) -> None:
        """
        Initialize a StageSolveError.

        Args:
            reason: Failure subtype.
            detail: Optional message from the failing collaborator.
        """
        msg = f"stage solve failed: {reason.value}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg, code=ErrorCode.STAGE_FAILURE)
        self.reason = reason

    @property
    def recoverable(self) -> bool:
        """Return True if the underlying reason is recoverable."""
        return self.reason.recoverable


def raise_invalid_config(detail: str) -> None:
    """Raise a standardized ConfigurationError.

    Args:
        detail: Human-readable description of the inconsistency.

    Raises:
        ConfigurationError: Always.
    """
    raise ConfigurationError(f"Invalid stage solver configuration. Detail: {detail}")
