"""stage_engine implicit-stage nonlinear solve engine for additive Runge-Kutta methods."""

from __future__ import annotations

from .config import (
    MassKind,
    NonlinearSolveConfig,
    SolverCategory,
    StageProblemConfig,
    StageSolverSettings,
)
from .convergence import ConvergenceMonitor
from .errors import (
    ConfigurationError,
    ErrorCode,
    FailureReason,
    FatalCallbackError,
    RecoverableCallbackError,
    StageEngineError,
    StageSolveError,
)
from .linear_bridge import LinearSolver, LinearSolverBridge
from .linear_solvers import (
    DirectLinearSolver,
    MatrixMassOperator,
    TimeDependentMassOperator,
)
from .matrix_ops import error_weights, wrms_norm
from .nonlinear_solvers import (
    FixedPointSolver,
    NewtonSolver,
    NonlinearSolver,
    StageCallbacks,
)
from .results import ConvergenceDecision, NonlinearStatus, SolveStatus, StageSolveResult
from .stage_solver import StageSolveController
from .stage_system import (
    AttemptFlag,
    ConvFailHint,
    MassOperator,
    NonlinearStats,
    RHSFunction,
    SetupHistory,
    SolverState,
    StageContext,
    StageSystemFormulator,
    select_system_variant,
)

__version__ = "0.1.0"

__all__ = [
    "AttemptFlag",
    "ConfigurationError",
    "ConvFailHint",
    "ConvergenceDecision",
    "ConvergenceMonitor",
    "DirectLinearSolver",
    "ErrorCode",
    "FailureReason",
    "FatalCallbackError",
    "FixedPointSolver",
    "LinearSolver",
    "LinearSolverBridge",
    "MassKind",
    "MassOperator",
    "MatrixMassOperator",
    "NewtonSolver",
    "NonlinearSolveConfig",
    "NonlinearSolver",
    "NonlinearStats",
    "NonlinearStatus",
    "RHSFunction",
    "RecoverableCallbackError",
    "SetupHistory",
    "SolveStatus",
    "SolverCategory",
    "SolverState",
    "StageCallbacks",
    "StageContext",
    "StageEngineError",
    "StageProblemConfig",
    "StageSolveController",
    "StageSolveError",
    "StageSolveResult",
    "StageSolverSettings",
    "StageSystemFormulator",
    "TimeDependentMassOperator",
    "__version__",
    "error_weights",
    "select_system_variant",
    "wrms_norm",
]
