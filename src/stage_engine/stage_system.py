# src/stage_engine/stage_system.py
"""Stage data model and nonlinear-system formulation for implicit ARK stages.

At implicit stage i of an additive Runge-Kutta step the new stage value z solves

    M(t_i) z = M(t_i) y_n + h * sum_j (Ae[i,j] Fe_j + Ai[i,j] Fi_j),

with the only unknown-dependent term being `gamma * Fi(t_i, z)`,
`gamma = h * Ai[i,i]`. Writing `z = zpred + zcor`, the caller folds every known
term into a single vector `sdata`, so each evaluation only combines `zcor`,
`sdata` and one fresh implicit RHS evaluation.

Formula variants (selected once, never switched inside an attempt):

    category      mass            output
    ------------  --------------  -------------------------------------------
    root-finding  identity        r = zcor - gamma*Fi - sdata
    root-finding  fixed           r = M zcor - gamma*Fi - sdata
    root-finding  time-dependent  r = M(t) (zcor - sdata) - gamma*Fi
    fixed-point   identity        g = gamma*Fi + sdata
    fixed-point   fixed           g = M^{-1} (gamma*Fi + sdata)
    fixed-point   time-dependent  g = M(t)^{-1} (gamma*Fi) + sdata

Every evaluation refreshes `ycur = zpred + zcor` and overwrites the active
stage's cached `Fi` entry. For autonomous problems with a trivial predictor
(identity/fixed mass only) iteration 0 copies the cached start-of-step RHS
instead of re-evaluating it; `zcor` is zero there, so the copy is exact.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from functools import partial
from typing import TYPE_CHECKING, Protocol, TypeAlias

import numpy as np
from numpy.typing import NDArray

from .config import MassKind, SolverCategory, StageProblemConfig
from .errors import (
    FailureReason,
    FatalCallbackError,
    RecoverableCallbackError,
    StageSolveError,
    raise_invalid_config,
)

if TYPE_CHECKING:
    from .config import NonlinearSolveConfig


# =============================================================================
# Errors / messages
# =============================================================================

_RHS_SHAPE_ERROR_MSG = "rhs shape {actual} does not match expected {expected}"
_VECTOR_SHAPE_ERROR_MSG = "{name} shape {actual} does not match zpred shape {expected}"
_FI_SHAPE_ERROR_MSG = "fi must have shape (n_stages, {n}); got {actual}"
_STAGE_INDEX_ERROR_MSG = "stage_index {idx} out of range for {n_stages} cached stages"
_GAMMA_ERROR_MSG = "gamma must be a finite, nonzero float; got {gamma}"
_MASS_REQUIRED_MSG = "mass_kind={kind} requires a mass operator"
_UNKNOWN_VARIANT_MSG = "No system variant for category={category}, mass_kind={kind}"


# =============================================================================
# Type aliases / protocols
# =============================================================================

RHSFunction = Callable[[float, NDArray[np.floating]], NDArray[np.floating]]

# system(zcor, out, iteration) -> None; writes residual or fixed-point update.
SystemFunction: TypeAlias = Callable[
    [NDArray[np.floating], NDArray[np.floating], int], None
]


class MassOperator(Protocol):
    """Mass-matrix operator consumed by the formulator.

    Implementations signal failures by raising RecoverableCallbackError or
    FatalCallbackError. Fixed mass operators may ignore `t`.
    """

    def multiply(
        self,
        t: float,
        x: NDArray[np.floating],
        out: NDArray[np.floating],
    ) -> None:
        """Compute out = M(t) @ x."""
        ...

    def solve(self, t: float, b: NDArray[np.floating], tol: float) -> None:
        """Overwrite b with M(t)^{-1} b."""
        ...


class AttemptFlag(StrEnum):
    """Why the outer step logic is (re)invoking a stage solve."""

    FIRST_CALL = "first_call"
    PREV_CONV_FAIL = "prev_conv_fail"
    PREV_ERR_FAIL = "prev_err_fail"
    OTHER = "other"


class ConvFailHint(StrEnum):
    """Hint passed to linear-solver setup about the state of the Jacobian."""

    NO_FAILURES = "no_failures"
    FAIL_BAD_J = "fail_bad_j"
    FAIL_OTHER = "fail_other"


# =============================================================================
# Data model
# =============================================================================


@dataclass(slots=True, frozen=True)
class StageContext:
    """Inputs for one implicit stage, owned by the outer step.

    Only the cached RHS entry `fi[stage_index]` is written by the engine.

    Attributes:
        time: Stage time t_i.
        step_size: Step size h.
        gamma: h times the diagonal implicit coefficient of this stage.
        zpred: Predicted stage value; never modified during a solve.
        sdata: Pre-accumulated known terms of the stage equation.
        fi: Cached implicit RHS values, shape (n_stages, n).
        stage_index: Row of `fi` belonging to this stage.
        step_index: Number of completed steps (used by the setup heuristic).
        fn_implicit: Implicit RHS at the start of the step, if already known.
    """

    time: float
    step_size: float
    gamma: float
    zpred: NDArray[np.floating]
    sdata: NDArray[np.floating]
    fi: NDArray[np.floating]
    stage_index: int = 0
    step_index: int = 0
    fn_implicit: NDArray[np.floating] | None = None

    def __post_init__(self) -> None:
        """Validate shapes.

        Raises:
            ValueError: If vectors are inconsistent with zpred.
        """
        gamma = float(self.gamma)
        if not np.isfinite(gamma) or gamma == 0.0:
            raise ValueError(_GAMMA_ERROR_MSG.format(gamma=self.gamma))

        shape = self.zpred.shape
        if self.sdata.shape != shape:
            raise ValueError(
                _VECTOR_SHAPE_ERROR_MSG.format(
                    name="sdata", actual=self.sdata.shape, expected=shape
                )
            )
        if self.fi.ndim != 2 or self.fi.shape[1:] != shape:
            raise ValueError(_FI_SHAPE_ERROR_MSG.format(n=shape[0], actual=self.fi.shape))
        if not (0 <= self.stage_index < self.fi.shape[0]):
            raise ValueError(
                _STAGE_INDEX_ERROR_MSG.format(
                    idx=self.stage_index, n_stages=self.fi.shape[0]
                )
            )
        if self.fn_implicit is not None and self.fn_implicit.shape != shape:
            raise ValueError(
                _VECTOR_SHAPE_ERROR_MSG.format(
                    name="fn_implicit", actual=self.fn_implicit.shape, expected=shape
                )
            )

    @property
    def fi_stage(self) -> NDArray[np.floating]:
        """Writable view of the active stage's cached implicit RHS."""
        return self.fi[self.stage_index]


@dataclass(slots=True)
class SetupHistory:
    """Linear-setup memory that persists across stages and steps.

    Attributes:
        gammap: gamma at the last setup (None before the first setup).
        nstlp: Step index at the last setup.
        nsetups: Cumulative number of setup calls.
        first_stage: True until the first setup has happened.
        jcur: True if the Jacobian was refreshed during the current attempt.
    """

    gammap: float | None = None
    nstlp: int = 0
    nsetups: int = 0
    first_stage: bool = True
    jcur: bool = False


@dataclass(slots=True)
class NonlinearStats:
    """Cumulative diagnostics. Advisory only; never used for control flow."""

    nls_iters: int = 0
    nls_fails: int = 0
    nfi: int = 0
    attempts: int = 0


@dataclass(slots=True)
class SolverState:
    """Mutable per-attempt state of one stage solve.

    `ycur` is not stored independently: reading it recomputes zpred + zcor.

    Attributes:
        zpred: Predicted stage (shared with the context, read-only).
        zcor: Current correction; zero at the start of every attempt.
        gamma: Current gamma.
        gamrat: gamma / gammap, the drift ratio since the last setup.
        crate: Estimated linear convergence rate.
        delp: Norm of the previous correction update.
        residual_norm: Working residual-norm estimate for iterative linear solves.
        convfail: Hint passed to the next linear setup.
    """

    zpred: NDArray[np.floating]
    zcor: NDArray[np.floating]
    gamma: float
    gamrat: float = 1.0
    crate: float = 1.0
    delp: float = 0.0
    residual_norm: float = 0.0
    convfail: ConvFailHint = ConvFailHint.NO_FAILURES
    _ycur: NDArray[np.floating] = field(init=False, repr=False)
    work: NDArray[np.floating] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Allocate scratch buffers."""
        self._ycur = np.empty_like(self.zpred)
        self.work = np.empty_like(self.zpred)

    @classmethod
    def start(
        cls,
        context: StageContext,
        history: SetupHistory,
        config: NonlinearSolveConfig,
    ) -> SolverState:
        """Create the state for a fresh attempt.

        Args:
            context: Stage inputs.
            history: Setup memory (supplies gammap).
            config: Nonlinear tunables (supplies nlscoef).

        Returns:
            State with zcor zeroed and crate reset.
        """
        gamma = float(context.gamma)
        gammap = history.gammap
        gamrat = gamma / gammap if gammap else 1.0
        return cls(
            zpred=context.zpred,
            zcor=np.zeros_like(context.zpred, dtype=float),
            gamma=gamma,
            gamrat=gamrat,
            residual_norm=0.1 * config.nlscoef,
        )

    @property
    def ycur(self) -> NDArray[np.floating]:
        """Current stage iterate zpred + zcor, recomputed on every read."""
        np.add(self.zpred, self.zcor, out=self._ycur)
        return self._ycur


# =============================================================================
# Callback guards
# =============================================================================


@contextmanager
def callback_guard(
    recoverable: FailureReason,
    fatal: FailureReason,
) -> Iterator[None]:
    """Translate user-callback failures into tagged StageSolveErrors.

    Args:
        recoverable: Reason to attach to RecoverableCallbackError.
        fatal: Reason to attach to FatalCallbackError.

    Yields:
        None.

    Raises:
        StageSolveError: Tagged with the matching reason.
    """
    try:
        yield
    except RecoverableCallbackError as exc:
        raise StageSolveError(recoverable, str(exc)) from exc
    except FatalCallbackError as exc:
        raise StageSolveError(fatal, str(exc)) from exc


# =============================================================================
# Formula variants
# =============================================================================

SystemVariant: TypeAlias = Callable[
    [
        "StageSystemFormulator",
        StageContext,
        SolverState,
        NDArray[np.floating],
        NDArray[np.floating],
        int,
    ],
    None,
]


def _residual_mass_identity(
    f: StageSystemFormulator,
    ctx: StageContext,
    state: SolverState,
    zcor: NDArray[np.floating],
    out: NDArray[np.floating],
    iteration: int,
) -> None:
    fi = f.implicit_rhs(ctx, state, iteration)
    np.subtract(zcor, ctx.sdata, out=out)
    out -= ctx.gamma * fi


def _residual_mass_fixed(
    f: StageSystemFormulator,
    ctx: StageContext,
    state: SolverState,
    zcor: NDArray[np.floating],
    out: NDArray[np.floating],
    iteration: int,
) -> None:
    fi = f.implicit_rhs(ctx, state, iteration)
    f.mass_multiply(ctx.time, zcor, out)
    out -= ctx.sdata
    out -= ctx.gamma * fi


def _residual_mass_timedep(
    f: StageSystemFormulator,
    ctx: StageContext,
    state: SolverState,
    zcor: NDArray[np.floating],
    out: NDArray[np.floating],
    iteration: int,
) -> None:
    np.subtract(zcor, ctx.sdata, out=state.work)
    f.mass_multiply(ctx.time, state.work, out)
    fi = f.implicit_rhs(ctx, state, iteration)
    out -= ctx.gamma * fi


def _fixed_point_mass_identity(
    f: StageSystemFormulator,
    ctx: StageContext,
    state: SolverState,
    zcor: NDArray[np.floating],  # noqa: ARG001
    out: NDArray[np.floating],
    iteration: int,
) -> None:
    fi = f.implicit_rhs(ctx, state, iteration)
    np.multiply(fi, ctx.gamma, out=out)
    out += ctx.sdata


def _fixed_point_mass_fixed(
    f: StageSystemFormulator,
    ctx: StageContext,
    state: SolverState,
    zcor: NDArray[np.floating],  # noqa: ARG001
    out: NDArray[np.floating],
    iteration: int,
) -> None:
    fi = f.implicit_rhs(ctx, state, iteration)
    np.multiply(fi, ctx.gamma, out=out)
    out += ctx.sdata
    f.mass_solve(ctx.time, out)


def _fixed_point_mass_timedep(
    f: StageSystemFormulator,
    ctx: StageContext,
    state: SolverState,
    zcor: NDArray[np.floating],  # noqa: ARG001
    out: NDArray[np.floating],
    iteration: int,
) -> None:
    fi = f.implicit_rhs(ctx, state, iteration)
    np.multiply(fi, ctx.gamma, out=out)
    f.mass_solve(ctx.time, out)
    out += ctx.sdata


_SYSTEM_VARIANTS: dict[tuple[SolverCategory, MassKind], SystemVariant] = {
    (SolverCategory.ROOT_FINDING, MassKind.IDENTITY): _residual_mass_identity,
    (SolverCategory.ROOT_FINDING, MassKind.FIXED): _residual_mass_fixed,
    (SolverCategory.ROOT_FINDING, MassKind.TIME_DEPENDENT): _residual_mass_timedep,
    (SolverCategory.FIXED_POINT, MassKind.IDENTITY): _fixed_point_mass_identity,
    (SolverCategory.FIXED_POINT, MassKind.FIXED): _fixed_point_mass_fixed,
    (SolverCategory.FIXED_POINT, MassKind.TIME_DEPENDENT): _fixed_point_mass_timedep,
}


def select_system_variant(
    category: SolverCategory,
    mass_kind: MassKind,
) -> SystemVariant:
    """Return the formula variant for a (category, mass_kind) pair.

    Args:
        category: Nonlinear solver category.
        mass_kind: Mass-matrix regime.

    Raises:
        ValueError: If the combination is unknown.

    Returns:
        The variant function.
    """
    try:
        return _SYSTEM_VARIANTS[(SolverCategory(category), MassKind(mass_kind))]
    except (KeyError, ValueError) as exc:
        raise ValueError(
            _UNKNOWN_VARIANT_MSG.format(category=category, kind=mass_kind)
        ) from exc


# =============================================================================
# StageSystemFormulator
# =============================================================================


class StageSystemFormulator:
    """Evaluates the stage residual or fixed-point map for one configuration.

    The variant and the RHS strategy (fresh vs. start-of-step reuse) are fixed
    at construction; `bind` produces the `SystemFunction` handed to the
    nonlinear solver for one attempt.
    """

    def __init__(
        self,
        rhs: RHSFunction,
        *,
        category: SolverCategory,
        problem: StageProblemConfig,
        mass: MassOperator | None = None,
        mass_tol: float = 0.1,
        stats: NonlinearStats | None = None,
    ) -> None:
        """Initialize the formulator.

        Args:
            rhs: Implicit RHS function Fi(t, y) used inside nonlinear solves.
            category: Nonlinear solver category.
            problem: Structural problem configuration.
            mass: Mass operator (required unless mass_kind is IDENTITY).
            mass_tol: Tolerance passed to mass solves.
            stats: Counters to update (a private instance if None).
        """
        if problem.mass_kind is not MassKind.IDENTITY and mass is None:
            raise_invalid_config(_MASS_REQUIRED_MSG.format(kind=problem.mass_kind))

        self.rhs = rhs
        self.category = SolverCategory(category)
        self.problem = problem
        self.mass = mass
        self.mass_tol = float(mass_tol)
        self.stats = stats if stats is not None else NonlinearStats()

        self._variant = select_system_variant(self.category, problem.mass_kind)
        self._rhs_strategy = (
            self._start_rhs_or_fresh if problem.reuse_start_rhs else self._fresh_rhs
        )

    @property
    def variant(self) -> SystemVariant:
        """The formula variant selected at construction."""
        return self._variant

    def evaluate(
        self,
        context: StageContext,
        state: SolverState,
        zcor: NDArray[np.floating],
        out: NDArray[np.floating],
        iteration: int,
    ) -> None:
        """Write the residual/fixed-point update for `zcor` into `out`.

        Args:
            context: Stage inputs.
            state: Attempt state (its zcor is what ycur is built from).
            zcor: Trial correction.
            out: Output buffer.
            iteration: Current nonlinear iteration (0-based).

        Raises:
            StageSolveError: If the RHS or mass operator fails.
        """
        if zcor is not state.zcor:
            np.copyto(state.zcor, zcor)
        self._variant(self, context, state, zcor, out, iteration)

    def bind(self, context: StageContext, state: SolverState) -> SystemFunction:
        """Return the system function for one attempt.

        Args:
            context: Stage inputs.
            state: Attempt state.

        Returns:
            Callable (zcor, out, iteration) -> None.
        """
        return partial(self.evaluate, context, state)

    # ------------------------------------------------------------------
    # Collaborator calls
    # ------------------------------------------------------------------

    def implicit_rhs(
        self,
        context: StageContext,
        state: SolverState,
        iteration: int,
    ) -> NDArray[np.floating]:
        """Refresh the active stage's cached Fi at ycur and return it."""
        self._rhs_strategy(context, state, iteration)
        return context.fi_stage

    def _fresh_rhs(
        self,
        context: StageContext,
        state: SolverState,
        iteration: int,  # noqa: ARG002
    ) -> None:
        ycur = state.ycur
        with callback_guard(FailureReason.RHS_RECOVERABLE, FailureReason.RHS_FAIL):
            f = np.asarray(self.rhs(float(context.time), ycur), dtype=float)
        self.stats.nfi += 1
        if f.shape != ycur.shape:
            raise ValueError(
                _RHS_SHAPE_ERROR_MSG.format(actual=f.shape, expected=ycur.shape)
            )
        np.copyto(context.fi_stage, f)

    def _start_rhs_or_fresh(
        self,
        context: StageContext,
        state: SolverState,
        iteration: int,
    ) -> None:
        if iteration == 0 and context.fn_implicit is not None:
            np.copyto(context.fi_stage, context.fn_implicit)
            return
        self._fresh_rhs(context, state, iteration)

    def mass_multiply(
        self,
        t: float,
        x: NDArray[np.floating],
        out: NDArray[np.floating],
    ) -> None:
        """Compute out = M(t) x, translating callback failures."""
        if self.mass is None:
            raise_invalid_config(_MASS_REQUIRED_MSG.format(kind=self.problem.mass_kind))
        with callback_guard(FailureReason.MASS_RECOVERABLE, FailureReason.MASS_MULT_FAIL):
            self.mass.multiply(float(t), x, out)

    def mass_solve(self, t: float, b: NDArray[np.floating]) -> None:
        """Overwrite b with M(t)^{-1} b, translating callback failures."""
        if self.mass is None:
            raise_invalid_config(_MASS_REQUIRED_MSG.format(kind=self.problem.mass_kind))
        with callback_guard(
            FailureReason.MASS_RECOVERABLE, FailureReason.MASS_SOLVE_FAIL
        ):
            self.mass.solve(float(t), b, self.mass_tol)
