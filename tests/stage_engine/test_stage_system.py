# tests/stage_engine/test_stage_system.py
"""Unit tests for stage_engine.stage_system.

This module verifies:
- StageContext validation.
- SolverState start-of-attempt values and the ycur view.
- The six residual / fixed-point formulas against their closed forms.
- Cached RHS bookkeeping (fresh evaluations vs. the start-of-step fast path).
- Translation of callback failures into tagged StageSolveErrors.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from stage_engine.config import (
    MassKind,
    NonlinearSolveConfig,
    SolverCategory,
    StageProblemConfig,
)
from stage_engine.errors import (
    ConfigurationError,
    FailureReason,
    FatalCallbackError,
    RecoverableCallbackError,
    StageSolveError,
)
from stage_engine.linear_solvers import MatrixMassOperator, TimeDependentMassOperator
from stage_engine.stage_system import (
    NonlinearStats,
    SetupHistory,
    SolverState,
    StageContext,
    StageSystemFormulator,
    select_system_variant,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    FloatArray = NDArray[np.floating]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

ZPRED = np.array([1.0, 2.0])
SDATA = np.array([0.1, 0.2])
ZCOR = np.array([0.3, -0.4])
GAMMA = 0.5
TIME = 0.5
MASS = np.array([[2.0, 1.0], [0.0, 3.0]])


def _rhs(t: float, y: FloatArray) -> FloatArray:
    return y * y + t


def _mass_at(t: float) -> FloatArray:
    return MASS * (1.0 + t)


def _context(**overrides: object) -> StageContext:
    kwargs: dict[str, object] = {
        "time": TIME,
        "step_size": 1.0,
        "gamma": GAMMA,
        "zpred": ZPRED.copy(),
        "sdata": SDATA.copy(),
        "fi": np.zeros((3, 2)),
        "stage_index": 1,
    }
    kwargs.update(overrides)
    return StageContext(**kwargs)  # type: ignore[arg-type]


def _state(ctx: StageContext) -> SolverState:
    return SolverState.start(ctx, SetupHistory(), NonlinearSolveConfig())


def _formulator(
    category: SolverCategory,
    mass_kind: MassKind,
    *,
    rhs: Callable[[float, FloatArray], FloatArray] = _rhs,
    problem: StageProblemConfig | None = None,
) -> StageSystemFormulator:
    mass: MatrixMassOperator | TimeDependentMassOperator | None
    if mass_kind is MassKind.FIXED:
        mass = MatrixMassOperator(MASS)
    elif mass_kind is MassKind.TIME_DEPENDENT:
        mass = TimeDependentMassOperator(_mass_at)
    else:
        mass = None
    return StageSystemFormulator(
        rhs,
        category=category,
        problem=problem or StageProblemConfig(mass_kind=mass_kind),
        mass=mass,
    )


def _expected(category: SolverCategory, mass_kind: MassKind) -> FloatArray:
    fi = _rhs(TIME, ZPRED + ZCOR)
    m_fixed = MASS
    m_t = _mass_at(TIME)
    if category is SolverCategory.ROOT_FINDING:
        if mass_kind is MassKind.IDENTITY:
            return ZCOR - GAMMA * fi - SDATA
        if mass_kind is MassKind.FIXED:
            return m_fixed @ ZCOR - GAMMA * fi - SDATA
        return m_t @ (ZCOR - SDATA) - GAMMA * fi
    if mass_kind is MassKind.IDENTITY:
        return GAMMA * fi + SDATA
    if mass_kind is MassKind.FIXED:
        return np.linalg.solve(m_fixed, GAMMA * fi + SDATA)
    return np.linalg.solve(m_t, GAMMA * fi) + SDATA


# -----------------------------------------------------------------------------
# A) StageContext / SolverState
# -----------------------------------------------------------------------------


@pytest.mark.parametrize("gamma", [0.0, float("nan"), float("inf")])
def test_context_rejects_degenerate_gamma(gamma: float) -> None:
    """Gamma must be finite and nonzero."""
    with pytest.raises(ValueError, match="gamma"):
        _context(gamma=gamma)


def test_context_rejects_mismatched_shapes() -> None:
    """sdata, fi and fn_implicit must agree with zpred."""
    with pytest.raises(ValueError, match="sdata"):
        _context(sdata=np.zeros(3))
    with pytest.raises(ValueError, match="fi must have shape"):
        _context(fi=np.zeros((2, 3)))
    with pytest.raises(ValueError, match="fn_implicit"):
        _context(fn_implicit=np.zeros(1))


def test_context_rejects_out_of_range_stage_index() -> None:
    """stage_index must address a row of fi."""
    with pytest.raises(ValueError, match="stage_index"):
        _context(stage_index=3)


def test_fi_stage_is_a_writable_view() -> None:
    """Writing through fi_stage updates only the active row of fi."""
    ctx = _context()
    ctx.fi_stage[:] = 7.0
    np.testing.assert_array_equal(ctx.fi[1], [7.0, 7.0])
    np.testing.assert_array_equal(ctx.fi[0], [0.0, 0.0])
    np.testing.assert_array_equal(ctx.fi[2], [0.0, 0.0])


def test_state_start_values() -> None:
    """A fresh attempt starts from zcor=0 with gamrat from the last setup gamma."""
    ctx = _context()
    history = SetupHistory(gammap=0.25)
    state = SolverState.start(ctx, history, NonlinearSolveConfig(nlscoef=0.2))

    np.testing.assert_array_equal(state.zcor, [0.0, 0.0])
    assert state.gamma == GAMMA
    assert state.gamrat == pytest.approx(2.0)
    assert state.crate == 1.0
    assert state.residual_norm == pytest.approx(0.02)
    assert state.zpred is ctx.zpred


def test_state_gamrat_is_one_before_first_setup() -> None:
    """Without a previous setup gamma, gamrat defaults to 1."""
    state = _state(_context())
    assert state.gamrat == 1.0


def test_ycur_always_reflects_current_zcor() -> None:
    """ycur is recomputed from zpred + zcor on every read."""
    state = _state(_context())
    np.testing.assert_array_equal(state.ycur, ZPRED)

    state.zcor[:] = [0.5, 0.25]
    np.testing.assert_array_equal(state.ycur, ZPRED + [0.5, 0.25])

    state.zcor += 1.0
    np.testing.assert_array_equal(state.ycur, ZPRED + [1.5, 1.25])


# -----------------------------------------------------------------------------
# B) Formula variants
# -----------------------------------------------------------------------------


@pytest.mark.parametrize("category", list(SolverCategory))
@pytest.mark.parametrize("mass_kind", list(MassKind))
def test_system_matches_closed_form(
    category: SolverCategory,
    mass_kind: MassKind,
) -> None:
    """Each (category, mass_kind) variant reproduces its closed-form expression."""
    ctx = _context()
    state = _state(ctx)
    formulator = _formulator(category, mass_kind)
    out = np.empty(2)

    formulator.evaluate(ctx, state, ZCOR.copy(), out, 1)

    np.testing.assert_allclose(out, _expected(category, mass_kind), rtol=1e-12)
    np.testing.assert_allclose(state.ycur, ZPRED + ZCOR, rtol=0, atol=0)
    np.testing.assert_allclose(ctx.fi_stage, _rhs(TIME, ZPRED + ZCOR), rtol=1e-15)
    np.testing.assert_array_equal(ctx.zpred, ZPRED)
    assert formulator.stats.nfi == 1


def test_bound_system_writes_into_state() -> None:
    """bind() returns a (zcor, out, iteration) callable that updates state.zcor."""
    ctx = _context()
    state = _state(ctx)
    system = _formulator(SolverCategory.ROOT_FINDING, MassKind.IDENTITY).bind(
        ctx, state
    )
    out = np.empty(2)
    trial = ZCOR.copy()

    system(trial, out, 0)

    np.testing.assert_array_equal(state.zcor, ZCOR)
    np.testing.assert_allclose(
        out, _expected(SolverCategory.ROOT_FINDING, MassKind.IDENTITY)
    )


def test_variant_is_selected_once() -> None:
    """The installed variant is the registered function for the configuration."""
    formulator = _formulator(SolverCategory.FIXED_POINT, MassKind.FIXED)
    assert formulator.variant is select_system_variant(
        SolverCategory.FIXED_POINT, MassKind.FIXED
    )


def test_select_system_variant_rejects_unknown_pair() -> None:
    """Unknown categories are rejected."""
    with pytest.raises(ValueError, match="No system variant"):
        select_system_variant("newton-krylov", MassKind.IDENTITY)  # type: ignore[arg-type]


@pytest.mark.parametrize("mass_kind", [MassKind.FIXED, MassKind.TIME_DEPENDENT])
def test_non_identity_mass_requires_operator(mass_kind: MassKind) -> None:
    """A non-identity mass configuration without an operator is rejected."""
    with pytest.raises(ConfigurationError, match="requires a mass operator"):
        StageSystemFormulator(
            _rhs,
            category=SolverCategory.ROOT_FINDING,
            problem=StageProblemConfig(mass_kind=mass_kind),
        )


def test_rhs_shape_mismatch_raises() -> None:
    """An RHS returning the wrong shape is a programming error."""
    ctx = _context()
    state = _state(ctx)
    formulator = _formulator(
        SolverCategory.ROOT_FINDING,
        MassKind.IDENTITY,
        rhs=lambda _t, _y: np.zeros(3),
    )
    with pytest.raises(ValueError, match="rhs shape"):
        formulator.evaluate(ctx, state, state.zcor, np.empty(2), 0)


# -----------------------------------------------------------------------------
# C) Start-of-step RHS reuse
# -----------------------------------------------------------------------------


def _autonomous(_t: float, y: FloatArray) -> FloatArray:
    return 0.5 * y - y**3


def test_start_rhs_reused_at_iteration_zero_only() -> None:
    """With the fast path, iteration 0 copies fn_implicit; later ones re-evaluate."""
    fn = _autonomous(0.0, ZPRED)
    ctx = _context(fn_implicit=fn)
    state = _state(ctx)
    stats = NonlinearStats()
    formulator = StageSystemFormulator(
        _autonomous,
        category=SolverCategory.ROOT_FINDING,
        problem=StageProblemConfig(autonomous=True, trivial_predictor=True),
        stats=stats,
    )
    out = np.empty(2)

    formulator.evaluate(ctx, state, state.zcor, out, 0)
    assert stats.nfi == 0
    np.testing.assert_array_equal(ctx.fi_stage, fn)

    formulator.evaluate(ctx, state, ZCOR.copy(), out, 1)
    assert stats.nfi == 1
    np.testing.assert_array_equal(ctx.fi_stage, _autonomous(0.0, ZPRED + ZCOR))


def test_start_rhs_reuse_matches_fresh_evaluation_bitwise() -> None:
    """The fast path output is bit-identical to a fresh evaluation at zcor=0."""
    fn = _autonomous(0.0, ZPRED)
    outputs = []
    for trivial in (True, False):
        ctx = _context(fn_implicit=fn.copy())
        state = _state(ctx)
        formulator = StageSystemFormulator(
            _autonomous,
            category=SolverCategory.ROOT_FINDING,
            problem=StageProblemConfig(autonomous=True, trivial_predictor=trivial),
        )
        out = np.empty(2)
        formulator.evaluate(ctx, state, state.zcor, out, 0)
        outputs.append((out.copy(), ctx.fi_stage.copy()))

    np.testing.assert_array_equal(outputs[0][0], outputs[1][0])
    np.testing.assert_array_equal(outputs[0][1], outputs[1][1])


def test_start_rhs_without_cached_value_evaluates() -> None:
    """If no start-of-step RHS is cached the fast path falls back to evaluation."""
    ctx = _context()
    state = _state(ctx)
    stats = NonlinearStats()
    formulator = StageSystemFormulator(
        _autonomous,
        category=SolverCategory.FIXED_POINT,
        problem=StageProblemConfig(autonomous=True, trivial_predictor=True),
        stats=stats,
    )
    formulator.evaluate(ctx, state, state.zcor, np.empty(2), 0)
    assert stats.nfi == 1


# -----------------------------------------------------------------------------
# D) Callback failure translation
# -----------------------------------------------------------------------------


def _raising_rhs(exc: Exception) -> Callable[[float, FloatArray], FloatArray]:
    def rhs(_t: float, _y: FloatArray) -> FloatArray:
        raise exc

    return rhs


@pytest.mark.parametrize(
    ("exc", "reason"),
    [
        (RecoverableCallbackError("negative density"), FailureReason.RHS_RECOVERABLE),
        (FatalCallbackError("solver crashed"), FailureReason.RHS_FAIL),
    ],
)
def test_rhs_failures_are_tagged(exc: Exception, reason: FailureReason) -> None:
    """RHS callback errors surface as StageSolveError with the matching reason."""
    ctx = _context()
    state = _state(ctx)
    formulator = _formulator(
        SolverCategory.ROOT_FINDING, MassKind.IDENTITY, rhs=_raising_rhs(exc)
    )
    with pytest.raises(StageSolveError) as info:
        formulator.evaluate(ctx, state, state.zcor, np.empty(2), 0)
    assert info.value.reason is reason
    assert info.value.recoverable is reason.recoverable
    assert ctx.fi_stage.tolist() == [0.0, 0.0]


def test_other_rhs_exceptions_propagate_untouched() -> None:
    """Exceptions other than the callback errors are not translated."""
    ctx = _context()
    state = _state(ctx)
    formulator = _formulator(
        SolverCategory.ROOT_FINDING,
        MassKind.IDENTITY,
        rhs=_raising_rhs(ZeroDivisionError("bug")),
    )
    with pytest.raises(ZeroDivisionError):
        formulator.evaluate(ctx, state, state.zcor, np.empty(2), 0)


class _FailingMass:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    def multiply(self, t: float, x: FloatArray, out: FloatArray) -> None:  # noqa: ARG002
        raise self.exc

    def solve(self, t: float, b: FloatArray, tol: float) -> None:  # noqa: ARG002
        raise self.exc


@pytest.mark.parametrize(
    ("category", "exc", "reason"),
    [
        (
            SolverCategory.ROOT_FINDING,
            FatalCallbackError(),
            FailureReason.MASS_MULT_FAIL,
        ),
        (
            SolverCategory.FIXED_POINT,
            FatalCallbackError(),
            FailureReason.MASS_SOLVE_FAIL,
        ),
        (
            SolverCategory.ROOT_FINDING,
            RecoverableCallbackError(),
            FailureReason.MASS_RECOVERABLE,
        ),
        (
            SolverCategory.FIXED_POINT,
            RecoverableCallbackError(),
            FailureReason.MASS_RECOVERABLE,
        ),
    ],
)
def test_mass_failures_are_tagged(
    category: SolverCategory,
    exc: Exception,
    reason: FailureReason,
) -> None:
    """Mass multiply/solve errors surface with mass-specific reasons."""
    ctx = _context()
    state = _state(ctx)
    formulator = StageSystemFormulator(
        _rhs,
        category=category,
        problem=StageProblemConfig(mass_kind=MassKind.FIXED),
        mass=_FailingMass(exc),
    )
    with pytest.raises(StageSolveError) as info:
        formulator.evaluate(ctx, state, state.zcor, np.empty(2), 0)
    assert info.value.reason is reason
