# src/stage_engine/linear_solvers.py
"""Reference linear solver and mass operators for stage solves.

These are concrete collaborators for the engine's `LinearSolver` and
`MassOperator` protocols, built on the factorized solvers in
`stage_engine.matrix_ops`:

- `DirectLinearSolver`: factorizes `A = M - gamma*J` at setup and back-solves
  at each Newton iteration. The Jacobian is reused across setups unless the
  convfail hint says it is stale.
- `MatrixMassOperator`: fixed mass matrix.
- `TimeDependentMassOperator`: mass matrix rebuilt from `builder(t)`, with the
  factorization cached per time value.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, TypeAlias, cast

import numpy as np
from numpy.typing import NDArray
from scipy.sparse import issparse

from .errors import FatalCallbackError, RecoverableCallbackError
from .matrix_ops import (
    FactorizedSolver,
    Operator,
    apply_operator,
    build_factorized_solver,
    build_newton_matrix,
    finite_difference_jacobian,
)
from .stage_system import ConvFailHint

if TYPE_CHECKING:
    from .stage_system import RHSFunction

JacobianFunction: TypeAlias = Callable[
    [float, NDArray[np.floating], NDArray[np.floating]], Operator
]
MassBuilder: TypeAlias = Callable[[float], Operator]

_SINGULAR_MSG = "iteration matrix is singular or not finite at t={t}"
_NOT_SET_UP_MSG = "DirectLinearSolver.solve called before setup"
_MASS_SINGULAR_MSG = "mass matrix is singular at t={t}"


def _is_finite_operator(op: Operator) -> bool:
    data = op.data if issparse(op) else np.asarray(op)
    return bool(np.all(np.isfinite(data)))


class MatrixMassOperator:
    """Fixed mass matrix M (dense ndarray or CSR)."""

    def __init__(self, matrix: Operator) -> None:
        """Store M; the factorization is built on first solve."""
        self.matrix = matrix
        self._solver: FactorizedSolver | None = None

    def multiply(
        self,
        t: float,  # noqa: ARG002
        x: NDArray[np.floating],
        out: NDArray[np.floating],
    ) -> None:
        """Compute out = M @ x."""
        apply_operator(self.matrix, x, out)

    def solve(
        self,
        t: float,
        b: NDArray[np.floating],
        tol: float,  # noqa: ARG002
    ) -> None:
        """Overwrite b with M^{-1} b.

        Raises:
            FatalCallbackError: If M is singular.
        """
        if self._solver is None:
            self._solver = _factorize_mass(self.matrix, t)
        np.copyto(b, self._solver(b))


class TimeDependentMassOperator:
    """Mass matrix M(t) produced by a user builder."""

    def __init__(self, builder: MassBuilder) -> None:
        """Store the builder; matrices are cached for the most recent t."""
        self.builder = builder
        self._t: float | None = None
        self._matrix: Operator | None = None
        self._solver: FactorizedSolver | None = None

    def matrix_at(self, t: float) -> Operator:
        """Return M(t), rebuilding only when t changes."""
        if self._matrix is None or self._t != t:
            self._matrix = self.builder(float(t))
            self._t = float(t)
            self._solver = None
        return self._matrix

    def multiply(
        self,
        t: float,
        x: NDArray[np.floating],
        out: NDArray[np.floating],
    ) -> None:
        """Compute out = M(t) @ x."""
        apply_operator(self.matrix_at(t), x, out)

    def solve(
        self,
        t: float,
        b: NDArray[np.floating],
        tol: float,  # noqa: ARG002
    ) -> None:
        """Overwrite b with M(t)^{-1} b.

        Raises:
            FatalCallbackError: If M(t) is singular.
        """
        matrix = self.matrix_at(t)
        if self._solver is None:
            self._solver = _factorize_mass(matrix, t)
        np.copyto(b, self._solver(b))


def _factorize_mass(matrix: Operator, t: float) -> FactorizedSolver:
    try:
        return build_factorized_solver(matrix)
    except (np.linalg.LinAlgError, RuntimeError) as exc:
        raise FatalCallbackError(_MASS_SINGULAR_MSG.format(t=t)) from exc


class DirectLinearSolver:
    """Direct solver for `(M - gamma*J) x = b` with Jacobian reuse.

    The Jacobian is recomputed at setup when no Jacobian is cached or the hint
    is FAIL_BAD_J / FAIL_OTHER; otherwise only the iteration matrix is rebuilt
    with the new gamma. When `solve` sees a gamma different from the one used
    at setup, the solution is scaled by `2 / (1 + gamma/gamma_setup)`, the
    usual correction for a lagged iteration matrix.
    """

    def __init__(
        self,
        rhs: RHSFunction,
        *,
        jacobian: JacobianFunction | None = None,
        mass: MatrixMassOperator | TimeDependentMassOperator | None = None,
        weights: NDArray[np.floating] | None = None,
    ) -> None:
        """Initialize the solver.

        Args:
            rhs: Implicit RHS, used for finite-difference Jacobians.
            jacobian: Optional analytic Jacobian J(t, y, fy).
            mass: Optional mass operator; identity if None.
            weights: Optional error weights sizing finite-difference increments.
        """
        self.rhs = rhs
        self.jacobian = jacobian
        self.mass = mass
        self.weights = weights

        self.n_jac_evals = 0
        self.n_setups = 0
        self.n_solves = 0

        self._jac: Operator | None = None
        self._gamma_setup: float | None = None
        self._solver: FactorizedSolver | None = None

    def _mass_at(self, t: float) -> Operator | None:
        if self.mass is None:
            return None
        if isinstance(self.mass, TimeDependentMassOperator):
            return self.mass.matrix_at(t)
        return self.mass.matrix

    def _evaluate_jacobian(
        self,
        t: float,
        y: NDArray[np.floating],
        fy: NDArray[np.floating],
    ) -> Operator:
        self.n_jac_evals += 1
        if self.jacobian is not None:
            return self.jacobian(t, y, fy)
        return finite_difference_jacobian(self.rhs, t, y, fy, weights=self.weights)

    def setup(
        self,
        convfail: ConvFailHint,
        t: float,
        y: NDArray[np.floating],
        fy: NDArray[np.floating],
        gamma: float,
    ) -> bool:
        """Rebuild and factorize the iteration matrix.

        Args:
            convfail: Hint about Jacobian staleness.
            t: Stage time.
            y: Current stage iterate.
            fy: Implicit RHS at (t, y).
            gamma: Current gamma.

        Raises:
            RecoverableCallbackError: If the iteration matrix is singular.

        Returns:
            True if the Jacobian was re-evaluated.
        """
        self.n_setups += 1
        jcur = self._jac is None or convfail in {
            ConvFailHint.FAIL_BAD_J,
            ConvFailHint.FAIL_OTHER,
        }
        if jcur:
            self._jac = self._evaluate_jacobian(t, y, fy)

        matrix = build_newton_matrix(cast("Operator", self._jac), gamma, self._mass_at(t))
        if not _is_finite_operator(matrix):
            raise RecoverableCallbackError(_SINGULAR_MSG.format(t=t))
        try:
            self._solver = build_factorized_solver(matrix)
        except (np.linalg.LinAlgError, RuntimeError) as exc:
            raise RecoverableCallbackError(_SINGULAR_MSG.format(t=t)) from exc

        self._gamma_setup = float(gamma)
        return jcur

    def solve(
        self,
        b: NDArray[np.floating],
        t: float,  # noqa: ARG002
        y: NDArray[np.floating],  # noqa: ARG002
        fy: NDArray[np.floating],  # noqa: ARG002
        gamma: float,
        tol: float,  # noqa: ARG002
        iteration: int,  # noqa: ARG002
    ) -> None:
        """Overwrite b with the solution of the factorized system.

        Raises:
            FatalCallbackError: If called before setup.
            RecoverableCallbackError: If the solution is not finite.
        """
        if self._solver is None or self._gamma_setup is None:
            raise FatalCallbackError(_NOT_SET_UP_MSG)
        x = self._solver(b)
        gamrat = float(gamma) / self._gamma_setup
        if gamrat != 1.0:
            x = x * (2.0 / (1.0 + gamrat))
        if not np.all(np.isfinite(x)):
            raise RecoverableCallbackError("linear solve produced non-finite values")
        self.n_solves += 1
        np.copyto(b, x)
