# src/stage_engine/matrix_ops.py
"""
Matrix operations and weighted norms for implicit stage solves.

This module provides the small numerical utilities the stage engine and its
reference collaborators rely on:

- Weighted root-mean-square (WRMS) norms and error-weight construction.
- Assembly of the Newton iteration matrix `A = M - gamma * J`.
- Factorized solvers for repeated linear systems with a fixed matrix.
- A finite-difference Jacobian for problems without an analytic one.

Design notes:
    * CPU-first: dense paths rely on SciPy LAPACK (`lu_factor`/`lu_solve`);
      sparse paths rely on SciPy sparse factorizations.
    * Backend-friendly surface: public APIs operate on plain ndarrays or CSR
      matrices and avoid leaking SciPy-specific solver objects.
    * Factorizations are owned by the caller (one per setup); there is no
      global cache because the iteration matrix changes with gamma.
"""

from __future__ import annotations

import warnings
from typing import TYPE_CHECKING, TypeAlias, cast

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import LinAlgWarning, lu_factor, lu_solve
from scipy.sparse import csr_matrix, identity, issparse
from scipy.sparse.linalg import factorized as sparse_factorized

if TYPE_CHECKING:
    from collections.abc import Callable


# =============================================================================
# Public operator types (backend-friendly)
# =============================================================================

DenseOperator: TypeAlias = NDArray[np.floating]
SparseOperator: TypeAlias = csr_matrix
Operator: TypeAlias = DenseOperator | SparseOperator

FactorizedSolver: TypeAlias = "Callable[[NDArray[np.floating]], NDArray[np.floating]]"


# =============================================================================
# Error message constants
# =============================================================================

_OPERATORS_SQUARE_ERROR = "Operator must be square; got shape {shape}"
_OPERATORS_DIM_ERROR = "Operator shape {shape} is incompatible with x shape {x_shape}"
_WEIGHTS_SHAPE_ERROR = "weights shape {w_shape} does not match vector shape {v_shape}"
_NONPOSITIVE_TOL_ERROR = "rtol and atol must be non-negative, and not both zero"
_FD_SHAPE_ERROR = "rhs returned shape {actual}; expected {expected}"
_SINGULAR_ERROR = "Operator of shape {shape} is exactly singular"


# =============================================================================
# Weighted norms
# =============================================================================


def error_weights(
    y: NDArray[np.floating],
    *,
    rtol: float,
    atol: float | NDArray[np.floating],
    out: NDArray[np.floating] | None = None,
) -> NDArray[np.floating]:
    """Build inverse error weights `w = 1 / (rtol*|y| + atol)`.

    Args:
        y: Reference state.
        rtol: Relative tolerance.
        atol: Absolute tolerance (scalar or per-component).
        out: Optional output buffer (same shape as y).

    Raises:
        ValueError: If tolerances are negative or both zero.

    Returns:
        Array of weights, suitable for `wrms_norm`.
    """
    atol_arr = np.asarray(atol, dtype=float)
    if rtol < 0.0 or np.any(atol_arr < 0.0) or (rtol == 0.0 and np.all(atol_arr == 0)):
        raise ValueError(_NONPOSITIVE_TOL_ERROR)

    w = np.abs(y, out=out) if out is not None else np.abs(y).astype(float)
    w *= float(rtol)
    w += atol_arr
    np.reciprocal(w, out=w)
    return w


def wrms_norm(v: NDArray[np.floating], weights: NDArray[np.floating]) -> float:
    """Compute the weighted RMS norm `sqrt(mean((v*w)**2))`.

    Args:
        v: Vector to measure.
        weights: Inverse error weights, same shape as v.

    Raises:
        ValueError: If shapes differ.

    Returns:
        Weighted RMS norm; +inf if the result is not finite.
    """
    if v.shape != weights.shape:
        raise ValueError(_WEIGHTS_SHAPE_ERROR.format(w_shape=weights.shape, v_shape=v.shape))
    if v.size == 0:
        return 0.0
    prod = v * weights
    val = float(np.sqrt(np.mean(prod * prod)))
    if not np.isfinite(val):
        return float("inf")
    return val


# =============================================================================
# Iteration matrix assembly + factorization
# =============================================================================


def _validate_square_operator(op: Operator) -> tuple[int, int]:
    shape = cast("tuple[int, int]", op.shape)
    if len(shape) != 2 or shape[0] != shape[1]:
        raise ValueError(_OPERATORS_SQUARE_ERROR.format(shape=shape))
    return shape


def build_newton_matrix(
    jacobian: Operator,
    gamma: float,
    mass: Operator | None = None,
) -> Operator:
    """Assemble the Newton iteration matrix `A = M - gamma * J`.

    If `mass` is None the identity is used. Sparse inputs produce a CSR result;
    mixed dense/sparse inputs are densified.

    Args:
        jacobian: Jacobian of the implicit RHS with respect to the state.
        gamma: Stage scaling (step size times diagonal coefficient).
        mass: Optional mass matrix.

    Returns:
        Iteration matrix with the same storage class as `jacobian`.
    """
    n, _ = _validate_square_operator(jacobian)
    if mass is not None:
        m_shape = _validate_square_operator(mass)
        if m_shape != (n, n):
            raise ValueError(_OPERATORS_DIM_ERROR.format(shape=m_shape, x_shape=(n, n)))

    if issparse(jacobian) and (mass is None or issparse(mass)):
        m_sp = identity(n, format="csr", dtype=jacobian.dtype) if mass is None else mass
        return csr_matrix(m_sp - gamma * jacobian)

    j_dense = jacobian.toarray() if issparse(jacobian) else np.asarray(jacobian)
    if mass is None:
        m_dense = np.eye(n, dtype=j_dense.dtype)
    else:
        m_dense = mass.toarray() if issparse(mass) else np.asarray(mass)
    return cast("DenseOperator", m_dense - gamma * j_dense)


def build_factorized_solver(op: Operator) -> FactorizedSolver:
    """
    Factorize `op` once and return a reusable solver for `op @ x = b`.

    Args:
        op: Square dense ndarray or CSR matrix.

    Returns:
        A callable that takes b (1D) and returns x.
    """
    _validate_square_operator(op)

    if issparse(op):
        op_csr = cast("csr_matrix", op)
        solve_sparse = sparse_factorized(op_csr.tocsc())

        def sparse_solver(b: NDArray[np.floating]) -> NDArray[np.floating]:
            b_arr = np.asarray(b, dtype=op_csr.dtype)
            return np.asarray(solve_sparse(b_arr), dtype=b_arr.dtype)

        return sparse_solver

    dense = np.asarray(op)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", LinAlgWarning)
        lu, piv = lu_factor(dense)
    if np.any(np.diag(lu) == 0.0):
        raise np.linalg.LinAlgError(_SINGULAR_ERROR.format(shape=dense.shape))

    def dense_solver(b: NDArray[np.floating]) -> NDArray[np.floating]:
        """
        Perform a dense solve using the precomputed LU factorization.

        Args:
            b: Right-hand side vector.

        Returns:
            Solution vector.
        """
        b_arr = np.asarray(b, dtype=dense.dtype)
        return np.asarray(lu_solve((lu, piv), b_arr), dtype=b_arr.dtype)

    return dense_solver


def apply_operator(
    op: Operator,
    x: NDArray[np.floating],
    out: NDArray[np.floating],
) -> None:
    """Compute `out = op @ x` in place.

    Args:
        op: Square dense ndarray or CSR matrix.
        x: Input vector.
        out: Output buffer, same shape as x.

    Raises:
        ValueError: If op does not match x.
    """
    n, _ = _validate_square_operator(op)
    if x.shape != (n,):
        raise ValueError(_OPERATORS_DIM_ERROR.format(shape=op.shape, x_shape=x.shape))
    np.copyto(out, np.asarray(op @ x, dtype=out.dtype))


# =============================================================================
# Finite-difference Jacobian
# =============================================================================


def finite_difference_jacobian(
    rhs: Callable[[float, NDArray[np.floating]], NDArray[np.floating]],
    t: float,
    y: NDArray[np.floating],
    fy: NDArray[np.floating],
    *,
    weights: NDArray[np.floating] | None = None,
) -> DenseOperator:
    """Approximate the Jacobian of `rhs(t, .)` at y by forward differences.

    The increment for column j is `sqrt(eps) * max(|y_j|, 1/w_j)` (or
    `sqrt(eps) * max(|y_j|, 1)` without weights), the same scaling rule dense
    direct ODE solvers conventionally use.

    Args:
        rhs: Implicit RHS function F(t, y).
        t: Evaluation time.
        y: Evaluation state (not modified).
        fy: rhs(t, y), already computed.
        weights: Optional inverse error weights used to size increments.

    Raises:
        ValueError: If rhs returns an array of unexpected shape.

    Returns:
        Dense Jacobian approximation, shape (n, n).
    """
    n = y.size
    srur = float(np.sqrt(np.finfo(float).eps))
    jac = np.empty((n, n), dtype=float)
    y_pert = np.array(y, dtype=float, copy=True)

    for j in range(n):
        floor = 1.0 / weights[j] if weights is not None else 1.0
        inc = srur * max(abs(float(y[j])), float(floor))
        y_pert[j] = y[j] + inc
        f_pert = np.asarray(rhs(float(t), y_pert), dtype=float)
        if f_pert.shape != fy.shape:
            raise ValueError(_FD_SHAPE_ERROR.format(actual=f_pert.shape, expected=fy.shape))
        jac[:, j] = (f_pert - fy) / inc
        y_pert[j] = y[j]

    return jac
