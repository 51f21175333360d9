# optutils.py

import logging
from typing import Any, List, Sequence

import cvxpy as cp
import numpy as np
import pandas as pd

from policysynth.exceptions import InfeasibleWeightsError
from .datautils import WideSlice

logger = logging.getLogger(__name__)

_SOLVER_CLARABEL_STR = "CLARABEL"
_OPTIMAL_STATUSES = (cp.OPTIMAL, cp.OPTIMAL_INACCURATE)


class OptHelpers:
    """
    Builders for the donor-weight program.

    These helpers do not solve anything; they return CVXPY expressions and
    constraint lists assembled by ``solve_weights``.
    """

    @staticmethod
    def squared_loss(y: np.ndarray, X: np.ndarray, w: cp.Variable) -> cp.Expression:
        """
        Squared reconstruction error ||y - Xw||^2.

        Up to a constant this equals ``0.5 w'(2X'X)w - (2X'y)'w``, the
        quadratic-program form with objective matrix 2X'X and linear term 2X'y.
        """
        return cp.sum_squares(y - X @ w)

    @staticmethod
    def ridge_penalty(w: cp.Variable, ridge: float) -> cp.Expression:
        if ridge <= 0:
            return 0.0
        return ridge * cp.sum_squares(w)

    @staticmethod
    def simplex_constraints(w: cp.Variable) -> List:
        """
        Constraints enforcing sum(w) == 1 (the single equality row) and
        w >= 0 (the identity inequality rows).
        """
        return [cp.sum(w) == 1, w >= 0]


def _validate_inputs(y: np.ndarray, Y: np.ndarray) -> None:
    if Y.ndim != 2:
        raise InfeasibleWeightsError(f"Donor matrix must be 2-dimensional, got shape {Y.shape}.")
    T, D = Y.shape
    if D == 0:
        raise InfeasibleWeightsError("No donor units available to fit weights.")
    if T == 0:
        raise InfeasibleWeightsError("No fitting periods available to fit weights.")
    if y.shape[0] != T:
        raise InfeasibleWeightsError(
            f"Treated vector length ({y.shape[0]}) does not match donor matrix rows ({T})."
        )
    if not (np.all(np.isfinite(y)) and np.all(np.isfinite(Y))):
        raise InfeasibleWeightsError("Fitting window contains missing or non-finite values.")


def solve_weights(
    y: np.ndarray,
    Y: np.ndarray,
    *,
    ridge: float = 1e-8,
    solver: str = _SOLVER_CLARABEL_STR,
) -> np.ndarray:
    """
    Solve min ||y - Yw||^2 subject to w >= 0 and sum(w) = 1.

    Parameters
    ----------
    y : np.ndarray
        Treated-unit outcomes over the fitting window, shape (T,).
    Y : np.ndarray
        Donor outcomes over the same window, shape (T, D).
    ridge : float, default 1e-8
        Weight on ||w||^2, relative to the scaled data. Any positive value makes
        the objective strictly convex, so the minimizer is unique (the minimum-
        norm optimum; identical donors share weight equally) and repeated calls
        return the same vector. With ``ridge=0`` a rank-deficient donor matrix
        with more donors than periods is rejected, since its minimizer is not
        unique.
    solver : str, default "CLARABEL"
        CVXPY solver name.

    Returns
    -------
    np.ndarray
        Donor weights, shape (D,), non-negative and summing to one.

    Raises
    ------
    InfeasibleWeightsError
        On empty or non-finite inputs, shape mismatch, a non-unique
        unregularized problem, or solver failure.
    """
    y = np.asarray(y, dtype=float).reshape(-1)
    Y = np.asarray(Y, dtype=float)
    _validate_inputs(y, Y)
    T, D = Y.shape

    if D == 1:
        return np.ones(1)

    if ridge <= 0 and D > T and np.linalg.matrix_rank(Y) < D:
        raise InfeasibleWeightsError(
            f"Donor matrix is rank-deficient with more donors ({D}) than fitting periods ({T})."
        )

    # Rates are often tiny; scale so solver tolerances and the ridge are relative.
    scale = float(np.max(np.abs(np.column_stack([y, Y]))))
    if scale > 0:
        y = y / scale
        Y = Y / scale

    w = cp.Variable(D)
    objective = cp.Minimize(OptHelpers.squared_loss(y, Y, w) + OptHelpers.ridge_penalty(w, ridge))
    problem = cp.Problem(objective, OptHelpers.simplex_constraints(w))

    try:
        problem.solve(solver=solver, verbose=False)
    except cp.error.SolverError as e:
        raise InfeasibleWeightsError(f"QP solver failed: {e}") from e

    if problem.status not in _OPTIMAL_STATUSES or w.value is None:
        raise InfeasibleWeightsError(f"QP solver did not reach an optimum (status: {problem.status}).")

    weights = np.asarray(w.value, dtype=float).reshape(-1)
    if not np.all(np.isfinite(weights)):
        raise InfeasibleWeightsError("QP solver returned non-finite weights.")

    # Clip solver noise below zero and restore the simplex.
    weights = np.clip(weights, 0.0, None)
    total = weights.sum()
    if total <= 0:
        raise InfeasibleWeightsError("QP solver returned an all-zero weight vector.")
    return weights / total


def fit_weights(
    wide: WideSlice,
    treated: Any,
    donors: Sequence[Any],
    fit_mask: np.ndarray,
    *,
    ridge: float = 1e-8,
    solver: str = _SOLVER_CLARABEL_STR,
) -> pd.Series:
    """
    Fit donor weights for ``treated`` over the periods selected by ``fit_mask``.

    Returns a donor-indexed ``pd.Series``.
    """
    donors = [d for d in donors if d != treated]
    if not donors:
        raise InfeasibleWeightsError(f"No donor units remain for '{treated}'.")
    fit_mask = np.asarray(fit_mask, dtype=bool)
    y = wide.series(treated).to_numpy()[fit_mask]
    Y = wide.donors(donors).to_numpy()[fit_mask]
    logger.debug("Fitting weights for %s on %d periods and %d donors", treated, len(y), len(donors))
    weights = solve_weights(y, Y, ridge=ridge, solver=solver)
    return pd.Series(weights, index=pd.Index(donors, name="donor"), name=treated)
