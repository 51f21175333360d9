# ============================================================
# tests/test_optutils.py
# ============================================================

import pytest
import numpy as np
import pandas as pd
import cvxpy as cp
from unittest.mock import patch

from policysynth.utils.optutils import OptHelpers, solve_weights, fit_weights
from policysynth.utils.datautils import WideSlice
from policysynth.exceptions import InfeasibleWeightsError


@pytest.fixture
def donor_problem():
    rng = np.random.default_rng(0)
    Y = rng.uniform(0.01, 0.05, size=(24, 5))
    true_w = np.array([0.6, 0.4, 0.0, 0.0, 0.0])
    y = Y @ true_w + rng.normal(0, 1e-4, 24)
    return y, Y


def make_wide(columns):
    index = pd.date_range("2020-01-01", periods=len(next(iter(columns.values()))), freq="MS")
    return WideSlice(pd.DataFrame(columns, index=index))


# ======================
# Helper builders
# ======================

def test_squared_loss_is_expression(donor_problem):
    y, Y = donor_problem
    w = cp.Variable(Y.shape[1])
    assert isinstance(OptHelpers.squared_loss(y, Y, w), cp.Expression)


def test_ridge_penalty():
    w = cp.Variable(3)
    assert isinstance(OptHelpers.ridge_penalty(w, 1e-8), cp.Expression)
    assert OptHelpers.ridge_penalty(w, 0.0) == 0.0


def test_simplex_constraints():
    w = cp.Variable(3)
    cons = OptHelpers.simplex_constraints(w)
    assert isinstance(cons, list)
    assert len(cons) == 2
    assert all(isinstance(c, cp.constraints.constraint.Constraint) for c in cons)


# ======================
# solve_weights
# ======================

def test_weights_on_simplex(donor_problem):
    y, Y = donor_problem
    w = solve_weights(y, Y)
    assert w.shape == (5,)
    assert np.all(w >= -1e-8)
    assert w.sum() == pytest.approx(1.0, abs=1e-6)


def test_weights_recover_sparse_combination(donor_problem):
    y, Y = donor_problem
    w = solve_weights(y, Y)
    np.testing.assert_allclose(w[:2], [0.6, 0.4], atol=0.05)


def test_solver_is_idempotent(donor_problem):
    y, Y = donor_problem
    np.testing.assert_allclose(solve_weights(y, Y), solve_weights(y, Y), atol=1e-10)


def test_exact_match_gets_all_weight():
    # Treated equals the second of three donors over twelve months.
    t = np.arange(12)
    Y = np.column_stack([
        0.02 + 0.002 * np.sin(t),
        0.03 + 0.003 * np.cos(t),
        0.05 + 0.001 * t,
    ])
    y = Y[:, 1].copy()
    w = solve_weights(y, Y)
    np.testing.assert_allclose(w, [0.0, 1.0, 0.0], atol=1e-4)
    assert np.mean((y - Y @ w) ** 2) < 1e-10


def test_identical_donors_split_weight_equally():
    t = np.arange(12)
    a = 0.02 + 0.002 * np.sin(t)
    Y = np.column_stack([a, a, 0.06 + 0.001 * t])
    w = solve_weights(a.copy(), Y)
    np.testing.assert_allclose(w[:2], [0.5, 0.5], atol=1e-3)
    assert w[2] == pytest.approx(0.0, abs=1e-4)


def test_single_donor_gets_unit_weight():
    w = solve_weights(np.array([1.0, 2.0]), np.array([[3.0], [4.0]]))
    np.testing.assert_array_equal(w, [1.0])


def test_no_donors_raises():
    with pytest.raises(InfeasibleWeightsError, match="No donor units"):
        solve_weights(np.ones(3), np.empty((3, 0)))


def test_no_periods_raises():
    with pytest.raises(InfeasibleWeightsError, match="No fitting periods"):
        solve_weights(np.empty(0), np.empty((0, 2)))


def test_shape_mismatch_raises():
    with pytest.raises(InfeasibleWeightsError, match="does not match"):
        solve_weights(np.ones(4), np.ones((3, 2)))


def test_non_finite_raises(donor_problem):
    y, Y = donor_problem
    Y = Y.copy()
    Y[3, 1] = np.nan
    with pytest.raises(InfeasibleWeightsError, match="non-finite"):
        solve_weights(y, Y)


def test_unregularized_rank_deficient_raises():
    Y = np.array([[1.0, 2.0, 3.0], [2.0, 4.0, 6.0]])
    with pytest.raises(InfeasibleWeightsError, match="rank-deficient"):
        solve_weights(np.array([2.0, 4.0]), Y, ridge=0.0)


def test_solver_error_is_reported_as_infeasible(donor_problem):
    y, Y = donor_problem
    with patch.object(cp.Problem, "solve", side_effect=cp.error.SolverError("boom")):
        with pytest.raises(InfeasibleWeightsError, match="QP solver failed: boom"):
            solve_weights(y, Y)


def test_non_optimal_status_is_reported_as_infeasible(donor_problem):
    y, Y = donor_problem
    with patch.object(cp.Problem, "solve", return_value=None):
        with pytest.raises(InfeasibleWeightsError, match="did not reach an optimum"):
            solve_weights(y, Y)


# ======================
# fit_weights
# ======================

def test_fit_weights_returns_labelled_series():
    t = np.arange(12)
    wide = make_wide({
        "OR": 0.03 + 0.003 * np.cos(t),
        "WA": 0.02 + 0.002 * np.sin(t),
        "ID": 0.03 + 0.003 * np.cos(t),
        "NV": 0.05 + 0.001 * t,
    })
    mask = np.ones(12, dtype=bool)
    weights = fit_weights(wide, "OR", ["WA", "ID", "NV", "OR"], mask)
    assert list(weights.index) == ["WA", "ID", "NV"]
    assert weights.index.name == "donor"
    assert weights.name == "OR"
    assert weights["ID"] == pytest.approx(1.0, abs=1e-4)


def test_fit_weights_uses_only_masked_periods():
    wide = make_wide({
        "OR": [1.0, 2.0, np.nan],
        "WA": [1.0, 2.0, np.nan],
        "ID": [2.0, 1.0, 5.0],
    })
    weights = fit_weights(wide, "OR", ["WA", "ID"], np.array([True, True, False]))
    assert weights.sum() == pytest.approx(1.0, abs=1e-6)


def test_fit_weights_missing_cell_in_window_raises():
    wide = make_wide({"OR": [1.0, 2.0, 3.0], "WA": [1.0, np.nan, 3.0], "ID": [2.0, 1.0, 5.0]})
    with pytest.raises(InfeasibleWeightsError, match="non-finite"):
        fit_weights(wide, "OR", ["WA", "ID"], np.ones(3, dtype=bool))


def test_fit_weights_without_donors_raises():
    wide = make_wide({"OR": [1.0, 2.0], "WA": [1.0, 2.0]})
    with pytest.raises(InfeasibleWeightsError, match="No donor units remain"):
        fit_weights(wide, "OR", ["OR"], np.ones(2, dtype=bool))
