import pytest
import numpy as np
import pandas as pd

from policysynth.utils.resultutils import (
    build_estimate_results,
    effect_table,
    fit_table,
    sensitivity_table,
    temporal_table,
    weights_table,
)
from policysynth.utils.estutils import fit_unit
from policysynth.utils.datautils import WideSlice
from policysynth.utils.inferutils import (
    STATUS_OK,
    STATUS_SKIPPED,
    CutoffEstimate,
    SensitivityResult,
    cross_sectional_placebo,
)
from policysynth.config_models import EstimateResults

DONORS = ["WA", "ID", "NV", "CA", "MT"]
EVENT = pd.Timestamp("2021-02-01")


@pytest.fixture
def estimate(wide) -> EstimateResults:
    fit_mask = wide.mask_before(EVENT)
    post_mask = wide.mask_from(EVENT)
    fit = fit_unit(wide, "OR", DONORS, fit_mask, post_mask)
    distribution = cross_sectional_placebo(wide, "OR", DONORS, fit_mask, post_mask)
    return build_estimate_results("OR", fit, distribution, post_mask, "SCM", {"ridge": 1e-8})


def test_build_estimate_results(estimate: EstimateResults):
    assert estimate.effects.att == pytest.approx(0.002, abs=2e-4)
    assert estimate.effects.bias == pytest.approx(
        np.mean(estimate.placebo.atts)
    )
    assert estimate.weights.summary_stats["rescale_factor"] is None
    assert estimate.weights.summary_stats["cardinality"] >= 2
    assert estimate.inference.method.startswith("Cross-sectional placebo")
    assert estimate.method_details.parameters_used == {"ridge": 1e-8}
    observed = estimate.time_series.observed_outcome
    np.testing.assert_allclose(
        observed - estimate.time_series.counterfactual_outcome, estimate.time_series.estimated_gap
    )


def test_observed_outcome_kept_where_counterfactual_missing(wide):
    frame = wide.frame.copy()
    frame.iloc[50, frame.columns.get_loc("NV")] = np.nan
    holed = WideSlice(frame)
    fit_mask = holed.mask_before(EVENT)
    post_mask = holed.mask_from(EVENT)
    fit = fit_unit(holed, "OR", DONORS, fit_mask, post_mask)
    distribution = cross_sectional_placebo(holed, "OR", DONORS, fit_mask, post_mask)
    estimate = build_estimate_results("OR", fit, distribution, post_mask, "SCM", {})

    series = estimate.time_series
    assert np.isnan(series.counterfactual_outcome[50])
    assert np.isnan(series.estimated_gap[50])
    assert series.observed_outcome[50] == pytest.approx(frame["OR"].iloc[50])
    np.testing.assert_allclose(series.observed_outcome, frame["OR"].to_numpy())


def test_estimate_dump_excludes_placebo(estimate: EstimateResults):
    dumped = estimate.model_dump()
    assert "placebo" not in dumped
    assert dumped["effects"]["att"] == estimate.effects.att


def test_weights_and_effect_tables(estimate: EstimateResults):
    weights = weights_table(estimate)
    assert list(weights.columns) == ["donor", "weight"]
    assert weights["weight"].sum() == pytest.approx(1.0, abs=1e-6)
    assert set(weights["donor"].iloc[:2]) == {"WA", "ID"}

    effects = effect_table({"main": estimate})
    assert effects.loc[0, "estimate"] == "main"
    assert effects.loc[0, "att_bias_corrected"] == pytest.approx(
        effects.loc[0, "att"] - effects.loc[0, "bias"]
    )

    fit = fit_table({"main": estimate})
    assert fit.loc[0, "pre_periods"] == 37
    assert fit.loc[0, "rmse_pre"] == pytest.approx(np.sqrt(fit.loc[0, "mspe_pre"]))


def test_temporal_table_keeps_skipped_rows():
    estimates = [
        CutoffEstimate(cutoff=pd.Timestamp("2020-01-01"), status=STATUS_SKIPPED, n_pre_points=2,
                       reason="only 2 usable pre-cutoff period(s)"),
        CutoffEstimate(cutoff=pd.Timestamp("2020-02-01"), status=STATUS_OK, att=0.1, bias=0.02,
                       att_bias_corrected=0.08, standard_error=0.05, z_stat=2.0, p_value=0.0455,
                       n_pre_points=25, n_draws_ok=20),
    ]
    table = temporal_table(estimates)
    assert len(table) == 2
    assert np.isnan(table.loc[0, "att"])
    assert table.loc[0, "reason"].startswith("only 2")
    assert table.loc[1, "z_stat"] == 2.0
    assert "draws" not in table.columns


def test_temporal_table_empty():
    table = temporal_table([])
    assert table.empty
    assert "cutoff" in table.columns


def test_sensitivity_table_skipped_subset():
    results = {"empty": SensitivityResult(name="empty", donors=(), status=STATUS_SKIPPED, reason="no donors")}
    table = sensitivity_table(results)
    assert table.loc[0, "status"] == STATUS_SKIPPED
    assert np.isnan(table.loc[0, "att"])
    assert table.loc[0, "weights"] is None
    assert table.loc[0, "n_donors"] == 0
