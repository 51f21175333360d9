from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from policysynth.config_models import (
    AnalysisResults,
    EffectsResults,
    EstimateResults,
    FitDiagnosticsResults,
    InferenceResults,
    MethodDetailsResults,
    TimeSeriesResults,
    WeightsResults,
)
from .estutils import UnitFit
from .inferutils import (
    CutoffEstimate,
    PlaceboDistribution,
    SensitivityResult,
    STATUS_OK,
    mspe_ratio_rank,
)


def _optional(value: Any) -> Optional[float]:
    """NaN becomes None so pydantic results report missing values as missing."""
    if value is None:
        return None
    value = float(value)
    return value if np.isfinite(value) else None


def build_estimate_results(
    treated: Any,
    fit: UnitFit,
    distribution: PlaceboDistribution,
    post_mask: np.ndarray,
    method_name: str,
    parameters: Optional[Dict[str, Any]] = None,
) -> EstimateResults:
    """
    Map one unit fit and its placebo distribution to the standardized results model.

    Parameters
    ----------
    treated : Any
        Treated unit.
    fit : UnitFit
        Fit of the treated unit.
    distribution : PlaceboDistribution
        Cross-sectional placebo outcomes for the same masks.
    post_mask : np.ndarray
        Post-period mask of the estimate, used for the percentage ATT.
    method_name : str
        Label of the estimate (e.g. "SCM" or "SCM (placebo event date)").
    parameters : Dict[str, Any], optional
        Run-scoped parameters to record.
    """
    effect = fit.effect
    summary = distribution.summarize(effect.att)
    ratio_table, ratio_rank, ratio_p = mspe_ratio_rank(treated, fit, distribution)

    post_synthetic = fit.synthetic.to_numpy(dtype=float)[np.asarray(post_mask, dtype=bool)]
    post_synthetic = post_synthetic[np.isfinite(post_synthetic)]
    post_mean = post_synthetic.mean() if post_synthetic.size else np.nan
    att_percent = 100 * effect.att / post_mean if np.isfinite(post_mean) and post_mean != 0 else np.nan

    weights = fit.weights
    donor_weights = {str(k): float(v) for k, v in weights.items()}

    return EstimateResults(
        effects=EffectsResults(
            att=_optional(effect.att),
            att_bias_corrected=_optional(summary.att_bias_corrected),
            bias=_optional(summary.bias),
            att_percent=_optional(att_percent),
        ),
        fit_diagnostics=FitDiagnosticsResults(
            mspe_pre=_optional(effect.mspe_pre),
            rmse_pre=_optional(effect.rmse_pre),
            mae_pre=_optional(effect.mae_pre),
            mspe_post=_optional(effect.mspe_post),
            mspe_ratio=_optional(effect.mspe_ratio),
            pre_periods=effect.n_pre,
            post_periods=effect.n_post,
        ),
        time_series=TimeSeriesResults(
            observed_outcome=fit.observed.to_numpy(dtype=float),
            counterfactual_outcome=fit.synthetic.to_numpy(dtype=float),
            estimated_gap=fit.gap.to_numpy(dtype=float),
            time_periods=fit.gap.index.to_numpy(),
        ),
        weights=WeightsResults(
            donor_weights=donor_weights,
            summary_stats={
                "cardinality": int((weights > 1e-6).sum()),
                "max_weight": float(weights.max()),
                "rescale_factor": _optional(fit.rescale_factor),
            },
        ),
        inference=InferenceResults(
            p_value=_optional(summary.p_value),
            standard_error=_optional(summary.standard_error),
            n_placebos=summary.n_placebos,
            n_skipped=summary.n_skipped,
            mspe_ratio_rank=_optional(ratio_rank),
            mspe_ratio_p_value=_optional(ratio_p),
            method="Cross-sectional placebo (permutation over donors)",
            details={"mspe_ratios": ratio_table},
        ),
        method_details=MethodDetailsResults(method_name=method_name, parameters_used=parameters or {}),
        placebo=distribution,
    )


def weights_table(estimate: EstimateResults) -> pd.DataFrame:
    """Donor weight table sorted by descending weight."""
    weights = estimate.weights.donor_weights or {}
    table = pd.DataFrame({"donor": list(weights.keys()), "weight": list(weights.values())})
    return table.sort_values("weight", ascending=False, kind="stable").reset_index(drop=True)


def fit_table(estimates: Mapping[str, EstimateResults]) -> pd.DataFrame:
    """Pre-treatment fit quality (MSPE/RMSE/MAE) per labelled estimate."""
    rows = []
    for label, estimate in estimates.items():
        diagnostics = estimate.fit_diagnostics
        rows.append({
            "estimate": label,
            "mspe_pre": diagnostics.mspe_pre,
            "rmse_pre": diagnostics.rmse_pre,
            "mae_pre": diagnostics.mae_pre,
            "pre_periods": diagnostics.pre_periods,
        })
    return pd.DataFrame(rows)


def effect_table(estimates: Mapping[str, EstimateResults]) -> pd.DataFrame:
    """ATT (raw and bias-corrected), bias, SE and p-values per labelled estimate."""
    rows = []
    for label, estimate in estimates.items():
        rows.append({
            "estimate": label,
            "att": estimate.effects.att,
            "att_bias_corrected": estimate.effects.att_bias_corrected,
            "bias": estimate.effects.bias,
            "att_percent": estimate.effects.att_percent,
            "standard_error": estimate.inference.standard_error,
            "p_value": estimate.inference.p_value,
            "mspe_ratio_p_value": estimate.inference.mspe_ratio_p_value,
            "n_placebos": estimate.inference.n_placebos,
            "n_skipped": estimate.inference.n_skipped,
        })
    return pd.DataFrame(rows)


def mspe_ratio_table(estimate: EstimateResults) -> pd.DataFrame:
    return estimate.inference.details["mspe_ratios"].copy()


def temporal_table(estimates: Sequence[CutoffEstimate]) -> pd.DataFrame:
    """One row per pseudo-treatment cutoff; skipped or NA cutoffs keep NaN statistics."""
    columns = [
        "cutoff", "status", "att", "bias", "att_bias_corrected", "standard_error",
        "z_stat", "p_value", "n_pre_points", "n_draws_ok", "n_draws_skipped", "reason",
    ]
    rows = [{name: getattr(e, name) for name in columns} for e in estimates]
    return pd.DataFrame(rows, columns=columns)


def sensitivity_table(results: Mapping[str, SensitivityResult]) -> pd.DataFrame:
    """Per-subset ATT, SE, p-value and weight vector."""
    rows: List[Dict[str, Any]] = []
    for name, result in results.items():
        row: Dict[str, Any] = {
            "subset": name,
            "status": result.status,
            "n_donors": len(result.donors),
            "att": np.nan,
            "att_bias_corrected": np.nan,
            "standard_error": np.nan,
            "p_value": np.nan,
            "weights": None,
            "reason": result.reason,
        }
        if result.status == STATUS_OK:
            row.update({
                "att": result.fit.effect.att,
                "att_bias_corrected": result.summary.att_bias_corrected,
                "standard_error": result.summary.standard_error,
                "p_value": result.summary.p_value,
                "weights": {str(k): float(v) for k, v in result.fit.weights.items()},
            })
        rows.append(row)
    return pd.DataFrame(rows)


def analysis_tables(results: AnalysisResults) -> Dict[str, pd.DataFrame]:
    """All tabular output artifacts of a run, keyed by name."""
    estimates = {"main": results.main}
    if results.robustness is not None:
        estimates["robustness"] = results.robustness

    tables = {
        "weights": weights_table(results.main),
        "fit": fit_table(estimates),
        "effects": effect_table(estimates),
        "mspe_ratios": mspe_ratio_table(results.main),
    }
    if results.temporal_placebo is not None:
        tables["temporal_placebo"] = temporal_table(results.temporal_placebo)
    if results.sensitivity is not None:
        tables["sensitivity"] = sensitivity_table(results.sensitivity)
    if results.regression_check is not None:
        check = results.regression_check
        tables["regression_check"] = pd.DataFrame([{
            "coefficient": check.coefficient,
            "standard_error": check.standard_error,
            "p_value": check.p_value,
            "nobs": check.nobs,
            "formula": check.formula,
        }])
    return tables
