import warnings
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from policysynth.exceptions import PolicySynthDataError, UndefinedRescaleError
from .datautils import WideSlice
from .optutils import fit_weights


@dataclass(frozen=True)
class ATTResult:
    """Average treatment effect on the treated plus fit diagnostics of one gap series.

    Attributes
    ----------
    att : float
        Mean post-period gap minus mean pre-period gap.
    mspe_pre, rmse_pre, mae_pre : float
        Squared/absolute gap summaries over the pre-period.
    mspe_post : float
        Mean squared gap over the post-period.
    mspe_ratio : float
        ``mspe_post / mspe_pre``; NaN when the pre-period MSPE is zero.
    n_pre, n_post : int
        Number of defined gap points on each side.
    """
    att: float
    mspe_pre: float
    rmse_pre: float
    mae_pre: float
    mspe_post: float
    mspe_ratio: float
    n_pre: int
    n_post: int


@dataclass(frozen=True)
class UnitFit:
    """Output of one pass of the synthetic control pipeline for a single unit."""
    unit: Any
    observed: pd.Series
    weights: pd.Series
    synthetic: pd.Series
    gap: pd.Series
    effect: ATTResult
    rescale_factor: Optional[float] = None


def build_synthetic(weights: pd.Series, wide: WideSlice) -> pd.Series:
    """
    Weighted combination of donor columns for every period of ``wide``.

    A period where any weighted donor is missing is NaN in the output.

    Parameters
    ----------
    weights : pd.Series
        Donor-indexed weights.
    wide : WideSlice
        Wide panel holding every donor in ``weights.index``.

    Returns
    -------
    pd.Series
        Synthetic series indexed by period.
    """
    donors = wide.donors(list(weights.index))
    values = donors.to_numpy() @ weights.to_numpy()
    incomplete = donors.isna().any(axis=1).to_numpy()
    values = np.where(incomplete, np.nan, values)
    return pd.Series(values, index=wide.periods, name="synthetic")


def rescale(
    series: pd.Series,
    anchor: pd.Series,
    pre_mask: np.ndarray,
    strict: bool = False,
) -> Tuple[pd.Series, float]:
    """
    Match the pre-period mean of ``series`` to that of ``anchor``.

    scalar = mean(anchor[pre]) / mean(series[pre]); every point of ``series``
    is multiplied by it. A zero or undefined pre-period mean yields a NaN
    scalar and an all-NaN series, which downstream code treats as missing.

    Parameters
    ----------
    series : pd.Series
        Series to rescale (typically a synthetic series).
    anchor : pd.Series
        Series whose pre-period level is matched (typically the treated unit).
    pre_mask : np.ndarray
        Boolean mask of pre-period points.
    strict : bool, default False
        Raise ``UndefinedRescaleError`` instead of returning NaN.

    Returns
    -------
    Tuple[pd.Series, float]
        The new rescaled series and the scalar applied.
    """
    pre_mask = np.asarray(pre_mask, dtype=bool)
    if pre_mask.shape[0] != len(series) or len(anchor) != len(series):
        raise PolicySynthDataError("series, anchor and pre_mask must have the same length.")

    series_mean = _nanmean(series.to_numpy(dtype=float)[pre_mask])
    anchor_mean = _nanmean(anchor.to_numpy(dtype=float)[pre_mask])

    if not np.isfinite(series_mean) or series_mean == 0:
        if strict:
            raise UndefinedRescaleError("Pre-period mean of the series is zero or undefined.")
        warnings.warn("Pre-period mean of the series is zero or undefined; rescale is NaN.", UserWarning)
        return pd.Series(np.nan, index=series.index, name=series.name), np.nan

    factor = float(anchor_mean / series_mean)
    return series * factor, factor


def _nanmean(values: np.ndarray) -> float:
    defined = values[np.isfinite(values)]
    return float(defined.mean()) if defined.size else np.nan


def att(gap: pd.Series, post_mask: np.ndarray) -> ATTResult:
    """
    Compute the ATT and pre-period fit diagnostics of a gap series.

    ATT = mean(gap | post) - mean(gap | not post), ignoring undefined points;
    NaN if either side has no defined point.
    """
    values = np.asarray(gap, dtype=float)
    post_mask = np.asarray(post_mask, dtype=bool)
    if post_mask.shape[0] != values.shape[0]:
        raise PolicySynthDataError("gap and post_mask must have the same length.")

    pre_values = values[~post_mask]
    post_values = values[post_mask]
    pre_defined = pre_values[np.isfinite(pre_values)]
    post_defined = post_values[np.isfinite(post_values)]

    effect = _nanmean(post_values) - _nanmean(pre_values)

    mspe_pre = _nanmean(pre_defined ** 2)
    mae_pre = _nanmean(np.abs(pre_defined))
    mspe_post = _nanmean(post_defined ** 2)
    mspe_ratio = mspe_post / mspe_pre if np.isfinite(mspe_pre) and mspe_pre > 0 else np.nan

    return ATTResult(
        att=float(effect),
        mspe_pre=mspe_pre,
        rmse_pre=float(np.sqrt(mspe_pre)) if np.isfinite(mspe_pre) else np.nan,
        mae_pre=mae_pre,
        mspe_post=mspe_post,
        mspe_ratio=float(mspe_ratio),
        n_pre=int(pre_defined.size),
        n_post=int(post_defined.size),
    )


def fit_unit(
    wide: WideSlice,
    treated: Any,
    donors: Sequence[Any],
    fit_mask: np.ndarray,
    post_mask: np.ndarray,
    rescale_mask: Optional[np.ndarray] = None,
    *,
    ridge: float = 1e-8,
    solver: str = "CLARABEL",
) -> UnitFit:
    """
    Run weights -> synthetic series -> (optional rescale) -> gap -> ATT for one unit.

    Parameters
    ----------
    wide : WideSlice
        Wide panel spanning the evaluation window.
    treated : Any
        Unit playing the treated role.
    donors : Sequence[Any]
        Donor pool; ``treated`` is removed if present.
    fit_mask : np.ndarray
        Periods used to fit the weights.
    post_mask : np.ndarray
        Periods counted as post-treatment for the ATT.
    rescale_mask : np.ndarray, optional
        When given, the synthetic series is rescaled to the treated unit's mean
        over these periods.

    Raises
    ------
    InfeasibleWeightsError
        Propagated from the weight solver.
    """
    weights = fit_weights(wide, treated, donors, fit_mask, ridge=ridge, solver=solver)
    observed = wide.series(treated)
    synthetic = build_synthetic(weights, wide)
    factor = None
    if rescale_mask is not None:
        synthetic, factor = rescale(synthetic, observed, rescale_mask)
    gap = (observed - synthetic).rename("gap")
    return UnitFit(
        unit=treated,
        observed=observed,
        weights=weights,
        synthetic=synthetic,
        gap=gap,
        effect=att(gap, post_mask),
        rescale_factor=factor,
    )
