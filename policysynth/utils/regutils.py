from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf

from policysynth.exceptions import PolicySynthDataError, PolicySynthEstimationError
from .datautils import KEY_PERIOD, KEY_RATE, KEY_UNIT, Panel


@dataclass(frozen=True)
class RegressionCheck:
    """Difference-in-differences regression estimate of the policy effect."""
    coefficient: float
    standard_error: float
    p_value: float
    nobs: int
    covariates: Dict[str, float]
    formula: str


def did_crosscheck(
    panel: Panel,
    treated: Any,
    event_date: Any,
    covariates: Sequence[str] = (),
    treat_column: Optional[str] = None,
    donors: Optional[Sequence[Any]] = None,
) -> RegressionCheck:
    """
    Covariate-adjusted difference-in-differences OLS as a cross-check of the SCM estimate.

    Fits ``rate ~ treated + post + treated_post + covariates`` with HC1 robust
    standard errors. ``treated_post`` is the supplied indicator column when
    ``treat_column`` is given, otherwise the product of the treated-unit and
    post-event dummies.

    Parameters
    ----------
    panel : Panel
        Cleaned panel. ``covariates`` and ``treat_column`` must have been carried
        through ``load_panel``.
    treated : Any
        Treated unit.
    event_date : date-like
        First post-treatment period.
    covariates : Sequence[str]
        Unit-level controls, e.g. population density.
    treat_column : str, optional
        Binary treated-and-post indicator from the raw data.
    donors : Sequence[Any], optional
        Comparison units; all other units when None.

    Returns
    -------
    RegressionCheck
        Coefficient on ``treated_post`` with its robust SE and p-value.
    """
    observations = panel.observations
    needed = list(covariates) + ([treat_column] if treat_column else [])
    missing = [c for c in needed if c not in observations.columns]
    if missing:
        raise PolicySynthDataError(f"Regression columns not carried by the panel: {missing}")

    units = [treated] + [d for d in (donors if donors is not None else panel.units) if d != treated]
    data = observations.loc[observations[KEY_UNIT].isin(units)].copy()

    design = pd.DataFrame({
        "rate": data[KEY_RATE].astype(float),
        "treated": (data[KEY_UNIT] == treated).astype(float),
        "post": (data[KEY_PERIOD] >= pd.Timestamp(event_date)).astype(float),
    })
    if treat_column:
        design["treated_post"] = pd.to_numeric(data[treat_column], errors="coerce")
    else:
        design["treated_post"] = design["treated"] * design["post"]

    safe_names = {name: f"cov_{i}" for i, name in enumerate(covariates)}
    for name, safe in safe_names.items():
        design[safe] = pd.to_numeric(data[name], errors="coerce")
    design = design.dropna()

    if design["treated"].sum() == 0 or design["post"].nunique() < 2:
        raise PolicySynthDataError("Regression needs treated observations on both sides of the event date.")

    formula = "rate ~ treated + post + treated_post"
    if safe_names:
        formula += " + " + " + ".join(safe_names.values())

    try:
        model = smf.ols(formula, data=design).fit(cov_type="HC1")
    except (ValueError, np.linalg.LinAlgError) as e:
        raise PolicySynthEstimationError(f"Regression cross-check failed: {e}") from e

    return RegressionCheck(
        coefficient=float(model.params["treated_post"]),
        standard_error=float(model.bse["treated_post"]),
        p_value=float(model.pvalues["treated_post"]),
        nobs=int(model.nobs),
        covariates={name: float(model.params[safe]) for name, safe in safe_names.items()},
        formula=formula,
    )
