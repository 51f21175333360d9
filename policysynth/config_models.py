from typing import List, Optional, Any, Dict, Union
import pandas as pd
import numpy as np
from pydantic import BaseModel, Field, model_validator
from policysynth.exceptions import PolicySynthDataError, PolicySynthConfigError
from policysynth.utils.datautils import Panel, PanelColumns


UnitId = Union[str, int]


def _to_timestamp(value: Any, name: str) -> Optional[pd.Timestamp]:
    if value is None:
        return None
    try:
        stamp = pd.Timestamp(value)
    except (TypeError, ValueError) as e:
        raise PolicySynthConfigError(f"'{name}' is not a valid date: {value!r}") from e
    if pd.isna(stamp):
        raise PolicySynthConfigError(f"'{name}' is not a valid date: {value!r}")
    return stamp


class AnalysisConfig(BaseModel):
    """
    Configuration of one synthetic control policy evaluation.

    The treated unit, donor pool, event date and fitting cutoff are all
    run-scoped; placebo and sensitivity loops derive their own variants from
    them without touching this object.
    """
    df: Any = Field(..., description="Raw long-format crash table, or an already loaded Panel.")
    columns: PanelColumns = Field(default_factory=PanelColumns, description="Column mapping of the raw table.")
    treated_unit: UnitId = Field(..., description="Identifier of the treated unit.")
    donors: Optional[List[UnitId]] = Field(default=None, description="Donor pool. Defaults to every other unit in the panel.")
    event_date: Any = Field(..., description="First post-treatment month of the main estimate.")
    placebo_event_date: Optional[Any] = Field(default=None, description="Alternative event date for the robustness estimate (e.g. announcement rather than effective adoption).")
    pre_period_cutoff: Optional[Any] = Field(default=None, description="Weights are fitted on periods strictly before this date. Defaults to event_date.")
    start: Optional[Any] = Field(default=None, description="First period of the analysis window (inclusive).")
    end: Optional[Any] = Field(default=None, description="Last period of the analysis window (inclusive).")
    rescale: bool = Field(default=False, description="Rescale the main synthetic series to the treated unit's pre-period mean.")

    run_temporal_placebo: bool = Field(default=True, description="Whether to run the pseudo-treatment-date placebo.")
    n_temporal_draws: int = Field(default=20, ge=1, description="Single-donor placebo draws per pseudo-treatment cutoff.")
    min_history_months: int = Field(default=24, ge=0, description="Months of history required before a pseudo-treatment cutoff.")
    min_pre_points: int = Field(default=3, ge=1, description="Minimum usable periods before a pseudo-treatment cutoff.")

    donor_subsets: Dict[str, List[UnitId]] = Field(default_factory=dict, description="Named alternative donor pools for sensitivity analysis.")
    leave_one_out: bool = Field(default=False, description="Add one leave-one-donor-out subset per donor to the sensitivity analysis.")

    covariates: List[str] = Field(default_factory=list, description="Unit-level covariate columns carried into the panel (e.g. population density).")
    treat_column: Optional[str] = Field(default=None, description="Binary treated-and-post indicator column for the regression cross-check.")
    run_regression_check: bool = Field(default=False, description="Whether to run the covariate-adjusted DiD regression cross-check.")

    ridge: float = Field(default=1e-8, ge=0, description="Relative ridge weight of the donor-weight program.")
    solver: str = Field(default="CLARABEL", description="CVXPY solver used for donor weights.")
    seed: int = Field(default=1400, description="Seed of the temporal placebo draws.")
    parallel: bool = Field(default=False, description="Whether to run placebo iterations across worker threads.")
    cores: Optional[int] = Field(default=None, ge=1, description="Number of worker threads when parallel is True.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'

    @model_validator(mode="after")
    def check_run_scope(self) -> "AnalysisConfig":
        if not isinstance(self.df, (pd.DataFrame, Panel)):
            raise PolicySynthDataError("'df' must be a pandas DataFrame or a loaded Panel.")
        if isinstance(self.df, pd.DataFrame) and self.df.empty:
            raise PolicySynthDataError("Input DataFrame 'df' cannot be empty.")

        self.event_date = _to_timestamp(self.event_date, "event_date")
        self.placebo_event_date = _to_timestamp(self.placebo_event_date, "placebo_event_date")
        self.pre_period_cutoff = _to_timestamp(self.pre_period_cutoff, "pre_period_cutoff")
        self.start = _to_timestamp(self.start, "start")
        self.end = _to_timestamp(self.end, "end")

        if self.pre_period_cutoff is not None and self.pre_period_cutoff > self.event_date:
            raise PolicySynthConfigError("pre_period_cutoff cannot be later than event_date.")
        if self.start is not None and self.end is not None and self.start > self.end:
            raise PolicySynthConfigError("start cannot be later than end.")

        if self.donors is not None:
            if not self.donors:
                raise PolicySynthConfigError("donors cannot be an empty list if provided.")
            if self.treated_unit in self.donors:
                raise PolicySynthConfigError("The treated unit cannot be part of the donor pool.")
            if len(set(self.donors)) != len(self.donors):
                raise PolicySynthConfigError("donors contains duplicate unit identifiers.")

        for name, subset in self.donor_subsets.items():
            if not subset:
                raise PolicySynthConfigError(f"Donor subset '{name}' cannot be empty.")
            if self.treated_unit in subset:
                raise PolicySynthConfigError(f"Donor subset '{name}' contains the treated unit.")

        if self.treat_column is not None and not self.run_regression_check:
            raise PolicySynthConfigError("treat_column is only used when run_regression_check is True.")
        return self


# --- Pydantic Models for Standardized Results ---

class EffectsResults(BaseModel):
    """Treatment effect estimates; raw and bias-corrected ATT are kept side by side."""
    att: Optional[float] = Field(default=None, description="Average Treatment Effect on the Treated (post minus pre average gap).")
    att_bias_corrected: Optional[float] = Field(default=None, description="ATT minus the mean placebo ATT.")
    bias: Optional[float] = Field(default=None, description="Mean of the placebo ATT distribution.")
    att_percent: Optional[float] = Field(default=None, description="ATT as a percentage of the post-period synthetic mean.")

    class Config:
        extra = 'allow'


class FitDiagnosticsResults(BaseModel):
    """Pre-treatment fit quality of the synthetic control."""
    mspe_pre: Optional[float] = Field(default=None, description="Mean squared prediction error in the pre-period.")
    rmse_pre: Optional[float] = Field(default=None, description="Root mean squared error in the pre-period.")
    mae_pre: Optional[float] = Field(default=None, description="Mean absolute error in the pre-period.")
    mspe_post: Optional[float] = Field(default=None, description="Mean squared gap in the post-period.")
    mspe_ratio: Optional[float] = Field(default=None, description="Post/pre MSPE ratio.")
    pre_periods: Optional[int] = Field(default=None, description="Defined pre-period gap points.")
    post_periods: Optional[int] = Field(default=None, description="Defined post-period gap points.")

    class Config:
        extra = 'allow'


class TimeSeriesResults(BaseModel):
    """Observed, synthetic and gap series of the treated unit."""
    observed_outcome: Optional[np.ndarray] = Field(default=None, description="Observed rate of the treated unit.")
    counterfactual_outcome: Optional[np.ndarray] = Field(default=None, description="Synthetic control series.")
    estimated_gap: Optional[np.ndarray] = Field(default=None, description="Observed minus synthetic.")
    time_periods: Optional[np.ndarray] = Field(default=None, description="Periods of the series.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'allow'


class WeightsResults(BaseModel):
    """Donor weights of the synthetic control."""
    donor_weights: Optional[Dict[str, float]] = Field(default=None, description="Mapping of donor unit to weight.")
    summary_stats: Optional[Dict[str, Any]] = Field(default=None, description="Summary statistics about the weights.")

    class Config:
        extra = 'allow'


class InferenceResults(BaseModel):
    """Placebo-based inference for the ATT."""
    p_value: Optional[float] = Field(default=None, description="Two-sided permutation p-value of the ATT.")
    standard_error: Optional[float] = Field(default=None, description="Standard deviation of the placebo ATTs.")
    n_placebos: Optional[int] = Field(default=None, description="Placebo fits used.")
    n_skipped: Optional[int] = Field(default=None, description="Placebo fits excluded (infeasible or undefined).")
    mspe_ratio_rank: Optional[float] = Field(default=None, description="Rank of the treated post/pre MSPE ratio (1 = largest).")
    mspe_ratio_p_value: Optional[float] = Field(default=None, description="Rank-based p-value of the MSPE ratio.")
    method: Optional[str] = Field(default=None, description="Inference method.")
    details: Optional[Any] = Field(default=None, description="Detailed inference output, e.g. the MSPE ratio table.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'allow'


class MethodDetailsResults(BaseModel):
    """Run-scoped parameters used for a result set."""
    method_name: Optional[str] = Field(default=None, description="Name of the method or variant.")
    parameters_used: Optional[Dict[str, Any]] = Field(default=None, description="Key parameters used for this result set.")

    class Config:
        extra = 'allow'


class EstimateResults(BaseModel):
    """One synthetic control estimate with its cross-sectional placebo inference."""
    effects: Optional[EffectsResults] = None
    fit_diagnostics: Optional[FitDiagnosticsResults] = None
    time_series: Optional[TimeSeriesResults] = None
    weights: Optional[WeightsResults] = None
    inference: Optional[InferenceResults] = None
    method_details: Optional[MethodDetailsResults] = None
    placebo: Optional[Any] = Field(default=None, exclude=True, description="Raw PlaceboDistribution behind the inference.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'


class AnalysisResults(BaseModel):
    """
    Everything a policy evaluation run produces.

    The tabular artifacts are built on demand by ``policysynth.utils.resultutils``.
    """
    main: EstimateResults
    robustness: Optional[EstimateResults] = Field(default=None, description="Estimate at placebo_event_date, when configured.")
    temporal_placebo: Optional[List[Any]] = Field(default=None, description="CutoffEstimate per pseudo-treatment cutoff.")
    sensitivity: Optional[Dict[str, Any]] = Field(default=None, description="SensitivityResult per donor subset.")
    regression_check: Optional[Any] = Field(default=None, description="RegressionCheck of the DiD cross-check.")
    panel_diagnostics: Optional[Dict[str, Any]] = Field(default=None, description="Rows dropped while loading the panel, by reason.")
    execution_summary: Optional[Dict[str, Any]] = Field(default=None, description="Counts of skipped iterations per stage.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'
