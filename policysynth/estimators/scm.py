import logging
import warnings
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd

from ..utils.datautils import KEY_PERIOD, Panel, WideSlice, balance, load_panel, to_wide
from ..utils.estutils import UnitFit, fit_unit
from ..utils.inferutils import (
    STATUS_OK,
    CutoffEstimate,
    SensitivityResult,
    cross_sectional_placebo,
    leave_one_out_subsets,
    pseudo_cutoffs,
    run_sensitivity,
    temporal_placebo,
)
from ..utils.regutils import RegressionCheck, did_crosscheck
from ..utils.resultutils import build_estimate_results
from ..exceptions import (
    PolicySynthConfigError,
    PolicySynthDataError,
    PolicySynthEstimationError,
)
from ..config_models import AnalysisConfig, AnalysisResults, EstimateResults

logger = logging.getLogger(__name__)


class PolicySCM:
    """
    Synthetic control evaluation of a single-unit policy change on a monthly rate.

    For a treated unit (e.g. Oregon after Measure 110) the estimator builds a
    convex combination of donor units that tracks the treated unit's rate
    before the policy, and reads the effect off the post-minus-pre change in
    the gap between the two:

    .. math::
        \\hat{\\mathbf{w}} = \\operatorname*{argmin}_{\\mathbf{w} \\geq 0,\\ \\mathbf{1}^\\top\\mathbf{w} = 1}
        \\big\\| \\mathbf{y}_{1,\\text{pre}} - \\mathbf{Y}_{0,\\text{pre}} \\mathbf{w} \\big\\|_2^2

    .. math::
        \\widehat{\\text{ATT}} = \\overline{(y_{1t} - \\mathbf{Y}_{0t}\\hat{\\mathbf{w}})}_{t \\geq T_0}
        - \\overline{(y_{1t} - \\mathbf{Y}_{0t}\\hat{\\mathbf{w}})}_{t < T_0}

    Inference comes from a placebo-in-space test over the donor pool (p-value,
    standard error, bias correction and the post/pre MSPE ratio rank) and,
    optionally, a placebo-in-time test over pseudo-treatment dates. Sensitivity
    runs over alternative donor pools and a difference-in-differences
    regression provide further checks.

    Attributes
    ----------
    config : AnalysisConfig
        Configuration of the run.
    treated_unit : Any
        Treated unit identifier.
    event_date : pd.Timestamp
        First post-treatment month.

    Methods
    -------
    fit()
        Runs the full evaluation and returns ``AnalysisResults``.

    References
    ----------
    Abadie, Alberto, Alexis Diamond, and Jens Hainmueller. 2010.
        "Synthetic Control Methods for Comparative Case Studies."
        Journal of the American Statistical Association 105 (490): 493–505.
    Abadie, Alberto. 2021.
        "Using Synthetic Controls: Feasibility, Data Requirements, and Methodological Aspects."
        Journal of Economic Literature 59 (2): 391–425.

    Examples
    --------
    >>> from policysynth import PolicySCM
    >>> import pandas as pd, numpy as np
    >>> months = pd.date_range("2018-01-01", "2022-12-01", freq="MS")
    >>> data = pd.DataFrame({
    ...     "state": np.repeat(["OR", "WA", "ID", "NV"], len(months)),
    ...     "year": np.tile(months.year, 4),
    ...     "month": np.tile(months.month, 4),
    ...     "crashes": np.random.poisson(50, 4 * len(months)),
    ...     "exposure": 1000.0,
    ... })
    >>> estimator = PolicySCM({"df": data, "treated_unit": "OR", "event_date": "2021-02-01"})
    >>> results = estimator.fit()  # doctest: +SKIP
    """

    def __init__(self, config: Union[AnalysisConfig, Dict[str, Any]]) -> None:
        """
        Parameters
        ----------
        config : AnalysisConfig or dict
            Run configuration; a dict is validated into ``AnalysisConfig``.
        """
        if isinstance(config, dict):
            config = AnalysisConfig(**config)
        self.config = config
        self.treated_unit = config.treated_unit
        self.event_date: pd.Timestamp = config.event_date
        self.fit_cutoff: pd.Timestamp = config.pre_period_cutoff or config.event_date
        self.placebo_event_date: Optional[pd.Timestamp] = config.placebo_event_date

    # =======================
    # Preparation
    # =======================

    def _load(self) -> Panel:
        if isinstance(self.config.df, Panel):
            return self.config.df
        carried = list(self.config.covariates)
        if self.config.treat_column and self.config.treat_column not in carried:
            carried.append(self.config.treat_column)
        return load_panel(self.config.df, self.config.columns, covariates=carried)

    def _donor_pool(self, wide: WideSlice) -> List[Any]:
        if self.treated_unit not in wide.units:
            raise PolicySynthDataError(f"Treated unit '{self.treated_unit}' is not present in the panel.")
        if self.config.donors is None:
            donors = [u for u in wide.units if u != self.treated_unit]
        else:
            missing = [d for d in self.config.donors if d not in wide.units]
            if missing:
                raise PolicySynthDataError(f"Donor unit(s) not present in the panel: {missing}")
            donors = list(self.config.donors)
        if not donors:
            raise PolicySynthDataError("The panel has no donor units besides the treated unit.")
        return donors

    def _check_dates(self, wide: WideSlice) -> None:
        first, last = wide.periods[0], wide.periods[-1]
        for name, date in (("event_date", self.event_date), ("placebo_event_date", self.placebo_event_date)):
            if date is not None and not first < date <= last:
                raise PolicySynthDataError(
                    f"{name} {date.date()} must fall after the first period ({first.date()}) "
                    f"and no later than the last period ({last.date()})."
                )
        if not self.fit_cutoff > first:
            raise PolicySynthDataError(
                f"pre_period_cutoff {self.fit_cutoff.date()} leaves no fitting periods "
                f"(panel starts {first.date()})."
            )

    def _check_fit_window(self, wide: WideSlice, donors: List[Any], fit_mask: np.ndarray) -> None:
        incomplete = balance(wide, [self.treated_unit] + donors, fit_mask)
        if incomplete:
            raise PolicySynthDataError(
                f"Unit(s) with missing rates inside the fitting window: {incomplete}. "
                "Restrict the window or the donor pool."
            )

    # =======================
    # Estimation stages
    # =======================

    def _estimate(
        self,
        wide: WideSlice,
        donors: List[Any],
        fit_before: pd.Timestamp,
        event_date: pd.Timestamp,
        method_name: str,
    ) -> EstimateResults:
        fit_mask = wide.mask_before(fit_before)
        post_mask = wide.mask_from(event_date)
        self._check_fit_window(wide, donors, fit_mask)
        rescale_mask = fit_mask if self.config.rescale else None

        fit: UnitFit = fit_unit(
            wide, self.treated_unit, donors, fit_mask, post_mask, rescale_mask,
            ridge=self.config.ridge, solver=self.config.solver,
        )
        distribution = cross_sectional_placebo(
            wide, self.treated_unit, donors, fit_mask, post_mask, rescale_mask,
            ridge=self.config.ridge, solver=self.config.solver,
            parallel=self.config.parallel, cores=self.config.cores,
        )
        logger.info("%s: ATT %.6g over %d donors", method_name, fit.effect.att, len(donors))
        return build_estimate_results(
            self.treated_unit,
            fit,
            distribution,
            post_mask,
            method_name,
            parameters={
                "treated_unit": self.treated_unit,
                "event_date": event_date,
                "pre_period_cutoff": fit_before,
                "donors": list(donors),
                "rescale": self.config.rescale,
                "ridge": self.config.ridge,
                "solver": self.config.solver,
            },
        )

    def _temporal(self, wide: WideSlice, donors: List[Any]) -> List[CutoffEstimate]:
        cutoffs = pseudo_cutoffs(wide.periods, self.event_date, self.config.min_history_months)
        if not cutoffs:
            warnings.warn(
                f"No pseudo-treatment cutoff has {self.config.min_history_months} months of history "
                "before the event date; temporal placebo not run.",
                UserWarning,
            )
            return []
        return temporal_placebo(
            wide, self.treated_unit, donors, cutoffs,
            n_draws=self.config.n_temporal_draws,
            min_pre_points=self.config.min_pre_points,
            seed=self.config.seed,
            ridge=self.config.ridge,
            solver=self.config.solver,
            parallel=self.config.parallel,
            cores=self.config.cores,
        )

    def _sensitivity(self, wide: WideSlice, donors: List[Any]) -> Dict[str, SensitivityResult]:
        subsets: Dict[str, List[Any]] = {name: list(s) for name, s in self.config.donor_subsets.items()}
        if self.config.leave_one_out:
            subsets.update(leave_one_out_subsets(donors))
        for name, subset in subsets.items():
            missing = [d for d in subset if d not in wide.units]
            if missing:
                raise PolicySynthDataError(f"Donor subset '{name}' names unit(s) not in the panel: {missing}")

        fit_mask = wide.mask_before(self.fit_cutoff)
        post_mask = wide.mask_from(self.event_date)
        return run_sensitivity(
            wide, self.treated_unit, subsets, fit_mask, post_mask,
            fit_mask if self.config.rescale else None,
            ridge=self.config.ridge, solver=self.config.solver,
            parallel=self.config.parallel, cores=self.config.cores,
        )

    def _regression(self, panel: Panel, wide: WideSlice, donors: List[Any]) -> RegressionCheck:
        observations = panel.observations
        in_window = observations[KEY_PERIOD].between(wide.periods[0], wide.periods[-1])
        windowed = Panel(
            observations=observations.loc[in_window].reset_index(drop=True),
            dropped_rows=panel.dropped_rows,
            covariates=panel.covariates,
        )
        return did_crosscheck(
            windowed,
            self.treated_unit,
            self.event_date,
            covariates=self.config.covariates,
            treat_column=self.config.treat_column,
            donors=donors,
        )

    def fit(self) -> AnalysisResults:
        """
        Runs the policy evaluation.

        Steps:
        1. Load and validate the raw panel, then pivot it over the analysis window.
        2. Fit donor weights before the pre-period cutoff and compute the ATT,
           fit diagnostics and the cross-sectional placebo inference.
        3. Optionally repeat step 2 at the placebo event date.
        4. Optionally run the temporal placebo over pseudo-treatment cutoffs.
        5. Optionally run donor-subset sensitivity analyses.
        6. Optionally run the difference-in-differences regression check.

        Returns
        -------
        AnalysisResults
            Main estimate plus whichever robustness stages were configured.
            Tabular views are available from ``policysynth.utils.resultutils``.
        """
        try:
            panel = self._load()
            wide = to_wide(panel, self.config.start, self.config.end)
            donors = self._donor_pool(wide)
            self._check_dates(wide)

            main = self._estimate(wide, donors, self.fit_cutoff, self.event_date, "SCM")

            robustness = None
            if self.placebo_event_date is not None:
                robustness = self._estimate(
                    wide, donors, self.placebo_event_date, self.placebo_event_date,
                    "SCM (placebo event date)",
                )

            temporal = self._temporal(wide, donors) if self.config.run_temporal_placebo else None

            sensitivity = None
            if self.config.donor_subsets or self.config.leave_one_out:
                sensitivity = self._sensitivity(wide, donors)

            regression = None
            if self.config.run_regression_check:
                regression = self._regression(panel, wide, donors)

        except (PolicySynthDataError, PolicySynthConfigError, PolicySynthEstimationError) as e:
            raise e
        except KeyError as e:
            raise PolicySynthEstimationError(f"Missing expected key in panel structures: {e}") from e
        except ValueError as e:
            raise PolicySynthEstimationError(f"ValueError during policy SCM estimation: {e}") from e
        except Exception as e:
            raise PolicySynthEstimationError(f"An unexpected error occurred during policy SCM fitting: {e}") from e

        execution_summary: Dict[str, Any] = {
            "placebos_skipped": main.inference.n_skipped,
        }
        if robustness is not None:
            execution_summary["robustness_placebos_skipped"] = robustness.inference.n_skipped
        if temporal is not None:
            execution_summary["cutoffs_evaluated"] = len(temporal)
            execution_summary["cutoffs_not_ok"] = sum(1 for e in temporal if e.status != STATUS_OK)
        if sensitivity is not None:
            execution_summary["subsets_skipped"] = sum(1 for r in sensitivity.values() if r.status != STATUS_OK)

        return AnalysisResults(
            main=main,
            robustness=robustness,
            temporal_placebo=temporal,
            sensitivity=sensitivity,
            regression_check=regression,
            panel_diagnostics=dict(panel.dropped_rows),
            execution_summary=execution_summary,
        )
