import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar

import numpy as np
import pandas as pd
from scipy.stats import norm

from policysynth.exceptions import InfeasibleWeightsError, PolicySynthConfigError
from .datautils import WideSlice
from .estutils import UnitFit, fit_unit

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_SKIPPED = "skipped"
STATUS_NA = "na"

_T = TypeVar("_T")
_R = TypeVar("_R")


def _map(func: Callable[[_T], _R], items: Sequence[_T], parallel: bool = False, cores: Optional[int] = None) -> List[_R]:
    """Evaluate independent iterations, optionally across worker threads, preserving order."""
    if parallel and len(items) > 1:
        with ThreadPoolExecutor(max_workers=cores) as executor:
            return list(executor.map(func, items))
    return [func(item) for item in items]


# =======================
# Tagged iteration results
# =======================

@dataclass(frozen=True)
class PlaceboOutcome:
    """Result of one placebo iteration: a fitted unit or the reason it was skipped."""
    unit: Any
    status: str
    fit: Optional[UnitFit] = None
    reason: Optional[str] = None
    cutoff: Optional[pd.Timestamp] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    @property
    def att(self) -> float:
        return self.fit.effect.att if self.fit is not None else np.nan

    @property
    def mspe_ratio(self) -> float:
        return self.fit.effect.mspe_ratio if self.fit is not None else np.nan


@dataclass(frozen=True)
class PlaceboSummary:
    """Statistics derived from a placebo distribution for one real estimate."""
    att: float
    bias: float
    att_bias_corrected: float
    standard_error: float
    p_value: float
    n_placebos: int
    n_skipped: int


@dataclass(frozen=True)
class PlaceboDistribution:
    """All placebo outcomes of one inference run."""
    outcomes: Tuple[PlaceboOutcome, ...]

    @property
    def successful(self) -> List[PlaceboOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def skipped(self) -> List[PlaceboOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def atts(self) -> np.ndarray:
        """ATTs of successful fits; undefined values are left out, never zero-filled."""
        values = np.array([o.att for o in self.successful], dtype=float)
        return values[np.isfinite(values)]

    def summarize(self, real_att: float) -> PlaceboSummary:
        atts = self.atts
        bias, corrected = bias_correct(real_att, atts)
        return PlaceboSummary(
            att=float(real_att),
            bias=bias,
            att_bias_corrected=corrected,
            standard_error=placebo_standard_error(atts),
            p_value=placebo_p_value(real_att, atts),
            n_placebos=int(atts.size),
            n_skipped=len(self.outcomes) - int(atts.size),
        )


# =======================
# Distribution statistics
# =======================

def placebo_p_value(real_att: float, placebo_atts: Sequence[float]) -> float:
    """
    Two-sided empirical permutation p-value.

    Fraction of placebo ATTs with |placebo| >= |real|, over defined placebos
    only. Returns NaN when no placebo is available or the real ATT is undefined.
    """
    placebo_atts = np.asarray(placebo_atts, dtype=float)
    placebo_atts = placebo_atts[np.isfinite(placebo_atts)]
    if placebo_atts.size == 0 or not np.isfinite(real_att):
        return np.nan
    abs_real = abs(real_att)
    abs_placebo = np.abs(placebo_atts)
    # Ties use a relative tolerance only; rates are often far below 1e-8.
    extreme = (abs_placebo >= abs_real) | np.isclose(abs_placebo, abs_real, rtol=1e-9, atol=0.0)
    return float(np.mean(extreme))


def placebo_standard_error(placebo_atts: Sequence[float]) -> float:
    """Sample standard deviation of the placebo ATTs; NaN with fewer than two."""
    placebo_atts = np.asarray(placebo_atts, dtype=float)
    placebo_atts = placebo_atts[np.isfinite(placebo_atts)]
    if placebo_atts.size < 2:
        return np.nan
    return float(np.std(placebo_atts, ddof=1))


def bias_correct(real_att: float, placebo_atts: Sequence[float]) -> Tuple[float, float]:
    """Return (bias, bias-corrected ATT) with bias = mean of the placebo ATTs."""
    placebo_atts = np.asarray(placebo_atts, dtype=float)
    placebo_atts = placebo_atts[np.isfinite(placebo_atts)]
    if placebo_atts.size == 0:
        return np.nan, np.nan
    bias = float(np.mean(placebo_atts))
    return bias, float(real_att - bias)


def normal_p_value(att_value: float, standard_error: float) -> Tuple[float, float]:
    """z-statistic and two-sided normal p-value; (NaN, NaN) when SE is zero or undefined."""
    if not np.isfinite(att_value) or not np.isfinite(standard_error) or standard_error <= 0:
        return np.nan, np.nan
    z = att_value / standard_error
    return float(z), float(2 * norm.sf(abs(z)))


def mspe_ratio_rank(
    treated: Any,
    treated_fit: UnitFit,
    distribution: PlaceboDistribution,
) -> Tuple[pd.DataFrame, float, float]:
    """
    Rank the treated unit's post/pre MSPE ratio among all ratios.

    Returns
    -------
    Tuple[pd.DataFrame, float, float]
        Table (unit, role, mspe_pre, mspe_post, mspe_ratio, rank) sorted by
        rank, the treated unit's rank (1 = largest ratio), and the rank-based
        p-value ``rank / number of ranked units``. Units with an undefined ratio
        are listed without a rank.
    """
    rows = [{
        "unit": treated,
        "role": "treated",
        "mspe_pre": treated_fit.effect.mspe_pre,
        "mspe_post": treated_fit.effect.mspe_post,
        "mspe_ratio": treated_fit.effect.mspe_ratio,
    }]
    for outcome in distribution.successful:
        rows.append({
            "unit": outcome.unit,
            "role": "placebo",
            "mspe_pre": outcome.fit.effect.mspe_pre,
            "mspe_post": outcome.fit.effect.mspe_post,
            "mspe_ratio": outcome.fit.effect.mspe_ratio,
        })
    table = pd.DataFrame(rows)
    table["rank"] = table["mspe_ratio"].rank(ascending=False, method="min")
    table = table.sort_values("rank", na_position="last", kind="stable").reset_index(drop=True)

    treated_rank = float(table.loc[table["role"] == "treated", "rank"].iloc[0])
    n_ranked = int(table["rank"].notna().sum())
    rank_p = treated_rank / n_ranked if np.isfinite(treated_rank) and n_ranked else np.nan
    return table, treated_rank, rank_p


# =======================
# Cross-sectional placebo
# =======================

def _fit_or_skip(
    wide: WideSlice,
    unit: Any,
    donors: Sequence[Any],
    fit_mask: np.ndarray,
    post_mask: np.ndarray,
    rescale_mask: Optional[np.ndarray],
    ridge: float,
    solver: str,
    cutoff: Optional[pd.Timestamp] = None,
) -> PlaceboOutcome:
    try:
        fit = fit_unit(wide, unit, donors, fit_mask, post_mask, rescale_mask, ridge=ridge, solver=solver)
    except InfeasibleWeightsError as e:
        logger.debug("Placebo fit for %s skipped: %s", unit, e)
        return PlaceboOutcome(unit=unit, status=STATUS_SKIPPED, reason=str(e), cutoff=cutoff)
    if not np.isfinite(fit.effect.att):
        return PlaceboOutcome(unit=unit, status=STATUS_SKIPPED, fit=fit, reason="undefined ATT", cutoff=cutoff)
    return PlaceboOutcome(unit=unit, status=STATUS_OK, fit=fit, cutoff=cutoff)


def cross_sectional_placebo(
    wide: WideSlice,
    treated: Any,
    donors: Sequence[Any],
    fit_mask: np.ndarray,
    post_mask: np.ndarray,
    rescale_mask: Optional[np.ndarray] = None,
    *,
    ridge: float = 1e-8,
    solver: str = "CLARABEL",
    parallel: bool = False,
    cores: Optional[int] = None,
) -> PlaceboDistribution:
    """
    Placebo-in-space inference over the donor pool.

    Every donor ``d`` is fitted as if treated against ``donors`` without ``d``
    (the real treated unit never enters a placebo pool), using the same masks as
    the real run. Donors whose weights cannot be fitted are recorded as skipped
    and excluded from every statistic derived from the distribution.

    Parameters
    ----------
    wide : WideSlice
        Wide panel of the real run.
    treated : Any
        The real treated unit.
    donors : Sequence[Any]
        Donor pool of the real run.
    fit_mask, post_mask : np.ndarray
        Fitting window and post-period masks of the real run.
    rescale_mask : np.ndarray, optional
        Rescaling window, when the real run rescales.
    parallel : bool, default False
        Evaluate the donors across worker threads.
    cores : int, optional
        Worker count for ``parallel``.

    Returns
    -------
    PlaceboDistribution
        One tagged outcome per donor, in donor order.
    """
    pool = [d for d in donors if d != treated]

    def run(unit: Any) -> PlaceboOutcome:
        remaining = [d for d in pool if d != unit]
        return _fit_or_skip(wide, unit, remaining, fit_mask, post_mask, rescale_mask, ridge, solver)

    distribution = PlaceboDistribution(tuple(_map(run, pool, parallel, cores)))
    n_skipped = len(distribution.skipped)
    if n_skipped:
        warnings.warn(
            f"{n_skipped} of {len(pool)} placebo unit(s) excluded from the placebo distribution "
            f"(weights could not be fitted or ATT undefined).",
            UserWarning,
        )
    return distribution


# =======================
# Temporal (pseudo-date) placebo
# =======================

@dataclass(frozen=True)
class CutoffEstimate:
    """Pseudo-treatment estimate for a single candidate cutoff date."""
    cutoff: pd.Timestamp
    status: str
    att: float = np.nan
    bias: float = np.nan
    att_bias_corrected: float = np.nan
    standard_error: float = np.nan
    z_stat: float = np.nan
    p_value: float = np.nan
    n_pre_points: int = 0
    n_draws_ok: int = 0
    n_draws_skipped: int = 0
    reason: Optional[str] = None
    draws: Tuple[PlaceboOutcome, ...] = field(default=(), repr=False)


def pseudo_cutoffs(
    periods: Sequence[pd.Timestamp],
    event_date: Any,
    min_history_months: int = 24,
) -> List[pd.Timestamp]:
    """
    Monthly grid of candidate cutoffs strictly before ``event_date``.

    A cutoff qualifies when at least ``min_history_months`` months of panel
    history precede it.
    """
    if min_history_months < 0:
        raise PolicySynthConfigError("min_history_months must be non-negative.")
    periods = pd.DatetimeIndex(periods).sort_values()
    if periods.empty:
        return []
    first = periods[0]
    earliest = first + pd.DateOffset(months=min_history_months)
    event_date = pd.Timestamp(event_date)
    return [p for p in periods if earliest <= p < event_date]


def _estimate_cutoff(
    wide: WideSlice,
    treated: Any,
    pool: List[Any],
    cutoff: pd.Timestamp,
    draw_indices: np.ndarray,
    min_pre_points: int,
    ridge: float,
    solver: str,
) -> CutoffEstimate:
    # Masks and the usable-row test are derived once per cutoff and shared by every draw.
    before = wide.mask_before(cutoff)
    complete = wide.donors([treated] + pool).notna().all(axis=1).to_numpy()
    fit_mask = before & complete
    post_mask = wide.mask_from(cutoff)
    n_pre = int(fit_mask.sum())

    if n_pre < min_pre_points:
        return CutoffEstimate(
            cutoff=cutoff, status=STATUS_SKIPPED, n_pre_points=n_pre,
            reason=f"only {n_pre} usable pre-cutoff period(s)",
        )

    real = _fit_or_skip(wide, treated, pool, fit_mask, post_mask, fit_mask, ridge, solver, cutoff)
    if not real.ok:
        return CutoffEstimate(cutoff=cutoff, status=STATUS_SKIPPED, n_pre_points=n_pre, reason=real.reason)

    fitted: Dict[Any, PlaceboOutcome] = {}
    draws: List[PlaceboOutcome] = []
    for index in draw_indices:
        unit = pool[int(index)]
        if unit not in fitted:
            remaining = [d for d in pool if d != unit]
            fitted[unit] = _fit_or_skip(wide, unit, remaining, fit_mask, post_mask, fit_mask, ridge, solver, cutoff)
        draws.append(fitted[unit])

    distribution = PlaceboDistribution(tuple(draws))
    summary = distribution.summarize(real.att)
    z_stat, p_value = normal_p_value(real.att, summary.standard_error)
    status = STATUS_OK if np.isfinite(p_value) else STATUS_NA
    return CutoffEstimate(
        cutoff=cutoff,
        status=status,
        att=real.att,
        bias=summary.bias,
        att_bias_corrected=summary.att_bias_corrected,
        standard_error=summary.standard_error,
        z_stat=z_stat,
        p_value=p_value,
        n_pre_points=n_pre,
        n_draws_ok=summary.n_placebos,
        n_draws_skipped=summary.n_skipped,
        reason=None if status == STATUS_OK else "placebo standard error is zero or undefined",
        draws=distribution.outcomes,
    )


def temporal_placebo(
    wide: WideSlice,
    treated: Any,
    donors: Sequence[Any],
    cutoffs: Sequence[Any],
    *,
    n_draws: int = 20,
    min_pre_points: int = 3,
    seed: int = 1400,
    ridge: float = 1e-8,
    solver: str = "CLARABEL",
    parallel: bool = False,
    cores: Optional[int] = None,
) -> List[CutoffEstimate]:
    """
    Pseudo-treatment-date placebo over a sequence of cutoffs.

    For each cutoff the treated unit's weights are fitted on usable periods
    strictly before it, the full-span synthetic series is rescaled to the
    treated unit's pre-cutoff mean, and a pseudo-ATT is computed with the
    cutoff as event date. ``n_draws`` donors are then drawn with replacement;
    each draw is fitted the same way against the remaining donors, and the
    standard deviation of the draw ATTs gives the local standard error behind a
    z-statistic and a two-sided normal p-value.

    Cutoffs with fewer than ``min_pre_points`` usable pre-cutoff periods are
    skipped, and cutoffs whose standard error is zero or undefined are reported
    with NA inference rather than raising.

    Parameters
    ----------
    wide : WideSlice
        Wide panel over the full evaluation span.
    treated : Any
        Treated unit.
    donors : Sequence[Any]
        Donor pool.
    cutoffs : Sequence[date-like]
        Candidate cutoffs, typically from ``pseudo_cutoffs``.
    n_draws : int, default 20
        Single-donor placebo fits per cutoff.
    min_pre_points : int, default 3
        Minimum usable periods before a cutoff.
    seed : int, default 1400
        Base seed; each cutoff draws from its own generator seeded with
        ``(seed, cutoff position)`` so results do not depend on execution order.

    Returns
    -------
    List[CutoffEstimate]
        One entry per cutoff, in input order.
    """
    if n_draws < 1:
        raise PolicySynthConfigError("n_draws must be a positive integer.")
    pool = [d for d in donors if d != treated]
    if not pool:
        raise PolicySynthConfigError("Temporal placebo requires at least one donor unit.")

    jobs = []
    for position, cutoff in enumerate(cutoffs):
        rng = np.random.default_rng([seed, position])
        jobs.append((pd.Timestamp(cutoff), rng.integers(0, len(pool), size=n_draws)))

    def run(job: Tuple[pd.Timestamp, np.ndarray]) -> CutoffEstimate:
        cutoff, draw_indices = job
        logger.debug("Temporal placebo at cutoff %s", cutoff.date())
        return _estimate_cutoff(wide, treated, pool, cutoff, draw_indices, min_pre_points, ridge, solver)

    estimates = _map(run, jobs, parallel, cores)
    n_not_ok = sum(1 for e in estimates if e.status != STATUS_OK)
    if n_not_ok:
        warnings.warn(
            f"{n_not_ok} of {len(estimates)} pseudo-treatment cutoff(s) skipped or without inference.",
            UserWarning,
        )
    return estimates


# =======================
# Sensitivity runner
# =======================

@dataclass(frozen=True)
class SensitivityResult:
    """Independent full run for one named donor subset."""
    name: str
    donors: Tuple[Any, ...]
    status: str
    fit: Optional[UnitFit] = None
    summary: Optional[PlaceboSummary] = None
    reason: Optional[str] = None


def leave_one_out_subsets(donors: Sequence[Any]) -> Dict[str, List[Any]]:
    """Donor subsets that each omit one donor, keyed ``drop_<donor>``."""
    return {f"drop_{d}": [x for x in donors if x != d] for d in donors}


def run_sensitivity(
    wide: WideSlice,
    treated: Any,
    subsets: Mapping[str, Sequence[Any]],
    fit_mask: np.ndarray,
    post_mask: np.ndarray,
    rescale_mask: Optional[np.ndarray] = None,
    *,
    ridge: float = 1e-8,
    solver: str = "CLARABEL",
    parallel: bool = False,
    cores: Optional[int] = None,
) -> Dict[str, SensitivityResult]:
    """
    Repeat the estimate and its cross-sectional placebo for each donor subset.

    Subsets share nothing but the read-only wide panel. A subset whose main fit
    is infeasible is reported as skipped.
    """
    results: Dict[str, SensitivityResult] = {}
    for name, subset in subsets.items():
        subset = [d for d in subset if d != treated]
        try:
            fit = fit_unit(wide, treated, subset, fit_mask, post_mask, rescale_mask, ridge=ridge, solver=solver)
        except InfeasibleWeightsError as e:
            results[name] = SensitivityResult(
                name=name, donors=tuple(subset), status=STATUS_SKIPPED, reason=str(e),
            )
            continue
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", UserWarning)
            distribution = cross_sectional_placebo(
                wide, treated, subset, fit_mask, post_mask, rescale_mask,
                ridge=ridge, solver=solver, parallel=parallel, cores=cores,
            )
        results[name] = SensitivityResult(
            name=name,
            donors=tuple(subset),
            status=STATUS_OK,
            fit=fit,
            summary=distribution.summarize(fit.effect.att),
        )
        logger.info("Sensitivity subset %s: ATT %.6g", name, fit.effect.att)
    return results
