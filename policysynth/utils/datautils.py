import calendar
import warnings
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Tuple, Any, Sequence, Union

import numpy as np
import pandas as pd
from pydantic import BaseModel, Field

from policysynth.exceptions import MalformedPanelError, PolicySynthDataError

# Canonical column names of the cleaned long panel
KEY_UNIT = "unit"
KEY_PERIOD = "period"
KEY_NUMERATOR = "numerator"
KEY_DENOMINATOR = "denominator"
KEY_RATE = "rate"

# Reasons recorded for rows dropped by load_panel
DROP_UNRESOLVED_UNIT = "unresolved_unit"
DROP_UNRESOLVED_PERIOD = "unresolved_period"
DROP_UNDEFINED_RATE = "undefined_rate"
DROP_UNDEFINED_AGGREGATE_RATE = "undefined_aggregate_rate"

_MONTH_LOOKUP: Dict[str, int] = {}
for _number in range(1, 13):
    _MONTH_LOOKUP[calendar.month_name[_number].lower()] = _number
    _MONTH_LOOKUP[calendar.month_abbr[_number].lower()] = _number
_MONTH_LOOKUP["sept"] = 9


class PanelColumns(BaseModel):
    """Column names of the raw long-format crash table."""
    unit: str = Field(default="state", description="Unit identifier column.")
    year: str = Field(default="year", description="Calendar year column.")
    month: str = Field(default="month", description="Month column, as a number or an English month name.")
    numerator: str = Field(default="crashes", description="Raw count column (numerator of the rate).")
    denominator: str = Field(default="exposure", description="Exposure column (denominator of the rate).")

    class Config:
        extra = "forbid"


@dataclass(frozen=True)
class Panel:
    """Cleaned long panel of unit-month rates.

    Attributes
    ----------
    observations : pd.DataFrame
        One row per (unit, period) with columns ``unit``, ``period``,
        ``numerator``, ``denominator``, ``rate`` and any carried covariates.
    dropped_rows : Dict[str, int]
        Number of raw rows discarded during loading, by reason.
    covariates : Tuple[str, ...]
        Names of the covariate columns carried from the raw data.
    """
    observations: pd.DataFrame
    dropped_rows: Dict[str, int] = field(default_factory=dict)
    covariates: Tuple[str, ...] = ()

    @property
    def units(self) -> List[Any]:
        return sorted(self.observations[KEY_UNIT].unique().tolist(), key=str)

    @property
    def periods(self) -> pd.DatetimeIndex:
        return pd.DatetimeIndex(sorted(self.observations[KEY_PERIOD].unique()))

    @property
    def n_dropped(self) -> int:
        return int(sum(self.dropped_rows.values()))

    def unit_covariate(self, name: str) -> pd.Series:
        """Per-unit value of a covariate, taken from the unit's first period."""
        if name not in self.observations.columns:
            raise PolicySynthDataError(f"Covariate '{name}' is not part of the panel.")
        ordered = self.observations.sort_values([KEY_UNIT, KEY_PERIOD])
        return ordered.groupby(KEY_UNIT)[name].first()


@dataclass(frozen=True)
class WideSlice:
    """Time-indexed rate table with one column per unit.

    The frame is treated as read-only; every accessor returns a new object.
    """
    frame: pd.DataFrame

    @property
    def periods(self) -> pd.DatetimeIndex:
        return pd.DatetimeIndex(self.frame.index)

    @property
    def units(self) -> List[Any]:
        return list(self.frame.columns)

    def series(self, unit: Any) -> pd.Series:
        if unit not in self.frame.columns:
            raise PolicySynthDataError(f"Unit '{unit}' is not present in the wide panel.")
        return self.frame[unit].copy()

    def donors(self, units: Sequence[Any]) -> pd.DataFrame:
        missing = [u for u in units if u not in self.frame.columns]
        if missing:
            raise PolicySynthDataError(f"Donor unit(s) not present in the wide panel: {missing}")
        return self.frame.loc[:, list(units)].copy()

    def mask_before(self, date: Union[str, pd.Timestamp]) -> np.ndarray:
        """Boolean mask of periods strictly before ``date``."""
        return np.asarray(self.periods < pd.Timestamp(date))

    def mask_from(self, date: Union[str, pd.Timestamp]) -> np.ndarray:
        """Boolean mask of periods on or after ``date``."""
        return np.asarray(self.periods >= pd.Timestamp(date))

    def restrict(self, start: Optional[Any] = None, end: Optional[Any] = None) -> "WideSlice":
        return WideSlice(self.frame.loc[_period_slice(start, end)].copy())


def _period_slice(start: Optional[Any], end: Optional[Any]) -> slice:
    return slice(
        pd.Timestamp(start) if start is not None else None,
        pd.Timestamp(end) if end is not None else None,
    )


def resolve_month(value: Any) -> Optional[int]:
    """Map a month given as a number, numeric string or English name to 1..12.

    Returns None when the value cannot be resolved.
    """
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None
    if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
        return int(value) if 1 <= int(value) <= 12 else None
    if isinstance(value, (float, np.floating)):
        return int(value) if float(value).is_integer() and 1 <= value <= 12 else None
    text = str(value).strip().lower().rstrip(".")
    if text.isdigit():
        number = int(text)
        return number if 1 <= number <= 12 else None
    return _MONTH_LOOKUP.get(text)


def resolve_periods(years: pd.Series, months: pd.Series) -> pd.Series:
    """Build month-start timestamps from year and month columns (NaT if unresolvable)."""
    numeric_years = pd.to_numeric(years, errors="coerce")
    month_numbers = months.map(resolve_month)
    # Whole years only, strictly inside the nanosecond timestamp range.
    valid_years = numeric_years.between(pd.Timestamp.min.year + 1, pd.Timestamp.max.year - 1)
    periods = []
    for year, month, in_range in zip(numeric_years, month_numbers, valid_years):
        if not in_range or pd.isna(month) or not float(year).is_integer():
            periods.append(pd.NaT)
        else:
            periods.append(pd.Timestamp(year=int(year), month=int(month), day=1))
    return pd.Series(periods, index=years.index, dtype="datetime64[ns]")


def load_panel(
    raw_df: pd.DataFrame,
    columns: Optional[PanelColumns] = None,
    covariates: Sequence[str] = (),
) -> Panel:
    """Validate raw rows and build the cleaned long panel.

    Rows with a missing unit, an unresolvable year/month, or an undefined rate
    (missing or non-finite numerator or denominator, or a zero denominator) are
    dropped and counted by reason. Duplicate (unit, period) rows are aggregated
    by summing numerator and denominator before the rate is derived; covariates
    keep their first value. A group whose summed rate is still undefined is
    dropped, its rows counted under their own reason.

    Parameters
    ----------
    raw_df : pd.DataFrame
        Raw long-format table.
    columns : PanelColumns, optional
        Column mapping. Defaults to ``PanelColumns()``.
    covariates : Sequence[str]
        Additional unit-level columns to carry (e.g. population density).

    Returns
    -------
    Panel
        Immutable cleaned panel.

    Raises
    ------
    MalformedPanelError
        If required columns are missing or no valid row remains.
    """
    columns = columns or PanelColumns()
    if not isinstance(raw_df, pd.DataFrame):
        raise MalformedPanelError("Raw panel data must be a pandas DataFrame.")

    required = [columns.unit, columns.year, columns.month, columns.numerator, columns.denominator]
    missing_columns = [c for c in list(required) + list(covariates) if c not in raw_df.columns]
    if missing_columns:
        raise MalformedPanelError(
            f"Missing required columns in raw panel: {', '.join(sorted(set(map(str, missing_columns))))}"
        )

    frame = pd.DataFrame({
        KEY_UNIT: raw_df[columns.unit],
        KEY_PERIOD: resolve_periods(raw_df[columns.year], raw_df[columns.month]),
        KEY_NUMERATOR: pd.to_numeric(raw_df[columns.numerator], errors="coerce"),
        KEY_DENOMINATOR: pd.to_numeric(raw_df[columns.denominator], errors="coerce"),
    })
    for name in covariates:
        frame[name] = raw_df[name]

    dropped: Dict[str, int] = {}

    unit_missing = frame[KEY_UNIT].isna()
    dropped[DROP_UNRESOLVED_UNIT] = int(unit_missing.sum())
    frame = frame.loc[~unit_missing]

    period_missing = frame[KEY_PERIOD].isna()
    dropped[DROP_UNRESOLVED_PERIOD] = int(period_missing.sum())
    frame = frame.loc[~period_missing]

    # A zero denominator leaves the rate undefined; it is excluded, never zero-filled.
    rate_undefined = (
        ~np.isfinite(frame[KEY_NUMERATOR])
        | ~np.isfinite(frame[KEY_DENOMINATOR])
        | (frame[KEY_DENOMINATOR] == 0)
    )
    dropped[DROP_UNDEFINED_RATE] = int(rate_undefined.sum())
    frame = frame.loc[~rate_undefined]

    if frame.empty:
        raise MalformedPanelError("No valid panel observations remain after validation.")

    frame = frame.assign(_rows=1)
    aggregations: Dict[str, str] = {KEY_NUMERATOR: "sum", KEY_DENOMINATOR: "sum", "_rows": "sum"}
    for name in covariates:
        aggregations[name] = "first"
    observations = (
        frame.groupby([KEY_UNIT, KEY_PERIOD], sort=True)
        .agg(aggregations)
        .reset_index()
    )
    observations[KEY_RATE] = observations[KEY_NUMERATOR] / observations[KEY_DENOMINATOR]
    # Summed denominators of opposite sign can still cancel to zero.
    aggregate_undefined = ~np.isfinite(observations[KEY_RATE])
    dropped[DROP_UNDEFINED_AGGREGATE_RATE] = int(observations.loc[aggregate_undefined, "_rows"].sum())
    observations = (
        observations.loc[~aggregate_undefined]
        .drop(columns="_rows")
        .reset_index(drop=True)
    )
    if observations.empty:
        raise MalformedPanelError("No valid panel observations remain after aggregation.")

    n_dropped = sum(dropped.values())
    if n_dropped:
        details = ", ".join(f"{reason}: {count}" for reason, count in dropped.items() if count)
        warnings.warn(f"Dropped {n_dropped} raw panel row(s) during validation ({details}).", UserWarning)

    return Panel(observations=observations, dropped_rows=dropped, covariates=tuple(covariates))


def to_wide(panel: Panel, start: Optional[Any] = None, end: Optional[Any] = None) -> WideSlice:
    """Pivot the panel's rates into a (period x unit) table.

    Parameters
    ----------
    panel : Panel
        Cleaned long panel.
    start, end : date-like, optional
        Inclusive period bounds.

    Returns
    -------
    WideSlice
        Wide projection; cells with no observation are NaN.

    Raises
    ------
    MalformedPanelError
        If any (unit, period) pair occurs more than once.
    """
    observations = panel.observations
    duplicated = observations.duplicated([KEY_UNIT, KEY_PERIOD])
    if duplicated.any():
        raise MalformedPanelError(
            f"Ambiguous panel: {int(duplicated.sum())} duplicate (unit, period) pair(s) found. "
            "Each combination of unit and period must be unique."
        )

    wide = observations.pivot(index=KEY_PERIOD, columns=KEY_UNIT, values=KEY_RATE).sort_index()
    wide.columns.name = None
    wide = wide.loc[_period_slice(start, end)]
    if wide.empty:
        raise MalformedPanelError("No periods fall inside the requested range.")
    return WideSlice(wide)


def balance(wide: WideSlice, units: Sequence[Any], mask: Optional[np.ndarray] = None) -> List[Any]:
    """Return the units that have a missing cell inside ``mask`` (all periods if None)."""
    frame = wide.donors(units)
    if mask is not None:
        frame = frame.loc[np.asarray(mask, dtype=bool)]
    return [u for u in units if frame[u].isna().any()]
