# tests/conftest.py
from typing import Dict

import numpy as np
import pandas as pd
import pytest

from policysynth.utils.datautils import load_panel, to_wide

MONTHS = pd.date_range("2018-01-01", "2022-12-01", freq="MS")
EVENT_DATE = pd.Timestamp("2021-02-01")
TRUE_EFFECT = 0.002


def _long_frame(rates: Dict[str, np.ndarray], months: pd.DatetimeIndex, exposure: float = 1e5) -> pd.DataFrame:
    frames = []
    for state, values in rates.items():
        frames.append(pd.DataFrame({
            "state": state,
            "year": months.year,
            "month": months.month,
            "crashes": np.asarray(values, dtype=float) * exposure,
            "exposure": exposure,
        }))
    return pd.concat(frames, ignore_index=True)


@pytest.fixture
def make_raw_panel():
    """Factory turning {state: monthly rates} into a raw long crash table."""
    def _make(rates: Dict[str, np.ndarray], start: str = "2018-01-01", exposure: float = 1e5) -> pd.DataFrame:
        n = len(next(iter(rates.values())))
        months = pd.date_range(start, periods=n, freq="MS")
        return _long_frame(rates, months, exposure)
    return _make


@pytest.fixture
def state_rates() -> Dict[str, np.ndarray]:
    """Monthly crash rates for six states; OR is half WA plus half ID with a post-event shift."""
    rng = np.random.default_rng(110)
    t = np.arange(len(MONTHS))
    rates = {}
    for i, state in enumerate(["WA", "ID", "NV", "CA", "MT"]):
        level = 0.010 + 0.004 * i
        seasonal = 0.001 * np.sin(2 * np.pi * t / 12 + i)
        rates[state] = level + seasonal + rng.normal(0, 0.0002, len(t))
    post = MONTHS >= EVENT_DATE
    rates["OR"] = 0.5 * rates["WA"] + 0.5 * rates["ID"] + TRUE_EFFECT * post
    return rates


@pytest.fixture
def raw_panel(state_rates, make_raw_panel) -> pd.DataFrame:
    df = make_raw_panel(state_rates)
    density = {"WA": 117.0, "ID": 22.0, "NV": 28.0, "CA": 253.0, "MT": 7.4, "OR": 44.0}
    df["density"] = df["state"].map(density)
    period = pd.to_datetime(pd.DataFrame({"year": df["year"], "month": df["month"], "day": 1}))
    df["treated_post"] = ((df["state"] == "OR") & (period >= EVENT_DATE)).astype(int)
    return df


@pytest.fixture
def panel(raw_panel):
    return load_panel(raw_panel, covariates=["density", "treated_post"])


@pytest.fixture
def wide(panel):
    return to_wide(panel)
