import pytest
import pandas as pd
from pydantic import ValidationError
from typing import Dict, Any

from policysynth.exceptions import PolicySynthDataError, PolicySynthConfigError
from policysynth.config_models import AnalysisConfig, EffectsResults
from policysynth.utils.datautils import PanelColumns


@pytest.fixture
def base_config_data(raw_panel: pd.DataFrame) -> Dict[str, Any]:
    return {
        "df": raw_panel,
        "treated_unit": "OR",
        "event_date": "2021-02-01",
    }


def test_analysis_config_valid(base_config_data: Dict[str, Any]):
    config = AnalysisConfig(**base_config_data)
    assert config.event_date == pd.Timestamp("2021-02-01")
    assert config.pre_period_cutoff is None
    assert config.donors is None
    assert config.n_temporal_draws == 20
    assert config.min_history_months == 24
    assert config.min_pre_points == 3
    assert config.ridge == 1e-8
    assert config.solver == "CLARABEL"
    assert config.rescale is False
    assert isinstance(config.columns, PanelColumns)


def test_analysis_config_parses_dates(base_config_data: Dict[str, Any]):
    config = AnalysisConfig(
        **base_config_data,
        placebo_event_date="2020-07-01",
        pre_period_cutoff=pd.Timestamp("2020-12-01"),
        start="2018-06-01",
        end="2022-06-01",
    )
    assert config.placebo_event_date == pd.Timestamp("2020-07-01")
    assert config.pre_period_cutoff == pd.Timestamp("2020-12-01")
    assert config.start == pd.Timestamp("2018-06-01")
    assert config.end == pd.Timestamp("2022-06-01")


def test_analysis_config_missing_required(base_config_data: Dict[str, Any]):
    incomplete = base_config_data.copy()
    del incomplete["treated_unit"]
    with pytest.raises(ValidationError):
        AnalysisConfig(**incomplete)


def test_analysis_config_forbids_extra(base_config_data: Dict[str, Any]):
    with pytest.raises(ValidationError):
        AnalysisConfig(**base_config_data, display_graphs=True)


@pytest.mark.parametrize("field, value", [
    ("n_temporal_draws", 0),
    ("min_pre_points", 0),
    ("ridge", -1.0),
    ("cores", 0),
])
def test_analysis_config_numeric_bounds(base_config_data: Dict[str, Any], field: str, value: Any):
    with pytest.raises(ValidationError):
        AnalysisConfig(**base_config_data, **{field: value})


def test_df_empty(base_config_data: Dict[str, Any]):
    config_data = base_config_data.copy()
    config_data["df"] = pd.DataFrame()
    with pytest.raises(PolicySynthDataError, match="Input DataFrame 'df' cannot be empty."):
        AnalysisConfig(**config_data)


def test_df_wrong_type(base_config_data: Dict[str, Any]):
    config_data = base_config_data.copy()
    config_data["df"] = [1, 2, 3]
    with pytest.raises(PolicySynthDataError, match="must be a pandas DataFrame"):
        AnalysisConfig(**config_data)


def test_df_may_be_loaded_panel(base_config_data: Dict[str, Any], panel):
    config = AnalysisConfig(**{**base_config_data, "df": panel})
    assert config.df is panel


def test_invalid_date(base_config_data: Dict[str, Any]):
    with pytest.raises(PolicySynthConfigError, match="'event_date' is not a valid date"):
        AnalysisConfig(**{**base_config_data, "event_date": "not a date"})


def test_cutoff_after_event(base_config_data: Dict[str, Any]):
    with pytest.raises(PolicySynthConfigError, match="pre_period_cutoff cannot be later than event_date"):
        AnalysisConfig(**base_config_data, pre_period_cutoff="2021-06-01")


def test_start_after_end(base_config_data: Dict[str, Any]):
    with pytest.raises(PolicySynthConfigError, match="start cannot be later than end"):
        AnalysisConfig(**base_config_data, start="2022-01-01", end="2021-01-01")


def test_treated_in_donors(base_config_data: Dict[str, Any]):
    with pytest.raises(PolicySynthConfigError, match="treated unit cannot be part of the donor pool"):
        AnalysisConfig(**base_config_data, donors=["WA", "OR"])


def test_empty_donors(base_config_data: Dict[str, Any]):
    with pytest.raises(PolicySynthConfigError, match="donors cannot be an empty list"):
        AnalysisConfig(**base_config_data, donors=[])


def test_duplicate_donors(base_config_data: Dict[str, Any]):
    with pytest.raises(PolicySynthConfigError, match="duplicate"):
        AnalysisConfig(**base_config_data, donors=["WA", "WA"])


def test_donor_subset_checks(base_config_data: Dict[str, Any]):
    with pytest.raises(PolicySynthConfigError, match="Donor subset 'west' cannot be empty"):
        AnalysisConfig(**base_config_data, donor_subsets={"west": []})
    with pytest.raises(PolicySynthConfigError, match="contains the treated unit"):
        AnalysisConfig(**base_config_data, donor_subsets={"west": ["WA", "OR"]})


def test_treat_column_requires_regression(base_config_data: Dict[str, Any]):
    with pytest.raises(PolicySynthConfigError, match="treat_column"):
        AnalysisConfig(**base_config_data, treat_column="treated_post")
    config = AnalysisConfig(**base_config_data, treat_column="treated_post", run_regression_check=True)
    assert config.treat_column == "treated_post"


def test_effects_results_defaults():
    effects = EffectsResults(att=0.5)
    assert effects.att == 0.5
    assert effects.att_bias_corrected is None
