"""Unit tests for risk windows and study populations."""

import pandas as pd
import pytest

from legend.population import outcome_summary, read_parquet, risk_window_end, study_population


@pytest.fixture
def cohorts():
    return pd.DataFrame(
        {
            "row_id": [1, 2, 3, 4],
            "subject_id": [10, 20, 30, 40],
            "days_to_cohort_end": [30, 100, 50, 0],
            "days_to_obs_end": [200, 60, 500, 300],
        }
    )


@pytest.fixture
def outcomes():
    return pd.DataFrame(
        {
            "row_id": [1, 1, 2, 3, 3],
            "outcome_id": [7, 7, 7, 7, 8],
            "days_to_event": [10, 20, 90, -5, 3],
        }
    )


class TestRiskWindowEnd:
    """Test time-at-risk definitions."""

    def test_on_treatment_stops_at_cohort_or_observation_end(self, cohorts):
        # Arrange & Act
        end = risk_window_end(cohorts, "on_treatment")

        # Assert
        assert end.tolist() == [30, 60, 50, 0]

    def test_intent_to_treat_runs_to_observation_end(self, cohorts):
        # Arrange & Act
        end = risk_window_end(cohorts, "intent_to_treat")

        # Assert
        assert end.tolist() == [200, 60, 500, 300]

    def test_unknown_time_at_risk_raises(self, cohorts):
        # Arrange & Act & Assert
        with pytest.raises(ValueError):
            risk_window_end(cohorts, "forever")


class TestOutcomeSummary:
    """Test per-row outcome status."""

    def test_first_event_in_window(self, cohorts, outcomes):
        # Arrange & Act
        summary = outcome_summary(cohorts, outcomes, 7, "on_treatment").set_index("row_id")

        # Assert
        assert summary.loc[1, "days_to_event"] == 10
        assert summary.loc[1, "outcome_count"] == 2
        assert summary.loc[1, "survival_time"] == 11
        # Event after the window is not counted
        assert pd.isna(summary.loc[2, "days_to_event"])
        assert summary.loc[2, "survival_time"] == 61

    def test_prior_outcome_flagged(self, cohorts, outcomes):
        # Arrange & Act
        summary = outcome_summary(cohorts, outcomes, 7, "on_treatment").set_index("row_id")

        # Assert
        assert summary.loc[3, "prior_outcome"]
        assert not summary.loc[1, "prior_outcome"]


class TestStudyPopulation:
    """Test population restrictions."""

    def test_removes_prior_outcomes_and_zero_day_windows(self, cohorts, outcomes):
        # Arrange & Act
        population = study_population(cohorts, outcomes, 7, "on_treatment")

        # Assert
        assert population["row_id"].tolist() == [1, 2]
        assert population["outcome"].tolist() == [1, 0]

    def test_other_outcomes_do_not_matter(self, cohorts, outcomes):
        # Arrange & Act
        population = study_population(cohorts, outcomes, 8, "intent_to_treat")

        # Assert
        assert population["row_id"].tolist() == [1, 2, 3, 4]
        assert population["outcome"].tolist() == [0, 0, 1, 0]


class TestReadParquet:
    """Test intermediate file access."""

    def test_missing_file_raises(self, tmp_path):
        # Arrange & Act & Assert
        with pytest.raises(FileNotFoundError):
            read_parquet(tmp_path / "missing.parquet")
