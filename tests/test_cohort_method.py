"""Unit tests for propensity scores, stratification, matching and the outcome model."""

import warnings

import numpy as np
import pandas as pd
import pytest

from legend.cohort_method import (
    CM_ANALYSES,
    covariate_matrix,
    fit_outcome_model,
    fit_propensity_model,
    l1_logistic_regression,
    match_on_ps,
    stratify_by_ps,
)
from legend.cohort_method_data import CohortMethodData, build_cohort_method_data


def _comparison_data(n: int = 400, seed: int = 0) -> CohortMethodData:
    rng = np.random.default_rng(seed)
    confounder = rng.random(n) < 0.5
    treatment = (rng.random(n) < np.where(confounder, 0.7, 0.3)).astype("int64")
    cohorts = pd.DataFrame(
        {
            "row_id": np.arange(1, n + 1),
            "subject_id": np.arange(1, n + 1),
            "cohort_definition_id": np.where(treatment == 1, 1, 2),
            "treatment": treatment,
            "days_to_cohort_end": np.full(n, 180),
            "days_to_obs_end": np.full(n, 365),
        }
    )
    covariates = pd.DataFrame(
        {
            "row_id": cohorts.loc[confounder, "row_id"].to_numpy(),
            "covariate_id": 201826102,
            "covariate_value": 1.0,
        }
    )
    return CohortMethodData(1, 2, cohorts, covariates, pd.DataFrame(columns=["row_id", "outcome_id", "days_to_event"]))


class TestCovariateMatrix:
    """Test sparse design matrix construction."""

    def test_rows_follow_cohort_order(self):
        # Arrange
        cohorts = pd.DataFrame({"row_id": [30, 10, 20]})
        covariates = pd.DataFrame(
            {"row_id": [10, 20, 20, 99], "covariate_id": [5, 5, 7, 5], "covariate_value": [1.0, 1.0, 1.0, 1.0]}
        )

        # Act
        matrix = covariate_matrix(cohorts, covariates).toarray()

        # Assert
        assert matrix.tolist() == [[0.0, 0.0], [1.0, 0.0], [1.0, 1.0]]


class TestFitPropensityModel:
    """Test the propensity model."""

    def test_confounder_raises_propensity(self):
        # Arrange
        data = _comparison_data()

        # Act
        ps = fit_propensity_model(data, regularization=1.0, random_seed=1)

        # Assert
        confounded = ps["row_id"].isin(data.covariates["row_id"])
        assert ps.loc[confounded, "propensity_score"].mean() > ps.loc[~confounded, "propensity_score"].mean()
        assert ps["propensity_score"].between(0, 1).all()
        assert ps["preference_score"].between(0, 1).all()

    def test_requires_both_groups(self):
        # Arrange
        data = _comparison_data()
        cohorts = data.cohorts.assign(treatment=1)
        single_arm = CohortMethodData(1, 2, cohorts, data.covariates, data.outcomes)

        # Act & Assert
        with pytest.raises(ValueError, match="both target and comparator"):
            fit_propensity_model(single_arm, regularization=1.0, random_seed=1)

    def test_l1_penalty_zeroes_noise_coefficients(self):
        # Arrange
        rng = np.random.default_rng(5)
        X = (rng.random((300, 20)) < 0.3).astype(float)
        y = (rng.random(300) < 0.5).astype("int64")

        # Act
        with warnings.catch_warnings():
            warnings.simplefilter("error", FutureWarning)
            model = l1_logistic_regression(regularization=0.05, random_seed=1).fit(X, y)

        # Assert
        assert (model.coef_ == 0).sum() >= 10


class TestStratification:
    """Test propensity score stratification and matching."""

    def test_stratify_assigns_quantile_strata(self):
        # Arrange
        ps = pd.DataFrame(
            {
                "row_id": np.arange(100),
                "treatment": np.tile([0, 1], 50),
                "propensity_score": np.linspace(0.05, 0.95, 100),
            }
        )

        # Act
        strata = stratify_by_ps(ps, number_of_strata=5)

        # Assert
        assert sorted(strata["stratum_id"].unique()) == [0, 1, 2, 3, 4]
        assert strata.groupby("stratum_id").size().tolist() == [20] * 5

    def test_constant_scores_form_one_stratum(self):
        # Arrange
        ps = pd.DataFrame({"row_id": [1, 2, 3], "treatment": [1, 0, 1], "propensity_score": [0.5, 0.5, 0.5]})

        # Act
        strata = stratify_by_ps(ps, number_of_strata=10)

        # Assert
        assert strata["stratum_id"].tolist() == [0, 0, 0]

    def test_matching_pairs_one_target_with_one_comparator(self):
        # Arrange
        data = _comparison_data()
        ps = fit_propensity_model(data, regularization=1.0, random_seed=1)

        # Act
        matched = match_on_ps(ps, caliper=0.2, random_seed=1)

        # Assert
        sets = matched.groupby("stratum_id")["treatment"].agg(["size", "sum"])
        assert (sets["size"] == 2).all()
        assert (sets["sum"] == 1).all()
        assert matched["row_id"].is_unique
        # The two score levels are further apart than the caliper, so pairs stay within a level
        expected_pairs = sum(
            min(int(level["treatment"].sum()), int((level["treatment"] == 0).sum()))
            for _, level in ps.groupby("propensity_score")
        )
        assert len(sets) == expected_pairs

    def test_caliper_excludes_distant_pairs(self):
        # Arrange
        ps = pd.DataFrame(
            {
                "row_id": [1, 2, 3, 4],
                "treatment": [1, 1, 0, 0],
                "propensity_score": [0.10, 0.90, 0.11, 0.12],
            }
        )

        # Act
        matched = match_on_ps(ps, caliper=0.2, random_seed=1)

        # Assert
        assert 2 not in matched["row_id"].tolist()
        assert len(matched) == 2


class TestFitOutcomeModel:
    """Test the stratified Cox model."""

    @staticmethod
    def _population(hazard_ratio: float, n: int = 600, seed: int = 3) -> pd.DataFrame:
        rng = np.random.default_rng(seed)
        treatment = np.tile([0, 1], n // 2)
        event_time = rng.exponential(200 / np.where(treatment == 1, hazard_ratio, 1.0))
        censor = 180
        return pd.DataFrame(
            {
                "subject_id": np.arange(n),
                "treatment": treatment,
                "stratum_id": np.repeat(np.arange(n // 60), 60),
                "outcome": (event_time <= censor).astype("int64"),
                "survival_time": np.minimum(np.floor(event_time), censor) + 1,
            }
        )

    def test_recovers_hazard_ratio(self):
        # Arrange
        population = self._population(hazard_ratio=2.0)

        # Act
        result = fit_outcome_model(population)

        # Assert
        assert 1.5 < result["rr"] < 2.7
        assert result["ci_95_lb"] < result["rr"] < result["ci_95_ub"]
        assert result["p"] < 0.05
        assert result["target_subjects"] == 300
        assert result["target_outcomes"] + result["comparator_outcomes"] == population["outcome"].sum()

    def test_no_estimate_without_outcomes_in_one_group(self):
        # Arrange
        population = self._population(hazard_ratio=1.0)
        population.loc[population["treatment"] == 0, "outcome"] = 0

        # Act
        result = fit_outcome_model(population)

        # Assert
        assert result["comparator_outcomes"] == 0
        assert np.isnan(result["rr"])
        assert np.isnan(result["se_log_rr"])


class TestBuildCohortMethodData:
    """Test per-comparison slicing."""

    def test_slices_rows_of_the_comparison(self):
        # Arrange
        cohorts = pd.DataFrame({"row_id": [1, 2, 3], "cohort_definition_id": [1, 2, 3]})
        membership = pd.DataFrame({"target_id": [1, 1, 1], "comparator_id": [2, 2, 3], "row_id": [1, 2, 3]})
        covariates = pd.DataFrame({"row_id": [1, 3], "covariate_id": [8, 8], "covariate_value": [1.0, 1.0]})
        outcomes = pd.DataFrame({"row_id": [2, 3], "outcome_id": [5, 5], "days_to_event": [1, 1]})

        # Act
        data = build_cohort_method_data(1, 2, cohorts, membership, covariates, outcomes)

        # Assert
        assert data.cohorts["row_id"].tolist() == [1, 2]
        assert data.cohorts["treatment"].tolist() == [1, 0]
        assert data.covariates["row_id"].tolist() == [1]
        assert data.outcomes["row_id"].tolist() == [2]


class TestAnalyses:
    """Test the analysis settings."""

    def test_analysis_ids_are_unique(self):
        # Arrange & Act
        ids = [analysis.analysis_id for analysis in CM_ANALYSES]

        # Assert
        assert len(ids) == len(set(ids))
        assert {analysis.strategy for analysis in CM_ANALYSES} == {"stratify", "match"}
