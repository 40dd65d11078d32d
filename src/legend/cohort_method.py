"""
Cohort method: propensity scores, stratification / matching and outcome models.

Per comparison the propensity model is fitted once on all covariates. Each
analysis then stratifies or matches the comparison's cohort on the propensity
score, and each outcome gets a Cox proportional-hazards model stratified by
propensity stratum (or matched set).
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Literal

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter
from lifelines.exceptions import ConvergenceError
import sklearn
from scipy import sparse
from sklearn.linear_model import LogisticRegression

from .calibration import calibrate_results
from .cohort_method_data import CohortMethodData, load_cohort_method_data
from .context import StudyContext
from .exposures import load_filtered_comparisons
from .population import TimeAtRisk, study_population

logger = logging.getLogger(__name__)

_PS_EPSILON = 1e-6


@dataclass(frozen=True)
class CmAnalysis:
    analysis_id: int
    description: str
    strategy: Literal["stratify", "match"]
    time_at_risk: TimeAtRisk


CM_ANALYSES: tuple[CmAnalysis, ...] = (
    CmAnalysis(1, "PS stratification, on-treatment", "stratify", "on_treatment"),
    CmAnalysis(2, "PS matching, on-treatment", "match", "on_treatment"),
    CmAnalysis(3, "PS stratification, intent-to-treat", "stratify", "intent_to_treat"),
    CmAnalysis(4, "PS matching, intent-to-treat", "match", "intent_to_treat"),
)

RESULT_COLUMNS = [
    "analysis_id",
    "target_id",
    "comparator_id",
    "outcome_id",
    "rr",
    "ci_95_lb",
    "ci_95_ub",
    "p",
    "log_rr",
    "se_log_rr",
    "target_subjects",
    "comparator_subjects",
    "target_days",
    "comparator_days",
    "target_outcomes",
    "comparator_outcomes",
]

REFERENCE_COLUMNS = [
    "analysis_id",
    "target_id",
    "comparator_id",
    "outcome_id",
    "outcome_type",
    "ps_file",
    "strat_pop_file",
]


# =============================================================================
# Propensity scores
# =============================================================================


def covariate_matrix(cohorts: pd.DataFrame, covariates: pd.DataFrame) -> sparse.csr_matrix:
    """Sparse row x covariate matrix aligned with ``cohorts`` row order."""
    row_index = pd.Series(np.arange(len(cohorts)), index=cohorts["row_id"].to_numpy())
    covariates = covariates[covariates["row_id"].isin(row_index.index)]
    column_ids = np.sort(covariates["covariate_id"].unique())
    column_index = pd.Series(np.arange(len(column_ids)), index=column_ids)
    return sparse.csr_matrix(
        (
            covariates["covariate_value"].to_numpy(dtype=float),
            (
                row_index.loc[covariates["row_id"]].to_numpy(),
                column_index.loc[covariates["covariate_id"]].to_numpy(),
            ),
        ),
        shape=(len(cohorts), len(column_ids)),
    )


def _sklearn_version() -> tuple[int, int]:
    major, minor = re.match(r"(\d+)\.(\d+)", sklearn.__version__).groups()
    return int(major), int(minor)


def l1_logistic_regression(regularization: float, random_seed: int) -> LogisticRegression:
    """L1-penalized liblinear logistic regression for the installed scikit-learn."""
    # scikit-learn 1.8 deprecates ``penalty`` in favour of ``l1_ratio``
    if _sklearn_version() >= (1, 8):
        penalty = {"l1_ratio": 1.0}
    else:
        penalty = {"penalty": "l1"}
    return LogisticRegression(
        solver="liblinear",
        C=regularization,
        max_iter=1000,
        random_state=random_seed,
        **penalty,
    )


def fit_propensity_model(
    data: CohortMethodData, regularization: float, random_seed: int
) -> pd.DataFrame:
    """
    Fit an L1-regularized logistic regression of treatment on covariates.

    Returns:
        DataFrame with row_id, treatment, propensity_score, preference_score

    Raises:
        ValueError: If the comparison lacks target or comparator rows
    """
    cohorts = data.cohorts
    treatment = cohorts["treatment"].to_numpy()
    if treatment.sum() == 0 or treatment.sum() == len(treatment):
        raise ValueError(
            f"Comparison t{data.target_id}_c{data.comparator_id} needs both target and comparator subjects"
        )

    X = covariate_matrix(cohorts, data.covariates)
    if X.shape[1] == 0:
        ps = np.full(len(cohorts), treatment.mean())
    else:
        model = l1_logistic_regression(regularization, random_seed)
        model.fit(X, treatment)
        ps = model.predict_proba(X)[:, 1]

    ps = np.clip(ps, _PS_EPSILON, 1 - _PS_EPSILON)
    proportion = treatment.mean()
    logit_pref = _logit(ps) - _logit(np.array([proportion]))[0]
    return pd.DataFrame(
        {
            "row_id": cohorts["row_id"].to_numpy(),
            "treatment": treatment,
            "propensity_score": ps,
            "preference_score": 1 / (1 + np.exp(-logit_pref)),
        }
    )


def _logit(p: np.ndarray) -> np.ndarray:
    p = np.clip(p, _PS_EPSILON, 1 - _PS_EPSILON)
    return np.log(p / (1 - p))


# =============================================================================
# Stratification and matching
# =============================================================================


def stratify_by_ps(ps: pd.DataFrame, number_of_strata: int) -> pd.DataFrame:
    """Assign ``stratum_id`` by propensity-score quantiles."""
    result = ps.copy()
    if result["propensity_score"].nunique() < 2 or number_of_strata == 1:
        result["stratum_id"] = 0
        return result
    strata = pd.qcut(result["propensity_score"], q=number_of_strata, labels=False, duplicates="drop")
    result["stratum_id"] = strata.fillna(0).astype("int64")
    return result


def match_on_ps(ps: pd.DataFrame, caliper: float, random_seed: int) -> pd.DataFrame:
    """
    Greedy 1:1 nearest-neighbour matching without replacement.

    Args:
        ps: Propensity scores with treatment
        caliper: Maximum distance in standard deviations of the logit PS
        random_seed: Seed for the order in which target rows are matched

    Returns:
        Matched rows only, with ``stratum_id`` identifying each matched pair
    """
    logit = _logit(ps["propensity_score"].to_numpy())
    max_distance = caliper * float(np.std(logit))
    treatment = ps["treatment"].to_numpy()

    target_idx = np.flatnonzero(treatment == 1)
    comparator_idx = np.flatnonzero(treatment == 0)
    order = np.argsort(logit[comparator_idx], kind="stable")
    comparator_idx = comparator_idx[order]
    comparator_logit = logit[comparator_idx]
    used = np.zeros(len(comparator_idx), dtype=bool)

    rng = np.random.default_rng(random_seed)
    pairs: list[tuple[int, int]] = []
    for t in rng.permutation(target_idx):
        value = logit[t]
        position = int(np.searchsorted(comparator_logit, value))
        best, best_distance = -1, np.inf

        left = position - 1
        while left >= 0 and value - comparator_logit[left] <= max_distance:
            if not used[left]:
                best, best_distance = left, value - comparator_logit[left]
                break
            left -= 1
        right = position
        while right < len(comparator_logit) and comparator_logit[right] - value <= max_distance:
            if not used[right]:
                if comparator_logit[right] - value < best_distance:
                    best = right
                break
            right += 1

        if best >= 0:
            used[best] = True
            pairs.append((t, comparator_idx[best]))

    stratum = np.full(len(ps), -1, dtype="int64")
    for set_id, (t, c) in enumerate(pairs):
        stratum[t] = set_id
        stratum[c] = set_id

    result = ps.copy()
    result["stratum_id"] = stratum
    return result[result["stratum_id"] >= 0].reset_index(drop=True)


def stratified_population(ps: pd.DataFrame, analysis: CmAnalysis, config) -> pd.DataFrame:
    if analysis.strategy == "stratify":
        return stratify_by_ps(ps, config.number_of_strata)
    if analysis.strategy == "match":
        return match_on_ps(ps, config.matching_caliper, config.random_seed)
    raise ValueError(f"Unknown strategy: {analysis.strategy}")


# =============================================================================
# Outcome model
# =============================================================================


def fit_outcome_model(population: pd.DataFrame) -> dict:
    """
    Stratified Cox model of the outcome on treatment.

    Args:
        population: Rows with treatment, stratum_id, outcome, survival_time

    Returns:
        Dict with counts and estimates; estimates are NaN when either group
        has no outcome or the model does not converge
    """
    target = population[population["treatment"] == 1]
    comparator = population[population["treatment"] == 0]
    row = {
        "target_subjects": int(target["subject_id"].nunique()),
        "comparator_subjects": int(comparator["subject_id"].nunique()),
        "target_days": int(target["survival_time"].sum()),
        "comparator_days": int(comparator["survival_time"].sum()),
        "target_outcomes": int(target["outcome"].sum()),
        "comparator_outcomes": int(comparator["outcome"].sum()),
        "rr": np.nan,
        "ci_95_lb": np.nan,
        "ci_95_ub": np.nan,
        "p": np.nan,
        "log_rr": np.nan,
        "se_log_rr": np.nan,
    }
    if row["target_outcomes"] == 0 or row["comparator_outcomes"] == 0:
        return row

    frame = population[["survival_time", "outcome", "treatment", "stratum_id"]]
    fitter = CoxPHFitter()
    try:
        fitter.fit(frame, duration_col="survival_time", event_col="outcome", strata=["stratum_id"])
    except ConvergenceError as exc:
        logger.warning(f"Outcome model did not converge: {exc}")
        return row

    summary = fitter.summary.loc["treatment"]
    row.update(
        {
            "log_rr": float(summary["coef"]),
            "se_log_rr": float(summary["se(coef)"]),
            "rr": float(summary["exp(coef)"]),
            "ci_95_lb": float(summary["exp(coef) lower 95%"]),
            "ci_95_ub": float(summary["exp(coef) upper 95%"]),
            "p": float(summary["p"]),
        }
    )
    return row


# =============================================================================
# Stage
# =============================================================================


def _outcome_types(ctx: StudyContext, target_id: int) -> dict[int, str]:
    types = {outcome_id: "outcome" for outcome_id in ctx.study.outcome_ids}
    types.update({outcome_id: "negative_control" for outcome_id in ctx.study.negative_control_ids})
    summary_file = ctx.paths.signal_injection_summary
    if summary_file.exists():
        injected = pd.read_csv(summary_file)
        for new_id in injected.loc[injected["exposure_id"] == target_id, "new_outcome_id"]:
            types[int(new_id)] = "positive_control"
    return types


def run_comparison(ctx: StudyContext, target_id: int, comparator_id: int) -> tuple[list[dict], list[dict]]:
    """Fit every analysis and outcome of one comparison.

    Returns:
        Tuple[result_rows, reference_rows]
    """
    config = ctx.config
    paths = ctx.paths
    data = load_cohort_method_data(ctx, target_id, comparator_id)

    ps = fit_propensity_model(data, config.ps_regularization, config.random_seed)
    ps_file = paths.ps_file(target_id, comparator_id)
    ps.to_parquet(ps_file, index=False)

    outcome_types = _outcome_types(ctx, target_id)
    results: list[dict] = []
    references: list[dict] = []
    for analysis in CM_ANALYSES:
        strata = stratified_population(ps, analysis, config)
        strat_file = paths.strat_pop_file(target_id, comparator_id, analysis.analysis_id)
        strata.to_parquet(strat_file, index=False)
        stratified_cohorts = data.cohorts.merge(strata[["row_id", "stratum_id"]], on="row_id")

        for outcome_id, outcome_type in outcome_types.items():
            population = study_population(
                stratified_cohorts, data.outcomes, outcome_id, analysis.time_at_risk
            )
            row = fit_outcome_model(population)
            row.update(
                {
                    "analysis_id": analysis.analysis_id,
                    "target_id": target_id,
                    "comparator_id": comparator_id,
                    "outcome_id": outcome_id,
                }
            )
            results.append(row)
            references.append(
                {
                    "analysis_id": analysis.analysis_id,
                    "target_id": target_id,
                    "comparator_id": comparator_id,
                    "outcome_id": outcome_id,
                    "outcome_type": outcome_type,
                    "ps_file": ps_file.name,
                    "strat_pop_file": strat_file.name,
                }
            )

    logger.info(f"Fitted {len(results)} outcome model(s) for t{target_id}_c{comparator_id}")
    return results, references


def run_cohort_method(ctx: StudyContext) -> None:
    """Write ``cmOutput/outcomeModelReference.csv`` and ``cmOutput/resultsSummary.csv``."""
    comparisons = load_filtered_comparisons(ctx)
    ctx.paths.cm_folder.mkdir(parents=True, exist_ok=True)
    pairs = [(int(t), int(c)) for t, c in comparisons.itertuples(index=False, name=None)]

    logger.info(f"Running cohort method for {len(pairs)} comparison(s) (workers={ctx.config.max_cores})")
    with ThreadPoolExecutor(max_workers=ctx.config.max_cores) as executor:
        outputs = list(executor.map(lambda pair: run_comparison(ctx, *pair), pairs))

    results = pd.DataFrame([row for rows, _ in outputs for row in rows], columns=RESULT_COLUMNS)
    references = pd.DataFrame(
        [row for _, refs in outputs for row in refs], columns=REFERENCE_COLUMNS
    )
    references.to_csv(ctx.paths.outcome_model_reference, index=False)

    results = calibrate_results(results, ctx.study.negative_control_ids)
    results.to_csv(ctx.paths.results_summary, index=False)
    logger.info(f"Wrote {len(results)} estimate(s) to {ctx.paths.results_summary}")
