"""
Covariate balance before and after propensity-score adjustment.

Covariates are binary, so each group's standard deviation is
sqrt(p * (1 - p)). The standardized difference divides the difference in
means by the pooled standard deviation of both groups. After adjustment,
per-stratum means are averaged with weights proportional to the number of
target subjects in the stratum.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pandas as pd

from .cohort_method import CM_ANALYSES
from .cohort_method_data import load_cohort_method_data
from .context import StudyContext
from .exposures import load_filtered_comparisons
from .population import read_parquet

logger = logging.getLogger(__name__)

BALANCE_COLUMNS = [
    "covariate_id",
    "covariate_name",
    "before_matching_mean_treated",
    "before_matching_mean_comparator",
    "before_matching_std_diff",
    "after_matching_mean_treated",
    "after_matching_mean_comparator",
    "after_matching_std_diff",
]


def standardized_difference(mean_treated, mean_comparator):
    """Standardized mean difference of binary covariates; 0 where both groups are constant."""
    mean_treated = np.asarray(mean_treated, dtype=float)
    mean_comparator = np.asarray(mean_comparator, dtype=float)
    pooled_sd = np.sqrt(
        (mean_treated * (1 - mean_treated) + mean_comparator * (1 - mean_comparator)) / 2
    )
    with np.errstate(divide="ignore", invalid="ignore"):
        smd = (mean_treated - mean_comparator) / pooled_sd
    return np.where(pooled_sd == 0, 0.0, smd)


def _group_means(covariates: pd.DataFrame, cohorts: pd.DataFrame) -> pd.DataFrame:
    sizes = cohorts.groupby("treatment").size().reindex([0, 1], fill_value=0)
    merged = covariates.merge(cohorts[["row_id", "treatment"]], on="row_id")
    totals = (
        merged.groupby(["covariate_id", "treatment"])["covariate_value"]
        .sum()
        .unstack(fill_value=0.0)
        .reindex(columns=[0, 1], fill_value=0.0)
    )
    return totals / sizes.replace(0, np.nan)


def _stratified_means(covariates: pd.DataFrame, strata: pd.DataFrame) -> pd.DataFrame | None:
    sizes = strata.groupby(["stratum_id", "treatment"]).size().rename("n").reset_index()
    arms = sizes.groupby("stratum_id")["treatment"].nunique()
    usable = arms[arms == 2].index
    if len(usable) == 0:
        return None
    sizes = sizes[sizes["stratum_id"].isin(usable)]

    target_sizes = sizes[sizes["treatment"] == 1].set_index("stratum_id")["n"]
    weights = (target_sizes / target_sizes.sum()).rename("weight").reset_index()

    merged = covariates.merge(strata[["row_id", "stratum_id", "treatment"]], on="row_id")
    merged = merged[merged["stratum_id"].isin(usable)]
    if merged.empty:
        return pd.DataFrame(columns=[0, 1], dtype=float)
    totals = (
        merged.groupby(["covariate_id", "stratum_id", "treatment"])["covariate_value"]
        .sum()
        .rename("total")
        .reset_index()
        .merge(sizes, on=["stratum_id", "treatment"])
        .merge(weights, on="stratum_id")
    )
    totals["weighted_mean"] = totals["total"] / totals["n"] * totals["weight"]
    means = (
        totals.groupby(["covariate_id", "treatment"])["weighted_mean"]
        .sum()
        .unstack(fill_value=0.0)
        .reindex(columns=[0, 1], fill_value=0.0)
    )
    return means


def compute_balance(
    cohorts: pd.DataFrame,
    covariates: pd.DataFrame,
    strata: pd.DataFrame,
    covariate_ref: pd.DataFrame | None = None,
) -> pd.DataFrame:
    """
    Balance of every covariate of one comparison and analysis.

    Args:
        cohorts: Comparison rows with row_id and treatment
        covariates: Long covariates (row_id, covariate_id, covariate_value)
        strata: Stratified or matched rows (row_id, treatment, stratum_id)
        covariate_ref: Optional covariate_id to covariate_name lookup

    Returns:
        DataFrame with ``BALANCE_COLUMNS``, one row per covariate
    """
    if covariates.empty:
        return pd.DataFrame(columns=BALANCE_COLUMNS)

    before = _group_means(covariates, cohorts)
    after = _stratified_means(covariates, strata)
    if after is None:
        after = pd.DataFrame(np.nan, index=before.index, columns=[0, 1])
    else:
        after = after.reindex(before.index, fill_value=0.0)

    balance = pd.DataFrame(
        {
            "covariate_id": before.index.astype("int64"),
            "before_matching_mean_treated": before[1].to_numpy(),
            "before_matching_mean_comparator": before[0].to_numpy(),
        }
    )
    balance["after_matching_mean_treated"] = after[1].to_numpy()
    balance["after_matching_mean_comparator"] = after[0].to_numpy()
    balance["before_matching_std_diff"] = standardized_difference(
        balance["before_matching_mean_treated"], balance["before_matching_mean_comparator"]
    )
    balance["after_matching_std_diff"] = standardized_difference(
        balance["after_matching_mean_treated"], balance["after_matching_mean_comparator"]
    )

    if covariate_ref is not None and len(covariate_ref):
        names = covariate_ref.set_index("covariate_id")["covariate_name"]
        balance["covariate_name"] = balance["covariate_id"].map(names)
    else:
        balance["covariate_name"] = pd.Series(dtype=object)
    return balance[BALANCE_COLUMNS]


def compute_covariate_balance(ctx: StudyContext) -> None:
    """Write ``balance/bal_t<t>_c<c>_a<a>.csv`` per comparison and analysis."""
    comparisons = load_filtered_comparisons(ctx)
    paths = ctx.paths
    paths.balance_folder.mkdir(parents=True, exist_ok=True)
    covariate_ref = pd.read_csv(paths.covariate_ref) if paths.covariate_ref.exists() else None

    def balance_comparison(pair: tuple[int, int]) -> None:
        target_id, comparator_id = pair
        data = load_cohort_method_data(ctx, target_id, comparator_id)
        for analysis in CM_ANALYSES:
            strata = read_parquet(paths.strat_pop_file(target_id, comparator_id, analysis.analysis_id))
            balance = compute_balance(data.cohorts, data.covariates, strata, covariate_ref)
            balance.to_csv(
                paths.balance_file(target_id, comparator_id, analysis.analysis_id), index=False
            )
            worst = np.nanmax(np.abs(balance["after_matching_std_diff"])) if len(balance) else np.nan
            logger.info(
                f"Balance t{target_id}_c{comparator_id}_a{analysis.analysis_id}: "
                f"max |std diff| after adjustment = {worst:.3f}"
            )

    pairs = [(int(t), int(c)) for t, c in comparisons.itertuples(index=False, name=None)]
    with ThreadPoolExecutor(max_workers=ctx.config.max_cores) as executor:
        list(executor.map(balance_comparison, pairs))
