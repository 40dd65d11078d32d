"""Per-comparison data objects: the cohorts, covariates and outcomes of one T/C pair."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from .context import StudyContext
from .exposures import load_filtered_comparisons
from .population import load_all_outcomes, read_parquet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CohortMethodData:
    target_id: int
    comparator_id: int
    cohorts: pd.DataFrame
    covariates: pd.DataFrame
    outcomes: pd.DataFrame


def save_cohort_method_data(data: CohortMethodData, folder: Path) -> None:
    folder.mkdir(parents=True, exist_ok=True)
    data.cohorts.to_parquet(folder / "cohorts.parquet", index=False)
    data.covariates.to_parquet(folder / "covariates.parquet", index=False)
    data.outcomes.to_parquet(folder / "outcomes.parquet", index=False)


def load_cohort_method_data(ctx: StudyContext, target_id: int, comparator_id: int) -> CohortMethodData:
    """
    Raises:
        FileNotFoundError: If the data object was never generated
    """
    folder = ctx.paths.cm_data_folder(target_id, comparator_id)
    return CohortMethodData(
        target_id=target_id,
        comparator_id=comparator_id,
        cohorts=read_parquet(folder / "cohorts.parquet"),
        covariates=read_parquet(folder / "covariates.parquet"),
        outcomes=read_parquet(folder / "outcomes.parquet"),
    )


def build_cohort_method_data(
    target_id: int,
    comparator_id: int,
    cohorts: pd.DataFrame,
    membership: pd.DataFrame,
    covariates: pd.DataFrame,
    outcomes: pd.DataFrame,
) -> CohortMethodData:
    """Slice the study-wide frames down to one comparison.

    The cohort rows get a ``treatment`` column: 1 for the target, 0 for the
    comparator.
    """
    pair_rows = membership.loc[
        (membership["target_id"] == target_id) & (membership["comparator_id"] == comparator_id),
        "row_id",
    ]
    pair_cohorts = cohorts[cohorts["row_id"].isin(pair_rows)].copy()
    pair_cohorts["treatment"] = (pair_cohorts["cohort_definition_id"] == target_id).astype("int64")
    pair_cohorts = pair_cohorts.sort_values("row_id").reset_index(drop=True)

    row_ids = pair_cohorts["row_id"]
    return CohortMethodData(
        target_id=target_id,
        comparator_id=comparator_id,
        cohorts=pair_cohorts,
        covariates=covariates[covariates["row_id"].isin(row_ids)].reset_index(drop=True),
        outcomes=outcomes[outcomes["row_id"].isin(row_ids)].reset_index(drop=True),
    )


def generate_all_cohort_method_data_objects(ctx: StudyContext) -> None:
    """Write ``cmOutput/CmData_t<t>_c<c>/`` for every retained comparison."""
    comparisons = load_filtered_comparisons(ctx)
    cohorts = read_parquet(ctx.paths.all_cohorts)
    membership = read_parquet(ctx.paths.paired_membership)
    covariates = read_parquet(ctx.paths.all_covariates)
    outcomes = load_all_outcomes(ctx.paths)
    ctx.paths.cm_folder.mkdir(parents=True, exist_ok=True)

    def generate(pair: tuple[int, int]) -> None:
        target_id, comparator_id = pair
        data = build_cohort_method_data(
            target_id, comparator_id, cohorts, membership, covariates, outcomes
        )
        save_cohort_method_data(data, ctx.paths.cm_data_folder(target_id, comparator_id))
        logger.info(
            f"Saved data object t{target_id}_c{comparator_id}: "
            f"{int(data.cohorts['treatment'].sum())} target, "
            f"{int((data.cohorts['treatment'] == 0).sum())} comparator rows"
        )

    pairs = [(int(t), int(c)) for t, c in comparisons.itertuples(index=False, name=None)]
    with ThreadPoolExecutor(max_workers=ctx.config.max_cores) as executor:
        list(executor.map(generate, pairs))
