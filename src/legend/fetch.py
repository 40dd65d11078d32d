"""Fetch cohorts, covariates and outcomes of all retained comparisons to local files."""

from __future__ import annotations

import logging

import pandas as pd

from .context import StudyContext
from .database import Connection
from .exposures import load_filtered_comparisons
from .sql import load_rendered_sql

logger = logging.getLogger(__name__)

LOOKBACK_DAYS = 365

ANALYSIS_NAMES = {
    1: "gender = {name}",
    3: "age group: {name}",
    6: "index year: {name}",
    102: "condition occurrence during 365d on or before index: {name}",
    402: "drug exposure during 365d before index: {name}",
}

# Analyses whose concept_id is an actual CDM concept
_CONCEPT_ANALYSES = (1, 102, 402)


def fetch_all_data_from_server(ctx: StudyContext) -> None:
    """Write allCohorts, pairedCohortMembership, allCovariates, covariateRef and allOutcomes."""
    config = ctx.config
    comparisons = load_filtered_comparisons(ctx)
    logger.info(f"Fetching data for {len(comparisons)} comparison(s)")

    with ctx.connect() as connection:
        connection.insert_table("comparisons", comparisons.astype("int64"))
        connection.execute_sql(
            load_rendered_sql(
                "UnionExposureCohorts.sql",
                cohort_database_schema=config.cohort_database_schema,
                paired_cohort_table=ctx.paired_table,
            )
        )

        cohorts = connection.query(
            load_rendered_sql("GetCohorts.sql", cdm_database_schema=config.cdm_database_schema)
        )
        logger.info(f"Fetched {len(cohorts)} exposure cohort entries")

        membership = connection.query(
            load_rendered_sql(
                "GetPairedCohortMembership.sql",
                cohort_database_schema=config.cohort_database_schema,
                paired_cohort_table=ctx.paired_table,
            )
        )

        covariates = connection.query(
            load_rendered_sql(
                "GetCovariates.sql",
                cdm_database_schema=config.cdm_database_schema,
                lookback_days=LOOKBACK_DAYS,
                excluded_concept_ids=ctx.study.exposure_concept_ids,
            )
        )
        covariate_ref = _build_covariate_ref(connection, ctx, covariates)
        logger.info(
            f"Fetched {len(covariates)} covariate values for {len(covariate_ref)} covariates"
        )

        outcomes = connection.query(
            load_rendered_sql(
                "GetOutcomes.sql",
                cdm_database_schema=config.cdm_database_schema,
                cohort_database_schema=config.cohort_database_schema,
                outcome_table=ctx.outcome_table,
            )
        )
        logger.info(f"Fetched {len(outcomes)} outcome events")

    covariates = covariates[["row_id", "covariate_id"]].astype("int64")
    covariates["covariate_value"] = 1.0

    cohorts.to_parquet(ctx.paths.all_cohorts, index=False)
    membership.astype("int64").to_parquet(ctx.paths.paired_membership, index=False)
    covariates.to_parquet(ctx.paths.all_covariates, index=False)
    covariate_ref.to_csv(ctx.paths.covariate_ref, index=False)
    outcomes.astype("int64").to_parquet(ctx.paths.all_outcomes, index=False)


def _build_covariate_ref(
    connection: Connection, ctx: StudyContext, covariates: pd.DataFrame
) -> pd.DataFrame:
    ref = (
        covariates[["covariate_id", "analysis_id", "concept_id"]]
        .drop_duplicates()
        .astype("int64")
        .sort_values("covariate_id")
        .reset_index(drop=True)
    )
    concept_ids = sorted(
        ref.loc[ref["analysis_id"].isin(_CONCEPT_ANALYSES), "concept_id"].unique().tolist()
    )
    names: dict[int, str] = {}
    if concept_ids:
        found = connection.query(
            load_rendered_sql(
                "GetConceptNames.sql",
                cdm_database_schema=ctx.config.cdm_database_schema,
                concept_ids=concept_ids,
            )
        )
        names = dict(zip(found["concept_id"].astype("int64"), found["concept_name"]))

    def describe(row: pd.Series) -> str:
        analysis_id = int(row["analysis_id"])
        concept_id = int(row["concept_id"])
        if analysis_id == 3:
            label = f"{concept_id * 5}-{concept_id * 5 + 4}"
        elif analysis_id in _CONCEPT_ANALYSES:
            label = names.get(concept_id, f"concept {concept_id}")
        else:
            label = str(concept_id)
        return ANALYSIS_NAMES[analysis_id].format(name=label)

    ref["covariate_name"] = ref.apply(describe, axis=1) if len(ref) else pd.Series(dtype=str)
    return ref[["covariate_id", "covariate_name", "analysis_id", "concept_id"]]
