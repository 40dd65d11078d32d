"""Exposure cohort construction and the cohort-size filter."""

from __future__ import annotations

import logging

import pandas as pd

from .context import StudyContext
from .sql import load_rendered_sql

logger = logging.getLogger(__name__)


def create_exposure_cohorts(ctx: StudyContext) -> None:
    """Instantiate exposure cohorts and their target/comparator pairs on the server.

    Writes ``exposureCohortCounts.csv`` and ``pairedExposureSummary.csv``.
    """
    config = ctx.config
    study = ctx.study
    schema = config.cohort_database_schema

    logger.info(f"Creating exposure cohorts in {schema}.{ctx.exposure_table}")
    with ctx.connect() as connection:
        connection.execute_sql(
            load_rendered_sql(
                "CreateCohortTable.sql",
                cohort_database_schema=schema,
                cohort_table=ctx.exposure_table,
            )
        )
        connection.insert_table("exposure_concepts", study.concept_frame("exposure"))
        connection.insert_table(
            "indication_concepts",
            pd.DataFrame({"concept_id": pd.Series(study.indication_concept_ids, dtype="int64")}),
        )
        connection.execute_sql(
            load_rendered_sql(
                "CreateExposureCohorts.sql",
                cdm_database_schema=config.cdm_database_schema,
                cohort_database_schema=schema,
                cohort_table=ctx.exposure_table,
                washout_days=config.washout_days,
                era_gap_days=config.era_gap_days,
                impute_exposure_length=config.impute_exposure_length_when_missing,
                imputed_exposure_days=config.imputed_exposure_days,
                require_indication=bool(study.indication_concept_ids),
            )
        )

        logger.info(f"Pairing exposure cohorts for {len(study.comparisons)} comparison(s)")
        connection.insert_table("comparisons", study.comparisons_frame())
        connection.execute_sql(
            load_rendered_sql(
                "CreatePairedExposureCohorts.sql",
                cohort_database_schema=schema,
                cohort_table=ctx.exposure_table,
                paired_cohort_table=ctx.paired_table,
            )
        )

        counts = connection.query(
            f"""
            SELECT cohort_definition_id,
                COUNT(*) AS cohort_count,
                COUNT(DISTINCT subject_id) AS person_count,
                MIN(cohort_start_date) AS min_date,
                MAX(cohort_start_date) AS max_date
            FROM {schema}.{ctx.exposure_table}
            GROUP BY cohort_definition_id
            """
        )
        paired = connection.query(
            f"""
            SELECT target_id,
                comparator_id,
                SUM(CASE WHEN cohort_definition_id = target_id THEN 1 ELSE 0 END) AS target_persons,
                SUM(CASE WHEN cohort_definition_id = comparator_id THEN 1 ELSE 0 END) AS comparator_persons,
                MIN(cohort_start_date) AS min_date,
                MAX(cohort_start_date) AS max_date
            FROM {schema}.{ctx.paired_table}
            GROUP BY target_id, comparator_id
            """
        )

    counts = _complete_counts(counts, study.exposure_ids)
    counts["exposure_name"] = counts["cohort_definition_id"].map(study.exposure_name)
    counts.to_csv(ctx.paths.exposure_cohort_counts, index=False)

    paired = study.comparisons_frame().merge(paired, on=["target_id", "comparator_id"], how="left")
    paired[["target_persons", "comparator_persons"]] = (
        paired[["target_persons", "comparator_persons"]].fillna(0).astype("int64")
    )
    paired.to_csv(ctx.paths.paired_exposure_summary, index=False)
    logger.info(f"Exposure cohorts created: {int(counts['person_count'].sum())} persons in total")


def _complete_counts(counts: pd.DataFrame, cohort_ids: list[int]) -> pd.DataFrame:
    """Add zero rows for cohorts without any subject, in definition order."""
    frame = pd.DataFrame({"cohort_definition_id": cohort_ids}).merge(
        counts, on="cohort_definition_id", how="left"
    )
    frame[["cohort_count", "person_count"]] = (
        frame[["cohort_count", "person_count"]].fillna(0).astype("int64")
    )
    return frame


def filter_by_exposure_cohorts_size(ctx: StudyContext) -> pd.DataFrame:
    """Keep comparisons where both paired cohorts reach the minimum size.

    Reads ``pairedExposureSummary.csv`` and writes
    ``pairedExposureSummaryFilteredBySize.csv``.

    Raises:
        FileNotFoundError: If exposure cohorts were never created
    """
    source = ctx.paths.paired_exposure_summary
    if not source.exists():
        raise FileNotFoundError(f"Paired exposure summary not found: {source}")

    summary = pd.read_csv(source)
    minimum = ctx.config.min_exposure_cohort_size
    keep = (summary["target_persons"] >= minimum) & (summary["comparator_persons"] >= minimum)
    filtered = summary[keep].reset_index(drop=True)
    filtered.to_csv(ctx.paths.paired_exposure_summary_filtered, index=False)

    dropped = len(summary) - len(filtered)
    if dropped:
        logger.warning(
            f"Dropped {dropped} of {len(summary)} comparison(s) with fewer than {minimum} persons per side"
        )
    return filtered


def load_filtered_comparisons(ctx: StudyContext) -> pd.DataFrame:
    """Retained (target_id, comparator_id) pairs.

    Raises:
        FileNotFoundError: If the size filter has not run
    """
    source = ctx.paths.paired_exposure_summary_filtered
    if not source.exists():
        raise FileNotFoundError(f"Filtered exposure summary not found: {source}")
    return pd.read_csv(source)[["target_id", "comparator_id"]]
