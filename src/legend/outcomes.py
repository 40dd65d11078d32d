"""Outcome cohort construction (outcomes of interest and negative controls)."""

from __future__ import annotations

import logging

import pandas as pd

from .context import StudyContext
from .sql import load_rendered_sql

logger = logging.getLogger(__name__)


def create_outcome_cohorts(ctx: StudyContext) -> None:
    """Instantiate outcome cohorts and write ``outcomeCohortCounts.csv``."""
    config = ctx.config
    study = ctx.study
    schema = config.cohort_database_schema
    definitions = study.outcomes + study.negative_controls

    if not definitions:
        raise ValueError("Study definition has no outcomes or negative controls")

    logger.info(
        f"Creating {len(study.outcomes)} outcome and {len(study.negative_controls)} "
        f"negative control cohort(s) in {schema}.{ctx.outcome_table}"
    )
    with ctx.connect() as connection:
        connection.execute_sql(
            load_rendered_sql(
                "CreateCohortTable.sql",
                cohort_database_schema=schema,
                cohort_table=ctx.outcome_table,
            )
        )
        connection.insert_table("outcome_concepts", study.concept_frame("outcome"))
        connection.execute_sql(
            load_rendered_sql(
                "CreateOutcomeCohorts.sql",
                cdm_database_schema=config.cdm_database_schema,
                cohort_database_schema=schema,
                cohort_table=ctx.outcome_table,
            )
        )
        counts = connection.query(
            f"""
            SELECT cohort_definition_id,
                COUNT(*) AS cohort_count,
                COUNT(DISTINCT subject_id) AS person_count
            FROM {schema}.{ctx.outcome_table}
            GROUP BY cohort_definition_id
            """
        )

    frame = pd.DataFrame(
        {
            "cohort_definition_id": [d.cohort_id for d in definitions],
            "outcome_name": [d.name for d in definitions],
            "negative_control": [d in study.negative_controls for d in definitions],
        }
    ).merge(counts, on="cohort_definition_id", how="left")
    frame[["cohort_count", "person_count"]] = (
        frame[["cohort_count", "person_count"]].fillna(0).astype("int64")
    )
    frame.to_csv(ctx.paths.outcome_cohort_counts, index=False)

    empty = frame.loc[frame["cohort_count"] == 0, "outcome_name"].tolist()
    if empty:
        logger.warning(f"Outcome cohorts without any subject: {', '.join(empty)}")
