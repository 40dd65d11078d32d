"""Incidence of each outcome of interest in each exposure cohort."""

from __future__ import annotations

import logging

import pandas as pd

from .context import StudyContext
from .population import read_parquet, study_population

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.25

INCIDENCE_COLUMNS = [
    "exposure_id",
    "outcome_id",
    "subjects",
    "days_at_risk",
    "outcomes",
    "incidence_rate_per_1000py",
]


def incidence_table(cohorts: pd.DataFrame, outcomes: pd.DataFrame, exposure_ids, outcome_ids) -> pd.DataFrame:
    """
    On-treatment incidence per exposure and outcome.

    Subjects with the outcome before index are excluded. Days at risk end at
    the first outcome.
    """
    rows = []
    for exposure_id in exposure_ids:
        exposure_cohorts = cohorts[cohorts["cohort_definition_id"] == exposure_id]
        for outcome_id in outcome_ids:
            population = study_population(exposure_cohorts, outcomes, outcome_id, "on_treatment")
            days = int(population["survival_time"].sum())
            events = int(population["outcome"].sum())
            rows.append(
                {
                    "exposure_id": exposure_id,
                    "outcome_id": outcome_id,
                    "subjects": int(population["subject_id"].nunique()),
                    "days_at_risk": days,
                    "outcomes": events,
                    "incidence_rate_per_1000py": (
                        1000 * events / (days / DAYS_PER_YEAR) if days else float("nan")
                    ),
                }
            )
    return pd.DataFrame(rows, columns=INCIDENCE_COLUMNS)


def compute_incidence(ctx: StudyContext) -> None:
    """Write ``incidence.csv``."""
    cohorts = read_parquet(ctx.paths.all_cohorts)
    outcomes = read_parquet(ctx.paths.all_outcomes)
    table = incidence_table(cohorts, outcomes, ctx.study.exposure_ids, ctx.study.outcome_ids)
    table.to_csv(ctx.paths.incidence, index=False)
    logger.info(f"Computed incidence for {len(table)} exposure-outcome combination(s)")
