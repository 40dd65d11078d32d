"""
Chronograph data: outcome counts in 30-day periods around exposure start.

Expected counts assume the outcome occurs in every exposure at the rate
observed across all exposures in the same period. The information component
compares observed to expected with a shrinkage of 0.5 on both sides.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from .context import StudyContext
from .sql import load_rendered_sql

logger = logging.getLogger(__name__)

PERIOD_LENGTH_DAYS = 30
PERIODS_BEFORE = 36
PERIODS_AFTER = 36

CHRONOGRAPH_COLUMNS = [
    "exposure_id",
    "outcome_id",
    "period_id",
    "observed_count",
    "outcome_count",
    "expected_count",
    "ic",
]


def chronograph_periods() -> pd.DataFrame:
    period_ids = np.arange(-PERIODS_BEFORE, PERIODS_AFTER + 1, dtype="int64")
    return pd.DataFrame(
        {
            "period_id": period_ids,
            "start_day": period_ids * PERIOD_LENGTH_DAYS,
            "end_day": period_ids * PERIOD_LENGTH_DAYS + PERIOD_LENGTH_DAYS - 1,
        }
    )


def chronograph_table(
    exposure_counts: pd.DataFrame, outcome_counts: pd.DataFrame, outcome_ids: list[int]
) -> pd.DataFrame:
    """
    Combine server counts into observed, expected and IC per exposure, outcome, period.

    Args:
        exposure_counts: exposure_id, period_id, observed_count
        outcome_counts: exposure_id, outcome_id, period_id, outcome_count
        outcome_ids: Outcomes to report, including those never observed
    """
    grid = exposure_counts.merge(pd.DataFrame({"outcome_id": outcome_ids}), how="cross")
    table = grid.merge(outcome_counts, on=["exposure_id", "outcome_id", "period_id"], how="left")
    table["outcome_count"] = table["outcome_count"].fillna(0).astype("int64")
    table["observed_count"] = table["observed_count"].astype("int64")

    period_totals = table.groupby(["outcome_id", "period_id"]).agg(
        all_observed=("observed_count", "sum"), all_outcomes=("outcome_count", "sum")
    ).reset_index()
    table = table.merge(period_totals, on=["outcome_id", "period_id"], how="left")
    rate = table["all_outcomes"] / table["all_observed"].where(table["all_observed"] > 0)
    table["expected_count"] = (table["observed_count"] * rate).fillna(0.0)
    table["ic"] = np.log2((table["outcome_count"] + 0.5) / (table["expected_count"] + 0.5))
    return (
        table[CHRONOGRAPH_COLUMNS]
        .sort_values(["exposure_id", "outcome_id", "period_id"])
        .reset_index(drop=True)
    )


def fetch_chronograph_data(ctx: StudyContext) -> None:
    """Query period counts from the server and write ``chronographData.csv``."""
    config = ctx.config
    outcome_ids = ctx.study.outcome_ids
    logger.info(f"Fetching chronograph counts for {len(outcome_ids)} outcome(s)")

    with ctx.connect() as connection:
        connection.insert_table("chronograph_periods", chronograph_periods())
        exposure_counts = connection.query(
            load_rendered_sql(
                "GetChronographExposureCounts.sql",
                cdm_database_schema=config.cdm_database_schema,
                cohort_database_schema=config.cohort_database_schema,
                exposure_table=ctx.exposure_table,
            )
        )
        outcome_counts = connection.query(
            load_rendered_sql(
                "GetChronographOutcomeCounts.sql",
                cohort_database_schema=config.cohort_database_schema,
                exposure_table=ctx.exposure_table,
                outcome_table=ctx.outcome_table,
                outcome_ids=outcome_ids or [0],
            )
        )

    for frame in (exposure_counts, outcome_counts):
        for column in frame.columns:
            frame[column] = frame[column].astype("int64")

    table = chronograph_table(exposure_counts, outcome_counts, outcome_ids)
    table.to_csv(ctx.paths.chronograph, index=False)
    logger.info(f"Wrote {len(table)} chronograph row(s)")
