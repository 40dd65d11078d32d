"""Helpers shared by stages that work on the fetched cohort files."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import numpy as np
import pandas as pd

from .context import StudyPaths

TimeAtRisk = Literal["on_treatment", "intent_to_treat"]


def read_parquet(path: Path) -> pd.DataFrame:
    """Read an intermediate parquet file.

    Raises:
        FileNotFoundError: If the producing stage has not run
    """
    if not path.exists():
        raise FileNotFoundError(f"Intermediate file not found: {path}")
    return pd.read_parquet(path)


def load_all_outcomes(paths: StudyPaths) -> pd.DataFrame:
    """Fetched outcomes plus injected positive-control outcomes, when present."""
    outcomes = read_parquet(paths.all_outcomes)
    if paths.injected_outcomes.exists():
        outcomes = pd.concat([outcomes, pd.read_parquet(paths.injected_outcomes)], ignore_index=True)
    return outcomes


def risk_window_end(cohorts: pd.DataFrame, time_at_risk: TimeAtRisk) -> pd.Series:
    """Last day at risk relative to index, per cohort row."""
    if time_at_risk == "on_treatment":
        end = np.minimum(cohorts["days_to_cohort_end"], cohorts["days_to_obs_end"])
    elif time_at_risk == "intent_to_treat":
        end = cohorts["days_to_obs_end"]
    else:
        raise ValueError(f"Unknown time at risk: {time_at_risk}")
    return pd.Series(np.asarray(end, dtype="int64"), index=cohorts.index)


def outcome_summary(
    cohorts: pd.DataFrame,
    outcomes: pd.DataFrame,
    outcome_id: int,
    time_at_risk: TimeAtRisk,
) -> pd.DataFrame:
    """
    Per-row outcome status for a single outcome.

    Args:
        cohorts: Cohort rows with ``row_id``, ``days_to_cohort_end`` and ``days_to_obs_end``
        outcomes: Long outcome events (row_id, outcome_id, days_to_event)
        outcome_id: Outcome to summarize
        time_at_risk: Risk window definition

    Returns:
        ``cohorts`` with ``risk_end``, ``prior_outcome`` (bool),
        ``days_to_event`` (first event in the window, NaN if none),
        ``outcome_count`` (events in the window) and ``survival_time``
        (days to the first event, or to the end of the window, plus one)
    """
    result = cohorts.copy()
    result["risk_end"] = risk_window_end(result, time_at_risk)

    events = outcomes.loc[outcomes["outcome_id"] == outcome_id, ["row_id", "days_to_event"]]
    prior_rows = events.loc[events["days_to_event"] < 0, "row_id"].unique()
    result["prior_outcome"] = result["row_id"].isin(prior_rows)

    events = events.merge(result[["row_id", "risk_end"]], on="row_id", how="inner")
    in_window = events[(events["days_to_event"] >= 0) & (events["days_to_event"] <= events["risk_end"])]
    grouped = in_window.groupby("row_id")["days_to_event"]
    result["days_to_event"] = result["row_id"].map(grouped.min())
    result["outcome_count"] = result["row_id"].map(grouped.size()).fillna(0).astype("int64")
    result["survival_time"] = result["days_to_event"].fillna(result["risk_end"]) + 1
    return result


def at_risk(summary: pd.DataFrame) -> pd.Series:
    """Rows without a prior outcome whose risk window extends past the index day."""
    return ~summary["prior_outcome"] & (summary["risk_end"] >= 1)


def study_population(
    cohorts: pd.DataFrame,
    outcomes: pd.DataFrame,
    outcome_id: int,
    time_at_risk: TimeAtRisk,
) -> pd.DataFrame:
    """Outcome summary restricted to the rows at risk, with a binary ``outcome``."""
    summary = outcome_summary(cohorts, outcomes, outcome_id, time_at_risk)
    population = summary[at_risk(summary)].copy()
    population["outcome"] = population["days_to_event"].notna().astype("int64")
    return population.reset_index(drop=True)
