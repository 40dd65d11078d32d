"""
Synthetic positive controls by signal injection.

For each exposure and negative control outcome, the background outcome rate
during on-treatment time is estimated and extra outcome events are sampled so
that the expected rate ratio equals each target effect size. A positive
control outcome holds the background events of every cohort row plus the
injected events in the exposure's rows.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

import numpy as np
import pandas as pd

from .context import StudyContext
from .population import at_risk, outcome_summary, read_parquet

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = [
    "exposure_id",
    "outcome_id",
    "target_effect_size",
    "new_outcome_id",
    "observed_outcomes",
    "injected_outcomes",
    "true_effect_size",
]


def positive_control_id(
    offset: int,
    exposure_index: int,
    control_index: int,
    effect_index: int,
    n_controls: int,
    n_effect_sizes: int,
) -> int:
    """Stable outcome id of a positive control, independent of skipped combinations."""
    return offset + (exposure_index * n_controls + control_index) * n_effect_sizes + effect_index


def inject_signals(
    exposure_cohorts: pd.DataFrame,
    outcomes: pd.DataFrame,
    outcome_id: int,
    effect_sizes: Sequence[float],
    new_outcome_ids: Sequence[int],
    min_outcomes: int,
    rng: np.random.Generator,
) -> tuple[list[dict], list[pd.DataFrame]]:
    """
    Inject outcomes for one exposure and one negative control.

    Args:
        exposure_cohorts: Cohort rows of a single exposure
        outcomes: All fetched outcome events
        outcome_id: Negative control outcome to inject into
        effect_sizes: Target rate ratios, each > 1
        new_outcome_ids: Outcome id per effect size
        min_outcomes: Minimum observed on-treatment events required
        rng: Random generator

    Returns:
        Tuple[summary_rows, injected_frames]. Both are empty when fewer than
        ``min_outcomes`` events were observed.
    """
    summary = outcome_summary(exposure_cohorts, outcomes, outcome_id, "on_treatment")
    at_risk_rows = summary[at_risk(summary)]
    observed = int(at_risk_rows["outcome_count"].sum())
    if observed < max(min_outcomes, 1):
        return [], []

    risk_days = (at_risk_rows["risk_end"] + 1).to_numpy(dtype=float)
    baseline_rate = observed / risk_days.sum()
    background = outcomes.loc[outcomes["outcome_id"] == outcome_id, ["row_id", "days_to_event"]]

    rows: list[dict] = []
    frames: list[pd.DataFrame] = []
    for effect_size, new_id in zip(effect_sizes, new_outcome_ids):
        counts = rng.poisson((effect_size - 1.0) * baseline_rate * risk_days)
        row_ids = np.repeat(at_risk_rows["row_id"].to_numpy(), counts)
        ends = np.repeat(at_risk_rows["risk_end"].to_numpy(), counts)
        days = np.floor(rng.random(len(ends)) * (ends + 1)).astype("int64")

        injected = pd.DataFrame({"row_id": row_ids, "days_to_event": days})
        combined = pd.concat([background, injected], ignore_index=True)
        combined.insert(1, "outcome_id", new_id)
        frames.append(combined.astype("int64"))

        n_injected = int(counts.sum())
        rows.append(
            {
                "outcome_id": outcome_id,
                "target_effect_size": effect_size,
                "new_outcome_id": new_id,
                "observed_outcomes": observed,
                "injected_outcomes": n_injected,
                "true_effect_size": (observed + n_injected) / observed,
            }
        )
    return rows, frames


def synthesize_positive_controls(ctx: StudyContext) -> None:
    """Write ``signalInjectionSummary.csv`` and ``injectedOutcomes.parquet``."""
    config = ctx.config
    study = ctx.study
    cohorts = read_parquet(ctx.paths.all_cohorts)
    outcomes = read_parquet(ctx.paths.all_outcomes)

    controls = study.negative_control_ids
    effect_sizes = list(config.effect_sizes)
    exposure_ids = study.exposure_ids

    def run_exposure(exposure_index: int) -> tuple[list[dict], list[pd.DataFrame]]:
        exposure_id = exposure_ids[exposure_index]
        exposure_cohorts = cohorts[cohorts["cohort_definition_id"] == exposure_id]
        rng = np.random.default_rng([config.random_seed, exposure_id])
        all_rows: list[dict] = []
        all_frames: list[pd.DataFrame] = []
        if exposure_cohorts.empty:
            return all_rows, all_frames

        for control_index, control_id in enumerate(controls):
            new_ids = [
                positive_control_id(
                    config.positive_control_id_offset,
                    exposure_index,
                    control_index,
                    effect_index,
                    len(controls),
                    len(effect_sizes),
                )
                for effect_index in range(len(effect_sizes))
            ]
            rows, frames = inject_signals(
                exposure_cohorts,
                outcomes,
                control_id,
                effect_sizes,
                new_ids,
                config.min_outcomes_for_injection,
                rng,
            )
            if not rows:
                logger.debug(
                    f"Skipping injection for exposure {exposure_id}, outcome {control_id}: too few outcomes"
                )
            for row in rows:
                row["exposure_id"] = exposure_id
            all_rows.extend(rows)
            all_frames.extend(frames)
        return all_rows, all_frames

    logger.info(
        f"Injecting signals for {len(exposure_ids)} exposure(s) x {len(controls)} negative control(s) "
        f"(workers={config.max_cores})"
    )
    with ThreadPoolExecutor(max_workers=config.max_cores) as executor:
        results = list(executor.map(run_exposure, range(len(exposure_ids))))

    summary_rows = [row for rows, _ in results for row in rows]
    frames = [frame for _, exposure_frames in results for frame in exposure_frames]

    summary = pd.DataFrame(summary_rows, columns=SUMMARY_COLUMNS)
    summary.to_csv(ctx.paths.signal_injection_summary, index=False)

    injected = (
        pd.concat(frames, ignore_index=True)
        if frames
        else pd.DataFrame({c: pd.Series(dtype="int64") for c in ("row_id", "outcome_id", "days_to_event")})
    )
    injected.to_parquet(ctx.paths.injected_outcomes, index=False)
    logger.info(f"Created {len(summary)} positive control outcome(s)")
