"""
Export of shareable, aggregate results.

Every exported table carries the database id. Rows with any count below the
minimum cell count are removed before writing. Covariate balance means are
fractions of a comparison's target or comparator persons, so a nonzero mean
standing for fewer persons than the minimum removes its row too. All tables
are bundled in a single zip file.
"""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path
from typing import Callable, Optional

import pandas as pd

from .cohort_method import CM_ANALYSES
from .context import StudyContext
from .exposures import load_filtered_comparisons

logger = logging.getLogger(__name__)


def enforce_min_cell_count(
    frame: pd.DataFrame, count_columns: list[str], min_cell_count: int
) -> pd.DataFrame:
    """
    Drop rows where any count column is below ``min_cell_count``.

    Missing counts are not treated as small.

    Returns:
        The remaining rows with a fresh index
    """
    columns = [column for column in count_columns if column in frame.columns]
    if not columns or min_cell_count <= 0:
        return frame.reset_index(drop=True)
    small = (frame[columns] < min_cell_count).any(axis=1)
    return frame[~small].reset_index(drop=True)


# balance mean column, and the filtered summary column holding that group's size
BALANCE_GROUP_SIZES = {
    "before_matching_mean_treated": "target_persons",
    "before_matching_mean_comparator": "comparator_persons",
    "after_matching_mean_treated": "target_persons",
    "after_matching_mean_comparator": "comparator_persons",
}


def enforce_min_cell_fraction(
    balance: pd.DataFrame, sizes: pd.DataFrame, min_cell_count: int
) -> pd.DataFrame:
    """
    Drop balance rows where a nonzero mean stands for fewer than ``min_cell_count`` persons.

    Args:
        balance: Balance rows with target_id, comparator_id and the mean columns
        sizes: Filtered exposure summary with target_persons and comparator_persons
        min_cell_count: Smallest publishable count

    Returns:
        The remaining rows with a fresh index
    """
    if min_cell_count <= 0 or balance.empty:
        return balance.reset_index(drop=True)
    size_columns = sorted(set(BALANCE_GROUP_SIZES.values()))
    merged = balance.merge(
        sizes[["target_id", "comparator_id", *size_columns]],
        on=["target_id", "comparator_id"],
        how="left",
    )
    small = pd.Series(False, index=merged.index)
    for mean_column, size_column in BALANCE_GROUP_SIZES.items():
        if mean_column not in merged.columns:
            continue
        count = merged[mean_column] * merged[size_column]
        small |= (merged[mean_column] > 0) & (count.round(6) < min_cell_count)
    return balance[~small.to_numpy()].reset_index(drop=True)


def _read_csv(path: Path) -> Optional[pd.DataFrame]:
    if not path.exists():
        logger.warning(f"Skipping export of missing file {path}")
        return None
    return pd.read_csv(path)


def _database(ctx: StudyContext) -> pd.DataFrame:
    config = ctx.config
    return pd.DataFrame(
        [
            {
                "database_name": config.database_name,
                "database_description": config.database_description,
                "indication_id": config.indication_id,
            }
        ]
    )


def _exposure_summary(ctx: StudyContext) -> Optional[pd.DataFrame]:
    counts = _read_csv(ctx.paths.exposure_cohort_counts)
    if counts is None:
        return None
    return counts.rename(columns={"cohort_definition_id": "exposure_id"})[
        ["exposure_id", "exposure_name", "cohort_count", "person_count", "min_date", "max_date"]
    ]


def _comparison_summary(ctx: StudyContext) -> Optional[pd.DataFrame]:
    return _read_csv(ctx.paths.paired_exposure_summary_filtered)


def _cohort_method_results(ctx: StudyContext) -> Optional[pd.DataFrame]:
    results = _read_csv(ctx.paths.results_summary)
    if results is None:
        return None
    analyses = pd.DataFrame(
        [{"analysis_id": a.analysis_id, "analysis_description": a.description} for a in CM_ANALYSES]
    )
    return results.merge(analyses, on="analysis_id", how="left")


def _incidence(ctx: StudyContext) -> Optional[pd.DataFrame]:
    return _read_csv(ctx.paths.incidence)


def _covariate_balance(ctx: StudyContext) -> Optional[pd.DataFrame]:
    if not ctx.paths.balance_folder.exists():
        logger.warning(f"Skipping export of missing folder {ctx.paths.balance_folder}")
        return None
    frames = []
    for target_id, comparator_id in load_filtered_comparisons(ctx).itertuples(index=False, name=None):
        for analysis in CM_ANALYSES:
            path = ctx.paths.balance_file(target_id, comparator_id, analysis.analysis_id)
            if not path.exists():
                continue
            balance = pd.read_csv(path)
            balance.insert(0, "analysis_id", analysis.analysis_id)
            balance.insert(0, "comparator_id", comparator_id)
            balance.insert(0, "target_id", target_id)
            frames.append(balance)
    if not frames:
        return None
    balance = pd.concat(frames, ignore_index=True)
    sizes = pd.read_csv(ctx.paths.paired_exposure_summary_filtered)
    kept = enforce_min_cell_fraction(balance, sizes, ctx.config.min_cell_count)
    if len(kept) < len(balance):
        logger.info(
            f"covariate_balance.csv: suppressed {len(balance) - len(kept)} of {len(balance)} row(s) "
            f"representing fewer than {ctx.config.min_cell_count} persons"
        )
    return kept


def _chronograph(ctx: StudyContext) -> Optional[pd.DataFrame]:
    return _read_csv(ctx.paths.chronograph)


def _positive_controls(ctx: StudyContext) -> Optional[pd.DataFrame]:
    return _read_csv(ctx.paths.signal_injection_summary)


def _covariates(ctx: StudyContext) -> Optional[pd.DataFrame]:
    return _read_csv(ctx.paths.covariate_ref)


# file name, builder, count columns subject to the minimum cell count
EXPORT_TABLES: list[tuple[str, Callable[[StudyContext], Optional[pd.DataFrame]], list[str]]] = [
    ("database.csv", _database, []),
    ("exposure_summary.csv", _exposure_summary, ["cohort_count", "person_count"]),
    ("comparison_summary.csv", _comparison_summary, ["target_persons", "comparator_persons"]),
    (
        "cohort_method_result.csv",
        _cohort_method_results,
        ["target_subjects", "comparator_subjects", "target_outcomes", "comparator_outcomes"],
    ),
    ("incidence.csv", _incidence, ["subjects", "outcomes"]),
    ("covariate_balance.csv", _covariate_balance, []),
    ("chronograph.csv", _chronograph, ["observed_count", "outcome_count"]),
    ("positive_control_outcome.csv", _positive_controls, ["observed_outcomes", "injected_outcomes"]),
    ("covariate.csv", _covariates, []),
]


def export_results(ctx: StudyContext) -> Path:
    """
    Write ``export/*.csv`` and bundle them into ``Results_<indication>_<database_id>.zip``.

    Returns:
        Path of the zip file
    """
    config = ctx.config
    folder = ctx.paths.export_folder
    folder.mkdir(parents=True, exist_ok=True)

    written: list[Path] = []
    for file_name, build, count_columns in EXPORT_TABLES:
        table = build(ctx)
        if table is None:
            continue
        before = len(table)
        table = enforce_min_cell_count(table, count_columns, config.min_cell_count)
        if len(table) < before:
            logger.info(
                f"{file_name}: suppressed {before - len(table)} of {before} row(s) "
                f"below min cell count {config.min_cell_count}"
            )
        table.insert(0, "database_id", config.database_id)
        path = folder / file_name
        table.to_csv(path, index=False)
        written.append(path)

    zip_path = folder / f"Results_{config.indication_id}_{config.database_id}.zip"
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for path in written:
            archive.write(path, arcname=path.name)
    logger.info(f"Exported {len(written)} table(s) to {zip_path}")
    return zip_path
