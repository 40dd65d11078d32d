"""
Study runner.

Runs the enabled stages in their fixed order against one database. Each stage
reads what the previous stages wrote to the indication folder, so stages can
be re-run individually by disabling the others. Any stage error aborts the run.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from .balance import compute_covariate_balance
from .chronograph import fetch_chronograph_data
from .cohort_method import run_cohort_method
from .cohort_method_data import generate_all_cohort_method_data_objects
from .config import StudyConfig
from .context import StudyContext, StudyPaths, create_context
from .export import export_results
from .exposures import create_exposure_cohorts, filter_by_exposure_cohorts_size
from .fetch import fetch_all_data_from_server
from .incidence import compute_incidence
from .logging_utils import study_logging
from .outcomes import create_outcome_cohorts
from .signal_injection import synthesize_positive_controls

logger = logging.getLogger(__name__)


def _create_exposure_cohorts(ctx: StudyContext) -> None:
    create_exposure_cohorts(ctx)
    filter_by_exposure_cohorts_size(ctx)


# (stage name, StudyConfig flag, stage function), in execution order
STAGES: list[tuple[str, str, Callable[[StudyContext], object]]] = [
    ("exposure_cohorts", "create_exposure_cohorts", _create_exposure_cohorts),
    ("outcome_cohorts", "create_outcome_cohorts", create_outcome_cohorts),
    ("fetch", "fetch_all_data_from_server", fetch_all_data_from_server),
    ("signal_injection", "synthesize_positive_controls", synthesize_positive_controls),
    ("cohort_method_data", "generate_all_cohort_method_data_objects", generate_all_cohort_method_data_objects),
    ("cohort_method", "run_cohort_method", run_cohort_method),
    ("incidence", "compute_incidence", compute_incidence),
    ("chronograph", "fetch_chronograph_data", fetch_chronograph_data),
    ("covariate_balance", "compute_covariate_balance", compute_covariate_balance),
    ("export", "export_to_csv", export_results),
]

STAGE_NAMES = [name for name, _, _ in STAGES]


def run_stages(ctx: StudyContext, skip: Iterable[str] = ()) -> list[str]:
    """
    Run every stage whose flag is set and that is not skipped.

    Args:
        ctx: Study context
        skip: Stage names to leave out regardless of their flag

    Returns:
        Names of the stages that ran, in order

    Raises:
        KeyError: If ``skip`` names an unknown stage
    """
    skip = set(skip)
    unknown = skip.difference(STAGE_NAMES)
    if unknown:
        raise KeyError(f"Unknown stage(s): {sorted(unknown)}; expected one of {STAGE_NAMES}")

    ran: list[str] = []
    for name, flag, stage in STAGES:
        if not getattr(ctx.config, flag) or name in skip:
            logger.debug(f"Skipping stage {name}")
            continue
        logger.info(f"=== Stage: {name} ===")
        stage(ctx)
        ran.append(name)
    return ran


def execute(config: StudyConfig, skip: Iterable[str] = ()) -> list[str]:
    """
    Execute a study for one indication against one database.

    Log records go to the console and to ``log.txt`` / ``console.txt`` in
    ``output_folder/indication_id``.

    Returns:
        Names of the stages that ran
    """
    with study_logging(StudyPaths(config.indication_folder)) as run_logger:
        run_logger.info(
            f"Executing study for indication {config.indication_id} "
            f"on database {config.database_id} ({config.connection.dbms})"
        )
        ctx = create_context(config)
        try:
            ran = run_stages(ctx, skip)
        except Exception:
            run_logger.exception("Study execution failed")
            raise
        run_logger.info("Finished")
    return ran
