from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .config import StudyConfig
from .database import Connection, connect
from .definitions import StudyDefinition, load_study_definition


@dataclass(frozen=True)
class StudyPaths:
    """Well-known intermediate file locations of one indication folder."""

    root: Path

    @property
    def log_file(self) -> Path:
        return self.root / "log.txt"

    @property
    def console_file(self) -> Path:
        return self.root / "console.txt"

    @property
    def exposure_cohort_counts(self) -> Path:
        return self.root / "exposureCohortCounts.csv"

    @property
    def paired_exposure_summary(self) -> Path:
        return self.root / "pairedExposureSummary.csv"

    @property
    def paired_exposure_summary_filtered(self) -> Path:
        return self.root / "pairedExposureSummaryFilteredBySize.csv"

    @property
    def outcome_cohort_counts(self) -> Path:
        return self.root / "outcomeCohortCounts.csv"

    @property
    def all_cohorts(self) -> Path:
        return self.root / "allCohorts.parquet"

    @property
    def paired_membership(self) -> Path:
        return self.root / "pairedCohortMembership.parquet"

    @property
    def all_covariates(self) -> Path:
        return self.root / "allCovariates.parquet"

    @property
    def covariate_ref(self) -> Path:
        return self.root / "covariateRef.csv"

    @property
    def all_outcomes(self) -> Path:
        return self.root / "allOutcomes.parquet"

    @property
    def signal_injection_summary(self) -> Path:
        return self.root / "signalInjectionSummary.csv"

    @property
    def injected_outcomes(self) -> Path:
        return self.root / "injectedOutcomes.parquet"

    @property
    def cm_folder(self) -> Path:
        return self.root / "cmOutput"

    def cm_data_folder(self, target_id: int, comparator_id: int) -> Path:
        return self.cm_folder / f"CmData_t{target_id}_c{comparator_id}"

    def ps_file(self, target_id: int, comparator_id: int) -> Path:
        return self.cm_folder / f"Ps_t{target_id}_c{comparator_id}.parquet"

    def strat_pop_file(self, target_id: int, comparator_id: int, analysis_id: int) -> Path:
        return self.cm_folder / f"StratPop_t{target_id}_c{comparator_id}_a{analysis_id}.parquet"

    @property
    def outcome_model_reference(self) -> Path:
        return self.cm_folder / "outcomeModelReference.csv"

    @property
    def results_summary(self) -> Path:
        return self.cm_folder / "resultsSummary.csv"

    @property
    def incidence(self) -> Path:
        return self.root / "incidence.csv"

    @property
    def chronograph(self) -> Path:
        return self.root / "chronographData.csv"

    @property
    def balance_folder(self) -> Path:
        return self.root / "balance"

    def balance_file(self, target_id: int, comparator_id: int, analysis_id: int) -> Path:
        return self.balance_folder / f"bal_t{target_id}_c{comparator_id}_a{analysis_id}.csv"

    @property
    def export_folder(self) -> Path:
        return self.root / "export"


@dataclass(frozen=True)
class StudyContext:
    """Execution context shared across study stages."""

    config: StudyConfig
    study: StudyDefinition
    paths: StudyPaths

    def connect(self) -> Connection:
        return connect(self.config.connection)

    @property
    def exposure_table(self) -> str:
        return self.config.table_name("exp_cohort")

    @property
    def paired_table(self) -> str:
        return self.config.table_name("pair_cohort")

    @property
    def outcome_table(self) -> str:
        return self.config.table_name("out_cohort")


def create_context(config: StudyConfig) -> StudyContext:
    """
    Helper for building a `StudyContext` ensuring the indication folder exists.
    """
    folder = config.indication_folder
    folder.mkdir(parents=True, exist_ok=True)
    study = load_study_definition(config.indication_id, config.study_definition_path)
    return StudyContext(config=config, study=study, paths=StudyPaths(folder))
