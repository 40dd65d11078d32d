"""Configuration for LEGEND study runs.

Two layers:

- ``Settings``: process-wide values read from ``LEGEND_*`` environment
  variables (after loading a ``.env`` file), such as the log level and a
  database password fallback so secrets stay out of study YAML files.
- ``StudyConfig``: the validated configuration of one study run, normally
  loaded from YAML with ``load_study_config``.

Usage:
    from legend.config import load_study_config

    config = load_study_config("study.yaml")
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DOTENV_PATH = find_dotenv(usecwd=True) or None
if _DOTENV_PATH:
    load_dotenv(_DOTENV_PATH, override=False)


class Settings(BaseSettings):
    """Environment-driven settings shared by every run.

    Attributes:
        LOG_LEVEL: Level of the console handler (DEBUG, INFO, WARNING, ERROR)
        DB_PASSWORD: Password used when the connection details carry none
        DB_USER: User used when the connection details carry none
    """

    model_config = SettingsConfigDict(
        env_prefix="LEGEND_",
        env_file=None,  # Already loaded above
        case_sensitive=False,
        extra="ignore",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Console logging level")
    DB_PASSWORD: Optional[str] = Field(default=None, description="Database password fallback")
    DB_USER: Optional[str] = Field(default=None, description="Database user fallback")


settings = Settings()


class ConnectionDetails(BaseModel):
    """Where the CDM lives and how to reach it."""

    dbms: Literal["duckdb", "postgresql"] = "duckdb"
    server: str = Field(
        ...,
        description="DuckDB database file, or 'host/database' for PostgreSQL",
    )
    port: int = 5432
    user: Optional[str] = None
    password: Optional[str] = None

    def resolved_user(self) -> Optional[str]:
        return self.user or settings.DB_USER

    def resolved_password(self) -> Optional[str]:
        return self.password or settings.DB_PASSWORD


class StudyConfig(BaseModel):
    """Validated configuration of a single study execution."""

    connection: ConnectionDetails
    cdm_database_schema: str
    cohort_database_schema: str
    output_folder: Path
    indication_id: str = "Depression"
    table_prefix: str = "legend"
    database_id: str = "Unknown"
    database_name: str = "Unknown"
    database_description: str = "Unknown"
    min_cell_count: int = Field(default=5, ge=0)
    impute_exposure_length_when_missing: bool = False

    # =========================================================================
    # Stage flags, in execution order
    # =========================================================================
    create_exposure_cohorts: bool = True
    create_outcome_cohorts: bool = True
    fetch_all_data_from_server: bool = True
    synthesize_positive_controls: bool = True
    generate_all_cohort_method_data_objects: bool = True
    run_cohort_method: bool = True
    compute_incidence: bool = True
    fetch_chronograph_data: bool = True
    compute_covariate_balance: bool = True
    export_to_csv: bool = True

    max_cores: int = Field(default=4, ge=1)
    study_definition_path: Optional[Path] = Field(
        default=None,
        description="Study definition YAML; defaults to the packaged settings/<indication_id>.yaml",
    )

    # =========================================================================
    # Tuning
    # =========================================================================
    washout_days: int = Field(default=365, ge=0)
    era_gap_days: int = Field(default=30, ge=0)
    imputed_exposure_days: int = Field(default=30, ge=1)
    min_exposure_cohort_size: int = Field(default=1000, ge=0)
    effect_sizes: Tuple[float, ...] = (1.5, 2.0, 4.0)
    min_outcomes_for_injection: int = Field(default=25, ge=0)
    positive_control_id_offset: int = Field(default=100000, ge=1)
    random_seed: int = 123
    ps_regularization: float = Field(
        default=1.0, gt=0, description="Inverse L1 penalty strength of the propensity model"
    )
    number_of_strata: int = Field(default=10, ge=1)
    matching_caliper: float = Field(
        default=0.2, gt=0, description="Caliper in standard deviations of the logit propensity score"
    )

    @field_validator("indication_id", "table_prefix")
    @classmethod
    def _identifier_safe(cls, value: str) -> str:
        if not value or not value.replace("_", "").isalnum():
            raise ValueError(f"'{value}' must be alphanumeric (underscores allowed)")
        return value

    @field_validator("effect_sizes")
    @classmethod
    def _effect_sizes_above_one(cls, value: Tuple[float, ...]) -> Tuple[float, ...]:
        if any(size <= 1 for size in value):
            raise ValueError("effect sizes must be greater than 1")
        return value

    @model_validator(mode="after")
    def _duckdb_file_usable(self) -> "StudyConfig":
        # Stages open their own connections, so study tables must live in a file.
        # DuckDB names the catalog after the file stem, which shadows a schema of that name.
        if self.connection.dbms != "duckdb":
            return self
        if self.connection.server == ":memory:":
            raise ValueError("DuckDB server must be a database file, not ':memory:'")
        stem = Path(self.connection.server).stem.lower()
        clashes = {self.cdm_database_schema.lower(), self.cohort_database_schema.lower()}
        if stem in clashes:
            raise ValueError(
                f"DuckDB file name '{stem}' clashes with a schema of the same name; rename the file"
            )
        return self

    @property
    def indication_folder(self) -> Path:
        return self.output_folder / self.indication_id

    def table_name(self, suffix: str) -> str:
        """Study table name, e.g. ``legend_depression_exp_cohort``."""
        return f"{self.table_prefix}_{self.indication_id}_{suffix}".lower()


def load_study_config(path: str | Path, **overrides) -> StudyConfig:
    """Load a study configuration from YAML.

    Args:
        path: YAML file with the ``StudyConfig`` fields
        **overrides: Field values taking precedence over the file

    Returns:
        Validated StudyConfig

    Raises:
        FileNotFoundError: If the file does not exist
        pydantic.ValidationError: If the content is invalid
    """
    config_file = Path(path)
    if not config_file.exists():
        raise FileNotFoundError(f"Study config not found: {config_file}")

    with config_file.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}

    payload.update(overrides)
    return StudyConfig.model_validate(payload)
