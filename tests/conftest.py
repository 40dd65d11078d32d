"""Shared fixtures: a small synthetic CDM in a DuckDB file and a study configured against it."""

from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path

import duckdb
import numpy as np
import pandas as pd
import pytest
import yaml

from legend.config import ConnectionDetails, StudyConfig
from legend.context import StudyContext, create_context

SERTRALINE = 739138
FLUOXETINE = 755695
ASPIRIN = 1112807
DEPRESSION = 440383
DIABETES = 201826
HYPERTENSION = 316866
MYOCARDIAL_INFARCTION = 4329847
NEGATIVE_CONTROL_CONCEPTS = [139099, 378160, 4034094, 140673, 133228]

OBSERVATION_START = date(2010, 1, 1)
OBSERVATION_END = date(2020, 12, 31)
N_PERSONS = 300

STUDY_DEFINITION = {
    "indication_id": "Test",
    "indication_concept_ids": [DEPRESSION],
    "exposures": [
        {"cohort_id": 1, "name": "sertraline", "concept_ids": [SERTRALINE]},
        {"cohort_id": 2, "name": "fluoxetine", "concept_ids": [FLUOXETINE]},
    ],
    "outcomes": [
        {"cohort_id": 101, "name": "acute myocardial infarction", "concept_ids": [MYOCARDIAL_INFARCTION]},
    ],
    "negative_controls": [
        {"cohort_id": 1001 + i, "name": f"negative control {i + 1}", "concept_ids": [concept_id]}
        for i, concept_id in enumerate(NEGATIVE_CONTROL_CONCEPTS)
    ],
}


def _create_table(con: duckdb.DuckDBPyConnection, name: str, frame: pd.DataFrame, date_columns=()) -> None:
    con.register("upload", frame)
    select = ", ".join(
        f"CAST({column} AS DATE) AS {column}" if column in date_columns else column
        for column in frame.columns
    )
    con.execute(f"CREATE TABLE {name} AS SELECT {select} FROM upload")
    con.unregister("upload")


def build_synthetic_cdm(path: Path, seed: int = 42) -> None:
    """
    Write a CDM with two antidepressant new-user groups.

    Every person starts sertraline (odd ids) or fluoxetine (even ids) with a
    depression diagnosis ten days earlier. Every 25th person starts the other
    drug a year later with a fresh diagnosis, so belongs to both cohorts.
    """
    rng = np.random.default_rng(seed)
    person_ids = np.arange(1, N_PERSONS + 1)
    index_dates = [
        date(2011, 6, 1) + timedelta(days=int(offset))
        for offset in rng.integers(0, 2000, size=N_PERSONS)
    ]

    persons = pd.DataFrame(
        {
            "person_id": person_ids,
            "gender_concept_id": rng.choice([8507, 8532], size=N_PERSONS),
            "year_of_birth": rng.integers(1940, 1990, size=N_PERSONS),
        }
    )
    observation_periods = pd.DataFrame(
        {
            "person_id": person_ids,
            "observation_period_start_date": pd.Timestamp(OBSERVATION_START),
            "observation_period_end_date": pd.Timestamp(OBSERVATION_END),
        }
    )

    drugs: list[tuple] = []
    conditions: list[tuple] = []
    for person_id, index_date in zip(person_ids, index_dates):
        person_id = int(person_id)
        drug = SERTRALINE if person_id % 2 else FLUOXETINE
        other = FLUOXETINE if drug == SERTRALINE else SERTRALINE

        # Two fills 70 days apart collapse into one era
        drugs.append((person_id, drug, index_date, None, 60))
        drugs.append((person_id, drug, index_date + timedelta(days=70), None, 30))
        conditions.append((person_id, DEPRESSION, index_date - timedelta(days=10)))

        if person_id % 25 == 0:
            switch_date = index_date + timedelta(days=400)
            drugs.append((person_id, other, switch_date, switch_date + timedelta(days=30), 30))
            conditions.append((person_id, DEPRESSION, switch_date - timedelta(days=5)))

        if rng.random() < 0.3:
            start = index_date - timedelta(days=int(rng.integers(1, 300)))
            drugs.append((person_id, ASPIRIN, start, None, 30))
        if rng.random() < 0.4:
            conditions.append((person_id, DIABETES, index_date - timedelta(days=int(rng.integers(1, 300)))))
        if rng.random() < 0.5:
            conditions.append((person_id, HYPERTENSION, index_date - timedelta(days=int(rng.integers(1, 300)))))

        if rng.random() < 0.25:
            conditions.append(
                (person_id, MYOCARDIAL_INFARCTION, index_date + timedelta(days=int(rng.integers(1, 90))))
            )
        if rng.random() < 0.1:
            conditions.append(
                (person_id, MYOCARDIAL_INFARCTION, index_date + timedelta(days=int(rng.integers(200, 1000))))
            )
        if rng.random() < 0.05:
            conditions.append((person_id, MYOCARDIAL_INFARCTION, index_date - timedelta(days=50)))

        for concept_id in NEGATIVE_CONTROL_CONCEPTS:
            if rng.random() < 0.3:
                conditions.append(
                    (person_id, concept_id, index_date + timedelta(days=int(rng.integers(0, 100))))
                )

    drug_exposure = pd.DataFrame(
        drugs,
        columns=[
            "person_id",
            "drug_concept_id",
            "drug_exposure_start_date",
            "drug_exposure_end_date",
            "days_supply",
        ],
    )
    drug_exposure["drug_exposure_start_date"] = pd.to_datetime(drug_exposure["drug_exposure_start_date"])
    drug_exposure["drug_exposure_end_date"] = pd.to_datetime(drug_exposure["drug_exposure_end_date"])
    drug_exposure[["person_id", "drug_concept_id", "days_supply"]] = drug_exposure[
        ["person_id", "drug_concept_id", "days_supply"]
    ].astype("int64")

    condition_occurrence = pd.DataFrame(
        conditions, columns=["person_id", "condition_concept_id", "condition_start_date"]
    )
    condition_occurrence["condition_start_date"] = pd.to_datetime(condition_occurrence["condition_start_date"])
    condition_occurrence[["person_id", "condition_concept_id"]] = condition_occurrence[
        ["person_id", "condition_concept_id"]
    ].astype("int64")

    concept = pd.DataFrame(
        [
            (8507, "MALE"),
            (8532, "FEMALE"),
            (SERTRALINE, "sertraline"),
            (FLUOXETINE, "fluoxetine"),
            (ASPIRIN, "aspirin"),
            (DEPRESSION, "Depressive disorder"),
            (DIABETES, "Type 2 diabetes mellitus"),
            (HYPERTENSION, "Essential hypertension"),
            (MYOCARDIAL_INFARCTION, "Acute myocardial infarction"),
        ],
        columns=["concept_id", "concept_name"],
    )

    con = duckdb.connect(str(path))
    try:
        con.execute("CREATE SCHEMA cdm")
        con.execute("CREATE SCHEMA scratch")
        _create_table(con, "cdm.person", persons)
        _create_table(
            con,
            "cdm.observation_period",
            observation_periods,
            date_columns=("observation_period_start_date", "observation_period_end_date"),
        )
        _create_table(
            con,
            "cdm.drug_exposure",
            drug_exposure,
            date_columns=("drug_exposure_start_date", "drug_exposure_end_date"),
        )
        _create_table(
            con, "cdm.condition_occurrence", condition_occurrence, date_columns=("condition_start_date",)
        )
        _create_table(con, "cdm.concept", concept)
    finally:
        con.close()


@pytest.fixture
def cdm_path(tmp_path: Path) -> Path:
    path = tmp_path / "synthetic_cdm.duckdb"
    build_synthetic_cdm(path)
    return path


@pytest.fixture
def study_definition_path(tmp_path: Path) -> Path:
    path = tmp_path / "Test.yaml"
    path.write_text(yaml.safe_dump(STUDY_DEFINITION), encoding="utf-8")
    return path


@pytest.fixture
def study_config(tmp_path: Path, cdm_path: Path, study_definition_path: Path) -> StudyConfig:
    return StudyConfig(
        connection=ConnectionDetails(dbms="duckdb", server=str(cdm_path)),
        cdm_database_schema="cdm",
        cohort_database_schema="scratch",
        output_folder=tmp_path / "output",
        indication_id="Test",
        database_id="Synthetic",
        database_name="Synthetic CDM",
        min_cell_count=5,
        study_definition_path=study_definition_path,
        min_exposure_cohort_size=10,
        effect_sizes=(2.0,),
        min_outcomes_for_injection=5,
        max_cores=2,
    )


@pytest.fixture
def study_context(study_config: StudyConfig) -> StudyContext:
    return create_context(study_config)
