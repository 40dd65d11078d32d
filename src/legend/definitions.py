"""Study definitions: exposures, outcomes, negative controls and comparisons."""

from __future__ import annotations

from dataclasses import dataclass, field
from importlib import resources
from itertools import combinations
from pathlib import Path
from typing import Any, Mapping, Sequence

import pandas as pd
import yaml


@dataclass(frozen=True)
class CohortDefinition:
    cohort_id: int
    name: str
    concept_ids: tuple[int, ...]


@dataclass(frozen=True)
class Comparison:
    target_id: int
    comparator_id: int


@dataclass(frozen=True)
class StudyDefinition:
    indication_id: str
    indication_concept_ids: tuple[int, ...]
    exposures: tuple[CohortDefinition, ...]
    outcomes: tuple[CohortDefinition, ...]
    negative_controls: tuple[CohortDefinition, ...] = ()
    comparisons: tuple[Comparison, ...] = field(default=())

    @property
    def exposure_ids(self) -> list[int]:
        return [exposure.cohort_id for exposure in self.exposures]

    @property
    def outcome_ids(self) -> list[int]:
        return [outcome.cohort_id for outcome in self.outcomes]

    @property
    def negative_control_ids(self) -> list[int]:
        return [control.cohort_id for control in self.negative_controls]

    @property
    def exposure_concept_ids(self) -> list[int]:
        return sorted({cid for exposure in self.exposures for cid in exposure.concept_ids})

    def exposure_name(self, cohort_id: int) -> str:
        for exposure in self.exposures:
            if exposure.cohort_id == cohort_id:
                return exposure.name
        raise KeyError(f"unknown exposure cohort '{cohort_id}'")

    def comparisons_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(c.target_id, c.comparator_id) for c in self.comparisons],
            columns=["target_id", "comparator_id"],
        )

    def concept_frame(self, kind: str) -> pd.DataFrame:
        """Long (cohort_definition_id, concept_id) frame for exposures or outcomes.

        Outcome frames include the negative controls.
        """
        if kind == "exposure":
            definitions: Sequence[CohortDefinition] = self.exposures
        elif kind == "outcome":
            definitions = self.outcomes + self.negative_controls
        else:
            raise ValueError(f"Unknown concept frame kind: {kind}")
        rows = [(d.cohort_id, cid) for d in definitions for cid in d.concept_ids]
        return pd.DataFrame(rows, columns=["cohort_definition_id", "concept_id"])


def _parse_cohorts(items: Sequence[Mapping[str, Any]] | None) -> tuple[CohortDefinition, ...]:
    parsed = []
    for item in items or []:
        concept_ids = tuple(int(cid) for cid in item.get("concept_ids", []))
        if not concept_ids:
            raise ValueError(f"Cohort '{item.get('name')}' has no concept_ids")
        parsed.append(
            CohortDefinition(
                cohort_id=int(item["cohort_id"]),
                name=str(item["name"]),
                concept_ids=concept_ids,
            )
        )
    return tuple(parsed)


def parse_study_definition(payload: Mapping[str, Any]) -> StudyDefinition:
    """Build a StudyDefinition from its YAML mapping.

    Raises:
        ValueError: If exposures are missing, cohort ids collide, or a
            comparison names an unknown exposure or compares an exposure with itself
    """
    exposures = _parse_cohorts(payload.get("exposures"))
    outcomes = _parse_cohorts(payload.get("outcomes"))
    negative_controls = _parse_cohorts(payload.get("negative_controls"))

    if len(exposures) < 2:
        raise ValueError("A study needs at least two exposures to compare")

    exposure_ids = [e.cohort_id for e in exposures]
    if len(set(exposure_ids)) != len(exposure_ids):
        raise ValueError("Exposure cohort ids must be unique")
    outcome_ids = [o.cohort_id for o in outcomes + negative_controls]
    if len(set(outcome_ids)) != len(outcome_ids):
        raise ValueError("Outcome and negative control cohort ids must be unique")

    if payload.get("comparisons"):
        comparisons = tuple(
            Comparison(int(item["target_id"]), int(item["comparator_id"]))
            for item in payload["comparisons"]
        )
        for comparison in comparisons:
            if comparison.target_id == comparison.comparator_id:
                raise ValueError(f"Comparison compares exposure {comparison.target_id} with itself")
            for cohort_id in (comparison.target_id, comparison.comparator_id):
                if cohort_id not in exposure_ids:
                    raise ValueError(f"Comparison refers to unknown exposure {cohort_id}")
    else:
        comparisons = tuple(
            Comparison(t, c) for t, c in combinations(sorted(exposure_ids), 2)
        )

    return StudyDefinition(
        indication_id=str(payload.get("indication_id", "")),
        indication_concept_ids=tuple(int(c) for c in payload.get("indication_concept_ids", [])),
        exposures=exposures,
        outcomes=outcomes,
        negative_controls=negative_controls,
        comparisons=comparisons,
    )


def load_study_definition(indication_id: str, path: Path | None = None) -> StudyDefinition:
    """Load the study definition from ``path`` or the packaged settings."""
    if path is not None:
        if not Path(path).exists():
            raise FileNotFoundError(f"Study definition not found: {path}")
        text = Path(path).read_text(encoding="utf-8")
    else:
        resource = resources.files("legend").joinpath("settings", f"{indication_id}.yaml")
        if not resource.is_file():
            raise FileNotFoundError(f"No packaged study definition for indication '{indication_id}'")
        text = resource.read_text(encoding="utf-8")

    return parse_study_definition(yaml.safe_load(text) or {})
