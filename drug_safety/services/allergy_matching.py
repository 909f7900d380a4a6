"""Heuristic allergy matching stages.

Each stage answers one question about an (allergy, drug) pair. The detector
runs them in order and keeps the first match, so stages can be added or
reordered without touching its control flow. Matching is approximate by
nature: case-insensitive substring tests in both directions.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import yaml

from ..models.allergy import AllergyRecord, ConflictMatch, MatchConfidence, MatchType
from ..models.drug import DrugConcept

logger = logging.getLogger(__name__)

DEFAULT_CROSS_REACTIVITY_PATH = Path(__file__).resolve().parent.parent / "data" / "cross_reactivity.yaml"

CrossReactivityTable = Mapping[str, Sequence[str]]


def load_cross_reactivity_table(path: Optional[Path | str] = None) -> Dict[str, List[str]]:
    """Load the allergen root class -> related classes table from YAML."""
    config_path = Path(path) if path else DEFAULT_CROSS_REACTIVITY_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Cross-reactivity table not found at {config_path}")

    with config_path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}

    table: Dict[str, List[str]] = {}
    for root, related in data.items():
        if not isinstance(related, list):
            logger.warning("Skipping malformed cross-reactivity entry: %s", root)
            continue
        table[str(root).strip().lower()] = [str(item).strip().lower() for item in related if item]
    return table


def overlaps(left: Optional[str], right: Optional[str]) -> bool:
    """True when either string contains the other, ignoring case."""
    if not left or not right:
        return False
    a = left.strip().lower()
    b = right.strip().lower()
    if not a or not b:
        return False
    return a in b or b in a


def overlaps_any(needle: str, haystack: Iterable[str]) -> bool:
    return any(overlaps(needle, item) for item in haystack)


@dataclass(frozen=True)
class StageHit:
    match_type: MatchType
    confidence: MatchConfidence


class MatchStage(Protocol):
    name: str

    def match(self, allergy: AllergyRecord, drug: DrugConcept) -> Optional[StageHit]: ...


class ExactMatchStage:
    """Linked concept id, display name or generic name."""

    name = "exact"

    def match(self, allergy: AllergyRecord, drug: DrugConcept) -> Optional[StageHit]:
        if allergy.allergen_concept_id and allergy.allergen_concept_id == drug.id:
            return StageHit(MatchType.EXACT, MatchConfidence.HIGH)
        if overlaps(allergy.allergen_name, drug.name) or overlaps(allergy.allergen_name, drug.generic_name):
            return StageHit(MatchType.EXACT, MatchConfidence.HIGH)
        return None


class IngredientMatchStage:
    name = "ingredient"

    def match(self, allergy: AllergyRecord, drug: DrugConcept) -> Optional[StageHit]:
        if overlaps_any(allergy.allergen_name, drug.active_ingredients):
            return StageHit(MatchType.INGREDIENT, MatchConfidence.HIGH)
        return None


class DrugClassMatchStage:
    name = "drug_class"

    def match(self, allergy: AllergyRecord, drug: DrugConcept) -> Optional[StageHit]:
        if overlaps_any(allergy.allergen_name, drug.drug_classes):
            return StageHit(MatchType.DRUG_CLASS, MatchConfidence.MEDIUM)
        return None


class CrossReactiveMatchStage:
    """Known cross-reactive families, e.g. penicillin and cephalosporins."""

    name = "cross_reactive"

    def __init__(self, table: CrossReactivityTable) -> None:
        self._table = {root.lower(): [item.lower() for item in related] for root, related in table.items()}

    def match(self, allergy: AllergyRecord, drug: DrugConcept) -> Optional[StageHit]:
        allergen = allergy.allergen_name.lower()
        fields = [drug.name.lower()]
        fields.extend(item.lower() for item in drug.drug_classes)
        fields.extend(item.lower() for item in drug.active_ingredients)

        for root, related in self._table.items():
            if root not in allergen:
                continue
            for related_class in related:
                if any(related_class in field for field in fields):
                    return StageHit(MatchType.CROSS_REACTIVE, MatchConfidence.LOW)
        return None


def default_stages(table: CrossReactivityTable) -> List[MatchStage]:
    return [
        ExactMatchStage(),
        IngredientMatchStage(),
        DrugClassMatchStage(),
        CrossReactiveMatchStage(table),
    ]


def match_pair(stages: Sequence[MatchStage], allergy: AllergyRecord, drug: DrugConcept) -> Optional[ConflictMatch]:
    """Run stages in priority order and build a conflict from the first hit."""
    for stage in stages:
        hit = stage.match(allergy, drug)
        if hit is None:
            continue
        return ConflictMatch(
            allergy_id=allergy.id,
            allergen_name=allergy.allergen_name,
            allergen_type=allergy.allergen_type,
            matched_drug_id=drug.id,
            matched_drug_name=drug.name,
            match_type=hit.match_type,
            confidence=hit.confidence,
            severity=allergy.severity,
            reaction=allergy.reaction,
        )
    return None
