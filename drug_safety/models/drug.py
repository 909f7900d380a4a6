"""Models for drug concepts and drug-drug interaction checking."""
from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class InteractionSeverity(StrEnum):
    """Severity levels for drug interactions, ordered from most to least severe."""

    HIGH = "HIGH"           # Contraindicated or potentially life-threatening
    MODERATE = "MODERATE"   # May require monitoring or dose adjustment
    LOW = "LOW"             # Minimal clinical significance


SEVERITY_RANK = {
    InteractionSeverity.HIGH: 0,
    InteractionSeverity.MODERATE: 1,
    InteractionSeverity.LOW: 2,
}


class DrugConcept(BaseModel):
    """Canonical drug entity as returned by the drug knowledge service."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., description="Stable external identifier (RxCUI)")
    name: str
    generic_name: Optional[str] = None
    brand_names: List[str] = Field(default_factory=list)
    term_type: str = Field(default="", description="Term type tag, e.g. IN, BN, SCD")
    synonyms: List[str] = Field(default_factory=list)
    strength: Optional[str] = None
    dosage_form: Optional[str] = None
    route: Optional[str] = None
    drug_classes: List[str] = Field(default_factory=list)
    active_ingredients: List[str] = Field(default_factory=list)
    last_verified_at: Optional[datetime] = None


class DrugRef(BaseModel):
    """Minimal reference to a drug taking part in an interaction."""

    id: str = ""
    name: str = "Unknown"


class InteractionRecord(BaseModel):
    """A single drug-drug interaction for an unordered pair."""

    model_config = ConfigDict(extra="ignore")

    drug_a: DrugRef
    drug_b: DrugRef
    severity: InteractionSeverity = InteractionSeverity.MODERATE
    description: str = "Potential drug interaction"
    source: str = "Unknown"
    clinical_effect: Optional[str] = None
    evidence_level: Optional[str] = None

    def pair_key(self) -> tuple[str, str]:
        first, second = sorted((self.drug_a.id, self.drug_b.id))
        return first, second


def sort_by_severity(interactions: List[InteractionRecord]) -> List[InteractionRecord]:
    """Stable sort HIGH, then MODERATE, then LOW."""
    return sorted(interactions, key=lambda item: SEVERITY_RANK.get(item.severity, len(SEVERITY_RANK)))


class InteractionCheckRequest(BaseModel):
    """Request to check drug-drug interactions."""

    model_config = ConfigDict(extra="ignore")

    drug_ids: List[str] = Field(default_factory=list, description="Drug identifiers (RxCUIs)")
    prescription_id: Optional[str] = None


class InteractionCheckResult(BaseModel):
    """Response with drug interaction check results."""

    has_interactions: bool = False
    interactions: List[InteractionRecord] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=datetime.utcnow)
    drug_count: int = 0
    check_ids: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class RxNavHealth(BaseModel):
    healthy: bool
    latency_ms: float = 0.0
    error: Optional[str] = None
