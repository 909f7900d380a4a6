"""Models for patient allergies and allergy conflict detection."""
from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AllergenType(StrEnum):
    DRUG = "DRUG"
    DRUG_CLASS = "DRUG_CLASS"
    INGREDIENT = "INGREDIENT"
    FOOD = "FOOD"
    ENVIRONMENTAL = "ENVIRONMENTAL"
    OTHER = "OTHER"


class AllergySeverity(StrEnum):
    MILD = "MILD"
    MODERATE = "MODERATE"
    SEVERE = "SEVERE"
    LIFE_THREATENING = "LIFE_THREATENING"


# Lower rank sorts first
ALLERGY_SEVERITY_RANK = {
    AllergySeverity.LIFE_THREATENING: 0,
    AllergySeverity.SEVERE: 1,
    AllergySeverity.MODERATE: 2,
    AllergySeverity.MILD: 3,
}


def allergy_severity_rank(severity: object) -> int:
    """Rank used for sorting; unknown severities sort last."""
    try:
        return ALLERGY_SEVERITY_RANK[AllergySeverity(str(severity))]
    except ValueError:
        return len(ALLERGY_SEVERITY_RANK)


class MatchType(StrEnum):
    EXACT = "EXACT"
    INGREDIENT = "INGREDIENT"
    DRUG_CLASS = "DRUG_CLASS"
    CROSS_REACTIVE = "CROSS_REACTIVE"


class MatchConfidence(StrEnum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class AllergyRecord(BaseModel):
    """A patient allergy. Soft-deleted through ``is_active``, never removed."""

    model_config = ConfigDict(extra="ignore")

    id: str
    patient_id: str
    allergen_name: str
    allergen_type: AllergenType = AllergenType.DRUG
    allergen_concept_id: Optional[str] = None
    severity: AllergySeverity = AllergySeverity.MODERATE
    reaction: Optional[str] = None
    onset_date: Optional[date] = None
    notes: Optional[str] = None
    is_active: bool = True
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class AllergyCreate(BaseModel):
    """Payload for adding an allergy to a patient."""

    model_config = ConfigDict(extra="ignore")

    allergen_name: str = Field(..., min_length=1, max_length=200)
    allergen_type: AllergenType = AllergenType.DRUG
    allergen_concept_id: Optional[str] = Field(default=None, max_length=20)
    severity: AllergySeverity = AllergySeverity.MODERATE
    reaction: Optional[str] = Field(default=None, max_length=500)
    onset_date: Optional[date] = None
    verified_by: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("allergen_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("allergen_name must not be blank")
        return stripped


class AllergyUpdate(BaseModel):
    """Partial update of an allergy record."""

    model_config = ConfigDict(extra="ignore")

    allergen_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    allergen_type: Optional[AllergenType] = None
    allergen_concept_id: Optional[str] = None
    severity: Optional[AllergySeverity] = None
    reaction: Optional[str] = None
    onset_date: Optional[date] = None
    notes: Optional[str] = None
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    is_active: Optional[bool] = None

    # Omitting a field leaves it alone; an explicit null is only allowed on clearable fields
    @field_validator("allergen_type", "severity", "is_active")
    @classmethod
    def _reject_null(cls, value, info):
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value

    @field_validator("allergen_name")
    @classmethod
    def _strip_name(cls, value: Optional[str]) -> str:
        if value is None:
            raise ValueError("allergen_name cannot be null")
        stripped = value.strip()
        if not stripped:
            raise ValueError("allergen_name must not be blank")
        return stripped


class ConflictMatch(BaseModel):
    """Correspondence between a patient allergen and a drug under consideration."""

    allergy_id: str
    allergen_name: str
    allergen_type: AllergenType = AllergenType.DRUG
    matched_drug_id: str
    matched_drug_name: str
    match_type: MatchType
    confidence: MatchConfidence
    severity: AllergySeverity
    reaction: Optional[str] = None


class AllergyCheckRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    patient_id: str = Field(..., min_length=1)
    drug_ids: List[str] = Field(default_factory=list)


class AllergyCheckResult(BaseModel):
    has_conflicts: bool = False
    conflicts: List[ConflictMatch] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=datetime.utcnow)
    patient_id: str
    checked_drugs: List[str] = Field(default_factory=list)
    check_ids: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
