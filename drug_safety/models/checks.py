"""Persisted safety check history, overrides and audit events."""
from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CheckKind(StrEnum):
    INTERACTION = "INTERACTION"
    ALLERGY = "ALLERGY"


class CheckRecord(BaseModel):
    """One row of interaction/allergy check history. Overridable once."""

    id: str
    kind: CheckKind
    patient_id: Optional[str] = None
    drug_ids: List[str] = Field(default_factory=list)
    severity: Optional[str] = None
    summary: Optional[str] = None
    allergy_id: Optional[str] = None
    allergen_name: Optional[str] = None
    drug_name: Optional[str] = None
    match_type: Optional[str] = None
    checked_at: datetime = Field(default_factory=datetime.utcnow)
    was_overridden: bool = False
    override_reason: Optional[str] = None
    overridden_by: Optional[str] = None
    overridden_at: Optional[datetime] = None


class OverrideRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    check_ids: List[str] = Field(default_factory=list)
    reason: str = ""
    patient_id: Optional[str] = None
    prescription_id: Optional[str] = None
    confirmed_review: bool = False
    patient_informed: bool = False
    alternatives_considered: Optional[str] = Field(default=None, max_length=500)
    # Free-form per-interaction acknowledgements, stored verbatim in the audit trail
    interaction_details: List[Dict[str, Any]] = Field(default_factory=list)


class OverrideRecord(BaseModel):
    """A clinician justification covering one or more acknowledged checks."""

    reason: str = Field(..., min_length=1)
    acknowledged_checks: List[str]
    overridden_by: str
    overridden_at: datetime


class OverrideResult(BaseModel):
    overridden_count: int
    high_severity_count: int
    timestamp: datetime
    already_overridden: List[str] = Field(default_factory=list)
    override: Optional[OverrideRecord] = None


class AuditAction(StrEnum):
    DRUG_SEARCH = "DRUG_SEARCH"
    DRUG_LOOKUP = "DRUG_LOOKUP"
    INTERACTION_CHECK = "INTERACTION_CHECK"
    ALLERGY_CHECK = "ALLERGY_CHECK"
    ALLERGY_ADDED = "ALLERGY_ADDED"
    ALLERGY_UPDATED = "ALLERGY_UPDATED"
    ALLERGY_DELETED = "ALLERGY_DELETED"
    INTERACTION_OVERRIDE = "INTERACTION_OVERRIDE"
    HIGH_SEVERITY_OVERRIDE = "HIGH_SEVERITY_OVERRIDE"
    ALLERGY_CONFLICT_OVERRIDE = "ALLERGY_CONFLICT_OVERRIDE"


class AuditEvent(BaseModel):
    """Structured audit record: who did what to which resource."""

    id: Optional[str] = None
    user_id: Optional[str] = None
    action: AuditAction
    resource_type: str
    resource_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    success: bool = True
    error_message: Optional[str] = None
    retention_until: Optional[datetime] = None
