from __future__ import annotations

from .allergy import (
    AllergenType,
    AllergyCheckRequest,
    AllergyCheckResult,
    AllergyCreate,
    AllergyRecord,
    AllergySeverity,
    AllergyUpdate,
    ConflictMatch,
    MatchConfidence,
    MatchType,
)
from .checks import (
    AuditAction,
    AuditEvent,
    CheckKind,
    CheckRecord,
    OverrideRecord,
    OverrideRequest,
    OverrideResult,
)
from .drug import (
    DrugConcept,
    DrugRef,
    InteractionCheckRequest,
    InteractionCheckResult,
    InteractionRecord,
    InteractionSeverity,
)

__all__ = [
    "AllergenType",
    "AllergyCheckRequest",
    "AllergyCheckResult",
    "AllergyCreate",
    "AllergyRecord",
    "AllergySeverity",
    "AllergyUpdate",
    "AuditAction",
    "AuditEvent",
    "CheckKind",
    "CheckRecord",
    "ConflictMatch",
    "DrugConcept",
    "DrugRef",
    "InteractionCheckRequest",
    "InteractionCheckResult",
    "InteractionRecord",
    "InteractionSeverity",
    "MatchConfidence",
    "MatchType",
    "OverrideRecord",
    "OverrideRequest",
    "OverrideResult",
]
