"""Clinician overrides of interaction and allergy warnings."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..models.allergy import AllergySeverity
from ..models.checks import AuditAction, CheckKind, CheckRecord, OverrideRecord, OverrideResult
from ..models.drug import InteractionSeverity
from .audit_service import AuditService
from .error_handling import ValidationError
from .stores import CheckStore

logger = logging.getLogger(__name__)

TOP_SEVERITIES = {InteractionSeverity.HIGH.value, AllergySeverity.LIFE_THREATENING.value}


def is_top_severity(severity: Optional[str]) -> bool:
    return bool(severity) and severity.upper() in TOP_SEVERITIES


class OverrideService:
    """Records clinician justification when safety warnings are acknowledged."""

    def __init__(self, *, check_store: CheckStore, audit: AuditService) -> None:
        self._check_store = check_store
        self._audit = audit

    def record_override(
        self,
        check_ids: Sequence[str],
        reason: str,
        actor_id: str,
        *,
        patient_id: Optional[str] = None,
        prescription_id: Optional[str] = None,
        confirmed_review: bool = False,
        patient_informed: bool = False,
        alternatives_considered: Optional[str] = None,
        interaction_details: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> OverrideResult:
        """Mark checks overridden and audit the justification.

        Interaction checks are audited as ``INTERACTION_OVERRIDE`` on the
        prescription; allergy checks as ``ALLERGY_CONFLICT_OVERRIDE`` on the
        patient. A request that mixes both kinds produces both events.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Override reason is required", reason="override_reason_required")
        ids = list(dict.fromkeys(check_id.strip() for check_id in check_ids if check_id and check_id.strip()))
        if not ids:
            raise ValidationError("At least one check must be acknowledged", reason="check_ids_required")
        if not actor_id:
            raise ValidationError("Overriding user is required", reason="actor_required")

        overridden_at = datetime.utcnow()
        override = OverrideRecord(
            reason=reason,
            acknowledged_checks=ids,
            overridden_by=actor_id,
            overridden_at=overridden_at,
        )
        newly_overridden: List[CheckRecord] = []
        already_overridden: List[str] = []

        for check_id in ids:
            updated = self._check_store.mark_overridden(
                check_id,
                reason=reason,
                overridden_by=actor_id,
                overridden_at=overridden_at,
            )
            if updated is not None:
                newly_overridden.append(updated)
                continue

            existing = self._check_store.get(check_id)
            if existing is not None:
                # Write-once: keep the first override untouched
                already_overridden.append(check_id)
                continue

            # Unknown id (synthetic or out-of-order): insert it with the override applied
            synthetic = CheckRecord(
                id=check_id,
                kind=CheckKind.INTERACTION,
                patient_id=patient_id,
                was_overridden=True,
                override_reason=reason,
                overridden_by=actor_id,
                overridden_at=overridden_at,
            )
            self._check_store.insert(synthetic)
            newly_overridden.append(synthetic)

        high_severity = [record for record in newly_overridden if is_top_severity(record.severity)]
        allergy_checks = [record for record in newly_overridden if record.kind == CheckKind.ALLERGY]
        interaction_checks = [record for record in newly_overridden if record.kind != CheckKind.ALLERGY]
        resource_id = prescription_id or patient_id or ids[0]

        # A repeat override with nothing new is still recorded as an interaction override attempt
        if interaction_checks or not allergy_checks:
            self._audit.log_action(
                action=AuditAction.INTERACTION_OVERRIDE,
                resource_type="InteractionCheck",
                resource_id=resource_id,
                user_id=actor_id,
                metadata={
                    "override_reason": reason,
                    "check_count": len(ids),
                    "overridden_count": len(interaction_checks),
                    "already_overridden": already_overridden,
                    "high_severity_count": sum(1 for record in interaction_checks if is_top_severity(record.severity)),
                    "confirmed_review": confirmed_review,
                    "patient_informed": patient_informed,
                    "alternatives_considered": alternatives_considered or None,
                    "patient_id": patient_id,
                    "prescription_id": prescription_id,
                    "checks": [
                        {
                            "id": record.id,
                            "kind": record.kind.value,
                            "severity": record.severity,
                            "drug_ids": record.drug_ids,
                        }
                        for record in interaction_checks
                    ],
                    "interaction_details": list(interaction_details or []),
                    "timestamp": overridden_at.isoformat(),
                },
            )

        if allergy_checks:
            allergy_patient_id = patient_id or allergy_checks[0].patient_id or resource_id
            self._audit.log_action(
                action=AuditAction.ALLERGY_CONFLICT_OVERRIDE,
                resource_type="Patient",
                resource_id=allergy_patient_id,
                user_id=actor_id,
                metadata={
                    "override_reason": reason,
                    "conflicts_overridden": len(allergy_checks),
                    "confirmed_review": confirmed_review,
                    "patient_informed": patient_informed,
                    "alternatives_considered": alternatives_considered or None,
                    "prescription_id": prescription_id,
                    "conflicts": [
                        {
                            "check_id": record.id,
                            "allergy_id": record.allergy_id,
                            "allergen": record.allergen_name,
                            "drug_id": record.drug_ids[0] if record.drug_ids else None,
                            "drug": record.drug_name,
                            "severity": record.severity,
                            "match_type": record.match_type,
                        }
                        for record in allergy_checks
                    ],
                    "timestamp": overridden_at.isoformat(),
                },
            )

        if high_severity:
            logger.warning(
                "override.high_severity actor_id=%s count=%d patient_id=%s",
                actor_id,
                len(high_severity),
                patient_id,
            )
            only_allergies = all(record.kind == CheckKind.ALLERGY for record in high_severity)
            self._audit.log_action(
                action=AuditAction.HIGH_SEVERITY_OVERRIDE,
                resource_type="Patient" if only_allergies else "InteractionCheck",
                resource_id=(patient_id or high_severity[0].patient_id or resource_id) if only_allergies else resource_id,
                user_id=actor_id,
                metadata={
                    "type": "HIGH_SEVERITY_OVERRIDE",
                    "high_severity_count": len(high_severity),
                    "check_ids": [record.id for record in high_severity],
                    "reason": reason,
                    "patient_id": patient_id,
                    "prescription_id": prescription_id,
                },
            )

        return OverrideResult(
            overridden_count=len(newly_overridden),
            high_severity_count=len(high_severity),
            timestamp=overridden_at,
            already_overridden=already_overridden,
            override=override,
        )
