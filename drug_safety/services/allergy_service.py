"""Patient allergy management and allergy conflict detection.

The duplicate check in :meth:`AllergyService.add` is read-then-write without a
transaction. Two concurrent adds for the same patient and allergen can both
pass it unless the store enforces uniqueness.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..config import Settings
from ..models.allergy import (
    AllergenType,
    AllergyCheckResult,
    AllergyCreate,
    AllergyRecord,
    AllergyUpdate,
    ConflictMatch,
    allergy_severity_rank,
)
from ..models.checks import AuditAction, CheckKind, CheckRecord
from ..models.drug import DrugConcept
from ..utils.logging import get_request_logger
from .allergy_matching import MatchStage, match_pair
from .audit_service import AuditService
from .cache import BaseCache, CacheKeys
from .drug_catalog_service import DrugCatalogService
from .error_handling import DuplicateError, NotFoundError, ValidationError
from .feature_flags import FeatureFlagSource
from .interaction_checker import dedupe_ids
from .stores import AllergyStore, CheckStore, new_id

logger = logging.getLogger(__name__)

UNVERIFIED_DRUG_WARNING = "unverified_drug"
STALE_DRUG_WARNING = "stale_drug"

COMMON_ALLERGENS: List[str] = [
    "Penicillin",
    "Amoxicillin",
    "Ampicillin",
    "Sulfa drugs",
    "Sulfamethoxazole",
    "Aspirin",
    "Ibuprofen",
    "Naproxen",
    "Celecoxib",
    "Codeine",
    "Morphine",
    "Tramadol",
    "Hydrocodone",
    "Oxycodone",
    "Cephalosporins",
    "Erythromycin",
    "Azithromycin",
    "Ciprofloxacin",
    "Levofloxacin",
    "Metronidazole",
    "Tetracycline",
    "Doxycycline",
    "Vancomycin",
    "ACE inhibitors",
    "Lisinopril",
    "Enalapril",
    "Beta blockers",
    "Metoprolol",
    "Atenolol",
    "Statins",
    "Atorvastatin",
    "Simvastatin",
    "Contrast dye",
    "Latex",
    "Lidocaine",
    "Heparin",
    "Insulin",
    "Metformin",
]


def sort_conflicts(conflicts: List[ConflictMatch]) -> List[ConflictMatch]:
    """LIFE_THREATENING first, MILD last, unknown severities after that."""
    return sorted(conflicts, key=lambda conflict: allergy_severity_rank(conflict.severity))


class AllergyService:
    """CRUD over patient allergies plus the allergy conflict detector."""

    def __init__(
        self,
        *,
        allergy_store: AllergyStore,
        check_store: CheckStore,
        catalog: DrugCatalogService,
        cache: BaseCache,
        flags: FeatureFlagSource,
        audit: AuditService,
        stages: Sequence[MatchStage],
        settings: Settings,
    ) -> None:
        self._allergy_store = allergy_store
        self._check_store = check_store
        self._catalog = catalog
        self._cache = cache
        self._flags = flags
        self._audit = audit
        self._stages = list(stages)
        self._settings = settings

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def list_active(self, patient_id: str) -> List[AllergyRecord]:
        """Active allergies, most severe first, then by allergen name."""
        cache_key = CacheKeys.patient_allergies(patient_id)
        cached = await self._cache.get(cache_key)
        if cached is not None:
            return [AllergyRecord.model_validate(item) for item in cached]

        records = self._allergy_store.list_for_patient(patient_id, active_only=True)
        records.sort(key=lambda record: (allergy_severity_rank(record.severity), record.allergen_name.lower()))
        await self._cache.set(
            cache_key,
            [record.model_dump(mode="json") for record in records],
            self._settings.allergy_cache_ttl,
        )
        return records

    def get(self, allergy_id: str) -> AllergyRecord:
        record = self._allergy_store.get(allergy_id)
        if record is None:
            raise NotFoundError(f'Allergy with ID "{allergy_id}" not found', identifier=allergy_id)
        return record

    async def add(self, patient_id: str, data: AllergyCreate, actor_id: Optional[str]) -> AllergyRecord:
        if not patient_id:
            raise ValidationError("patient_id is required", reason="missing_patient_id")

        existing = self._allergy_store.find_active_by_name(patient_id, data.allergen_name)
        if existing is not None:
            raise DuplicateError(
                f'Patient already has an active allergy to "{data.allergen_name}"',
                reason="duplicate_allergy",
                debug={"existing_allergy_id": existing.id},
            )

        concept_id = data.allergen_concept_id
        if not concept_id and data.allergen_type == AllergenType.DRUG:
            resolved = await self._catalog.resolve_drug_name(data.allergen_name)
            if resolved is not None:
                concept_id = resolved.id

        now = datetime.utcnow()
        record = AllergyRecord(
            id=new_id(),
            patient_id=patient_id,
            allergen_name=data.allergen_name,
            allergen_type=data.allergen_type,
            allergen_concept_id=concept_id,
            severity=data.severity,
            reaction=data.reaction,
            onset_date=data.onset_date,
            notes=data.notes,
            verified_by=data.verified_by,
            verified_at=now if data.verified_by else None,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self._allergy_store.insert(record)

        self._audit.log_action(
            action=AuditAction.ALLERGY_ADDED,
            resource_type="PatientAllergy",
            resource_id=record.id,
            user_id=actor_id,
            metadata={"patient_id": patient_id, "allergen_name": data.allergen_name},
        )
        await self._cache.delete(CacheKeys.patient_allergies(patient_id))
        return record

    async def update(self, allergy_id: str, data: AllergyUpdate, actor_id: Optional[str]) -> AllergyRecord:
        existing = self.get(allergy_id)
        changes: Dict[str, Any] = data.model_dump(exclude_unset=True)

        new_name = changes.get("allergen_name")
        reactivating = changes.get("is_active") is True and not existing.is_active
        if (new_name and new_name.strip().lower() != existing.allergen_name.strip().lower()) or reactivating:
            clash = self._allergy_store.find_active_by_name(existing.patient_id, new_name or existing.allergen_name)
            if clash is not None and clash.id != allergy_id:
                raise DuplicateError(
                    f'Patient already has an active allergy to "{new_name or existing.allergen_name}"',
                    reason="duplicate_allergy",
                )

        updated = self._allergy_store.update(allergy_id, changes)
        if updated is None:
            raise NotFoundError(f'Allergy with ID "{allergy_id}" not found', identifier=allergy_id)

        self._audit.log_action(
            action=AuditAction.ALLERGY_UPDATED,
            resource_type="PatientAllergy",
            resource_id=allergy_id,
            user_id=actor_id,
            metadata={"patient_id": existing.patient_id, "changes": data.model_dump(mode="json", exclude_unset=True)},
        )
        await self._cache.delete(CacheKeys.patient_allergies(existing.patient_id))
        return updated

    async def soft_delete(self, allergy_id: str, actor_id: Optional[str]) -> AllergyRecord:
        existing = self.get(allergy_id)
        updated = self._allergy_store.update(allergy_id, {"is_active": False})
        if updated is None:
            raise NotFoundError(f'Allergy with ID "{allergy_id}" not found', identifier=allergy_id)

        self._audit.log_action(
            action=AuditAction.ALLERGY_DELETED,
            resource_type="PatientAllergy",
            resource_id=allergy_id,
            user_id=actor_id,
            metadata={"patient_id": existing.patient_id, "allergen_name": existing.allergen_name},
        )
        await self._cache.delete(CacheKeys.patient_allergies(existing.patient_id))
        return updated

    async def verify(self, allergy_id: str, actor_id: str) -> AllergyRecord:
        return await self.update(
            allergy_id,
            AllergyUpdate(verified_by=actor_id, verified_at=datetime.utcnow()),
            actor_id,
        )

    def history(self, patient_id: str) -> List[AllergyRecord]:
        """All allergies including inactive ones, active and most recent first."""
        records = self._allergy_store.list_for_patient(patient_id, active_only=False)
        records.sort(key=lambda record: record.updated_at, reverse=True)
        records.sort(key=lambda record: not record.is_active)
        return records

    def check_history(self, patient_id: str, limit: int = 20) -> List[CheckRecord]:
        return self._check_store.list_for_patient(patient_id, kind=CheckKind.ALLERGY, limit=limit)

    @staticmethod
    def search_common_allergens(query: str) -> List[str]:
        needle = (query or "").strip().lower()
        return [name for name in COMMON_ALLERGENS if needle in name.lower()]

    # ------------------------------------------------------------------
    # Conflict detection
    # ------------------------------------------------------------------

    async def check_conflicts(
        self,
        patient_id: str,
        drug_ids: Sequence[str],
        *,
        actor_id: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> AllergyCheckResult:
        # Flags are captured once; a toggle during the check does not affect it
        flags = self._flags.snapshot()
        ids = dedupe_ids(drug_ids)
        if not flags.allergy_check_enabled:
            return AllergyCheckResult(patient_id=patient_id, checked_drugs=ids)

        if len(ids) > self._settings.max_drugs_per_check:
            raise ValidationError(
                f"At most {self._settings.max_drugs_per_check} drugs can be checked at once",
                reason="too_many_drugs",
            )

        allergies = await self.list_active(patient_id)
        if not allergies:
            self._record_check(patient_id, actor_id, ids, [], [])
            return AllergyCheckResult(patient_id=patient_id, checked_drugs=ids)

        req_logger = get_request_logger(logger, trace_id=trace_id, user_id=actor_id, patient_id=patient_id)
        lookups = await asyncio.gather(*(self._catalog.get_detail_with_classes(drug_id) for drug_id in ids))

        warnings: List[str] = []
        drugs: List[DrugConcept] = []
        for drug_id, (drug, verified) in zip(ids, lookups):
            if drug is None:
                warnings.append(f"{UNVERIFIED_DRUG_WARNING}:{drug_id}")
                continue
            if not verified:
                # Stale copy is still matched, but the caller must know it is unverified
                req_logger.warning("allergy.check stale_drug_detail drug_id=%s", drug_id)
                warnings.append(f"{STALE_DRUG_WARNING}:{drug_id}")
            drugs.append(drug)

        conflicts: List[ConflictMatch] = []
        for allergy in allergies:
            for drug in drugs:
                conflict = match_pair(self._stages, allergy, drug)
                if conflict is not None:
                    conflicts.append(conflict)

        conflicts = sort_conflicts(conflicts)
        check_ids = self._record_check(patient_id, actor_id, ids, conflicts, warnings)
        req_logger.info(
            "allergy.check drugs=%d allergies=%d conflicts=%d warnings=%d",
            len(ids),
            len(allergies),
            len(conflicts),
            len(warnings),
        )
        return AllergyCheckResult(
            has_conflicts=len(conflicts) > 0,
            conflicts=conflicts,
            checked_at=datetime.utcnow(),
            patient_id=patient_id,
            checked_drugs=ids,
            check_ids=check_ids,
            warnings=warnings,
        )

    def _record_check(
        self,
        patient_id: str,
        actor_id: Optional[str],
        drug_ids: List[str],
        conflicts: List[ConflictMatch],
        warnings: List[str],
    ) -> List[str]:
        check_ids: List[str] = []
        for conflict in conflicts:
            record = CheckRecord(
                id=new_id(),
                kind=CheckKind.ALLERGY,
                patient_id=patient_id,
                drug_ids=[conflict.matched_drug_id],
                severity=conflict.severity.value,
                summary=f"{conflict.allergen_name} -> {conflict.matched_drug_name}",
                allergy_id=conflict.allergy_id,
                allergen_name=conflict.allergen_name,
                drug_name=conflict.matched_drug_name,
                match_type=conflict.match_type.value,
            )
            try:
                self._check_store.insert(record)
            except Exception:
                logger.exception("allergy.record_failed patient_id=%s allergy_id=%s", patient_id, conflict.allergy_id)
                continue
            check_ids.append(record.id)

        self._audit.log_action(
            action=AuditAction.ALLERGY_CHECK,
            resource_type="Patient",
            resource_id=patient_id,
            user_id=actor_id,
            metadata={
                "checked_drugs": drug_ids,
                "conflicts_found": len(conflicts),
                "has_conflicts": bool(conflicts),
                "check_ids": check_ids,
                "warnings": warnings,
            },
        )
        return check_ids
