"""Record stores used by the drug safety core.

The protocols describe what the core needs from persistence; the in-memory
implementations back the default application and the tests.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol

from ..models.allergy import AllergyRecord
from ..models.checks import AuditEvent, CheckRecord
from ..models.drug import DrugConcept


def new_id() -> str:
    return str(uuid.uuid4())


class DrugStore(Protocol):
    def upsert(self, drug: DrugConcept) -> None: ...

    def get(self, drug_id: str) -> Optional[DrugConcept]: ...


class AllergyStore(Protocol):
    def insert(self, record: AllergyRecord) -> AllergyRecord: ...

    def get(self, allergy_id: str) -> Optional[AllergyRecord]: ...

    def update(self, allergy_id: str, changes: Dict[str, Any]) -> Optional[AllergyRecord]: ...

    def find_active_by_name(self, patient_id: str, allergen_name: str) -> Optional[AllergyRecord]: ...

    def list_for_patient(self, patient_id: str, *, active_only: bool = True) -> List[AllergyRecord]: ...


class CheckStore(Protocol):
    def insert(self, record: CheckRecord) -> CheckRecord: ...

    def get(self, check_id: str) -> Optional[CheckRecord]: ...

    def mark_overridden(
        self,
        check_id: str,
        *,
        reason: str,
        overridden_by: str,
        overridden_at: datetime,
    ) -> Optional[CheckRecord]: ...

    def list_for_patient(self, patient_id: str, *, kind: Optional[str] = None, limit: int = 20) -> List[CheckRecord]: ...


class AuditStore(Protocol):
    def append(self, event: AuditEvent) -> AuditEvent: ...

    def list(
        self,
        *,
        user_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEvent]: ...

    def delete_expired(self, now: datetime) -> int: ...


class InMemoryDrugStore:
    """Local fallback copies of drug concepts keyed by id."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._drugs: Dict[str, DrugConcept] = {}

    def upsert(self, drug: DrugConcept) -> None:
        stored = drug.model_copy(deep=True, update={"last_verified_at": datetime.utcnow()})
        with self._lock:
            self._drugs[drug.id] = stored

    def get(self, drug_id: str) -> Optional[DrugConcept]:
        with self._lock:
            drug = self._drugs.get(drug_id)
            return drug.model_copy(deep=True) if drug else None


class InMemoryAllergyStore:
    """Allergy records; no uniqueness constraint, mirroring a plain table."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._records: Dict[str, AllergyRecord] = {}

    def insert(self, record: AllergyRecord) -> AllergyRecord:
        with self._lock:
            self._records[record.id] = record.model_copy(deep=True)
        return record

    def get(self, allergy_id: str) -> Optional[AllergyRecord]:
        with self._lock:
            record = self._records.get(allergy_id)
            return record.model_copy(deep=True) if record else None

    def update(self, allergy_id: str, changes: Dict[str, Any]) -> Optional[AllergyRecord]:
        with self._lock:
            record = self._records.get(allergy_id)
            if record is None:
                return None
            updated = record.model_copy(update={**changes, "updated_at": datetime.utcnow()})
            self._records[allergy_id] = updated
            return updated.model_copy(deep=True)

    def find_active_by_name(self, patient_id: str, allergen_name: str) -> Optional[AllergyRecord]:
        needle = allergen_name.strip().lower()
        with self._lock:
            for record in self._records.values():
                if (
                    record.patient_id == patient_id
                    and record.is_active
                    and record.allergen_name.strip().lower() == needle
                ):
                    return record.model_copy(deep=True)
        return None

    def list_for_patient(self, patient_id: str, *, active_only: bool = True) -> List[AllergyRecord]:
        with self._lock:
            return [
                record.model_copy(deep=True)
                for record in self._records.values()
                if record.patient_id == patient_id and (record.is_active or not active_only)
            ]


class InMemoryCheckStore:
    """Interaction/allergy check history with write-once overrides."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._records: Dict[str, CheckRecord] = {}

    def insert(self, record: CheckRecord) -> CheckRecord:
        with self._lock:
            self._records[record.id] = record.model_copy(deep=True)
        return record

    def get(self, check_id: str) -> Optional[CheckRecord]:
        with self._lock:
            record = self._records.get(check_id)
            return record.model_copy(deep=True) if record else None

    def mark_overridden(
        self,
        check_id: str,
        *,
        reason: str,
        overridden_by: str,
        overridden_at: datetime,
    ) -> Optional[CheckRecord]:
        """Apply the override only if the row exists and is not overridden yet."""
        with self._lock:
            record = self._records.get(check_id)
            if record is None or record.was_overridden:
                return None
            updated = record.model_copy(
                update={
                    "was_overridden": True,
                    "override_reason": reason,
                    "overridden_by": overridden_by,
                    "overridden_at": overridden_at,
                }
            )
            self._records[check_id] = updated
            return updated.model_copy(deep=True)

    def list_for_patient(self, patient_id: str, *, kind: Optional[str] = None, limit: int = 20) -> List[CheckRecord]:
        with self._lock:
            rows = [
                record.model_copy(deep=True)
                for record in self._records.values()
                if record.patient_id == patient_id and (kind is None or record.kind == kind)
            ]
        rows.sort(key=lambda row: row.checked_at, reverse=True)
        return rows[:limit]


class InMemoryAuditStore:
    """Append-only audit log."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._events: List[AuditEvent] = []

    def append(self, event: AuditEvent) -> AuditEvent:
        stored = event.model_copy(update={"id": event.id or new_id()})
        with self._lock:
            self._events.append(stored)
        return stored

    def list(
        self,
        *,
        user_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEvent]:
        with self._lock:
            events = [
                event
                for event in self._events
                if (user_id is None or event.user_id == user_id)
                and (resource_type is None or event.resource_type == resource_type)
                and (resource_id is None or event.resource_id == resource_id)
            ]
        events.sort(key=lambda event: event.timestamp, reverse=True)
        return events[offset : offset + limit]

    def delete_expired(self, now: datetime) -> int:
        with self._lock:
            kept = [
                event for event in self._events
                if event.retention_until is None or event.retention_until > now
            ]
            removed = len(self._events) - len(kept)
            self._events = kept
        return removed
