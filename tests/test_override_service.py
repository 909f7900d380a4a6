from __future__ import annotations

from datetime import datetime
from typing import List

import pytest

from drug_safety.config import Settings
from drug_safety.models.checks import AuditAction, AuditEvent, CheckKind, CheckRecord
from drug_safety.services.audit_service import AuditService
from drug_safety.services.error_handling import ValidationError
from drug_safety.services.override_service import OverrideService, is_top_severity
from drug_safety.services.stores import InMemoryAuditStore, InMemoryCheckStore


class FailingAuditStore(InMemoryAuditStore):
    def append(self, event: AuditEvent) -> AuditEvent:
        raise RuntimeError("audit database down")


def _service(audit_store=None):
    check_store = InMemoryCheckStore()
    audit_store = audit_store or InMemoryAuditStore()
    audit = AuditService(audit_store, Settings())
    return OverrideService(check_store=check_store, audit=audit), check_store, audit


def _actions(audit: AuditService, actor: str = "doc-1") -> List[AuditAction]:
    return [event.action for event in audit.logs_for_user(actor)]


def test_is_top_severity() -> None:
    assert is_top_severity("HIGH")
    assert is_top_severity("life_threatening")
    assert not is_top_severity("MODERATE")
    assert not is_top_severity(None)


def test_blank_reason_rejected() -> None:
    service, _, _ = _service()
    with pytest.raises(ValidationError) as exc_info:
        service.record_override(["c1"], "   ", "doc-1")
    assert exc_info.value.reason == "override_reason_required"


def test_empty_check_ids_rejected() -> None:
    service, _, _ = _service()
    with pytest.raises(ValidationError) as exc_info:
        service.record_override(["", "  "], "benefit outweighs risk", "doc-1")
    assert exc_info.value.reason == "check_ids_required"


def test_double_override_is_idempotent() -> None:
    service, check_store, audit = _service()
    check_store.insert(CheckRecord(id="c1", kind=CheckKind.INTERACTION, severity="HIGH", drug_ids=["1", "2"]))
    check_store.insert(CheckRecord(id="c2", kind=CheckKind.INTERACTION, severity="LOW", drug_ids=["1", "3"]))

    first = service.record_override(["c1", "c2"], "monitored in ward", "doc-1", patient_id="p1")
    second = service.record_override(["c1", "c2"], "second attempt", "doc-1", patient_id="p1")

    assert first.overridden_count == 2
    assert first.high_severity_count == 1
    assert first.override is not None
    assert first.override.acknowledged_checks == ["c1", "c2"]
    assert second.overridden_count == 0
    assert second.high_severity_count == 0
    assert second.already_overridden == ["c1", "c2"]

    record = check_store.get("c1")
    assert record is not None
    assert record.was_overridden is True
    assert record.override_reason == "monitored in ward"

    actions = _actions(audit)
    assert actions.count(AuditAction.HIGH_SEVERITY_OVERRIDE) == 1
    assert actions.count(AuditAction.INTERACTION_OVERRIDE) == 2


def test_life_threatening_allergy_counts_as_high_severity() -> None:
    service, check_store, audit = _service()
    check_store.insert(
        CheckRecord(id="a1", kind=CheckKind.ALLERGY, severity="LIFE_THREATENING", patient_id="p1")
    )

    result = service.record_override(["a1"], "desensitization protocol", "doc-1")

    assert result.high_severity_count == 1
    assert AuditAction.HIGH_SEVERITY_OVERRIDE in _actions(audit)


def test_unknown_check_id_is_inserted_as_overridden() -> None:
    service, check_store, audit = _service()

    result = service.record_override(["external-7"], "checked by pharmacist", "doc-1", prescription_id="rx-1")

    assert result.overridden_count == 1
    record = check_store.get("external-7")
    assert record is not None
    assert record.was_overridden is True
    assert record.overridden_by == "doc-1"
    assert isinstance(record.overridden_at, datetime)

    event = audit.logs_for_resource("InteractionCheck", "rx-1")[0]
    assert event.metadata["override_reason"] == "checked by pharmacist"
    assert AuditAction.HIGH_SEVERITY_OVERRIDE not in _actions(audit)


def test_override_review_details_reach_audit_metadata() -> None:
    service, check_store, audit = _service()
    check_store.insert(CheckRecord(id="c1", kind=CheckKind.INTERACTION, severity="MODERATE", drug_ids=["1", "2"]))
    details = [{"check_id": "c1", "severity": "MODERATE", "acknowledged": True}]

    service.record_override(
        ["c1"],
        "INR monitored twice weekly",
        "doc-1",
        prescription_id="rx-9",
        confirmed_review=True,
        patient_informed=True,
        alternatives_considered="Apixaban, declined due to renal function",
        interaction_details=details,
    )

    metadata = audit.logs_for_resource("InteractionCheck", "rx-9")[0].metadata
    assert metadata["confirmed_review"] is True
    assert metadata["patient_informed"] is True
    assert metadata["alternatives_considered"] == "Apixaban, declined due to renal function"
    assert metadata["interaction_details"] == details


def test_allergy_override_is_audited_on_patient() -> None:
    service, check_store, audit = _service()
    check_store.insert(
        CheckRecord(
            id="a1",
            kind=CheckKind.ALLERGY,
            patient_id="p1",
            drug_ids=["2231"],
            severity="SEVERE",
            allergy_id="allergy-1",
            allergen_name="Penicillin",
            drug_name="Cephalexin 250 MG Oral Capsule",
            match_type="CROSS_REACTIVE",
        )
    )

    service.record_override(["a1"], "tolerated cephalosporins before", "doc-1", patient_id="p1")

    actions = _actions(audit)
    assert actions == [AuditAction.ALLERGY_CONFLICT_OVERRIDE]
    event = audit.logs_for_resource("Patient", "p1")[0]
    assert event.metadata["conflicts"] == [
        {
            "check_id": "a1",
            "allergy_id": "allergy-1",
            "allergen": "Penicillin",
            "drug_id": "2231",
            "drug": "Cephalexin 250 MG Oral Capsule",
            "severity": "SEVERE",
            "match_type": "CROSS_REACTIVE",
        }
    ]


def test_mixed_override_emits_one_event_per_kind() -> None:
    service, check_store, audit = _service()
    check_store.insert(CheckRecord(id="c1", kind=CheckKind.INTERACTION, severity="LOW", drug_ids=["1", "2"]))
    check_store.insert(CheckRecord(id="a1", kind=CheckKind.ALLERGY, severity="MILD", patient_id="p1"))

    service.record_override(["c1", "a1"], "reviewed with pharmacist", "doc-1", patient_id="p1")

    assert sorted(_actions(audit)) == sorted([AuditAction.INTERACTION_OVERRIDE, AuditAction.ALLERGY_CONFLICT_OVERRIDE])
    interaction_event = audit.logs_for_resource("InteractionCheck", "p1")[0]
    assert [check["id"] for check in interaction_event.metadata["checks"]] == ["c1"]


def test_audit_failure_does_not_block_override() -> None:
    service, check_store, _ = _service(FailingAuditStore())
    check_store.insert(CheckRecord(id="c1", kind=CheckKind.INTERACTION, severity="HIGH"))

    result = service.record_override(["c1"], "benefit outweighs risk", "doc-1")

    assert result.overridden_count == 1
    assert result.high_severity_count == 1
