from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from drug_safety.config import Settings
from drug_safety.models.checks import AuditAction, AuditEvent
from drug_safety.services.audit_service import AuditService
from drug_safety.services.stores import InMemoryAuditStore


def test_log_sets_retention_and_assigns_id() -> None:
    audit = AuditService(InMemoryAuditStore(), Settings(audit_retention_days=30))

    stored = audit.log_action(
        action=AuditAction.DRUG_LOOKUP,
        resource_type="Drug",
        resource_id="5640",
        user_id="doc-1",
    )

    assert stored is not None
    assert stored.id
    assert stored.retention_until == stored.timestamp + timedelta(days=30)


def test_log_emits_json_line(caplog) -> None:
    audit = AuditService(InMemoryAuditStore(), Settings())

    with caplog.at_level(logging.INFO, logger="audit.drug_safety"):
        audit.log_action(
            action=AuditAction.ALLERGY_CHECK,
            resource_type="Patient",
            resource_id="p1",
            metadata={"conflicts_found": 0},
        )

    records = [record for record in caplog.records if record.name == "audit.drug_safety"]
    assert records
    payload = json.loads(records[-1].getMessage())
    assert payload["action"] == "ALLERGY_CHECK"
    assert payload["metadata"] == {"conflicts_found": 0}


def test_error_message_is_truncated() -> None:
    audit = AuditService(InMemoryAuditStore(), Settings())

    stored = audit.log_action(
        action=AuditAction.INTERACTION_CHECK,
        resource_type="Prescription",
        resource_id="rx-1",
        success=False,
        error_message="x" * 2000,
    )

    assert stored is not None
    assert len(stored.error_message) == 500


def test_queries_filter_and_paginate() -> None:
    audit = AuditService(InMemoryAuditStore(), Settings())
    for index in range(5):
        audit.log_action(
            action=AuditAction.DRUG_SEARCH,
            resource_type="Drug",
            resource_id=f"term-{index}",
            user_id="doc-1" if index % 2 == 0 else "doc-2",
        )

    assert len(audit.logs_for_user("doc-1")) == 3
    assert len(audit.logs_for_user("doc-1", limit=2)) == 2
    assert [event.resource_id for event in audit.logs_for_resource("Drug", "term-3")] == ["term-3"]


def test_cleanup_removes_only_expired_events() -> None:
    store = InMemoryAuditStore()
    audit = AuditService(store, Settings())
    now = datetime.utcnow()
    audit.log(
        AuditEvent(
            action=AuditAction.DRUG_SEARCH,
            resource_type="Drug",
            resource_id="old",
            timestamp=now - timedelta(days=200),
        )
    )
    audit.log_action(action=AuditAction.DRUG_SEARCH, resource_type="Drug", resource_id="new")

    assert audit.cleanup_expired(now) == 1
    assert [event.resource_id for event in store.list()] == ["new"]
