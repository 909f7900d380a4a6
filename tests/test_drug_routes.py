from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from drug_safety.config import Settings
from drug_safety.dependencies import ServiceContainer
from drug_safety.main import create_app

DOCTOR = {"X-User-Id": "doc-1"}


@pytest.fixture
def client(settings: Settings, container: ServiceContainer) -> TestClient:
    """Create test client over the fake knowledge API."""
    app = create_app(settings, container)
    return TestClient(app)


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_search_and_detail(client: TestClient) -> None:
    resp = client.get("/api/drugs/search", params={"term": "warfarin"}, headers=DOCTOR)
    assert resp.status_code == 200, resp.text
    assert [item["id"] for item in resp.json()] == ["11289"]

    resp = client.get("/api/drugs/11289", headers=DOCTOR)
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["brand_names"] == ["Coumadin"]
    assert data["active_ingredients"] == ["warfarin"]


def test_search_term_too_short_is_rejected(client: TestClient) -> None:
    resp = client.get("/api/drugs/search", params={"term": "a"})
    assert resp.status_code == 422
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["reason"] == "request_validation_error"


def test_unknown_drug_returns_not_found_envelope(client: TestClient) -> None:
    resp = client.get("/api/drugs/000000")
    assert resp.status_code == 404
    body = resp.json()
    assert body["error"]["code"] == "NOT_FOUND"
    assert "trace_id" in body["meta"]["debug"]


def test_resolve_synonyms_and_classes(client: TestClient) -> None:
    resp = client.get("/api/drugs/resolve", params={"name": "Cephalexin"})
    assert resp.status_code == 200, resp.text
    assert resp.json()["id"] == "2231"

    assert client.get("/api/drugs/2231/classes").json() == ["Cephalosporin"]
    assert client.get("/api/drugs/2231/synonyms").json() == ["cephalexin 250 mg oral capsule"]

    resp = client.get("/api/drugs/resolve", params={"name": "Unobtainium"})
    assert resp.status_code == 404


def test_rxnav_health_and_cache_stats(client: TestClient, rxnav) -> None:
    assert client.get("/api/drugs/health/rxnav").json()["healthy"] is True

    rxnav.fail_status = 503
    assert client.get("/api/drugs/health/rxnav").json()["healthy"] is False

    stats = client.get("/api/drugs/cache/stats").json()
    assert stats["shared"] is None
    assert "hit_rate" in stats


def test_interaction_check_and_override_flow(client: TestClient, container: ServiceContainer) -> None:
    resp = client.post(
        "/api/drugs/interactions/check",
        json={"drug_ids": ["11289", "1191"], "prescription_id": "rx-1"},
        headers=DOCTOR,
    )
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["has_interactions"] is True
    assert data["interactions"][0]["severity"] == "HIGH"

    override = {
        "check_ids": data["check_ids"],
        "reason": "Benefit outweighs risk",
        "prescription_id": "rx-1",
        "confirmed_review": True,
        "patient_informed": True,
        "alternatives_considered": "Clopidogrel",
        "interaction_details": [{"check_id": data["check_ids"][0], "severity": "HIGH"}],
    }
    resp = client.post("/api/drugs/interactions/override", json=override, headers=DOCTOR)
    assert resp.status_code == 200, resp.text
    assert resp.json()["high_severity_count"] == 1

    events = container.audit.logs_for_resource("InteractionCheck", "rx-1")
    recorded = next(event for event in events if event.metadata.get("confirmed_review") is not None)
    assert recorded.metadata["confirmed_review"] is True
    assert recorded.metadata["patient_informed"] is True
    assert recorded.metadata["alternatives_considered"] == "Clopidogrel"
    assert recorded.metadata["interaction_details"] == override["interaction_details"]

    resp = client.post("/api/drugs/interactions/override", json=override, headers=DOCTOR)
    assert resp.json()["overridden_count"] == 0
    assert resp.json()["already_overridden"] == data["check_ids"]


def test_override_requires_actor_and_reason(client: TestClient) -> None:
    resp = client.post("/api/drugs/interactions/override", json={"check_ids": ["c1"], "reason": "ok"})
    assert resp.status_code == 400
    assert resp.json()["error"]["reason"] == "actor_required"

    resp = client.post(
        "/api/drugs/interactions/override",
        json={"check_ids": ["c1"], "reason": ""},
        headers=DOCTOR,
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


def test_allergy_endpoints(client: TestClient) -> None:
    resp = client.post(
        "/api/drugs/allergies/patients/p1",
        json={"allergen_name": "Penicillin", "severity": "SEVERE", "reaction": "Hives"},
        headers=DOCTOR,
    )
    assert resp.status_code == 201, resp.text
    allergy_id = resp.json()["id"]

    resp = client.post(
        "/api/drugs/allergies/patients/p1",
        json={"allergen_name": "PENICILLIN"},
        headers=DOCTOR,
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "DUPLICATE"

    listed = client.get("/api/drugs/allergies/patients/p1").json()
    assert [item["id"] for item in listed] == [allergy_id]

    resp = client.post(
        "/api/drugs/allergies/check",
        json={"patient_id": "p1", "drug_ids": ["2231"]},
        headers=DOCTOR,
    )
    assert resp.status_code == 200, resp.text
    conflict = resp.json()["conflicts"][0]
    assert conflict["match_type"] == "CROSS_REACTIVE"
    assert conflict["confidence"] == "LOW"

    checks = client.get("/api/drugs/allergies/patients/p1/checks").json()
    assert len(checks) == 1

    resp = client.post(f"/api/drugs/allergies/{allergy_id}/verify", headers=DOCTOR)
    assert resp.json()["verified_by"] == "doc-1"

    resp = client.patch(f"/api/drugs/allergies/{allergy_id}", json={"reaction": "Anaphylaxis"}, headers=DOCTOR)
    assert resp.json()["reaction"] == "Anaphylaxis"

    resp = client.delete(f"/api/drugs/allergies/{allergy_id}", headers=DOCTOR)
    assert resp.json()["is_active"] is False
    assert client.get("/api/drugs/allergies/patients/p1").json() == []
    assert len(client.get("/api/drugs/allergies/patients/p1/history").json()) == 1


def test_blank_allergen_name_is_rejected(client: TestClient) -> None:
    resp = client.post("/api/drugs/allergies/patients/p1", json={"allergen_name": "   "})
    assert resp.status_code == 422


@pytest.mark.parametrize(
    "payload",
    [
        {"allergen_name": None},
        {"allergen_name": "  "},
        {"severity": None},
        {"allergen_type": None},
        {"is_active": None},
    ],
)
def test_patch_with_null_required_field_keeps_record_intact(client: TestClient, payload) -> None:
    resp = client.post(
        "/api/drugs/allergies/patients/p1",
        json={"allergen_name": "Penicillin", "severity": "SEVERE"},
        headers=DOCTOR,
    )
    allergy_id = resp.json()["id"]

    resp = client.patch(f"/api/drugs/allergies/{allergy_id}", json=payload, headers=DOCTOR)
    assert resp.status_code == 422

    listed = client.get("/api/drugs/allergies/patients/p1").json()
    assert listed[0]["allergen_name"] == "Penicillin"
    assert listed[0]["severity"] == "SEVERE"

    resp = client.post(
        "/api/drugs/allergies/check",
        json={"patient_id": "p1", "drug_ids": ["7980"]},
        headers=DOCTOR,
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["has_conflicts"] is True


def test_common_allergens(client: TestClient) -> None:
    resp = client.get("/api/drugs/allergies/common", params={"q": "statin"})
    assert resp.json() == ["Statins", "Atorvastatin", "Simvastatin"]
