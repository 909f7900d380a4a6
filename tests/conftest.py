"""Shared pytest fixtures for all tests."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import pytest

from drug_safety.config import Settings
from drug_safety.dependencies import ServiceContainer, build_container
from drug_safety.services.feature_flags import StaticFeatureFlags

RXNAV_BASE = "https://rxnav.test/REST"


class FakeRxNav:
    """In-memory stand-in for the RxNav REST API, served via httpx.MockTransport."""

    def __init__(self) -> None:
        self.drugs: Dict[str, Dict[str, Any]] = {}
        self.interactions: List[Dict[str, Any]] = []
        self.calls: List[str] = []
        self.fail_status: Optional[int] = None
        self.timeout = False
        self.on_request = None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def add_drug(
        self,
        drug_id: str,
        name: str,
        *,
        ingredients: Optional[List[str]] = None,
        classes: Optional[List[str]] = None,
        brands: Optional[List[str]] = None,
        dose_form: Optional[str] = None,
        tty: str = "SCD",
    ) -> None:
        self.drugs[drug_id] = {
            "name": name,
            "ingredients": ingredients or [],
            "classes": classes or [],
            "brands": brands or [],
            "dose_form": dose_form,
            "tty": tty,
        }

    def add_interaction(self, drug_a: str, drug_b: str, severity: Optional[str], description: str = "") -> None:
        self.interactions.append(
            {"a": drug_a, "b": drug_b, "severity": severity, "description": description}
        )

    def calls_to(self, fragment: str) -> int:
        return sum(1 for path in self.calls if fragment in path)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.replace("/REST", "", 1)
        self.calls.append(path)
        if self.on_request is not None:
            self.on_request(path)
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"error": "unavailable"})

        if path == "/drugs.json":
            return httpx.Response(200, json=self._search(request.url.params.get("name", "")))
        if path == "/interaction/list.json":
            ids = request.url.params.get("rxcuis", "").split()
            return httpx.Response(200, json=self._interactions(ids))

        parts = path.strip("/").split("/")
        if len(parts) == 3 and parts[0] == "rxcui":
            drug_id, resource = parts[1], parts[2]
            drug = self.drugs.get(drug_id)
            if drug is None:
                return httpx.Response(200, json={})
            if resource == "allrelated.json":
                return httpx.Response(200, json=self._allrelated(drug_id, drug))
            if resource == "properties.json":
                return httpx.Response(
                    200,
                    json={
                        "propConceptGroup": {
                            "propConcept": [
                                {"propName": "STR", "propValue": "500 mg"},
                                {"propName": "DRT", "propValue": "ORAL"},
                            ]
                        }
                    },
                )
            if resource == "class.json":
                return httpx.Response(
                    200,
                    json={
                        "rxclassMinConceptList": {
                            "rxclassMinConcept": [
                                {"classId": f"C{i}", "className": name, "classType": "EPC"}
                                for i, name in enumerate(drug["classes"])
                            ]
                        }
                    },
                )
            if resource == "displaynames.json":
                return httpx.Response(200, json={"displayTermsList": {"term": [drug["name"].lower()]}})
        return httpx.Response(404, json={"error": "not found"})

    def _search(self, term: str) -> Dict[str, Any]:
        needle = term.lower()
        props = [
            {"rxcui": drug_id, "name": drug["name"], "tty": drug["tty"]}
            for drug_id, drug in self.drugs.items()
            if needle in drug["name"].lower()
        ]
        return {"drugGroup": {"name": term, "conceptGroup": [{"tty": "SCD", "conceptProperties": props}]}}

    def _allrelated(self, drug_id: str, drug: Dict[str, Any]) -> Dict[str, Any]:
        groups = [
            {"tty": drug["tty"], "conceptProperties": [{"rxcui": drug_id, "name": drug["name"], "tty": drug["tty"]}]},
            {
                "tty": "IN",
                "conceptProperties": [
                    {"rxcui": f"in-{name}", "name": name, "tty": "IN"} for name in drug["ingredients"]
                ],
            },
            {
                "tty": "BN",
                "conceptProperties": [
                    {"rxcui": f"bn-{name}", "name": name, "tty": "BN"} for name in drug["brands"]
                ],
            },
        ]
        if drug["dose_form"]:
            groups.append(
                {"tty": "DF", "conceptProperties": [{"rxcui": "df", "name": drug["dose_form"], "tty": "DF"}]}
            )
        return {"allRelatedGroup": {"rxcui": drug_id, "conceptGroup": groups}}

    def _interactions(self, ids: List[str]) -> Dict[str, Any]:
        wanted = set(ids)
        pairs = []
        for item in self.interactions:
            if item["a"] in wanted and item["b"] in wanted:
                pair: Dict[str, Any] = {
                    "interactionConcept": [
                        {"minConceptItem": {"rxcui": item["a"], "name": self.drugs.get(item["a"], {}).get("name", item["a"])}},
                        {"minConceptItem": {"rxcui": item["b"], "name": self.drugs.get(item["b"], {}).get("name", item["b"])}},
                    ],
                    "description": item["description"],
                }
                if item["severity"] is not None:
                    pair["severity"] = item["severity"]
                pairs.append(pair)
        return {
            "fullInteractionTypeGroup": [
                {"sourceName": "DrugBank", "fullInteractionType": [{"interactionPair": pairs}]}
            ]
        }


@pytest.fixture
def settings() -> Settings:
    """Default settings for tests."""
    return Settings(
        rxnav_base_url=RXNAV_BASE,
        rxnav_timeout_seconds=1.0,
        redis_url=None,
        cache_sweep_interval_seconds=0,
        audit_cleanup_interval_seconds=0,
    )


@pytest.fixture
def rxnav() -> FakeRxNav:
    fake = FakeRxNav()
    fake.add_drug("7980", "Penicillin G", ingredients=["penicillin G"], classes=["Penicillins"], tty="IN")
    fake.add_drug("723", "Amoxicillin 500 MG Oral Capsule", ingredients=["amoxicillin"], classes=["Penicillins"])
    fake.add_drug("2231", "Cephalexin 250 MG Oral Capsule", ingredients=["cephalexin"], classes=["Cephalosporin"])
    fake.add_drug("5640", "Ibuprofen 200 MG Oral Tablet", ingredients=["ibuprofen"], classes=["Nonsteroidal Anti-inflammatory Agent"], brands=["Advil"])
    fake.add_drug("11289", "Warfarin Sodium 5 MG Oral Tablet", ingredients=["warfarin"], classes=["Vitamin K Antagonist"], brands=["Coumadin"])
    fake.add_drug("1191", "Aspirin 81 MG Oral Tablet", ingredients=["aspirin"], classes=["Platelet Aggregation Inhibitor"])
    fake.add_interaction("11289", "5640", "moderate", "Ibuprofen may increase the anticoagulant effect of warfarin.")
    fake.add_interaction("11289", "1191", "high", "Concomitant use increases the risk of bleeding.")
    fake.add_interaction("5640", "1191", "minor", "Ibuprofen may reduce the antiplatelet effect of aspirin.")
    return fake


@pytest.fixture
def flags() -> StaticFeatureFlags:
    return StaticFeatureFlags()


@pytest.fixture
def container(settings: Settings, rxnav: FakeRxNav, flags: StaticFeatureFlags) -> ServiceContainer:
    """Fully wired services talking to the fake knowledge API."""
    return build_container(settings, flags=flags, transport=rxnav.transport)
