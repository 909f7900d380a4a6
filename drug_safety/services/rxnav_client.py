from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..config import Settings
from ..models.drug import (
    DrugConcept,
    DrugRef,
    InteractionRecord,
    InteractionSeverity,
    RxNavHealth,
    sort_by_severity,
)
from ..utils.logging import get_request_logger
from .error_handling import ExternalServiceError

logger = logging.getLogger(__name__)

_HIGH_MARKERS = ("contraindicated", "severe", "high")
_MODERATE_MARKERS = ("moderate", "caution")


def map_severity(raw: Optional[str]) -> InteractionSeverity:
    """Map a free-text severity from the knowledge source onto our three tiers."""
    if not raw:
        return InteractionSeverity.MODERATE
    lowered = raw.lower()
    if any(marker in lowered for marker in _HIGH_MARKERS):
        return InteractionSeverity.HIGH
    if any(marker in lowered for marker in _MODERATE_MARKERS):
        return InteractionSeverity.MODERATE
    return InteractionSeverity.LOW


class RxNavClient:
    """HTTP client for an RxNav-compatible drug knowledge REST API."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._base_url = settings.rxnav_base_url.rstrip("/")
        self._transport = transport

    async def search(self, term: str, *, trace_id: Optional[str] = None) -> List[DrugConcept]:
        """Search concepts by name using ``/drugs.json``; returns partial records."""
        data = await self._get("/drugs.json", params={"name": term}, trace_id=trace_id)
        results: List[DrugConcept] = []
        for group in (data.get("drugGroup") or {}).get("conceptGroup") or []:
            for prop in group.get("conceptProperties") or []:
                if not prop.get("rxcui"):
                    continue
                synonym = prop.get("synonym")
                results.append(
                    DrugConcept(
                        id=str(prop["rxcui"]),
                        name=prop.get("name") or "",
                        term_type=prop.get("tty") or group.get("tty") or "",
                        synonyms=[synonym] if synonym else [],
                    )
                )
        return results

    async def get_detail(self, drug_id: str, *, trace_id: Optional[str] = None) -> Optional[DrugConcept]:
        """Full concept via ``/rxcui/{id}/allrelated.json`` plus strength and route.

        Returns ``None`` only when the service confirms the concept is unknown.
        """
        try:
            data = await self._get(f"/rxcui/{drug_id}/allrelated.json", trace_id=trace_id)
        except ExternalServiceError as exc:
            if exc.status_code == httpx.codes.NOT_FOUND:
                return None
            raise

        groups = (data.get("allRelatedGroup") or {}).get("conceptGroup") or []
        if not groups:
            return None

        concept = DrugConcept(id=drug_id, name="")
        for group in groups:
            tty = group.get("tty")
            for prop in group.get("conceptProperties") or []:
                name = prop.get("name") or ""
                if str(prop.get("rxcui")) == drug_id:
                    concept.name = name
                    concept.term_type = prop.get("tty") or tty or ""
                synonym = prop.get("synonym")
                if synonym:
                    concept.synonyms.append(synonym)
                if tty == "BN":
                    concept.brand_names.append(name)
                elif tty == "IN":
                    concept.active_ingredients.append(name)
                    if not concept.generic_name:
                        concept.generic_name = name
                elif tty == "DF":
                    concept.dosage_form = name

        if not concept.name:
            concept.name = concept.generic_name or drug_id

        properties = await self._get_properties(drug_id, trace_id=trace_id)
        concept.strength = properties.get("STR")
        concept.route = properties.get("DRT")
        return concept

    async def get_synonyms(self, drug_id: str, *, trace_id: Optional[str] = None) -> List[str]:
        data = await self._get(f"/rxcui/{drug_id}/displaynames.json", trace_id=trace_id)
        return list((data.get("displayTermsList") or {}).get("term") or [])

    async def get_classes(self, drug_id: str, *, trace_id: Optional[str] = None) -> List[str]:
        data = await self._get(f"/rxcui/{drug_id}/class.json", trace_id=trace_id)
        concepts = (data.get("rxclassMinConceptList") or {}).get("rxclassMinConcept") or []
        names: List[str] = []
        for item in concepts:
            class_name = item.get("className")
            if class_name and class_name not in names:
                names.append(class_name)
        return names

    async def check_interactions(
        self,
        drug_ids: Sequence[str],
        *,
        trace_id: Optional[str] = None,
    ) -> List[InteractionRecord]:
        """Pairwise interactions for the id set, ranked HIGH, MODERATE, LOW."""
        if len(drug_ids) < 2:
            return []

        data = await self._get(
            "/interaction/list.json",
            params={"rxcuis": " ".join(drug_ids)},
            trace_id=trace_id,
        )
        interactions: List[InteractionRecord] = []
        for group in data.get("fullInteractionTypeGroup") or []:
            source = group.get("sourceName") or "Unknown"
            for interaction_type in group.get("fullInteractionType") or []:
                for pair in interaction_type.get("interactionPair") or []:
                    concepts = pair.get("interactionConcept") or []
                    if len(concepts) < 2:
                        continue
                    interactions.append(
                        InteractionRecord(
                            drug_a=self._concept_ref(concepts[0]),
                            drug_b=self._concept_ref(concepts[1]),
                            severity=map_severity(pair.get("severity")),
                            description=pair.get("description") or "Potential drug interaction",
                            source=source,
                            clinical_effect=pair.get("clinicalEffect"),
                            evidence_level=pair.get("evidenceLevel"),
                        )
                    )
        return sort_by_severity(interactions)

    async def health_check(self, probe_term: str = "aspirin") -> RxNavHealth:
        start = time.perf_counter()
        try:
            await self.search(probe_term)
        except ExternalServiceError as exc:
            return RxNavHealth(
                healthy=False,
                latency_ms=(time.perf_counter() - start) * 1000,
                error=str(exc),
            )
        return RxNavHealth(healthy=True, latency_ms=(time.perf_counter() - start) * 1000)

    async def _get_properties(self, drug_id: str, *, trace_id: Optional[str]) -> Dict[str, str]:
        try:
            data = await self._get(f"/rxcui/{drug_id}/properties.json", trace_id=trace_id)
        except ExternalServiceError as exc:
            logger.warning("rxnav.properties_unavailable drug_id=%s error=%s", drug_id, exc)
            return {}
        result: Dict[str, str] = {}
        for prop in (data.get("propConceptGroup") or {}).get("propConcept") or []:
            name = prop.get("propName")
            if name in {"STR", "DRT"} and name not in result:
                result[name] = prop.get("propValue")
        return result

    @staticmethod
    def _concept_ref(concept: Dict[str, Any]) -> DrugRef:
        min_item = concept.get("minConceptItem") or {}
        source_item = concept.get("sourceConceptItem") or {}
        return DrugRef(
            id=str(min_item.get("rxcui") or ""),
            name=min_item.get("name") or source_item.get("name") or "Unknown",
        )

    async def _get(
        self,
        endpoint: str,
        *,
        params: Dict[str, Any] | None = None,
        trace_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self._base_url}{endpoint}"
        headers: Dict[str, str] = {"Accept": "application/json"}
        if trace_id:
            headers["X-Request-Id"] = trace_id

        timeout = httpx.Timeout(self._settings.rxnav_timeout_seconds)
        req_logger = get_request_logger(logger, trace_id=trace_id)
        start = time.perf_counter()
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            try:
                response = await client.get(url, params=params, headers=headers)
            except httpx.TimeoutException as exc:
                req_logger.error("rxnav timeout endpoint=%s timeout_s=%s", endpoint, self._settings.rxnav_timeout_seconds)
                raise ExternalServiceError(
                    f"RxNav API timeout after {self._settings.rxnav_timeout_seconds}s",
                    endpoint=endpoint,
                ) from exc
            except httpx.HTTPError as exc:
                req_logger.error("rxnav transport error endpoint=%s error=%s", endpoint, exc)
                raise ExternalServiceError(
                    f"RxNav API request failed: {exc}",
                    endpoint=endpoint,
                ) from exc

            elapsed_ms = (time.perf_counter() - start) * 1000
            req_logger.info(
                "rxnav.get endpoint=%s status=%s latency_ms=%.1f",
                endpoint,
                response.status_code,
                elapsed_ms,
            )
            if not response.is_success:
                raise ExternalServiceError(
                    f"RxNav API error: {response.status_code} {response.reason_phrase}",
                    status_code=response.status_code,
                    endpoint=endpoint,
                )
            try:
                payload = response.json()
            except ValueError as exc:
                raise ExternalServiceError(
                    "RxNav API returned invalid JSON",
                    status_code=response.status_code,
                    endpoint=endpoint,
                ) from exc
        return payload if isinstance(payload, dict) else {}
