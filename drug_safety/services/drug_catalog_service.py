"""Drug catalog: cached access to the drug knowledge service with a local fallback.

External failures stop here. Read paths turn :class:`ExternalServiceError`
into a fallback-store lookup or an empty result, so a knowledge service
outage never blocks a prescribing workflow.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from ..config import Settings
from ..models.checks import AuditAction
from ..models.drug import DrugConcept
from .audit_service import AuditService
from .cache import BaseCache, CacheKeys
from .error_handling import ExternalServiceError
from .feature_flags import FeatureFlagSource
from .rxnav_client import RxNavClient
from .stores import DrugStore

logger = logging.getLogger(__name__)

MIN_SEARCH_TERM_LENGTH = 2


class DrugCatalogService:
    """Search, detail, synonym and class lookups for the rest of the system."""

    def __init__(
        self,
        *,
        client: RxNavClient,
        cache: BaseCache,
        drug_store: DrugStore,
        settings: Settings,
        flags: FeatureFlagSource,
        audit: AuditService,
    ) -> None:
        self._client = client
        self._cache = cache
        self._drug_store = drug_store
        self._settings = settings
        self._flags = flags
        self._audit = audit

    async def search(self, term: str, *, user_id: Optional[str] = None, limit: Optional[int] = None) -> List[DrugConcept]:
        if not self._flags.snapshot().drug_suggestions_enabled:
            return []
        term = (term or "").strip()
        if len(term) < MIN_SEARCH_TERM_LENGTH:
            return []

        cache_key = CacheKeys.drug_search(term)
        cached = await self._cache.get(cache_key)
        if cached is not None:
            results = [DrugConcept.model_validate(item) for item in cached]
        else:
            try:
                results = await self._client.search(term)
            except ExternalServiceError as exc:
                logger.warning("drug_catalog.search_failed term=%s endpoint=%s error=%s", term, exc.endpoint, exc)
                return []
            await self._cache.set(
                cache_key,
                [item.model_dump(mode="json") for item in results],
                self._settings.drug_search_cache_ttl,
            )
            if user_id:
                self._audit.log_action(
                    action=AuditAction.DRUG_SEARCH,
                    resource_type="Drug",
                    resource_id=term,
                    user_id=user_id,
                    metadata={"result_count": len(results)},
                )

        if limit is not None:
            results = results[:limit]
        return results

    async def get_detail(self, drug_id: str, *, user_id: Optional[str] = None) -> Optional[DrugConcept]:
        """Detail from cache, then the knowledge service, then the fallback store."""
        drug, _ = await self.lookup_detail(drug_id, user_id=user_id)
        return drug

    async def lookup_detail(
        self,
        drug_id: str,
        *,
        user_id: Optional[str] = None,
    ) -> Tuple[Optional[DrugConcept], bool]:
        """Like :meth:`get_detail` but also reports whether the answer is verified.

        The flag is False when the knowledge service failed and the result came
        from the (possibly stale) fallback store or is missing.
        """
        cache_key = CacheKeys.drug_detail(drug_id)
        cached = await self._cache.get(cache_key)
        if cached is not None:
            return DrugConcept.model_validate(cached), True

        try:
            drug = await self._client.get_detail(drug_id)
        except ExternalServiceError as exc:
            logger.warning(
                "drug_catalog.detail_fallback drug_id=%s status=%s endpoint=%s",
                drug_id,
                exc.status_code,
                exc.endpoint,
            )
            return self._from_fallback_store(drug_id), False

        if drug is not None:
            await self._cache.set(cache_key, drug.model_dump(mode="json"), self._settings.drug_cache_ttl)
            self._save_to_fallback_store(drug)

        if user_id:
            self._audit.log_action(
                action=AuditAction.DRUG_LOOKUP,
                resource_type="Drug",
                resource_id=drug_id,
                user_id=user_id,
                metadata={"found": drug is not None},
            )
        return drug, True

    async def get_synonyms(self, drug_id: str) -> List[str]:
        async def fetch() -> Optional[List[str]]:
            try:
                return await self._client.get_synonyms(drug_id)
            except ExternalServiceError as exc:
                logger.warning("drug_catalog.synonyms_failed drug_id=%s error=%s", drug_id, exc)
                return None

        synonyms = await self._cache.get_or_compute(
            CacheKeys.drug_synonyms(drug_id), self._settings.drug_cache_ttl, fetch
        )
        return list(synonyms or [])

    async def get_classes(self, drug_id: str) -> List[str]:
        # A failed fetch yields None so the outage is not cached as "no classes"
        async def fetch() -> Optional[List[str]]:
            try:
                return await self._client.get_classes(drug_id)
            except ExternalServiceError as exc:
                logger.warning("drug_catalog.classes_failed drug_id=%s error=%s", drug_id, exc)
                return None

        classes = await self._cache.get_or_compute(
            CacheKeys.drug_classes(drug_id), self._settings.drug_cache_ttl, fetch
        )
        return list(classes or [])

    async def get_detail_with_classes(self, drug_id: str) -> Tuple[Optional[DrugConcept], bool]:
        """Detail enriched with drug class names, as needed for allergy matching.

        A verified concept that gains classes here is written back to the detail
        cache and the fallback store, so an outage later still matches on class.
        """
        drug, verified = await self.lookup_detail(drug_id)
        if drug is None:
            return None, verified
        if not drug.drug_classes:
            classes = await self.get_classes(drug_id)
            if classes:
                drug = drug.model_copy(update={"drug_classes": classes})
                if verified:
                    await self._cache.set(
                        CacheKeys.drug_detail(drug_id),
                        drug.model_dump(mode="json"),
                        self._settings.drug_cache_ttl,
                    )
                    self._save_to_fallback_store(drug)
        return drug, verified

    async def resolve_drug_name(self, name: str) -> Optional[DrugConcept]:
        """Exact case-insensitive name match among search results, else the first result."""
        results = await self.search(name)
        if not results:
            return None
        wanted = name.strip().lower()
        for result in results:
            if result.name.lower() == wanted:
                return result
        return results[0]

    def _save_to_fallback_store(self, drug: DrugConcept) -> None:
        try:
            self._drug_store.upsert(drug)
        except Exception:
            logger.exception("drug_catalog.fallback_save_failed drug_id=%s", drug.id)

    def _from_fallback_store(self, drug_id: str) -> Optional[DrugConcept]:
        try:
            return self._drug_store.get(drug_id)
        except Exception:
            logger.exception("drug_catalog.fallback_read_failed drug_id=%s", drug_id)
            return None
