"""Service for checking drug-drug interactions.

Results are cached per drug set; the cache key is built from the sorted ids
so argument order never changes cache identity.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from ..config import Settings
from ..models.checks import AuditAction, CheckKind, CheckRecord
from ..models.drug import InteractionCheckResult, InteractionRecord, InteractionSeverity, sort_by_severity
from .audit_service import AuditService
from .cache import BaseCache, CacheKeys
from .error_handling import ExternalServiceError, ValidationError
from .feature_flags import FeatureFlagSource
from .rxnav_client import RxNavClient
from .stores import CheckStore, new_id

logger = logging.getLogger(__name__)

INTERACTION_UNAVAILABLE_WARNING = "interaction_check_unavailable"


def dedupe_ids(drug_ids: Iterable[str]) -> List[str]:
    """Order-preserving de-duplication that drops blank ids."""
    seen: set[str] = set()
    result: List[str] = []
    for drug_id in drug_ids:
        normalized = (drug_id or "").strip()
        if normalized and normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


class InteractionChecker:
    """Ranks drug-drug interaction warnings for a prescription's drug set."""

    def __init__(
        self,
        *,
        client: RxNavClient,
        cache: BaseCache,
        flags: FeatureFlagSource,
        check_store: CheckStore,
        audit: AuditService,
        settings: Settings,
    ) -> None:
        self._client = client
        self._cache = cache
        self._flags = flags
        self._check_store = check_store
        self._audit = audit
        self._settings = settings

    async def check(
        self,
        drug_ids: Iterable[str],
        *,
        user_id: Optional[str] = None,
        prescription_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> InteractionCheckResult:
        # The flag is read before any cache or network access
        if not self._flags.snapshot().interaction_check_enabled:
            return InteractionCheckResult(drug_count=len(dedupe_ids(drug_ids)))

        ids = dedupe_ids(drug_ids)
        if len(ids) > self._settings.max_drugs_per_check:
            raise ValidationError(
                f"At most {self._settings.max_drugs_per_check} drugs can be checked at once",
                reason="too_many_drugs",
            )
        if len(ids) < 2:
            return InteractionCheckResult(drug_count=len(ids))

        warnings: List[str] = []
        interactions = await self._load_interactions(ids, warnings)

        check_ids = self._record_checks(interactions, patient_id=patient_id)
        has_high = any(item.severity == InteractionSeverity.HIGH for item in interactions)
        logger.info(
            "interaction.check drug_count=%d found=%d high=%s warnings=%s",
            len(ids),
            len(interactions),
            has_high,
            warnings,
        )
        self._audit.log_action(
            action=AuditAction.INTERACTION_CHECK,
            resource_type="Prescription",
            resource_id=prescription_id or "unknown",
            user_id=user_id,
            metadata={
                "drug_ids": ids,
                "drug_count": len(ids),
                "interaction_count": len(interactions),
                "has_high_severity": has_high,
                "check_ids": check_ids,
                "warnings": warnings,
            },
        )

        return InteractionCheckResult(
            has_interactions=len(interactions) > 0,
            interactions=interactions,
            checked_at=datetime.utcnow(),
            drug_count=len(ids),
            check_ids=check_ids,
            warnings=warnings,
        )

    async def _load_interactions(self, ids: List[str], warnings: List[str]) -> List[InteractionRecord]:
        cache_key = CacheKeys.drug_interactions(ids)
        cached = await self._cache.get(cache_key)
        if cached is not None:
            return [InteractionRecord.model_validate(item) for item in cached]

        try:
            interactions = await self._client.check_interactions(sorted(ids))
        except ExternalServiceError as exc:
            logger.warning(
                "interaction.check_unavailable drug_ids=%s status=%s endpoint=%s",
                ids,
                exc.status_code,
                exc.endpoint,
            )
            warnings.append(INTERACTION_UNAVAILABLE_WARNING)
            return []

        interactions = sort_by_severity(interactions)
        await self._cache.set(
            cache_key,
            [item.model_dump(mode="json") for item in interactions],
            self._settings.interaction_cache_ttl,
        )
        return interactions

    def _record_checks(self, interactions: List[InteractionRecord], *, patient_id: Optional[str]) -> List[str]:
        check_ids: List[str] = []
        for interaction in interactions:
            record = CheckRecord(
                id=new_id(),
                kind=CheckKind.INTERACTION,
                patient_id=patient_id,
                drug_ids=list(interaction.pair_key()),
                severity=interaction.severity.value,
                summary=interaction.description,
            )
            try:
                self._check_store.insert(record)
            except Exception:
                logger.exception("interaction.record_failed pair=%s", record.drug_ids)
                continue
            check_ids.append(record.id)
        return check_ids
