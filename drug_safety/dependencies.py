"""Composition root: builds and holds the service graph for one application."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from .config import Settings, get_settings
from .services.allergy_matching import default_stages, load_cross_reactivity_table
from .services.allergy_service import AllergyService
from .services.audit_service import AuditService
from .services.cache import BaseCache, LocalCache
from .services.drug_catalog_service import DrugCatalogService
from .services.feature_flags import FeatureFlagSource, SettingsFeatureFlags
from .services.interaction_checker import InteractionChecker
from .services.override_service import OverrideService
from .services.rxnav_client import RxNavClient
from .services.stores import (
    AllergyStore,
    AuditStore,
    CheckStore,
    DrugStore,
    InMemoryAllergyStore,
    InMemoryAuditStore,
    InMemoryCheckStore,
    InMemoryDrugStore,
)


@dataclass
class ServiceContainer:
    settings: Settings
    cache: BaseCache
    flags: FeatureFlagSource
    client: RxNavClient
    drug_store: DrugStore
    allergy_store: AllergyStore
    check_store: CheckStore
    audit_store: AuditStore
    audit: AuditService
    catalog: DrugCatalogService
    interactions: InteractionChecker
    allergies: AllergyService
    overrides: OverrideService


def build_container(
    settings: Optional[Settings] = None,
    *,
    cache: Optional[BaseCache] = None,
    flags: Optional[FeatureFlagSource] = None,
    transport: httpx.AsyncBaseTransport | None = None,
    drug_store: Optional[DrugStore] = None,
    allergy_store: Optional[AllergyStore] = None,
    check_store: Optional[CheckStore] = None,
    audit_store: Optional[AuditStore] = None,
) -> ServiceContainer:
    """Wire every service explicitly; any collaborator can be swapped in."""
    settings = settings or get_settings()
    cache = cache or LocalCache()
    flags = flags or SettingsFeatureFlags(lambda: settings)
    client = RxNavClient(settings, transport=transport)
    drug_store = drug_store or InMemoryDrugStore()
    allergy_store = allergy_store or InMemoryAllergyStore()
    check_store = check_store or InMemoryCheckStore()
    audit_store = audit_store or InMemoryAuditStore()

    audit = AuditService(audit_store, settings)
    catalog = DrugCatalogService(
        client=client,
        cache=cache,
        drug_store=drug_store,
        settings=settings,
        flags=flags,
        audit=audit,
    )
    interactions = InteractionChecker(
        client=client,
        cache=cache,
        flags=flags,
        check_store=check_store,
        audit=audit,
        settings=settings,
    )
    table = load_cross_reactivity_table(settings.cross_reactivity_path)
    allergies = AllergyService(
        allergy_store=allergy_store,
        check_store=check_store,
        catalog=catalog,
        cache=cache,
        flags=flags,
        audit=audit,
        stages=default_stages(table),
        settings=settings,
    )
    overrides = OverrideService(check_store=check_store, audit=audit)

    return ServiceContainer(
        settings=settings,
        cache=cache,
        flags=flags,
        client=client,
        drug_store=drug_store,
        allergy_store=allergy_store,
        check_store=check_store,
        audit_store=audit_store,
        audit=audit,
        catalog=catalog,
        interactions=interactions,
        allergies=allergies,
        overrides=overrides,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_catalog(request: Request) -> DrugCatalogService:
    return get_container(request).catalog


def get_interaction_checker(request: Request) -> InteractionChecker:
    return get_container(request).interactions


def get_allergy_service(request: Request) -> AllergyService:
    return get_container(request).allergies


def get_override_service(request: Request) -> OverrideService:
    return get_container(request).overrides
