from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query

from ..models.allergy import (
    AllergyCheckRequest,
    AllergyCheckResult,
    AllergyCreate,
    AllergyRecord,
    AllergyUpdate,
)
from ..models.checks import CheckRecord, OverrideRequest, OverrideResult
from ..models.drug import DrugConcept, InteractionCheckRequest, InteractionCheckResult, RxNavHealth
from ..dependencies import (
    ServiceContainer,
    get_allergy_service,
    get_catalog,
    get_container,
    get_interaction_checker,
    get_override_service,
)
from ..services.allergy_service import AllergyService
from ..services.drug_catalog_service import DrugCatalogService
from ..services.error_handling import NotFoundError, ValidationError
from ..services.interaction_checker import InteractionChecker
from ..services.override_service import OverrideService

router = APIRouter(prefix="/api/drugs", tags=["drug-safety"])


def get_actor_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Authenticated user id, injected by the upstream auth gateway."""
    return x_user_id


@router.get("/search", response_model=List[DrugConcept], summary="Search drugs by name")
async def search_drugs(
    term: str = Query(..., min_length=2, max_length=100),
    limit: int = Query(50, ge=1, le=100),
    actor_id: Optional[str] = Depends(get_actor_id),
    catalog: DrugCatalogService = Depends(get_catalog),
) -> List[DrugConcept]:
    return await catalog.search(term, user_id=actor_id, limit=limit)


@router.get("/resolve", response_model=DrugConcept, summary="Resolve a free-text drug name")
async def resolve_drug_name(
    name: str = Query(..., min_length=1, max_length=200),
    catalog: DrugCatalogService = Depends(get_catalog),
) -> DrugConcept:
    drug = await catalog.resolve_drug_name(name)
    if drug is None:
        raise NotFoundError(f"Drug not found: {name}", identifier=name)
    return drug


@router.get("/health/rxnav", response_model=RxNavHealth, summary="Probe the drug knowledge service")
async def rxnav_health(container: ServiceContainer = Depends(get_container)) -> RxNavHealth:
    return await container.client.health_check()


@router.get("/cache/stats", summary="Cache statistics")
async def cache_stats(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return container.cache.stats()


@router.post(
    "/interactions/check",
    response_model=InteractionCheckResult,
    summary="Check drug-drug interactions",
    description="Returns interaction warnings ranked by severity for a set of drug ids.",
)
async def check_interactions(
    request: InteractionCheckRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    checker: InteractionChecker = Depends(get_interaction_checker),
) -> InteractionCheckResult:
    return await checker.check(
        request.drug_ids,
        user_id=actor_id,
        prescription_id=request.prescription_id,
    )


@router.post(
    "/interactions/override",
    response_model=OverrideResult,
    summary="Acknowledge interaction or allergy warnings",
    description="Records the clinician's justification for proceeding despite warnings.",
)
async def override_checks(
    request: OverrideRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OverrideService = Depends(get_override_service),
) -> OverrideResult:
    if not actor_id:
        raise ValidationError("X-User-Id header is required", reason="actor_required")
    return service.record_override(
        request.check_ids,
        request.reason,
        actor_id,
        patient_id=request.patient_id,
        prescription_id=request.prescription_id,
        confirmed_review=request.confirmed_review,
        patient_informed=request.patient_informed,
        alternatives_considered=request.alternatives_considered,
        interaction_details=request.interaction_details,
    )


@router.get("/allergies/common", response_model=List[str], summary="Common allergen suggestions")
async def common_allergens(q: str = Query("", max_length=100)) -> List[str]:
    return AllergyService.search_common_allergens(q)


@router.post("/allergies/check", response_model=AllergyCheckResult, summary="Check allergy conflicts")
async def check_allergy_conflicts(
    request: AllergyCheckRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: AllergyService = Depends(get_allergy_service),
) -> AllergyCheckResult:
    return await service.check_conflicts(
        request.patient_id,
        request.drug_ids,
        actor_id=actor_id,
        trace_id=uuid.uuid4().hex,
    )


@router.get("/allergies/patients/{patient_id}", response_model=List[AllergyRecord])
async def list_patient_allergies(
    patient_id: str,
    service: AllergyService = Depends(get_allergy_service),
) -> List[AllergyRecord]:
    return await service.list_active(patient_id)


@router.get("/allergies/patients/{patient_id}/history", response_model=List[AllergyRecord])
async def patient_allergy_history(
    patient_id: str,
    service: AllergyService = Depends(get_allergy_service),
) -> List[AllergyRecord]:
    return service.history(patient_id)


@router.get("/allergies/patients/{patient_id}/checks", response_model=List[CheckRecord])
async def patient_allergy_checks(
    patient_id: str,
    limit: int = Query(20, ge=1, le=100),
    service: AllergyService = Depends(get_allergy_service),
) -> List[CheckRecord]:
    return service.check_history(patient_id, limit=limit)


@router.post("/allergies/patients/{patient_id}", response_model=AllergyRecord, status_code=201)
async def add_patient_allergy(
    patient_id: str,
    request: AllergyCreate,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: AllergyService = Depends(get_allergy_service),
) -> AllergyRecord:
    return await service.add(patient_id, request, actor_id)


@router.patch("/allergies/{allergy_id}", response_model=AllergyRecord)
async def update_allergy(
    allergy_id: str,
    request: AllergyUpdate,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: AllergyService = Depends(get_allergy_service),
) -> AllergyRecord:
    return await service.update(allergy_id, request, actor_id)


@router.delete("/allergies/{allergy_id}", response_model=AllergyRecord)
async def delete_allergy(
    allergy_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: AllergyService = Depends(get_allergy_service),
) -> AllergyRecord:
    return await service.soft_delete(allergy_id, actor_id)


@router.post("/allergies/{allergy_id}/verify", response_model=AllergyRecord)
async def verify_allergy(
    allergy_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: AllergyService = Depends(get_allergy_service),
) -> AllergyRecord:
    if not actor_id:
        raise ValidationError("X-User-Id header is required", reason="actor_required")
    return await service.verify(allergy_id, actor_id)


@router.get("/{drug_id}", response_model=DrugConcept, summary="Drug detail by id")
async def get_drug_detail(
    drug_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    catalog: DrugCatalogService = Depends(get_catalog),
) -> DrugConcept:
    drug = await catalog.get_detail(drug_id, user_id=actor_id)
    if drug is None:
        raise NotFoundError(f"Drug not found: {drug_id}", identifier=drug_id)
    return drug


@router.get("/{drug_id}/synonyms", response_model=List[str])
async def get_drug_synonyms(
    drug_id: str,
    catalog: DrugCatalogService = Depends(get_catalog),
) -> List[str]:
    return await catalog.get_synonyms(drug_id)


@router.get("/{drug_id}/classes", response_model=List[str])
async def get_drug_classes(
    drug_id: str,
    catalog: DrugCatalogService = Depends(get_catalog),
) -> List[str]:
    return await catalog.get_classes(drug_id)
