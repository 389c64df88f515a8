"""Tenant provisioning and lookup.

Endpoints:
  POST /api/tenants/            → create a tenant with its empty task set
  GET  /api/tenants/            → list tenants (?phase= to filter)
  GET  /api/tenants/{tenant_id} → one tenant
"""

from fastapi import APIRouter, Depends, status

from partner_portal.deps import get_onboarding_service
from partner_portal.models.tenant import TenantPhase
from partner_portal.onboarding.service import OnboardingService
from partner_portal.schemas.onboarding import TenantCreate, TenantOut

router = APIRouter()


@router.post("/", response_model=TenantOut, status_code=status.HTTP_201_CREATED)
async def create_tenant(
    body: TenantCreate,
    service: OnboardingService = Depends(get_onboarding_service),
):
    return await service.provision_tenant(body.name)


@router.get("/", response_model=list[TenantOut])
async def list_tenants(
    phase: TenantPhase | None = None,
    service: OnboardingService = Depends(get_onboarding_service),
):
    return await service.list_tenants(phase)


@router.get("/{tenant_id}", response_model=TenantOut)
async def get_tenant(
    tenant_id: str,
    service: OnboardingService = Depends(get_onboarding_service),
):
    return await service.get_tenant(tenant_id)
