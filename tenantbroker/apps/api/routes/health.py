from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from tenantbroker.apps.api.deps import get_broker_config
from tenantbroker.apps.api.response import success_response
from tenantbroker.core.config import BrokerConfig

router = APIRouter(tags=["health"])


class HealthChecks(BaseModel):
    dedicated_key_secret: bool
    storage_credentials_secret: bool
    managed_storage: bool


class HealthResponse(BaseModel):
    status: str
    checks: HealthChecks


@router.get("/health", response_model=HealthResponse)
async def health(request: Request, config: BrokerConfig = Depends(get_broker_config)) -> dict:
    # Reports presence only; secret values never leave the process.
    checks = HealthChecks(
        dedicated_key_secret=config.dedicated_key_secret is not None,
        storage_credentials_secret=config.storage_credentials_secret is not None,
        managed_storage=config.managed_storage.is_configured,
    )
    status = "ok" if checks.dedicated_key_secret and checks.storage_credentials_secret else "degraded"
    return success_response(request=request, data=HealthResponse(status=status, checks=checks))
