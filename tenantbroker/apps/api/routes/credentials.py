from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantbroker.apps.api.deps import Caller, get_broker_config, get_db, get_now, require_org_admin
from tenantbroker.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantbroker.apps.api.response import SuccessEnvelope, success_response
from tenantbroker.core.config import BrokerConfig
from tenantbroker.services.credentials import save_dedicated_key


router = APIRouter(prefix="/orgs/{org_id}", tags=["credentials"], responses=DEFAULT_ERROR_RESPONSES)


class SaveCredentialsRequest(BaseModel):
    dedicated_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("dedicated_key", "dedicatedKey"),
    )


class SaveCredentialsResponse(BaseModel):
    saved: bool
    saved_at: str
    verified_at: str | None = None


@router.post("/credentials", response_model=SuccessEnvelope[SaveCredentialsResponse])
async def save_credentials(
    org_id: str,
    payload: SaveCredentialsRequest,
    request: Request,
    caller: Caller = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
    config: BrokerConfig = Depends(get_broker_config),
    now: datetime = Depends(get_now),
) -> dict:
    try:
        result = await save_dedicated_key(
            db,
            org_id,
            caller.user_id,
            payload.dedicated_key,
            config=config,
            now=now,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return success_response(request=request, data=SaveCredentialsResponse(**result))
