from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantbroker.apps.api.deps import (
    Caller,
    get_broker_config,
    get_db,
    get_now,
    get_storage_client,
    get_tenant_client_factory,
    require_org_admin,
    require_org_member,
)
from tenantbroker.apps.api.openapi import (
    DEFAULT_ERROR_RESPONSES,
    STORAGE_STATE_RESPONSES,
    TENANT_CONNECTION_RESPONSES,
)
from tenantbroker.apps.api.response import SuccessEnvelope, success_response
from tenantbroker.core.config import BrokerConfig
from tenantbroker.core.errors import StorageProfileValidationError
from tenantbroker.services.storage.bulk import bulk_download, export_items_from_rows
from tenantbroker.services.storage.drivers.base import DISPOSITION_ATTACHMENT, DISPOSITIONS
from tenantbroker.services.storage.lifecycle import (
    StorageAccess,
    StorageAccessState,
    StorageOperation,
    disconnect_storage,
    reconnect_storage,
)
from tenantbroker.services.storage.paths import path_belongs_to_org
from tenantbroker.services.storage.profile import normalize_storage_profile, redact_storage_profile
from tenantbroker.services.storage.settings import (
    check_storage_connection,
    load_storage_settings,
    open_storage_driver,
    save_storage_profile,
)
from tenantbroker.services.tenancy.resolver import TenantConnectionResolver


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/orgs/{org_id}",
    tags=["storage"],
    responses={**DEFAULT_ERROR_RESPONSES, **STORAGE_STATE_RESPONSES},
)


class StorageProfileResponse(BaseModel):
    org_id: str
    storage_profile: dict[str, Any] | None
    is_disconnected: bool
    access_state: dict[str, Any]


class StorageProfileRequest(BaseModel):
    storage_profile: dict[str, Any] | None = None


class ConnectionTestResponse(BaseModel):
    success: bool
    mode: str
    provider: str
    test_path: str


class StorageStateResponse(BaseModel):
    org_id: str
    access_state: dict[str, Any]


class PresignRequest(BaseModel):
    path: str = Field(min_length=1)
    ttl_seconds: int | None = Field(default=None, gt=0)
    filename: str | None = None
    disposition: str = DISPOSITION_ATTACHMENT


class PresignResponse(BaseModel):
    url: str
    path: str
    expires_in: int


def _require_profile(payload: StorageProfileRequest) -> dict[str, Any]:
    if not isinstance(payload.storage_profile, dict):
        raise StorageProfileValidationError(["storage_profile is required"])
    return payload.storage_profile


@router.get("/storage-profile", response_model=SuccessEnvelope[StorageProfileResponse])
async def get_storage_profile(
    org_id: str,
    request: Request,
    caller: Caller = Depends(require_org_member),
    db: AsyncSession = Depends(get_db),
    config: BrokerConfig = Depends(get_broker_config),
    now: datetime = Depends(get_now),
) -> dict:
    view = await load_storage_settings(db, org_id, config=config, now=now, decrypt=caller.is_admin)
    profile = view.profile if caller.is_admin else redact_storage_profile(view.profile)
    payload = StorageProfileResponse(
        org_id=org_id,
        storage_profile=profile,
        is_disconnected=view.is_disconnected,
        access_state=view.access.as_dict(),
    )
    return success_response(request=request, data=payload)


@router.put("/storage-profile", response_model=SuccessEnvelope[StorageProfileResponse])
async def put_storage_profile(
    org_id: str,
    payload: StorageProfileRequest,
    request: Request,
    caller: Caller = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
    config: BrokerConfig = Depends(get_broker_config),
    now: datetime = Depends(get_now),
) -> dict:
    raw_profile = _require_profile(payload)
    try:
        profile = await save_storage_profile(
            db,
            org_id,
            raw_profile,
            config=config,
            user_id=caller.user_id,
            now=now,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    data = StorageProfileResponse(
        org_id=org_id,
        storage_profile=profile,
        is_disconnected=False,
        access_state=StorageAccess(StorageAccessState.CONNECTED, mode=profile["mode"]).as_dict(),
    )
    return success_response(request=request, data=data)


@router.post("/storage/test-connection", response_model=SuccessEnvelope[ConnectionTestResponse])
async def run_connection_test(
    org_id: str,
    payload: StorageProfileRequest,
    request: Request,
    caller: Caller = Depends(require_org_admin),
    config: BrokerConfig = Depends(get_broker_config),
    now: datetime = Depends(get_now),
    client: Any = Depends(get_storage_client),
) -> dict:
    profile = normalize_storage_profile(_require_profile(payload), updated_by=caller.user_id, now=now.isoformat())
    if profile is None:
        raise StorageProfileValidationError(["storage_profile is required"])
    result = await check_storage_connection(profile, org_id, config=config, now=now, client=client)
    return success_response(request=request, data=ConnectionTestResponse(**result))


@router.post("/storage/disconnect", response_model=SuccessEnvelope[StorageStateResponse])
async def disconnect(
    org_id: str,
    request: Request,
    caller: Caller = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
    config: BrokerConfig = Depends(get_broker_config),
    now: datetime = Depends(get_now),
) -> dict:
    try:
        access = await disconnect_storage(db, org_id, config=config, now=now, user_id=caller.user_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("storage_disconnected org_id=%s user_id=%s state=%s", org_id, caller.user_id, access.state.value)
    return success_response(request=request, data=StorageStateResponse(org_id=org_id, access_state=access.as_dict()))


@router.post("/storage/reconnect", response_model=SuccessEnvelope[StorageStateResponse])
async def reconnect(
    org_id: str,
    request: Request,
    caller: Caller = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now),
) -> dict:
    try:
        access = await reconnect_storage(db, org_id, now=now, user_id=caller.user_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("storage_reconnected org_id=%s user_id=%s mode=%s", org_id, caller.user_id, access.mode)
    return success_response(request=request, data=StorageStateResponse(org_id=org_id, access_state=access.as_dict()))


@router.post("/storage/files/presign", response_model=SuccessEnvelope[PresignResponse])
async def presign_file(
    org_id: str,
    payload: PresignRequest,
    request: Request,
    caller: Caller = Depends(require_org_member),
    db: AsyncSession = Depends(get_db),
    config: BrokerConfig = Depends(get_broker_config),
    now: datetime = Depends(get_now),
    client: Any = Depends(get_storage_client),
) -> dict:
    if payload.disposition not in DISPOSITIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_disposition", "message": "disposition must be inline or attachment"},
        )
    driver, view = await open_storage_driver(
        db,
        org_id,
        StorageOperation.READ,
        config=config,
        now=now,
        client=client,
    )
    if not path_belongs_to_org(view.access.mode or "", org_id, payload.path):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "path_outside_organization", "message": "Path does not belong to this organization"},
        )
    ttl = min(payload.ttl_seconds or config.presigned_ttl_s, config.presigned_max_ttl_s)
    url = await driver.presigned_url(
        payload.path,
        ttl,
        filename=payload.filename,
        disposition=payload.disposition,
    )
    return success_response(request=request, data=PresignResponse(url=url, path=payload.path, expires_in=ttl))


@router.post(
    "/storage/bulk-download",
    responses={
        **TENANT_CONNECTION_RESPONSES,
        200: {"content": {"application/zip": {}}, "description": "ZIP archive of every stored file"},
    },
)
async def bulk_download_files(
    org_id: str,
    request: Request,
    caller: Caller = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
    config: BrokerConfig = Depends(get_broker_config),
    now: datetime = Depends(get_now),
    client: Any = Depends(get_storage_client),
    tenant_client_factory: Callable[..., Any] | None = Depends(get_tenant_client_factory),
) -> Any:
    driver, view = await open_storage_driver(
        db,
        org_id,
        StorageOperation.BULK_EXPORT,
        config=config,
        now=now,
        client=client,
    )
    resolver = TenantConnectionResolver(db, config, client_factory=tenant_client_factory)
    async with resolver.connect(org_id) as tenant:
        students = await tenant.select("Students", "id,name")
        documents = await tenant.select("Documents", "*", {"entity_type": "student"})
    items = export_items_from_rows(documents, students)
    if not items:
        return success_response(request=request, data={"message": "no_files_to_download", "file_count": 0})

    result = await bulk_download(driver, items, max_parallel=config.bulk_max_parallel)
    logger.info(
        "storage_bulk_download org_id=%s user_id=%s mode=%s succeeded=%s failed=%s",
        org_id,
        caller.user_id,
        view.access.mode,
        result.success_count,
        result.failure_count,
    )
    filename = f"org-{org_id}-files-{now.strftime('%Y%m%d')}.zip"
    return Response(
        content=result.archive,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Bulk-Success-Count": str(result.success_count),
            "X-Bulk-Failure-Count": str(result.failure_count),
        },
    )
