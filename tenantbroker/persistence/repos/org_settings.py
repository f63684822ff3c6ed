from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantbroker.domain.models import OrgSettings
from tenantbroker.services.crypto.secrets import ensure_profile_encrypted


_UNSET: Any = object()


async def get_org_settings(session: AsyncSession, org_id: str) -> OrgSettings | None:
    result = await session.execute(select(OrgSettings).where(OrgSettings.org_id == org_id))
    return result.scalar_one_or_none()


async def update_storage_state(
    session: AsyncSession,
    org_id: str,
    *,
    now: datetime,
    storage_profile: dict[str, Any] | None = _UNSET,
    permissions: dict[str, Any] | None = _UNSET,
    grace_ends_at: datetime | None = _UNSET,
) -> OrgSettings:
    """Apply storage profile, permission, and grace changes to one settings row.

    Every profile passes the encryption check here, so no caller can persist
    BYOS credentials in cleartext.
    """
    if storage_profile is not _UNSET:
        ensure_profile_encrypted(storage_profile)
    row = await get_org_settings(session, org_id)
    if row is None:
        row = OrgSettings(org_id=org_id, permissions={})
        session.add(row)
    if storage_profile is not _UNSET:
        row.storage_profile = storage_profile
    if permissions is not _UNSET:
        # Reassign a fresh dict so JSONB change tracking sees the update.
        row.permissions = dict(permissions or {})
    if grace_ends_at is not _UNSET:
        row.storage_grace_ends_at = grace_ends_at
    row.updated_at = now
    await session.flush()
    return row


async def list_expired_grace_periods(session: AsyncSession, now: datetime) -> list[OrgSettings]:
    # Stable ordering keeps cleanup reports deterministic.
    result = await session.execute(
        select(OrgSettings)
        .where(OrgSettings.storage_grace_ends_at.is_not(None), OrgSettings.storage_grace_ends_at < now)
        .order_by(OrgSettings.storage_grace_ends_at, OrgSettings.org_id)
    )
    return list(result.scalars().all())
