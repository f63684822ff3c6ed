from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantbroker.domain.models import Organization, OrgMembership, OrgSettings


logger = logging.getLogger(__name__)

# Postgres SQLSTATE for "column does not exist".
UNDEFINED_COLUMN = "42703"


@dataclass(frozen=True)
class ConnectionRow:
    supabase_url: str | None
    anon_key: str | None


@dataclass(frozen=True)
class DedicatedKeyWrite:
    saved_at: datetime
    verified_at: datetime | None
    skipped_columns: tuple[str, ...] = field(default_factory=tuple)


def is_undefined_column(exc: BaseException) -> bool:
    # asyncpg surfaces the code as sqlstate; psycopg as pgcode. Walk the cause chain for both.
    current: BaseException | None = exc.orig if isinstance(exc, DBAPIError) else exc
    while current is not None:
        for attr in ("sqlstate", "pgcode"):
            if getattr(current, attr, None) == UNDEFINED_COLUMN:
                return True
        current = current.__cause__
    return False


async def get_membership_role(session: AsyncSession, org_id: str, user_id: str) -> str | None:
    result = await session.execute(
        select(OrgMembership.role).where(OrgMembership.org_id == org_id, OrgMembership.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_connection_settings(session: AsyncSession, org_id: str) -> ConnectionRow | None:
    result = await session.execute(
        select(OrgSettings.supabase_url, OrgSettings.anon_key).where(OrgSettings.org_id == org_id)
    )
    row = result.one_or_none()
    if row is None:
        return None
    return ConnectionRow(supabase_url=row.supabase_url, anon_key=row.anon_key)


async def get_dedicated_key_envelope(session: AsyncSession, org_id: str) -> str | None:
    # Select the single column so older schemas without setup metadata still work.
    result = await session.execute(
        select(Organization.dedicated_key_encrypted).where(Organization.id == org_id)
    )
    return result.scalar_one_or_none()


async def _try_update(session: AsyncSession, org_id: str, values: dict[str, Any]) -> int | None:
    # Savepoint keeps the outer transaction usable after an undefined-column failure.
    try:
        async with session.begin_nested():
            result = await session.execute(
                update(Organization).where(Organization.id == org_id).values(**values)
            )
    except DBAPIError as exc:
        if is_undefined_column(exc):
            return None
        raise
    return result.rowcount


async def write_dedicated_key(
    session: AsyncSession,
    org_id: str,
    envelope: str,
    *,
    now: datetime,
) -> DedicatedKeyWrite | None:
    """Persist the dedicated key envelope with optional setup metadata.

    First tier writes every column in one statement. If the schema predates the
    setup metadata columns, the second tier writes the ciphertext alone and then
    probes each optional column individually, skipping the ones that do not
    exist. Returns None when the organization row is missing.
    """
    required = {"dedicated_key_encrypted": envelope, "updated_at": now}
    optional = {"dedicated_key_saved_at": now, "verified_at": now, "setup_completed": True}

    rowcount = await _try_update(session, org_id, {**required, **optional})
    if rowcount is not None:
        if rowcount == 0:
            return None
        return DedicatedKeyWrite(saved_at=now, verified_at=now)

    logger.warning("dedicated_key_full_write_degraded org_id=%s", org_id)
    rowcount = await _try_update(session, org_id, required)
    if rowcount is None:
        raise RuntimeError("organizations table is missing dedicated_key_encrypted")
    if rowcount == 0:
        return None
    skipped: list[str] = []
    for column, value in optional.items():
        if await _try_update(session, org_id, {column: value}) is None:
            skipped.append(column)
    logger.info(
        "dedicated_key_saved_reduced org_id=%s skipped_columns=%s",
        org_id,
        ",".join(skipped) or "-",
    )
    return DedicatedKeyWrite(
        saved_at=now,
        verified_at=None if "verified_at" in skipped else now,
        skipped_columns=tuple(skipped),
    )
