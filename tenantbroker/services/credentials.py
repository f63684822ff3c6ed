from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tenantbroker.core.config import BrokerConfig
from tenantbroker.core.errors import (
    AdminRoleRequiredError,
    InvalidDedicatedKeyError,
    NotAMemberError,
    OrganizationNotFoundError,
)
from tenantbroker.persistence.repos.organizations import get_membership_role, write_dedicated_key
from tenantbroker.services.crypto.secrets import encrypt_dedicated_key


logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset({"admin", "owner"})


def is_admin_role(role: str | None) -> bool:
    return isinstance(role, str) and role.strip().lower() in ADMIN_ROLES


async def require_membership(
    session: AsyncSession,
    org_id: str,
    user_id: str,
    *,
    admin: bool = False,
) -> str:
    # Non-members and members share the same 403 surface; existence is never leaked.
    role = await get_membership_role(session, org_id, user_id)
    if not role:
        raise NotAMemberError()
    if admin and not is_admin_role(role):
        raise AdminRoleRequiredError()
    return role


async def save_dedicated_key(
    session: AsyncSession,
    org_id: str,
    user_id: str,
    dedicated_key: Any,
    *,
    config: BrokerConfig,
    now: datetime,
) -> dict[str, Any]:
    """Encrypt and store an organization's dedicated tenant database key.

    Only admins and owners may save. The plaintext never reaches the database;
    missing optional setup columns degrade the write instead of failing it.
    """
    await require_membership(session, org_id, user_id, admin=True)
    if not isinstance(dedicated_key, str) or not dedicated_key.strip():
        raise InvalidDedicatedKeyError()
    envelope = encrypt_dedicated_key(dedicated_key.strip(), config)
    written = await write_dedicated_key(session, org_id, envelope, now=now)
    if written is None:
        raise OrganizationNotFoundError()
    logger.info(
        "dedicated_key_saved org_id=%s user_id=%s degraded=%s",
        org_id,
        user_id,
        bool(written.skipped_columns),
    )
    return {
        "saved": True,
        "saved_at": written.saved_at.isoformat(),
        "verified_at": written.verified_at.isoformat() if written.verified_at else None,
    }
