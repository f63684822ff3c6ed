from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, AsyncGenerator, Callable

from fastapi import Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tenantbroker.core.config import BrokerConfig, get_settings, resolve_broker_config
from tenantbroker.core.errors import IdentityError
from tenantbroker.persistence.db import get_session
from tenantbroker.services.auth.identity import Identity, IdentityVerifier
from tenantbroker.services.credentials import is_admin_role, require_membership


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


def get_broker_config() -> BrokerConfig:
    # Re-resolved per request so rotated env secrets apply after a settings cache clear.
    return resolve_broker_config(get_settings())


def get_now() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache
def get_identity_verifier() -> IdentityVerifier:
    return IdentityVerifier(get_settings())


def get_storage_client() -> Any | None:
    # None lets each driver build its own backend client.
    return None


def get_tenant_client_factory() -> Callable[..., Any] | None:
    return None


class Caller(BaseModel):
    # Authenticated user acting on one organization.
    user_id: str
    org_id: str
    role: str
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return is_admin_role(self.role)


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise IdentityError("Missing bearer token")
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise IdentityError("Invalid authorization header")
    return token.strip()


async def get_current_identity(
    request: Request,
    verifier: IdentityVerifier = Depends(get_identity_verifier),
) -> Identity:
    token = _parse_bearer_token(request.headers.get("Authorization"))
    identity = await verifier.verify(token)
    request.state.user_id = identity.user_id
    return identity


def require_org_role(*, admin: bool = False):
    # Dependency factory; the org_id path parameter scopes the membership check.
    async def _dependency(
        org_id: str,
        identity: Identity = Depends(get_current_identity),
        db: AsyncSession = Depends(get_db),
    ) -> Caller:
        role = await require_membership(db, org_id, identity.user_id, admin=admin)
        return Caller(user_id=identity.user_id, org_id=org_id, role=role, email=identity.email)

    return _dependency


require_org_member = require_org_role()
require_org_admin = require_org_role(admin=True)
