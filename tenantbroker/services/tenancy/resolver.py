from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from tenantbroker.core.config import BrokerConfig
from tenantbroker.core.errors import (
    DecryptionFailedError,
    EncryptionNotConfiguredError,
    TenantConnectionError,
)
from tenantbroker.persistence.repos.organizations import (
    ConnectionRow,
    get_connection_settings,
    get_dedicated_key_envelope,
)
from tenantbroker.services.crypto.secrets import decrypt_dedicated_key
from tenantbroker.services.tenancy.client import TenantClient
from tenantbroker.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class ResolverStage(str, Enum):
    START = "start"
    LOAD_ORG_SETTINGS = "load_org_settings"
    DECRYPT_DEDICATED_KEY = "decrypt_dedicated_key"
    BUILD_CLIENT = "build_client"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class TenantConnection:
    supabase_url: str
    anon_key: str
    dedicated_key: str = field(repr=False)


def build_tenant_client(connection: TenantConnection, config: BrokerConfig) -> TenantClient:
    return TenantClient(
        base_url=connection.supabase_url,
        anon_key=connection.anon_key,
        dedicated_key=connection.dedicated_key,
        schema=config.tenant_schema,
        timeout_s=config.tenant_timeout_s,
    )


class TenantConnectionResolver:
    """Resolve an organization id into a schema-scoped tenant client.

    One resolver handles one resolution; ``stage`` records how far it got and
    ``failure_reason`` why it stopped. Nothing is retried or cached: callers
    that want another attempt build a new resolver.
    """

    def __init__(
        self,
        session: AsyncSession,
        config: BrokerConfig,
        *,
        settings_loader: Callable[[AsyncSession, str], Awaitable[ConnectionRow | None]] | None = None,
        key_loader: Callable[[AsyncSession, str], Awaitable[str | None]] | None = None,
        client_factory: Callable[[TenantConnection, BrokerConfig], Any] | None = None,
    ) -> None:
        self._session = session
        self._config = config
        # Loaders and factory are injectable so tests avoid a live control plane.
        self._settings_loader = settings_loader or get_connection_settings
        self._key_loader = key_loader or get_dedicated_key_envelope
        self._client_factory = client_factory or build_tenant_client
        self.stage = ResolverStage.START
        self.failure_reason: str | None = None

    def _fail(self, org_id: str, reason: str, message: str) -> TenantConnectionError:
        failed_stage = self.stage
        self.stage = ResolverStage.FAILED
        self.failure_reason = reason
        increment_counter(f"tenant_connection_failed_{reason}_total")
        log = logger.error if reason in {"encryption_not_configured", "failed_to_decrypt_key"} else logger.warning
        log("tenant_connection_failed org_id=%s reason=%s stage=%s", org_id, reason, failed_stage.value)
        return TenantConnectionError(reason, message, stage=failed_stage.value)

    async def resolve(self, org_id: str) -> Any:
        self.stage = ResolverStage.LOAD_ORG_SETTINGS
        row = await self._settings_loader(self._session, org_id)
        if row is None or not row.supabase_url or not row.anon_key:
            raise self._fail(
                org_id,
                "missing_connection_settings",
                "Organization has not configured its tenant database connection",
            )
        envelope = await self._key_loader(self._session, org_id)
        if not envelope:
            raise self._fail(org_id, "missing_dedicated_key", "Organization dedicated key has not been saved")

        self.stage = ResolverStage.DECRYPT_DEDICATED_KEY
        try:
            dedicated_key = decrypt_dedicated_key(envelope, self._config)
        except EncryptionNotConfiguredError as exc:
            raise self._fail(org_id, "encryption_not_configured", "Encryption secret is not configured") from exc
        except DecryptionFailedError as exc:
            raise self._fail(org_id, "failed_to_decrypt_key", "Failed to decrypt the dedicated key") from exc

        self.stage = ResolverStage.BUILD_CLIENT
        connection = TenantConnection(
            supabase_url=row.supabase_url,
            anon_key=row.anon_key,
            dedicated_key=dedicated_key,
        )
        try:
            client = self._client_factory(connection, self._config)
        except Exception as exc:
            logger.exception("tenant_client_build_failed org_id=%s", org_id)
            raise self._fail(org_id, "failed_to_connect_tenant", "Failed to connect to the tenant database") from exc

        self.stage = ResolverStage.READY
        return client

    @asynccontextmanager
    async def connect(self, org_id: str) -> AsyncIterator[Any]:
        # Tenant handles never outlive the request that resolved them.
        client = await self.resolve(org_id)
        try:
            yield client
        finally:
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()
