from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx

from tenantbroker.core.config import Settings, get_settings
from tenantbroker.core.errors import ControlPlaneError, IdentityError
from tenantbroker.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str | None = None


class IdentityVerifier:
    """Verify bearer tokens against the identity provider's user endpoint."""

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        self._client = httpx.AsyncClient(timeout=self._settings.control_plane_timeout_s)
        return self._client

    async def verify(self, token: str) -> Identity:
        base_url = self._settings.control_plane_url.rstrip("/")
        service_key = self._settings.control_plane_service_role_key
        if not base_url or not service_key:
            logger.error("identity_provider_not_configured")
            raise ControlPlaneError("Identity provider is not configured")
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await client.get(
                f"{base_url}/auth/v1/user",
                headers={"apikey": service_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            record_external_call(
                integration="identity.user",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ControlPlaneError("Identity provider request failed") from exc
        record_external_call(
            integration="identity.user",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 500,
        )
        if response.status_code in {401, 403}:
            raise IdentityError("Invalid or expired token")
        if response.status_code >= 400:
            raise ControlPlaneError(f"Identity provider returned {response.status_code}")
        payload = response.json()
        user_id = payload.get("id") if isinstance(payload, dict) else None
        if not user_id:
            raise IdentityError("Invalid or expired token")
        return Identity(user_id=str(user_id), email=payload.get("email"))
