from __future__ import annotations

import time
from typing import Any

import httpx

from tenantbroker.core.errors import TenantQueryError
from tenantbroker.services.telemetry import record_external_call


class TenantClient:
    """PostgREST client bound to one tenant's private schema.

    Authenticates with the tenant's anon key as ``apikey`` and the decrypted
    dedicated key as the bearer token. One instance lives for one request.
    """

    def __init__(
        self,
        *,
        base_url: str,
        anon_key: str,
        dedicated_key: str,
        schema: str,
        timeout_s: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url or not anon_key or not dedicated_key:
            raise ValueError("Missing tenant connection parameters.")
        self._base_url = base_url.rstrip("/")
        self._schema = schema
        self._headers = {
            "apikey": anon_key,
            "Authorization": f"Bearer {dedicated_key}",
            "Accept-Profile": schema,
            "Content-Profile": schema,
        }
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_s)

    @property
    def schema(self) -> str:
        return self._schema

    @property
    def base_url(self) -> str:
        return self._base_url

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        # Filters are equality matches rendered in PostgREST "col=eq.value" form.
        params: dict[str, str] = {"select": columns}
        for column, value in (filters or {}).items():
            params[column] = f"eq.{value}"
        start = time.monotonic()
        try:
            response = await self._client.get(
                f"{self._base_url}/rest/v1/{table}",
                params=params,
                headers=self._headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            record_external_call(
                integration="tenant.postgrest",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise TenantQueryError(f"Tenant query on {table} failed") from exc
        record_external_call(
            integration="tenant.postgrest",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        payload = response.json()
        return payload if isinstance(payload, list) else []

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
