from __future__ import annotations

import httpx
import pytest

from tenantbroker.core.errors import TenantQueryError
from tenantbroker.services.tenancy.client import TenantClient


def _client(handler) -> tuple[TenantClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = TenantClient(
        base_url="https://tenant.supabase.co/",
        anon_key="anon-key",
        dedicated_key="dedicated-key",
        schema="tuttiud",
        http_client=http_client,
    )
    return client, http_client


@pytest.mark.asyncio
async def test_select_sends_schema_and_auth_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "d1", "path": "org-1/a.pdf"}])

    client, http_client = _client(handler)
    rows = await client.select("Documents", "*", {"entity_type": "student"})
    assert rows == [{"id": "d1", "path": "org-1/a.pdf"}]

    request = seen[0]
    assert request.url.path == "/rest/v1/Documents"
    assert request.url.params["select"] == "*"
    assert request.url.params["entity_type"] == "eq.student"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["Authorization"] == "Bearer dedicated-key"
    assert request.headers["Accept-Profile"] == "tuttiud"
    assert request.headers["Content-Profile"] == "tuttiud"

    await client.aclose()
    assert not http_client.is_closed
    await http_client.aclose()


@pytest.mark.asyncio
async def test_http_errors_raise_tenant_query_error() -> None:
    client, http_client = _client(lambda request: httpx.Response(401, json={"message": "JWT expired"}))
    with pytest.raises(TenantQueryError):
        await client.select("Students", "id,name")
    await http_client.aclose()


def test_missing_parameters_rejected() -> None:
    with pytest.raises(ValueError):
        TenantClient(base_url="", anon_key="a", dedicated_key="d", schema="tuttiud")
