from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.storage.blob import BlobSasPermissions, BlobServiceClient, ContentSettings, generate_blob_sas

from tenantbroker.core.errors import (
    PublicUrlUnavailableError,
    StorageDriverConfigError,
    StorageOperationError,
)
from tenantbroker.services.storage.drivers.base import (
    DEFAULT_CONTENT_TYPE,
    DISPOSITION_ATTACHMENT,
    PutResult,
    content_disposition,
    join_url,
)
from tenantbroker.services.telemetry import record_external_call


# Blob batch delete accepts at most 256 sub-requests.
_DELETE_BATCH = 256
_MISSING_BLOB_CODES = {"BlobNotFound", "ResourceNotFound"}


class AzureBlobDriver:
    """Azure Blob Storage driver.

    BYOS fields map onto Azure names: ``access_key_id`` is the storage account
    name, ``secret_access_key`` the account key, ``bucket`` the container.
    """

    kind = "azure"

    def __init__(
        self,
        *,
        account_name: str,
        account_key: str,
        container: str,
        account_url: str | None = None,
        public_base_url: str | None = None,
        max_ttl_s: int = 604800,
        client: Any | None = None,
    ) -> None:
        if not account_name or not account_key or not container:
            raise StorageDriverConfigError("azure driver requires account name, account key, and container")
        self._account_name = account_name
        self._account_key = account_key
        self._container = container
        self._account_url = (account_url or f"https://{account_name}.blob.core.windows.net").rstrip("/")
        self._public_base_url = public_base_url or None
        self._max_ttl_s = max_ttl_s
        self._client = client

    def _get_container(self) -> Any:
        if self._client is None:
            service = BlobServiceClient(
                account_url=self._account_url,
                credential={"account_name": self._account_name, "account_key": self._account_key},
            )
            self._client = service.get_container_client(self._container)
        return self._client

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        start = time.monotonic()
        try:
            result = await asyncio.to_thread(fn, *args, **kwargs)
        except AzureError as exc:
            record_external_call(
                integration="storage.azure",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            backend_code = getattr(exc, "error_code", None)
            http_status = exc.status_code if isinstance(exc, HttpResponseError) else None
            if isinstance(exc, ResourceNotFoundError):
                backend_code = backend_code or "ResourceNotFound"
                http_status = http_status or 404
            raise StorageOperationError(
                f"azure {operation} failed",
                backend_code=str(backend_code or exc.__class__.__name__),
                http_status=http_status,
            ) from exc
        record_external_call(
            integration="storage.azure",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return result

    def object_url(self, path: str) -> str:
        if self._public_base_url:
            return join_url(self._public_base_url, path)
        return join_url(f"{self._account_url}/{self._container}", path)

    async def put(self, path: str, data: bytes, content_type: str | None = None) -> PutResult:
        container = self._get_container()
        await self._call(
            "put",
            container.upload_blob,
            name=path,
            data=data,
            overwrite=True,
            content_settings=ContentSettings(content_type=content_type or DEFAULT_CONTENT_TYPE),
        )
        return PutResult(path=path, url=self.object_url(path))

    async def get(self, path: str) -> bytes:
        container = self._get_container()

        def _read() -> bytes:
            return container.download_blob(path).readall()

        return await self._call("get", _read)

    async def delete(self, path: str) -> None:
        container = self._get_container()
        try:
            await self._call("delete", container.delete_blob, path)
        except StorageOperationError as exc:
            # A missing blob is already deleted; a missing container is not.
            if exc.http_status == 404 and exc.backend_code in _MISSING_BLOB_CODES:
                return
            raise

    async def delete_prefix(self, prefix: str) -> int:
        if not prefix or not prefix.endswith("/"):
            raise ValueError("prefix must be a non-empty path ending with '/'")
        container = self._get_container()

        def _delete_all() -> int:
            names = [blob.name for blob in container.list_blobs(name_starts_with=prefix)]
            for start in range(0, len(names), _DELETE_BATCH):
                container.delete_blobs(*names[start : start + _DELETE_BATCH])
            return len(names)

        return await self._call("delete_prefix", _delete_all)

    async def presigned_url(
        self,
        path: str,
        ttl_seconds: int,
        *,
        filename: str | None = None,
        disposition: str = DISPOSITION_ATTACHMENT,
    ) -> str:
        expires_in = max(1, min(int(ttl_seconds), self._max_ttl_s))
        sas = generate_blob_sas(
            account_name=self._account_name,
            container_name=self._container,
            blob_name=path,
            account_key=self._account_key,
            permission=BlobSasPermissions(read=True),
            expiry=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            content_disposition=content_disposition(filename, disposition),
        )
        return f"{join_url(f'{self._account_url}/{self._container}', path)}?{sas}"

    def public_url(self, path: str) -> str:
        if not self._public_base_url:
            raise PublicUrlUnavailableError("azure storage has no public URL configured")
        return join_url(self._public_base_url, path)
