from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

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


logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per request.
_DELETE_BATCH = 1000
_MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}


def _client_error_details(exc: Exception) -> tuple[str | None, int | None]:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return error.get("Code"), status if isinstance(status, int) else None
    return exc.__class__.__name__, None


class S3CompatibleDriver:
    """Driver for any backend speaking the S3 API.

    Subclasses only pin the variant name and region defaults. The boto3 client
    is synchronous, so every network call runs in a worker thread.
    """

    kind = "s3"
    default_region = "us-east-1"

    def __init__(
        self,
        *,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        endpoint: str | None = None,
        region: str | None = None,
        public_base_url: str | None = None,
        max_ttl_s: int = 604800,
        client: Any | None = None,
    ) -> None:
        if not bucket or not access_key_id or not secret_access_key:
            raise StorageDriverConfigError(
                f"{self.kind} driver requires bucket, access_key_id, and secret_access_key"
            )
        self._bucket = bucket
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._endpoint = endpoint or None
        self._region = region or self.default_region
        self._public_base_url = public_base_url or None
        self._max_ttl_s = max_ttl_s
        self._client = client

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def region(self) -> str:
        return self._region

    @property
    def endpoint(self) -> str | None:
        return self._endpoint

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            self._client = boto3.client(
                "s3",
                endpoint_url=self._endpoint,
                region_name=self._region,
                aws_access_key_id=self._access_key_id,
                aws_secret_access_key=self._secret_access_key,
                config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
            )
        except (BotoCoreError, ValueError) as exc:
            # botocore rejects malformed endpoints with a bare ValueError.
            logger.warning("storage_client_init_failed kind=%s error=%s", self.kind, exc.__class__.__name__)
            raise StorageOperationError(
                f"{self.kind} client setup failed",
                backend_code="InvalidEndpoint" if isinstance(exc, ValueError) else exc.__class__.__name__,
            ) from exc
        return self._client

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        start = time.monotonic()
        try:
            result = await asyncio.to_thread(fn, *args, **kwargs)
        except (BotoCoreError, ClientError) as exc:
            record_external_call(
                integration=f"storage.{self.kind}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            backend_code, http_status = _client_error_details(exc)
            raise StorageOperationError(
                f"{self.kind} {operation} failed",
                backend_code=backend_code,
                http_status=http_status,
            ) from exc
        record_external_call(
            integration=f"storage.{self.kind}",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return result

    def object_url(self, path: str) -> str:
        if self._public_base_url:
            return join_url(self._public_base_url, path)
        if self._endpoint:
            return join_url(f"{self._endpoint.rstrip('/')}/{self._bucket}", path)
        return join_url(f"https://{self._bucket}.s3.{self._region}.amazonaws.com", path)

    async def put(self, path: str, data: bytes, content_type: str | None = None) -> PutResult:
        client = self._get_client()
        await self._call(
            "put",
            client.put_object,
            Bucket=self._bucket,
            Key=path,
            Body=data,
            ContentType=content_type or DEFAULT_CONTENT_TYPE,
        )
        return PutResult(path=path, url=self.object_url(path))

    async def get(self, path: str) -> bytes:
        client = self._get_client()

        def _read() -> bytes:
            response = client.get_object(Bucket=self._bucket, Key=path)
            return response["Body"].read()

        return await self._call("get", _read)

    async def delete(self, path: str) -> None:
        client = self._get_client()
        try:
            await self._call("delete", client.delete_object, Bucket=self._bucket, Key=path)
        except StorageOperationError as exc:
            if exc.backend_code in _MISSING_KEY_CODES or exc.http_status == 404:
                return
            raise

    async def delete_prefix(self, prefix: str) -> int:
        if not prefix or not prefix.endswith("/"):
            raise ValueError("prefix must be a non-empty path ending with '/'")
        client = self._get_client()

        def _delete_all() -> int:
            deleted = 0
            paginator = client.get_paginator("list_objects_v2")
            batch: list[dict[str, str]] = []
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    batch.append({"Key": obj["Key"]})
                    if len(batch) == _DELETE_BATCH:
                        self._delete_keys(client, batch)
                        deleted += len(batch)
                        batch = []
            if batch:
                self._delete_keys(client, batch)
                deleted += len(batch)
            return deleted

        return await self._call("delete_prefix", _delete_all)

    def _delete_keys(self, client: Any, batch: list[dict[str, str]]) -> None:
        client.delete_objects(Bucket=self._bucket, Delete={"Objects": batch, "Quiet": True})

    async def presigned_url(
        self,
        path: str,
        ttl_seconds: int,
        *,
        filename: str | None = None,
        disposition: str = DISPOSITION_ATTACHMENT,
    ) -> str:
        client = self._get_client()
        params: dict[str, Any] = {"Bucket": self._bucket, "Key": path}
        header = content_disposition(filename, disposition)
        if header:
            params["ResponseContentDisposition"] = header
        expires_in = max(1, min(int(ttl_seconds), self._max_ttl_s))
        return await self._call(
            "presign",
            client.generate_presigned_url,
            "get_object",
            Params=params,
            ExpiresIn=expires_in,
        )

    def public_url(self, path: str) -> str:
        if not self._public_base_url:
            raise PublicUrlUnavailableError(f"{self.kind} storage has no public URL configured")
        return join_url(self._public_base_url, path)


class ManagedR2Driver(S3CompatibleDriver):
    kind = "managed_r2"
    default_region = "auto"


class S3Driver(S3CompatibleDriver):
    kind = "s3"
    default_region = "us-east-1"


class R2Driver(S3CompatibleDriver):
    kind = "r2"
    default_region = "auto"

    def __init__(self, **kwargs: Any) -> None:
        # R2 ignores regions; SigV4 still needs one and "auto" is what Cloudflare documents.
        kwargs["region"] = "auto"
        super().__init__(**kwargs)


class GenericS3Driver(S3CompatibleDriver):
    kind = "generic"
    default_region = "us-east-1"


class GcsDriver(S3CompatibleDriver):
    """Google Cloud Storage through its XML interoperability API with HMAC keys."""

    kind = "gcs"
    default_region = "auto"
    default_endpoint = "https://storage.googleapis.com"

    def __init__(self, **kwargs: Any) -> None:
        kwargs["endpoint"] = kwargs.get("endpoint") or self.default_endpoint
        super().__init__(**kwargs)

    def _delete_keys(self, client: Any, batch: list[dict[str, str]]) -> None:
        # The interoperability API has no multi-object delete.
        for item in batch:
            client.delete_object(Bucket=self._bucket, Key=item["Key"])
