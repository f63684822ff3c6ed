from __future__ import annotations

from typing import Any

from tenantbroker.core.config import ManagedStorageConfig
from tenantbroker.core.errors import ManagedStorageNotConfiguredError, StorageDriverConfigError
from tenantbroker.services.storage.drivers.azure import AzureBlobDriver
from tenantbroker.services.storage.drivers.base import StorageDriver
from tenantbroker.services.storage.drivers.s3 import (
    GcsDriver,
    GenericS3Driver,
    ManagedR2Driver,
    R2Driver,
    S3CompatibleDriver,
    S3Driver,
)
from tenantbroker.services.storage.profile import (
    MODE_BYOS,
    MODE_MANAGED,
    PROVIDER_AZURE,
    PROVIDER_GCS,
    PROVIDER_GENERIC,
    PROVIDER_R2,
    PROVIDER_S3,
)


_S3_FAMILY: dict[str, type[S3CompatibleDriver]] = {
    PROVIDER_S3: S3Driver,
    PROVIDER_R2: R2Driver,
    PROVIDER_GENERIC: GenericS3Driver,
    PROVIDER_GCS: GcsDriver,
}


def build_managed_driver(
    managed: ManagedStorageConfig,
    *,
    max_ttl_s: int = 604800,
    client: Any | None = None,
) -> StorageDriver:
    if not managed.is_configured:
        raise ManagedStorageNotConfiguredError(
            "Managed storage requires SYSTEM_R2_ENDPOINT, SYSTEM_R2_ACCESS_KEY, "
            "SYSTEM_R2_SECRET_KEY, and SYSTEM_R2_BUCKET_NAME"
        )
    return ManagedR2Driver(
        bucket=managed.bucket,
        access_key_id=managed.access_key_id,
        secret_access_key=managed.secret_access_key,
        endpoint=managed.endpoint,
        public_base_url=managed.public_url,
        max_ttl_s=max_ttl_s,
        client=client,
    )


def build_byos_driver(
    byos: dict[str, Any] | None,
    *,
    max_ttl_s: int = 604800,
    client: Any | None = None,
) -> StorageDriver:
    """Build a driver from a decrypted BYOS config."""
    if not isinstance(byos, dict) or not byos.get("provider"):
        raise StorageDriverConfigError("BYOS mode requires provider configuration")
    if byos.get("_encrypted"):
        raise StorageDriverConfigError("BYOS credentials must be decrypted before building a driver")
    provider = str(byos["provider"]).strip().lower()
    if provider == PROVIDER_AZURE:
        return AzureBlobDriver(
            account_name=byos.get("access_key_id") or "",
            account_key=byos.get("secret_access_key") or "",
            container=byos.get("bucket") or "",
            account_url=byos.get("endpoint") or None,
            public_base_url=byos.get("public_url"),
            max_ttl_s=max_ttl_s,
            client=client,
        )
    driver_cls = _S3_FAMILY.get(provider)
    if driver_cls is None:
        raise StorageDriverConfigError(f"Unsupported storage provider: {provider}")
    return driver_cls(
        bucket=byos.get("bucket") or "",
        access_key_id=byos.get("access_key_id") or "",
        secret_access_key=byos.get("secret_access_key") or "",
        endpoint=byos.get("endpoint") or None,
        region=byos.get("region"),
        public_base_url=byos.get("public_url"),
        max_ttl_s=max_ttl_s,
        client=client,
    )


def get_storage_driver(
    profile: dict[str, Any] | None,
    managed: ManagedStorageConfig,
    *,
    max_ttl_s: int = 604800,
    client: Any | None = None,
) -> StorageDriver:
    # Dispatch strictly on (mode, provider); caller intent never picks the backend.
    if not isinstance(profile, dict):
        raise StorageDriverConfigError("Storage profile is missing")
    mode = profile.get("mode")
    if mode == MODE_MANAGED:
        return build_managed_driver(managed, max_ttl_s=max_ttl_s, client=client)
    if mode == MODE_BYOS:
        return build_byos_driver(profile.get("byos"), max_ttl_s=max_ttl_s, client=client)
    raise StorageDriverConfigError(f"Invalid storage mode: {mode}")
