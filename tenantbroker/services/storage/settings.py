from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tenantbroker.core.config import BrokerConfig
from tenantbroker.core.errors import (
    BrokerError,
    StorageConnectionTestError,
    StorageModeNotPermittedError,
    StorageOperationError,
    StorageProfileValidationError,
)
from tenantbroker.persistence.repos.org_settings import get_org_settings, update_storage_state
from tenantbroker.services.crypto.secrets import decrypt_storage_profile, encrypt_storage_profile
from tenantbroker.services.storage.drivers.base import StorageDriver
from tenantbroker.services.storage.drivers.factory import get_storage_driver
from tenantbroker.services.storage.lifecycle import (
    PolicyGatedDriver,
    StorageAccess,
    StorageOperation,
    evaluate_storage_access,
    reconnected_permissions,
    storage_mode_permitted,
)
from tenantbroker.services.storage.paths import connection_test_path
from tenantbroker.services.storage.profile import (
    MODE_BYOS,
    normalize_storage_profile,
    validate_storage_profile,
)


logger = logging.getLogger(__name__)

CONNECTION_TEST_TTL_S = 60

# Backend error codes grouped by the setup problem they point at.
_CREDENTIAL_CODES = {
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "NoCredentialsError",
    "PartialCredentialsError",
    "AuthenticationFailed",
    "ClientAuthenticationError",
    "InvalidAuthenticationInfo",
}
_BUCKET_CODES = {"NoSuchBucket", "ContainerNotFound", "ContainerBeingDeleted"}
_ENDPOINT_CODES = {
    "EndpointConnectionError",
    "ConnectTimeoutError",
    "ConnectionClosedError",
    "InvalidEndpoint",
    "ServiceRequestError",
    "ServiceResponseError",
}
_PERMISSION_CODES = {
    "AccessDenied",
    "AllAccessDisabled",
    "AuthorizationFailure",
    "AuthorizationPermissionMismatch",
    "InsufficientAccountPermissions",
}


@dataclass(frozen=True)
class StorageSettingsView:
    profile: dict[str, Any] | None
    permissions: dict[str, Any]
    access: StorageAccess

    @property
    def is_disconnected(self) -> bool:
        return bool(self.profile and self.profile.get("disconnected") is True)


async def load_storage_settings(
    session: AsyncSession,
    org_id: str,
    *,
    config: BrokerConfig,
    now: datetime,
    decrypt: bool = True,
) -> StorageSettingsView:
    # Callers that redact credentials skip decryption entirely.
    row = await get_org_settings(session, org_id)
    stored = row.storage_profile if row is not None else None
    permissions = dict(row.permissions or {}) if row is not None else {}
    grace_ends_at = row.storage_grace_ends_at if row is not None else None
    access = evaluate_storage_access(stored, permissions, grace_ends_at, now=now)
    return StorageSettingsView(
        profile=decrypt_storage_profile(stored, config) if decrypt else stored,
        permissions=permissions,
        access=access,
    )


async def save_storage_profile(
    session: AsyncSession,
    org_id: str,
    raw_profile: Any,
    *,
    config: BrokerConfig,
    user_id: str,
    now: datetime,
) -> dict[str, Any]:
    """Normalize, validate, encrypt, and persist a storage profile.

    Saving always reconnects storage: the disconnected flag and any grace
    deadline are cleared. Returns the normalized plaintext profile.
    """
    profile = normalize_storage_profile(raw_profile, updated_by=user_id, now=now.isoformat())
    if profile is None:
        raise StorageProfileValidationError(["Storage profile must be an object"])
    result = validate_storage_profile(profile, allow_insecure=config.allow_insecure_endpoints)
    if not result.valid:
        logger.info("storage_profile_rejected org_id=%s errors=%s", org_id, len(result.errors))
        raise StorageProfileValidationError(result.errors)

    row = await get_org_settings(session, org_id)
    permissions = dict(row.permissions or {}) if row is not None else {}
    if not storage_mode_permitted(permissions, profile["mode"]):
        raise StorageModeNotPermittedError(f"Organization is not entitled to {profile['mode']} storage")

    profile["disconnected"] = False
    encrypted = encrypt_storage_profile(profile, config)
    await update_storage_state(
        session,
        org_id,
        now=now,
        storage_profile=encrypted,
        permissions=reconnected_permissions(permissions),
        grace_ends_at=None,
    )
    logger.info("storage_profile_saved org_id=%s mode=%s", org_id, profile["mode"])
    return profile


async def open_storage_driver(
    session: AsyncSession,
    org_id: str,
    operation: StorageOperation,
    *,
    config: BrokerConfig,
    now: datetime,
    client: Any | None = None,
) -> tuple[StorageDriver, StorageSettingsView]:
    # Lifecycle policy is checked before any credential is decrypted.
    row = await get_org_settings(session, org_id)
    stored = row.storage_profile if row is not None else None
    permissions = dict(row.permissions or {}) if row is not None else {}
    grace_ends_at = row.storage_grace_ends_at if row is not None else None
    access = evaluate_storage_access(stored, permissions, grace_ends_at, now=now)
    access.require(operation)
    profile = decrypt_storage_profile(stored, config)
    driver = get_storage_driver(
        profile,
        config.managed_storage,
        max_ttl_s=config.presigned_max_ttl_s,
        client=client,
    )
    view = StorageSettingsView(profile=profile, permissions=permissions, access=access)
    return PolicyGatedDriver(driver, access), view


def classify_storage_failure(exc: BaseException) -> tuple[str, str]:
    backend_code = getattr(exc, "backend_code", None) or exc.__class__.__name__
    http_status = getattr(exc, "http_status", None)
    if backend_code in _CREDENTIAL_CODES or http_status == 401:
        return "invalid_credentials", "Invalid storage credentials. Please verify your access keys."
    if backend_code in _BUCKET_CODES:
        return (
            "bucket_not_found",
            "Storage bucket/container not found. Please verify it exists and is accessible.",
        )
    if backend_code in _ENDPOINT_CODES:
        return "invalid_endpoint", "Cannot connect to storage endpoint. Please verify the URL."
    if backend_code in _PERMISSION_CODES or http_status == 403:
        return (
            "insufficient_permissions",
            "Insufficient permissions. Ensure credentials have upload/delete access.",
        )
    if http_status == 404:
        return (
            "bucket_not_found",
            "Storage bucket/container not found. Please verify it exists and is accessible.",
        )
    return "connection_test_failed", "Storage connection test failed."


async def _discard_test_object(driver: StorageDriver, path: str, org_id: str) -> None:
    # Best effort; the original failure is what the caller reports.
    try:
        await driver.delete(path)
    except Exception as exc:
        logger.warning(
            "storage_connection_test_cleanup_failed org_id=%s path=%s error=%s",
            org_id,
            path,
            exc.__class__.__name__,
        )


def _connection_test_error(exc: Exception, org_id: str) -> StorageConnectionTestError:
    code, message = classify_storage_failure(exc)
    backend_code = getattr(exc, "backend_code", None) or exc.__class__.__name__
    logger.warning(
        "storage_connection_test_failed org_id=%s code=%s backend_code=%s",
        org_id,
        code,
        backend_code,
    )
    return StorageConnectionTestError(code, message, backend_code=backend_code)


async def check_storage_connection(
    profile: dict[str, Any],
    org_id: str,
    *,
    config: BrokerConfig,
    now: datetime,
    client: Any | None = None,
) -> dict[str, Any]:
    """Round-trip a small object through the backend: put, presign, delete.

    Any backend or SDK failure comes back as a classified
    ``StorageConnectionTestError``. If a step after the upload fails, the test
    object is removed on a best-effort basis.
    """
    result = validate_storage_profile(profile, allow_insecure=config.allow_insecure_endpoints)
    if not result.valid:
        raise StorageProfileValidationError(result.errors)
    mode = profile["mode"]
    path = connection_test_path(mode, org_id, int(time.time() * 1000))
    body = f"Storage Connection Test\nOrganization: {org_id}\nTimestamp: {now.isoformat()}".encode("utf-8")
    try:
        driver = get_storage_driver(
            profile,
            config.managed_storage,
            max_ttl_s=config.presigned_max_ttl_s,
            client=client,
        )
        await driver.put(path, body, "text/plain")
        try:
            url = await driver.presigned_url(path, CONNECTION_TEST_TTL_S)
            if not url:
                raise StorageOperationError("Failed to generate presigned URL after upload")
        except Exception:
            await _discard_test_object(driver, path, org_id)
            raise
        await driver.delete(path)
    except StorageOperationError as exc:
        raise _connection_test_error(exc, org_id) from exc
    except BrokerError:
        raise
    except Exception as exc:
        logger.exception("storage_connection_test_unexpected_error org_id=%s", org_id)
        raise _connection_test_error(exc, org_id) from exc
    logger.info("storage_connection_test_passed org_id=%s mode=%s", org_id, mode)
    return {
        "success": True,
        "mode": mode,
        "provider": profile["byos"]["provider"] if mode == MODE_BYOS else "managed_r2",
        "test_path": path,
    }
