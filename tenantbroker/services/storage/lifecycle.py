from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from tenantbroker.core.config import BrokerConfig
from tenantbroker.core.errors import (
    GracePeriodNotApplicableError,
    StorageAlreadyConnectedError,
    StorageDisconnectedError,
    StorageModeNotPermittedError,
    StorageNotConfiguredError,
)
from tenantbroker.persistence.repos.org_settings import (
    get_org_settings,
    list_expired_grace_periods,
    update_storage_state,
)
from tenantbroker.services.storage.drivers.base import StorageDriver
from tenantbroker.services.storage.drivers.factory import build_managed_driver
from tenantbroker.services.storage.paths import managed_prefix
from tenantbroker.services.storage.profile import MODE_BYOS, MODE_MANAGED


logger = logging.getLogger(__name__)

ACCESS_LEVEL_KEY = "storage_access_level"
ACCESS_LEVEL_GRACE = "read_only_grace"
ACCESS_LEVEL_ALL = "all"
ACCESS_LEVEL_BYOS_ONLY = "byos_only"
ACCESS_LEVEL_MANAGED_ONLY = "managed_only"
ACCESS_LEVEL_REVOKED = "revoked"
# Level held before a grace period starts, restored when the tenant reconnects.
ACCESS_LEVEL_BEFORE_GRACE_KEY = "storage_access_level_before_grace"
GRACE_DAYS_KEY = "storage_grace_period_days"


class StorageAccessState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED_GRACE = "disconnected_grace"
    DISCONNECTED_REVOKED = "disconnected_revoked"
    NOT_CONFIGURED = "not_configured"


class StorageOperation(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    BULK_EXPORT = "bulk_export"


_READ_OPERATIONS = {StorageOperation.READ, StorageOperation.BULK_EXPORT}


@dataclass(frozen=True)
class StorageAccess:
    state: StorageAccessState
    mode: str | None = None
    grace_ends_at: datetime | None = None

    def allows(self, operation: StorageOperation) -> bool:
        if self.state == StorageAccessState.CONNECTED:
            return True
        if self.state == StorageAccessState.DISCONNECTED_GRACE:
            return operation in _READ_OPERATIONS
        return False

    def require(self, operation: StorageOperation) -> None:
        # Blocked operations always raise; a disconnected write never degrades to a no-op.
        if self.allows(operation):
            return
        if self.state == StorageAccessState.NOT_CONFIGURED:
            raise StorageNotConfiguredError("Storage is not configured for this organization")
        if self.state == StorageAccessState.DISCONNECTED_REVOKED:
            raise StorageDisconnectedError(
                "Storage is disconnected and the grace period has ended. Files are no longer available."
            )
        raise StorageDisconnectedError(f"Storage is disconnected; {operation.value} is not allowed")

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "mode": self.mode,
            "grace_ends_at": self.grace_ends_at.isoformat() if self.grace_ends_at else None,
        }


class PolicyGatedDriver:
    """Wrap a driver so every call is checked against the access state first."""

    def __init__(self, driver: StorageDriver, access: StorageAccess) -> None:
        self._driver = driver
        self.access = access
        self.kind = driver.kind

    async def put(self, path: str, data: bytes, content_type: str | None = None) -> Any:
        self.access.require(StorageOperation.WRITE)
        return await self._driver.put(path, data, content_type)

    async def get(self, path: str) -> bytes:
        self.access.require(StorageOperation.READ)
        return await self._driver.get(path)

    async def delete(self, path: str) -> None:
        self.access.require(StorageOperation.DELETE)
        await self._driver.delete(path)

    async def delete_prefix(self, prefix: str) -> int:
        self.access.require(StorageOperation.DELETE)
        return await self._driver.delete_prefix(prefix)

    async def presigned_url(self, path: str, ttl_seconds: int, **kwargs: Any) -> str:
        self.access.require(StorageOperation.READ)
        return await self._driver.presigned_url(path, ttl_seconds, **kwargs)

    def public_url(self, path: str) -> str:
        self.access.require(StorageOperation.READ)
        return self._driver.public_url(path)


def evaluate_storage_access(
    profile: dict[str, Any] | None,
    permissions: dict[str, Any] | None,
    grace_ends_at: datetime | None,
    *,
    now: datetime,
) -> StorageAccess:
    """Derive the access state from the stored profile, permissions, and grace deadline.

    Managed storage that is disconnected stays readable until the grace
    deadline passes or the access level is explicitly revoked. Disconnected
    BYOS storage stays readable indefinitely since the tenant owns the bucket.
    """
    mode = profile.get("mode") if isinstance(profile, dict) else None
    if mode not in {MODE_MANAGED, MODE_BYOS}:
        return StorageAccess(StorageAccessState.NOT_CONFIGURED)
    if profile.get("disconnected") is not True:
        return StorageAccess(StorageAccessState.CONNECTED, mode=mode)
    if mode == MODE_BYOS:
        return StorageAccess(StorageAccessState.DISCONNECTED_GRACE, mode=mode)
    level = (permissions or {}).get(ACCESS_LEVEL_KEY)
    if level is False or level == ACCESS_LEVEL_REVOKED:
        return StorageAccess(StorageAccessState.DISCONNECTED_REVOKED, mode=mode, grace_ends_at=grace_ends_at)
    if grace_ends_at is not None and grace_ends_at <= now:
        return StorageAccess(StorageAccessState.DISCONNECTED_REVOKED, mode=mode, grace_ends_at=grace_ends_at)
    return StorageAccess(StorageAccessState.DISCONNECTED_GRACE, mode=mode, grace_ends_at=grace_ends_at)


def storage_mode_permitted(permissions: dict[str, Any] | None, mode: str) -> bool:
    level = (permissions or {}).get(ACCESS_LEVEL_KEY, ACCESS_LEVEL_ALL)
    if level is None or level in {ACCESS_LEVEL_ALL, ACCESS_LEVEL_GRACE, True}:
        return True
    if level == ACCESS_LEVEL_BYOS_ONLY:
        return mode == MODE_BYOS
    if level == ACCESS_LEVEL_MANAGED_ONLY:
        return mode == MODE_MANAGED
    return False


def reconnected_permissions(permissions: dict[str, Any] | None) -> dict[str, Any]:
    # Restore the entitlement that was in force before a grace period started.
    updated = dict(permissions or {})
    if updated.get(ACCESS_LEVEL_KEY) == ACCESS_LEVEL_GRACE:
        previous = updated.pop(ACCESS_LEVEL_BEFORE_GRACE_KEY, None)
        if previous is None:
            updated.pop(ACCESS_LEVEL_KEY, None)
        else:
            updated[ACCESS_LEVEL_KEY] = previous
    return updated


def _grace_days(permissions: dict[str, Any], config: BrokerConfig) -> int:
    override = permissions.get(GRACE_DAYS_KEY)
    if isinstance(override, int) and not isinstance(override, bool) and override >= 0:
        return override
    return config.grace_period_days


def _disconnected_profile(profile: dict[str, Any], *, user_id: str | None, now: datetime) -> dict[str, Any]:
    return {
        **profile,
        "disconnected": True,
        "disconnected_at": now.isoformat(),
        "disconnected_by": user_id,
        "updated_at": now.isoformat(),
    }


async def start_grace_period(
    session: AsyncSession,
    org_id: str,
    *,
    config: BrokerConfig,
    now: datetime,
    user_id: str | None = None,
) -> StorageAccess:
    row = await get_org_settings(session, org_id)
    profile = row.storage_profile if row is not None else None
    if not profile or not profile.get("mode"):
        raise StorageNotConfiguredError("No storage configured for this organization")
    if profile.get("mode") != MODE_MANAGED:
        raise GracePeriodNotApplicableError()
    permissions = dict(row.permissions or {})
    if permissions.get(ACCESS_LEVEL_KEY) != ACCESS_LEVEL_GRACE and ACCESS_LEVEL_KEY in permissions:
        permissions[ACCESS_LEVEL_BEFORE_GRACE_KEY] = permissions[ACCESS_LEVEL_KEY]
    permissions[ACCESS_LEVEL_KEY] = ACCESS_LEVEL_GRACE
    grace_ends_at = now + timedelta(days=_grace_days(permissions, config))
    await update_storage_state(
        session,
        org_id,
        now=now,
        storage_profile=_disconnected_profile(profile, user_id=user_id, now=now),
        permissions=permissions,
        grace_ends_at=grace_ends_at,
    )
    logger.info("storage_grace_period_started org_id=%s ends_at=%s", org_id, grace_ends_at.isoformat())
    return StorageAccess(StorageAccessState.DISCONNECTED_GRACE, mode=MODE_MANAGED, grace_ends_at=grace_ends_at)


async def disconnect_storage(
    session: AsyncSession,
    org_id: str,
    *,
    config: BrokerConfig,
    now: datetime,
    user_id: str | None = None,
) -> StorageAccess:
    # Managed storage enters a grace window; BYOS only stops accepting writes.
    row = await get_org_settings(session, org_id)
    profile = row.storage_profile if row is not None else None
    if not profile or not profile.get("mode"):
        raise StorageNotConfiguredError("No storage configured for this organization")
    if profile.get("mode") == MODE_MANAGED:
        return await start_grace_period(session, org_id, config=config, now=now, user_id=user_id)
    await update_storage_state(
        session,
        org_id,
        now=now,
        storage_profile=_disconnected_profile(profile, user_id=user_id, now=now),
    )
    logger.info("storage_byos_disconnected org_id=%s", org_id)
    return StorageAccess(StorageAccessState.DISCONNECTED_GRACE, mode=MODE_BYOS)


async def reconnect_storage(
    session: AsyncSession,
    org_id: str,
    *,
    now: datetime,
    user_id: str | None = None,
) -> StorageAccess:
    """Clear the disconnected flag on the stored profile without re-entering credentials.

    The stored (still encrypted) profile is kept as is. The entitlement held
    before any grace period is restored and the grace deadline is cleared.
    Revoked entitlements stay revoked.
    """
    row = await get_org_settings(session, org_id)
    profile = row.storage_profile if row is not None else None
    if not profile or not profile.get("mode"):
        raise StorageNotConfiguredError("No storage configured for this organization")
    if profile.get("disconnected") is not True:
        raise StorageAlreadyConnectedError()
    mode = profile["mode"]
    permissions = reconnected_permissions(row.permissions)
    if not storage_mode_permitted(permissions, mode):
        raise StorageModeNotPermittedError(f"Organization is not entitled to {mode} storage")
    reconnected = {
        key: value for key, value in profile.items() if key not in {"disconnected_at", "disconnected_by"}
    }
    reconnected.update(
        {
            "disconnected": False,
            "reconnected_at": now.isoformat(),
            "reconnected_by": user_id,
            "updated_at": now.isoformat(),
        }
    )
    await update_storage_state(
        session,
        org_id,
        now=now,
        storage_profile=reconnected,
        permissions=permissions,
        grace_ends_at=None,
    )
    logger.info("storage_reconnected org_id=%s mode=%s", org_id, mode)
    return StorageAccess(StorageAccessState.CONNECTED, mode=mode)


@dataclass
class CleanupReport:
    processed: int = 0
    cleaned: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "cleaned": self.cleaned,
            "errors": self.errors,
        }


async def cleanup_expired_grace_periods(
    session: AsyncSession,
    *,
    config: BrokerConfig,
    now: datetime,
    driver_factory: Callable[[], StorageDriver] | None = None,
) -> CleanupReport:
    """Purge managed files for every organization whose grace period has ended.

    A failure for one organization is recorded and the loop moves on. Each
    organization is committed in its own savepoint so a partial failure never
    leaves its row half-updated.
    """
    report = CleanupReport()
    rows = await list_expired_grace_periods(session, now)
    factory = driver_factory or (
        lambda: build_managed_driver(config.managed_storage, max_ttl_s=config.presigned_max_ttl_s)
    )
    driver: StorageDriver | None = None
    for row in rows:
        report.processed += 1
        org_id = row.org_id
        profile = row.storage_profile or {}
        try:
            async with session.begin_nested():
                if profile.get("mode") == MODE_MANAGED:
                    if driver is None:
                        driver = factory()
                    deleted = await driver.delete_prefix(managed_prefix(org_id))
                    permissions = dict(row.permissions or {})
                    permissions[ACCESS_LEVEL_KEY] = False
                    permissions.pop(ACCESS_LEVEL_BEFORE_GRACE_KEY, None)
                    await update_storage_state(
                        session,
                        org_id,
                        now=now,
                        storage_profile=None,
                        permissions=permissions,
                        grace_ends_at=None,
                    )
                    report.cleaned.append({"org_id": org_id, "mode": MODE_MANAGED, "deleted_objects": deleted})
                else:
                    # BYOS buckets belong to the tenant; only the deadline is cleared.
                    await update_storage_state(session, org_id, now=now, grace_ends_at=None)
                    report.cleaned.append({"org_id": org_id, "mode": profile.get("mode"), "deleted_objects": 0})
        except Exception as exc:
            logger.warning("storage_cleanup_failed org_id=%s", org_id, exc_info=exc)
            report.errors.append({"org_id": org_id, "error": str(exc) or exc.__class__.__name__})
    logger.info(
        "storage_cleanup_completed processed=%s cleaned=%s failed=%s",
        report.processed,
        len(report.cleaned),
        len(report.errors),
    )
    return report
