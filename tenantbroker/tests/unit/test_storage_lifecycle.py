from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tenantbroker.core.errors import (
    GracePeriodNotApplicableError,
    StorageAlreadyConnectedError,
    StorageDisconnectedError,
    StorageModeNotPermittedError,
    StorageNotConfiguredError,
)
from tenantbroker.services.crypto.secrets import encrypt_storage_profile
from tenantbroker.services.storage.lifecycle import (
    ACCESS_LEVEL_BEFORE_GRACE_KEY,
    ACCESS_LEVEL_KEY,
    PolicyGatedDriver,
    StorageAccessState,
    StorageOperation,
    cleanup_expired_grace_periods,
    disconnect_storage,
    evaluate_storage_access,
    reconnect_storage,
    reconnected_permissions,
    start_grace_period,
    storage_mode_permitted,
)
from tenantbroker.tests.utils.config import byos_profile, make_broker_config, managed_profile
from tenantbroker.tests.utils.control_plane import ControlPlaneStore, install_control_plane
from tenantbroker.tests.utils.storage import FakeDriver


NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
CONFIG = make_broker_config()


def _disconnected(profile: dict) -> dict:
    return {**profile, "disconnected": True}


def test_missing_profile_is_not_configured() -> None:
    access = evaluate_storage_access(None, {}, None, now=NOW)
    assert access.state == StorageAccessState.NOT_CONFIGURED
    with pytest.raises(StorageNotConfiguredError) as excinfo:
        access.require(StorageOperation.READ)
    assert excinfo.value.status_code == 424


def test_connected_storage_allows_everything() -> None:
    access = evaluate_storage_access(managed_profile(), {}, None, now=NOW)
    assert access.state == StorageAccessState.CONNECTED
    for operation in StorageOperation:
        assert access.allows(operation)


def test_managed_grace_is_read_only() -> None:
    access = evaluate_storage_access(
        _disconnected(managed_profile()),
        {ACCESS_LEVEL_KEY: "read_only_grace"},
        NOW + timedelta(days=3),
        now=NOW,
    )
    assert access.state == StorageAccessState.DISCONNECTED_GRACE
    assert access.allows(StorageOperation.READ)
    assert access.allows(StorageOperation.BULK_EXPORT)
    assert not access.allows(StorageOperation.WRITE)
    assert not access.allows(StorageOperation.DELETE)
    with pytest.raises(StorageDisconnectedError) as excinfo:
        access.require(StorageOperation.WRITE)
    assert excinfo.value.status_code == 409


def test_managed_grace_expires_or_can_be_revoked() -> None:
    expired = evaluate_storage_access(_disconnected(managed_profile()), {}, NOW - timedelta(seconds=1), now=NOW)
    assert expired.state == StorageAccessState.DISCONNECTED_REVOKED
    with pytest.raises(StorageDisconnectedError):
        expired.require(StorageOperation.READ)

    revoked = evaluate_storage_access(_disconnected(managed_profile()), {ACCESS_LEVEL_KEY: False}, None, now=NOW)
    assert revoked.state == StorageAccessState.DISCONNECTED_REVOKED


def test_disconnected_byos_stays_readable_without_expiry() -> None:
    access = evaluate_storage_access(_disconnected(byos_profile()), {ACCESS_LEVEL_KEY: False}, None, now=NOW)
    assert access.state == StorageAccessState.DISCONNECTED_GRACE
    assert access.grace_ends_at is None
    assert access.allows(StorageOperation.READ)
    assert not access.allows(StorageOperation.WRITE)


@pytest.mark.asyncio
async def test_gated_driver_rejects_writes_before_reaching_the_backend() -> None:
    driver = FakeDriver({"org-1/a.txt": b"a"})
    access = evaluate_storage_access(_disconnected(byos_profile()), {}, None, now=NOW)
    gated = PolicyGatedDriver(driver, access)

    with pytest.raises(StorageDisconnectedError):
        await gated.put("org-1/b.txt", b"b")
    with pytest.raises(StorageDisconnectedError):
        await gated.delete("org-1/a.txt")
    assert driver.calls == []

    assert await gated.get("org-1/a.txt") == b"a"
    assert (await gated.presigned_url("org-1/a.txt", 60)).startswith("https://signed.example/")


def test_storage_mode_entitlements() -> None:
    assert storage_mode_permitted({}, "byos")
    assert storage_mode_permitted({ACCESS_LEVEL_KEY: "all"}, "managed")
    assert storage_mode_permitted({ACCESS_LEVEL_KEY: "byos_only"}, "byos")
    assert not storage_mode_permitted({ACCESS_LEVEL_KEY: "byos_only"}, "managed")
    assert not storage_mode_permitted({ACCESS_LEVEL_KEY: "managed_only"}, "byos")
    assert not storage_mode_permitted({ACCESS_LEVEL_KEY: False}, "byos")


def test_reconnect_restores_previous_entitlement() -> None:
    permissions = {ACCESS_LEVEL_KEY: "read_only_grace", ACCESS_LEVEL_BEFORE_GRACE_KEY: "managed_only", "other": 1}
    assert reconnected_permissions(permissions) == {ACCESS_LEVEL_KEY: "managed_only", "other": 1}
    assert reconnected_permissions({ACCESS_LEVEL_KEY: "read_only_grace"}) == {}
    assert reconnected_permissions({ACCESS_LEVEL_KEY: "byos_only"}) == {ACCESS_LEVEL_KEY: "byos_only"}


@pytest.mark.asyncio
async def test_start_grace_period_for_managed_storage(monkeypatch) -> None:
    store = ControlPlaneStore()
    store.add_org("org-1", storage_profile=managed_profile(), permissions={ACCESS_LEVEL_KEY: "all"})
    session = install_control_plane(monkeypatch, store)

    access = await start_grace_period(session, "org-1", config=CONFIG, now=NOW)
    row = store.settings["org-1"]
    assert access.state == StorageAccessState.DISCONNECTED_GRACE
    assert row.storage_grace_ends_at == NOW + timedelta(days=30)
    assert row.storage_profile["disconnected"] is True
    assert row.permissions[ACCESS_LEVEL_KEY] == "read_only_grace"
    assert row.permissions[ACCESS_LEVEL_BEFORE_GRACE_KEY] == "all"


@pytest.mark.asyncio
async def test_grace_days_can_be_overridden_per_org(monkeypatch) -> None:
    store = ControlPlaneStore()
    store.add_org("org-1", storage_profile=managed_profile(), permissions={"storage_grace_period_days": 7})
    session = install_control_plane(monkeypatch, store)

    access = await start_grace_period(session, "org-1", config=CONFIG, now=NOW)
    assert access.grace_ends_at == NOW + timedelta(days=7)


@pytest.mark.asyncio
async def test_grace_period_only_applies_to_managed_storage(monkeypatch) -> None:
    store = ControlPlaneStore()
    store.add_org("org-1", storage_profile=encrypt_storage_profile(byos_profile(), CONFIG))
    store.add_org("org-2")
    session = install_control_plane(monkeypatch, store)

    with pytest.raises(GracePeriodNotApplicableError):
        await start_grace_period(session, "org-1", config=CONFIG, now=NOW)
    with pytest.raises(StorageNotConfiguredError):
        await start_grace_period(session, "org-2", config=CONFIG, now=NOW)


@pytest.mark.asyncio
async def test_disconnect_byos_blocks_writes_only(monkeypatch) -> None:
    store = ControlPlaneStore()
    store.add_org("org-1", storage_profile=encrypt_storage_profile(byos_profile(), CONFIG))
    session = install_control_plane(monkeypatch, store)

    access = await disconnect_storage(session, "org-1", config=CONFIG, now=NOW, user_id="owner-1")
    row = store.settings["org-1"]
    assert access.state == StorageAccessState.DISCONNECTED_GRACE
    assert row.storage_profile["disconnected"] is True
    assert row.storage_profile["disconnected_at"] == NOW.isoformat()
    assert row.storage_profile["disconnected_by"] == "owner-1"
    assert row.storage_profile["byos"]["_encrypted"] is True
    assert row.storage_grace_ends_at is None


@pytest.mark.asyncio
async def test_disconnect_without_profile_fails(monkeypatch) -> None:
    session = install_control_plane(monkeypatch, ControlPlaneStore())
    with pytest.raises(StorageNotConfiguredError):
        await disconnect_storage(session, "org-404", config=CONFIG, now=NOW)


@pytest.mark.asyncio
async def test_reconnect_managed_storage_restores_prior_entitlement(monkeypatch) -> None:
    store = ControlPlaneStore()
    store.add_org("org-1", storage_profile=managed_profile(), permissions={ACCESS_LEVEL_KEY: "managed_only"})
    session = install_control_plane(monkeypatch, store)

    await disconnect_storage(session, "org-1", config=CONFIG, now=NOW, user_id="owner-1")
    later = NOW + timedelta(days=2)
    access = await reconnect_storage(session, "org-1", now=later, user_id="admin-2")

    row = store.settings["org-1"]
    assert access.state == StorageAccessState.CONNECTED
    assert row.storage_grace_ends_at is None
    assert row.permissions == {ACCESS_LEVEL_KEY: "managed_only"}
    assert row.storage_profile["disconnected"] is False
    assert row.storage_profile["reconnected_at"] == later.isoformat()
    assert row.storage_profile["reconnected_by"] == "admin-2"
    assert "disconnected_at" not in row.storage_profile
    assert "disconnected_by" not in row.storage_profile
    assert row.storage_profile["managed"] == managed_profile()["managed"]


@pytest.mark.asyncio
async def test_reconnect_byos_keeps_encrypted_credentials(monkeypatch) -> None:
    store = ControlPlaneStore()
    encrypted = encrypt_storage_profile(byos_profile(), CONFIG)
    store.add_org("org-1", storage_profile={**encrypted, "disconnected": True})
    session = install_control_plane(monkeypatch, store)

    await reconnect_storage(session, "org-1", now=NOW, user_id="owner-1")

    stored = store.settings["org-1"].storage_profile
    assert stored["disconnected"] is False
    assert stored["byos"] == encrypted["byos"]


@pytest.mark.asyncio
async def test_reconnect_rejections(monkeypatch) -> None:
    store = ControlPlaneStore()
    store.add_org("org-1", storage_profile=managed_profile())
    store.add_org(
        "org-2",
        storage_profile=_disconnected(managed_profile("org-2")),
        permissions={ACCESS_LEVEL_KEY: "revoked"},
    )
    session = install_control_plane(monkeypatch, store)

    with pytest.raises(StorageAlreadyConnectedError) as excinfo:
        await reconnect_storage(session, "org-1", now=NOW)
    assert excinfo.value.status_code == 400
    with pytest.raises(StorageModeNotPermittedError):
        await reconnect_storage(session, "org-2", now=NOW)
    assert store.settings["org-2"].storage_profile["disconnected"] is True
    with pytest.raises(StorageNotConfiguredError):
        await reconnect_storage(session, "org-404", now=NOW)


@pytest.mark.asyncio
async def test_cleanup_purges_managed_files_and_collects_failures(monkeypatch) -> None:
    store = ControlPlaneStore()
    past = NOW - timedelta(days=1)
    store.add_org(
        "org-a",
        storage_profile=_disconnected(managed_profile("org-a")),
        permissions={ACCESS_LEVEL_KEY: "read_only_grace", ACCESS_LEVEL_BEFORE_GRACE_KEY: "all"},
        grace_ends_at=past,
    )
    store.add_org(
        "org-b",
        storage_profile=_disconnected(managed_profile("org-b")),
        grace_ends_at=past - timedelta(hours=1),
    )
    store.add_org(
        "org-c",
        storage_profile=_disconnected(encrypt_storage_profile(byos_profile(), CONFIG)),
        grace_ends_at=past,
    )
    store.add_org("org-d", storage_profile=_disconnected(managed_profile("org-d")), grace_ends_at=NOW + timedelta(days=1))
    session = install_control_plane(monkeypatch, store)
    driver = FakeDriver(
        {"managed/org-a/documents/1.pdf": b"1", "managed/org-a/documents/2.pdf": b"2", "managed/org-d/x": b"x"},
        failing_prefixes=("managed/org-b/",),
    )

    report = await cleanup_expired_grace_periods(session, config=CONFIG, now=NOW, driver_factory=lambda: driver)

    assert report.processed == 3
    assert report.cleaned == [
        {"org_id": "org-a", "mode": "managed", "deleted_objects": 2},
        {"org_id": "org-c", "mode": "byos", "deleted_objects": 0},
    ]
    assert [error["org_id"] for error in report.errors] == ["org-b"]
    assert list(driver.objects) == ["managed/org-d/x"]

    org_a = store.settings["org-a"]
    assert org_a.storage_profile is None
    assert org_a.permissions == {ACCESS_LEVEL_KEY: False}
    assert org_a.storage_grace_ends_at is None

    org_b = store.settings["org-b"]
    assert org_b.storage_grace_ends_at == past - timedelta(hours=1)

    org_c = store.settings["org-c"]
    assert org_c.storage_grace_ends_at is None
    assert org_c.storage_profile["mode"] == "byos"
