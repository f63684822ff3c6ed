from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tenantbroker.domain.models import OrgSettings
from tenantbroker.persistence.repos.organizations import ConnectionRow, DedicatedKeyWrite


class _Savepoint:
    async def __aenter__(self) -> "_Savepoint":
        return self

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False


class FakeSession:
    """Just enough AsyncSession surface for repository code running against ControlPlaneStore."""

    def __init__(self, store: "ControlPlaneStore") -> None:
        self.store = store
        self.commits = 0
        self.rollbacks = 0

    def add(self, row: OrgSettings) -> None:
        self.store.settings[row.org_id] = row

    async def flush(self) -> None:
        return None

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1

    def begin_nested(self) -> _Savepoint:
        return _Savepoint()


@dataclass
class ControlPlaneStore:
    """In-memory control-plane tables patched in place of the SQL repositories."""

    settings: dict[str, OrgSettings] = field(default_factory=dict)
    memberships: dict[tuple[str, str], str] = field(default_factory=dict)
    dedicated_keys: dict[str, str] = field(default_factory=dict)
    organizations: set[str] = field(default_factory=set)

    def add_org(
        self,
        org_id: str,
        *,
        storage_profile: dict[str, Any] | None = None,
        permissions: dict[str, Any] | None = None,
        grace_ends_at: datetime | None = None,
        supabase_url: str | None = None,
        anon_key: str | None = None,
    ) -> OrgSettings:
        self.organizations.add(org_id)
        row = OrgSettings(
            org_id=org_id,
            supabase_url=supabase_url,
            anon_key=anon_key,
            storage_profile=storage_profile,
            permissions=permissions or {},
            storage_grace_ends_at=grace_ends_at,
        )
        self.settings[org_id] = row
        return row

    def add_member(self, org_id: str, user_id: str, role: str) -> None:
        self.memberships[(org_id, user_id)] = role

    async def get_org_settings(self, session: Any, org_id: str) -> OrgSettings | None:
        return self.settings.get(org_id)

    async def list_expired_grace_periods(self, session: Any, now: datetime) -> list[OrgSettings]:
        rows = [
            row
            for row in self.settings.values()
            if row.storage_grace_ends_at is not None and row.storage_grace_ends_at < now
        ]
        return sorted(rows, key=lambda row: (row.storage_grace_ends_at, row.org_id))

    async def get_membership_role(self, session: Any, org_id: str, user_id: str) -> str | None:
        return self.memberships.get((org_id, user_id))

    async def get_connection_settings(self, session: Any, org_id: str) -> ConnectionRow | None:
        row = self.settings.get(org_id)
        if row is None:
            return None
        return ConnectionRow(supabase_url=row.supabase_url, anon_key=row.anon_key)

    async def get_dedicated_key_envelope(self, session: Any, org_id: str) -> str | None:
        return self.dedicated_keys.get(org_id)

    async def write_dedicated_key(
        self,
        session: Any,
        org_id: str,
        envelope: str,
        *,
        now: datetime,
    ) -> DedicatedKeyWrite | None:
        if org_id not in self.organizations:
            return None
        self.dedicated_keys[org_id] = envelope
        return DedicatedKeyWrite(saved_at=now, verified_at=now)


def install_control_plane(monkeypatch, store: ControlPlaneStore) -> FakeSession:
    # Patch every module that imported a repository function by name.
    from tenantbroker.persistence.repos import org_settings as org_settings_repo
    from tenantbroker.services import credentials
    from tenantbroker.services.storage import lifecycle
    from tenantbroker.services.storage import settings as storage_settings
    from tenantbroker.services.tenancy import resolver

    monkeypatch.setattr(org_settings_repo, "get_org_settings", store.get_org_settings)
    monkeypatch.setattr(lifecycle, "get_org_settings", store.get_org_settings)
    monkeypatch.setattr(lifecycle, "list_expired_grace_periods", store.list_expired_grace_periods)
    monkeypatch.setattr(storage_settings, "get_org_settings", store.get_org_settings)
    monkeypatch.setattr(credentials, "get_membership_role", store.get_membership_role)
    monkeypatch.setattr(credentials, "write_dedicated_key", store.write_dedicated_key)
    monkeypatch.setattr(resolver, "get_connection_settings", store.get_connection_settings)
    monkeypatch.setattr(resolver, "get_dedicated_key_envelope", store.get_dedicated_key_envelope)
    return FakeSession(store)
