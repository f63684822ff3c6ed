from __future__ import annotations

import re

from tenantbroker.services.storage.profile import MODE_MANAGED


_UNSAFE_NAME_CHARS = re.compile(r'[/\\?%*:|"<>\x00-\x1f]')


def sanitize_path_segment(value: str, *, fallback: str = "file") -> str:
    # Strip separators and control characters so a segment can never escape its prefix.
    cleaned = _UNSAFE_NAME_CHARS.sub("-", value or "").strip().strip(".")
    return cleaned or fallback


def managed_prefix(org_id: str) -> str:
    return f"managed/{org_id}/"


def storage_prefix(mode: str, org_id: str) -> str:
    # BYOS buckets belong to one tenant, so only managed paths carry the org namespace prefix.
    if mode == MODE_MANAGED:
        return managed_prefix(org_id)
    return f"{org_id}/"


def build_storage_path(
    mode: str,
    org_id: str,
    *,
    category: str,
    entity_id: str,
    file_id: str,
    filename: str,
) -> str:
    name = sanitize_path_segment(filename)
    return (
        f"{storage_prefix(mode, org_id)}{sanitize_path_segment(category)}/"
        f"{sanitize_path_segment(entity_id)}/{file_id}-{name}"
    )


def connection_test_path(mode: str, org_id: str, timestamp_ms: int) -> str:
    return f"{storage_prefix(mode, org_id)}_test/test-connection-{org_id}-{timestamp_ms}.txt"


def path_belongs_to_org(mode: str, org_id: str, path: str) -> bool:
    # Guards presign requests against paths from another tenant's namespace.
    if ".." in path.split("/"):
        return False
    if mode == MODE_MANAGED:
        return path.startswith(managed_prefix(org_id))
    return True
