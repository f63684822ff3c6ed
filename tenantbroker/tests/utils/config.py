from __future__ import annotations

import base64
from dataclasses import replace
from typing import Any

from tenantbroker.core.config import BrokerConfig, ManagedStorageConfig


TEST_DEDICATED_SECRET = base64.b64encode(b"d" * 32).decode("ascii")
TEST_STORAGE_SECRET = base64.b64encode(b"s" * 32).decode("ascii")

TEST_MANAGED_STORAGE = ManagedStorageConfig(
    endpoint="https://account.r2.cloudflarestorage.com",
    access_key_id="managed-access",
    secret_access_key="managed-secret",
    bucket="managed-bucket",
)


def make_broker_config(**overrides: Any) -> BrokerConfig:
    config = BrokerConfig(
        dedicated_key_secret=TEST_DEDICATED_SECRET,
        storage_credentials_secret=TEST_STORAGE_SECRET,
        managed_storage=TEST_MANAGED_STORAGE,
        tenant_schema="tuttiud",
        tenant_timeout_s=5.0,
        presigned_ttl_s=300,
        presigned_max_ttl_s=604800,
        grace_period_days=30,
        allow_insecure_endpoints=False,
        bulk_max_parallel=4,
    )
    return replace(config, **overrides)


def byos_profile(**byos_overrides: Any) -> dict[str, Any]:
    byos = {
        "provider": "s3",
        "endpoint": "https://s3.us-east-1.amazonaws.com",
        "bucket": "tenant-files",
        "region": "us-east-1",
        "access_key_id": "AKIATENANT",
        "secret_access_key": "tenant-secret",
    }
    byos.update(byos_overrides)
    return {"mode": "byos", "byos": byos}


def managed_profile(namespace: str = "org-1") -> dict[str, Any]:
    return {"mode": "managed", "managed": {"namespace": namespace, "active": True}}
