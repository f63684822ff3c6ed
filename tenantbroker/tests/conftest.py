from __future__ import annotations

import pytest

from tenantbroker.apps.api.deps import get_identity_verifier
from tenantbroker.core.config import get_settings
from tenantbroker.services.telemetry import reset_telemetry


_BROKER_ENV_VARS = (
    "APP_ORG_CREDENTIALS_ENCRYPTION_KEY",
    "ORG_CREDENTIALS_ENCRYPTION_KEY",
    "APP_SECRET_ENCRYPTION_KEY",
    "APP_ENCRYPTION_KEY",
    "APP_STORAGE_CREDENTIALS_ENCRYPTION_KEY",
    "STORAGE_CREDENTIALS_ENCRYPTION_KEY",
    "SYSTEM_R2_ENDPOINT",
    "SYSTEM_R2_ACCESS_KEY",
    "SYSTEM_R2_SECRET_KEY",
    "SYSTEM_R2_BUCKET_NAME",
    "SYSTEM_R2_PUBLIC_URL",
)


@pytest.fixture(autouse=True)
def isolate_broker_state(monkeypatch) -> None:
    # Keep host env secrets and in-process counters from leaking between tests.
    for name in _BROKER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    get_identity_verifier.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    get_identity_verifier.cache_clear()
