from __future__ import annotations

import pytest

from tenantbroker.core.errors import (
    DecryptionFailedError,
    EncryptionNotConfiguredError,
    PlaintextCredentialsError,
)
from tenantbroker.services.crypto.envelope import encrypt, is_envelope
from tenantbroker.services.crypto.secrets import (
    PURPOSE_STORAGE_CREDENTIALS,
    decrypt_byos_config,
    decrypt_dedicated_key,
    decrypt_storage_profile,
    encrypt_dedicated_key,
    encrypt_storage_profile,
    ensure_profile_encrypted,
    resolve_key,
)
from tenantbroker.services.telemetry import counters_snapshot
from tenantbroker.tests.utils.config import (
    TEST_DEDICATED_SECRET,
    byos_profile,
    make_broker_config,
    managed_profile,
)


def test_dedicated_key_roundtrip() -> None:
    config = make_broker_config()
    envelope = encrypt_dedicated_key("tenant-service-role", config)
    assert envelope.startswith("v1:gcm:")
    assert "tenant-service-role" not in envelope
    assert decrypt_dedicated_key(envelope, config) == "tenant-service-role"


def test_missing_secret_raises_not_configured() -> None:
    config = make_broker_config(dedicated_key_secret=None)
    with pytest.raises(EncryptionNotConfiguredError):
        encrypt_dedicated_key("tenant-service-role", config)
    assert counters_snapshot()["crypto_dedicated_key_not_configured_total"] == 1


def test_rotated_secret_fails_decryption() -> None:
    envelope = encrypt_dedicated_key("tenant-service-role", make_broker_config())
    rotated = make_broker_config(dedicated_key_secret="a-completely-different-secret")
    with pytest.raises(DecryptionFailedError):
        decrypt_dedicated_key(envelope, rotated)
    assert counters_snapshot()["crypto_dedicated_key_decrypt_failed_total"] == 1


def test_byos_profile_encrypts_only_the_credential_pair() -> None:
    config = make_broker_config()
    encrypted = encrypt_storage_profile(byos_profile(), config)
    byos = encrypted["byos"]
    assert "access_key_id" not in byos
    assert "secret_access_key" not in byos
    assert byos["_encrypted"] is True
    assert is_envelope(byos["_credentials"])
    assert byos["provider"] == "s3"
    assert byos["bucket"] == "tenant-files"
    assert byos["endpoint"] == "https://s3.us-east-1.amazonaws.com"
    assert byos["region"] == "us-east-1"

    decrypted = decrypt_storage_profile(encrypted, config)
    assert decrypted == byos_profile()


def test_storage_credentials_use_their_own_secret() -> None:
    encrypted = encrypt_storage_profile(byos_profile(), make_broker_config())
    other = make_broker_config(storage_credentials_secret=TEST_DEDICATED_SECRET)
    with pytest.raises(DecryptionFailedError):
        decrypt_storage_profile(encrypted, other)
    assert counters_snapshot()["crypto_storage_credentials_decrypt_failed_total"] == 1


def test_managed_and_empty_profiles_pass_through() -> None:
    config = make_broker_config(storage_credentials_secret=None)
    assert encrypt_storage_profile(managed_profile(), config) == managed_profile()
    assert encrypt_storage_profile(None, config) is None
    assert decrypt_storage_profile(managed_profile(), config) == managed_profile()


def test_profile_without_credentials_is_not_wrapped() -> None:
    profile = byos_profile(access_key_id="", secret_access_key="")
    encrypted = encrypt_storage_profile(profile, make_broker_config())
    assert "_encrypted" not in encrypted["byos"]


def test_legacy_plaintext_profile_reads_with_warning_counter() -> None:
    decrypted = decrypt_storage_profile(byos_profile(), make_broker_config())
    assert decrypted["byos"]["secret_access_key"] == "tenant-secret"
    assert counters_snapshot()["storage_profile_plaintext_read_total"] == 1


def test_non_json_credentials_payload_fails_decryption() -> None:
    config = make_broker_config()
    key = resolve_key(PURPOSE_STORAGE_CREDENTIALS, config)
    byos = {"provider": "s3", "_encrypted": True, "_credentials": encrypt("not-json", key)}
    with pytest.raises(DecryptionFailedError):
        decrypt_byos_config(byos, key)


def test_ensure_profile_encrypted_guards_the_write_boundary() -> None:
    with pytest.raises(PlaintextCredentialsError):
        ensure_profile_encrypted(byos_profile())
    malformed = {"mode": "byos", "byos": {"provider": "s3", "_encrypted": True, "_credentials": "plain"}}
    with pytest.raises(PlaintextCredentialsError):
        ensure_profile_encrypted(malformed)
    ensure_profile_encrypted(encrypt_storage_profile(byos_profile(), make_broker_config()))
    ensure_profile_encrypted(managed_profile())
    ensure_profile_encrypted(None)
