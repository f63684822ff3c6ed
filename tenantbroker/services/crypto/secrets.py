from __future__ import annotations

import json
import logging
from typing import Any

from tenantbroker.core.config import BrokerConfig
from tenantbroker.core.errors import (
    DecryptionFailedError,
    EncryptionNotConfiguredError,
    PlaintextCredentialsError,
)
from tenantbroker.services.crypto.envelope import decrypt, derive_key, encrypt, is_envelope
from tenantbroker.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

PURPOSE_DEDICATED_KEY = "dedicated_key"
PURPOSE_STORAGE_CREDENTIALS = "storage_credentials"

_CREDENTIAL_FIELDS = ("access_key_id", "secret_access_key")


def _secret_for(purpose: str, config: BrokerConfig) -> str | None:
    if purpose == PURPOSE_DEDICATED_KEY:
        return config.dedicated_key_secret
    if purpose == PURPOSE_STORAGE_CREDENTIALS:
        return config.storage_credentials_secret
    raise ValueError(f"unknown secret purpose: {purpose}")


def resolve_key(purpose: str, config: BrokerConfig) -> bytes:
    # Keys are derived per call from the operator secret and never cached.
    key = derive_key(_secret_for(purpose, config))
    if key is None:
        logger.error("encryption_secret_missing purpose=%s", purpose)
        increment_counter(f"crypto_{purpose}_not_configured_total")
        raise EncryptionNotConfiguredError(f"Encryption secret for {purpose} is not configured")
    return key


def encrypt_dedicated_key(plaintext: str, config: BrokerConfig) -> str:
    key = resolve_key(PURPOSE_DEDICATED_KEY, config)
    return encrypt(plaintext, key)


def decrypt_dedicated_key(envelope: str, config: BrokerConfig) -> str:
    key = resolve_key(PURPOSE_DEDICATED_KEY, config)
    plaintext = decrypt(envelope, key)
    if plaintext is None:
        # Points at key rotation or row tampering; keep the event name stable for alerting.
        logger.error("dedicated_key_decrypt_failed")
        increment_counter("crypto_dedicated_key_decrypt_failed_total")
        raise DecryptionFailedError("Failed to decrypt the organization dedicated key")
    return plaintext


def encrypt_byos_config(byos: dict[str, Any], key: bytes) -> dict[str, Any]:
    """Replace the credential pair with an encrypted ``_credentials`` envelope.

    Provider, endpoint, bucket, region, and public URL stay in cleartext. A
    config that already carries an envelope and no plaintext pair is returned
    unchanged.
    """
    public = {k: v for k, v in byos.items() if k not in _CREDENTIAL_FIELDS}
    credentials = {field: byos.get(field) or "" for field in _CREDENTIAL_FIELDS}
    if not any(credentials.values()):
        return dict(byos)
    public.pop("_credentials", None)
    public["_encrypted"] = True
    public["_credentials"] = encrypt(json.dumps(credentials, separators=(",", ":")), key)
    return public


def decrypt_byos_config(byos: dict[str, Any], key: bytes) -> dict[str, Any]:
    if not byos.get("_encrypted"):
        return dict(byos)
    plaintext = decrypt(byos.get("_credentials"), key)
    if plaintext is None:
        logger.error("storage_credentials_decrypt_failed")
        increment_counter("crypto_storage_credentials_decrypt_failed_total")
        raise DecryptionFailedError("Failed to decrypt storage credentials")
    try:
        credentials = json.loads(plaintext)
    except ValueError as exc:
        logger.error("storage_credentials_payload_invalid")
        raise DecryptionFailedError("Decrypted storage credentials are not valid JSON") from exc
    if not isinstance(credentials, dict):
        raise DecryptionFailedError("Decrypted storage credentials have an unexpected shape")
    result = {k: v for k, v in byos.items() if k not in {"_encrypted", "_credentials"}}
    for field in _CREDENTIAL_FIELDS:
        result[field] = str(credentials.get(field) or "")
    return result


def encrypt_storage_profile(profile: dict[str, Any] | None, config: BrokerConfig) -> dict[str, Any] | None:
    # Only BYOS profiles carry secrets; managed profiles use process-held credentials.
    if not profile or profile.get("mode") != "byos" or not isinstance(profile.get("byos"), dict):
        return profile
    key = resolve_key(PURPOSE_STORAGE_CREDENTIALS, config)
    return {**profile, "byos": encrypt_byos_config(profile["byos"], key)}


def decrypt_storage_profile(profile: dict[str, Any] | None, config: BrokerConfig) -> dict[str, Any] | None:
    if not profile or profile.get("mode") != "byos" or not isinstance(profile.get("byos"), dict):
        return profile
    byos = profile["byos"]
    if not byos.get("_encrypted"):
        if any(byos.get(field) for field in _CREDENTIAL_FIELDS):
            # Rows written before credential encryption existed.
            logger.warning("storage_profile_plaintext_credentials_read")
            increment_counter("storage_profile_plaintext_read_total")
        return {**profile, "byos": dict(byos)}
    key = resolve_key(PURPOSE_STORAGE_CREDENTIALS, config)
    return {**profile, "byos": decrypt_byos_config(byos, key)}


def ensure_profile_encrypted(profile: dict[str, Any] | None) -> None:
    """Reject a profile whose BYOS credentials would reach the database in cleartext."""
    if not profile or profile.get("mode") != "byos":
        return
    byos = profile.get("byos")
    if not isinstance(byos, dict):
        return
    if any(byos.get(field) for field in _CREDENTIAL_FIELDS):
        raise PlaintextCredentialsError()
    if byos.get("_encrypted") and not is_envelope(byos.get("_credentials")):
        raise PlaintextCredentialsError("Encrypted storage profile carries a malformed credential envelope")
