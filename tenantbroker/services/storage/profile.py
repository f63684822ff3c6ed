from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


MODE_MANAGED = "managed"
MODE_BYOS = "byos"
STORAGE_MODES = (MODE_BYOS, MODE_MANAGED)

PROVIDER_S3 = "s3"
PROVIDER_AZURE = "azure"
PROVIDER_GCS = "gcs"
PROVIDER_R2 = "r2"
PROVIDER_GENERIC = "generic"
BYOS_PROVIDERS = (PROVIDER_S3, PROVIDER_AZURE, PROVIDER_GCS, PROVIDER_R2, PROVIDER_GENERIC)

_NAMESPACE_PATTERN = re.compile(r"[a-z0-9_-]+", re.IGNORECASE)


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _byos_source(raw: dict[str, Any]) -> dict[str, Any] | None:
    # Accept both the nested shape and a flat form where BYOS fields sit at the top level.
    nested = raw.get("byos")
    if isinstance(nested, dict):
        return nested
    if "provider" in raw:
        return raw
    return None


def normalize_storage_profile(
    raw: Any,
    *,
    updated_by: str | None = None,
    now: str | None = None,
) -> dict[str, Any] | None:
    """Canonicalize a raw storage profile.

    Empty optional fields (``region``, ``public_url``) are omitted rather than
    stored as empty strings. Only the sibling object matching ``mode`` is kept.
    """
    if not isinstance(raw, dict):
        return None
    stamp = now or _utc_now_iso()
    normalized: dict[str, Any] = {"mode": _clean(raw.get("mode")).lower()}

    if normalized["mode"] == MODE_BYOS:
        source = _byos_source(raw)
        if source is not None:
            byos: dict[str, Any] = {
                "provider": _clean(source.get("provider")).lower(),
                "endpoint": _clean(source.get("endpoint")),
                "bucket": _clean(source.get("bucket")),
                "access_key_id": _clean(source.get("access_key_id")),
                "secret_access_key": _clean(source.get("secret_access_key")),
            }
            region = _clean(source.get("region"))
            if region:
                byos["region"] = region
            public_url = _clean(source.get("public_url"))
            if public_url:
                byos["public_url"] = public_url
            if source.get("validated_at"):
                byos["validated_at"] = source["validated_at"]
            normalized["byos"] = byos
    elif normalized["mode"] == MODE_MANAGED:
        managed = raw.get("managed")
        if isinstance(managed, dict):
            normalized["managed"] = {
                "namespace": _clean(managed.get("namespace")),
                "active": managed.get("active") is True,
                "created_at": managed.get("created_at") or stamp,
            }

    if raw.get("disconnected") is True:
        normalized["disconnected"] = True
    normalized["updated_at"] = stamp
    normalized["updated_by"] = updated_by if updated_by is not None else raw.get("updated_by")
    return normalized


def _check_https(value: str, *, label: str, insecure_message: str, allow_insecure: bool) -> str | None:
    scheme = value.lower()
    if scheme.startswith("https://"):
        return None
    if scheme.startswith("http://"):
        return None if allow_insecure else insecure_message
    return f"{label} must be a valid HTTPS URL"


def validate_byos_credentials(byos: Any, *, allow_insecure: bool = False) -> ValidationResult:
    if not isinstance(byos, dict):
        return ValidationResult(False, ("BYOS configuration must be an object",))
    errors: list[str] = []

    provider = byos.get("provider")
    if not provider or not isinstance(provider, str):
        errors.append("Provider is required")
    elif provider not in BYOS_PROVIDERS:
        errors.append(f"Provider must be one of: {', '.join(BYOS_PROVIDERS)}")

    endpoint = byos.get("endpoint")
    if not endpoint or not isinstance(endpoint, str):
        errors.append("Endpoint URL is required")
    elif not endpoint.strip():
        errors.append("Endpoint URL cannot be empty")
    else:
        error = _check_https(
            endpoint.strip(),
            label="Endpoint",
            insecure_message=(
                "Endpoint must use HTTPS (not HTTP) to protect credentials in transit. "
                "Only use HTTP for local development."
            ),
            allow_insecure=allow_insecure,
        )
        if error:
            errors.append(error)

    if "region" in byos and byos["region"] is not None and not isinstance(byos["region"], str):
        errors.append("Region must be a string")

    for field, label in (
        ("bucket", "Bucket name"),
        ("access_key_id", "Access key ID"),
        ("secret_access_key", "Secret access key"),
    ):
        value = byos.get(field)
        if not value or not isinstance(value, str):
            errors.append(f"{label} is required")
        elif not value.strip():
            errors.append(f"{label} cannot be empty")

    public_url = byos.get("public_url")
    if public_url is not None:
        if not isinstance(public_url, str):
            errors.append("Public URL must be a string")
        elif public_url.strip():
            error = _check_https(
                public_url.strip(),
                label="Public URL",
                insecure_message=(
                    "Public URL must use HTTPS (not HTTP) for security. "
                    "Only use HTTP for local development."
                ),
                allow_insecure=allow_insecure,
            )
            if error:
                errors.append(error)

    return ValidationResult(not errors, tuple(errors))


def validate_managed_config(managed: Any) -> ValidationResult:
    if not isinstance(managed, dict):
        return ValidationResult(False, ("Managed storage configuration must be an object",))
    errors: list[str] = []
    namespace = managed.get("namespace")
    if not namespace or not isinstance(namespace, str):
        errors.append("Namespace is required")
    elif not namespace.strip():
        errors.append("Namespace cannot be empty")
    elif not _NAMESPACE_PATTERN.fullmatch(namespace):
        errors.append("Namespace must contain only alphanumeric characters, hyphens, and underscores")
    if "active" in managed and not isinstance(managed["active"], bool):
        errors.append("Active status must be a boolean")
    return ValidationResult(not errors, tuple(errors))


def validate_storage_profile(profile: Any, *, allow_insecure: bool = False) -> ValidationResult:
    """Collect every structural and transport-security violation in one pass."""
    if not isinstance(profile, dict):
        return ValidationResult(False, ("Storage profile must be an object",))
    errors: list[str] = []
    mode = profile.get("mode")
    if not mode or not isinstance(mode, str):
        errors.append("Storage mode is required")
    elif mode not in STORAGE_MODES:
        errors.append(f"Storage mode must be one of: {', '.join(STORAGE_MODES)}")

    if mode == MODE_BYOS:
        if not profile.get("byos"):
            errors.append('BYOS configuration is required when mode is "byos"')
        else:
            errors.extend(validate_byos_credentials(profile["byos"], allow_insecure=allow_insecure).errors)
    elif mode == MODE_MANAGED:
        if not profile.get("managed"):
            errors.append('Managed storage configuration is required when mode is "managed"')
        else:
            errors.extend(validate_managed_config(profile["managed"]).errors)
    return ValidationResult(not errors, tuple(errors))


def redact_storage_profile(profile: dict[str, Any] | None) -> dict[str, Any] | None:
    # Non-admin members see where files live, never how to authenticate against it.
    if not profile:
        return profile
    redacted = {k: v for k, v in profile.items() if k not in {"byos", "managed"}}
    if profile.get("mode") == MODE_BYOS and isinstance(profile.get("byos"), dict):
        byos = profile["byos"]
        redacted["byos"] = {
            key: byos[key]
            for key in ("provider", "endpoint", "bucket", "region", "public_url", "validated_at")
            if key in byos
        }
    elif profile.get("mode") == MODE_MANAGED and isinstance(profile.get("managed"), dict):
        redacted["managed"] = dict(profile["managed"])
    return redacted
