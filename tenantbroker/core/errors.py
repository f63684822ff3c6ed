from __future__ import annotations


class BrokerError(Exception):
    """Base error for the tenant broker."""

    code = "BROKER_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        self.message = message or (self.__class__.__doc__ or self.code).strip()
        super().__init__(self.message)


class EncryptionNotConfiguredError(BrokerError):
    """Operator encryption secret is missing or unusable."""

    code = "encryption_not_configured"


class DecryptionFailedError(BrokerError):
    """Stored ciphertext could not be authenticated with the configured key."""

    code = "decryption_failed"


class PlaintextCredentialsError(BrokerError):
    """Refusing to persist storage credentials that are not encrypted."""

    code = "plaintext_credentials_rejected"


class StorageDriverConfigError(BrokerError):
    """Storage profile cannot be turned into a driver."""

    code = "invalid_storage_profile"
    status_code = 400


class ManagedStorageNotConfiguredError(StorageDriverConfigError):
    """System storage credentials are not configured."""

    code = "managed_storage_not_configured"
    status_code = 500


class StorageNotConfiguredError(BrokerError):
    """Organization has no storage profile."""

    code = "storage_not_configured"
    status_code = 424


class StorageDisconnectedError(BrokerError):
    """Storage is disconnected; writes are blocked."""

    code = "storage_disconnected"
    status_code = 409


class StorageAlreadyConnectedError(BrokerError):
    """Storage is already connected; nothing to reconnect."""

    code = "storage_already_connected"
    status_code = 400


class GracePeriodNotApplicableError(BrokerError):
    """Grace periods only apply to managed storage."""

    code = "grace_period_only_for_managed_storage"
    status_code = 400


class StorageModeNotPermittedError(BrokerError):
    """Organization is not entitled to this storage mode."""

    code = "storage_mode_not_permitted"
    status_code = 403


class PublicUrlUnavailableError(BrokerError):
    """Storage profile exposes no public base URL."""

    code = "public_url_unavailable"
    status_code = 400


class StorageOperationError(BrokerError):
    """Storage backend request failure."""

    code = "storage_operation_failed"
    status_code = 502

    def __init__(
        self,
        message: str | None = None,
        *,
        backend_code: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        # Raw backend signal kept for connection-test classification.
        self.backend_code = backend_code
        self.http_status = http_status


class MembershipError(BrokerError):
    """Caller is not allowed to act on this organization."""

    code = "forbidden"
    status_code = 403


class NotAMemberError(MembershipError):
    """Caller is not a member of this organization."""

    code = "not_a_member"


class AdminRoleRequiredError(MembershipError):
    """Admin or owner role required."""

    code = "admin_or_owner_required"


class OrganizationNotFoundError(BrokerError):
    """Organization does not exist."""

    code = "organization_not_found"
    status_code = 404


class InvalidDedicatedKeyError(BrokerError):
    """Dedicated key must be a non-empty string."""

    code = "missing_dedicated_key"
    status_code = 400


class ControlPlaneError(BrokerError):
    """Control-plane lookup failure."""

    code = "control_plane_error"


class IdentityError(BrokerError):
    """Bearer token is missing, invalid, or expired."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401


class TenantQueryError(BrokerError):
    """Tenant database request failure."""

    code = "tenant_query_failed"
    status_code = 502


# Precondition reasons get distinct statuses so clients can prompt the right setup step.
TENANT_CONNECTION_STATUS: dict[str, int] = {
    "missing_connection_settings": 412,
    "missing_dedicated_key": 428,
    "encryption_not_configured": 500,
    "failed_to_decrypt_key": 500,
    "failed_to_connect_tenant": 500,
}


class TenantConnectionError(BrokerError):
    """Tenant database connection could not be resolved."""

    def __init__(self, reason: str, message: str | None = None, *, stage: str | None = None) -> None:
        super().__init__(message or reason.replace("_", " "))
        self.reason = reason
        self.stage = stage
        self.code = reason
        self.status_code = TENANT_CONNECTION_STATUS.get(reason, 500)


class StorageProfileValidationError(BrokerError):
    """Storage profile failed validation."""

    code = "validation_failed"
    status_code = 400

    def __init__(self, errors: list[str] | tuple[str, ...]) -> None:
        super().__init__("Storage profile failed validation")
        self.errors = list(errors)


class StorageConnectionTestError(BrokerError):
    """Storage connection test failed."""

    code = "connection_test_failed"
    status_code = 400

    def __init__(self, code: str, message: str, *, backend_code: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.backend_code = backend_code
