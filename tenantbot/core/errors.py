from __future__ import annotations


class TenantBotError(Exception):
    """Base error for tenantbot."""


class DatabaseError(TenantBotError):
    """Database layer failure."""


class EncryptionKeyError(TenantBotError):
    """Missing or malformed credential encryption key."""


class CredentialEncryptionError(TenantBotError):
    """Ciphertext could not be produced or authenticated."""

    def __init__(self, message: str, *, operation: str = "unknown") -> None:
        self.operation = operation
        super().__init__(message)


class RefreshError(TenantBotError):
    """Token refresh failed; the credential has been invalidated."""

    def __init__(self, message: str, *, tenant_id: str | None = None, provider: str | None = None) -> None:
        self.tenant_id = tenant_id
        self.provider = provider
        super().__init__(message)


class ProviderRequestError(TenantBotError):
    """Provider API call failed for a reason other than credential rejection."""

    def __init__(self, message: str, *, status_code: int | None = None, error_code: str | None = None) -> None:
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


class InvalidCredentialError(ProviderRequestError):
    """Provider explicitly rejected the credential (revoked, inactive, bad token)."""


class NoValidCredentialError(TenantBotError):
    """No usable credential for a tenant; the workspace owner must re-authorize."""

    def __init__(self, tenant_id: str, parent_org_id: str | None = None) -> None:
        self.tenant_id = tenant_id
        self.parent_org_id = parent_org_id
        super().__init__(f"No valid credential available for tenant {tenant_id}")


class JobPayloadError(TenantBotError):
    """Job payload does not match the schema of its job type."""


class JobScheduleError(TenantBotError):
    """Invalid scheduling request (bad cron, conflicting options, unknown type)."""


class OrchestratorClosedError(TenantBotError):
    """The job backend has been closed; no further scheduling is possible."""


class JobInterruptedError(TenantBotError):
    """A job lost its worker mid-run (crash or expired lease) too many times."""
