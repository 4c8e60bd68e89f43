"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Three families:
- DomainDenial: expected, user-facing refusals (revoked, expired, usage exceeded)
- DomainError: malformed or missing input (unknown credential, unknown resource)
- InfrastructureError: storage or audit failures, retried by the caller
"""


class KeyguardError(Exception):
    """Base exception for all keyguard errors."""

    pass


# ============================================================================
# Domain denials
# ============================================================================


class DomainDenial(KeyguardError):
    """Base for expected refusals carrying a stable reason code."""

    reason = "denied"


class CredentialRevokedError(DomainDenial):
    """Raised when a credential has been revoked."""

    reason = "revoked"

    def __init__(self, credential_id: str) -> None:
        self.credential_id = credential_id
        super().__init__(f"Credential {_mask(credential_id)} has been revoked")


class CredentialExpiredError(DomainDenial):
    """Raised when a credential is past its expiry."""

    reason = "expired"

    def __init__(self, credential_id: str) -> None:
        self.credential_id = credential_id
        super().__init__(f"Credential {_mask(credential_id)} has expired")


class UsageLimitExceededError(DomainDenial):
    """Raised when a usage-limited credential has no uses left."""

    reason = "usage_exceeded"

    def __init__(self, credential_id: str, max_usage: int | None) -> None:
        self.credential_id = credential_id
        self.max_usage = max_usage
        super().__init__(
            f"Credential {_mask(credential_id)} exhausted its usage limit of {max_usage}"
        )


# ============================================================================
# Domain errors
# ============================================================================


class DomainError(KeyguardError):
    """Base for malformed or missing input."""

    reason = "invalid_request"


class CredentialNotFoundError(DomainError):
    """Raised when a credential doesn't exist."""

    reason = "invalid_credential"

    def __init__(self, credential_id: str) -> None:
        self.credential_id = credential_id
        super().__init__(f"Credential not found: {_mask(credential_id)}")


class ResourceNotFoundError(DomainError):
    """Raised when a resource doesn't exist or has been deactivated."""

    reason = "resource_unavailable"

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"Resource not found: {resource_id}")


class UnauthorizedError(DomainError):
    """Raised when the caller does not own the resource it is mutating."""

    reason = "unauthorized"

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"Caller does not own resource {resource_id}")


class DuplicateIdError(DomainError):
    """Raised when generated ids keep colliding with existing rows."""

    reason = "duplicate_id"

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Could not generate a unique id after {attempts} attempts")


class TrialAlreadyIssuedError(DomainError):
    """Raised when an origin has already claimed its self-serve trial keys."""

    reason = "trial_already_issued"

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Trial key limit of {limit} already reached for this origin")


class InvalidRequestError(DomainError):
    """Raised when operation arguments violate an invariant."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid request: {message}")


# ============================================================================
# Infrastructure errors
# ============================================================================


class InfrastructureError(KeyguardError):
    """Base for operational failures; callers retry with backoff."""

    pass


class StorageError(InfrastructureError):
    """Raised when the persistence backend fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Storage error: {message}")


class AuditWriteError(InfrastructureError):
    """Raised by audit repositories when an entry could not be persisted."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Audit write failed: {message}")


def _mask(credential_id: str) -> str:
    """Keep credential ids out of error messages beyond their public prefix."""
    parts = credential_id.split("_", 2)
    if len(parts) == 3:
        return f"{parts[0]}_{parts[1]}_***"
    return "***"
