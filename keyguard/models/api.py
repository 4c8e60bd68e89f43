"""
API Models - Enumerations and Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class Plan(str, Enum):
    """Credential plan enumeration. OWNER bypasses every resource check."""

    TRIAL = "trial"
    STANDARD = "standard"
    PREMIUM = "premium"
    OWNER = "owner"

    @property
    def tag(self) -> str:
        """Short tag embedded in generated credential ids."""
        return _PLAN_TAGS[self]


_PLAN_TAGS = {
    Plan.TRIAL: "trial",
    Plan.STANDARD: "std",
    Plan.PREMIUM: "prem",
    Plan.OWNER: "own",
}


class CredentialStatus(str, Enum):
    """Credential status enumeration."""

    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class IssuanceChannel(str, Enum):
    """How a credential came into existence."""

    MANUAL = "manual"
    TRIAL = "trial"
    ADMIN = "admin"


class AccessMode(str, Enum):
    """Resource access mode enumeration."""

    OPEN = "open"
    ALLOW_DENY_LIST = "allow-deny-list"


class AccessAction(str, Enum):
    """List mutation requested through set_access."""

    ALLOW = "allow"
    DENY = "deny"
    CLEAR = "clear"


class ListKind(str, Enum):
    """Which list (if any) a requester appears on."""

    ALLOW = "allow"
    DENY = "deny"
    NONE = "none"


class VerdictState(str, Enum):
    """Terminal states of an access decision."""

    GRANTED = "granted"
    DENIED = "denied"
    BLOCKED = "blocked"
    ERRORED = "errored"


class VerdictReason(str, Enum):
    """Stable machine-readable reason codes returned with every verdict."""

    ORIGIN_BLOCKED = "origin_blocked"
    INVALID_CREDENTIAL = "invalid_credential"
    REVOKED = "revoked"
    EXPIRED = "expired"
    USAGE_EXCEEDED = "usage_exceeded"
    OWNER_BYPASS = "owner_bypass"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    OPEN_ACCESS = "open_access"
    DENYLISTED = "denylisted"
    ALLOWLISTED = "allowlisted"
    NOT_ALLOWLISTED = "not_allowlisted"


class AuditEventType(str, Enum):
    """Kinds of entries written to the audit log."""

    ACCESS_DECISION = "access_decision"
    CREDENTIAL_ISSUED = "credential_issued"
    CREDENTIAL_REVOKED = "credential_revoked"
    ORIGIN_BINDING_RESET = "origin_binding_reset"
    RESOURCE_CREATED = "resource_created"
    ACCESS_LIST_CHANGED = "access_list_changed"
    RESOURCE_DEACTIVATED = "resource_deactivated"
    ORIGIN_BLOCKED = "origin_blocked"
    ORIGIN_UNBLOCKED = "origin_unblocked"


# ============================================================================
# Access Decision Models
# ============================================================================


class AccessRequest(BaseModel):
    """POST /v1/access request body."""

    credential_id: str = Field(..., min_length=1, max_length=128)
    resource_id: str = Field(..., min_length=1, max_length=64)
    requester_id: str = Field(..., min_length=1, max_length=255)


class VerdictResponse(BaseModel):
    """POST /v1/access response."""

    state: VerdictState
    reason: VerdictReason
    remaining_usage: int | None = None


# ============================================================================
# Credential Models
# ============================================================================


class IssueCredentialRequest(BaseModel):
    """POST /v1/admin/credentials request body."""

    plan: Plan
    max_usage: int | None = Field(None, gt=0)
    duration_days: int | None = Field(None, gt=0, description="Overrides the plan duration")
    label: str | None = Field(None, max_length=255)


class CredentialResponse(BaseModel):
    """Credential state returned to admins and credential holders."""

    credential_id: str
    plan: Plan
    status: CredentialStatus
    created_at: str  # ISO 8601 timestamp
    expires_at: str  # ISO 8601 timestamp
    usage_count: int
    max_usage: int | None = None
    remaining_usage: int | None = None
    label: str | None = None
    bound_origins: int = 0


class IssuedCredentialResponse(CredentialResponse):
    """Response for newly issued credentials (the id is the secret, shown once)."""

    message: str = "Store this key securely. It will not be shown again."


# ============================================================================
# Resource Models
# ============================================================================


class CreateResourceRequest(BaseModel):
    """POST /v1/resources request body."""

    access_mode: AccessMode
    name: str | None = Field(None, min_length=1, max_length=255)


class ResourceResponse(BaseModel):
    """Resource state visible to its owner."""

    resource_id: str
    access_mode: AccessMode
    is_active: bool
    name: str | None = None
    allow_list: list[str] = Field(default_factory=list)
    deny_list: list[str] = Field(default_factory=list)
    created_at: str


class ResourceListResponse(BaseModel):
    """GET /v1/resources response."""

    resources: list[ResourceResponse]
    total_count: int


class SetAccessRequest(BaseModel):
    """PUT /v1/resources/{resource_id}/access request body."""

    requester_id: str = Field(..., min_length=1, max_length=255)
    mode: AccessAction

    @field_validator("requester_id")
    @classmethod
    def strip_requester_id(cls, v: str) -> str:
        """Requester ids are compared verbatim, so surrounding whitespace is rejected."""
        if v != v.strip():
            raise ValueError("requester_id must not have surrounding whitespace")
        return v


class MembershipResponse(BaseModel):
    """GET /v1/resources/{resource_id}/membership/{requester_id} response."""

    allowed: bool
    listed: ListKind


class ResourceStatsResponse(BaseModel):
    """GET /v1/resources/{resource_id}/stats response."""

    resource_id: str
    granted: int
    denied: int
    blocked: int
    errored: int
    unique_requesters: int


# ============================================================================
# Origin Models
# ============================================================================


class OriginBlockRequest(BaseModel):
    """POST /v1/admin/origins/block request body."""

    origin: str = Field(..., min_length=1, max_length=128)
    reason: str = Field(..., min_length=1, max_length=255)


class OriginUnblockRequest(BaseModel):
    """POST /v1/admin/origins/unblock request body."""

    origin: str = Field(..., min_length=1, max_length=128)


class OriginStatusResponse(BaseModel):
    """Origin guard state after an administrative change."""

    origin: str
    blocked: bool
    blocked_until: str | None = None
    failure_count: int = 0


# ============================================================================
# Audit Models
# ============================================================================


class AuditEntryResponse(BaseModel):
    """Single audit entry."""

    entry_id: UUID
    event_type: AuditEventType
    resource_id: str | None = None
    requester_id: str | None = None
    verdict: VerdictState | None = None
    reason: str | None = None
    timestamp: str


class AuditPageResponse(BaseModel):
    """GET /v1/audit response."""

    entries: list[AuditEntryResponse]
    page: int
    page_size: int
    total_count: int
    has_more: bool


# ============================================================================
# Health / Error Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str


class ErrorResponse(BaseModel):
    """Error body with a stable machine-readable code."""

    error: str
    detail: str | None = None
