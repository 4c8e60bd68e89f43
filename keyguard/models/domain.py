"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID, uuid4

from keyguard.models.api import (
    AccessMode,
    AuditEventType,
    CredentialStatus,
    IssuanceChannel,
    ListKind,
    Plan,
    VerdictReason,
    VerdictState,
)


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


# ============================================================================
# Credentials
# ============================================================================


@dataclass(frozen=True)
class Credential:
    """Immutable credential snapshot."""

    id: str
    plan: Plan
    status: CredentialStatus
    created_at: datetime
    expires_at: datetime
    usage_count: int = 0
    max_usage: int | None = None
    origin_binding: frozenset[str] = frozenset()
    label: str | None = None
    issued_via: IssuanceChannel = IssuanceChannel.MANUAL
    issued_to_origin: str | None = None
    last_used_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate credential invariants."""
        if not self.id:
            raise ValueError("Credential id cannot be empty")
        if self.expires_at <= self.created_at:
            raise ValueError(
                f"expires_at ({self.expires_at}) must be after created_at ({self.created_at})"
            )
        if self.usage_count < 0:
            raise ValueError(f"usage_count cannot be negative: {self.usage_count}")
        if self.max_usage is not None:
            if self.max_usage <= 0:
                raise ValueError(f"max_usage must be positive: {self.max_usage}")
            if self.usage_count > self.max_usage:
                raise ValueError(
                    f"usage_count {self.usage_count} exceeds max_usage {self.max_usage}"
                )

    def is_expired(self, now: datetime) -> bool:
        """Expiry is computed at read time, never swept eagerly."""
        return self.status == CredentialStatus.EXPIRED or now > self.expires_at

    def effective_status(self, now: datetime) -> CredentialStatus:
        """Status as seen at `now`; revocation takes precedence over expiry."""
        if self.status == CredentialStatus.REVOKED:
            return CredentialStatus.REVOKED
        if self.is_expired(now):
            return CredentialStatus.EXPIRED
        return CredentialStatus.ACTIVE

    @property
    def usage_exhausted(self) -> bool:
        return self.max_usage is not None and self.usage_count >= self.max_usage

    @property
    def remaining_usage(self) -> int | None:
        if self.max_usage is None:
            return None
        return max(self.max_usage - self.usage_count, 0)


# ============================================================================
# Resources
# ============================================================================


@dataclass(frozen=True)
class Resource:
    """Immutable resource snapshot with its access lists."""

    id: str
    owner_credential_id: str
    access_mode: AccessMode
    allow_list: frozenset[str] = frozenset()
    deny_list: frozenset[str] = frozenset()
    is_active: bool = True
    name: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    deactivated_at: datetime | None = None

    def __post_init__(self) -> None:
        """A requester may appear on at most one list."""
        overlap = self.allow_list & self.deny_list
        if overlap:
            raise ValueError(f"Requesters on both allow and deny lists: {sorted(overlap)}")

    def listing(self, requester_id: str) -> ListKind:
        """Which list the requester is on."""
        if requester_id in self.deny_list:
            return ListKind.DENY
        if requester_id in self.allow_list:
            return ListKind.ALLOW
        return ListKind.NONE


@dataclass(frozen=True)
class Membership:
    """Result of a membership check."""

    allowed: bool
    listed: ListKind


# ============================================================================
# Verdicts
# ============================================================================


_REASON_STATES: dict[VerdictReason, VerdictState] = {
    VerdictReason.ORIGIN_BLOCKED: VerdictState.BLOCKED,
    VerdictReason.INVALID_CREDENTIAL: VerdictState.ERRORED,
    VerdictReason.RESOURCE_UNAVAILABLE: VerdictState.ERRORED,
    VerdictReason.REVOKED: VerdictState.DENIED,
    VerdictReason.EXPIRED: VerdictState.DENIED,
    VerdictReason.USAGE_EXCEEDED: VerdictState.DENIED,
    VerdictReason.DENYLISTED: VerdictState.DENIED,
    VerdictReason.NOT_ALLOWLISTED: VerdictState.DENIED,
    VerdictReason.OWNER_BYPASS: VerdictState.GRANTED,
    VerdictReason.OPEN_ACCESS: VerdictState.GRANTED,
    VerdictReason.ALLOWLISTED: VerdictState.GRANTED,
}


@dataclass(frozen=True)
class Verdict:
    """Terminal access decision. Each reason belongs to exactly one state."""

    state: VerdictState
    reason: VerdictReason
    remaining_usage: int | None = None

    def __post_init__(self) -> None:
        expected = _REASON_STATES[self.reason]
        if expected != self.state:
            raise ValueError(
                f"Reason {self.reason.value} belongs to {expected.value}, not {self.state.value}"
            )

    @classmethod
    def for_reason(cls, reason: VerdictReason, remaining_usage: int | None = None) -> "Verdict":
        """Build the verdict whose state is implied by `reason`."""
        return cls(state=_REASON_STATES[reason], reason=reason, remaining_usage=remaining_usage)

    @property
    def granted(self) -> bool:
        return self.state == VerdictState.GRANTED


# ============================================================================
# Audit
# ============================================================================


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit record of a decision or a mutation."""

    event_type: AuditEventType
    credential_id: str | None = None
    resource_id: str | None = None
    requester_id: str | None = None
    owner_credential_id: str | None = None
    verdict: VerdictState | None = None
    reason: str | None = None
    origin: str | None = None
    timestamp: datetime = field(default_factory=utc_now)
    entry_id: UUID = field(default_factory=uuid4)


@dataclass(frozen=True)
class AuditFilters:
    """Optional filters for ownership-scoped audit queries."""

    resource_id: str | None = None
    requester_id: str | None = None
    reason: str | None = None
    since: datetime | None = None
    until: datetime | None = None

    def __post_init__(self) -> None:
        for bound in (self.since, self.until):
            if bound is not None and bound.utcoffset() is None:
                raise ValueError("since and until must carry a timezone")
        if self.since and self.until and self.since > self.until:
            raise ValueError("since must not be after until")


@dataclass(frozen=True)
class PageRequest:
    """1-based page request."""

    page: int = 1
    page_size: int = 50

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError(f"page must be >= 1: {self.page}")
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1: {self.page_size}")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass(frozen=True)
class AuditPage:
    """One page of audit entries, newest first."""

    entries: tuple[AuditEntry, ...]
    page: int
    page_size: int
    total: int

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


@dataclass(frozen=True)
class ResourceStats:
    """Decision counts for one resource."""

    resource_id: str
    granted: int = 0
    denied: int = 0
    blocked: int = 0
    errored: int = 0
    unique_requesters: int = 0


# ============================================================================
# Abuse tracking
# ============================================================================


@dataclass(frozen=True)
class OriginRecord:
    """Failure tracking state for one origin fingerprint."""

    origin: str
    failure_count: int = 0
    last_failure_at: datetime | None = None
    blocked_until: datetime | None = None
    block_reason: str | None = None
    manual: bool = False

    def __post_init__(self) -> None:
        if self.failure_count < 0:
            raise ValueError(f"failure_count cannot be negative: {self.failure_count}")

    def is_blocked(self, now: datetime) -> bool:
        return self.blocked_until is not None and self.blocked_until > now


# ============================================================================
# Notifications
# ============================================================================


@dataclass(frozen=True)
class SecurityEvent:
    """Security-relevant event routed to the notification sink."""

    kind: str
    origin: str | None = None
    severity: str = "medium"
    credential_id: str | None = None
    resource_id: str | None = None
    requester_id: str | None = None
    detail: str | None = None
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class OperationalAlert:
    """Operational failure that needs a human (e.g. audit writes failing)."""

    component: str
    message: str
    occurred_at: datetime = field(default_factory=utc_now)
