"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Credential(Base):
    """
    ORM model for credentials table.

    Rows are never deleted; revocation and expiry are status changes.
    """

    __tablename__ = "credentials"

    # Primary Key - the opaque key handed to the holder
    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    plan: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    # Lifetime
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Usage tracking
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_usage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Issuance metadata
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    issued_via: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    issued_to_origin: Mapped[str | None] = mapped_column(String(128), nullable=True)

    origins: Mapped[list["CredentialOrigin"]] = relationship(
        "CredentialOrigin", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("expires_at > created_at", name="ck_credentials_expiry_after_creation"),
        CheckConstraint("usage_count >= 0", name="ck_credentials_usage_non_negative"),
        CheckConstraint(
            "max_usage IS NULL OR (max_usage > 0 AND usage_count <= max_usage)",
            name="ck_credentials_usage_within_limit",
        ),
        CheckConstraint(
            "plan IN ('trial', 'standard', 'premium', 'owner')", name="ck_credentials_plan"
        ),
        CheckConstraint(
            "status IN ('active', 'revoked', 'expired')", name="ck_credentials_status"
        ),
        Index(
            "idx_credentials_issued_to_origin",
            "issued_to_origin",
            postgresql_where=(issued_to_origin.isnot(None)),
        ),
        Index("idx_credentials_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Credential(plan={self.plan}, status={self.status}, "
            f"usage={self.usage_count}/{self.max_usage})>"
        )


class CredentialOrigin(Base):
    """
    ORM model for credential_origins table.

    Origin fingerprints bound to a credential on first use from each origin.
    """

    __tablename__ = "credential_origins"

    credential_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("credentials.id"), primary_key=True
    )
    origin: Mapped[str] = mapped_column(String(128), primary_key=True)
    bound_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<CredentialOrigin(origin={self.origin[:16]}...)>"


class Resource(Base):
    """
    ORM model for resources table.

    Soft-deleted via is_active so ids are never reused.
    """

    __tablename__ = "resources"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_credential_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("credentials.id"), nullable=False
    )
    access_mode: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    deactivated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    entries: Mapped[list["ResourceAccessEntry"]] = relationship(
        "ResourceAccessEntry", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "access_mode IN ('open', 'allow-deny-list')", name="ck_resources_access_mode"
        ),
        Index("idx_resources_owner", "owner_credential_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Resource(id={self.id}, mode={self.access_mode}, active={self.is_active})>"
        )


class ResourceAccessEntry(Base):
    """
    ORM model for resource_access_entries table.

    One row per (resource, requester); the composite key keeps a requester
    on at most one of the allow/deny lists.
    """

    __tablename__ = "resource_access_entries"

    resource_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("resources.id"), primary_key=True
    )
    requester_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    list_kind: Mapped[str] = mapped_column(String(10), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("list_kind IN ('allow', 'deny')", name="ck_access_entries_list_kind"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ResourceAccessEntry(resource={self.resource_id}, "
            f"requester={self.requester_id}, list={self.list_kind})>"
        )


class OriginRecord(Base):
    """
    ORM model for origin_records table.

    Failure counters and blocks per origin fingerprint.
    """

    __tablename__ = "origin_records"

    origin: Mapped[str] = mapped_column(String(128), primary_key=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_failure_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    blocked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    block_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    manual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("failure_count >= 0", name="ck_origin_records_failures_non_negative"),
        Index(
            "idx_origin_records_blocked_until",
            "blocked_until",
            postgresql_where=(blocked_until.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<OriginRecord(origin={self.origin[:16]}..., failures={self.failure_count}, "
            f"blocked_until={self.blocked_until})>"
        )


class AuditLogEntry(Base):
    """
    ORM model for audit_log table.

    Immutable, append-only record of every decision and mutation.
    credential_id is free text: failed lookups are audited too.
    """

    __tablename__ = "audit_log"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    credential_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    requester_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_credential_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    verdict: Mapped[str | None] = mapped_column(String(20), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    origin: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_audit_log_owner_created", "owner_credential_id", "created_at"),
        Index("idx_audit_log_resource", "resource_id"),
        Index("idx_audit_log_requester", "requester_id"),
        Index("idx_audit_log_created_at", "created_at", postgresql_using="brin"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AuditLogEntry(id={self.id}, event={self.event_type}, "
            f"verdict={self.verdict}, reason={self.reason})>"
        )
