"""
Storage Repositories - persistence contracts and their SQLAlchemy implementations.

Services receive repositories through their constructors; there are no
module-level stores. Every SQLAlchemy failure is translated to StorageError
(or AuditWriteError for the audit log) at this boundary.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Protocol

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from keyguard.db import models as orm
from keyguard.exceptions import AuditWriteError, StorageError
from keyguard.models.api import (
    AccessMode,
    AuditEventType,
    CredentialStatus,
    IssuanceChannel,
    ListKind,
    Plan,
    VerdictState,
)
from keyguard.models.domain import (
    AuditEntry,
    AuditFilters,
    AuditPage,
    Credential,
    OriginRecord,
    PageRequest,
    Resource,
    ResourceStats,
)

logger = get_logger(__name__)


# ============================================================================
# Contracts
# ============================================================================


class CredentialRepository(Protocol):
    """Persistence contract for credentials."""

    async def get(self, credential_id: str) -> Credential | None: ...

    async def insert(self, credential: Credential) -> bool:
        """Persist a new credential. Returns False if the id already exists."""
        ...

    async def increment_usage(self, credential_id: str, now: datetime) -> int | None:
        """
        Atomically add one use to an active, unexpired credential with uses left.

        Returns the new usage count, or None when no row qualified.
        """
        ...

    async def mark_revoked(self, credential_id: str) -> bool: ...

    async def mark_expired(self, credential_id: str) -> bool:
        """Transition an active credential to expired. Returns True if it changed."""
        ...

    async def add_origin(self, credential_id: str, origin: str, now: datetime) -> bool: ...

    async def clear_origins(self, credential_id: str) -> int: ...

    async def count_issued_to_origin(self, origin: str) -> int: ...


class ResourceRepository(Protocol):
    """Persistence contract for resources and their access lists."""

    async def get(self, resource_id: str) -> Resource | None: ...

    async def insert(self, resource: Resource) -> bool: ...

    async def set_entry(self, resource_id: str, requester_id: str, kind: ListKind) -> None:
        """Put the requester on exactly one list, or on none for ListKind.NONE."""
        ...

    async def deactivate(self, resource_id: str, now: datetime) -> bool: ...

    async def list_by_owner(
        self, owner_credential_id: str, include_inactive: bool = False
    ) -> list[Resource]: ...


class OriginRepository(Protocol):
    """Persistence contract for per-origin abuse tracking."""

    async def get(self, origin: str) -> OriginRecord | None: ...

    async def mutate(
        self, origin: str, change: Callable[[OriginRecord], OriginRecord]
    ) -> OriginRecord:
        """Apply `change` to the origin's record while holding its row lock."""
        ...

    async def purge(self, cutoff: datetime) -> int: ...


class AuditRepository(Protocol):
    """Persistence contract for the append-only audit log."""

    async def append(self, entry: AuditEntry) -> None: ...

    async def query(
        self, owner_credential_id: str, filters: AuditFilters, page: PageRequest
    ) -> AuditPage: ...

    async def stats(self, resource_id: str, owner_credential_id: str) -> ResourceStats: ...


# ============================================================================
# Helpers
# ============================================================================


@asynccontextmanager
async def _storage_errors(
    session: AsyncSession, operation: str, error_type: type[Exception] = StorageError
) -> AsyncIterator[None]:
    """Roll back and translate SQLAlchemy failures into domain-neutral errors."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("storage_operation_failed", operation=operation, error=str(e))
        await session.rollback()
        raise error_type(f"{operation} failed") from e


def _to_credential(row: orm.Credential) -> Credential:
    return Credential(
        id=row.id,
        plan=Plan(row.plan),
        status=CredentialStatus(row.status),
        created_at=row.created_at,
        expires_at=row.expires_at,
        usage_count=row.usage_count,
        max_usage=row.max_usage,
        origin_binding=frozenset(o.origin for o in row.origins),
        label=row.label,
        issued_via=IssuanceChannel(row.issued_via),
        issued_to_origin=row.issued_to_origin,
        last_used_at=row.last_used_at,
    )


def _to_resource(row: orm.Resource) -> Resource:
    return Resource(
        id=row.id,
        owner_credential_id=row.owner_credential_id,
        access_mode=AccessMode(row.access_mode),
        allow_list=frozenset(e.requester_id for e in row.entries if e.list_kind == "allow"),
        deny_list=frozenset(e.requester_id for e in row.entries if e.list_kind == "deny"),
        is_active=row.is_active,
        name=row.name,
        created_at=row.created_at,
        deactivated_at=row.deactivated_at,
    )


def _to_origin(row: orm.OriginRecord) -> OriginRecord:
    return OriginRecord(
        origin=row.origin,
        failure_count=row.failure_count,
        last_failure_at=row.last_failure_at,
        blocked_until=row.blocked_until,
        block_reason=row.block_reason,
        manual=row.manual,
    )


def _to_audit_entry(row: orm.AuditLogEntry) -> AuditEntry:
    return AuditEntry(
        entry_id=row.id,
        event_type=AuditEventType(row.event_type),
        credential_id=row.credential_id,
        resource_id=row.resource_id,
        requester_id=row.requester_id,
        owner_credential_id=row.owner_credential_id,
        verdict=VerdictState(row.verdict) if row.verdict else None,
        reason=row.reason,
        origin=row.origin,
        timestamp=row.created_at,
    )


# ============================================================================
# SQLAlchemy implementations
# ============================================================================


class SqlCredentialRepository:
    """Credential persistence on PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, credential_id: str) -> Credential | None:
        async with _storage_errors(self.session, "credential_get"):
            stmt = (
                select(orm.Credential)
                .where(orm.Credential.id == credential_id)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
        return _to_credential(row) if row else None

    async def insert(self, credential: Credential) -> bool:
        row = orm.Credential(
            id=credential.id,
            plan=credential.plan.value,
            status=credential.status.value,
            created_at=credential.created_at,
            expires_at=credential.expires_at,
            usage_count=credential.usage_count,
            max_usage=credential.max_usage,
            label=credential.label,
            issued_via=credential.issued_via.value,
            issued_to_origin=credential.issued_to_origin,
        )
        self.session.add(row)
        async with _storage_errors(self.session, "credential_insert"):
            try:
                await self.session.commit()
            except IntegrityError:
                # Rollback also expunges the colliding pending row
                await self.session.rollback()
                return False
        return True

    async def increment_usage(self, credential_id: str, now: datetime) -> int | None:
        # Single conditional UPDATE: the row lock makes check-and-increment atomic
        stmt = (
            update(orm.Credential)
            .where(
                orm.Credential.id == credential_id,
                orm.Credential.status == CredentialStatus.ACTIVE.value,
                orm.Credential.expires_at >= now,
                or_(
                    orm.Credential.max_usage.is_(None),
                    orm.Credential.usage_count < orm.Credential.max_usage,
                ),
            )
            .values(usage_count=orm.Credential.usage_count + 1, last_used_at=now)
            .returning(orm.Credential.usage_count)
            .execution_options(synchronize_session=False)
        )
        async with _storage_errors(self.session, "credential_increment_usage"):
            result = await self.session.execute(stmt)
            new_count = result.scalar_one_or_none()
            await self.session.commit()
        return new_count

    async def mark_revoked(self, credential_id: str) -> bool:
        stmt = (
            update(orm.Credential)
            .where(orm.Credential.id == credential_id)
            .values(status=CredentialStatus.REVOKED.value)
            .execution_options(synchronize_session=False)
        )
        async with _storage_errors(self.session, "credential_revoke"):
            result = await self.session.execute(stmt)
            await self.session.commit()
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def mark_expired(self, credential_id: str) -> bool:
        stmt = (
            update(orm.Credential)
            .where(
                orm.Credential.id == credential_id,
                orm.Credential.status == CredentialStatus.ACTIVE.value,
            )
            .values(status=CredentialStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        async with _storage_errors(self.session, "credential_mark_expired"):
            result = await self.session.execute(stmt)
            await self.session.commit()
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def add_origin(self, credential_id: str, origin: str, now: datetime) -> bool:
        stmt = (
            pg_insert(orm.CredentialOrigin)
            .values(credential_id=credential_id, origin=origin, bound_at=now)
            .on_conflict_do_nothing(index_elements=["credential_id", "origin"])
        )
        async with _storage_errors(self.session, "credential_add_origin"):
            result = await self.session.execute(stmt)
            await self.session.commit()
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def clear_origins(self, credential_id: str) -> int:
        stmt = delete(orm.CredentialOrigin).where(
            orm.CredentialOrigin.credential_id == credential_id
        )
        async with _storage_errors(self.session, "credential_clear_origins"):
            result = await self.session.execute(stmt)
            await self.session.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def count_issued_to_origin(self, origin: str) -> int:
        stmt = (
            select(func.count())
            .select_from(orm.Credential)
            .where(orm.Credential.issued_to_origin == origin)
        )
        async with _storage_errors(self.session, "credential_count_by_origin"):
            result = await self.session.execute(stmt)
        return int(result.scalar_one())


class SqlResourceRepository:
    """Resource persistence on PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, resource_id: str) -> Resource | None:
        async with _storage_errors(self.session, "resource_get"):
            stmt = (
                select(orm.Resource)
                .where(orm.Resource.id == resource_id)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
        return _to_resource(row) if row else None

    async def insert(self, resource: Resource) -> bool:
        row = orm.Resource(
            id=resource.id,
            owner_credential_id=resource.owner_credential_id,
            access_mode=resource.access_mode.value,
            name=resource.name,
            is_active=resource.is_active,
            created_at=resource.created_at,
        )
        self.session.add(row)
        async with _storage_errors(self.session, "resource_insert"):
            try:
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                return False
        return True

    async def set_entry(self, resource_id: str, requester_id: str, kind: ListKind) -> None:
        async with _storage_errors(self.session, "resource_set_entry"):
            if kind == ListKind.NONE:
                await self.session.execute(
                    delete(orm.ResourceAccessEntry).where(
                        orm.ResourceAccessEntry.resource_id == resource_id,
                        orm.ResourceAccessEntry.requester_id == requester_id,
                    )
                )
            else:
                # One row per requester: moving lists is an in-place update
                stmt = pg_insert(orm.ResourceAccessEntry).values(
                    resource_id=resource_id,
                    requester_id=requester_id,
                    list_kind=kind.value,
                    updated_at=orm.utc_now(),
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["resource_id", "requester_id"],
                    set_={
                        "list_kind": stmt.excluded.list_kind,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                await self.session.execute(stmt)
            await self.session.commit()

    async def deactivate(self, resource_id: str, now: datetime) -> bool:
        stmt = (
            update(orm.Resource)
            .where(orm.Resource.id == resource_id, orm.Resource.is_active.is_(True))
            .values(is_active=False, deactivated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with _storage_errors(self.session, "resource_deactivate"):
            result = await self.session.execute(stmt)
            await self.session.commit()
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def list_by_owner(
        self, owner_credential_id: str, include_inactive: bool = False
    ) -> list[Resource]:
        stmt = select(orm.Resource).where(orm.Resource.owner_credential_id == owner_credential_id)
        if not include_inactive:
            stmt = stmt.where(orm.Resource.is_active.is_(True))
        stmt = stmt.order_by(orm.Resource.created_at.desc()).execution_options(
            populate_existing=True
        )
        async with _storage_errors(self.session, "resource_list_by_owner"):
            result = await self.session.execute(stmt)
            rows = result.scalars().all()
        return [_to_resource(row) for row in rows]


class SqlOriginRepository:
    """Origin abuse-tracking persistence on PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, origin: str) -> OriginRecord | None:
        async with _storage_errors(self.session, "origin_get"):
            stmt = (
                select(orm.OriginRecord)
                .where(orm.OriginRecord.origin == origin)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
        return _to_origin(row) if row else None

    async def mutate(
        self, origin: str, change: Callable[[OriginRecord], OriginRecord]
    ) -> OriginRecord:
        async with _storage_errors(self.session, "origin_mutate"):
            # Ensure the row exists so concurrent first failures share one lock
            await self.session.execute(
                pg_insert(orm.OriginRecord)
                .values(origin=origin, failure_count=0, manual=False)
                .on_conflict_do_nothing(index_elements=["origin"])
            )
            stmt = (
                select(orm.OriginRecord)
                .where(orm.OriginRecord.origin == origin)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            row = result.scalar_one()

            updated = change(_to_origin(row))
            row.failure_count = updated.failure_count
            row.last_failure_at = updated.last_failure_at
            row.blocked_until = updated.blocked_until
            row.block_reason = updated.block_reason
            row.manual = updated.manual
            await self.session.commit()
        return updated

    async def purge(self, cutoff: datetime) -> int:
        stmt = delete(orm.OriginRecord).where(
            orm.OriginRecord.blocked_until.is_(None),
            or_(
                orm.OriginRecord.last_failure_at.is_(None),
                orm.OriginRecord.last_failure_at < cutoff,
            ),
        )
        async with _storage_errors(self.session, "origin_purge"):
            result = await self.session.execute(stmt)
            await self.session.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]


class SqlAuditRepository:
    """Append-only audit log on PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(self, entry: AuditEntry) -> None:
        row = orm.AuditLogEntry(
            id=entry.entry_id,
            event_type=entry.event_type.value,
            credential_id=entry.credential_id,
            resource_id=entry.resource_id,
            requester_id=entry.requester_id,
            owner_credential_id=entry.owner_credential_id,
            verdict=entry.verdict.value if entry.verdict else None,
            reason=entry.reason,
            origin=entry.origin,
            created_at=entry.timestamp,
        )
        async with _storage_errors(self.session, "audit_append", AuditWriteError):
            self.session.add(row)
            await self.session.commit()

    async def query(
        self, owner_credential_id: str, filters: AuditFilters, page: PageRequest
    ) -> AuditPage:
        conditions = [orm.AuditLogEntry.owner_credential_id == owner_credential_id]
        if filters.resource_id is not None:
            conditions.append(orm.AuditLogEntry.resource_id == filters.resource_id)
        if filters.requester_id is not None:
            conditions.append(orm.AuditLogEntry.requester_id == filters.requester_id)
        if filters.reason is not None:
            conditions.append(orm.AuditLogEntry.reason == filters.reason)
        if filters.since is not None:
            conditions.append(orm.AuditLogEntry.created_at >= filters.since)
        if filters.until is not None:
            conditions.append(orm.AuditLogEntry.created_at <= filters.until)
        where = and_(*conditions)

        async with _storage_errors(self.session, "audit_query"):
            count_stmt = select(func.count()).select_from(orm.AuditLogEntry).where(where)
            total = (await self.session.execute(count_stmt)).scalar_one()
            result = await self.session.execute(
                select(orm.AuditLogEntry)
                .where(where)
                .order_by(orm.AuditLogEntry.created_at.desc())
                .offset(page.offset)
                .limit(page.page_size)
            )
            rows = result.scalars().all()

        return AuditPage(
            entries=tuple(_to_audit_entry(row) for row in rows),
            page=page.page,
            page_size=page.page_size,
            total=int(total),
        )

    async def stats(self, resource_id: str, owner_credential_id: str) -> ResourceStats:
        where = and_(
            orm.AuditLogEntry.owner_credential_id == owner_credential_id,
            orm.AuditLogEntry.resource_id == resource_id,
            orm.AuditLogEntry.event_type == AuditEventType.ACCESS_DECISION.value,
        )
        async with _storage_errors(self.session, "audit_stats"):
            result = await self.session.execute(
                select(orm.AuditLogEntry.verdict, func.count())
                .where(where)
                .group_by(orm.AuditLogEntry.verdict)
            )
            counts = {verdict: count for verdict, count in result.all()}
            unique = (
                await self.session.execute(
                    select(func.count(func.distinct(orm.AuditLogEntry.requester_id))).where(where)
                )
            ).scalar_one()

        return ResourceStats(
            resource_id=resource_id,
            granted=counts.get(VerdictState.GRANTED.value, 0),
            denied=counts.get(VerdictState.DENIED.value, 0),
            blocked=counts.get(VerdictState.BLOCKED.value, 0),
            errored=counts.get(VerdictState.ERRORED.value, 0),
            unique_requesters=int(unique),
        )
