"""
In-Memory Repositories - process-local implementations of the storage contracts.

Used for local development and tests. Every operation yields to the event loop
once, like a real network round-trip would, so concurrent callers interleave.
Mutations that must be atomic run under a per-key asyncio.Lock.
"""

import asyncio
import dataclasses
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime

from keyguard.models.api import AuditEventType, CredentialStatus, ListKind, VerdictState
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


class _KeyedLocks:
    """Lazily created asyncio.Lock per key."""

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, key: str) -> asyncio.Lock:
        return self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

    def held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def discard(self, key: str) -> None:
        """Forget the lock of a deleted row; a held lock stays with its holder."""
        if not self.held(key):
            self._locks.pop(key, None)


class MemoryCredentialRepository:
    """Credential storage backed by a dict."""

    def __init__(self, latency: float = 0.0) -> None:
        self._rows: dict[str, Credential] = {}
        self._locks = _KeyedLocks()
        self._latency = latency

    async def get(self, credential_id: str) -> Credential | None:
        await asyncio.sleep(self._latency)
        return self._rows.get(credential_id)

    async def insert(self, credential: Credential) -> bool:
        await asyncio.sleep(self._latency)
        if credential.id in self._rows:
            return False
        self._rows[credential.id] = credential
        return True

    async def increment_usage(self, credential_id: str, now: datetime) -> int | None:
        async with self._locks(credential_id):
            current = self._rows.get(credential_id)
            # Yield inside the critical section: only the lock keeps this atomic
            await asyncio.sleep(self._latency)
            if current is None or current.status != CredentialStatus.ACTIVE:
                return None
            if now > current.expires_at or current.usage_exhausted:
                return None
            updated = dataclasses.replace(
                current, usage_count=current.usage_count + 1, last_used_at=now
            )
            self._rows[credential_id] = updated
            return updated.usage_count

    async def mark_revoked(self, credential_id: str) -> bool:
        async with self._locks(credential_id):
            await asyncio.sleep(self._latency)
            current = self._rows.get(credential_id)
            if current is None:
                return False
            self._rows[credential_id] = dataclasses.replace(
                current, status=CredentialStatus.REVOKED
            )
            return True

    async def mark_expired(self, credential_id: str) -> bool:
        async with self._locks(credential_id):
            await asyncio.sleep(self._latency)
            current = self._rows.get(credential_id)
            if current is None or current.status != CredentialStatus.ACTIVE:
                return False
            self._rows[credential_id] = dataclasses.replace(
                current, status=CredentialStatus.EXPIRED
            )
            return True

    async def add_origin(self, credential_id: str, origin: str, now: datetime) -> bool:
        async with self._locks(credential_id):
            await asyncio.sleep(self._latency)
            current = self._rows.get(credential_id)
            if current is None or origin in current.origin_binding:
                return False
            self._rows[credential_id] = dataclasses.replace(
                current, origin_binding=current.origin_binding | {origin}
            )
            return True

    async def clear_origins(self, credential_id: str) -> int:
        async with self._locks(credential_id):
            await asyncio.sleep(self._latency)
            current = self._rows.get(credential_id)
            if current is None:
                return 0
            cleared = len(current.origin_binding)
            self._rows[credential_id] = dataclasses.replace(current, origin_binding=frozenset())
            return cleared

    async def count_issued_to_origin(self, origin: str) -> int:
        await asyncio.sleep(self._latency)
        return sum(1 for c in self._rows.values() if c.issued_to_origin == origin)


class MemoryResourceRepository:
    """Resource storage backed by a dict."""

    def __init__(self, latency: float = 0.0) -> None:
        self._rows: dict[str, Resource] = {}
        self._locks = _KeyedLocks()
        self._latency = latency

    async def get(self, resource_id: str) -> Resource | None:
        await asyncio.sleep(self._latency)
        return self._rows.get(resource_id)

    async def insert(self, resource: Resource) -> bool:
        await asyncio.sleep(self._latency)
        if resource.id in self._rows:
            return False
        self._rows[resource.id] = resource
        return True

    async def set_entry(self, resource_id: str, requester_id: str, kind: ListKind) -> None:
        async with self._locks(resource_id):
            await asyncio.sleep(self._latency)
            current = self._rows[resource_id]
            allow = current.allow_list - {requester_id}
            deny = current.deny_list - {requester_id}
            if kind == ListKind.ALLOW:
                allow = allow | {requester_id}
            elif kind == ListKind.DENY:
                deny = deny | {requester_id}
            self._rows[resource_id] = dataclasses.replace(
                current, allow_list=allow, deny_list=deny
            )

    async def deactivate(self, resource_id: str, now: datetime) -> bool:
        async with self._locks(resource_id):
            await asyncio.sleep(self._latency)
            current = self._rows.get(resource_id)
            if current is None or not current.is_active:
                return False
            self._rows[resource_id] = dataclasses.replace(
                current, is_active=False, deactivated_at=now
            )
            return True

    async def list_by_owner(
        self, owner_credential_id: str, include_inactive: bool = False
    ) -> list[Resource]:
        await asyncio.sleep(self._latency)
        resources = [
            r
            for r in self._rows.values()
            if r.owner_credential_id == owner_credential_id and (include_inactive or r.is_active)
        ]
        return sorted(resources, key=lambda r: r.created_at, reverse=True)


class MemoryOriginRepository:
    """Origin tracking backed by a dict."""

    def __init__(self, latency: float = 0.0) -> None:
        self._rows: dict[str, OriginRecord] = {}
        self._locks = _KeyedLocks()
        self._latency = latency

    async def get(self, origin: str) -> OriginRecord | None:
        await asyncio.sleep(self._latency)
        return self._rows.get(origin)

    async def mutate(
        self, origin: str, change: Callable[[OriginRecord], OriginRecord]
    ) -> OriginRecord:
        async with self._locks(origin):
            current = self._rows.get(origin) or OriginRecord(origin=origin)
            await asyncio.sleep(self._latency)
            updated = change(current)
            self._rows[origin] = updated
            return updated

    async def purge(self, cutoff: datetime) -> int:
        await asyncio.sleep(self._latency)
        stale = [
            origin
            for origin, record in self._rows.items()
            if record.blocked_until is None
            and (record.last_failure_at is None or record.last_failure_at < cutoff)
            and not self._locks.held(origin)
        ]
        for origin in stale:
            del self._rows[origin]
            self._locks.discard(origin)
        return len(stale)


class MemoryAuditRepository:
    """Append-only audit log backed by a list."""

    def __init__(self, latency: float = 0.0) -> None:
        self._entries: list[AuditEntry] = []
        self._latency = latency

    @property
    def entries(self) -> tuple[AuditEntry, ...]:
        return tuple(self._entries)

    async def append(self, entry: AuditEntry) -> None:
        await asyncio.sleep(self._latency)
        self._entries.append(entry)

    def _matching(self, owner_credential_id: str, filters: AuditFilters) -> list[AuditEntry]:
        matches = []
        for entry in self._entries:
            if entry.owner_credential_id != owner_credential_id:
                continue
            if filters.resource_id is not None and entry.resource_id != filters.resource_id:
                continue
            if filters.requester_id is not None and entry.requester_id != filters.requester_id:
                continue
            if filters.reason is not None and entry.reason != filters.reason:
                continue
            if filters.since is not None and entry.timestamp < filters.since:
                continue
            if filters.until is not None and entry.timestamp > filters.until:
                continue
            matches.append(entry)
        return matches

    async def query(
        self, owner_credential_id: str, filters: AuditFilters, page: PageRequest
    ) -> AuditPage:
        await asyncio.sleep(self._latency)
        matches = sorted(
            self._matching(owner_credential_id, filters), key=lambda e: e.timestamp, reverse=True
        )
        window = matches[page.offset : page.offset + page.page_size]
        return AuditPage(
            entries=tuple(window), page=page.page, page_size=page.page_size, total=len(matches)
        )

    async def stats(self, resource_id: str, owner_credential_id: str) -> ResourceStats:
        await asyncio.sleep(self._latency)
        decisions = [
            e
            for e in self._matching(owner_credential_id, AuditFilters(resource_id=resource_id))
            if e.event_type == AuditEventType.ACCESS_DECISION
        ]

        def count(state: VerdictState) -> int:
            return sum(1 for e in decisions if e.verdict == state)

        return ResourceStats(
            resource_id=resource_id,
            granted=count(VerdictState.GRANTED),
            denied=count(VerdictState.DENIED),
            blocked=count(VerdictState.BLOCKED),
            errored=count(VerdictState.ERRORED),
            unique_requesters=len({e.requester_id for e in decisions if e.requester_id}),
        )
