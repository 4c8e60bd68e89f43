"""
Access Service - the core-facing facade consumed by the HTTP layer.

Wires the credential store, resource registry, abuse guard, audit log and
decision engine over one set of repositories. Nothing here is process-wide:
the HTTP layer builds a service per request from that request's session.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from keyguard.config import settings
from keyguard.db.memory import (
    MemoryAuditRepository,
    MemoryCredentialRepository,
    MemoryOriginRepository,
    MemoryResourceRepository,
)
from keyguard.db.repositories import (
    AuditRepository,
    CredentialRepository,
    OriginRepository,
    ResourceRepository,
    SqlAuditRepository,
    SqlCredentialRepository,
    SqlOriginRepository,
    SqlResourceRepository,
)
from keyguard.models.api import AccessAction, IssuanceChannel, Plan
from keyguard.models.domain import Credential, Resource, Verdict, utc_now
from keyguard.services.abuse_guard import AbuseGuard
from keyguard.services.access_engine import AccessDecisionEngine
from keyguard.services.audit_log import AuditLog
from keyguard.services.credential_store import CredentialStore
from keyguard.services.notifications import NotificationSink, build_notification_sink
from keyguard.services.resource_registry import ResourceRegistry


@dataclass(frozen=True)
class Repositories:
    """One storage backend for every component."""

    credentials: CredentialRepository
    resources: ResourceRepository
    origins: OriginRepository
    audit: AuditRepository


def sql_repositories(session: AsyncSession) -> Repositories:
    """PostgreSQL repositories sharing one session."""
    return Repositories(
        credentials=SqlCredentialRepository(session),
        resources=SqlResourceRepository(session),
        origins=SqlOriginRepository(session),
        audit=SqlAuditRepository(session),
    )


def memory_repositories(latency: float = 0.0) -> Repositories:
    """Process-local repositories for development and tests."""
    return Repositories(
        credentials=MemoryCredentialRepository(latency),
        resources=MemoryResourceRepository(latency),
        origins=MemoryOriginRepository(latency),
        audit=MemoryAuditRepository(latency),
    )


class AccessService:
    """Facade over the access-control core."""

    def __init__(
        self,
        repositories: Repositories,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.notifier = notifier or build_notification_sink(
            settings.notification_webhook_url, settings.notification_timeout_seconds
        )
        self.audit = AuditLog(repositories.audit, self.notifier)
        self.credentials = CredentialStore(repositories.credentials, self.audit, clock)
        self.resources = ResourceRegistry(repositories.resources, self.audit, clock)
        self.guard = AbuseGuard(repositories.origins, self.notifier, self.audit, clock=clock)
        self.engine = AccessDecisionEngine(
            self.credentials, self.resources, self.guard, self.audit, self.notifier, clock
        )

    async def request_access(
        self, credential_id: str, resource_id: str, requester_id: str, origin: str
    ) -> Verdict:
        return await self.engine.request_access(credential_id, resource_id, requester_id, origin)

    async def issue_credential(
        self,
        plan: Plan,
        max_usage: int | None = None,
        duration_override: timedelta | None = None,
        label: str | None = None,
    ) -> Credential:
        """Administrative issuance; the caller is responsible for gating it."""
        return await self.credentials.issue(
            plan,
            max_usage=max_usage,
            duration_override=duration_override,
            label=label,
            issued_via=IssuanceChannel.ADMIN,
        )

    async def revoke_credential(self, credential_id: str) -> None:
        await self.credentials.revoke(credential_id)

    async def manage_resource_access(
        self, resource_id: str, requester_id: str, mode: AccessAction, caller_id: str
    ) -> Resource:
        return await self.resources.set_access(resource_id, requester_id, mode, caller_id)
