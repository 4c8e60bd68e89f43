"""
Resource Registry - protected resources and their allow/deny lists.

Only the owner credential may mutate a resource; there is no role
inheritance. Resources are soft-deleted so ids are never reused.
"""

import secrets
from collections.abc import Callable
from datetime import datetime

from structlog import get_logger

from keyguard.db.repositories import ResourceRepository
from keyguard.exceptions import DuplicateIdError, ResourceNotFoundError, UnauthorizedError
from keyguard.models.api import AccessAction, AccessMode, AuditEventType, ListKind
from keyguard.models.domain import AuditEntry, Membership, Resource, utc_now
from keyguard.services.audit_log import AuditLog

logger = get_logger(__name__)

MAX_ID_ATTEMPTS = 3

_ACTION_LISTS = {
    AccessAction.ALLOW: ListKind.ALLOW,
    AccessAction.DENY: ListKind.DENY,
    AccessAction.CLEAR: ListKind.NONE,
}


def generate_resource_id() -> str:
    """Generate a new resource id: res_{22 url-safe chars}."""
    return f"res_{secrets.token_urlsafe(16)}"


class ResourceRegistry:
    """Resource lifecycle and access-list operations over a ResourceRepository."""

    def __init__(
        self,
        repository: ResourceRepository,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.audit = audit
        self.clock = clock

    async def create(
        self, owner_id: str, access_mode: AccessMode, name: str | None = None
    ) -> Resource:
        """
        Create a resource administered by `owner_id`.

        Raises:
            DuplicateIdError: every generated id collided
        """
        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            resource = Resource(
                id=generate_resource_id(),
                owner_credential_id=owner_id,
                access_mode=access_mode,
                name=name,
                created_at=self.clock(),
            )
            if await self.repository.insert(resource):
                break
            logger.warning("resource_id_collision", attempt=attempt)
        else:
            raise DuplicateIdError(MAX_ID_ATTEMPTS)

        logger.info(
            "resource_created",
            resource_id=resource.id,
            owner_credential_id=owner_id,
            access_mode=access_mode.value,
        )
        await self._audit(AuditEventType.RESOURCE_CREATED, resource)
        return resource

    async def get(self, resource_id: str) -> Resource | None:
        """Raw lookup, including deactivated resources."""
        return await self.repository.get(resource_id)

    async def set_access(
        self, resource_id: str, requester_id: str, mode: AccessAction, caller_id: str
    ) -> Resource:
        """
        Put a requester on the allow list, the deny list, or neither.

        The requester is removed from the opposite list in the same write,
        so it is never on both.

        Raises:
            ResourceNotFoundError: missing or deactivated
            UnauthorizedError: caller is not the owner
        """
        resource = await self._owned_active(resource_id, caller_id)

        target = _ACTION_LISTS[mode]
        await self.repository.set_entry(resource_id, requester_id, target)

        logger.info(
            "resource_access_changed",
            resource_id=resource_id,
            requester_id=requester_id,
            mode=mode.value,
            previous=resource.listing(requester_id).value,
        )
        await self._audit(
            AuditEventType.ACCESS_LIST_CHANGED,
            resource,
            requester_id=requester_id,
            reason=mode.value,
        )

        updated = await self.repository.get(resource_id)
        if updated is None:
            raise ResourceNotFoundError(resource_id)
        return updated

    async def check_membership(self, resource_id: str, requester_id: str) -> Membership:
        """
        Report which list the requester is on and whether it would be let in.

        Raises:
            ResourceNotFoundError: missing or deactivated
        """
        resource = await self.repository.get(resource_id)
        if resource is None or not resource.is_active:
            raise ResourceNotFoundError(resource_id)

        listed = resource.listing(requester_id)
        if resource.access_mode == AccessMode.OPEN:
            allowed = True
        else:
            allowed = listed == ListKind.ALLOW
        return Membership(allowed=allowed, listed=listed)

    async def deactivate(self, resource_id: str, caller_id: str) -> None:
        """
        Soft-delete a resource. Deactivating twice is a no-op.

        Raises:
            ResourceNotFoundError: never existed
            UnauthorizedError: caller is not the owner
        """
        resource = await self.repository.get(resource_id)
        if resource is None:
            raise ResourceNotFoundError(resource_id)
        if resource.owner_credential_id != caller_id:
            logger.warning("resource_unauthorized_caller", resource_id=resource_id)
            raise UnauthorizedError(resource_id)
        if not resource.is_active:
            return

        if await self.repository.deactivate(resource_id, self.clock()):
            logger.info("resource_deactivated", resource_id=resource_id)
            await self._audit(AuditEventType.RESOURCE_DEACTIVATED, resource)

    async def list_for_owner(
        self, owner_id: str, include_inactive: bool = False
    ) -> list[Resource]:
        """Resources administered by `owner_id`, newest first."""
        return await self.repository.list_by_owner(owner_id, include_inactive=include_inactive)

    async def _owned_active(self, resource_id: str, caller_id: str) -> Resource:
        resource = await self.repository.get(resource_id)
        if resource is None or not resource.is_active:
            raise ResourceNotFoundError(resource_id)
        if resource.owner_credential_id != caller_id:
            logger.warning("resource_unauthorized_caller", resource_id=resource_id)
            raise UnauthorizedError(resource_id)
        return resource

    async def _audit(
        self,
        event_type: AuditEventType,
        resource: Resource,
        requester_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        if self.audit is None:
            return
        await self.audit.record(
            AuditEntry(
                event_type=event_type,
                credential_id=resource.owner_credential_id,
                resource_id=resource.id,
                requester_id=requester_id,
                owner_credential_id=resource.owner_credential_id,
                reason=reason,
                timestamp=self.clock(),
            )
        )
