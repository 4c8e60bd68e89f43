"""
Tests for ResourceRegistry.

Ownership checks, list mutual exclusion, membership and soft deletion.
"""

import pytest

from keyguard.exceptions import ResourceNotFoundError, UnauthorizedError
from keyguard.models.api import AccessAction, AccessMode, AuditEventType, ListKind
from keyguard.models.domain import Credential, Resource
from keyguard.services.resource_registry import ResourceRegistry, generate_resource_id


class TestCreate:
    def test_resource_id_format(self):
        resource_id = generate_resource_id()
        assert resource_id.startswith("res_")
        assert len(resource_id) == 4 + 22

    @pytest.mark.asyncio
    async def test_create(self, resource_registry: ResourceRegistry, owner: Credential, clock):
        resource = await resource_registry.create(owner.id, AccessMode.OPEN, "loader")

        assert resource.owner_credential_id == owner.id
        assert resource.access_mode == AccessMode.OPEN
        assert resource.is_active
        assert resource.name == "loader"
        assert resource.created_at == clock.now
        assert await resource_registry.get(resource.id) == resource

    @pytest.mark.asyncio
    async def test_create_is_audited(
        self, resource_registry: ResourceRegistry, owner: Credential, repositories
    ):
        resource = await resource_registry.create(owner.id, AccessMode.ALLOW_DENY_LIST)
        entry = repositories.audit.entries[-1]
        assert entry.event_type == AuditEventType.RESOURCE_CREATED
        assert entry.resource_id == resource.id
        assert entry.owner_credential_id == owner.id


class TestSetAccess:
    @pytest.mark.asyncio
    async def test_allow_then_deny_moves_requester(
        self, resource_registry: ResourceRegistry, list_resource: Resource, owner: Credential
    ):
        updated = await resource_registry.set_access(
            list_resource.id, "user1", AccessAction.ALLOW, owner.id
        )
        assert updated.allow_list == frozenset({"user1"})
        assert updated.deny_list == frozenset()

        updated = await resource_registry.set_access(
            list_resource.id, "user1", AccessAction.DENY, owner.id
        )
        assert updated.allow_list == frozenset()
        assert updated.deny_list == frozenset({"user1"})

    @pytest.mark.asyncio
    async def test_clear(
        self, resource_registry: ResourceRegistry, list_resource: Resource, owner: Credential
    ):
        await resource_registry.set_access(list_resource.id, "user1", AccessAction.DENY, owner.id)
        updated = await resource_registry.set_access(
            list_resource.id, "user1", AccessAction.CLEAR, owner.id
        )
        assert updated.listing("user1") == ListKind.NONE

    @pytest.mark.asyncio
    async def test_lists_stay_disjoint(
        self, resource_registry: ResourceRegistry, list_resource: Resource, owner: Credential
    ):
        sequence = [
            ("a", AccessAction.ALLOW),
            ("b", AccessAction.DENY),
            ("a", AccessAction.DENY),
            ("b", AccessAction.ALLOW),
            ("c", AccessAction.ALLOW),
            ("c", AccessAction.CLEAR),
            ("a", AccessAction.ALLOW),
        ]
        for requester, action in sequence:
            updated = await resource_registry.set_access(
                list_resource.id, requester, action, owner.id
            )
            assert not updated.allow_list & updated.deny_list

        assert updated.allow_list == frozenset({"a", "b"})
        assert updated.deny_list == frozenset()

    @pytest.mark.asyncio
    async def test_non_owner_rejected(
        self, resource_registry: ResourceRegistry, list_resource: Resource
    ):
        with pytest.raises(UnauthorizedError):
            await resource_registry.set_access(
                list_resource.id, "user1", AccessAction.ALLOW, "kg_std_someone_else"
            )
        unchanged = await resource_registry.get(list_resource.id)
        assert unchanged is not None
        assert unchanged.allow_list == frozenset()

    @pytest.mark.asyncio
    async def test_unknown_resource(self, resource_registry: ResourceRegistry, owner: Credential):
        with pytest.raises(ResourceNotFoundError):
            await resource_registry.set_access("res_missing", "u", AccessAction.ALLOW, owner.id)

    @pytest.mark.asyncio
    async def test_deactivated_resource(
        self, resource_registry: ResourceRegistry, list_resource: Resource, owner: Credential
    ):
        await resource_registry.deactivate(list_resource.id, owner.id)
        with pytest.raises(ResourceNotFoundError):
            await resource_registry.set_access(
                list_resource.id, "u", AccessAction.ALLOW, owner.id
            )

    @pytest.mark.asyncio
    async def test_change_is_audited(
        self,
        resource_registry: ResourceRegistry,
        list_resource: Resource,
        owner: Credential,
        repositories,
    ):
        await resource_registry.set_access(list_resource.id, "user1", AccessAction.DENY, owner.id)
        entry = repositories.audit.entries[-1]
        assert entry.event_type == AuditEventType.ACCESS_LIST_CHANGED
        assert entry.requester_id == "user1"
        assert entry.reason == "deny"


class TestMembership:
    @pytest.mark.asyncio
    async def test_list_mode(
        self, resource_registry: ResourceRegistry, list_resource: Resource, owner: Credential
    ):
        await resource_registry.set_access(list_resource.id, "good", AccessAction.ALLOW, owner.id)
        await resource_registry.set_access(list_resource.id, "bad", AccessAction.DENY, owner.id)

        good = await resource_registry.check_membership(list_resource.id, "good")
        bad = await resource_registry.check_membership(list_resource.id, "bad")
        other = await resource_registry.check_membership(list_resource.id, "other")

        assert (good.allowed, good.listed) == (True, ListKind.ALLOW)
        assert (bad.allowed, bad.listed) == (False, ListKind.DENY)
        assert (other.allowed, other.listed) == (False, ListKind.NONE)

    @pytest.mark.asyncio
    async def test_open_mode(
        self, resource_registry: ResourceRegistry, open_resource: Resource, owner: Credential
    ):
        await resource_registry.set_access(open_resource.id, "bad", AccessAction.DENY, owner.id)

        anyone = await resource_registry.check_membership(open_resource.id, "anyone")
        bad = await resource_registry.check_membership(open_resource.id, "bad")

        assert anyone.allowed
        assert (bad.allowed, bad.listed) == (True, ListKind.DENY)

    @pytest.mark.asyncio
    async def test_unknown_resource(self, resource_registry: ResourceRegistry):
        with pytest.raises(ResourceNotFoundError):
            await resource_registry.check_membership("res_missing", "u")


class TestDeactivate:
    @pytest.mark.asyncio
    async def test_deactivate_twice_is_noop(
        self,
        resource_registry: ResourceRegistry,
        list_resource: Resource,
        owner: Credential,
        repositories,
        clock,
    ):
        await resource_registry.deactivate(list_resource.id, owner.id)
        await resource_registry.deactivate(list_resource.id, owner.id)

        stored = await resource_registry.get(list_resource.id)
        assert stored is not None
        assert not stored.is_active
        assert stored.deactivated_at == clock.now
        deactivations = [
            e
            for e in repositories.audit.entries
            if e.event_type == AuditEventType.RESOURCE_DEACTIVATED
        ]
        assert len(deactivations) == 1

    @pytest.mark.asyncio
    async def test_non_owner_rejected(
        self, resource_registry: ResourceRegistry, list_resource: Resource
    ):
        with pytest.raises(UnauthorizedError):
            await resource_registry.deactivate(list_resource.id, "kg_std_intruder")

    @pytest.mark.asyncio
    async def test_unknown(self, resource_registry: ResourceRegistry, owner: Credential):
        with pytest.raises(ResourceNotFoundError):
            await resource_registry.deactivate("res_missing", owner.id)


class TestListForOwner:
    @pytest.mark.asyncio
    async def test_scoped_to_owner(
        self, resource_registry: ResourceRegistry, owner: Credential, clock
    ):
        first = await resource_registry.create(owner.id, AccessMode.OPEN, "first")
        clock.advance(seconds=1)
        second = await resource_registry.create(owner.id, AccessMode.OPEN, "second")
        await resource_registry.create("kg_std_other", AccessMode.OPEN, "foreign")
        await resource_registry.deactivate(first.id, owner.id)

        active = await resource_registry.list_for_owner(owner.id)
        everything = await resource_registry.list_for_owner(owner.id, include_inactive=True)

        assert [r.id for r in active] == [second.id]
        assert [r.id for r in everything] == [second.id, first.id]
