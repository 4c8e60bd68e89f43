"""
Tests for API Routes.

Drives the FastAPI app through httpx with the access service overridden by
one built on in-memory repositories.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient

from keyguard.api.dependencies import get_access_service
from keyguard.config import settings
from keyguard.exceptions import StorageError
from keyguard.models.api import AccessAction, Plan
from keyguard.models.domain import Credential, Resource
from keyguard.services.access_service import AccessService

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}


def api_headers(credential: Credential) -> dict[str, str]:
    return {"X-API-Key": credential.id}


# ============================================================================
# Access decisions
# ============================================================================


class TestAccessRoute:
    @pytest.mark.asyncio
    async def test_granted(
        self, async_client: AsyncClient, owner: Credential, open_resource: Resource
    ):
        response = await async_client.post(
            "/v1/access",
            json={"credential_id": owner.id, "resource_id": open_resource.id, "requester_id": "u"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "state": "granted",
            "reason": "open_access",
            "remaining_usage": None,
        }

    @pytest.mark.asyncio
    async def test_denial_is_200_with_reason(
        self, async_client: AsyncClient, owner: Credential, list_resource: Resource
    ):
        response = await async_client.post(
            "/v1/access",
            json={"credential_id": owner.id, "resource_id": list_resource.id, "requester_id": "x"},
        )

        assert response.status_code == 200
        assert response.json()["state"] == "denied"
        assert response.json()["reason"] == "not_allowlisted"

    @pytest.mark.asyncio
    async def test_invalid_credential_does_not_leak(
        self, async_client: AsyncClient, open_resource: Resource
    ):
        response = await async_client.post(
            "/v1/access",
            json={
                "credential_id": "kg_std_secretvalue",
                "resource_id": open_resource.id,
                "requester_id": "u",
            },
        )

        assert response.json() == {
            "state": "errored",
            "reason": "invalid_credential",
            "remaining_usage": None,
        }

    @pytest.mark.asyncio
    async def test_rotating_headers_from_one_peer_still_blocked(
        self, async_client: AsyncClient, owner: Credential, open_resource: Resource
    ):
        for attempt in range(5):
            response = await async_client.post(
                "/v1/access",
                headers={
                    "User-Agent": f"loader/{attempt}",
                    "X-Forwarded-For": f"198.51.100.{attempt}",
                },
                json={
                    "credential_id": f"kg_std_bogus{attempt}",
                    "resource_id": open_resource.id,
                    "requester_id": "u",
                },
            )
            assert response.json()["state"] == "errored"

        valid = await async_client.post(
            "/v1/access",
            headers={"User-Agent": "fresh/1.0", "X-Forwarded-For": "203.0.113.200"},
            json={"credential_id": owner.id, "resource_id": open_resource.id, "requester_id": "u"},
        )

        assert valid.json() == {
            "state": "blocked",
            "reason": "origin_blocked",
            "remaining_usage": None,
        }

    @pytest.mark.asyncio
    async def test_forwarded_for_trusted_behind_proxy(
        self,
        async_client: AsyncClient,
        open_resource: Resource,
        monkeypatch: pytest.MonkeyPatch,
    ):
        monkeypatch.setattr(settings, "trusted_proxy_hops", 1)
        body = {
            "credential_id": "kg_std_bogus",
            "resource_id": open_resource.id,
            "requester_id": "u",
        }
        for _ in range(5):
            await async_client.post(
                "/v1/access", headers={"X-Forwarded-For": "6.6.6.6, 203.0.113.9"}, json=body
            )

        blocked = await async_client.post(
            "/v1/access", headers={"X-Forwarded-For": "203.0.113.9"}, json=body
        )
        other_client = await async_client.post(
            "/v1/access", headers={"X-Forwarded-For": "203.0.113.9, 198.51.100.7"}, json=body
        )

        assert blocked.json()["state"] == "blocked"
        assert other_client.json()["reason"] == "invalid_credential"

    @pytest.mark.asyncio
    async def test_validation_error_does_not_echo_input(self, async_client: AsyncClient):
        response = await async_client.post(
            "/v1/access", json={"credential_id": "kg_std_secretvalue", "resource_id": ""}
        )

        assert response.status_code == 422
        assert "kg_std_secretvalue" not in response.text

    @pytest.mark.asyncio
    async def test_storage_failure_is_503(self, app, async_client: AsyncClient):
        service = MagicMock()
        service.request_access = AsyncMock(side_effect=StorageError("credential_get failed"))
        app.dependency_overrides[get_access_service] = lambda: service

        response = await async_client.post(
            "/v1/access",
            json={"credential_id": "kg_std_x", "resource_id": "res_1", "requester_id": "u"},
        )

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        assert response.json()["error"] == "service_unavailable"
        assert "credential_get" not in response.text


# ============================================================================
# Credentials
# ============================================================================


class TestCredentialRoutes:
    @pytest.mark.asyncio
    async def test_trial_once_per_origin(self, async_client: AsyncClient):
        headers = {"User-Agent": "installer/2.0"}
        first = await async_client.post("/v1/credentials/trial", headers=headers)
        second = await async_client.post("/v1/credentials/trial", headers=headers)

        assert first.status_code == 201
        body = first.json()
        assert body["plan"] == "trial"
        assert body["status"] == "active"
        assert body["credential_id"].startswith("kg_trial_")
        assert second.status_code == 409

    @pytest.mark.asyncio
    async def test_me(self, async_client: AsyncClient, owner: Credential):
        response = await async_client.get("/v1/credentials/me", headers=api_headers(owner))

        assert response.status_code == 200
        assert response.json()["credential_id"] == owner.id
        assert response.json()["label"] == "resource owner"

    @pytest.mark.asyncio
    async def test_me_revoked(
        self, async_client: AsyncClient, access_service: AccessService, owner: Credential
    ):
        await access_service.revoke_credential(owner.id)
        response = await async_client.get("/v1/credentials/me", headers=api_headers(owner))

        assert response.status_code == 401
        assert response.json()["detail"] == "revoked"

    @pytest.mark.asyncio
    async def test_me_requires_header(self, async_client: AsyncClient):
        response = await async_client.get("/v1/credentials/me")
        assert response.status_code == 422


# ============================================================================
# Resources
# ============================================================================


class TestResourceRoutes:
    @pytest.mark.asyncio
    async def test_create_and_list(self, async_client: AsyncClient, owner: Credential):
        created = await async_client.post(
            "/v1/resources",
            headers=api_headers(owner),
            json={"access_mode": "allow-deny-list", "name": "hub.lua"},
        )
        listed = await async_client.get("/v1/resources", headers=api_headers(owner))

        assert created.status_code == 201
        assert created.json()["resource_id"].startswith("res_")
        assert listed.json()["total_count"] == 1
        assert listed.json()["resources"][0]["name"] == "hub.lua"

    @pytest.mark.asyncio
    async def test_set_access_moves_between_lists(
        self, async_client: AsyncClient, owner: Credential, list_resource: Resource
    ):
        url = f"/v1/resources/{list_resource.id}/access"
        await async_client.put(
            url, headers=api_headers(owner), json={"requester_id": "user1", "mode": "allow"}
        )
        response = await async_client.put(
            url, headers=api_headers(owner), json={"requester_id": "user1", "mode": "deny"}
        )

        assert response.status_code == 200
        assert response.json()["allow_list"] == []
        assert response.json()["deny_list"] == ["user1"]

    @pytest.mark.asyncio
    async def test_set_access_by_non_owner_is_403(
        self,
        async_client: AsyncClient,
        access_service: AccessService,
        list_resource: Resource,
    ):
        intruder = await access_service.issue_credential(Plan.STANDARD)
        response = await async_client.put(
            f"/v1/resources/{list_resource.id}/access",
            headers=api_headers(intruder),
            json={"requester_id": "user1", "mode": "allow"},
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_set_access_unknown_resource_is_404(
        self, async_client: AsyncClient, owner: Credential
    ):
        response = await async_client.put(
            "/v1/resources/res_missing/access",
            headers=api_headers(owner),
            json={"requester_id": "user1", "mode": "allow"},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_membership(
        self,
        async_client: AsyncClient,
        access_service: AccessService,
        owner: Credential,
        list_resource: Resource,
    ):
        await access_service.manage_resource_access(
            list_resource.id, "good", AccessAction.ALLOW, owner.id
        )
        response = await async_client.get(
            f"/v1/resources/{list_resource.id}/membership/good", headers=api_headers(owner)
        )
        assert response.json() == {"allowed": True, "listed": "allow"}

    @pytest.mark.asyncio
    async def test_membership_hides_foreign_resources(
        self,
        async_client: AsyncClient,
        access_service: AccessService,
        list_resource: Resource,
    ):
        intruder = await access_service.issue_credential(Plan.STANDARD)
        response = await async_client.get(
            f"/v1/resources/{list_resource.id}/membership/good", headers=api_headers(intruder)
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_deactivate(
        self, async_client: AsyncClient, owner: Credential, open_resource: Resource
    ):
        url = f"/v1/resources/{open_resource.id}"
        first = await async_client.delete(url, headers=api_headers(owner))
        second = await async_client.delete(url, headers=api_headers(owner))
        listed = await async_client.get("/v1/resources", headers=api_headers(owner))

        assert first.status_code == 204
        assert second.status_code == 204
        assert open_resource.id not in [r["resource_id"] for r in listed.json()["resources"]]

    @pytest.mark.asyncio
    async def test_stats(
        self, async_client: AsyncClient, owner: Credential, open_resource: Resource
    ):
        for requester in ("a", "b", "a"):
            await async_client.post(
                "/v1/access",
                json={
                    "credential_id": owner.id,
                    "resource_id": open_resource.id,
                    "requester_id": requester,
                },
            )

        response = await async_client.get(
            f"/v1/resources/{open_resource.id}/stats", headers=api_headers(owner)
        )

        assert response.json()["granted"] == 3
        assert response.json()["unique_requesters"] == 2


# ============================================================================
# Audit
# ============================================================================


class TestAuditRoute:
    @pytest.mark.asyncio
    async def test_owner_sees_decisions_on_own_resources(
        self,
        async_client: AsyncClient,
        access_service: AccessService,
        owner: Credential,
        list_resource: Resource,
    ):
        caller = await access_service.issue_credential(Plan.STANDARD)
        await async_client.post(
            "/v1/access",
            json={
                "credential_id": caller.id,
                "resource_id": list_resource.id,
                "requester_id": "stranger",
            },
        )

        owner_view = await async_client.get(
            "/v1/audit",
            headers=api_headers(owner),
            params={"resource_id": list_resource.id, "reason": "not_allowlisted"},
        )
        caller_view = await async_client.get(
            "/v1/audit",
            headers=api_headers(caller),
            params={"resource_id": list_resource.id},
        )

        assert owner_view.status_code == 200
        assert owner_view.json()["total_count"] == 1
        entry = owner_view.json()["entries"][0]
        assert entry["requester_id"] == "stranger"
        assert entry["verdict"] == "denied"
        assert caller_view.json()["total_count"] == 0

    @pytest.mark.asyncio
    async def test_inverted_range_is_400(self, async_client: AsyncClient, owner: Credential):
        response = await async_client.get(
            "/v1/audit",
            headers=api_headers(owner),
            params={"since": "2026-03-02T00:00:00Z", "until": "2026-03-01T00:00:00Z"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params",
        [
            {"since": "2026-01-01T00:00:00"},
            {"since": "2026-01-01T00:00:00", "until": "2026-03-01T00:00:00Z"},
        ],
    )
    async def test_timezone_less_bounds_are_422(
        self, async_client: AsyncClient, owner: Credential, params: dict[str, str]
    ):
        response = await async_client.get("/v1/audit", headers=api_headers(owner), params=params)
        assert response.status_code == 422
        assert response.json()["detail"][0]["loc"] == ["query", "since"]

    @pytest.mark.asyncio
    async def test_offset_bounds_accepted(self, async_client: AsyncClient, owner: Credential):
        response = await async_client.get(
            "/v1/audit",
            headers=api_headers(owner),
            params={"since": "2026-01-01T00:00:00+02:00", "until": "2026-12-01T00:00:00Z"},
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_page_size_bounds(self, async_client: AsyncClient, owner: Credential):
        response = await async_client.get(
            "/v1/audit", headers=api_headers(owner), params={"page_size": 500}
        )
        assert response.status_code == 422


# ============================================================================
# Admin
# ============================================================================


class TestAdminRoutes:
    @pytest.mark.asyncio
    async def test_issue_requires_admin_key(self, async_client: AsyncClient):
        missing = await async_client.post("/v1/admin/credentials", json={"plan": "standard"})
        wrong = await async_client.post(
            "/v1/admin/credentials",
            headers={"X-Admin-Key": "nope"},
            json={"plan": "standard"},
        )
        assert missing.status_code == 401
        assert wrong.status_code == 401

    @pytest.mark.asyncio
    async def test_disabled_without_configured_key(
        self, async_client: AsyncClient, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(settings, "admin_api_key", "")
        response = await async_client.post(
            "/v1/admin/credentials", headers=ADMIN_HEADERS, json={"plan": "standard"}
        )
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_issue(self, async_client: AsyncClient, access_service: AccessService):
        response = await async_client.post(
            "/v1/admin/credentials",
            headers=ADMIN_HEADERS,
            json={"plan": "owner", "max_usage": 10, "duration_days": 7, "label": "ops"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["credential_id"].startswith("kg_own_")
        assert body["max_usage"] == 10
        assert body["remaining_usage"] == 10
        assert "message" in body
        stored = await access_service.credentials.get(body["credential_id"])
        assert stored is not None
        assert stored.label == "ops"

    @pytest.mark.asyncio
    async def test_issue_rejects_bad_max_usage(self, async_client: AsyncClient):
        response = await async_client.post(
            "/v1/admin/credentials", headers=ADMIN_HEADERS, json={"plan": "trial", "max_usage": 0}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, async_client: AsyncClient, owner: Credential):
        url = f"/v1/admin/credentials/{owner.id}/revoke"
        first = await async_client.post(url, headers=ADMIN_HEADERS)
        second = await async_client.post(url, headers=ADMIN_HEADERS)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["status"] == "revoked"

    @pytest.mark.asyncio
    async def test_revoke_unknown(self, async_client: AsyncClient):
        response = await async_client.post(
            "/v1/admin/credentials/kg_std_missing/revoke", headers=ADMIN_HEADERS
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_reset_binding(
        self,
        async_client: AsyncClient,
        access_service: AccessService,
        owner: Credential,
        open_resource: Resource,
    ):
        await access_service.request_access(owner.id, open_resource.id, "u", "origin-1")
        response = await async_client.post(
            f"/v1/admin/credentials/{owner.id}/reset-binding", headers=ADMIN_HEADERS
        )
        assert response.status_code == 200
        assert response.json()["bound_origins"] == 0

    @pytest.mark.asyncio
    async def test_block_and_unblock_origin(
        self, async_client: AsyncClient, access_service: AccessService
    ):
        blocked = await async_client.post(
            "/v1/admin/origins/block",
            headers=ADMIN_HEADERS,
            json={"origin": "origin-1", "reason": "scraping"},
        )
        assert blocked.json()["blocked"] is True
        assert await access_service.guard.is_blocked("origin-1")

        unblocked = await async_client.post(
            "/v1/admin/origins/unblock", headers=ADMIN_HEADERS, json={"origin": "origin-1"}
        )
        assert unblocked.json() == {
            "origin": "origin-1",
            "blocked": False,
            "blocked_until": None,
            "failure_count": 0,
        }


# ============================================================================
# Health / Root
# ============================================================================


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, async_client: AsyncClient):
        response = await async_client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    @pytest.mark.asyncio
    async def test_unhealthy(self, async_client: AsyncClient, db_session: AsyncMock):
        db_session.execute.side_effect = ConnectionError("down")
        response = await async_client.get("/health")
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_root(self, async_client: AsyncClient):
        response = await async_client.get("/")
        assert response.json()["status"] == "running"

    @pytest.mark.asyncio
    async def test_metrics(self, async_client: AsyncClient):
        response = await async_client.get("/metrics")
        assert response.status_code == 200
        assert "keyguard_access_decisions_total" in response.text
