"""
Tests for domain models.

Covers dataclass invariants, derived state and verdict consistency.
"""

from datetime import UTC, datetime, timedelta

import pytest

from keyguard.models.api import (
    AccessMode,
    CredentialStatus,
    ListKind,
    Plan,
    VerdictReason,
    VerdictState,
)
from keyguard.models.domain import (
    AuditFilters,
    AuditPage,
    Credential,
    OriginRecord,
    PageRequest,
    Resource,
    Verdict,
)

NOW = datetime(2026, 3, 1, tzinfo=UTC)


def make_credential(**overrides) -> Credential:
    fields = {
        "id": "kg_std_abc",
        "plan": Plan.STANDARD,
        "status": CredentialStatus.ACTIVE,
        "created_at": NOW,
        "expires_at": NOW + timedelta(days=30),
    }
    fields.update(overrides)
    return Credential(**fields)


class TestCredential:
    """Tests for Credential dataclass."""

    def test_valid(self):
        credential = make_credential(max_usage=5, usage_count=2)
        assert credential.remaining_usage == 3
        assert not credential.usage_exhausted

    def test_unlimited_usage(self):
        credential = make_credential()
        assert credential.remaining_usage is None
        assert not credential.usage_exhausted

    def test_exhausted(self):
        credential = make_credential(max_usage=2, usage_count=2)
        assert credential.usage_exhausted
        assert credential.remaining_usage == 0

    def test_empty_id_rejected(self):
        with pytest.raises(ValueError, match="empty"):
            make_credential(id="")

    def test_expiry_must_follow_creation(self):
        with pytest.raises(ValueError, match="expires_at"):
            make_credential(expires_at=NOW)

    def test_usage_over_limit_rejected(self):
        with pytest.raises(ValueError, match="exceeds"):
            make_credential(max_usage=1, usage_count=2)

    def test_non_positive_max_usage_rejected(self):
        with pytest.raises(ValueError, match="positive"):
            make_credential(max_usage=0)

    def test_negative_usage_rejected(self):
        with pytest.raises(ValueError, match="negative"):
            make_credential(usage_count=-1)

    def test_expiry_computed_at_read_time(self):
        credential = make_credential()
        assert not credential.is_expired(NOW + timedelta(days=30))
        assert credential.is_expired(NOW + timedelta(days=30, seconds=1))

    def test_effective_status_revoked_wins(self):
        credential = make_credential(status=CredentialStatus.REVOKED)
        assert credential.effective_status(NOW + timedelta(days=60)) == CredentialStatus.REVOKED

    def test_effective_status_expired(self):
        credential = make_credential()
        assert credential.effective_status(NOW + timedelta(days=31)) == CredentialStatus.EXPIRED
        assert credential.effective_status(NOW) == CredentialStatus.ACTIVE

    def test_is_frozen(self):
        credential = make_credential()
        with pytest.raises(AttributeError):
            credential.usage_count = 5  # type: ignore[misc]


class TestResource:
    """Tests for Resource dataclass."""

    def test_lists_must_be_disjoint(self):
        with pytest.raises(ValueError, match="both"):
            Resource(
                id="res_1",
                owner_credential_id="kg_std_abc",
                access_mode=AccessMode.ALLOW_DENY_LIST,
                allow_list=frozenset({"u1"}),
                deny_list=frozenset({"u1"}),
            )

    def test_listing(self):
        resource = Resource(
            id="res_1",
            owner_credential_id="kg_std_abc",
            access_mode=AccessMode.ALLOW_DENY_LIST,
            allow_list=frozenset({"good"}),
            deny_list=frozenset({"bad"}),
        )
        assert resource.listing("good") == ListKind.ALLOW
        assert resource.listing("bad") == ListKind.DENY
        assert resource.listing("other") == ListKind.NONE


class TestVerdict:
    """Tests for Verdict state/reason consistency."""

    @pytest.mark.parametrize(
        ("reason", "state"),
        [
            (VerdictReason.ORIGIN_BLOCKED, VerdictState.BLOCKED),
            (VerdictReason.INVALID_CREDENTIAL, VerdictState.ERRORED),
            (VerdictReason.RESOURCE_UNAVAILABLE, VerdictState.ERRORED),
            (VerdictReason.REVOKED, VerdictState.DENIED),
            (VerdictReason.EXPIRED, VerdictState.DENIED),
            (VerdictReason.USAGE_EXCEEDED, VerdictState.DENIED),
            (VerdictReason.DENYLISTED, VerdictState.DENIED),
            (VerdictReason.NOT_ALLOWLISTED, VerdictState.DENIED),
            (VerdictReason.OWNER_BYPASS, VerdictState.GRANTED),
            (VerdictReason.OPEN_ACCESS, VerdictState.GRANTED),
            (VerdictReason.ALLOWLISTED, VerdictState.GRANTED),
        ],
    )
    def test_for_reason(self, reason: VerdictReason, state: VerdictState):
        verdict = Verdict.for_reason(reason)
        assert verdict.state == state
        assert verdict.granted == (state == VerdictState.GRANTED)

    def test_mismatched_state_rejected(self):
        with pytest.raises(ValueError, match="belongs to"):
            Verdict(state=VerdictState.GRANTED, reason=VerdictReason.REVOKED)


class TestPaging:
    def test_offset(self):
        assert PageRequest(page=3, page_size=20).offset == 40

    @pytest.mark.parametrize(("page", "size"), [(0, 10), (1, 0), (-1, 5)])
    def test_invalid(self, page: int, size: int):
        with pytest.raises(ValueError):
            PageRequest(page=page, page_size=size)

    def test_has_more(self):
        assert AuditPage(entries=(), page=1, page_size=10, total=11).has_more
        assert not AuditPage(entries=(), page=2, page_size=10, total=20).has_more

    def test_filters_reject_inverted_range(self):
        with pytest.raises(ValueError, match="since"):
            AuditFilters(since=NOW, until=NOW - timedelta(seconds=1))

    def test_filters_reject_naive_bounds(self):
        with pytest.raises(ValueError, match="timezone"):
            AuditFilters(since=datetime(2026, 1, 1), until=NOW)
        with pytest.raises(ValueError, match="timezone"):
            AuditFilters(until=datetime(2026, 1, 1))


class TestOriginRecord:
    def test_is_blocked(self):
        record = OriginRecord(origin="o", blocked_until=NOW + timedelta(minutes=1))
        assert record.is_blocked(NOW)
        assert not record.is_blocked(NOW + timedelta(minutes=1))

    def test_negative_failures_rejected(self):
        with pytest.raises(ValueError):
            OriginRecord(origin="o", failure_count=-1)
