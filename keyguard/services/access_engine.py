"""
Access Decision Engine - ordered rule evaluation for access requests.

The engine never raises for domain outcomes: every request ends in a typed
Verdict. Only InfrastructureError (storage unavailable) propagates.

Rule order (first match wins):
    1. origin blocked                -> Blocked  origin_blocked
    2. credential not found          -> Errored  invalid_credential
    3. credential revoked            -> Denied   revoked
    4. credential expired            -> Denied   expired
    5. usage exhausted               -> Denied   usage_exceeded
    6. owner plan                    -> Granted  owner_bypass
    7. resource missing or inactive  -> Errored  resource_unavailable
    8. open resource                 -> Granted  open_access
    9. deny list / allow list / none -> Denied denylisted,
                                        Granted allowlisted,
                                        Denied not_allowlisted
   10. grants consume one use; losing the race downgrades to usage_exceeded
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from structlog import get_logger

from keyguard.exceptions import (
    CredentialExpiredError,
    CredentialNotFoundError,
    CredentialRevokedError,
    InfrastructureError,
    UsageLimitExceededError,
)
from keyguard.models.api import (
    AccessMode,
    AuditEventType,
    ListKind,
    Plan,
    VerdictReason,
    VerdictState,
)
from keyguard.models.domain import (
    AuditEntry,
    Credential,
    OperationalAlert,
    Resource,
    SecurityEvent,
    Verdict,
    utc_now,
)
from keyguard.observability.metrics import metrics
from keyguard.observability.tracing import trace_operation
from keyguard.services.abuse_guard import AbuseGuard
from keyguard.services.audit_log import AuditLog
from keyguard.services.credential_store import CredentialStore
from keyguard.services.notifications import NotificationSink
from keyguard.services.resource_registry import ResourceRegistry

logger = get_logger(__name__)

# Outcomes that count against the origin in the abuse guard
FAILURE_REASONS = frozenset(
    {VerdictReason.INVALID_CREDENTIAL, VerdictReason.REVOKED, VerdictReason.EXPIRED}
)

# Outcomes routed to the notification sink as security events
SECURITY_REASONS = frozenset({VerdictReason.DENYLISTED})

_LIST_REASONS = {
    ListKind.DENY: VerdictReason.DENYLISTED,
    ListKind.ALLOW: VerdictReason.ALLOWLISTED,
    ListKind.NONE: VerdictReason.NOT_ALLOWLISTED,
}


@dataclass(frozen=True)
class Evaluation:
    """Verdict of the read-only rules plus what they looked at."""

    verdict: Verdict
    credential: Credential | None = None
    resource: Resource | None = None


class AccessDecisionEngine:
    """Decides access requests and applies their side effects."""

    def __init__(
        self,
        credentials: CredentialStore,
        resources: ResourceRegistry,
        guard: AbuseGuard,
        audit: AuditLog,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.credentials = credentials
        self.resources = resources
        self.guard = guard
        self.audit = audit
        self.notifier = notifier
        self.clock = clock

    async def request_access(
        self, credential_id: str, resource_id: str, requester_id: str, origin: str
    ) -> Verdict:
        """
        Decide whether `credential_id` may access `resource_id` for `requester_id`.

        Every verdict is audited, including Errored ones.

        Raises:
            InfrastructureError: storage unavailable
        """
        start = time.perf_counter()
        with trace_operation(
            "access_decision", resource_id=resource_id, requester_id=requester_id
        ) as span:
            evaluation = await self.evaluate(credential_id, resource_id, requester_id, origin)

            if evaluation.verdict.granted:
                # A cancelled caller must not leave a consumed use unaudited
                commit = self._commit_grant(
                    evaluation, credential_id, resource_id, requester_id, origin
                )
                verdict = await asyncio.shield(commit)
            else:
                verdict = evaluation.verdict
                await self._audit_decision(
                    verdict, evaluation, credential_id, resource_id, requester_id, origin
                )

            await self._after_decision(verdict, credential_id, resource_id, requester_id, origin)

            span.set_attribute("verdict.state", verdict.state.value)
            span.set_attribute("verdict.reason", verdict.reason.value)

        duration = time.perf_counter() - start
        metrics.record_access_decision(verdict.state.value, verdict.reason.value, duration)
        logger.info(
            "access_decided",
            credential_id=credential_id,
            resource_id=resource_id,
            requester_id=requester_id,
            origin=origin,
            state=verdict.state.value,
            reason=verdict.reason.value,
            remaining_usage=verdict.remaining_usage,
        )
        return verdict

    async def evaluate(
        self, credential_id: str, resource_id: str, requester_id: str, origin: str
    ) -> Evaluation:
        """Apply rules 1-9 without side effects."""
        if await self.guard.is_blocked(origin):
            return Evaluation(Verdict.for_reason(VerdictReason.ORIGIN_BLOCKED))

        try:
            credential = await self.credentials.validate(credential_id)
        except CredentialNotFoundError:
            return Evaluation(Verdict.for_reason(VerdictReason.INVALID_CREDENTIAL))
        except CredentialRevokedError:
            return Evaluation(Verdict.for_reason(VerdictReason.REVOKED))
        except CredentialExpiredError:
            return Evaluation(Verdict.for_reason(VerdictReason.EXPIRED))

        remaining = credential.remaining_usage
        if credential.usage_exhausted:
            return Evaluation(
                Verdict.for_reason(VerdictReason.USAGE_EXCEEDED, remaining), credential
            )

        if credential.plan == Plan.OWNER:
            return Evaluation(Verdict.for_reason(VerdictReason.OWNER_BYPASS, remaining), credential)

        resource = await self.resources.get(resource_id)
        if resource is None or not resource.is_active:
            return Evaluation(
                Verdict.for_reason(VerdictReason.RESOURCE_UNAVAILABLE, remaining), credential
            )

        if resource.access_mode == AccessMode.OPEN:
            reason = VerdictReason.OPEN_ACCESS
        else:
            reason = _LIST_REASONS[resource.listing(requester_id)]
        return Evaluation(Verdict.for_reason(reason, remaining), credential, resource)

    async def _commit_grant(
        self,
        evaluation: Evaluation,
        credential_id: str,
        resource_id: str,
        requester_id: str,
        origin: str,
    ) -> Verdict:
        """Consume one use, then audit the final verdict."""
        verdict = evaluation.verdict
        credential = evaluation.credential
        try:
            new_count = await self.credentials.record_usage(credential_id)
        except UsageLimitExceededError:
            logger.info("grant_lost_usage_race", credential_id=credential_id)
            verdict = Verdict.for_reason(VerdictReason.USAGE_EXCEEDED, 0)
        except CredentialExpiredError:
            verdict = Verdict.for_reason(VerdictReason.EXPIRED)
        except CredentialRevokedError:
            verdict = Verdict.for_reason(VerdictReason.REVOKED)
        except CredentialNotFoundError:
            verdict = Verdict.for_reason(VerdictReason.INVALID_CREDENTIAL)
        else:
            if credential is not None and credential.max_usage is not None:
                verdict = Verdict.for_reason(verdict.reason, credential.max_usage - new_count)

        await self._audit_decision(
            verdict, evaluation, credential_id, resource_id, requester_id, origin
        )
        return verdict

    async def _after_decision(
        self,
        verdict: Verdict,
        credential_id: str,
        resource_id: str,
        requester_id: str,
        origin: str,
    ) -> None:
        """Feed the abuse guard, bind origins and raise security events."""
        if verdict.state == VerdictState.GRANTED:
            # The use is already consumed and audited; the grant must stand
            try:
                await self.guard.record_success(origin)
                await self.credentials.bind_origin(credential_id, origin)
            except InfrastructureError as e:
                logger.error(
                    "post_grant_update_failed", credential_id=credential_id, error=str(e)
                )
                await self._alert(f"post-grant origin update failed: {type(e).__name__}")
        elif verdict.state in (VerdictState.DENIED, VerdictState.ERRORED):
            if verdict.reason in FAILURE_REASONS:
                await self.guard.record_failure(origin)
            if verdict.reason in SECURITY_REASONS:
                await self._notify(
                    SecurityEvent(
                        kind=verdict.reason.value,
                        origin=origin,
                        credential_id=credential_id,
                        resource_id=resource_id,
                        requester_id=requester_id,
                        occurred_at=self.clock(),
                    )
                )
        elif verdict.state == VerdictState.BLOCKED:
            pass
        else:
            raise AssertionError(f"Unhandled verdict state: {verdict.state}")

    async def _audit_decision(
        self,
        verdict: Verdict,
        evaluation: Evaluation,
        credential_id: str,
        resource_id: str,
        requester_id: str,
        origin: str,
    ) -> None:
        # Decisions are visible to the resource owner; owner bypasses to the owner itself
        if evaluation.resource is not None:
            owner = evaluation.resource.owner_credential_id
        elif evaluation.credential is not None and evaluation.credential.plan == Plan.OWNER:
            owner = evaluation.credential.id
        else:
            owner = await self._resource_owner(resource_id)

        await self.audit.record(
            AuditEntry(
                event_type=AuditEventType.ACCESS_DECISION,
                credential_id=credential_id,
                resource_id=resource_id,
                requester_id=requester_id,
                owner_credential_id=owner,
                verdict=verdict.state,
                reason=verdict.reason.value,
                origin=origin,
                timestamp=self.clock(),
            )
        )

    async def _resource_owner(self, resource_id: str) -> str | None:
        try:
            resource = await self.resources.get(resource_id)
        except InfrastructureError as e:
            logger.warning("audit_owner_lookup_failed", resource_id=resource_id, error=str(e))
            return None
        return resource.owner_credential_id if resource is not None else None

    async def _alert(self, message: str) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.operational_alert(
                OperationalAlert(component="access_engine", message=message)
            )
        except Exception as e:
            logger.error("operational_alert_failed", error=str(e))

    async def _notify(self, event: SecurityEvent) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.security_event(event)
        except Exception as e:
            logger.error("security_event_delivery_failed", kind=event.kind, error=str(e))
