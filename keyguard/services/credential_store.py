"""
Credential Store - issuance, validation, usage accounting and revocation.

NO DICTIONARIES - All data uses typed models/dataclasses.
"""

import base64
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from structlog import get_logger

from keyguard.config import settings
from keyguard.db.repositories import CredentialRepository
from keyguard.exceptions import (
    CredentialExpiredError,
    CredentialNotFoundError,
    CredentialRevokedError,
    DuplicateIdError,
    InvalidRequestError,
    TrialAlreadyIssuedError,
    UsageLimitExceededError,
)
from keyguard.models.api import AuditEventType, CredentialStatus, IssuanceChannel, Plan
from keyguard.models.domain import AuditEntry, Credential, utc_now
from keyguard.observability.metrics import metrics
from keyguard.services.audit_log import AuditLog

logger = get_logger(__name__)

MAX_ID_ATTEMPTS = 3


def plan_duration(plan: Plan) -> timedelta:
    """Default lifetime of a credential on `plan`."""
    days = {
        Plan.TRIAL: settings.trial_duration_days,
        Plan.STANDARD: settings.standard_duration_days,
        Plan.PREMIUM: settings.premium_duration_days,
        Plan.OWNER: settings.owner_duration_days,
    }[plan]
    return timedelta(days=days)


def generate_credential_id(plan: Plan) -> str:
    """
    Generate a new credential id.

    Format: kg_{plan_tag}_{43 url-safe chars} (256 bits of entropy).
    """
    random_bytes = secrets.token_bytes(32)
    suffix = base64.urlsafe_b64encode(random_bytes).decode("utf-8").rstrip("=")
    return f"kg_{plan.tag}_{suffix}"


class CredentialStore:
    """
    Credential lifecycle operations over a CredentialRepository.

    Reads never mutate: expiry is computed at read time, and an expired
    credential is only marked expired when a write path touches it.
    """

    def __init__(
        self,
        repository: CredentialRepository,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] = utc_now,
        trial_keys_per_origin: int | None = None,
    ) -> None:
        self.repository = repository
        self.audit = audit
        self.clock = clock
        self.trial_keys_per_origin = (
            trial_keys_per_origin
            if trial_keys_per_origin is not None
            else settings.trial_keys_per_origin
        )

    async def issue(
        self,
        plan: Plan,
        max_usage: int | None = None,
        duration_override: timedelta | None = None,
        label: str | None = None,
        issued_via: IssuanceChannel = IssuanceChannel.MANUAL,
        issued_to_origin: str | None = None,
    ) -> Credential:
        """
        Issue a new credential.

        Args:
            plan: Plan of the credential; OWNER bypasses resource checks
            max_usage: Optional usage cap (None = unlimited)
            duration_override: Replaces the plan's default lifetime
            label: Optional human-readable note
            issued_via: Issuance channel recorded for auditing
            issued_to_origin: Origin that self-served the credential

        Raises:
            InvalidRequestError: max_usage or duration_override not positive
            DuplicateIdError: every generated id collided
        """
        if max_usage is not None and max_usage <= 0:
            raise InvalidRequestError(f"max_usage must be positive, got {max_usage}")
        if duration_override is not None and duration_override <= timedelta(0):
            raise InvalidRequestError("duration_override must be positive")

        lifetime = duration_override or plan_duration(plan)

        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            now = self.clock()
            credential = Credential(
                id=generate_credential_id(plan),
                plan=plan,
                status=CredentialStatus.ACTIVE,
                created_at=now,
                expires_at=now + lifetime,
                max_usage=max_usage,
                label=label,
                issued_via=issued_via,
                issued_to_origin=issued_to_origin,
            )
            if await self.repository.insert(credential):
                break
            logger.warning("credential_id_collision", attempt=attempt, plan=plan.value)
        else:
            raise DuplicateIdError(MAX_ID_ATTEMPTS)

        metrics.credentials_issued_total.labels(plan=plan.value).inc()
        logger.info(
            "credential_issued",
            credential_id=credential.id,
            plan=plan.value,
            max_usage=max_usage,
            issued_via=issued_via.value,
            expires_at=credential.expires_at.isoformat(),
        )
        await self._audit(AuditEventType.CREDENTIAL_ISSUED, credential.id, issued_to_origin)
        return credential

    async def issue_trial(self, origin: str) -> Credential:
        """
        Self-serve trial issuance, limited per origin fingerprint.

        Raises:
            TrialAlreadyIssuedError: origin already claimed its trial keys
        """
        issued = await self.repository.count_issued_to_origin(origin)
        if issued >= self.trial_keys_per_origin:
            logger.warning("trial_key_refused", origin=origin, already_issued=issued)
            raise TrialAlreadyIssuedError(self.trial_keys_per_origin)

        return await self.issue(
            Plan.TRIAL, issued_via=IssuanceChannel.TRIAL, issued_to_origin=origin
        )

    async def get(self, credential_id: str) -> Credential | None:
        """Raw lookup without state checks."""
        return await self.repository.get(credential_id)

    async def validate(self, credential_id: str) -> Credential:
        """
        Look up a credential and check that it is usable.

        Pure read: an expired credential is reported, not rewritten.

        Raises:
            CredentialNotFoundError, CredentialRevokedError, CredentialExpiredError
        """
        credential = await self.repository.get(credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id)
        if credential.status == CredentialStatus.REVOKED:
            raise CredentialRevokedError(credential_id)
        if credential.is_expired(self.clock()):
            raise CredentialExpiredError(credential_id)
        return credential

    async def record_usage(self, credential_id: str) -> int:
        """
        Atomically add one use to the credential.

        Returns:
            The new usage count

        Raises:
            UsageLimitExceededError: no uses left (including lost races)
            CredentialExpiredError: expired; status is transitioned to expired
            CredentialRevokedError, CredentialNotFoundError
        """
        now = self.clock()
        new_count = await self.repository.increment_usage(credential_id, now)
        if new_count is not None:
            return new_count

        # The conditional update matched nothing; find out why
        current = await self.repository.get(credential_id)
        if current is None:
            raise CredentialNotFoundError(credential_id)
        if current.status == CredentialStatus.REVOKED:
            raise CredentialRevokedError(credential_id)
        if current.is_expired(now):
            if await self.repository.mark_expired(credential_id):
                logger.info("credential_marked_expired", credential_id=credential_id)
            raise CredentialExpiredError(credential_id)
        raise UsageLimitExceededError(credential_id, current.max_usage)

    async def revoke(self, credential_id: str) -> None:
        """
        Revoke a credential. Revocation is terminal and idempotent.

        Raises:
            CredentialNotFoundError
        """
        current = await self.repository.get(credential_id)
        if current is None:
            raise CredentialNotFoundError(credential_id)
        if current.status == CredentialStatus.REVOKED:
            logger.info("credential_already_revoked", credential_id=credential_id)
            return

        if not await self.repository.mark_revoked(credential_id):
            raise CredentialNotFoundError(credential_id)

        metrics.credentials_revoked_total.inc()
        logger.info("credential_revoked", credential_id=credential_id, plan=current.plan.value)
        await self._audit(AuditEventType.CREDENTIAL_REVOKED, credential_id)

    async def bind_origin(self, credential_id: str, origin: str) -> bool:
        """Record an origin the credential was used from. Returns True if new."""
        added = await self.repository.add_origin(credential_id, origin, self.clock())
        if added:
            logger.info("credential_origin_bound", credential_id=credential_id, origin=origin)
        return added

    async def reset_origin_binding(self, credential_id: str) -> int:
        """
        Forget every origin bound to the credential.

        Raises:
            CredentialNotFoundError
        """
        if await self.repository.get(credential_id) is None:
            raise CredentialNotFoundError(credential_id)

        cleared = await self.repository.clear_origins(credential_id)
        logger.info("credential_origins_reset", credential_id=credential_id, cleared=cleared)
        await self._audit(AuditEventType.ORIGIN_BINDING_RESET, credential_id)
        return cleared

    async def _audit(
        self, event_type: AuditEventType, credential_id: str, origin: str | None = None
    ) -> None:
        if self.audit is None:
            return
        await self.audit.record(
            AuditEntry(
                event_type=event_type,
                credential_id=credential_id,
                owner_credential_id=credential_id,
                origin=origin,
                timestamp=self.clock(),
            )
        )
