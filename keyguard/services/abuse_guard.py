"""
Abuse Guard - per-origin failure tracking and temporary blocks.

Failures are tracked per origin fingerprint rather than per credential, so
rotating credentials from one origin is still caught. Every state change is
a pure function over OriginRecord applied through OriginRepository.mutate,
which serializes writers per origin.
"""

import dataclasses
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from structlog import get_logger

from keyguard.config import settings
from keyguard.db.repositories import OriginRepository
from keyguard.exceptions import InvalidRequestError
from keyguard.models.api import AuditEventType
from keyguard.models.domain import AuditEntry, OriginRecord, SecurityEvent, utc_now
from keyguard.observability.metrics import metrics
from keyguard.services.audit_log import AuditLog
from keyguard.services.notifications import NotificationSink

logger = get_logger(__name__)

# Manual blocks have no expiry until cleared by an administrator
MANUAL_BLOCK_UNTIL = datetime(9999, 1, 1, tzinfo=UTC)


# ============================================================================
# State transitions
# ============================================================================


def apply_failure(
    record: OriginRecord,
    now: datetime,
    threshold: int,
    tracking_window: timedelta,
    block_duration: timedelta,
) -> OriginRecord:
    """Count one failure; block and reset the count on reaching `threshold`."""
    if record.is_blocked(now):
        # Blocked origins do not escalate
        return dataclasses.replace(record, last_failure_at=now)

    count = record.failure_count
    if record.last_failure_at is None or now - record.last_failure_at > tracking_window:
        count = 0
    count += 1

    if count >= threshold:
        return dataclasses.replace(
            record,
            failure_count=0,
            last_failure_at=now,
            blocked_until=now + block_duration,
            block_reason=f"{threshold} failed validations",
            manual=False,
        )
    return dataclasses.replace(
        record, failure_count=count, last_failure_at=now, blocked_until=None, block_reason=None
    )


def apply_success(record: OriginRecord) -> OriginRecord:
    if record.manual:
        return dataclasses.replace(record, failure_count=0)
    return dataclasses.replace(record, failure_count=0, blocked_until=None, block_reason=None)


def clear_block(record: OriginRecord) -> OriginRecord:
    return dataclasses.replace(record, blocked_until=None, block_reason=None, manual=False)


class AbuseGuard:
    """Per-origin rate and abuse guard."""

    def __init__(
        self,
        repository: OriginRepository,
        notifier: NotificationSink | None = None,
        audit: AuditLog | None = None,
        threshold: int | None = None,
        tracking_window: timedelta | None = None,
        block_duration: timedelta | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.audit = audit
        self.threshold = threshold if threshold is not None else settings.abuse_failure_threshold
        self.tracking_window = tracking_window or settings.abuse_tracking_window
        self.block_duration = block_duration or settings.abuse_block_duration
        self.clock = clock
        if self.threshold < 1:
            raise InvalidRequestError(f"threshold must be >= 1, got {self.threshold}")

    async def record_failure(self, origin: str) -> OriginRecord:
        """
        Count a failed validation from `origin`.

        When this failure applies a new block, an origin_blocked security
        event is emitted and audited.
        """
        now = self.clock()
        was_blocked = False

        def change(record: OriginRecord) -> OriginRecord:
            nonlocal was_blocked
            was_blocked = record.is_blocked(now)
            return apply_failure(
                record, now, self.threshold, self.tracking_window, self.block_duration
            )

        updated = await self.repository.mutate(origin, change)

        if updated.is_blocked(now) and not was_blocked:
            metrics.origin_blocks_total.labels(manual="false").inc()
            logger.warning(
                "origin_blocked",
                origin=origin,
                blocked_until=updated.blocked_until.isoformat() if updated.blocked_until else None,
                threshold=self.threshold,
            )
            await self._notify(
                SecurityEvent(
                    kind="origin_blocked",
                    origin=origin,
                    severity="high",
                    detail=updated.block_reason,
                    occurred_at=now,
                )
            )
            await self._audit(AuditEventType.ORIGIN_BLOCKED, origin, updated.block_reason)
        else:
            logger.info("origin_failure_recorded", origin=origin, failures=updated.failure_count)
        return updated

    async def record_success(self, origin: str) -> OriginRecord:
        """Reset the failure count. A manual block survives."""
        return await self.repository.mutate(origin, apply_success)

    async def is_blocked(self, origin: str) -> bool:
        """Whether `origin` is blocked now. An elapsed block is cleared on read."""
        now = self.clock()
        record = await self.repository.get(origin)
        if record is None or record.blocked_until is None:
            return False
        if record.is_blocked(now):
            return True

        def change(current: OriginRecord) -> OriginRecord:
            if current.blocked_until is not None and not current.is_blocked(now):
                return clear_block(current)
            return current

        updated = await self.repository.mutate(origin, change)
        if not updated.is_blocked(now):
            logger.info("origin_block_elapsed", origin=origin)
        return updated.is_blocked(now)

    async def manual_block(self, origin: str, reason: str) -> OriginRecord:
        """Block `origin` until manually unblocked. Idempotent."""
        already = False

        def change(record: OriginRecord) -> OriginRecord:
            nonlocal already
            already = record.manual
            return dataclasses.replace(
                record, blocked_until=MANUAL_BLOCK_UNTIL, block_reason=reason, manual=True
            )

        updated = await self.repository.mutate(origin, change)
        if not already:
            metrics.origin_blocks_total.labels(manual="true").inc()
            logger.warning("origin_manually_blocked", origin=origin, reason=reason)
            await self._audit(AuditEventType.ORIGIN_BLOCKED, origin, reason)
        return updated

    async def manual_unblock(self, origin: str) -> OriginRecord:
        """Clear any block on `origin` and reset its count. Idempotent."""
        had_block = False

        def change(record: OriginRecord) -> OriginRecord:
            nonlocal had_block
            had_block = record.blocked_until is not None
            return dataclasses.replace(clear_block(record), failure_count=0)

        updated = await self.repository.mutate(origin, change)
        if had_block:
            logger.info("origin_unblocked", origin=origin)
            await self._audit(AuditEventType.ORIGIN_UNBLOCKED, origin, None)
        return updated

    async def get(self, origin: str) -> OriginRecord | None:
        return await self.repository.get(origin)

    async def purge_stale(self, older_than: timedelta) -> int:
        """Remove unblocked records whose last failure is older than `older_than`."""
        purged = await self.repository.purge(self.clock() - older_than)
        logger.info("origin_records_purged", count=purged)
        return purged

    async def _notify(self, event: SecurityEvent) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.security_event(event)
        except Exception as e:
            logger.error("security_event_delivery_failed", kind=event.kind, error=str(e))

    async def _audit(self, event_type: AuditEventType, origin: str, reason: str | None) -> None:
        if self.audit is None:
            return
        await self.audit.record(
            AuditEntry(event_type=event_type, origin=origin, reason=reason, timestamp=self.clock())
        )
