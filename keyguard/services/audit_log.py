"""
Audit Log - append-only record of decisions and mutations.

Writes are best-effort: a failed write never fails the caller, but it is
logged, counted and reported to the operational-alert sink.
"""

from structlog import get_logger

from keyguard.config import settings
from keyguard.db.repositories import AuditRepository
from keyguard.models.domain import (
    AuditEntry,
    AuditFilters,
    AuditPage,
    OperationalAlert,
    PageRequest,
    ResourceStats,
)
from keyguard.observability.metrics import metrics
from keyguard.services.notifications import NotificationSink

logger = get_logger(__name__)


class AuditLog:
    """Append-only audit log with ownership-scoped reads."""

    def __init__(
        self,
        repository: AuditRepository,
        alerts: NotificationSink,
        max_page_size: int | None = None,
    ) -> None:
        self.repository = repository
        self.alerts = alerts
        self.max_page_size = max_page_size or settings.audit_max_page_size

    async def record(self, entry: AuditEntry) -> bool:
        """
        Append an entry. Never raises.

        Returns:
            True if the entry was persisted
        """
        try:
            await self.repository.append(entry)
            return True
        except Exception as e:
            # Any failure here must stay out of the access decision path
            metrics.audit_write_failures_total.inc()
            logger.error(
                "audit_write_failed",
                event_type=entry.event_type.value,
                entry_id=str(entry.entry_id),
                resource_id=entry.resource_id,
                reason=entry.reason,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._alert(
                f"audit write failed for {entry.event_type.value}: {type(e).__name__}"
            )
            return False

    async def query(
        self,
        owner_credential_id: str,
        filters: AuditFilters | None = None,
        page: PageRequest | None = None,
    ) -> AuditPage:
        """
        Entries visible to `owner_credential_id`, newest first.

        Page size is capped at the configured maximum.
        """
        filters = filters or AuditFilters()
        page = page or PageRequest()
        if page.page_size > self.max_page_size:
            page = PageRequest(page=page.page, page_size=self.max_page_size)
        return await self.repository.query(owner_credential_id, filters, page)

    async def resource_stats(self, resource_id: str, owner_credential_id: str) -> ResourceStats:
        """Decision counts for a resource, scoped to its owner."""
        return await self.repository.stats(resource_id, owner_credential_id)

    async def _alert(self, message: str) -> None:
        try:
            await self.alerts.operational_alert(
                OperationalAlert(component="audit_log", message=message)
            )
        except Exception as e:
            logger.error("operational_alert_failed", error=str(e))
