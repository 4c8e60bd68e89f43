"""
API Routes - FastAPI endpoints for access decisions, resources and audit reads.

NO DICTIONARIES - All requests/responses use Pydantic models.

Denied and blocked verdicts are normal 200 responses carrying a reason code;
only malformed or unauthorized requests use HTTP error statuses.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import AwareDatetime
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from keyguard.api.dependencies import get_access_service, get_caller_credential, origin_fingerprint
from keyguard.db.session import get_db
from keyguard.exceptions import (
    DuplicateIdError,
    ResourceNotFoundError,
    TrialAlreadyIssuedError,
    UnauthorizedError,
)
from keyguard.models.api import (
    AccessRequest,
    AuditEntryResponse,
    AuditPageResponse,
    CreateResourceRequest,
    CredentialResponse,
    HealthResponse,
    IssuedCredentialResponse,
    MembershipResponse,
    ResourceListResponse,
    ResourceResponse,
    ResourceStatsResponse,
    SetAccessRequest,
    VerdictResponse,
)
from keyguard.models.domain import AuditFilters, Credential, PageRequest, Resource
from keyguard.services.access_service import AccessService

router = APIRouter()


# ============================================================================
# Response builders
# ============================================================================


def credential_response(credential: Credential, now: datetime) -> CredentialResponse:
    return CredentialResponse(
        credential_id=credential.id,
        plan=credential.plan,
        status=credential.effective_status(now),
        created_at=credential.created_at.isoformat(),
        expires_at=credential.expires_at.isoformat(),
        usage_count=credential.usage_count,
        max_usage=credential.max_usage,
        remaining_usage=credential.remaining_usage,
        label=credential.label,
        bound_origins=len(credential.origin_binding),
    )


def issued_credential_response(credential: Credential, now: datetime) -> IssuedCredentialResponse:
    return IssuedCredentialResponse(**credential_response(credential, now).model_dump())


def resource_response(resource: Resource) -> ResourceResponse:
    return ResourceResponse(
        resource_id=resource.id,
        access_mode=resource.access_mode,
        is_active=resource.is_active,
        name=resource.name,
        allow_list=sorted(resource.allow_list),
        deny_list=sorted(resource.deny_list),
        created_at=resource.created_at.isoformat(),
    )


def _resource_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, UnauthorizedError):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Caller does not own this resource",
        )
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Resource not found")


# ============================================================================
# Access decisions
# ============================================================================


@router.post("/v1/access", response_model=VerdictResponse)
async def request_access(
    request: AccessRequest,
    http_request: Request,
    service: AccessService = Depends(get_access_service),
) -> VerdictResponse:
    """
    Decide whether a credential may access a resource for a requester.

    The origin fingerprint is derived from the client address and user agent.
    """
    verdict = await service.request_access(
        request.credential_id,
        request.resource_id,
        request.requester_id,
        origin_fingerprint(http_request),
    )
    return VerdictResponse(
        state=verdict.state,
        reason=verdict.reason,
        remaining_usage=verdict.remaining_usage,
    )


# ============================================================================
# Credentials
# ============================================================================


@router.post(
    "/v1/credentials/trial",
    response_model=IssuedCredentialResponse,
    status_code=status.HTTP_201_CREATED,
)
async def issue_trial_credential(
    http_request: Request,
    service: AccessService = Depends(get_access_service),
) -> IssuedCredentialResponse:
    """Self-serve trial key, limited per origin."""
    try:
        credential = await service.credentials.issue_trial(origin_fingerprint(http_request))
    except TrialAlreadyIssuedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Trial key already issued for this origin",
        ) from exc
    except DuplicateIdError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not issue credential, retry later",
        ) from exc
    return issued_credential_response(credential, service.credentials.clock())


@router.get("/v1/credentials/me", response_model=CredentialResponse)
async def get_my_credential(
    caller: Credential = Depends(get_caller_credential),
    service: AccessService = Depends(get_access_service),
) -> CredentialResponse:
    """State of the credential presented in X-API-Key."""
    return credential_response(caller, service.credentials.clock())


# ============================================================================
# Resources (owner credential in X-API-Key)
# ============================================================================


@router.post(
    "/v1/resources",
    response_model=ResourceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_resource(
    request: CreateResourceRequest,
    caller: Credential = Depends(get_caller_credential),
    service: AccessService = Depends(get_access_service),
) -> ResourceResponse:
    """Create a resource owned by the calling credential."""
    try:
        resource = await service.resources.create(caller.id, request.access_mode, request.name)
    except DuplicateIdError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not create resource, retry later",
        ) from exc
    return resource_response(resource)


@router.get("/v1/resources", response_model=ResourceListResponse)
async def list_resources(
    include_inactive: bool = Query(False),
    caller: Credential = Depends(get_caller_credential),
    service: AccessService = Depends(get_access_service),
) -> ResourceListResponse:
    """Resources owned by the calling credential."""
    resources = await service.resources.list_for_owner(caller.id, include_inactive)
    return ResourceListResponse(
        resources=[resource_response(r) for r in resources],
        total_count=len(resources),
    )


@router.put("/v1/resources/{resource_id}/access", response_model=ResourceResponse)
async def set_resource_access(
    resource_id: str,
    request: SetAccessRequest,
    caller: Credential = Depends(get_caller_credential),
    service: AccessService = Depends(get_access_service),
) -> ResourceResponse:
    """Allow, deny or clear a requester on a resource's lists."""
    try:
        resource = await service.manage_resource_access(
            resource_id, request.requester_id, request.mode, caller.id
        )
    except (ResourceNotFoundError, UnauthorizedError) as exc:
        raise _resource_http_error(exc) from exc
    return resource_response(resource)


@router.get(
    "/v1/resources/{resource_id}/membership/{requester_id}",
    response_model=MembershipResponse,
)
async def check_membership(
    resource_id: str,
    requester_id: str,
    caller: Credential = Depends(get_caller_credential),
    service: AccessService = Depends(get_access_service),
) -> MembershipResponse:
    """Which list a requester is on, and whether it would be let in."""
    resource = await service.resources.get(resource_id)
    if resource is None or resource.owner_credential_id != caller.id:
        # Do not reveal other owners' resources
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Resource not found")
    try:
        membership = await service.resources.check_membership(resource_id, requester_id)
    except ResourceNotFoundError as exc:
        raise _resource_http_error(exc) from exc
    return MembershipResponse(allowed=membership.allowed, listed=membership.listed)


@router.delete("/v1/resources/{resource_id}", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_resource(
    resource_id: str,
    caller: Credential = Depends(get_caller_credential),
    service: AccessService = Depends(get_access_service),
) -> None:
    """Soft-delete a resource. Repeating the call is a no-op."""
    try:
        await service.resources.deactivate(resource_id, caller.id)
    except (ResourceNotFoundError, UnauthorizedError) as exc:
        raise _resource_http_error(exc) from exc


@router.get("/v1/resources/{resource_id}/stats", response_model=ResourceStatsResponse)
async def resource_stats(
    resource_id: str,
    caller: Credential = Depends(get_caller_credential),
    service: AccessService = Depends(get_access_service),
) -> ResourceStatsResponse:
    """Decision counts for a resource owned by the caller."""
    stats = await service.audit.resource_stats(resource_id, caller.id)
    return ResourceStatsResponse(
        resource_id=stats.resource_id,
        granted=stats.granted,
        denied=stats.denied,
        blocked=stats.blocked,
        errored=stats.errored,
        unique_requesters=stats.unique_requesters,
    )


# ============================================================================
# Audit
# ============================================================================


@router.get("/v1/audit", response_model=AuditPageResponse)
async def query_audit(
    resource_id: str | None = Query(None),
    requester_id: str | None = Query(None),
    reason: str | None = Query(None),
    since: AwareDatetime | None = Query(None),
    until: AwareDatetime | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    caller: Credential = Depends(get_caller_credential),
    service: AccessService = Depends(get_access_service),
) -> AuditPageResponse:
    """Audit entries owned by the caller, newest first."""
    try:
        filters = AuditFilters(
            resource_id=resource_id,
            requester_id=requester_id,
            reason=reason,
            since=since,
            until=until,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    result = await service.audit.query(caller.id, filters, PageRequest(page, page_size))
    return AuditPageResponse(
        entries=[
            AuditEntryResponse(
                entry_id=entry.entry_id,
                event_type=entry.event_type,
                resource_id=entry.resource_id,
                requester_id=entry.requester_id,
                verdict=entry.verdict,
                reason=entry.reason,
                timestamp=entry.timestamp.isoformat(),
            )
            for entry in result.entries
        ],
        page=result.page,
        page_size=result.page_size,
        total_count=result.total,
        has_more=result.has_more,
    )


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc
