"""
Admin API Routes - Credential issuance, revocation and abuse-guard overrides.

All endpoints require the X-Admin-Key header.
"""

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from structlog import get_logger

from keyguard.api.dependencies import get_access_service, require_admin
from keyguard.api.routes import credential_response, issued_credential_response
from keyguard.exceptions import CredentialNotFoundError, DuplicateIdError
from keyguard.models.api import (
    CredentialResponse,
    IssueCredentialRequest,
    IssuedCredentialResponse,
    OriginBlockRequest,
    OriginStatusResponse,
    OriginUnblockRequest,
)
from keyguard.models.domain import OriginRecord
from keyguard.services.access_service import AccessService

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def origin_status_response(record: OriginRecord, now: datetime) -> OriginStatusResponse:
    return OriginStatusResponse(
        origin=record.origin,
        blocked=record.is_blocked(now),
        blocked_until=record.blocked_until.isoformat() if record.blocked_until else None,
        failure_count=record.failure_count,
    )


# ============================================================================
# Credentials
# ============================================================================


@router.post(
    "/credentials",
    response_model=IssuedCredentialResponse,
    status_code=status.HTTP_201_CREATED,
)
async def issue_credential(
    request: IssueCredentialRequest,
    service: AccessService = Depends(get_access_service),
) -> IssuedCredentialResponse:
    """Issue a credential on any plan, including owner."""
    duration = timedelta(days=request.duration_days) if request.duration_days else None
    try:
        credential = await service.issue_credential(
            request.plan,
            max_usage=request.max_usage,
            duration_override=duration,
            label=request.label,
        )
    except DuplicateIdError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not issue credential, retry later",
        ) from exc

    logger.info("admin_credential_issued", credential_id=credential.id, plan=request.plan.value)
    return issued_credential_response(credential, service.credentials.clock())


@router.post("/credentials/{credential_id}/revoke", response_model=CredentialResponse)
async def revoke_credential(
    credential_id: str,
    service: AccessService = Depends(get_access_service),
) -> CredentialResponse:
    """Revoke a credential. Revoking twice is not an error."""
    try:
        await service.revoke_credential(credential_id)
    except CredentialNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credential not found",
        ) from exc

    credential = await service.credentials.get(credential_id)
    if credential is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credential not found")
    return credential_response(credential, service.credentials.clock())


@router.post("/credentials/{credential_id}/reset-binding", response_model=CredentialResponse)
async def reset_credential_binding(
    credential_id: str,
    service: AccessService = Depends(get_access_service),
) -> CredentialResponse:
    """Forget every origin the credential has been used from."""
    try:
        await service.credentials.reset_origin_binding(credential_id)
    except CredentialNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credential not found",
        ) from exc

    credential = await service.credentials.get(credential_id)
    if credential is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credential not found")
    return credential_response(credential, service.credentials.clock())


# ============================================================================
# Abuse guard overrides
# ============================================================================


@router.post("/origins/block", response_model=OriginStatusResponse)
async def block_origin(
    request: OriginBlockRequest,
    service: AccessService = Depends(get_access_service),
) -> OriginStatusResponse:
    """Block an origin fingerprint until manually unblocked."""
    record = await service.guard.manual_block(request.origin, request.reason)
    return origin_status_response(record, service.guard.clock())


@router.post("/origins/unblock", response_model=OriginStatusResponse)
async def unblock_origin(
    request: OriginUnblockRequest,
    service: AccessService = Depends(get_access_service),
) -> OriginStatusResponse:
    """Clear any block on an origin fingerprint."""
    record = await service.guard.manual_unblock(request.origin)
    return origin_status_response(record, service.guard.clock())
