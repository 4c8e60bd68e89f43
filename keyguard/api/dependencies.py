"""
FastAPI Dependencies - Service wiring, origin fingerprints and authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hashlib
import secrets

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from keyguard.config import settings
from keyguard.db.session import get_db
from keyguard.exceptions import DomainDenial, DomainError
from keyguard.models.domain import Credential
from keyguard.services.access_service import AccessService, sql_repositories

logger = get_logger(__name__)


# ============================================================================
# Service wiring
# ============================================================================


async def get_access_service(db: AsyncSession = Depends(get_db)) -> AccessService:
    """
    FastAPI dependency building the access service over this request's session.

    Usage:
        @router.post("/v1/access")
        async def request_access(service: AccessService = Depends(get_access_service)):
            ...
    """
    return AccessService(sql_repositories(db))


# ============================================================================
# Origin fingerprint
# ============================================================================


def client_address(request: Request, trusted_proxy_hops: int | None = None) -> str:
    """
    Client IP as seen by the outermost trusted proxy.

    With no trusted proxies the transport peer is the client. Otherwise each
    trusted proxy appended one X-Forwarded-For entry, so the client is the
    entry `trusted_proxy_hops` places from the right; anything further left
    was written by the client and is ignored.
    """
    hops = settings.trusted_proxy_hops if trusted_proxy_hops is None else trusted_proxy_hops
    peer = request.client.host if request.client is not None else "unknown"
    if hops == 0:
        return peer

    forwarded = [
        hop.strip() for hop in request.headers.get("X-Forwarded-For", "").split(",") if hop.strip()
    ]
    if not forwarded:
        return peer
    return forwarded[-min(hops, len(forwarded))]


def origin_fingerprint(request: Request) -> str:
    """
    Stable fingerprint of the requesting network origin.

    SHA-256 of the client address only; request headers the client controls
    never feed it. The raw address is never stored.
    """
    return hashlib.sha256(client_address(request).encode()).hexdigest()


# ============================================================================
# Admin authentication (X-Admin-Key)
# ============================================================================


async def require_admin(
    x_admin_key: str | None = Header(None, description="Administrative key"),
) -> None:
    """
    FastAPI dependency gating issuance and guard overrides.

    Raises:
        HTTPException 503 if no admin key is configured
        HTTPException 401 if the header is missing or wrong
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin endpoints are disabled",
        )
    if x_admin_key is None or not secrets.compare_digest(x_admin_key, settings.admin_api_key):
        logger.warning("admin_auth_failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


# ============================================================================
# Credential authentication (X-API-Key)
# ============================================================================


async def get_caller_credential(
    x_api_key: str = Header(..., description="Credential id"),
    service: AccessService = Depends(get_access_service),
) -> Credential:
    """
    FastAPI dependency resolving the calling credential from X-API-Key.

    Only usable credentials authenticate; resource owners and the audit
    reader are identified by their credential.

    Raises:
        HTTPException 401 if unknown, revoked or expired
    """
    try:
        return await service.credentials.validate(x_api_key)
    except (DomainDenial, DomainError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.reason,
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc
