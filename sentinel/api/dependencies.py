"""
FastAPI Dependencies - Authentication, application context and per-request services.
"""

from typing import Any

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from sentinel.config import settings
from sentinel.context import AppContext, UserSession
from sentinel.db.session import get_write_db
from sentinel.exceptions import NotAuthenticatedError
from sentinel.models.domain import Identity
from sentinel.services.identity import identity_from_claims
from sentinel.services.profile_store import ProfileStore
from sentinel.services.scan_orchestrator import ScanOrchestrator

logger = get_logger(__name__)

# Bearer token scheme for identity provider access tokens
bearer_scheme = HTTPBearer(auto_error=False)


def get_app_context(request: Request) -> AppContext:
    """Application context created in the lifespan."""
    context: AppContext = request.app.state.context
    return context


async def get_access_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    if credentials is None or not credentials.credentials:
        raise NotAuthenticatedError()
    return credentials.credentials


async def get_access_claims(
    token: str = Depends(get_access_token),
    ctx: AppContext = Depends(get_app_context),
) -> dict[str, Any]:
    """Claims of a locally verified access token."""
    claims = ctx.identity.verify_access_token(token)
    if claims is None or not claims.get("sub"):
        raise NotAuthenticatedError("Invalid or expired access token")
    return claims


async def get_current_identity(
    claims: dict[str, Any] = Depends(get_access_claims),
) -> Identity:
    """
    Identity of the bearer access token.

    Usage:
        @router.get("/v1/profile")
        async def get_profile(identity: Identity = Depends(get_current_identity)):
            ...
    """
    try:
        return identity_from_claims(claims)
    except ValueError as e:
        logger.warning("access_token_bad_subject", error=str(e))
        raise NotAuthenticatedError("Invalid or expired access token") from e


def get_user_session(
    identity: Identity = Depends(get_current_identity),
    claims: dict[str, Any] = Depends(get_access_claims),
    ctx: AppContext = Depends(get_app_context),
) -> UserSession:
    """The caller's in-memory session, kept no longer than their access token."""
    expires_at = claims.get("exp")
    return ctx.registry.get(
        identity.id, expires_at=float(expires_at) if isinstance(expires_at, int | float) else None
    )


async def get_profile_store(
    identity: Identity = Depends(get_current_identity),
    ctx: AppContext = Depends(get_app_context),
    user_session: UserSession = Depends(get_user_session),
    db: AsyncSession = Depends(get_write_db),
) -> ProfileStore:
    """Profile store with the caller's profile loaded (created on first access)."""
    resolver = await ctx.plans.load(db)
    store = ProfileStore(
        db,
        identity,
        resolver,
        payments=ctx.payments,
        user_session=user_session,
    )
    await store.load_or_create_profile()
    return store


def get_scan_orchestrator(
    store: ProfileStore = Depends(get_profile_store),
    ctx: AppContext = Depends(get_app_context),
    user_session: UserSession = Depends(get_user_session),
) -> ScanOrchestrator:
    return ScanOrchestrator(
        store,
        ctx.scan_client,
        user_session=user_session,
        text_max_length=settings.text_max_length,
    )
