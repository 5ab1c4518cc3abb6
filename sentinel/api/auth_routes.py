"""
Auth Routes - Sign-up, sign-in and password flows against the identity provider.

Provider errors pass through unchanged with the provider's status code.
"""

from dataclasses import replace

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from sentinel.api.dependencies import get_access_token, get_app_context, get_current_identity
from sentinel.api.responses import profile_response
from sentinel.context import AppContext
from sentinel.db.session import get_write_db
from sentinel.models.api import (
    AuthSessionResponse,
    MessageResponse,
    ProfileResponse,
    ResetPasswordRequest,
    SignInRequest,
    SignUpRequest,
    UpdatePasswordRequest,
)
from sentinel.models.domain import Identity
from sentinel.services.identity import SessionEvent
from sentinel.services.profile_store import ProfileStore

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/auth", tags=["auth"])


@router.post("/signup", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
async def sign_up(
    request: SignUpRequest,
    ctx: AppContext = Depends(get_app_context),
    db: AsyncSession = Depends(get_write_db),
) -> ProfileResponse:
    """
    Register with the identity provider and create the profile eagerly.

    A profile created concurrently by another request is reused.
    """
    identity = await ctx.identity.sign_up(request.email, request.password, request.full_name)
    if identity.full_name is None and request.full_name:
        identity = replace(identity, full_name=request.full_name)

    resolver = await ctx.plans.load(db)
    store = ProfileStore(db, identity, resolver, payments=ctx.payments)
    profile = await store.load_or_create_profile()
    return profile_response(profile)


@router.post("/signin", response_model=AuthSessionResponse)
async def sign_in(
    request: SignInRequest,
    ctx: AppContext = Depends(get_app_context),
) -> AuthSessionResponse:
    session = await ctx.identity.sign_in(request.email, request.password)
    await ctx.session_holder.notify(SessionEvent.SIGNED_IN, session.identity.id)
    return AuthSessionResponse(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_in=session.expires_in,
        user_id=session.identity.id,
        email=session.identity.email,
    )


@router.post("/signout", response_model=MessageResponse)
async def sign_out(
    token: str = Depends(get_access_token),
    identity: Identity = Depends(get_current_identity),
    ctx: AppContext = Depends(get_app_context),
) -> MessageResponse:
    """Sign out. In-memory session state is dropped even if the provider call fails."""
    try:
        await ctx.identity.sign_out(token)
    finally:
        await ctx.session_holder.notify(SessionEvent.SIGNED_OUT, identity.id)
    return MessageResponse(message="Signed out")


@router.get("/user", response_model=AuthSessionResponse)
async def get_user(
    token: str = Depends(get_access_token),
    ctx: AppContext = Depends(get_app_context),
) -> AuthSessionResponse:
    """Bootstrap a client session from an existing access token."""
    identity = await ctx.identity.get_user(token)
    return AuthSessionResponse(access_token=token, user_id=identity.id, email=identity.email)


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    request: ResetPasswordRequest,
    ctx: AppContext = Depends(get_app_context),
) -> MessageResponse:
    await ctx.identity.reset_password(request.email)
    return MessageResponse(message="Password reset email sent")


@router.put("/password", response_model=MessageResponse)
async def update_password(
    request: UpdatePasswordRequest,
    token: str = Depends(get_access_token),
    ctx: AppContext = Depends(get_app_context),
) -> MessageResponse:
    await ctx.identity.update_password(token, request.password)
    logger.info("password_updated")
    return MessageResponse(message="Password updated")
