"""
API Routes - Dashboard endpoints for scanning, history and billing.

Domain errors propagate to the application's SentinelError handler.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from sentinel.api.dependencies import (
    get_access_token,
    get_app_context,
    get_profile_store,
    get_scan_orchestrator,
    get_user_session,
)
from sentinel.api.responses import (
    history_item,
    plan_response,
    profile_response,
    qr_response,
    scan_result_response,
    stats_response,
)
from sentinel.config import settings
from sentinel.context import AppContext, UserSession
from sentinel.db.session import get_read_db
from sentinel.exceptions import (
    InputValidationError,
    PaymentNotVerifiedError,
    RecordNotFoundError,
)
from sentinel.models.api import (
    ContentType,
    ExportFormat,
    HistoryItemResponse,
    HistoryResponse,
    HistoryStatsResponse,
    MessageResponse,
    PaymentPurpose,
    PaymentInitResponse,
    PaymentVerifyResponse,
    PlanResponse,
    ProfileResponse,
    QRScanResponse,
    RecentScansResponse,
    RefillTokensRequest,
    ScanRequest,
    ScanResultResponse,
    StartPaymentRequest,
    SubscribeRequest,
    TokenBalanceResponse,
    UpdateProfileRequest,
)
from sentinel.models.domain import HistoryFilters
from sentinel.services.profile_store import ProfileStore
from sentinel.services.scan_orchestrator import ScanOrchestrator

router = APIRouter(tags=["dashboard"])

UNVERIFIED_PAYMENT_MESSAGE = "Payment not yet verified, try again"


# ============================================================================
# Profile
# ============================================================================


@router.get("/v1/profile", response_model=ProfileResponse)
async def get_profile(store: ProfileStore = Depends(get_profile_store)) -> ProfileResponse:
    """Current user's profile, created on first access."""
    return profile_response(store.require_profile())


@router.patch("/v1/profile", response_model=ProfileResponse)
async def update_profile(
    request: UpdateProfileRequest,
    store: ProfileStore = Depends(get_profile_store),
) -> ProfileResponse:
    fields = request.model_dump(exclude_unset=True)
    if not fields:
        return profile_response(store.require_profile())
    return profile_response(await store.update_profile(**fields))


@router.put("/v1/profile/avatar", response_model=ProfileResponse)
async def upload_avatar(
    request: Request,
    filename: str = Query("avatar.jpg", max_length=255),
    token: str = Depends(get_access_token),
    store: ProfileStore = Depends(get_profile_store),
    ctx: AppContext = Depends(get_app_context),
) -> ProfileResponse:
    """Replace the profile picture with the raw image in the request body."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.avatar_max_bytes:
        raise InputValidationError(
            "file", f"Avatar must be at most {settings.avatar_max_bytes} bytes"
        )
    await store.upload_avatar(
        ctx.storage,
        filename,
        await request.body(),
        request.headers.get("content-type"),
        token,
    )
    return profile_response(store.require_profile())


@router.get("/v1/profile/tokens", response_model=TokenBalanceResponse)
async def get_token_balance(
    store: ProfileStore = Depends(get_profile_store),
) -> TokenBalanceResponse:
    """Balance read fresh from storage."""
    tokens = await store.force_fetch_tokens()
    return TokenBalanceResponse(
        tokens_remaining=tokens,
        has_tokens=tokens > 0,
        can_scan=await store.check_token_usage(),
    )


# ============================================================================
# Scans
# ============================================================================


@router.post("/v1/scans/{content_type}", response_model=ScanResultResponse)
async def run_scan(
    content_type: ContentType,
    request: ScanRequest,
    orchestrator: ScanOrchestrator = Depends(get_scan_orchestrator),
) -> ScanResultResponse:
    """
    Scan one piece of content.

    Wallet scans cost 2 tokens; everything else costs 1. QR content is routed
    to a wallet, URL or text scan depending on what it contains.
    """
    handlers = {
        ContentType.TEXT: orchestrator.scan_text,
        ContentType.URL: orchestrator.scan_url,
        ContentType.EMAIL: orchestrator.scan_email,
        ContentType.WALLET: orchestrator.scan_wallet,
        ContentType.QR: orchestrator.scan_qr,
    }
    result = await handlers[content_type](request.content)
    return scan_result_response(result)


@router.get("/v1/scans/latest", response_model=ScanResultResponse)
async def get_latest_result(
    user_session: UserSession = Depends(get_user_session),
) -> ScanResultResponse:
    if user_session.latest_result is None:
        raise RecordNotFoundError("Scan result", "latest")
    return scan_result_response(user_session.latest_result)


@router.delete("/v1/scans/latest", response_model=MessageResponse)
async def reset_latest_result(
    user_session: UserSession = Depends(get_user_session),
) -> MessageResponse:
    user_session.reset_result()
    return MessageResponse(message="Latest result cleared")


@router.get("/v1/scans/recent", response_model=RecentScansResponse)
async def get_recent_results(
    user_session: UserSession = Depends(get_user_session),
) -> RecentScansResponse:
    """Results from this session, newest first."""
    return RecentScansResponse(
        results=[scan_result_response(r) for r in user_session.recent_results]
    )


@router.delete("/v1/scans/recent", response_model=MessageResponse)
async def clear_recent_results(
    user_session: UserSession = Depends(get_user_session),
) -> MessageResponse:
    user_session.clear_recent()
    return MessageResponse(message="Recent results cleared")


# ============================================================================
# History
# ============================================================================


@router.get("/v1/history", response_model=HistoryResponse)
async def get_history(
    content_type: ContentType | None = Query(None),
    date_from: datetime | None = Query(None),
    date_to: datetime | None = Query(None),
    limit: int | None = Query(None, ge=1, le=1000),
    search: str | None = Query(None, max_length=200),
    store: ProfileStore = Depends(get_profile_store),
) -> HistoryResponse:
    """Filtered history grouped by day, with stats. Empty on storage failure."""
    page = await store.fetch_history(
        HistoryFilters(
            content_type=content_type,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            search_query=search,
        )
    )
    return HistoryResponse(
        scans=[history_item(s) for s in page.scans],
        grouped={day: [history_item(s) for s in scans] for day, scans in page.grouped.items()},
        stats=stats_response(page.stats),
    )


@router.get("/v1/history/stats", response_model=HistoryStatsResponse)
async def get_history_stats(
    store: ProfileStore = Depends(get_profile_store),
) -> HistoryStatsResponse:
    return stats_response(await store.get_history_stats())


@router.get("/v1/history/export")
async def export_history(
    export_format: ExportFormat = Query(ExportFormat.JSON, alias="format"),
    store: ProfileStore = Depends(get_profile_store),
) -> Response:
    body = await store.export_history(export_format)
    media_type = "text/csv" if export_format == ExportFormat.CSV else "application/json"
    return Response(
        content=body,
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="scan-history.{export_format.value}"'
        },
    )


@router.get("/v1/history/{scan_id}", response_model=HistoryItemResponse)
async def get_history_item(
    scan_id: UUID,
    store: ProfileStore = Depends(get_profile_store),
) -> HistoryItemResponse:
    scan = await store.get_history_item(scan_id)
    if scan is None:
        raise RecordNotFoundError("Scan", str(scan_id))
    return history_item(scan)


@router.delete("/v1/history/{scan_id}", response_model=MessageResponse)
async def delete_history_item(
    scan_id: UUID,
    store: ProfileStore = Depends(get_profile_store),
) -> MessageResponse:
    await store.delete_history_item(scan_id)
    return MessageResponse(message="Scan deleted")


@router.delete("/v1/history", response_model=MessageResponse)
async def clear_history(store: ProfileStore = Depends(get_profile_store)) -> MessageResponse:
    await store.clear_history()
    return MessageResponse(message="History cleared")


# ============================================================================
# QR Scans
# ============================================================================


@router.get("/v1/qr-scans", response_model=list[QRScanResponse])
async def get_qr_scans(
    limit: int = Query(50, ge=1, le=500),
    store: ProfileStore = Depends(get_profile_store),
) -> list[QRScanResponse]:
    return [qr_response(scan) for scan in await store.get_qr_scans(limit)]


@router.delete("/v1/qr-scans", response_model=MessageResponse)
async def clear_qr_scans(store: ProfileStore = Depends(get_profile_store)) -> MessageResponse:
    await store.clear_qr_scans()
    return MessageResponse(message="QR scans cleared")


# ============================================================================
# Plans, Subscription and Tokens
# ============================================================================


@router.get("/v1/plans", response_model=list[PlanResponse])
async def list_plans(
    ctx: AppContext = Depends(get_app_context),
    db: AsyncSession = Depends(get_read_db),
) -> list[PlanResponse]:
    """Plan catalog ordered by monthly tokens. Public."""
    resolver = await ctx.plans.load(db)
    return [plan_response(plan) for plan in resolver.plans]


@router.post("/v1/subscription", response_model=ProfileResponse)
async def subscribe(
    request: SubscribeRequest,
    store: ProfileStore = Depends(get_profile_store),
) -> ProfileResponse:
    """
    Activate the plan bought by a paid checkout.

    The plan comes from the checkout started with POST /v1/payments; the
    request only names which checkout to redeem.
    """
    profile = await store.complete_payment(request.reference, PaymentPurpose.SUBSCRIPTION)
    if profile is None:
        raise PaymentNotVerifiedError(request.reference)
    return profile_response(profile)


@router.delete("/v1/subscription", response_model=ProfileResponse)
async def cancel_subscription(
    store: ProfileStore = Depends(get_profile_store),
) -> ProfileResponse:
    return profile_response(await store.cancel_subscription())


@router.post("/v1/tokens/refill", response_model=ProfileResponse)
async def refill_tokens(
    request: RefillTokensRequest,
    store: ProfileStore = Depends(get_profile_store),
) -> ProfileResponse:
    """Credit the tokens bought by a paid checkout."""
    profile = await store.complete_payment(request.reference, PaymentPurpose.TOKEN_PURCHASE)
    if profile is None:
        raise PaymentNotVerifiedError(request.reference)
    return profile_response(profile)


# ============================================================================
# Payments
# ============================================================================


@router.post(
    "/v1/payments", response_model=PaymentInitResponse, status_code=status.HTTP_201_CREATED
)
async def start_payment(
    request: StartPaymentRequest,
    store: ProfileStore = Depends(get_profile_store),
) -> PaymentInitResponse:
    authorization = await store.start_payment(
        request.amount, plan_id=request.plan_id, tokens=request.tokens
    )
    return PaymentInitResponse(
        authorization_url=authorization.authorization_url,
        reference=authorization.reference,
    )


@router.post("/v1/payments/{reference}/verify", response_model=PaymentVerifyResponse)
async def verify_payment(
    reference: str,
    store: ProfileStore = Depends(get_profile_store),
) -> PaymentVerifyResponse:
    """
    Check a checkout with the gateway. Unverified payments are reported, not raised.

    A confirmed checkout that this session started is credited right away;
    any other reference is only checked.
    """
    if store.pending_payment(reference) is not None:
        verified = await store.complete_payment(reference) is not None
    else:
        verified = await store.verify_payment(reference)
    if verified:
        return PaymentVerifyResponse(verified=True)
    return PaymentVerifyResponse(verified=False, message=UNVERIFIED_PAYMENT_MESSAGE)
