"""
Same-origin proxy routes - relay scans and payments to the scanning backend.

Scan responses are relayed verbatim: same status code, same body.
"""

from json import JSONDecodeError

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from structlog import get_logger

from sentinel.api.dependencies import get_app_context
from sentinel.context import AppContext
from sentinel.exceptions import PaymentError, message_of
from sentinel.models.api import PaymentInitRequest, PaymentInitResponse, PaymentVerifyResponse

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["proxy"])

PROXIED_SCAN_KINDS = frozenset({"text", "url", "email", "wallet"})


def _payment_failure(exc: PaymentError) -> Response:
    return Response(content=exc.message, status_code=exc.status_code or 502)


@router.post("/scan/{kind}")
async def proxy_scan(
    kind: str,
    request: Request,
    ctx: AppContext = Depends(get_app_context),
) -> Response:
    if kind not in PROXIED_SCAN_KINDS:
        return JSONResponse(status_code=404, content={"error": f"Unknown scan type: {kind}"})

    try:
        payload = await request.json()
    except (JSONDecodeError, UnicodeDecodeError) as e:
        return JSONResponse(status_code=400, content={"error": message_of(e) or "Bad request"})

    upstream = await ctx.scan_client.forward(f"scan/{kind}", payload)
    logger.info("scan_proxied", kind=kind, status=upstream.status_code)
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        media_type="application/json",
    )


@router.post("/paystack/init", response_model=PaymentInitResponse)
async def proxy_payment_init(
    request: PaymentInitRequest,
    ctx: AppContext = Depends(get_app_context),
) -> Response | PaymentInitResponse:
    try:
        authorization = await ctx.payments.initialize_payment(
            request.amount, request.email, request.metadata
        )
    except PaymentError as exc:
        return _payment_failure(exc)
    return PaymentInitResponse(
        authorization_url=authorization.authorization_url,
        reference=authorization.reference,
    )


@router.get("/paystack/verify/{reference}", response_model=PaymentVerifyResponse)
async def proxy_payment_verify(
    reference: str,
    ctx: AppContext = Depends(get_app_context),
) -> Response | PaymentVerifyResponse:
    try:
        verified = await ctx.payments.verify_payment(reference)
    except PaymentError as exc:
        return _payment_failure(exc)
    return PaymentVerifyResponse(verified=verified)
