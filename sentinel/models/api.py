"""
API Models - Pydantic models for request/response validation.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ContentType(str, Enum):
    """Kinds of content that can be scanned."""

    TEXT = "text"
    URL = "url"
    EMAIL = "email"
    QR = "qr"
    WALLET = "wallet"


class SubscriptionStatus(str, Enum):
    """Profile subscription status."""

    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    INACTIVE = "inactive"


class RiskBand(str, Enum):
    """Risk band derived from a 0-100 score."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    SAFE = "safe"


class QRScanType(str, Enum):
    """Kind of address found in a QR code."""

    ETHEREUM = "ethereum"
    OTHER = "other"


class SubscriptionAction(str, Enum):
    """Subscription ledger actions."""

    SUBSCRIBED = "subscribed"
    CANCELED = "canceled"
    TOKENS_REFILLED = "tokens_refilled"


class PaymentPurpose(str, Enum):
    """What a checkout pays for."""

    SUBSCRIPTION = "subscription"
    TOKEN_PURCHASE = "token_purchase"


class ExportFormat(str, Enum):
    """History export formats."""

    JSON = "json"
    CSV = "csv"


# ============================================================================
# Remote Scan API
# ============================================================================


class ScanApiResponse(BaseModel):
    """
    Response from the remote scanning API.

    The score arrives as either ``riskScore`` or ``risk_score``; both map onto ``risk_score``.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    risk_score: str | None = Field(
        None, validation_alias=AliasChoices("riskScore", "risk_score")
    )
    classification: str | None = None
    explanation: str | None = None
    recommendations: str | None = None
    detected_by: str | None = Field(
        None, validation_alias=AliasChoices("detectedBy", "detected_by")
    )

    @field_validator("risk_score", mode="before")
    @classmethod
    def coerce_score(cls, v: Any) -> Any:
        """Scores may be sent as numbers."""
        if isinstance(v, bool):
            return str(int(v))
        if isinstance(v, (int, float)):
            return str(int(v))
        return v

    @field_validator("explanation", "recommendations", mode="before")
    @classmethod
    def join_lists(cls, v: Any) -> Any:
        """Lists of sentences are flattened into one string."""
        if isinstance(v, list):
            return "\n".join(str(item) for item in v)
        return v


# ============================================================================
# Scan Models
# ============================================================================


class ScanRequest(BaseModel):
    """POST /v1/scans/{content_type} request body."""

    content: str = Field(..., max_length=20000)


class ScanResultResponse(BaseModel):
    """Outcome of a single scan."""

    content: str
    content_type: ContentType
    risk_score: str
    risk_band: RiskBand
    classification: str
    explanation: str
    recommendations: str
    detected_by: str | None = None
    tokens_used: int
    timestamp: datetime


class RecentScansResponse(BaseModel):
    """GET /v1/scans/recent response."""

    results: list[ScanResultResponse]


# ============================================================================
# Profile Models
# ============================================================================


class PlanResponse(BaseModel):
    """Subscription plan."""

    id: str
    key: str
    name: str
    monthly_tokens: int
    monthly_price_usd: float
    scan_price_usd: float


class ProfileResponse(BaseModel):
    """GET /v1/profile response."""

    id: UUID
    email: str
    full_name: str | None = None
    avatar_url: str | None = None
    subscription_plan_id: str | None = None
    subscription_plan: PlanResponse | None = None
    tokens_remaining: int
    tokens_used_total: int
    subscription_status: SubscriptionStatus
    current_period_end: datetime | None = None
    last_scan_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class UpdateProfileRequest(BaseModel):
    """PATCH /v1/profile request body."""

    full_name: str | None = Field(None, max_length=255)
    avatar_url: str | None = Field(None, max_length=2048)


class TokenBalanceResponse(BaseModel):
    """GET /v1/profile/tokens response."""

    tokens_remaining: int
    has_tokens: bool
    can_scan: bool


# ============================================================================
# History Models
# ============================================================================


class HistoryItemResponse(BaseModel):
    """One persisted scan."""

    id: UUID
    content: str
    content_type: ContentType
    risk_score: str
    classification: str
    explanation: str
    recommendations: str
    tokens_used: int
    created_at: datetime


class HistoryStatsResponse(BaseModel):
    """Aggregates over a user's history."""

    total_scans: int = Field(serialization_alias="totalScans")
    risk_avg: int = Field(serialization_alias="riskAvg")
    tokens_used: int = Field(serialization_alias="tokensUsed")
    by_type: dict[str, int] = Field(serialization_alias="byType")
    by_risk: dict[str, int] = Field(serialization_alias="byRisk")


class HistoryResponse(BaseModel):
    """GET /v1/history response."""

    scans: list[HistoryItemResponse]
    grouped: dict[str, list[HistoryItemResponse]]
    stats: HistoryStatsResponse


class QRScanResponse(BaseModel):
    """QR side record."""

    id: UUID
    wallet_address: str
    ens_domain: str | None = None
    scan_type: QRScanType
    scanned_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Subscription and Payment Models
# ============================================================================


class SubscribeRequest(BaseModel):
    """POST /v1/subscription request body - the paid checkout to redeem."""

    reference: str = Field(..., min_length=1, max_length=200)


class RefillTokensRequest(BaseModel):
    """POST /v1/tokens/refill request body - the paid checkout to redeem."""

    reference: str = Field(..., min_length=1, max_length=200)


class StartPaymentRequest(BaseModel):
    """POST /v1/payments request body."""

    amount: float = Field(..., gt=0)
    plan_id: str | None = Field(None, max_length=100)
    tokens: int | None = Field(None, gt=0, le=100_000)


class PaymentInitRequest(BaseModel):
    """POST /api/paystack/init request body."""

    amount: float = Field(..., gt=0)
    email: str = Field(..., min_length=3, max_length=255)
    metadata: dict[str, Any] | None = None


class PaymentInitResponse(BaseModel):
    """Checkout details returned by the gateway."""

    authorization_url: str
    reference: str


class PaymentVerifyResponse(BaseModel):
    """Verification outcome."""

    verified: bool
    message: str | None = None


# ============================================================================
# Auth Models
# ============================================================================


class SignUpRequest(BaseModel):
    """POST /v1/auth/signup request body."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=6, max_length=128)
    full_name: str | None = Field(None, max_length=255)


class SignInRequest(BaseModel):
    """POST /v1/auth/signin request body."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class ResetPasswordRequest(BaseModel):
    """POST /v1/auth/reset-password request body."""

    email: str = Field(..., min_length=3, max_length=255)


class UpdatePasswordRequest(BaseModel):
    """PUT /v1/auth/password request body."""

    password: str = Field(..., min_length=6, max_length=128)


class AuthSessionResponse(BaseModel):
    """Tokens issued on sign-in."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    user_id: UUID
    email: str


class MessageResponse(BaseModel):
    """Generic acknowledgement."""

    message: str


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
