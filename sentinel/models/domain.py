"""
Domain Models - Internal business logic models using dataclasses.

All data structures passed between services are immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sentinel.models.api import ContentType, PaymentPurpose, QRScanType, SubscriptionStatus


@dataclass(frozen=True)
class Identity:
    """Authenticated identity as reported by the identity provider."""

    id: UUID
    email: str
    full_name: str | None = None
    avatar_url: str | None = None


@dataclass(frozen=True)
class PlanData:
    """Subscription plan from the catalog."""

    id: str
    key: str
    name: str
    monthly_tokens: int
    monthly_price_usd: float
    scan_price_usd: float

    def __post_init__(self) -> None:
        if self.monthly_tokens <= 0:
            raise ValueError(f"monthly_tokens must be positive: {self.monthly_tokens}")


@dataclass(frozen=True)
class ProfileData:
    """Per-user billing and usage record."""

    id: UUID
    email: str
    full_name: str | None
    avatar_url: str | None
    subscription_plan_id: str | None
    tokens_remaining: int | None
    tokens_used_total: int
    subscription_status: SubscriptionStatus
    current_period_end: datetime | None
    last_scan_at: datetime | None
    created_at: datetime
    updated_at: datetime
    subscription_plan: PlanData | None = None

    @property
    def balance(self) -> int:
        """Token balance with a missing value read as zero."""
        return self.tokens_remaining or 0

    @property
    def has_tokens(self) -> bool:
        return self.balance > 0


@dataclass(frozen=True)
class ScanHistoryData:
    """One persisted scan."""

    id: UUID
    user_id: UUID
    content: str
    content_type: ContentType
    risk_score: str
    classification: str
    explanation: str
    recommendations: str
    tokens_used: int
    created_at: datetime


@dataclass(frozen=True)
class ScanRecord:
    """Scan fields written to history, before persistence assigns id and timestamps."""

    content: str
    content_type: ContentType
    risk_score: str
    classification: str
    explanation: str
    recommendations: str


@dataclass(frozen=True)
class QRScanData:
    """Side record for a wallet address found in a QR code."""

    id: UUID
    user_id: UUID
    wallet_address: str
    ens_domain: str | None
    scan_type: QRScanType
    scanned_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScanResult:
    """Outcome of a scan held in memory as the latest result."""

    content: str
    content_type: ContentType
    risk_score: str
    classification: str
    explanation: str
    recommendations: str
    tokens_used: int
    timestamp: datetime
    detected_by: str | None = None


@dataclass(frozen=True)
class HistoryFilters:
    """Filters for history queries. All fields optional."""

    content_type: ContentType | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int | None = None
    search_query: str | None = None


@dataclass(frozen=True)
class HistoryStats:
    """Aggregates computed over a set of history rows."""

    total_scans: int
    risk_avg: int
    tokens_used: int
    by_type: dict[str, int]
    by_risk: dict[str, int]


@dataclass(frozen=True)
class HistoryPage:
    """Result of a history query."""

    scans: list[ScanHistoryData]
    grouped: dict[str, list[ScanHistoryData]]
    stats: HistoryStats


@dataclass(frozen=True)
class PaymentAuthorization:
    """Gateway checkout details for a pending payment."""

    authorization_url: str
    reference: str


@dataclass(frozen=True)
class PendingPayment:
    """A started checkout and what it will buy once the gateway confirms it."""

    authorization: PaymentAuthorization
    amount: float
    plan_id: str | None = None
    tokens: int | None = None

    @property
    def reference(self) -> str:
        return self.authorization.reference

    @property
    def purpose(self) -> PaymentPurpose:
        if self.plan_id is not None:
            return PaymentPurpose.SUBSCRIPTION
        return PaymentPurpose.TOKEN_PURCHASE


@dataclass(frozen=True)
class AuthSession:
    """Tokens issued by the identity provider on sign-in."""

    access_token: str
    refresh_token: str | None
    expires_in: int | None
    identity: Identity
