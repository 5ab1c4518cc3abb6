"""
ORM models for profiles, scan history, QR records and subscriptions.

Every user-owned table is keyed by ``user_id`` and every query filters on it.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base shared by every dashboard table."""

    pass


def utc_now() -> datetime:
    """Timezone-aware now, used for column defaults."""
    return datetime.now(UTC)


class Profile(Base):
    """
    ORM model for profiles table.

    One row per identity; holds the token balance and subscription state.
    """

    __tablename__ = "profiles"

    # Primary Key - same value as the identity provider's user id
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)

    email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Subscription
    subscription_plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    subscription_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="inactive"
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Token balance
    tokens_remaining: Mapped[int | None] = mapped_column(Integer, nullable=True, default=0)
    tokens_used_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_scan_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens_remaining >= 0", name="ck_tokens_remaining_non_negative"),
        CheckConstraint("tokens_used_total >= 0", name="ck_tokens_used_total_non_negative"),
        CheckConstraint(
            "subscription_status IN ('active', 'canceled', 'past_due', 'inactive')",
            name="ck_subscription_status",
        ),
        Index("idx_profiles_email", "email"),
    )

    def __repr__(self) -> str:
        return (
            f"<Profile(id={self.id}, status={self.subscription_status}, "
            f"tokens_remaining={self.tokens_remaining})>"
        )


class SubscriptionPlan(Base):
    """
    ORM model for subscription_plans table.

    Read-only reference data.
    """

    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    monthly_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_price_usd: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    scan_price_usd: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)

    __table_args__ = (
        CheckConstraint("monthly_tokens > 0", name="ck_plan_monthly_tokens_positive"),
    )


class ScanHistory(Base):
    """
    ORM model for scans_history table.

    Append-only record of completed scans.
    """

    __tablename__ = "scans_history"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )

    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(10), nullable=False)
    risk_score: Mapped[str] = mapped_column(String(8), nullable=False, default="0")
    classification: Mapped[str] = mapped_column(String(255), nullable=False, default="Unknown")
    explanation: Mapped[str] = mapped_column(Text, nullable=False, default="")
    recommendations: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "content_type IN ('text', 'url', 'email', 'qr', 'wallet')",
            name="ck_scan_content_type",
        ),
        CheckConstraint("tokens_used > 0", name="ck_scan_tokens_used_positive"),
        Index("idx_scans_history_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ScanHistory(id={self.id}, user_id={self.user_id}, "
            f"content_type={self.content_type}, risk_score={self.risk_score})>"
        )


class QRScan(Base):
    """ORM model for qr_scans table."""

    __tablename__ = "qr_scans"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    ens_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    scan_type: Mapped[str] = mapped_column(String(10), nullable=False, default="other")
    scanned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    # "metadata" is reserved on declarative classes
    scan_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("scan_type IN ('ethereum', 'other')", name="ck_qr_scan_type"),
        Index("idx_qr_scans_user_scanned", "user_id", "scanned_at"),
    )


class SubscriptionHistory(Base):
    """
    ORM model for subscription_history table.

    Audit ledger of subscription changes and token refills.
    """

    __tablename__ = "subscription_history"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    tokens_added: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    entry_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "action IN ('subscribed', 'canceled', 'tokens_refilled')",
            name="ck_subscription_history_action",
        ),
        Index("idx_subscription_history_user_created", "user_id", "created_at"),
    )
