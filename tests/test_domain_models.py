"""
Tests for domain dataclasses and API model serialization.
"""

from dataclasses import FrozenInstanceError
from datetime import UTC, datetime
from uuid import uuid4

import pytest
from pydantic import ValidationError

from sentinel.models.api import (
    HistoryStatsResponse,
    RefillTokensRequest,
    SubscriptionStatus,
)
from sentinel.models.domain import ProfileData


def make_profile(tokens: int | None) -> ProfileData:
    now = datetime(2025, 1, 1, tzinfo=UTC)
    return ProfileData(
        id=uuid4(),
        email="user@example.com",
        full_name=None,
        avatar_url=None,
        subscription_plan_id=None,
        tokens_remaining=tokens,
        tokens_used_total=0,
        subscription_status=SubscriptionStatus.INACTIVE,
        current_period_end=None,
        last_scan_at=None,
        created_at=now,
        updated_at=now,
    )


class TestProfileData:
    """Balance helpers on the profile."""

    def test_missing_balance_reads_zero(self):
        profile = make_profile(None)
        assert profile.balance == 0
        assert profile.has_tokens is False

    def test_positive_balance(self):
        assert make_profile(3).has_tokens is True

    def test_frozen(self):
        with pytest.raises(FrozenInstanceError):
            make_profile(1).tokens_remaining = 5  # type: ignore[misc]


class TestApiModels:
    """Request validation and response aliases."""

    def test_stats_serialize_camel_case(self):
        stats = HistoryStatsResponse(
            total_scans=2, risk_avg=40, tokens_used=3, by_type={"text": 2}, by_risk={"low": 2}
        )
        dumped = stats.model_dump(by_alias=True)
        assert set(dumped) == {"totalScans", "riskAvg", "tokensUsed", "byType", "byRisk"}

    @pytest.mark.parametrize("tokens", [0, -5, 100_001])
    def test_refill_bounds(self, tokens):
        with pytest.raises(ValidationError):
            RefillTokensRequest(tokens=tokens)
