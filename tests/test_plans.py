"""
Tests for the plan resolver and the cached plan catalog.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from sentinel.db.models import SubscriptionPlan
from sentinel.exceptions import PlanNotFoundError
from sentinel.models.domain import PlanData
from sentinel.services.plans import DEFAULT_PLANS, PlanCatalog, PlanResolver

from conftest import make_result


def plan_row(plan_id: str, key: str, name: str, tokens: int) -> MagicMock:
    row = MagicMock(spec=SubscriptionPlan)
    row.id = plan_id
    row.key = key
    row.name = name
    row.monthly_tokens = tokens
    row.monthly_price_usd = Decimal("4.50")
    row.scan_price_usd = Decimal("0.0450")
    return row


class TestPlanData:
    """Plan invariants."""

    def test_monthly_tokens_must_be_positive(self):
        with pytest.raises(ValueError):
            PlanData("x", "x", "X", 0, 1.0, 0.1)


class TestPlanResolver:
    """Lookup by id, key and name."""

    def test_resolve_by_id(self, plan_resolver):
        assert plan_resolver.resolve("pro").name == "Pro"

    def test_resolve_by_name_case_insensitive(self, plan_resolver):
        assert plan_resolver.resolve("sTaNdArD").id == "standard"

    def test_resolve_by_key(self):
        resolver = PlanResolver(
            [PlanData(id="p-1", key="starter", name="Starter", monthly_tokens=5,
                      monthly_price_usd=1.0, scan_price_usd=0.2)]
        )
        assert resolver.resolve("starter").id == "p-1"

    def test_id_takes_precedence_over_name(self):
        plans = [
            PlanData("alpha", "a", "Beta", 5, 1.0, 0.2),
            PlanData("beta", "b", "Gamma", 10, 2.0, 0.2),
        ]
        assert PlanResolver(plans).resolve("beta").id == "beta"

    def test_unknown_raises(self, plan_resolver):
        with pytest.raises(PlanNotFoundError) as exc_info:
            plan_resolver.resolve("platinum")
        assert exc_info.value.identifier == "platinum"

    def test_find_returns_none(self, plan_resolver):
        assert plan_resolver.find("platinum") is None

    def test_by_id_none(self, plan_resolver):
        assert plan_resolver.by_id(None) is None

    def test_default_catalog(self):
        tokens = {plan.id: plan.monthly_tokens for plan in DEFAULT_PLANS}
        assert tokens == {"basic": 10, "standard": 110, "pro": 230, "business": 1500}


class TestPlanCatalog:
    """Application-lifetime plan cache."""

    async def test_loads_rows(self, db_session):
        db_session.execute = AsyncMock(
            return_value=make_result(rows=[plan_row("gold", "gold", "Gold", 500)])
        )
        catalog = PlanCatalog()

        resolver = await catalog.load(db_session)

        assert catalog.loaded
        assert [plan.id for plan in resolver.plans] == ["gold"]
        assert resolver.plans[0].monthly_price_usd == 4.5

    async def test_empty_table_uses_defaults(self, db_session):
        resolver = await PlanCatalog().load(db_session)
        assert len(resolver.plans) == len(DEFAULT_PLANS)

    async def test_failure_uses_defaults(self, db_session):
        db_session.execute = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("down"))
        )

        resolver = await PlanCatalog().load(db_session)

        assert resolver.resolve("business").monthly_tokens == 1500
        db_session.rollback.assert_awaited()

    async def test_cached_after_first_load(self, db_session):
        catalog = PlanCatalog()
        first = await catalog.load(db_session)
        second = await catalog.load(db_session)

        assert first is second
        assert db_session.execute.await_count == 1
