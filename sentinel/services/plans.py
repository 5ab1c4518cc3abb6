"""
Subscription plan catalog.

Plans are loaded once per application lifetime and cached. The built-in
catalog is used when the table is empty or cannot be read.
"""

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from sentinel.db.models import SubscriptionPlan
from sentinel.exceptions import PlanNotFoundError
from sentinel.models.domain import PlanData

logger = get_logger(__name__)

DEFAULT_PLANS: tuple[PlanData, ...] = (
    PlanData(
        id="basic",
        key="basic",
        name="Basic",
        monthly_tokens=10,
        monthly_price_usd=0.99,
        scan_price_usd=0.099,
    ),
    PlanData(
        id="standard",
        key="standard",
        name="Standard",
        monthly_tokens=110,
        monthly_price_usd=9.9,
        scan_price_usd=0.09,
    ),
    PlanData(
        id="pro",
        key="pro",
        name="Pro",
        monthly_tokens=230,
        monthly_price_usd=19.99,
        scan_price_usd=0.087,
    ),
    PlanData(
        id="business",
        key="business",
        name="Business",
        monthly_tokens=1500,
        monthly_price_usd=29.0,
        scan_price_usd=0.019,
    ),
)


class PlanResolver:
    """
    Resolves a plan by id, then key, then case-insensitive name.

    Ids are canonical; keys and lowercased names are alias tables onto them.
    """

    def __init__(self, plans: list[PlanData] | tuple[PlanData, ...]) -> None:
        self.plans = list(plans)
        self._by_id: dict[str, PlanData] = {}
        self._key_alias: dict[str, str] = {}
        self._name_alias: dict[str, str] = {}

        for plan in self.plans:
            self._by_id.setdefault(plan.id, plan)
            self._key_alias.setdefault(plan.key, plan.id)
            self._name_alias.setdefault(plan.name.lower(), plan.id)

    def find(self, identifier: str) -> PlanData | None:
        if identifier in self._by_id:
            return self._by_id[identifier]
        if identifier in self._key_alias:
            return self._by_id[self._key_alias[identifier]]
        plan_id = self._name_alias.get(identifier.lower())
        return self._by_id[plan_id] if plan_id else None

    def resolve(self, identifier: str) -> PlanData:
        """Like find, but raises PlanNotFoundError."""
        plan = self.find(identifier)
        if plan is None:
            raise PlanNotFoundError(identifier)
        return plan

    def by_id(self, plan_id: str | None) -> PlanData | None:
        if not plan_id:
            return None
        return self._by_id.get(plan_id)

    def by_name(self, name: str) -> PlanData | None:
        plan_id = self._name_alias.get(name.lower())
        return self._by_id[plan_id] if plan_id else None


def _to_plan_data(row: SubscriptionPlan) -> PlanData:
    return PlanData(
        id=row.id,
        key=row.key,
        name=row.name,
        monthly_tokens=row.monthly_tokens,
        monthly_price_usd=float(row.monthly_price_usd),
        scan_price_usd=float(row.scan_price_usd),
    )


class PlanCatalog:
    """Application-lifetime cache of the plan catalog."""

    def __init__(self) -> None:
        self._resolver: PlanResolver | None = None

    @property
    def loaded(self) -> bool:
        return self._resolver is not None

    async def load(self, session: AsyncSession) -> PlanResolver:
        """Return the cached resolver, loading the catalog on first use."""
        if self._resolver is not None:
            return self._resolver

        plans: list[PlanData] = []
        try:
            stmt = select(SubscriptionPlan).order_by(SubscriptionPlan.monthly_tokens.asc())
            result = await session.execute(stmt)
            plans = [_to_plan_data(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.warning("plan_catalog_load_failed", error=str(e))
            await session.rollback()

        if not plans:
            logger.info("plan_catalog_using_defaults")
            plans = list(DEFAULT_PLANS)
        else:
            logger.info("plan_catalog_loaded", count=len(plans))

        self._resolver = PlanResolver(plans)
        return self._resolver

    def reset(self) -> None:
        self._resolver = None
