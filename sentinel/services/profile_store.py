"""
Profile Store - Profile, token, history, QR and subscription persistence.

One store per request, scoped to the authenticated identity. The store keeps
the loaded profile in memory and every write goes through the database first:
the cached profile only changes after the commit succeeds.
"""

import calendar
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, NoReturn
from uuid import UUID, uuid4

from sqlalchemy import Select, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from sentinel.config import settings
from sentinel.context import UserSession
from sentinel.db.models import Profile, QRScan, ScanHistory, SubscriptionHistory, utc_now
from sentinel.exceptions import (
    InputValidationError,
    NotAuthenticatedError,
    PaymentInitError,
    PersistenceError,
    RecordNotFoundError,
)
from sentinel.models.api import (
    ContentType,
    ExportFormat,
    PaymentPurpose,
    QRScanType,
    SubscriptionAction,
    SubscriptionStatus,
)
from sentinel.models.domain import (
    HistoryFilters,
    HistoryPage,
    HistoryStats,
    Identity,
    PaymentAuthorization,
    PendingPayment,
    PlanData,
    ProfileData,
    QRScanData,
    ScanHistoryData,
    ScanRecord,
)
from sentinel.observability.metrics import metrics
from sentinel.services import history
from sentinel.services.avatar_storage import AvatarStorage
from sentinel.services.payment_client import PaymentGateway
from sentinel.services.plans import PlanResolver

logger = get_logger(__name__)

UPDATABLE_PROFILE_FIELDS = frozenset(
    {
        "email",
        "full_name",
        "avatar_url",
        "subscription_plan_id",
        "subscription_status",
        "current_period_end",
    }
)


def add_one_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the last day of a shorter month."""
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def avatar_extension(filename: str) -> str:
    """Lower-cased file extension, ``jpg`` when there is none."""
    _, dot, ext = filename.rpartition(".")
    ext = ext.strip().lower() if dot else ""
    return ext if ext.isalnum() else "jpg"


def with_reference(metadata: dict[str, Any], payment_reference: str | None) -> dict[str, Any]:
    """Ledger metadata, tagged with the paying checkout when there is one."""
    if payment_reference is not None:
        metadata["payment_reference"] = payment_reference
    return metadata


def build_history_query(user_id: UUID, filters: HistoryFilters) -> Select[tuple[ScanHistory]]:
    """Select a user's scans newest first, narrowed by the given filters."""
    stmt = (
        select(ScanHistory)
        .where(ScanHistory.user_id == user_id)
        .order_by(ScanHistory.created_at.desc())
    )
    if filters.content_type is not None:
        stmt = stmt.where(ScanHistory.content_type == filters.content_type.value)
    if filters.date_from is not None:
        stmt = stmt.where(ScanHistory.created_at >= filters.date_from)
    if filters.date_to is not None:
        stmt = stmt.where(ScanHistory.created_at <= filters.date_to)
    if filters.search_query:
        # % and _ typed by the user match literally
        needle = filters.search_query
        stmt = stmt.where(
            or_(
                ScanHistory.content.icontains(needle, autoescape=True),
                ScanHistory.classification.icontains(needle, autoescape=True),
                ScanHistory.explanation.icontains(needle, autoescape=True),
            )
        )
    if filters.limit:
        stmt = stmt.limit(filters.limit)
    return stmt


class ProfileStore:
    """
    Profile and billing store for one identity.

    Reads that feed dashboards degrade to empty results on failure.
    Writes raise PersistenceError and leave the cached profile untouched.
    """

    def __init__(
        self,
        session: AsyncSession,
        identity: Identity,
        plans: PlanResolver,
        payments: PaymentGateway | None = None,
        user_session: UserSession | None = None,
    ) -> None:
        self.session = session
        self.identity = identity
        self.plans = plans
        self.payments = payments
        self.user_session = user_session
        self._profile: ProfileData | None = None

    @property
    def user_id(self) -> UUID:
        return self.identity.id

    @property
    def profile(self) -> ProfileData | None:
        """The loaded profile, or None before load_or_create_profile."""
        return self._profile

    def require_profile(self) -> ProfileData:
        """The loaded profile, or NotAuthenticatedError."""
        if self._profile is None:
            raise NotAuthenticatedError("No profile found")
        return self._profile

    # ========================================================================
    # Profile
    # ========================================================================

    async def load_or_create_profile(self) -> ProfileData:
        """
        Load the profile, creating it on first access.

        A null token balance is repaired to 0 in storage.
        """
        try:
            row = await self._get_profile_row()
        except RecordNotFoundError:
            return await self._create_profile()

        if row.tokens_remaining is None:
            logger.warning("profile_tokens_repaired", user_id=str(self.user_id))
            row = await self._update_profile_row("repair_tokens", tokens_remaining=0)

        self._profile = self._profile_to_domain(row)
        return self._profile

    async def refresh_profile(self) -> ProfileData:
        return await self.load_or_create_profile()

    async def update_profile(self, **fields: Any) -> ProfileData:
        """Merge the given fields into the profile and persist them."""
        self.require_profile()
        unknown = set(fields) - UPDATABLE_PROFILE_FIELDS
        if unknown:
            name = sorted(unknown)[0]
            raise InputValidationError(name, f"Unknown profile field: {name}")

        values = dict(fields)
        status = values.get("subscription_status")
        if isinstance(status, SubscriptionStatus):
            values["subscription_status"] = status.value

        row = await self._update_profile_row("update_profile", **values)
        self._profile = self._profile_to_domain(row)
        logger.info("profile_updated", user_id=str(self.user_id), fields=sorted(fields))
        return self._profile

    async def upload_avatar(
        self,
        storage: AvatarStorage,
        filename: str,
        content: bytes,
        content_type: str | None,
        access_token: str,
    ) -> str:
        """
        Store a new profile picture and point the profile at it.

        The object is named ``{user_id}-{epoch_ms}.{ext}`` with the extension
        taken from the uploaded filename (``jpg`` when it has none).

        Returns:
            Public URL now saved as avatar_url
        """
        self.require_profile()
        if not content:
            raise InputValidationError("file", "Avatar file is empty")
        if len(content) > settings.avatar_max_bytes:
            raise InputValidationError(
                "file", f"Avatar must be at most {settings.avatar_max_bytes} bytes"
            )

        ext = avatar_extension(filename)
        if content_type is None or not content_type.strip():
            content_type = f"image/{ext}"
        if not content_type.startswith("image/"):
            raise InputValidationError("file", "Avatar must be an image")

        path = f"{self.user_id}-{int(time.time() * 1000)}.{ext}"
        url = await storage.upload(path, content, content_type, access_token)
        await self.update_profile(avatar_url=url)
        return url

    # ========================================================================
    # Tokens
    # ========================================================================

    async def force_fetch_tokens(self) -> int:
        """Read only the balance from storage. Falls back to the cached value on failure."""
        profile = self.require_profile()
        stmt = select(Profile.tokens_remaining).where(Profile.id == self.user_id)
        try:
            result = await self.session.execute(stmt)
            tokens = result.scalar_one_or_none() or 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.warning("force_fetch_tokens_failed", user_id=str(self.user_id), error=str(e))
            return profile.balance

        self._profile = replace(profile, tokens_remaining=tokens)
        return tokens

    async def validate_and_fetch_tokens(self) -> int:
        profile = self.require_profile()
        if profile.tokens_remaining is not None:
            return profile.tokens_remaining
        return await self.force_fetch_tokens()

    async def check_token_usage(self) -> bool:
        """True if the balance is positive or the subscription is active."""
        profile = self._profile
        if profile is None:
            return False
        active = profile.subscription_status == SubscriptionStatus.ACTIVE
        try:
            tokens = await self.validate_and_fetch_tokens()
        except PersistenceError:
            return profile.balance > 0 or active
        return tokens > 0 or active

    async def adjust_tokens(self, delta: int) -> ProfileData:
        """
        Apply a signed change to the balance, clamped at zero.

        A negative delta is a consumption: it is added to tokens_used_total and
        stamps last_scan_at.

        Raises:
            PersistenceError: The write failed; the cached profile is unchanged
        """
        profile = self.require_profile()
        current = await self.validate_and_fetch_tokens()
        new_balance = max(0, current + delta)

        values: dict[str, Any] = {"tokens_remaining": new_balance}
        if delta < 0:
            values["tokens_used_total"] = profile.tokens_used_total - delta
            values["last_scan_at"] = utc_now()

        row = await self._update_profile_row("adjust_tokens", **values)
        self._profile = self._profile_to_domain(row)
        metrics.record_tokens(new_balance - current, source="adjustment")
        logger.info(
            "tokens_adjusted",
            user_id=str(self.user_id),
            delta=delta,
            tokens_before=current,
            tokens_after=new_balance,
        )
        return self._profile

    # ========================================================================
    # Scan History
    # ========================================================================

    async def record_scan(self, record: ScanRecord, tokens_used: int = 1) -> ScanHistoryData:
        """
        Append a history row, then deduct its tokens.

        If the insert fails nothing is deducted. If the deduction fails the row
        stays and the error propagates.
        """
        self.require_profile()
        row = ScanHistory(
            id=uuid4(),
            user_id=self.user_id,
            content=record.content,
            content_type=record.content_type.value,
            risk_score=record.risk_score,
            classification=record.classification,
            explanation=record.explanation,
            recommendations=record.recommendations,
            tokens_used=tokens_used,
            created_at=utc_now(),
        )
        self.session.add(row)
        try:
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self._write_failed("record_scan", e)

        metrics.record_db_query("record_scan", True)
        scan = self._scan_to_domain(row)

        try:
            await self.adjust_tokens(-tokens_used)
        except PersistenceError:
            logger.error(
                "token_deduction_failed_after_history",
                user_id=str(self.user_id),
                scan_id=str(scan.id),
                tokens_used=tokens_used,
            )
            raise

        return scan

    async def get_scan_history(self, limit: int = 50) -> list[ScanHistoryData]:
        stmt = build_history_query(self.user_id, HistoryFilters(limit=limit))
        rows = await self._fetch_all("get_scan_history", stmt)
        return [self._scan_to_domain(row) for row in rows]

    async def get_history_item(self, scan_id: UUID) -> ScanHistoryData | None:
        stmt = select(ScanHistory).where(
            ScanHistory.id == scan_id, ScanHistory.user_id == self.user_id
        )
        try:
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            await self._read_failed("get_history_item", e)
        return self._scan_to_domain(row) if row is not None else None

    async def fetch_history(self, filters: HistoryFilters | None = None) -> HistoryPage:
        """Filtered history with day grouping and stats. Empty page on failure."""
        stmt = build_history_query(self.user_id, filters or HistoryFilters())
        try:
            rows = await self._fetch_all("fetch_history", stmt)
            scans = [self._scan_to_domain(row) for row in rows]
        except (PersistenceError, ValueError) as e:
            logger.warning("fetch_history_degraded", user_id=str(self.user_id), error=str(e))
            return history.empty_page()
        return history.build_page(scans)

    async def get_history_stats(self) -> HistoryStats:
        stmt = select(ScanHistory).where(ScanHistory.user_id == self.user_id)
        try:
            rows = await self._fetch_all("get_history_stats", stmt)
            return history.calculate_stats(self._scan_to_domain(row) for row in rows)
        except (PersistenceError, ValueError) as e:
            logger.warning("history_stats_degraded", user_id=str(self.user_id), error=str(e))
            return history.default_stats()

    async def delete_history_item(self, scan_id: UUID) -> None:
        stmt = delete(ScanHistory).where(
            ScanHistory.id == scan_id, ScanHistory.user_id == self.user_id
        )
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self._write_failed("delete_history_item", e)
        if result.rowcount == 0:
            raise RecordNotFoundError("Scan", str(scan_id))
        logger.info("history_item_deleted", user_id=str(self.user_id), scan_id=str(scan_id))

    async def clear_history(self) -> None:
        stmt = delete(ScanHistory).where(ScanHistory.user_id == self.user_id)
        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self._write_failed("clear_history", e)
        logger.info("history_cleared", user_id=str(self.user_id))

    async def export_history(self, fmt: ExportFormat | str = ExportFormat.JSON) -> str:
        """Export the full history as JSON or CSV."""
        export_format = ExportFormat(fmt)
        rows = await self._fetch_all(
            "export_history", build_history_query(self.user_id, HistoryFilters())
        )
        scans = [self._scan_to_domain(row) for row in rows]
        if export_format == ExportFormat.CSV:
            return history.export_csv(scans)
        return history.export_json(self.user_id, scans)

    # ========================================================================
    # QR Scans
    # ========================================================================

    async def record_qr_scan(
        self,
        wallet_address: str,
        ens_domain: str | None = None,
        metadata: dict[str, Any] | None = None,
        scan_type: QRScanType | None = None,
    ) -> QRScanData:
        """Append a QR side record. Without an explicit type, an ENS name implies ethereum."""
        self.require_profile()
        if scan_type is None:
            scan_type = QRScanType.ETHEREUM if ens_domain else QRScanType.OTHER

        now = utc_now()
        row = QRScan(
            id=uuid4(),
            user_id=self.user_id,
            wallet_address=wallet_address.lower(),
            ens_domain=ens_domain.lower() if ens_domain else None,
            scan_type=scan_type.value,
            scanned_at=now,
            scan_metadata=metadata or {},
            created_at=now,
        )
        self.session.add(row)
        try:
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self._write_failed("record_qr_scan", e)

        metrics.record_db_query("record_qr_scan", True)
        return self._qr_to_domain(row)

    async def get_qr_scans(self, limit: int = 50) -> list[QRScanData]:
        stmt = (
            select(QRScan)
            .where(QRScan.user_id == self.user_id)
            .order_by(QRScan.scanned_at.desc())
            .limit(limit)
        )
        try:
            rows = await self._fetch_all("get_qr_scans", stmt)
            return [self._qr_to_domain(row) for row in rows]
        except (PersistenceError, ValueError) as e:
            logger.warning("qr_scans_degraded", user_id=str(self.user_id), error=str(e))
            return []

    async def clear_qr_scans(self) -> None:
        stmt = delete(QRScan).where(QRScan.user_id == self.user_id)
        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self._write_failed("clear_qr_scans", e)
        logger.info("qr_scans_cleared", user_id=str(self.user_id))

    # ========================================================================
    # Plans and Subscriptions
    # ========================================================================

    def list_plans(self) -> list[PlanData]:
        return list(self.plans.plans)

    def get_plan_by_name(self, name: str) -> PlanData | None:
        return self.plans.by_name(name)

    async def subscribe_to_plan(
        self, plan_identifier: str, payment_reference: str | None = None
    ) -> ProfileData:
        """
        Subscribe to a plan by id, key or name.

        Raises:
            PlanNotFoundError: No plan matched; the profile is unchanged
        """
        profile = self.require_profile()
        plan = self.plans.resolve(plan_identifier)

        new_balance = profile.balance + plan.monthly_tokens
        ledger = self._ledger_row(
            SubscriptionAction.SUBSCRIBED,
            plan_id=plan.id,
            tokens_added=plan.monthly_tokens,
            tokens_remaining=new_balance,
            metadata=with_reference({"plan_name": plan.name}, payment_reference),
        )
        row = await self._update_profile_row(
            "subscribe",
            ledger=ledger,
            subscription_plan_id=plan.id,
            tokens_remaining=new_balance,
            subscription_status=SubscriptionStatus.ACTIVE.value,
            current_period_end=add_one_month(utc_now()),
        )

        self._profile = replace(self._profile_to_domain(row), subscription_plan=plan)
        metrics.record_tokens(plan.monthly_tokens, source="subscription")
        logger.info(
            "subscription_started",
            user_id=str(self.user_id),
            plan_id=plan.id,
            tokens_added=plan.monthly_tokens,
        )
        return self._profile

    async def cancel_subscription(self) -> ProfileData:
        """Cancel the subscription. Accumulated tokens are kept."""
        profile = self.require_profile()
        previous_plan = profile.subscription_plan

        ledger = self._ledger_row(
            SubscriptionAction.CANCELED,
            plan_id=profile.subscription_plan_id,
            tokens_added=0,
            tokens_remaining=profile.balance,
            metadata={
                "previous_plan": previous_plan.name if previous_plan else None,
                "tokens_at_cancellation": profile.tokens_remaining,
            },
        )
        row = await self._update_profile_row(
            "cancel_subscription",
            ledger=ledger,
            subscription_status=SubscriptionStatus.CANCELED.value,
            current_period_end=None,
        )

        self._profile = replace(self._profile_to_domain(row), subscription_plan=None)
        logger.info(
            "subscription_canceled",
            user_id=str(self.user_id),
            previous_plan_id=profile.subscription_plan_id,
        )
        return self._profile

    async def refill_tokens(
        self, amount: int, payment_reference: str | None = None
    ) -> ProfileData:
        """Add tokens without touching the subscription status."""
        profile = self.require_profile()
        if amount <= 0:
            raise InputValidationError("tokens", "Refill amount must be positive")

        new_balance = profile.balance + amount
        ledger = self._ledger_row(
            SubscriptionAction.TOKENS_REFILLED,
            plan_id=profile.subscription_plan_id,
            tokens_added=amount,
            tokens_remaining=new_balance,
            metadata=with_reference(
                {"previous_tokens": profile.tokens_remaining}, payment_reference
            ),
        )
        row = await self._update_profile_row(
            "refill_tokens", ledger=ledger, tokens_remaining=new_balance
        )

        self._profile = self._profile_to_domain(row)
        metrics.record_tokens(amount, source="refill")
        logger.info("tokens_refilled", user_id=str(self.user_id), tokens_added=amount)
        return self._profile

    # ========================================================================
    # Payments
    # ========================================================================

    def checkout_price(self, plan_id: str | None, tokens: int | None) -> float:
        """
        Least amount a checkout must charge.

        A plan costs its monthly price. Loose tokens are priced at the highest
        per-scan rate in the catalog, so buying tokens never beats a plan.
        """
        if plan_id:
            return self.plans.resolve(plan_id).monthly_price_usd
        if tokens:
            return tokens * max(plan.scan_price_usd for plan in self.plans.plans)
        raise InputValidationError("plan_id", "Choose a plan or a number of tokens")

    async def start_payment(
        self, amount: float, plan_id: str | None = None, tokens: int | None = None
    ) -> PaymentAuthorization:
        """
        Start a gateway checkout and remember it on the user session.

        Raises:
            PlanNotFoundError: plan_id matches no plan
            InputValidationError: Nothing to buy, or the amount is below the price
            PaymentInitError: No gateway, or the gateway refused the checkout
        """
        profile = self.require_profile()
        if self.payments is None:
            raise PaymentInitError("Payment gateway not configured")

        price = self.checkout_price(plan_id, tokens)
        if round(amount, 2) < round(price, 2):
            raise InputValidationError("amount", f"Amount must be at least {price:.2f}")

        resolved_plan_id = self.plans.resolve(plan_id).id if plan_id else None
        purpose = PaymentPurpose.SUBSCRIPTION if plan_id else PaymentPurpose.TOKEN_PURCHASE
        metadata = {
            "planId": resolved_plan_id,
            "tokens": tokens,
            "userId": str(profile.id),
            "type": purpose.value,
        }
        authorization = await self.payments.initialize_payment(amount, profile.email, metadata)

        if self.user_session is not None:
            self.user_session.pending_payment = PendingPayment(
                authorization=authorization,
                amount=amount,
                plan_id=resolved_plan_id,
                tokens=None if resolved_plan_id else tokens,
            )
        logger.info(
            "payment_started",
            user_id=str(self.user_id),
            reference=authorization.reference,
            payment_type=purpose.value,
        )
        return authorization

    async def verify_payment(self, reference: str) -> bool:
        """Ask the gateway; on success clear the pending checkout and reload the profile."""
        if self.payments is None:
            raise PaymentInitError("Payment gateway not configured")

        verified = await self.payments.verify_payment(reference)
        if verified:
            if self.user_session is not None:
                self.user_session.pending_payment = None
            await self.refresh_profile()
            logger.info("payment_verified", user_id=str(self.user_id), reference=reference)
        return verified

    def pending_payment(self, reference: str) -> PendingPayment | None:
        """The session's pending checkout when it carries this reference."""
        pending = self.user_session.pending_payment if self.user_session else None
        if pending is None or pending.reference != reference:
            return None
        return pending

    async def complete_payment(
        self, reference: str, purpose: PaymentPurpose | None = None
    ) -> ProfileData | None:
        """
        Credit a checkout this session started, once the gateway confirms it.

        What gets credited comes from the pending checkout recorded by
        start_payment, never from the caller. Returns None while the gateway
        has not confirmed the payment; the checkout stays pending.

        Raises:
            RecordNotFoundError: This session has no pending checkout with that reference
            InputValidationError: The checkout paid for something else
        """
        self.require_profile()
        pending = self.pending_payment(reference)
        if pending is None or self.user_session is None:
            raise RecordNotFoundError("Pending payment", reference)
        if purpose is not None and pending.purpose != purpose:
            raise InputValidationError(
                "reference", f"Payment {reference} was not a {purpose.value.replace('_', ' ')}"
            )

        # Claimed before the gateway round-trip so a second request cannot credit it again
        user_session = self.user_session
        user_session.pending_payment = None
        credited: ProfileData | None = None
        try:
            if not await self.verify_payment(reference):
                return None
            if pending.plan_id is not None:
                credited = await self.subscribe_to_plan(
                    pending.plan_id, payment_reference=reference
                )
            else:
                credited = await self.refill_tokens(
                    pending.tokens or 0, payment_reference=reference
                )
            return credited
        finally:
            if credited is None and user_session.pending_payment is None:
                user_session.pending_payment = pending

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _get_profile_row(self) -> Profile:
        stmt = select(Profile).where(Profile.id == self.user_id)
        try:
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            await self._read_failed("get_profile", e)
        if row is None:
            raise RecordNotFoundError("Profile", str(self.user_id))
        return row

    async def _create_profile(self) -> ProfileData:
        now = utc_now()
        row = Profile(
            id=self.user_id,
            email=self.identity.email,
            full_name=self.identity.full_name,
            avatar_url=self.identity.avatar_url,
            subscription_plan_id=None,
            tokens_remaining=settings.signup_free_tokens,
            tokens_used_total=0,
            subscription_status=SubscriptionStatus.INACTIVE.value,
            current_period_end=None,
            last_scan_at=None,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)

        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError:
            # Race condition - profile created by another request
            await self.session.rollback()
            logger.info("profile_create_race", user_id=str(self.user_id))
            row = await self._get_profile_row()
        except SQLAlchemyError as e:
            await self._write_failed("create_profile", e)
        else:
            metrics.record_db_query("create_profile", True)
            metrics.record_tokens(settings.signup_free_tokens, source="signup")
            logger.info("profile_created", user_id=str(self.user_id))

        self._profile = self._profile_to_domain(row)
        return self._profile

    async def _update_profile_row(
        self, operation: str, ledger: SubscriptionHistory | None = None, **values: Any
    ) -> Profile:
        """
        UPDATE the profile row and return it, committing with an optional ledger row.

        Raises:
            PersistenceError: Write failed, transaction rolled back
            RecordNotFoundError: The profile row no longer exists
        """
        values.setdefault("updated_at", utc_now())
        stmt = (
            update(Profile)
            .where(Profile.id == self.user_id)
            .values(**values)
            .returning(Profile)
        )
        try:
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                await self.session.rollback()
                raise RecordNotFoundError("Profile", str(self.user_id))
            if ledger is not None:
                self.session.add(ledger)
                await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self._write_failed(operation, e)

        metrics.record_db_query(operation, True)
        return row

    def _ledger_row(
        self,
        action: SubscriptionAction,
        plan_id: str | None,
        tokens_added: int,
        tokens_remaining: int,
        metadata: dict[str, Any],
    ) -> SubscriptionHistory:
        return SubscriptionHistory(
            id=uuid4(),
            user_id=self.user_id,
            plan_id=plan_id,
            action=action.value,
            tokens_added=tokens_added,
            tokens_remaining=tokens_remaining,
            entry_metadata=metadata,
            created_at=utc_now(),
        )

    async def _fetch_all(self, operation: str, stmt: Select[Any]) -> list[Any]:
        try:
            result = await self.session.execute(stmt)
            rows = list(result.scalars().all())
        except SQLAlchemyError as e:
            await self._read_failed(operation, e)
        metrics.record_db_query(operation, True)
        return rows

    async def _read_failed(self, operation: str, error: SQLAlchemyError) -> NoReturn:
        await self.session.rollback()
        metrics.record_db_query(operation, False)
        logger.error("db_read_failed", operation=operation, user_id=str(self.user_id), error=str(error))
        raise PersistenceError(str(error)) from error

    async def _write_failed(self, operation: str, error: SQLAlchemyError) -> NoReturn:
        await self.session.rollback()
        metrics.record_db_query(operation, False)
        metrics.record_error("persistence_failed", operation)
        logger.error(
            "db_write_failed", operation=operation, user_id=str(self.user_id), error=str(error)
        )
        raise PersistenceError(str(error)) from error

    def _profile_to_domain(self, row: Profile) -> ProfileData:
        """Convert ORM profile to domain model with its plan attached."""
        return ProfileData(
            id=row.id,
            email=row.email,
            full_name=row.full_name,
            avatar_url=row.avatar_url,
            subscription_plan_id=row.subscription_plan_id,
            tokens_remaining=row.tokens_remaining,
            tokens_used_total=row.tokens_used_total or 0,
            subscription_status=SubscriptionStatus(row.subscription_status),
            current_period_end=row.current_period_end,
            last_scan_at=row.last_scan_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
            subscription_plan=self.plans.by_id(row.subscription_plan_id),
        )

    @staticmethod
    def _scan_to_domain(row: ScanHistory) -> ScanHistoryData:
        return ScanHistoryData(
            id=row.id,
            user_id=row.user_id,
            content=row.content,
            content_type=ContentType(row.content_type),
            risk_score=row.risk_score,
            classification=row.classification,
            explanation=row.explanation,
            recommendations=row.recommendations,
            tokens_used=row.tokens_used,
            created_at=row.created_at,
        )

    @staticmethod
    def _qr_to_domain(row: QRScan) -> QRScanData:
        return QRScanData(
            id=row.id,
            user_id=row.user_id,
            wallet_address=row.wallet_address,
            ens_domain=row.ens_domain,
            scan_type=QRScanType(row.scan_type),
            scanned_at=row.scanned_at,
            metadata=dict(row.scan_metadata or {}),
        )
