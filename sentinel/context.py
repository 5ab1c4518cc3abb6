"""
Application context - shared clients, plan cache and per-user session state.

Created once in the FastAPI lifespan and closed at shutdown.
"""

import time
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import UUID

import httpx
from structlog import get_logger

from sentinel.config import Settings
from sentinel.models.domain import PendingPayment, ScanResult
from sentinel.services.avatar_storage import AvatarStorage, ObjectStorageClient
from sentinel.services.identity import (
    GoTrueIdentityProvider,
    IdentityProvider,
    SessionEvent,
    SessionHolder,
)
from sentinel.services.payment_client import PaymentGateway, PaystackClient
from sentinel.services.plans import PlanCatalog
from sentinel.services.scan_client import RemoteScanClient

logger = get_logger(__name__)

DEFAULT_RECENT_LIMIT = 10
DEFAULT_MAX_SESSIONS = 10_000
DEFAULT_IDLE_SECONDS = 3600.0
SWEEP_INTERVAL_SECONDS = 60.0


@dataclass
class UserSession:
    """In-memory state for one signed-in user."""

    user_id: UUID
    recent_limit: int = DEFAULT_RECENT_LIMIT
    latest_result: ScanResult | None = None
    recent_results: deque[ScanResult] = field(init=False)
    pending_payment: PendingPayment | None = None
    last_seen: float = 0.0
    # exp claim of the newest access token seen, epoch seconds
    expires_at: float | None = None

    def __post_init__(self) -> None:
        self.recent_results = deque(maxlen=self.recent_limit)

    def remember(self, result: ScanResult) -> None:
        """Set the latest result and prepend it to the recent buffer."""
        self.latest_result = result
        self.recent_results.appendleft(result)

    def reset_result(self) -> None:
        self.latest_result = None

    def clear_recent(self) -> None:
        self.recent_results.clear()

    def is_stale(self, now: float, idle_seconds: float) -> bool:
        if self.expires_at is not None and now >= self.expires_at:
            return True
        return now - self.last_seen >= idle_seconds


class SessionRegistry:
    """
    Per-user session state keyed by identity id.

    Subscribes to the SessionHolder and drops a user's state on sign-out.
    Users who never sign out through this process are dropped once their
    access token expires or they stay idle for ``idle_seconds``; beyond
    ``max_sessions`` the least recently used session goes first.
    """

    def __init__(
        self,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        idle_seconds: float = DEFAULT_IDLE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.recent_limit = recent_limit
        self.max_sessions = max_sessions
        self.idle_seconds = idle_seconds
        self.clock = clock
        self._sessions: OrderedDict[UUID, UserSession] = OrderedDict()
        self._last_sweep = clock()

    def get(self, user_id: UUID, expires_at: float | None = None) -> UserSession:
        """Get the user's session, creating it on first use, and mark it as used."""
        now = self.clock()
        if now - self._last_sweep >= SWEEP_INTERVAL_SECONDS:
            self.evict_stale(now)

        session = self._sessions.get(user_id)
        if session is not None and session.is_stale(now, self.idle_seconds):
            self._evict(user_id, "expired")
            session = None
        if session is None:
            session = UserSession(user_id=user_id, recent_limit=self.recent_limit)
            self._sessions[user_id] = session
        else:
            self._sessions.move_to_end(user_id)

        session.last_seen = now
        if expires_at is not None:
            session.expires_at = expires_at

        while len(self._sessions) > self.max_sessions:
            oldest = next(iter(self._sessions))
            self._evict(oldest, "capacity")
        return session

    def peek(self, user_id: UUID) -> UserSession | None:
        return self._sessions.get(user_id)

    def drop(self, user_id: UUID) -> None:
        if self._sessions.pop(user_id, None) is not None:
            logger.info("user_session_dropped", user_id=str(user_id))

    def evict_stale(self, now: float | None = None) -> int:
        """Drop every expired or idle session. Returns how many went."""
        now = self.clock() if now is None else now
        self._last_sweep = now
        stale = [
            user_id
            for user_id, session in self._sessions.items()
            if session.is_stale(now, self.idle_seconds)
        ]
        for user_id in stale:
            self._evict(user_id, "expired")
        return len(stale)

    def _evict(self, user_id: UUID, reason: str) -> None:
        del self._sessions[user_id]
        logger.info("user_session_evicted", user_id=str(user_id), reason=reason)

    async def on_session_event(self, event: SessionEvent, user_id: UUID) -> None:
        if event == SessionEvent.SIGNED_OUT:
            self.drop(user_id)

    def __len__(self) -> int:
        return len(self._sessions)


class AppContext:
    """Everything with application lifetime."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        scan_client: RemoteScanClient,
        payments: PaymentGateway,
        identity: IdentityProvider,
        plans: PlanCatalog,
        session_holder: SessionHolder,
        registry: SessionRegistry,
        storage: AvatarStorage,
    ) -> None:
        self.http_client = http_client
        self.scan_client = scan_client
        self.payments = payments
        self.identity = identity
        self.plans = plans
        self.session_holder = session_holder
        self.registry = registry
        self.storage = storage
        self._unsubscribe: Callable[[], None] | None = None

    @classmethod
    def create(cls, settings: Settings) -> "AppContext":
        """Build the context from settings with one shared HTTP client."""
        http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        return cls(
            http_client=http_client,
            scan_client=RemoteScanClient(
                settings.scan_api_root, settings.scan_api_key, http_client=http_client
            ),
            payments=PaystackClient(settings.scan_api_root, http_client=http_client),
            identity=GoTrueIdentityProvider(
                settings.identity_url,
                settings.identity_anon_key,
                settings.identity_jwt_secret,
                reset_redirect=settings.password_reset_redirect,
                jwt_audience=settings.identity_jwt_audience,
                http_client=http_client,
            ),
            plans=PlanCatalog(),
            session_holder=SessionHolder(),
            registry=SessionRegistry(
                settings.recent_results_limit,
                max_sessions=settings.max_user_sessions,
                idle_seconds=settings.session_idle_seconds,
            ),
            storage=ObjectStorageClient(
                settings.identity_url,
                settings.identity_anon_key,
                bucket=settings.avatar_bucket,
                http_client=http_client,
            ),
        )

    def start(self) -> None:
        """Subscribe the session registry to session changes."""
        if self._unsubscribe is None:
            self._unsubscribe = self.session_holder.subscribe(self.registry.on_session_event)

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.http_client.aclose()
        logger.info("app_context_closed")
