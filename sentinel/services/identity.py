"""
Identity provider client and session-change notifications.

Talks to a GoTrue-compatible auth REST API. Provider errors are passed through
unchanged as IdentityProviderError.
"""

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

import httpx
import jwt
from structlog import get_logger

from sentinel.exceptions import IdentityProviderError
from sentinel.models.domain import AuthSession, Identity

logger = get_logger(__name__)


class SessionEvent(str, Enum):
    """Session-change notifications."""

    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"


SessionListener = Callable[[SessionEvent, UUID], Awaitable[None]]


class IdentityProvider(Protocol):
    """Operations the dashboard needs from the identity provider."""

    async def sign_up(self, email: str, password: str, full_name: str | None = None) -> Identity:
        ...

    async def sign_in(self, email: str, password: str) -> AuthSession:
        ...

    async def sign_out(self, access_token: str) -> None:
        ...

    async def reset_password(self, email: str) -> None:
        ...

    async def update_password(self, access_token: str, password: str) -> None:
        ...

    async def get_user(self, access_token: str) -> Identity:
        ...

    def verify_access_token(self, token: str) -> dict[str, Any] | None:
        ...


def identity_from_claims(claims: dict[str, Any]) -> Identity:
    """Build an Identity from verified access token claims."""
    metadata = claims.get("user_metadata") or {}
    return Identity(
        id=UUID(str(claims["sub"])),
        email=claims.get("email") or "",
        full_name=metadata.get("full_name"),
        avatar_url=metadata.get("avatar_url"),
    )


def identity_from_user(user: dict[str, Any]) -> Identity:
    """Build an Identity from a provider user object."""
    metadata = user.get("user_metadata") or {}
    return Identity(
        id=UUID(str(user["id"])),
        email=user.get("email") or "",
        full_name=metadata.get("full_name"),
        avatar_url=metadata.get("avatar_url"),
    )


def _provider_error(response: httpx.Response) -> IdentityProviderError:
    """Map a provider error response onto IdentityProviderError unchanged."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    message = (
        body.get("msg")
        or body.get("message")
        or body.get("error_description")
        or body.get("error")
        or response.text
        or f"Identity provider returned {response.status_code}"
    )
    code = body.get("error_code") or body.get("error")
    return IdentityProviderError(
        str(message),
        status_code=response.status_code,
        provider_code=code if isinstance(code, str) else None,
    )


class GoTrueIdentityProvider:
    """GoTrue REST implementation of IdentityProvider."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        jwt_secret: str,
        reset_redirect: str,
        jwt_audience: str = "authenticated",
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self.auth_url = f"{base_url.rstrip('/')}/auth/v1"
        self.anon_key = anon_key
        self.jwt_secret = jwt_secret
        self.jwt_audience = jwt_audience
        self.reset_redirect = reset_redirect
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        headers = {"apikey": self.anon_key, "Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        response = await self.http_client.request(
            method, f"{self.auth_url}{path}", headers=self._headers(access_token), **kwargs
        )
        if not response.is_success:
            error = _provider_error(response)
            logger.warning(
                "identity_provider_error",
                path=path,
                status=response.status_code,
                code=error.code,
            )
            raise error
        if not response.content:
            return {}
        body = response.json()
        return body if isinstance(body, dict) else {}

    async def sign_up(self, email: str, password: str, full_name: str | None = None) -> Identity:
        """Register a new account. The caller creates the profile."""
        body = await self._request(
            "POST",
            "/signup",
            json={"email": email, "password": password, "data": {"full_name": full_name}},
        )
        # Depending on confirmation settings the user is either top-level or nested
        user = body.get("user") if isinstance(body.get("user"), dict) else body
        identity = identity_from_user(user)
        logger.info("identity_signed_up", user_id=str(identity.id))
        return identity

    async def sign_in(self, email: str, password: str) -> AuthSession:
        """Password grant."""
        body = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        identity = identity_from_user(body["user"])
        logger.info("identity_signed_in", user_id=str(identity.id))
        return AuthSession(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
            identity=identity,
        )

    async def sign_out(self, access_token: str) -> None:
        await self._request("POST", "/logout", access_token=access_token)

    async def reset_password(self, email: str) -> None:
        """Send a reset link that redirects to the dashboard's reset page."""
        await self._request(
            "POST",
            "/recover",
            params={"redirect_to": self.reset_redirect},
            json={"email": email},
        )
        logger.info("password_reset_requested")

    async def update_password(self, access_token: str, password: str) -> None:
        await self._request("PUT", "/user", access_token=access_token, json={"password": password})

    async def get_user(self, access_token: str) -> Identity:
        body = await self._request("GET", "/user", access_token=access_token)
        return identity_from_user(body)

    def verify_access_token(self, token: str) -> dict[str, Any] | None:
        """Verify an access token locally and return its claims."""
        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=["HS256"],
                audience=self.jwt_audience,
            )
            return payload
        except jwt.ExpiredSignatureError:
            logger.warning("access_token_expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning("access_token_invalid", error=str(e))
            return None

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()


class SessionHolder:
    """
    Fan-out of session-change notifications.

    Listeners are awaited in subscription order. A failing listener is logged
    and does not stop the others.
    """

    def __init__(self) -> None:
        self._listeners: list[SessionListener] = []

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener and return a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def notify(self, event: SessionEvent, user_id: UUID) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event, user_id)
            except Exception as e:
                logger.error(
                    "session_listener_failed",
                    session_event=event.value,
                    user_id=str(user_id),
                    error=str(e),
                )
