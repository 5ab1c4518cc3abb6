"""
Tests for the HTTP surface.

Runs the real application with database dependencies overridden and an
AppContext built from mocks. The lifespan is not started.
"""

from collections.abc import Callable, Iterator
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.sql.dml import Update

from sentinel.context import AppContext, SessionRegistry
from sentinel.exceptions import PaymentInitError, RequestFailedError
from sentinel.models.api import ScanApiResponse
from sentinel.models.domain import PaymentAuthorization, PendingPayment
from sentinel.services.identity import GoTrueIdentityProvider, SessionHolder
from sentinel.services.plans import PlanCatalog

from conftest import TEST_JWT_SECRET, compiled, make_result

WALLET = "0x" + "a" * 40
AVATAR_URL = "https://auth.test/storage/v1/object/public/avatars/me.png"


def identity_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/logout"):
        return httpx.Response(500, json={"msg": "logout failed"})
    return httpx.Response(200, json={})


@pytest.fixture
def app_context(mock_scan_client: AsyncMock) -> AppContext:
    """Application context with mocked upstream clients."""
    identity = GoTrueIdentityProvider(
        "https://auth.test",
        anon_key="anon",
        jwt_secret=TEST_JWT_SECRET,
        reset_redirect="https://app.test/reset-password",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(identity_handler)),
    )
    mock_scan_client.forward = AsyncMock(
        return_value=httpx.Response(200, content=b'{"riskScore": 12}')
    )
    payments = MagicMock()
    payments.initialize_payment = AsyncMock(
        return_value=PaymentAuthorization("https://pay.test/x", "ref_1")
    )
    payments.verify_payment = AsyncMock(return_value=False)
    storage = MagicMock()
    storage.upload = AsyncMock(return_value=AVATAR_URL)

    context = AppContext(
        http_client=MagicMock(),
        scan_client=mock_scan_client,
        payments=payments,
        identity=identity,
        plans=PlanCatalog(),
        session_holder=SessionHolder(),
        registry=SessionRegistry(),
        storage=storage,
    )
    context.start()
    return context


@pytest.fixture
def app(app_context: AppContext, db_session: AsyncMock) -> Iterator[FastAPI]:
    """Application with the mocked context and database."""
    from sentinel.db.session import get_read_db, get_write_db
    from sentinel.main import app as main_app

    async def override_db():
        yield db_session

    main_app.state.context = app_context
    main_app.dependency_overrides[get_write_db] = override_db
    main_app.dependency_overrides[get_read_db] = override_db
    yield main_app
    main_app.dependency_overrides.clear()


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture
def auth_headers(access_token_factory: Callable[..., str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token_factory()}"}


@pytest.fixture
def with_profile(db_session: AsyncMock, profile_row_factory):
    """Make every query return the given profile row and no list rows."""

    def _configure(**row_fields) -> MagicMock:
        row = profile_row_factory(**row_fields)
        db_session.execute = AsyncMock(return_value=make_result(scalar=row))
        return row

    return _configure


def db_error() -> OperationalError:
    return OperationalError("SELECT", {}, Exception("down"))


def checkout(plan_id: str | None = None, tokens: int | None = None) -> PendingPayment:
    return PendingPayment(
        authorization=PaymentAuthorization("https://pay.test/x", "ref_1"),
        amount=29.0,
        plan_id=plan_id,
        tokens=tokens,
    )


def executed_updates(db_session: AsyncMock) -> list[Update]:
    statements = [call.args[0] for call in db_session.execute.call_args_list]
    return [stmt for stmt in statements if isinstance(stmt, Update)]


class TestAuthentication:
    """Bearer token handling."""

    def test_missing_token(self, client):
        response = client.get("/v1/profile")

        assert response.status_code == 401
        assert response.json() == {
            "detail": "Please sign in to use the scanner",
            "code": "not_authenticated",
        }

    def test_invalid_token(self, client, access_token_factory):
        token = access_token_factory(secret="some-other-secret-value-long-enough")
        response = client.get("/v1/profile", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired access token"


class TestProfileRoutes:
    """Profile endpoints."""

    def test_get_profile(self, client, auth_headers, with_profile):
        with_profile(tokens_remaining=5, subscription_plan_id="pro", subscription_status="active")

        response = client.get("/v1/profile", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["tokens_remaining"] == 5
        assert body["subscription_plan"]["name"] == "Pro"

    def test_session_tracks_token_expiry(
        self, client, access_token_factory, with_profile, app_context, user_id
    ):
        with_profile()
        token = access_token_factory(expires_in=600)

        client.get("/v1/profile", headers={"Authorization": f"Bearer {token}"})

        claims = app_context.identity.verify_access_token(token)
        assert app_context.registry.peek(user_id).expires_at == float(claims["exp"])

    def test_upload_avatar(self, client, auth_headers, with_profile, app_context, user_id):
        with_profile(avatar_url=AVATAR_URL)

        response = client.put(
            "/v1/profile/avatar",
            params={"filename": "me.png"},
            content=b"\x89PNG",
            headers={**auth_headers, "Content-Type": "image/png"},
        )

        assert response.status_code == 200
        assert response.json()["avatar_url"] == AVATAR_URL
        path, content, content_type, token = app_context.storage.upload.await_args.args
        assert path.startswith(f"{user_id}-") and path.endswith(".png")
        assert (content, content_type) == (b"\x89PNG", "image/png")
        assert token == auth_headers["Authorization"].removeprefix("Bearer ")

    def test_upload_avatar_rejects_non_image(self, client, auth_headers, with_profile, app_context):
        with_profile()

        response = client.put(
            "/v1/profile/avatar",
            content=b"hello",
            headers={**auth_headers, "Content-Type": "text/plain"},
        )

        assert response.status_code == 422
        app_context.storage.upload.assert_not_awaited()

    def test_upload_avatar_requires_auth(self, client, app_context):
        response = client.put("/v1/profile/avatar", content=b"\x89PNG")

        assert response.status_code == 401
        app_context.storage.upload.assert_not_awaited()

    def test_profile_created_on_first_access(self, client, auth_headers):
        response = client.get("/v1/profile", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["tokens_remaining"] == 2
        assert response.json()["subscription_status"] == "inactive"

    def test_token_balance(self, client, auth_headers, db_session, profile_row_factory):
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(),
                make_result(scalar=profile_row_factory(tokens_remaining=3)),
                make_result(scalar=7),
            ]
        )

        response = client.get("/v1/profile/tokens", headers=auth_headers)

        assert response.json() == {"tokens_remaining": 7, "has_tokens": True, "can_scan": True}


class TestScanRoutes:
    """Scan endpoints and error mapping."""

    def test_text_scan(self, client, auth_headers, with_profile, app_context):
        with_profile(tokens_remaining=5)

        response = client.post(
            "/v1/scans/text", json={"content": "Win a prize now"}, headers=auth_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["risk_score"] == "45"
        assert body["risk_band"] == "medium"
        assert body["tokens_used"] == 1

        latest = client.get("/v1/scans/latest", headers=auth_headers)
        assert latest.json()["content"] == "Win a prize now"

    def test_wallet_with_one_token(self, client, auth_headers, with_profile, mock_scan_client):
        with_profile(tokens_remaining=1)

        response = client.post("/v1/scans/wallet", json={"content": WALLET}, headers=auth_headers)

        assert response.status_code == 402
        assert response.json()["code"] == "insufficient_tokens"
        mock_scan_client.scan.assert_not_awaited()

    def test_no_tokens(self, client, auth_headers, with_profile):
        with_profile(tokens_remaining=0)

        response = client.post("/v1/scans/text", json={"content": "hi"}, headers=auth_headers)

        assert response.status_code == 402
        assert response.json()["code"] == "no_tokens_available"

    def test_invalid_url(self, client, auth_headers, with_profile):
        with_profile()

        response = client.post("/v1/scans/url", json={"content": "nope"}, headers=auth_headers)

        assert response.status_code == 422
        assert response.json()["detail"] == "Please enter a valid URL"

    def test_upstream_failure_relayed(self, client, auth_headers, with_profile, mock_scan_client):
        with_profile()
        mock_scan_client.scan = AsyncMock(side_effect=RequestFailedError(503, "scanner busy"))

        response = client.post("/v1/scans/text", json={"content": "hi"}, headers=auth_headers)

        assert response.status_code == 503
        assert response.text == "scanner busy"

    def test_upstream_unreachable(self, client, auth_headers, with_profile, mock_scan_client):
        with_profile()
        mock_scan_client.scan = AsyncMock(side_effect=httpx.ConnectError("down"))

        response = client.post("/v1/scans/text", json={"content": "hi"}, headers=auth_headers)

        assert response.status_code == 502

    def test_no_latest_result(self, client, auth_headers, with_profile):
        with_profile()

        assert client.get("/v1/scans/latest", headers=auth_headers).status_code == 404

    def test_recent_results(self, client, auth_headers, with_profile):
        with_profile(tokens_remaining=5)
        client.post("/v1/scans/text", json={"content": "one"}, headers=auth_headers)
        client.post("/v1/scans/text", json={"content": "two"}, headers=auth_headers)

        recent = client.get("/v1/scans/recent", headers=auth_headers).json()["results"]
        assert [r["content"] for r in recent] == ["two", "one"]

        client.delete("/v1/scans/recent", headers=auth_headers)
        assert client.get("/v1/scans/recent", headers=auth_headers).json()["results"] == []


class TestHistoryRoutes:
    """History endpoints."""

    def test_stats_use_camel_case(
        self, client, auth_headers, db_session, profile_row_factory, scan_row_factory
    ):
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(),
                make_result(scalar=profile_row_factory()),
                make_result(rows=[scan_row_factory(risk_score="90")]),
            ]
        )

        body = client.get("/v1/history/stats", headers=auth_headers).json()

        assert body["totalScans"] == 1
        assert body["riskAvg"] == 90
        assert body["byRisk"]["critical"] == 1

    def test_history_degrades_to_empty(
        self, client, auth_headers, db_session, profile_row_factory
    ):
        db_session.execute = AsyncMock(
            side_effect=[make_result(), make_result(scalar=profile_row_factory()), db_error()]
        )

        response = client.get("/v1/history?search=paypal", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["scans"] == []
        assert response.json()["stats"]["totalScans"] == 0

    def test_csv_export(
        self, client, auth_headers, db_session, profile_row_factory, scan_row_factory
    ):
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(),
                make_result(scalar=profile_row_factory()),
                make_result(rows=[scan_row_factory()]),
            ]
        )

        response = client.get("/v1/history/export?format=csv", headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "scan-history.csv" in response.headers["content-disposition"]
        assert response.text.startswith("Date,Content Type")

    def test_delete_missing_item(self, client, auth_headers, db_session, profile_row_factory):
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(),
                make_result(scalar=profile_row_factory()),
                make_result(rowcount=0),
            ]
        )

        response = client.delete(
            "/v1/history/22222222-2222-2222-2222-222222222222", headers=auth_headers
        )

        assert response.status_code == 404


class TestBillingRoutes:
    """Plans, subscriptions and payments."""

    def test_list_plans_defaults(self, client):
        response = client.get("/v1/plans")

        assert response.status_code == 200
        assert [p["id"] for p in response.json()] == ["basic", "standard", "pro", "business"]

    def test_subscribe_without_checkout(self, client, auth_headers, with_profile):
        with_profile()

        response = client.post(
            "/v1/subscription", json={"reference": "ref_1"}, headers=auth_headers
        )

        assert response.status_code == 404
        assert response.json()["code"] == "row_not_found"

    def test_unpaid_subscribe_rejected(
        self, client, auth_headers, with_profile, app_context, db_session, user_id
    ):
        with_profile(tokens_remaining=0)
        app_context.registry.get(user_id).pending_payment = checkout(plan_id="business")

        response = client.post(
            "/v1/subscription", json={"reference": "ref_1"}, headers=auth_headers
        )

        assert response.status_code == 402
        assert response.json()["code"] == "payment_not_verified"
        app_context.payments.verify_payment.assert_awaited_once_with("ref_1")
        assert not executed_updates(db_session)
        assert app_context.registry.get(user_id).pending_payment is not None

    def test_unpaid_refill_rejected(
        self, client, auth_headers, with_profile, app_context, db_session, user_id
    ):
        with_profile(tokens_remaining=0)
        app_context.registry.get(user_id).pending_payment = checkout(tokens=100_000)

        response = client.post(
            "/v1/tokens/refill", json={"reference": "ref_1"}, headers=auth_headers
        )

        assert response.status_code == 402
        assert not executed_updates(db_session)

    def test_refill_amount_not_accepted_from_client(
        self, client, auth_headers, with_profile, db_session
    ):
        with_profile(tokens_remaining=0)

        response = client.post("/v1/tokens/refill", json={"tokens": 100_000}, headers=auth_headers)

        assert response.status_code == 422
        assert not executed_updates(db_session)

    def test_paid_subscribe_uses_checkout_plan(
        self, client, auth_headers, with_profile, app_context, db_session, user_id
    ):
        with_profile(tokens_remaining=5)
        app_context.payments.verify_payment = AsyncMock(return_value=True)
        app_context.registry.get(user_id).pending_payment = checkout(plan_id="standard")

        response = client.post(
            "/v1/subscription", json={"reference": "ref_1"}, headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["subscription_plan"]["id"] == "standard"
        (update_stmt,) = executed_updates(db_session)
        assert compiled(update_stmt).params["tokens_remaining"] == 115
        assert app_context.registry.get(user_id).pending_payment is None

    def test_refill_rejects_subscription_checkout(
        self, client, auth_headers, with_profile, app_context, db_session, user_id
    ):
        with_profile()
        app_context.payments.verify_payment = AsyncMock(return_value=True)
        app_context.registry.get(user_id).pending_payment = checkout(plan_id="standard")

        response = client.post(
            "/v1/tokens/refill", json={"reference": "ref_1"}, headers=auth_headers
        )

        assert response.status_code == 422
        assert not executed_updates(db_session)

    def test_start_payment(self, client, auth_headers, with_profile, app_context, user_id):
        with_profile()

        response = client.post(
            "/v1/payments", json={"amount": 9.9, "plan_id": "standard"}, headers=auth_headers
        )

        assert response.status_code == 201
        assert response.json() == {"authorization_url": "https://pay.test/x", "reference": "ref_1"}
        assert app_context.registry.get(user_id).pending_payment.reference == "ref_1"

    def test_unverified_payment_reports_message(self, client, auth_headers, with_profile):
        with_profile()

        response = client.post("/v1/payments/ref_1/verify", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {
            "verified": False,
            "message": "Payment not yet verified, try again",
        }

    def test_verify_credits_own_checkout(
        self, client, auth_headers, with_profile, app_context, db_session, user_id
    ):
        with_profile(tokens_remaining=5)
        app_context.payments.verify_payment = AsyncMock(return_value=True)
        app_context.registry.get(user_id).pending_payment = checkout(tokens=50)

        response = client.post("/v1/payments/ref_1/verify", headers=auth_headers)

        assert response.json() == {"verified": True, "message": None}
        (update_stmt,) = executed_updates(db_session)
        assert compiled(update_stmt).params["tokens_remaining"] == 55

    def test_start_payment_underpriced(self, client, auth_headers, with_profile, app_context):
        with_profile()

        response = client.post(
            "/v1/payments", json={"amount": 0.5, "plan_id": "business"}, headers=auth_headers
        )

        assert response.status_code == 422
        app_context.payments.initialize_payment.assert_not_awaited()

    def test_start_payment_unknown_plan(self, client, auth_headers, with_profile):
        with_profile()

        response = client.post(
            "/v1/payments", json={"amount": 99.0, "plan_id": "platinum"}, headers=auth_headers
        )

        assert response.status_code == 404
        assert response.json()["code"] == "plan_not_found"


class TestProxyRoutes:
    """Same-origin proxy endpoints."""

    def test_scan_forwarded_verbatim(self, client, mock_scan_client):
        mock_scan_client.forward = AsyncMock(
            return_value=httpx.Response(429, content=b'{"error":"slow down"}')
        )

        response = client.post("/api/scan/url", json={"url": "https://example.com"})

        mock_scan_client.forward.assert_awaited_once_with(
            "scan/url", {"url": "https://example.com"}
        )
        assert response.status_code == 429
        assert response.content == b'{"error":"slow down"}'

    def test_bad_json_body(self, client):
        response = client.post(
            "/api/scan/text", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert "error" in response.json()

    def test_unknown_kind(self, client):
        assert client.post("/api/scan/qr", json={}).status_code == 404

    def test_payment_init(self, client):
        response = client.post("/api/paystack/init", json={"amount": 5, "email": "a@b.co"})

        assert response.status_code == 200
        assert response.json()["reference"] == "ref_1"

    def test_payment_init_error_relayed(self, client, app_context):
        app_context.payments.initialize_payment = AsyncMock(
            side_effect=PaymentInitError("Invalid email", status_code=400)
        )

        response = client.post("/api/paystack/init", json={"amount": 5, "email": "bad"})

        assert response.status_code == 400
        assert response.text == "Invalid email"

    def test_payment_verify(self, client, app_context):
        app_context.payments.verify_payment = AsyncMock(return_value=True)

        response = client.get("/api/paystack/verify/ref_1")

        assert response.json()["verified"] is True


class TestAuthRoutes:
    """Session lifecycle."""

    def test_sign_out_drops_session_even_on_provider_error(
        self, client, auth_headers, app_context, user_id
    ):
        app_context.registry.get(user_id)

        response = client.post("/v1/auth/signout", headers=auth_headers)

        assert response.status_code == 500
        assert response.json()["detail"] == "logout failed"
        assert app_context.registry.peek(user_id) is None


class TestStatusRoutes:
    """Health and root endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    def test_health_db_down(self, client, db_session):
        db_session.execute = AsyncMock(side_effect=db_error())

        assert client.get("/health").status_code == 503

    def test_root(self, client):
        assert client.get("/").json()["status"] == "running"

    def test_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "sentinel_http_requests_total" in response.text
