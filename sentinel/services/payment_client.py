"""
Payment Gateway - Provider-agnostic interface and the Paystack relay client.

Paystack is reached through the scanning backend, which holds the gateway secret.
"""

from typing import Any, Protocol
from urllib.parse import quote

import httpx
from structlog import get_logger

from sentinel.exceptions import PaymentInitError, PaymentVerifyError
from sentinel.models.domain import PaymentAuthorization
from sentinel.observability.metrics import metrics

logger = get_logger(__name__)


class PaymentGateway(Protocol):
    """
    Payment gateway protocol.

    The store only needs to start a checkout and ask whether it completed.
    """

    async def initialize_payment(
        self, amount: float, email: str, metadata: dict[str, Any] | None = None
    ) -> PaymentAuthorization:
        """
        Start a checkout.

        Raises:
            PaymentInitError: If the gateway rejects the request
        """
        ...

    async def verify_payment(self, reference: str) -> bool:
        """
        Check whether a checkout succeeded.

        Raises:
            PaymentVerifyError: If verification could not be performed
        """
        ...


def _error_text(response: httpx.Response, fallback: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or fallback
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, str) and message:
            return message
    return response.text or fallback


class PaystackClient:
    """
    Paystack implementation of PaymentGateway.

    Relays through ``{base}paystack/init`` and ``{base}paystack/verify/{reference}``.
    """

    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def initialize_payment(
        self, amount: float, email: str, metadata: dict[str, Any] | None = None
    ) -> PaymentAuthorization:
        """
        Initialize a Paystack transaction.

        Args:
            amount: Amount in major currency units
            email: Customer email
            metadata: Opaque metadata echoed back by the gateway

        Returns:
            Authorization URL and transaction reference

        Raises:
            PaymentInitError: Non-2xx answer or missing fields
        """
        logger.info("initializing_payment", amount=amount, email=email)

        response = await self.http_client.post(
            f"{self.base_url}paystack/init",
            json={"amount": amount, "email": email, "metadata": metadata or {}},
        )

        if not response.is_success:
            message = _error_text(response, "Payment initialization failed")
            logger.error(
                "payment_init_failed", status=response.status_code, error=message
            )
            metrics.record_payment("init", "failed")
            raise PaymentInitError(message, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            metrics.record_payment("init", "failed")
            raise PaymentInitError("Payment gateway returned invalid JSON") from exc

        # Gateway responses may or may not be wrapped in a "data" envelope
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            data = body if isinstance(body, dict) else {}

        authorization_url = data.get("authorization_url")
        reference = data.get("reference")
        if not authorization_url or not reference:
            logger.error("payment_init_incomplete", body=body)
            metrics.record_payment("init", "failed")
            raise PaymentInitError("Payment gateway response missing authorization details")

        logger.info("payment_initialized", reference=reference)
        metrics.record_payment("init", "success")
        return PaymentAuthorization(
            authorization_url=str(authorization_url), reference=str(reference)
        )

    async def verify_payment(self, reference: str) -> bool:
        """
        Verify a Paystack transaction.

        Returns:
            True only if the gateway reports status true and data.status "success"

        Raises:
            PaymentVerifyError: Non-2xx answer
        """
        response = await self.http_client.get(
            f"{self.base_url}paystack/verify/{quote(reference, safe='')}"
        )

        if not response.is_success:
            message = _error_text(response, "Payment verification failed")
            logger.error(
                "payment_verify_failed",
                reference=reference,
                status=response.status_code,
                error=message,
            )
            metrics.record_payment("verify", "failed")
            raise PaymentVerifyError(message, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            metrics.record_payment("verify", "failed")
            raise PaymentVerifyError("Payment gateway returned invalid JSON") from exc

        verified = False
        if isinstance(body, dict) and body.get("status") is True:
            data = body.get("data")
            verified = isinstance(data, dict) and data.get("status") == "success"

        logger.info("payment_verification_checked", reference=reference, verified=verified)
        metrics.record_payment("verify", "verified" if verified else "pending")
        return verified

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
