"""
Remote Scan Client - Thin HTTP client for the external risk-scoring API.

One POST per scan, no retries. Non-2xx answers surface as RequestFailedError
carrying the upstream status and body.
"""

import time
from typing import Any

import httpx
from pydantic import ValidationError
from structlog import get_logger

from sentinel.exceptions import RequestFailedError
from sentinel.models.api import ContentType, ScanApiResponse
from sentinel.observability.metrics import metrics
from sentinel.observability.tracing import add_span_attributes, trace_operation

logger = get_logger(__name__)

# Endpoint path and request body key for each remotely scanned content type
SCAN_ENDPOINTS: dict[ContentType, tuple[str, str]] = {
    ContentType.TEXT: ("scan/text", "text"),
    ContentType.URL: ("scan/url", "url"),
    ContentType.EMAIL: ("scan/email", "emailId"),
    ContentType.WALLET: ("scan/wallet", "wallet"),
}


class RemoteScanClient:
    """HTTP client for the scanning backend."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.api_key = api_key
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def forward(self, path: str, payload: Any) -> httpx.Response:
        """
        POST a JSON payload to the backend and return the raw response.

        Used by the same-origin proxy routes, which relay status and body verbatim.
        """
        url = f"{self.base_url}{path.lstrip('/')}"
        return await self.http_client.post(url, json=payload, headers=self._headers())

    async def scan(self, content_type: ContentType, value: str) -> ScanApiResponse:
        """
        Submit one piece of content for scanning.

        Args:
            content_type: text, url, email or wallet
            value: Already validated content

        Returns:
            Parsed scan response

        Raises:
            RequestFailedError: Upstream answered with a non-2xx status
        """
        if content_type not in SCAN_ENDPOINTS:
            raise ValueError(f"No remote endpoint for content type: {content_type.value}")

        path, body_key = SCAN_ENDPOINTS[content_type]
        started = time.perf_counter()

        with trace_operation("remote_scan", content_type=content_type.value) as span:
            response = await self.forward(path, {body_key: value})
            duration = time.perf_counter() - started
            add_span_attributes(span, status_code=response.status_code)

            if not response.is_success:
                logger.warning(
                    "remote_scan_failed",
                    content_type=content_type.value,
                    status=response.status_code,
                    duration_ms=round(duration * 1000, 2),
                )
                metrics.record_scan(content_type.value, "upstream_error", duration)
                raise RequestFailedError(response.status_code, response.text)

            try:
                payload = response.json()
            except ValueError:
                payload = {}
            if not isinstance(payload, dict):
                payload = {}

            try:
                result = ScanApiResponse.model_validate(payload)
            except ValidationError as exc:
                logger.warning(
                    "remote_scan_unparseable",
                    content_type=content_type.value,
                    error=str(exc),
                )
                result = ScanApiResponse()

        logger.info(
            "remote_scan_completed",
            content_type=content_type.value,
            risk_score=result.risk_score,
            duration_ms=round(duration * 1000, 2),
        )
        return result

    async def scan_text(self, text: str) -> ScanApiResponse:
        return await self.scan(ContentType.TEXT, text)

    async def scan_url(self, url: str) -> ScanApiResponse:
        return await self.scan(ContentType.URL, url)

    async def scan_email(self, email: str) -> ScanApiResponse:
        return await self.scan(ContentType.EMAIL, email)

    async def scan_wallet(self, wallet: str) -> ScanApiResponse:
        return await self.scan(ContentType.WALLET, wallet)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
