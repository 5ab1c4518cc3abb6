"""
Scan Orchestrator - validate, meter, scan, record.

Every scan runs the same sequence: validate the input, require tokens, call
the remote scanner, normalize the answer, record history (which deducts the
tokens) and remember the result on the user session.
"""

import re
from urllib.parse import urlparse

import httpx
from structlog import get_logger

from sentinel.context import UserSession
from sentinel.db.models import utc_now
from sentinel.exceptions import (
    InputValidationError,
    InsufficientTokensError,
    NoTokensAvailableError,
    NotAuthenticatedError,
    PersistenceError,
)
from sentinel.models.api import ContentType, QRScanType, ScanApiResponse
from sentinel.models.domain import ScanRecord, ScanResult
from sentinel.observability.metrics import metrics
from sentinel.services.profile_store import ProfileStore
from sentinel.services.scan_client import RemoteScanClient

logger = get_logger(__name__)

TOKEN_COSTS: dict[ContentType, int] = {
    ContentType.TEXT: 1,
    ContentType.URL: 1,
    ContentType.EMAIL: 1,
    ContentType.QR: 1,
    ContentType.WALLET: 2,
}

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
WALLET_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
ETHEREUM_URI_PATTERN = re.compile(r"^ethereum:(0x[a-fA-F0-9]{40})(?:\?.*)?$")
EMBEDDED_WALLET_PATTERN = re.compile(r"(0x[a-fA-F0-9]{40})")

QR_RAW_DATA_LIMIT = 200


def token_cost(content_type: ContentType) -> int:
    return TOKEN_COSTS[content_type]


def is_url(value: str) -> bool:
    """Absolute URL with a scheme and a network location."""
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return bool(parsed.scheme and parsed.netloc)


def extract_ethereum_address(raw: str) -> str | None:
    """
    Find an Ethereum address in decoded QR content.

    Tries an exact address, then an ``ethereum:`` URI, then any embedded
    address. The result is lowercased.
    """
    data = raw.strip()
    if WALLET_PATTERN.match(data):
        return data.lower()

    uri_match = ETHEREUM_URI_PATTERN.match(data)
    if uri_match:
        return uri_match.group(1).lower()

    if "0x" in data:
        embedded = EMBEDDED_WALLET_PATTERN.search(data)
        if embedded:
            return embedded.group(1).lower()
    return None


def validate_text(raw: str, max_length: int = 1000) -> str:
    text = raw.strip()
    if not text:
        raise InputValidationError("text", "Please enter text to scan")
    if len(text) > max_length:
        return f"{text[:max_length]}..."
    return text


def validate_url(raw: str) -> str:
    url = raw.strip()
    if not url:
        raise InputValidationError("url", "Please enter a URL to scan")
    if not is_url(url):
        raise InputValidationError("url", "Please enter a valid URL")
    return url.lower()


def validate_email(raw: str) -> str:
    email = raw.strip().lower()
    if not email:
        raise InputValidationError("email", "Please enter an email address to scan")
    if not EMAIL_PATTERN.match(email):
        raise InputValidationError("email", "Please enter a valid email address")
    return email


def validate_wallet(raw: str) -> str:
    wallet = raw.strip()
    if not wallet:
        raise InputValidationError("wallet", "Please enter a wallet address to scan")
    if not WALLET_PATTERN.match(wallet):
        raise InputValidationError(
            "wallet", "Please enter a valid Ethereum wallet address (0x + 40 hex chars)"
        )
    return wallet.lower()


class ScanOrchestrator:
    """Runs scans for one signed-in user."""

    def __init__(
        self,
        store: ProfileStore,
        scan_client: RemoteScanClient,
        user_session: UserSession | None = None,
        text_max_length: int = 1000,
    ) -> None:
        self.store = store
        self.scan_client = scan_client
        self.user_session = user_session
        self.text_max_length = text_max_length

    async def require_tokens(self, content_type: ContentType) -> int:
        """
        Check the profile can pay for this content type.

        Returns:
            Number of tokens the scan will cost

        Raises:
            NotAuthenticatedError: No profile loaded
            NoTokensAvailableError: No balance and no active subscription
            InsufficientTokensError: Balance below the cost
        """
        if self.store.profile is None:
            raise NotAuthenticatedError()

        required = token_cost(content_type)
        if not await self.store.check_token_usage():
            raise NoTokensAvailableError()

        # Re-read: check_token_usage may have refreshed the cached balance
        balance = self.store.require_profile().balance
        if balance < required:
            raise InsufficientTokensError(balance, required)
        return required

    async def scan_text(self, raw: str) -> ScanResult:
        text = validate_text(raw, self.text_max_length)
        return await self._execute(ContentType.TEXT, text)

    async def scan_url(self, raw: str) -> ScanResult:
        return await self._execute(ContentType.URL, validate_url(raw))

    async def scan_email(self, raw: str) -> ScanResult:
        return await self._execute(ContentType.EMAIL, validate_email(raw))

    async def scan_wallet(self, raw: str) -> ScanResult:
        return await self._execute(ContentType.WALLET, validate_wallet(raw))

    async def scan_qr(self, raw: str) -> ScanResult:
        """
        Route decoded QR content.

        An Ethereum address runs as a wallet scan and leaves a QR side record.
        Otherwise a URL runs as a URL scan and anything else as text.
        """
        if not raw.strip():
            raise InputValidationError("qr", "Please scan a QR code")

        wallet = extract_ethereum_address(raw)
        if wallet is not None:
            result = await self.scan_wallet(wallet)
            try:
                await self.store.record_qr_scan(
                    wallet,
                    metadata={
                        "source": "web_qr",
                        "raw_data": raw[:QR_RAW_DATA_LIMIT],
                        "tokens_used": result.tokens_used,
                    },
                    scan_type=QRScanType.ETHEREUM,
                )
            except PersistenceError as e:
                # The scan and its deduction already landed
                logger.warning("qr_side_record_failed", wallet=wallet, error=e.message)
            return result

        if is_url(raw):
            return await self.scan_url(raw)
        return await self.scan_text(raw)

    def reset_result(self) -> None:
        if self.user_session is not None:
            self.user_session.reset_result()

    def clear_recent(self) -> None:
        if self.user_session is not None:
            self.user_session.clear_recent()

    async def _execute(self, content_type: ContentType, content: str) -> ScanResult:
        tokens_used = await self.require_tokens(content_type)

        try:
            response = await self.scan_client.scan(content_type, content)
        except httpx.HTTPError as e:
            metrics.record_scan(content_type.value, "unreachable")
            logger.error("remote_scan_unreachable", content_type=content_type.value, error=str(e))
            raise

        result = self._normalize(content_type, content, response, tokens_used)
        await self.store.record_scan(
            ScanRecord(
                content=result.content,
                content_type=result.content_type,
                risk_score=result.risk_score,
                classification=result.classification,
                explanation=result.explanation,
                recommendations=result.recommendations,
            ),
            tokens_used,
        )

        if self.user_session is not None:
            self.user_session.remember(result)

        metrics.record_scan(content_type.value, "success")
        logger.info(
            "scan_completed",
            user_id=str(self.store.user_id),
            content_type=content_type.value,
            risk_score=result.risk_score,
            tokens_used=tokens_used,
        )
        return result

    @staticmethod
    def _normalize(
        content_type: ContentType,
        content: str,
        response: ScanApiResponse,
        tokens_used: int,
    ) -> ScanResult:
        return ScanResult(
            content=content,
            content_type=content_type,
            risk_score=response.risk_score if response.risk_score is not None else "0",
            classification=response.classification
            if response.classification is not None
            else "Unknown",
            explanation=response.explanation if response.explanation is not None else "",
            recommendations=response.recommendations
            if response.recommendations is not None
            else "",
            tokens_used=tokens_used,
            timestamp=utc_now(),
            detected_by=response.detected_by,
        )
