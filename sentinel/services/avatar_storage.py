"""
Avatar Storage - Public object bucket for profile pictures.

Uploads go to a storage-compatible REST API (``/storage/v1/object``) on the
identity provider's host, authorized as the signed-in user.
"""

from typing import Protocol
from urllib.parse import quote

import httpx
from structlog import get_logger

from sentinel.exceptions import StorageError

logger = get_logger(__name__)

DEFAULT_BUCKET = "avatars"


class AvatarStorage(Protocol):
    """Where avatar images live."""

    async def upload(
        self, path: str, content: bytes, content_type: str, access_token: str
    ) -> str:
        """
        Store an object, replacing any object at the same path.

        Returns:
            Public URL of the stored object

        Raises:
            StorageError: If the upload is rejected
        """
        ...


class ObjectStorageClient:
    """Bucket client over the storage REST API."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        bucket: str = DEFAULT_BUCKET,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self.storage_url = f"{base_url.rstrip('/')}/storage/v1"
        self.anon_key = anon_key
        self.bucket = bucket
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def public_url(self, path: str) -> str:
        return f"{self.storage_url}/object/public/{self.bucket}/{quote(path)}"

    async def upload(
        self, path: str, content: bytes, content_type: str, access_token: str
    ) -> str:
        response = await self.http_client.post(
            f"{self.storage_url}/object/{self.bucket}/{quote(path)}",
            content=content,
            headers={
                "apikey": self.anon_key,
                "Authorization": f"Bearer {access_token}",
                "Content-Type": content_type,
                "x-upsert": "true",
            },
        )
        if not response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = {}
            message = (body.get("message") or body.get("error")) if isinstance(body, dict) else None
            logger.error("avatar_upload_failed", status=response.status_code, path=path)
            raise StorageError(
                str(message or response.text or "Avatar upload failed"),
                status_code=response.status_code,
            )

        logger.info("avatar_uploaded", path=path, size=len(content))
        return self.public_url(path)
