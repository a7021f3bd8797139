"""
Supabase Storage backend.

Uploads objects to a public bucket over the Storage REST API:
- POST {url}/storage/v1/object/{bucket}/{name}
- public URL: {url}/storage/v1/object/public/{bucket}/{name}
"""

import logging
from typing import Optional, Protocol
from urllib.parse import quote

import httpx

from core.config import SupabaseConfig
from core.errors import StorageError

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    """Where relocated media ends up."""

    async def upload(self, data: bytes, name: str, mime_type: str) -> str:
        """Store `data` under `name` and return its public URL."""
        ...

    def get_public_url(self, name: str) -> str:
        ...


class SupabaseStorage:
    """
    ObjectStorage over a Supabase bucket.

    Usage:
        storage = SupabaseStorage(config.supabase, bucket="designchat")
        url = await storage.upload(data, "2024-01-01_video_ab12cd.mp4", "video/mp4")
    """

    def __init__(
        self,
        config: SupabaseConfig,
        bucket: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 300.0,
    ):
        self.config = config
        self.bucket = bucket
        self.timeout = timeout
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _object_path(self, name: str) -> str:
        return f"{quote(self.bucket)}/{quote(name)}"

    def get_public_url(self, name: str) -> str:
        base = self.config.url.rstrip("/")
        return f"{base}/storage/v1/object/public/{self._object_path(name)}"

    async def upload(self, data: bytes, name: str, mime_type: str) -> str:
        """
        Upload without overwriting an existing object.

        Raises:
            StorageError: the upload was rejected or did not reach the server
        """
        base = self.config.url.rstrip("/")
        token = self.config.access_token or self.config.anon_key
        headers = {
            "Authorization": f"Bearer {token}",
            "apikey": self.config.anon_key,
            "Content-Type": mime_type,
            "x-upsert": "false",
        }

        client = await self._get_client()
        try:
            response = await client.post(
                f"{base}/storage/v1/object/{self._object_path(name)}",
                content=data,
                headers=headers,
            )
        except httpx.RequestError as e:
            raise StorageError(f"Upload of {name} failed: {type(e).__name__}: {e}")

        if response.status_code >= 400:
            raise StorageError(
                f"Upload of {name} rejected: HTTP {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )

        logger.info(f"Uploaded {name} ({len(data) / 1024 / 1024:.2f}MB) to bucket {self.bucket}")
        return self.get_public_url(name)
