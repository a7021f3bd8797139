"""
Media relocation.

Provider URLs expire. The relocator downloads generated media and re-uploads
it to permanent object storage:

1. Download (redirects followed, streamed with a size cap, retried on
   transport errors). Images that refuse a direct fetch are retried through
   public CORS proxies.
2. Check MIME type against the allow-list.
3. Upload as `{YYYY-MM-DD}_{kind}_{random}.{ext}`.

Failures come back as a RelocationResult with an error code; nothing here
raises to the caller.
"""

import logging
import mimetypes
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import quote, urlparse

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.config import StorageConfig
from core.errors import ErrorCode, RelocationError, StorageError
from services.storage import ObjectStorage

from .state import MediaKind

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "video/x-msvideo": "avi",
}

DEFAULT_MIME = {
    MediaKind.VIDEO: "video/mp4",
    MediaKind.IMAGE: "image/jpeg",
}


class TransientFetchError(Exception):
    """Download failure worth retrying (network error, 5xx)."""


@dataclass
class RelocationResult:
    """Result of relocating one media file."""
    success: bool
    permanent_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    size: int = 0
    mime_type: Optional[str] = None


@dataclass
class _Download:
    data: bytes
    mime_type: str


class MediaRelocator:
    """
    Copies media from temporary provider URLs to permanent storage.

    Usage:
        relocator = MediaRelocator(storage, config.storage)
        result = await relocator.relocate(url, MediaKind.VIDEO)
        final_url = result.permanent_url if result.success else url
    """

    def __init__(
        self,
        storage: ObjectStorage,
        config: Optional[StorageConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.storage = storage
        self.config = config or StorageConfig()
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.download_timeout,
                follow_redirects=True,
            )
        return self._http_client

    async def close(self):
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def relocate(self, temporary_url: str, kind: MediaKind) -> RelocationResult:
        """
        Download `temporary_url` and upload it to permanent storage.

        Returns:
            RelocationResult with `permanent_url` on success, or an error
            code (FETCH_FAILED, SIZE_LIMIT_EXCEEDED, MIME_NOT_ALLOWED,
            STORAGE_FAILED) on failure
        """
        kind = MediaKind(kind)
        logger.info(f"Relocating {kind.value}: {temporary_url[:80]}")

        try:
            download = await self._fetch(temporary_url, kind)
        except RelocationError as e:
            logger.warning(f"Relocation of {kind.value} failed at download: {e}")
            return RelocationResult(success=False, error=str(e), error_code=e.error_code)

        if download.mime_type not in self.config.allowed_mime_types:
            logger.warning(f"Relocation of {kind.value} refused MIME type {download.mime_type}")
            return RelocationResult(
                success=False,
                error=f"MIME type not allowed: {download.mime_type}",
                error_code=ErrorCode.MIME_NOT_ALLOWED,
                size=len(download.data),
                mime_type=download.mime_type,
            )

        name = self.generate_file_name(kind, download.mime_type)
        try:
            permanent_url = await self.storage.upload(download.data, name, download.mime_type)
        except StorageError as e:
            logger.warning(f"Relocation of {kind.value} failed at upload: {e}")
            return RelocationResult(
                success=False,
                error=str(e),
                error_code=ErrorCode.STORAGE_FAILED,
                size=len(download.data),
                mime_type=download.mime_type,
            )

        logger.info(f"Relocated {kind.value} to {permanent_url}")
        return RelocationResult(
            success=True,
            permanent_url=permanent_url,
            size=len(download.data),
            mime_type=download.mime_type,
        )

    def generate_file_name(self, kind: MediaKind, mime_type: str) -> str:
        date = datetime.now().strftime("%Y-%m-%d")
        ext = EXTENSIONS.get(mime_type) or mimetypes.guess_extension(mime_type) or "bin"
        return f"{date}_{kind.value}_{uuid.uuid4().hex[:8]}.{ext.lstrip('.')}"

    # --------------------------------------------------------------------------------
    # Download
    # --------------------------------------------------------------------------------

    async def _fetch(self, url: str, kind: MediaKind) -> _Download:
        """Download directly, then through proxies for images."""
        try:
            return await self._download_with_retry(url, url, kind)
        except RelocationError as e:
            if kind is not MediaKind.IMAGE or e.error_code != ErrorCode.FETCH_FAILED:
                raise
            direct_error = e

        for template in self.config.proxy_services:
            proxy_url = template.format(url=quote(url, safe=""), raw_url=url)
            try:
                logger.info(f"Retrying image download via proxy {urlparse(proxy_url).netloc}")
                return await self._download_with_retry(proxy_url, url, kind)
            except RelocationError as e:
                if e.error_code != ErrorCode.FETCH_FAILED:
                    raise
                logger.warning(f"Proxy {urlparse(proxy_url).netloc} failed: {e}")

        raise direct_error

    async def _download_with_retry(self, url: str, source_url: str, kind: MediaKind) -> _Download:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.download_attempts),
            wait=wait_exponential(
                multiplier=1,
                min=self.config.download_retry_min_wait,
                max=self.config.download_retry_max_wait,
            ),
            retry=retry_if_exception_type(TransientFetchError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._download(url, source_url, kind)
        except TransientFetchError as e:
            raise RelocationError(
                f"Download failed after {self.config.download_attempts} attempts: {e}",
                error_code=ErrorCode.FETCH_FAILED,
            )

    async def _download(self, url: str, source_url: str, kind: MediaKind) -> _Download:
        """
        One streamed GET with the size cap applied.

        Raises:
            TransientFetchError: transport failure or 5xx
            RelocationError: any other failure, redirect loops included (not retried)
        """
        max_size = self.config.max_file_size
        client = await self._get_client()

        try:
            async with client.stream("GET", url, follow_redirects=True) as response:
                if response.status_code >= 500:
                    raise TransientFetchError(f"HTTP {response.status_code}")
                if response.status_code >= 400:
                    raise RelocationError(
                        f"Download refused: HTTP {response.status_code}",
                        error_code=ErrorCode.FETCH_FAILED,
                    )

                content_length = response.headers.get("content-length")
                if content_length and content_length.isdigit() and int(content_length) > max_size:
                    raise RelocationError(
                        f"File too large: {int(content_length) / 1024 / 1024:.2f}MB",
                        error_code=ErrorCode.SIZE_LIMIT_EXCEEDED,
                    )

                mime_type = self._resolve_mime_type(
                    response.headers.get("content-type"), source_url, kind
                )

                data = bytearray()
                async for chunk in response.aiter_bytes():
                    data.extend(chunk)
                    if len(data) > max_size:
                        raise RelocationError(
                            f"File exceeds {max_size / 1024 / 1024:.0f}MB limit",
                            error_code=ErrorCode.SIZE_LIMIT_EXCEEDED,
                        )
        except httpx.TransportError as e:
            raise TransientFetchError(f"{type(e).__name__}: {e}")
        except (httpx.RequestError, httpx.InvalidURL) as e:
            # Redirect loops and malformed URLs will not get better on retry
            raise RelocationError(
                f"Download failed: {type(e).__name__}: {e}",
                error_code=ErrorCode.FETCH_FAILED,
            )

        logger.debug(f"Downloaded {len(data) / 1024 / 1024:.2f}MB ({mime_type})")
        return _Download(data=bytes(data), mime_type=mime_type)

    def _resolve_mime_type(
        self,
        content_type: Optional[str],
        source_url: str,
        kind: MediaKind,
    ) -> str:
        mime_type = (content_type or "").split(";")[0].strip().lower()
        if mime_type and mime_type != "application/octet-stream":
            return mime_type

        # Object stores often serve generic types; fall back to the file extension
        guessed, _ = mimetypes.guess_type(urlparse(source_url).path)
        return guessed or DEFAULT_MIME[kind]
