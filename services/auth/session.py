"""
Identity provider.

The orchestrator asks for the current session at the start of every request.
No session means AUTH_REQUIRED; nothing is sent to the video provider.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from core.config import SupabaseConfig

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """An authenticated user."""
    user_id: str
    access_token: str
    email: Optional[str] = None


class SessionProvider(Protocol):

    async def get_current_session(self) -> Optional[Session]:
        ...

    async def is_session_valid(self) -> bool:
        ...


class SupabaseSessionProvider:
    """
    Validates a bearer token against Supabase Auth (GET /auth/v1/user).

    Usage:
        sessions = SupabaseSessionProvider(config.supabase)
        session = await sessions.get_current_session()
    """

    def __init__(
        self,
        config: SupabaseConfig,
        access_token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.config = config
        self.access_token = access_token or config.access_token
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

    async def get_current_session(self) -> Optional[Session]:
        """
        Get the session for the configured token.

        Returns:
            Session if Supabase accepts the token, None otherwise
        """
        if not self.access_token or not self.config.url:
            return None

        client = await self._get_client()
        try:
            response = await client.get(
                f"{self.config.url.rstrip('/')}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "apikey": self.config.anon_key,
                },
            )
        except httpx.RequestError as e:
            logger.warning(f"Session check failed: {type(e).__name__}: {e}")
            return None

        if response.status_code != 200:
            logger.info(f"Session rejected: HTTP {response.status_code}")
            return None

        try:
            user = response.json()
        except ValueError as e:
            logger.warning(f"Session check returned an unreadable body: {e}")
            return None

        user_id = user.get("id") if isinstance(user, dict) else None
        if not user_id:
            return None
        return Session(user_id=user_id, access_token=self.access_token, email=user.get("email"))

    async def is_session_valid(self) -> bool:
        return await self.get_current_session() is not None
