"""Session lookup for generation requests."""

from .session import Session, SessionProvider, SupabaseSessionProvider

__all__ = [
    "Session",
    "SessionProvider",
    "SupabaseSessionProvider",
]
