"""Object storage for relocated media."""

from .supabase_storage import ObjectStorage, SupabaseStorage

__all__ = [
    "ObjectStorage",
    "SupabaseStorage",
]
