"""
Lazy encryption key resolver for encrypted ORM columns.

StringEncryptedType accepts a callable key that is evaluated at
encrypt/decrypt time, so models import without ENCRYPTION_KEY set and fail
only when an encrypted column is actually read or written.
"""

from typing import Optional

_cached_key: Optional[str] = None


def get_encryption_key() -> str:
    global _cached_key
    if _cached_key is not None:
        return _cached_key

    from app.shared.core.config import get_settings

    key = get_settings().ENCRYPTION_KEY
    if not key:
        raise RuntimeError(
            "ENCRYPTION_KEY not set. Cannot encrypt or decrypt tenant contact data."
        )
    _cached_key = key
    return _cached_key


def clear_encryption_key_cache() -> None:
    """Forget the cached key (tests, key rotation)."""
    global _cached_key
    _cached_key = None
