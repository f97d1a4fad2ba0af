"""Core utilities for the Murmur backend."""

from .storage import MediaStorage, StoredMedia

__all__ = ["MediaStorage", "StoredMedia"]
