"""
Cache Services

Offline answer cache used when the chat provider is unreachable.
"""

from .offline_cache import CachedResponse, OfflineCache

__all__ = ["CachedResponse", "OfflineCache"]
