"""
Shared store package.

The store is the single source of truth for lock, rate limit and cache
state across processes; nothing here caches those values in-process.
"""

from .client import MemoryStore, RedisStore, SharedStore
from .registry import StoreRegistry

__all__ = ["MemoryStore", "RedisStore", "SharedStore", "StoreRegistry"]
