"""
Process-wide owner of the shared store handle.
"""

from typing import Optional

from shared.config import BaseConfig
from shared.logging import get_logger
from .client import MemoryStore, RedisStore, SharedStore


STORE_BACKENDS = ("redis", "memory", "none")


class StoreRegistry:
    """Builds the shared store once and hands it to every component.

    The service constructs one registry at startup and passes ``store``
    down explicitly. Backend "none" leaves the store unconfigured: ``store``
    is None and consumers run their degraded paths.
    """

    def __init__(self, config: BaseConfig):
        if config.store_backend not in STORE_BACKENDS:
            raise ValueError(
                f"Unknown store backend '{config.store_backend}', expected one of {STORE_BACKENDS}"
            )
        self.config = config
        self.logger = get_logger("coordination.store_registry")
        self._store: Optional[SharedStore] = None
        self._initialized = False

    @property
    def store(self) -> Optional[SharedStore]:
        """The shared store, created on first access."""
        if not self._initialized:
            self.init()
        return self._store

    @property
    def enabled(self) -> bool:
        return self.config.store_backend != "none"

    def init(self) -> Optional[SharedStore]:
        """Create the store handle. Idempotent; no network I/O happens here."""
        if self._initialized:
            return self._store

        backend = self.config.store_backend
        if backend == "redis":
            self._store = RedisStore(self.config.redis_url, socket_timeout=self.config.store_socket_timeout)
        elif backend == "memory":
            self._store = MemoryStore()
        else:
            self.logger.warning("Shared store disabled, locks and rate limits are not enforced")
            self._store = None

        self._initialized = True
        self.logger.info("Shared store initialized", backend=backend)
        return self._store

    async def close(self) -> None:
        """Close the store's connections.

        The handle itself is kept: components hold it, and it reconnects
        lazily on the next call.
        """
        if self._store is not None:
            await self._store.close()
            self.logger.info("Shared store closed", backend=self.config.store_backend)
