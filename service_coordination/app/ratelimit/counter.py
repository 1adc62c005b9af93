"""
Call counter with a ceiling, for guarding sensitive endpoints
(sign-in attempts, 2FA codes, email lookups).
"""

from typing import Optional, TYPE_CHECKING

from shared.config import get_settings, is_test_environment
from shared.errors import StoreUnavailableError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..store import SharedStore


ONE_HOUR_IN_SECONDS = 60 * 60


class RateLimit:
    """At most `limit` registered calls per `cache_key` until the key expires.

    The count is read then written (no atomic increment), so concurrent
    callers can overshoot the limit slightly. Store failures are logged and
    the limiter fails open.
    """

    def __init__(
        self,
        store: Optional["SharedStore"],
        cache_key: str,
        limit: int,
        expiry_seconds: int = ONE_HOUR_IN_SECONDS,
        ignore_in_test_env: bool = False,
        *,
        env: Optional[str] = None,
    ):
        self.store = store
        self.cache_key = cache_key
        self.limit = limit
        self.expiry_seconds = expiry_seconds
        self.ignore_in_test_env = ignore_in_test_env
        self.env = env if env is not None else get_settings().env
        self.logger = get_logger("coordination.rate_limit")

    def _is_ignored(self) -> bool:
        return self.ignore_in_test_env and is_test_environment(self.env)

    async def get_calls_count(self) -> int:
        """Number of calls registered in the current window."""
        if self.store is None:
            return 0
        try:
            count = await self.store.get(self.cache_key)
        except StoreUnavailableError as e:
            self.logger.warning("Rate limit count unavailable", key=self.cache_key, error=str(e))
            return 0
        return int(count) if count else 0

    async def has_reached_limit(self) -> bool:
        """Whether the next call would be rejected."""
        if self._is_ignored():
            return False
        return await self.get_calls_count() >= self.limit

    async def register_call(self, nb_calls: int = 1) -> bool:
        """Record `nb_calls` calls; False (and nothing recorded) if the limit is already reached."""
        if self._is_ignored():
            return True

        count = await self.get_calls_count()
        if count >= self.limit:
            self.logger.info("Rate limit reached", key=self.cache_key, count=count, limit=self.limit)
            return False

        if self.store is not None:
            try:
                await self.store.set(self.cache_key, count + nb_calls, ttl_ms=self.expiry_seconds * 1000)
            except StoreUnavailableError as e:
                self.logger.warning("Failed to register rate limited call", key=self.cache_key, error=str(e))
        return True

    async def reset(self) -> None:
        """Forget every registered call."""
        if self.store is None:
            return
        try:
            await self.store.delete(self.cache_key)
        except StoreUnavailableError as e:
            self.logger.warning("Rate limit reset failed", key=self.cache_key, error=str(e))
