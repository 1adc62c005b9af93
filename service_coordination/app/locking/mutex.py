"""
Distributed mutex built on the shared store's atomic set-if-absent.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar, TYPE_CHECKING

from shared.errors import LockAcquisitionError, LockTimeoutError, StoreUnavailableError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector
    from ..store import SharedStore


T = TypeVar("T")

LOCK_PREFIX = "lock:"
LOCK_SENTINEL = 1

DEFAULT_LOCK_ACQUIRE_TIMEOUT_MS = 15 * 1000
DEFAULT_UNLOCK_TIMEOUT_MS = 10 * 60 * 1000
DEFAULT_RETRY_DELAY_MS = 100


class LockHandle:
    """An acquired (or degraded) lock.

    ``release`` deletes the lock key at most once, so it can be awaited
    early from inside the critical section and again on exit.
    """

    def __init__(self, key: str, store: Optional["SharedStore"], logger: Any):
        self.key = key
        self.store_key = f"{LOCK_PREFIX}{key}"
        self._store = store
        self._logger = logger
        self._released = False

    @property
    def degraded(self) -> bool:
        """True when the section runs without a lock (store down or unconfigured)."""
        return self._store is None

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        """Release the lock."""
        if self._released:
            return
        self._released = True
        if self._store is None:
            return

        try:
            await self._store.delete(self.store_key)
        except StoreUnavailableError as e:
            self._logger.error(
                "Failed to release lock, it will expire with its TTL",
                lock=self.key,
                error=str(e),
            )


class Mutex:
    """Mutual exclusion across every process sharing the store.

    Waiters poll; there is no queue, so the next holder is whichever
    retry lands first after a release.
    """

    def __init__(
        self,
        store: Optional["SharedStore"],
        *,
        metrics: Optional["MetricsCollector"] = None,
        lock_acquire_timeout_ms: int = DEFAULT_LOCK_ACQUIRE_TIMEOUT_MS,
        unlock_timeout_ms: int = DEFAULT_UNLOCK_TIMEOUT_MS,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
    ):
        self.store = store
        self.metrics = metrics
        self.lock_acquire_timeout_ms = lock_acquire_timeout_ms
        self.unlock_timeout_ms = unlock_timeout_ms
        self.retry_delay_ms = retry_delay_ms
        self.logger = get_logger("coordination.mutex")

    async def lock_until_resolved(
        self,
        key: str,
        work: Callable[[], Awaitable[T]],
        *,
        lock_acquire_timeout_ms: Optional[int] = None,
        unlock_timeout_ms: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        metric_name: Optional[str] = None,
    ) -> T:
        """
        Wait for the lock on `key`, run `work` and release.

        Raises:
            LockTimeoutError: lock still held after lock_acquire_timeout_ms;
                `work` was not run.
        """
        async with self.hold(
            key,
            wait=True,
            lock_acquire_timeout_ms=lock_acquire_timeout_ms,
            unlock_timeout_ms=unlock_timeout_ms,
            retry_delay_ms=retry_delay_ms,
            metric_name=metric_name,
        ):
            return await work()

    async def lock_until_or_throw(
        self,
        key: str,
        work: Callable[[], Awaitable[T]],
        *,
        unlock_timeout_ms: Optional[int] = None,
        metric_name: Optional[str] = None,
    ) -> T:
        """
        Take the lock on `key` in a single attempt, run `work` and release.

        Raises:
            LockAcquisitionError: lock already held; `work` was not run.
        """
        async with self.hold(key, wait=False, unlock_timeout_ms=unlock_timeout_ms, metric_name=metric_name):
            return await work()

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        *,
        wait: bool = True,
        lock_acquire_timeout_ms: Optional[int] = None,
        unlock_timeout_ms: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        metric_name: Optional[str] = None,
    ) -> AsyncIterator[LockHandle]:
        """Hold the lock on `key` for the duration of the block.

        `metric_name` labels the wait-time metric instead of `key`; pass a
        bounded name (e.g. "order") when keys embed identifiers.
        """
        handle = await self._acquire(
            key,
            wait=wait,
            acquire_timeout_ms=self._or_default(lock_acquire_timeout_ms, self.lock_acquire_timeout_ms),
            unlock_timeout_ms=self._or_default(unlock_timeout_ms, self.unlock_timeout_ms),
            retry_delay_ms=self._or_default(retry_delay_ms, self.retry_delay_ms),
            metric_name=metric_name or key,
        )
        try:
            yield handle
        finally:
            await handle.release()

    async def _acquire(
        self,
        key: str,
        *,
        wait: bool,
        acquire_timeout_ms: int,
        unlock_timeout_ms: int,
        retry_delay_ms: int,
        metric_name: str,
    ) -> LockHandle:
        if self.store is None:
            self.logger.warning("Shared store not configured, running without lock", lock=key)
            self._record_outcome("degraded")
            return LockHandle(key, None, self.logger)

        store_key = f"{LOCK_PREFIX}{key}"
        start = time.monotonic()

        while True:
            try:
                acquired = await self.store.set(
                    store_key,
                    LOCK_SENTINEL,
                    ttl_ms=unlock_timeout_ms,
                    only_if_absent=True,
                )
            except StoreUnavailableError as e:
                self.logger.warning(
                    "Shared store unavailable, running without lock",
                    lock=key,
                    error=str(e),
                )
                self._record_outcome("degraded")
                return LockHandle(key, None, self.logger)

            elapsed_ms = (time.monotonic() - start) * 1000

            if acquired:
                self._record_wait(metric_name, elapsed_ms)
                self._record_outcome("acquired")
                return LockHandle(key, self.store, self.logger)

            if not wait:
                self._record_outcome("contended")
                raise LockAcquisitionError(key)

            if elapsed_ms > acquire_timeout_ms:
                self._record_wait(metric_name, elapsed_ms)
                self._record_outcome("timeout")
                self.logger.warning("Timeout acquiring lock", lock=key, waited_ms=round(elapsed_ms, 2))
                raise LockTimeoutError(key, acquire_timeout_ms)

            # Never sleep past the deadline; the next attempt is the last one.
            remaining_ms = acquire_timeout_ms - elapsed_ms
            await asyncio.sleep(max(0.0, min(retry_delay_ms, remaining_ms + 1)) / 1000)

    @staticmethod
    def _or_default(value: Optional[int], default: int) -> int:
        return default if value is None else value

    def _record_wait(self, metric_name: str, elapsed_ms: float) -> None:
        if self.metrics:
            self.metrics.observe_histogram("lock_wait_duration_seconds", elapsed_ms / 1000, lock=metric_name)

    def _record_outcome(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("lock_acquisitions_total", outcome=outcome)
