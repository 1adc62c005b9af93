"""
Distributed locking package.

Locks are plain keys (``lock:<name>``) set atomically in the shared store
with a TTL; the TTL frees the resource if a holder dies mid-section.
"""

from shared.errors import LockAcquisitionError, LockTimeoutError, MutexLockError
from .mutex import LOCK_PREFIX, LockHandle, Mutex

__all__ = [
    "LOCK_PREFIX",
    "LockAcquisitionError",
    "LockHandle",
    "LockTimeoutError",
    "Mutex",
    "MutexLockError",
]
