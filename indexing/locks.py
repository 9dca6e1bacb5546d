"""Time-bounded dedup locks for units of work the service reports as busy."""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL = 30.0
DEFAULT_SWEEP_INTERVAL = 10.0

LockKey = Tuple[str, str, str]


@dataclass
class DeliveryLock:
    """Records that the service rejected ``chunk_id`` as already in progress."""

    chunk_id: str
    owner: str
    device: str
    acquired_at: float
    ttl: float

    @property
    def key(self) -> LockKey:
        return (self.chunk_id, self.owner, self.device)

    @property
    def expires_at(self) -> float:
        return self.acquired_at + self.ttl

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)

    def to_dict(self, now: float) -> Dict:
        return {
            'chunk_id': self.chunk_id,
            'owner': self.owner,
            'device': self.device,
            'acquired_at': self.acquired_at,
            'remaining': self.remaining(now),
        }


class DedupLockRegistry:
    """Map of (chunk, owner, device) to the time the service said "busy".

    At most one unexpired lock exists per key. Expired entries are purged by
    ``sweep()``, which a background task runs every ``sweep_interval`` seconds
    once ``start_sweeper()`` was called from inside an event loop.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_LOCK_TTL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl <= 0 or sweep_interval <= 0:
            raise ValueError("ttl and sweep_interval must be positive")
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._locks: Dict[LockKey, DeliveryLock] = {}
        # clear_lock may be called from outside the event loop thread
        self._mutex = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def record(self, chunk_id: str, owner: str, device: str) -> DeliveryLock:
        """Record a busy rejection; an unexpired lock for the key is kept as is."""
        now = self._clock()
        key = (chunk_id, owner, device)
        with self._mutex:
            existing = self._locks.get(key)
            if existing is not None and existing.remaining(now) > 0:
                return existing
            lock = DeliveryLock(chunk_id=chunk_id, owner=owner, device=device, acquired_at=now, ttl=self.ttl)
            self._locks[key] = lock
        logger.debug(f"Locked {chunk_id} for {self.ttl:.0f}s")
        return lock

    def remaining(self, chunk_id: str, owner: str, device: str) -> float:
        """Seconds until the lock on the key expires (0 when unlocked)."""
        with self._mutex:
            lock = self._locks.get((chunk_id, owner, device))
        return lock.remaining(self._clock()) if lock is not None else 0.0

    def is_locked(self, chunk_id: str, owner: str, device: str) -> bool:
        return self.remaining(chunk_id, owner, device) > 0

    def release(self, chunk_id: str, owner: str, device: str) -> bool:
        with self._mutex:
            return self._locks.pop((chunk_id, owner, device), None) is not None

    def release_chunk(self, chunk_id: str) -> int:
        """Release every lock held on ``chunk_id`` regardless of identity."""
        with self._mutex:
            keys = [key for key in self._locks if key[0] == chunk_id]
            for key in keys:
                del self._locks[key]
        return len(keys)

    def sweep(self) -> int:
        """Purge expired locks.

        Returns:
            Number of locks removed
        """
        now = self._clock()
        with self._mutex:
            expired = [key for key, lock in self._locks.items() if lock.remaining(now) <= 0]
            for key in expired:
                del self._locks[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired locks")
        return len(expired)

    def active_locks(self) -> List[DeliveryLock]:
        now = self._clock()
        with self._mutex:
            return [lock for lock in self._locks.values() if lock.remaining(now) > 0]

    def status(self) -> Dict:
        now = self._clock()
        active = self.active_locks()
        return {
            'active': len(active),
            'ttl': self.ttl,
            'sweep_interval': self.sweep_interval,
            'sweeper_running': self.sweeper_running,
            'locks': [lock.to_dict(now) for lock in active],
        }

    def __len__(self) -> int:
        with self._mutex:
            return len(self._locks)

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def start_sweeper(self) -> None:
        """Start the background sweep task on the running event loop."""
        if self.sweeper_running:
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop(), name='dedup-lock-sweeper')

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()
