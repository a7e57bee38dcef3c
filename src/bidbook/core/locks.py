"""
Per-key mutual exclusion for the engine's critical sections.

Every mutation of a listing's bids, and every mutation of an offer chain,
runs while holding the lock for that key. Locks are created on demand and
discarded once no coroutine holds or awaits them, so the registry only
ever contains keys that are in use. There is no global lock:
operations on different keys run fully in parallel.

Within one process this is the first line of defence. Across processes the
services additionally lock the underlying rows (``SELECT ... FOR UPDATE``)
and rely on compare-and-set updates and unique constraints.

Lock ordering when more than one key is needed: listing, then offer chain,
then invoice.
"""
from __future__ import annotations

import asyncio
import contextlib
from functools import lru_cache
from typing import AsyncIterator, Dict


class KeyedLock:
    """A registry of ``asyncio.Lock`` objects addressed by string keys."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


def listing_key(listing_id: str) -> str:
    return f"listing:{listing_id}"


def chain_key(root_offer_id: str) -> str:
    return f"offer-chain:{root_offer_id}"


def invoice_key(listing_id: str, seller_id: str) -> str:
    return f"invoice:{listing_id}:{seller_id}"


@lru_cache(maxsize=1)
def get_lock_registry() -> KeyedLock:
    """Return the process-wide lock registry."""
    return KeyedLock()
