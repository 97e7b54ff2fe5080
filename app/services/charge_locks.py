"""
Charge ownership — at most one in-flight charge per subscription.

Two charges against the same delegated key would double-spend its limit
and race on next_charge_due_at, so every charge first claims ownership of
its subscription id. Claims never wait: if a charge is already in flight
the second caller is told so and backs off, which keeps a slow ledger call
for one subscription from stalling sweeps or retries for others.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class ChargeLockRegistry:
    """Per-subscription locks, created on claim and dropped on release."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def claim(self, subscription_id: str) -> AsyncIterator[bool]:
        """Yield True if this caller now owns the subscription, False if a charge is in flight."""
        lock = self._locks.get(subscription_id)
        if lock is not None and lock.locked():
            logger.info("charge_already_in_flight", extra={"subscription_id": subscription_id})
            yield False
            return

        lock = asyncio.Lock()
        # Uncontended acquire completes without suspending, so check-and-claim is atomic
        await lock.acquire()
        self._locks[subscription_id] = lock
        try:
            yield True
        finally:
            lock.release()
            if self._locks.get(subscription_id) is lock:
                del self._locks[subscription_id]

    def in_flight(self, subscription_id: str) -> bool:
        lock = self._locks.get(subscription_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
