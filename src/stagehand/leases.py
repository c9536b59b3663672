"""Advisory leases — TTL-bounded mutual exclusion across engine processes.

A lease is a row in ``engine_leases`` taken with one conditional upsert.
Losing the race is not an error: ``hold()`` yields False and the caller does
nothing. Re-entering a lease the current task already holds yields True
without touching the store.
"""

from __future__ import annotations

import contextvars
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stagehand.store import EngineStore

logger = logging.getLogger(__name__)

TICK_LEASE_KEY = "workflow_engine_tick"
RECOVERY_LEASE_KEY = "workflow_engine_recovery"

_held_leases: contextvars.ContextVar[frozenset[tuple[str, str]]] = contextvars.ContextVar(
    "stagehand_held_leases", default=frozenset()
)


class LeaseManager:
    def __init__(self, store: EngineStore, owner_id: str, ttl_seconds: int = 60):
        self.store = store
        self.owner_id = owner_id
        self.ttl = timedelta(seconds=ttl_seconds)

    def is_held(self, lease_key: str) -> bool:
        return (lease_key, self.owner_id) in _held_leases.get()

    @asynccontextmanager
    async def hold(self, lease_key: str) -> AsyncIterator[bool]:
        """Hold ``lease_key`` for the duration of the block.

        Yields whether the lease is held. The lease is released on exit
        only by the frame that acquired it.
        """
        if self.is_held(lease_key):
            yield True
            return

        acquired = await self.store.try_acquire_lease(lease_key, self.owner_id, self.ttl)
        if not acquired:
            logger.debug("Lease %s held elsewhere; skipping", lease_key)
            yield False
            return

        token = _held_leases.set(_held_leases.get() | {(lease_key, self.owner_id)})
        try:
            yield True
        finally:
            _held_leases.reset(token)
            try:
                await self.store.release_lease(lease_key, self.owner_id)
            except Exception:
                # The TTL frees it anyway
                logger.warning("Failed to release lease %s", lease_key, exc_info=True)
