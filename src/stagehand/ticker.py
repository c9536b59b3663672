"""Queue ticker — start planned work orders on a fixed cadence.

One tick runs under the ``workflow_engine_tick`` lease so that only one of
several engine processes ticks at a time. A tick first runs the stale sweeper,
then scans planned work orders (oldest first) and starts each one that has no
open operations. One work order failing to start never stops the scan.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from stagehand.leases import TICK_LEASE_KEY
from stagehand.models import TickResult, WorkOrderOutcome

if TYPE_CHECKING:
    from stagehand.engine import WorkflowEngine

logger = logging.getLogger(__name__)

QUEUE_TICK_CONTEXT = {"source": "queue_tick"}


class QueueTicker:
    """Runs ``tick()`` on demand, or periodically as a background task."""

    def __init__(self, engine: WorkflowEngine, interval: float | None = None):
        self.engine = engine
        self.interval = interval or engine.config.tick_interval_seconds
        self._running = False
        self._task: asyncio.Task | None = None

    async def tick(self, limit: int | None = None, dry_run: bool = False) -> TickResult:
        """Run one tick. A dry run reports would-be starts without side effects."""
        engine = self.engine
        limit = engine.config.clamp_limit(limit)

        async with engine.leases.hold(TICK_LEASE_KEY) as held:
            if not held:
                logger.info("Tick skipped: %s lease held by another engine", TICK_LEASE_KEY)
                return TickResult(
                    skipped=1,
                    overlap_prevented=True,
                    dry_run=dry_run,
                    skipped_work_orders=[
                        WorkOrderOutcome(
                            work_order_id="", reason=f"{TICK_LEASE_KEY} lease already held"
                        )
                    ],
                )

            result = TickResult(dry_run=dry_run)
            if not dry_run:
                stale = await engine.sweeper.sweep(limit, auto_dispatch=True)
                result.stale_recovered = stale.recovered

            planned = await engine.store.list_planned_work_orders(limit)
            result.scanned = len(planned)

            for wo in planned:
                if await engine.store.count_open_operations(wo.id) > 0:
                    result.skipped_work_orders.append(
                        WorkOrderOutcome(
                            work_order_id=wo.id, reason="Work order already has open operations"
                        )
                    )
                    continue

                if dry_run:
                    result.started_work_orders.append(wo.id)
                    continue

                try:
                    await engine.start_work_order(wo.id, context=dict(QUEUE_TICK_CONTEXT))
                except Exception as e:
                    logger.warning("Queue tick failed to start %s: %s", wo.id, e)
                    result.failed_work_orders.append(
                        WorkOrderOutcome(work_order_id=wo.id, reason=str(e))
                    )
                    continue
                result.started_work_orders.append(wo.id)

        result.started = len(result.started_work_orders)
        result.skipped = len(result.skipped_work_orders)
        result.failures = len(result.failed_work_orders)
        if result.scanned or result.stale_recovered:
            logger.info(
                "Tick: scanned=%d started=%d skipped=%d failures=%d stale_recovered=%d%s",
                result.scanned,
                result.started,
                result.skipped,
                result.failures,
                result.stale_recovered,
                " (dry run)" if dry_run else "",
            )
        return result

    # ── Background Loop ──────────────────────────────────────────────────

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="queue-ticker")
        logger.info("Queue ticker started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Queue ticker stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Queue tick error")
                await asyncio.sleep(self.interval)
