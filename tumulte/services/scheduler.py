"""
tumulte.services.scheduler — Periodic Background Sweeps
=========================================================

Two loops run inside the API process, started and cancelled by the FastAPI
lifespan:

- **Expiry** — every ``expiry_interval_seconds`` (60 s): expire instances
  past their deadline, then refund the contributions of the ones that just
  expired.
- **Orphan cleanup** — every ``orphan_cleanup_interval_seconds`` (300 s):
  retry the Twitch delete of orphaned rewards that are due, then report
  orphans stuck for days.

``startup`` runs once before the loops: one expiry + orphan pass plus a
full reward reconciliation and an EventSub reconciliation.

Each tick is isolated: an exception is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from tumulte.database.engine import run_db

if TYPE_CHECKING:
    from tumulte.core import Tumulte

logger = logging.getLogger(__name__)


class GamificationScheduler:
    def __init__(self, app: Tumulte) -> None:
        self.app = app
        self._tasks: list[asyncio.Task] = []

    # -------------------------------------------------------------------
    # Ticks
    # -------------------------------------------------------------------
    async def expire_tick(self) -> int:
        """Expire overdue instances and refund them; returns the number expired."""
        try:
            expired = await run_db(self.app.instances.check_and_expire_instances)
            if expired:
                refunded = await self.app.refunds.process_expired_instances(expired)
                logger.info(
                    "Expiry sweep: %d instance(s) expired, %d contribution(s) refunded",
                    len(expired), refunded,
                )
            return len(expired)
        except Exception:
            logger.exception("Expiry sweep failed", extra={"task": "expiry"})
            return 0

    async def orphan_tick(self) -> dict | None:
        try:
            due = await run_db(self.app.orphans.find_orphans_due_for_retry)
            result = await self.app.reward_reconciler.cleanup_orphans(due) if due else None
            await run_db(self.app.orphans.detect_stale_orphans)
            return result
        except Exception:
            logger.exception("Orphan cleanup failed", extra={"task": "orphans"})
            return None

    async def startup(self) -> None:
        """One-off pass at boot, before the loops start."""
        await self.expire_tick()
        await self.orphan_tick()
        if not self.app.cfg.reconcile_on_startup:
            return
        try:
            await self.app.reward_reconciler.full_reconciliation()
        except Exception:
            logger.exception("Startup reward reconciliation failed", extra={"task": "reconcile"})
        try:
            await self.app.eventsub_reconciler.reconcile()
        except Exception:
            logger.exception("Startup EventSub reconciliation failed", extra={"task": "eventsub"})

    # -------------------------------------------------------------------
    # Loops
    # -------------------------------------------------------------------
    async def _loop(self, name: str, interval: float, tick) -> None:
        logger.info("Scheduler loop %s started (every %ss)", name, interval)
        while True:
            await asyncio.sleep(interval)
            await tick()

    def start(self) -> None:
        if self._tasks:
            return
        cfg = self.app.cfg
        self._tasks = [
            asyncio.create_task(
                self._loop("expiry", cfg.expiry_interval_seconds, self.expire_tick),
                name="tumulte-expiry",
            ),
            asyncio.create_task(
                self._loop("orphans", cfg.orphan_cleanup_interval_seconds, self.orphan_tick),
                name="tumulte-orphans",
            ),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Scheduler stopped")
