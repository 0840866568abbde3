"""
tests/test_scheduler.py — Background Sweeps
============================================
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from tumulte.services.scheduler import GamificationScheduler


def _app(reconcile_on_startup: bool = True):
    app = SimpleNamespace(
        cfg=SimpleNamespace(
            reconcile_on_startup=reconcile_on_startup,
            expiry_interval_seconds=60,
            orphan_cleanup_interval_seconds=300,
        ),
        instances=MagicMock(),
        refunds=MagicMock(),
        orphans=MagicMock(),
        reward_reconciler=MagicMock(),
        eventsub_reconciler=MagicMock(),
    )
    app.instances.check_and_expire_instances.return_value = []
    app.refunds.process_expired_instances = AsyncMock(return_value=0)
    app.orphans.find_orphans_due_for_retry.return_value = []
    app.orphans.detect_stale_orphans.return_value = []
    app.reward_reconciler.cleanup_orphans = AsyncMock(return_value={"cleaned": 1})
    app.reward_reconciler.full_reconciliation = AsyncMock(return_value={})
    app.eventsub_reconciler.reconcile = AsyncMock(return_value={})
    return app


class TestExpireTick:
    def test_refunds_expired(self):
        app = _app()
        app.instances.check_and_expire_instances.return_value = ["i-1", "i-2"]
        app.refunds.process_expired_instances.return_value = 4

        assert asyncio.run(GamificationScheduler(app).expire_tick()) == 2
        app.refunds.process_expired_instances.assert_awaited_once_with(["i-1", "i-2"])

    def test_nothing_expired(self):
        app = _app()
        assert asyncio.run(GamificationScheduler(app).expire_tick()) == 0
        app.refunds.process_expired_instances.assert_not_awaited()

    def test_failure_is_contained(self):
        app = _app()
        app.instances.check_and_expire_instances.side_effect = RuntimeError("db gone")
        assert asyncio.run(GamificationScheduler(app).expire_tick()) == 0


class TestOrphanTick:
    def test_cleans_due_orphans(self):
        app = _app()
        due = [SimpleNamespace(id="cfg-1")]
        app.orphans.find_orphans_due_for_retry.return_value = due

        assert asyncio.run(GamificationScheduler(app).orphan_tick()) == {"cleaned": 1}
        app.reward_reconciler.cleanup_orphans.assert_awaited_once_with(due)
        app.orphans.detect_stale_orphans.assert_called_once()

    def test_no_orphans_still_reports_stale(self):
        app = _app()
        assert asyncio.run(GamificationScheduler(app).orphan_tick()) is None
        app.reward_reconciler.cleanup_orphans.assert_not_awaited()
        app.orphans.detect_stale_orphans.assert_called_once()

    def test_failure_is_contained(self):
        app = _app()
        app.orphans.find_orphans_due_for_retry.side_effect = RuntimeError("db gone")
        assert asyncio.run(GamificationScheduler(app).orphan_tick()) is None


class TestStartup:
    def test_full_pass(self):
        app = _app()
        asyncio.run(GamificationScheduler(app).startup())
        app.instances.check_and_expire_instances.assert_called_once()
        app.reward_reconciler.full_reconciliation.assert_awaited_once()
        app.eventsub_reconciler.reconcile.assert_awaited_once()

    def test_reconciliation_can_be_disabled(self):
        app = _app(reconcile_on_startup=False)
        asyncio.run(GamificationScheduler(app).startup())
        app.reward_reconciler.full_reconciliation.assert_not_awaited()
        app.eventsub_reconciler.reconcile.assert_not_awaited()

    def test_reward_failure_does_not_skip_eventsub(self):
        app = _app()
        app.reward_reconciler.full_reconciliation.side_effect = RuntimeError("helix down")
        asyncio.run(GamificationScheduler(app).startup())
        app.eventsub_reconciler.reconcile.assert_awaited_once()


class TestLoops:
    def test_start_and_stop(self):
        app = _app()

        async def scenario():
            scheduler = GamificationScheduler(app)
            scheduler.start()
            tasks = list(scheduler._tasks)
            scheduler.start()
            assert scheduler._tasks == tasks
            await scheduler.stop()
            return tasks, scheduler._tasks

        tasks, remaining = asyncio.run(scenario())
        assert [t.get_name() for t in tasks] == ["tumulte-expiry", "tumulte-orphans"]
        assert all(t.cancelled() for t in tasks)
        assert remaining == []
