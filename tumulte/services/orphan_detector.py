"""
tumulte.services.orphan_detector — Orphaned Reward Queries
============================================================

A streamer config becomes ``orphaned`` when its Twitch reward could not be
deleted.  The reward still exists on the channel; these queries feed the
retry sweep in :mod:`tumulte.services.reward_reconciler`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func, or_, select

from tumulte.constants import STALE_ORPHAN_THRESHOLD_DAYS, utcnow
from tumulte.database.engine import get_session
from tumulte.database.models import RewardStatus, StreamerGamificationConfig

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

_ORPHANED = StreamerGamificationConfig.twitch_reward_status == RewardStatus.ORPHANED.value


class OrphanDetector:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def find_orphaned_configs(self) -> list[StreamerGamificationConfig]:
        with get_session(self._engine) as session:
            return list(session.scalars(
                select(StreamerGamificationConfig)
                .where(_ORPHANED)
                .order_by(StreamerGamificationConfig.deletion_failed_at)
            ).unique().all())

    def find_orphans_due_for_retry(
        self, now: datetime | None = None
    ) -> list[StreamerGamificationConfig]:
        """Orphans whose next retry time has passed (or was never set)."""
        now = now or utcnow()
        with get_session(self._engine) as session:
            return list(session.scalars(
                select(StreamerGamificationConfig)
                .where(
                    _ORPHANED,
                    or_(
                        StreamerGamificationConfig.next_deletion_retry_at.is_(None),
                        StreamerGamificationConfig.next_deletion_retry_at <= now,
                    ),
                )
                .order_by(StreamerGamificationConfig.next_deletion_retry_at)
            ).unique().all())

    def count_orphans(self) -> int:
        with get_session(self._engine) as session:
            return session.scalar(
                select(func.count(StreamerGamificationConfig.id)).where(_ORPHANED)
            ) or 0

    def is_orphaned(self, config_id: str) -> bool:
        with get_session(self._engine) as session:
            config = session.get(StreamerGamificationConfig, config_id)
            return config is not None and config.twitch_reward_status == RewardStatus.ORPHANED

    def detect_stale_orphans(
        self, now: datetime | None = None
    ) -> list[StreamerGamificationConfig]:
        """Orphans stuck for more than ``STALE_ORPHAN_THRESHOLD_DAYS``; each one is
        logged at error level since it needs a human."""
        cutoff = (now or utcnow()) - timedelta(days=STALE_ORPHAN_THRESHOLD_DAYS)
        with get_session(self._engine) as session:
            stale = list(session.scalars(
                select(StreamerGamificationConfig).where(
                    _ORPHANED,
                    StreamerGamificationConfig.deletion_failed_at.is_not(None),
                    StreamerGamificationConfig.deletion_failed_at < cutoff,
                )
            ).unique().all())

        for config in stale:
            logger.error(
                "Stale orphaned reward %s (streamer %s) stuck since %s after %d retries",
                config.twitch_reward_id, config.streamer_id,
                config.deletion_failed_at, config.deletion_retry_count,
                extra={"config_id": config.id, "reward_id": config.twitch_reward_id},
            )
        return stale
