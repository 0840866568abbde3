"""
tumulte.services.refund_service — Channel Point Refunds
=========================================================

When an instance expires before its gauge is full, every viewer who
contributed gets their channel points back: each unrefunded redemption is
set to ``CANCELED`` on Twitch and the contribution is marked refunded.

A failing refund is collected in the result and retried on the next call;
it never stops the others.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy import select

from tumulte.constants import utcnow
from tumulte.database.engine import get_session, run_db
from tumulte.database.models import (
    GamificationContribution,
    GamificationInstance,
    InstanceStatus,
    Streamer,
)
from tumulte.services.twitch_client import TwitchApiError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tumulte.services.twitch_client import TwitchClient

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RefundResult:
    instance_id: str
    total_contributions: int = 0
    refunded_count: int = 0
    failed_count: int = 0
    errors: list[dict] = field(default_factory=list)


class RefundService:
    def __init__(self, engine: Engine, twitch: TwitchClient) -> None:
        self._engine = engine
        self._twitch = twitch

    # -- DB helpers (sync) --------------------------------------------------
    def _load(
        self, instance_id: str
    ) -> tuple[GamificationInstance | None, Streamer | None, list[GamificationContribution]]:
        with get_session(self._engine) as session:
            instance = session.get(GamificationInstance, instance_id)
            if instance is None or not instance.streamer_id:
                return instance, None, []
            streamer = session.get(Streamer, instance.streamer_id)
            contributions = session.scalars(
                select(GamificationContribution)
                .where(
                    GamificationContribution.instance_id == instance_id,
                    GamificationContribution.refunded.is_(False),
                )
                .order_by(GamificationContribution.created_at)
            ).all()
            return instance, streamer, list(contributions)

    def _mark_refunded(self, contribution_id: str) -> None:
        with get_session(self._engine) as session:
            contribution = session.get(GamificationContribution, contribution_id)
            contribution.refunded = True
            contribution.refunded_at = utcnow()

    # -- Public API ---------------------------------------------------------
    async def refund_instance(self, instance_id: str) -> RefundResult:
        result = RefundResult(instance_id=instance_id)
        instance, streamer, contributions = await run_db(self._load, instance_id)

        if instance is None:
            logger.warning("Refund requested for unknown instance %s", instance_id)
            return result
        if instance.status != InstanceStatus.EXPIRED:
            logger.warning("Refund refused: instance %s is %s", instance_id, instance.status)
            return result
        if streamer is None or not streamer.access_token:
            logger.warning("Refund skipped: instance %s has no streamer token", instance_id)
            return result

        result.total_contributions = len(contributions)
        if not contributions:
            return result

        logger.info("Refunding %d contribution(s) of instance %s", len(contributions), instance_id)
        for contribution in contributions:
            if not contribution.twitch_reward_id:
                result.failed_count += 1
                result.errors.append({
                    "contributionId": contribution.id,
                    "twitchUserId": contribution.twitch_user_id,
                    "error": "Contribution has no reward id",
                })
                continue
            try:
                await self._twitch.cancel_redemptions(
                    streamer.twitch_user_id, streamer.access_token,
                    contribution.twitch_reward_id, [contribution.twitch_redemption_id],
                )
                await run_db(self._mark_refunded, contribution.id)
            except TwitchApiError as exc:
                result.failed_count += 1
                result.errors.append({
                    "contributionId": contribution.id,
                    "twitchUserId": contribution.twitch_user_id,
                    "error": str(exc),
                })
                logger.error(
                    "Refund of redemption %s failed: %s", contribution.twitch_redemption_id, exc,
                )
                continue
            result.refunded_count += 1

        logger.info(
            "Instance %s refunds: %d ok, %d failed",
            instance_id, result.refunded_count, result.failed_count,
        )
        return result

    async def process_expired_instances(self, instance_ids: list[str]) -> int:
        """Refund a batch of freshly expired instances; returns the number
        of contributions refunded."""
        total = 0
        for instance_id in instance_ids:
            try:
                total += (await self.refund_instance(instance_id)).refunded_count
            except Exception:
                logger.exception("Refund of instance %s crashed", instance_id)
        return total
