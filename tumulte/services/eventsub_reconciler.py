"""
tumulte.services.eventsub_reconciler — EventSub Subscription Reconciliation
=============================================================================

Redemptions only reach Tumulte while a
``channel.channel_points_custom_reward_redemption.add`` subscription exists
for the reward.  Subscriptions get lost (Twitch revokes them, a create
failed, the callback URL changed) and leak (the reward was deleted but the
unsubscribe failed), so a sweep brings both sides back in line:

1. list every redemption subscription of the application;
2. recreate the ones missing for an active reward (a subscription counts
   while it is ``enabled`` or still verifying its callback);
3. delete the ones whose reward is no longer active in Tumulte.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select

from tumulte.constants import LIVE_SUBSCRIPTION_STATUSES, REDEMPTION_SUBSCRIPTION_TYPE
from tumulte.database.engine import get_session, run_db
from tumulte.database.models import RewardStatus, StreamerGamificationConfig
from tumulte.services.twitch_client import TwitchApiError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tumulte.services.twitch_client import TwitchClient

logger = logging.getLogger(__name__)


async def subscribe_redemptions(
    twitch: TwitchClient, broadcaster_id: str, reward_id: str, callback_url: str, secret: str,
) -> dict | None:
    """Create the redemption subscription for one reward.

    Returns the subscription, or ``None`` when Twitch reports it already
    exists (409).  Other failures raise :class:`TwitchApiError`.
    """
    try:
        return await twitch.create_eventsub_subscription(
            REDEMPTION_SUBSCRIPTION_TYPE,
            {"broadcaster_user_id": broadcaster_id, "reward_id": reward_id},
            callback_url,
            secret,
        )
    except TwitchApiError as exc:
        if exc.status_code == 409:
            logger.debug("Redemption subscription for reward %s already exists", reward_id)
            return None
        raise


class EventSubReconciler:
    def __init__(
        self, engine: Engine, twitch: TwitchClient, callback_url: str, secret: str,
    ) -> None:
        self._engine = engine
        self._twitch = twitch
        self._callback_url = callback_url
        self._secret = secret

    def _active_rewards(self) -> set[tuple[str, str]]:
        """``(broadcaster_user_id, reward_id)`` of every active reward."""
        with get_session(self._engine) as session:
            configs = session.scalars(
                select(StreamerGamificationConfig).where(
                    StreamerGamificationConfig.is_enabled.is_(True),
                    StreamerGamificationConfig.twitch_reward_status == RewardStatus.ACTIVE.value,
                    StreamerGamificationConfig.twitch_reward_id.is_not(None),
                )
            ).unique().all()
            return {(c.streamer.twitch_user_id, c.twitch_reward_id) for c in configs}

    async def reconcile(self) -> dict:
        """Returns ``{"subscriptions_checked", "missing_recreated",
        "failed_recreated", "orphaned_deleted", "errors"}``."""
        report: dict = {
            "subscriptions_checked": 0,
            "missing_recreated": 0,
            "failed_recreated": 0,
            "orphaned_deleted": 0,
            "errors": [],
        }
        subscriptions = await self._twitch.list_eventsub_subscriptions(REDEMPTION_SUBSCRIPTION_TYPE)
        active = await run_db(self._active_rewards)
        report["subscriptions_checked"] = len(subscriptions)

        covered: set[tuple[str, str]] = set()
        for sub in subscriptions:
            condition = sub.get("condition") or {}
            key = (condition.get("broadcaster_user_id"), condition.get("reward_id"))
            if key in active and sub.get("status") in LIVE_SUBSCRIPTION_STATUSES:
                covered.add(key)
                continue

            # Either the reward is gone or the subscription is dead
            # (revoked, verification failed); both get deleted.
            try:
                await self._twitch.delete_eventsub_subscription(sub["id"])
            except TwitchApiError as exc:
                report["errors"].append(f"delete {sub['id']}: {exc}")
                logger.warning("Could not delete subscription %s: %s", sub["id"], exc)
                continue
            if key not in active:
                report["orphaned_deleted"] += 1
                logger.info("Deleted orphaned subscription %s (reward %s)", sub["id"], key[1])
            else:
                logger.info("Deleted %s subscription %s", sub.get("status"), sub["id"])

        for broadcaster_id, reward_id in sorted(active - covered):
            try:
                await subscribe_redemptions(
                    self._twitch, broadcaster_id, reward_id, self._callback_url, self._secret,
                )
            except TwitchApiError as exc:
                report["failed_recreated"] += 1
                report["errors"].append(f"create {reward_id}: {exc}")
                logger.error("Could not recreate subscription for reward %s: %s", reward_id, exc)
                continue
            report["missing_recreated"] += 1
            logger.info("Recreated subscription for reward %s", reward_id)

        level = logging.WARNING if report["errors"] else logging.INFO
        logger.log(
            level,
            "EventSub reconciliation: %d checked, %d recreated, %d failed, %d orphaned deleted",
            report["subscriptions_checked"], report["missing_recreated"],
            report["failed_recreated"], report["orphaned_deleted"],
        )
        return report
