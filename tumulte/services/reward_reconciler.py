"""
tumulte.services.reward_reconciler — Twitch Reward Reconciliation
===================================================================

Two passes keep Twitch channel point rewards and the database aligned:

``cleanup_orphans``
    Retries the delete of rewards that failed to go away on disable.
    Success (or 404, already gone) marks the config ``deleted``; another
    failure pushes the next retry out with the backoff policy.

``full_reconciliation``
    Startup pass.  For every streamer with an active reward config, lists
    the rewards Tumulte manages on the channel and compares:

    * on Twitch but not active in the DB → deleted on Twitch;
    * active in the DB but missing on Twitch ("phantom") → marked deleted.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select

from tumulte.constants import utcnow
from tumulte.database.engine import get_session, run_db
from tumulte.database.models import RewardStatus, Streamer, StreamerGamificationConfig
from tumulte.engine.backoff import backoff_hours, next_retry_at
from tumulte.services.twitch_client import TwitchApiError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tumulte.services.twitch_client import TwitchClient

logger = logging.getLogger(__name__)


class TwitchRewardReconciler:
    def __init__(self, engine: Engine, twitch: TwitchClient) -> None:
        self._engine = engine
        self._twitch = twitch

    # -- DB helpers (sync) --------------------------------------------------
    def _mark_deleted(self, config_id: str) -> None:
        with get_session(self._engine) as session:
            config = session.get(StreamerGamificationConfig, config_id)
            config.twitch_reward_id = None
            config.twitch_reward_status = RewardStatus.DELETED.value
            config.deletion_failed_at = None
            config.deletion_retry_count = 0
            config.next_deletion_retry_at = None

    def _schedule_retry(self, config_id: str) -> int:
        now = utcnow()
        with get_session(self._engine) as session:
            config = session.get(StreamerGamificationConfig, config_id)
            config.deletion_retry_count += 1
            config.next_deletion_retry_at = next_retry_at(config.deletion_retry_count, now)
            if config.deletion_failed_at is None:
                config.deletion_failed_at = now
            return config.deletion_retry_count

    def _streamers_with_active_rewards(self) -> list[Streamer]:
        with get_session(self._engine) as session:
            return list(session.scalars(
                select(Streamer)
                .join(StreamerGamificationConfig, StreamerGamificationConfig.streamer_id == Streamer.id)
                .where(StreamerGamificationConfig.twitch_reward_status == RewardStatus.ACTIVE.value)
                .distinct()
            ).all())

    def _active_configs(self, streamer_id: str) -> dict[str, str]:
        """``{reward_id: config_id}`` of the streamer's active rewards."""
        with get_session(self._engine) as session:
            rows = session.execute(
                select(StreamerGamificationConfig.twitch_reward_id, StreamerGamificationConfig.id)
                .where(
                    StreamerGamificationConfig.streamer_id == streamer_id,
                    StreamerGamificationConfig.twitch_reward_status == RewardStatus.ACTIVE.value,
                    StreamerGamificationConfig.twitch_reward_id.is_not(None),
                )
            ).all()
            return {row[0]: row[1] for row in rows}

    # -- Orphan retry -------------------------------------------------------
    async def cleanup_orphans(self, configs: list[StreamerGamificationConfig]) -> dict:
        """Returns ``{"total", "cleaned", "already_deleted", "failed", "errors"}``."""
        result: dict = {
            "total": len(configs),
            "cleaned": 0,
            "already_deleted": 0,
            "failed": 0,
            "errors": [],
        }

        for config in configs:
            if not config.twitch_reward_id:
                await run_db(self._mark_deleted, config.id)
                result["cleaned"] += 1
                continue

            streamer = config.streamer
            if streamer is None or not streamer.access_token:
                result["failed"] += 1
                result["errors"].append({"config_id": config.id, "error": "Streamer token missing"})
                logger.warning("Orphan config %s has no usable streamer token", config.id)
                continue

            try:
                await self._twitch.delete_custom_reward(
                    streamer.twitch_user_id, streamer.access_token, config.twitch_reward_id,
                )
            except TwitchApiError as exc:
                if exc.is_not_found:
                    await run_db(self._mark_deleted, config.id)
                    result["already_deleted"] += 1
                    logger.info("Orphan reward %s was already gone", config.twitch_reward_id)
                    continue
                retries = await run_db(self._schedule_retry, config.id)
                result["failed"] += 1
                result["errors"].append({
                    "config_id": config.id,
                    "error": f"Deletion failed, retry #{retries} in {backoff_hours(retries)}h",
                })
                logger.warning(
                    "Orphan reward %s still undeletable (%s), retry #%d",
                    config.twitch_reward_id, exc, retries,
                )
                continue

            await run_db(self._mark_deleted, config.id)
            result["cleaned"] += 1
            logger.info("Orphan reward %s cleaned", config.twitch_reward_id)

        if result["total"]:
            logger.info(
                "Orphan cleanup: %d total, %d cleaned, %d already deleted, %d failed",
                result["total"], result["cleaned"], result["already_deleted"], result["failed"],
            )
        return result

    # -- Full reconciliation ------------------------------------------------
    async def full_reconciliation(self) -> dict:
        """Returns ``{"streamers_processed", "orphans_found", "orphans_cleaned",
        "phantoms_fixed", "errors"}``."""
        result: dict = {
            "streamers_processed": 0,
            "orphans_found": 0,
            "orphans_cleaned": 0,
            "phantoms_fixed": 0,
            "errors": [],
        }
        streamers = await run_db(self._streamers_with_active_rewards)
        logger.info("Full reward reconciliation over %d streamer(s)", len(streamers))

        for streamer in streamers:
            if not streamer.access_token:
                result["errors"].append({"streamer_id": streamer.id, "error": "No access token"})
                continue
            try:
                twitch_rewards = await self._twitch.list_custom_rewards(
                    streamer.twitch_user_id, streamer.access_token,
                )
            except TwitchApiError as exc:
                result["errors"].append({"streamer_id": streamer.id, "error": str(exc)})
                logger.error("Could not list rewards of streamer %s: %s", streamer.id, exc)
                continue

            result["streamers_processed"] += 1
            active = await run_db(self._active_configs, streamer.id)
            on_twitch = {reward["id"] for reward in twitch_rewards}

            for reward_id in sorted(on_twitch - active.keys()):
                result["orphans_found"] += 1
                try:
                    await self._twitch.delete_custom_reward(
                        streamer.twitch_user_id, streamer.access_token, reward_id,
                    )
                except TwitchApiError as exc:
                    if not exc.is_not_found:
                        logger.warning("Could not delete untracked reward %s: %s", reward_id, exc)
                        continue
                result["orphans_cleaned"] += 1
                logger.info("Deleted untracked reward %s of streamer %s", reward_id, streamer.id)

            for reward_id in sorted(active.keys() - on_twitch):
                await run_db(self._mark_deleted, active[reward_id])
                result["phantoms_fixed"] += 1
                logger.warning(
                    "Reward %s is active in the database but missing on Twitch; marked deleted",
                    reward_id,
                )

        logger.info(
            "Full reward reconciliation: %d processed, %d/%d orphans cleaned, %d phantoms fixed",
            result["streamers_processed"], result["orphans_cleaned"],
            result["orphans_found"], result["phantoms_fixed"],
        )
        return result
