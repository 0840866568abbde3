"""
tumulte.services.reward_manager — Twitch Channel Point Reward Sync
====================================================================

Keeps each streamer's Twitch custom reward in line with the campaign's
gamification configuration.

Enable:
    1. the campaign config must be enabled;
    2. upsert the streamer config;
    3. **delete-before-recreate**: any reward already linked is deleted on
       Twitch first, so a stale reward (wrong cost, lost subscription) never
       survives a re-enable;
    4. create a fresh reward at the effective cost.  If Twitch refuses
       (usually a duplicate title left by an earlier failure) the duplicate
       is deleted by title and the create is retried once;
    5. subscribe to its redemptions.

Disable:
    Delete the reward on Twitch.  On failure the config becomes
    ``orphaned`` with a retry scheduled by :mod:`tumulte.engine.backoff`;
    the GM still sees the event as disabled.  The orphan sweep finishes the
    job later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select

from tumulte.constants import utcnow
from tumulte.database.engine import get_session, run_db
from tumulte.database.models import (
    ActionType,
    CampaignGamificationConfig,
    RewardStatus,
    Streamer,
    StreamerGamificationConfig,
)
from tumulte.engine.backoff import next_retry_at
from tumulte.errors import ConfigNotFoundError, EventNotEnabledError, NotFoundError
from tumulte.services.eventsub_reconciler import subscribe_redemptions
from tumulte.services.twitch_client import TwitchApiError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tumulte.database.models import GamificationEvent
    from tumulte.services.twitch_client import TwitchClient

logger = logging.getLogger(__name__)

_REWARD_TITLES = {
    ActionType.DICE_INVERT: "\U0001f3b2 Flip the Die",
    ActionType.CHAT_MESSAGE: "\U0001f4ac Special Message",
    ActionType.STAT_MODIFY: "\U0001f4ca Modify Stats",
}
_REWARD_PROMPTS = {
    ActionType.DICE_INVERT: (
        "Fill the inversion gauge! If the chat fills it, the next critical roll is flipped!"
    ),
    ActionType.CHAT_MESSAGE: "Send a special message into the game chat!",
    ActionType.STAT_MODIFY: "Help change the character's stats!",
}


def reward_title(event: GamificationEvent) -> str:
    return _REWARD_TITLES.get(event.action_type, event.name)


def reward_prompt(event: GamificationEvent) -> str:
    return _REWARD_PROMPTS.get(
        event.action_type, event.description or "Take part in this gamification event!",
    )


@dataclass(frozen=True, slots=True)
class CostUpdateOutcome:
    config: StreamerGamificationConfig
    remote_updated: bool
    error: str | None = None


class RewardManagerService:
    def __init__(
        self,
        engine: Engine,
        twitch: TwitchClient,
        *,
        eventsub_callback_url: str | None = None,
        eventsub_secret: str | None = None,
    ) -> None:
        self._engine = engine
        self._twitch = twitch
        self._callback_url = eventsub_callback_url
        self._secret = eventsub_secret

    # ------------------------------------------------------------------
    # DB helpers (sync)
    # ------------------------------------------------------------------
    def _load_streamer(self, streamer_id: str) -> Streamer:
        with get_session(self._engine) as session:
            streamer = session.get(Streamer, streamer_id)
        if streamer is None:
            raise NotFoundError(f"Streamer {streamer_id} not found")
        return streamer

    def _load_campaign_config(
        self, campaign_id: str, event_id: str
    ) -> CampaignGamificationConfig | None:
        with get_session(self._engine) as session:
            return session.scalar(
                select(CampaignGamificationConfig).where(
                    CampaignGamificationConfig.campaign_id == campaign_id,
                    CampaignGamificationConfig.event_id == event_id,
                )
            )

    def get_streamer_config(
        self, streamer_id: str, campaign_id: str, event_id: str
    ) -> StreamerGamificationConfig | None:
        with get_session(self._engine) as session:
            return session.scalar(
                select(StreamerGamificationConfig).where(
                    StreamerGamificationConfig.streamer_id == streamer_id,
                    StreamerGamificationConfig.campaign_id == campaign_id,
                    StreamerGamificationConfig.event_id == event_id,
                )
            )

    def find_by_reward_id(self, reward_id: str) -> StreamerGamificationConfig | None:
        """Streamer config behind a Twitch reward (redemption routing)."""
        with get_session(self._engine) as session:
            return session.scalar(
                select(StreamerGamificationConfig).where(
                    StreamerGamificationConfig.twitch_reward_id == reward_id
                )
            )

    def _upsert_streamer_config(
        self, streamer_id: str, campaign_id: str, event_id: str, cost_override: int | None,
    ) -> StreamerGamificationConfig:
        with get_session(self._engine) as session:
            config = session.scalar(
                select(StreamerGamificationConfig).where(
                    StreamerGamificationConfig.streamer_id == streamer_id,
                    StreamerGamificationConfig.campaign_id == campaign_id,
                    StreamerGamificationConfig.event_id == event_id,
                )
            )
            if config is None:
                config = StreamerGamificationConfig(
                    streamer_id=streamer_id, campaign_id=campaign_id, event_id=event_id,
                    twitch_reward_status=RewardStatus.NOT_CREATED.value,
                    deletion_retry_count=0,
                )
                session.add(config)
            config.is_enabled = True
            if cost_override is not None:
                config.cost_override = cost_override
            session.flush()
            session.refresh(config)
            return config

    def _save(self, config_id: str, **values) -> StreamerGamificationConfig:
        with get_session(self._engine) as session:
            config = session.get(StreamerGamificationConfig, config_id)
            for key, value in values.items():
                setattr(config, key, value)
            session.flush()
            session.refresh(config)
            return config

    @staticmethod
    def _cleared() -> dict:
        return {
            "twitch_reward_id": None,
            "deletion_failed_at": None,
            "deletion_retry_count": 0,
            "next_deletion_retry_at": None,
        }

    # ------------------------------------------------------------------
    # Enable
    # ------------------------------------------------------------------
    async def enable_for_streamer(
        self,
        streamer_id: str,
        campaign_id: str,
        event_id: str,
        cost_override: int | None = None,
    ) -> StreamerGamificationConfig:
        campaign_config = await run_db(self._load_campaign_config, campaign_id, event_id)
        if campaign_config is None or not campaign_config.is_enabled:
            raise EventNotEnabledError("This event is not enabled for the campaign")
        event = campaign_config.event
        streamer = await run_db(self._load_streamer, streamer_id)

        config = await run_db(
            self._upsert_streamer_config, streamer_id, campaign_id, event_id, cost_override,
        )
        logger.info(
            "Enabling reward for streamer %s (campaign %s, event %s, current=%s/%s)",
            streamer_id, campaign_id, event.slug, config.twitch_reward_id,
            config.twitch_reward_status,
        )

        if config.twitch_reward_id:
            await self._delete_before_recreate(streamer, config)
            config = await run_db(
                self._save, config.id,
                twitch_reward_status=RewardStatus.NOT_CREATED.value, **self._cleared(),
            )

        cost = config.effective_cost(campaign_config, event)
        reward = await self._create_fresh_reward(streamer, event, cost)
        if reward is None:
            logger.error(
                "Could not create reward for streamer %s event %s after cleanup",
                streamer_id, event.slug,
            )
            return config

        config = await run_db(
            self._save, config.id,
            twitch_reward_id=reward["id"], twitch_reward_status=RewardStatus.ACTIVE.value,
        )
        logger.info("Reward %s created for streamer %s (cost %d)", reward["id"], streamer_id, cost)
        await self._ensure_subscription(streamer, reward["id"])
        return config

    async def _delete_before_recreate(
        self, streamer: Streamer, config: StreamerGamificationConfig,
    ) -> None:
        try:
            await self._twitch.delete_custom_reward(
                streamer.twitch_user_id, streamer.access_token, config.twitch_reward_id,
            )
            logger.info("Old reward %s deleted before recreate", config.twitch_reward_id)
        except TwitchApiError as exc:
            if exc.is_not_found:
                logger.info("Old reward %s was already gone", config.twitch_reward_id)
            else:
                logger.warning(
                    "Could not delete old reward %s (%s); a title cleanup may follow",
                    config.twitch_reward_id, exc,
                )

    async def _create_fresh_reward(
        self, streamer: Streamer, event: GamificationEvent, cost: int,
    ) -> dict | None:
        title = reward_title(event)
        for attempt in (1, 2):
            try:
                return await self._twitch.create_custom_reward(
                    streamer.twitch_user_id, streamer.access_token,
                    title=title, cost=cost,
                    background_color=event.reward_color, prompt=reward_prompt(event),
                )
            except TwitchApiError as exc:
                logger.warning("Reward create attempt %d failed: %s", attempt, exc)
                if attempt == 2 or not await self._cleanup_duplicate_by_title(streamer, title):
                    return None
        return None

    async def _cleanup_duplicate_by_title(self, streamer: Streamer, title: str) -> bool:
        try:
            rewards = await self._twitch.list_custom_rewards(
                streamer.twitch_user_id, streamer.access_token,
            )
            duplicate = next((r for r in rewards if r.get("title") == title[:45]), None)
            if duplicate is None:
                logger.warning("No duplicate reward titled %r found", title)
                return False
            await self._twitch.delete_custom_reward(
                streamer.twitch_user_id, streamer.access_token, duplicate["id"],
            )
        except TwitchApiError as exc:
            logger.error("Duplicate reward cleanup failed: %s", exc)
            return False
        logger.info("Deleted duplicate reward %s titled %r", duplicate["id"], title)
        return True

    async def _ensure_subscription(self, streamer: Streamer, reward_id: str) -> None:
        if not self._callback_url or not self._secret:
            logger.warning("EventSub not configured; redemptions of %s will not arrive", reward_id)
            return
        try:
            await subscribe_redemptions(
                self._twitch, streamer.twitch_user_id, reward_id, self._callback_url, self._secret,
            )
        except TwitchApiError as exc:
            # The EventSub reconciler recreates it on its next pass
            logger.error("EventSub subscription for reward %s failed: %s", reward_id, exc)

    # ------------------------------------------------------------------
    # Disable
    # ------------------------------------------------------------------
    async def disable_for_streamer(
        self, streamer_id: str, campaign_id: str, event_id: str,
    ) -> StreamerGamificationConfig | None:
        config = await run_db(self.get_streamer_config, streamer_id, campaign_id, event_id)
        if config is None:
            return None
        config = await run_db(self._save, config.id, is_enabled=False)
        if not config.twitch_reward_id:
            return config

        streamer = await run_db(self._load_streamer, streamer_id)
        return await self._delete_reward(streamer, config)

    async def _delete_reward(
        self, streamer: Streamer, config: StreamerGamificationConfig,
    ) -> StreamerGamificationConfig:
        """Delete the linked reward; a failure turns the config into an orphan."""
        try:
            await self._twitch.delete_custom_reward(
                streamer.twitch_user_id, streamer.access_token, config.twitch_reward_id,
            )
        except TwitchApiError as exc:
            if not exc.is_not_found:
                now = utcnow()
                retries = config.deletion_retry_count + 1
                logger.warning(
                    "Reward %s delete failed (%s); marked orphaned, retry #%d scheduled",
                    config.twitch_reward_id, exc, retries,
                )
                return await run_db(
                    self._save, config.id,
                    twitch_reward_status=RewardStatus.ORPHANED.value,
                    deletion_failed_at=now,
                    deletion_retry_count=retries,
                    next_deletion_retry_at=next_retry_at(retries, now),
                )
        logger.info("Reward %s deleted for streamer %s", config.twitch_reward_id, streamer.id)
        return await run_db(
            self._save, config.id,
            twitch_reward_status=RewardStatus.DELETED.value, **self._cleared(),
        )

    def _enabled_streamer_configs(
        self, campaign_id: str, event_id: str
    ) -> list[StreamerGamificationConfig]:
        with get_session(self._engine) as session:
            return list(session.scalars(
                select(StreamerGamificationConfig).where(
                    StreamerGamificationConfig.campaign_id == campaign_id,
                    StreamerGamificationConfig.event_id == event_id,
                    StreamerGamificationConfig.is_enabled.is_(True),
                )
            ).unique().all())

    def _disable_campaign_config(self, campaign_id: str, event_id: str) -> None:
        with get_session(self._engine) as session:
            config = session.scalar(
                select(CampaignGamificationConfig).where(
                    CampaignGamificationConfig.campaign_id == campaign_id,
                    CampaignGamificationConfig.event_id == event_id,
                )
            )
            if config is not None:
                config.is_enabled = False

    async def disable_for_campaign(self, campaign_id: str, event_id: str) -> dict:
        """Cascade the GM's disable to every streamer reward, then disable
        the campaign config.  Returns ``{"disabled", "orphaned", "failed"}``."""
        counts = {"disabled": 0, "orphaned": 0, "failed": 0}
        for config in await run_db(self._enabled_streamer_configs, campaign_id, event_id):
            try:
                updated = await self.disable_for_streamer(config.streamer_id, campaign_id, event_id)
            except Exception:
                counts["failed"] += 1
                logger.exception("Cascade disable failed for streamer config %s", config.id)
                continue
            counts["disabled"] += 1
            if updated is not None and updated.twitch_reward_status == RewardStatus.ORPHANED:
                counts["orphaned"] += 1

        await run_db(self._disable_campaign_config, campaign_id, event_id)
        logger.info(
            "Event %s disabled for campaign %s (%d streamer reward(s), %d orphaned)",
            event_id, campaign_id, counts["disabled"], counts["orphaned"],
        )
        return counts

    # ------------------------------------------------------------------
    # Cost
    # ------------------------------------------------------------------
    async def update_cost(
        self, streamer_id: str, campaign_id: str, event_id: str, new_cost: int,
    ) -> CostUpdateOutcome:
        """Push a new cost to the live reward, then store the override.

        When the reward is active Twitch is updated first; a Twitch failure
        is reported in the outcome and the stored config is left untouched.
        """
        config = await run_db(self.get_streamer_config, streamer_id, campaign_id, event_id)
        if config is None:
            raise ConfigNotFoundError(
                f"No reward config for streamer {streamer_id} / event {event_id}"
            )

        remote_updated = False
        if config.twitch_reward_id and config.twitch_reward_status == RewardStatus.ACTIVE:
            streamer = await run_db(self._load_streamer, streamer_id)
            try:
                await self._twitch.update_custom_reward(
                    streamer.twitch_user_id, streamer.access_token, config.twitch_reward_id,
                    cost=new_cost,
                )
            except TwitchApiError as exc:
                logger.warning("Cost update of reward %s failed: %s", config.twitch_reward_id, exc)
                return CostUpdateOutcome(config, remote_updated=False, error=str(exc))
            remote_updated = True
            logger.info("Reward %s cost set to %d", config.twitch_reward_id, new_cost)

        config = await run_db(self._save, config.id, cost_override=new_cost)
        return CostUpdateOutcome(config, remote_updated=remote_updated)

    # ------------------------------------------------------------------
    # Display helpers
    # ------------------------------------------------------------------
    @staticmethod
    def get_recommended_cost(
        campaign_config: CampaignGamificationConfig | None, event: GamificationEvent,
    ) -> int:
        if campaign_config is not None:
            return campaign_config.effective_cost(event)
        return event.default_cost

    @staticmethod
    def get_difficulty_explanation(
        campaign_config: CampaignGamificationConfig | None, event: GamificationEvent,
    ) -> str:
        coefficient = (
            campaign_config.effective_coefficient(event) if campaign_config is not None
            else event.default_objective_coefficient
        )
        return f"{round(coefficient * 100)}% of viewers need to click"
