"""
tumulte.services.gamification_service — Gamification Façade
=============================================================

Single entry point the webhooks and API routes talk to.  It glues the
evaluator, the instance state machine and the action executor together:

- **Dice rolls** (VTT webhook): a critical roll first tries to consume an
  armed instance (the gauge was filled, the action waited for a critical);
  otherwise every enabled ``dice_critical`` event is evaluated and may open
  a new instance.
- **Manual triggers** (GM): full pre-flight, cooldown check, new instance.
- **Redemptions** (Twitch EventSub): find-or-create the streamer's live
  instance and add the viewer's contribution.  Spell and monster actions
  execute as soon as the gauge is full; the others stay armed until the
  streamer rolls a critical.

Configuration problems return ``None`` / ``processed=False``; database
failures propagate to the caller (the webhook answers 5xx and Twitch
redelivers).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError
from sqlalchemy import select

from tumulte.constants import IMMEDIATE_ACTION_TYPES
from tumulte.database.engine import get_session, run_db
from tumulte.database.models import (
    CampaignGamificationConfig,
    CampaignMembership,
    EventType,
    GamificationEvent,
    InstanceStatus,
    Streamer,
    TriggerType,
)
from tumulte.engine.configs import DiceCriticalTriggerConfig
from tumulte.engine.events import StreamerSnapshot, TriggerContext
from tumulte.errors import ConfigNotFoundError
from tumulte.services.instance_manager import ContributionData, cooldown_seconds_for
from tumulte.services.preflight import CheckContext
from tumulte.services.twitch_client import TwitchApiError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tumulte.database.models import GamificationInstance
    from tumulte.engine.evaluator import TriggerEvaluator
    from tumulte.engine.events import DiceRollData
    from tumulte.services.action_executor import ActionExecutor
    from tumulte.services.instance_manager import InstanceManager
    from tumulte.services.preflight import PreFlightRunner
    from tumulte.services.twitch_client import TwitchClient
    from tumulte.services.vtt_state import VttStateService

logger = logging.getLogger(__name__)

_CONFIG_OVERRIDES = (
    "cost",
    "objective_coefficient",
    "minimum_objective",
    "duration",
    "cooldown",
    "max_clicks_per_user_per_session",
)


@dataclass(frozen=True, slots=True)
class StreamerRedemption:
    """A channel point redemption on a streamer's Tumulte reward."""

    campaign_id: str
    streamer_id: str
    event_id: str
    twitch_user_id: str
    twitch_username: str
    redemption_id: str
    reward_id: str | None = None
    amount: int = 0


@dataclass(frozen=True, slots=True)
class RedemptionOutcome:
    processed: bool
    instance: GamificationInstance | None = None
    is_new_instance: bool = False
    objective_reached: bool = False
    is_armed: bool = False


class GamificationService:
    def __init__(
        self,
        engine: Engine,
        *,
        evaluator: TriggerEvaluator,
        instances: InstanceManager,
        executor: ActionExecutor,
        vtt_state: VttStateService,
        preflight: PreFlightRunner | None = None,
        twitch: TwitchClient | None = None,
    ) -> None:
        self._engine = engine
        self._evaluator = evaluator
        self.instances = instances
        self.executor = executor
        self._vtt_state = vtt_state
        self._preflight = preflight
        self._twitch = twitch
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Catalogue & campaign configuration (sync; call through run_db)
    # ------------------------------------------------------------------
    def get_available_events(self) -> list[GamificationEvent]:
        with get_session(self._engine) as session:
            return list(session.scalars(
                select(GamificationEvent).order_by(GamificationEvent.name)
            ).all())

    def get_event(self, event_id: str) -> GamificationEvent | None:
        with get_session(self._engine) as session:
            return session.get(GamificationEvent, event_id)

    def get_campaign_config(
        self, campaign_id: str, event_id: str
    ) -> CampaignGamificationConfig | None:
        with get_session(self._engine) as session:
            return session.scalar(
                select(CampaignGamificationConfig).where(
                    CampaignGamificationConfig.campaign_id == campaign_id,
                    CampaignGamificationConfig.event_id == event_id,
                )
            )

    def get_campaign_configs(
        self, campaign_id: str, *, enabled_only: bool = False, trigger_type: str | None = None,
    ) -> list[CampaignGamificationConfig]:
        stmt = (
            select(CampaignGamificationConfig)
            .join(GamificationEvent, GamificationEvent.id == CampaignGamificationConfig.event_id)
            .where(CampaignGamificationConfig.campaign_id == campaign_id)
            .order_by(CampaignGamificationConfig.created_at)
        )
        if enabled_only:
            stmt = stmt.where(CampaignGamificationConfig.is_enabled.is_(True))
        if trigger_type is not None:
            stmt = stmt.where(GamificationEvent.trigger_type == trigger_type)
        with get_session(self._engine) as session:
            return list(session.scalars(stmt).unique().all())

    def enable_event_for_campaign(
        self, campaign_id: str, event_id: str, overrides: dict[str, Any] | None = None,
    ) -> CampaignGamificationConfig:
        """Enable (creating if needed) the campaign config, applying any
        provided overrides.  Keys absent from *overrides* keep their value."""
        overrides = {k: v for k, v in (overrides or {}).items() if k in _CONFIG_OVERRIDES}
        with get_session(self._engine) as session:
            if session.get(GamificationEvent, event_id) is None:
                raise ConfigNotFoundError(f"Gamification event {event_id} not found")
            config = session.scalar(
                select(CampaignGamificationConfig).where(
                    CampaignGamificationConfig.campaign_id == campaign_id,
                    CampaignGamificationConfig.event_id == event_id,
                )
            )
            if config is None:
                config = CampaignGamificationConfig(
                    campaign_id=campaign_id, event_id=event_id,
                    max_clicks_per_user_per_session=0,
                )
                session.add(config)
            config.is_enabled = True
            for key, value in overrides.items():
                setattr(config, key, value)
            session.flush()
            session.refresh(config)

        logger.info(
            "Gamification event %s enabled for campaign %s", event_id, campaign_id,
            extra={"overrides": overrides},
        )
        return config

    def disable_event_for_campaign(self, campaign_id: str, event_id: str) -> bool:
        """Disable the campaign config only; streamer rewards are handled by
        ``RewardManagerService.disable_for_campaign``."""
        with get_session(self._engine) as session:
            config = session.scalar(
                select(CampaignGamificationConfig).where(
                    CampaignGamificationConfig.campaign_id == campaign_id,
                    CampaignGamificationConfig.event_id == event_id,
                )
            )
            if config is None:
                return False
            config.is_enabled = False
        logger.info("Gamification event %s disabled for campaign %s", event_id, campaign_id)
        return True

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------
    async def handle_trigger(
        self,
        event: GamificationEvent,
        config: CampaignGamificationConfig,
        data: Any,
        context: TriggerContext,
        *,
        ignore_cooldown: bool = False,
    ) -> GamificationInstance | None:
        """Evaluate *data* against *event*; on a hit, create (or reuse) the
        live instance for the context's key.  Returns ``None`` when nothing
        fired or the key is still on cooldown."""
        evaluation = self._evaluator.evaluate(event, data)
        if not evaluation.should_trigger:
            logger.debug("Event %s not triggered: %s", event.slug, evaluation.reason)
            return None

        if event.type == EventType.GROUP:
            streamers = context.streamers or await self._group_snapshots(context.campaign_id)
            instance, created = await run_db(
                self.instances.create_group,
                event=event, campaign_config=config, campaign_id=context.campaign_id,
                streamers=streamers, trigger_data=evaluation.trigger_data,
                ignore_cooldown=ignore_cooldown,
            )
        else:
            if not context.streamer_id:
                logger.warning("Individual event %s triggered without a streamer", event.slug)
                return None
            instance, created = await run_db(
                self.instances.create_individual,
                event=event, campaign_config=config, campaign_id=context.campaign_id,
                streamer_id=context.streamer_id, viewer_count=context.viewer_count,
                trigger_data=evaluation.trigger_data, ignore_cooldown=ignore_cooldown,
            )
        if instance is None:
            logger.info("Event %s triggered during its cooldown", event.slug)
            return None
        if not created:
            logger.info("Event %s already has live instance %s", event.slug, instance.id)
        return instance

    async def on_dice_roll(
        self,
        campaign_id: str,
        streamer_id: str,
        streamer_name: str,
        viewer_count: int,
        roll: DiceRollData,
    ) -> GamificationInstance | None:
        self._light_preflight(campaign_id, {"streamerId": streamer_id, "source": "dice_roll"})

        if roll.is_critical and roll.critical_type:
            consumed = await self._try_consume_armed(campaign_id, streamer_id, roll)
            if consumed is not None:
                return consumed

        configs = await run_db(
            self.get_campaign_configs, campaign_id,
            enabled_only=True, trigger_type=TriggerType.DICE_CRITICAL.value,
        )
        context = TriggerContext(
            campaign_id=campaign_id, streamer_id=streamer_id,
            streamer_name=streamer_name, viewer_count=viewer_count,
        )
        for config in configs:
            event = config.event
            cooldown = await run_db(
                self.instances.is_on_cooldown, campaign_id, event.id,
                streamer_id if event.type == EventType.INDIVIDUAL else None,
            )
            if cooldown.on_cooldown:
                logger.debug("Event %s on cooldown until %s", event.slug, cooldown.ends_at)
                continue
            instance = await self.handle_trigger(event, config, roll, context)
            if instance is not None:
                return instance
        return None

    async def _try_consume_armed(
        self, campaign_id: str, streamer_id: str, roll: DiceRollData,
    ) -> GamificationInstance | None:
        configs = await run_db(self.get_campaign_configs, campaign_id, enabled_only=True)
        for config in configs:
            event = config.event
            armed = await run_db(
                self.instances.get_armed_for_streamer, campaign_id, event.id, streamer_id,
            )
            if armed is None or not event.trigger_config:
                continue

            try:
                trigger = DiceCriticalTriggerConfig.model_validate(event.trigger_config)
            except ValidationError:
                logger.warning("Event %s has an unusable trigger_config", event.slug)
                continue
            branch = (
                trigger.critical_success if roll.critical_type == "success"
                else trigger.critical_failure
            )
            if branch is None or not branch.enabled:
                continue

            connection_id = await run_db(self._vtt_state.get_connection_id, campaign_id)
            if not connection_id:
                logger.error(
                    "Armed instance %s cannot run: campaign %s has no VTT connection",
                    armed.id, campaign_id,
                )
                continue

            logger.info(
                "Consuming armed instance %s on critical %s by streamer %s",
                armed.id, roll.critical_type, streamer_id,
            )
            consumed = await run_db(
                self.instances.consume_armed_instance,
                armed.id, roll.to_trigger_data(), cooldown_seconds_for(event, config),
            )
            if consumed is None:
                # Another worker claimed it first
                continue
            return await self._execute(consumed, event, connection_id)
        return None

    async def trigger_manual_event(
        self,
        campaign_id: str,
        event_id: str,
        streamer_id: str,
        streamer_name: str,
        viewer_count: int,
        custom_data: dict | None = None,
        user_id: str | None = None,
    ) -> GamificationInstance | None:
        config = await run_db(self.get_campaign_config, campaign_id, event_id)
        if config is None or not config.is_enabled:
            return None
        event = config.event
        is_test = bool(custom_data and custom_data.get("isTest") is True)

        if is_test:
            logger.info("Manual trigger of %s in test mode: checks skipped", event.slug)
        else:
            if self._preflight is not None:
                report = await self._preflight.run(CheckContext(
                    campaign_id=campaign_id, mode="full", user_id=user_id,
                    metadata={"eventId": event_id, "eventSlug": event.slug,
                              "streamerId": streamer_id, "source": "manual_trigger"},
                ))
                if not report.healthy:
                    logger.warning(
                        "Manual trigger of %s blocked by pre-flight: %s",
                        event.slug, [c.name for c in report.failed_checks],
                    )
                    return None
            cooldown = await run_db(
                self.instances.is_on_cooldown, campaign_id, event_id,
                streamer_id if event.type == EventType.INDIVIDUAL else None,
            )
            if cooldown.on_cooldown:
                logger.warning("Manual trigger of %s during cooldown", event.slug)
                return None

        instance, _ = await run_db(
            self.instances.create_individual,
            event=event, campaign_config=config, campaign_id=campaign_id,
            streamer_id=streamer_id, viewer_count=viewer_count,
            trigger_data={"custom": custom_data or {}},
            ignore_cooldown=is_test,
        )
        return instance

    # ------------------------------------------------------------------
    # Redemptions
    # ------------------------------------------------------------------
    async def on_streamer_redemption(self, redemption: StreamerRedemption) -> RedemptionOutcome:
        self._light_preflight(
            redemption.campaign_id,
            {"streamerId": redemption.streamer_id, "source": "streamer_redemption"},
        )

        config = await run_db(self.get_campaign_config, redemption.campaign_id, redemption.event_id)
        if config is None or not config.is_enabled:
            logger.warning(
                "Redemption %s for disabled event %s in campaign %s",
                redemption.redemption_id, redemption.event_id, redemption.campaign_id,
            )
            return RedemptionOutcome(processed=False)
        event = config.event

        instance = await run_db(
            self.instances.get_active_or_armed_for_streamer,
            redemption.campaign_id, event.id,
            redemption.streamer_id if event.type == EventType.INDIVIDUAL else None,
        )
        is_new = False
        if instance is None:
            cooldown = await run_db(
                self.instances.is_on_cooldown, redemption.campaign_id, event.id,
                redemption.streamer_id if event.type == EventType.INDIVIDUAL else None,
            )
            if cooldown.on_cooldown:
                logger.info(
                    "Redemption %s refused: event %s on cooldown until %s",
                    redemption.redemption_id, event.slug, cooldown.ends_at,
                )
                return RedemptionOutcome(processed=False)

            activation = {"activation": {
                "triggeredBy": redemption.twitch_username,
                "twitchUserId": redemption.twitch_user_id,
                "redemptionId": redemption.redemption_id,
            }}
            if event.type == EventType.GROUP:
                instance, is_new = await run_db(
                    self.instances.create_group,
                    event=event, campaign_config=config, campaign_id=redemption.campaign_id,
                    streamers=await self._group_snapshots(redemption.campaign_id),
                    trigger_data=activation,
                )
            else:
                instance, is_new = await run_db(
                    self.instances.create_individual,
                    event=event, campaign_config=config, campaign_id=redemption.campaign_id,
                    streamer_id=redemption.streamer_id,
                    viewer_count=await self.viewer_count(redemption.streamer_id),
                    trigger_data=activation,
                )
            if instance is None:
                # Cooldown started between the check above and the insert
                return RedemptionOutcome(processed=False)

        if not instance.accepts_contributions:
            logger.warning(
                "Instance %s is %s — redemption %s not counted",
                instance.id, instance.status, redemption.redemption_id,
            )
            return RedemptionOutcome(processed=False, instance=instance)

        outcome = await run_db(self.instances.add_contribution, instance.id, ContributionData(
            streamer_id=redemption.streamer_id,
            twitch_user_id=redemption.twitch_user_id,
            twitch_username=redemption.twitch_username,
            amount=redemption.amount,
            twitch_redemption_id=redemption.redemption_id,
            twitch_reward_id=redemption.reward_id,
        ))
        instance = outcome.instance

        if outcome.armed and event.action_type in IMMEDIATE_ACTION_TYPES:
            connection_id = await run_db(self._vtt_state.get_connection_id, redemption.campaign_id)
            if not connection_id:
                # Left armed: it expires and the contributions get refunded
                logger.warning(
                    "Instance %s armed but campaign %s has no VTT connection",
                    instance.id, redemption.campaign_id,
                )
            else:
                claimed = await run_db(
                    self.instances.claim_for_execution,
                    instance.id, cooldown_seconds_for(event, config),
                )
                if claimed is not None:
                    instance = await self._execute(claimed, event, connection_id)

        return RedemptionOutcome(
            processed=outcome.added,
            instance=instance,
            is_new_instance=is_new,
            objective_reached=instance.is_objective_reached,
            is_armed=instance.status == InstanceStatus.ARMED,
        )

    # ------------------------------------------------------------------
    # GM controls
    # ------------------------------------------------------------------
    async def get_active_instances(self, campaign_id: str) -> list[GamificationInstance]:
        return await run_db(self.instances.get_active_instances, campaign_id)

    async def cancel_instance(
        self, instance_id: str, campaign_id: str | None = None
    ) -> GamificationInstance:
        return await run_db(self.instances.cancel, instance_id, campaign_id)

    async def force_complete_instance(
        self, instance_id: str, campaign_id: str | None = None
    ) -> GamificationInstance:
        """Fill the gauge.  Immediate actions run right away; the others
        stay armed for the next critical roll."""
        instance = await run_db(self.instances.force_complete, instance_id, campaign_id)
        config = await run_db(self.get_campaign_config, instance.campaign_id, instance.event_id)
        event = config.event if config else await run_db(self.get_event, instance.event_id)
        if event is None or event.action_type not in IMMEDIATE_ACTION_TYPES:
            return instance

        connection_id = await run_db(self._vtt_state.get_connection_id, instance.campaign_id)
        if not connection_id:
            logger.warning("Force-completed instance %s has no VTT connection", instance.id)
            return instance
        claimed = await run_db(
            self.instances.claim_for_execution, instance.id, cooldown_seconds_for(event, config),
        )
        if claimed is None:
            return instance
        return await self._execute(claimed, event, connection_id)

    async def reset_cooldowns(self, campaign_id: str, streamer_id: str | None = None) -> int:
        return await run_db(self.instances.reset_cooldowns, campaign_id, streamer_id)

    async def cancel_all_active_instances(
        self, campaign_id: str, streamer_id: str | None = None
    ) -> int:
        return await run_db(self.instances.cancel_all_active, campaign_id, streamer_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _execute(
        self, instance: GamificationInstance, event: GamificationEvent, connection_id: str,
    ) -> GamificationInstance:
        """Run the action of a claimed (completed, pending) instance and
        record the outcome.  Failures are recorded, never retried."""
        result = await self.executor.execute(instance, event, connection_id)
        await run_db(self.instances.record_execution, instance.id, result)
        return await run_db(self.instances.get_instance, instance.id) or instance

    def _light_preflight(self, campaign_id: str, metadata: dict) -> None:
        if self._preflight is None:
            return
        task = asyncio.create_task(self._preflight.run(
            CheckContext(campaign_id=campaign_id, mode="light", metadata=metadata)
        ))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Light pre-flight skipped: %s", task.exception())

    def _load_members(self, campaign_id: str) -> list[tuple[str, str, str]]:
        with get_session(self._engine) as session:
            rows = session.execute(
                select(Streamer.id, Streamer.twitch_display_name, Streamer.twitch_user_id)
                .join(CampaignMembership, CampaignMembership.streamer_id == Streamer.id)
                .where(CampaignMembership.campaign_id == campaign_id)
            ).all()
        return [(r.id, r.twitch_display_name, r.twitch_user_id) for r in rows]

    async def _fetch_viewer_counts(self, twitch_user_ids: list[str]) -> dict[str, int]:
        if self._twitch is None or not twitch_user_ids:
            return {}
        try:
            return await self._twitch.get_viewer_counts(twitch_user_ids)
        except TwitchApiError as exc:
            logger.warning("Viewer counts unavailable, using the minimum objective: %s", exc)
            return {}

    async def _group_snapshots(self, campaign_id: str) -> list[StreamerSnapshot]:
        members = await run_db(self._load_members, campaign_id)
        counts = await self._fetch_viewer_counts([twitch_id for _, _, twitch_id in members])
        return [
            StreamerSnapshot(
                streamer_id=streamer_id, streamer_name=name,
                viewer_count=counts.get(twitch_id, 0), local_objective=0,
            )
            for streamer_id, name, twitch_id in members
        ]

    def _twitch_user_id(self, streamer_id: str) -> str | None:
        with get_session(self._engine) as session:
            streamer = session.get(Streamer, streamer_id)
            return streamer.twitch_user_id if streamer else None

    async def viewer_count(self, streamer_id: str) -> int:
        twitch_id = await run_db(self._twitch_user_id, streamer_id)
        if twitch_id is None:
            return 0
        counts = await self._fetch_viewer_counts([twitch_id])
        return counts.get(twitch_id, 0)
