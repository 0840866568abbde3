"""
tumulte.services.instance_manager — Instance State Machine
============================================================

Owns every write to ``gamification_instances`` and
``gamification_contributions``.

Lifecycle::

    active ──(objective reached)──▶ armed ──(claimed)──▶ completed
       │                              │
       └──(deadline / GM cancel)──────┴──▶ expired | cancelled

Concurrency rules:

- Every transition is a **state-conditional UPDATE** (``WHERE status = …``);
  the rowcount tells the caller whether it won.  Two workers claiming the
  same armed instance therefore execute its action at most once.
- At most one live (active/armed) instance exists per ``instance_key``.
  The partial unique index ``ix_instance_live_key`` arbitrates creation
  races; the loser re-reads and returns the winner's row.
- Contributions are deduplicated on ``twitch_redemption_id`` (unique).
  A replayed webhook hits the index inside a SAVEPOINT and becomes a no-op.

All methods are synchronous; async callers go through ``run_db``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tumulte.constants import DEFAULT_COOLDOWN_SECONDS, as_utc, utcnow
from tumulte.database.engine import get_session
from tumulte.database.models import (
    LIVE_STATUSES,
    CooldownType,
    EventType,
    ExecutionStatus,
    GamificationContribution,
    GamificationInstance,
    InstanceStatus,
)
from tumulte.engine.configs import CooldownConfig
from tumulte.engine.objective import ObjectiveCalculator
from tumulte.errors import CampaignMismatchError, InstanceNotFoundError, InstanceStateError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tumulte.database.models import CampaignGamificationConfig, GamificationEvent
    from tumulte.engine.events import ResultData, StreamerSnapshot

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ContributionData:
    """One viewer redemption, as extracted from the EventSub payload."""

    streamer_id: str | None
    twitch_user_id: str
    twitch_username: str
    amount: int
    twitch_redemption_id: str
    twitch_reward_id: str | None = None


@dataclass(frozen=True, slots=True)
class ContributionOutcome:
    instance: GamificationInstance
    added: bool
    armed: bool


@dataclass(frozen=True, slots=True)
class CooldownStatus:
    on_cooldown: bool
    ends_at: datetime | None = None


def make_instance_key(event_id: str, campaign_id: str, streamer_id: str | None) -> str:
    return f"{event_id}:{campaign_id}:{streamer_id or '*'}"


def cooldown_seconds_for(
    event: GamificationEvent, config: CampaignGamificationConfig | None
) -> int:
    """Campaign override > event time-cooldown > ``DEFAULT_COOLDOWN_SECONDS``."""
    if config is not None and config.cooldown is not None:
        return config.cooldown
    if event.cooldown_type == CooldownType.TIME:
        try:
            cooldown = CooldownConfig.model_validate(event.cooldown_config or {})
        except ValidationError:
            logger.warning("Event %s has an unusable cooldown_config", event.slug)
        else:
            if cooldown.duration_seconds is not None:
                return cooldown.duration_seconds
    return DEFAULT_COOLDOWN_SECONDS


# ---------------------------------------------------------------------------
# InstanceManager
# ---------------------------------------------------------------------------
class InstanceManager:
    def __init__(self, engine: Engine, calculator: ObjectiveCalculator | None = None) -> None:
        self._engine = engine
        self._calculator = calculator or ObjectiveCalculator()

    # -- Creation -----------------------------------------------------------
    def create_individual(
        self,
        *,
        event: GamificationEvent,
        campaign_config: CampaignGamificationConfig,
        campaign_id: str,
        streamer_id: str,
        viewer_count: int,
        trigger_data: dict | None = None,
        now: datetime | None = None,
        ignore_cooldown: bool = False,
    ) -> tuple[GamificationInstance | None, bool]:
        """Create a streamer-scoped instance.

        Returns ``(instance, created)``; ``created`` is False when a live
        instance already existed for the same event/campaign/streamer.
        While the key is on cooldown nothing is created and ``(None, False)``
        is returned, unless *ignore_cooldown* is set (GM test triggers).
        """
        now = now or utcnow()
        duration = campaign_config.effective_duration(event)
        instance = GamificationInstance(
            campaign_id=campaign_id,
            event_id=event.id,
            streamer_id=streamer_id,
            instance_key=make_instance_key(event.id, campaign_id, streamer_id),
            type=EventType.INDIVIDUAL.value,
            status=InstanceStatus.ACTIVE.value,
            trigger_data=trigger_data,
            objective_target=self._calculator.calculate_individual(
                viewer_count, campaign_config, event,
            ),
            current_progress=0,
            duration=duration,
            viewer_count_at_start=viewer_count,
            starts_at=now,
            expires_at=now + timedelta(seconds=duration),
        )
        return self._insert_live(instance, now, ignore_cooldown)

    def create_group(
        self,
        *,
        event: GamificationEvent,
        campaign_config: CampaignGamificationConfig,
        campaign_id: str,
        streamers: list[StreamerSnapshot] | tuple[StreamerSnapshot, ...],
        trigger_data: dict | None = None,
        now: datetime | None = None,
        ignore_cooldown: bool = False,
    ) -> tuple[GamificationInstance | None, bool]:
        """Create a campaign-wide instance whose objective sums every
        streamer's share.  Same return contract as ``create_individual``."""
        now = now or utcnow()
        duration = campaign_config.effective_duration(event)
        objective = self._calculator.calculate_group(streamers, campaign_config, event)
        instance = GamificationInstance(
            campaign_id=campaign_id,
            event_id=event.id,
            streamer_id=None,
            instance_key=make_instance_key(event.id, campaign_id, None),
            type=EventType.GROUP.value,
            status=InstanceStatus.ACTIVE.value,
            trigger_data=trigger_data,
            objective_target=objective.total_objective,
            current_progress=0,
            duration=duration,
            viewer_count_at_start=sum(s.viewer_count for s in objective.streamer_snapshots),
            streamer_snapshots=[s.to_dict() for s in objective.streamer_snapshots],
            starts_at=now,
            expires_at=now + timedelta(seconds=duration),
        )
        return self._insert_live(instance, now, ignore_cooldown)

    def _insert_live(
        self, instance: GamificationInstance, now: datetime, ignore_cooldown: bool,
    ) -> tuple[GamificationInstance | None, bool]:
        with get_session(self._engine) as session:
            existing = self._find_live(session, instance.instance_key)
            if existing is not None:
                return existing, False
            if not ignore_cooldown:
                ends_at = self._cooldown_ends_at(
                    session, instance.campaign_id, instance.event_id, instance.streamer_id, now,
                )
                if ends_at is not None:
                    logger.info(
                        "Key %s on cooldown until %s; no instance created",
                        instance.instance_key, ends_at.isoformat(),
                    )
                    return None, False
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(instance)
                    session.flush()
            except IntegrityError:
                # Another worker created the live instance between our
                # check and the insert; ix_instance_live_key caught it.
                existing = self._find_live(session, instance.instance_key)
                if existing is None:
                    raise
                logger.debug("Live instance race on %s — reusing %s", instance.instance_key, existing.id)
                return existing, False

        logger.info(
            "Instance %s created (%s, key=%s, objective=%d, expires=%s)",
            instance.id, instance.type, instance.instance_key,
            instance.objective_target, instance.expires_at.isoformat(),
        )
        return instance, True

    @staticmethod
    def _find_live(session: Session, instance_key: str) -> GamificationInstance | None:
        return session.scalar(
            select(GamificationInstance).where(
                GamificationInstance.instance_key == instance_key,
                GamificationInstance.status.in_(LIVE_STATUSES),
            )
        )

    # -- Contributions ------------------------------------------------------
    def add_contribution(
        self, instance_id: str, data: ContributionData, now: datetime | None = None
    ) -> ContributionOutcome:
        """Record a redemption and arm the instance when the objective is met.

        Replays of the same ``twitch_redemption_id`` and contributions to a
        non-active instance are no-ops (``added=False``).
        """
        now = now or utcnow()
        with get_session(self._engine) as session:
            instance = session.get(GamificationInstance, instance_id, with_for_update=True)
            if instance is None:
                raise InstanceNotFoundError(f"Instance {instance_id} not found")

            duplicate = session.scalar(
                select(GamificationContribution.id).where(
                    GamificationContribution.twitch_redemption_id == data.twitch_redemption_id
                )
            )
            if duplicate is not None:
                logger.debug("Redemption %s already recorded", data.twitch_redemption_id)
                return ContributionOutcome(instance, added=False, armed=False)

            if instance.status != InstanceStatus.ACTIVE:
                logger.warning(
                    "Instance %s is %s — contribution %s ignored",
                    instance.id, instance.status, data.twitch_redemption_id,
                )
                return ContributionOutcome(instance, added=False, armed=False)

            contribution = GamificationContribution(
                instance_id=instance.id,
                streamer_id=data.streamer_id,
                twitch_user_id=data.twitch_user_id,
                twitch_username=data.twitch_username,
                amount=data.amount,
                twitch_redemption_id=data.twitch_redemption_id,
                twitch_reward_id=data.twitch_reward_id,
                refunded=False,
            )
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(contribution)
                    session.flush()
            except IntegrityError:
                logger.debug("Redemption %s lost the dedup race", data.twitch_redemption_id)
                return ContributionOutcome(instance, added=False, armed=False)

            instance.current_progress += 1
            if instance.streamer_snapshots and data.streamer_id:
                instance.streamer_snapshots = [
                    {**s, "contributions": s.get("contributions", 0) + 1}
                    if s.get("streamerId") == data.streamer_id else s
                    for s in instance.streamer_snapshots
                ]
            session.flush()

            armed = self._try_arm(session, instance, now)
            if armed:
                session.refresh(instance)
            return ContributionOutcome(instance, added=True, armed=armed)

    def _try_arm(self, session: Session, instance: GamificationInstance, now: datetime) -> bool:
        if instance.objective_target <= 0:
            logger.warning(
                "Instance %s has a malformed objective (%d); it will never arm",
                instance.id, instance.objective_target,
            )
            return False
        if instance.current_progress < instance.objective_target:
            return False
        if now >= as_utc(instance.expires_at):
            logger.info("Instance %s reached its objective after the deadline", instance.id)
            return False
        ends_at = self._cooldown_ends_at(
            session, instance.campaign_id, instance.event_id, instance.streamer_id, now,
        )
        if ends_at is not None:
            logger.info("Instance %s objective reached but key is on cooldown", instance.id)
            return False

        result = session.execute(
            update(GamificationInstance)
            .where(
                GamificationInstance.id == instance.id,
                GamificationInstance.status == InstanceStatus.ACTIVE.value,
            )
            .values(status=InstanceStatus.ARMED.value, armed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                "Instance %s armed (%d/%d)",
                instance.id, instance.current_progress, instance.objective_target,
            )
        return bool(result.rowcount)

    # -- Completion ---------------------------------------------------------
    def claim_for_execution(
        self,
        instance_id: str,
        cooldown_seconds: int,
        now: datetime | None = None,
        trigger_data: dict | None = None,
    ) -> GamificationInstance | None:
        """``armed → completed``.  Returns the instance if this call won the
        claim, ``None`` if it was no longer armed."""
        now = now or utcnow()
        values: dict = {
            "status": InstanceStatus.COMPLETED.value,
            "completed_at": now,
            "cooldown_ends_at": now + timedelta(seconds=cooldown_seconds),
            "execution_status": ExecutionStatus.PENDING.value,
        }
        if trigger_data is not None:
            values["trigger_data"] = trigger_data

        with get_session(self._engine) as session:
            result = session.execute(
                update(GamificationInstance)
                .where(
                    GamificationInstance.id == instance_id,
                    GamificationInstance.status == InstanceStatus.ARMED.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                logger.debug("Instance %s was not armed — claim skipped", instance_id)
                return None
            instance = session.get(GamificationInstance, instance_id)

        logger.info("Instance %s completed (cooldown %ds)", instance_id, cooldown_seconds)
        return instance

    def consume_armed_instance(
        self,
        instance_id: str,
        dice_trigger_data: dict,
        cooldown_seconds: int,
        now: datetime | None = None,
    ) -> GamificationInstance | None:
        """Claim an armed instance for a critical roll, merging the roll's
        ``diceRoll`` block into its trigger data."""
        current = self.get_instance(instance_id)
        if current is None or current.status != InstanceStatus.ARMED:
            return None
        merged = {**(current.trigger_data or {}), **dice_trigger_data}
        return self.claim_for_execution(instance_id, cooldown_seconds, now, trigger_data=merged)

    def record_execution(
        self, instance_id: str, result: ResultData, now: datetime | None = None
    ) -> bool:
        """Store the action outcome; only a pending execution is overwritten."""
        now = now or utcnow()
        status = ExecutionStatus.EXECUTED if result.success else ExecutionStatus.FAILED
        with get_session(self._engine) as session:
            updated = session.execute(
                update(GamificationInstance)
                .where(
                    GamificationInstance.id == instance_id,
                    GamificationInstance.execution_status == ExecutionStatus.PENDING.value,
                )
                .values(
                    execution_status=status.value,
                    executed_at=now,
                    result_data=result.to_dict(),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
        if not result.success:
            logger.warning("Instance %s action failed: %s", instance_id, result.error)
        return bool(updated)

    # -- Expiry -------------------------------------------------------------
    def check_and_expire_instances(self, now: datetime | None = None) -> list[str]:
        """Expire every live instance past its deadline.

        Returns the ids this call transitioned; a second sweep over the same
        rows returns an empty list.
        """
        now = now or utcnow()
        expired: list[str] = []
        with get_session(self._engine) as session:
            candidates = session.scalars(
                select(GamificationInstance.id).where(
                    GamificationInstance.status.in_(LIVE_STATUSES),
                    GamificationInstance.expires_at < now,
                )
            ).all()
            for instance_id in candidates:
                result = session.execute(
                    update(GamificationInstance)
                    .where(
                        GamificationInstance.id == instance_id,
                        GamificationInstance.status.in_(LIVE_STATUSES),
                    )
                    .values(status=InstanceStatus.EXPIRED.value, completed_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount:
                    expired.append(instance_id)

        if expired:
            logger.info("Expired %d instance(s)", len(expired))
        return expired

    # -- GM-driven transitions ----------------------------------------------
    def cancel(self, instance_id: str, campaign_id: str | None = None) -> GamificationInstance:
        with get_session(self._engine) as session:
            instance = self._get_for_campaign(session, instance_id, campaign_id)
            result = session.execute(
                update(GamificationInstance)
                .where(
                    GamificationInstance.id == instance_id,
                    GamificationInstance.status.in_(LIVE_STATUSES),
                )
                .values(status=InstanceStatus.CANCELLED.value, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                raise InstanceStateError(
                    f"Instance {instance_id} is {instance.status} and cannot be cancelled"
                )
            session.refresh(instance)
        logger.info("Instance %s cancelled", instance_id)
        return instance

    def force_complete(
        self, instance_id: str, campaign_id: str | None = None, now: datetime | None = None
    ) -> GamificationInstance:
        """Fill the gauge and arm the instance regardless of contributions.

        An already-armed instance is returned unchanged.
        """
        now = now or utcnow()
        with get_session(self._engine) as session:
            instance = self._get_for_campaign(session, instance_id, campaign_id)
            if instance.status == InstanceStatus.ARMED:
                return instance
            result = session.execute(
                update(GamificationInstance)
                .where(
                    GamificationInstance.id == instance_id,
                    GamificationInstance.status == InstanceStatus.ACTIVE.value,
                )
                .values(
                    status=InstanceStatus.ARMED.value,
                    armed_at=now,
                    current_progress=GamificationInstance.objective_target,
                )
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                raise InstanceStateError(
                    f"Instance {instance_id} is {instance.status} and cannot be force-completed"
                )
            session.refresh(instance)
        logger.info("Instance %s force-completed by GM", instance_id)
        return instance

    def cancel_all_active(self, campaign_id: str, streamer_id: str | None = None) -> int:
        stmt = update(GamificationInstance).where(
            GamificationInstance.campaign_id == campaign_id,
            GamificationInstance.status.in_(LIVE_STATUSES),
        )
        if streamer_id is not None:
            stmt = stmt.where(GamificationInstance.streamer_id == streamer_id)
        with get_session(self._engine) as session:
            count = session.execute(
                stmt.values(status=InstanceStatus.CANCELLED.value, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            ).rowcount
        logger.info("Cancelled %d live instance(s) in campaign %s", count, campaign_id)
        return count

    def reset_cooldowns(
        self, campaign_id: str, streamer_id: str | None = None, now: datetime | None = None
    ) -> int:
        """Clear every running cooldown of the campaign (optionally one
        streamer's).  Returns the number of instances touched."""
        now = now or utcnow()
        stmt = update(GamificationInstance).where(
            GamificationInstance.campaign_id == campaign_id,
            GamificationInstance.status == InstanceStatus.COMPLETED.value,
            GamificationInstance.cooldown_ends_at > now,
        )
        if streamer_id is not None:
            stmt = stmt.where(GamificationInstance.streamer_id == streamer_id)
        with get_session(self._engine) as session:
            count = session.execute(
                stmt.values(cooldown_ends_at=None).execution_options(synchronize_session=False)
            ).rowcount
        logger.info("Reset %d cooldown(s) in campaign %s", count, campaign_id)
        return count

    @staticmethod
    def _get_for_campaign(
        session: Session, instance_id: str, campaign_id: str | None
    ) -> GamificationInstance:
        instance = session.get(GamificationInstance, instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        if campaign_id is not None and instance.campaign_id != campaign_id:
            raise CampaignMismatchError(
                f"Instance {instance_id} does not belong to campaign {campaign_id}"
            )
        return instance

    # -- Cooldowns ----------------------------------------------------------
    def is_on_cooldown(
        self,
        campaign_id: str,
        event_id: str,
        streamer_id: str | None = None,
        now: datetime | None = None,
    ) -> CooldownStatus:
        now = now or utcnow()
        with get_session(self._engine) as session:
            ends_at = self._cooldown_ends_at(session, campaign_id, event_id, streamer_id, now)
        return CooldownStatus(on_cooldown=ends_at is not None, ends_at=ends_at)

    @staticmethod
    def _cooldown_ends_at(
        session: Session,
        campaign_id: str,
        event_id: str,
        streamer_id: str | None,
        now: datetime,
    ) -> datetime | None:
        stmt = (
            select(GamificationInstance.cooldown_ends_at)
            .where(
                GamificationInstance.campaign_id == campaign_id,
                GamificationInstance.event_id == event_id,
                GamificationInstance.status == InstanceStatus.COMPLETED.value,
                GamificationInstance.cooldown_ends_at > now,
            )
            .order_by(GamificationInstance.cooldown_ends_at.desc())
            .limit(1)
        )
        if streamer_id is not None:
            stmt = stmt.where(GamificationInstance.streamer_id == streamer_id)
        return as_utc(session.scalar(stmt))

    # -- Queries ------------------------------------------------------------
    def get_instance(self, instance_id: str) -> GamificationInstance | None:
        with get_session(self._engine) as session:
            return session.get(GamificationInstance, instance_id)

    def get_active_instances(self, campaign_id: str) -> list[GamificationInstance]:
        """Active and armed instances of a campaign, oldest first."""
        with get_session(self._engine) as session:
            return list(session.scalars(
                select(GamificationInstance)
                .where(
                    GamificationInstance.campaign_id == campaign_id,
                    GamificationInstance.status.in_(LIVE_STATUSES),
                )
                .order_by(GamificationInstance.starts_at)
            ).all())

    def get_active_or_armed_for_streamer(
        self, campaign_id: str, event_id: str, streamer_id: str | None
    ) -> GamificationInstance | None:
        with get_session(self._engine) as session:
            return self._find_live(session, make_instance_key(event_id, campaign_id, streamer_id))

    def get_armed_for_streamer(
        self, campaign_id: str, event_id: str, streamer_id: str
    ) -> GamificationInstance | None:
        """The armed instance a streamer's critical roll would consume:
        their own individual instance, or the campaign's group instance."""
        with get_session(self._engine) as session:
            return session.scalar(
                select(GamificationInstance)
                .where(
                    GamificationInstance.campaign_id == campaign_id,
                    GamificationInstance.event_id == event_id,
                    GamificationInstance.status == InstanceStatus.ARMED.value,
                    (GamificationInstance.streamer_id == streamer_id)
                    | GamificationInstance.streamer_id.is_(None),
                )
                .order_by(GamificationInstance.armed_at)
                .limit(1)
            )
