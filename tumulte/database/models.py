"""
tumulte.database.models — SQLAlchemy 2.0 Data Models
=====================================================

Tables:
- streamers                      — Twitch broadcasters linked to Tumulte
- vtt_connections                — Paired Foundry VTT worlds
- characters                     — VTT actors synced from Foundry
- campaigns                      — GM-owned campaigns
- campaign_memberships           — Streamers taking part in a campaign
- character_assignments          — Which character a streamer plays
- gamification_events            — Immutable event templates
- campaign_gamification_configs  — Per-campaign overrides of an event
- streamer_gamification_configs  — Per-streamer Twitch channel point reward
- gamification_instances         — Live occurrences (the state machine rows)
- gamification_contributions     — Viewer redemptions applied to an instance
- campaign_criticality_rules     — Campaign dice criticality rules
- campaign_item_category_rules   — Campaign item classification rules
- preflight_reports              — Append-only pre-flight audit log
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Tumulte ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class EventType(enum.StrEnum):
    """Whether an instance is scoped to one streamer or the whole campaign."""
    INDIVIDUAL = "individual"
    GROUP = "group"


class TriggerType(enum.StrEnum):
    """What starts a gamification instance."""
    DICE_CRITICAL = "dice_critical"
    MANUAL = "manual"
    CUSTOM = "custom"


class ActionType(enum.StrEnum):
    """What happens in the VTT when an instance completes."""
    CHAT_MESSAGE = "chat_message"
    STAT_MODIFY = "stat_modify"
    DICE_INVERT = "dice_invert"
    SPELL_BUFF = "spell_buff"
    SPELL_DEBUFF = "spell_debuff"
    SPELL_DISABLE = "spell_disable"
    MONSTER_BUFF = "monster_buff"
    MONSTER_DEBUFF = "monster_debuff"
    CUSTOM = "custom"


class CooldownType(enum.StrEnum):
    TIME = "time"
    EVENT_COMPLETE = "event_complete"


class InstanceStatus(enum.StrEnum):
    """Instance lifecycle: active → armed → completed | expired | cancelled."""
    ACTIVE = "active"
    ARMED = "armed"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


LIVE_STATUSES: tuple[str, ...] = (InstanceStatus.ACTIVE.value, InstanceStatus.ARMED.value)
_LIVE_PREDICATE = text("status IN ('active', 'armed')")
TERMINAL_STATUSES: tuple[str, ...] = (
    InstanceStatus.COMPLETED.value,
    InstanceStatus.EXPIRED.value,
    InstanceStatus.CANCELLED.value,
)


class ExecutionStatus(enum.StrEnum):
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"


class RewardStatus(enum.StrEnum):
    """State of the Twitch channel point reward behind a streamer config."""
    NOT_CREATED = "not_created"
    ACTIVE = "active"
    PAUSED = "paused"
    DELETED = "deleted"
    ORPHANED = "orphaned"


# ---------------------------------------------------------------------------
# Streamers & VTT — collaborator rows the engine reads
# ---------------------------------------------------------------------------
class Streamer(Base):
    __tablename__ = "streamers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    twitch_user_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    twitch_login: Mapped[str] = mapped_column(String(64), nullable=False)
    twitch_display_name: Mapped[str] = mapped_column(String(64), nullable=False)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Streamer id={self.id} login={self.twitch_login!r}>"


class VttConnection(Base):
    __tablename__ = "vtt_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # active | revoked | expired
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    # connected | connecting | disconnected | error
    tunnel_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="disconnected"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<VttConnection id={self.id} tunnel={self.tunnel_status}>"


class Character(Base):
    __tablename__ = "characters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    vtt_character_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    img: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # [{"id", "name", "img", "type", "level", "school", "prepared", "activeEffect"}]
    spells: Mapped[list | None] = mapped_column(JSONB, nullable=True)

    def __repr__(self) -> str:
        return f"<Character id={self.id} name={self.name!r}>"


class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    vtt_connection_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("vtt_connections.id", ondelete="SET NULL"), nullable=True
    )
    gm_active_character_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("characters.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    vtt_connection: Mapped[VttConnection | None] = relationship()
    gm_active_character: Mapped[Character | None] = relationship()

    def __repr__(self) -> str:
        return f"<Campaign id={self.id} name={self.name!r}>"


class CampaignMembership(Base):
    __tablename__ = "campaign_memberships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    streamer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("streamers.id", ondelete="CASCADE"), nullable=False
    )
    poll_authorization_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    streamer: Mapped[Streamer] = relationship()

    __table_args__ = (
        UniqueConstraint("campaign_id", "streamer_id", name="uq_membership_campaign_streamer"),
    )


class CharacterAssignment(Base):
    __tablename__ = "character_assignments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    streamer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("streamers.id", ondelete="CASCADE"), nullable=False
    )
    character_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("characters.id", ondelete="CASCADE"), nullable=False
    )

    character: Mapped[Character] = relationship()

    __table_args__ = (
        UniqueConstraint("campaign_id", "streamer_id", name="uq_assignment_campaign_streamer"),
    )


# ---------------------------------------------------------------------------
# Gamification events — immutable templates
# ---------------------------------------------------------------------------
class GamificationEvent(Base):
    __tablename__ = "gamification_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EventType.INDIVIDUAL.value
    )

    trigger_type: Mapped[str] = mapped_column(String(30), nullable=False)
    trigger_config: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    action_config: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    default_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    default_objective_coefficient: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.1
    )
    default_minimum_objective: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    default_duration: Mapped[int] = mapped_column(Integer, nullable=False, default=300)

    cooldown_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CooldownType.TIME.value
    )
    cooldown_config: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    reward_color: Mapped[str] = mapped_column(String(7), nullable=False, default="#9146FF")
    is_system_event: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<GamificationEvent slug={self.slug!r} {self.trigger_type}→{self.action_type}>"


class CampaignGamificationConfig(Base):
    __tablename__ = "campaign_gamification_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("gamification_events.id", ondelete="CASCADE"), nullable=False
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    # Overrides: NULL means "use the event default"
    cost: Mapped[int | None] = mapped_column(Integer, nullable=True)
    objective_coefficient: Mapped[float | None] = mapped_column(Float, nullable=True)
    minimum_objective: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cooldown: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_clicks_per_user_per_session: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    event: Mapped[GamificationEvent] = relationship(lazy="joined")

    __table_args__ = (
        UniqueConstraint("campaign_id", "event_id", name="uq_campaign_gamification_event"),
    )

    # -- Effective values ---------------------------------------------------
    def effective_cost(self, event: GamificationEvent) -> int:
        return self.cost if self.cost is not None else event.default_cost

    def effective_coefficient(self, event: GamificationEvent) -> float:
        if self.objective_coefficient is not None:
            return self.objective_coefficient
        return event.default_objective_coefficient

    def effective_minimum_objective(self, event: GamificationEvent) -> int:
        if self.minimum_objective is not None:
            return self.minimum_objective
        return event.default_minimum_objective

    def effective_duration(self, event: GamificationEvent) -> int:
        return self.duration if self.duration is not None else event.default_duration

    def __repr__(self) -> str:
        return (
            f"<CampaignGamificationConfig campaign={self.campaign_id} "
            f"event={self.event_id} enabled={self.is_enabled}>"
        )


class StreamerGamificationConfig(Base):
    __tablename__ = "streamer_gamification_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    streamer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("streamers.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("gamification_events.id", ondelete="CASCADE"), nullable=False
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    cost_override: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Twitch reward tracking
    twitch_reward_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    twitch_reward_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RewardStatus.NOT_CREATED.value
    )

    # Orphan tracking: set when a Twitch delete fails
    deletion_failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deletion_retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_deletion_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    streamer: Mapped[Streamer] = relationship(lazy="joined")
    event: Mapped[GamificationEvent] = relationship(lazy="joined")

    __table_args__ = (
        UniqueConstraint(
            "streamer_id", "campaign_id", "event_id", name="uq_streamer_gamification_event"
        ),
        Index("ix_streamer_gamification_reward", "twitch_reward_id"),
        Index("ix_streamer_gamification_status", "twitch_reward_status"),
    )

    def effective_cost(
        self, campaign_config: CampaignGamificationConfig | None, event: GamificationEvent
    ) -> int:
        """Streamer override > campaign override > event default."""
        if self.cost_override is not None:
            return self.cost_override
        if campaign_config is not None:
            return campaign_config.effective_cost(event)
        return event.default_cost

    def __repr__(self) -> str:
        return (
            f"<StreamerGamificationConfig streamer={self.streamer_id} "
            f"reward={self.twitch_reward_id} status={self.twitch_reward_status}>"
        )


# ---------------------------------------------------------------------------
# Instances & contributions — the live state machine
# ---------------------------------------------------------------------------
class GamificationInstance(Base):
    __tablename__ = "gamification_instances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("gamification_events.id", ondelete="CASCADE"), nullable=False
    )
    streamer_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("streamers.id", ondelete="SET NULL"), nullable=True
    )
    # "{event_id}:{campaign_id}:{streamer_id or '*'}"; see ix_instance_live_key
    instance_key: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InstanceStatus.ACTIVE.value
    )

    trigger_data: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    objective_target: Mapped[int] = mapped_column(Integer, nullable=False)
    current_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)
    viewer_count_at_start: Mapped[int | None] = mapped_column(Integer, nullable=True)
    streamer_snapshots: Mapped[list | None] = mapped_column(JSONB, nullable=True)

    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    armed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cooldown_ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    execution_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    result_data: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    contributions: Mapped[list[GamificationContribution]] = relationship(
        back_populates="instance", cascade="all, delete-orphan",
        order_by="GamificationContribution.created_at",
    )

    __table_args__ = (
        # At most one live instance per key; the index is the race arbiter
        # when two webhooks try to create the same instance.
        Index(
            "ix_instance_live_key",
            "instance_key",
            unique=True,
            postgresql_where=_LIVE_PREDICATE,
            sqlite_where=_LIVE_PREDICATE,
        ),
        Index("ix_instance_status_expires", "status", "expires_at"),
        Index("ix_instance_campaign_event", "campaign_id", "event_id"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def accepts_contributions(self) -> bool:
        return self.status == InstanceStatus.ACTIVE

    @property
    def is_objective_reached(self) -> bool:
        return self.objective_target > 0 and self.current_progress >= self.objective_target

    @property
    def progress_percentage(self) -> float:
        if self.objective_target <= 0:
            return 0.0
        return min(100.0, round(self.current_progress * 100 / self.objective_target, 1))

    def __repr__(self) -> str:
        return (
            f"<GamificationInstance id={self.id} status={self.status} "
            f"{self.current_progress}/{self.objective_target}>"
        )


class GamificationContribution(Base):
    __tablename__ = "gamification_contributions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    instance_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("gamification_instances.id", ondelete="CASCADE"), nullable=False
    )
    streamer_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    twitch_user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    twitch_username: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Dedup key: at-least-once webhook delivery replays the same id
    twitch_redemption_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    twitch_reward_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    refunded: Mapped[bool] = mapped_column(Boolean, default=False)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    instance: Mapped[GamificationInstance] = relationship(back_populates="contributions")

    __table_args__ = (
        Index("ix_contribution_instance", "instance_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<GamificationContribution instance={self.instance_id} "
            f"redemption={self.twitch_redemption_id!r}>"
        )


# ---------------------------------------------------------------------------
# Campaign rules — pure data evaluated by tumulte.engine.rules
# ---------------------------------------------------------------------------
class CampaignCriticalityRule(Base):
    __tablename__ = "campaign_criticality_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    dice_formula: Mapped[str | None] = mapped_column(String(50), nullable=True)
    result_condition: Mapped[str] = mapped_column(String(20), nullable=False)
    # max_die | min_die | total | any_die
    result_field: Mapped[str] = mapped_column(String(20), nullable=False, default="max_die")
    critical_type: Mapped[str] = mapped_column(String(10), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False, default="major")
    label: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    is_system_preset: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<CampaignCriticalityRule {self.label!r} {self.result_condition}>"


class CampaignItemCategoryRule(Base):
    __tablename__ = "campaign_item_category_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    item_type: Mapped[str] = mapped_column(String(30), nullable=False)
    match_field: Mapped[str | None] = mapped_column(String(100), nullable=True)
    match_value: Mapped[str | None] = mapped_column(String(100), nullable=True)
    label: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    weight: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_targetable: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<CampaignItemCategoryRule {self.category}:{self.item_type}>"


# ---------------------------------------------------------------------------
# Pre-flight audit log
# ---------------------------------------------------------------------------
class PreflightReport(Base):
    __tablename__ = "preflight_reports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    campaign_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    event_slug: Mapped[str | None] = mapped_column(String(100), nullable=True)
    triggered_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    mode: Mapped[str] = mapped_column(String(10), nullable=False)
    healthy: Mapped[bool] = mapped_column(Boolean, nullable=False)
    has_warnings: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    checks: Mapped[list] = mapped_column(JSONB, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_preflight_campaign_time", "campaign_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<PreflightReport campaign={self.campaign_id} healthy={self.healthy}>"
