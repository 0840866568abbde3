"""Create gamification tables

Revision ID: 0f3c9a1e7b21
Revises:
Create Date: 2026-10-18 09:12:41.518204

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '0f3c9a1e7b21'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create the collaborator tables and the gamification engine tables."""

    # --- collaborators ---
    op.create_table(
        "streamers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("twitch_user_id", sa.String(32), nullable=False, unique=True),
        sa.Column("twitch_login", sa.String(64), nullable=False),
        sa.Column("twitch_display_name", sa.String(64), nullable=False),
        sa.Column("access_token", sa.Text, nullable=True),
        sa.Column("refresh_token", sa.Text, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=True),
        _created_at(),
    )
    op.create_table(
        "vtt_connections",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("tunnel_status", sa.String(20), nullable=False),
        _created_at(),
    )
    op.create_table(
        "characters",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("vtt_character_id", sa.String(64), nullable=True),
        sa.Column("img", sa.String(500), nullable=True),
        sa.Column("spells", postgresql.JSONB, nullable=True),
    )
    op.create_table(
        "campaigns",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("owner_id", sa.String(36), nullable=False),
        sa.Column(
            "vtt_connection_id", sa.String(36),
            sa.ForeignKey("vtt_connections.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column(
            "gm_active_character_id", sa.String(36),
            sa.ForeignKey("characters.id", ondelete="SET NULL"), nullable=True,
        ),
        _created_at(),
    )
    op.create_table(
        "campaign_memberships",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "campaign_id", sa.String(36),
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "streamer_id", sa.String(36),
            sa.ForeignKey("streamers.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("poll_authorization_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("campaign_id", "streamer_id", name="uq_membership_campaign_streamer"),
    )
    op.create_table(
        "character_assignments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "campaign_id", sa.String(36),
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "streamer_id", sa.String(36),
            sa.ForeignKey("streamers.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "character_id", sa.String(36),
            sa.ForeignKey("characters.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.UniqueConstraint("campaign_id", "streamer_id", name="uq_assignment_campaign_streamer"),
    )

    # --- events & configs ---
    op.create_table(
        "gamification_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("trigger_type", sa.String(30), nullable=False),
        sa.Column("trigger_config", postgresql.JSONB, nullable=True),
        sa.Column("action_type", sa.String(30), nullable=False),
        sa.Column("action_config", postgresql.JSONB, nullable=True),
        sa.Column("default_cost", sa.Integer, nullable=False),
        sa.Column("default_objective_coefficient", sa.Float, nullable=False),
        sa.Column("default_minimum_objective", sa.Integer, nullable=False),
        sa.Column("default_duration", sa.Integer, nullable=False),
        sa.Column("cooldown_type", sa.String(20), nullable=False),
        sa.Column("cooldown_config", postgresql.JSONB, nullable=True),
        sa.Column("reward_color", sa.String(7), nullable=False),
        sa.Column("is_system_event", sa.Boolean, nullable=True),
        sa.Column("created_by_id", sa.String(36), nullable=True),
        _created_at(),
    )
    op.create_table(
        "campaign_gamification_configs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "campaign_id", sa.String(36),
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "event_id", sa.String(36),
            sa.ForeignKey("gamification_events.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("is_enabled", sa.Boolean, nullable=True),
        sa.Column("cost", sa.Integer, nullable=True),
        sa.Column("objective_coefficient", sa.Float, nullable=True),
        sa.Column("minimum_objective", sa.Integer, nullable=True),
        sa.Column("duration", sa.Integer, nullable=True),
        sa.Column("cooldown", sa.Integer, nullable=True),
        sa.Column("max_clicks_per_user_per_session", sa.Integer, nullable=True),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("campaign_id", "event_id", name="uq_campaign_gamification_event"),
    )
    op.create_table(
        "streamer_gamification_configs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "campaign_id", sa.String(36),
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "streamer_id", sa.String(36),
            sa.ForeignKey("streamers.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "event_id", sa.String(36),
            sa.ForeignKey("gamification_events.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("is_enabled", sa.Boolean, nullable=True),
        sa.Column("cost_override", sa.Integer, nullable=True),
        sa.Column("twitch_reward_id", sa.String(64), nullable=True),
        sa.Column("twitch_reward_status", sa.String(20), nullable=False),
        sa.Column("deletion_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deletion_retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_deletion_retry_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint(
            "streamer_id", "campaign_id", "event_id", name="uq_streamer_gamification_event",
        ),
    )
    op.create_index(
        "ix_streamer_gamification_reward", "streamer_gamification_configs", ["twitch_reward_id"],
    )
    op.create_index(
        "ix_streamer_gamification_status", "streamer_gamification_configs",
        ["twitch_reward_status"],
    )

    # --- instances & contributions ---
    op.create_table(
        "gamification_instances",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "campaign_id", sa.String(36),
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "event_id", sa.String(36),
            sa.ForeignKey("gamification_events.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "streamer_id", sa.String(36),
            sa.ForeignKey("streamers.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("instance_key", sa.String(120), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("trigger_data", postgresql.JSONB, nullable=True),
        sa.Column("objective_target", sa.Integer, nullable=False),
        sa.Column("current_progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("duration", sa.Integer, nullable=False),
        sa.Column("viewer_count_at_start", sa.Integer, nullable=True),
        sa.Column("streamer_snapshots", postgresql.JSONB, nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("armed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cooldown_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("execution_status", sa.String(20), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result_data", postgresql.JSONB, nullable=True),
        _created_at(),
    )
    # One live (active/armed) instance per key
    op.create_index(
        "ix_instance_live_key", "gamification_instances", ["instance_key"],
        unique=True, postgresql_where=sa.text("status IN ('active', 'armed')"),
    )
    op.create_index(
        "ix_instance_status_expires", "gamification_instances", ["status", "expires_at"],
    )
    op.create_index(
        "ix_instance_campaign_event", "gamification_instances", ["campaign_id", "event_id"],
    )

    op.create_table(
        "gamification_contributions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "instance_id", sa.String(36),
            sa.ForeignKey("gamification_instances.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("streamer_id", sa.String(36), nullable=True),
        sa.Column("twitch_user_id", sa.String(32), nullable=False),
        sa.Column("twitch_username", sa.String(64), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("twitch_redemption_id", sa.String(64), nullable=False, unique=True),
        sa.Column("twitch_reward_id", sa.String(64), nullable=True),
        sa.Column("refunded", sa.Boolean, nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_contribution_instance", "gamification_contributions", ["instance_id"])

    # --- rules ---
    op.create_table(
        "campaign_criticality_rules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "campaign_id", sa.String(36),
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("dice_formula", sa.String(50), nullable=True),
        sa.Column("result_condition", sa.String(20), nullable=False),
        sa.Column("result_field", sa.String(20), nullable=False),
        sa.Column("critical_type", sa.String(10), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False),
        sa.Column("label", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_enabled", sa.Boolean, nullable=True),
        sa.Column("is_system_preset", sa.Boolean, nullable=True),
        _created_at(),
    )
    op.create_table(
        "campaign_item_category_rules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "campaign_id", sa.String(36),
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("category", sa.String(30), nullable=False),
        sa.Column("item_type", sa.String(30), nullable=False),
        sa.Column("match_field", sa.String(100), nullable=True),
        sa.Column("match_value", sa.String(100), nullable=True),
        sa.Column("label", sa.String(100), nullable=False, server_default=""),
        sa.Column("weight", sa.Integer, nullable=False, server_default="1"),
        sa.Column("is_targetable", sa.Boolean, nullable=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_enabled", sa.Boolean, nullable=True),
        _created_at(),
    )

    # --- pre-flight audit ---
    op.create_table(
        "preflight_reports",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("campaign_id", sa.String(36), nullable=False),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column("event_slug", sa.String(100), nullable=True),
        sa.Column("triggered_by", sa.String(36), nullable=True),
        sa.Column("mode", sa.String(10), nullable=False),
        sa.Column("healthy", sa.Boolean, nullable=False),
        sa.Column("has_warnings", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("checks", postgresql.JSONB, nullable=False),
        sa.Column("duration_ms", sa.Integer, nullable=False, server_default="0"),
        _created_at(),
    )
    op.create_index(
        "ix_preflight_campaign_time", "preflight_reports", ["campaign_id", "created_at"],
    )


def downgrade() -> None:
    """Drop every table created above, children first."""
    op.drop_index("ix_preflight_campaign_time", table_name="preflight_reports")
    op.drop_table("preflight_reports")
    op.drop_table("campaign_item_category_rules")
    op.drop_table("campaign_criticality_rules")
    op.drop_index("ix_contribution_instance", table_name="gamification_contributions")
    op.drop_table("gamification_contributions")
    op.drop_index("ix_instance_campaign_event", table_name="gamification_instances")
    op.drop_index("ix_instance_status_expires", table_name="gamification_instances")
    op.drop_index("ix_instance_live_key", table_name="gamification_instances")
    op.drop_table("gamification_instances")
    op.drop_index("ix_streamer_gamification_status", table_name="streamer_gamification_configs")
    op.drop_index("ix_streamer_gamification_reward", table_name="streamer_gamification_configs")
    op.drop_table("streamer_gamification_configs")
    op.drop_table("campaign_gamification_configs")
    op.drop_table("gamification_events")
    op.drop_table("character_assignments")
    op.drop_table("campaign_memberships")
    op.drop_table("campaigns")
    op.drop_table("characters")
    op.drop_table("vtt_connections")
    op.drop_table("streamers")
