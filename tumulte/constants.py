"""
tumulte.constants — Shared Constants & Helpers
==============================================

Single source of truth for gamification defaults.  Import from here instead
of repeating literals in services, handlers, and routes.
"""

from __future__ import annotations

from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Instance lifecycle
# ---------------------------------------------------------------------------
# Fallback cooldown when neither the campaign config nor the event's
# time-based cooldown config provides one.
DEFAULT_COOLDOWN_SECONDS = 300

# Action types that run as soon as the gauge is full instead of waiting for
# the next critical roll.
IMMEDIATE_ACTION_TYPES: frozenset[str] = frozenset({
    "spell_buff",
    "spell_debuff",
    "spell_disable",
    "monster_buff",
    "monster_debuff",
})

# Relative viewer-count variation that justifies recalculating an objective.
OBJECTIVE_VARIATION_THRESHOLD = 0.2

# ---------------------------------------------------------------------------
# Dice inversion (d20 systems)
# ---------------------------------------------------------------------------
DICE_MIN = 1
DICE_MAX = 20

# ---------------------------------------------------------------------------
# Orphaned reward cleanup
# ---------------------------------------------------------------------------
ORPHAN_BACKOFF_MAX_HOURS = 24
STALE_ORPHAN_THRESHOLD_DAYS = 3

# ---------------------------------------------------------------------------
# Twitch
# ---------------------------------------------------------------------------
REDEMPTION_SUBSCRIPTION_TYPE = "channel.channel_points_custom_reward_redemption.add"
LIVE_SUBSCRIPTION_STATUSES: frozenset[str] = frozenset({
    "enabled",
    "webhook_callback_verification_pending",
})
MAX_REWARDS_PER_CHANNEL = 50

# ---------------------------------------------------------------------------
# Pre-flight
# ---------------------------------------------------------------------------
# Light mode (webhook hot path) only runs checks at or below this priority.
# Priority guide: 0 infrastructure, 5 external APIs, 10 auth/tokens,
# 15 VTT connection, 20 business rules.
LIGHT_MODE_MAX_PRIORITY = 10

# ---------------------------------------------------------------------------
# Action defaults
# ---------------------------------------------------------------------------
BUFF_COLOR = "#10B981"
DEBUFF_COLOR = "#EF4444"
DEFAULT_TRIGGERED_BY = "the chat"
DEFAULT_TROLL_MESSAGE = "\U0001f3ad The chat flipped fate! Blame them..."  # 🎭


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------
def utcnow() -> datetime:
    """Timezone-aware "now" used for every persisted timestamp."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)
