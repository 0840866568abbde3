"""
tumulte.database.seed — System Gamification Events Seeder
===========================================================

Built-in event templates seeded on first startup so a GM can enable them
without authoring any trigger/action JSON.

Idempotent — only inserts slugs that don't already exist.  Events edited
later are never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from tumulte.constants import BUFF_COLOR, DEBUFF_COLOR
from tumulte.database.models import ActionType, EventType, GamificationEvent, TriggerType

logger = logging.getLogger(__name__)

_GAUGE_DEFAULTS: dict[str, object] = {
    "default_cost": 50,
    "default_objective_coefficient": 0.2,
    "default_minimum_objective": 3,
    "default_duration": 90,
    "cooldown_type": "time",
    "cooldown_config": {"durationSeconds": 180},
}


# ---------------------------------------------------------------------------
# System event catalogue
# ---------------------------------------------------------------------------
SYSTEM_EVENTS: list[dict] = [
    {
        "slug": "critical-dice-invert",
        "name": "Fate Flip",
        "description": (
            "Viewers fill a gauge with channel points.  When full, the next "
            "critical roll of the streamer's character is inverted."
        ),
        "type": EventType.INDIVIDUAL.value,
        "trigger_type": TriggerType.DICE_CRITICAL.value,
        "trigger_config": {
            "criticalSuccess": {"enabled": True, "threshold": 20, "diceType": "d20"},
            "criticalFailure": {"enabled": True, "threshold": 1, "diceType": "d20"},
        },
        "action_type": ActionType.DICE_INVERT.value,
        "action_config": {
            "diceInvert": {"deleteOriginal": True, "trollMessage": None},
        },
        "default_cost": 100,
        "default_objective_coefficient": 0.1,
        "default_minimum_objective": 3,
        "default_duration": 300,
        "cooldown_type": "time",
        "cooldown_config": {"durationSeconds": 300},
        "reward_color": "#9146FF",
    },
    {
        "slug": "spell-disable",
        "name": "Spell Lock",
        "description": (
            "Viewers fill a gauge with channel points.  When full, a random "
            "spell of the character is locked for a while."
        ),
        "trigger_type": TriggerType.MANUAL.value,
        "action_type": ActionType.SPELL_DISABLE.value,
        "action_config": {"spellDisable": {"durationSeconds": 600}},
        "reward_color": "#8B5CF6",
        **_GAUGE_DEFAULTS,
    },
    {
        "slug": "spell-buff",
        "name": "Spell Amplification",
        "description": (
            "Viewers fill a gauge with channel points.  When full, a random "
            "spell of the character gains advantage on its next use."
        ),
        "trigger_type": TriggerType.MANUAL.value,
        "action_type": ActionType.SPELL_BUFF.value,
        "action_config": {
            "spellBuff": {"buffType": "advantage", "bonusValue": 2, "highlightColor": BUFF_COLOR},
        },
        "reward_color": BUFF_COLOR,
        **_GAUGE_DEFAULTS,
    },
    {
        "slug": "spell-debuff",
        "name": "Spell Curse",
        "description": (
            "Viewers fill a gauge with channel points.  When full, a random "
            "spell of the character suffers disadvantage on its next use."
        ),
        "trigger_type": TriggerType.MANUAL.value,
        "action_type": ActionType.SPELL_DEBUFF.value,
        "action_config": {
            "spellDebuff": {
                "debuffType": "disadvantage", "penaltyValue": 2, "highlightColor": DEBUFF_COLOR,
            },
        },
        "reward_color": DEBUFF_COLOR,
        **_GAUGE_DEFAULTS,
    },
    {
        "slug": "monster-buff",
        "name": "Monster Empowerment",
        "description": "When the gauge fills, a random hostile combatant is empowered.",
        "trigger_type": TriggerType.MANUAL.value,
        "action_type": ActionType.MONSTER_BUFF.value,
        "action_config": {"monsterBuff": {"acBonus": 2, "tempHp": 10}},
        "reward_color": BUFF_COLOR,
        **_GAUGE_DEFAULTS,
    },
    {
        "slug": "monster-debuff",
        "name": "Monster Weakening",
        "description": "When the gauge fills, a random hostile combatant is weakened.",
        "trigger_type": TriggerType.MANUAL.value,
        "action_type": ActionType.MONSTER_DEBUFF.value,
        "action_config": {"monsterDebuff": {"acPenalty": 2, "maxHpReduction": 10}},
        "reward_color": DEBUFF_COLOR,
        **_GAUGE_DEFAULTS,
    },
]


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_system_events(engine: Engine) -> None:
    """Insert system events whose slug doesn't exist yet.

    Runs on every startup but only writes missing slugs, so it is safe to
    call repeatedly.
    """
    session = Session(engine)
    inserted = 0
    try:
        existing = set(session.scalars(select(GamificationEvent.slug)).all())
        for spec in SYSTEM_EVENTS:
            if spec["slug"] in existing:
                continue
            session.add(GamificationEvent(is_system_event=True, **spec))
            inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d system gamification events.", inserted)
