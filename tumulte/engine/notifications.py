"""
tumulte.engine.notifications — Twitch Chat Notification Templates
===================================================================

Lookup table turning an executed action's result into the line posted in
the streamer's Twitch chat.  ``None`` means "no template / not enough data"
and the caller silently skips the notification.
"""

from __future__ import annotations

from collections.abc import Callable

from tumulte.engine.events import ResultData

_Template = Callable[[dict], "str | None"]


def _dice_invert(result: dict) -> str | None:
    original = result.get("originalResult")
    inverted = result.get("invertedResult")
    if original is None or inverted is None:
        return None
    return f"\U0001f3b2 The chat inverted fate! Roll {original} became {inverted}!"


def _spell_buff(result: dict) -> str | None:
    spell = result.get("spellName") or "a spell"
    return f"✨ The chat blessed {spell}! Its next cast is empowered."


def _spell_debuff(result: dict) -> str | None:
    spell = result.get("spellName") or "a spell"
    return f"\U0001f480 The chat cursed {spell}! Its next cast is weakened."


def _spell_disable(result: dict) -> str | None:
    spell = result.get("spellName") or "a spell"
    seconds = result.get("effectDuration") or result.get("durationSeconds")
    duration = f"{round(seconds / 60)} min" if seconds else "? min"
    return f"\U0001f512 The chat sealed {spell} for {duration}!"


def _monster_buff(result: dict) -> str | None:
    monster = result.get("monsterName")
    if not monster:
        return None
    return f"\U0001f479 The chat empowered {monster}! Watch out..."


def _monster_debuff(result: dict) -> str | None:
    monster = result.get("monsterName")
    if not monster:
        return None
    return f"\U0001f9ea The chat weakened {monster}! Strike now!"


NOTIFICATION_TEMPLATES: dict[str, _Template] = {
    "dice_invert": _dice_invert,
    "spell_buff": _spell_buff,
    "spell_debuff": _spell_debuff,
    "spell_disable": _spell_disable,
    "monster_buff": _monster_buff,
    "monster_debuff": _monster_debuff,
}


def build_notification_message(
    action_type: str, result_data: ResultData | dict | None,
) -> str | None:
    """Chat line for *action_type*, or ``None`` when there is nothing to say."""
    template = NOTIFICATION_TEMPLATES.get(action_type)
    if template is None or result_data is None:
        return None
    if isinstance(result_data, ResultData):
        result_data = result_data.to_dict()
    action_result = result_data.get("actionResult")
    if not isinstance(action_result, dict):
        return None
    return template(action_result)
