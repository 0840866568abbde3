"""
tumulte.services.actions.spells — Spell Buff / Debuff / Disable
=================================================================

All three actions pick one of the streamer's spells and ask Foundry to
apply an effect on it:

1. resolve the actor (character assignment, else the GM's active character);
2. keep spells matching a targetable item-category rule (weighted);
3. drop spells already carrying a Tumulte effect (and cantrips for disable);
4. weighted random pick, then ``apply_spell_effect``.
"""

from __future__ import annotations

import logging
import random
from typing import TYPE_CHECKING, Any

from tumulte.database.engine import run_db
from tumulte.database.models import ActionType
from tumulte.engine.configs import (
    SpellBuffActionConfig,
    SpellDebuffActionConfig,
    SpellDisableActionConfig,
)
from tumulte.engine.events import ResultData
from tumulte.engine.rules import get_targetable_spells
from tumulte.services.actions.base import (
    FOUNDRY_UNAVAILABLE,
    NO_STREAMER,
    ActionHandler,
    triggered_by,
)

if TYPE_CHECKING:
    from tumulte.database.models import GamificationInstance
    from tumulte.services.vtt_state import VttStateService

logger = logging.getLogger(__name__)


def pick_random_spell(
    spells: list[dict],
    *,
    exclude_cantrips: bool = False,
    weights: dict[str, int] | None = None,
    exclude_affected: bool = True,
    rng: random.Random | None = None,
) -> dict | None:
    """Weighted random spell, or ``None`` when nothing is eligible."""
    eligible = [s for s in spells if s.get("name")]
    if exclude_cantrips:
        eligible = [s for s in eligible if s.get("level") != 0]
    if exclude_affected:
        eligible = [s for s in eligible if not s.get("activeEffect")]
    if not eligible:
        return None

    rng = rng or random
    if weights:
        spell_weights = [max(weights.get(s.get("id"), 1), 0) for s in eligible]
        if sum(spell_weights) > 0:
            return rng.choices(eligible, weights=spell_weights, k=1)[0]
    return rng.choice(eligible)


class _SpellAction(ActionHandler):
    requires = ("vtt_connection",)
    exclude_cantrips = False

    def __init__(self, vtt_state: VttStateService) -> None:
        super().__init__()
        self._vtt_state = vtt_state

    async def run(self, config: Any, instance: GamificationInstance, connection_id: str) -> ResultData:
        if self._foundry is None:
            return ResultData.fail(FOUNDRY_UNAVAILABLE)
        if not instance.streamer_id:
            return ResultData.fail(NO_STREAMER)

        actor = await run_db(
            self._vtt_state.resolve_actor_for_streamer, instance.campaign_id, instance.streamer_id,
        )
        if actor is None:
            return ResultData.fail("No character assigned to the streamer")
        if not actor.spells:
            return ResultData.fail("The character has no synced spells")

        rules = await run_db(self._vtt_state.get_item_category_rules, instance.campaign_id)
        eligible, weights = get_targetable_spells(rules, actor.spells)
        affected = sum(1 for s in eligible if s.get("activeEffect"))
        if affected:
            logger.info(
                "Instance %s: excluding %d/%d spell(s) with active effects",
                instance.id, affected, len(eligible),
            )

        spell = pick_random_spell(
            eligible, exclude_cantrips=self.exclude_cantrips, weights=weights,
        )
        if spell is None:
            return ResultData.fail("No eligible spell found")

        effect, message, extra = self.build_effect(config, triggered_by(instance))
        logger.info(
            "Applying %s to spell %r of actor %s (instance %s)",
            self.type, spell["name"], actor.actor_id, instance.id,
        )
        result = await self._foundry.apply_spell_effect(connection_id, {
            "actorId": actor.actor_id,
            "spellId": spell.get("id"),
            "spellName": spell["name"],
            "effect": effect,
        })
        if not result.success:
            return ResultData.fail(result.error or "Failed to apply spell effect")

        return ResultData.ok(message.format(spell=spell["name"]), {
            "spellId": spell.get("id"),
            "spellName": spell["name"],
            "spellImg": spell.get("img"),
            "triggeredBy": effect["triggeredBy"],
            **extra,
        })

    def build_effect(self, config: Any, by: str) -> tuple[dict, str, dict]:
        """(effect payload, result message template, extra action_result keys)."""
        raise NotImplementedError


class SpellBuffAction(_SpellAction):
    type = ActionType.SPELL_BUFF.value
    config_model = SpellBuffActionConfig

    def build_effect(self, config: SpellBuffActionConfig, by: str) -> tuple[dict, str, dict]:
        cfg = config.spell_buff
        effect = {
            "type": "buff",
            "buffType": cfg.buff_type,
            "bonusValue": cfg.bonus_value,
            "highlightColor": cfg.highlight_color,
            "message": cfg.buff_message or "A spell was amplified by the chat!",
            "triggeredBy": by,
        }
        label = "advantage" if cfg.buff_type == "advantage" else f"+{cfg.bonus_value}"
        extra = {
            "effectType": "buff", "buffType": cfg.buff_type,
            "bonusValue": cfg.bonus_value, "highlightColor": cfg.highlight_color,
        }
        return effect, f'Spell "{{spell}}" amplified ({label})', extra


class SpellDebuffAction(_SpellAction):
    type = ActionType.SPELL_DEBUFF.value
    config_model = SpellDebuffActionConfig

    def build_effect(self, config: SpellDebuffActionConfig, by: str) -> tuple[dict, str, dict]:
        cfg = config.spell_debuff
        effect = {
            "type": "debuff",
            "debuffType": cfg.debuff_type,
            "penaltyValue": cfg.penalty_value,
            "highlightColor": cfg.highlight_color,
            "message": cfg.debuff_message or "A spell was cursed by the chat!",
            "triggeredBy": by,
        }
        label = "disadvantage" if cfg.debuff_type == "disadvantage" else f"-{cfg.penalty_value}"
        extra = {
            "effectType": "debuff", "debuffType": cfg.debuff_type,
            "penaltyValue": cfg.penalty_value, "highlightColor": cfg.highlight_color,
        }
        return effect, f'Spell "{{spell}}" cursed ({label})', extra


class SpellDisableAction(_SpellAction):
    type = ActionType.SPELL_DISABLE.value
    config_model = SpellDisableActionConfig
    exclude_cantrips = True

    def build_effect(self, config: SpellDisableActionConfig, by: str) -> tuple[dict, str, dict]:
        cfg = config.spell_disable
        effect = {
            "type": "disable",
            "durationSeconds": cfg.duration_seconds,
            "message": cfg.disable_message or "A spell was sealed by the chat!",
            "triggeredBy": by,
        }
        minutes = round(cfg.duration_seconds / 60)
        extra = {"effectType": "disable", "durationSeconds": cfg.duration_seconds}
        return effect, f'Spell "{{spell}}" sealed for {minutes} min', extra
