"""
tumulte.services.actions.monsters — Monster Buff / Debuff
===========================================================

Picks a random hostile, non-defeated combatant from the campaign's active
combat (the snapshot the VTT last pushed over its socket) and asks Foundry
to empower or weaken it.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from tumulte.database.engine import run_db
from tumulte.database.models import ActionType
from tumulte.engine.configs import MonsterBuffActionConfig, MonsterDebuffActionConfig
from tumulte.engine.events import ResultData
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


@dataclass(frozen=True, slots=True)
class MonsterInfo:
    actor_id: str
    name: str
    img: str | None = None
    hp: dict | None = None


def get_hostile_monsters(combatants: list[dict]) -> list[MonsterInfo]:
    """Non-defeated NPC/monster combatants bound to an actor.

    ``characterType`` wins when the VTT module reports it; older modules only
    send ``isNPC``.
    """
    monsters: list[MonsterInfo] = []
    for c in combatants:
        if not c.get("actorId") or c.get("isDefeated"):
            continue
        character_type = c.get("characterType")
        hostile = character_type in ("npc", "monster") if character_type else bool(c.get("isNPC"))
        if hostile:
            monsters.append(MonsterInfo(
                actor_id=c["actorId"], name=c.get("name") or "Unknown", img=c.get("img"),
                hp=c.get("hp"),
            ))
    return monsters


class _MonsterAction(ActionHandler):
    requires = ("vtt_connection",)

    def __init__(self, vtt_state: VttStateService, rng: random.Random | None = None) -> None:
        super().__init__()
        self._vtt_state = vtt_state
        self._rng = rng or random.Random()

    async def run(self, config: Any, instance: GamificationInstance, connection_id: str) -> ResultData:
        if self._foundry is None:
            return ResultData.fail(FOUNDRY_UNAVAILABLE)
        if not instance.streamer_id:
            return ResultData.fail(NO_STREAMER)

        combat = await run_db(self._vtt_state.get_active_combat, instance.campaign_id)
        if not combat:
            return ResultData.fail("No active combat")

        monsters = get_hostile_monsters(combat.get("combatants") or [])
        if not monsters:
            return ResultData.fail("No hostile monster in the combat")
        monster = self._rng.choice(monsters)

        effect, message, extra = self.build_effect(config, triggered_by(instance))
        logger.info(
            "Applying %s to monster %r (instance %s)", self.type, monster.name, instance.id,
        )
        result = await self._foundry.apply_monster_effect(connection_id, {
            "actorId": monster.actor_id,
            "monsterName": monster.name,
            "monsterImg": monster.img,
            "effect": effect,
        })
        if not result.success:
            return ResultData.fail(result.error or "Failed to apply monster effect")

        return ResultData.ok(message.format(monster=monster.name), {
            "monsterName": monster.name,
            "monsterImg": monster.img,
            "triggeredBy": effect["triggeredBy"],
            **extra,
        })

    def build_effect(self, config: Any, by: str) -> tuple[dict, str, dict]:
        raise NotImplementedError


class MonsterBuffAction(_MonsterAction):
    type = ActionType.MONSTER_BUFF.value
    config_model = MonsterBuffActionConfig

    def build_effect(self, config: MonsterBuffActionConfig, by: str) -> tuple[dict, str, dict]:
        cfg = config.monster_buff
        effect = {
            "type": "buff",
            "acBonus": cfg.ac_bonus,
            "tempHp": cfg.temp_hp,
            "highlightColor": cfg.highlight_color,
            "message": cfg.buff_message or "A monster was empowered by the chat!",
            "triggeredBy": by,
        }
        extra = {
            "effectType": "buff", "acBonus": cfg.ac_bonus, "tempHp": cfg.temp_hp,
            "highlightColor": cfg.highlight_color,
        }
        return effect, f'Monster "{{monster}}" empowered (+{cfg.ac_bonus} AC, +{cfg.temp_hp} temp HP)', extra


class MonsterDebuffAction(_MonsterAction):
    type = ActionType.MONSTER_DEBUFF.value
    config_model = MonsterDebuffActionConfig

    def build_effect(self, config: MonsterDebuffActionConfig, by: str) -> tuple[dict, str, dict]:
        cfg = config.monster_debuff
        effect = {
            "type": "debuff",
            "acPenalty": cfg.ac_penalty,
            "maxHpReduction": cfg.max_hp_reduction,
            "highlightColor": cfg.highlight_color,
            "message": cfg.debuff_message or "A monster was weakened by the chat!",
            "triggeredBy": by,
        }
        extra = {
            "effectType": "debuff", "acPenalty": cfg.ac_penalty,
            "maxHpReduction": cfg.max_hp_reduction, "highlightColor": cfg.highlight_color,
        }
        return (
            effect,
            f'Monster "{{monster}}" weakened (-{cfg.ac_penalty} AC, -{cfg.max_hp_reduction} max HP)',
            extra,
        )
