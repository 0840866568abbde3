"""
tests/test_actions.py — Action Handlers & Executor
===================================================
Handlers run against an AsyncMock Foundry command service and a MagicMock
VTT state; nothing touches a real VTT.
"""

from __future__ import annotations

import asyncio
import random
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from tumulte.engine.events import ResultData
from tumulte.services.action_executor import ActionExecutor
from tumulte.services.actions.base import FOUNDRY_UNAVAILABLE, CommandResult, triggered_by
from tumulte.services.actions.basic import ChatMessageAction, CustomAction, StatModifyAction
from tumulte.services.actions.dice_invert import DiceInvertAction, invert_result
from tumulte.services.actions.factory import build_action_registry
from tumulte.services.actions.monsters import MonsterBuffAction, MonsterDebuffAction, get_hostile_monsters
from tumulte.services.actions.spells import (
    SpellBuffAction,
    SpellDisableAction,
    pick_random_spell,
)
from tumulte.services.vtt_state import ResolvedActor

OK = CommandResult(success=True)


@pytest.fixture
def foundry():
    service = AsyncMock()
    for name in (
        "send_chat_message", "delete_chat_message", "roll_dice",
        "modify_actor", "apply_spell_effect", "apply_monster_effect",
    ):
        getattr(service, name).return_value = OK
    return service


@pytest.fixture
def vtt_state():
    state = MagicMock()
    state.resolve_vtt_character_id.return_value = "actor-from-db"
    state.get_item_category_rules.return_value = []
    state.resolve_actor_for_streamer.return_value = ResolvedActor(
        actor_id="actor-1",
        character_id="char-1",
        name="Ireena",
        spells=[
            {"id": "sp-1", "name": "Fire Bolt", "level": 0},
            {"id": "sp-2", "name": "Fireball", "level": 3},
        ],
    )
    state.get_active_combat.return_value = {
        "combatants": [
            {"actorId": "pc-1", "name": "Ireena", "characterType": "pc"},
            {"actorId": "m-1", "name": "Strahd", "characterType": "npc", "img": "strahd.png"},
            {"actorId": "m-2", "name": "Wolf", "isNPC": True, "isDefeated": True},
        ],
    }
    return state


def _instance(trigger_data: dict | None = None, streamer_id: str | None = "streamer-1"):
    return SimpleNamespace(
        id="inst-1",
        campaign_id="camp-1",
        streamer_id=streamer_id,
        trigger_data=trigger_data,
    )


def _wired(handler, foundry):
    handler.set_foundry_command_service(foundry)
    return handler


DICE_ROLL = {
    "diceRoll": {
        "rollId": "r1",
        "characterId": "char-1",
        "vttCharacterId": "actor-1",
        "formula": "1d20+5",
        "result": 20,
        "diceResults": [20],
        "criticalType": "success",
        "messageId": "msg-9",
    },
}


# ===========================================================================
# Registry construction
# ===========================================================================
class TestActionRegistry:
    def test_every_action_type_registered(self, vtt_state):
        registry = build_action_registry(vtt_state)
        assert sorted(registry.types()) == sorted([
            "chat_message", "stat_modify", "dice_invert", "spell_buff", "spell_debuff",
            "spell_disable", "monster_buff", "monster_debuff", "custom",
        ])

    def test_vtt_actions_declare_connection_requirement(self, vtt_state):
        registry = build_action_registry(vtt_state)
        assert registry.get("dice_invert").requires == ("vtt_connection",)
        assert registry.get("custom").requires == ()


# ===========================================================================
# Dice invert
# ===========================================================================
class TestDiceInvert:
    def test_inverts_critical_success(self, foundry, vtt_state):
        handler = _wired(DiceInvertAction(vtt_state), foundry)
        result = asyncio.run(handler.execute({}, _instance(DICE_ROLL), "conn-1"))

        assert result.success is True
        assert result.action_result["originalResult"] == 20
        assert result.action_result["invertedResult"] == 1
        assert result.action_result["newCriticalType"] == "failure"
        foundry.delete_chat_message.assert_awaited_once_with("conn-1", "msg-9")
        args = foundry.roll_dice.await_args.args
        assert args[:3] == ("conn-1", "1d20+5", 1)
        assert args[4] == "actor-1"

    def test_keeps_original_when_configured(self, foundry, vtt_state):
        handler = _wired(DiceInvertAction(vtt_state), foundry)
        config = {"diceInvert": {"deleteOriginal": False, "trollMessage": "Gotcha"}}
        result = asyncio.run(handler.execute(config, _instance(DICE_ROLL), "conn-1"))
        assert result.success is True
        foundry.delete_chat_message.assert_not_awaited()
        assert foundry.roll_dice.await_args.args[3].startswith("Gotcha")

    def test_missing_roll_fails(self, foundry, vtt_state):
        handler = _wired(DiceInvertAction(vtt_state), foundry)
        result = asyncio.run(handler.execute({}, _instance({}), "conn-1"))
        assert result.success is False
        assert result.error == "Missing critical dice roll data"

    def test_without_foundry_fails(self, vtt_state):
        result = asyncio.run(DiceInvertAction(vtt_state).execute({}, _instance(DICE_ROLL), "c"))
        assert result.error == FOUNDRY_UNAVAILABLE

    def test_test_mode_rolls_twice(self, foundry, vtt_state):
        handler = _wired(DiceInvertAction(vtt_state, test_mode_delay=0), foundry)
        instance = _instance({"custom": {"isTest": True, "diceValue": 1}})
        result = asyncio.run(handler.execute({}, instance, "conn-1"))

        assert result.success is True
        assert result.action_result["testMode"] is True
        assert result.action_result["invertedResult"] == 20
        assert foundry.roll_dice.await_count == 2
        vtt_state.resolve_vtt_character_id.assert_called_once_with(None)

    def test_failed_roll_reports_error(self, foundry, vtt_state):
        foundry.roll_dice.return_value = CommandResult(success=False, error="socket closed")
        handler = _wired(DiceInvertAction(vtt_state), foundry)
        result = asyncio.run(handler.execute({}, _instance(DICE_ROLL), "conn-1"))
        assert result.success is False
        assert "socket closed" in result.error

    def test_invert_result(self):
        assert invert_result("success") == 1
        assert invert_result("failure") == 20


# ===========================================================================
# Spells
# ===========================================================================
class TestSpellActions:
    def test_buff_applies_effect(self, foundry, vtt_state):
        handler = _wired(SpellBuffAction(vtt_state), foundry)
        instance = _instance({"activation": {"triggeredBy": "viewer42"}})
        result = asyncio.run(handler.execute({"spellBuff": {"buffType": "bonus"}}, instance, "c"))

        assert result.success is True
        payload = foundry.apply_spell_effect.await_args.args[1]
        assert payload["actorId"] == "actor-1"
        assert payload["effect"]["type"] == "buff"
        assert payload["effect"]["triggeredBy"] == "viewer42"
        assert result.action_result["bonusValue"] == 2
        assert "(+2)" in result.message

    def test_disable_never_targets_cantrips(self, foundry, vtt_state):
        handler = _wired(SpellDisableAction(vtt_state), foundry)
        for _ in range(5):
            result = asyncio.run(handler.execute({}, _instance(), "c"))
            assert result.action_result["spellName"] == "Fireball"
        assert result.action_result["durationSeconds"] == 600

    def test_no_character_fails(self, foundry, vtt_state):
        vtt_state.resolve_actor_for_streamer.return_value = None
        handler = _wired(SpellBuffAction(vtt_state), foundry)
        result = asyncio.run(handler.execute({}, _instance(), "c"))
        assert result.success is False

    def test_group_instance_without_streamer_fails(self, foundry, vtt_state):
        handler = _wired(SpellBuffAction(vtt_state), foundry)
        result = asyncio.run(handler.execute({}, _instance(streamer_id=None), "c"))
        assert result.success is False

    def test_invalid_config_becomes_failure(self, foundry, vtt_state):
        handler = _wired(SpellDisableAction(vtt_state), foundry)
        result = asyncio.run(
            handler.execute({"spellDisable": {"durationSeconds": 0}}, _instance(), "c"),
        )
        assert result.success is False
        assert result.error.startswith("Invalid spell_disable config")
        foundry.apply_spell_effect.assert_not_awaited()

    def test_pick_skips_affected_spells(self):
        spells = [
            {"id": "a", "name": "Shield", "activeEffect": {"type": "buff"}},
            {"id": "b", "name": "Sleep"},
        ]
        assert pick_random_spell(spells)["id"] == "b"
        assert pick_random_spell(spells[:1]) is None

    def test_pick_respects_weights(self):
        spells = [{"id": "a", "name": "A"}, {"id": "b", "name": "B"}]
        rng = random.Random(7)
        picks = {pick_random_spell(spells, weights={"a": 0, "b": 3}, rng=rng)["id"] for _ in range(20)}
        assert picks == {"b"}


# ===========================================================================
# Monsters
# ===========================================================================
class TestMonsterActions:
    def test_hostile_filter(self):
        monsters = get_hostile_monsters([
            {"actorId": "a", "name": "Goblin", "isNPC": True},
            {"actorId": "b", "name": "Ally", "characterType": "pc", "isNPC": True},
            {"actorId": None, "name": "Token", "isNPC": True},
        ])
        assert [m.name for m in monsters] == ["Goblin"]

    def test_buff_targets_live_monster(self, foundry, vtt_state):
        handler = _wired(MonsterBuffAction(vtt_state), foundry)
        result = asyncio.run(handler.execute({}, _instance(), "c"))
        assert result.success is True
        assert result.action_result["monsterName"] == "Strahd"
        assert foundry.apply_monster_effect.await_args.args[1]["actorId"] == "m-1"

    def test_no_combat_fails(self, foundry, vtt_state):
        vtt_state.get_active_combat.return_value = None
        handler = _wired(MonsterDebuffAction(vtt_state), foundry)
        result = asyncio.run(handler.execute({}, _instance(), "c"))
        assert result.error == "No active combat"


# ===========================================================================
# Basic actions
# ===========================================================================
class TestBasicActions:
    def test_chat_message(self, foundry):
        handler = _wired(ChatMessageAction(), foundry)
        config = {"chatMessage": {"content": "Hello table", "speaker": "Tumulte"}}
        result = asyncio.run(handler.execute(config, _instance(), "c"))
        assert result.success is True
        foundry.send_chat_message.assert_awaited_once_with("c", "Hello table", "Tumulte")

    def test_chat_message_without_config(self, foundry):
        result = asyncio.run(_wired(ChatMessageAction(), foundry).execute({}, _instance(), "c"))
        assert result.success is False

    def test_stat_modify_resolves_streamer_actor(self, foundry, vtt_state):
        handler = _wired(StatModifyAction(vtt_state), foundry)
        config = {"statModify": {"updates": {"system.attributes.hp.value": 5}}}
        result = asyncio.run(handler.execute(config, _instance(), "c"))
        assert result.success is True
        foundry.modify_actor.assert_awaited_once_with(
            "c", "actor-1", {"system.attributes.hp.value": 5},
        )

    def test_custom_action_records_payload(self):
        result = asyncio.run(
            CustomAction().execute({"customActions": {"confetti": True}}, _instance(), ""),
        )
        assert result.success is True
        assert result.action_result == {"customActions": {"confetti": True}}

    def test_triggered_by_default(self):
        assert triggered_by(_instance()) == "the chat"


# ===========================================================================
# Executor
# ===========================================================================
class _CrashingAction:
    type = "crash"
    requires = ()

    def set_foundry_command_service(self, service):
        pass

    async def execute(self, config, instance, connection_id):
        raise RuntimeError("handler blew up")


class TestActionExecutor:
    @pytest.fixture
    def registry(self, vtt_state):
        registry = build_action_registry(vtt_state)
        registry.register(_CrashingAction())
        return registry

    def _event(self, action_type: str, action_config: dict | None = None):
        return SimpleNamespace(slug="evt", action_type=action_type, action_config=action_config)

    def test_unknown_action_type(self, registry):
        result = asyncio.run(ActionExecutor(registry).execute(_instance(), self._event("nope"), "c"))
        assert result == ResultData.fail("Unknown action type: nope")

    def test_crash_becomes_failure(self, registry):
        result = asyncio.run(ActionExecutor(registry).execute(_instance(), self._event("crash"), "c"))
        assert result.success is False
        assert result.error == "Action execution failed: handler blew up"

    def test_wires_foundry_into_every_handler(self, registry, foundry):
        executor = ActionExecutor(registry)
        executor.set_foundry_command_service(foundry)
        result = asyncio.run(executor.execute(_instance(DICE_ROLL), self._event("dice_invert"), "c"))
        assert result.success is True

    def test_success_notifies_streamer_chat(self, registry, foundry):
        notifier = AsyncMock()
        executor = ActionExecutor(registry, notifier)
        executor.set_foundry_command_service(foundry)
        asyncio.run(executor.execute(_instance(DICE_ROLL), self._event("dice_invert"), "c"))
        streamer_id, message = notifier.notify.await_args.args
        assert streamer_id == "streamer-1"
        assert "20" in message

    def test_notification_failure_does_not_fail_action(self, registry, foundry):
        notifier = AsyncMock()
        notifier.notify.side_effect = RuntimeError("chat down")
        executor = ActionExecutor(registry, notifier)
        executor.set_foundry_command_service(foundry)
        result = asyncio.run(executor.execute(_instance(DICE_ROLL), self._event("dice_invert"), "c"))
        assert result.success is True
