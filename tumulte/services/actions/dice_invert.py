"""
tumulte.services.actions.dice_invert — Critical Roll Inversion
================================================================

Turns the streamer's critical success into a critical failure (and vice
versa) on a d20:

1. delete the original roll's chat message (unless ``deleteOriginal`` is
   false);
2. re-roll the same formula with the inverted result forced;
3. the re-roll carries the troll message as flavor.

Test mode (``custom.isTest`` with ``custom.diceValue``) synthesizes a roll
and posts both the "original" and the inverted roll so a GM can preview
the effect without waiting for a real critical.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING

from tumulte.constants import DEFAULT_TROLL_MESSAGE, DICE_MAX, DICE_MIN
from tumulte.database.engine import run_db
from tumulte.database.models import ActionType
from tumulte.engine.configs import DiceInvertActionConfig
from tumulte.engine.events import ResultData
from tumulte.services.actions.base import FOUNDRY_UNAVAILABLE, ActionHandler

if TYPE_CHECKING:
    from tumulte.database.models import GamificationInstance
    from tumulte.services.vtt_state import VttStateService

logger = logging.getLogger(__name__)


def invert_result(critical_type: str) -> int:
    return DICE_MIN if critical_type == "success" else DICE_MAX


def invert_critical_type(critical_type: str) -> str:
    return "failure" if critical_type == "success" else "success"


class DiceInvertAction(ActionHandler):
    type = ActionType.DICE_INVERT.value
    requires = ("vtt_connection",)
    config_model = DiceInvertActionConfig

    def __init__(self, vtt_state: VttStateService, test_mode_delay: float = 1.5) -> None:
        super().__init__()
        self._vtt_state = vtt_state
        self._test_mode_delay = test_mode_delay

    async def run(
        self, config: DiceInvertActionConfig, instance: GamificationInstance, connection_id: str,
    ) -> ResultData:
        trigger_data = instance.trigger_data or {}
        dice = trigger_data.get("diceRoll")
        custom = trigger_data.get("custom") or {}
        is_test = isinstance(custom, dict) and custom.get("isTest") is True

        if dice is None and is_test and custom.get("diceValue") is not None:
            value = int(custom["diceValue"])
            dice = {
                "rollId": f"test-{uuid.uuid4().hex[:8]}",
                "characterId": None,
                "characterName": "Test Character",
                "formula": "1d20",
                "result": value,
                "diceResults": [value],
                "criticalType": "success" if value == DICE_MAX else "failure",
            }
            logger.info("Dice invert test mode for instance %s (value=%d)", instance.id, value)

        if not dice or dice.get("criticalType") not in ("success", "failure"):
            return ResultData.fail("Missing critical dice roll data")
        if self._foundry is None:
            return ResultData.fail(FOUNDRY_UNAVAILABLE)

        actor_id = dice.get("vttCharacterId") or await run_db(
            self._vtt_state.resolve_vtt_character_id, dice.get("characterId"),
        )
        settings = config.dice_invert
        troll = settings.troll_message or DEFAULT_TROLL_MESSAGE
        original = dice["result"]
        inverted = invert_result(dice["criticalType"])
        action_result = {
            "originalResult": original,
            "invertedResult": inverted,
            "originalCriticalType": dice["criticalType"],
            "newCriticalType": invert_critical_type(dice["criticalType"]),
        }
        flavor = f"{troll}\n\n(Original result: {original} → Inverted: {inverted})"
        formula = dice.get("formula") or "1d20"

        if is_test:
            first = await self._foundry.roll_dice(
                connection_id, formula, original, f"\U0001f3b2 Critical test roll: {original}",
                actor_id,
            )
            if not first.success:
                return ResultData.fail(f"Original test roll failed: {first.error}", action_result)
            await asyncio.sleep(self._test_mode_delay)
        elif settings.delete_original and dice.get("messageId"):
            deleted = await self._foundry.delete_chat_message(connection_id, dice["messageId"])
            if not deleted.success:
                logger.warning(
                    "Instance %s: could not delete original roll message %s: %s",
                    instance.id, dice["messageId"], deleted.error,
                )

        rolled = await self._foundry.roll_dice(connection_id, formula, inverted, flavor, actor_id)
        if not rolled.success:
            return ResultData.fail(f"Inverted roll failed: {rolled.error}", action_result)

        if is_test:
            return ResultData.ok(
                f"[TEST] Dice inverted: {original} → {inverted}",
                {**action_result, "testMode": True},
            )
        return ResultData.ok(f"Dice inverted: {original} → {inverted}", action_result)
