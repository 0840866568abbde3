"""
tumulte.services.actions.factory — Action Registry Construction
=================================================================

Phase one of the two-phase wiring: build every handler and register it.
Phase two (``ActionExecutor.set_foundry_command_service``) hands the VTT
command service to the handlers once it exists.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from tumulte.engine.registry import ActionHandlerRegistry
from tumulte.services.actions.basic import ChatMessageAction, CustomAction, StatModifyAction
from tumulte.services.actions.dice_invert import DiceInvertAction
from tumulte.services.actions.monsters import MonsterBuffAction, MonsterDebuffAction
from tumulte.services.actions.spells import SpellBuffAction, SpellDebuffAction, SpellDisableAction

if TYPE_CHECKING:
    from tumulte.services.vtt_state import VttStateService


def build_action_registry(vtt_state: VttStateService) -> ActionHandlerRegistry:
    registry = ActionHandlerRegistry()
    for handler in (
        ChatMessageAction(),
        StatModifyAction(vtt_state),
        DiceInvertAction(vtt_state),
        SpellBuffAction(vtt_state),
        SpellDebuffAction(vtt_state),
        SpellDisableAction(vtt_state),
        MonsterBuffAction(vtt_state),
        MonsterDebuffAction(vtt_state),
        CustomAction(),
    ):
        registry.register(handler)
    return registry
