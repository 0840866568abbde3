"""
tumulte.services.actions.basic — Chat, Stat & Custom Actions
==============================================================
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tumulte.database.engine import run_db
from tumulte.database.models import ActionType
from tumulte.engine.configs import (
    ChatMessageActionConfig,
    CustomActionConfig,
    StatModifyActionConfig,
)
from tumulte.engine.events import ResultData
from tumulte.services.actions.base import FOUNDRY_UNAVAILABLE, ActionHandler

if TYPE_CHECKING:
    from tumulte.database.models import GamificationInstance
    from tumulte.services.vtt_state import VttStateService

logger = logging.getLogger(__name__)


class ChatMessageAction(ActionHandler):
    """Posts ``chatMessage.content`` in the VTT chat."""

    type = ActionType.CHAT_MESSAGE.value
    requires = ("vtt_connection",)
    config_model = ChatMessageActionConfig

    async def run(
        self, config: ChatMessageActionConfig, instance: GamificationInstance, connection_id: str,
    ) -> ResultData:
        if self._foundry is None:
            return ResultData.fail(FOUNDRY_UNAVAILABLE)
        if config.chat_message is None:
            return ResultData.fail("chat_message action has no chatMessage config")

        message = config.chat_message
        result = await self._foundry.send_chat_message(
            connection_id, message.content, message.speaker,
        )
        if not result.success:
            return ResultData.fail(result.error or "Failed to send chat message")
        return ResultData.ok("Chat message sent", {"content": message.content})


class StatModifyAction(ActionHandler):
    """Applies ``statModify.updates`` to an actor (the streamer's by default)."""

    type = ActionType.STAT_MODIFY.value
    requires = ("vtt_connection",)
    config_model = StatModifyActionConfig

    def __init__(self, vtt_state: VttStateService) -> None:
        super().__init__()
        self._vtt_state = vtt_state

    async def run(
        self, config: StatModifyActionConfig, instance: GamificationInstance, connection_id: str,
    ) -> ResultData:
        if self._foundry is None:
            return ResultData.fail(FOUNDRY_UNAVAILABLE)
        if config.stat_modify is None or not config.stat_modify.updates:
            return ResultData.fail("stat_modify action has no updates configured")

        actor_id = config.stat_modify.actor_id
        if actor_id is None and instance.streamer_id:
            actor = await run_db(
                self._vtt_state.resolve_actor_for_streamer,
                instance.campaign_id, instance.streamer_id,
            )
            actor_id = actor.actor_id if actor else None
        if actor_id is None:
            return ResultData.fail("No target actor for stat_modify")

        updates = config.stat_modify.updates
        result = await self._foundry.modify_actor(connection_id, actor_id, updates)
        if not result.success:
            return ResultData.fail(result.error or "Failed to modify actor")
        return ResultData.ok("Actor modified", {"actorId": actor_id, "updates": updates})


class CustomAction(ActionHandler):
    """Records the configured payload; the consumer of ``result_data`` acts on it."""

    type = ActionType.CUSTOM.value
    config_model = CustomActionConfig

    async def run(
        self, config: CustomActionConfig, instance: GamificationInstance, connection_id: str,
    ) -> ResultData:
        logger.info("Custom action recorded for instance %s", instance.id)
        return ResultData.ok("Custom action recorded", {"customActions": config.custom_actions or {}})
