"""
tumulte.services.actions.base — Action Handler Contract
=========================================================

Every action handler:

- declares ``type`` (the ``ActionType`` it implements) and ``requires``
  (dependency keys such as ``"vtt_connection"`` that pre-flight validates);
- parses ``action_config`` with its own pydantic ``config_model``;
- implements ``async execute(config, instance, connection_id) → ResultData``.

Handlers that drive the VTT receive the :class:`FoundryCommandService` in a
second wiring pass (``set_foundry_command_service``) after the registry and
executor exist.  A handler asked to run before that pass, or with a config
it cannot parse, returns a failed ResultData — it never raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from pydantic import BaseModel, ValidationError

from tumulte.constants import DEFAULT_TRIGGERED_BY
from tumulte.engine.events import ResultData

if TYPE_CHECKING:
    from tumulte.database.models import GamificationInstance

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# VTT command surface
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CommandResult:
    success: bool
    error: str | None = None


class FoundryCommandService(Protocol):
    """Commands the VTT module understands."""

    async def send_chat_message(
        self, connection_id: str, content: str, speaker: str | None = None,
    ) -> CommandResult: ...

    async def delete_chat_message(self, connection_id: str, message_id: str) -> CommandResult: ...

    async def roll_dice(
        self,
        connection_id: str,
        formula: str,
        forced_result: int,
        flavor: str,
        actor_id: str | None = None,
    ) -> CommandResult: ...

    async def modify_actor(
        self, connection_id: str, actor_id: str, updates: dict,
    ) -> CommandResult: ...

    async def apply_spell_effect(self, connection_id: str, payload: dict) -> CommandResult: ...

    async def apply_monster_effect(self, connection_id: str, payload: dict) -> CommandResult: ...


# ---------------------------------------------------------------------------
# Handler base class
# ---------------------------------------------------------------------------
class InvalidActionConfig(Exception):
    """Raised by ``parse_config`` when the action_config blob is unusable."""


class ActionHandler:
    type: ClassVar[str]
    requires: ClassVar[tuple[str, ...]] = ()
    config_model: ClassVar[type[BaseModel]]

    def __init__(self) -> None:
        self._foundry: FoundryCommandService | None = None

    def set_foundry_command_service(self, service: FoundryCommandService) -> None:
        self._foundry = service

    def parse_config(self, raw: dict | None) -> Any:
        try:
            return self.config_model.model_validate(raw or {})
        except ValidationError as exc:
            raise InvalidActionConfig(f"Invalid {self.type} config: {exc}") from exc

    async def execute(
        self, config: dict | None, instance: GamificationInstance, connection_id: str,
    ) -> ResultData:
        """Parse *config* and run the action; bad configs become failures."""
        try:
            parsed = self.parse_config(config)
        except InvalidActionConfig as exc:
            logger.warning("Instance %s: %s", instance.id, exc)
            return ResultData.fail(str(exc))
        return await self.run(parsed, instance, connection_id)

    async def run(
        self, config: Any, instance: GamificationInstance, connection_id: str,
    ) -> ResultData:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} type={self.type}>"


# ---------------------------------------------------------------------------
# Helpers shared by handlers
# ---------------------------------------------------------------------------
def triggered_by(instance: GamificationInstance) -> str:
    """Display name of whoever completed the gauge."""
    activation = (instance.trigger_data or {}).get("activation") or {}
    return activation.get("triggeredBy") or DEFAULT_TRIGGERED_BY


FOUNDRY_UNAVAILABLE = "Foundry command service is not available"
NO_STREAMER = "No streamer attached to this instance"
