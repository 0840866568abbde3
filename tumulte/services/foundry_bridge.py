"""
tumulte.services.foundry_bridge — VTT WebSocket Hub & Command Adapter
=======================================================================

The Foundry VTT module keeps one WebSocket open per paired world
(``/ws/vtt/{connection_id}``).  Two classes sit on top of it:

- :class:`VttHub` tracks the open sockets and the latest combat snapshot
  pushed by each world.
- :class:`FoundryCommandAdapter` implements ``FoundryCommandService`` by
  sending ``command:<action>`` frames through the hub.

Commands are fire-and-forget: success means "delivered to the socket",
with a send timeout so one stuck world cannot stall other instances.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from fastapi import WebSocket

from tumulte.constants import utcnow
from tumulte.services.actions.base import CommandResult

logger = logging.getLogger(__name__)

NOT_CONNECTED = "VTT connection unavailable or disconnected"


class VttHub:
    """Open VTT sockets and their latest combat state, keyed by connection id."""

    def __init__(self) -> None:
        self.clients: dict[str, WebSocket] = {}
        self.combats: dict[str, dict] = {}

    def add_client(self, connection_id: str, websocket: WebSocket) -> None:
        previous = self.clients.get(connection_id)
        if previous is not None and previous is not websocket:
            logger.info("VTT %s reconnected — replacing previous socket", connection_id)
        self.clients[connection_id] = websocket

    def remove_client(self, connection_id: str, websocket: WebSocket | None = None) -> None:
        """Drop the socket (only if it is still the current one) and its combat."""
        current = self.clients.get(connection_id)
        if websocket is not None and current is not websocket:
            return
        self.clients.pop(connection_id, None)
        self.combats.pop(connection_id, None)

    def is_connected(self, connection_id: str | None) -> bool:
        return connection_id is not None and connection_id in self.clients

    # -- Combat snapshots ---------------------------------------------------
    def set_combat(self, connection_id: str, combat: dict | None) -> None:
        if combat is None:
            self.combats.pop(connection_id, None)
        else:
            self.combats[connection_id] = combat

    def get_combat(self, connection_id: str | None) -> dict | None:
        if connection_id is None:
            return None
        return self.combats.get(connection_id)

    # -- Outbound -----------------------------------------------------------
    async def send(self, connection_id: str, event: str, data: dict, timeout: float) -> None:
        websocket = self.clients.get(connection_id)
        if websocket is None:
            raise ConnectionError(NOT_CONNECTED)
        await asyncio.wait_for(websocket.send_json({"event": event, "data": data}), timeout)


class FoundryCommandAdapter:
    """``FoundryCommandService`` over :class:`VttHub`."""

    def __init__(self, hub: VttHub, timeout: float = 10.0) -> None:
        self._hub = hub
        self._timeout = timeout

    async def _send_command(self, connection_id: str, action: str, data: dict) -> CommandResult:
        if not self._hub.is_connected(connection_id):
            return CommandResult(success=False, error=NOT_CONNECTED)

        request_id = uuid.uuid4().hex
        payload: dict[str, Any] = {
            **data, "requestId": request_id, "timestamp": utcnow().isoformat(),
        }
        try:
            await self._hub.send(connection_id, f"command:{action}", payload, self._timeout)
        except (ConnectionError, RuntimeError, TimeoutError) as exc:
            logger.error(
                "VTT command %s to %s failed: %s", action, connection_id, exc,
                extra={"request_id": request_id},
            )
            return CommandResult(success=False, error=str(exc) or type(exc).__name__)

        logger.info(
            "VTT command %s sent to %s", action, connection_id,
            extra={"request_id": request_id},
        )
        return CommandResult(success=True)

    async def send_chat_message(
        self, connection_id: str, content: str, speaker: str | None = None,
    ) -> CommandResult:
        return await self._send_command(connection_id, "chat_message", {
            "content": content,
            "speaker": {"alias": speaker} if speaker else None,
        })

    async def delete_chat_message(self, connection_id: str, message_id: str) -> CommandResult:
        return await self._send_command(connection_id, "delete_message", {"messageId": message_id})

    async def roll_dice(
        self,
        connection_id: str,
        formula: str,
        forced_result: int,
        flavor: str,
        actor_id: str | None = None,
    ) -> CommandResult:
        return await self._send_command(connection_id, "roll_dice", {
            "formula": formula,
            "forcedResult": forced_result,
            "flavor": flavor,
            "speaker": {"actorId": actor_id} if actor_id else None,
        })

    async def modify_actor(
        self, connection_id: str, actor_id: str, updates: dict,
    ) -> CommandResult:
        return await self._send_command(connection_id, "modify_actor", {
            "actorId": actor_id, "updates": updates,
        })

    async def apply_spell_effect(self, connection_id: str, payload: dict) -> CommandResult:
        return await self._send_command(connection_id, "apply_spell_effect", payload)

    async def apply_monster_effect(self, connection_id: str, payload: dict) -> CommandResult:
        return await self._send_command(connection_id, "apply_monster_effect", payload)
