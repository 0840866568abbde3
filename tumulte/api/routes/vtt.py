"""
tumulte.api.routes.vtt — Foundry VTT WebSocket
================================================

One socket per paired Foundry world.  Outbound it carries
``command:<action>`` frames from :class:`FoundryCommandAdapter`; inbound
the module pushes its combat state so monster actions can pick targets.

Inbound frames (``{"event": ..., "data": ...}``):

- ``combat:update`` — ``data.combat`` replaces the stored snapshot
- ``combat:end``    — clears it
- ``ping``          — answered with ``pong``
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from tumulte.api.deps import TumulteDep
from tumulte.database.engine import run_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["vtt"])

POLICY_VIOLATION = 1008


@router.websocket("/ws/vtt/{connection_id}")
async def vtt_socket(websocket: WebSocket, connection_id: str, tumulte: TumulteDep):
    hub = tumulte.hub
    vtt = tumulte.vtt_state
    if not await run_db(vtt.is_connection_active, connection_id):
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()
    hub.add_client(connection_id, websocket)
    await run_db(vtt.set_tunnel_status, connection_id, "connected")
    logger.info("VTT %s connected", connection_id)

    try:
        while True:
            frame = await websocket.receive_json()
            event = frame.get("event")
            data = frame.get("data") or {}
            if event == "combat:update":
                hub.set_combat(connection_id, data.get("combat"))
            elif event == "combat:end":
                hub.set_combat(connection_id, None)
            elif event == "ping":
                await websocket.send_json({"event": "pong", "data": {}})
            else:
                logger.debug("VTT %s sent unhandled event %r", connection_id, event)
    except WebSocketDisconnect:
        logger.info("VTT %s disconnected", connection_id)
    finally:
        hub.remove_client(connection_id, websocket)
        await run_db(vtt.set_tunnel_status, connection_id, "disconnected")
