"""
tumulte.services.notifier — Twitch Chat Notifications
=======================================================

Posts the "the chat did X" line in the streamer's own Twitch chat after an
action ran.  Uses the streamer's user token; a streamer without a token is
skipped with a warning.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tumulte.database.engine import get_session, run_db
from tumulte.database.models import Streamer

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tumulte.services.twitch_client import TwitchClient

logger = logging.getLogger(__name__)


class TwitchChatNotifier:
    def __init__(self, engine: Engine, twitch: TwitchClient) -> None:
        self._engine = engine
        self._twitch = twitch

    def _load_streamer(self, streamer_id: str) -> Streamer | None:
        with get_session(self._engine) as session:
            return session.get(Streamer, streamer_id)

    async def notify(self, streamer_id: str, message: str) -> None:
        """Send *message*; Twitch errors propagate to the caller."""
        streamer = await run_db(self._load_streamer, streamer_id)
        if streamer is None or not streamer.access_token:
            logger.warning("Streamer %s has no chat token — notification skipped", streamer_id)
            return
        await self._twitch.send_chat_message(
            streamer.twitch_user_id, streamer.access_token, message,
        )
        logger.debug("Chat notification sent to %s", streamer.twitch_login)
