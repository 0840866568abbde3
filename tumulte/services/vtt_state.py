"""
tumulte.services.vtt_state — VTT State Lookups for Action Handlers
====================================================================

Read-only queries action handlers need about the VTT side of a campaign:
which actor a streamer plays, which items may be targeted, the active
combat, and whether the campaign's VTT is reachable.

All methods are synchronous (database work); handlers call them through
``run_db``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from tumulte.database.engine import get_session
from tumulte.database.models import (
    Campaign,
    CampaignCriticalityRule,
    CampaignItemCategoryRule,
    Character,
    CharacterAssignment,
    Streamer,
    VttConnection,
)
from tumulte.engine.rules import order_rules

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tumulte.services.foundry_bridge import VttHub

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RollingStreamer:
    streamer_id: str
    name: str
    twitch_user_id: str


@dataclass(frozen=True, slots=True)
class ResolvedActor:
    actor_id: str
    character_id: str
    name: str
    spells: list[dict] = field(default_factory=list)


class VttStateService:
    def __init__(self, engine: Engine, hub: VttHub) -> None:
        self.engine = engine
        self.hub = hub

    # -- Actors -------------------------------------------------------------
    def resolve_actor_for_streamer(self, campaign_id: str, streamer_id: str) -> ResolvedActor | None:
        """The streamer's assigned character, else the GM's active character."""
        with get_session(self.engine) as session:
            assignment = session.scalar(
                select(CharacterAssignment)
                .options(selectinload(CharacterAssignment.character))
                .where(
                    CharacterAssignment.campaign_id == campaign_id,
                    CharacterAssignment.streamer_id == streamer_id,
                )
            )
            if assignment and assignment.character.vtt_character_id:
                return self._to_actor(assignment.character)

            campaign = session.get(Campaign, campaign_id)
            gm_character = campaign.gm_active_character if campaign else None
            if gm_character is not None and gm_character.vtt_character_id:
                logger.info(
                    "Campaign %s: using GM active character %s for streamer %s",
                    campaign_id, gm_character.name, streamer_id,
                )
                return self._to_actor(gm_character)

        logger.warning(
            "Campaign %s: no character for streamer %s (no assignment, no GM character)",
            campaign_id, streamer_id,
        )
        return None

    @staticmethod
    def _to_actor(character: Character) -> ResolvedActor:
        return ResolvedActor(
            actor_id=character.vtt_character_id,
            character_id=character.id,
            name=character.name,
            spells=list(character.spells or []),
        )

    def resolve_vtt_character_id(self, character_id: str | None) -> str | None:
        """Foundry actor id for a Tumulte character id."""
        if not character_id:
            return None
        with get_session(self.engine) as session:
            character = session.get(Character, character_id)
            return character.vtt_character_id if character else None

    # -- Rules --------------------------------------------------------------
    def get_item_category_rules(self, campaign_id: str, item_type: str = "spell") -> list:
        with get_session(self.engine) as session:
            rows = session.scalars(
                select(CampaignItemCategoryRule).where(
                    CampaignItemCategoryRule.campaign_id == campaign_id,
                    CampaignItemCategoryRule.item_type == item_type,
                    CampaignItemCategoryRule.is_enabled.is_(True),
                    CampaignItemCategoryRule.is_targetable.is_(True),
                )
            ).all()
        return order_rules(rows)

    def get_criticality_rules(self, campaign_id: str) -> list:
        with get_session(self.engine) as session:
            rows = session.scalars(
                select(CampaignCriticalityRule).where(
                    CampaignCriticalityRule.campaign_id == campaign_id,
                    CampaignCriticalityRule.is_enabled.is_(True),
                )
            ).all()
        return order_rules(rows)

    # -- Connection & combat ------------------------------------------------
    def get_connection_id(self, campaign_id: str) -> str | None:
        with get_session(self.engine) as session:
            campaign = session.get(Campaign, campaign_id)
            return campaign.vtt_connection_id if campaign else None

    def resolve_connection_for_campaign(self, campaign_id: str) -> str | None:
        """The campaign's VTT connection id when its socket is live."""
        connection_id = self.get_connection_id(campaign_id)
        if connection_id is None:
            logger.warning("Campaign %s has no VTT connection", campaign_id)
            return None
        if not self.hub.is_connected(connection_id):
            logger.warning("Campaign %s: VTT connection %s is not live", campaign_id, connection_id)
            return None
        return connection_id

    def get_active_combat(self, campaign_id: str) -> dict | None:
        return self.hub.get_combat(self.get_connection_id(campaign_id))

    def campaigns_for_connection(self, connection_id: str) -> list[str]:
        with get_session(self.engine) as session:
            return list(session.scalars(
                select(Campaign.id).where(Campaign.vtt_connection_id == connection_id)
            ).all())

    def set_tunnel_status(self, connection_id: str, tunnel_status: str) -> bool:
        """Record the socket state; ``False`` when the connection is unknown."""
        with get_session(self.engine) as session:
            connection = session.get(VttConnection, connection_id)
            if connection is None:
                return False
            connection.tunnel_status = tunnel_status
            return True

    def is_connection_active(self, connection_id: str) -> bool:
        with get_session(self.engine) as session:
            connection = session.get(VttConnection, connection_id)
            return connection is not None and connection.status == "active"

    # -- Streamers ----------------------------------------------------------
    def resolve_streamer_for_character(
        self, campaign_id: str, character_id: str | None
    ) -> RollingStreamer | None:
        """The streamer who plays *character_id* in the campaign, if any."""
        if not character_id:
            return None
        with get_session(self.engine) as session:
            row = session.execute(
                select(Streamer.id, Streamer.twitch_display_name, Streamer.twitch_user_id)
                .join(CharacterAssignment, CharacterAssignment.streamer_id == Streamer.id)
                .where(
                    CharacterAssignment.campaign_id == campaign_id,
                    CharacterAssignment.character_id == character_id,
                )
            ).first()
        if row is None:
            return None
        return RollingStreamer(streamer_id=row[0], name=row[1], twitch_user_id=row[2])
