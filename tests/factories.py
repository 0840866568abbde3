"""
tests/factories.py — Row Factories
===================================
Insert the collaborator rows the gamification services read, returning
their ids.
"""

from __future__ import annotations

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from tumulte.database.models import (
    Campaign,
    CampaignGamificationConfig,
    GamificationEvent,
    Streamer,
    StreamerGamificationConfig,
)


def add_streamer(
    engine: Engine,
    login: str = "rollwell",
    twitch_user_id: str = "1001",
    access_token: str | None = "token-abc",
) -> str:
    with Session(engine) as session:
        streamer = Streamer(
            twitch_user_id=twitch_user_id,
            twitch_login=login,
            twitch_display_name=login.title(),
            access_token=access_token,
        )
        session.add(streamer)
        session.commit()
        return streamer.id


def add_campaign(engine: Engine, name: str = "Curse of Strahd", **kwargs) -> str:
    with Session(engine) as session:
        campaign = Campaign(name=name, owner_id=kwargs.pop("owner_id", "gm-1"), **kwargs)
        session.add(campaign)
        session.commit()
        return campaign.id


def add_event(
    engine: Engine,
    slug: str = "dice_invert",
    *,
    type: str = "individual",
    trigger_type: str = "dice_critical",
    action_type: str = "dice_invert",
    trigger_config: dict | None = None,
    action_config: dict | None = None,
    **kwargs,
) -> str:
    with Session(engine) as session:
        event = GamificationEvent(
            slug=slug,
            name=kwargs.pop("name", slug.replace("_", " ").title()),
            type=type,
            trigger_type=trigger_type,
            trigger_config=trigger_config,
            action_type=action_type,
            action_config=action_config,
            **kwargs,
        )
        session.add(event)
        session.commit()
        return event.id


def add_campaign_config(
    engine: Engine, campaign_id: str, event_id: str, is_enabled: bool = True, **kwargs,
) -> str:
    with Session(engine) as session:
        config = CampaignGamificationConfig(
            campaign_id=campaign_id, event_id=event_id, is_enabled=is_enabled, **kwargs,
        )
        session.add(config)
        session.commit()
        return config.id


def add_streamer_config(
    engine: Engine, campaign_id: str, streamer_id: str, event_id: str, **kwargs,
) -> str:
    with Session(engine) as session:
        config = StreamerGamificationConfig(
            campaign_id=campaign_id,
            streamer_id=streamer_id,
            event_id=event_id,
            is_enabled=kwargs.pop("is_enabled", True),
            **kwargs,
        )
        session.add(config)
        session.commit()
        return config.id


def make_gm_token(sub: str = "gm-1", username: str = "FixtureGM", is_gm: bool = True) -> str:
    """Create a GM JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from tumulte.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_gm": is_gm},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )
