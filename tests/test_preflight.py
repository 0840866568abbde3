"""
tests/test_preflight.py — Pre-Flight Registry, Runner & Checks
===============================================================
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.orm import Session

from tests.factories import add_campaign, add_campaign_config, add_event, add_streamer
from tumulte.constants import utcnow
from tumulte.database.models import CampaignMembership, PreflightReport, Streamer, VttConnection
from tumulte.services.actions.factory import build_action_registry
from tumulte.services.foundry_bridge import VttHub
from tumulte.services.preflight import (
    CheckContext,
    CheckResult,
    PreFlightRegistry,
    PreFlightRunner,
)
from tumulte.services.preflight_checks import (
    DatabaseCheck,
    GamificationConfigCheck,
    TokenCheck,
    TwitchApiCheck,
    VttConnectionCheck,
    WebSocketCheck,
    build_preflight_registry,
)
from tumulte.services.twitch_client import TwitchApiError


class _Check:
    """Scripted check recording whether it ran."""

    def __init__(self, name, priority, status="pass", applies_to=("all",), error=None):
        self.name = name
        self.priority = priority
        self.applies_to = applies_to
        self._status = status
        self._error = error
        self.ran = False

    async def execute(self, ctx):
        self.ran = True
        if self._error is not None:
            raise self._error
        return CheckResult(self.name, self._status)


def _registry(*checks) -> PreFlightRegistry:
    registry = PreFlightRegistry()
    for check in checks:
        registry.register(check)
    return registry


# ===========================================================================
# Registry
# ===========================================================================
class TestPreFlightRegistry:
    def test_duplicate_names_ignored(self):
        first = _Check("database", 0)
        registry = _registry(first, _Check("database", 5))
        assert registry.all() == [first]
        assert len(registry) == 1

    def test_filters_by_event_type_and_sorts(self):
        registry = _registry(
            _Check("config", 20, applies_to=("gamification",)),
            _Check("poll_only", 3, applies_to=("poll",)),
            _Check("db", 0),
        )
        names = [c.name for c in registry.get_checks_for("gamification", "full")]
        assert names == ["db", "config"]

    def test_light_mode_drops_slow_tiers(self):
        registry = _registry(_Check("db", 0), _Check("tokens", 10), _Check("vtt", 15))
        names = [c.name for c in registry.get_checks_for("gamification", "light")]
        assert names == ["db", "tokens"]


# ===========================================================================
# Runner
# ===========================================================================
class TestPreFlightRunner:
    def test_all_pass_is_healthy(self):
        runner = PreFlightRunner(_registry(_Check("a", 0), _Check("b", 5, status="warn")))
        report = asyncio.run(runner.run(CheckContext(campaign_id="c1")))
        assert report.healthy is True
        assert report.has_warnings is True
        assert [c.name for c in report.checks] == ["a", "b"]

    def test_failed_tier_short_circuits(self):
        db_fail = _Check("db", 0, status="fail")
        same_tier = _Check("ws", 0)
        later = _Check("tokens", 10)
        report = asyncio.run(
            PreFlightRunner(_registry(db_fail, same_tier, later)).run(CheckContext(campaign_id="c1")),
        )
        assert report.healthy is False
        assert same_tier.ran is True
        assert later.ran is False
        assert [c.name for c in report.failed_checks] == ["db"]

    def test_raising_check_becomes_failure(self):
        boom = _Check("twitch", 5, error=RuntimeError("socket reset"))
        report = asyncio.run(PreFlightRunner(_registry(boom)).run(CheckContext(campaign_id="c1")))
        assert report.healthy is False
        assert report.checks[0].status == "fail"
        assert report.checks[0].message == "socket reset"

    def test_report_serialization(self):
        report = asyncio.run(
            PreFlightRunner(_registry(_Check("a", 0))).run(CheckContext(campaign_id="c1")),
        )
        data = report.to_dict()
        assert data["campaign_id"] == "c1"
        assert data["checks"][0]["name"] == "a"
        assert "durationMs" in data["checks"][0]

    def test_report_persisted(self, db_engine):
        runner = PreFlightRunner(_registry(_Check("a", 0, status="fail")), db_engine)
        ctx = CheckContext(
            campaign_id="c1", mode="light", user_id="gm-1", metadata={"eventSlug": "dice_invert"},
        )
        asyncio.run(runner.run(ctx))
        with Session(db_engine) as session:
            stored = session.query(PreflightReport).one()
            assert stored.healthy is False
            assert stored.mode == "light"
            assert stored.event_slug == "dice_invert"
            assert stored.checks[0]["status"] == "fail"


# ===========================================================================
# Built-in checks
# ===========================================================================
@pytest.fixture
def twitch():
    client = AsyncMock()
    client.get_app_token.return_value = "app-token"
    client.validate_token.return_value = {"login": "rollwell"}
    return client


def _connection(engine, status="active", tunnel_status="connected") -> str:
    with Session(engine) as session:
        connection = VttConnection(name="Foundry", status=status, tunnel_status=tunnel_status)
        session.add(connection)
        session.commit()
        return connection.id


def _member(engine, campaign_id, streamer_id, expires_in: timedelta | None = timedelta(days=1)):
    with Session(engine) as session:
        session.add(CampaignMembership(
            campaign_id=campaign_id,
            streamer_id=streamer_id,
            poll_authorization_expires_at=utcnow() + expires_in if expires_in else None,
        ))
        session.commit()


def _ctx(campaign_id: str, **kwargs) -> CheckContext:
    return CheckContext(campaign_id=campaign_id, **kwargs)


class TestBuiltinChecks:
    def test_database_reachable(self, db_engine):
        result = asyncio.run(DatabaseCheck(db_engine).execute(_ctx("c1")))
        assert result.status == "pass"

    def test_twitch_api_down(self, twitch):
        twitch.get_app_token.side_effect = TwitchApiError("503", 503)
        result = asyncio.run(TwitchApiCheck(twitch).execute(_ctx("c1")))
        assert result.status == "fail"
        assert result.details == {"statusCode": 503}

    def test_vtt_connection_states(self, db_engine):
        check = VttConnectionCheck(db_engine)
        unpaired = add_campaign(db_engine, name="Unpaired")
        assert asyncio.run(check.execute(_ctx(unpaired))).status == "fail"

        paired = add_campaign(db_engine, name="Paired", vtt_connection_id=_connection(db_engine))
        assert asyncio.run(check.execute(_ctx(paired))).status == "pass"

        revoked = add_campaign(
            db_engine, name="Revoked", vtt_connection_id=_connection(db_engine, status="revoked"),
        )
        assert asyncio.run(check.execute(_ctx(revoked))).status == "fail"

        offline = add_campaign(
            db_engine, name="Offline",
            vtt_connection_id=_connection(db_engine, tunnel_status="disconnected"),
        )
        assert asyncio.run(check.execute(_ctx(offline))).status == "warn"

    def test_vtt_checks_follow_action_requirements(self, db_engine):
        actions = build_action_registry(MagicMock())
        campaign_id = add_campaign(db_engine)
        add_event(db_engine, slug="shout_out", trigger_type="manual", action_type="custom")
        add_event(db_engine, slug="dice_invert")
        vtt = VttConnectionCheck(db_engine, actions)
        socket = WebSocketCheck(db_engine, VttHub(), actions)

        custom = _ctx(campaign_id, metadata={"eventSlug": "shout_out"})
        assert asyncio.run(vtt.execute(custom)).status == "pass"
        assert asyncio.run(vtt.execute(custom)).message == "custom does not use the VTT"
        assert asyncio.run(socket.execute(custom)).status == "pass"

        invert = _ctx(campaign_id, metadata={"eventSlug": "dice_invert"})
        assert asyncio.run(vtt.execute(invert)).status == "fail"
        assert asyncio.run(vtt.execute(_ctx(campaign_id))).status == "fail"

    def test_custom_event_not_blocked_without_vtt(self, db_engine, twitch):
        campaign_id = add_campaign(db_engine)
        event_id = add_event(db_engine, slug="shout_out", trigger_type="manual", action_type="custom")
        add_campaign_config(db_engine, campaign_id, event_id)
        registry = build_preflight_registry(
            db_engine, VttHub(), twitch, build_action_registry(MagicMock()),
        )

        report = asyncio.run(PreFlightRunner(registry, db_engine).run(
            _ctx(campaign_id, metadata={"eventId": event_id}),
        ))

        assert report.healthy is True

    def test_websocket_attached(self, db_engine):
        connection_id = _connection(db_engine)
        campaign_id = add_campaign(db_engine, vtt_connection_id=connection_id)
        hub = VttHub()
        check = WebSocketCheck(db_engine, hub)
        assert asyncio.run(check.execute(_ctx(campaign_id))).status == "warn"

        hub.add_client(connection_id, MagicMock())
        assert asyncio.run(check.execute(_ctx(campaign_id))).status == "pass"

    def test_gamification_config(self, db_engine):
        campaign_id = add_campaign(db_engine)
        check = GamificationConfigCheck(db_engine)
        assert asyncio.run(check.execute(_ctx(campaign_id))).status == "fail"

        add_campaign_config(db_engine, campaign_id, add_event(db_engine, slug="dice_invert"))
        assert asyncio.run(check.execute(_ctx(campaign_id))).status == "pass"
        missing = asyncio.run(check.execute(_ctx(campaign_id, metadata={"eventSlug": "spell_buff"})))
        assert missing.status == "fail"
        assert missing.message == 'Event "spell_buff" is not enabled for this campaign'

    def test_tokens(self, db_engine, twitch):
        campaign_id = add_campaign(db_engine)
        good = add_streamer(db_engine, login="good", twitch_user_id="1")
        expired = add_streamer(db_engine, login="expired", twitch_user_id="2")
        _member(db_engine, campaign_id, good)
        _member(db_engine, campaign_id, expired, expires_in=timedelta(days=-1))
        with Session(db_engine) as session:
            session.get(Streamer, good).refresh_token = "refresh"
            session.commit()

        result = asyncio.run(TokenCheck(db_engine, twitch).execute(_ctx(campaign_id)))

        assert result.status == "fail"
        assert result.details == [{"id": expired, "displayName": "Expired", "issue": "authorization_expired"}]
        assert result.remediation == "Expired: authorization expired"

    def test_registry_holds_every_check(self, db_engine, twitch):
        registry = build_preflight_registry(db_engine, VttHub(), twitch)
        assert sorted(c.name for c in registry.all()) == sorted([
            "database", "websocket", "twitch_api", "tokens", "vtt_connection", "gamification_config",
        ])
        light = [c.name for c in registry.get_checks_for("gamification", "light")]
        assert "vtt_connection" not in light
        assert "gamification_config" not in light
