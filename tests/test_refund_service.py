"""
tests/test_refund_service.py — Channel Point Refunds
=====================================================
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.orm import Session

from tests.factories import add_campaign, add_event, add_streamer
from tumulte.constants import utcnow
from tumulte.database.models import GamificationContribution, GamificationInstance
from tumulte.services.refund_service import RefundService
from tumulte.services.twitch_client import TwitchApiError


def _instance(engine, campaign_id, event_id, streamer_id, status="expired") -> str:
    now = utcnow()
    with Session(engine) as session:
        instance = GamificationInstance(
            campaign_id=campaign_id,
            event_id=event_id,
            streamer_id=streamer_id,
            instance_key=f"{event_id}:{campaign_id}:{streamer_id}",
            type="individual",
            status=status,
            objective_target=5,
            current_progress=2,
            duration=60,
            starts_at=now - timedelta(minutes=2),
            expires_at=now - timedelta(minutes=1),
        )
        session.add(instance)
        session.commit()
        return instance.id


def _contribution(engine, instance_id, redemption_id, reward_id="reward-1", refunded=False) -> str:
    with Session(engine) as session:
        contribution = GamificationContribution(
            instance_id=instance_id,
            twitch_user_id=f"viewer-{redemption_id}",
            twitch_username=f"viewer_{redemption_id}",
            amount=100,
            twitch_redemption_id=redemption_id,
            twitch_reward_id=reward_id,
            refunded=refunded,
        )
        session.add(contribution)
        session.commit()
        return contribution.id


@pytest.fixture
def world(db_engine):
    campaign_id = add_campaign(db_engine)
    streamer_id = add_streamer(db_engine)
    event_id = add_event(db_engine)
    twitch = AsyncMock()
    return {
        "engine": db_engine,
        "campaign_id": campaign_id,
        "streamer_id": streamer_id,
        "event_id": event_id,
        "twitch": twitch,
        "service": RefundService(db_engine, twitch),
    }


def _make(world, status="expired") -> str:
    return _instance(
        world["engine"], world["campaign_id"], world["event_id"], world["streamer_id"], status,
    )


class TestRefundInstance:
    def test_refunds_every_contribution(self, world):
        instance_id = _make(world)
        _contribution(world["engine"], instance_id, "r-1")
        _contribution(world["engine"], instance_id, "r-2")

        result = asyncio.run(world["service"].refund_instance(instance_id))

        assert result.total_contributions == 2
        assert result.refunded_count == 2
        assert result.failed_count == 0
        calls = world["twitch"].cancel_redemptions.await_args_list
        assert sorted(c.args[3][0] for c in calls) == ["r-1", "r-2"]
        assert calls[0].args[:3] == ("1001", "token-abc", "reward-1")
        with Session(world["engine"]) as session:
            rows = session.query(GamificationContribution).all()
            assert all(c.refunded for c in rows)
            assert all(c.refunded_at is not None for c in rows)

    def test_already_refunded_skipped(self, world):
        instance_id = _make(world)
        _contribution(world["engine"], instance_id, "r-1", refunded=True)

        result = asyncio.run(world["service"].refund_instance(instance_id))

        assert result.total_contributions == 0
        world["twitch"].cancel_redemptions.assert_not_awaited()

    def test_only_expired_instances(self, world):
        instance_id = _make(world, status="active")
        _contribution(world["engine"], instance_id, "r-1")

        result = asyncio.run(world["service"].refund_instance(instance_id))

        assert result.refunded_count == 0
        world["twitch"].cancel_redemptions.assert_not_awaited()

    def test_unknown_instance(self, world):
        result = asyncio.run(world["service"].refund_instance("missing"))
        assert result.instance_id == "missing"
        assert result.total_contributions == 0

    def test_failure_isolated_and_retried_later(self, world):
        instance_id = _make(world)
        bad = _contribution(world["engine"], instance_id, "r-1")
        _contribution(world["engine"], instance_id, "r-2")

        async def cancel(broadcaster_id, token, reward_id, redemption_ids):
            if redemption_ids == ["r-1"]:
                raise TwitchApiError("redemption not found", 404)

        world["twitch"].cancel_redemptions.side_effect = cancel

        result = asyncio.run(world["service"].refund_instance(instance_id))

        assert result.refunded_count == 1
        assert result.failed_count == 1
        assert result.errors[0]["contributionId"] == bad
        assert result.errors[0]["error"] == "redemption not found"

        world["twitch"].cancel_redemptions.side_effect = None
        retry = asyncio.run(world["service"].refund_instance(instance_id))
        assert retry.total_contributions == 1
        assert retry.refunded_count == 1

    def test_contribution_without_reward(self, world):
        instance_id = _make(world)
        _contribution(world["engine"], instance_id, "r-1", reward_id=None)

        result = asyncio.run(world["service"].refund_instance(instance_id))

        assert result.failed_count == 1
        assert result.errors[0]["error"] == "Contribution has no reward id"
        world["twitch"].cancel_redemptions.assert_not_awaited()

    def test_streamer_without_token(self, db_engine):
        campaign_id = add_campaign(db_engine)
        streamer_id = add_streamer(db_engine, access_token=None)
        event_id = add_event(db_engine)
        instance_id = _instance(db_engine, campaign_id, event_id, streamer_id)
        _contribution(db_engine, instance_id, "r-1")
        twitch = AsyncMock()

        result = asyncio.run(RefundService(db_engine, twitch).refund_instance(instance_id))

        assert result.refunded_count == 0
        twitch.cancel_redemptions.assert_not_awaited()


class TestProcessExpired:
    def test_sums_refunds(self, world):
        first = _make(world)
        _contribution(world["engine"], first, "r-1")
        second = _make(world)
        _contribution(world["engine"], second, "r-2")
        _contribution(world["engine"], second, "r-3")

        total = asyncio.run(world["service"].process_expired_instances([first, second]))

        assert total == 3
