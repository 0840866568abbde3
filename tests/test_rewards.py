"""
tests/test_rewards.py — Twitch Reward Lifecycle Tests
======================================================
Reward enable/disable/cost sync, orphan detection and retry, full reward
reconciliation and EventSub subscription reconciliation.  Twitch is an
AsyncMock; the database is in-memory SQLite.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.orm import Session

from tests.factories import (
    add_campaign,
    add_campaign_config,
    add_event,
    add_streamer,
    add_streamer_config,
)
from tumulte.constants import REDEMPTION_SUBSCRIPTION_TYPE, as_utc, utcnow
from tumulte.database.models import (
    CampaignGamificationConfig,
    GamificationEvent,
    RewardStatus,
    StreamerGamificationConfig,
)
from tumulte.errors import ConfigNotFoundError, EventNotEnabledError
from tumulte.services.eventsub_reconciler import EventSubReconciler
from tumulte.services.orphan_detector import OrphanDetector
from tumulte.services.reward_manager import RewardManagerService, reward_title
from tumulte.services.reward_reconciler import TwitchRewardReconciler
from tumulte.services.twitch_client import TwitchApiError

CALLBACK = "https://tumulte.example/api/webhooks/twitch/eventsub"
SECRET = "eventsub-secret-0123456789"


@pytest.fixture
def twitch():
    client = AsyncMock()
    client.create_custom_reward.return_value = {"id": "reward-new"}
    client.list_custom_rewards.return_value = []
    client.list_eventsub_subscriptions.return_value = []
    client.create_eventsub_subscription.return_value = {"id": "sub-new"}
    return client


@pytest.fixture
def ids(db_engine):
    campaign_id = add_campaign(db_engine)
    streamer_id = add_streamer(db_engine)
    event_id = add_event(db_engine, default_cost=150)
    add_campaign_config(db_engine, campaign_id, event_id)
    return {"campaign": campaign_id, "streamer": streamer_id, "event": event_id}


@pytest.fixture
def manager(db_engine, twitch):
    return RewardManagerService(
        db_engine, twitch, eventsub_callback_url=CALLBACK, eventsub_secret=SECRET,
    )


def _config(engine, config_id: str) -> StreamerGamificationConfig:
    with Session(engine) as session:
        config = session.get(StreamerGamificationConfig, config_id)
        session.expunge(config)
        return config


# ===========================================================================
# Enable
# ===========================================================================
class TestEnable:
    def test_creates_reward_and_subscription(self, manager, twitch, ids):
        config = asyncio.run(manager.enable_for_streamer(ids["streamer"], ids["campaign"], ids["event"]))

        assert config.is_enabled is True
        assert config.twitch_reward_id == "reward-new"
        assert config.twitch_reward_status == RewardStatus.ACTIVE
        kwargs = twitch.create_custom_reward.await_args.kwargs
        assert kwargs["cost"] == 150
        assert kwargs["title"] == "\U0001f3b2 Flip the Die"
        sub_args = twitch.create_eventsub_subscription.await_args.args
        assert sub_args[0] == REDEMPTION_SUBSCRIPTION_TYPE
        assert sub_args[1] == {"broadcaster_user_id": "1001", "reward_id": "reward-new"}

    def test_streamer_override_sets_cost(self, manager, twitch, ids):
        asyncio.run(manager.enable_for_streamer(
            ids["streamer"], ids["campaign"], ids["event"], cost_override=40,
        ))
        assert twitch.create_custom_reward.await_args.kwargs["cost"] == 40

    def test_campaign_config_must_be_enabled(self, manager, db_engine, ids):
        with Session(db_engine) as session:
            session.query(CampaignGamificationConfig).update({"is_enabled": False})
            session.commit()
        with pytest.raises(EventNotEnabledError):
            asyncio.run(manager.enable_for_streamer(ids["streamer"], ids["campaign"], ids["event"]))

    def test_reenable_deletes_old_reward_first(self, manager, twitch, db_engine, ids):
        add_streamer_config(
            db_engine, ids["campaign"], ids["streamer"], ids["event"],
            twitch_reward_id="reward-old", twitch_reward_status="active",
        )
        config = asyncio.run(manager.enable_for_streamer(ids["streamer"], ids["campaign"], ids["event"]))

        twitch.delete_custom_reward.assert_awaited_once_with("1001", "token-abc", "reward-old")
        assert config.twitch_reward_id == "reward-new"

    def test_reenable_survives_missing_old_reward(self, manager, twitch, db_engine, ids):
        add_streamer_config(
            db_engine, ids["campaign"], ids["streamer"], ids["event"],
            twitch_reward_id="reward-old", twitch_reward_status="active",
        )
        twitch.delete_custom_reward.side_effect = TwitchApiError("gone", 404)
        config = asyncio.run(manager.enable_for_streamer(ids["streamer"], ids["campaign"], ids["event"]))
        assert config.twitch_reward_status == RewardStatus.ACTIVE

    def test_duplicate_title_cleaned_and_retried(self, manager, twitch, db_engine, ids):
        with Session(db_engine) as session:
            title = reward_title(session.get(GamificationEvent, ids["event"]))
        twitch.create_custom_reward.side_effect = [
            TwitchApiError("CREATE_CUSTOM_REWARD_DUPLICATE_REWARD", 400),
            {"id": "reward-second"},
        ]
        twitch.list_custom_rewards.return_value = [
            {"id": "reward-dup", "title": title[:45]},
            {"id": "reward-other", "title": "Hydrate"},
        ]
        config = asyncio.run(manager.enable_for_streamer(ids["streamer"], ids["campaign"], ids["event"]))

        twitch.delete_custom_reward.assert_awaited_once_with("1001", "token-abc", "reward-dup")
        assert config.twitch_reward_id == "reward-second"

    def test_gives_up_after_second_failure(self, manager, twitch, ids):
        twitch.create_custom_reward.side_effect = TwitchApiError("nope", 400)
        twitch.list_custom_rewards.return_value = [{"id": "x", "title": "\U0001f3b2 Flip the Die"}]
        config = asyncio.run(manager.enable_for_streamer(ids["streamer"], ids["campaign"], ids["event"]))

        assert twitch.create_custom_reward.await_count == 2
        assert config.twitch_reward_id is None
        assert config.twitch_reward_status == RewardStatus.NOT_CREATED

    def test_subscription_failure_keeps_reward(self, manager, twitch, ids):
        twitch.create_eventsub_subscription.side_effect = TwitchApiError("boom", 500)
        config = asyncio.run(manager.enable_for_streamer(ids["streamer"], ids["campaign"], ids["event"]))
        assert config.twitch_reward_status == RewardStatus.ACTIVE

    def test_existing_subscription_is_fine(self, manager, twitch, ids):
        twitch.create_eventsub_subscription.side_effect = TwitchApiError("exists", 409)
        config = asyncio.run(manager.enable_for_streamer(ids["streamer"], ids["campaign"], ids["event"]))
        assert config.twitch_reward_id == "reward-new"


# ===========================================================================
# Disable
# ===========================================================================
class TestDisable:
    def _enabled(self, db_engine, ids, reward_id="reward-1"):
        return add_streamer_config(
            db_engine, ids["campaign"], ids["streamer"], ids["event"],
            twitch_reward_id=reward_id, twitch_reward_status="active",
        )

    def test_deletes_reward(self, manager, twitch, db_engine, ids):
        self._enabled(db_engine, ids)
        config = asyncio.run(manager.disable_for_streamer(ids["streamer"], ids["campaign"], ids["event"]))

        assert config.is_enabled is False
        assert config.twitch_reward_status == RewardStatus.DELETED
        assert config.twitch_reward_id is None

    def test_not_found_counts_as_deleted(self, manager, twitch, db_engine, ids):
        self._enabled(db_engine, ids)
        twitch.delete_custom_reward.side_effect = TwitchApiError("gone", 404)
        config = asyncio.run(manager.disable_for_streamer(ids["streamer"], ids["campaign"], ids["event"]))
        assert config.twitch_reward_status == RewardStatus.DELETED

    def test_failure_marks_orphaned(self, manager, twitch, db_engine, ids):
        self._enabled(db_engine, ids)
        twitch.delete_custom_reward.side_effect = TwitchApiError("helix down", 503)
        before = utcnow()
        config = asyncio.run(manager.disable_for_streamer(ids["streamer"], ids["campaign"], ids["event"]))

        assert config.is_enabled is False
        assert config.twitch_reward_status == RewardStatus.ORPHANED
        assert config.twitch_reward_id == "reward-1"
        assert config.deletion_retry_count == 1
        assert as_utc(config.next_deletion_retry_at) >= before + timedelta(hours=1)

    def test_unknown_config_returns_none(self, manager, ids):
        assert asyncio.run(manager.disable_for_streamer(ids["streamer"], ids["campaign"], "x")) is None

    def test_campaign_cascade(self, manager, twitch, db_engine, ids):
        self._enabled(db_engine, ids)
        second = add_streamer(db_engine, login="second", twitch_user_id="2002")
        add_streamer_config(
            db_engine, ids["campaign"], second, ids["event"],
            twitch_reward_id="reward-2", twitch_reward_status="active",
        )
        twitch.delete_custom_reward.side_effect = [None, TwitchApiError("helix down", 500)]

        counts = asyncio.run(manager.disable_for_campaign(ids["campaign"], ids["event"]))

        assert counts == {"disabled": 2, "orphaned": 1, "failed": 0}
        with Session(db_engine) as session:
            campaign_config = session.query(CampaignGamificationConfig).one()
            assert campaign_config.is_enabled is False


# ===========================================================================
# Cost
# ===========================================================================
class TestCostUpdate:
    def test_active_reward_updated_on_twitch_first(self, manager, twitch, db_engine, ids):
        add_streamer_config(
            db_engine, ids["campaign"], ids["streamer"], ids["event"],
            twitch_reward_id="reward-1", twitch_reward_status="active",
        )
        outcome = asyncio.run(manager.update_cost(ids["streamer"], ids["campaign"], ids["event"], 75))

        twitch.update_custom_reward.assert_awaited_once_with("1001", "token-abc", "reward-1", cost=75)
        assert outcome.remote_updated is True
        assert outcome.config.cost_override == 75

    def test_twitch_failure_leaves_config_untouched(self, manager, twitch, db_engine, ids):
        config_id = add_streamer_config(
            db_engine, ids["campaign"], ids["streamer"], ids["event"],
            twitch_reward_id="reward-1", twitch_reward_status="active", cost_override=100,
        )
        twitch.update_custom_reward.side_effect = TwitchApiError("rate limited", 429)
        outcome = asyncio.run(manager.update_cost(ids["streamer"], ids["campaign"], ids["event"], 75))

        assert outcome.remote_updated is False
        assert outcome.error == "rate limited"
        assert _config(db_engine, config_id).cost_override == 100

    def test_without_reward_stores_locally(self, manager, twitch, db_engine, ids):
        add_streamer_config(db_engine, ids["campaign"], ids["streamer"], ids["event"])
        outcome = asyncio.run(manager.update_cost(ids["streamer"], ids["campaign"], ids["event"], 60))
        twitch.update_custom_reward.assert_not_awaited()
        assert outcome.config.cost_override == 60

    def test_missing_config_raises(self, manager, ids):
        with pytest.raises(ConfigNotFoundError):
            asyncio.run(manager.update_cost(ids["streamer"], ids["campaign"], ids["event"], 60))

    def test_display_helpers(self):
        event = GamificationEvent(default_cost=100, default_objective_coefficient=0.25)
        config = CampaignGamificationConfig(cost=80)
        assert RewardManagerService.get_recommended_cost(config, event) == 80
        assert RewardManagerService.get_recommended_cost(None, event) == 100
        assert RewardManagerService.get_difficulty_explanation(None, event) == (
            "25% of viewers need to click"
        )


# ===========================================================================
# Orphans
# ===========================================================================
NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


def _orphan(engine, ids, reward_id: str, streamer_id: str | None = None, **kwargs) -> str:
    event_id = add_event(engine, slug=f"evt_{reward_id}")
    return add_streamer_config(
        engine, ids["campaign"], streamer_id or ids["streamer"], event_id,
        is_enabled=False,
        twitch_reward_id=reward_id,
        twitch_reward_status="orphaned",
        **kwargs,
    )


class TestOrphanDetector:
    def test_due_for_retry(self, db_engine, ids):
        due = _orphan(db_engine, ids, "r-due", next_deletion_retry_at=NOW - timedelta(minutes=1))
        never = _orphan(db_engine, ids, "r-never")
        _orphan(db_engine, ids, "r-later", next_deletion_retry_at=NOW + timedelta(hours=2))

        detector = OrphanDetector(db_engine)
        found = {c.id for c in detector.find_orphans_due_for_retry(NOW)}
        assert found == {due, never}
        assert detector.count_orphans() == 3
        assert len(detector.find_orphaned_configs()) == 3
        assert detector.is_orphaned(due)

    def test_stale_orphans(self, db_engine, ids):
        stale = _orphan(db_engine, ids, "r-old", deletion_failed_at=NOW - timedelta(days=4))
        _orphan(db_engine, ids, "r-new", deletion_failed_at=NOW - timedelta(days=1))
        found = OrphanDetector(db_engine).detect_stale_orphans(NOW)
        assert [c.id for c in found] == [stale]


class TestOrphanCleanup:
    def test_outcomes(self, db_engine, twitch, ids):
        cleaned = _orphan(db_engine, ids, "r-ok")
        gone = _orphan(db_engine, ids, "r-404")
        stuck = _orphan(db_engine, ids, "r-500", deletion_retry_count=2,
                        deletion_failed_at=NOW - timedelta(hours=5))

        def delete(broadcaster_id, token, reward_id):
            if reward_id == "r-404":
                raise TwitchApiError("not found", 404)
            if reward_id == "r-500":
                raise TwitchApiError("server error", 500)

        twitch.delete_custom_reward.side_effect = delete
        configs = OrphanDetector(db_engine).find_orphaned_configs()
        result = asyncio.run(TwitchRewardReconciler(db_engine, twitch).cleanup_orphans(configs))

        assert result["total"] == 3
        assert result["cleaned"] == 1
        assert result["already_deleted"] == 1
        assert result["failed"] == 1
        assert result["errors"] == [
            {"config_id": stuck, "error": "Deletion failed, retry #3 in 4h"},
        ]
        assert _config(db_engine, cleaned).twitch_reward_status == RewardStatus.DELETED
        assert _config(db_engine, gone).twitch_reward_id is None
        still = _config(db_engine, stuck)
        assert still.twitch_reward_status == RewardStatus.ORPHANED
        assert still.deletion_retry_count == 3

    def test_missing_token_fails(self, db_engine, twitch, ids):
        tokenless = add_streamer(db_engine, login="notoken", twitch_user_id="3003", access_token=None)
        _orphan(db_engine, ids, "r-x", streamer_id=tokenless)
        configs = OrphanDetector(db_engine).find_orphaned_configs()
        result = asyncio.run(TwitchRewardReconciler(db_engine, twitch).cleanup_orphans(configs))
        assert result["failed"] == 1
        twitch.delete_custom_reward.assert_not_awaited()


# ===========================================================================
# Full reconciliation
# ===========================================================================
class TestFullReconciliation:
    def test_orphans_and_phantoms(self, db_engine, twitch, ids):
        add_streamer_config(
            db_engine, ids["campaign"], ids["streamer"], ids["event"],
            twitch_reward_id="r-synced", twitch_reward_status="active",
        )
        phantom_event = add_event(db_engine, slug="phantom_event")
        phantom = add_streamer_config(
            db_engine, ids["campaign"], ids["streamer"], phantom_event,
            twitch_reward_id="r-phantom", twitch_reward_status="active",
        )
        twitch.list_custom_rewards.return_value = [{"id": "r-synced"}, {"id": "r-stray"}]

        result = asyncio.run(TwitchRewardReconciler(db_engine, twitch).full_reconciliation())

        assert result["streamers_processed"] == 1
        assert result["orphans_found"] == 1
        assert result["orphans_cleaned"] == 1
        assert result["phantoms_fixed"] == 1
        twitch.delete_custom_reward.assert_awaited_once_with("1001", "token-abc", "r-stray")
        assert _config(db_engine, phantom).twitch_reward_status == RewardStatus.DELETED

    def test_list_failure_recorded(self, db_engine, twitch, ids):
        add_streamer_config(
            db_engine, ids["campaign"], ids["streamer"], ids["event"],
            twitch_reward_id="r-1", twitch_reward_status="active",
        )
        twitch.list_custom_rewards.side_effect = TwitchApiError("unauthorized", 401)
        result = asyncio.run(TwitchRewardReconciler(db_engine, twitch).full_reconciliation())
        assert result["streamers_processed"] == 0
        assert len(result["errors"]) == 1


# ===========================================================================
# EventSub reconciliation
# ===========================================================================
class TestEventSubReconciler:
    def test_recreates_missing_and_deletes_orphans(self, db_engine, twitch, ids):
        add_streamer_config(
            db_engine, ids["campaign"], ids["streamer"], ids["event"],
            twitch_reward_id="r-1", twitch_reward_status="active",
        )
        second_event = add_event(db_engine, slug="second_event")
        add_streamer_config(
            db_engine, ids["campaign"], ids["streamer"], second_event,
            twitch_reward_id="r-2", twitch_reward_status="active",
        )
        twitch.list_eventsub_subscriptions.return_value = [
            {"id": "s1", "status": "enabled",
             "condition": {"broadcaster_user_id": "1001", "reward_id": "r-1"}},
            {"id": "s2", "status": "enabled",
             "condition": {"broadcaster_user_id": "1001", "reward_id": "r-gone"}},
            {"id": "s3", "status": "authorization_revoked",
             "condition": {"broadcaster_user_id": "1001", "reward_id": "r-2"}},
        ]

        report = asyncio.run(EventSubReconciler(db_engine, twitch, CALLBACK, SECRET).reconcile())

        assert report["subscriptions_checked"] == 3
        assert report["orphaned_deleted"] == 1
        assert report["missing_recreated"] == 1
        assert report["failed_recreated"] == 0
        deleted = sorted(c.args[0] for c in twitch.delete_eventsub_subscription.await_args_list)
        assert deleted == ["s2", "s3"]
        condition = twitch.create_eventsub_subscription.await_args.args[1]
        assert condition == {"broadcaster_user_id": "1001", "reward_id": "r-2"}

    def test_pending_verification_counts_as_live(self, db_engine, twitch, ids):
        add_streamer_config(
            db_engine, ids["campaign"], ids["streamer"], ids["event"],
            twitch_reward_id="r-1", twitch_reward_status="active",
        )
        twitch.list_eventsub_subscriptions.return_value = [
            {"id": "s1", "status": "webhook_callback_verification_pending",
             "condition": {"broadcaster_user_id": "1001", "reward_id": "r-1"}},
        ]
        report = asyncio.run(EventSubReconciler(db_engine, twitch, CALLBACK, SECRET).reconcile())
        assert report["missing_recreated"] == 0
        twitch.delete_eventsub_subscription.assert_not_awaited()

    def test_recreate_failure_reported(self, db_engine, twitch, ids):
        add_streamer_config(
            db_engine, ids["campaign"], ids["streamer"], ids["event"],
            twitch_reward_id="r-1", twitch_reward_status="active",
        )
        twitch.create_eventsub_subscription.side_effect = TwitchApiError("bad callback", 400)
        report = asyncio.run(EventSubReconciler(db_engine, twitch, CALLBACK, SECRET).reconcile())
        assert report["failed_recreated"] == 1
        assert report["errors"] == ["create r-1: bad callback"]
