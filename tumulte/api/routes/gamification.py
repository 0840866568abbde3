"""
tumulte.api.routes.gamification — Gamification endpoints
==========================================================

GM endpoints (campaign configuration, manual triggers, instance control)
and streamer endpoints (their own channel point reward).
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from tumulte.api.deps import GmDep, TumulteDep, UserDep, http_error
from tumulte.database.engine import run_db
from tumulte.database.models import (
    CampaignGamificationConfig,
    GamificationEvent,
    GamificationInstance,
    StreamerGamificationConfig,
)
from tumulte.errors import TumulteError

logger = logging.getLogger(__name__)
router = APIRouter(tags=["gamification"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class CampaignConfigUpdate(BaseModel):
    cost: int | None = Field(default=None, ge=1)
    objective_coefficient: float | None = Field(default=None, gt=0, le=1)
    minimum_objective: int | None = Field(default=None, ge=1)
    duration: int | None = Field(default=None, ge=10)
    cooldown: int | None = Field(default=None, ge=0)
    max_clicks_per_user_per_session: int | None = Field(default=None, ge=0)


class ManualTrigger(BaseModel):
    streamer_id: str
    streamer_name: str
    viewer_count: int = Field(default=0, ge=0)
    custom_data: dict[str, Any] | None = None


class StreamerScope(BaseModel):
    streamer_id: str | None = None


class StreamerRewardEnable(BaseModel):
    cost_override: int | None = Field(default=None, ge=1)


class CostUpdate(BaseModel):
    cost: int = Field(ge=1)


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------
def _event_dict(e: GamificationEvent) -> dict:
    return {
        "id": e.id,
        "slug": e.slug,
        "name": e.name,
        "description": e.description,
        "type": e.type,
        "trigger_type": e.trigger_type,
        "action_type": e.action_type,
        "default_cost": e.default_cost,
        "default_objective_coefficient": e.default_objective_coefficient,
        "default_minimum_objective": e.default_minimum_objective,
        "default_duration": e.default_duration,
        "cooldown_type": e.cooldown_type,
        "reward_color": e.reward_color,
        "is_system_event": e.is_system_event,
    }


def _config_dict(c: CampaignGamificationConfig) -> dict:
    return {
        "id": c.id,
        "campaign_id": c.campaign_id,
        "event_id": c.event_id,
        "event_slug": c.event.slug if c.event else None,
        "is_enabled": c.is_enabled,
        "cost": c.cost,
        "objective_coefficient": c.objective_coefficient,
        "minimum_objective": c.minimum_objective,
        "duration": c.duration,
        "cooldown": c.cooldown,
        "max_clicks_per_user_per_session": c.max_clicks_per_user_per_session,
    }


def _instance_dict(i: GamificationInstance) -> dict:
    return {
        "id": i.id,
        "campaign_id": i.campaign_id,
        "event_id": i.event_id,
        "streamer_id": i.streamer_id,
        "type": i.type,
        "status": i.status,
        "objective_target": i.objective_target,
        "current_progress": i.current_progress,
        "progress_percentage": i.progress_percentage,
        "starts_at": i.starts_at.isoformat() if i.starts_at else None,
        "expires_at": i.expires_at.isoformat() if i.expires_at else None,
        "armed_at": i.armed_at.isoformat() if i.armed_at else None,
        "completed_at": i.completed_at.isoformat() if i.completed_at else None,
        "cooldown_ends_at": i.cooldown_ends_at.isoformat() if i.cooldown_ends_at else None,
        "execution_status": i.execution_status,
        "result_data": i.result_data,
        "streamer_snapshots": i.streamer_snapshots,
    }


def _reward_dict(c: StreamerGamificationConfig) -> dict:
    return {
        "id": c.id,
        "streamer_id": c.streamer_id,
        "campaign_id": c.campaign_id,
        "event_id": c.event_id,
        "is_enabled": c.is_enabled,
        "cost_override": c.cost_override,
        "twitch_reward_id": c.twitch_reward_id,
        "twitch_reward_status": c.twitch_reward_status,
    }


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------
@router.get("/gamification/events")
async def list_events(tumulte: TumulteDep, _user: UserDep):
    events = await run_db(tumulte.gamification.get_available_events)
    return [_event_dict(e) for e in events]


# ---------------------------------------------------------------------------
# GM — campaign configuration
# ---------------------------------------------------------------------------
@router.get("/campaigns/{campaign_id}/gamification/configs")
async def list_campaign_configs(campaign_id: str, tumulte: TumulteDep, _gm: GmDep):
    configs = await run_db(tumulte.gamification.get_campaign_configs, campaign_id)
    return [_config_dict(c) for c in configs]


@router.post("/campaigns/{campaign_id}/gamification/events/{event_id}/enable")
async def enable_event(
    campaign_id: str, event_id: str, body: CampaignConfigUpdate, tumulte: TumulteDep, _gm: GmDep,
):
    try:
        config = await run_db(
            tumulte.gamification.enable_event_for_campaign,
            campaign_id, event_id, body.model_dump(exclude_unset=True),
        )
    except TumulteError as exc:
        raise http_error(exc)
    return _config_dict(config)


@router.post("/campaigns/{campaign_id}/gamification/events/{event_id}/disable")
async def disable_event(campaign_id: str, event_id: str, tumulte: TumulteDep, _gm: GmDep):
    """Disable the event and cascade to every streamer's reward."""
    counts = await tumulte.rewards.disable_for_campaign(campaign_id, event_id)
    return {"ok": True, **counts}


# ---------------------------------------------------------------------------
# GM — instances
# ---------------------------------------------------------------------------
@router.get("/campaigns/{campaign_id}/gamification/instances")
async def list_active_instances(campaign_id: str, tumulte: TumulteDep, _gm: GmDep):
    instances = await tumulte.gamification.get_active_instances(campaign_id)
    return [_instance_dict(i) for i in instances]


@router.post("/campaigns/{campaign_id}/gamification/events/{event_id}/trigger")
async def trigger_event(
    campaign_id: str, event_id: str, body: ManualTrigger, tumulte: TumulteDep, gm: GmDep,
):
    instance = await tumulte.gamification.trigger_manual_event(
        campaign_id, event_id, body.streamer_id, body.streamer_name, body.viewer_count,
        custom_data=body.custom_data, user_id=gm.get("sub"),
    )
    if instance is None:
        raise HTTPException(
            409, "Event could not be triggered (disabled, pre-flight failed or on cooldown)",
        )
    return _instance_dict(instance)


@router.post("/campaigns/{campaign_id}/gamification/instances/{instance_id}/cancel")
async def cancel_instance(campaign_id: str, instance_id: str, tumulte: TumulteDep, _gm: GmDep):
    try:
        instance = await tumulte.gamification.cancel_instance(instance_id, campaign_id)
    except TumulteError as exc:
        raise http_error(exc)
    return _instance_dict(instance)


@router.post("/campaigns/{campaign_id}/gamification/instances/{instance_id}/force-complete")
async def force_complete_instance(
    campaign_id: str, instance_id: str, tumulte: TumulteDep, _gm: GmDep,
):
    try:
        instance = await tumulte.gamification.force_complete_instance(instance_id, campaign_id)
    except TumulteError as exc:
        raise http_error(exc)
    return _instance_dict(instance)


@router.post("/campaigns/{campaign_id}/gamification/instances/cancel-all")
async def cancel_all_instances(
    campaign_id: str, body: StreamerScope, tumulte: TumulteDep, _gm: GmDep,
):
    cancelled = await tumulte.gamification.cancel_all_active_instances(
        campaign_id, body.streamer_id,
    )
    return {"cancelled": cancelled}


@router.post("/campaigns/{campaign_id}/gamification/cooldowns/reset")
async def reset_cooldowns(campaign_id: str, body: StreamerScope, tumulte: TumulteDep, _gm: GmDep):
    reset = await tumulte.gamification.reset_cooldowns(campaign_id, body.streamer_id)
    return {"reset": reset}


# ---------------------------------------------------------------------------
# Streamer — own channel point reward
# ---------------------------------------------------------------------------
@router.get("/streamer/campaigns/{campaign_id}/gamification/events/{event_id}/reward")
async def get_reward(campaign_id: str, event_id: str, tumulte: TumulteDep, user: UserDep):
    config = await run_db(
        tumulte.rewards.get_streamer_config, user["sub"], campaign_id, event_id,
    )
    campaign_config = await run_db(
        tumulte.gamification.get_campaign_config, campaign_id, event_id,
    )
    event = await run_db(tumulte.gamification.get_event, event_id)
    if event is None:
        raise HTTPException(404, "Event not found")
    return {
        "reward": _reward_dict(config) if config else None,
        "recommended_cost": tumulte.rewards.get_recommended_cost(campaign_config, event),
        "difficulty": tumulte.rewards.get_difficulty_explanation(campaign_config, event),
    }


@router.post("/streamer/campaigns/{campaign_id}/gamification/events/{event_id}/reward")
async def enable_reward(
    campaign_id: str, event_id: str, body: StreamerRewardEnable,
    tumulte: TumulteDep, user: UserDep,
):
    try:
        config = await tumulte.rewards.enable_for_streamer(
            user["sub"], campaign_id, event_id, body.cost_override,
        )
    except TumulteError as exc:
        raise http_error(exc)
    return _reward_dict(config)


@router.delete("/streamer/campaigns/{campaign_id}/gamification/events/{event_id}/reward")
async def disable_reward(campaign_id: str, event_id: str, tumulte: TumulteDep, user: UserDep):
    config = await tumulte.rewards.disable_for_streamer(user["sub"], campaign_id, event_id)
    if config is None:
        raise HTTPException(404, "Reward config not found")
    # An orphaned reward is retried in the background; the streamer sees "disabled"
    return {**_reward_dict(config), "is_enabled": False}


@router.patch("/streamer/campaigns/{campaign_id}/gamification/events/{event_id}/reward/cost")
async def update_reward_cost(
    campaign_id: str, event_id: str, body: CostUpdate, tumulte: TumulteDep, user: UserDep,
):
    try:
        outcome = await tumulte.rewards.update_cost(user["sub"], campaign_id, event_id, body.cost)
    except TumulteError as exc:
        raise http_error(exc)
    return {
        **_reward_dict(outcome.config),
        "remote_updated": outcome.remote_updated,
        "error": outcome.error,
    }
