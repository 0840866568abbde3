"""
tumulte.api.routes.webhooks — Inbound webhooks
================================================

``POST /webhooks/twitch/eventsub``
    Twitch EventSub.  Every message is HMAC-SHA256 signed with the
    subscription secret over ``message_id + timestamp + raw body``; unsigned,
    mis-signed or stale (> 10 min) messages get 403.  Verification
    challenges are echoed back as plain text; redemption notifications feed
    :meth:`GamificationService.on_streamer_redemption`.

``POST /webhooks/vtt/{connection_id}/dice-roll``
    Dice rolls pushed by the Foundry module.  Rolls are classified with the
    campaign's criticality rules, matched to the streamer playing the
    character and fed to :meth:`GamificationService.on_dice_roll`.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse

from tumulte.api.deps import TumulteDep
from tumulte.constants import REDEMPTION_SUBSCRIPTION_TYPE, utcnow
from tumulte.database.engine import run_db
from tumulte.engine.events import DiceRollData
from tumulte.engine.rules import classify_roll
from tumulte.services.gamification_service import StreamerRedemption

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

MAX_MESSAGE_AGE = timedelta(minutes=10)

HEADER_ID = "Twitch-Eventsub-Message-Id"
HEADER_TIMESTAMP = "Twitch-Eventsub-Message-Timestamp"
HEADER_SIGNATURE = "Twitch-Eventsub-Message-Signature"
HEADER_TYPE = "Twitch-Eventsub-Message-Type"


def sign_eventsub(secret: str, message_id: str, timestamp: str, body: bytes) -> str:
    digest = hmac.new(
        secret.encode(), message_id.encode() + timestamp.encode() + body, hashlib.sha256,
    ).hexdigest()
    return f"sha256={digest}"


def _parse_timestamp(value: str) -> datetime | None:
    try:
        # Twitch sends RFC3339 with nanoseconds; keep microsecond precision
        head, _, frac = value.rstrip("Z").partition(".")
        return datetime.fromisoformat(f"{head}.{(frac + '000000')[:6]}+00:00")
    except ValueError:
        return None


def verify_eventsub(secret: str, headers, body: bytes) -> bool:
    message_id = headers.get(HEADER_ID)
    timestamp = headers.get(HEADER_TIMESTAMP)
    signature = headers.get(HEADER_SIGNATURE)
    if not secret or not message_id or not timestamp or not signature:
        return False
    sent_at = _parse_timestamp(timestamp)
    if sent_at is None or utcnow() - sent_at > MAX_MESSAGE_AGE:
        return False
    return hmac.compare_digest(sign_eventsub(secret, message_id, timestamp, body), signature)


# ---------------------------------------------------------------------------
# Twitch EventSub
# ---------------------------------------------------------------------------
@router.post("/twitch/eventsub")
async def twitch_eventsub(request: Request, tumulte: TumulteDep):
    body = await request.body()
    if not verify_eventsub(tumulte.eventsub_secret, request.headers, body):
        logger.warning("Rejected EventSub message with a bad signature")
        raise HTTPException(403, "Invalid signature")

    message = json.loads(body)
    message_type = request.headers.get(HEADER_TYPE)

    if message_type == "webhook_callback_verification":
        logger.info("EventSub subscription %s verified", message["subscription"]["id"])
        return PlainTextResponse(message["challenge"])

    if message_type == "revocation":
        subscription = message.get("subscription", {})
        logger.warning(
            "EventSub subscription %s revoked (%s)",
            subscription.get("id"), subscription.get("status"),
        )
        return {"ok": True}

    if message.get("subscription", {}).get("type") != REDEMPTION_SUBSCRIPTION_TYPE:
        return {"ok": True, "ignored": True}

    event = message["event"]
    reward_id = event["reward"]["id"]
    config = await run_db(tumulte.rewards.find_by_reward_id, reward_id)
    if config is None or not config.is_enabled:
        logger.info("Redemption %s of an untracked reward %s", event.get("id"), reward_id)
        return {"ok": True, "ignored": True}

    outcome = await tumulte.gamification.on_streamer_redemption(StreamerRedemption(
        campaign_id=config.campaign_id,
        streamer_id=config.streamer_id,
        event_id=config.event_id,
        twitch_user_id=event["user_id"],
        twitch_username=event.get("user_name") or event.get("user_login") or event["user_id"],
        redemption_id=event["id"],
        reward_id=reward_id,
        amount=int(event["reward"].get("cost") or 0),
    ))
    return {
        "ok": True,
        "processed": outcome.processed,
        "instance_id": outcome.instance.id if outcome.instance else None,
        "is_armed": outcome.is_armed,
    }


# ---------------------------------------------------------------------------
# VTT dice rolls
# ---------------------------------------------------------------------------
@router.post("/vtt/{connection_id}/dice-roll")
async def vtt_dice_roll(connection_id: str, payload: dict, tumulte: TumulteDep):
    vtt = tumulte.vtt_state
    if not await run_db(vtt.is_connection_active, connection_id):
        raise HTTPException(403, "Unknown or inactive VTT connection")

    campaign_ids = await run_db(vtt.campaigns_for_connection, connection_id)
    if payload.get("campaignId"):
        campaign_ids = [c for c in campaign_ids if c == payload["campaignId"]]

    triggered: list[str] = []
    for campaign_id in campaign_ids:
        rules = await run_db(vtt.get_criticality_rules, campaign_id)
        roll = DiceRollData.from_payload(classify_roll(rules, payload))
        streamer = await run_db(vtt.resolve_streamer_for_character, campaign_id, roll.character_id)
        if streamer is None:
            logger.debug("Roll %s in campaign %s has no streamer", roll.roll_id, campaign_id)
            continue
        viewer_count = await tumulte.gamification.viewer_count(streamer.streamer_id)
        instance = await tumulte.gamification.on_dice_roll(
            campaign_id, streamer.streamer_id, streamer.name, viewer_count, roll,
        )
        if instance is not None:
            triggered.append(instance.id)

    return {"ok": True, "campaigns": len(campaign_ids), "instance_ids": triggered}
