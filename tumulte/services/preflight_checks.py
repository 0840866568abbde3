"""
tumulte.services.preflight_checks — Built-in Pre-Flight Checks
================================================================

Priority guide (lower runs first):

====  =====================  ==========================================
  0   database, websocket    infrastructure — nothing works without it
  5   twitch_api             Helix reachable with the app token
 10   tokens                 every campaign streamer can be acted for
 15   vtt_connection         the campaign's Foundry world is paired
 20   gamification_config    something is actually enabled
====  =====================  ==========================================

The two VTT checks pass straight away when the run targets one event
(``eventSlug`` or ``eventId`` in the metadata) whose action handler does
not list ``"vtt_connection"`` in its ``requires``.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from sqlalchemy import func, select, text

from tumulte.constants import as_utc, utcnow
from tumulte.database.engine import get_session, run_db
from tumulte.database.models import (
    Campaign,
    CampaignGamificationConfig,
    CampaignMembership,
    GamificationEvent,
    VttConnection,
)
from tumulte.services.preflight import CheckContext, CheckResult, PreFlightRegistry
from tumulte.services.twitch_client import TwitchApiError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tumulte.engine.registry import ActionHandlerRegistry
    from tumulte.services.foundry_bridge import VttHub
    from tumulte.services.twitch_client import TwitchClient

logger = logging.getLogger(__name__)


def _ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class _VttRequirement:
    """Skips a VTT check for events whose action runs without Foundry."""

    requirement = "vtt_connection"

    def __init__(
        self, engine: Engine, actions: ActionHandlerRegistry | None = None,
    ) -> None:
        self._engine = engine
        self._actions = actions

    def _action_type(self, metadata: dict) -> str | None:
        slug, event_id = metadata.get("eventSlug"), metadata.get("eventId")
        if not slug and not event_id:
            return None
        stmt = select(GamificationEvent.action_type)
        if slug:
            stmt = stmt.where(GamificationEvent.slug == slug)
        else:
            stmt = stmt.where(GamificationEvent.id == event_id)
        with get_session(self._engine) as session:
            return session.scalar(stmt)

    async def _not_required(self, ctx: CheckContext) -> str | None:
        """The action type when it does not need the VTT, else ``None``."""
        if self._actions is None:
            return None
        action_type = await run_db(self._action_type, ctx.metadata)
        handler = self._actions.get(action_type) if action_type else None
        if handler is None or self.requirement in handler.requires:
            return None
        return action_type


# ---------------------------------------------------------------------------
# Priority 0 — infrastructure
# ---------------------------------------------------------------------------
class DatabaseCheck:
    name = "database"
    applies_to = ("all",)
    priority = 0

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _ping(self) -> None:
        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    async def execute(self, ctx: CheckContext) -> CheckResult:
        start = time.perf_counter()
        try:
            await run_db(self._ping)
        except Exception as exc:
            logger.error("Pre-flight database check failed: %s", exc)
            return CheckResult(
                self.name, "fail", message=f"Database unreachable: {exc}",
                remediation="Check DATABASE_URL and that PostgreSQL is running",
                duration_ms=_ms(start),
            )
        return CheckResult(self.name, "pass", message="Database reachable", duration_ms=_ms(start))


class WebSocketCheck(_VttRequirement):
    """The campaign's VTT socket is attached to this process."""

    name = "websocket"
    applies_to = ("gamification",)
    priority = 0

    def __init__(
        self, engine: Engine, hub: VttHub, actions: ActionHandlerRegistry | None = None,
    ) -> None:
        super().__init__(engine, actions)
        self._hub = hub

    def _connection_id(self, campaign_id: str) -> str | None:
        with get_session(self._engine) as session:
            campaign = session.get(Campaign, campaign_id)
            return campaign.vtt_connection_id if campaign else None

    async def execute(self, ctx: CheckContext) -> CheckResult:
        start = time.perf_counter()
        action_type = await self._not_required(ctx)
        if action_type:
            return CheckResult(
                self.name, "pass", message=f"{action_type} does not use the VTT",
                duration_ms=_ms(start),
            )
        connection_id = await run_db(self._connection_id, ctx.campaign_id)
        if connection_id is None:
            # vtt_connection reports the missing pairing
            return CheckResult(
                self.name, "pass", message="No VTT connection configured", duration_ms=_ms(start),
            )
        if not self._hub.is_connected(connection_id):
            return CheckResult(
                self.name, "warn",
                message="VTT WebSocket is not connected",
                details={"connectionId": connection_id},
                remediation="Make sure the Foundry module is running and connected",
                duration_ms=_ms(start),
            )
        return CheckResult(self.name, "pass", message="VTT WebSocket connected", duration_ms=_ms(start))


# ---------------------------------------------------------------------------
# Priority 5 — external APIs
# ---------------------------------------------------------------------------
class TwitchApiCheck:
    name = "twitch_api"
    applies_to = ("all",)
    priority = 5

    def __init__(self, twitch: TwitchClient) -> None:
        self._twitch = twitch

    async def execute(self, ctx: CheckContext) -> CheckResult:
        start = time.perf_counter()
        try:
            await self._twitch.get_app_token()
        except TwitchApiError as exc:
            return CheckResult(
                self.name, "fail", message=f"Twitch API unavailable: {exc}",
                details={"statusCode": exc.status_code},
                duration_ms=_ms(start),
            )
        return CheckResult(self.name, "pass", message="Twitch API reachable", duration_ms=_ms(start))


# ---------------------------------------------------------------------------
# Priority 10 — tokens
# ---------------------------------------------------------------------------
_TOKEN_REMEDIATION = {
    "streamer_inactive": "streamer account is inactive",
    "authorization_missing": "authorization not granted",
    "authorization_expired": "authorization expired",
    "token_missing": "tokens missing",
    "token_invalid": "Twitch reconnection required",
}


class TokenCheck:
    """Every streamer of the campaign is active, authorized and holds a
    token Twitch still accepts."""

    name = "tokens"
    applies_to = ("all",)
    priority = 10

    def __init__(self, engine: Engine, twitch: TwitchClient) -> None:
        self._engine = engine
        self._twitch = twitch

    def _load_members(self, campaign_id: str) -> list[CampaignMembership]:
        with get_session(self._engine) as session:
            memberships = session.scalars(
                select(CampaignMembership).where(CampaignMembership.campaign_id == campaign_id)
            ).all()
            for membership in memberships:
                membership.streamer  # noqa: B018  (load before the session closes)
            return list(memberships)

    async def execute(self, ctx: CheckContext) -> CheckResult:
        start = time.perf_counter()
        invalid: list[dict] = []
        now = utcnow()
        for membership in await run_db(self._load_members, ctx.campaign_id):
            streamer = membership.streamer
            issue = None
            if not streamer.is_active:
                issue = "streamer_inactive"
            elif membership.poll_authorization_expires_at is None:
                issue = "authorization_missing"
            elif as_utc(membership.poll_authorization_expires_at) <= now:
                issue = "authorization_expired"
            elif not streamer.access_token or not streamer.refresh_token:
                issue = "token_missing"
            else:
                try:
                    if await self._twitch.validate_token(streamer.access_token) is None:
                        issue = "token_invalid"
                except TwitchApiError as exc:
                    logger.warning("Token validation for %s errored: %s", streamer.twitch_login, exc)
                    issue = "token_invalid"
            if issue:
                invalid.append({
                    "id": streamer.id, "displayName": streamer.twitch_display_name, "issue": issue,
                })

        if not invalid:
            return CheckResult(
                self.name, "pass", message="All streamer tokens are valid", duration_ms=_ms(start),
            )
        logger.error("Pre-flight token check failed for %d streamer(s)", len(invalid))
        return CheckResult(
            self.name, "fail",
            message=f"{len(invalid)} streamer(s) with invalid tokens",
            details=invalid,
            remediation=" | ".join(
                f"{s['displayName']}: {_TOKEN_REMEDIATION[s['issue']]}" for s in invalid
            ),
            duration_ms=_ms(start),
        )


# ---------------------------------------------------------------------------
# Priority 15 — VTT connection
# ---------------------------------------------------------------------------
class VttConnectionCheck(_VttRequirement):
    name = "vtt_connection"
    applies_to = ("gamification",)
    priority = 15

    def _inspect(self, campaign_id: str) -> CheckResult:
        with get_session(self._engine) as session:
            campaign = session.get(Campaign, campaign_id)
            if campaign is None:
                return CheckResult(self.name, "fail", message="Campaign not found")
            if not campaign.vtt_connection_id:
                return CheckResult(
                    self.name, "fail",
                    message="No VTT connection configured for this campaign",
                    remediation="Pair a VTT connection in the campaign settings",
                )
            connection = session.get(VttConnection, campaign.vtt_connection_id)
            if connection is None:
                return CheckResult(
                    self.name, "fail",
                    message="Referenced VTT connection does not exist",
                    remediation="Recreate the VTT connection from the campaign settings",
                )
            if connection.status != "active":
                return CheckResult(
                    self.name, "fail",
                    message=f'VTT connection is "{connection.status}" (expected active)',
                    details={"connectionId": connection.id, "status": connection.status},
                    remediation="Re-activate the connection from Foundry",
                )
            if connection.tunnel_status in ("error", "disconnected"):
                return CheckResult(
                    self.name, "warn",
                    message=f'VTT tunnel is "{connection.tunnel_status}"',
                    details={"connectionId": connection.id, "tunnelStatus": connection.tunnel_status},
                    remediation="Make sure the Foundry module is running and connected",
                )
            return CheckResult(self.name, "pass", message="VTT connection active")

    async def execute(self, ctx: CheckContext) -> CheckResult:
        start = time.perf_counter()
        action_type = await self._not_required(ctx)
        if action_type:
            return CheckResult(
                self.name, "pass", message=f"{action_type} does not use the VTT",
                duration_ms=_ms(start),
            )
        result = await run_db(self._inspect, ctx.campaign_id)
        result.duration_ms = _ms(start)
        return result


# ---------------------------------------------------------------------------
# Priority 20 — business rules
# ---------------------------------------------------------------------------
class GamificationConfigCheck:
    """At least one event is enabled for the campaign (or the requested
    ``eventSlug`` specifically)."""

    name = "gamification_config"
    applies_to = ("gamification",)
    priority = 20

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _count_enabled(self, campaign_id: str, event_slug: str | None) -> int:
        stmt = (
            select(func.count(CampaignGamificationConfig.id))
            .join(GamificationEvent, GamificationEvent.id == CampaignGamificationConfig.event_id)
            .where(
                CampaignGamificationConfig.campaign_id == campaign_id,
                CampaignGamificationConfig.is_enabled.is_(True),
            )
        )
        if event_slug:
            stmt = stmt.where(GamificationEvent.slug == event_slug)
        with get_session(self._engine) as session:
            return session.scalar(stmt) or 0

    async def execute(self, ctx: CheckContext) -> CheckResult:
        start = time.perf_counter()
        event_slug = ctx.metadata.get("eventSlug")
        enabled = await run_db(self._count_enabled, ctx.campaign_id, event_slug)
        if enabled == 0:
            target = f'Event "{event_slug}"' if event_slug else "No gamification event"
            return CheckResult(
                self.name, "fail",
                message=f"{target} is not enabled for this campaign",
                remediation="Enable the event in the campaign's gamification settings",
                duration_ms=_ms(start),
            )
        return CheckResult(
            self.name, "pass", message=f"{enabled} enabled event(s)", duration_ms=_ms(start),
        )


# ---------------------------------------------------------------------------
# Registry construction
# ---------------------------------------------------------------------------
def build_preflight_registry(
    engine: Engine,
    hub: VttHub,
    twitch: TwitchClient,
    actions: ActionHandlerRegistry | None = None,
) -> PreFlightRegistry:
    """All built-in checks.  With *actions*, the VTT checks honour each
    handler's ``requires``."""
    registry = PreFlightRegistry()
    for check in (
        DatabaseCheck(engine),
        WebSocketCheck(engine, hub, actions),
        TwitchApiCheck(twitch),
        TokenCheck(engine, twitch),
        VttConnectionCheck(engine, actions),
        GamificationConfigCheck(engine),
    ):
        registry.register(check)
    return registry
