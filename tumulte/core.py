"""
tumulte.core — Service Wiring
===============================

Builds the object graph shared by the API routes, the WebSocket bridge and
the scheduler, and carries it as one :class:`Tumulte` instance.

Wiring happens in two phases:

1. construct registries, the executor and the services;
2. hand late collaborators to the executor (``FoundryCommandAdapter`` over
   the VTT hub, the Twitch chat notifier).  Action handlers are built before
   the hub adapter exists, so they receive it in this second pass.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from tumulte.engine.evaluator import TriggerEvaluator
from tumulte.engine.objective import ObjectiveCalculator
from tumulte.engine.triggers import build_trigger_registry
from tumulte.services.action_executor import ActionExecutor
from tumulte.services.actions.factory import build_action_registry
from tumulte.services.eventsub_reconciler import EventSubReconciler
from tumulte.services.foundry_bridge import FoundryCommandAdapter, VttHub
from tumulte.services.gamification_service import GamificationService
from tumulte.services.instance_manager import InstanceManager
from tumulte.services.notifier import TwitchChatNotifier
from tumulte.services.orphan_detector import OrphanDetector
from tumulte.services.preflight import PreFlightRunner
from tumulte.services.preflight_checks import build_preflight_registry
from tumulte.services.refund_service import RefundService
from tumulte.services.reward_manager import RewardManagerService
from tumulte.services.reward_reconciler import TwitchRewardReconciler
from tumulte.services.twitch_client import TwitchClient
from tumulte.services.vtt_state import VttStateService

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tumulte.config import TumulteConfig

logger = logging.getLogger(__name__)


class Tumulte:
    """Every long-lived service of one Tumulte process.

    Parameters
    ----------
    cfg:
        Parsed ``config.yaml``.
    engine:
        SQLAlchemy engine (PostgreSQL in production, SQLite in tests).
    twitch:
        Helix client.  Built from ``TWITCH_CLIENT_ID`` /
        ``TWITCH_CLIENT_SECRET`` when omitted.
    eventsub_secret:
        Signing secret for EventSub webhooks.  Defaults to
        ``TWITCH_EVENTSUB_SECRET``.
    """

    def __init__(
        self,
        cfg: TumulteConfig,
        engine: Engine,
        twitch: TwitchClient | None = None,
        eventsub_secret: str | None = None,
    ) -> None:
        self.cfg = cfg
        self.engine = engine
        self.twitch = twitch or TwitchClient(
            os.getenv("TWITCH_CLIENT_ID", ""),
            os.getenv("TWITCH_CLIENT_SECRET", ""),
            helix_base_url=cfg.helix_base_url,
            oauth_base_url=cfg.oauth_base_url,
            timeout=cfg.http_timeout_seconds,
        )
        self.eventsub_secret = (
            eventsub_secret if eventsub_secret is not None
            else os.getenv("TWITCH_EVENTSUB_SECRET", "")
        )

        # --- Phase 1: registries and services ----------------------------
        self.hub = VttHub()
        self.vtt_state = VttStateService(engine, self.hub)
        self.trigger_registry = build_trigger_registry()
        self.action_registry = build_action_registry(self.vtt_state)
        self.executor = ActionExecutor(self.action_registry)
        self.instances = InstanceManager(engine, ObjectiveCalculator())
        self.preflight_registry = build_preflight_registry(
            engine, self.hub, self.twitch, self.action_registry,
        )
        self.preflight = PreFlightRunner(self.preflight_registry, engine)
        self.gamification = GamificationService(
            engine,
            evaluator=TriggerEvaluator(self.trigger_registry),
            instances=self.instances,
            executor=self.executor,
            vtt_state=self.vtt_state,
            preflight=self.preflight,
            twitch=self.twitch,
        )
        self.rewards = RewardManagerService(
            engine, self.twitch,
            eventsub_callback_url=cfg.eventsub_callback_url,
            eventsub_secret=self.eventsub_secret,
        )
        self.refunds = RefundService(engine, self.twitch)
        self.orphans = OrphanDetector(engine)
        self.reward_reconciler = TwitchRewardReconciler(engine, self.twitch)
        self.eventsub_reconciler = EventSubReconciler(
            engine, self.twitch, cfg.eventsub_callback_url, self.eventsub_secret,
        )

        # --- Phase 2: late collaborators ---------------------------------
        self.executor.set_foundry_command_service(
            FoundryCommandAdapter(self.hub, timeout=cfg.http_timeout_seconds)
        )
        self.executor.set_notifier(TwitchChatNotifier(engine, self.twitch))
        logger.info(
            "Tumulte wired: %d trigger(s), %d action(s), %d pre-flight check(s)",
            len(self.trigger_registry), len(self.action_registry),
            len(self.preflight_registry),
        )

    async def aclose(self) -> None:
        await self.twitch.aclose()
