"""
tumulte.services.action_executor — Action Dispatch
====================================================

Looks up the handler registered for an event's ``action_type`` and runs it
against the instance.  The executor never raises: an unknown action type or
a crashing handler becomes a failed :class:`ResultData`, which the caller
records on the instance.

A successful action is announced in the streamer's Twitch chat when a
notifier is wired and a template exists for the action type.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from tumulte.engine.events import ResultData
from tumulte.engine.notifications import build_notification_message

if TYPE_CHECKING:
    from tumulte.database.models import GamificationEvent, GamificationInstance
    from tumulte.engine.registry import ActionHandlerRegistry
    from tumulte.services.actions.base import FoundryCommandService

logger = logging.getLogger(__name__)


class ChatNotifier(Protocol):
    async def notify(self, streamer_id: str, message: str) -> None: ...


class ActionExecutor:
    def __init__(
        self, registry: ActionHandlerRegistry, notifier: ChatNotifier | None = None,
    ) -> None:
        self._registry = registry
        self._notifier = notifier

    def set_foundry_command_service(self, service: FoundryCommandService) -> None:
        """Second wiring pass: hand the VTT command service to every handler."""
        for handler in self._registry.all():
            handler.set_foundry_command_service(service)
        logger.info("Foundry command service wired into %d action handler(s)", len(self._registry))

    def set_notifier(self, notifier: ChatNotifier | None) -> None:
        self._notifier = notifier

    async def execute(
        self,
        instance: GamificationInstance,
        event: GamificationEvent,
        connection_id: str | None,
    ) -> ResultData:
        handler = self._registry.get(event.action_type)
        if handler is None:
            logger.warning("Unknown action type %r for event %s", event.action_type, event.slug)
            return ResultData.fail(f"Unknown action type: {event.action_type}")

        try:
            result = await handler.execute(event.action_config, instance, connection_id or "")
        except Exception as exc:
            logger.exception(
                "Action %r crashed on instance %s", event.action_type, instance.id,
            )
            return ResultData.fail(f"Action execution failed: {exc}")

        logger.info(
            "Action %s on instance %s → %s",
            event.action_type, instance.id, "ok" if result.success else result.error,
        )
        if result.success:
            await self._notify(instance, event, result)
        return result

    async def _notify(
        self, instance: GamificationInstance, event: GamificationEvent, result: ResultData,
    ) -> None:
        if self._notifier is None or not instance.streamer_id:
            return
        message = build_notification_message(event.action_type, result)
        if message is None:
            return
        try:
            await self._notifier.notify(instance.streamer_id, message)
        except Exception:
            logger.exception("Chat notification failed for instance %s", instance.id)
