"""
tumulte.engine.evaluator — Trigger Evaluator
==============================================

Thin dispatcher: look up the handler for ``event.trigger_type`` and let it
decide.  All domain logic lives in :mod:`tumulte.engine.triggers`, so a new
trigger type only needs a handler and a ``register()`` call.

Never raises: unknown types and handler crashes both come back as a
non-triggering result with a reason.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from tumulte.engine.events import TriggerEvaluationResult

if TYPE_CHECKING:
    from tumulte.database.models import GamificationEvent
    from tumulte.engine.registry import TriggerHandlerRegistry

logger = logging.getLogger(__name__)


class TriggerEvaluator:
    def __init__(self, registry: TriggerHandlerRegistry) -> None:
        self._registry = registry

    def evaluate(self, event: GamificationEvent, data: Any) -> TriggerEvaluationResult:
        """Ask the handler registered for the event's trigger type."""
        handler = self._registry.get(event.trigger_type)
        if handler is None:
            logger.warning(
                "Unknown trigger type %r for event %s — skipping",
                event.trigger_type, event.slug,
            )
            return TriggerEvaluationResult.skipped(
                f"Unknown trigger type: {event.trigger_type}"
            )

        try:
            return handler.evaluate(event.trigger_config, data)
        except Exception as exc:
            logger.exception("Trigger handler %r crashed on event %s", event.trigger_type, event.slug)
            return TriggerEvaluationResult.skipped(f"Trigger evaluation failed: {exc}")

    def is_supported_trigger_type(self, trigger_type: str) -> bool:
        return self._registry.has(trigger_type)
