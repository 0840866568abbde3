"""
tumulte.engine.registry — Trigger & Action Handler Registries
===============================================================

Maps a type string (``"dice_critical"``, ``"spell_buff"``, …) to the handler
object implementing it.  Registries are built once at startup by
``build_trigger_registry()`` / ``build_action_registry()`` and passed into
the evaluator, executor and façade; they are read-only afterwards, so
lookups need no locking.

Registering a type twice keeps the first handler and logs a warning, so a
plugin cannot silently replace a built-in.
"""

from __future__ import annotations

import logging
from typing import Generic, Protocol, TypeVar

logger = logging.getLogger(__name__)


class _Typed(Protocol):
    type: str


H = TypeVar("H", bound=_Typed)


class HandlerRegistry(Generic[H]):
    """Type-string → handler mapping with first-registration-wins."""

    kind = "handler"

    def __init__(self) -> None:
        self._handlers: dict[str, H] = {}

    def register(self, handler: H) -> None:
        if handler.type in self._handlers:
            logger.warning(
                "%s type %r already registered — ignoring %s",
                self.kind, handler.type, type(handler).__name__,
            )
            return
        self._handlers[handler.type] = handler
        logger.debug("Registered %s %r", self.kind, handler.type)

    def get(self, type_: str) -> H | None:
        return self._handlers.get(type_)

    def has(self, type_: str) -> bool:
        return type_ in self._handlers

    def all(self) -> list[H]:
        return list(self._handlers.values())

    def types(self) -> list[str]:
        return list(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)


class TriggerHandlerRegistry(HandlerRegistry):
    kind = "Trigger handler"


class ActionHandlerRegistry(HandlerRegistry):
    kind = "Action handler"
