"""
tumulte.engine.triggers — Trigger Handlers
============================================

One class per ``TriggerType``.  Each handler receives the event's raw
``trigger_config`` blob and the incoming signal (a dice roll, a manual
payload, …) and answers with a :class:`TriggerEvaluationResult`.

This module is pure calculation — no database I/O, no network I/O.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from tumulte.database.models import TriggerType
from tumulte.engine.configs import (
    CriticalBranch,
    CustomTriggerConfig,
    DiceCriticalTriggerConfig,
)
from tumulte.engine.events import DiceRollData, TriggerEvaluationResult
from tumulte.engine.registry import TriggerHandlerRegistry

logger = logging.getLogger(__name__)

CRITICAL_SUCCESS = "success"
CRITICAL_FAILURE = "failure"


# ---------------------------------------------------------------------------
# Manual
# ---------------------------------------------------------------------------
class ManualTrigger:
    """Always fires; the payload is passed through under ``custom``."""

    type = TriggerType.MANUAL.value

    def evaluate(self, config: dict | None, data: Any) -> TriggerEvaluationResult:
        return TriggerEvaluationResult.fired({"custom": data})


# ---------------------------------------------------------------------------
# Custom
# ---------------------------------------------------------------------------
class CustomTrigger:
    """Fires whenever a payload is present."""

    type = TriggerType.CUSTOM.value

    def evaluate(self, config: dict | None, data: Any) -> TriggerEvaluationResult:
        if data is None:
            return TriggerEvaluationResult.skipped("No data supplied to custom trigger")
        try:
            CustomTriggerConfig.model_validate(config or {})
        except ValidationError as exc:
            return TriggerEvaluationResult.skipped(f"Invalid custom trigger config: {exc}")
        return TriggerEvaluationResult.fired({"custom": data})


# ---------------------------------------------------------------------------
# Dice critical
# ---------------------------------------------------------------------------
class DiceCriticalTrigger:
    """Fires on critical successes/failures matching the configured thresholds.

    Config::

        {"criticalSuccess": {"enabled": true, "threshold": 20, "diceType": "d20",
                             "severityFilter": ["major"], "categoryFilter": [...]},
         "criticalFailure": {"enabled": true, "threshold": 1}}

    The roll may arrive already classified (``criticalType``) by the VTT's
    criticality rules.  When it isn't, the critical type is inferred from the
    enabled thresholds: highest die against the success threshold, lowest
    die against the failure threshold.
    """

    type = TriggerType.DICE_CRITICAL.value

    def evaluate(self, config: dict | None, data: Any) -> TriggerEvaluationResult:
        if not config:
            return TriggerEvaluationResult.skipped("Missing dice_critical configuration")
        if data is None:
            return TriggerEvaluationResult.skipped("No dice roll supplied")

        try:
            parsed = DiceCriticalTriggerConfig.model_validate(config)
            roll = data if isinstance(data, DiceRollData) else DiceRollData.from_payload(data)
        except (ValidationError, TypeError, ValueError) as exc:
            return TriggerEvaluationResult.skipped(f"Invalid dice_critical input: {exc}")

        critical_type = roll.critical_type or self._infer_critical_type(parsed, roll)
        if critical_type == CRITICAL_SUCCESS:
            branch = parsed.critical_success
        elif critical_type == CRITICAL_FAILURE:
            branch = parsed.critical_failure
        else:
            return TriggerEvaluationResult.skipped("Not a critical roll")

        if branch is None or not branch.enabled:
            return TriggerEvaluationResult.skipped(
                f"Critical {critical_type} is not enabled in this event"
            )

        reason = self._check_branch(branch, critical_type, roll)
        if reason is not None:
            return TriggerEvaluationResult.skipped(reason)

        return TriggerEvaluationResult.fired(roll.to_trigger_data(critical_type))

    # -- Helpers ------------------------------------------------------------
    @staticmethod
    def _infer_critical_type(
        config: DiceCriticalTriggerConfig, roll: DiceRollData,
    ) -> str | None:
        dice = roll.dice_results or [roll.result]
        success = config.critical_success
        if success and success.enabled and success.threshold is not None:
            if max(dice) >= success.threshold:
                return CRITICAL_SUCCESS
        failure = config.critical_failure
        if failure and failure.enabled and failure.threshold is not None:
            if min(dice) <= failure.threshold:
                return CRITICAL_FAILURE
        return None

    @staticmethod
    def _check_branch(branch: CriticalBranch, critical_type: str, roll: DiceRollData) -> str | None:
        """Return a skip reason, or None when the roll satisfies the branch."""
        if branch.dice_type and roll.dice_type:
            if branch.dice_type.lower() != roll.dice_type.lower():
                return f"Dice type {roll.dice_type} does not match {branch.dice_type}"

        dice = roll.dice_results or [roll.result]
        if branch.threshold is not None:
            if critical_type == CRITICAL_SUCCESS and max(dice) < branch.threshold:
                return f"Result {max(dice)} < threshold {branch.threshold}"
            if critical_type == CRITICAL_FAILURE and min(dice) > branch.threshold:
                return f"Result {min(dice)} > threshold {branch.threshold}"

        if branch.severity_filter and roll.severity:
            if roll.severity not in branch.severity_filter:
                return f"Severity {roll.severity!r} excluded by filter"

        if branch.category_filter and roll.critical_category:
            if roll.critical_category not in branch.category_filter:
                return f"Category {roll.critical_category!r} excluded by filter"

        return None


# ---------------------------------------------------------------------------
# Registry factory
# ---------------------------------------------------------------------------
def build_trigger_registry() -> TriggerHandlerRegistry:
    """Registry holding every built-in trigger handler."""
    registry = TriggerHandlerRegistry()
    for handler in (ManualTrigger(), DiceCriticalTrigger(), CustomTrigger()):
        registry.register(handler)
    return registry
