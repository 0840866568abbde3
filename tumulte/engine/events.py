"""
tumulte.engine.events — Gamification Value Objects
====================================================

Ephemeral structures passed between the evaluator, the instance manager and
the action executor.  None of these are persisted directly; the instance
stores their ``to_dict()`` form in its JSONB columns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "DiceRollData",
    "TriggerEvaluationResult",
    "ResultData",
    "StreamerSnapshot",
    "TriggerContext",
]


# ---------------------------------------------------------------------------
# DiceRollData — a roll as reported by the VTT module
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DiceRollData:
    """One dice roll, normalized from the VTT webhook payload.

    ``character_id`` is the Tumulte character UUID, ``vtt_character_id`` the
    Foundry actor id.  Severity and category are optional enrichments from
    campaign criticality rules.
    """

    roll_id: str
    formula: str
    result: int
    dice_results: list[int] = field(default_factory=list)
    is_critical: bool = False
    critical_type: str | None = None
    dice_type: str | None = None
    character_id: str | None = None
    vtt_character_id: str | None = None
    character_name: str | None = None
    severity: str | None = None
    critical_label: str | None = None
    critical_category: str | None = None
    message_id: str | None = None

    @classmethod
    def from_payload(cls, data: dict) -> DiceRollData:
        """Build from a camelCase payload; missing ``diceResults`` fall back
        to ``[result]``."""
        result = int(data.get("result", 0))
        dice_results = [int(v) for v in (data.get("diceResults") or [result])]
        return cls(
            roll_id=str(data.get("rollId") or ""),
            formula=str(data.get("formula") or ""),
            result=result,
            dice_results=dice_results,
            is_critical=bool(data.get("isCritical", False)),
            critical_type=data.get("criticalType"),
            dice_type=data.get("diceType"),
            character_id=data.get("characterId"),
            vtt_character_id=data.get("vttCharacterId"),
            character_name=data.get("characterName"),
            severity=data.get("severity"),
            critical_label=data.get("criticalLabel"),
            critical_category=data.get("criticalCategory"),
            message_id=data.get("messageId"),
        )

    def to_trigger_data(self, critical_type: str | None = None) -> dict:
        """The ``diceRoll`` block stored in an instance's trigger_data."""
        return {
            "diceRoll": {
                "rollId": self.roll_id,
                "characterId": self.character_id,
                "vttCharacterId": self.vtt_character_id,
                "characterName": self.character_name,
                "formula": self.formula,
                "result": self.result,
                "diceResults": list(self.dice_results),
                "criticalType": critical_type or self.critical_type,
                "messageId": self.message_id,
            },
        }


# ---------------------------------------------------------------------------
# Trigger evaluation
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TriggerEvaluationResult:
    should_trigger: bool
    trigger_data: dict | None = None
    reason: str | None = None

    @classmethod
    def fired(cls, trigger_data: dict) -> TriggerEvaluationResult:
        return cls(should_trigger=True, trigger_data=trigger_data)

    @classmethod
    def skipped(cls, reason: str) -> TriggerEvaluationResult:
        return cls(should_trigger=False, trigger_data=None, reason=reason)


# ---------------------------------------------------------------------------
# Action results
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class ResultData:
    """Outcome of one action execution, stored on the instance."""

    success: bool
    message: str | None = None
    error: str | None = None
    action_result: dict[str, Any] | None = None

    @classmethod
    def ok(cls, message: str, action_result: dict | None = None) -> ResultData:
        return cls(success=True, message=message, action_result=action_result)

    @classmethod
    def fail(cls, error: str, action_result: dict | None = None) -> ResultData:
        return cls(success=False, error=error, action_result=action_result)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"success": self.success}
        if self.message is not None:
            data["message"] = self.message
        if self.error is not None:
            data["error"] = self.error
        if self.action_result is not None:
            data["actionResult"] = self.action_result
        return data


# ---------------------------------------------------------------------------
# Group instances
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class StreamerSnapshot:
    """Per-streamer share of a group objective."""

    streamer_id: str
    streamer_name: str
    viewer_count: int
    local_objective: int
    contributions: int = 0

    def to_dict(self) -> dict:
        return {
            "streamerId": self.streamer_id,
            "streamerName": self.streamer_name,
            "viewerCount": self.viewer_count,
            "localObjective": self.local_objective,
            "contributions": self.contributions,
        }


# ---------------------------------------------------------------------------
# Trigger context — who/where a trigger happened
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TriggerContext:
    """Where an instance should be created when a trigger fires.

    ``streamer_id`` is required for individual events.  ``streamers`` is the
    roster used to compute group objectives.
    """

    campaign_id: str
    streamer_id: str | None = None
    streamer_name: str | None = None
    viewer_count: int = 0
    streamers: tuple[StreamerSnapshot, ...] = ()
