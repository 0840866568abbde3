"""
tumulte.engine.rules — Campaign Rule Evaluation
=================================================

Evaluation of the two campaign-defined rule tables:

- **Criticality rules** classify a dice roll (``>=20`` on the highest d20 is a
  major critical success, …).  First match wins.
- **Item category rules** decide which VTT items (spells) gamification
  actions may target, and with what weight.

Rules are always evaluated in priority order: highest ``priority`` first,
ties broken by creation order (oldest first).

Pure calculation — callers load the rows.
"""

from __future__ import annotations

import logging
import operator
import re
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

from tumulte.constants import as_utc

if TYPE_CHECKING:
    from tumulte.database.models import CampaignCriticalityRule, CampaignItemCategoryRule

logger = logging.getLogger(__name__)

_CONDITION_RE = re.compile(r"^(==|!=|<=|>=|<|>)\s*(-?\d+(?:\.\d+)?)$")
_DIE_RE = re.compile(r"d(\d+)")

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<=": operator.le,
    ">=": operator.ge,
    "<": operator.lt,
    ">": operator.gt,
}

_EPOCH = datetime.min


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------
def order_rules(rules: Iterable[Any]) -> list[Any]:
    """Sort rules by descending priority, then by creation time."""
    def key(rule: Any) -> tuple[int, datetime]:
        created = as_utc(rule.created_at)
        return (-rule.priority, created.replace(tzinfo=None) if created else _EPOCH)

    return sorted(rules, key=key)


# ---------------------------------------------------------------------------
# Criticality rules
# ---------------------------------------------------------------------------
def evaluate_condition(condition: str, value: float) -> bool:
    """``">= 20"`` style comparison; malformed conditions never match."""
    match = _CONDITION_RE.match(condition.strip())
    if match is None:
        return False
    op, threshold = match.groups()
    return _OPERATORS[op](value, float(threshold))


def matches_formula(pattern: str | None, formula: str) -> bool:
    """``None`` / ``*`` match everything; otherwise substring or die-size match."""
    if not pattern or pattern == "*":
        return True
    norm_pattern = re.sub(r"\s", "", pattern.lower())
    norm_formula = re.sub(r"\s", "", formula.lower())
    if norm_pattern in norm_formula:
        return True
    die = _DIE_RE.search(norm_pattern)
    if die is None:
        return False
    return f"d{die.group(1)}" in norm_formula


def _matches_rule(
    rule: CampaignCriticalityRule, formula: str, dice_results: Sequence[int], total: int,
) -> bool:
    if not matches_formula(rule.dice_formula, formula):
        return False
    if not dice_results:
        return False

    field = rule.result_field
    if field == "any_die":
        return any(evaluate_condition(rule.result_condition, d) for d in dice_results)
    if field == "max_die":
        value = max(dice_results)
    elif field == "min_die":
        value = min(dice_results)
    else:
        value = total
    return evaluate_condition(rule.result_condition, value)


def match_criticality_rule(
    rules: Iterable[CampaignCriticalityRule],
    formula: str,
    dice_results: Sequence[int],
    total: int,
) -> CampaignCriticalityRule | None:
    """First enabled rule (in priority order) that classifies the roll."""
    for rule in order_rules(r for r in rules if r.is_enabled):
        if _matches_rule(rule, formula, dice_results, total):
            return rule
    return None


def classify_roll(rules: Iterable[CampaignCriticalityRule], payload: dict) -> dict:
    """Enrich a raw roll payload with ``criticalType``/``severity``/``criticalLabel``.

    Payloads the VTT already classified are returned unchanged.
    """
    if payload.get("criticalType"):
        return payload
    result = int(payload.get("result", 0))
    dice_results = payload.get("diceResults") or [result]
    rule = match_criticality_rule(rules, str(payload.get("formula") or ""), dice_results, result)
    if rule is None:
        return payload
    return {
        **payload,
        "isCritical": True,
        "criticalType": rule.critical_type,
        "severity": rule.severity,
        "criticalLabel": rule.label,
    }


# ---------------------------------------------------------------------------
# Item category rules
# ---------------------------------------------------------------------------
def _spell_field(spell: dict, match_field: str) -> str | None:
    if match_field == "system.school":
        value = spell.get("school")
    elif match_field == "system.level":
        value = spell.get("level")
    elif match_field == "system.prepared":
        value = spell.get("prepared")
        if isinstance(value, bool):
            value = str(value).lower()
    else:
        return None
    return None if value is None else str(value)


def spell_matches_rule(spell: dict, rule: CampaignItemCategoryRule) -> bool:
    if rule.item_type not in (spell.get("type"), "spell"):
        return False
    if not rule.match_field or not rule.match_value:
        return True
    value = _spell_field(spell, rule.match_field)
    return value is not None and value == rule.match_value


def get_targetable_spells(
    rules: Iterable[CampaignItemCategoryRule], spells: list[dict],
) -> tuple[list[dict], dict[str, int]]:
    """Spells matching a targetable rule, plus the weight of each.

    With no targetable rules configured every spell is eligible with an
    empty weight map (uniform pick).
    """
    ordered = order_rules(r for r in rules if r.is_enabled and r.is_targetable)
    if not ordered:
        return list(spells), {}

    eligible: list[dict] = []
    weights: dict[str, int] = {}
    for spell in spells:
        rule = next((r for r in ordered if spell_matches_rule(spell, r)), None)
        if rule is not None:
            eligible.append(spell)
            weights[spell["id"]] = rule.weight

    logger.debug(
        "Filtered spells by category rules: %d/%d eligible (%d rules)",
        len(eligible), len(spells), len(ordered),
    )
    return eligible, weights
