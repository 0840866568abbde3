"""
tumulte.engine.configs — Typed Trigger/Action Configs
=======================================================

``trigger_config`` / ``action_config`` are stored as camelCase JSONB blobs
whose shape depends on the event's trigger/action type.  Each handler owns
a pydantic model for its own shape and parses the blob once, at the
boundary, so the handler body works with typed attributes instead of
chains of ``.get()``.

A blob that fails validation raises :class:`pydantic.ValidationError`;
callers turn that into a failure result, never a crash.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tumulte.constants import BUFF_COLOR, DEBUFF_COLOR


class CamelModel(BaseModel):
    """Frozen model that reads camelCase keys and ignores unknown ones."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Trigger configs
# ---------------------------------------------------------------------------
class CriticalBranch(CamelModel):
    """One side (success or failure) of a dice_critical trigger."""

    enabled: bool = False
    threshold: int | None = None
    dice_type: str | None = None
    severity_filter: list[str] | None = None
    category_filter: list[str] | None = None


class DiceCriticalTriggerConfig(CamelModel):
    critical_success: CriticalBranch | None = None
    critical_failure: CriticalBranch | None = None


class CustomTriggerConfig(CamelModel):
    custom_rules: dict | None = None


# ---------------------------------------------------------------------------
# Action sub-configs
# ---------------------------------------------------------------------------
class ChatMessageConfig(CamelModel):
    content: str = Field(min_length=1)
    speaker: str | None = None


class StatModifyConfig(CamelModel):
    actor_id: str | None = None
    updates: dict = Field(default_factory=dict)


class DiceInvertConfig(CamelModel):
    troll_message: str | None = None
    delete_original: bool = True


class SpellBuffConfig(CamelModel):
    buff_type: Literal["advantage", "bonus"] = "advantage"
    bonus_value: int = 2
    highlight_color: str = BUFF_COLOR
    buff_message: str | None = None


class SpellDebuffConfig(CamelModel):
    debuff_type: Literal["disadvantage", "penalty"] = "disadvantage"
    penalty_value: int = 2
    highlight_color: str = DEBUFF_COLOR
    debuff_message: str | None = None


class SpellDisableConfig(CamelModel):
    duration_seconds: int = Field(default=600, gt=0)
    disable_message: str | None = None
    enable_message: str | None = None


class MonsterBuffConfig(CamelModel):
    ac_bonus: int = 2
    temp_hp: int = 10
    highlight_color: str = BUFF_COLOR
    buff_message: str | None = None


class MonsterDebuffConfig(CamelModel):
    ac_penalty: int = 2
    max_hp_reduction: int = 10
    highlight_color: str = DEBUFF_COLOR
    debuff_message: str | None = None


# ---------------------------------------------------------------------------
# Action envelopes — the shape of GamificationEvent.action_config
# ---------------------------------------------------------------------------
class ChatMessageActionConfig(CamelModel):
    chat_message: ChatMessageConfig | None = None


class StatModifyActionConfig(CamelModel):
    stat_modify: StatModifyConfig | None = None


class DiceInvertActionConfig(CamelModel):
    dice_invert: DiceInvertConfig = Field(default_factory=DiceInvertConfig)


class SpellBuffActionConfig(CamelModel):
    spell_buff: SpellBuffConfig = Field(default_factory=SpellBuffConfig)


class SpellDebuffActionConfig(CamelModel):
    spell_debuff: SpellDebuffConfig = Field(default_factory=SpellDebuffConfig)


class SpellDisableActionConfig(CamelModel):
    spell_disable: SpellDisableConfig = Field(default_factory=SpellDisableConfig)


class MonsterBuffActionConfig(CamelModel):
    monster_buff: MonsterBuffConfig = Field(default_factory=MonsterBuffConfig)


class MonsterDebuffActionConfig(CamelModel):
    monster_debuff: MonsterDebuffConfig = Field(default_factory=MonsterDebuffConfig)


class CustomActionConfig(CamelModel):
    custom_actions: dict | None = None


# ---------------------------------------------------------------------------
# Cooldown config
# ---------------------------------------------------------------------------
class CooldownConfig(CamelModel):
    duration_seconds: int | None = Field(default=None, ge=0)
    wait_for_event_id: str | None = None
