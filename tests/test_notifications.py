"""
tests/test_notifications.py — Chat Notification Templates
==========================================================
"""

from __future__ import annotations

from tumulte.engine.events import ResultData
from tumulte.engine.notifications import build_notification_message


class TestBuildNotificationMessage:
    def test_dice_invert(self):
        msg = build_notification_message(
            "dice_invert", {"actionResult": {"originalResult": 20, "invertedResult": 1}},
        )
        assert "20" in msg and "1" in msg

    def test_dice_invert_requires_both_values(self):
        msg = build_notification_message("dice_invert", {"actionResult": {"originalResult": 20}})
        assert msg is None

    def test_accepts_result_data(self):
        result = ResultData.ok("done", {"spellName": "Fireball"})
        msg = build_notification_message("spell_buff", result)
        assert "Fireball" in msg

    def test_spell_without_name_uses_placeholder(self):
        msg = build_notification_message("spell_debuff", {"actionResult": {}})
        assert "a spell" in msg

    def test_spell_disable_duration_in_minutes(self):
        msg = build_notification_message(
            "spell_disable", {"actionResult": {"spellName": "Haste", "effectDuration": 600}},
        )
        assert "Haste" in msg
        assert "10 min" in msg

    def test_monster_requires_name(self):
        assert build_notification_message("monster_buff", {"actionResult": {}}) is None
        msg = build_notification_message("monster_debuff", {"actionResult": {"monsterName": "Strahd"}})
        assert "Strahd" in msg

    def test_unknown_action_type(self):
        assert build_notification_message("chat_message", {"actionResult": {"x": 1}}) is None

    def test_missing_result(self):
        assert build_notification_message("dice_invert", None) is None
        assert build_notification_message("dice_invert", {"success": True}) is None


class TestResultData:
    def test_to_dict_omits_empty_fields(self):
        assert ResultData.ok("fine").to_dict() == {"success": True, "message": "fine"}
        assert ResultData.fail("nope", {"a": 1}).to_dict() == {
            "success": False, "error": "nope", "actionResult": {"a": 1},
        }
