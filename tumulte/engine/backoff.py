"""
tumulte.engine.backoff — Orphaned Reward Retry Policy
=======================================================

Exponential backoff for re-attempting a failed Twitch reward deletion:
1 h, 2 h, 4 h, 8 h, 16 h, then every 24 h.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from tumulte.constants import ORPHAN_BACKOFF_MAX_HOURS


def backoff_hours(retry_count: int) -> int:
    """Delay before retry number *retry_count* + 1 (``retry_count`` ≥ 1)."""
    exponent = max(retry_count, 1) - 1
    if exponent >= 5:
        return ORPHAN_BACKOFF_MAX_HOURS
    return min(2 ** exponent, ORPHAN_BACKOFF_MAX_HOURS)


def next_retry_at(retry_count: int, now: datetime) -> datetime:
    return now + timedelta(hours=backoff_hours(retry_count))
