"""
tumulte.engine.objective — Objective Calculation
==================================================

How many contributions an instance needs before it arms.

    objective = max(minimum_objective, round(viewer_count × coefficient))

The minimum protects small audiences; the coefficient scales the gauge
with the audience.  Group instances sum a per-streamer objective computed
the same way, keeping each share as a :class:`StreamerSnapshot`.

Pure calculation — no database I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from tumulte.constants import OBJECTIVE_VARIATION_THRESHOLD
from tumulte.engine.events import StreamerSnapshot

if TYPE_CHECKING:
    from tumulte.database.models import CampaignGamificationConfig, GamificationEvent


@dataclass(frozen=True, slots=True)
class GroupObjective:
    total_objective: int
    streamer_snapshots: list[StreamerSnapshot]


def _round_half_up(value: float) -> int:
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


class ObjectiveCalculator:
    def calculate_individual(
        self,
        viewer_count: int,
        config: CampaignGamificationConfig,
        event: GamificationEvent,
    ) -> int:
        coefficient = config.effective_coefficient(event)
        minimum = config.effective_minimum_objective(event)
        return max(minimum, _round_half_up(max(viewer_count, 0) * coefficient))

    def calculate_group(
        self,
        streamers: list[StreamerSnapshot] | tuple[StreamerSnapshot, ...],
        config: CampaignGamificationConfig,
        event: GamificationEvent,
    ) -> GroupObjective:
        """Per-streamer objectives and their sum."""
        snapshots = [
            StreamerSnapshot(
                streamer_id=s.streamer_id,
                streamer_name=s.streamer_name,
                viewer_count=s.viewer_count,
                local_objective=self.calculate_individual(s.viewer_count, config, event),
            )
            for s in streamers
        ]
        return GroupObjective(
            total_objective=sum(s.local_objective for s in snapshots),
            streamer_snapshots=snapshots,
        )

    def recalculate_if_significant_change(
        self,
        current_objective: int,
        old_viewer_count: int,
        new_viewer_count: int,
        config: CampaignGamificationConfig,
        event: GamificationEvent,
        variation_threshold: float = OBJECTIVE_VARIATION_THRESHOLD,
    ) -> int | None:
        """New objective when the audience moved by at least the threshold.

        Returns ``None`` when the variation is too small or the objective
        would not change (e.g. both sit on the minimum).
        """
        if old_viewer_count == 0:
            return self.calculate_individual(new_viewer_count, config, event)

        variation = abs(new_viewer_count - old_viewer_count) / old_viewer_count
        if variation < variation_threshold:
            return None

        new_objective = self.calculate_individual(new_viewer_count, config, event)
        if new_objective == current_objective:
            return None
        return new_objective

    def calculate_total_cost(self, objective: int, cost_per_click: int) -> int:
        return objective * cost_per_click
