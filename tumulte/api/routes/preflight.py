"""
tumulte.api.routes.preflight — Pre-flight health report
=========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Query

from tumulte.api.deps import GmDep, TumulteDep
from tumulte.services.preflight import CheckContext, EventCategory, RunMode

router = APIRouter(prefix="/campaigns", tags=["preflight"])


@router.get("/{campaign_id}/preflight")
async def run_preflight(
    campaign_id: str,
    tumulte: TumulteDep,
    gm: GmDep,
    event_type: EventCategory = "gamification",
    mode: RunMode = "full",
    event_slug: str | None = Query(default=None),
):
    """Run the checks on demand (GM dashboard "is everything ready?")."""
    metadata = {"source": "dashboard"}
    if event_slug:
        metadata["eventSlug"] = event_slug
    report = await tumulte.preflight.run(CheckContext(
        campaign_id=campaign_id,
        event_type=event_type,
        mode=mode,
        user_id=gm.get("sub"),
        metadata=metadata,
    ))
    return report.to_dict()
