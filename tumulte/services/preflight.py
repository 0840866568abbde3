"""
tumulte.services.preflight — Pre-Flight Registry & Runner
===========================================================

Health checks that run before a gamification event is launched.

- **full** mode runs every applicable check and blocks the launch when one
  fails (GM-initiated triggers).
- **light** mode runs only checks with ``priority <= LIGHT_MODE_MAX_PRIORITY``
  (infrastructure, Twitch API, tokens) and never blocks; the automatic
  paths (dice rolls, redemptions) fire it without awaiting the outcome.

Checks are grouped in priority tiers (lower runs first).  When a tier
contains a failure, the remaining tiers are skipped: if the database is
down there is no point validating tokens against it.

Every report is appended to ``preflight_reports``.  Persistence problems
are logged and never affect the report returned to the caller.

Adding a check: implement :class:`PreFlightCheck` and register it in
:func:`tumulte.services.preflight_checks.build_preflight_registry`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Protocol

from tumulte.constants import LIGHT_MODE_MAX_PRIORITY, utcnow
from tumulte.database.engine import get_session, run_db
from tumulte.database.models import PreflightReport

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

EventCategory = Literal["poll", "gamification", "all"]
CheckStatus = Literal["pass", "warn", "fail"]
RunMode = Literal["full", "light"]


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CheckContext:
    campaign_id: str
    event_type: EventCategory = "gamification"
    mode: RunMode = "full"
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CheckResult:
    name: str
    status: CheckStatus
    message: str | None = None
    details: Any = None
    remediation: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict:
        data = {"name": self.name, "status": self.status, "durationMs": self.duration_ms}
        if self.message is not None:
            data["message"] = self.message
        if self.details is not None:
            data["details"] = self.details
        if self.remediation is not None:
            data["remediation"] = self.remediation
        return data


@dataclass(slots=True)
class PreFlightReportData:
    healthy: bool
    has_warnings: bool
    checks: list[CheckResult]
    timestamp: str
    total_duration_ms: int
    event_type: str
    campaign_id: str

    @property
    def failed_checks(self) -> list[CheckResult]:
        return [c for c in self.checks if c.status == "fail"]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["checks"] = [c.to_dict() for c in self.checks]
        return data


class PreFlightCheck(Protocol):
    name: str
    applies_to: tuple[EventCategory, ...]
    priority: int

    async def execute(self, ctx: CheckContext) -> CheckResult: ...


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
class PreFlightRegistry:
    def __init__(self) -> None:
        self._checks: list[PreFlightCheck] = []

    def register(self, check: PreFlightCheck) -> None:
        if any(c.name == check.name for c in self._checks):
            logger.warning("Pre-flight check %r already registered — ignoring", check.name)
            return
        self._checks.append(check)
        logger.debug("Registered pre-flight check %r (priority %d)", check.name, check.priority)

    def get_checks_for(self, event_type: str, mode: RunMode) -> list[PreFlightCheck]:
        """Applicable checks, ascending priority (stable within a tier)."""
        checks = [
            c for c in self._checks
            if event_type in c.applies_to or "all" in c.applies_to
        ]
        if mode == "light":
            checks = [c for c in checks if c.priority <= LIGHT_MODE_MAX_PRIORITY]
        return sorted(checks, key=lambda c: c.priority)

    def all(self) -> list[PreFlightCheck]:
        return list(self._checks)

    def __len__(self) -> int:
        return len(self._checks)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------
def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class PreFlightRunner:
    def __init__(self, registry: PreFlightRegistry, engine: Engine | None = None) -> None:
        self._registry = registry
        self._engine = engine

    async def run(self, ctx: CheckContext) -> PreFlightReportData:
        start = time.perf_counter()
        checks = self._registry.get_checks_for(ctx.event_type, ctx.mode)
        logger.info(
            "Pre-flight start: campaign=%s type=%s mode=%s checks=%s",
            ctx.campaign_id, ctx.event_type, ctx.mode, [c.name for c in checks],
        )

        results: list[CheckResult] = []
        current_tier: int | None = None
        short_circuited = False
        for check in checks:
            if check.priority != current_tier:
                if current_tier is not None and any(r.status == "fail" for r in results):
                    short_circuited = True
                    logger.warning(
                        "Pre-flight short-circuit after tier %d; skipped: %s",
                        current_tier,
                        [c.name for c in checks if c.priority > current_tier],
                    )
                    break
                current_tier = check.priority
            results.append(await self._execute_check(check, ctx))

        report = PreFlightReportData(
            healthy=not any(r.status == "fail" for r in results),
            has_warnings=any(r.status == "warn" for r in results),
            checks=results,
            timestamp=utcnow().isoformat(),
            total_duration_ms=_elapsed_ms(start),
            event_type=ctx.event_type,
            campaign_id=ctx.campaign_id,
        )
        logger.info(
            "Pre-flight done: campaign=%s healthy=%s warnings=%s short_circuited=%s (%d ms)",
            ctx.campaign_id, report.healthy, report.has_warnings, short_circuited,
            report.total_duration_ms,
            extra={"preflight": {r.name: r.status for r in results}},
        )

        if self._engine is not None:
            try:
                await run_db(self._persist, report, ctx)
            except Exception:
                logger.warning("Failed to persist pre-flight report", exc_info=True)
        return report

    @staticmethod
    async def _execute_check(check: PreFlightCheck, ctx: CheckContext) -> CheckResult:
        start = time.perf_counter()
        try:
            result = await check.execute(ctx)
        except Exception as exc:
            logger.exception("Pre-flight check %r raised", check.name)
            return CheckResult(
                name=check.name, status="fail", message=str(exc) or "Unknown error during check",
                duration_ms=_elapsed_ms(start),
            )
        if not result.duration_ms:
            result.duration_ms = _elapsed_ms(start)
        return result

    def _persist(self, report: PreFlightReportData, ctx: CheckContext) -> None:
        with get_session(self._engine) as session:
            session.add(PreflightReport(
                campaign_id=report.campaign_id,
                event_type=report.event_type,
                event_slug=ctx.metadata.get("eventSlug"),
                triggered_by=ctx.user_id,
                mode=ctx.mode,
                healthy=report.healthy,
                has_warnings=report.has_warnings,
                checks=[c.to_dict() for c in report.checks],
                duration_ms=report.total_duration_ms,
            ))
