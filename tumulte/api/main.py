"""
tumulte.api.main — FastAPI application entry point
=====================================================

Run with::

    uvicorn tumulte.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from tumulte.api.deps import get_tumulte  # noqa: E402
from tumulte.api.routes.gamification import router as gamification_router  # noqa: E402
from tumulte.api.routes.preflight import router as preflight_router  # noqa: E402
from tumulte.api.routes.vtt import router as vtt_router  # noqa: E402
from tumulte.api.routes.webhooks import router as webhooks_router  # noqa: E402
from tumulte.database.engine import run_db  # noqa: E402
from tumulte.database.seed import seed_system_events  # noqa: E402
from tumulte.services.scheduler import GamificationScheduler  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle: wire services, seed events, run sweeps."""
    tumulte = get_tumulte()
    await run_db(seed_system_events, tumulte.engine)

    scheduler = GamificationScheduler(tumulte)
    await scheduler.startup()
    scheduler.start()
    logger.info("Tumulte API started — engine ready (%s)", tumulte.engine.url.database)
    yield
    await scheduler.stop()
    await tumulte.aclose()
    logger.info("Tumulte API shutting down")


app = FastAPI(
    title="Tumulte Gamification API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(gamification_router, prefix="/api")
app.include_router(preflight_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")
app.include_router(vtt_router)


@app.get("/api/health")
def health():
    return {"status": "ok"}
