"""
Amazon Ads Report Sync: FastAPI Backend
Requests, polls, and ingests Amazon Ads v3 reports into PostgreSQL on
independent in-process schedules, with a small control API on top.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from report_sync.config import get_settings
from report_sync.database import init_db, check_db_connection
from report_sync.auth import require_auth
from report_sync.routers import cron, jobs, scheduler as scheduler_router
from report_sync.services.scheduler import ReportJobScheduler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Amazon Ads Report Sync...")
    try:
        await init_db()
        logger.info("Database initialized, all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    if settings.scheduler_enabled:
        app.state.scheduler.start()
    yield
    logger.info("Shutting down...")
    await app.state.scheduler.stop()


app = FastAPI(
    title="Amazon Ads Report Sync",
    description="Report ingestion and scheduling for the Amazon Ads Reporting API",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.scheduler = ReportJobScheduler(settings)

# ── Register Routers ─────────────────────────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(jobs.router, prefix="/api", tags=["Report Jobs"], dependencies=_auth)
app.include_router(scheduler_router.router, prefix="/api", dependencies=_auth)
app.include_router(cron.router, prefix="/api")  # No API key, uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Amazon Ads Report Sync",
        "database": "connected" if db_ok else "disconnected",
        "scheduler": "running" if app.state.scheduler.is_running else "stopped",
    }
