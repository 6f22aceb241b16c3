"""
Cron endpoints: for an external scheduler (QStash, cron job) when the
in-process loops are disabled (SCHEDULER_ENABLED=false) or as a backstop.

Requests must carry the shared secret:
  X-Cron-Secret: <CRON_SECRET>   or   Authorization: Bearer <CRON_SECRET>
"""

import logging
import secrets
from fastapi import APIRouter, Depends, Header, HTTPException

from report_sync.config import get_settings
from report_sync.routers.deps import get_scheduler
from report_sync.services.scheduler import ReportJobScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if not token or not secrets.compare_digest(token, secret):
        raise HTTPException(401, "Invalid cron secret")


@router.post("/sync-pass")
async def cron_sync_pass(
    _: None = Depends(_require_cron_secret),
    scheduler: ReportJobScheduler = Depends(get_scheduler),
):
    result = await scheduler.run_sync_pass()
    logger.info(f"Cron sync pass completed: {result}")
    return {"status": "ok", "result": result}


@router.post("/run-once")
async def cron_run_once(
    _: None = Depends(_require_cron_secret),
    scheduler: ReportJobScheduler = Depends(get_scheduler),
):
    return {"status": "ok", "result": await scheduler.run_once()}


@router.post("/cleanup")
async def cron_cleanup(
    _: None = Depends(_require_cron_secret),
    scheduler: ReportJobScheduler = Depends(get_scheduler),
):
    result = await scheduler.run_cleanup()
    return {"status": "ok", "result": result}
