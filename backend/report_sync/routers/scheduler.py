"""
Scheduler lifecycle: start, stop, status, and a manual run of one cycle.
"""

import logging
from fastapi import APIRouter, Depends

from report_sync.routers.deps import get_scheduler
from report_sync.services.scheduler import ReportJobScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduler", tags=["Scheduler"])


@router.post("/start")
async def start_scheduler(scheduler: ReportJobScheduler = Depends(get_scheduler)):
    started = scheduler.start()
    return {"started": started, "running": scheduler.is_running}


@router.post("/stop")
async def stop_scheduler(scheduler: ReportJobScheduler = Depends(get_scheduler)):
    stopped = await scheduler.stop()
    return {"stopped": stopped, "running": scheduler.is_running}


@router.get("/status")
async def scheduler_status(scheduler: ReportJobScheduler = Depends(get_scheduler)):
    return scheduler.status()


@router.post("/run-once")
async def run_once(scheduler: ReportJobScheduler = Depends(get_scheduler)):
    """Run one submit + check + process cycle and return each stage's result."""
    return await scheduler.run_once()
