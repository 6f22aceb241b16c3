"""
Report job control: create jobs, inspect them, sync statistics, operator retry.
"""

import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from report_sync.database import get_db
from report_sync.models import Account
from report_sync.routers.deps import get_account, get_selector
from report_sync.schemas import CreateJobsRequest, ReportJobOut, SyncStats
from report_sync.services.sync_mode import SyncModeSelector
from report_sync.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/accounts/{account_id}/jobs", status_code=201)
async def create_jobs(
    body: CreateJobsRequest,
    account: Account = Depends(get_account),
    selector: SyncModeSelector = Depends(get_selector),
    db: AsyncSession = Depends(get_db),
):
    """Queue jobs for an explicit date range, or for a tiered / legacy sweep."""
    jobs = await selector.create_jobs_for_account(db, account, body)
    return {
        "created": len(jobs),
        "jobs": [ReportJobOut.from_job(j) for j in jobs],
    }


@router.get("/jobs/{job_id}", response_model=ReportJobOut)
async def get_job(
    job_id: str,
    selector: SyncModeSelector = Depends(get_selector),
    db: AsyncSession = Depends(get_db),
):
    job = await selector.job_store.get_job(db, parse_uuid(job_id, "job_id"))
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return ReportJobOut.from_job(job)


@router.get("/accounts/{account_id}/jobs", response_model=list[ReportJobOut])
async def list_account_jobs(
    limit: int = Query(50, ge=1, le=500),
    account: Account = Depends(get_account),
    selector: SyncModeSelector = Depends(get_selector),
    db: AsyncSession = Depends(get_db),
):
    jobs = await selector.job_store.list_account_jobs(db, account.id, limit)
    return [ReportJobOut.from_job(j) for j in jobs]


@router.get("/accounts/{account_id}/sync-stats", response_model=SyncStats)
async def get_sync_stats(
    account: Account = Depends(get_account),
    selector: SyncModeSelector = Depends(get_selector),
    db: AsyncSession = Depends(get_db),
):
    return await selector.get_sync_stats(db, account.id)


@router.post("/accounts/{account_id}/sync")
async def run_sync_pass(
    account: Account = Depends(get_account),
    selector: SyncModeSelector = Depends(get_selector),
    db: AsyncSession = Depends(get_db),
):
    """Run one sync-mode pass for the account now."""
    result = await selector.run_pass(db, account)
    return {
        "mode": result.mode,
        "created": result.created,
        "flipped_to_incremental": result.flipped,
        "attribution": result.attribution,
    }


@router.post("/accounts/{account_id}/jobs/retry-failed")
async def retry_failed_jobs(
    max_retries: int = Query(3, ge=1, le=20),
    account: Account = Depends(get_account),
    selector: SyncModeSelector = Depends(get_selector),
    db: AsyncSession = Depends(get_db),
):
    """Reopen failed or expired jobs, limited to their failed date ranges."""
    return await selector.job_store.retry_failed(db, account.id, max_retries)
