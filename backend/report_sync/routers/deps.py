"""
Shared router dependencies.
"""

import uuid
from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from report_sync.database import get_db
from report_sync.models import Account
from report_sync.services.scheduler import ReportJobScheduler
from report_sync.services.sync_mode import SyncModeSelector
from report_sync.utils import parse_uuid


def get_scheduler(request: Request) -> ReportJobScheduler:
    return request.app.state.scheduler


def get_selector(scheduler: ReportJobScheduler = Depends(get_scheduler)) -> SyncModeSelector:
    return scheduler.selector


async def get_account(account_id: str, db: AsyncSession = Depends(get_db)) -> Account:
    account_uuid: uuid.UUID = parse_uuid(account_id, "account_id")
    result = await db.execute(select(Account).where(Account.id == account_uuid))
    account = result.scalar_one_or_none()
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account
