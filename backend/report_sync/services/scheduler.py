"""
Report Job Scheduler: runs the sync pipeline on independent cadences.

Five asyncio loops share nothing but the database:
  submit      pending -> submitted              (every 30 s)
  check       submitted/processing -> terminal  (every 60 s)
  process     completed -> ingested             (every 30 s)
  cleanup     purge old terminal jobs           (daily)
  sync_pass   sync-mode selection per account   (daily)

stop() signals the loops and waits for the tick in progress to finish; no
tick is interrupted mid-call, and a job claimed but not finished keeps its
last committed state until its lease expires.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from report_sync.config import Settings, get_settings
from report_sync.models import Account
from report_sync.services.job_store import JobStore
from report_sync.services.rate_limiter import RateLimitConfig, RateLimiterRegistry
from report_sync.services.report_processor import ReportProcessor
from report_sync.services.status_poller import StatusPoller
from report_sync.services.submission_worker import ClientFactory, SubmissionWorker
from report_sync.services.sync_mode import SyncModeSelector
from report_sync.services.token_service import get_reporting_client
from report_sync.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class LoopState:
    interval: float
    runs: int = 0
    errors: int = 0
    last_run_at: Optional[datetime] = None
    last_result: Optional[dict] = None
    last_error: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "interval_seconds": self.interval,
            "runs": self.runs,
            "errors": self.errors,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": self.last_result,
            "last_error": self.last_error,
        }


class ReportJobScheduler:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker] = None,
        client_factory: ClientFactory = get_reporting_client,
        job_store: Optional[JobStore] = None,
        limiters: Optional[RateLimiterRegistry] = None,
        selector: Optional[SyncModeSelector] = None,
    ):
        self.settings = settings or get_settings()
        if session_factory is None:
            from report_sync.database import async_session
            session_factory = async_session
        self.session_factory = session_factory
        self.job_store = job_store or JobStore(claim_ttl_seconds=self.settings.claim_ttl_seconds)
        self.limiters = limiters or RateLimiterRegistry(RateLimitConfig.from_settings(self.settings))
        self.selector = selector or SyncModeSelector(self.job_store, self.settings)

        self.submitter = SubmissionWorker(
            session_factory, self.job_store, self.limiters, client_factory,
            batch_size=self.settings.submit_batch_size,
        )
        self.poller = StatusPoller(
            session_factory, self.job_store, self.limiters, client_factory,
            batch_size=self.settings.check_batch_size,
            timeout_minutes=self.settings.job_timeout_minutes,
        )
        self.processor = ReportProcessor(
            session_factory, self.job_store, client_factory,
            batch_size=self.settings.process_batch_size,
        )

        self._loops: dict[str, tuple[Callable[[], Awaitable[dict]], LoopState]] = {
            "submit": (self.submitter.run_tick, LoopState(self.settings.submit_interval_seconds)),
            "check": (self.poller.run_tick, LoopState(self.settings.check_interval_seconds)),
            "process": (self.processor.run_tick, LoopState(self.settings.process_interval_seconds)),
            "cleanup": (self.run_cleanup, LoopState(self.settings.cleanup_interval_seconds)),
            "sync_pass": (self.run_sync_pass, LoopState(self.settings.sync_pass_interval_seconds)),
        }
        self._tasks: list[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None
        self.started_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and not all(t.done() for t in self._tasks)

    def start(self) -> bool:
        """Start all loops. Returns False (and does nothing) when already running."""
        if self.is_running:
            logger.info("Scheduler already running")
            return False
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._run_loop(name), name=f"report-sync-{name}")
            for name in self._loops
        ]
        self.started_at = utcnow()
        logger.info(f"Scheduler started with loops: {', '.join(self._loops)}")
        return True

    async def stop(self, timeout: Optional[float] = None) -> bool:
        """Let running ticks finish, then end the loops. Returns False if it was not running."""
        if not self.is_running:
            self._tasks = []
            return False
        self._stop_event.set()
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            logger.warning(f"Scheduler loop {task.get_name()} did not stop in time; cancelling")
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        self.started_at = None
        await self.limiters.close()
        logger.info("Scheduler stopped")
        return True

    async def _run_loop(self, name: str) -> None:
        tick, state = self._loops[name]
        while not self._stop_event.is_set():
            await self._run_tick(name, tick, state)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=state.interval)
            except asyncio.TimeoutError:
                pass

    async def _run_tick(self, name: str, tick, state: LoopState) -> Optional[dict]:
        state.last_run_at = utcnow()
        state.runs += 1
        try:
            result = await tick()
        except Exception as e:
            state.errors += 1
            state.last_error = str(e)
            logger.exception(f"Scheduler {name} tick failed")
            return None
        state.last_result = result
        return result

    def status(self) -> dict:
        return {
            "running": self.is_running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "loops": {name: state.as_dict() for name, (_, state) in self._loops.items()},
            "rate_limiters": self.limiters.stats(),
        }

    async def run_once(self) -> dict:
        """One submit + check + process cycle, in that order, outside the loops."""
        results = {}
        for name in ("submit", "check", "process"):
            tick, state = self._loops[name]
            results[name] = await self._run_tick(name, tick, state)
        return results

    async def run_cleanup(self) -> dict:
        async with self.session_factory() as db:
            deleted = await self.job_store.cleanup(db, self.settings.job_retention_days)
            await db.commit()
        return {"deleted": deleted}

    async def run_sync_pass(self) -> dict:
        """Run the sync-mode selector for every active account, one transaction each."""
        async with self.session_factory() as db:
            result = await db.execute(select(Account.id).where(Account.is_active.is_(True)))
            account_ids = list(result.scalars().all())

        summary = {"accounts": len(account_ids), "jobs_created": 0, "errors": 0}
        for account_id in account_ids:
            try:
                async with self.session_factory() as db:
                    account = (await db.execute(select(Account).where(Account.id == account_id))).scalar_one()
                    outcome = await self.selector.run_pass(db, account)
                    await db.commit()
                summary["jobs_created"] += outcome.created
            except Exception:
                summary["errors"] += 1
                logger.exception(f"Sync pass failed for account {account_id}")
        logger.info(f"Sync pass: {summary}")
        return summary
