"""
Background jobs using APScheduler.

- Order reconciliation (daily, 03:00 by default)
- Location expiry (every 30 seconds)

Jobs never pile up (max_instances=1, coalesce=True) and every run gets
its own correlation ID.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from relay.config import AppConfig, config
from relay.dispatch import Dispatcher
from relay.observability import correlation_context, get_logger
from relay.sync_engine import SyncEngine

logger = get_logger(__name__)


@dataclass
class JobInfo:
    """Information about a scheduled job."""
    id: str
    name: str
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_status": self.last_status,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }


class RelayScheduler:
    """
    Usage:
        scheduler = RelayScheduler(engine, dispatcher)
        scheduler.start()

        # Later...
        scheduler.shutdown()
    """

    def __init__(self, engine: SyncEngine, dispatcher: Dispatcher, settings: AppConfig = None):
        self.engine = engine
        self.dispatcher = dispatcher
        self.settings = settings or config
        self.timezone = ZoneInfo(self.settings.sync.timezone)
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._job_info: Dict[str, JobInfo] = {}

    def start(self) -> None:
        """Register jobs and start. Must be called with a running event loop."""
        if self._scheduler is not None:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=self.timezone)
        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        self._add_job(
            job_id="reconcile_orders",
            name="Order Reconciliation",
            func=self._run_reconciliation,
            trigger=CronTrigger(
                hour=self.settings.sync.reconcile_hour,
                minute=self.settings.sync.reconcile_minute,
                timezone=self.timezone,
            ),
        )
        self._add_job(
            job_id="expire_locations",
            name="Location Expiry",
            func=self._run_location_expiry,
            trigger=IntervalTrigger(seconds=self.settings.locations.expiry_check_interval),
        )

        self._scheduler.start()
        self._refresh_next_runs()
        logger.info(f"Scheduler started with {len(self._job_info)} jobs")

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Scheduler stopped")

    def _add_job(self, job_id: str, name: str, func: Callable, trigger) -> None:
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            name=name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._job_info[job_id] = JobInfo(id=job_id, name=name)

    def _refresh_next_runs(self) -> None:
        for job_id, info in self._job_info.items():
            job = self._scheduler.get_job(job_id) if self._scheduler else None
            if job is not None:
                info.next_run = job.next_run_time

    # ═══════════════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════════════

    async def _run_reconciliation(self) -> Dict[str, Any]:
        with correlation_context():
            results = await self.engine.reconcile_all()
            return {
                "couriers": len(results),
                "incomplete": [r.courier for r in results if not r.complete],
                "pruned": {r.courier: r.pruned_tags for r in results if r.pruned_tags},
            }

    async def _run_location_expiry(self) -> Dict[str, Any]:
        with correlation_context():
            expired = await self.dispatcher.expire_locations()
            return {"expired": expired}

    # ═══════════════════════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        info = self._job_info.get(event.job_id)
        if info is None:
            return
        info.last_run = datetime.now(self.timezone)
        info.last_status = "success"
        info.run_count += 1
        self._refresh_next_runs()
        logger.debug(f"Job {event.job_id} finished", extra={"result": event.retval})

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        info = self._job_info.get(event.job_id)
        if info is None:
            return
        info.last_run = datetime.now(self.timezone)
        info.last_status = "failed"
        info.run_count += 1
        info.error_count += 1
        info.last_error = str(event.exception)
        self._refresh_next_runs()
        logger.error(f"Job {event.job_id} failed: {event.exception}")

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        info = self._job_info.get(event.job_id)
        if info is not None:
            info.last_status = "missed"
        logger.warning(f"Job {event.job_id} missed its run time")

    def get_jobs(self) -> Dict[str, Dict[str, Any]]:
        return {job_id: info.to_dict() for job_id, info in self._job_info.items()}
