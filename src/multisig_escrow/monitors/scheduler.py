"""Background job scheduler.

Four interval jobs on an APScheduler AsyncIOScheduler, started and stopped
by the FastAPI lifespan:

    deposit_monitor     every DEPOSIT_CHECK_INTERVAL_SECONDS   (30s)
    deadline_monitor    every DEADLINE_CHECK_INTERVAL_SECONDS  (5m)
    reconciliation      every RECONCILIATION_INTERVAL_SECONDS  (10m)
    session_purge       every SESSION_PURGE_INTERVAL_SECONDS   (1h)

Every job runs as a single instance and missed runs coalesce, so a slow
tick is never overlapped by the next one.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from multisig_escrow.infrastructure.database.repositories import SessionRepository
from multisig_escrow.logging_config import get_logger
from multisig_escrow.monitors.deadline_monitor import DeadlineMonitor
from multisig_escrow.monitors.deposit_monitor import DepositMonitor
from multisig_escrow.services.reconciliation_service import ReconciliationService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from multisig_escrow.services.runtime import EscrowRuntime

logger = get_logger(__name__)


class EscrowScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        runtime: EscrowRuntime,
    ) -> None:
        self._session_factory = session_factory
        self._runtime = runtime
        self._settings = runtime.settings
        self.deposit_monitor = DepositMonitor(session_factory, runtime)
        self.deadline_monitor = DeadlineMonitor(session_factory, runtime)
        self.scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
            timezone="UTC",
        )

    def setup_jobs(self) -> None:
        settings = self._settings
        jobs = [
            ("deposit_monitor", self.deposit_monitor.run_once, settings.deposit_check_interval_seconds),
            ("deadline_monitor", self.deadline_monitor.run_once, settings.deadline_check_interval_seconds),
            ("reconciliation", self.run_reconciliation, settings.reconciliation_interval_seconds),
            ("session_purge", self.purge_sessions, settings.session_purge_interval_seconds),
        ]
        for job_id, func, seconds in jobs:
            # replace_existing does not dedupe jobs queued before start()
            if self.scheduler.get_job(job_id) is not None:
                continue
            self.scheduler.add_job(
                func,
                trigger=IntervalTrigger(seconds=seconds),
                id=job_id,
                name=job_id,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            logger.info("scheduler.job_added", job_id=job_id, interval_seconds=seconds)

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        logger.info("scheduler.started", jobs=len(self.scheduler.get_jobs()))

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("scheduler.stopped")

    async def run_reconciliation(self) -> None:
        async with self._session_factory() as session:
            await ReconciliationService(session, self._runtime).run_pending()

    async def purge_sessions(self) -> int:
        async with self._session_factory() as session:
            removed = await SessionRepository(session).purge_expired()
            await session.commit()
        if removed:
            logger.info("scheduler.sessions_purged", removed=removed)
        return removed
