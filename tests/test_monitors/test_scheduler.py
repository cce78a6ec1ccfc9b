"""Tests for the background job scheduler."""

from __future__ import annotations

from datetime import timedelta

import pytest

from multisig_escrow.domain.enums import SessionPurpose
from multisig_escrow.infrastructure.database.repositories import SessionRepository
from multisig_escrow.monitors.scheduler import EscrowScheduler


@pytest.fixture
def escrow_scheduler(session_factory, runtime) -> EscrowScheduler:
    return EscrowScheduler(session_factory, runtime)


class TestJobs:
    def test_setup_registers_all_jobs(self, escrow_scheduler) -> None:
        escrow_scheduler.setup_jobs()
        jobs = {job.id: job for job in escrow_scheduler.scheduler.get_jobs()}

        assert set(jobs) == {"deposit_monitor", "deadline_monitor", "reconciliation", "session_purge"}
        assert jobs["deposit_monitor"].trigger.interval == timedelta(seconds=30)
        assert jobs["deadline_monitor"].trigger.interval == timedelta(minutes=5)

    def test_setup_is_idempotent(self, escrow_scheduler) -> None:
        escrow_scheduler.setup_jobs()
        escrow_scheduler.setup_jobs()
        assert len(escrow_scheduler.scheduler.get_jobs()) == 4

    def test_shutdown_before_start_is_harmless(self, escrow_scheduler) -> None:
        escrow_scheduler.shutdown()
        assert not escrow_scheduler.scheduler.running


class TestSessionPurge:
    @pytest.mark.asyncio
    async def test_purges_only_expired_sessions(self, escrow_scheduler, session_factory) -> None:
        async with session_factory() as session:
            repo = SessionRepository(session)
            await repo.put("stale", SessionPurpose.KEY_VALIDATION, {}, ttl=timedelta(seconds=-1))
            await repo.put("live", SessionPurpose.KEY_VALIDATION, {}, ttl=timedelta(hours=1))
            await session.commit()

        removed = await escrow_scheduler.purge_sessions()

        assert removed == 1
        async with session_factory() as session:
            repo = SessionRepository(session)
            assert await repo.get("live", SessionPurpose.KEY_VALIDATION) == {}
            assert await repo.get("stale", SessionPurpose.KEY_VALIDATION) is None


class TestReconciliationJob:
    @pytest.mark.asyncio
    async def test_runs_with_nothing_pending(self, escrow_scheduler) -> None:
        await escrow_scheduler.run_reconciliation()
