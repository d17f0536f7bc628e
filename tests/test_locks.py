"""Tests for job single-flight locks and the periodic runner."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from ticketing.helpers import utcnow
from ticketing.locks import DatabaseJobLock, InProcessJobLock, with_lock
from ticketing.models import JobLease
from ticketing.sweeper import make_job_lock, run_periodic


class TestWithLock:
    async def test_runs_and_releases(self):
        lock = InProcessJobLock()

        async def job():
            assert lock.is_running("sweep")
            return "done"

        assert await with_lock(lock, "sweep", job) == "done"
        assert not lock.is_running("sweep")

    async def test_skips_while_held(self, caplog):
        lock = InProcessJobLock()
        calls = []

        async def job():
            calls.append(1)

        assert await lock.try_acquire("sweep")
        assert await with_lock(lock, "sweep", job) is None
        assert calls == []
        assert "Job sweep is already running, skipping..." in caplog.text

    async def test_overlapping_invocations_run_once(self):
        lock = InProcessJobLock()
        started = asyncio.Event()
        finish = asyncio.Event()
        calls = []

        async def slow_job():
            calls.append(1)
            started.set()
            await finish.wait()

        first = asyncio.create_task(with_lock(lock, "sweep", slow_job))
        await started.wait()
        assert await with_lock(lock, "sweep", slow_job) is None
        finish.set()
        await first
        assert calls == [1]

    async def test_released_when_job_fails(self):
        lock = InProcessJobLock()

        async def broken():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await with_lock(lock, "sweep", broken)
        assert await lock.try_acquire("sweep")


class TestInProcessJobLock:
    async def test_stale_entry_can_be_taken_over(self):
        lock = InProcessJobLock()
        assert await lock.try_acquire("sweep", ttl=0.01)
        await asyncio.sleep(0.05)
        assert await lock.try_acquire("sweep")

    async def test_names_are_independent(self):
        lock = InProcessJobLock()
        assert await lock.try_acquire("a")
        assert await lock.try_acquire("b")
        assert not await lock.try_acquire("a")


class TestDatabaseJobLock:
    async def test_exclusive_across_holders(self, session_maker):
        first = DatabaseJobLock(session_maker, holder="instance-1")
        second = DatabaseJobLock(session_maker, holder="instance-2")

        assert await first.try_acquire("expire_transactions")
        assert not await second.try_acquire("expire_transactions")
        assert await second.try_acquire("expire_user_points")

        await first.release("expire_transactions")
        assert await second.try_acquire("expire_transactions")

    async def test_release_only_drops_own_lease(self, session_maker):
        first = DatabaseJobLock(session_maker, holder="instance-1")
        second = DatabaseJobLock(session_maker, holder="instance-2")

        assert await first.try_acquire("sweep")
        await second.release("sweep")
        assert not await second.try_acquire("sweep")

    async def test_expired_lease_is_taken_over(self, session_maker):
        first = DatabaseJobLock(session_maker, holder="crashed")
        second = DatabaseJobLock(session_maker, holder="survivor")
        assert await first.try_acquire("sweep", ttl=60)

        async with session_maker() as session:
            await session.execute(
                update(JobLease).where(JobLease.name == "sweep")
                .values(expires_at=utcnow() - timedelta(seconds=1))
            )
            await session.commit()

        assert await second.try_acquire("sweep")
        async with session_maker() as session:
            lease = await session.get(JobLease, "sweep")
            assert lease.holder == "survivor"

    async def test_with_lock_uses_database_lease(self, session_maker):
        lock = DatabaseJobLock(session_maker)

        async def job():
            other = DatabaseJobLock(session_maker)
            return await other.try_acquire("sweep")

        assert await with_lock(lock, "sweep", job) is False


class TestRunPeriodic:
    async def test_keeps_running_after_errors(self):
        lock = InProcessJobLock()
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first run fails")

        task = asyncio.create_task(run_periodic("flaky", 0.01, flaky, lock))
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(calls) >= 2
        assert not lock.is_running("flaky")

    async def test_make_job_lock_backends(self, session_maker):
        assert isinstance(make_job_lock("memory"), InProcessJobLock)
        db_lock = make_job_lock("db", session_maker)
        assert isinstance(db_lock, DatabaseJobLock)
        assert db_lock.session_maker is session_maker
