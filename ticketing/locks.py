"""Single-flight locks for periodic jobs.

``with_lock`` runs a job only if nobody else holds its name; a held lock
means the invocation is skipped, never queued. ``InProcessJobLock`` covers
one process. ``DatabaseJobLock`` keeps a leased row per job in
``job_leases`` so several instances sharing a database also run each job at
most once at a time; a lease that outlives its ttl can be taken over.
"""

import abc
import logging
import time
import uuid
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError

from .helpers import utcnow
from .models import JobLease

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JobLock(abc.ABC):
    @abc.abstractmethod
    async def try_acquire(self, name: str, ttl: Optional[float] = None) -> bool:
        """Take ``name`` if free; never waits."""

    @abc.abstractmethod
    async def release(self, name: str) -> None:
        ...


class InProcessJobLock(JobLock):
    def __init__(self) -> None:
        # name -> monotonic deadline, None when the holder set no ttl
        self._running: Dict[str, Optional[float]] = {}

    def is_running(self, name: str) -> bool:
        if name not in self._running:
            return False
        deadline = self._running[name]
        return deadline is None or deadline > time.monotonic()

    async def try_acquire(self, name: str, ttl: Optional[float] = None) -> bool:
        if self.is_running(name):
            return False
        self._running[name] = None if ttl is None else time.monotonic() + ttl
        return True

    async def release(self, name: str) -> None:
        self._running.pop(name, None)


class DatabaseJobLock(JobLock):
    def __init__(self, session_maker, holder: Optional[str] = None,
                 default_ttl: float = 900) -> None:
        self.session_maker = session_maker
        self.holder = holder or uuid.uuid4().hex
        self.default_ttl = default_ttl

    async def try_acquire(self, name: str, ttl: Optional[float] = None) -> bool:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl or self.default_ttl)
        async with self.session_maker() as session:
            try:
                await session.execute(
                    delete(JobLease).where(JobLease.name == name, JobLease.expires_at < now)
                )
                await session.execute(
                    insert(JobLease).values(name=name, holder=self.holder, expires_at=expires_at)
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def release(self, name: str) -> None:
        async with self.session_maker() as session:
            await session.execute(
                delete(JobLease).where(JobLease.name == name, JobLease.holder == self.holder)
            )
            await session.commit()


async def with_lock(lock: JobLock, name: str, fn: Callable[[], Awaitable[T]],
                    ttl: Optional[float] = None) -> Optional[T]:
    """Run ``fn`` under ``name``; returns None without running it when held."""
    if not await lock.try_acquire(name, ttl):
        logger.warning("Job %s is already running, skipping...", name)
        return None
    try:
        return await fn()
    finally:
        await lock.release(name)
