"""Periodic sweeps that drive time-based transitions.

Each sweep selects qualifying rows, then handles every row in its own
session and database transaction. A failing row is logged and left as it
was; the next tick selects it again. Rows that changed state between the
selection and the action come back as ConflictError and are skipped.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import delete, select

from . import config, ledger
from .database import async_session_maker, atomic
from .errors import ConflictError, ErrorCode
from .helpers import utcnow
from .locks import DatabaseJobLock, InProcessJobLock, JobLock, with_lock
from .models import Transaction, TransactionStatus, UserPoint
from .transactions import CONFIRMATION_WINDOW, auto_cancel_transaction, expire_transaction

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    selected: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0


def _state_moved_on(exc: Exception) -> bool:
    return isinstance(exc, ConflictError) and exc.code == ErrorCode.INVALID_STATUS


async def _sweep_transactions(name: str, stmt, action, session_maker,
                              now: datetime) -> SweepReport:
    async with session_maker() as session:
        ids = list((await session.execute(stmt)).scalars().all())

    report = SweepReport(selected=len(ids))
    logger.info("[%s] Found %d transactions", name, len(ids))

    for transaction_id in ids:
        async with session_maker() as session:
            try:
                await action(session, transaction_id, now)
            except Exception as exc:
                if _state_moved_on(exc):
                    report.skipped += 1
                    logger.info("[%s] Skipped transaction %s: %s", name, transaction_id, exc.message)
                else:
                    report.failed += 1
                    logger.exception("[%s] Failed on transaction %s", name, transaction_id)
            else:
                report.processed += 1

    logger.info("[%s] Completed: %s", name, report)
    return report


async def expire_transactions(session_maker=None, now: Optional[datetime] = None) -> SweepReport:
    """Expire WAITING_PAYMENT transactions past their payment deadline."""
    now = now or utcnow()
    stmt = select(Transaction.id).where(
        Transaction.status == TransactionStatus.WAITING_PAYMENT,
        Transaction.expires_at < now,
    )
    return await _sweep_transactions(
        "expire_transactions", stmt, expire_transaction, session_maker or async_session_maker, now
    )


async def auto_cancel_transactions(session_maker=None,
                                   now: Optional[datetime] = None) -> SweepReport:
    """Cancel WAITING_CONFIRMATION transactions older than the confirmation window."""
    now = now or utcnow()
    stmt = select(Transaction.id).where(
        Transaction.status == TransactionStatus.WAITING_CONFIRMATION,
        Transaction.created_at < now - CONFIRMATION_WINDOW,
    )
    return await _sweep_transactions(
        "auto_cancel_transactions", stmt, auto_cancel_transaction,
        session_maker or async_session_maker, now,
    )


async def expire_user_points(session_maker=None, now: Optional[datetime] = None) -> SweepReport:
    """Drop expired point grants and recompute each affected user's balance.

    The balance is rebuilt from the remaining grants rather than decremented,
    so drift from earlier partial failures heals on the next run.
    """
    session_maker = session_maker or async_session_maker
    now = now or utcnow()

    async with session_maker() as session:
        rows = (
            await session.execute(
                select(UserPoint.id, UserPoint.user_id).where(UserPoint.expires_at < now)
            )
        ).all()

    by_user = defaultdict(list)
    for point_id, user_id in rows:
        by_user[user_id].append(point_id)

    report = SweepReport(selected=len(by_user))
    logger.info("[expire_user_points] Found %d expired grants for %d users", len(rows), len(by_user))

    for user_id, point_ids in by_user.items():
        async with session_maker() as session:
            try:
                async with atomic(session):
                    await session.execute(delete(UserPoint).where(UserPoint.id.in_(point_ids)))
                    await ledger.resync_points(session, user_id, now)
            except Exception:
                report.failed += 1
                logger.exception("[expire_user_points] Failed for user %s", user_id)
            else:
                report.processed += 1
                logger.info("[expire_user_points] Expired %d grants for user %s",
                            len(point_ids), user_id)

    logger.info("[expire_user_points] Completed: %s", report)
    return report


def make_job_lock(backend: str = config.JOB_LOCK_BACKEND, session_maker=None) -> JobLock:
    if backend == "db":
        return DatabaseJobLock(session_maker or async_session_maker,
                               default_ttl=config.JOB_LOCK_TTL)
    return InProcessJobLock()


async def run_periodic(name: str, interval: float, job: Callable[[], Awaitable[object]],
                       lock: JobLock, ttl: Optional[float] = None) -> None:
    """Run ``job`` every ``interval`` seconds until cancelled."""
    logger.info("Scheduling %s every %ss", name, interval)
    while True:
        try:
            await with_lock(lock, name, job, ttl)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error in %s job", name)
        await asyncio.sleep(interval)


_tasks: List[asyncio.Task] = []


def start_background_jobs(lock: Optional[JobLock] = None) -> List[asyncio.Task]:
    logger.info("Initializing background jobs...")
    lock = lock or make_job_lock()
    schedule = [
        ("expire_transactions", config.EXPIRY_SWEEP_INTERVAL, expire_transactions),
        ("auto_cancel_transactions", config.AUTO_CANCEL_SWEEP_INTERVAL, auto_cancel_transactions),
        ("expire_user_points", config.POINT_EXPIRY_SWEEP_INTERVAL, expire_user_points),
    ]
    for name, interval, job in schedule:
        _tasks.append(asyncio.create_task(run_periodic(name, interval, job, lock)))
    logger.info("Background jobs initialized")
    return list(_tasks)


async def stop_background_jobs() -> None:
    logger.info("Stopping background jobs...")
    for task in _tasks:
        task.cancel()
    await asyncio.gather(*_tasks, return_exceptions=True)
    _tasks.clear()
    logger.info("All background jobs stopped")
