from __future__ import annotations

"""Durable step queue backed by the ``rp_step_queue`` table.

Claiming selects visible rows and pushes their ``claimed_until`` forward in
one transaction. On Postgres the select uses ``FOR UPDATE SKIP LOCKED`` so
concurrent workers never block on, or double-claim, the same rows. SQLite
ignores the locking clause, which is acceptable for at-least-once delivery.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List
from uuid import uuid4

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..repos.models import StepQueueRow
from .base import QueueJob, StepQueue


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SqlStepQueue(StepQueue):
    """SQL implementation of ``StepQueue``."""

    session_factory: async_sessionmaker[AsyncSession]
    visibility_timeout_seconds: float = 30.0

    async def enqueue(self, step_id: str, *, delay_seconds: float = 0.0) -> str:
        """
        Insert a queue row for ``step_id``.

        Args:
            step_id: The step to process.
            delay_seconds: Initial invisibility period.

        Returns:
            The new job id.
        """
        now = _utc_now()
        job_id = str(uuid4())
        async with self.session_factory() as s:
            s.add(
                StepQueueRow(
                    id=job_id,
                    step_id=step_id,
                    available_at=now + timedelta(seconds=max(delay_seconds, 0.0)),
                    claimed_until=None,
                    attempts=0,
                    created_at=now,
                )
            )
            await s.commit()
        return job_id

    async def claim(self, limit: int) -> List[QueueJob]:
        """
        Claim up to ``limit`` visible jobs.

        Args:
            limit: Maximum number of jobs.

        Returns:
            Claimed jobs ordered by availability.
        """
        now = _utc_now()
        async with self.session_factory() as s:
            stmt = (
                select(StepQueueRow)
                .where(
                    StepQueueRow.available_at <= now,
                    or_(StepQueueRow.claimed_until.is_(None), StepQueueRow.claimed_until <= now),
                )
                .order_by(StepQueueRow.available_at.asc(), StepQueueRow.created_at.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            rows = (await s.execute(stmt)).scalars().all()
            jobs: List[QueueJob] = []
            for row in rows:
                row.claimed_until = now + timedelta(seconds=self.visibility_timeout_seconds)
                row.attempts = (row.attempts or 0) + 1
                jobs.append(QueueJob(job_id=row.id, step_id=row.step_id, attempts=row.attempts))
            await s.commit()
            return jobs

    async def ack(self, job: QueueJob) -> None:
        async with self.session_factory() as s:
            await s.execute(delete(StepQueueRow).where(StepQueueRow.id == job.job_id))
            await s.commit()

    async def release(self, job: QueueJob, *, delay_seconds: float = 0.0) -> None:
        async with self.session_factory() as s:
            row = await s.get(StepQueueRow, job.job_id)
            if row is None:
                return
            row.claimed_until = None
            row.available_at = _utc_now() + timedelta(seconds=max(delay_seconds, 0.0))
            await s.commit()

    async def depth(self) -> int:
        async with self.session_factory() as s:
            return int(await s.scalar(select(func.count()).select_from(StepQueueRow)) or 0)

    async def contains(self, step_id: str) -> bool:
        async with self.session_factory() as s:
            stmt = select(StepQueueRow.id).where(StepQueueRow.step_id == step_id).limit(1)
            return (await s.scalar(stmt)) is not None
