from __future__ import annotations

"""In-memory step queue with visibility timeouts.

Suitable for a single process (development, tests). Jobs are lost when the
process exits; ``StepWorker.recover`` re-enqueues pending steps from the store
to cover that gap.
"""

import itertools
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from .base import QueueJob, StepQueue


@dataclass
class _Entry:
    step_id: str
    available_at: float
    order: int
    claimed_until: Optional[float] = None
    attempts: int = 0


class InMemoryStepQueue(StepQueue):
    """Process-local implementation of ``StepQueue``.

    Args:
        visibility_timeout_seconds: How long a claimed job stays invisible.
        clock: Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        *,
        visibility_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._visibility = visibility_timeout_seconds
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._order = itertools.count()

    async def enqueue(self, step_id: str, *, delay_seconds: float = 0.0) -> str:
        job_id = str(uuid4())
        self._entries[job_id] = _Entry(
            step_id=step_id,
            available_at=self._clock() + max(delay_seconds, 0.0),
            order=next(self._order),
        )
        return job_id

    async def claim(self, limit: int) -> List[QueueJob]:
        now = self._clock()
        visible = [
            (job_id, entry)
            for job_id, entry in self._entries.items()
            if entry.available_at <= now and (entry.claimed_until is None or entry.claimed_until <= now)
        ]
        visible.sort(key=lambda item: (item[1].available_at, item[1].order))

        jobs: List[QueueJob] = []
        for job_id, entry in visible[:limit]:
            entry.claimed_until = now + self._visibility
            entry.attempts += 1
            jobs.append(QueueJob(job_id=job_id, step_id=entry.step_id, attempts=entry.attempts))
        return jobs

    async def ack(self, job: QueueJob) -> None:
        self._entries.pop(job.job_id, None)

    async def release(self, job: QueueJob, *, delay_seconds: float = 0.0) -> None:
        entry = self._entries.get(job.job_id)
        if entry is None:
            return
        entry.claimed_until = None
        entry.available_at = self._clock() + max(delay_seconds, 0.0)

    async def depth(self) -> int:
        return len(self._entries)

    async def contains(self, step_id: str) -> bool:
        return any(e.step_id == step_id for e in self._entries.values())
