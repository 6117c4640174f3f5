from __future__ import annotations

"""Step queue protocol.

The queue carries "step ready" notifications with at-least-once delivery.
A claimed job stays invisible for a visibility timeout; if the consumer does
not ``ack`` it in time it becomes visible again and is redelivered. Consumers
must therefore treat every job as possibly stale and re-check the step's
status before acting on it.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

from ..schemas.domain import StepReadyJob


@dataclass(frozen=True)
class QueueJob:
    """A claimed queue job.

    Attributes:
        job_id: Queue-level identifier used for ``ack`` / ``release``.
        step_id: The step that is ready to be processed.
        attempts: How many times this job has been delivered, including now.
    """

    job_id: str
    step_id: str
    attempts: int = 1

    @property
    def payload(self) -> Dict[str, Any]:
        """The wire payload, ``{"stepId": ...}``."""
        return StepReadyJob(step_id=self.step_id).model_dump(by_alias=True)


class StepQueue(Protocol):
    """Durable, at-least-once queue of step ids."""

    async def enqueue(self, step_id: str, *, delay_seconds: float = 0.0) -> str:
        """
        Publish a step-ready job.

        Args:
            step_id: The step to process.
            delay_seconds: Keep the job invisible for this long.

        Returns:
            The queue job id.
        """
        ...

    async def claim(self, limit: int) -> List[QueueJob]:
        """
        Claim up to ``limit`` visible jobs, approximately oldest first.

        Returns:
            The claimed jobs; each is invisible until acked, released, or its
            visibility timeout expires.
        """
        ...

    async def ack(self, job: QueueJob) -> None:
        """Remove a processed job permanently."""
        ...

    async def release(self, job: QueueJob, *, delay_seconds: float = 0.0) -> None:
        """Return a claimed job to the queue, visible after ``delay_seconds``."""
        ...

    async def depth(self) -> int:
        """Number of jobs not yet acked, claimed or not."""
        ...

    async def contains(self, step_id: str) -> bool:
        """Whether a job for ``step_id`` is queued or claimed."""
        ...
