"""At-least-once step queue.

- ``StepQueue``: the protocol consumed by ``StepWorker``.
- ``InMemoryStepQueue``: single-process queue with visibility timeouts.
- ``SqlStepQueue``: durable queue on the ``rp_step_queue`` table.
"""

from .base import QueueJob, StepQueue
from .memory import InMemoryStepQueue
from .sql import SqlStepQueue

__all__ = ["QueueJob", "StepQueue", "InMemoryStepQueue", "SqlStepQueue"]
