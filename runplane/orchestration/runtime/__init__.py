"""Worker runtime.

- ``StepWorker``: bounded, budgeted batch processing of queued steps, plus
  stale-step recovery.
- ``recompute_run_status``: idempotent run status aggregation.
- ``materialize_step``: create-or-get a step from a ``StepSpec`` and enqueue it.
"""

from .completion import recompute_run_status
from .materialize import DEPENDS_ON_KEY, idempotency_key_for, inputs_with_policy, materialize_step
from .models import (
    BatchResult,
    RecoveryReport,
    StepOutcome,
    StepReport,
    WorkerDeps,
    WorkerOptions,
)
from .worker import StepWorker

__all__ = [
    "BatchResult",
    "DEPENDS_ON_KEY",
    "RecoveryReport",
    "StepOutcome",
    "StepReport",
    "StepWorker",
    "WorkerDeps",
    "WorkerOptions",
    "idempotency_key_for",
    "inputs_with_policy",
    "materialize_step",
    "recompute_run_status",
]
