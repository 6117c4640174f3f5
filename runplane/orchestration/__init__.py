"""Run/step orchestration engine.

Design overview
---------------

A *run* is a goal plus a plan of *steps*. Each step names a tool and carries
JSON inputs. Steps are persisted, then delivered to workers through an
at-least-once queue; correctness under duplicate delivery and concurrent
workers comes from the store, not from in-process locks:

- Step creation is idempotent on ``(run_id, idempotency_key)``.
- A worker claims a step with a ``pending -> running`` compare-and-set and
  finishes it with a ``running -> terminal`` compare-and-set.
- Every state change is appended to a per-run event log with a strictly
  increasing ``seq``.

Before a handler runs, the step's policy (``_policy.tools_allowed``) is
evaluated and, for tools that need it, a manual approval gate is checked.
Handlers are looked up in a first-match-wins registry. Successful handlers may
return artifacts (stored through ``ArtifactStore``) and follow-on steps.

Typical usage
-------------

Most applications should go through ``runplane.app.open_application``:

1. ``OrchestrationService.create_run`` to persist and enqueue a plan.
2. ``StepWorker.run_batch`` (from a scheduler or a loop) to make progress.
3. ``OrchestrationService.resolve_gate`` when a step waits for approval.
"""

from .errors import (
    ArtifactStorageError,
    GateNotFoundError,
    GateStateError,
    HandlerExecutionError,
    HandlerNotFoundError,
    PolicyViolation,
    QueueRedeliveryDuplicate,
    RunNotFoundError,
    RunNotLiveError,
    RunplaneError,
    StepNotFoundError,
    StepNotRetryableError,
    StoreConflict,
)
from .runtime import BatchResult, StepWorker, WorkerDeps, WorkerOptions
from .schemas.domain import (
    Artifact,
    Event,
    EventType,
    Gate,
    GateStatus,
    Run,
    RunPlan,
    RunStatus,
    Step,
    StepSpec,
    StepStatus,
)
from .service import OrchestrationService

__all__ = [
    "OrchestrationService",
    "StepWorker",
    "WorkerDeps",
    "WorkerOptions",
    "BatchResult",
    "Artifact",
    "Event",
    "EventType",
    "Gate",
    "GateStatus",
    "Run",
    "RunPlan",
    "RunStatus",
    "Step",
    "StepSpec",
    "StepStatus",
    "ArtifactStorageError",
    "GateNotFoundError",
    "GateStateError",
    "HandlerExecutionError",
    "HandlerNotFoundError",
    "PolicyViolation",
    "QueueRedeliveryDuplicate",
    "RunNotFoundError",
    "RunNotLiveError",
    "RunplaneError",
    "StepNotFoundError",
    "StepNotRetryableError",
    "StoreConflict",
]
