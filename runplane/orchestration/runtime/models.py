from __future__ import annotations

"""Runtime dependency bundle and worker result types.

The worker is dependency-injected:

- ``WorkerDeps`` collects the repositories, the queue, the handler registry,
  the policy engine and the artifact store.
- ``WorkerOptions`` holds the tunables that come from configuration.
- ``BatchResult`` / ``StepReport`` describe what one invocation did.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..artifacts import ArtifactStore
from ..handlers import HandlerRegistry
from ..policy import StepPolicyEngine
from ..queue import StepQueue
from ..repos import (
    ArtifactRepository,
    EventRepository,
    GateRepository,
    InboxRepository,
    RunRepository,
    StepRepository,
)


@dataclass(frozen=True)
class WorkerDeps:
    """Dependency bundle for ``StepWorker`` and ``OrchestrationService``.

    Typically constructed once by ``runplane.app.open_application`` and shared
    by every worker invocation in the process.
    """

    runs: RunRepository
    steps: StepRepository
    events: EventRepository
    artifacts: ArtifactRepository
    gates: GateRepository
    inbox: InboxRepository
    queue: StepQueue
    registry: HandlerRegistry
    policy: StepPolicyEngine
    artifact_store: ArtifactStore

    @classmethod
    def from_store(
        cls,
        store: Any,
        *,
        queue: StepQueue,
        registry: HandlerRegistry,
        policy: StepPolicyEngine,
        artifact_store: ArtifactStore,
    ) -> "WorkerDeps":
        """Build from a ``SqlStoreBundle`` or ``InMemoryStoreBundle``."""
        return cls(
            runs=store.runs,
            steps=store.steps,
            events=store.events,
            artifacts=store.artifacts,
            gates=store.gates,
            inbox=store.inbox,
            queue=queue,
            registry=registry,
            policy=policy,
            artifact_store=artifact_store,
        )


@dataclass(frozen=True)
class WorkerOptions:
    """Worker tunables.

    Attributes:
        stale_step_seconds: A step ``running`` for longer is reclaimed.
        dependency_retry_delay_seconds: Re-delivery delay for steps whose
            ``_dependsOn`` steps are not finished yet.
        fail_run_on_step_failure: Whether a run whose steps are all terminal
            with at least one failure becomes ``failed`` (else it stays
            ``running``).
        sweep_limit: Max pending steps re-enqueued by one ``recover`` call.
    """

    stale_step_seconds: float = 300.0
    dependency_retry_delay_seconds: float = 2.0
    fail_run_on_step_failure: bool = True
    sweep_limit: int = 500


class StepOutcome(str, Enum):
    succeeded = "succeeded"
    failed = "failed"
    waiting = "waiting"  # held by a pending approval gate
    deferred = "deferred"  # dependencies not finished; redelivered later
    skipped = "skipped"  # stale or duplicate delivery


@dataclass(frozen=True)
class StepReport:
    step_id: str
    outcome: StepOutcome
    error: Optional[str] = None


@dataclass
class BatchResult:
    """Summary of one ``run_batch`` invocation."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    has_more: bool = False

    def record(self, report: StepReport) -> None:
        self.processed += 1
        if report.outcome == StepOutcome.succeeded:
            self.succeeded += 1
        elif report.outcome == StepOutcome.failed:
            self.failed += 1
            self.errors.append(f"{report.step_id}: {report.error or 'failed'}")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": list(self.errors),
            "hasMore": self.has_more,
        }


@dataclass(frozen=True)
class RecoveryReport:
    reclaimed: int = 0
    requeued: int = 0
