from __future__ import annotations

"""In-memory repository implementations.

Used for development and unit tests. All state lives in dictionaries owned by
a single event loop. No method awaits between reading and writing its state,
so each call is atomic with respect to other coroutines, which gives the same
compare-and-set and idempotency guarantees as the SQL implementation within
one process.

Returned models are copies; mutating them never changes stored state.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..schemas.domain import (
    LIVE_RUN_STATUSES,
    Artifact,
    Event,
    EventType,
    Gate,
    GateStatus,
    Run,
    RunPlan,
    RunStatus,
    Step,
    StepPatch,
    StepStatus,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRunRepository:
    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}

    def status_of(self, run_id: str) -> Optional[RunStatus]:
        run = self._runs.get(run_id)
        return run.status if run is not None else None

    async def create(self, plan: RunPlan, *, owner: str, project_id: str = "default") -> Run:
        run = Run(plan=plan, owner=owner, project_id=project_id)
        self._runs[run.id] = run
        return run.model_copy(deep=True)

    async def get(self, run_id: str) -> Optional[Run]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run is not None else None

    async def list(
        self,
        *,
        owner: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Run]:
        runs = [
            r
            for r in self._runs.values()
            if (owner is None or r.owner == owner) and (project_id is None or r.project_id == project_id)
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[offset : offset + limit]]

    async def transition(
        self,
        run_id: str,
        *,
        from_statuses: Iterable[RunStatus],
        to_status: RunStatus,
        ended_at: Optional[datetime] = None,
    ) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.status not in set(from_statuses):
            return False
        run.status = to_status
        run.ended_at = ended_at
        return True


class InMemoryStepRepository:
    def __init__(self, runs: InMemoryRunRepository) -> None:
        self._runs = runs
        self._steps: Dict[str, Step] = {}
        self._by_key: Dict[Tuple[str, str], str] = {}

    def peek(self, step_id: str) -> Optional[Step]:
        """Return the stored step without copying. Callers must not mutate it."""
        return self._steps.get(step_id)

    async def create(
        self,
        *,
        run_id: str,
        name: str,
        tool: str,
        inputs: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> Step:
        if idempotency_key is not None:
            existing_id = self._by_key.get((run_id, idempotency_key))
            if existing_id is not None:
                return self._steps[existing_id].model_copy(deep=True)

        step = Step(run_id=run_id, name=name, tool=tool, inputs=dict(inputs), idempotency_key=idempotency_key)
        self._steps[step.id] = step
        if idempotency_key is not None:
            self._by_key[(run_id, idempotency_key)] = step.id
        return step.model_copy(deep=True)

    async def get(self, step_id: str) -> Optional[Step]:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step is not None else None

    async def get_by_idempotency_key(self, run_id: str, idempotency_key: str) -> Optional[Step]:
        step_id = self._by_key.get((run_id, idempotency_key))
        return await self.get(step_id) if step_id is not None else None

    async def update(self, step_id: str, patch: StepPatch) -> Optional[Step]:
        step = self._steps.get(step_id)
        if step is None:
            return None
        for name, value in patch.model_dump(exclude_none=True).items():
            setattr(step, name, value)
        return step.model_copy(deep=True)

    async def claim(self, step_id: str) -> bool:
        step = self._steps.get(step_id)
        if step is None or step.status != StepStatus.pending:
            return False
        step.status = StepStatus.running
        step.started_at = _utc_now()
        step.ended_at = None
        return True

    async def complete(self, step_id: str, *, status: StepStatus, outputs: Dict[str, Any]) -> bool:
        step = self._steps.get(step_id)
        if step is None or step.status != StepStatus.running:
            return False
        step.status = status
        step.outputs = dict(outputs)
        step.ended_at = _utc_now()
        return True

    async def cancel(self, step_id: str) -> bool:
        step = self._steps.get(step_id)
        if step is None or step.status not in (StepStatus.pending, StepStatus.running):
            return False
        step.status = StepStatus.cancelled
        step.ended_at = _utc_now()
        return True

    async def reset(self, step_id: str, *, from_statuses: Iterable[StepStatus]) -> bool:
        step = self._steps.get(step_id)
        if step is None or step.status not in set(from_statuses):
            return False
        step.status = StepStatus.pending
        step.outputs = None
        step.started_at = None
        step.ended_at = None
        return True

    async def list_by_run(self, run_id: str) -> List[Step]:
        # dict preserves insertion order, which is creation order
        return [s.model_copy(deep=True) for s in self._steps.values() if s.run_id == run_id]

    async def list_pending(self, limit: int) -> List[Step]:
        pending: List[Step] = []
        for step in self._steps.values():
            if step.status != StepStatus.pending:
                continue
            if self._runs.status_of(step.run_id) not in LIVE_RUN_STATUSES:
                continue
            pending.append(step.model_copy(deep=True))
            if len(pending) >= limit:
                break
        return pending

    async def list_stale_running(self, *, started_before: datetime, limit: int = 100) -> List[Step]:
        stale = [
            s.model_copy(deep=True)
            for s in self._steps.values()
            if s.status == StepStatus.running and s.started_at is not None and s.started_at < started_before
        ]
        return stale[:limit]


class InMemoryEventRepository:
    def __init__(self) -> None:
        self._events: Dict[str, List[Event]] = {}

    async def append(
        self,
        run_id: str,
        type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        *,
        step_id: Optional[str] = None,
    ) -> Event:
        timeline = self._events.setdefault(run_id, [])
        event = Event(run_id=run_id, step_id=step_id, seq=len(timeline) + 1, type=type, payload=dict(payload or {}))
        timeline.append(event)
        return event.model_copy(deep=True)

    async def list(self, run_id: str, *, after_seq: int = 0, limit: int = 1000) -> List[Event]:
        timeline = self._events.get(run_id, [])
        return [e.model_copy(deep=True) for e in timeline if e.seq > after_seq][:limit]


class InMemoryArtifactRepository:
    def __init__(self, steps: InMemoryStepRepository) -> None:
        self._steps = steps
        self._artifacts: List[Artifact] = []

    async def add(
        self,
        *,
        step_id: str,
        type: str,
        uri: str,
        metadata: Optional[Dict[str, Any]] = None,
        artifact_id: Optional[str] = None,
    ) -> Artifact:
        artifact = Artifact(step_id=step_id, type=type, uri=uri, metadata=dict(metadata or {}))
        if artifact_id is not None:
            artifact.id = artifact_id
        self._artifacts.append(artifact)
        return artifact.model_copy(deep=True)

    async def list_by_step(self, step_id: str) -> List[Artifact]:
        return [a.model_copy(deep=True) for a in self._artifacts if a.step_id == step_id]

    async def list_by_run(self, run_id: str) -> List[Artifact]:
        out: List[Artifact] = []
        for artifact in self._artifacts:
            step = self._steps.peek(artifact.step_id)
            if step is None or step.run_id != run_id:
                continue
            out.append(artifact.model_copy(update={"step_name": step.name}, deep=True))
        return out


class InMemoryGateRepository:
    def __init__(self) -> None:
        self._gates: Dict[Tuple[str, str, str], Gate] = {}

    async def create_or_get(self, *, run_id: str, step_id: str, gate_type: str) -> Tuple[Gate, bool]:
        key = (run_id, step_id, gate_type)
        existing = self._gates.get(key)
        if existing is not None:
            return existing.model_copy(deep=True), False
        gate = Gate(run_id=run_id, step_id=step_id, gate_type=gate_type)
        self._gates[key] = gate
        return gate.model_copy(deep=True), True

    async def get(self, *, run_id: str, step_id: str, gate_type: str) -> Optional[Gate]:
        gate = self._gates.get((run_id, step_id, gate_type))
        return gate.model_copy(deep=True) if gate is not None else None

    async def get_latest(self, *, run_id: str, step_id: str) -> Optional[Gate]:
        matching = [g for g in self._gates.values() if g.run_id == run_id and g.step_id == step_id]
        return matching[-1].model_copy(deep=True) if matching else None

    async def resolve(
        self,
        gate_id: str,
        *,
        status: GateStatus,
        approved_by: Optional[str] = None,
    ) -> Optional[Gate]:
        for gate in self._gates.values():
            if gate.id != gate_id:
                continue
            if gate.status != GateStatus.pending:
                return None
            gate.status = status
            gate.approved_by = approved_by
            if approved_by is not None:
                gate.approved_at = _utc_now()
            return gate.model_copy(deep=True)
        return None

    async def list_by_run(self, run_id: str) -> List[Gate]:
        return [g.model_copy(deep=True) for g in self._gates.values() if g.run_id == run_id]


class InMemoryInboxRepository:
    def __init__(self) -> None:
        self._keys: Dict[str, datetime] = {}

    async def mark_if_new(self, key: str) -> bool:
        if key in self._keys:
            return False
        self._keys[key] = _utc_now()
        return True

    async def delete(self, key: str) -> None:
        self._keys.pop(key, None)


@dataclass(frozen=True)
class InMemoryStoreBundle:
    """All in-memory repositories sharing one process-local state."""

    runs: InMemoryRunRepository
    steps: InMemoryStepRepository
    events: InMemoryEventRepository
    artifacts: InMemoryArtifactRepository
    gates: InMemoryGateRepository
    inbox: InMemoryInboxRepository


def build_memory_repos() -> InMemoryStoreBundle:
    """Build an ``InMemoryStoreBundle`` whose step and artifact repositories
    can see the runs and steps they join against."""
    runs = InMemoryRunRepository()
    steps = InMemoryStepRepository(runs)
    return InMemoryStoreBundle(
        runs=runs,
        steps=steps,
        events=InMemoryEventRepository(),
        artifacts=InMemoryArtifactRepository(steps),
        gates=InMemoryGateRepository(),
        inbox=InMemoryInboxRepository(),
    )
