from __future__ import annotations

"""Repository interfaces for the run/step store.

The worker, the gate workflow and the application service depend only on
these Protocols. Two implementations exist:

- ``runplane.orchestration.repos.sql``: SQLAlchemy async (Postgres in
  production, SQLite in tests).
- ``runplane.orchestration.repos.memory``: single-process, in-memory.

Concurrency contract
--------------------

Several workers may call these methods at the same time. Correctness relies
on storage-level atomicity only:

- ``StepRepository.create`` is idempotent per ``(run_id, idempotency_key)``.
- ``StepRepository.claim`` and ``RunRepository.transition`` are
  compare-and-set operations that succeed for exactly one caller.
- ``InboxRepository.mark_if_new`` returns ``True`` exactly once per key.
- ``EventRepository.append`` assigns strictly increasing ``seq`` per run.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Protocol

from ..schemas.domain import (
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


class RunRepository(Protocol):
    """Persistence for run records."""

    async def create(self, plan: RunPlan, *, owner: str, project_id: str = "default") -> Run:
        """
        Persist a new run in ``queued`` status.

        Args:
            plan: The declarative plan (goal and initial steps).
            owner: The identity that owns the run.
            project_id: The project the run belongs to.

        Returns:
            The created Run.
        """
        ...

    async def get(self, run_id: str) -> Optional[Run]:
        """
        Retrieve a run by ID.

        Args:
            run_id: The run identifier.

        Returns:
            The Run if found, otherwise None.
        """
        ...

    async def list(
        self,
        *,
        owner: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Run]:
        """List runs, newest first, optionally filtered by owner and project."""
        ...

    async def transition(
        self,
        run_id: str,
        *,
        from_statuses: Iterable[RunStatus],
        to_status: RunStatus,
        ended_at: Optional[datetime] = None,
    ) -> bool:
        """
        Atomically move a run to ``to_status`` if its current status is one of
        ``from_statuses``.

        Args:
            run_id: The run identifier.
            from_statuses: Statuses the transition is allowed from.
            to_status: The new status.
            ended_at: Optional end timestamp to set; terminal transitions set it.

        Returns:
            True if this call performed the transition.
        """
        ...


class StepRepository(Protocol):
    """Persistence for step records."""

    async def create(
        self,
        *,
        run_id: str,
        name: str,
        tool: str,
        inputs: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> Step:
        """
        Create a step, or return the existing one for the same
        ``(run_id, idempotency_key)``.

        Concurrent calls with the same key all return the same row.

        Returns:
            The created or pre-existing Step.
        """
        ...

    async def get(self, step_id: str) -> Optional[Step]: ...

    async def get_by_idempotency_key(self, run_id: str, idempotency_key: str) -> Optional[Step]:
        """
        Find a step by its idempotency key within a run.

        Args:
            run_id: The run identifier.
            idempotency_key: The deterministic step key.

        Returns:
            The Step if found, otherwise None.
        """
        ...

    async def update(self, step_id: str, patch: StepPatch) -> Optional[Step]:
        """
        Merge a partial update into a step.

        Args:
            step_id: The step identifier.
            patch: Fields to set; ``None`` fields are left untouched.

        Returns:
            The updated Step, or None if the step does not exist.
        """
        ...

    async def claim(self, step_id: str) -> bool:
        """
        Atomically move a step from ``pending`` to ``running`` and stamp
        ``started_at``.

        Returns:
            True if this caller won the claim.
        """
        ...

    async def complete(self, step_id: str, *, status: StepStatus, outputs: Dict[str, Any]) -> bool:
        """
        Finish a ``running`` step with a terminal status, its outputs and
        ``ended_at``.

        The write is conditional so that a step cancelled while its handler
        was running keeps its ``cancelled`` status.

        Returns:
            True if the step was still running and has been finished.
        """
        ...

    async def cancel(self, step_id: str) -> bool:
        """
        Move a ``pending`` or ``running`` step to ``cancelled``.

        Returns:
            True if the step was cancelled by this call.
        """
        ...

    async def reset(self, step_id: str, *, from_statuses: Iterable[StepStatus]) -> bool:
        """
        Put a step back to ``pending``, clearing outputs and timestamps, if its
        status is one of ``from_statuses``.

        Returns:
            True if the step was reset.
        """
        ...

    async def list_by_run(self, run_id: str) -> list[Step]:
        """List the steps of a run in creation order."""
        ...

    async def list_pending(self, limit: int) -> list[Step]:
        """List pending steps of queued or running runs, oldest first."""
        ...

    async def list_stale_running(self, *, started_before: datetime, limit: int = 100) -> list[Step]:
        """List steps stuck in ``running`` that started before ``started_before``."""
        ...


class EventRepository(Protocol):
    """Append-only event log, strictly ordered per run."""

    async def append(
        self,
        run_id: str,
        type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        *,
        step_id: Optional[str] = None,
    ) -> Event:
        """
        Append an event with the next sequence number of the run.

        Args:
            run_id: The run the event belongs to.
            type: The event type.
            payload: Structured details.
            step_id: The related step, if any.

        Returns:
            The persisted Event including its ``seq``.
        """
        ...

    async def list(self, run_id: str, *, after_seq: int = 0, limit: int = 1000) -> list[Event]:
        """List events of a run ordered by ``seq``."""
        ...


class ArtifactRepository(Protocol):
    """Immutable artifact records owned by the producing step."""

    async def add(
        self,
        *,
        step_id: str,
        type: str,
        uri: str,
        metadata: Optional[Dict[str, Any]] = None,
        artifact_id: Optional[str] = None,
    ) -> Artifact: ...

    async def list_by_step(self, step_id: str) -> list[Artifact]: ...

    async def list_by_run(self, run_id: str) -> list[Artifact]:
        """
        List artifacts of every step of a run.

        Returns:
            Artifacts with ``step_name`` populated, oldest first.
        """
        ...


class GateRepository(Protocol):
    """Approval and quality gate records."""

    async def create_or_get(self, *, run_id: str, step_id: str, gate_type: str) -> tuple[Gate, bool]:
        """
        Create a pending gate or return the existing one for
        ``(run_id, step_id, gate_type)``.

        Returns:
            ``(gate, created)`` where ``created`` tells whether this call
            inserted the row.
        """
        ...

    async def get(self, *, run_id: str, step_id: str, gate_type: str) -> Optional[Gate]: ...

    async def get_latest(self, *, run_id: str, step_id: str) -> Optional[Gate]: ...

    async def resolve(
        self,
        gate_id: str,
        *,
        status: GateStatus,
        approved_by: Optional[str] = None,
    ) -> Optional[Gate]:
        """
        Move a ``pending`` gate to a decided status.

        ``approved_at`` is stamped when ``approved_by`` is given.

        Returns:
            The updated Gate, or None if the gate was not pending.
        """
        ...

    async def list_by_run(self, run_id: str) -> list[Gate]: ...


class InboxRepository(Protocol):
    """At-most-once markers for message deduplication."""

    async def mark_if_new(self, key: str) -> bool:
        """
        Record ``key`` if it has not been seen.

        Returns:
            True exactly once per key, False for every later call.
        """
        ...

    async def delete(self, key: str) -> None:
        """Remove ``key`` so the guarded action can run again."""
        ...
