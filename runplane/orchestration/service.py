from __future__ import annotations

"""Application-facing orchestration API.

``OrchestrationService`` is what an API layer calls. It never executes steps
itself; it writes state and enqueues work for ``StepWorker``.

Workflow
--------

- ``create_run``: persist the run, record ``run.created``, then materialize
  every plan step (idempotent create + enqueue).
- ``add_step``: append one more step to a live run.
- ``resolve_gate``: decide a manual approval gate; the held step is
  re-enqueued.
- ``retry_step`` / ``republish_step``: operator and external-trigger entry
  points. Both are deduplicated through the inbox when given a key.
- ``cancel_run`` / ``cancel_step``: cooperative cancellation. A worker that
  is mid-handler when its step is cancelled drops its outcome.
- ``get_run`` / ``list_*``: timeline queries.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import RunNotFoundError, RunNotLiveError, StepNotFoundError, StepNotRetryableError
from .gates import GateService
from .runtime import WorkerDeps, WorkerOptions, materialize_step, recompute_run_status
from .schemas.domain import (
    LIVE_RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    TERMINAL_STEP_STATUSES,
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

logger = logging.getLogger(__name__)

RETRYABLE_STEP_STATUSES = frozenset({StepStatus.failed, StepStatus.cancelled})


class OrchestrationService:
    """Create, steer and inspect runs."""

    def __init__(self, *, deps: WorkerDeps, options: Optional[WorkerOptions] = None) -> None:
        self._deps = deps
        self._options = options or WorkerOptions()
        self._gates = GateService(gates=deps.gates, steps=deps.steps, events=deps.events, queue=deps.queue)

    async def create_run(self, plan: RunPlan, *, owner: str, project_id: str = "default") -> Run:
        """
        Persist a run and enqueue its plan steps.

        Args:
            plan: Goal plus the ordered step descriptions.
            owner: The requesting identity.
            project_id: Tenant/project scope.

        Returns:
            The created Run (status ``queued``).
        """
        deps = self._deps
        run = await deps.runs.create(plan, owner=owner, project_id=project_id)
        await deps.events.append(
            run.id,
            EventType.run_created,
            {"goal": plan.goal, "owner": owner, "projectId": project_id, "steps": len(plan.steps)},
        )
        for spec in plan.steps:
            await materialize_step(steps=deps.steps, events=deps.events, queue=deps.queue, run_id=run.id, spec=spec)
        logger.info(f"Run {run.id} created by {owner} with {len(plan.steps)} steps")
        return run

    async def add_step(
        self,
        run_id: str,
        name: str,
        tool: str,
        inputs: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Step:
        """
        Add a step to a live run.

        Calling again with the same key returns the existing step. Without a
        key one is derived from the name and inputs, so repeating the same
        call is also deduplicated. ``StepRepository.create`` does not do this;
        given no key it always inserts a new row.

        Raises:
            RunNotFoundError: No such run.
            RunNotLiveError: The run already finished.
        """
        run = await self._require_run(run_id)
        if run.status not in LIVE_RUN_STATUSES:
            raise RunNotLiveError(run_id, run.status.value)
        spec = StepSpec(name=name, tool=tool, inputs=dict(inputs or {}))
        return await materialize_step(
            steps=self._deps.steps,
            events=self._deps.events,
            queue=self._deps.queue,
            run_id=run_id,
            spec=spec,
            idempotency_key=idempotency_key,
        )

    async def resolve_gate(
        self,
        run_id: str,
        step_id: str,
        gate_type: str,
        status: GateStatus,
        approved_by: Optional[str] = None,
    ) -> Gate:
        """Approve, reject or waive a pending gate. See ``GateService.resolve``."""
        return await self._gates.resolve(
            run_id=run_id, step_id=step_id, gate_type=gate_type, status=status, approved_by=approved_by
        )

    async def retry_step(self, step_id: str, request_key: Optional[str] = None) -> Step:
        """
        Put a failed or cancelled step back to ``pending`` and enqueue it.

        A terminal run is re-opened to ``running`` (``run.reopened``).

        Args:
            step_id: The step to retry.
            request_key: Optional client key; a repeated key is a no-op that
                returns the step as it is.

        Returns:
            The step after the retry.

        Raises:
            StepNotFoundError: No such step.
            StepNotRetryableError: The step is not failed or cancelled.
        """
        deps = self._deps
        step = await self._require_step(step_id)

        inbox_key = f"retry:{step_id}:{request_key}" if request_key else None
        if inbox_key is not None and not await deps.inbox.mark_if_new(inbox_key):
            logger.info(f"Duplicate retry request {request_key} for step {step_id}; ignoring")
            return step

        if step.status not in RETRYABLE_STEP_STATUSES or not await deps.steps.reset(
            step_id, from_statuses=RETRYABLE_STEP_STATUSES
        ):
            if inbox_key is not None:
                await deps.inbox.delete(inbox_key)
            current = await self._require_step(step_id)
            raise StepNotRetryableError(step_id, current.status.value)

        run = await self._require_run(step.run_id)
        if run.status in TERMINAL_RUN_STATUSES:
            if await deps.runs.transition(run.id, from_statuses=TERMINAL_RUN_STATUSES, to_status=RunStatus.running):
                await deps.events.append(
                    run.id, EventType.run_reopened, {"from": run.status.value, "stepId": step_id}
                )

        await deps.events.append(
            step.run_id,
            EventType.step_retry,
            {"stepId": step_id, "previousStatus": step.status.value, "requestKey": request_key},
            step_id=step_id,
        )
        await deps.queue.enqueue(step_id)
        logger.info(f"Step {step_id} retried (was {step.status.value})")
        return await self._require_step(step_id)

    async def republish_step(self, step_id: str, trigger_key: str) -> bool:
        """
        Enqueue a pending step on behalf of an external trigger.

        Each ``trigger_key`` is honoured once.

        Returns:
            True if a job was enqueued.
        """
        deps = self._deps
        step = await self._require_step(step_id)
        inbox_key = f"republish:{trigger_key}"
        if not await deps.inbox.mark_if_new(inbox_key):
            logger.debug(f"Trigger {trigger_key} already seen; not republishing step {step_id}")
            return False
        if step.status != StepStatus.pending:
            return False
        await deps.queue.enqueue(step_id)
        return True

    async def cancel_run(self, run_id: str) -> Run:
        """
        Cancel a live run and every non-terminal step in it.

        Cancelling a terminal run is a no-op.

        Raises:
            RunNotFoundError: No such run.
        """
        deps = self._deps
        run = await self._require_run(run_id)
        moved = await deps.runs.transition(
            run_id,
            from_statuses=LIVE_RUN_STATUSES,
            to_status=RunStatus.cancelled,
            ended_at=datetime.now(timezone.utc),
        )
        if not moved:
            return await self._require_run(run_id)

        cancelled: List[str] = []
        for step in await deps.steps.list_by_run(run_id):
            if step.status in TERMINAL_STEP_STATUSES:
                continue
            if await deps.steps.cancel(step.id):
                cancelled.append(step.id)
                await deps.events.append(
                    run_id, EventType.step_cancelled, {"stepId": step.id, "reason": "run cancelled"}, step_id=step.id
                )
        await deps.events.append(
            run_id, EventType.run_cancelled, {"from": run.status.value, "cancelledSteps": cancelled}
        )
        logger.info(f"Run {run_id} cancelled ({len(cancelled)} steps)")
        return await self._require_run(run_id)

    async def cancel_step(self, step_id: str) -> Step:
        """
        Cancel a pending or running step. A terminal step is returned unchanged.

        Raises:
            StepNotFoundError: No such step.
        """
        deps = self._deps
        step = await self._require_step(step_id)
        if await deps.steps.cancel(step_id):
            await deps.events.append(step.run_id, EventType.step_cancelled, {"stepId": step_id}, step_id=step_id)
            logger.info(f"Step {step_id} cancelled")
            await recompute_run_status(
                runs=deps.runs,
                steps=deps.steps,
                events=deps.events,
                run_id=step.run_id,
                fail_run_on_step_failure=self._options.fail_run_on_step_failure,
            )
        return await self._require_step(step_id)

    async def get_run(self, run_id: str) -> Optional[Run]:
        return await self._deps.runs.get(run_id)

    async def list_runs(
        self, *, owner: Optional[str] = None, project_id: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[Run]:
        return await self._deps.runs.list(owner=owner, project_id=project_id, limit=limit, offset=offset)

    async def list_steps(self, run_id: str) -> List[Step]:
        return await self._deps.steps.list_by_run(run_id)

    async def list_events(self, run_id: str, *, after_seq: int = 0, limit: int = 1000) -> List[Event]:
        return await self._deps.events.list(run_id, after_seq=after_seq, limit=limit)

    async def list_artifacts(self, run_id: str) -> List[Artifact]:
        return await self._deps.artifacts.list_by_run(run_id)

    async def list_gates(self, run_id: str) -> List[Gate]:
        return await self._deps.gates.list_by_run(run_id)

    async def _require_run(self, run_id: str) -> Run:
        run = await self._deps.runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def _require_step(self, step_id: str) -> Step:
        step = await self._deps.steps.get(step_id)
        if step is None:
            raise StepNotFoundError(step_id)
        return step
