from __future__ import annotations

"""Step worker loop.

``StepWorker`` drives steps from ``pending`` to a terminal status.

Execution model
---------------

One ``run_batch`` call claims up to ``batch_size`` jobs from the queue and
processes them one at a time while the wall-clock budget lasts. The loop never
sleeps; when the budget runs out the remaining claimed jobs are released back
to the queue untouched and the result reports ``has_more``.

Per step
--------

1. Re-read the step. A missing, already running or terminal step, or one
   whose run is no longer live, is a stale delivery and is skipped. A step
   whose dependencies are still open is deferred.
2. Check the approval gate before claiming, if the tool needs one. A pending
   gate leaves the step ``pending`` untouched; ``step.waiting`` is recorded
   once, when the gate is opened. The step is re-enqueued on the decision.
3. Claim it (``pending -> running``, compare-and-set) and record
   ``step.start``. The run moves ``queued -> running`` on its first claim.
4. Enforce policy. A denial fails the step with ``policy.denied``; the
   handler is never called. A rejected gate fails it too.
5. Resolve and invoke the handler. No match fails the step with
   ``HandlerNotFoundError``. Artifact content is staged on disk only.
6. Complete the step (compare-and-set from ``running``). Only the winner
   records staged artifacts and creates follow-on steps; a loser discards
   the staged content. Failures (raised or reported) save the error and mark
   the step ``failed``. Both record ``step.finish``.
7. Recompute the run status.

Per-step errors are recorded on the step and in the event log; they never
abort the batch. A store failure while processing one step is logged and
reported in ``errors``; its job stays claimed and is redelivered once the
visibility timeout expires. Failures to claim from the queue propagate.

Recovery
--------

``recover`` resets steps stuck in ``running`` beyond ``stale_step_seconds``
back to ``pending`` and re-enqueues every pending step of a live run, which
covers both crashed workers and queue messages that were lost.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..artifacts import StagedArtifact
from ..errors import HandlerExecutionError, HandlerNotFoundError, PolicyViolation, QueueRedeliveryDuplicate
from ..gates import GateService
from ..handlers import HandlerResult, HandlerStep
from ..queue import QueueJob
from ..schemas.domain import (
    LIVE_RUN_STATUSES,
    EventType,
    Gate,
    GateStatus,
    Run,
    RunStatus,
    Step,
    StepPatch,
    StepSpec,
    StepStatus,
)
from .completion import recompute_run_status
from .materialize import DEPENDS_ON_KEY, materialize_step
from .models import BatchResult, RecoveryReport, StepOutcome, StepReport, WorkerDeps, WorkerOptions

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dependency_names(raw: Any) -> List[str]:
    if not raw:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(n) for n in raw]
    return [str(raw)]


class StepWorker:
    """Process queued steps in bounded batches.

    Args:
        deps: Repositories, queue, registry, policy engine and artifact store.
        options: Worker tunables.
        clock: Monotonic clock in seconds used for the wall-clock budget;
            injectable for tests.
    """

    def __init__(
        self,
        *,
        deps: WorkerDeps,
        options: Optional[WorkerOptions] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._deps = deps
        self._options = options or WorkerOptions()
        self._clock = clock
        self._gates = GateService(gates=deps.gates, steps=deps.steps, events=deps.events, queue=deps.queue)

    async def run_batch(self, batch_size: int = 10, wall_clock_budget_ms: int = 50_000) -> BatchResult:
        """
        Claim and process up to ``batch_size`` jobs within the budget.

        Args:
            batch_size: Maximum jobs claimed from the queue.
            wall_clock_budget_ms: Processing stops once this much time has
                elapsed; the check happens before each step.

        Returns:
            A BatchResult; ``has_more`` is True when the budget ran out with
            claimed work left, or when the batch was full.
        """
        started = self._clock()
        result = BatchResult()
        jobs = await self._deps.queue.claim(batch_size)

        for index, job in enumerate(jobs):
            elapsed_ms = (self._clock() - started) * 1000.0
            if elapsed_ms >= wall_clock_budget_ms:
                remaining = jobs[index:]
                for leftover in remaining:
                    await self._deps.queue.release(leftover)
                result.has_more = True
                logger.info(f"Worker budget exhausted after {result.processed} steps; released {len(remaining)} jobs")
                break

            try:
                report = await self.process_step(job.step_id, first_delivery=job.attempts <= 1)
            except Exception as e:
                # store or queue failure; the job stays claimed and is redelivered after its timeout
                logger.exception(f"Worker failed on step {job.step_id}: {e}")
                result.processed += 1
                result.failed += 1
                result.errors.append(f"{job.step_id}: {e}")
                continue

            await self._settle(job, report)
            result.record(report)

        if len(jobs) >= batch_size:
            result.has_more = True

        logger.info(
            f"Worker batch done: processed={result.processed} succeeded={result.succeeded} "
            f"failed={result.failed} has_more={result.has_more}"
        )
        return result

    async def _settle(self, job: QueueJob, report: StepReport) -> None:
        if report.outcome == StepOutcome.deferred:
            await self._deps.queue.release(job, delay_seconds=self._options.dependency_retry_delay_seconds)
        else:
            await self._deps.queue.ack(job)

    async def process_step(self, step_id: str, *, first_delivery: bool = True) -> StepReport:
        """
        Process a single step delivery.

        Args:
            step_id: The delivered step id.
            first_delivery: False for a job that was delivered before; a
                step that is still deferred then records no new event.

        Returns:
            A StepReport describing what happened.
        """
        deps = self._deps
        step = await deps.steps.get(step_id)
        if step is None:
            logger.warning(f"Delivered step {step_id} does not exist; dropping")
            return StepReport(step_id, StepOutcome.skipped)
        if step.status != StepStatus.pending:
            logger.debug(f"Skipping redelivery: {QueueRedeliveryDuplicate(step_id, step.status.value)}")
            return StepReport(step_id, StepOutcome.skipped)

        run = await deps.runs.get(step.run_id)
        if run is None or run.status not in LIVE_RUN_STATUSES:
            logger.debug(f"Skipping step {step_id}: run {step.run_id} is not live")
            return StepReport(step_id, StepOutcome.skipped)

        depends_on = _dependency_names(step.inputs.get(DEPENDS_ON_KEY))
        unfinished: List[str] = []
        failed_deps: List[str] = []
        if depends_on:
            unfinished, failed_deps = await self._dependency_status(step, depends_on)
        if unfinished and not failed_deps:
            if first_delivery:
                await deps.events.append(
                    run.id,
                    EventType.step_waiting,
                    {"stepId": step.id, "reason": "dependencies", "dependsOn": depends_on},
                    step_id=step.id,
                )
            return StepReport(step_id, StepOutcome.deferred)

        # a step held by a pending gate is never claimed
        gate: Optional[Gate] = None
        if not failed_deps and deps.policy.decide_for_inputs(step.tool, step.inputs).allowed:
            gate_type = deps.policy.approval_gate_for(step.tool, step.inputs)
            if gate_type is not None:
                gate, created = await self._gates.ensure_gate(run_id=run.id, step_id=step.id, gate_type=gate_type)
                if gate.status == GateStatus.pending:
                    await self._mark_run_started(run)
                    if created:
                        await deps.events.append(
                            run.id,
                            EventType.step_waiting,
                            {"stepId": step.id, "reason": "gate", "gateId": gate.id, "gateType": gate_type},
                            step_id=step.id,
                        )
                    return StepReport(step_id, StepOutcome.waiting)

        if not await deps.steps.claim(step_id):
            logger.debug(f"Lost claim on step {step_id}; another worker has it")
            return StepReport(step_id, StepOutcome.skipped)

        await self._mark_run_started(run)
        await deps.events.append(
            run.id,
            EventType.step_start,
            {"stepId": step.id, "name": step.name, "tool": step.tool},
            step_id=step.id,
        )

        if failed_deps:
            report = await self._finish(
                step, StepStatus.failed, {"error": "dependency failed", "dependsOn": failed_deps}
            )
        else:
            report = await self._execute_claimed(run, step, gate)
        if report.outcome in (StepOutcome.succeeded, StepOutcome.failed):
            await recompute_run_status(
                runs=deps.runs,
                steps=deps.steps,
                events=deps.events,
                run_id=run.id,
                fail_run_on_step_failure=self._options.fail_run_on_step_failure,
            )
        return report

    async def _execute_claimed(self, run: Run, step: Step, gate: Optional[Gate]) -> StepReport:
        deps = self._deps

        try:
            deps.policy.enforce(step.tool, step.inputs)
        except PolicyViolation as e:
            payload = e.to_payload()
            await deps.events.append(run.id, EventType.policy_denied, {"stepId": step.id, **payload}, step_id=step.id)
            logger.info(f"Policy denied tool {step.tool} for step {step.id}: {e.reason}")
            return await self._finish(step, StepStatus.failed, {"error": "policy: tool not allowed", **payload})

        if gate is not None and gate.status == GateStatus.rejected:
            return await self._finish(
                step,
                StepStatus.failed,
                {"error": "gate rejected", "gateId": gate.id, "gateType": gate.gate_type, "by": gate.approved_by},
            )

        try:
            handler = deps.registry.resolve(step.tool)
        except HandlerNotFoundError as e:
            logger.error(f"Step {step.id}: {e}")
            return await self._finish(step, StepStatus.failed, {"error": str(e), "tool": step.tool})

        handler_step = HandlerStep.from_inputs(
            id=step.id, run_id=run.id, name=step.name, tool=step.tool, inputs=step.inputs
        )
        result: Optional[HandlerResult] = None
        staged: List[StagedArtifact] = []
        started = time.perf_counter()
        try:
            result = await handler.run(handler_step)
            if result.status == "failed":
                raise HandlerExecutionError(step.tool, result.error or "handler reported failure")
            for spec in result.artifacts:
                staged.append(await deps.artifact_store.stage(run_id=run.id, step_id=step.id, spec=spec))
        except HandlerExecutionError as e:
            outputs = dict(result.outputs) if result is not None else {}
            outputs["error"] = e.message
            return await self._finish(step, StepStatus.failed, outputs, latency=time.perf_counter() - started)
        except Exception as e:
            logger.exception(f"Step {step.id} failed in handler {handler.name}")
            await self._discard(staged)
            error = HandlerExecutionError(step.tool, str(e) or type(e).__name__)
            return await self._finish(
                step, StepStatus.failed, {"error": error.message}, latency=time.perf_counter() - started
            )

        outputs = dict(result.outputs)
        if staged:
            outputs.setdefault("artifacts", [a.id for a in staged])
        return await self._finish(
            step,
            StepStatus.succeeded,
            outputs,
            latency=time.perf_counter() - started,
            staged=staged,
            follow_on=result.follow_on,
        )

    async def _finish(
        self,
        step: Step,
        status: StepStatus,
        outputs: Dict[str, Any],
        *,
        latency: Optional[float] = None,
        staged: Sequence[StagedArtifact] = (),
        follow_on: Sequence[StepSpec] = (),
    ) -> StepReport:
        """
        Finish a running step, then publish what it produced.

        Artifacts are recorded and follow-on steps created only after the
        ``running -> terminal`` compare-and-set has been won.
        """
        if not await self._deps.steps.complete(step.id, status=status, outputs=outputs):
            # cancelled or reclaimed while the handler ran
            await self._discard(staged)
            logger.info(f"Step {step.id} left running state before it finished; outcome {status.value} dropped")
            return StepReport(step.id, StepOutcome.skipped)

        if status == StepStatus.succeeded:
            await self._publish_success(step, outputs, staged, follow_on)

        payload: Dict[str, Any] = {"stepId": step.id, "name": step.name, "tool": step.tool, "status": status.value}
        if status == StepStatus.failed:
            payload["error"] = outputs.get("error")
        await self._deps.events.append(step.run_id, EventType.step_finish, payload, step_id=step.id)

        latency_ms = round(latency * 1000.0, 1) if latency is not None else None
        logger.info(f"step.completed step={step.id} tool={step.tool} status={status.value} latency_ms={latency_ms}")
        if status == StepStatus.succeeded:
            return StepReport(step.id, StepOutcome.succeeded)
        return StepReport(step.id, StepOutcome.failed, error=str(outputs.get("error") or "failed"))

    async def _publish_success(
        self,
        step: Step,
        outputs: Dict[str, Any],
        staged: Sequence[StagedArtifact],
        follow_on: Sequence[StepSpec],
    ) -> None:
        deps = self._deps
        for item in staged:
            artifact = await deps.artifact_store.record(item)
            await deps.events.append(
                step.run_id,
                EventType.artifact_created,
                {"stepId": step.id, "artifactId": artifact.id, "type": artifact.type, "uri": artifact.uri},
                step_id=step.id,
            )

        follow_on_ids: List[str] = []
        for spec in follow_on:
            created = await materialize_step(
                steps=deps.steps, events=deps.events, queue=deps.queue, run_id=step.run_id, spec=spec
            )
            follow_on_ids.append(created.id)
        if follow_on_ids:
            await deps.steps.update(step.id, StepPatch(outputs={**outputs, "followOn": follow_on_ids}))

    async def _discard(self, staged: Sequence[StagedArtifact]) -> None:
        for item in staged:
            await self._deps.artifact_store.discard(item)

    async def _mark_run_started(self, run: Run) -> None:
        if run.status != RunStatus.queued:
            return
        if await self._deps.runs.transition(run.id, from_statuses=[RunStatus.queued], to_status=RunStatus.running):
            await self._deps.events.append(run.id, EventType.run_started, {"owner": run.owner})

    async def _dependency_status(self, step: Step, depends_on: List[str]) -> Tuple[List[str], List[str]]:
        """Split ``depends_on`` into (unfinished, failed) step names."""
        siblings = await self._deps.steps.list_by_run(step.run_id)
        done = {s.name for s in siblings if s.status in (StepStatus.succeeded, StepStatus.cancelled)}
        failed = {s.name for s in siblings if s.status == StepStatus.failed}
        unfinished = [n for n in depends_on if n not in done and n not in failed]
        return unfinished, [n for n in depends_on if n in failed and n not in done]

    async def reclaim_stale(self, *, now: Optional[datetime] = None) -> int:
        """
        Reset steps stuck in ``running`` past ``stale_step_seconds`` and
        re-enqueue them.

        Returns:
            The number of steps reclaimed.
        """
        deps = self._deps
        cutoff = (now or _utc_now()) - timedelta(seconds=self._options.stale_step_seconds)
        reclaimed = 0
        for step in await deps.steps.list_stale_running(started_before=cutoff):
            if not await deps.steps.reset(step.id, from_statuses=[StepStatus.running]):
                continue
            await deps.events.append(
                step.run_id,
                EventType.step_reclaimed,
                {"stepId": step.id, "startedAt": step.started_at.isoformat() if step.started_at else None},
                step_id=step.id,
            )
            if not await deps.queue.contains(step.id):
                await deps.queue.enqueue(step.id)
            reclaimed += 1
            logger.warning(f"Reclaimed stale step {step.id} (started {step.started_at})")
        return reclaimed

    async def sweep_pending(self) -> int:
        """
        Re-enqueue pending steps of live runs that have no job in the queue.

        A step held by a pending gate is left alone; resolving the gate
        enqueues it. Returns the number of steps enqueued.
        """
        deps = self._deps
        requeued = 0
        for step in await deps.steps.list_pending(self._options.sweep_limit):
            if await deps.queue.contains(step.id):
                continue
            gate = await deps.gates.get_latest(run_id=step.run_id, step_id=step.id)
            if gate is not None and gate.status == GateStatus.pending:
                continue
            await deps.queue.enqueue(step.id)
            requeued += 1
        if requeued:
            logger.info(f"Re-enqueued {requeued} pending steps")
        return requeued

    async def recover(self, *, now: Optional[datetime] = None) -> RecoveryReport:
        """Reclaim stale running steps, then re-enqueue every pending step."""
        reclaimed = await self.reclaim_stale(now=now)
        requeued = await self.sweep_pending()
        return RecoveryReport(reclaimed=reclaimed, requeued=requeued)
