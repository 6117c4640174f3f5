from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from runplane.orchestration.handlers import ArtifactSpec, HandlerResult, HandlerStep
from runplane.orchestration.repos import build_memory_repos
from runplane.orchestration.runtime import StepOutcome, StepWorker, WorkerOptions
from runplane.orchestration.schemas.domain import (
    EventType,
    RunPlan,
    RunStatus,
    StepSpec,
    StepStatus,
)
from runplane.orchestration.service import OrchestrationService


class _CodegenStub:
    name = "codegen"

    def __init__(self) -> None:
        self.calls: List[HandlerStep] = []

    def match(self, tool: str) -> bool:
        return tool == "codegen"

    async def run(self, step: HandlerStep) -> HandlerResult:
        self.calls.append(step)
        return HandlerResult.ok(
            {"summary": f"generated for {step.inputs.get('text')}"},
            artifacts=[ArtifactSpec(type="text/x-diff", name="patch.diff", content="+print('hi')\n")],
        )


class _RecordingHandler:
    def __init__(self, tool: str, *, fail: Optional[str] = None, raise_exc: Optional[Exception] = None) -> None:
        self.name = tool
        self._tool = tool
        self._fail = fail
        self._raise = raise_exc
        self.calls: List[str] = []

    def match(self, tool: str) -> bool:
        return tool == self._tool

    async def run(self, step: HandlerStep) -> HandlerResult:
        self.calls.append(step.id)
        if self._raise is not None:
            raise self._raise
        if self._fail is not None:
            return HandlerResult.failed(self._fail, {"partial": True})
        return HandlerResult.ok({"ran": step.name})


class _ClockAdvancingHandler:
    """Each call takes 20ms of fake wall-clock time."""

    name = "slow"

    def __init__(self, clock) -> None:
        self._clock = clock
        self.calls = 0

    def match(self, tool: str) -> bool:
        return tool == "slow"

    async def run(self, step: HandlerStep) -> HandlerResult:
        self.calls += 1
        self._clock.advance(0.020)
        return HandlerResult.ok()


def _wire(make_deps, *handlers, clock=None, options: Optional[WorkerOptions] = None, **overrides):
    deps = make_deps(handlers=list(handlers), **overrides)
    kwargs: Dict[str, Any] = {"deps": deps, "options": options}
    if clock is not None:
        kwargs["clock"] = clock
    return deps, StepWorker(**kwargs), OrchestrationService(deps=deps, options=options)


async def _event_types(deps, run_id: str) -> List[str]:
    return [e.type.value for e in await deps.events.list(run_id)]


@pytest.mark.asyncio
async def test_codegen_step_succeeds_and_stores_artifact(make_deps) -> None:
    codegen = _CodegenStub()
    deps, worker, service = _wire(make_deps, codegen)

    run = await service.create_run(RunPlan(goal="test"), owner="alice")
    step = await service.add_step(run.id, "s1", "codegen", {"text": "hi"})
    result = await worker.run_batch(batch_size=10, wall_clock_budget_ms=50_000)

    assert result.to_payload() == {"processed": 1, "succeeded": 1, "failed": 0, "errors": [], "hasMore": False}
    done = await deps.steps.get(step.id)
    assert done.status == StepStatus.succeeded
    assert done.outputs["summary"] == "generated for hi"

    artifacts = await service.list_artifacts(run.id)
    assert len(artifacts) == 1
    assert artifacts[0].step_name == "s1"
    assert done.outputs["artifacts"] == [artifacts[0].id]
    assert await deps.artifact_store.read(artifacts[0]) == b"+print('hi')\n"

    assert (await service.get_run(run.id)).status == RunStatus.succeeded
    assert await _event_types(deps, run.id) == [
        "run.created",
        "step.enqueued",
        "run.started",
        "step.start",
        "artifact.created",
        "step.finish",
        "run.succeeded",
    ]


@pytest.mark.asyncio
async def test_policy_denial_fails_step_without_calling_handler(make_deps) -> None:
    shell = _RecordingHandler("shell")
    deps, worker, service = _wire(make_deps, shell)

    run = await service.create_run(
        RunPlan(goal="g", steps=[StepSpec(name="danger", tool="shell", inputs={"cmd": "ls"}, tools_allowed=["echo"])]),
        owner="alice",
    )
    result = await worker.run_batch()

    assert shell.calls == []
    assert result.failed == 1
    [step] = await service.list_steps(run.id)
    assert step.status == StepStatus.failed
    assert step.outputs == {
        "error": "policy: tool not allowed",
        "tool": "shell",
        "reason": "tool_not_allowed",
        "toolsAllowed": ["echo"],
    }
    events = await service.list_events(run.id)
    denied = [e for e in events if e.type == EventType.policy_denied]
    assert len(denied) == 1 and denied[0].payload["toolsAllowed"] == ["echo"]
    assert (await service.get_run(run.id)).status == RunStatus.failed


@pytest.mark.asyncio
async def test_allowed_tool_runs_with_policy_stripped(make_deps) -> None:
    codegen = _CodegenStub()
    deps, worker, service = _wire(make_deps, codegen)

    await service.create_run(
        RunPlan(goal="g", steps=[StepSpec(name="gen", tool="codegen", inputs={"text": "x"}, tools_allowed=["codegen"])]),
        owner="alice",
    )
    result = await worker.run_batch()

    assert result.succeeded == 1
    assert codegen.calls[0].inputs == {"text": "x"}
    assert codegen.calls[0].policy.tools_allowed == ["codegen"]


@pytest.mark.asyncio
async def test_unknown_tool_fails_with_handler_not_found(make_deps) -> None:
    deps, worker, service = _wire(make_deps)

    run = await service.create_run(RunPlan(goal="g", steps=[StepSpec(name="x", tool="nope")]), owner="alice")
    result = await worker.run_batch()

    [step] = await service.list_steps(run.id)
    assert step.status == StepStatus.failed
    assert step.outputs["error"] == "no handler for tool: nope"
    assert result.errors == [f"{step.id}: no handler for tool: nope"]


@pytest.mark.asyncio
async def test_handler_failures_do_not_stop_the_batch(make_deps) -> None:
    boom = _RecordingHandler("boom", raise_exc=RuntimeError("kaput"))
    soft = _RecordingHandler("soft", fail="lint errors")
    deps, worker, service = _wire(make_deps, boom, soft)

    run = await service.create_run(
        RunPlan(
            goal="g",
            steps=[
                StepSpec(name="a", tool="boom"),
                StepSpec(name="b", tool="soft"),
                StepSpec(name="c", tool="echo", inputs={"v": 1}),
            ],
        ),
        owner="alice",
    )
    result = await worker.run_batch()

    assert (result.processed, result.succeeded, result.failed) == (3, 1, 2)
    by_name = {s.name: s for s in await service.list_steps(run.id)}
    assert by_name["a"].outputs == {"error": "kaput"}
    assert by_name["b"].outputs == {"partial": True, "error": "lint errors"}
    assert by_name["c"].status == StepStatus.succeeded
    assert (await service.get_run(run.id)).status == RunStatus.failed


@pytest.mark.asyncio
async def test_failed_step_leaves_run_running_when_failure_status_disabled(make_deps) -> None:
    soft = _RecordingHandler("soft", fail="no")
    deps, worker, service = _wire(make_deps, soft, options=WorkerOptions(fail_run_on_step_failure=False))

    run = await service.create_run(RunPlan(goal="g", steps=[StepSpec(name="b", tool="soft")]), owner="alice")
    await worker.run_batch()

    assert (await service.get_run(run.id)).status == RunStatus.running


@pytest.mark.asyncio
async def test_budget_exhaustion_leaves_remaining_steps_pending(make_deps, fake_clock) -> None:
    slow = _ClockAdvancingHandler(fake_clock)
    deps, worker, service = _wire(make_deps, slow, clock=fake_clock)

    run = await service.create_run(
        RunPlan(goal="g", steps=[StepSpec(name=f"s{i}", tool="slow") for i in range(10)]), owner="alice"
    )
    result = await worker.run_batch(batch_size=20, wall_clock_budget_ms=50)

    assert result.processed == 3
    assert result.succeeded == 3
    assert result.has_more is True
    statuses = [s.status for s in await service.list_steps(run.id)]
    assert statuses.count(StepStatus.succeeded) == 3
    assert statuses.count(StepStatus.pending) == 7
    assert await deps.queue.depth() == 7

    follow_up = await worker.run_batch(batch_size=20, wall_clock_budget_ms=50_000)
    assert follow_up.processed == 7
    assert follow_up.has_more is False
    assert (await service.get_run(run.id)).status == RunStatus.succeeded


@pytest.mark.asyncio
async def test_full_batch_reports_has_more(make_deps) -> None:
    deps, worker, service = _wire(make_deps)
    await service.create_run(
        RunPlan(goal="g", steps=[StepSpec(name=f"s{i}", tool="echo") for i in range(3)]), owner="alice"
    )

    first = await worker.run_batch(batch_size=2)
    second = await worker.run_batch(batch_size=2)

    assert (first.processed, first.has_more) == (2, True)
    assert (second.processed, second.has_more) == (1, False)


@pytest.mark.asyncio
async def test_duplicate_delivery_runs_handler_once(make_deps) -> None:
    codegen = _CodegenStub()
    deps, worker, service = _wire(make_deps, codegen)

    run = await service.create_run(RunPlan(goal="g"), owner="alice")
    step = await service.add_step(run.id, "s1", "codegen", {"text": "hi"})
    await deps.queue.enqueue(step.id)
    await deps.queue.enqueue(step.id)

    result = await worker.run_batch()

    assert len(codegen.calls) == 1
    assert result.processed == 3
    assert result.succeeded == 1
    assert await deps.queue.depth() == 0


@pytest.mark.asyncio
async def test_steps_of_cancelled_runs_are_skipped(make_deps) -> None:
    codegen = _CodegenStub()
    deps, worker, service = _wire(make_deps, codegen)

    run = await service.create_run(RunPlan(goal="g", steps=[StepSpec(name="s", tool="codegen")]), owner="alice")
    await service.cancel_run(run.id)
    await worker.run_batch()

    assert codegen.calls == []
    [step] = await service.list_steps(run.id)
    assert step.status == StepStatus.cancelled


@pytest.mark.asyncio
async def test_process_step_reports_missing_step_as_skipped(make_deps) -> None:
    deps, worker, service = _wire(make_deps)

    report = await worker.process_step("does-not-exist")

    assert report.outcome == StepOutcome.skipped


@pytest.mark.asyncio
async def test_follow_on_steps_are_materialized_once(make_deps) -> None:
    class _Planner:
        name = "plan"

        def match(self, tool: str) -> bool:
            return tool == "plan"

        async def run(self, step: HandlerStep) -> HandlerResult:
            return HandlerResult.ok(follow_on=[StepSpec(name="child", tool="echo", inputs={"n": 1})])

    deps, worker, service = _wire(make_deps, _Planner())
    run = await service.create_run(RunPlan(goal="g", steps=[StepSpec(name="p", tool="plan")]), owner="alice")

    await worker.run_batch()
    second = await worker.run_batch()

    steps = {s.name: s for s in await service.list_steps(run.id)}
    assert set(steps) == {"p", "child"}
    assert steps["p"].outputs["followOn"] == [steps["child"].id]
    assert steps["child"].status == StepStatus.succeeded
    assert second.succeeded == 1
    assert (await service.get_run(run.id)).status == RunStatus.succeeded


def _stored_files(deps) -> List[str]:
    root = deps.artifact_store.root
    if not root.exists():
        return []
    return [p.name for p in root.rglob("*") if p.is_file()]


@pytest.mark.asyncio
async def test_step_cancelled_mid_handler_publishes_nothing(make_deps) -> None:
    class _CancelledWhileRunning:
        name = "codegen"

        def __init__(self) -> None:
            self.service: Optional[OrchestrationService] = None

        def match(self, tool: str) -> bool:
            return tool == "codegen"

        async def run(self, step: HandlerStep) -> HandlerResult:
            await self.service.cancel_step(step.id)
            return HandlerResult.ok(
                {"summary": "late"},
                artifacts=[ArtifactSpec(type="text/x-diff", name="patch.diff", content="+x\n")],
                follow_on=[StepSpec(name="child", tool="echo")],
            )

    handler = _CancelledWhileRunning()
    deps, worker, service = _wire(make_deps, handler)
    handler.service = service
    run = await service.create_run(RunPlan(goal="g", steps=[StepSpec(name="s1", tool="codegen")]), owner="alice")

    result = await worker.run_batch()

    [step] = await service.list_steps(run.id)
    assert step.status == StepStatus.cancelled
    assert (result.succeeded, result.failed) == (0, 0)
    assert await service.list_artifacts(run.id) == []
    assert _stored_files(deps) == []
    types = await _event_types(deps, run.id)
    assert "artifact.created" not in types and "step.finish" not in types


@pytest.mark.asyncio
async def test_unstorable_artifact_fails_step_and_removes_earlier_content(make_deps) -> None:
    class _TwoArtifacts:
        name = "codegen"

        def match(self, tool: str) -> bool:
            return tool == "codegen"

        async def run(self, step: HandlerStep) -> HandlerResult:
            return HandlerResult.ok(
                artifacts=[
                    ArtifactSpec(type="text/plain", name="ok.txt", content="fine"),
                    ArtifactSpec(type="text/plain", name="../escape.txt", content="nope"),
                ],
            )

    deps, worker, service = _wire(make_deps, _TwoArtifacts())
    run = await service.create_run(RunPlan(goal="g", steps=[StepSpec(name="s1", tool="codegen")]), owner="alice")

    result = await worker.run_batch()

    [step] = await service.list_steps(run.id)
    assert result.failed == 1
    assert step.status == StepStatus.failed
    assert "artifact name" in step.outputs["error"]
    assert await service.list_artifacts(run.id) == []
    assert _stored_files(deps) == []


class _FlakyStore:
    """Step repository wrapper whose ``get`` fails for one step id."""

    def __init__(self, inner, bad_id: str) -> None:
        self._inner = inner
        self._bad = bad_id

    def __getattr__(self, item):
        return getattr(self._inner, item)

    async def get(self, step_id: str):
        if step_id == self._bad:
            raise ConnectionError("store unavailable")
        return await self._inner.get(step_id)


@pytest.mark.asyncio
async def test_store_error_on_one_step_is_reported_and_job_kept(make_deps, fake_clock) -> None:
    from dataclasses import replace

    from runplane.orchestration.queue import InMemoryStepQueue

    queue = InMemoryStepQueue(visibility_timeout_seconds=30, clock=fake_clock)
    deps = make_deps(queue=queue, store=build_memory_repos())
    service = OrchestrationService(deps=deps)
    run = await service.create_run(
        RunPlan(goal="g", steps=[StepSpec(name="a", tool="echo"), StepSpec(name="b", tool="echo")]), owner="alice"
    )
    bad, good = await service.list_steps(run.id)
    worker = StepWorker(deps=replace(deps, steps=_FlakyStore(deps.steps, bad.id)))

    result = await worker.run_batch()

    assert (result.processed, result.succeeded, result.failed) == (2, 1, 1)
    assert result.errors == [f"{bad.id}: store unavailable"]
    assert (await deps.steps.get(good.id)).status == StepStatus.succeeded
    assert await queue.claim(10) == []
    fake_clock.advance(31)
    assert [j.step_id for j in await queue.claim(10)] == [bad.id]
