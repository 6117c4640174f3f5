from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from runplane.orchestration.repos import build_memory_repos
from runplane.orchestration.schemas.domain import (
    EventType,
    GateStatus,
    RunPlan,
    RunStatus,
    StepStatus,
)


async def _run(store):
    return await store.runs.create(RunPlan(goal="g"), owner="alice")


@pytest.mark.asyncio
async def test_concurrent_create_with_same_key_yields_one_step() -> None:
    store = build_memory_repos()
    run = await _run(store)

    results = await asyncio.gather(
        *[
            store.steps.create(run_id=run.id, name="build", tool="echo", inputs={"x": 1}, idempotency_key="k1")
            for _ in range(20)
        ]
    )

    assert len({s.id for s in results}) == 1
    assert len(await store.steps.list_by_run(run.id)) == 1


@pytest.mark.asyncio
async def test_same_key_in_other_run_is_a_different_step() -> None:
    store = build_memory_repos()
    run_a = await _run(store)
    run_b = await _run(store)

    a = await store.steps.create(run_id=run_a.id, name="s", tool="echo", inputs={}, idempotency_key="k")
    b = await store.steps.create(run_id=run_b.id, name="s", tool="echo", inputs={}, idempotency_key="k")

    assert a.id != b.id


@pytest.mark.asyncio
async def test_steps_without_key_are_never_deduplicated() -> None:
    store = build_memory_repos()
    run = await _run(store)

    a = await store.steps.create(run_id=run.id, name="s", tool="echo", inputs={})
    b = await store.steps.create(run_id=run.id, name="s", tool="echo", inputs={})

    assert a.id != b.id


@pytest.mark.asyncio
async def test_claim_is_compare_and_set() -> None:
    store = build_memory_repos()
    run = await _run(store)
    step = await store.steps.create(run_id=run.id, name="s", tool="echo", inputs={})

    wins = await asyncio.gather(*[store.steps.claim(step.id) for _ in range(5)])

    assert wins.count(True) == 1
    current = await store.steps.get(step.id)
    assert current.status == StepStatus.running
    assert current.started_at is not None


@pytest.mark.asyncio
async def test_complete_only_from_running() -> None:
    store = build_memory_repos()
    run = await _run(store)
    step = await store.steps.create(run_id=run.id, name="s", tool="echo", inputs={})

    assert await store.steps.complete(step.id, status=StepStatus.succeeded, outputs={}) is False
    await store.steps.claim(step.id)
    assert await store.steps.complete(step.id, status=StepStatus.succeeded, outputs={"ok": True}) is True
    assert await store.steps.complete(step.id, status=StepStatus.failed, outputs={}) is False

    current = await store.steps.get(step.id)
    assert current.status == StepStatus.succeeded
    assert current.outputs == {"ok": True}
    assert current.ended_at is not None


@pytest.mark.asyncio
async def test_cancelled_step_cannot_be_completed() -> None:
    store = build_memory_repos()
    run = await _run(store)
    step = await store.steps.create(run_id=run.id, name="s", tool="echo", inputs={})
    await store.steps.claim(step.id)

    assert await store.steps.cancel(step.id) is True
    assert await store.steps.complete(step.id, status=StepStatus.succeeded, outputs={}) is False
    assert await store.steps.cancel(step.id) is False
    assert (await store.steps.get(step.id)).status == StepStatus.cancelled


@pytest.mark.asyncio
async def test_returned_models_are_copies() -> None:
    store = build_memory_repos()
    run = await _run(store)
    step = await store.steps.create(run_id=run.id, name="s", tool="echo", inputs={"a": 1})

    step.inputs["a"] = 2
    step.status = StepStatus.failed

    stored = await store.steps.get(step.id)
    assert stored.inputs == {"a": 1}
    assert stored.status == StepStatus.pending


@pytest.mark.asyncio
async def test_list_pending_skips_steps_of_finished_runs() -> None:
    store = build_memory_repos()
    live = await _run(store)
    done = await _run(store)
    keep = await store.steps.create(run_id=live.id, name="s", tool="echo", inputs={})
    await store.steps.create(run_id=done.id, name="s", tool="echo", inputs={})
    await store.runs.transition(done.id, from_statuses=[RunStatus.queued], to_status=RunStatus.cancelled)

    pending = await store.steps.list_pending(10)

    assert [s.id for s in pending] == [keep.id]


@pytest.mark.asyncio
async def test_list_stale_running_uses_started_at() -> None:
    store = build_memory_repos()
    run = await _run(store)
    step = await store.steps.create(run_id=run.id, name="s", tool="echo", inputs={})
    await store.steps.claim(step.id)

    now = datetime.now(timezone.utc)
    assert await store.steps.list_stale_running(started_before=now - timedelta(minutes=5)) == []
    stale = await store.steps.list_stale_running(started_before=now + timedelta(seconds=1))
    assert [s.id for s in stale] == [step.id]


@pytest.mark.asyncio
async def test_run_transition_is_compare_and_set() -> None:
    store = build_memory_repos()
    run = await _run(store)

    assert await store.runs.transition(run.id, from_statuses=[RunStatus.queued], to_status=RunStatus.running)
    assert not await store.runs.transition(run.id, from_statuses=[RunStatus.queued], to_status=RunStatus.running)
    assert (await store.runs.get(run.id)).status == RunStatus.running


@pytest.mark.asyncio
async def test_event_seq_strictly_increases_per_run() -> None:
    store = build_memory_repos()
    run_a = await _run(store)
    run_b = await _run(store)

    await asyncio.gather(*[store.events.append(run_a.id, EventType.step_start, {"i": i}) for i in range(10)])
    await store.events.append(run_b.id, EventType.run_created)

    seqs = [e.seq for e in await store.events.list(run_a.id)]
    assert seqs == list(range(1, 11))
    assert [e.seq for e in await store.events.list(run_b.id)] == [1]
    assert [e.seq for e in await store.events.list(run_a.id, after_seq=8)] == [9, 10]


@pytest.mark.asyncio
async def test_inbox_marks_once_and_delete_rearms() -> None:
    store = build_memory_repos()

    assert await store.inbox.mark_if_new("evt-1") is True
    assert await store.inbox.mark_if_new("evt-1") is False
    await store.inbox.delete("evt-1")
    assert await store.inbox.mark_if_new("evt-1") is True
    await store.inbox.delete("never-seen")


@pytest.mark.asyncio
async def test_inbox_concurrent_marks_admit_exactly_one() -> None:
    store = build_memory_repos()

    results = await asyncio.gather(*[store.inbox.mark_if_new("dup") for _ in range(10)])

    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_gate_create_or_get_and_single_resolution() -> None:
    store = build_memory_repos()

    gate, created = await store.gates.create_or_get(run_id="r", step_id="s", gate_type="manual:db")
    again, created_again = await store.gates.create_or_get(run_id="r", step_id="s", gate_type="manual:db")
    assert created is True and created_again is False
    assert again.id == gate.id
    assert gate.status == GateStatus.pending

    resolved = await store.gates.resolve(gate.id, status=GateStatus.approved, approved_by="bob")
    assert resolved.status == GateStatus.approved
    assert resolved.approved_at is not None
    assert await store.gates.resolve(gate.id, status=GateStatus.rejected, approved_by="eve") is None

    latest = await store.gates.get_latest(run_id="r", step_id="s")
    assert latest.status == GateStatus.approved


@pytest.mark.asyncio
async def test_artifacts_listed_by_run_carry_step_name() -> None:
    store = build_memory_repos()
    run = await _run(store)
    step = await store.steps.create(run_id=run.id, name="codegen", tool="echo", inputs={})
    await store.artifacts.add(step_id=step.id, type="text/plain", uri="runs/x/y", metadata={"a": 1})

    by_run = await store.artifacts.list_by_run(run.id)
    assert len(by_run) == 1
    assert by_run[0].step_name == "codegen"
    assert (await store.artifacts.list_by_step(step.id))[0].metadata == {"a": 1}
