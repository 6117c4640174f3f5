from __future__ import annotations

"""Turning ``StepSpec`` entries into persisted, enqueued steps.

Shared by run creation, ad-hoc step creation and handler follow-on steps so
that all three derive idempotency keys the same way.
"""

import hashlib
import json
from typing import Any, Dict, Optional

from ..policy.models import POLICY_INPUT_KEY, StepPolicy
from ..queue import StepQueue
from ..repos import EventRepository, StepRepository
from ..schemas.domain import EventType, Step, StepSpec, StepStatus

DEPENDS_ON_KEY = "_dependsOn"


def inputs_with_policy(spec: StepSpec) -> Dict[str, Any]:
    """Merge the spec's policy fields into its inputs under ``_policy``."""
    inputs = dict(spec.inputs)
    policy = StepPolicy(
        tools_allowed=spec.tools_allowed,
        env_allowed=spec.env_allowed,
        secrets_scope=spec.secrets_scope,
    )
    if not policy.is_empty():
        inputs[POLICY_INPUT_KEY] = policy.model_dump(exclude_none=True)
    return inputs


def idempotency_key_for(run_id: str, name: str, inputs: Dict[str, Any]) -> str:
    """Deterministic step key: ``<run_id>:<name>:<sha256(inputs)[:12]>``."""
    canonical = json.dumps(inputs, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:12]
    return f"{run_id}:{name}:{digest}"


async def materialize_step(
    *,
    steps: StepRepository,
    events: EventRepository,
    queue: StepQueue,
    run_id: str,
    spec: StepSpec,
    idempotency_key: Optional[str] = None,
) -> Step:
    """
    Create (or find) the step for ``spec`` and enqueue it.

    Args:
        steps: Step repository.
        events: Event repository.
        queue: The step queue.
        run_id: The owning run.
        spec: The step description.
        idempotency_key: Overrides the derived key.

    Returns:
        The created or pre-existing step.
    """
    inputs = inputs_with_policy(spec)
    key = idempotency_key or idempotency_key_for(run_id, spec.name, inputs)
    step = await steps.create(run_id=run_id, name=spec.name, tool=spec.tool, inputs=inputs, idempotency_key=key)
    if step.status == StepStatus.pending:
        await queue.enqueue(step.id)
        await events.append(
            run_id,
            EventType.step_enqueued,
            {"stepId": step.id, "name": step.name, "tool": step.tool, "idempotencyKey": key},
            step_id=step.id,
        )
    return step
