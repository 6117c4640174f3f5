from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import Field

from .base import BaseSchema


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class RunStatus(str, Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


class StepStatus(str, Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.succeeded, RunStatus.failed, RunStatus.cancelled})
LIVE_RUN_STATUSES = frozenset({RunStatus.queued, RunStatus.running})
TERMINAL_STEP_STATUSES = frozenset({StepStatus.succeeded, StepStatus.failed, StepStatus.cancelled})


class GateStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    waived = "waived"


class EventType(str, Enum):
    run_created = "run.created"
    run_started = "run.started"
    run_succeeded = "run.succeeded"
    run_failed = "run.failed"
    run_cancelled = "run.cancelled"
    run_reopened = "run.reopened"
    step_enqueued = "step.enqueued"
    step_start = "step.start"
    step_finish = "step.finish"
    step_waiting = "step.waiting"
    step_reclaimed = "step.reclaimed"
    step_retry = "step.retry"
    step_cancelled = "step.cancelled"
    policy_denied = "policy.denied"
    gate_created = "gate.created"
    gate_resolved = "gate.resolved"
    artifact_created = "artifact.created"


class StepSpec(BaseSchema):
    """One step of a plan as submitted by the API layer or a handler."""

    name: str = Field(min_length=1)
    tool: str = Field(min_length=1)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    tools_allowed: Optional[List[str]] = None
    env_allowed: Optional[List[str]] = None
    secrets_scope: Optional[List[str]] = None


class RunPlan(BaseSchema):
    goal: str
    steps: List[StepSpec] = Field(default_factory=list)


class Run(BaseSchema):
    id: str = Field(default_factory=_new_id)
    status: RunStatus = RunStatus.queued
    plan: RunPlan
    owner: str
    project_id: str = "default"
    created_at: datetime = Field(default_factory=_utc_now)
    ended_at: Optional[datetime] = None


class Step(BaseSchema):
    id: str = Field(default_factory=_new_id)
    run_id: str
    name: str
    tool: str
    status: StepStatus = StepStatus.pending
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class StepPatch(BaseSchema):
    """Partial step update; ``None`` fields are left untouched."""

    status: Optional[StepStatus] = None
    outputs: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class Event(BaseSchema):
    id: str = Field(default_factory=_new_id)
    run_id: str
    step_id: Optional[str] = None
    seq: int
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)


class Artifact(BaseSchema):
    id: str = Field(default_factory=_new_id)
    step_id: str
    type: str
    uri: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)
    step_name: Optional[str] = Field(default=None, description="Set by run-level listings.")


class Gate(BaseSchema):
    id: str = Field(default_factory=_new_id)
    run_id: str
    step_id: str
    gate_type: str
    status: GateStatus = GateStatus.pending
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utc_now)


class StepReadyJob(BaseSchema):
    """Queue payload: ``{"stepId": "..."}``."""

    step_id: str = Field(alias="stepId")
