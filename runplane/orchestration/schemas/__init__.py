"""Pydantic domain models for runs, steps, events, artifacts and gates."""

from .base import BaseSchema
from .domain import (
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
    StepPatch,
    StepReadyJob,
    StepSpec,
    StepStatus,
)

__all__ = [
    "BaseSchema",
    "Artifact",
    "Event",
    "EventType",
    "Gate",
    "GateStatus",
    "LIVE_RUN_STATUSES",
    "Run",
    "RunPlan",
    "RunStatus",
    "Step",
    "StepPatch",
    "StepReadyJob",
    "StepSpec",
    "StepStatus",
    "TERMINAL_RUN_STATUSES",
    "TERMINAL_STEP_STATUSES",
]
