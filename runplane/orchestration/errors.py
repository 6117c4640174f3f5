from __future__ import annotations

"""Error taxonomy for the orchestration engine.

Per-step errors (policy violations, missing handlers, handler failures) are
caught at the worker boundary, recorded on the step and in the event log, and
never abort a batch. Infrastructure errors raised by the store or the queue
propagate out of service calls; inside a worker batch they are reported per
step.
"""

from typing import Optional


class RunplaneError(Exception):
    """Base class for all runplane errors."""


class PolicyViolation(RunplaneError):
    """The step's tool is not permitted by its policy. Terminal, never retried."""

    def __init__(self, tool: str, reason: str, tools_allowed: Optional[list[str]] = None) -> None:
        super().__init__(f"policy: tool not allowed: {tool} ({reason})")
        self.tool = tool
        self.reason = reason
        self.tools_allowed = list(tools_allowed or [])

    def to_payload(self) -> dict:
        """Audit payload recorded on the step and in the ``policy.denied`` event."""
        return {"tool": self.tool, "reason": self.reason, "toolsAllowed": list(self.tools_allowed)}


class HandlerNotFoundError(RunplaneError):
    """No registered handler matches the step's tool. A configuration error."""

    def __init__(self, tool: str) -> None:
        super().__init__(f"no handler for tool: {tool}")
        self.tool = tool


class HandlerExecutionError(RunplaneError):
    """A handler raised or reported failure. Terminal for the step only."""

    def __init__(self, tool: str, message: str) -> None:
        super().__init__(message)
        self.tool = tool
        self.message = message


class StoreConflict(RunplaneError):
    """A uniqueness constraint was hit. Resolved internally by re-reading the row."""


class QueueRedeliveryDuplicate(RunplaneError):
    """A dequeued step was already claimed or finished. Handled as a silent skip."""

    def __init__(self, step_id: str, status: str) -> None:
        super().__init__(f"step {step_id} already {status}")
        self.step_id = step_id
        self.status = status


class RunNotFoundError(RunplaneError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"run not found: {run_id}")
        self.run_id = run_id


class StepNotFoundError(RunplaneError):
    def __init__(self, step_id: str) -> None:
        super().__init__(f"step not found: {step_id}")
        self.step_id = step_id


class StepNotRetryableError(RunplaneError):
    """Only failed or cancelled steps may be retried."""

    def __init__(self, step_id: str, status: str) -> None:
        super().__init__(f"step {step_id} is {status}; only failed or cancelled steps can be retried")
        self.step_id = step_id
        self.status = status


class GateNotFoundError(RunplaneError):
    def __init__(self, run_id: str, step_id: str, gate_type: str) -> None:
        super().__init__(f"gate not found: run={run_id} step={step_id} type={gate_type}")
        self.run_id = run_id
        self.step_id = step_id
        self.gate_type = gate_type


class GateStateError(RunplaneError):
    """A gate transition that is not ``pending -> approved|rejected|waived``."""


class ArtifactStorageError(RunplaneError):
    """Artifact content could not be written safely."""


class RunNotLiveError(RunplaneError):
    """The run is terminal and cannot accept new steps."""

    def __init__(self, run_id: str, status: str) -> None:
        super().__init__(f"run {run_id} is {status}")
        self.run_id = run_id
        self.status = status
