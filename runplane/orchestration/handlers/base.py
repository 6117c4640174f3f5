from __future__ import annotations

"""Handler protocol and execution data models.

A handler is the concrete execution unit for a step's tool. The worker
resolves ``Step.tool`` through a ``HandlerRegistry`` and invokes the first
matching handler with a ``HandlerStep``.

Handlers should:

- return structured outputs in ``HandlerResult.outputs``,
- describe produced files as ``ArtifactSpec`` entries instead of persisting
  them (the worker stores them once the step succeeds),
- never make policy or approval decisions (the worker enforces both before
  invocation),
- raise or return ``status="failed"`` on failure; either way the step fails
  and the batch continues.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Protocol, Union

from pydantic import Field, model_validator

from ..policy.models import POLICY_INPUT_KEY, StepPolicy
from ..schemas.base import BaseSchema
from ..schemas.domain import StepSpec


class ArtifactSpec(BaseSchema):
    """An artifact produced by a handler.

    Either ``content`` (written to the artifact store) or ``uri`` (recorded as
    given, e.g. a pull request URL) must be set.
    """

    type: str
    name: Optional[str] = None
    content: Optional[Union[str, bytes]] = None
    uri: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _content_or_uri(self) -> "ArtifactSpec":
        if (self.content is None) == (self.uri is None):
            raise ValueError("exactly one of content or uri must be set")
        return self


class HandlerResult(BaseSchema):
    """Structured handler execution result."""

    status: Literal["succeeded", "failed"] = "succeeded"
    outputs: Dict[str, Any] = Field(default_factory=dict)
    artifacts: List[ArtifactSpec] = Field(default_factory=list)
    error: Optional[str] = None
    follow_on: List[StepSpec] = Field(default_factory=list)

    @classmethod
    def ok(cls, outputs: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "HandlerResult":
        return cls(status="succeeded", outputs=dict(outputs or {}), **kwargs)

    @classmethod
    def failed(cls, error: str, outputs: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "HandlerResult":
        return cls(status="failed", error=error, outputs=dict(outputs or {}), **kwargs)


@dataclass(frozen=True)
class HandlerStep:
    """Execution context passed to handler implementations.

    Attributes
    ----------
    id / run_id / name / tool:
        Identity of the step being executed.
    inputs:
        Step inputs with the ``_policy`` block removed.
    policy:
        The step's ``StepPolicy``, for handlers that scope environment or
        secrets.
    """

    id: str
    run_id: str
    name: str
    tool: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    policy: Optional[StepPolicy] = None

    @classmethod
    def from_inputs(cls, *, id: str, run_id: str, name: str, tool: str, inputs: Dict[str, Any]) -> "HandlerStep":
        clean = {k: v for k, v in inputs.items() if k != POLICY_INPUT_KEY}
        return cls(id=id, run_id=run_id, name=name, tool=tool, inputs=clean, policy=StepPolicy.from_inputs(inputs))


class StepHandler(Protocol):
    """Protocol for handler implementations."""

    name: str

    def match(self, tool: str) -> bool: ...

    async def run(self, step: HandlerStep) -> HandlerResult: ...
