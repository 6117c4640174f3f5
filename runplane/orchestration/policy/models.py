from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Literal, Mapping, Optional

from pydantic import Field

from ..schemas.base import BaseSchema

POLICY_INPUT_KEY = "_policy"


class StepPolicy(BaseSchema):
    """
    Per-step execution policy.

    Travels inside the step inputs under ``_policy`` so that it is persisted
    with the step and covered by its idempotency key.
    """

    tools_allowed: Optional[List[str]] = Field(
        default=None,
        description="If non-empty, only these tools may run for the step.",
    )
    env_allowed: Optional[List[str]] = Field(
        default=None,
        description="Environment variable names the handler may expose to the tool.",
    )
    secrets_scope: Optional[List[str]] = Field(
        default=None,
        description="Secret scopes the handler may read.",
    )

    @classmethod
    def from_inputs(cls, inputs: Mapping[str, Any]) -> Optional["StepPolicy"]:
        """
        Extract the policy block from step inputs.

        Args:
            inputs: The step inputs.

        Returns:
            The StepPolicy, or None when the step carries no policy block.
        """
        raw = inputs.get(POLICY_INPUT_KEY)
        if not isinstance(raw, Mapping):
            return None
        known = {k: raw[k] for k in ("tools_allowed", "env_allowed", "secrets_scope") if k in raw}
        return cls.model_validate(known)

    def is_empty(self) -> bool:
        return not (self.tools_allowed or self.env_allowed or self.secrets_scope)


class ToolPolicy(BaseSchema):
    """Process-wide tool restrictions applied on top of per-step policies."""

    blocked_tools: set[str] = Field(
        default_factory=set,
        description="Tools in this set are denied for every step.",
    )


class ApprovalPolicy(BaseSchema):
    """
    Which tools need a manual approval gate before they run.

    ``db_write`` steps are gated according to ``db_writes``: ``dangerous``
    gates the operations in ``dangerous_ops``, ``all`` gates every write and
    ``none`` disables the check.
    """

    gated_tools: set[str] = Field(default_factory=set)
    gated_tool_prefixes: List[str] = Field(default_factory=list)
    db_writes: Literal["dangerous", "all", "none"] = "dangerous"
    dangerous_ops: set[str] = Field(default_factory=lambda: {"update", "delete"})


class PolicyConfig(BaseSchema):
    """Root configuration object used to build a ``StepPolicyEngine``."""

    version: str = Field(default="policy-v1")
    tool_policy: ToolPolicy = Field(default_factory=ToolPolicy)
    approval_policy: ApprovalPolicy = Field(default_factory=ApprovalPolicy)


@dataclass(frozen=True)
class PolicyDecision:
    """
    Result of a policy evaluation for one step.

    Attributes:
        allowed: Whether the tool may run.
        reason: Machine-readable reason when denied.
        tools_allowed: The allow-list that was applied, for audit payloads.
    """

    allowed: bool
    reason: Optional[str] = None
    tools_allowed: List[str] = field(default_factory=list)
