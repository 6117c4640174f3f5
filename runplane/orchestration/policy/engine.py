from __future__ import annotations

"""Policy decisions for step execution.

``StepPolicyEngine`` is the runtime authority the worker consults before a
handler is invoked. Every method is pure: no I/O, no clock, same inputs give
the same decision. Denials are terminal for the step and are never retried.
"""

from typing import Any, Mapping, Optional

from ..errors import PolicyViolation
from .models import PolicyConfig, PolicyDecision, StepPolicy

DB_WRITE_TOOL = "db_write"
DB_GATE_TYPE = "manual:db"


class StepPolicyEngine:
    """Evaluate tool allow-lists and approval requirements.

    Args:
        config: Process-wide policy configuration; defaults allow everything
            and gate only dangerous ``db_write`` operations.
    """

    def __init__(self, config: Optional[PolicyConfig] = None) -> None:
        self._cfg = config or PolicyConfig()

    @property
    def config(self) -> PolicyConfig:
        """Return the underlying configuration object."""
        return self._cfg

    def decide(self, tool: str, policy: Optional[StepPolicy]) -> PolicyDecision:
        """
        Decide whether ``tool`` may run under ``policy``.

        Order of checks:
        1. Process-wide ``blocked_tools``.
        2. The step's non-empty ``tools_allowed`` allow-list.

        A step without a policy block, or with an empty allow-list, is
        unrestricted by step policy.

        Args:
            tool: The tool named by the step.
            policy: The step's policy, if any.

        Returns:
            A PolicyDecision.
        """
        allowed_list = list(policy.tools_allowed or []) if policy is not None else []

        if tool in self._cfg.tool_policy.blocked_tools:
            return PolicyDecision(allowed=False, reason="tool_blocked", tools_allowed=allowed_list)

        if allowed_list and tool not in allowed_list:
            return PolicyDecision(allowed=False, reason="tool_not_allowed", tools_allowed=allowed_list)

        return PolicyDecision(allowed=True, tools_allowed=allowed_list)

    def decide_for_inputs(self, tool: str, inputs: Mapping[str, Any]) -> PolicyDecision:
        """Convenience wrapper reading the policy block from step inputs."""
        return self.decide(tool, StepPolicy.from_inputs(inputs))

    def enforce(self, tool: str, inputs: Mapping[str, Any]) -> PolicyDecision:
        """
        Like ``decide_for_inputs`` but raise on denial.

        Raises:
            PolicyViolation: The tool is blocked or outside the step allow-list.
        """
        decision = self.decide_for_inputs(tool, inputs)
        if not decision.allowed:
            raise PolicyViolation(tool, decision.reason or "denied", decision.tools_allowed)
        return decision

    def approval_gate_for(self, tool: str, inputs: Mapping[str, Any]) -> Optional[str]:
        """
        Return the manual gate type a step must pass, or None.

        Args:
            tool: The tool named by the step.
            inputs: The step inputs (``op`` is read for ``db_write``).

        Returns:
            ``"manual:db"`` for gated database writes, ``"manual:<tool>"`` for
            other gated tools, otherwise None.
        """
        approval = self._cfg.approval_policy
        if tool == DB_WRITE_TOOL:
            op = str(inputs.get("op") or "").lower()
            if approval.db_writes == "all":
                return DB_GATE_TYPE
            if approval.db_writes == "dangerous" and op in approval.dangerous_ops:
                return DB_GATE_TYPE

        if tool in approval.gated_tools or any(tool.startswith(p) for p in approval.gated_tool_prefixes):
            return f"manual:{tool}"
        return None
