"""Policy subsystem for step execution.

The policy layer decides, before any handler runs, whether a step's tool is
permitted and whether a human approval gate stands in front of it.

Components
----------

- ``StepPolicy``: per-step ``tools_allowed`` / ``env_allowed`` /
  ``secrets_scope``, stored in the step inputs under ``_policy``.
- ``ToolPolicy``: process-wide deny-list.
- ``ApprovalPolicy``: which tools (and which ``db_write`` operations) need a
  ``manual:*`` gate.

``StepPolicyEngine`` aggregates these and exposes pure decision methods.
"""

from .engine import DB_GATE_TYPE, StepPolicyEngine
from .models import (
    POLICY_INPUT_KEY,
    ApprovalPolicy,
    PolicyConfig,
    PolicyDecision,
    StepPolicy,
    ToolPolicy,
)

__all__ = [
    "DB_GATE_TYPE",
    "POLICY_INPUT_KEY",
    "StepPolicyEngine",
    "ApprovalPolicy",
    "PolicyConfig",
    "PolicyDecision",
    "StepPolicy",
    "ToolPolicy",
]
