from __future__ import annotations

import pytest

from runplane.orchestration.errors import PolicyViolation
from runplane.orchestration.policy import (
    DB_GATE_TYPE,
    ApprovalPolicy,
    PolicyConfig,
    StepPolicy,
    StepPolicyEngine,
    ToolPolicy,
)


def test_no_policy_allows_any_tool() -> None:
    engine = StepPolicyEngine()

    assert engine.decide("anything", None).allowed
    assert engine.decide_for_inputs("anything", {"x": 1}).allowed


def test_empty_allow_list_is_unrestricted() -> None:
    engine = StepPolicyEngine()

    assert engine.decide_for_inputs("shell", {"_policy": {"tools_allowed": []}}).allowed


def test_tool_outside_allow_list_is_denied() -> None:
    engine = StepPolicyEngine()

    decision = engine.decide_for_inputs("shell", {"_policy": {"tools_allowed": ["echo", "codegen"]}})

    assert not decision.allowed
    assert decision.reason == "tool_not_allowed"
    assert decision.tools_allowed == ["echo", "codegen"]


def test_enforce_raises_policy_violation_with_audit_payload() -> None:
    engine = StepPolicyEngine()

    with pytest.raises(PolicyViolation) as exc:
        engine.enforce("shell", {"_policy": {"tools_allowed": ["echo", "codegen"]}})

    assert exc.value.to_payload() == {
        "tool": "shell",
        "reason": "tool_not_allowed",
        "toolsAllowed": ["echo", "codegen"],
    }
    assert engine.enforce("echo", {"_policy": {"tools_allowed": ["echo"]}}).allowed


def test_tool_in_allow_list_is_allowed() -> None:
    engine = StepPolicyEngine()

    assert engine.decide("echo", StepPolicy(tools_allowed=["echo"])).allowed


def test_blocked_tool_wins_over_allow_list() -> None:
    engine = StepPolicyEngine(PolicyConfig(tool_policy=ToolPolicy(blocked_tools={"rm"})))

    decision = engine.decide("rm", StepPolicy(tools_allowed=["rm"]))

    assert not decision.allowed
    assert decision.reason == "tool_blocked"


def test_decisions_are_deterministic() -> None:
    engine = StepPolicyEngine()
    inputs = {"_policy": {"tools_allowed": ["echo"]}}

    assert engine.decide_for_inputs("x", inputs) == engine.decide_for_inputs("x", inputs)


def test_policy_block_extraction_ignores_garbage() -> None:
    assert StepPolicy.from_inputs({}) is None
    assert StepPolicy.from_inputs({"_policy": "nope"}) is None
    policy = StepPolicy.from_inputs({"_policy": {"tools_allowed": ["a"], "unknown": 1}})
    assert policy.tools_allowed == ["a"]
    assert StepPolicy().is_empty()


@pytest.mark.parametrize(
    ("mode", "op", "expected"),
    [
        ("dangerous", "update", DB_GATE_TYPE),
        ("dangerous", "DELETE", DB_GATE_TYPE),
        ("dangerous", "insert", None),
        ("all", "insert", DB_GATE_TYPE),
        ("none", "delete", None),
    ],
)
def test_db_write_gating(mode: str, op: str, expected) -> None:
    engine = StepPolicyEngine(PolicyConfig(approval_policy=ApprovalPolicy(db_writes=mode)))

    assert engine.approval_gate_for("db_write", {"op": op}) == expected


def test_configured_gated_tools() -> None:
    engine = StepPolicyEngine(
        PolicyConfig(approval_policy=ApprovalPolicy(gated_tools={"deploy"}, gated_tool_prefixes=["prod:"]))
    )

    assert engine.approval_gate_for("deploy", {}) == "manual:deploy"
    assert engine.approval_gate_for("prod:migrate", {}) == "manual:prod:migrate"
    assert engine.approval_gate_for("echo", {}) is None
