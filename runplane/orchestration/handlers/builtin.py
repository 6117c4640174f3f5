from __future__ import annotations

"""Built-in handlers.

- ``EchoHandler``: returns its inputs; used for smoke tests and wiring checks.
- ``QualityGateHandler``: evaluates ``gate:<name>`` steps (typecheck, lint,
  unit, coverage, ...) and always produces a ``gate-summary.json`` artifact.

The check behind a quality gate is injected. The default
``reported_result_check`` reads a result that an upstream system already
measured and put into the step inputs, so this package never runs project
tooling itself.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional

from .base import ArtifactSpec, HandlerResult, HandlerStep

logger = logging.getLogger(__name__)

GATE_TOOL_PREFIX = "gate:"
COVERAGE_GATE = "coverage"


class EchoHandler:
    """Echo the step inputs back as outputs.

    An optional ``artifact`` string input is stored as ``echo.txt``.
    """

    name = "echo"

    def __init__(self, tools: Iterable[str] = ("echo", "test:echo")) -> None:
        self._tools = frozenset(tools)

    def match(self, tool: str) -> bool:
        return tool in self._tools

    async def run(self, step: HandlerStep) -> HandlerResult:
        artifacts = []
        text = step.inputs.get("artifact")
        if isinstance(text, str):
            artifacts.append(ArtifactSpec(type="text/plain", name="echo.txt", content=text))
        return HandlerResult.ok({"echo": dict(step.inputs)}, artifacts=artifacts)


@dataclass(frozen=True)
class GateCheckResult:
    """Outcome of one quality gate check.

    Attributes:
        passed: Whether the underlying check passed.
        metrics: Measured values (``coverage`` for the coverage gate).
        details: Optional human-readable explanation.
    """

    passed: bool
    metrics: Dict[str, Any] = field(default_factory=dict)
    details: Optional[str] = None


GateCheck = Callable[[str, HandlerStep], Awaitable[GateCheckResult]]


async def reported_result_check(gate_name: str, step: HandlerStep) -> GateCheckResult:
    """Read a gate result reported in the step inputs.

    The result is taken from ``inputs["result"]`` when it is a mapping, else
    from the inputs themselves. ``passed`` is required except for the coverage
    gate, whose verdict comes from the threshold comparison.
    """
    raw = step.inputs.get("result")
    source: Mapping[str, Any] = raw if isinstance(raw, Mapping) else step.inputs
    metrics = {k: v for k, v in source.items() if k != "passed"}
    if "passed" in source:
        return GateCheckResult(passed=bool(source["passed"]), metrics=metrics)
    if gate_name == COVERAGE_GATE:
        return GateCheckResult(passed=True, metrics=metrics)
    return GateCheckResult(passed=False, metrics=metrics, details="no gate result reported")


def _coverage_fraction(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    fraction = float(value)
    # accept percentages as well as fractions
    return fraction / 100.0 if fraction > 1.0 else fraction


class QualityGateHandler:
    """Evaluate ``gate:<name>`` steps.

    Args:
        enabled_gates: Gate names that are evaluated; others succeed with
            ``{"skipped": true}``.
        coverage_threshold: Minimum coverage fraction for the coverage gate.
        check: Async callable producing the raw check result.
    """

    name = "quality_gate"

    def __init__(
        self,
        *,
        enabled_gates: Iterable[str] = ("typecheck", "lint", "unit", "coverage"),
        coverage_threshold: float = 0.9,
        check: GateCheck = reported_result_check,
    ) -> None:
        self._enabled = frozenset(enabled_gates)
        self._threshold = coverage_threshold
        self._check = check

    def match(self, tool: str) -> bool:
        return tool.startswith(GATE_TOOL_PREFIX)

    async def run(self, step: HandlerStep) -> HandlerResult:
        gate_name = step.tool[len(GATE_TOOL_PREFIX) :]
        if gate_name not in self._enabled:
            logger.debug(f"Gate {gate_name} disabled; skipping step {step.id}")
            return HandlerResult.ok({"gate": gate_name, "skipped": True})

        result = await self._check(gate_name, step)
        summary: Dict[str, Any] = {"gate": gate_name, **result.metrics}
        passed = result.passed
        if result.details:
            summary["details"] = result.details

        if gate_name == COVERAGE_GATE:
            coverage = _coverage_fraction(result.metrics.get("coverage"))
            summary["threshold"] = self._threshold
            if coverage is None:
                passed = False
                summary["details"] = "coverage not reported"
            else:
                summary["coverage"] = coverage
                passed = passed and coverage >= self._threshold

        summary["passed"] = passed
        artifact = ArtifactSpec(
            type="application/json",
            name="gate-summary.json",
            content=json.dumps(summary, indent=2, sort_keys=True),
            metadata={"gate": gate_name, "kind": "summary"},
        )
        outputs = {"gate": gate_name, "summary": summary}
        if passed:
            return HandlerResult.ok(outputs, artifacts=[artifact])
        return HandlerResult.failed(f"gate {gate_name} failed", outputs, artifacts=[artifact])
