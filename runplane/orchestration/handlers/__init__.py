"""Step handlers and their registry.

``StepHandler`` is the contract every tool implementation fulfils:
``match(tool)`` and ``async run(step) -> HandlerResult``. The worker resolves
a step's tool through ``HandlerRegistry``, where the first match wins.
"""

from typing import Iterable, Optional

from .base import ArtifactSpec, HandlerResult, HandlerStep, StepHandler
from .builtin import (
    EchoHandler,
    GateCheck,
    GateCheckResult,
    QualityGateHandler,
    reported_result_check,
)
from .registry import HandlerRegistry


def build_default_registry(
    *,
    enabled_gates: Iterable[str] = ("typecheck", "lint", "unit", "coverage"),
    coverage_threshold: float = 0.9,
    extra: Optional[Iterable[StepHandler]] = None,
) -> HandlerRegistry:
    """Build a registry with ``extra`` handlers first, then the built-ins."""
    handlers = list(extra or [])
    handlers.append(QualityGateHandler(enabled_gates=enabled_gates, coverage_threshold=coverage_threshold))
    handlers.append(EchoHandler())
    return HandlerRegistry(handlers)


__all__ = [
    "ArtifactSpec",
    "EchoHandler",
    "GateCheck",
    "GateCheckResult",
    "HandlerRegistry",
    "HandlerResult",
    "HandlerStep",
    "QualityGateHandler",
    "StepHandler",
    "build_default_registry",
    "reported_result_check",
]
