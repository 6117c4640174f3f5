"""Approval gate workflow (``manual:*`` gates).

Quality gates (``gate:*`` tools) are ordinary steps handled by
``runplane.orchestration.handlers.QualityGateHandler``.
"""

from .service import PASSING_GATE_STATUSES, GateService

__all__ = ["GateService", "PASSING_GATE_STATUSES"]
