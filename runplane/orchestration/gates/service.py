from __future__ import annotations

"""Manual approval gates.

A step whose tool requires approval is held at ``pending`` until its gate is
decided. ``GateService`` owns the gate lifecycle:

- ``ensure_gate`` is called by the worker before it claims a gated step and
  creates the ``pending`` gate on first encounter (recording ``gate.created``).
  The held step stays ``pending`` and is not claimed while the gate is open.
- ``resolve`` is called on behalf of an external approver. It moves a pending
  gate to ``approved``, ``rejected`` or ``waived``, records ``gate.resolved``
  and re-enqueues the held step so the worker picks the decision up.
"""

import logging
from typing import Optional, Tuple

from ..errors import GateNotFoundError, GateStateError
from ..queue import StepQueue
from ..repos import EventRepository, GateRepository, StepRepository
from ..schemas.domain import EventType, Gate, GateStatus, StepStatus

logger = logging.getLogger(__name__)

PASSING_GATE_STATUSES = frozenset({GateStatus.approved, GateStatus.waived})


class GateService:
    def __init__(
        self,
        *,
        gates: GateRepository,
        steps: StepRepository,
        events: EventRepository,
        queue: StepQueue,
    ) -> None:
        self._gates = gates
        self._steps = steps
        self._events = events
        self._queue = queue

    async def ensure_gate(self, *, run_id: str, step_id: str, gate_type: str) -> Tuple[Gate, bool]:
        """Return ``(gate, created)`` for the step, creating a pending gate if needed."""
        gate, created = await self._gates.create_or_get(run_id=run_id, step_id=step_id, gate_type=gate_type)
        if created:
            await self._events.append(
                run_id,
                EventType.gate_created,
                {"stepId": step_id, "gateId": gate.id, "gateType": gate_type},
                step_id=step_id,
            )
            logger.info(f"Gate {gate_type} created for step {step_id} (run {run_id})")
        return gate, created

    async def resolve(
        self,
        *,
        run_id: str,
        step_id: str,
        gate_type: str,
        status: GateStatus,
        approved_by: Optional[str] = None,
    ) -> Gate:
        """
        Decide a pending gate.

        Args:
            run_id: The run of the gated step.
            step_id: The gated step.
            gate_type: e.g. ``manual:db``.
            status: ``approved``, ``rejected`` or ``waived``.
            approved_by: The approver identity; stamps ``approved_at`` when set.

        Returns:
            The resolved Gate.

        Raises:
            GateNotFoundError: No such gate.
            GateStateError: ``status`` is ``pending`` or the gate was already decided.
        """
        if status == GateStatus.pending:
            raise GateStateError("a gate cannot be resolved to pending")

        gate = await self._gates.get(run_id=run_id, step_id=step_id, gate_type=gate_type)
        if gate is None:
            raise GateNotFoundError(run_id, step_id, gate_type)
        if gate.status != GateStatus.pending:
            raise GateStateError(f"gate {gate.id} already {gate.status.value}")

        resolved = await self._gates.resolve(gate.id, status=status, approved_by=approved_by)
        if resolved is None:
            raise GateStateError(f"gate {gate.id} was decided concurrently")

        await self._events.append(
            run_id,
            EventType.gate_resolved,
            {"stepId": step_id, "gateId": gate.id, "gateType": gate_type, "status": status.value, "by": approved_by},
            step_id=step_id,
        )

        step = await self._steps.get(step_id)
        if step is not None and step.status == StepStatus.pending:
            await self._queue.enqueue(step_id)
        logger.info(f"Gate {gate_type} for step {step_id} resolved as {status.value} by {approved_by}")
        return resolved
