from __future__ import annotations

"""Run status aggregation.

The run status is recomputed from all of its steps every time instead of
being tracked incrementally, so calling ``recompute_run_status`` any number
of times from any number of workers converges on the same answer. The final
transition is a compare-and-set, so only one caller records the terminal
event.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from ..repos import EventRepository, RunRepository, StepRepository
from ..schemas.domain import (
    LIVE_RUN_STATUSES,
    TERMINAL_STEP_STATUSES,
    EventType,
    RunStatus,
    StepStatus,
)

logger = logging.getLogger(__name__)


async def recompute_run_status(
    *,
    runs: RunRepository,
    steps: StepRepository,
    events: EventRepository,
    run_id: str,
    fail_run_on_step_failure: bool = True,
) -> Optional[RunStatus]:
    """
    Move a live run to its terminal status when all of its steps are terminal.

    - Any step still pending or running: no change.
    - No failed step: ``succeeded`` (cancelled steps do not count against it).
    - At least one failed step: ``failed`` when ``fail_run_on_step_failure``,
      otherwise the run stays ``running``.

    Args:
        runs: Run repository.
        steps: Step repository.
        events: Event repository.
        run_id: The run to recompute.
        fail_run_on_step_failure: Enables the terminal ``failed`` status.

    Returns:
        The status this call transitioned the run to, or None.
    """
    run = await runs.get(run_id)
    if run is None or run.status not in LIVE_RUN_STATUSES:
        return None

    all_steps = await steps.list_by_run(run_id)
    if not all_steps:
        return None
    if any(s.status not in TERMINAL_STEP_STATUSES for s in all_steps):
        return None

    failed_ids = [s.id for s in all_steps if s.status == StepStatus.failed]
    if not failed_ids:
        target = RunStatus.succeeded
    elif fail_run_on_step_failure:
        target = RunStatus.failed
    else:
        return None

    moved = await runs.transition(
        run_id,
        from_statuses=LIVE_RUN_STATUSES,
        to_status=target,
        ended_at=datetime.now(timezone.utc),
    )
    if not moved:
        return None

    event_type = EventType.run_succeeded if target == RunStatus.succeeded else EventType.run_failed
    await events.append(run_id, event_type, {"steps": len(all_steps), "failedSteps": failed_ids})
    logger.info(f"Run {run_id} -> {target.value} ({len(all_steps)} steps, {len(failed_ids)} failed)")
    return target
