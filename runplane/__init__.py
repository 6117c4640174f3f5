"""Runplane.

A run/step orchestration engine: a run is a goal plus a plan of tool steps,
executed by stateless workers that pull from an at-least-once queue.

Subpackages
-----------

- ``runplane.orchestration``:

  - Domain schemas (runs, steps, events, artifacts, gates).
  - Repository interfaces with SQL (SQLAlchemy async) and in-memory
    implementations, plus the step queue.
  - Policy engine, approval and quality gates, handler registry.
  - ``StepWorker`` and ``OrchestrationService``.

- ``runplane.core``: settings and logging configuration.

Typical workflow
----------------

1. ``async with open_application(settings) as app``.
2. ``await app.service.create_run(plan, owner=...)``.
3. Call ``await app.run_worker_once()`` until ``has_more`` is False and the
   run is terminal.
4. Resolve approval gates through ``app.service.resolve_gate`` when a step
   waits on one.
"""

from .app import Application, open_application

__all__ = ["Application", "open_application"]
