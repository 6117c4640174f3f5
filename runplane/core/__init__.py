"""Process-wide concerns shared by every runplane component.

- ``config``: ``Settings`` bound from ``RUNPLANE_*`` environment variables.
- ``logging_config``: ``setup_logging`` and per-module log levels.
"""
