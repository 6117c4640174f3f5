from __future__ import annotations

"""Handler registry.

The registry holds an ordered, fixed list of handlers built at startup. The
first handler whose ``match`` accepts a tool wins; order is registration
order, so more specific handlers should be listed first.
"""

from typing import Iterable, Optional, Tuple

from ..errors import HandlerNotFoundError
from .base import StepHandler


class HandlerRegistry:
    """
    Ordered lookup from tool names to handlers.

    Notes:
        - The handler list is frozen at construction; there is no runtime
          registration.
        - ``resolve`` raises ``HandlerNotFoundError`` when nothing matches.
    """

    def __init__(self, handlers: Iterable[StepHandler]) -> None:
        self._handlers: Tuple[StepHandler, ...] = tuple(handlers)

    @property
    def handlers(self) -> Tuple[StepHandler, ...]:
        return self._handlers

    def find(self, tool: str) -> Optional[StepHandler]:
        """
        Return the first handler that matches ``tool``.

        Args:
            tool: The tool named by a step.

        Returns:
            The handler, or None if none matches.
        """
        for handler in self._handlers:
            if handler.match(tool):
                return handler
        return None

    def resolve(self, tool: str) -> StepHandler:
        """
        Return the first handler that matches ``tool``.

        Raises:
            HandlerNotFoundError: If no handler matches.
        """
        handler = self.find(tool)
        if handler is None:
            raise HandlerNotFoundError(tool)
        return handler
