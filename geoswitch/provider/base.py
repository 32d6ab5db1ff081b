"""Exit handler provider interface."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

import httpx
from starlette.responses import Response

from ..config import ExitConfig

# A handler sends a fully-addressed outbound request through one exit
ExitHandler = Callable[[httpx.Request], Awaitable[Response]]


class ExitHandlerProvider(ABC):
    """Supplies the live handler for a named exit."""

    @abstractmethod
    async def get_handler(self, exit_name: str, exit_config: ExitConfig) -> ExitHandler:
        """Return the handler for ``exit_name``.

        Implementations must be idempotent per exit name and safe under
        concurrent callers.

        Raises:
            ProvisionError: If no working handler can be supplied
        """

    async def close(self) -> None:
        """Release provider resources. The default has nothing to release."""
