"""Providers that need no provisioning: fixed lookups and routing by kind."""

from typing import Dict, List, Optional, Tuple

from ..config import ExitConfig
from ..errors import ProvisionError, ShutdownError
from ..proxy.reverse_proxy import ReverseProxy
from ..shared.logging import get_logger
from .base import ExitHandler, ExitHandlerProvider

logger = get_logger(__name__)


class StaticProvider(ExitHandlerProvider):
    """Serves a fixed map of exit name to handler."""

    def __init__(self, handlers: Dict[str, ExitHandler]):
        self.handlers = handlers
        logger.info(f"Initialized StaticProvider with {len(handlers)} handlers")

    async def get_handler(self, exit_name: str, exit_config: ExitConfig) -> ExitHandler:
        handler = self.handlers.get(exit_name)
        if handler is None:
            logger.warning("No handler found for exit", exit=exit_name)
            raise ProvisionError(f"no handler for exit '{exit_name}'", exit_name=exit_name)
        return handler


class DirectProvider(ExitHandlerProvider):
    """Egresses straight from the gateway host, for every exit it serves."""

    def __init__(self, proxy: Optional[ReverseProxy] = None):
        self.proxy = proxy or ReverseProxy()

    async def get_handler(self, exit_name: str, exit_config: ExitConfig) -> ExitHandler:
        return self.proxy

    async def close(self) -> None:
        await self.proxy.aclose()


class ProviderRouter(ExitHandlerProvider):
    """Dispatches each exit to the provider registered for its kind."""

    def __init__(self, providers: Dict[str, ExitHandlerProvider]):
        """Initialize provider router.

        Args:
            providers: Provider kind (``ExitConfig.provider``) to provider
        """
        self.providers = providers

    async def get_handler(self, exit_name: str, exit_config: ExitConfig) -> ExitHandler:
        provider = self.providers.get(exit_config.provider)
        if provider is None:
            raise ProvisionError(
                f"exit '{exit_name}': no provider registered for kind '{exit_config.provider}'",
                exit_name=exit_name
            )
        return await provider.get_handler(exit_name, exit_config)

    async def close(self) -> None:
        """Close every delegate, even when some of them fail."""
        errors: List[Tuple[str, BaseException]] = []
        for kind, provider in self.providers.items():
            try:
                await provider.close()
            except ShutdownError as e:
                errors.extend(e.errors)
            except Exception as e:
                logger.error("Failed to close provider", kind=kind, error=str(e))
                errors.append((f"provider '{kind}'", e))

        if errors:
            raise ShutdownError(errors)
