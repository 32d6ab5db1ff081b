"""ASGI application for the GeoSwitch gateway.

Usage:
    hypercorn "geoswitch.app:create_app_from_settings()"
    uvicorn geoswitch.app:create_app_from_settings --factory
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional, Sequence

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from .config import Config, ConfigExitResolver, load_config
from .errors import ShutdownError
from .provider import DirectProvider, ExitHandlerProvider, GluetunProvider, GluetunProviderConfig, ProviderRouter
from .proxy import IntentParser, ProxyHandler, header_exit_parser, path_intent_parser
from .shared.logging import get_logger
from .shared.settings import Settings

logger = get_logger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


def build_provider(config: Config) -> ProviderRouter:
    """Create a provider for every provider kind the config uses."""
    kinds = {exit_config.provider for exit_config in config.exits.values()}
    providers = {}

    if "gluetun" in kinds:
        providers["gluetun"] = GluetunProvider(GluetunProviderConfig.from_settings())
    if "direct" in kinds:
        providers["direct"] = DirectProvider()

    unknown = kinds - set(providers)
    if unknown:
        logger.warning(f"No provider available for kinds: {', '.join(sorted(unknown))}")

    return ProviderRouter(providers)


def default_parsers(exit_header: Optional[str] = None) -> Sequence[IntentParser]:
    """Header exit first, then the path: an explicit header wins."""
    return [header_exit_parser(exit_header or Settings.EXIT_HEADER), path_intent_parser]


def create_app(
    config: Config,
    provider: ExitHandlerProvider,
    parsers: Optional[Sequence[IntentParser]] = None,
    shutdown_timeout: Optional[float] = None
) -> Starlette:
    """Create the gateway app.

    Args:
        config: Validated routing configuration
        provider: Supplies per-exit handlers; closed on app shutdown
        parsers: Intent parsers in precedence order (default: header, path)
        shutdown_timeout: Seconds allowed for provider shutdown
    """
    proxy_handler = ProxyHandler(
        ConfigExitResolver(config),
        provider,
        parsers if parsers is not None else default_parsers()
    )
    shutdown_timeout = shutdown_timeout or Settings.SHUTDOWN_TIMEOUT

    @asynccontextmanager
    async def lifespan(app: Starlette):
        """Manage application lifecycle."""
        logger.info(
            f"GeoSwitch ready with default exit '{config.default_exit}'",
            exits=sorted(config.exits)
        )
        yield
        logger.info("Cleaning up resources")
        try:
            await asyncio.wait_for(provider.close(), timeout=shutdown_timeout)
        except ShutdownError as e:
            for resource, error in e.errors:
                logger.error(f"Error during cleanup of {resource}: {error}")
        except asyncio.TimeoutError:
            logger.error(f"Provider shutdown did not finish within {shutdown_timeout}s")

    async def handle_health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "healthy"})

    async def handle_proxy(request: Request):
        return await proxy_handler.handle_request(request)

    app = Starlette(
        routes=[
            Route("/proxy-health", handle_health, methods=["GET"]),
            Route("/{path:path}", handle_proxy, methods=PROXY_METHODS),
        ],
        lifespan=lifespan
    )
    app.state.config = config
    app.state.provider = provider
    app.state.proxy_handler = proxy_handler
    return app


def create_app_from_settings(config_path: Optional[str] = None) -> Starlette:
    """Factory for ASGI servers: config file and providers from Settings."""
    config = load_config(config_path or Settings.CONFIG_PATH)
    return create_app(config, build_provider(config))
