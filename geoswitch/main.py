"""Main entry point for GeoSwitch."""

import asyncio
import signal
import sys
from typing import Optional

import click
from hypercorn.asyncio import serve
from hypercorn.config import Config as HypercornConfig

from .app import build_provider, create_app
from .config import load_config
from .errors import ConfigError
from .shared.logging import configure_logging, get_logger
from .shared.settings import Settings, get_settings

logger = get_logger(__name__)


async def run_server(config_path: str, host: str, port: int, log_level: Optional[str] = None) -> None:
    """Load the config, build providers and serve until SIGINT/SIGTERM."""
    config = load_config(config_path)
    logger.info("Configuration validated successfully")

    provider = build_provider(config)
    app = create_app(config, provider)

    server_config = HypercornConfig()
    server_config.bind = [f"{host}:{port}"]
    server_config.loglevel = log_level or Settings.LOG_LEVEL
    server_config.graceful_timeout = Settings.SHUTDOWN_TIMEOUT

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    logger.info(f"Starting GeoSwitch on {host}:{port}")
    await serve(app, server_config, shutdown_trigger=shutdown_event.wait)
    logger.info("Shutdown complete")


@click.command('geoswitch')
@click.option('--config', 'config_path', default=None, help='Path to the YAML routing config')
@click.option('--host', default=None, help='Address to bind')
@click.option('--port', default=None, type=int, help='Port to bind')
@click.option('--log-level', default=None, help='Logging level (DEBUG, INFO, ...)')
def cli(config_path: Optional[str], host: Optional[str], port: Optional[int], log_level: Optional[str]):
    """Run the GeoSwitch gateway."""
    logging_config = configure_logging(log_level)
    logger.info("Initialising GeoSwitch")

    try:
        settings = get_settings()
        asyncio.run(run_server(
            config_path or settings.CONFIG_PATH,
            host or settings.HOST,
            port or settings.PORT,
            logging_config["level"]
        ))
    except KeyboardInterrupt:
        logger.info("Shutting down GeoSwitch (interrupted)")
    except (ConfigError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.error(f"Failed to start GeoSwitch: {e}", exc_info=True)
        print(f"ERROR: Failed to start GeoSwitch: {e}", file=sys.stderr)
        sys.exit(1)


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
