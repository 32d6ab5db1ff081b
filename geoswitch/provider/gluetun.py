"""Gluetun exit provider.

Each exit is served by a gluetun VPN container exposing an HTTP forward
proxy. Containers are provisioned lazily on the first request for an exit,
health-gated, and cached for the lifetime of the provider.

All provisioning happens under one provider-wide lock, so provisioning of
unrelated exits serializes as well.
"""

import asyncio
import functools
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

from python_on_whales import DockerClient
from python_on_whales.exceptions import DockerException, NoSuchContainer

from ..config import ExitConfig
from ..errors import ProvisionError, ShutdownError
from ..proxy.reverse_proxy import ReverseProxy
from ..shared.logging import get_logger
from .base import ExitHandler, ExitHandlerProvider
from .models import ExitRuntime, GluetunProviderConfig

logger = get_logger(__name__)
container_logger = get_logger("geoswitch.container")

# Extra seconds on top of docker's own stop grace period
STOP_GRACE_SECONDS = 5


class ContainerLogStream:
    """Follows a container's output into the process log on its own thread.

    The stream ends when the container stops or after ``cancel()`` once the
    next line arrives.
    """

    def __init__(self, client: DockerClient, container_id: str, container_name: str):
        self.client = client
        self.container_id = container_id
        self.container_name = container_name
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"logs-{container_name}",
            daemon=True
        )

    def start(self) -> "ContainerLogStream":
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._stop.set()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def _run(self) -> None:
        log = container_logger.bind(container=self.container_name)
        try:
            for source, line in self.client.container.logs(self.container_id, follow=True, stream=True):
                if self._stop.is_set():
                    break
                log.info(line.decode('utf-8', errors='replace').rstrip(), stream=source)
        except Exception as e:
            if not self._stop.is_set():
                log.warning("Container log stream error", error=str(e))


class GluetunProvider(ExitHandlerProvider):
    """Provisions and caches one gluetun container per exit."""

    def __init__(self, config: Optional[GluetunProviderConfig] = None, client: Optional[DockerClient] = None):
        """Initialize gluetun provider.

        Args:
            config: Provider options (defaults applied by the model)
            client: Docker client; connects to ``config.docker_host`` if None
        """
        self.config = config or GluetunProviderConfig()
        self.network = self.config.network
        self.image = self.config.image

        self.runtimes: Dict[str, ExitRuntime] = {}
        self._lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(max_workers=5, thread_name_prefix="docker")

        logger.info(f"Initializing GluetunProvider with network '{self.network}'")
        if client is None:
            client = self._connect()
        self.client: Optional[DockerClient] = client

    def _connect(self) -> DockerClient:
        """Create a Docker client and test the connection."""
        try:
            client = DockerClient(host=self.config.docker_host)
            client.version()
            docker_location = self.config.docker_host or "unix:///var/run/docker.sock"
            logger.info(f"Connected to Docker at {docker_location}")
            return client
        except Exception as e:
            logger.error(f"Failed to connect to Docker: {e}")
            raise

    async def _run(self, fn, *args, **kwargs):
        """Run a blocking Docker call in the provider's executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    def container_name_for(self, exit_name: str) -> str:
        return f"{self.config.container_prefix}{exit_name}"

    async def get_handler(self, exit_name: str, exit_config: ExitConfig) -> ExitHandler:
        async with self._lock:
            if self.client is None:
                raise ProvisionError("gluetun provider is closed", exit_name=exit_name)

            runtime = self.runtimes.get(exit_name)
            if runtime is not None:
                logger.debug("Reusing cached handler", exit=exit_name)
                return await self._check_cached(exit_name, runtime)

            return await self._provision(exit_name, exit_config)

    async def _check_cached(self, exit_name: str, runtime: ExitRuntime) -> ExitHandler:
        """Return the cached handler only while its container is healthy."""
        try:
            status = await self._run(self._sync_health_status, runtime.container_id)
        except DockerException as e:
            raise ProvisionError(
                f"exit '{exit_name}': failed to inspect container '{runtime.container_name}': {e}",
                exit_name=exit_name,
                container_name=runtime.container_name
            ) from e

        if status is not None and status != "healthy":
            logger.warning("Cached exit is not healthy", exit=exit_name, container=runtime.container_name, health=status)
            raise ProvisionError(
                f"exit '{exit_name}' not healthy",
                exit_name=exit_name,
                container_name=runtime.container_name
            )

        return runtime.handler

    async def _provision(self, exit_name: str, exit_config: ExitConfig) -> ExitHandler:
        """Create (or adopt) the exit's container and wait for it to be healthy."""
        deadline = time.monotonic() + self.config.health_timeout
        container_name = self.container_name_for(exit_name)

        logger.info(
            f"Creating new handler for exit '{exit_name}'",
            country=exit_config.country,
            container=container_name
        )

        await self._ensure_network(exit_name)

        container_id = await self._find_container(exit_name, container_name)
        if container_id is None:
            logger.info(f"Container '{container_name}' does not exist, creating it")
            await self._ensure_image(exit_name)
            container_id = await self._create_container(exit_name, container_name, exit_config)
        else:
            logger.info(f"Reusing existing container '{container_name}'", container_id=container_id[:12])

        # Tracked before health is known so close() can stop it
        runtime = ExitRuntime(container_id=container_id, container_name=container_name)
        self.runtimes[exit_name] = runtime
        runtime.log_stream = ContainerLogStream(self.client, container_id, container_name).start()

        try:
            await self._wait_for_healthy(exit_name, container_name, deadline)
        except (Exception, asyncio.CancelledError) as e:
            logger.error(f"Container '{container_name}' failed health check: {e}", exit=exit_name)
            runtime.log_stream.cancel()
            self.runtimes.pop(exit_name, None)
            await self._stop_after_failure(runtime)
            raise

        proxy_url = f"http://{container_name}:{self.config.proxy_port}"
        handler = ReverseProxy(proxy=proxy_url)
        runtime.handler = handler

        logger.info(f"Handler created and cached for exit '{exit_name}'", proxy=proxy_url)
        return handler

    async def _ensure_network(self, exit_name: str) -> None:
        """Create the managed network unless it already exists."""
        try:
            if await self._run(self.client.network.exists, self.network):
                logger.debug(f"Network '{self.network}' already exists")
                return

            logger.info(f"Creating network '{self.network}'")
            await self._run(self.client.network.create, self.network)
        except DockerException as e:
            logger.error(f"Failed to ensure network '{self.network}': {e}")
            raise ProvisionError(
                f"exit '{exit_name}': failed to ensure network '{self.network}': {e}",
                exit_name=exit_name
            ) from e

    async def _find_container(self, exit_name: str, container_name: str) -> Optional[str]:
        """Return the ID of an existing container named ``container_name``."""
        try:
            return await self._run(self._sync_container_id, container_name)
        except DockerException as e:
            raise ProvisionError(
                f"exit '{exit_name}': failed to inspect container '{container_name}': {e}",
                exit_name=exit_name,
                container_name=container_name
            ) from e

    def _sync_container_id(self, container_name: str) -> Optional[str]:
        try:
            return self.client.container.inspect(container_name).id
        except NoSuchContainer:
            return None

    async def _ensure_image(self, exit_name: str) -> None:
        """Pull the gluetun image unless it is present locally.

        The pull call returns only once the whole image has been downloaded.
        """
        try:
            if await self._run(self.client.image.exists, self.image):
                return

            logger.info(f"Pulling image {self.image}")
            await self._run(self.client.image.pull, self.image, quiet=True)
        except DockerException as e:
            logger.error(f"Failed to pull image {self.image}: {e}")
            raise ProvisionError(
                f"exit '{exit_name}': failed to pull image '{self.image}': {e}",
                exit_name=exit_name
            ) from e

    async def _create_container(self, exit_name: str, container_name: str, exit_config: ExitConfig) -> str:
        try:
            return await self._run(self._sync_create_container, exit_name, container_name, exit_config)
        except DockerException as e:
            logger.error(f"Failed to create container '{container_name}': {e}")
            raise ProvisionError(
                f"exit '{exit_name}': failed to create container '{container_name}': {e}",
                exit_name=exit_name,
                container_name=container_name
            ) from e

    def _sync_create_container(self, exit_name: str, container_name: str, exit_config: ExitConfig) -> str:
        """Synchronously create and start a gluetun container."""
        logger.info(f"Creating container '{container_name}' with {self.image}")

        envs = {
            "HTTPPROXY": "on",
            "SERVER_COUNTRIES": exit_config.country,
            "VPN_SERVICE_PROVIDER": self.config.vpn_service_provider,
            "OPENVPN_USER": self.config.openvpn_user,
            "OPENVPN_PASSWORD": self.config.openvpn_password,
        }

        container = self.client.container.create(
            self.image,
            name=container_name,
            envs=envs,
            cap_add=["NET_ADMIN"],
            devices=["/dev/net/tun:/dev/net/tun:rwm"],
            networks=[self.network],
            labels={**self.config.labels, "geoswitch.exit": exit_name},
            remove=True
        )

        logger.info(f"Starting container '{container_name}'", container_id=container.id[:12])
        self.client.container.start(container)
        return container.id

    def _sync_health_status(self, container: str) -> Optional[str]:
        """Return the container's health status, or None without a healthcheck."""
        state = self.client.container.inspect(container).state
        if state is None or state.health is None:
            return None
        return state.health.status

    async def _wait_for_healthy(self, exit_name: str, container_name: str, deadline: float) -> None:
        """Poll health until healthy, unhealthy, or ``deadline`` passes."""
        while True:
            if time.monotonic() > deadline:
                raise ProvisionError(
                    f"container {container_name} did not become healthy in time",
                    exit_name=exit_name,
                    container_name=container_name
                )

            try:
                status = await self._run(self._sync_health_status, container_name)
            except DockerException as e:
                raise ProvisionError(
                    f"exit '{exit_name}': failed to inspect container '{container_name}': {e}",
                    exit_name=exit_name,
                    container_name=container_name
                ) from e

            if status is None:
                raise ProvisionError(
                    f"container {container_name} has no healthcheck configured",
                    exit_name=exit_name,
                    container_name=container_name
                )

            if status == "healthy":
                logger.info(f"Container '{container_name}' is healthy")
                return

            if status == "unhealthy":
                raise ProvisionError(
                    f"container {container_name} is unhealthy",
                    exit_name=exit_name,
                    container_name=container_name
                )

            await asyncio.sleep(self.config.health_interval)

    async def _stop_container(self, runtime: ExitRuntime) -> None:
        await asyncio.wait_for(
            self._run(self.client.container.stop, runtime.container_id, time=self.config.stop_timeout),
            timeout=self.config.stop_timeout + STOP_GRACE_SECONDS
        )

    async def _stop_after_failure(self, runtime: ExitRuntime) -> None:
        """Best-effort stop of a container that failed provisioning."""
        try:
            await self._stop_container(runtime)
        except Exception as e:
            logger.warning(f"Failed to stop container '{runtime.container_name}' after failure: {e}")

    async def close(self) -> None:
        """Stop every tracked container and release the Docker client.

        Raises:
            ShutdownError: After all cleanup, if any resource failed to stop
        """
        async with self._lock:
            if self.client is None:
                return

            logger.info(f"Shutting down provider, cleaning up {len(self.runtimes)} runtimes")
            errors: List[Tuple[str, BaseException]] = []

            for exit_name, runtime in self.runtimes.items():
                logger.info(f"Stopping container '{runtime.container_name}' for exit '{exit_name}'")
                if runtime.log_stream is not None:
                    runtime.log_stream.cancel()

                try:
                    await self._stop_container(runtime)
                except Exception as e:
                    logger.error(f"Error stopping container '{runtime.container_name}': {e}")
                    errors.append((f"container '{runtime.container_name}'", e))

                if runtime.handler is not None:
                    try:
                        await runtime.handler.aclose()
                    except Exception as e:
                        logger.error(f"Error closing handler for exit '{exit_name}': {e}")
                        errors.append((f"handler for exit '{exit_name}'", e))

            self.runtimes.clear()

            logger.info("Closing docker client")
            self.client = None
            self._executor.shutdown(wait=False)

            if errors:
                raise ShutdownError(errors)
