"""Pytest configuration and shared fixtures.

The gluetun provider is exercised against ``FakeDocker``, an in-memory
stand-in for the subset of the python_on_whales client the provider uses.
"""

import threading
from types import SimpleNamespace
from typing import Dict, List, Optional
from urllib.parse import unquote

import httpx
import pytest
from python_on_whales.exceptions import DockerException, NoSuchContainer
from starlette.requests import Request

from geoswitch.config import Config, ExitConfig
from geoswitch.provider import GluetunProvider, GluetunProviderConfig


class FakeDocker:
    """In-memory docker client.

    ``health`` maps container names to the statuses successive inspections
    report; the last status repeats once the others are used up. A ``None``
    status means the container has no healthcheck.
    """

    def __init__(self):
        self.networks = set()
        self.images = set()
        self.containers: Dict[str, SimpleNamespace] = {}
        self.health: Dict[str, List[Optional[str]]] = {}
        self.fail_stop = set()
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

        self.network = SimpleNamespace(exists=self._network_exists, create=self._network_create)
        self.image = SimpleNamespace(exists=self._image_exists, pull=self._image_pull)
        self.container = SimpleNamespace(
            inspect=self._inspect,
            create=self._create,
            start=self._start,
            stop=self._stop,
            logs=self._logs,
        )

    def record(self, *call):
        with self._lock:
            self.calls.append(call)

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    def add_container(self, name: str, health: Optional[List[Optional[str]]] = None) -> SimpleNamespace:
        container = SimpleNamespace(id=f"id-{name}", name=name, config=None)
        self.containers[name] = container
        if health is not None:
            self.health[name] = health
        return container

    def _lookup(self, ref) -> Optional[SimpleNamespace]:
        ref = getattr(ref, 'id', ref)
        for container in self.containers.values():
            if ref in (container.id, container.name):
                return container
        return None

    def _network_exists(self, name):
        self.record("network.exists", name)
        return name in self.networks

    def _network_create(self, name):
        self.record("network.create", name)
        self.networks.add(name)

    def _image_exists(self, image):
        self.record("image.exists", image)
        return image in self.images

    def _image_pull(self, image, quiet=False):
        self.record("image.pull", image)
        self.images.add(image)

    def _inspect(self, ref):
        container = self._lookup(ref)
        self.record("inspect", container.name if container else ref)
        if container is None:
            raise NoSuchContainer(["docker", "container", "inspect", str(ref)], 1)

        with self._lock:
            statuses = self.health.setdefault(container.name, ["healthy"])
            status = statuses.pop(0) if len(statuses) > 1 else statuses[0]

        health = SimpleNamespace(status=status) if status is not None else None
        return SimpleNamespace(id=container.id, name=container.name, state=SimpleNamespace(health=health))

    def _create(self, image, name=None, envs=None, cap_add=None, devices=None, networks=None,
                labels=None, remove=False):
        self.record("create", name)
        container = self.add_container(name)
        container.config = SimpleNamespace(
            image=image,
            envs=envs,
            cap_add=cap_add,
            devices=devices,
            networks=networks,
            labels=labels,
            remove=remove,
        )
        return container

    def _start(self, container):
        self.record("start", container.name)

    def _stop(self, ref, time=None):
        container = self._lookup(ref)
        name = container.name if container else ref
        self.record("stop", name)
        if name in self.fail_stop:
            raise DockerException(["docker", "container", "stop", name], 1)
        if container is not None and container.config is not None and container.config.remove:
            del self.containers[name]

    def _logs(self, ref, follow=False, stream=False):
        self.record("logs", ref)
        return iter([("stdout", b"INFO [vpn] starting\n")])


class ChunkedBody(httpx.AsyncByteStream):
    """Response body delivered chunk by chunk, as a network transport delivers it."""

    def __init__(self, *chunks: bytes):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


@pytest.fixture
def chunked_body():
    """Provide the streamed body type for mock upstreams."""
    return ChunkedBody


@pytest.fixture
def fake_docker() -> FakeDocker:
    """Provide an empty in-memory docker client."""
    return FakeDocker()


@pytest.fixture
def provider_options() -> GluetunProviderConfig:
    """Provider options with short health timings."""
    return GluetunProviderConfig(
        network="test-net",
        image="gluetun:test",
        health_interval=0.01,
        health_timeout=0.5,
        stop_timeout=1,
    )


@pytest.fixture
def gluetun_provider(fake_docker, provider_options) -> GluetunProvider:
    """Provide a gluetun provider wired to the fake docker client."""
    return GluetunProvider(provider_options, client=fake_docker)


@pytest.fixture
def config() -> Config:
    """Provide a valid two-exit configuration."""
    return Config(
        default_exit="kr",
        exits={
            "kr": ExitConfig(provider="gluetun", country="Korea"),
            "uk": ExitConfig(provider="gluetun", country="United Kingdom"),
        },
    )


def build_request(path: str, headers: Optional[Dict[str, str]] = None, query: str = "",
                  method: str = "GET") -> Request:
    """Build a starlette request whose raw path is ``path``."""
    scope = {
        "type": "http",
        "method": method,
        "scheme": "http",
        "server": ("gateway", 8080),
        "path": unquote(path),
        "raw_path": path.encode("latin-1"),
        "query_string": query.encode("latin-1"),
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()],
    }
    return Request(scope)


@pytest.fixture
def make_request():
    """Provide the request builder."""
    return build_request
