"""Tests for the gluetun exit provider against an in-memory docker client."""

import asyncio

import pytest

from geoswitch.config import ExitConfig
from geoswitch.errors import ProvisionError, ShutdownError
from geoswitch.provider import GluetunProvider
from geoswitch.proxy import ReverseProxy

KOREA = ExitConfig(provider="gluetun", country="Korea")
UK = ExitConfig(provider="gluetun", country="United Kingdom")


@pytest.mark.provider
class TestGluetunProvisioning:
    """Test container creation for a fresh exit."""

    @pytest.mark.asyncio
    async def test_first_request_provisions_container(self, gluetun_provider, fake_docker):
        handler = await gluetun_provider.get_handler("kr", KOREA)

        assert isinstance(handler, ReverseProxy)
        assert handler.proxy == "http://gluetun-kr:8888"
        assert fake_docker.count("network.create") == 1
        assert fake_docker.count("image.pull") == 1
        assert fake_docker.count("create") == 1
        assert fake_docker.count("start") == 1
        assert "kr" in gluetun_provider.runtimes

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_container_options(self, gluetun_provider, fake_docker):
        await gluetun_provider.get_handler("kr", KOREA)

        options = fake_docker.containers["gluetun-kr"].config
        assert options.image == "gluetun:test"
        assert options.envs["HTTPPROXY"] == "on"
        assert options.envs["SERVER_COUNTRIES"] == "Korea"
        assert options.cap_add == ["NET_ADMIN"]
        assert options.devices == ["/dev/net/tun:/dev/net/tun:rwm"]
        assert options.networks == ["test-net"]
        assert options.labels["geoswitch.exit"] == "kr"
        assert options.labels["managed-by"] == "geoswitch"
        assert options.remove is True

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_existing_network_and_image_are_reused(self, gluetun_provider, fake_docker):
        fake_docker.networks.add("test-net")
        fake_docker.images.add("gluetun:test")

        await gluetun_provider.get_handler("kr", KOREA)

        assert fake_docker.count("network.create") == 0
        assert fake_docker.count("image.pull") == 0

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_existing_container_is_adopted(self, gluetun_provider, fake_docker):
        fake_docker.add_container("gluetun-kr")

        handler = await gluetun_provider.get_handler("kr", KOREA)

        assert handler is not None
        assert fake_docker.count("create") == 0
        assert fake_docker.count("image.pull") == 0
        assert gluetun_provider.runtimes["kr"].container_id == "id-gluetun-kr"

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_waits_while_starting(self, gluetun_provider, fake_docker):
        fake_docker.health["gluetun-kr"] = ["starting", "starting", "healthy"]

        handler = await gluetun_provider.get_handler("kr", KOREA)

        assert handler is not None
        assert fake_docker.count("inspect") >= 4

        await gluetun_provider.close()


@pytest.mark.provider
class TestGluetunCaching:
    """Test handler reuse and concurrent callers."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_container(self, gluetun_provider, fake_docker):
        fake_docker.health["gluetun-kr"] = ["starting", "healthy"]

        handlers = await asyncio.gather(*[gluetun_provider.get_handler("kr", KOREA) for _ in range(5)])

        assert fake_docker.count("create") == 1
        assert all(handler is handlers[0] for handler in handlers)

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_cache_hit_rechecks_health(self, gluetun_provider, fake_docker):
        first = await gluetun_provider.get_handler("kr", KOREA)
        inspections = fake_docker.count("inspect")

        second = await gluetun_provider.get_handler("kr", KOREA)

        assert second is first
        assert fake_docker.count("inspect") == inspections + 1
        assert fake_docker.count("create") == 1

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_unhealthy_cached_container_is_rejected(self, gluetun_provider, fake_docker):
        await gluetun_provider.get_handler("kr", KOREA)
        fake_docker.health["gluetun-kr"] = ["unhealthy"]

        with pytest.raises(ProvisionError, match="not healthy"):
            await gluetun_provider.get_handler("kr", KOREA)

        assert "kr" in gluetun_provider.runtimes

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_provisioning_serializes_across_exits(self, gluetun_provider, fake_docker):
        fake_docker.health["gluetun-kr"] = ["starting", "starting", "starting", "healthy"]

        await asyncio.gather(
            gluetun_provider.get_handler("kr", KOREA),
            gluetun_provider.get_handler("uk", UK),
        )

        calls = fake_docker.calls
        last_kr_inspect = max(i for i, call in enumerate(calls) if call == ("inspect", "gluetun-kr"))
        uk_create = calls.index(("create", "gluetun-uk"))
        assert uk_create > last_kr_inspect

        await gluetun_provider.close()


@pytest.mark.provider
class TestGluetunFailures:
    """Test rollback when a container never becomes healthy."""

    @pytest.mark.asyncio
    async def test_timeout_rolls_back(self, gluetun_provider, fake_docker):
        fake_docker.health["gluetun-kr"] = ["starting"]

        with pytest.raises(ProvisionError, match="did not become healthy in time"):
            await gluetun_provider.get_handler("kr", KOREA)

        assert "kr" not in gluetun_provider.runtimes
        assert ("stop", "gluetun-kr") in fake_docker.calls

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_unhealthy_rolls_back(self, gluetun_provider, fake_docker):
        fake_docker.health["gluetun-kr"] = ["starting", "unhealthy"]

        with pytest.raises(ProvisionError, match="is unhealthy"):
            await gluetun_provider.get_handler("kr", KOREA)

        assert "kr" not in gluetun_provider.runtimes

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_missing_healthcheck_fails(self, gluetun_provider, fake_docker):
        fake_docker.health["gluetun-kr"] = [None]

        with pytest.raises(ProvisionError, match="no healthcheck configured"):
            await gluetun_provider.get_handler("kr", KOREA)

        assert "kr" not in gluetun_provider.runtimes

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_next_request_provisions_again(self, gluetun_provider, fake_docker):
        fake_docker.health["gluetun-kr"] = ["unhealthy"]
        with pytest.raises(ProvisionError):
            await gluetun_provider.get_handler("kr", KOREA)

        fake_docker.health["gluetun-kr"] = ["healthy"]
        handler = await gluetun_provider.get_handler("kr", KOREA)

        assert handler is not None
        assert fake_docker.count("create") == 2

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_failed_stop_after_failure_is_not_raised(self, gluetun_provider, fake_docker):
        fake_docker.health["gluetun-kr"] = ["unhealthy"]
        fake_docker.fail_stop.add("gluetun-kr")

        with pytest.raises(ProvisionError, match="is unhealthy"):
            await gluetun_provider.get_handler("kr", KOREA)

        assert "kr" not in gluetun_provider.runtimes

        await gluetun_provider.close()


@pytest.mark.provider
class TestGluetunShutdown:
    """Test provider close."""

    @pytest.mark.asyncio
    async def test_close_stops_every_container(self, gluetun_provider, fake_docker):
        await gluetun_provider.get_handler("kr", KOREA)
        await gluetun_provider.get_handler("uk", UK)

        await gluetun_provider.close()

        assert ("stop", "gluetun-kr") in fake_docker.calls
        assert ("stop", "gluetun-uk") in fake_docker.calls
        assert gluetun_provider.runtimes == {}
        assert gluetun_provider.client is None

    @pytest.mark.asyncio
    async def test_close_continues_past_failures(self, gluetun_provider, fake_docker):
        await gluetun_provider.get_handler("kr", KOREA)
        await gluetun_provider.get_handler("uk", UK)
        fake_docker.fail_stop.add("gluetun-kr")

        with pytest.raises(ShutdownError) as exc_info:
            await gluetun_provider.close()

        assert len(exc_info.value.errors) == 1
        assert "gluetun-kr" in exc_info.value.errors[0][0]
        assert ("stop", "gluetun-uk") in fake_docker.calls
        assert gluetun_provider.runtimes == {}

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, gluetun_provider, fake_docker):
        await gluetun_provider.close()
        await gluetun_provider.close()

        assert fake_docker.count("stop") == 0

    @pytest.mark.asyncio
    async def test_closed_provider_rejects_requests(self, gluetun_provider):
        await gluetun_provider.close()

        with pytest.raises(ProvisionError, match="closed"):
            await gluetun_provider.get_handler("kr", KOREA)

    def test_container_name(self, gluetun_provider):
        assert gluetun_provider.container_name_for("kr") == "gluetun-kr"

    def test_docker_client_is_required_when_not_given(self, provider_options, monkeypatch):
        class Unreachable:
            def __init__(self, host=None):
                pass

            def version(self):
                raise RuntimeError("cannot connect")

        monkeypatch.setattr("geoswitch.provider.gluetun.DockerClient", Unreachable)

        with pytest.raises(RuntimeError, match="cannot connect"):
            GluetunProvider(provider_options)


async def wait_for_runtime(provider: GluetunProvider, exit_name: str):
    """Return the runtime once provisioning has registered it."""
    for _ in range(200):
        runtime = provider.runtimes.get(exit_name)
        if runtime is not None:
            return runtime
        await asyncio.sleep(0.005)
    raise AssertionError(f"runtime for '{exit_name}' was never registered")


@pytest.mark.provider
class TestGluetunLogStreams:
    """Test cancellation of container log streams and provisioning."""

    @pytest.mark.asyncio
    async def test_cancelled_request_rolls_back(self, gluetun_provider, fake_docker):
        fake_docker.health["gluetun-kr"] = ["starting"]

        task = asyncio.create_task(gluetun_provider.get_handler("kr", KOREA))
        runtime = await wait_for_runtime(gluetun_provider, "kr")
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert "kr" not in gluetun_provider.runtimes
        assert runtime.log_stream.cancelled
        assert fake_docker.count("stop") == 1

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_failed_health_cancels_log_stream(self, gluetun_provider, fake_docker):
        fake_docker.health["gluetun-kr"] = ["starting"]

        task = asyncio.create_task(gluetun_provider.get_handler("kr", KOREA))
        runtime = await wait_for_runtime(gluetun_provider, "kr")

        with pytest.raises(ProvisionError, match="did not become healthy in time"):
            await task

        assert runtime.log_stream.cancelled
        assert "kr" not in gluetun_provider.runtimes

        await gluetun_provider.close()

    @pytest.mark.asyncio
    async def test_close_cancels_every_log_stream(self, gluetun_provider):
        await gluetun_provider.get_handler("kr", KOREA)
        await gluetun_provider.get_handler("uk", UK)
        streams = [runtime.log_stream for runtime in gluetun_provider.runtimes.values()]

        await gluetun_provider.close()

        assert len(streams) == 2
        assert all(stream.cancelled for stream in streams)

    @pytest.mark.asyncio
    async def test_close_continues_past_handler_failures(self, gluetun_provider, fake_docker):
        await gluetun_provider.get_handler("kr", KOREA)
        await gluetun_provider.get_handler("uk", UK)

        async def broken_aclose():
            raise RuntimeError("client already closed")

        gluetun_provider.runtimes["kr"].handler.aclose = broken_aclose

        with pytest.raises(ShutdownError) as exc_info:
            await gluetun_provider.close()

        assert [resource for resource, _ in exc_info.value.errors] == ["handler for exit 'kr'"]
        assert ("stop", "gluetun-uk") in fake_docker.calls
        assert gluetun_provider.runtimes == {}
        assert gluetun_provider.client is None
