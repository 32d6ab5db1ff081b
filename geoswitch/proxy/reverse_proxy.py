"""Stateless reverse proxy used as the per-exit request handler."""

import time
from typing import List, Optional, Tuple

import httpx
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

from ..shared.logging import get_logger
from ..shared.settings import Settings

logger = get_logger(__name__)

HOP_BY_HOP_HEADERS = frozenset([
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'proxy-connection',
    'te',
    'trailer',
    'transfer-encoding',
    'upgrade',
])


def strip_hop_by_hop(headers: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Drop hop-by-hop headers, including any named by ``Connection``."""
    extra = set()
    for name, value in headers:
        if name.lower() == 'connection':
            extra.update(token.strip().lower() for token in value.split(',') if token.strip())
    return [
        (name, value) for name, value in headers
        if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() not in extra
    ]


class ReverseProxy:
    """Forwards fully-addressed outbound requests and relays the response.

    The proxy makes no routing decisions: the caller sets the URL and Host
    header before invoking it. Egress is controlled by the transport, which
    lets every exit route through its own forward proxy.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        proxy: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        verify: Optional[bool] = None
    ):
        """Initialize reverse proxy.

        Args:
            transport: Custom httpx transport (default: httpx connection pool)
            proxy: Forward proxy URL; ignored when ``transport`` is given
            timeout: Upstream timeouts (default: from Settings)
            verify: Check upstream TLS certificates (default: PROXY_VERIFY_TLS)
        """
        if transport is None:
            if verify is None:
                verify = Settings.PROXY_VERIFY_TLS
            transport = httpx.AsyncHTTPTransport(proxy=proxy, verify=verify)

        self.proxy = proxy
        self.client = httpx.AsyncClient(
            transport=transport,
            follow_redirects=False,
            timeout=timeout or httpx.Timeout(
                connect=float(Settings.PROXY_CONNECT_TIMEOUT),
                read=float(Settings.PROXY_REQUEST_TIMEOUT),
                write=10.0,
                pool=None
            ),
        )

    async def __call__(self, outbound: httpx.Request) -> Response:
        """Send ``outbound`` upstream and stream the response back.

        Raises:
            RuntimeError: If the outbound URL has no host
        """
        if not outbound.url.host:
            raise RuntimeError("ReverseProxy requires the outbound URL host to be set")

        start_time = time.time()
        try:
            upstream = await self.client.send(outbound, stream=True)
        except httpx.TimeoutException as e:
            logger.error("Upstream request timeout", url=str(outbound.url), proxy=self.proxy, error=str(e))
            return Response(content="Gateway Timeout", status_code=504)
        except httpx.RequestError as e:
            logger.error("Upstream request error", url=str(outbound.url), proxy=self.proxy, error=str(e))
            return Response(content="Bad Gateway", status_code=502)

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Upstream responded",
            method=outbound.method,
            url=str(outbound.url),
            status=upstream.status_code,
            duration_ms=round(duration_ms, 2)
        )

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose)
        )
        raw_headers = [(name.decode('latin-1'), value.decode('latin-1')) for name, value in upstream.headers.raw]
        response.raw_headers = [
            (name.encode('latin-1'), value.encode('latin-1'))
            for name, value in strip_hop_by_hop(raw_headers)
        ]
        return response

    async def aclose(self) -> None:
        """Release the underlying HTTP client."""
        await self.client.aclose()
