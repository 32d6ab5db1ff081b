"""Proxy handler - resolves each request's intent and dispatches it through its exit."""

import time
from typing import Sequence
from urllib.parse import SplitResult

import httpx
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import Response

from ..config import ConfigExitResolver
from ..errors import ParseError, ResolutionError
from ..provider.base import ExitHandlerProvider
from ..shared.logging import get_logger
from .intent import IntentParser, parse_request_intent
from .reverse_proxy import strip_hop_by_hop

logger = get_logger(__name__)

SUPPORTED_SCHEMES = ("http", "https")


def build_outbound_request(request: Request, target: SplitResult, body: bytes) -> httpx.Request:
    """Build a fresh outbound request addressed to ``target``.

    Scheme, host, path and query come from the target; the fragment is
    dropped and the Host header is set to the target host.
    """
    url = httpx.URL(target._replace(fragment="").geturl())

    headers = [
        (name, value) for name, value in strip_hop_by_hop(list(request.headers.items()))
        if name.lower() not in ("host", "content-length")
    ]
    headers.append(("host", target.netloc.rsplit("@", 1)[-1]))

    return httpx.Request(request.method, url, headers=headers, content=body if body else None)


class ProxyHandler:
    """Per-request orchestration of intent parsing, exit resolution and dispatch."""

    def __init__(
        self,
        resolver: ConfigExitResolver,
        provider: ExitHandlerProvider,
        parsers: Sequence[IntentParser]
    ):
        """Initialize proxy handler.

        Args:
            resolver: Maps parsed exit names onto declared exits
            provider: Supplies the live handler for a resolved exit
            parsers: Intent parsers, run in this order for every request
        """
        self.resolver = resolver
        self.provider = provider
        self.parsers = list(parsers)

    async def handle_request(self, request: Request) -> Response:
        """Handle incoming proxy request.

        Raises:
            HTTPException: 400 for unusable intent or unknown exit, 502 when
                the exit's handler cannot be obtained
        """
        start_time = time.time()
        client_ip = request.client.host if request.client else "unknown"
        logger.info(f"{request.method} {request.url.path} from {client_ip}")

        # 1. Parse intent
        try:
            ctx = parse_request_intent(request, *self.parsers)
        except ParseError as e:
            logger.warning("Could not parse request intent", error=str(e))
            raise HTTPException(400, "Could not parse request intent")

        if ctx.remaining_path:
            logger.warning("Unconsumed path segments", remaining=ctx.remaining_path)

        # 2. Validate target
        target = ctx.parsed_target
        if target is None:
            logger.warning("No target URL in request", path=request.url.path)
            raise HTTPException(400, "Target must be an absolute URL")

        if target.scheme not in SUPPORTED_SCHEMES:
            logger.warning("Unsupported target scheme", scheme=target.scheme)
            raise HTTPException(400, f"Unsupported target scheme '{target.scheme}'")

        # 3. Resolve exit
        try:
            exit_name, exit_config = self.resolver.resolve(ctx.parsed_exit)
        except ResolutionError as e:
            logger.warning("Exit resolution failed", error=str(e))
            raise HTTPException(400, str(e))

        # 4. Obtain exit handler
        try:
            handler = await self.provider.get_handler(exit_name, exit_config)
        except Exception as e:
            logger.error(f"Failed to get handler for exit '{exit_name}': {e}", exit=exit_name, error_type=type(e).__name__)
            raise HTTPException(502, f"Exit '{exit_name}' is unavailable")

        # 5. Rewrite and dispatch
        body = await request.body()
        outbound = build_outbound_request(request, target, body)
        logger.info(f"Proxying to {outbound.url} via exit '{exit_name}'")

        response = await handler(outbound)

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Request dispatched",
            exit=exit_name,
            status=response.status_code,
            duration_ms=round(duration_ms, 2)
        )
        return response
