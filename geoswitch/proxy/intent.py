"""Request intent parsing.

An intent is the (target URL, exit name) pair a caller encodes in a request.
Parsers are plain callables over a ``RequestContext`` and run in the order the
caller supplies, so precedence between sources (header over path, for
example) is decided purely by ordering:

    ctx = parse_request_intent(
        request,
        header_exit_parser("X-GeoSwitch-Exit"),
        path_intent_parser,
    )
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional
from urllib.parse import SplitResult, unquote, urlsplit

from starlette.requests import Request

from ..shared.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RequestContext:
    """Per-request parsing state shared by the parsers."""

    original: Request
    parsed_target: Optional[SplitResult] = None
    parsed_exit: Optional[str] = None
    remaining_path: List[str] = field(default_factory=list)


IntentParser = Callable[[RequestContext], None]


def split_path(path: str) -> List[str]:
    """Split a URL path into segments, ignoring bordering slashes.

    Inner empty segments (from ``//``) are kept so an embedded ``http://``
    survives a split and re-join.
    """
    path = path.removeprefix("/").removesuffix("/")
    if not path:
        return []
    return path.split("/")


def request_path(request: Request) -> str:
    """Return the still percent-encoded path of an incoming request."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        # Some ASGI clients include the query string in raw_path
        return raw_path.decode("latin-1").split("?", 1)[0]
    return request.url.path


def _parse_absolute_url(candidate: str) -> Optional[SplitResult]:
    try:
        parsed = urlsplit(candidate)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return parsed


def path_intent_parser(ctx: RequestContext) -> None:
    """Find an absolute URL embedded in the remaining path.

    The earliest index whose suffix parses as an absolute URL wins. Segments
    in front of it are control segments; the first one, percent-decoded,
    becomes the exit name unless an exit was already chosen by an earlier
    parser.
    """
    if ctx.parsed_target is not None or not ctx.remaining_path:
        return

    query = ctx.original.url.query
    for i in range(len(ctx.remaining_path)):
        candidate = "/".join(ctx.remaining_path[i:])
        if query:
            candidate += "?" + query

        target = _parse_absolute_url(candidate)
        if target is None:
            continue

        ctx.parsed_target = target
        control = ctx.remaining_path[:i]

        if ctx.parsed_exit is None and control:
            ctx.parsed_exit = unquote(control[0])
            ctx.remaining_path = control[1:]
        else:
            ctx.remaining_path = control

        logger.debug(
            "Path intent parsed",
            exit=ctx.parsed_exit,
            target=target.geturl(),
            remaining=ctx.remaining_path
        )
        return


def header_exit_parser(header_name: str) -> IntentParser:
    """Build a parser that takes the exit name from ``header_name``."""

    def parse(ctx: RequestContext) -> None:
        if ctx.parsed_exit is not None:
            return

        value = ctx.original.headers.get(header_name, "").strip()
        if not value:
            return

        ctx.parsed_exit = value
        logger.debug(f"Found exit '{value}' in header '{header_name}'")

    return parse


def parse_request_intent(request: Request, *parsers: IntentParser) -> RequestContext:
    """Run ``parsers`` in order over a fresh context for ``request``.

    Raises:
        ParseError: Propagated unchanged from the first failing parser
    """
    ctx = RequestContext(original=request, remaining_path=split_path(request_path(request)))

    for parse in parsers:
        parse(ctx)

    logger.debug(
        "Request intent parsed",
        method=request.method,
        exit=ctx.parsed_exit,
        target=ctx.parsed_target.geturl() if ctx.parsed_target else None,
        remaining=ctx.remaining_path
    )
    return ctx
