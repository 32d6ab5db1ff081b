"""Proxy module - intent parsing, orchestration and the reverse proxy primitive."""

from .intent import (
    RequestContext,
    IntentParser,
    header_exit_parser,
    path_intent_parser,
    parse_request_intent,
    split_path,
)
from .reverse_proxy import ReverseProxy
from .handler import ProxyHandler, build_outbound_request

__all__ = [
    'RequestContext',
    'IntentParser',
    'header_exit_parser',
    'path_intent_parser',
    'parse_request_intent',
    'split_path',
    'ReverseProxy',
    'ProxyHandler',
    'build_outbound_request',
]
