"""
AWS Lambda entry point.

Accepts API Gateway REST proxy events (``pathParameters.proxy``) and HTTP API /
function URL events (``rawPath``). The service, its S3 client and block cache
are built once per container and reused across invocations.

Handler setting:
    pmtiles_proxy.lambda_handler.handler
"""

import asyncio
import functools
import logging
import os
from typing import Any, Dict, Optional

from pmtiles_proxy.config import load_settings
from pmtiles_proxy.responses import InboundRequest, Transport, normalize_headers
from pmtiles_proxy.service import TileService, build_service

logger = logging.getLogger("pmtiles_proxy")

_loop: Optional[asyncio.AbstractEventLoop] = None


def inbound_from_event(event: Dict[str, Any]) -> InboundRequest:
    """
    Normalize a Lambda proxy event into an InboundRequest.

    Args:
        event: REST API or HTTP API proxy event.

    Returns:
        The request with its path, lower-cased headers and transport.
    """
    headers = normalize_headers(event.get("headers"))
    proxy = (event.get("pathParameters") or {}).get("proxy")
    if proxy:
        return InboundRequest(
            path=f"/{proxy}", headers=headers, transport=Transport.REST_API
        )
    path = event.get("rawPath") or event.get("path") or ""
    return InboundRequest(path=path, headers=headers, transport=Transport.HTTP_API)


@functools.lru_cache(maxsize=None)
def get_service() -> TileService:
    """Build the container-wide service from environment configuration."""
    pid = os.getpid()
    logging.basicConfig(
        level=logging.INFO,
        format=f"%(levelname)s:\t[LAMBDA {pid}] %(message)s",
    )
    settings = load_settings()
    logger.info("PMTiles proxy configured for bucket '%s'", settings["bucket"])
    return build_service(settings)


def _event_loop() -> asyncio.AbstractEventLoop:
    # Cached futures are bound to the loop that created them
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop


def handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    """
    Lambda handler.

    Args:
        event: API Gateway or function URL proxy event.
        context: Lambda context (unused).

    Returns:
        Proxy integration response dictionary.
    """
    request = inbound_from_event(event)
    response = _event_loop().run_until_complete(get_service().handle(request))
    return response.to_lambda()
