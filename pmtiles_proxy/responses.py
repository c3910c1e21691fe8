"""Transport-neutral request and response types."""

import base64
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pmtiles_proxy.exceptions import ProxyError


class Transport(str, Enum):
    """Invocation surface that delivered a request."""

    REST_API = "rest_api"  # API Gateway REST proxy integration
    HTTP_API = "http_api"  # HTTP API / function URL behind a CDN
    ASGI = "asgi"  # uvicorn, GZip middleware in front

    @property
    def compresses_responses(self) -> bool:
        """Whether something downstream of us compresses the body."""
        return self is not Transport.REST_API


@dataclass(frozen=True)
class InboundRequest:
    """A request normalized from any transport."""

    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    transport: Transport = Transport.HTTP_API

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


def normalize_headers(headers: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Lower-case header names; drop null values."""
    if not headers:
        return {}
    return {str(k).lower(): str(v) for k, v in headers.items() if v is not None}


@dataclass
class ProxyResponse:
    """Status, headers and body, rendered per transport by the hosting surface."""

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    binary: bool = False

    def to_lambda(self) -> Dict[str, Any]:
        """Render as an API Gateway / function URL proxy response."""
        if self.binary:
            return {
                "statusCode": self.status_code,
                "headers": dict(self.headers),
                "body": base64.b64encode(self.body).decode("ascii"),
                "isBase64Encoded": True,
            }
        return {
            "statusCode": self.status_code,
            "headers": dict(self.headers),
            "body": self.body.decode("utf-8"),
            "isBase64Encoded": False,
        }


def empty_response(status_code: int, headers: Mapping[str, str]) -> ProxyResponse:
    return ProxyResponse(status_code=status_code, headers=dict(headers))


def json_response(
    status_code: int, document: Any, headers: Mapping[str, str]
) -> ProxyResponse:
    out = dict(headers)
    out["Content-Type"] = "application/json"
    return ProxyResponse(
        status_code=status_code,
        headers=out,
        body=json.dumps(document).encode("utf-8"),
    )


def error_response(
    exc: ProxyError, path: str, headers: Mapping[str, str]
) -> ProxyResponse:
    """
    Render a ProxyError.

    Args:
        exc: The error to render.
        path: Request path, echoed in the error body.
        headers: Base headers (CORS) for the response.

    Returns:
        Empty response for body-less kinds, otherwise a JSON error document.
    """
    if not exc.has_body:
        return empty_response(exc.status_code, headers)
    return json_response(
        exc.status_code,
        {
            "error": exc.kind.value,
            "message": exc.public_message,
            "path": path,
        },
        headers,
    )
