"""Custom exceptions for the PMTiles proxy, each tagged with an error kind."""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Machine-readable error kinds, mapped one-to-one onto HTTP statuses."""

    INVALID_PATH = "INVALID_PATH"
    UNSUPPORTED_TILE_TYPE = "UNSUPPORTED_TILE_TYPE"
    EXTENSION_MISMATCH = "EXTENSION_MISMATCH"
    ZOOM_OUT_OF_RANGE = "ZOOM_OUT_OF_RANGE"
    INVALID_COORDINATE = "INVALID_COORDINATE"
    MISSING_HOST_FOR_METADATA = "MISSING_HOST_FOR_METADATA"
    UPSTREAM_ACCESS_DENIED = "UPSTREAM_ACCESS_DENIED"
    ARCHIVE_NOT_FOUND = "ARCHIVE_NOT_FOUND"
    STALE_ARCHIVE_READ = "STALE_ARCHIVE_READ"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    ARCHIVE_FORMAT = "ARCHIVE_FORMAT"
    INTERNAL = "INTERNAL"


STATUS_CODES = {
    ErrorKind.INVALID_PATH: 400,
    ErrorKind.UNSUPPORTED_TILE_TYPE: 500,
    ErrorKind.EXTENSION_MISMATCH: 400,
    ErrorKind.ZOOM_OUT_OF_RANGE: 404,
    ErrorKind.INVALID_COORDINATE: 404,
    ErrorKind.MISSING_HOST_FOR_METADATA: 501,
    ErrorKind.UPSTREAM_ACCESS_DENIED: 403,
    ErrorKind.ARCHIVE_NOT_FOUND: 404,
    ErrorKind.STALE_ARCHIVE_READ: 500,
    ErrorKind.UPSTREAM_UNAVAILABLE: 500,
    ErrorKind.ARCHIVE_FORMAT: 500,
    ErrorKind.INTERNAL: 500,
}

# Kinds whose message stays in the log; callers only see a generic message.
WITHHELD_KINDS = frozenset(
    {
        ErrorKind.STALE_ARCHIVE_READ,
        ErrorKind.UPSTREAM_UNAVAILABLE,
        ErrorKind.ARCHIVE_FORMAT,
        ErrorKind.INTERNAL,
    }
)

GENERIC_ERROR_MESSAGE = "Internal server error"


class ProxyError(Exception):
    """
    Base exception for proxy errors.

    Attributes:
        message: Human-readable error message (may contain internal detail).
        kind: The error kind, which determines the HTTP status.
        status_code: HTTP status code to return.
        has_body: Whether the rendered response carries a JSON error body.
    """

    has_body = True

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.INTERNAL) -> None:
        self.message = message
        self.kind = kind
        self.status_code = STATUS_CODES[kind]
        super().__init__(self.message)

    @property
    def public_message(self) -> str:
        """Message safe to return to the caller."""
        if self.kind in WITHHELD_KINDS:
            return GENERIC_ERROR_MESSAGE
        return self.message


class InvalidPathError(ProxyError):
    """Raised when a request path matches neither the tile nor the metadata grammar."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Invalid tile path: {path}", ErrorKind.INVALID_PATH)
        self.path = path


class UnsupportedTileTypeError(ProxyError):
    """Raised when an archive declares a tile type with no known extension."""

    def __init__(self, archive_name: str, tile_type: int) -> None:
        message = f"Unknown tile type {tile_type} in archive '{archive_name}'"
        super().__init__(message, ErrorKind.UNSUPPORTED_TILE_TYPE)
        self.tile_type = tile_type


class ExtensionMismatchError(ProxyError):
    """Raised when the requested extension does not match the archive's tile type."""

    def __init__(self, requested: str, actual: str) -> None:
        message = f"Bad request: requested .{requested} but archive has type .{actual}"
        super().__init__(message, ErrorKind.EXTENSION_MISMATCH)
        self.requested = requested
        self.actual = actual


class ZoomOutOfRangeError(ProxyError):
    """Raised when zoom level is outside the archive's zoom range."""

    has_body = False

    def __init__(self, z: int, min_z: int, max_z: int, archive_name: str) -> None:
        message = (
            f"Invalid zoom level {z} for archive '{archive_name}'. "
            f"Valid range: {min_z}-{max_z}"
        )
        super().__init__(message, ErrorKind.ZOOM_OUT_OF_RANGE)
        self.z = z
        self.min_z = min_z
        self.max_z = max_z


class InvalidCoordinateError(ProxyError):
    """Raised when a tile coordinate is outside the valid range for its zoom level."""

    def __init__(self, coord_name: str, coord_value: int, z: int) -> None:
        max_coord = (1 << z) - 1
        message = (
            f"Invalid {coord_name} coordinate {coord_value} for zoom {z}. "
            f"Valid range: 0-{max_coord}"
        )
        super().__init__(message, ErrorKind.INVALID_COORDINATE)


class MissingHostError(ProxyError):
    """Raised when TileJSON is requested but no public host name is known."""

    def __init__(self) -> None:
        super().__init__(
            "TileJSON requires PUBLIC_HOSTNAME", ErrorKind.MISSING_HOST_FOR_METADATA
        )


class UpstreamAccessDeniedError(ProxyError):
    """Raised when S3 refuses access to an archive object."""

    def __init__(self, key: str) -> None:
        super().__init__(
            f"Access denied reading archive object '{key}'",
            ErrorKind.UPSTREAM_ACCESS_DENIED,
        )
        self.key = key


class ArchiveNotFoundError(ProxyError):
    """Raised when the archive object (or its bucket) does not exist."""

    def __init__(self, key: str) -> None:
        super().__init__(
            f"Archive object '{key}' not found", ErrorKind.ARCHIVE_NOT_FOUND
        )
        self.key = key


class StaleArchiveReadError(ProxyError):
    """Raised when the archive object changed between reads of one logical access."""

    def __init__(
        self, key: str, expected_etag: Optional[str], actual_etag: Optional[str] = None
    ) -> None:
        message = f"Archive object '{key}' changed during read (expected ETag {expected_etag}"
        if actual_etag:
            message += f", got {actual_etag}"
        super().__init__(message + ")", ErrorKind.STALE_ARCHIVE_READ)
        self.expected_etag = expected_etag
        self.actual_etag = actual_etag


class UpstreamUnavailableError(ProxyError):
    """Raised on S3 transport failures, timeouts and unexpected S3 errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorKind.UPSTREAM_UNAVAILABLE)


class ArchiveFormatError(ProxyError):
    """Raised when archive bytes cannot be decoded."""

    def __init__(self, archive_name: str, reason: str) -> None:
        super().__init__(
            f"Archive '{archive_name}' is unreadable. Reason: {reason}",
            ErrorKind.ARCHIVE_FORMAT,
        )
