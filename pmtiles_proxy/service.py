"""Request handling: routing, validation, stale-read retry and response shaping."""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from pmtiles_proxy.cache import SharedBlockCache
from pmtiles_proxy.config import ProxySettings
from pmtiles_proxy.exceptions import (
    ExtensionMismatchError,
    InvalidCoordinateError,
    InvalidPathError,
    MissingHostError,
    ProxyError,
    StaleArchiveReadError,
    UnsupportedTileTypeError,
    UpstreamUnavailableError,
    ZoomOutOfRangeError,
)
from pmtiles_proxy.reader import ArchiveHeader, ArchiveReader
from pmtiles_proxy.registry import ArchiveReaderRegistry
from pmtiles_proxy.responses import (
    InboundRequest,
    ProxyResponse,
    empty_response,
    error_response,
    json_response,
)
from pmtiles_proxy.routing import InvalidPath, MetadataRequest, TileRequest, parse_path
from pmtiles_proxy.source import SourceFactory, s3_source_factory
from pmtiles_proxy.utils import (
    content_etag,
    extension_matches,
    gzip_payload,
    tile_extension,
    tile_type_info,
)

logger = logging.getLogger("pmtiles_proxy")

T = TypeVar("T")

TILEJSON_VERSION = "3.0.0"
DISTRIBUTION_HOST_HEADER = "x-distribution-domain-name"


class TileService:
    """
    Turns inbound requests into tile and TileJSON responses.

    Every ProxyError is rendered into its status code here; anything else is
    logged and rendered as an opaque 500.
    """

    def __init__(self, registry: ArchiveReaderRegistry, settings: ProxySettings) -> None:
        self.registry = registry
        self.settings = settings

    def _base_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        cors_origin = self.settings.get("cors_origin")
        if cors_origin:
            headers["Access-Control-Allow-Origin"] = cors_origin
        return headers

    async def handle(self, request: InboundRequest) -> ProxyResponse:
        """
        Serve one request.

        Args:
            request: Normalized inbound request.

        Returns:
            The response to hand back to the transport.
        """
        headers = self._base_headers()
        intent = parse_path(request.path)

        try:
            if isinstance(intent, InvalidPath):
                raise InvalidPathError(intent.path)
            if isinstance(intent, MetadataRequest):
                return await self._serve_metadata(intent, request, headers)
            return await self._serve_tile(intent, request, headers)
        except ProxyError as exc:
            if exc.status_code >= 500:
                logger.error("%s - %s [%s]", exc.kind.value, exc.message, request.path)
            else:
                logger.warning("%s - %s [%s]", exc.kind.value, exc.message, request.path)
            return error_response(exc, request.path, headers)
        except Exception:
            logger.exception("Unexpected error serving %s", request.path)
            return error_response(ProxyError("unexpected error"), request.path, headers)

    async def _with_stale_retry(
        self, archive_name: str, operation: Callable[[ArchiveReader], Awaitable[T]]
    ) -> T:
        """
        Run a logical archive access, retrying once if the object changed mid-read.

        Raises:
            UpstreamUnavailableError: If the retry is also stale.
        """
        reader = self.registry.resolve(archive_name)
        try:
            return await operation(reader)
        except StaleArchiveReadError as exc:
            logger.warning(
                "Archive '%s' changed during read, retrying with a fresh header: %s",
                archive_name,
                exc.message,
            )
            reader.invalidate()

        try:
            return await operation(reader)
        except StaleArchiveReadError as exc:
            reader.invalidate()
            raise UpstreamUnavailableError(
                f"Archive '{archive_name}' changed twice during one request"
            ) from exc

    async def _serve_tile(
        self, tile: TileRequest, request: InboundRequest, headers: Dict[str, str]
    ) -> ProxyResponse:
        """
        Validate a tile request against the archive header and fetch the tile.

        Outcomes differ by why a tile is missing:

        - zoom outside the archive's range: 404 with an empty body
        - x or y outside the ``2**z`` grid: 404 INVALID_COORDINATE JSON error,
          not the 204 used for valid coordinates the archive has no tile for
        - coordinate inside the grid but absent from the archive: 204
        """
        async def read(reader: ArchiveReader) -> Tuple[ArchiveHeader, Optional[bytes]]:
            header = await reader.get_header()

            if not (header.min_zoom <= tile.z <= header.max_zoom):
                raise ZoomOutOfRangeError(
                    tile.z, header.min_zoom, header.max_zoom, tile.archive_name
                )
            if tile.x >= (1 << tile.z):
                raise InvalidCoordinateError("X", tile.x, tile.z)
            if tile.y >= (1 << tile.z):
                raise InvalidCoordinateError("Y", tile.y, tile.z)

            if tile_type_info(header.tile_type) is None:
                raise UnsupportedTileTypeError(tile.archive_name, header.tile_type)
            if not extension_matches(tile.ext, header.tile_type):
                raise ExtensionMismatchError(tile.ext, tile_extension(header.tile_type))

            return header, await reader.get_tile(tile.z, tile.x, tile.y)

        header, data = await self._with_stale_retry(tile.archive_name, read)
        if data is None:
            return empty_response(204, headers)

        info = tile_type_info(header.tile_type)
        etag = content_etag(data)
        headers["Cache-Control"] = self.settings["cache_control"]
        headers["ETag"] = etag

        if request.header("if-none-match") == etag:
            return empty_response(304, headers)

        headers["Content-Type"] = info.mime_type if info else "application/octet-stream"
        if not request.transport.compresses_responses:
            data = gzip_payload(data)
            headers["Content-Encoding"] = "gzip"

        return ProxyResponse(status_code=200, headers=headers, body=data, binary=True)

    def _public_host(self, request: InboundRequest) -> Optional[str]:
        return self.settings.get("public_hostname") or request.header(
            DISTRIBUTION_HOST_HEADER
        )

    async def _serve_metadata(
        self, meta: MetadataRequest, request: InboundRequest, headers: Dict[str, str]
    ) -> ProxyResponse:
        host = self._public_host(request)
        if not host:
            raise MissingHostError()

        async def read(reader: ArchiveReader) -> Dict[str, Any]:
            header = await reader.get_header()
            metadata = await self._best_effort_metadata(reader)

            base_url = f"https://{host}/{meta.archive_name}"
            ext = tile_extension(header.tile_type)
            return {
                "tilejson": TILEJSON_VERSION,
                "scheme": "xyz",
                "tiles": [f"{base_url}/{{z}}/{{x}}/{{y}}.{ext}"],
                "bounds": [header.min_lon, header.min_lat, header.max_lon, header.max_lat],
                "center": [header.center_lon, header.center_lat, header.center_zoom],
                "minzoom": header.min_zoom,
                "maxzoom": header.max_zoom,
                **metadata,
            }

        document = await self._with_stale_retry(meta.archive_name, read)
        return json_response(200, document, headers)

    async def _best_effort_metadata(self, reader: ArchiveReader) -> Dict[str, Any]:
        try:
            metadata = await reader.get_metadata()
        except StaleArchiveReadError:
            raise
        except Exception as e:
            logger.warning("Metadata unavailable for '%s': %s", reader.name, e)
            return {}
        if not isinstance(metadata, dict):
            logger.warning("Metadata for '%s' is not a JSON object; ignoring", reader.name)
            return {}
        return metadata


def build_service(
    settings: ProxySettings, source_factory: Optional[SourceFactory] = None
) -> TileService:
    """
    Wire a TileService with its registry and shared block cache.

    Args:
        settings: Validated proxy settings.
        source_factory: Archive source factory; defaults to S3.

    Returns:
        A ready TileService.
    """
    if source_factory is None:
        source_factory = s3_source_factory(settings)
    cache = SharedBlockCache(max_entries=settings["cache_size"])
    registry = ArchiveReaderRegistry(source_factory, cache)
    return TileService(registry, settings)
