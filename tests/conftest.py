"""
Pytest configuration and shared fixtures for PMTiles proxy tests.

Archives are assembled in memory with the ``pmtiles`` serializers so the
reader is exercised against real header and directory encodings.
"""

import gzip
import json
from typing import Any, Dict, List, Optional, Tuple

import brotli
import pytest
import zstandard
from fastapi.testclient import TestClient
from pmtiles.tile import (
    Compression,
    Entry,
    TileType,
    serialize_directory,
    serialize_header,
    zxy_to_tileid,
)

from pmtiles_proxy.config import ProxySettings
from pmtiles_proxy.exceptions import ArchiveNotFoundError
from pmtiles_proxy.main import create_app
from pmtiles_proxy.service import TileService, build_service
from pmtiles_proxy.source import (
    ArchiveSource,
    ByteRange,
    FetchResult,
    InMemoryArchiveSource,
)

HEADER_SIZE = 127

VECTOR_TILE = b"\x1a\x0bvector-tile"
PNG_TILE = b"\x89PNG\r\n\x1a\nfake-png-tile"

DEFAULT_METADATA = {
    "name": "Test Archive",
    "attribution": "Test data",
    "vector_layers": [{"id": "roads", "fields": {}}],
}


def compress_tile(payload: bytes, compression: Compression) -> bytes:
    if compression == Compression.GZIP:
        return gzip.compress(payload)
    if compression == Compression.BROTLI:
        return brotli.compress(payload)
    if compression == Compression.ZSTD:
        return zstandard.ZstdCompressor().compress(payload)
    return payload


def build_archive(
    tiles: Dict[Tuple[int, int, int], bytes],
    tile_type: TileType = TileType.MVT,
    min_zoom: int = 0,
    max_zoom: int = 4,
    metadata: Optional[Dict[str, Any]] = None,
    tile_compression: Compression = Compression.NONE,
    use_leaf: bool = False,
    raw_metadata: Optional[bytes] = None,
) -> bytes:
    """
    Assemble a PMTiles v3 archive.

    Args:
        tiles: Tile payloads keyed by (z, x, y).
        tile_type: Declared tile type.
        min_zoom: Declared minimum zoom.
        max_zoom: Declared maximum zoom.
        metadata: JSON metadata, gzip-compressed into the archive.
        tile_compression: Codec applied to the stored tile payloads.
        use_leaf: Put every tile entry in a leaf directory behind the root.
        raw_metadata: Metadata bytes stored verbatim (overrides ``metadata``).

    Returns:
        The archive bytes.
    """
    entries: List[Entry] = []
    tile_data = b""
    for (z, x, y), payload in sorted(
        tiles.items(), key=lambda item: zxy_to_tileid(*item[0])
    ):
        stored = compress_tile(payload, tile_compression)
        entries.append(Entry(zxy_to_tileid(z, x, y), len(tile_data), len(stored), 1))
        tile_data += stored

    if use_leaf and entries:
        leaf_directory = serialize_directory(entries)
        root_directory = serialize_directory(
            [Entry(entries[0].tile_id, 0, len(leaf_directory), 0)]
        )
    else:
        leaf_directory = b""
        root_directory = serialize_directory(entries)

    if raw_metadata is not None:
        metadata_bytes = raw_metadata
    else:
        metadata_bytes = gzip.compress(
            json.dumps(DEFAULT_METADATA if metadata is None else metadata).encode()
        )

    root_offset = HEADER_SIZE
    metadata_offset = root_offset + len(root_directory)
    leaf_offset = metadata_offset + len(metadata_bytes)
    tile_data_offset = leaf_offset + len(leaf_directory)

    header = serialize_header(
        {
            "root_offset": root_offset,
            "root_length": len(root_directory),
            "metadata_offset": metadata_offset,
            "metadata_length": len(metadata_bytes),
            "leaf_directory_offset": leaf_offset,
            "leaf_directory_length": len(leaf_directory),
            "tile_data_offset": tile_data_offset,
            "tile_data_length": len(tile_data),
            "addressed_tiles_count": len(entries),
            "tile_entries_count": len(entries),
            "tile_contents_count": len(entries),
            "clustered": True,
            "internal_compression": Compression.GZIP,
            "tile_compression": tile_compression,
            "tile_type": tile_type,
            "min_zoom": min_zoom,
            "max_zoom": max_zoom,
            "min_lon_e7": -1800000000,
            "min_lat_e7": -850000000,
            "max_lon_e7": 1800000000,
            "max_lat_e7": 850000000,
            "center_zoom": 2,
            "center_lon_e7": 130000000,
            "center_lat_e7": 525000000,
        }
    )
    assert len(header) == HEADER_SIZE
    return header + root_directory + metadata_bytes + leaf_directory + tile_data


def vector_archive(**kwargs: Any) -> bytes:
    """Vector archive with tiles at (0,0,0), (1,1,1) and (3,2,5)."""
    tiles = {
        (0, 0, 0): VECTOR_TILE,
        (1, 1, 1): VECTOR_TILE + b"-1",
        (3, 2, 5): VECTOR_TILE + b"-3",
    }
    return build_archive(tiles, **kwargs)


def png_archive(**kwargs: Any) -> bytes:
    """Raster archive with one tile at (2,1,1), zooms 1-3."""
    return build_archive(
        {(2, 1, 1): PNG_TILE}, tile_type=TileType.PNG, min_zoom=1, max_zoom=3, **kwargs
    )


def with_header_byte(data: bytes, offset: int, value: int) -> bytes:
    """Overwrite one header byte, e.g. to store an enum code the writer rejects."""
    patched = bytearray(data)
    patched[offset] = value
    return bytes(patched)


class MissingArchiveSource:
    """Source for a key that does not exist, as S3 reports NoSuchKey."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.requests: List[ByteRange] = []

    async def fetch(
        self, byte_range: ByteRange, expected_etag: Optional[str] = None
    ) -> FetchResult:
        self.requests.append(byte_range)
        raise ArchiveNotFoundError(f"{self.name}.pmtiles")


class MemorySourceFactory:
    """
    Source factory over a dict of archive bytes.

    Unknown names get a MissingArchiveSource. Every call is counted.
    """

    def __init__(self, archives: Dict[str, bytes]) -> None:
        self.archives = archives
        self.sources: Dict[str, InMemoryArchiveSource] = {}
        self.calls: List[str] = []

    def __call__(self, name: str) -> ArchiveSource:
        self.calls.append(name)
        if name not in self.archives:
            return MissingArchiveSource(name)
        source = InMemoryArchiveSource(name, self.archives[name])
        self.sources[name] = source
        return source


def make_settings(**overrides: Any) -> ProxySettings:
    settings: ProxySettings = {
        "bucket": "test-bucket",
        "archive_key_template": "{name}.pmtiles",
        "cache_control": "public, max-age=86400",
        "connect_timeout": 0.75,
        "read_timeout": 0.75,
        "cache_size": 100,
        "public_hostname": "tiles.example.com",
    }
    settings.update(overrides)  # type: ignore[typeddict-item]
    return settings


def default_archives() -> Dict[str, bytes]:
    return {
        "roads": vector_archive(),
        "basemaps/roads": vector_archive(use_leaf=True),
        "imagery": png_archive(),
    }


@pytest.fixture(scope="function")
def settings() -> ProxySettings:
    return make_settings()


@pytest.fixture(scope="function")
def sources() -> MemorySourceFactory:
    return MemorySourceFactory(default_archives())


@pytest.fixture(scope="function")
def service(settings, sources) -> TileService:
    return build_service(settings, sources)


@pytest.fixture(scope="function")
def client(settings, sources):
    """
    Create a TestClient for the FastAPI app backed by in-memory archives.
    """
    app = create_app(settings=settings, source_factory=sources)
    with TestClient(app) as test_client:
        yield test_client
