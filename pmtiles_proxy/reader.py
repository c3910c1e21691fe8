"""Coherent PMTiles v3 reads over an ArchiveSource."""

import gzip
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import brotli
import zstandard
from pmtiles.tile import (
    Compression,
    deserialize_directory,
    deserialize_header,
    find_tile,
    zxy_to_tileid,
)

from pmtiles_proxy.cache import SharedBlockCache
from pmtiles_proxy.exceptions import ArchiveFormatError, StaleArchiveReadError
from pmtiles_proxy.source import ArchiveSource, ByteRange, FetchResult

logger = logging.getLogger("pmtiles_proxy")

HEADER_LENGTH = 127
HEADER_PREFETCH_LENGTH = 16384
PMTILES_MAGIC = b"PMTiles"
PMTILES_VERSION = 3
MAX_DIRECTORY_DEPTH = 4  # root + 3 leaf levels

# Header bytes holding enum codes; read raw so unknown codes survive decoding
CODE_OFFSETS = {
    "internal_compression": 97,
    "tile_compression": 98,
    "tile_type": 99,
}

HEADER_BLOCK = "header"
METADATA_BLOCK = "metadata"


@dataclass(frozen=True)
class ArchiveHeader:
    """Decoded archive header plus the ETag of the object it was read from."""

    tile_type: int
    tile_compression: int
    internal_compression: int
    min_zoom: int
    max_zoom: int
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float
    center_lon: float
    center_lat: float
    center_zoom: int
    root_offset: int = 0
    root_length: int = 0
    metadata_offset: int = 0
    metadata_length: int = 0
    leaf_directory_offset: int = 0
    leaf_directory_length: int = 0
    tile_data_offset: int = 0
    tile_data_length: int = 0
    etag: Optional[str] = None

    @classmethod
    def from_fields(
        cls, fields: Dict[str, Any], codes: Dict[str, int], etag: Optional[str]
    ) -> "ArchiveHeader":
        """
        Build from the dictionary returned by ``pmtiles.tile.deserialize_header``.

        Args:
            fields: Decoded header fields.
            codes: Raw tile type and compression codes, keyed like ``CODE_OFFSETS``.
            etag: ETag of the object the header was read from.
        """
        return cls(
            tile_type=codes["tile_type"],
            tile_compression=codes["tile_compression"],
            internal_compression=codes["internal_compression"],
            min_zoom=fields["min_zoom"],
            max_zoom=fields["max_zoom"],
            min_lon=fields["min_lon_e7"] / 1e7,
            min_lat=fields["min_lat_e7"] / 1e7,
            max_lon=fields["max_lon_e7"] / 1e7,
            max_lat=fields["max_lat_e7"] / 1e7,
            center_lon=fields["center_lon_e7"] / 1e7,
            center_lat=fields["center_lat_e7"] / 1e7,
            center_zoom=fields["center_zoom"],
            root_offset=fields["root_offset"],
            root_length=fields["root_length"],
            metadata_offset=fields["metadata_offset"],
            metadata_length=fields["metadata_length"],
            leaf_directory_offset=fields["leaf_directory_offset"],
            leaf_directory_length=fields["leaf_directory_length"],
            tile_data_offset=fields["tile_data_offset"],
            tile_data_length=fields["tile_data_length"],
            etag=etag,
        )


class ArchiveReader(Protocol):
    """Operations the request handlers need from an archive."""

    name: str

    async def get_header(self) -> ArchiveHeader:
        ...

    async def get_metadata(self) -> Dict[str, Any]:
        ...

    async def get_tile(self, z: int, x: int, y: int) -> Optional[bytes]:
        ...

    def invalidate(self) -> None:
        ...


def decompress(data: bytes, compression: int, archive_name: str) -> bytes:
    """
    Decode a block according to a PMTiles compression code.

    Raises:
        ArchiveFormatError: If the compression is unsupported or the data is corrupt.
    """
    if compression in (Compression.NONE.value, Compression.UNKNOWN.value):
        return data
    if compression == Compression.GZIP.value:
        try:
            return gzip.decompress(data)
        except (OSError, EOFError) as e:
            raise ArchiveFormatError(archive_name, f"corrupt gzip data: {e}") from e
    if compression == Compression.BROTLI.value:
        try:
            return brotli.decompress(data)
        except brotli.error as e:
            raise ArchiveFormatError(archive_name, f"corrupt brotli data: {e}") from e
    if compression == Compression.ZSTD.value:
        try:
            # Streaming decode accepts frames without a content size
            return zstandard.ZstdDecompressor().decompressobj().decompress(data)
        except zstandard.ZstdError as e:
            raise ArchiveFormatError(archive_name, f"corrupt zstd data: {e}") from e
    raise ArchiveFormatError(archive_name, f"unsupported compression code {compression}")


class PMTilesArchiveReader:
    """
    Reads header, metadata and tiles of one PMTiles archive.

    The header read establishes the object's ETag; every later read (root and
    leaf directories, metadata, tile data) is conditional on it, and decoded
    blocks are cached in the shared block cache under that ETag. Reads are
    therefore never mixed across object versions: a replaced object raises
    StaleArchiveReadError, after which ``invalidate`` forces a fresh header.
    """

    def __init__(self, source: ArchiveSource, cache: SharedBlockCache) -> None:
        self.source = source
        self.name = source.name
        self._cache = cache

    async def _fetch(self, byte_range: ByteRange, etag: Optional[str]) -> FetchResult:
        result = await self.source.fetch(byte_range, etag)
        # Stores that ignore If-Match still report the ETag they served
        if etag is not None and result.etag is not None and result.etag != etag:
            raise StaleArchiveReadError(self.name, etag, result.etag)
        return result

    async def _load_header(self) -> ArchiveHeader:
        logger.info("Fetching header for archive '%s'", self.name)
        result = await self._fetch(ByteRange(0, HEADER_PREFETCH_LENGTH), None)
        block = result.data
        if len(block) < HEADER_LENGTH or not block.startswith(PMTILES_MAGIC):
            raise ArchiveFormatError(self.name, "not a PMTiles archive")
        if block[7] != PMTILES_VERSION:
            raise ArchiveFormatError(self.name, f"unsupported PMTiles version {block[7]}")
        raw = bytearray(block[:HEADER_LENGTH])
        codes = {field: raw[offset] for field, offset in CODE_OFFSETS.items()}
        for offset in CODE_OFFSETS.values():
            raw[offset] = 0  # UNKNOWN in both enums
        try:
            fields = deserialize_header(bytes(raw))
        except ValueError as e:
            raise ArchiveFormatError(self.name, f"invalid header: {e}") from e

        header = ArchiveHeader.from_fields(fields, codes, result.etag)

        # Root directory usually arrives with the header prefetch
        root_end = header.root_offset + header.root_length
        if header.root_length > 0 and root_end <= len(block):
            entries = self._decode_directory(
                header, block[header.root_offset : root_end]
            )
            self._cache.put(
                self._directory_key(header, header.root_offset, header.root_length),
                entries,
            )
        return header

    async def get_header(self) -> ArchiveHeader:
        return await self._cache.get_or_fetch(
            (self.name, HEADER_BLOCK), self._load_header
        )

    def _directory_key(self, header: ArchiveHeader, offset: int, length: int):
        return (self.name, (header.etag, offset, length))

    def _decode_directory(self, header: ArchiveHeader, data: bytes) -> List[Any]:
        if header.internal_compression != Compression.GZIP.value:
            raise ArchiveFormatError(
                self.name,
                f"unsupported internal compression {header.internal_compression}",
            )
        try:
            return deserialize_directory(data)
        except (OSError, EOFError, IndexError, ValueError) as e:
            raise ArchiveFormatError(self.name, f"invalid directory: {e}") from e

    async def _get_directory(
        self, header: ArchiveHeader, offset: int, length: int
    ) -> List[Any]:
        async def load() -> List[Any]:
            result = await self._fetch(ByteRange(offset, length), header.etag)
            return self._decode_directory(header, result.data)

        return await self._cache.get_or_fetch(
            self._directory_key(header, offset, length), load
        )

    async def get_metadata(self) -> Dict[str, Any]:
        """
        Fetch and decode the archive's JSON metadata.

        Returns:
            The metadata document (cached per archive ETag).

        Raises:
            ArchiveFormatError: If the metadata cannot be decoded.
            StaleArchiveReadError: If the object changed since the header was read.
        """
        header = await self.get_header()
        if header.metadata_length == 0:
            return {}

        async def load() -> Dict[str, Any]:
            result = await self._fetch(
                ByteRange(header.metadata_offset, header.metadata_length), header.etag
            )
            raw = decompress(result.data, header.internal_compression, self.name)
            try:
                return json.loads(raw)
            except ValueError as e:
                raise ArchiveFormatError(self.name, f"invalid metadata JSON: {e}") from e

        return await self._cache.get_or_fetch(
            (self.name, (header.etag, METADATA_BLOCK)), load
        )

    async def get_tile(self, z: int, x: int, y: int) -> Optional[bytes]:
        """
        Look up and fetch one tile.

        Args:
            z: Zoom level.
            x: X tile coordinate.
            y: Y tile coordinate.

        Returns:
            Decoded tile bytes, or None if the archive has no tile there.
        """
        tile_id = zxy_to_tileid(z, x, y)
        header = await self.get_header()

        offset, length = header.root_offset, header.root_length
        for _ in range(MAX_DIRECTORY_DEPTH):
            if length == 0:
                return None
            entries = await self._get_directory(header, offset, length)
            entry = find_tile(entries, tile_id)
            if entry is None:
                return None
            if entry.run_length > 0:
                if entry.length == 0:
                    return b""
                result = await self._fetch(
                    ByteRange(header.tile_data_offset + entry.offset, entry.length),
                    header.etag,
                )
                return decompress(result.data, header.tile_compression, self.name)
            # run_length 0 points at a leaf directory
            offset = header.leaf_directory_offset + entry.offset
            length = entry.length

        raise ArchiveFormatError(self.name, "maximum directory depth exceeded")

    def invalidate(self) -> None:
        """Drop this archive's cached header and blocks."""
        self._cache.invalidate(self.name)
