"""Utility functions for tile type resolution, content fingerprints and encoding."""

import gzip
import hashlib
from typing import Dict, NamedTuple, Optional


class TileTypeInfo(NamedTuple):
    """File extension and MIME type served for one archive tile type."""

    extension: str
    mime_type: str


# ---- Constants ----
VECTOR_TILE_TYPE = 1
LEGACY_VECTOR_EXTENSION = "pbf"
FALLBACK_EXTENSION = "bin"

TILE_TYPES: Dict[int, TileTypeInfo] = {
    VECTOR_TILE_TYPE: TileTypeInfo("mvt", "application/vnd.mapbox-vector-tile"),
    2: TileTypeInfo("png", "image/png"),
    3: TileTypeInfo("jpg", "image/jpeg"),
    4: TileTypeInfo("webp", "image/webp"),
    5: TileTypeInfo("avif", "image/avif"),
}


def tile_type_info(tile_type: int) -> Optional[TileTypeInfo]:
    """
    Look up the extension and MIME type for an archive tile type.

    Args:
        tile_type: Tile type code from the archive header.

    Returns:
        TileTypeInfo, or None if the type has no mapping.
    """
    return TILE_TYPES.get(tile_type)


def tile_extension(tile_type: int) -> str:
    """Extension for a tile type, falling back to a generic one when unmapped."""
    info = TILE_TYPES.get(tile_type)
    return info.extension if info else FALLBACK_EXTENSION


def extension_matches(requested: str, tile_type: int) -> bool:
    """
    Check a requested extension against the archive's tile type.

    Matching is strict equality with the canonical extension, except that
    vector archives also answer to the legacy ``pbf`` extension.

    Args:
        requested: Extension from the request path, without the dot.
        tile_type: Tile type code from the archive header.

    Returns:
        True if tiles of this type may be served under the extension.
    """
    info = TILE_TYPES.get(tile_type)
    if info is None:
        return False
    if tile_type == VECTOR_TILE_TYPE and requested == LEGACY_VECTOR_EXTENSION:
        return True
    return requested == info.extension


def content_etag(data: bytes) -> str:
    """Strong ETag derived from the SHA-256 digest of the payload."""
    return f'"{hashlib.sha256(data).hexdigest()}"'


def gzip_payload(data: bytes) -> bytes:
    # mtime=0 keeps the encoding identical across requests
    return gzip.compress(data, mtime=0)
