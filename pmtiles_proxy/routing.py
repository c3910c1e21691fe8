"""Request path grammar: tile and TileJSON paths."""

from dataclasses import dataclass
from typing import Union

NAME_CHARACTERS = frozenset(
    "0123456789"
    "abcdefghijklmnopqrstuvwxyz"
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "/!-_.*'()"
)
DIGITS = frozenset("0123456789")
EXTENSION_CHARACTERS = frozenset("abcdefghijklmnopqrstuvwxyz")
METADATA_SUFFIX = ".json"


@dataclass(frozen=True)
class TileRequest:
    archive_name: str
    z: int
    x: int
    y: int
    ext: str


@dataclass(frozen=True)
class MetadataRequest:
    archive_name: str


@dataclass(frozen=True)
class InvalidPath:
    path: str


ParsedPath = Union[TileRequest, MetadataRequest, InvalidPath]


def _is_name(value: str) -> bool:
    return bool(value) and all(c in NAME_CHARACTERS for c in value)


def _is_number(value: str) -> bool:
    return bool(value) and all(c in DIGITS for c in value)


def _parse_tile(body: str) -> Union[TileRequest, None]:
    # Split from the right so archive names may contain "/".
    parts = body.rsplit("/", 3)
    if len(parts) != 4:
        return None
    name, z, x, last = parts
    y, dot, ext = last.partition(".")
    if not dot or not ext or not all(c in EXTENSION_CHARACTERS for c in ext):
        return None
    if not (_is_name(name) and _is_number(z) and _is_number(x) and _is_number(y)):
        return None
    return TileRequest(archive_name=name, z=int(z), x=int(x), y=int(y), ext=ext)


def _parse_metadata(body: str) -> Union[MetadataRequest, None]:
    if not body.endswith(METADATA_SUFFIX):
        return None
    name = body[: -len(METADATA_SUFFIX)]
    if not _is_name(name):
        return None
    return MetadataRequest(archive_name=name)


def parse_path(path: str) -> ParsedPath:
    """
    Parse a request path into a tile request, a metadata request or InvalidPath.

    Grammars, tried in order:
        /<name>/<z>/<x>/<y>.<ext>   -> TileRequest
        /<name>.json                -> MetadataRequest

    Args:
        path: Request path, including the leading slash.

    Returns:
        The parsed request, or InvalidPath if neither grammar matches.
    """
    if not path.startswith("/"):
        return InvalidPath(path)
    body = path[1:]

    tile = _parse_tile(body)
    if tile is not None:
        return tile

    metadata = _parse_metadata(body)
    if metadata is not None:
        return metadata

    return InvalidPath(path)
