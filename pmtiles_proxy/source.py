"""Byte-range sources for PMTiles archives: S3 and in-memory."""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from pmtiles_proxy.config import DEFAULT_ARCHIVE_KEY_TEMPLATE, ProxySettings, archive_key
from pmtiles_proxy.exceptions import (
    ArchiveNotFoundError,
    StaleArchiveReadError,
    UpstreamAccessDeniedError,
    UpstreamUnavailableError,
)

logger = logging.getLogger("pmtiles_proxy")

ACCESS_DENIED_CODES = frozenset({"AccessDenied", "403", "Forbidden"})
NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "NotFound", "404"})
PRECONDITION_FAILED_CODES = frozenset({"PreconditionFailed", "412"})


@dataclass(frozen=True)
class ByteRange:
    """Half-open byte span ``[offset, offset + length)`` of an archive object."""

    offset: int
    length: int

    def __post_init__(self) -> None:
        if self.offset < 0 or self.length <= 0:
            raise ValueError(f"Invalid byte range: offset={self.offset} length={self.length}")

    @property
    def end(self) -> int:
        """Last byte included in the range."""
        return self.offset + self.length - 1

    def header_value(self) -> str:
        return f"bytes={self.offset}-{self.end}"


@dataclass(frozen=True)
class FetchResult:
    """Result of a single range read."""

    data: bytes
    etag: Optional[str] = None
    cache_control: Optional[str] = None
    expires: Optional[str] = None


class ArchiveSource(Protocol):
    """Range-readable view of one named archive."""

    name: str

    async def fetch(
        self, byte_range: ByteRange, expected_etag: Optional[str] = None
    ) -> FetchResult:
        """Read a byte range; a non-None ``expected_etag`` makes the read conditional."""
        ...


SourceFactory = Callable[[str], ArchiveSource]


def _format_expires(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
        return format_datetime(aware.astimezone(timezone.utc), usegmt=True)
    return str(value)


def translate_client_error(error: ClientError, key: str, expected_etag: Optional[str]):
    """
    Map an S3 ClientError onto the proxy's error kinds.

    Args:
        error: Error raised by botocore.
        key: Object key that was being read.
        expected_etag: ETag the read was conditional on, if any.

    Returns:
        The ProxyError to raise in place of the ClientError.
    """
    code = str(error.response.get("Error", {}).get("Code", ""))
    status = str(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))

    if code in ACCESS_DENIED_CODES or status == "403":
        return UpstreamAccessDeniedError(key)
    if code in PRECONDITION_FAILED_CODES or status == "412":
        return StaleArchiveReadError(key, expected_etag)
    if code in NOT_FOUND_CODES or status == "404":
        return ArchiveNotFoundError(key)
    return UpstreamUnavailableError(f"S3 error reading '{key}': {code or status}")


class S3ArchiveSource:
    """
    Range reads of one archive object in S3.

    Reads are billed to the requester (``RequestPayer=requester``) and are
    conditional on ``IfMatch`` whenever the caller supplies an ETag, so a
    replaced object surfaces as StaleArchiveReadError instead of mixed bytes.

    Attributes:
        name: Archive name from the request path.
        key: Object key derived from the key template.
        bucket: Bucket holding the object.
    """

    def __init__(
        self,
        name: str,
        client: Any,
        bucket: str,
        key_template: str = DEFAULT_ARCHIVE_KEY_TEMPLATE,
    ) -> None:
        self.name = name
        self.key = archive_key(key_template, name)
        self.bucket = bucket
        self._client = client

    def _get_object(self, params: Dict[str, Any]) -> Tuple[Dict[str, Any], bytes]:
        response = self._client.get_object(**params)
        body = response["Body"]
        try:
            return response, body.read()
        finally:
            body.close()

    async def fetch(
        self, byte_range: ByteRange, expected_etag: Optional[str] = None
    ) -> FetchResult:
        params: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": self.key,
            "Range": byte_range.header_value(),
            "RequestPayer": "requester",
        }
        if expected_etag:
            params["IfMatch"] = expected_etag

        try:
            # Blocking boto3 call runs in thread pool to avoid blocking event loop
            response, data = await asyncio.to_thread(self._get_object, params)
        except ClientError as e:
            error = translate_client_error(e, self.key, expected_etag)
            logger.warning(
                "S3 read failed for s3://%s/%s %s: %s",
                self.bucket,
                self.key,
                byte_range.header_value(),
                error.message,
            )
            raise error from e
        except BotoCoreError as e:
            logger.error(
                "S3 transport failure for s3://%s/%s: %s", self.bucket, self.key, e
            )
            raise UpstreamUnavailableError(
                f"S3 transport failure reading '{self.key}': {e}"
            ) from e

        return FetchResult(
            data=data,
            etag=response.get("ETag"),
            cache_control=response.get("CacheControl"),
            expires=_format_expires(response.get("Expires")),
        )


def build_s3_client(settings: ProxySettings) -> Any:
    """
    Create the process-wide S3 client with fail-fast timeouts.

    Args:
        settings: Validated proxy settings.

    Returns:
        A boto3 S3 client.
    """
    kwargs: Dict[str, Any] = {
        "config": BotoConfig(
            connect_timeout=settings["connect_timeout"],
            read_timeout=settings["read_timeout"],
            retries={"max_attempts": 3, "mode": "standard"},
        ),
    }
    if settings.get("region"):
        kwargs["region_name"] = settings["region"]
    if settings.get("endpoint_url"):
        kwargs["endpoint_url"] = settings["endpoint_url"]
    return boto3.client("s3", **kwargs)


def s3_source_factory(settings: ProxySettings, client: Any = None) -> SourceFactory:
    """Build a factory producing S3ArchiveSource instances that share one client."""
    s3_client = client if client is not None else build_s3_client(settings)

    def make_source(name: str) -> ArchiveSource:
        return S3ArchiveSource(
            name,
            s3_client,
            bucket=settings["bucket"],
            key_template=settings["archive_key_template"],
        )

    return make_source


def _memory_etag(data: bytes) -> str:
    return f'"{hashlib.md5(data).hexdigest()}"'


class InMemoryArchiveSource:
    """
    Archive source backed by a byte string.

    Behaves like S3: conditional reads against a different ETag raise
    StaleArchiveReadError, and ranges past the end are truncated. Every
    requested range is recorded in ``requests``.
    """

    def __init__(self, name: str, data: bytes, etag: Optional[str] = None) -> None:
        self.name = name
        self.data = data
        self.etag = etag or _memory_etag(data)
        self.requests: List[ByteRange] = []

    def replace(self, data: bytes, etag: Optional[str] = None) -> None:
        """Overwrite the object, as a concurrent upload would."""
        self.data = data
        self.etag = etag or _memory_etag(data)

    async def fetch(
        self, byte_range: ByteRange, expected_etag: Optional[str] = None
    ) -> FetchResult:
        self.requests.append(byte_range)
        # Suspend like a real network read would
        await asyncio.sleep(0)
        if expected_etag is not None and expected_etag != self.etag:
            raise StaleArchiveReadError(self.name, expected_etag, self.etag)
        data = self.data[byte_range.offset : byte_range.offset + byte_range.length]
        return FetchResult(data=data, etag=self.etag)
