"""Configuration loading and validation for the PMTiles proxy."""

import logging
import os
from typing import List, Mapping, Optional, TypedDict

from typing_extensions import NotRequired

logger = logging.getLogger("pmtiles_proxy")


class ProxySettings(TypedDict):
    """Type definition for the proxy configuration dictionary."""

    bucket: str
    archive_key_template: str  # must contain NAME_PLACEHOLDER
    cache_control: str
    connect_timeout: float
    read_timeout: float
    cache_size: int
    public_hostname: NotRequired[str]
    cors_origin: NotRequired[str]
    region: NotRequired[str]
    endpoint_url: NotRequired[str]


NAME_PLACEHOLDER = "{name}"
DEFAULT_ARCHIVE_KEY_TEMPLATE = "{name}.pmtiles"
DEFAULT_CACHE_CONTROL = "public, max-age=86400"
DEFAULT_TIMEOUT_SECONDS = 0.75
DEFAULT_CACHE_SIZE = 100


def archive_key(template: str, archive_name: str) -> str:
    """
    Derive the S3 object key for an archive name.

    Args:
        template: Key template containing the ``{name}`` placeholder.
        archive_name: Archive name taken from the request path.

    Returns:
        The object key with every placeholder replaced by the name.
    """
    return template.replace(NAME_PLACEHOLDER, archive_name)


def _optional(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name, "").strip()
    return value or None


def _positive_number(
    environ: Mapping[str, str], name: str, default: float, errors: List[str]
) -> float:
    raw = _optional(environ, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        errors.append(f"• {name}: Must be a number, got '{raw}'")
        return default
    if value <= 0:
        errors.append(f"• {name}: Must be greater than zero, got {raw}")
    return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> ProxySettings:
    """
    Load and validate proxy configuration from environment variables.

    Recognised variables:
        BUCKET               S3 bucket holding the archives (required)
        PMTILES_PATH         Archive key template (default: "{name}.pmtiles")
        PUBLIC_HOSTNAME      Host used in TileJSON tile URLs
        CORS                 Origin echoed in Access-Control-Allow-Origin
        CACHE_CONTROL        Cache-Control for tiles (default: "public, max-age=86400")
        AWS_REGION           S3 region
        S3_ENDPOINT_URL      Custom S3 endpoint (MinIO, LocalStack)
        S3_CONNECT_TIMEOUT   Connect timeout in seconds (default: 0.75)
        S3_READ_TIMEOUT      Read timeout in seconds (default: 0.75)
        ARCHIVE_CACHE_SIZE   Cached header/directory blocks (default: 100)

    Args:
        environ: Mapping to read from. Defaults to ``os.environ``.

    Returns:
        Validated ProxySettings.

    Raises:
        ValueError: If configuration is invalid (with comprehensive error list)
    """
    if environ is None:
        environ = os.environ

    # Collect ALL errors instead of failing on first one
    errors: List[str] = []

    bucket = _optional(environ, "BUCKET")
    if bucket is None:
        errors.append("• BUCKET: Environment variable is required")

    template = _optional(environ, "PMTILES_PATH") or DEFAULT_ARCHIVE_KEY_TEMPLATE
    if NAME_PLACEHOLDER not in template:
        errors.append(
            f"• PMTILES_PATH: Template '{template}' must contain the {NAME_PLACEHOLDER} placeholder"
        )

    connect_timeout = _positive_number(
        environ, "S3_CONNECT_TIMEOUT", DEFAULT_TIMEOUT_SECONDS, errors
    )
    read_timeout = _positive_number(
        environ, "S3_READ_TIMEOUT", DEFAULT_TIMEOUT_SECONDS, errors
    )

    cache_size = DEFAULT_CACHE_SIZE
    raw_cache_size = _optional(environ, "ARCHIVE_CACHE_SIZE")
    if raw_cache_size is not None:
        if raw_cache_size.isdigit() and int(raw_cache_size) > 0:
            cache_size = int(raw_cache_size)
        else:
            errors.append(
                f"• ARCHIVE_CACHE_SIZE: Must be a positive integer, got '{raw_cache_size}'"
            )

    if errors:
        error_count = len(errors)
        error_summary = f"Found {error_count} configuration error{'s' if error_count > 1 else ''}:\n\n"
        raise ValueError(error_summary + "\n".join(errors))

    settings: ProxySettings = {
        "bucket": bucket or "",
        "archive_key_template": template,
        "cache_control": _optional(environ, "CACHE_CONTROL") or DEFAULT_CACHE_CONTROL,
        "connect_timeout": connect_timeout,
        "read_timeout": read_timeout,
        "cache_size": cache_size,
    }

    optional_values = {
        "public_hostname": _optional(environ, "PUBLIC_HOSTNAME"),
        "cors_origin": _optional(environ, "CORS"),
        "region": _optional(environ, "AWS_REGION"),
        "endpoint_url": _optional(environ, "S3_ENDPOINT_URL"),
    }
    for key, value in optional_values.items():
        if value is not None:
            settings[key] = value  # type: ignore[literal-required]

    if "public_hostname" not in settings:
        logger.warning(
            "PUBLIC_HOSTNAME not set; TileJSON requires the x-distribution-domain-name header"
        )

    return settings
