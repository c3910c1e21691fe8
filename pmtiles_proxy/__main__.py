#!/usr/bin/env python3
"""
Run the PMTiles proxy as a standalone uvicorn server.

Usage:
    python -m pmtiles_proxy --bucket tiles -p 8000
    pmtiles-proxy --bucket tiles --endpoint-url http://localhost:9000 --reload

Archive options override the matching environment variables (BUCKET,
PMTILES_PATH, ...) and are exported before the workers start, so every
worker builds the same service from its environment.
"""

import argparse
import logging
import os
import sys
from typing import Any, Dict, List, MutableMapping, Optional, Sequence

import uvicorn

from pmtiles_proxy.config import ProxySettings, load_settings

logger = logging.getLogger("pmtiles_proxy")

# CLI destination -> environment variable read by load_settings
ENVIRONMENT_OPTIONS = {
    "bucket": "BUCKET",
    "pmtiles_path": "PMTILES_PATH",
    "public_hostname": "PUBLIC_HOSTNAME",
    "cors": "CORS",
    "region": "AWS_REGION",
    "endpoint_url": "S3_ENDPOINT_URL",
    "cache_size": "ARCHIVE_CACHE_SIZE",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pmtiles-proxy",
        description="Serve map tiles and TileJSON from PMTiles archives stored in S3.",
    )
    server = parser.add_argument_group("server")
    server.add_argument("-p", "--port", type=int, default=8000, help="Port (default: 8000).")
    server.add_argument(
        "-b", "--bind", default="0.0.0.0", help="Bind address (default: 0.0.0.0)."
    )
    server.add_argument(
        "--workers", type=int, default=2, help="Worker processes (default: 2)."
    )
    server.add_argument(
        "--reload", action="store_true", help="Reload on code changes (single worker)."
    )
    server.add_argument(
        "--quiet", action="store_true", help="Log warnings only, no access log."
    )

    archives = parser.add_argument_group("archives")
    archives.add_argument("--bucket", help="S3 bucket holding the archives.")
    archives.add_argument(
        "--pmtiles-path", help="Object key template containing {name}."
    )
    archives.add_argument("--public-hostname", help="Host used in TileJSON tile URLs.")
    archives.add_argument("--cors", help="Value of Access-Control-Allow-Origin.")
    archives.add_argument("--region", help="S3 region.")
    archives.add_argument(
        "--endpoint-url", help="Custom S3 endpoint, e.g. MinIO or LocalStack."
    )
    archives.add_argument(
        "--cache-size", help="Cached header and directory blocks per worker."
    )
    return parser


def apply_overrides(
    args: argparse.Namespace, environ: MutableMapping[str, str]
) -> List[str]:
    """
    Export archive options given on the command line into ``environ``.

    Returns:
        Names of the environment variables that were set.
    """
    applied = []
    for dest, variable in ENVIRONMENT_OPTIONS.items():
        value = getattr(args, dest, None)
        if value is not None:
            environ[variable] = str(value)
            applied.append(variable)
    return applied


def describe(settings: ProxySettings, args: argparse.Namespace) -> List[str]:
    """Startup banner lines for the resolved configuration."""
    endpoint = settings.get("endpoint_url") or "AWS S3"
    region = settings.get("region") or "default region"
    hostname = settings.get("public_hostname") or "from x-distribution-domain-name"
    return [
        f"Archives:   s3://{settings['bucket']}/{settings['archive_key_template']}",
        f"S3:         {endpoint} ({region})",
        f"Timeouts:   connect {settings['connect_timeout']}s, read {settings['read_timeout']}s",
        f"Block cache: {settings['cache_size']} entries per worker",
        f"TileJSON host: {hostname}",
        f"Listening:  http://{args.bind}:{args.port} with {args.workers} worker(s)",
    ]


def uvicorn_options(args: argparse.Namespace) -> Dict[str, Any]:
    """Keyword arguments for ``uvicorn.run``."""
    options: Dict[str, Any] = {
        "app": "pmtiles_proxy.main:get_app",
        "factory": True,
        "host": args.bind,
        "port": args.port,
        "workers": 1 if args.reload else args.workers,
        "reload": args.reload,
        "loop": "uvloop",
        "http": "httptools",
        # Requests mostly wait on S3 range reads
        "limit_concurrency": 512,
        "backlog": 1024,
        "timeout_keep_alive": 75,
        "timeout_graceful_shutdown": 10,
    }
    if args.quiet:
        options.update({"log_level": "warning", "access_log": False})
    else:
        options.update({"log_level": "info", "access_log": True})
    return options


def main(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[MutableMapping[str, str]] = None,
) -> None:
    """
    Validate configuration and start uvicorn.

    Exits with code 1 on configuration errors or server failures.
    """
    args = build_parser().parse_args(argv)
    if environ is None:
        environ = os.environ

    logging.basicConfig(level=logging.WARNING if args.quiet else logging.INFO)

    overridden = apply_overrides(args, environ)
    if overridden:
        logger.info("Command line overrides: %s", ", ".join(overridden))

    try:
        settings = load_settings(environ)
    except ValueError as e:
        logger.error("Configuration invalid:\n%s", e)
        print("Set the variables above or pass the matching options.", file=sys.stderr)
        sys.exit(1)

    print("\n".join(describe(settings, args)))

    try:
        uvicorn.run(**uvicorn_options(args))
    except KeyboardInterrupt:
        logger.info("PMTiles proxy stopped")
    except Exception as e:
        logger.critical("Server failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
