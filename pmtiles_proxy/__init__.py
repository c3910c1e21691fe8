"""
PMTiles Proxy - tiles and TileJSON from PMTiles archives in S3.

Runs as an AWS Lambda function behind API Gateway or a function URL, or as a
FastAPI application under uvicorn.

Usage:
    # As a module
    python -m pmtiles_proxy -p 8000

    # With uvicorn directly
    uvicorn pmtiles_proxy.main:get_app --factory --host 0.0.0.0 --port 8000

    # As a Lambda handler
    pmtiles_proxy.lambda_handler.handler

    # Programmatically
    from pmtiles_proxy import create_app
    app = create_app()
"""

from pmtiles_proxy.lambda_handler import handler
from pmtiles_proxy.main import create_app, get_app

__all__ = ["create_app", "get_app", "handler"]
