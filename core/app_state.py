"""
Format - Image Asset Rehosting Service
======================================

Rehosts remote, embedded and uploaded images to content-addressed object
storage and rewrites HTML into the subset Gmail renders consistently.

Features:
- SSRF-guarded HTTPS image fetching
- Size and transparency aware JPEG/PNG re-encoding
- Content-addressed, deduplicated storage (Cloudflare R2 or local disk)
- Gmail-safe HTML normalization with image rehosting
"""

import logging

from fastapi import FastAPI
from starlette.middleware.gzip import GZipMiddleware

from config import config

# Setup logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
    ]
)

# Silence noisy third-party loggers to avoid cluttering output
_noisy_loggers = [
    'httpcore',
    'httpcore.connection',
    'httpcore.http11',
    'httpx',
    'urllib3',
    'urllib3.connectionpool',
    'botocore',
    'boto3',
    's3transfer',
    'PIL',
]
for _logger_name in _noisy_loggers:
    logging.getLogger(_logger_name).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

from assets_router import router as assets_router
from html_router import router as html_router
from services.asset_service import get_asset_service
from services.errors import StorageUnavailable

app = FastAPI(
    title="Format Asset Service",
    description="Image rehosting and Gmail-safe HTML transformation",
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Add GZip compression middleware (compresses responses > 1000 bytes)
app.add_middleware(GZipMiddleware, minimum_size=1000)

# Routers
app.include_router(assets_router)
app.include_router(html_router)


@app.on_event("startup")
async def startup_event():
    """Build the asset pipeline early so configuration problems show up in the logs"""
    try:
        service = get_asset_service()
        logger.info(
            "Asset pipeline ready (storage=%s, public base %s)",
            config.STORAGE.backend,
            service.public_base_url,
        )
    except StorageUnavailable as e:
        # Don't fail startup; asset endpoints answer 503 until storage is configured
        logger.error(f"Object storage unavailable: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down Format asset service")
