"""FastAPI router handling image asset ingestion."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from time import monotonic
from typing import Deque, Dict, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status

from config import config
from core.http_errors import to_http_exception
from core.security import get_client_ip
from models import Asset, AssetDataUriRequest, AssetUrlRequest, BatchRequest, BatchResponse
from services.asset_service import AssetService, get_asset_service
from services.errors import AssetError, StorageUnavailable

logger = logging.getLogger(__name__)


class SimpleRateLimiter:
    """Naive in-memory sliding window limiter keyed by client IP."""

    def __init__(self, *, limit: int, window_seconds: float) -> None:
        self.limit = limit
        self.window_seconds = max(window_seconds, 1)
        self._events: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    async def check(self, key: str) -> None:
        if self.limit <= 0:
            return
        now = monotonic()
        async with self._lock:
            # Lazy purge of empty buckets
            if len(self._events) > 500:
                stale = [k for k, v in self._events.items() if not v]
                for k in stale:
                    del self._events[k]
            bucket = self._events.setdefault(key, deque())
            cutoff = now - self.window_seconds
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if len(bucket) >= self.limit:
                logger.warning("Rate limit exceeded for asset client %s", key)
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail="Asset ingestion rate limit exceeded",
                )
            bucket.append(now)


router = APIRouter(prefix="/api/assets", tags=["assets"])

_rate_limiter: Optional[SimpleRateLimiter] = None


def get_rate_limiter() -> SimpleRateLimiter:
    """Provide the process-wide rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        settings = config.ASSETS
        _rate_limiter = SimpleRateLimiter(
            limit=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
    return _rate_limiter


def resolve_asset_service() -> AssetService:
    """Dependency wrapper: an unconfigured object store is a 503, not a crash."""
    try:
        return get_asset_service()
    except StorageUnavailable as exc:
        raise to_http_exception(exc) from exc


async def _enforce_rate_limit(request: Request, rate_limiter: SimpleRateLimiter) -> None:
    await rate_limiter.check(get_client_ip(request) or "unknown")


@router.post("", response_model=Asset)
async def upload_asset(
    request: Request,
    file: UploadFile = File(..., description="Image to rehost"),
    service: AssetService = Depends(resolve_asset_service),
    rate_limiter: SimpleRateLimiter = Depends(get_rate_limiter),
) -> Asset:
    """Rehost an image uploaded as multipart/form-data."""
    await _enforce_rate_limit(request, rate_limiter)
    limit = config.FETCH.max_bytes
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Upload exceeds the maximum size of {limit} bytes",
        )
    try:
        return await service.process_from_bytes(data, file.content_type)
    except AssetError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - unexpected failures
        logger.exception("Unexpected error rehosting uploaded image", exc_info=exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unable to process image") from exc


@router.post("/url", response_model=Asset)
async def upload_asset_url(
    request: Request,
    payload: AssetUrlRequest,
    service: AssetService = Depends(resolve_asset_service),
    rate_limiter: SimpleRateLimiter = Depends(get_rate_limiter),
) -> Asset:
    """Download an image from an HTTPS URL and rehost it."""
    await _enforce_rate_limit(request, rate_limiter)
    try:
        return await service.process_from_url(payload.url)
    except AssetError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - unexpected failures
        logger.exception("Unexpected error rehosting URL image", exc_info=exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unable to process image") from exc


@router.post("/data-uri", response_model=Asset)
async def upload_asset_data_uri(
    request: Request,
    payload: AssetDataUriRequest,
    service: AssetService = Depends(resolve_asset_service),
    rate_limiter: SimpleRateLimiter = Depends(get_rate_limiter),
) -> Asset:
    """Rehost an image embedded in a data: URI."""
    await _enforce_rate_limit(request, rate_limiter)
    try:
        return await service.process_from_data_uri(payload.data_uri)
    except AssetError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - unexpected failures
        logger.exception("Unexpected error rehosting data URI image", exc_info=exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unable to process image") from exc


@router.post("/batch", response_model=BatchResponse)
async def upload_asset_batch(
    request: Request,
    payload: BatchRequest,
    service: AssetService = Depends(resolve_asset_service),
    rate_limiter: SimpleRateLimiter = Depends(get_rate_limiter),
) -> BatchResponse:
    """Rehost up to max_batch_size images in order; the first failure aborts the batch."""
    await _enforce_rate_limit(request, rate_limiter)
    try:
        assets = await service.process_batch(payload.items)
    except AssetError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - unexpected failures
        logger.exception("Unexpected error rehosting batch", exc_info=exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unable to process batch") from exc

    return BatchResponse(assets=assets, count=len(assets))
