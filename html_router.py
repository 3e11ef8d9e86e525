"""FastAPI router for the Gmail-safe HTML transform."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from config import config
from core.http_errors import to_http_exception
from models import Asset, TransformRequest, TransformResult
from services.asset_service import get_asset_service
from services.errors import AssetError
from services.html_transformer import HTMLTransformer

logger = logging.getLogger(__name__)

# JSON envelope allowance on top of the raw HTML limit
BODY_OVERHEAD_BYTES = 64 * 1024
DISCONNECT_POLL_SECONDS = 0.5

router = APIRouter(prefix="/api/html", tags=["html"])

_html_transformer: Optional[HTMLTransformer] = None


class SharedAssetProcessor:
    """Resolves the asset service per image so a missing object store only fails rehosting."""

    async def process_source(self, source: str) -> Asset:
        return await get_asset_service().process_source(source)


def get_html_transformer() -> HTMLTransformer:
    """Resolve or initialize the shared HTMLTransformer instance."""
    global _html_transformer
    if _html_transformer is None:
        _html_transformer = HTMLTransformer(
            SharedAssetProcessor(),
            config.TRANSFORM,
            asset_base_url=config.STORAGE.public_base_url,
        )
    return _html_transformer


def _reject_oversized_body(request: Request) -> None:
    declared = request.headers.get("content-length")
    if not declared:
        return
    try:
        size = int(declared)
    except ValueError:
        return
    if size > config.TRANSFORM.max_html_bytes + BODY_OVERHEAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Request body is {size} bytes (max {config.TRANSFORM.max_html_bytes} bytes of HTML)",
        )


async def _wait_for_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def _cancel(task: asyncio.Task) -> None:
    if task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@router.post("/transform", response_model=TransformResult, dependencies=[Depends(_reject_oversized_body)])
async def transform_html(
    request: Request,
    payload: TransformRequest,
    transformer: HTMLTransformer = Depends(get_html_transformer),
) -> TransformResult:
    """Rehost the document's images and rewrite it into the Gmail-safe subset."""
    timeout = config.TRANSFORM.request_timeout_seconds
    work = asyncio.create_task(transformer.transform_html(payload.html))
    watcher = asyncio.create_task(_wait_for_disconnect(request))
    try:
        done, _ = await asyncio.wait(
            {work, watcher},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        await _cancel(watcher)

    if work not in done:
        await _cancel(work)
        if watcher in done:
            logger.info("Client disconnected; HTML transform cancelled")
            # Nobody is listening; 499 mirrors the nginx convention
            raise HTTPException(status_code=499, detail="Client closed request")
        logger.warning("HTML transform exceeded %.1fs and was cancelled", timeout)
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=f"HTML transform timed out after {timeout:g}s",
        )

    try:
        return work.result()
    except AssetError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - unexpected failures
        logger.exception("Unexpected error transforming HTML", exc_info=exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unable to transform HTML") from exc
