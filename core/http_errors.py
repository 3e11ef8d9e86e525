"""Translation of pipeline exceptions into HTTP responses."""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

from services.errors import (
    AssetError,
    BatchItemFailed,
    EncodingFailed,
    FetchFailed,
    ForbiddenDestination,
    InvalidSource,
    PayloadTooLarge,
    StorageUnavailable,
    StorageWriteFailed,
    UnsupportedFormat,
)

logger = logging.getLogger(__name__)

# Checked in order; subclasses of InvalidSource fall through to 400
_STATUS_BY_ERROR = (
    (ForbiddenDestination, status.HTTP_403_FORBIDDEN),
    (PayloadTooLarge, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE),
    (EncodingFailed, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (FetchFailed, status.HTTP_502_BAD_GATEWAY),
    (StorageWriteFailed, status.HTTP_502_BAD_GATEWAY),
    (StorageUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (UnsupportedFormat, status.HTTP_400_BAD_REQUEST),
    (InvalidSource, status.HTTP_400_BAD_REQUEST),
)


def http_status_for(exc: AssetError) -> int:
    """Status code for a pipeline error; batch failures report their cause."""
    if isinstance(exc, BatchItemFailed):
        return http_status_for(exc.cause)
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(exc: AssetError) -> HTTPException:
    code = http_status_for(exc)
    if code >= 500:
        logger.warning("Asset pipeline error (%d): %s", code, exc)
    return HTTPException(status_code=code, detail=str(exc))
