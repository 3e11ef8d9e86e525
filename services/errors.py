"""Exception hierarchy for the asset rehosting pipeline."""

from __future__ import annotations


class AssetError(Exception):
    """Base exception for asset pipeline errors."""


class InvalidSource(AssetError):
    """Raised when a source descriptor is not an acceptable URL, data URI or buffer."""


class MalformedInput(InvalidSource):
    """Raised when a data URI or uploaded payload cannot be parsed."""


class ForbiddenDestination(AssetError):
    """Raised when a URL resolves to a private, loopback or otherwise non-public address."""


class FetchFailed(AssetError):
    """Raised when the upstream server cannot be reached or answers with an error."""


class PayloadTooLarge(AssetError):
    """Raised when an input exceeds a configured byte or pixel limit."""


class UnsupportedFormat(AssetError):
    """Raised when bytes are not a recognised image type."""


class EncodingFailed(AssetError):
    """Raised when no encoder could produce valid image bytes."""


class StorageUnavailable(AssetError):
    """Raised when the object store cannot be queried."""


class StorageWriteFailed(AssetError):
    """Raised when an upload to the object store fails."""


class BatchValidationError(InvalidSource):
    """Raised when a batch request is empty or exceeds the item limit."""


class BatchItemFailed(AssetError):
    """Raised when one item of a batch fails; processing stops at that item."""

    def __init__(self, index: int, cause: AssetError):
        self.index = index
        self.cause = cause
        super().__init__(f"failed to process item {index}: {cause}")
