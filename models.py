"""
Data Models for the Format rehosting service
============================================

Pydantic models for request/response handling and the pipeline's results.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Asset(BaseModel):
    """A stored, content-addressed image. Produced once per successful pipeline run."""

    model_config = ConfigDict(frozen=True)

    public_url: str = Field(..., description="Public URL of the stored object")
    mime: str = Field(..., description="image/jpeg or image/png")
    width: int = Field(..., ge=1, description="Final width in pixels")
    height: int = Field(..., ge=1, description="Final height in pixels")
    byte_size: int = Field(..., ge=0, description="Size of the stored bytes")
    content_digest: str = Field(..., description="sha256:<hex> of the stored bytes")
    storage_key: str = Field(..., description="Content-addressed, sharded storage key")
    deduplicated: bool = Field(
        default=False,
        description="True if the store already held this key before the call",
    )


class TransformStats(BaseModel):
    images_processed: int = 0
    images_rehosted: int = 0
    styles_removed: int = 0
    scripts_removed: int = 0


class TransformResult(BaseModel):
    """Output of one HTML transform call."""

    html: str
    messages: List[str] = Field(default_factory=list)
    stats: TransformStats = Field(default_factory=TransformStats)


# ---------------------------------------------------------------------------
# API request / response models
# ---------------------------------------------------------------------------


class AssetUrlRequest(BaseModel):
    url: str = Field(..., min_length=1, description="HTTPS URL of the image to rehost")


class AssetDataUriRequest(BaseModel):
    data_uri: str = Field(..., min_length=5, description="data: URI holding the image")


class BatchItem(BaseModel):
    """Exactly one of ``url`` or ``data_uri`` must be set."""

    url: Optional[str] = None
    data_uri: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one_source(self):
        if bool(self.url) == bool(self.data_uri):
            raise ValueError("each batch item needs exactly one of 'url' or 'data_uri'")
        return self

    @property
    def source(self) -> str:
        return self.url or self.data_uri or ""


class BatchRequest(BaseModel):
    items: List[BatchItem] = Field(default_factory=list)


class BatchResponse(BaseModel):
    assets: List[Asset]
    count: int


class TransformRequest(BaseModel):
    html: str = Field(..., description="HTML document to rehost and sanitize")


class PublicConfigResponse(BaseModel):
    cdn_base_url: str
