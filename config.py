"""
Configuration for the Format asset rehosting service
====================================================

Central configuration for fetch limits, image processing thresholds, object
storage and the HTML transform. Defaults live on the pydantic models below;
environment variables (optionally from a .env file) override them at startup.
"""

import os
from typing import List, Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class FetchSettings(BaseModel):
    """Remote image download limits and SSRF guards."""

    max_bytes: int = Field(
        default=30 * 1024 * 1024,
        description="Hard cap on bytes read from a remote image, a data URI or an upload",
    )
    connect_timeout_seconds: float = Field(
        default=10.0,
        description="TCP/TLS connect timeout for remote fetches",
    )
    read_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout between body chunks for remote fetches",
    )
    overall_timeout_seconds: float = Field(
        default=30.0,
        description="Deadline for a whole remote fetch, redirects included",
    )
    max_redirects: int = Field(
        default=3,
        ge=0,
        description="Maximum redirects followed; every hop is validated again",
    )
    user_agent: str = Field(
        default="format.hackclub.com/1.0",
        description="User-Agent header sent with remote fetches",
    )
    min_bytes_per_second: int = Field(
        default=1024,
        ge=0,
        description="Minimum sustained transfer rate before a download is aborted (0 disables)",
    )
    min_rate_window_seconds: float = Field(
        default=5.0,
        description="Window used to evaluate the minimum transfer rate",
    )
    allowed_schemes: List[str] = Field(
        default_factory=lambda: ["https"],
        description="URL schemes accepted for remote fetches",
    )
    blocked_hostnames: List[str] = Field(
        default_factory=lambda: ["localhost", "localhost.localdomain", "metadata.google.internal"],
        description="Hostnames rejected before DNS resolution",
    )


class ImageSettings(BaseModel):
    """Resize, format and encoder configuration."""

    max_edge: int = Field(
        default=3840,
        ge=1,
        description="Maximum width or height of a stored image in pixels",
    )
    passthrough_max_bytes: int = Field(
        default=1024 * 1024,
        description="JPEG/PNG inputs smaller than this (and within max_edge) are stored unmodified",
    )
    resize_max_bytes: int = Field(
        default=5 * 1024 * 1024,
        description="Inputs larger than this are always resized and re-encoded",
    )
    transparency_sample_points: int = Field(
        default=400,
        ge=1,
        description="Approximate number of pixels sampled when checking alpha",
    )
    jpeg_quality: int = Field(
        default=92,
        ge=1,
        le=100,
        description="Quality used by the preferred (MozJPEG) encoder",
    )
    fallback_jpeg_quality: int = Field(
        default=88,
        ge=1,
        le=100,
        description="Quality used by the baseline Pillow JPEG encoder",
    )
    jpeg_progressive: bool = Field(
        default=True,
        description="Emit progressive JPEGs",
    )
    cjpeg_binary: str = Field(
        default="cjpeg",
        description="MozJPEG cjpeg executable name or path",
    )
    oxipng_binary: str = Field(
        default="oxipng",
        description="oxipng executable name or path",
    )
    oxipng_level: int = Field(
        default=2,
        ge=0,
        le=6,
        description="oxipng optimisation level",
    )
    png_strip: bool = Field(
        default=True,
        description="Strip non-essential PNG chunks during optimisation",
    )
    encoder_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for a single external encoder invocation",
    )
    max_image_pixels: int = Field(
        default=100_000_000,
        description="Decompression bomb guard: images above this pixel count are rejected",
    )


class StorageSettings(BaseModel):
    """Object storage backend configuration."""

    backend: str = Field(
        default="r2",
        description="Object store backend: 'r2' (S3 compatible) or 'local'",
    )
    r2_account_id: str = Field(default="", description="Cloudflare account id")
    r2_access_key_id: str = Field(default="", description="R2 access key id")
    r2_secret_access_key: str = Field(default="", description="R2 secret access key")
    r2_bucket: str = Field(default="format-assets", description="Bucket holding rehosted assets")
    r2_endpoint: Optional[str] = Field(
        default=None,
        description="S3 endpoint override; derived from the account id when empty",
    )
    r2_region: str = Field(default="auto", description="Region name passed to the S3 client")
    public_base_url: str = Field(
        default="https://i.format.hackclub.com",
        description="Public base URL that storage keys are appended to",
    )
    local_base_path: str = Field(
        default="data/assets",
        description="Directory used by the local backend",
    )
    cache_control: str = Field(
        default="public, max-age=31536000, immutable",
        description="Cache-Control header stored with every object",
    )
    connect_timeout_seconds: float = Field(default=5.0, description="Object store connect timeout")
    read_timeout_seconds: float = Field(default=30.0, description="Object store read timeout")

    def resolved_endpoint(self) -> Optional[str]:
        if self.r2_endpoint:
            return self.r2_endpoint
        if self.r2_account_id:
            return f"https://{self.r2_account_id}.r2.cloudflarestorage.com"
        return None


class TransformSettings(BaseModel):
    """HTML transform limits and Gmail-safe vocabulary."""

    max_html_bytes: int = Field(
        default=1_500_000,
        description="Maximum size of an HTML document accepted by the transform",
    )
    ephemeral_hosts: List[str] = Field(
        default_factory=lambda: [
            "amazonaws.com",
            "googleusercontent.com",
            "mail.google.com",
            "notion.so",
            "dropbox.com",
            "onedrive.com",
        ],
        description="Hosts known to issue expiring image links (suffix match)",
    )
    signed_query_params: List[str] = Field(
        default_factory=lambda: ["expires", "x-amz-", "sig", "signature", "token"],
        description="Query parameter names (or prefixes ending in '-') that mark a signed URL",
    )
    tracking_params: List[str] = Field(
        default_factory=lambda: [
            "utm_source",
            "utm_medium",
            "utm_campaign",
            "utm_term",
            "utm_content",
            "gclid",
            "fbclid",
        ],
        description="Query parameters stripped from links",
    )
    allowed_class_prefixes: List[str] = Field(
        default_factory=lambda: ["gmail_"],
        description="Class tokens kept by the sanitizer",
    )
    request_timeout_seconds: float = Field(
        default=60.0,
        description="Deadline for a whole transform request",
    )


class AssetApiSettings(BaseModel):
    """HTTP surface limits for asset ingestion."""

    max_batch_size: int = Field(default=20, ge=1, description="Maximum items in one batch call")
    rate_limit_requests: int = Field(
        default=60,
        ge=1,
        description="Asset requests allowed per client IP within the window",
    )
    rate_limit_window_seconds: float = Field(default=60.0, description="Rate limit window")


def _positive_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        parsed = int(raw)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _positive_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        parsed = float(raw)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _flag(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if not raw:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _csv(name: str) -> Optional[List[str]]:
    raw = os.getenv(name)
    if not raw:
        return None
    values = [value.strip() for value in raw.split(",") if value.strip()]
    return values or None


class Config(BaseModel):
    """Configuration settings for the rehosting service."""

    FETCH: FetchSettings = Field(default_factory=FetchSettings, description="Remote fetch settings")
    IMAGE: ImageSettings = Field(default_factory=ImageSettings, description="Image processing settings")
    STORAGE: StorageSettings = Field(default_factory=StorageSettings, description="Object storage settings")
    TRANSFORM: TransformSettings = Field(default_factory=TransformSettings, description="HTML transform settings")
    ASSETS: AssetApiSettings = Field(default_factory=AssetApiSettings, description="Asset API settings")

    APP_HOST: str = Field(default="0.0.0.0", description="Bind address")
    APP_PORT: int = Field(default=8080, description="Bind port")
    APP_RELOAD: bool = Field(default=False, description="Enable uvicorn autoreload")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")
    TRUSTED_PROXIES: List[str] = Field(
        default_factory=list,
        description="Proxy IPs/CIDRs whose X-Forwarded-For header is honoured",
    )

    def __init__(self, **data):
        super().__init__(**data)
        self.load_from_environment()

    def load_from_environment(self):
        """Load configuration overrides from environment variables."""
        # Fetch
        value = _positive_int("FETCH_MAX_BYTES")
        if value:
            self.FETCH.max_bytes = value
        value = _positive_float("FETCH_CONNECT_TIMEOUT")
        if value:
            self.FETCH.connect_timeout_seconds = value
        value = _positive_float("FETCH_READ_TIMEOUT")
        if value:
            self.FETCH.read_timeout_seconds = value
        value = _positive_float("FETCH_OVERALL_TIMEOUT")
        if value:
            self.FETCH.overall_timeout_seconds = value
        redirects = os.getenv("FETCH_MAX_REDIRECTS")
        if redirects:
            try:
                parsed = int(redirects)
                if parsed >= 0:
                    self.FETCH.max_redirects = parsed
            except ValueError:
                pass
        self.FETCH.user_agent = os.getenv("FETCH_USER_AGENT", self.FETCH.user_agent)

        # Image processing
        value = _positive_int("IMAGE_MAX_EDGE")
        if value:
            self.IMAGE.max_edge = value
        value = _positive_int("IMAGE_PASSTHROUGH_MAX_BYTES")
        if value:
            self.IMAGE.passthrough_max_bytes = value
        value = _positive_int("IMAGE_RESIZE_MAX_BYTES")
        if value:
            self.IMAGE.resize_max_bytes = value
        value = _positive_int("JPEG_QUALITY")
        if value and value <= 100:
            self.IMAGE.jpeg_quality = value
        value = _positive_int("JPEG_FALLBACK_QUALITY")
        if value and value <= 100:
            self.IMAGE.fallback_jpeg_quality = value
        flag = _flag("JPEG_PROGRESSIVE")
        if flag is not None:
            self.IMAGE.jpeg_progressive = flag
        flag = _flag("PNG_STRIP")
        if flag is not None:
            self.IMAGE.png_strip = flag
        self.IMAGE.cjpeg_binary = os.getenv("CJPEG_BINARY", self.IMAGE.cjpeg_binary)
        self.IMAGE.oxipng_binary = os.getenv("OXIPNG_BINARY", self.IMAGE.oxipng_binary)

        # Storage
        backend = os.getenv("STORAGE_BACKEND")
        if backend:
            self.STORAGE.backend = backend.strip().lower()
        self.STORAGE.r2_account_id = os.getenv("R2_ACCOUNT_ID", self.STORAGE.r2_account_id)
        self.STORAGE.r2_access_key_id = os.getenv("R2_ACCESS_KEY_ID", self.STORAGE.r2_access_key_id)
        self.STORAGE.r2_secret_access_key = os.getenv("R2_SECRET_ACCESS_KEY", self.STORAGE.r2_secret_access_key)
        self.STORAGE.r2_bucket = os.getenv("R2_BUCKET", self.STORAGE.r2_bucket)
        self.STORAGE.r2_endpoint = os.getenv("R2_S3_ENDPOINT") or self.STORAGE.r2_endpoint
        self.STORAGE.public_base_url = os.getenv("R2_PUBLIC_BASE_URL", self.STORAGE.public_base_url)
        self.STORAGE.local_base_path = os.getenv("LOCAL_STORAGE_PATH", self.STORAGE.local_base_path)

        # Transform
        value = _positive_int("TRANSFORM_MAX_HTML_BYTES")
        if value:
            self.TRANSFORM.max_html_bytes = value
        hosts = _csv("TRANSFORM_EPHEMERAL_HOSTS")
        if hosts:
            self.TRANSFORM.ephemeral_hosts = [host.lower() for host in hosts]
        value = _positive_float("TRANSFORM_REQUEST_TIMEOUT")
        if value:
            self.TRANSFORM.request_timeout_seconds = value

        # Asset API
        value = _positive_int("ASSETS_MAX_BATCH_SIZE")
        if value:
            self.ASSETS.max_batch_size = value
        value = _positive_int("ASSETS_RATE_LIMIT_REQUESTS")
        if value:
            self.ASSETS.rate_limit_requests = value

        # FastAPI Configuration
        self.APP_HOST = os.getenv("APP_HOST", self.APP_HOST)
        port = _positive_int("PORT") or _positive_int("APP_PORT")
        if port:
            self.APP_PORT = port
        self.APP_RELOAD = os.getenv("APP_RELOAD", "false").lower() == "true"
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", self.LOG_LEVEL).upper()
        proxies = _csv("TRUSTED_PROXIES")
        if proxies:
            self.TRUSTED_PROXIES = proxies


# Global configuration instance
config = Config()
