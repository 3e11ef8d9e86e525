"""MIME helpers shared by the fetcher, the format decider and the content store."""

from __future__ import annotations

from typing import Optional

SUPPORTED_IMAGE_TYPES = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/webp",
        "image/gif",
        "image/tiff",
        "image/bmp",
        "image/heif",
        "image/heic",
        "image/avif",
    }
)

OUTPUT_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
}

# Pillow format names mapped back to MIME types
PIL_FORMAT_MIME = {
    "JPEG": "image/jpeg",
    "MPO": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "TIFF": "image/tiff",
    "BMP": "image/bmp",
    "HEIF": "image/heif",
    "AVIF": "image/avif",
}

_HEIF_BRANDS = {b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"mif1", b"msf1"}
_AVIF_BRANDS = {b"avif", b"avis"}


def normalize_mime(value: Optional[str]) -> Optional[str]:
    """Strip parameters and lower-case a Content-Type value."""
    if not value:
        return None
    mime = value.split(";", 1)[0].strip().lower()
    if mime == "image/jpg":
        return "image/jpeg"
    return mime or None


def is_supported_image(mime: Optional[str]) -> bool:
    return bool(mime) and mime in SUPPORTED_IMAGE_TYPES


def sniff_mime(sample: bytes) -> Optional[str]:
    """Detect an image type from magic bytes; returns None when unrecognised."""
    if not sample:
        return None
    header = sample[:32]
    if header.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if header.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if header.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if header.startswith(b"RIFF") and header[8:12] == b"WEBP":
        return "image/webp"
    if header.startswith((b"II*\x00", b"MM\x00*")):
        return "image/tiff"
    if header.startswith(b"BM"):
        return "image/bmp"
    if header[4:8] == b"ftyp":
        brand = header[8:12]
        if brand in _AVIF_BRANDS:
            return "image/avif"
        if brand in _HEIF_BRANDS:
            return "image/heif"
    return None


def sniff_content_type(sample: bytes) -> str:
    """Like sniff_mime, falling back to a generic type for unknown bytes."""
    detected = sniff_mime(sample)
    if detected:
        return detected
    return "application/octet-stream"


def extension_for_mime(mime: str) -> str:
    try:
        return OUTPUT_EXTENSIONS[normalize_mime(mime)]
    except KeyError as exc:
        raise ValueError(f"No storage extension for MIME type {mime!r}") from exc
