"""Decide how an input image is stored: pass-through, resize and output container."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from io import BytesIO
from typing import Optional, Tuple

from PIL import Image

from config import ImageSettings
from services.errors import PayloadTooLarge, UnsupportedFormat
from services.mime_utils import PIL_FORMAT_MIME, is_supported_image, normalize_mime, sniff_mime

logger = logging.getLogger(__name__)

JPEG = "JPEG"
PNG = "PNG"

_ALPHA_MODES = {"RGBA", "LA", "PA", "RGBa", "La"}
_PASSTHROUGH_MIMES = {"image/jpeg", "image/png"}


@dataclass(frozen=True)
class ProcessingDecision:
    """Outcome of inspecting an image; consumed by the encoder chain."""

    needs_resize: bool
    target_width: int
    target_height: int
    has_meaningful_transparency: bool
    output_format: str
    pass_through: bool = False
    source_mime: str = "image/jpeg"
    source_width: int = 0
    source_height: int = 0
    source_bytes: int = 0

    @property
    def output_mime(self) -> str:
        if self.pass_through:
            return self.source_mime
        return "image/png" if self.output_format == PNG else "image/jpeg"


class FormatDecider:
    """Pure function of image metadata; holds only thresholds."""

    def __init__(self, settings: ImageSettings) -> None:
        self.settings = settings

    def decide(self, data: bytes, content_type: Optional[str]) -> ProcessingDecision:
        mime = self._resolve_mime(data, content_type)
        image = self._open(data)
        try:
            width, height = image.size
            alpha_flag = self._has_alpha_flag(image)
            pil_mime = PIL_FORMAT_MIME.get(image.format or "")
        finally:
            image.close()

        # Trust what the codec actually found over the declared type
        source_mime = pil_mime or mime
        decoded_as_passthrough = pil_mime in _PASSTHROUGH_MIMES
        byte_size = len(data)
        max_edge = self.settings.max_edge
        within_edge = width <= max_edge and height <= max_edge

        has_transparency = self._sample_transparency(data) if alpha_flag else False

        if (
            decoded_as_passthrough
            and byte_size < self.settings.passthrough_max_bytes
            and within_edge
        ):
            return ProcessingDecision(
                needs_resize=False,
                target_width=width,
                target_height=height,
                has_meaningful_transparency=has_transparency,
                output_format=PNG if source_mime == "image/png" else JPEG,
                pass_through=True,
                source_mime=source_mime,
                source_width=width,
                source_height=height,
                source_bytes=byte_size,
            )

        needs_resize = not within_edge or byte_size > self.settings.resize_max_bytes
        target_width, target_height = self.target_dimensions(width, height)
        return ProcessingDecision(
            needs_resize=needs_resize,
            target_width=target_width,
            target_height=target_height,
            has_meaningful_transparency=has_transparency,
            output_format=PNG if has_transparency else JPEG,
            pass_through=False,
            source_mime=source_mime,
            source_width=width,
            source_height=height,
            source_bytes=byte_size,
        )

    def target_dimensions(self, width: int, height: int) -> Tuple[int, int]:
        """Scale both edges by one factor so neither exceeds max_edge; never upscale."""
        max_edge = self.settings.max_edge
        if width <= max_edge and height <= max_edge:
            return width, height
        # Integer arithmetic keeps the long edge exactly at max_edge
        if width >= height:
            return max_edge, max(1, height * max_edge // width)
        return max(1, width * max_edge // height), max_edge

    def _resolve_mime(self, data: bytes, content_type: Optional[str]) -> str:
        mime = normalize_mime(content_type)
        if is_supported_image(mime):
            return mime
        sniffed = sniff_mime(data)
        if is_supported_image(sniffed):
            logger.debug("Declared type %s re-sniffed as %s", content_type, sniffed)
            return sniffed
        raise UnsupportedFormat(f"Unsupported image type: {content_type or 'unknown'}")

    def _open(self, data: bytes) -> Image.Image:
        try:
            image = Image.open(BytesIO(data))
        except Image.DecompressionBombError as exc:
            raise PayloadTooLarge("Image has too many pixels") from exc
        except (OSError, SyntaxError, ValueError) as exc:
            raise UnsupportedFormat(f"Unable to decode image: {exc}") from exc
        width, height = image.size
        if width < 1 or height < 1:
            image.close()
            raise UnsupportedFormat("Image has no pixels")
        if width * height > self.settings.max_image_pixels:
            image.close()
            raise PayloadTooLarge(
                f"Image has {width * height} pixels (max {self.settings.max_image_pixels})"
            )
        return image

    @staticmethod
    def _has_alpha_flag(image: Image.Image) -> bool:
        if image.mode in _ALPHA_MODES:
            return True
        return "transparency" in image.info

    def _sample_transparency(self, data: bytes) -> bool:
        """Sample a bounded grid of alpha values; any sub-opaque pixel counts.

        A decode failure here is treated as transparent so a possibly
        transparent image is never flattened to JPEG.
        """
        try:
            with Image.open(BytesIO(data)) as image:
                image.load()
                alpha = image.convert("RGBA").getchannel("A")
        except Exception as exc:
            logger.warning("Alpha sampling failed, assuming transparency: %s", exc)
            return True

        width, height = alpha.size
        per_axis = max(1, math.isqrt(self.settings.transparency_sample_points))
        cols = min(per_axis, width)
        rows = min(per_axis, height)
        for row in range(rows):
            y = min(height - 1, int((row + 0.5) * height / rows))
            for col in range(cols):
                x = min(width - 1, int((col + 0.5) * width / cols))
                if alpha.getpixel((x, y)) < 255:
                    return True
        return False
