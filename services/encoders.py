"""Encoder chain: resize, compress, optimise.

JPEG output goes through a prioritised list of encoders (MozJPEG's ``cjpeg``
first, Pillow's baseline encoder second); PNG output gets a best-effort
lossless pass through ``oxipng``. Which external tools exist is decided once
when the chain is built, so a missing binary is never a per-request error.
"""

from __future__ import annotations

import io
import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

from PIL import Image

from config import ImageSettings
from services.errors import EncodingFailed
from services.format_decider import JPEG, ProcessingDecision
from services.mime_utils import PIL_FORMAT_MIME

logger = logging.getLogger(__name__)

_OUTPUT_MIMES = {"image/jpeg", "image/png"}
_WHITE = (255, 255, 255)


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    mime: str
    width: int
    height: int


class Encoder(Protocol):
    """A JPEG encoder tried in priority order by the chain."""

    name: str

    def available(self) -> bool:
        ...

    def encode(self, image: Image.Image) -> bytes:
        ...


class MozJpegEncoder:
    """Encode through mozjpeg's ``cjpeg`` binary, feeding a PPM on stdin."""

    name = "mozjpeg"

    def __init__(self, settings: ImageSettings, binary: Optional[str] = None) -> None:
        self.settings = settings
        self.binary = binary if binary is not None else shutil.which(settings.cjpeg_binary)

    def available(self) -> bool:
        return bool(self.binary)

    def encode(self, image: Image.Image) -> bytes:
        if not self.binary:
            raise EncodingFailed("cjpeg is not installed")
        ppm = io.BytesIO()
        image.save(ppm, format="PPM")
        cmd = [
            self.binary,
            "-quality",
            str(self.settings.jpeg_quality),
            "-optimize",
            "-sample",
            "1x1",
        ]
        if self.settings.jpeg_progressive:
            cmd.append("-progressive")
        proc = subprocess.run(
            cmd,
            input=ppm.getvalue(),
            capture_output=True,
            timeout=self.settings.encoder_timeout_seconds,
            check=False,
        )
        if proc.returncode != 0:
            message = (proc.stderr or b"").decode("utf-8", errors="replace").strip()
            raise EncodingFailed(message or f"cjpeg exited with status {proc.returncode}")
        return proc.stdout


class PillowJpegEncoder:
    """Baseline JPEG through Pillow; always available."""

    name = "pillow-jpeg"

    def __init__(self, settings: ImageSettings) -> None:
        self.settings = settings

    def available(self) -> bool:
        return True

    def encode(self, image: Image.Image) -> bytes:
        out = io.BytesIO()
        image.save(
            out,
            format="JPEG",
            quality=self.settings.fallback_jpeg_quality,
            subsampling=0,
            optimize=True,
            progressive=self.settings.jpeg_progressive,
        )
        return out.getvalue()


class OxipngOptimizer:
    """Lossless PNG optimisation through the ``oxipng`` binary."""

    name = "oxipng"

    def __init__(self, settings: ImageSettings, binary: Optional[str] = None) -> None:
        self.settings = settings
        self.binary = binary if binary is not None else shutil.which(settings.oxipng_binary)

    def available(self) -> bool:
        return bool(self.binary)

    def optimize(self, data: bytes) -> bytes:
        """Return optimised bytes, or ``data`` when nothing better was produced."""
        if not self.binary:
            return data
        with tempfile.TemporaryDirectory() as temp_dir:
            tmp_path = Path(temp_dir) / "image.png"
            tmp_path.write_bytes(data)
            cmd = [self.binary, "-o", str(self.settings.oxipng_level)]
            if self.settings.png_strip:
                cmd += ["--strip", "safe"]
            cmd.append(str(tmp_path))
            try:
                subprocess.run(
                    cmd,
                    check=True,
                    capture_output=True,
                    timeout=self.settings.encoder_timeout_seconds,
                )
                optimized = tmp_path.read_bytes()
            except (subprocess.SubprocessError, OSError) as exc:
                logger.warning("oxipng optimisation failed, keeping original: %s", exc)
                return data
        if not optimized or len(optimized) >= len(data):
            return data
        return optimized


class EncoderChain:
    """Turn source bytes plus a ProcessingDecision into final stored bytes."""

    def __init__(
        self,
        settings: ImageSettings,
        *,
        jpeg_encoders: Optional[List[Encoder]] = None,
        png_optimizer: Optional[OxipngOptimizer] = None,
    ) -> None:
        self.settings = settings
        candidates = jpeg_encoders if jpeg_encoders is not None else [
            MozJpegEncoder(settings),
            PillowJpegEncoder(settings),
        ]
        self.jpeg_encoders = [encoder for encoder in candidates if encoder.available()]
        self.png_optimizer = png_optimizer if png_optimizer is not None else OxipngOptimizer(settings)

        skipped = [encoder.name for encoder in candidates if not encoder.available()]
        logger.info(
            "Encoder chain ready: jpeg=%s png_optimizer=%s",
            [encoder.name for encoder in self.jpeg_encoders] or "none",
            self.png_optimizer.name if self.png_optimizer.available() else "none",
        )
        if skipped:
            logger.info("JPEG encoders unavailable at startup: %s", ", ".join(skipped))

    def encode(self, data: bytes, decision: ProcessingDecision) -> EncodedImage:
        if decision.pass_through:
            return self._pass_through(data, decision)

        try:
            with Image.open(io.BytesIO(data)) as source:
                source.load()
                working = self._normalize_mode(source, keep_alpha=decision.output_format != JPEG)
        except (OSError, SyntaxError, ValueError) as exc:
            raise EncodingFailed(f"Unable to decode image: {exc}") from exc

        pre_encode = data
        target = (decision.target_width, decision.target_height)
        if decision.needs_resize and target != working.size:
            working = working.resize(target, resample=Image.Resampling.LANCZOS)
            # Lossless intermediate so the final encode is the only lossy step
            pre_encode = self._png_bytes(working, optimize=False)
            working = Image.open(io.BytesIO(pre_encode))
            working.load()

        if decision.output_format == JPEG:
            result = self._encode_jpeg(working, pre_encode)
        else:
            result = self._encode_png(working, pre_encode)
        return self._finalize(result)

    # ------------------------------------------------------------------

    def _pass_through(self, data: bytes, decision: ProcessingDecision) -> EncodedImage:
        try:
            with Image.open(io.BytesIO(data)) as image:
                detected = PIL_FORMAT_MIME.get(image.format or "")
                image.verify()
        except Exception as exc:
            raise EncodingFailed(f"Pass-through image failed verification: {exc}") from exc
        if detected != decision.source_mime:
            raise EncodingFailed(
                f"Pass-through bytes decode as {detected or 'unknown'}, not {decision.source_mime}"
            )
        return EncodedImage(
            data=data,
            mime=decision.source_mime,
            width=decision.source_width,
            height=decision.source_height,
        )

    @staticmethod
    def _normalize_mode(image: Image.Image, *, keep_alpha: bool) -> Image.Image:
        has_alpha = image.mode in ("RGBA", "LA", "PA", "RGBa", "La") or "transparency" in image.info
        if keep_alpha:
            if has_alpha:
                return image.convert("RGBA")
            return image.convert("RGB") if image.mode not in ("RGB", "L") else image.copy()
        if has_alpha:
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, _WHITE)
            background.paste(rgba, mask=rgba.getchannel("A"))
            return background
        if image.mode in ("RGB", "L"):
            return image.copy()
        return image.convert("RGB")

    def _encode_jpeg(self, image: Image.Image, pre_encode: bytes) -> bytes:
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        for encoder in self.jpeg_encoders:
            try:
                encoded = encoder.encode(image)
            except (EncodingFailed, OSError, ValueError, subprocess.SubprocessError) as exc:
                logger.warning("JPEG encoder %s failed, trying next: %s", encoder.name, exc)
                continue
            if encoded:
                logger.debug("Encoded JPEG with %s (%d bytes)", encoder.name, len(encoded))
                return encoded
            logger.warning("JPEG encoder %s produced no output, trying next", encoder.name)
        logger.warning("All JPEG encoders failed; keeping pre-encode bytes")
        return pre_encode

    def _encode_png(self, image: Image.Image, pre_encode: bytes) -> bytes:
        try:
            encoded = self._png_bytes(image, optimize=True)
        except (OSError, ValueError) as exc:
            logger.warning("PNG encode failed; keeping pre-encode bytes: %s", exc)
            return pre_encode
        if self.png_optimizer.available():
            encoded = self.png_optimizer.optimize(encoded)
        return encoded

    @staticmethod
    def _png_bytes(image: Image.Image, *, optimize: bool) -> bytes:
        out = io.BytesIO()
        image.save(out, format="PNG", optimize=optimize)
        return out.getvalue()

    @staticmethod
    def _finalize(data: bytes) -> EncodedImage:
        """Read format and size back from the produced bytes."""
        try:
            with Image.open(io.BytesIO(data)) as image:
                mime = PIL_FORMAT_MIME.get(image.format or "")
                width, height = image.size
        except Exception as exc:
            raise EncodingFailed(f"Encoder output is not a decodable image: {exc}") from exc
        if mime not in _OUTPUT_MIMES:
            raise EncodingFailed(f"Unable to produce JPEG or PNG output (got {mime or 'unknown'})")
        return EncodedImage(data=data, mime=mime, width=width, height=height)
