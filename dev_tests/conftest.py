"""Shared pytest fixtures for the Format asset service tests."""

import io
import os
import sys
from typing import Dict, List, Optional, Union

import pytest
from PIL import Image

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import FetchSettings, ImageSettings, TransformSettings
from models import Asset


# ============================================================================
# Image Fixtures
# ============================================================================

def build_image_bytes(
    fmt: str = "PNG",
    size=(64, 48),
    mode: str = "RGB",
    color=(200, 30, 30),
    noise: bool = False,
    **save_kwargs,
) -> bytes:
    """Encode a generated image; noise=True gives incompressible pixels."""
    if noise:
        channels = len(mode)
        image = Image.frombytes(mode, size, os.urandom(size[0] * size[1] * channels))
    else:
        image = Image.new(mode, size, color)
    out = io.BytesIO()
    image.save(out, format=fmt, **save_kwargs)
    return out.getvalue()


@pytest.fixture
def image_bytes():
    """Factory fixture producing encoded test images."""
    return build_image_bytes


@pytest.fixture
def image_settings():
    return ImageSettings()


@pytest.fixture
def fetch_settings():
    return FetchSettings()


@pytest.fixture
def transform_settings():
    return TransformSettings()


# ============================================================================
# Storage and Pipeline Fixtures
# ============================================================================

@pytest.fixture
def local_store(tmp_path):
    """Filesystem object store rooted in a temporary directory."""
    from services.object_store import LocalObjectStore

    return LocalObjectStore(
        base_dir=str(tmp_path / "assets"),
        public_base_url="https://cdn.test",
        cache_control="public, max-age=60",
    )


@pytest.fixture
def pillow_encoder_chain(image_settings):
    """Encoder chain that never shells out: Pillow JPEG only, no oxipng."""
    from services.encoders import EncoderChain, OxipngOptimizer, PillowJpegEncoder

    return EncoderChain(
        image_settings,
        jpeg_encoders=[PillowJpegEncoder(image_settings)],
        png_optimizer=OxipngOptimizer(image_settings, binary=""),
    )


@pytest.fixture
def asset_service(local_store, pillow_encoder_chain, image_settings, fetch_settings):
    """AssetService wired to the local store and the Pillow-only encoder chain."""
    from services.asset_service import AssetService
    from services.content_store import ContentStore
    from services.fetcher import Fetcher
    from services.format_decider import FormatDecider

    return AssetService(
        fetcher=Fetcher(settings=fetch_settings),
        decider=FormatDecider(image_settings),
        encoder_chain=pillow_encoder_chain,
        content_store=ContentStore(local_store),
        max_batch_size=5,
    )


def make_asset(public_url: str = "https://cdn.test/ab/cdef.jpg", deduplicated: bool = False) -> Asset:
    return Asset(
        public_url=public_url,
        mime="image/jpeg",
        width=10,
        height=10,
        byte_size=100,
        content_digest="sha256:" + "0" * 64,
        storage_key=public_url.rsplit("/", 2)[-2] + "/" + public_url.rsplit("/", 1)[-1],
        deduplicated=deduplicated,
    )


class FakeAssetProcessor:
    """Records sources; returns a canned Asset or raises a configured error."""

    def __init__(self, results: Optional[Dict[str, Union[Asset, Exception]]] = None):
        self.results = results or {}
        self.calls: List[str] = []

    async def process_source(self, source: str) -> Asset:
        self.calls.append(source)
        result = self.results.get(source)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return make_asset(f"https://cdn.test/zz/{len(self.calls):024d}.jpg")
        return result


@pytest.fixture
def fake_asset_processor():
    return FakeAssetProcessor()
