"""Asset pipeline entry points: fetch, decide, encode, store."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence, Union

from config import Config, config
from logging_utils import Phase, PhaseLogger, create_phase_logger, redact_url
from models import Asset, BatchItem
from services.content_store import ContentStore
from services.encoders import EncoderChain
from services.errors import AssetError, BatchItemFailed, BatchValidationError, StorageUnavailable
from services.fetcher import Fetcher, FetchResult
from services.format_decider import FormatDecider
from services.object_store import get_object_store

logger = logging.getLogger(__name__)

BatchSource = Union[str, BatchItem]


class AssetService:
    """Runs one source through Fetcher -> FormatDecider -> EncoderChain -> ContentStore."""

    def __init__(
        self,
        *,
        fetcher: Fetcher,
        decider: FormatDecider,
        encoder_chain: EncoderChain,
        content_store: ContentStore,
        max_batch_size: int = 20,
    ) -> None:
        self.fetcher = fetcher
        self.decider = decider
        self.encoder_chain = encoder_chain
        self.content_store = content_store
        self.max_batch_size = max_batch_size

    @property
    def public_base_url(self) -> str:
        return self.content_store.backend.public_base_url

    async def process_from_url(self, url: str) -> Asset:
        label = redact_url(url)
        phase_logger = create_phase_logger(label)
        with phase_logger.phase(Phase.FETCH):
            fetched = await self.fetcher.fetch_url(url)
            phase_logger.debug(f"{len(fetched.data)} bytes, {fetched.content_type}")
        return await self._process(fetched, source=label, phase_logger=phase_logger)

    async def process_from_data_uri(self, data_uri: str) -> Asset:
        phase_logger = create_phase_logger("data-uri")
        with phase_logger.phase(Phase.FETCH):
            fetched = self.fetcher.decode_data_uri(data_uri)
        return await self._process(fetched, source="data:", phase_logger=phase_logger)

    async def process_from_bytes(self, data: bytes, declared_content_type: Optional[str] = None) -> Asset:
        phase_logger = create_phase_logger("upload")
        with phase_logger.phase(Phase.FETCH):
            fetched = self.fetcher.from_bytes(data, declared_content_type)
        return await self._process(fetched, source="upload", phase_logger=phase_logger)

    async def process_source(self, source: str) -> Asset:
        """Route a URL or data URI string to the matching entry point."""
        if source.strip()[:5].lower() == "data:":
            return await self.process_from_data_uri(source.strip())
        return await self.process_from_url(source)

    async def process_batch(self, items: Sequence[BatchSource]) -> List[Asset]:
        """Process items in order; the first failure aborts the rest."""
        if not items:
            raise BatchValidationError("no items provided")
        if len(items) > self.max_batch_size:
            raise BatchValidationError(f"too many items (max {self.max_batch_size})")

        assets: List[Asset] = []
        for index, item in enumerate(items):
            source = item.source if isinstance(item, BatchItem) else item
            try:
                assets.append(await self.process_source(source))
            except AssetError as exc:
                logger.warning("Batch item %d failed: %s", index, exc)
                raise BatchItemFailed(index, exc) from exc
        return assets

    async def _process(self, fetched: FetchResult, *, source: str, phase_logger: PhaseLogger) -> Asset:
        loop = asyncio.get_running_loop()

        with phase_logger.phase(Phase.DECIDE):
            decision = await loop.run_in_executor(
                None, self.decider.decide, fetched.data, fetched.content_type
            )
            phase_logger.log_details(
                "Processing decision",
                {
                    "source": f"{decision.source_mime} {decision.source_width}x{decision.source_height}",
                    "bytes": decision.source_bytes,
                    "pass_through": decision.pass_through,
                    "resize": decision.needs_resize,
                    "target": f"{decision.target_width}x{decision.target_height}",
                    "transparent": decision.has_meaningful_transparency,
                    "format": decision.output_format,
                },
            )

        with phase_logger.phase(Phase.ENCODE):
            encoded = await loop.run_in_executor(None, self.encoder_chain.encode, fetched.data, decision)

        with phase_logger.phase(Phase.STORE):
            asset = await self.content_store.put(
                encoded.data,
                encoded.mime,
                width=encoded.width,
                height=encoded.height,
                source=source,
            )

        phase_logger.info(
            f"{'deduplicated' if asset.deduplicated else 'stored'} {asset.storage_key} "
            f"({fetched.content_type} {len(fetched.data)}B -> {asset.mime} {asset.byte_size}B "
            f"{asset.width}x{asset.height})"
        )
        phase_logger.log_timing_summary()
        return asset


_asset_service: Optional[AssetService] = None


def build_asset_service(settings: Config) -> AssetService:
    try:
        backend = get_object_store(settings.STORAGE)
    except ValueError as exc:
        raise StorageUnavailable(f"object store is not configured: {exc}") from exc
    return AssetService(
        fetcher=Fetcher(settings=settings.FETCH),
        decider=FormatDecider(settings.IMAGE),
        encoder_chain=EncoderChain(settings.IMAGE),
        content_store=ContentStore(backend),
        max_batch_size=settings.ASSETS.max_batch_size,
    )


def get_asset_service() -> AssetService:
    global _asset_service
    if _asset_service is None:
        _asset_service = build_asset_service(config)
    return _asset_service
