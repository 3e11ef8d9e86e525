"""Content-addressed storage with dedup on top of an ObjectStore backend."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
from typing import Optional

from models import Asset
from services.errors import StorageUnavailable, StorageWriteFailed
from services.mime_utils import extension_for_mime, normalize_mime
from services.object_store import ObjectStore, ObjectStoreError

logger = logging.getLogger(__name__)

KEY_LENGTH = 26  # 130 bits of the digest
SHARD_LENGTH = 2


def content_digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def storage_key_for(data: bytes, mime: str) -> str:
    """Derive ``xx/<24 chars>.ext`` from the sha256 of ``data``."""
    digest = hashlib.sha256(data).digest()
    encoded = base64.b32encode(digest).decode("ascii").rstrip("=").lower()[:KEY_LENGTH]
    return f"{encoded[:SHARD_LENGTH]}/{encoded[SHARD_LENGTH:]}{extension_for_mime(mime)}"


class ContentStore:
    """Compute key, check existence, upload if absent, return an Asset."""

    def __init__(self, backend: ObjectStore) -> None:
        self.backend = backend

    async def put(
        self,
        data: bytes,
        mime: str,
        *,
        width: int,
        height: int,
        source: Optional[str] = None,
    ) -> Asset:
        mime = normalize_mime(mime) or mime
        key = storage_key_for(data, mime)
        digest = content_digest(data)
        loop = asyncio.get_running_loop()

        try:
            exists = await loop.run_in_executor(None, self.backend.exists, key)
        except ObjectStoreError as exc:
            raise StorageUnavailable(f"failed to check if object exists: {exc}") from exc

        if exists:
            logger.info("Object %s already exists, reusing", key)
        else:
            # S3 user metadata must be ASCII
            metadata = {"source": source[:256].encode("ascii", "replace").decode("ascii")} if source else {}
            try:
                await loop.run_in_executor(
                    None,
                    lambda: self.backend.put(key, data, mime, metadata),
                )
            except ObjectStoreError as exc:
                raise StorageWriteFailed(f"failed to upload object: {exc}") from exc
            logger.info("Uploaded %s (%d bytes, %s)", key, len(data), mime)

        return Asset(
            public_url=self.backend.public_url_for(key),
            mime=mime,
            width=width,
            height=height,
            byte_size=len(data),
            content_digest=digest,
            storage_key=key,
            deduplicated=exists,
        )
