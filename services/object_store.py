"""Object store backends: Cloudflare R2 (S3 API via boto3) and the local filesystem.

Both expose the same small synchronous surface; callers run them on an
executor. ``exists`` returns False only for a definite "not found"; every
other failure is raised.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Optional

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

import json_utils as json
from config import StorageSettings

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def is_not_found_client_error(exception: ClientError) -> bool:
    error = exception.response.get("Error", {}) if exception.response else {}
    return str(error.get("Code", "")) in _NOT_FOUND_CODES


class ObjectStoreError(Exception):
    """Raised by a backend for any failure other than a missing object."""


class ObjectStore:
    """Minimal key/value boundary used by the content store."""

    def __init__(self, public_base_url: str, cache_control: str) -> None:
        self.public_base_url = public_base_url.rstrip("/")
        self.cache_control = cache_control

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def put(self, key: str, data: bytes, content_type: str, metadata: Optional[Dict[str, str]] = None) -> str:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def public_url_for(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"


class R2ObjectStore(ObjectStore):
    """S3-compatible store; region is always ``auto`` on R2."""

    def __init__(self, settings: StorageSettings, client=None) -> None:
        super().__init__(settings.public_base_url, settings.cache_control)
        self.bucket = settings.r2_bucket
        if client is None:
            endpoint = settings.resolved_endpoint()
            if not endpoint:
                raise ValueError("R2_ACCOUNT_ID or R2_S3_ENDPOINT must be configured")
            if not settings.r2_access_key_id or not settings.r2_secret_access_key:
                raise ValueError("R2 credentials are required")
            client = boto3.client(
                "s3",
                endpoint_url=endpoint,
                aws_access_key_id=settings.r2_access_key_id,
                aws_secret_access_key=settings.r2_secret_access_key,
                region_name=settings.r2_region,
                config=BotoConfig(
                    signature_version="s3v4",
                    connect_timeout=settings.connect_timeout_seconds,
                    read_timeout=settings.read_timeout_seconds,
                    retries={"max_attempts": 2, "mode": "standard"},
                ),
            )
        self.s3 = client

    def exists(self, key: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if is_not_found_client_error(e):
                return False
            raise ObjectStoreError(f"HeadObject failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"HeadObject failed for {key}: {e}") from e
        return True

    def put(self, key: str, data: bytes, content_type: str, metadata: Optional[Dict[str, str]] = None) -> str:
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=self.cache_control,
                Metadata=metadata or {},
            )
        except (ClientError, BotoCoreError) as e:
            raise ObjectStoreError(f"PutObject failed for {key}: {e}") from e
        return self.public_url_for(key)

    def delete(self, key: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise ObjectStoreError(f"DeleteObject failed for {key}: {e}") from e


class LocalObjectStore(ObjectStore):
    """Filesystem backend for development; metadata lives in a JSON sidecar."""

    METADATA_SUFFIX = ".meta.json"

    def __init__(self, base_dir: str, public_base_url: str, cache_control: str) -> None:
        super().__init__(public_base_url, cache_control)
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if self.base_dir.resolve() not in path.parents:
            raise ObjectStoreError(f"Key escapes storage root: {key}")
        return path

    def exists(self, key: str) -> bool:
        try:
            return self._path_for(key).is_file()
        except OSError as e:
            raise ObjectStoreError(f"Unable to stat {key}: {e}") from e

    def put(self, key: str, data: bytes, content_type: str, metadata: Optional[Dict[str, str]] = None) -> str:
        path = self._path_for(key)
        sidecar = {
            "content_type": content_type,
            "cache_control": self.cache_control,
            "size": len(data),
            "metadata": metadata or {},
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
            with open(path.with_name(path.name + self.METADATA_SUFFIX), "w", encoding="utf-8") as fp:
                json.dump(sidecar, fp, indent=2)
        except OSError as e:
            raise ObjectStoreError(f"Unable to write {key}: {e}") from e
        return self.public_url_for(key)

    def read_metadata(self, key: str) -> Dict[str, object]:
        path = self._path_for(key)
        with open(path.with_name(path.name + self.METADATA_SUFFIX), "r", encoding="utf-8") as fp:
            return json.load(fp)

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
            path.with_name(path.name + self.METADATA_SUFFIX).unlink(missing_ok=True)
        except OSError as e:
            raise ObjectStoreError(f"Unable to delete {key}: {e}") from e


_store_singleton: Optional[ObjectStore] = None


def build_object_store(settings: StorageSettings) -> ObjectStore:
    backend = (settings.backend or "r2").lower()
    if backend == "local":
        logger.info("Using local object store at %s", settings.local_base_path)
        return LocalObjectStore(
            base_dir=settings.local_base_path,
            public_base_url=settings.public_base_url,
            cache_control=settings.cache_control,
        )
    if backend in {"r2", "s3"}:
        logger.info("Using R2 object store bucket=%s", settings.r2_bucket)
        return R2ObjectStore(settings)
    raise ValueError(f"Unknown storage backend: {settings.backend}")


def get_object_store(settings: StorageSettings) -> ObjectStore:
    global _store_singleton
    if _store_singleton is None:
        _store_singleton = build_object_store(settings)
    return _store_singleton
