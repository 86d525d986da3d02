#!/usr/bin/env python3
"""
step6_delivery.py – Render storage (S3 / GCS)
=============================================

Persist rendered images under content-addressed keys and return a public URL.
When no storage is configured the dispatcher returns renders inline as data
URLs instead.

Features:
- Content-addressable keys: <prefix>/<digest>-<sha16>.<ext>
- Immutable cache headers, public-read objects
- Blocking SDK calls run in a worker thread

Dependencies: boto3 google-cloud-storage (optional)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional
from urllib.parse import urljoin

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config import StorageConfig
from ..errors import GhostPipelineError

# Optional GCS dependency
try:
    from google.cloud import storage as gcs
    HAVE_GCS = True
except ImportError:
    HAVE_GCS = False
    gcs = None

logger = logging.getLogger("ghoststudio.delivery")

CACHE_CONTROL = "public, max-age=31536000, immutable"

EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}


def object_key(config: StorageConfig, key_hint: str, mime_type: str) -> str:
    prefix = config.prefix.strip("/")
    name = f"{key_hint}{EXTENSIONS.get(mime_type, '.bin')}"
    return f"{prefix}/{name}" if prefix else name


class RenderStorage:
    """Base class for render storage providers."""

    def __init__(self, config: StorageConfig):
        self.config = config

    def public_url(self, key: str) -> str:
        base = self.config.public_url_base or self.default_url_base()
        return urljoin(base.rstrip("/") + "/", key)

    def default_url_base(self) -> str:
        raise NotImplementedError

    def put(self, data: bytes, key: str, mime_type: str) -> None:
        raise NotImplementedError

    async def store(self, data: bytes, mime_type: str, key_hint: str) -> str:
        """Upload ``data`` and return its public URL."""
        key = object_key(self.config, key_hint, mime_type)
        await asyncio.to_thread(self.put, data, key, mime_type)
        url = self.public_url(key)
        logger.info(f"📦 Stored render at {url}")
        return url


class S3RenderStorage(RenderStorage):
    """AWS S3 storage provider."""

    def __init__(self, config: StorageConfig, client=None):
        super().__init__(config)
        self.client = client or boto3.client("s3", region_name=config.aws_region)

    def default_url_base(self) -> str:
        return f"https://{self.config.bucket}.s3.amazonaws.com"

    def put(self, data: bytes, key: str, mime_type: str) -> None:
        try:
            self.client.put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=data,
                ContentType=mime_type,
                CacheControl=CACHE_CONTROL,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload failed: {e}")
            raise GhostPipelineError(f"S3 upload failed: {e}", code="STORAGE_FAILED", cause=e)


class GCSRenderStorage(RenderStorage):
    """Google Cloud Storage provider."""

    def __init__(self, config: StorageConfig, client=None):
        super().__init__(config)
        if client is None:
            if not HAVE_GCS:
                raise GhostPipelineError(
                    "google-cloud-storage not installed (pip install ghoststudio[gcs])", code="CONFIG_INVALID"
                )
            if config.gcs_credentials_path:
                client = gcs.Client.from_service_account_json(config.gcs_credentials_path)
            else:
                client = gcs.Client()
        self.client = client
        self.bucket = self.client.bucket(config.bucket)

    def default_url_base(self) -> str:
        return f"https://storage.googleapis.com/{self.config.bucket}"

    def put(self, data: bytes, key: str, mime_type: str) -> None:
        blob = self.bucket.blob(key)
        blob.cache_control = CACHE_CONTROL
        try:
            blob.upload_from_string(data, content_type=mime_type)
        except Exception as e:
            logger.error(f"GCS upload failed: {e}")
            raise GhostPipelineError(f"GCS upload failed: {e}", code="STORAGE_FAILED", cause=e)


def create_render_storage(config: StorageConfig) -> Optional[RenderStorage]:
    """Factory; returns None when storage is disabled."""
    if not config.enabled:
        return None
    if config.provider == "s3":
        return S3RenderStorage(config)
    if config.provider == "gcs":
        return GCSRenderStorage(config)
    raise GhostPipelineError(f"Unsupported storage provider: {config.provider}", code="CONFIG_INVALID")
