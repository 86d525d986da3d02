"""
Unit tests for render storage and the content-hash upload cache.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from ghoststudio.config import StorageConfig
from ghoststudio.errors import GhostPipelineError
from ghoststudio.steps.step6_delivery import GCSRenderStorage, S3RenderStorage, create_render_storage, object_key
from ghoststudio.utils.upload_cache import ContentHashCache, GeminiFileUploader


class TestRenderStorage:

    def test_object_key(self):
        config = StorageConfig(provider="s3", bucket="renders", prefix="/ghost/")

        assert object_key(config, "abc-123", "image/png") == "ghost/abc-123.png"
        assert object_key(StorageConfig(prefix=""), "abc", "image/jpeg") == "abc.jpg"

    def test_s3_store(self):
        client = MagicMock()
        storage = S3RenderStorage(StorageConfig(provider="s3", bucket="renders"), client=client)

        url = asyncio.run(storage.store(b"png-bytes", "image/png", "digest-sha"))

        assert url == "https://renders.s3.amazonaws.com/ghost/digest-sha.png"
        kwargs = client.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "renders"
        assert kwargs["Key"] == "ghost/digest-sha.png"
        assert kwargs["ContentType"] == "image/png"

    def test_s3_public_url_base(self):
        config = StorageConfig(provider="s3", bucket="renders", public_url_base="https://cdn.example.com")
        storage = S3RenderStorage(config, client=MagicMock())

        assert asyncio.run(storage.store(b"x", "image/webp", "k")) == "https://cdn.example.com/ghost/k.webp"

    def test_s3_failure(self):
        client = MagicMock()
        client.put_object.side_effect = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        storage = S3RenderStorage(StorageConfig(provider="s3", bucket="renders"), client=client)

        with pytest.raises(GhostPipelineError) as exc:
            asyncio.run(storage.store(b"x", "image/png", "k"))

        assert exc.value.code == "STORAGE_FAILED"

    def test_gcs_store(self):
        client = MagicMock()
        storage = GCSRenderStorage(StorageConfig(provider="gcs", bucket="renders"), client=client)

        url = asyncio.run(storage.store(b"x", "image/png", "k"))

        assert url == "https://storage.googleapis.com/renders/ghost/k.png"
        client.bucket.return_value.blob.assert_called_once_with("ghost/k.png")

    def test_disabled_storage(self):
        assert create_render_storage(StorageConfig()) is None
        assert create_render_storage(StorageConfig(provider="s3")) is None


class TestContentHashCache:

    def test_concurrent_requests_share_one_upload(self):
        cache = ContentHashCache()
        calls = []

        async def factory():
            calls.append(1)
            await asyncio.sleep(0.01)
            return "files/abc"

        async def go():
            return await asyncio.gather(*(cache.get_or_create("abc", factory) for _ in range(5)))

        results = asyncio.run(go())

        assert results == ["files/abc"] * 5
        assert len(calls) == 1
        assert cache.misses == 1
        assert cache.hits == 4

    def test_failed_factory_is_not_cached(self):
        cache = ContentHashCache()

        async def failing():
            raise GhostPipelineError("boom", code="FILE_UPLOAD_FAILED")

        async def succeeding():
            return "files/ok"

        async def go():
            with pytest.raises(GhostPipelineError):
                await cache.get_or_create("k", failing)
            return await cache.get_or_create("k", succeeding)

        assert asyncio.run(go()) == "files/ok"
        assert "k" in cache

    def test_expired_entries_are_recreated(self):
        now = [1000.0]
        cache = ContentHashCache(clock=lambda: now[0])
        uris = iter(["files/old", "files/new"])

        async def factory():
            return next(uris)

        async def lookup():
            return await cache.get_or_create("abc", factory, max_age_s=60)

        assert asyncio.run(lookup()) == "files/old"
        now[0] += 59
        assert asyncio.run(lookup()) == "files/old"
        now[0] += 1
        assert asyncio.run(lookup()) == "files/new"
        assert cache.misses == 2
        assert cache.expired == 1


class TestGeminiFileUploader:

    def _client(self, **kwargs):
        client = MagicMock()
        client.aio.files.upload = AsyncMock(**kwargs)
        return client

    def test_same_bytes_uploaded_once(self):
        client = self._client(return_value=SimpleNamespace(uri="https://files.test/1", mime_type="image/png"))
        uploader = GeminiFileUploader(client, ContentHashCache())

        async def go():
            first = await uploader.upload(b"image", "image/png")
            second = await uploader.upload(b"image", "image/png")
            return first, second

        first, second = asyncio.run(go())

        assert first == second
        assert first.uri == "https://files.test/1"
        assert client.aio.files.upload.await_count == 1

    def test_stale_upload_is_uploaded_again(self):
        now = [0.0]
        client = self._client(
            side_effect=[
                SimpleNamespace(uri="https://files.test/1", mime_type="image/png"),
                SimpleNamespace(uri="https://files.test/2", mime_type="image/png"),
            ]
        )
        uploader = GeminiFileUploader(client, ContentHashCache(clock=lambda: now[0]), max_age_s=3600)

        first = asyncio.run(uploader.upload(b"image", "image/png"))
        now[0] = 3600.0
        second = asyncio.run(uploader.upload(b"image", "image/png"))

        assert first.uri == "https://files.test/1"
        assert second.uri == "https://files.test/2"
        assert second.uploaded_at > 0
        assert client.aio.files.upload.await_count == 2

    def test_quota_error(self):
        client = self._client(side_effect=RuntimeError("429 RESOURCE_EXHAUSTED"))
        uploader = GeminiFileUploader(client, ContentHashCache())

        with pytest.raises(GhostPipelineError) as exc:
            asyncio.run(uploader.upload(b"image", "image/png"))

        assert exc.value.code == "GEMINI_QUOTA_EXCEEDED"

    def test_missing_uri(self):
        client = self._client(return_value=SimpleNamespace(uri=None, mime_type=None))
        uploader = GeminiFileUploader(client, ContentHashCache())

        with pytest.raises(GhostPipelineError) as exc:
            asyncio.run(uploader.upload(b"image", "image/png"))

        assert exc.value.code == "FILE_UPLOAD_FAILED"
