"""
Tests for services/media_catalog.py - metadata lookups by digest.
"""

from datetime import datetime, timezone

import pytest

from media_helpers import FakeToolRunner, make_image_bytes, make_video_bytes
from models import MediaKind
from services.image_normalizer import ImageNormalizer
from services.media_catalog import MediaCatalog
from services.media_errors import MediaNotFoundError, UnsupportedTypeError
from services.media_tools import MediaTools
from services.video_normalizer import VideoNormalizer


@pytest.fixture
def catalog(allocator, media_tools):
    return MediaCatalog(allocator, media_tools)


async def _store_image(media_settings, allocator, tmp_path, **image_kwargs):
    source = tmp_path / "img.tmp"
    source.write_bytes(make_image_bytes(**image_kwargs))
    return await ImageNormalizer(media_settings, allocator).normalize(source, "jpg")


class TestImageMetadata:

    @pytest.mark.asyncio
    async def test_metadata_matches_upload(self, catalog, media_settings, allocator, tmp_path):
        """
        Given: A stored image
        When: Its digest is looked up
        Then: kind, mime, size, dimensions, keys and bucket date are reported
        """
        stored = await _store_image(media_settings, allocator, tmp_path, width=48, height=24)

        view = await catalog.get_metadata_by_digest(stored.digest)

        assert view.sha256 == stored.digest
        assert view.kind is MediaKind.IMAGE
        assert view.mime == "image/jpeg"
        assert view.bytes == stored.byte_length
        assert (view.width, view.height) == (48, 24)
        assert view.duration_ms is None
        assert view.storage_key_original == stored.location.original_key
        assert view.storage_key_thumb == stored.location.thumbnail_key
        assert view.created_at == datetime(2024, 3, 9, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_lookup_is_case_insensitive(self, catalog, media_settings, allocator, tmp_path):
        stored = await _store_image(media_settings, allocator, tmp_path)
        view = await catalog.get_metadata_by_digest(f"  {stored.digest.upper()} ")
        assert view.sha256 == stored.digest

    @pytest.mark.asyncio
    async def test_thumbnail_key_reported_when_thumbnail_missing(self, catalog, media_settings, allocator, tmp_path):
        """
        Given: A stored image whose thumbnail file was removed
        When: Its digest is looked up
        Then: The mirrored thumbnail key is still reported
        """
        stored = await _store_image(media_settings, allocator, tmp_path)
        stored.location.thumbnail_path.unlink()

        view = await catalog.get_metadata_by_digest(stored.digest)

        assert view.storage_key_thumb == stored.location.thumbnail_key

    @pytest.mark.asyncio
    async def test_camel_case_serialization(self, catalog, media_settings, allocator, tmp_path):
        stored = await _store_image(media_settings, allocator, tmp_path)
        payload = (await catalog.get_metadata_by_digest(stored.digest)).model_dump(mode="json", by_alias=True)
        assert {"storageKeyOriginal", "storageKeyThumb", "durationMs", "createdAt"} <= set(payload)


class TestVideoMetadata:

    @pytest.mark.asyncio
    async def test_video_metadata_uses_probe(self, media_settings, allocator, tmp_path):
        runner = FakeToolRunner(duration=7.25, width=320, height=240)
        tools = MediaTools(media_settings, runner=runner)
        source = tmp_path / "clip.tmp"
        source.write_bytes(make_video_bytes())
        stored = await VideoNormalizer(media_settings, allocator, tools).normalize(source, "mp4", 60)

        view = await MediaCatalog(allocator, tools).get_metadata_by_digest(stored.digest)

        assert view.kind is MediaKind.VIDEO
        assert view.mime == "video/mp4"
        assert view.duration_ms == 7250
        assert (view.width, view.height) == (320, 240)
        assert view.bytes == stored.byte_length


class TestNotFound:

    @pytest.mark.asyncio
    async def test_unknown_digest(self, catalog):
        with pytest.raises(MediaNotFoundError):
            await catalog.get_metadata_by_digest("0" * 64)

    @pytest.mark.parametrize("digest", ["", "xyz", "../../etc/passwd", "a" * 63])
    @pytest.mark.asyncio
    async def test_malformed_digest_is_not_found(self, catalog, digest):
        with pytest.raises(MediaNotFoundError):
            await catalog.get_metadata_by_digest(digest)

    @pytest.mark.asyncio
    async def test_unknown_extension_on_disk(self, catalog, allocator):
        digest = "e" * 64
        bucket = allocator.originals_root / "2024" / "01" / "01"
        bucket.mkdir(parents=True)
        (bucket / f"{digest}.gif").write_bytes(b"GIF89a")

        with pytest.raises(UnsupportedTypeError):
            await catalog.get_metadata_by_digest(digest)
