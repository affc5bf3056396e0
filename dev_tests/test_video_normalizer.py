"""
Tests for services/video_normalizer.py and services/media_tools.py.

Codec binaries are replaced by FakeToolRunner, which records argv and writes
the outputs a real ffmpeg would.
"""

import errno
import hashlib
import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from media_helpers import MOV_HEADER, FakeToolRunner, make_video_bytes
from services.media_errors import DurationExceededError, StorageError, ToolFailureError, UnsupportedTypeError
from services.media_tools import MediaTools, ToolResult, ToolRunner, summarize_probe
from services.video_normalizer import (
    MetadataStripStrategy,
    StripOutcome,
    VideoNormalizer,
    copy_atomic,
    normalize_video_extension,
)


def _normalizer(media_settings, allocator, runner):
    return VideoNormalizer(media_settings, allocator, MediaTools(media_settings, runner=runner))


def _temp_video(tmp_path, data=None, name="upload.tmp"):
    path = tmp_path / name
    path.write_bytes(data if data is not None else make_video_bytes())
    return path


# ============================================================================
# Probe Parsing
# ============================================================================

class TestSummarizeProbe:

    def test_reads_duration_and_first_video_stream(self):
        payload = {
            "streams": [
                {"codec_type": "audio"},
                {"codec_type": "video", "width": 1920, "height": 1080},
                {"codec_type": "video", "width": 320, "height": 240},
            ],
            "format": {"duration": "12.345000"},
        }
        probe = summarize_probe(payload)
        assert probe.duration_sec == pytest.approx(12.345)
        assert (probe.width, probe.height) == (1920, 1080)

    @pytest.mark.parametrize("duration", [None, "", "N/A", "garbage"])
    def test_missing_duration_is_none(self, duration):
        probe = summarize_probe({"streams": [], "format": {"duration": duration}})
        assert probe.duration_sec is None
        assert probe.width is None

    def test_empty_payload(self):
        assert summarize_probe(None).duration_sec is None


class TestMediaTools:

    @pytest.mark.asyncio
    async def test_probe_failure_raises(self, media_settings, tmp_path):
        tools = MediaTools(media_settings, runner=FakeToolRunner(probe_fails=True))
        with pytest.raises(ToolFailureError):
            await tools.probe(tmp_path / "x.mp4")

    @pytest.mark.asyncio
    async def test_malformed_probe_json_raises(self, media_settings, tmp_path):
        class GarbageRunner(ToolRunner):
            async def run(self, argv):
                return ToolResult(argv=list(argv), returncode=0, stdout=b"{not json")

        with pytest.raises(ToolFailureError):
            await MediaTools(media_settings, runner=GarbageRunner()).probe(tmp_path / "x.mp4")

    @pytest.mark.asyncio
    async def test_ffmpeg_failure_is_returned_not_raised(self, media_settings, tmp_path):
        runner = FakeToolRunner(reencode_fails=True)
        result = await MediaTools(media_settings, runner=runner).ffmpeg(
            ["-i", str(tmp_path / "in.mp4"), "-c:v", "libx264", str(tmp_path / "out.mp4")]
        )
        assert not result.ok
        assert "ffmpeg exited with 1" in result.describe()

    @pytest.mark.asyncio
    async def test_missing_binary_raises(self, tmp_path):
        from config import MediaSettings

        settings = MediaSettings(ffmpeg_path=str(tmp_path / "no-such-ffmpeg"), ffprobe_path="ffprobe")
        with pytest.raises(ToolFailureError):
            await MediaTools(settings, runner=ToolRunner()).ffmpeg(["-version"])


# ============================================================================
# Metadata Strip Strategy
# ============================================================================

class TestMetadataStripStrategy:

    @pytest.mark.asyncio
    async def test_remux_success(self, media_settings, tmp_path):
        runner = FakeToolRunner()
        strategy = MetadataStripStrategy(MediaTools(media_settings, runner=runner))

        result = await strategy.strip(_temp_video(tmp_path), "mp4")

        assert result.outcome is StripOutcome.SUCCESS
        assert result.output_path.is_file()
        assert len(runner.remux_calls) == 1
        assert runner.reencode_calls == []
        remux = runner.remux_calls[0]
        assert remux[remux.index("-map_metadata") + 1] == "-1"

    @pytest.mark.asyncio
    async def test_remux_failure_falls_back_to_reencode(self, media_settings, tmp_path):
        """
        Given: The stream-copy remux fails
        When: strip() runs
        Then: One re-encode is attempted and the outcome is FALLBACK_USED
        """
        runner = FakeToolRunner(remux_fails=True)
        strategy = MetadataStripStrategy(MediaTools(media_settings, runner=runner))

        result = await strategy.strip(_temp_video(tmp_path), "mp4")

        assert result.outcome is StripOutcome.FALLBACK_USED
        assert "Could not find tag" in result.remux_error
        assert len(runner.reencode_calls) == 1
        reencode = runner.reencode_calls[0]
        for flag in ("-preset", "veryfast", "baseline", "yuv420p", "aac", "128k", "+faststart"):
            assert flag in reencode

    @pytest.mark.asyncio
    async def test_both_attempts_failing_is_fatal(self, media_settings, tmp_path):
        runner = FakeToolRunner(remux_fails=True, reencode_fails=True)
        source = _temp_video(tmp_path)
        strategy = MetadataStripStrategy(MediaTools(media_settings, runner=runner))

        result = await strategy.strip(source, "mp4")

        assert result.outcome is StripOutcome.FATAL
        assert result.output_path is None
        assert [p.name for p in tmp_path.iterdir()] == [source.name]


# ============================================================================
# VideoNormalizer.normalize()
# ============================================================================

class TestVideoNormalizer:

    @pytest.mark.asyncio
    async def test_stores_original_and_poster(self, media_settings, allocator, tmp_path):
        runner = FakeToolRunner(duration=12.3456, width=1280, height=720)
        normalizer = _normalizer(media_settings, allocator, runner)

        output = await normalizer.normalize(_temp_video(tmp_path), "mp4", 60)

        assert output.location.is_newly_created
        assert output.location.original_path.name == f"{output.digest}.mp4"
        assert output.location.thumbnail_path.is_file()
        assert output.mime == "video/mp4"
        assert output.duration_ms == 12346
        assert (output.width, output.height) == (1280, 720)
        assert output.byte_length == output.location.original_path.stat().st_size

    @pytest.mark.asyncio
    async def test_thumbnail_arguments(self, media_settings, allocator, tmp_path):
        runner = FakeToolRunner()
        output = await _normalizer(media_settings, allocator, runner).normalize(_temp_video(tmp_path), "mp4", 60)

        thumb = runner.thumbnail_calls[0]
        assert thumb[thumb.index("-ss") + 1] == "0.5"
        assert thumb[thumb.index("-i") + 1] == str(output.location.original_path)
        assert thumb[thumb.index("-frames:v") + 1] == "1"
        assert thumb[thumb.index("-vf") + 1] == "scale=512:-1"
        assert thumb[thumb.index("-q:v") + 1] == "4"

    @pytest.mark.asyncio
    async def test_duration_over_limit_rejected_before_ffmpeg(self, media_settings, allocator, tmp_path):
        """
        Given: A probe reporting 61 seconds and a 60 second limit
        When: normalize() runs
        Then: DurationExceededError is raised and ffmpeg is never invoked
        """
        runner = FakeToolRunner(duration=61.0)

        with pytest.raises(DurationExceededError):
            await _normalizer(media_settings, allocator, runner).normalize(_temp_video(tmp_path), "mp4", 60)

        assert runner.ffmpeg_calls == []
        assert list(allocator.originals_root.rglob("*.mp4")) == []

    @pytest.mark.asyncio
    async def test_claim_limit_tightens_duration(self, media_settings, allocator, tmp_path):
        runner = FakeToolRunner(duration=10.0)
        with pytest.raises(DurationExceededError):
            await _normalizer(media_settings, allocator, runner).normalize(_temp_video(tmp_path), "mp4", 5)

    @pytest.mark.asyncio
    async def test_unknown_duration_is_accepted(self, media_settings, allocator, tmp_path):
        runner = FakeToolRunner(duration=None)
        output = await _normalizer(media_settings, allocator, runner).normalize(_temp_video(tmp_path), "mp4", 60)
        assert output.duration_ms == 0

    @pytest.mark.asyncio
    async def test_fallback_output_is_stored(self, media_settings, allocator, tmp_path):
        runner = FakeToolRunner(remux_fails=True)
        output = await _normalizer(media_settings, allocator, runner).normalize(_temp_video(tmp_path), "mp4", 60)
        assert output.location.original_path.read_bytes().endswith(b"reencoded")

    @pytest.mark.asyncio
    async def test_fatal_strip_raises_and_stores_nothing(self, media_settings, allocator, tmp_path):
        runner = FakeToolRunner(remux_fails=True, reencode_fails=True)
        with pytest.raises(ToolFailureError):
            await _normalizer(media_settings, allocator, runner).normalize(_temp_video(tmp_path), "mp4", 60)
        assert list(allocator.originals_root.rglob("*.mp4")) == []

    @pytest.mark.asyncio
    async def test_thumbnail_failure_is_fatal(self, media_settings, allocator, tmp_path):
        runner = FakeToolRunner(thumbnail_fails=True)
        with pytest.raises(ToolFailureError):
            await _normalizer(media_settings, allocator, runner).normalize(_temp_video(tmp_path), "mp4", 60)

    @pytest.mark.asyncio
    async def test_same_video_deduplicates(self, media_settings, allocator, tmp_path):
        """
        Given: The same video uploaded twice
        Then: The second upload reuses the original and does not extract another poster
        """
        runner = FakeToolRunner()
        normalizer = _normalizer(media_settings, allocator, runner)
        data = make_video_bytes()

        first = await normalizer.normalize(_temp_video(tmp_path, data, "a.tmp"), "mp4", 60)
        second = await normalizer.normalize(_temp_video(tmp_path, data, "b.tmp"), "mp4", 60)

        assert second.digest == first.digest
        assert second.is_deduplicated
        assert len(runner.thumbnail_calls) == 1

    @pytest.mark.asyncio
    async def test_normalized_temp_output_is_removed(self, media_settings, allocator, tmp_path):
        source = _temp_video(tmp_path)
        await _normalizer(media_settings, allocator, FakeToolRunner()).normalize(source, "mp4", 60)
        assert [p.name for p in tmp_path.iterdir() if p.is_file()] == [source.name]

    @pytest.mark.asyncio
    async def test_quicktime_keeps_mov_extension(self, media_settings, allocator, tmp_path):
        runner = FakeToolRunner()
        output = await _normalizer(media_settings, allocator, runner).normalize(
            _temp_video(tmp_path, make_video_bytes(header=MOV_HEADER)), "mov", 60
        )
        assert output.mime == "video/quicktime"
        assert output.location.original_key.endswith(".mov")

    def test_unsupported_extension(self):
        with pytest.raises(UnsupportedTypeError):
            normalize_video_extension("avi")


# ============================================================================
# Original Persistence
# ============================================================================

def _disk_full_copy(originals_root):
    """copyfile that writes half the bytes then fails, for targets under originals_root."""
    real_copyfile = shutil.copyfile

    def _copy(src, dst, *args, **kwargs):
        if not Path(dst).is_relative_to(originals_root):
            return real_copyfile(src, dst, *args, **kwargs)
        data = Path(src).read_bytes()
        Path(dst).write_bytes(data[: len(data) // 2])
        raise OSError(errno.ENOSPC, "No space left on device")

    return _copy


class TestOriginalPersistence:

    def test_copy_atomic_leaves_no_part_files(self, tmp_path):
        source = tmp_path / "src.bin"
        source.write_bytes(b"video-bytes")
        target = tmp_path / "nested" / "out.mp4"

        copy_atomic(source, target)

        assert target.read_bytes() == b"video-bytes"
        assert [p.name for p in target.parent.iterdir()] == ["out.mp4"]

    def test_copy_atomic_failure_leaves_nothing_under_target_name(self, tmp_path):
        source = tmp_path / "src.bin"
        source.write_bytes(b"0123456789")
        target = tmp_path / "store" / "out.mp4"

        with patch("shutil.copyfile", _disk_full_copy(tmp_path / "store")):
            with pytest.raises(OSError):
                copy_atomic(source, target)

        assert list(target.parent.iterdir()) == []

    @pytest.mark.asyncio
    async def test_failed_copy_is_terminal_and_retry_stores_full_original(self, media_settings, allocator, tmp_path):
        """
        Given: The copy into the originals root fails halfway (disk full)
        When: The same video is normalized again afterwards
        Then: The first attempt raises StorageError and leaves no file behind;
              the retry stores a complete original whose content matches its digest
        """
        runner = FakeToolRunner()
        normalizer = _normalizer(media_settings, allocator, runner)
        data = make_video_bytes()

        with patch("shutil.copyfile", _disk_full_copy(allocator.originals_root)):
            with pytest.raises(StorageError):
                await normalizer.normalize(_temp_video(tmp_path, data, "a.tmp"), "mp4", 60)

        assert [p for p in allocator.originals_root.rglob("*") if p.is_file()] == []
        assert runner.thumbnail_calls == []

        output = await normalizer.normalize(_temp_video(tmp_path, data, "b.tmp"), "mp4", 60)

        stored = output.location.original_path.read_bytes()
        assert output.location.is_newly_created
        assert output.byte_length == len(stored)
        assert hashlib.sha256(stored).hexdigest() == output.digest
