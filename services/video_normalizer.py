"""Video normalization: duration gate, metadata strip with re-encode fallback, poster frame."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import shutil
import uuid
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from config import MediaSettings
from models import NormalizedOutput, StorageLocation
from services.hashing import Hasher
from services.media_errors import (
    DurationExceededError,
    StorageError,
    ToolFailureError,
    UnsupportedTypeError,
)
from services.media_tools import MediaTools, VideoProbe
from services.path_allocator import DigestLock, NullDigestLock, PathAllocator

logger = logging.getLogger(__name__)

VIDEO_FORMATS = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
}

REMUX_ARGS = ["-map", "0", "-map_metadata", "-1", "-c", "copy"]
REENCODE_ARGS = [
    "-map_metadata", "-1",
    "-c:v", "libx264",
    "-preset", "veryfast",
    "-profile:v", "baseline",
    "-pix_fmt", "yuv420p",
    "-c:a", "aac",
    "-b:a", "128k",
    "-movflags", "+faststart",
]
THUMBNAIL_QUALITY = "4"


def normalize_video_extension(extension: str) -> str:
    ext = extension.lower().lstrip(".")
    if ext not in VIDEO_FORMATS:
        raise UnsupportedTypeError(f"Unsupported video extension {extension}")
    return ext


def _discard(path: Path) -> None:
    with suppress(OSError):
        path.unlink(missing_ok=True)


def copy_atomic(source: Path, target: Path) -> None:
    """Copy to a hidden sibling part file, then rename over the target."""
    target.parent.mkdir(parents=True, exist_ok=True)
    part = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
    try:
        shutil.copyfile(source, part)
        os.replace(part, target)
    except BaseException:
        _discard(part)
        raise


class StripOutcome(str, enum.Enum):
    SUCCESS = "success"
    FALLBACK_USED = "fallback_used"
    FATAL = "fatal"


@dataclass
class StripResult:
    """Tagged result of the strip strategy; output_path is set unless FATAL."""

    outcome: StripOutcome
    output_path: Optional[Path] = None
    error: Optional[str] = None
    remux_error: Optional[str] = None


class MetadataStripStrategy:
    """Remux without metadata; on any failure re-encode once with fixed settings."""

    def __init__(self, tools: MediaTools) -> None:
        self.tools = tools

    async def strip(self, input_path: Path, extension: str) -> StripResult:
        output = input_path.parent / f"{uuid.uuid4().hex}.{extension}"

        remux_error = await self._attempt(["-i", str(input_path), *REMUX_ARGS, "-y", str(output)], output)
        if remux_error is None:
            return StripResult(outcome=StripOutcome.SUCCESS, output_path=output)

        _discard(output)
        fallback_error = await self._attempt(["-i", str(input_path), *REENCODE_ARGS, "-y", str(output)], output)
        if fallback_error is None:
            return StripResult(outcome=StripOutcome.FALLBACK_USED, output_path=output, remux_error=remux_error)

        _discard(output)
        return StripResult(outcome=StripOutcome.FATAL, error=fallback_error, remux_error=remux_error)

    async def _attempt(self, args: List[str], output: Path) -> Optional[str]:
        try:
            result = await self.tools.ffmpeg(args)
        except ToolFailureError as exc:
            return exc.message
        if not result.ok:
            return result.describe()
        if not await asyncio.to_thread(output.is_file):
            return "ffmpeg produced no output file"
        return None


class VideoNormalizer:
    """Stores a metadata-free copy of an uploaded video with a poster thumbnail."""

    def __init__(
        self,
        settings: MediaSettings,
        allocator: PathAllocator,
        tools: MediaTools,
        *,
        hasher: Optional[Hasher] = None,
        digest_lock: Optional[DigestLock] = None,
        strip_strategy: Optional[MetadataStripStrategy] = None,
    ) -> None:
        self.settings = settings
        self.allocator = allocator
        self.tools = tools
        self.hasher = hasher or Hasher()
        self.digest_lock = digest_lock or NullDigestLock()
        self.strip_strategy = strip_strategy or MetadataStripStrategy(tools)

    async def normalize(
        self, temp_path: Union[str, Path], claimed_ext: str, max_duration_sec: float
    ) -> NormalizedOutput:
        source = Path(temp_path)
        probe = await self.tools.probe(source)
        duration_sec = probe.duration_sec or 0.0

        if duration_sec > max_duration_sec:
            logger.warning(
                "video.duration.exceeded duration_sec=%.2f max_allowed_sec=%s", duration_sec, max_duration_sec
            )
            raise DurationExceededError(
                f"Video duration {duration_sec:.2f}s exceeds allowed {max_duration_sec}s"
            )

        ext = normalize_video_extension(claimed_ext)
        mime = VIDEO_FORMATS[ext]

        stripped = await self.strip_strategy.strip(source, ext)
        if stripped.outcome is StripOutcome.FATAL or stripped.output_path is None:
            logger.error("video.strip.failed error=%s", stripped.error)
            raise ToolFailureError(f"Unable to strip video metadata: {stripped.error}")
        if stripped.outcome is StripOutcome.FALLBACK_USED:
            logger.warning("video.strip.fallback error=%s", stripped.remux_error)

        normalized_path = stripped.output_path
        try:
            digest, normalized_bytes = await self.hasher.digest_of_file_async(normalized_path)

            async with self.digest_lock.hold(digest):
                location = await asyncio.to_thread(self.allocator.resolve, digest, ext)
                if location.is_newly_created:
                    try:
                        await asyncio.to_thread(copy_atomic, normalized_path, location.original_path)
                    except OSError as exc:
                        logger.error("video.original.write-failed sha=%s error=%s", digest, exc)
                        raise StorageError("Unable to persist video original") from exc
                    self.allocator.record_original(digest, location.original_path)
                    byte_length = normalized_bytes
                    logger.debug("video.original.persisted sha=%s key=%s", digest, location.original_key)
                else:
                    byte_length = (await asyncio.to_thread(location.original_path.stat)).st_size
                    logger.info("video.deduplicated sha=%s key=%s", digest, location.original_key)

                await self.ensure_thumbnail(location)
        finally:
            _discard(normalized_path)

        duration_ms = round(duration_sec * 1000)
        logger.info(
            "video.processed sha=%s mime=%s bytes=%d width=%s height=%s duration_ms=%d deduplicated=%s strip=%s",
            digest,
            mime,
            byte_length,
            probe.width,
            probe.height,
            duration_ms,
            not location.is_newly_created,
            stripped.outcome.value,
        )
        return NormalizedOutput(
            digest=digest,
            byte_length=byte_length,
            mime=mime,
            extension=ext,
            width=probe.width or 0,
            height=probe.height or 0,
            location=location,
            duration_ms=duration_ms,
        )

    async def ensure_thumbnail(self, location: StorageLocation) -> bool:
        """Extract a poster frame from the stored original if none exists."""
        if await asyncio.to_thread(location.thumbnail_path.exists):
            return False
        await asyncio.to_thread(location.thumbnail_path.parent.mkdir, parents=True, exist_ok=True)
        result = await self.tools.ffmpeg([
            "-ss", f"{self.settings.thumb_video_offset_sec:g}",
            "-i", str(location.original_path),
            "-frames:v", "1",
            "-vf", f"scale={self.settings.thumb_video_width}:-1",
            "-q:v", THUMBNAIL_QUALITY,
            "-y", str(location.thumbnail_path),
        ])
        if not result.ok or not await asyncio.to_thread(location.thumbnail_path.is_file):
            _discard(location.thumbnail_path)
            raise ToolFailureError(f"Unable to generate video thumbnail: {result.describe()}")
        logger.debug("video.thumbnail.generated key=%s", location.thumbnail_key)
        return True

    async def probe(self, path: Union[str, Path]) -> VideoProbe:
        return await self.tools.probe(path)
