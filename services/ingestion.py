"""Upload ingestion: stream, sniff, type-check, normalize, respond."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import suppress
from pathlib import Path
from typing import AsyncIterator, Optional, Tuple

from config import Config, UploadSettings
from logging_utils import Phase, PhaseLogger, create_phase_logger
from models import MediaKind, NormalizedOutput, UploadClaim, UploadResponse
from services.hashing import Hasher
from services.image_normalizer import ImageNormalizer
from services.media_errors import (
    MediaError,
    SizeExceededError,
    StorageError,
    UnsupportedTypeError,
    UploadValidationError,
)
from services.media_tools import MediaTools, ToolRunner
from services.multipart_stream import SingleFileMultipartReader
from services.path_allocator import (
    DigestIndex,
    DigestLock,
    PathAllocator,
    build_digest_lock,
)
from services.sniffing import PrefixCollector, detect_type
from services.upload_auth import ABSOLUTE_MAX_VIDEO_SEC
from services.video_normalizer import VideoNormalizer

logger = logging.getLogger(__name__)


def effective_size_limit(settings: UploadSettings, claim: UploadClaim) -> int:
    """min(global ceiling, claim ceiling); the claim may only tighten the limit."""
    if claim.max_size_bytes is None:
        return settings.max_upload_bytes
    return min(settings.max_upload_bytes, claim.max_size_bytes)


def effective_duration_limit(settings: UploadSettings, claim: UploadClaim) -> float:
    ceiling = min(settings.max_video_duration_sec, ABSOLUTE_MAX_VIDEO_SEC)
    if claim.max_duration_sec is None:
        return ceiling
    return min(ceiling, claim.max_duration_sec)


class UploadIngestor:
    """Drives one upload from request body to stored, normalized media."""

    def __init__(
        self,
        *,
        settings: UploadSettings,
        tmp_dir: Path,
        image_normalizer: ImageNormalizer,
        video_normalizer: VideoNormalizer,
    ) -> None:
        self.settings = settings
        self.tmp_dir = Path(tmp_dir)
        self.image_normalizer = image_normalizer
        self.video_normalizer = video_normalizer

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        *,
        allocator: Optional[PathAllocator] = None,
        runner: Optional[ToolRunner] = None,
        digest_lock: Optional[DigestLock] = None,
    ) -> "UploadIngestor":
        hasher = Hasher(chunk_size=cfg.UPLOAD.chunk_size)
        if allocator is None:
            index = DigestIndex() if cfg.STORAGE.digest_index_enabled else None
            allocator = PathAllocator(cfg.STORAGE, index=index)
        lock = digest_lock or build_digest_lock(cfg.STORAGE.lock_mode)
        tools = MediaTools(cfg.MEDIA, runner=runner)
        return cls(
            settings=cfg.UPLOAD,
            tmp_dir=Path(cfg.STORAGE.tmp_dir),
            image_normalizer=ImageNormalizer(cfg.MEDIA, allocator, hasher=hasher, digest_lock=lock),
            video_normalizer=VideoNormalizer(cfg.MEDIA, allocator, tools, hasher=hasher, digest_lock=lock),
        )

    async def handle_upload(
        self,
        body: AsyncIterator[bytes],
        content_type: Optional[str],
        claim: UploadClaim,
        *,
        request_id: Optional[str] = None,
        content_length: Optional[str] = None,
    ) -> UploadResponse:
        """Ingest the single file field of a multipart/form-data body."""
        reader = SingleFileMultipartReader(content_type)
        response = await self.ingest_stream(
            reader.iter_file(body),
            claim,
            request_id=request_id,
            content_length=content_length,
        )
        logger.debug("upload.file.accepted filename=%s field=%s", reader.filename, reader.field_name)
        return response

    async def ingest_stream(
        self,
        chunks: AsyncIterator[bytes],
        claim: UploadClaim,
        filename: Optional[str] = None,
        *,
        request_id: Optional[str] = None,
        content_length: Optional[str] = None,
    ) -> UploadResponse:
        """Ingest already demultiplexed file bytes."""
        hard_limit = effective_size_limit(self.settings, claim)
        plog = create_phase_logger(request_id or uuid.uuid4().hex)
        plog.log_outcome(
            "upload.request.received",
            user_id=claim.subject_id,
            kind=claim.kind.value,
            hard_limit_bytes=hard_limit,
            max_size_bytes=claim.max_size_bytes,
            content_length=content_length,
            filename=filename,
        )

        temp_path = self.tmp_dir / f"{uuid.uuid4().hex}.tmp"
        state = Phase.STREAMING
        try:
            with plog.phase(Phase.STREAMING):
                total_bytes, prefix = await self._stream_to_temp(chunks, temp_path, hard_limit, plog)
            if total_bytes == 0:
                plog.warning("upload.file.empty")
                raise UploadValidationError("Uploaded file is empty")

            state = Phase.SNIFFING
            with plog.phase(Phase.SNIFFING):
                sniffed = detect_type(prefix)
                plog.info(f"upload.media.detected mime={sniffed.mime} ext={sniffed.extension} bytes={total_bytes}")

            state = Phase.TYPE_CHECK
            with plog.phase(Phase.TYPE_CHECK):
                self._assert_mime_allowed(sniffed.mime, claim.kind, plog)

            state = Phase.NORMALIZING
            with plog.phase(Phase.NORMALIZING, sub_label=sniffed.mime):
                output = await self._normalize(temp_path, sniffed.extension, claim)

            state = Phase.PERSISTED
            with plog.phase(Phase.PERSISTED):
                response = self._build_response(output, claim)

            plog.log_outcome(
                "upload.request.completed",
                media_id=response.media_id,
                sha256=response.sha256,
                storage_key_original=response.storage_key_original,
                storage_key_thumb=response.storage_key_thumb,
                bytes=response.bytes,
                width=response.width,
                height=response.height,
                duration_ms=response.duration_ms,
                deduplicated=output.is_deduplicated,
            )
            return response
        except MediaError as exc:
            plog.log_outcome("upload.request.failed", code=exc.code, state=state, reason=exc.message)
            raise
        except Exception:
            logger.exception("upload.request.failed request_id=%s", plog.request_id)
            raise
        finally:
            with suppress(OSError):
                temp_path.unlink(missing_ok=True)

    async def _stream_to_temp(
        self,
        chunks: AsyncIterator[bytes],
        temp_path: Path,
        hard_limit: int,
        plog: PhaseLogger,
    ) -> Tuple[int, bytes]:
        collector = PrefixCollector(self.settings.sniff_length)
        total_bytes = 0
        try:
            temp_path.parent.mkdir(parents=True, exist_ok=True)
            destination = temp_path.open("wb")
        except OSError as exc:
            raise StorageError("Unable to create upload temp file") from exc

        try:
            with destination:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    collector.feed(chunk)
                    total_bytes += len(chunk)
                    if total_bytes > hard_limit:
                        plog.warning(f"upload.limit.exceeded hard_limit_bytes={hard_limit}")
                        raise SizeExceededError("File exceeds allowed size", limit_bytes=hard_limit)
                    try:
                        await asyncio.to_thread(destination.write, chunk)
                    except OSError as exc:
                        raise StorageError("Unable to persist upload contents") from exc
        except MediaError:
            with suppress(OSError):
                temp_path.unlink(missing_ok=True)
            raise
        except Exception as exc:
            with suppress(OSError):
                temp_path.unlink(missing_ok=True)
            plog.error(f"upload.stream.error {exc.__class__.__name__}")
            raise UploadValidationError("Failed to read upload stream") from exc

        plog.debug(f"upload.stream.completed tmp_file={temp_path.name} total_bytes={total_bytes}")
        return total_bytes, collector.getvalue()

    def _assert_mime_allowed(self, mime: str, kind: MediaKind, plog: PhaseLogger) -> None:
        allowed = (
            self.settings.allowed_image_mime if kind is MediaKind.IMAGE else self.settings.allowed_video_mime
        )
        if mime not in allowed:
            plog.warning(f"upload.mime.rejected mime={mime} kind={kind.value}")
            raise UnsupportedTypeError(f"MIME type {mime} not allowed for {kind.value}")

    async def _normalize(self, temp_path: Path, extension: str, claim: UploadClaim) -> NormalizedOutput:
        if claim.kind is MediaKind.IMAGE:
            return await self.image_normalizer.normalize(temp_path, extension)
        return await self.video_normalizer.normalize(
            temp_path, extension, effective_duration_limit(self.settings, claim)
        )

    def _build_response(self, output: NormalizedOutput, claim: UploadClaim) -> UploadResponse:
        return UploadResponse(
            media_id=str(uuid.uuid4()),
            owner_id=claim.subject_id,
            kind=claim.kind,
            mime=output.mime,
            bytes=output.byte_length,
            width=output.width,
            height=output.height,
            duration_ms=output.duration_ms if claim.kind is MediaKind.VIDEO else None,
            storage_key_original=output.location.original_key,
            storage_key_thumb=output.location.thumbnail_key,
            sha256=output.digest,
        )
