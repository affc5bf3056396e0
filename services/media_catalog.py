"""Read model: metadata reconstructed from the storage tree by digest."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image

from config import Config
from models import MediaKind, MediaMetadataView, kind_for_extension, mime_for_extension
from services.hashing import is_valid_digest
from services.media_errors import MediaNotFoundError, UnsupportedTypeError
from services.media_tools import MediaTools, ToolRunner
from services.path_allocator import DigestIndex, PathAllocator, parse_date_bucket

logger = logging.getLogger(__name__)


def _read_image_size(path: Path) -> Tuple[int, int]:
    with Image.open(path) as img:
        return img.size


class MediaCatalog:
    """Answers metadata lookups by locating ``{digest}.*`` and re-probing the file."""

    def __init__(self, allocator: PathAllocator, tools: MediaTools) -> None:
        self.allocator = allocator
        self.tools = tools

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        *,
        allocator: Optional[PathAllocator] = None,
        runner: Optional[ToolRunner] = None,
    ) -> "MediaCatalog":
        if allocator is None:
            index = DigestIndex() if cfg.STORAGE.digest_index_enabled else None
            allocator = PathAllocator(cfg.STORAGE, index=index)
        return cls(allocator, MediaTools(cfg.MEDIA, runner=runner))

    async def get_metadata_by_digest(self, digest: str) -> MediaMetadataView:
        normalized = (digest or "").strip().lower()
        if not is_valid_digest(normalized):
            raise MediaNotFoundError(f"Media with SHA {digest} not found")

        match = await asyncio.to_thread(self.allocator.locate_by_digest, normalized)
        if match is None:
            logger.warning("media.metadata.not-found sha=%s", normalized)
            raise MediaNotFoundError(f"Media with SHA {normalized} not found")

        original_path, extension = match
        kind = kind_for_extension(extension)
        mime = mime_for_extension(extension)
        if kind is None or mime is None:
            raise UnsupportedTypeError(f"Unsupported extension {extension}")

        location = self.allocator.location_for_original(original_path)
        stats = await asyncio.to_thread(original_path.stat)

        width: Optional[int] = None
        height: Optional[int] = None
        duration_ms: Optional[int] = None
        if kind is MediaKind.IMAGE:
            width, height = await asyncio.to_thread(_read_image_size, original_path)
        else:
            probe = await self.tools.probe(original_path)
            width = probe.width
            height = probe.height
            if probe.duration_sec is not None:
                duration_ms = round(probe.duration_sec * 1000)

        view = MediaMetadataView(
            sha256=normalized,
            kind=kind,
            mime=mime,
            bytes=stats.st_size,
            width=width,
            height=height,
            duration_ms=duration_ms,
            storage_key_original=location.original_key,
            storage_key_thumb=location.thumbnail_key,
            created_at=parse_date_bucket(location.relative_bucket),
        )
        logger.info(
            "media.metadata.returned sha=%s kind=%s bytes=%d width=%s height=%s duration_ms=%s",
            normalized,
            kind.value,
            stats.st_size,
            width,
            height,
            duration_ms,
        )
        return view
