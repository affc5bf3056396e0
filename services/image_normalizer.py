"""Image normalization: orientation fix, metadata-free re-encode, thumbnail."""

from __future__ import annotations

import asyncio
import io
import logging
import os
import uuid
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

from PIL import Image, ImageOps, UnidentifiedImageError

from config import MediaSettings
from models import NormalizedOutput, StorageLocation
from services.hashing import Hasher
from services.media_errors import StorageError, UnsupportedTypeError, UploadValidationError
from services.path_allocator import DigestLock, NullDigestLock, PathAllocator

logger = logging.getLogger(__name__)

IMAGE_FORMATS = {
    "jpg": ("JPEG", "image/jpeg"),
    "png": ("PNG", "image/png"),
    "webp": ("WEBP", "image/webp"),
}

JPEG_OPTIONS = {"quality": 94, "subsampling": 0, "optimize": True}
PNG_OPTIONS = {"compress_level": 9, "optimize": True}
WEBP_OPTIONS = {"quality": 92, "method": 4}
THUMBNAIL_JPEG_QUALITY = 82

_JPEG_MODES = {"RGB", "L", "CMYK"}
_PNG_MODES = {"1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA"}
_WEBP_MODES = {"RGB", "RGBA"}


def normalize_image_extension(extension: str) -> str:
    ext = extension.lower().lstrip(".")
    if ext == "jpeg":
        ext = "jpg"
    if ext not in IMAGE_FORMATS:
        raise UnsupportedTypeError(f"Unsupported image extension {extension}")
    return ext


@dataclass
class EncodedImage:
    data: bytes
    extension: str
    mime: str
    width: int
    height: int


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def _prepare_mode(img: Image.Image, extension: str) -> Image.Image:
    if extension == "jpg":
        if img.mode not in _JPEG_MODES:
            return img.convert("RGB")
        return img
    if extension == "png":
        if img.mode not in _PNG_MODES:
            return img.convert("RGBA" if _has_alpha(img) else "RGB")
        return img
    if img.mode not in _WEBP_MODES:
        return img.convert("RGBA" if _has_alpha(img) else "RGB")
    return img


def encode_canonical(source: Union[str, Path, bytes], extension: str) -> EncodedImage:
    """Decode, apply EXIF orientation and re-encode without metadata blocks."""
    ext = normalize_image_extension(extension)
    pil_format, mime = IMAGE_FORMATS[ext]
    stream = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
    try:
        with Image.open(stream) as opened:
            img = ImageOps.exif_transpose(opened)
            img.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise UploadValidationError(f"Unable to decode image: {exc}") from exc

    img = _prepare_mode(img, ext)
    transparency = img.info.get("transparency") if ext == "png" else None
    img.info = {}

    options = {"jpg": JPEG_OPTIONS, "png": PNG_OPTIONS, "webp": WEBP_OPTIONS}[ext]
    if transparency is not None:
        options = {**options, "transparency": transparency}

    buffer = io.BytesIO()
    img.save(buffer, format=pil_format, **options)
    return EncodedImage(
        data=buffer.getvalue(),
        extension=ext,
        mime=mime,
        width=img.width,
        height=img.height,
    )


def render_thumbnail(data: bytes, max_side: int) -> bytes:
    """JPEG thumbnail fitting inside max_side x max_side, never upscaled."""
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        thumb = img.convert("RGB") if img.mode != "RGB" else img.copy()
    thumb.thumbnail((max_side, max_side), Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    thumb.save(buffer, format="JPEG", quality=THUMBNAIL_JPEG_QUALITY)
    return buffer.getvalue()


def write_atomic(target: Path, data: bytes) -> None:
    """Write to a sibling part file, then rename over the target."""
    target.parent.mkdir(parents=True, exist_ok=True)
    part = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
    try:
        with part.open("wb") as fh:
            fh.write(data)
        os.replace(part, target)
    except BaseException:
        with suppress(OSError):
            part.unlink(missing_ok=True)
        raise


class ImageNormalizer:
    """Stores a canonical, metadata-free re-encode of an uploaded image."""

    def __init__(
        self,
        settings: MediaSettings,
        allocator: PathAllocator,
        *,
        hasher: Optional[Hasher] = None,
        digest_lock: Optional[DigestLock] = None,
    ) -> None:
        self.settings = settings
        self.allocator = allocator
        self.hasher = hasher or Hasher()
        self.digest_lock = digest_lock or NullDigestLock()

    async def normalize(self, temp_path: Union[str, Path], claimed_ext: str) -> NormalizedOutput:
        ext = normalize_image_extension(claimed_ext)
        encoded = await asyncio.to_thread(encode_canonical, Path(temp_path), ext)
        digest = self.hasher.digest_of_bytes(encoded.data)

        async with self.digest_lock.hold(digest):
            location = await asyncio.to_thread(self.allocator.resolve, digest, encoded.extension)
            if location.is_newly_created:
                try:
                    await asyncio.to_thread(write_atomic, location.original_path, encoded.data)
                except OSError as exc:
                    logger.error("image.original.write-failed sha=%s error=%s", digest, exc)
                    raise StorageError("Unable to persist image original") from exc
                self.allocator.record_original(digest, location.original_path)
                byte_length = len(encoded.data)
                logger.debug("image.original.persisted sha=%s key=%s", digest, location.original_key)
            else:
                byte_length = (await asyncio.to_thread(location.original_path.stat)).st_size
                logger.info("image.deduplicated sha=%s key=%s", digest, location.original_key)

            await self.ensure_thumbnail(location, encoded.data)

        logger.info(
            "image.processed sha=%s mime=%s bytes=%d width=%d height=%d deduplicated=%s",
            digest,
            encoded.mime,
            byte_length,
            encoded.width,
            encoded.height,
            not location.is_newly_created,
        )
        return NormalizedOutput(
            digest=digest,
            byte_length=byte_length,
            mime=encoded.mime,
            extension=encoded.extension,
            width=encoded.width,
            height=encoded.height,
            location=location,
        )

    async def ensure_thumbnail(self, location: StorageLocation, source: bytes) -> bool:
        """Create the thumbnail if missing. Returns True when one was written."""
        if await asyncio.to_thread(location.thumbnail_path.exists):
            return False
        thumb = await asyncio.to_thread(render_thumbnail, source, self.settings.thumb_image_max)
        await asyncio.to_thread(write_atomic, location.thumbnail_path, thumb)
        logger.debug("image.thumbnail.generated key=%s", location.thumbnail_key)
        return True

    async def read_dimensions(self, path: Union[str, Path]) -> Tuple[int, int]:
        """Width and height of a stored image."""
        def _read() -> Tuple[int, int]:
            with Image.open(path) as img:
                return img.size

        return await asyncio.to_thread(_read)
