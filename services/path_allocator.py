"""Date-bucketed, content-addressed path allocation for originals and thumbnails.

The originals tree is the index: a digest is stored once, under the UTC
``yyyy/mm/dd`` bucket of the day it was first written. Later uploads of the
same digest find that file by searching the whole tree and reuse its bucket.
Thumbnails mirror the original's bucket under the thumbnails root and are
always JPEG.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from config import StorageSettings
from models import StorageLocation
from services.hashing import is_valid_digest
from services.media_errors import StorageError

logger = logging.getLogger(__name__)

ORIGINAL_KEY_PREFIX = "o"
THUMBNAIL_KEY_PREFIX = "t"
THUMBNAIL_EXTENSION = "jpg"


def build_date_bucket(now: Optional[datetime] = None) -> str:
    """UTC ``yyyy/mm/dd`` bucket for the given instant (default: now)."""
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return f"{moment.year:04d}/{moment.month:02d}/{moment.day:02d}"


def parse_date_bucket(relative_bucket: str) -> Optional[datetime]:
    """UTC midnight for a ``yyyy/mm/dd`` bucket, or None if it is not one."""
    parts = relative_bucket.strip("/").split("/")
    if len(parts) != 3:
        return None
    year, month, day = parts
    if not (len(year) == 4 and len(month) == 2 and len(day) == 2):
        return None
    try:
        return datetime(int(year), int(month), int(day), tzinfo=timezone.utc)
    except ValueError:
        return None


class DigestLock:
    """Advisory lock keyed by digest, held across resolve + persist + thumbnail."""

    @asynccontextmanager
    async def hold(self, digest: str) -> AsyncIterator[None]:
        yield


class NullDigestLock(DigestLock):
    """No coordination; concurrent identical uploads may both write the original."""


class ProcessDigestLock(DigestLock):
    """Per-digest asyncio locks shared by all requests in this process."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._locks_lock = asyncio.Lock()

    async def _acquire_entry(self, digest: str) -> asyncio.Lock:
        async with self._locks_lock:
            lock = self._locks.get(digest)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[digest] = lock
            self._holders[digest] = self._holders.get(digest, 0) + 1
            return lock

    async def _release_entry(self, digest: str) -> None:
        async with self._locks_lock:
            remaining = self._holders.get(digest, 1) - 1
            if remaining <= 0:
                self._holders.pop(digest, None)
                self._locks.pop(digest, None)
            else:
                self._holders[digest] = remaining

    @asynccontextmanager
    async def hold(self, digest: str) -> AsyncIterator[None]:
        lock = await self._acquire_entry(digest)
        try:
            async with lock:
                yield
        finally:
            await self._release_entry(digest)

    def active_keys(self) -> int:
        return len(self._locks)


def build_digest_lock(mode: str) -> DigestLock:
    if mode == "process":
        return ProcessDigestLock()
    return NullDigestLock()


class DigestIndex:
    """In-memory cache of digest -> stored original path.

    Entries are hints: a cached path that no longer exists is dropped and
    the caller falls back to scanning the tree.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Path] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, digest: str, extension: Optional[str] = None) -> Optional[Path]:
        path = self._entries.get(digest)
        if path is None:
            return None
        if not path.is_file():
            self._entries.pop(digest, None)
            return None
        if extension is not None and path.suffix.lstrip(".") != extension:
            return None
        return path

    def put(self, digest: str, path: Path) -> None:
        self._entries[digest] = path

    def discard(self, digest: str) -> None:
        self._entries.pop(digest, None)


class PathAllocator:
    """Locates or allocates storage paths for a digest."""

    def __init__(
        self,
        settings: StorageSettings,
        *,
        index: Optional[DigestIndex] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.originals_root = Path(settings.originals_dir)
        self.thumbs_root = Path(settings.thumbs_dir)
        self.index = index
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def ensure_roots(self) -> None:
        """Create every storage root and confirm each resolves where configured."""
        roots = {
            "base": Path(self.settings.base_dir),
            "tmp": Path(self.settings.tmp_dir),
            "originals": self.originals_root,
            "thumbnails": self.thumbs_root,
        }
        for name, root in roots.items():
            try:
                root.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StorageError(f"Unable to create {name} directory {root}: {exc}") from exc
            expected = os.path.abspath(root)
            resolved = os.path.realpath(root)
            if not resolved.startswith(expected):
                raise StorageError(f"{name} directory {root} resolves outside its configured location")
            logger.info("storage.root.ready name=%s path=%s", name, resolved)

    def resolve(self, digest: str, extension: str) -> StorageLocation:
        """Return the existing location for digest.extension, or allocate today's bucket."""
        if not is_valid_digest(digest):
            raise StorageError(f"Refusing to allocate path for malformed digest '{digest}'")
        ext = extension.lower().lstrip(".")

        existing = self._find_existing_original(digest, ext)
        if existing is not None:
            relative_bucket = self._relative_bucket(existing)
            logger.debug("media.path.reused digest=%s bucket=%s", digest, relative_bucket)
            return self._build_location(digest, ext, relative_bucket, is_newly_created=False)

        relative_bucket = build_date_bucket(self._clock())
        original_dir = self.originals_root / relative_bucket
        thumb_dir = self.thumbs_root / relative_bucket
        try:
            original_dir.mkdir(parents=True, exist_ok=True)
            thumb_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Unable to create bucket {relative_bucket}: {exc}") from exc
        logger.debug("media.path.allocated digest=%s bucket=%s", digest, relative_bucket)
        return self._build_location(digest, ext, relative_bucket, is_newly_created=True)

    def locate_by_digest(self, digest: str) -> Optional[Tuple[Path, str]]:
        """Find ``{digest}.*`` anywhere under the originals root; first match wins."""
        if not is_valid_digest(digest):
            return None
        if self.index is not None:
            cached = self.index.get(digest)
            if cached is not None:
                return cached, cached.suffix.lstrip(".")
        for candidate in sorted(self.originals_root.rglob(f"{digest}.*")):
            if candidate.is_file():
                if self.index is not None:
                    self.index.put(digest, candidate)
                return candidate, candidate.suffix.lstrip(".")
        return None

    def location_for_original(self, original_path: Path) -> StorageLocation:
        """Storage location for an already stored original."""
        digest = original_path.stem
        ext = original_path.suffix.lstrip(".")
        return self._build_location(digest, ext, self._relative_bucket(original_path), is_newly_created=False)

    def record_original(self, digest: str, original_path: Path) -> None:
        if self.index is not None:
            self.index.put(digest, original_path)

    def _find_existing_original(self, digest: str, ext: str) -> Optional[Path]:
        if self.index is not None:
            cached = self.index.get(digest, ext)
            if cached is not None:
                return cached
        for candidate in sorted(self.originals_root.rglob(f"{digest}.{ext}")):
            if candidate.is_file():
                if self.index is not None:
                    self.index.put(digest, candidate)
                return candidate
        return None

    def _relative_bucket(self, original_path: Path) -> str:
        try:
            relative = original_path.parent.relative_to(self.originals_root)
        except ValueError as exc:
            raise StorageError(f"{original_path} is outside the originals root") from exc
        return relative.as_posix() if relative.parts else ""

    def _build_location(
        self, digest: str, ext: str, relative_bucket: str, *, is_newly_created: bool
    ) -> StorageLocation:
        original_name = f"{digest}.{ext}"
        thumb_name = f"{digest}.{THUMBNAIL_EXTENSION}"
        bucket_parts = [part for part in relative_bucket.split("/") if part]
        original_path = self.originals_root.joinpath(*bucket_parts, original_name)
        thumbnail_path = self.thumbs_root.joinpath(*bucket_parts, thumb_name)
        return StorageLocation(
            original_path=original_path,
            thumbnail_path=thumbnail_path,
            original_key="/".join([ORIGINAL_KEY_PREFIX, *bucket_parts, original_name]),
            thumbnail_key="/".join([THUMBNAIL_KEY_PREFIX, *bucket_parts, thumb_name]),
            is_newly_created=is_newly_created,
            relative_bucket=relative_bucket,
        )
