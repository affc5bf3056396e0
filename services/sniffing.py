"""Magic-byte content type detection from the leading bytes of an upload."""

from __future__ import annotations

import logging
from typing import Optional, Union

import filetype

from models import SniffResult
from services.media_errors import UndetectableTypeError

logger = logging.getLogger(__name__)

SNIFF_LENGTH = 4100


class PrefixCollector:
    """Keeps the first ``capacity`` bytes seen across a sequence of chunks."""

    def __init__(self, capacity: int = SNIFF_LENGTH) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._buffer = bytearray()

    def feed(self, chunk: Union[bytes, bytearray, memoryview]) -> None:
        remaining = self.capacity - len(self._buffer)
        if remaining > 0 and chunk:
            self._buffer.extend(chunk[:remaining])

    @property
    def is_full(self) -> bool:
        return len(self._buffer) >= self.capacity

    def __len__(self) -> int:
        return len(self._buffer)

    def getvalue(self) -> bytes:
        return bytes(self._buffer)


def guess_type(prefix: bytes) -> Optional[SniffResult]:
    """Detect MIME and canonical extension, or None when nothing matches."""
    if not prefix:
        return None
    kind = filetype.guess(prefix)
    if kind is None:
        return None
    return SniffResult(mime=kind.mime, extension=kind.extension)


def detect_type(prefix: bytes) -> SniffResult:
    """Like guess_type but raises UndetectableTypeError when nothing matches."""
    result = guess_type(prefix)
    if result is None:
        logger.debug("upload.mime.unknown sample_bytes=%d", len(prefix))
        raise UndetectableTypeError("Unable to detect file type")
    return result
