"""SHA-256 content digests for buffers and files."""

from __future__ import annotations

import asyncio
import hashlib
import re
from pathlib import Path
from typing import Tuple, Union

DIGEST_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def is_valid_digest(value: str) -> bool:
    """True for a lowercase hex-encoded 256-bit digest."""
    return bool(value) and DIGEST_PATTERN.fullmatch(value) is not None


class Hasher:
    """Computes hex SHA-256 digests; file hashing reads in fixed-size chunks."""

    DEFAULT_CHUNK_SIZE = 64 * 1024

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size

    def digest_of_bytes(self, data: Union[bytes, bytearray, memoryview]) -> str:
        return hashlib.sha256(data).hexdigest()

    def digest_of_file(self, path: Union[str, Path]) -> Tuple[str, int]:
        """Return (hex digest, byte length) without loading the file into memory."""
        hasher = hashlib.sha256()
        size = 0
        with Path(path).open("rb") as fh:
            while True:
                chunk = fh.read(self.chunk_size)
                if not chunk:
                    break
                size += len(chunk)
                hasher.update(chunk)
        return hasher.hexdigest(), size

    async def digest_of_file_async(self, path: Union[str, Path]) -> Tuple[str, int]:
        return await asyncio.to_thread(self.digest_of_file, path)
