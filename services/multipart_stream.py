"""Streaming multipart/form-data reader that yields the bytes of exactly one file part."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Dict, List, Optional

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from services.media_errors import UploadValidationError

logger = logging.getLogger(__name__)


class SingleFileMultipartReader:
    """Push-parses a request body, passing through data of the first file field.

    Non-file fields are ignored. A second file field aborts the stream with
    a bad-request error as soon as its headers are parsed.
    """

    def __init__(self, content_type: Optional[str]) -> None:
        if not content_type:
            raise UploadValidationError("Content-Type must be multipart/form-data")
        mime, params = parse_options_header(content_type)
        if mime != b"multipart/form-data":
            raise UploadValidationError("Content-Type must be multipart/form-data")
        boundary = params.get(b"boundary")
        if not boundary:
            raise UploadValidationError("Multipart boundary is missing")

        self.filename: Optional[str] = None
        self.field_name: Optional[str] = None
        self.file_count = 0
        self._pending: List[bytes] = []
        self._in_file_part = False
        self._finished = False
        self._header_field = bytearray()
        self._header_value = bytearray()
        self._headers: Dict[bytes, bytes] = {}

        callbacks = {
            "on_part_begin": self._on_part_begin,
            "on_part_data": self._on_part_data,
            "on_part_end": self._on_part_end,
            "on_header_field": self._on_header_field,
            "on_header_value": self._on_header_value,
            "on_header_end": self._on_header_end,
            "on_headers_finished": self._on_headers_finished,
            "on_end": self._on_end,
        }
        self._parser = MultipartParser(boundary, callbacks)

    def _on_part_begin(self) -> None:
        self._headers = {}
        self._in_file_part = False

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field.extend(data[start:end])

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value.extend(data[start:end])

    def _on_header_end(self) -> None:
        self._headers[bytes(self._header_field).lower()] = bytes(self._header_value)
        self._header_field.clear()
        self._header_value.clear()

    def _on_headers_finished(self) -> None:
        disposition = self._headers.get(b"content-disposition", b"")
        _, options = parse_options_header(disposition)
        if b"filename" not in options:
            return
        self.file_count += 1
        if self.file_count == 1:
            self._in_file_part = True
            self.filename = options[b"filename"].decode("utf-8", errors="replace")
            field_name = options.get(b"name")
            self.field_name = field_name.decode("utf-8", errors="replace") if field_name else None

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        if self._in_file_part and end > start:
            self._pending.append(bytes(data[start:end]))

    def _on_part_end(self) -> None:
        self._in_file_part = False

    def _on_end(self) -> None:
        self._finished = True

    def _drain(self) -> bytes:
        data = b"".join(self._pending)
        self._pending.clear()
        return data

    async def iter_file(self, body: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """Yield file bytes as they arrive; raise once framing proves invalid."""
        async for chunk in body:
            if not chunk:
                continue
            try:
                self._parser.write(chunk)
            except MultipartParseError as exc:
                raise UploadValidationError("Malformed multipart body") from exc
            if self.file_count > 1:
                logger.warning("upload.multiple-files field=%s", self.field_name)
                raise UploadValidationError("Only one file is allowed per request")
            if self._pending:
                yield self._drain()

        if self._pending:
            yield self._drain()
        if self.file_count == 0:
            raise UploadValidationError("No file field provided")
        if not self._finished:
            raise UploadValidationError("Failed to read upload stream")
