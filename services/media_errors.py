"""Error taxonomy for upload ingestion and media lookups."""

from __future__ import annotations

from typing import Any, Dict


class MediaError(Exception):
    """Base exception for media pipeline errors."""

    code = "processing_failed"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class AuthError(MediaError):
    """Raised when the upload credential is missing, invalid or expired."""

    code = "unauthorized"
    status_code = 401


class UploadValidationError(MediaError):
    """Raised when the request or its payload fails validation."""

    code = "bad_request"
    status_code = 400


class DurationExceededError(UploadValidationError):
    """Raised when a probed video is longer than the allowed duration."""

    code = "duration_exceeded"
    status_code = 413


class UndetectableTypeError(MediaError):
    """Raised when no known file type matches the leading bytes."""

    code = "undetectable_type"
    status_code = 415


class UnsupportedTypeError(MediaError):
    """Raised when a detected MIME or extension is not accepted for the claimed kind."""

    code = "unsupported_type"
    status_code = 415


class SizeExceededError(MediaError):
    """Raised when the streamed body exceeds the effective byte ceiling."""

    code = "oversize"
    status_code = 413

    def __init__(self, message: str, *, limit_bytes: int) -> None:
        super().__init__(message)
        self.limit_bytes = limit_bytes


class ToolFailureError(MediaError):
    """Raised when an external codec tool fails on a terminal path."""

    code = "processing_failed"
    status_code = 500


class StorageError(MediaError):
    """Raised for filesystem failures or paths escaping a configured root."""

    code = "processing_failed"
    status_code = 500


class MediaNotFoundError(MediaError):
    """Raised when no stored original matches a digest."""

    code = "not_found"
    status_code = 404
