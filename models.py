"""
Data Models for the Media Vault upload service
==============================================

Pydantic models for request/response handling and dataclasses for the
internal values passed between the ingestion stages.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MediaKind(str, Enum):
    """Kind of media an upload claim authorizes"""
    IMAGE = "image"
    VIDEO = "video"


IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "webp"})
VIDEO_EXTENSIONS = frozenset({"mp4", "mov"})

EXTENSION_MIME = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
}


def kind_for_extension(extension: str) -> Optional[MediaKind]:
    """Map a stored file extension to its media kind, or None if unsupported."""
    ext = extension.lower().lstrip(".")
    if ext in IMAGE_EXTENSIONS:
        return MediaKind.IMAGE
    if ext in VIDEO_EXTENSIONS:
        return MediaKind.VIDEO
    return None


def mime_for_extension(extension: str) -> Optional[str]:
    return EXTENSION_MIME.get(extension.lower().lstrip("."))


class UploadClaim(BaseModel):
    """Verified upload token payload authorizing a single upload."""

    model_config = ConfigDict(frozen=True)

    subject_id: str = Field(..., min_length=1, description="Owner of the upload (token 'sub')")
    kind: MediaKind = Field(..., description="Kind of media the caller may upload")
    max_size_bytes: Optional[int] = Field(default=None, gt=0, description="Per-token byte ceiling")
    post_id: Optional[str] = Field(default=None, description="Optional post the upload belongs to")
    max_duration_sec: Optional[float] = Field(default=None, gt=0, description="Per-token video duration ceiling (seconds)")
    expiry: Optional[datetime] = Field(default=None, description="Token expiry (UTC)")


@dataclass(frozen=True)
class SniffResult:
    """MIME type and extension detected from leading content bytes."""

    mime: str
    extension: str


@dataclass(frozen=True)
class StorageLocation:
    """Resolved original/thumbnail paths and keys for a digest."""

    original_path: Path
    thumbnail_path: Path
    original_key: str
    thumbnail_key: str
    is_newly_created: bool
    relative_bucket: str


@dataclass(frozen=True)
class NormalizedOutput:
    """Result of normalizing one upload into the content-addressed store."""

    digest: str
    byte_length: int
    mime: str
    extension: str
    width: Optional[int]
    height: Optional[int]
    location: StorageLocation
    duration_ms: Optional[int] = None

    @property
    def is_deduplicated(self) -> bool:
        return not self.location.is_newly_created


class CamelModel(BaseModel):
    """Response model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UploadResponse(CamelModel):
    """Response body for a successful upload."""

    media_id: str = Field(..., description="Opaque identifier generated for this upload")
    owner_id: str = Field(..., description="Subject of the upload token")
    kind: MediaKind
    mime: str
    bytes: int = Field(..., ge=0)
    width: Optional[int] = None
    height: Optional[int] = None
    duration_ms: Optional[int] = None
    storage_key_original: str
    storage_key_thumb: str
    sha256: str
    status: Literal["ready"] = "ready"


class MediaMetadataView(CamelModel):
    """Metadata reconstructed from the storage tree for a digest."""

    sha256: str
    kind: MediaKind
    mime: str
    bytes: int = Field(..., ge=0)
    width: Optional[int] = None
    height: Optional[int] = None
    duration_ms: Optional[int] = None
    storage_key_original: str
    storage_key_thumb: str
    created_at: Optional[datetime] = Field(default=None, description="UTC midnight of the storage bucket")


class ErrorDetail(BaseModel):
    """Structured error payload returned by the API."""

    code: str
    message: str
