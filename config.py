"""
Configuration for the Media Vault upload service
================================================

Central configuration for storage roots, upload ceilings, MIME allow-lists,
thumbnail sizing, codec tool locations and upload token verification.
Values are loaded from environment variables (and an optional .env file).
Contradictory auth settings raise at load time instead of degrading silently.
"""

import os
import shutil
from typing import List, Optional

from pydantic import BaseModel, Field
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}


class ConfigurationError(RuntimeError):
    """Raised when environment configuration is inconsistent."""


class StorageSettings(BaseModel):
    """Filesystem roots for the content-addressed store."""

    base_dir: str = Field(
        default="/data/storage",
        description="Base directory holding temp, originals and thumbnails",
    )
    tmp_dir: str = Field(default="", description="Directory for in-flight upload temp files")
    originals_dir: str = Field(default="", description="Root of the originals tree (o/)")
    thumbs_dir: str = Field(default="", description="Root of the thumbnails tree (t/)")
    digest_index_enabled: bool = Field(
        default=True,
        description="Cache digest -> original path lookups in memory before scanning the tree",
    )
    lock_mode: str = Field(
        default="none",
        description="Advisory digest lock implementation: none|process",
    )

    def model_post_init(self, __context) -> None:
        self.apply_base_dir_defaults()

    def apply_base_dir_defaults(self) -> None:
        """Derive unset roots from base_dir."""
        if not self.tmp_dir:
            self.tmp_dir = os.path.join(self.base_dir, "tmp")
        if not self.originals_dir:
            self.originals_dir = os.path.join(self.base_dir, "o")
        if not self.thumbs_dir:
            self.thumbs_dir = os.path.join(self.base_dir, "t")


class UploadSettings(BaseModel):
    """Upload ceilings and per-kind MIME allow-lists."""

    max_upload_bytes: int = Field(
        default=50 * 1024 * 1024,
        gt=0,
        description="Global byte ceiling for a single upload",
    )
    allowed_image_mime: List[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/png", "image/webp"],
        description="Sniffed MIME types accepted for image claims",
    )
    allowed_video_mime: List[str] = Field(
        default_factory=lambda: ["video/mp4", "video/quicktime"],
        description="Sniffed MIME types accepted for video claims",
    )
    max_video_duration_sec: int = Field(
        default=60,
        gt=0,
        description="Absolute ceiling for video duration claims",
    )
    sniff_length: int = Field(
        default=4100,
        gt=0,
        description="Leading bytes collected for magic-byte detection",
    )
    chunk_size: int = Field(
        default=64 * 1024,
        gt=0,
        description="Read size when hashing files on disk",
    )


class MediaSettings(BaseModel):
    """Normalization and thumbnail parameters."""

    thumb_image_max: int = Field(default=512, gt=0, description="Longest side of image thumbnails")
    thumb_video_width: int = Field(default=512, gt=0, description="Width of video poster thumbnails")
    thumb_video_offset_sec: float = Field(
        default=0.5,
        ge=0,
        description="Offset of the frame extracted for video thumbnails",
    )
    ffmpeg_path: str = Field(default="", description="ffmpeg binary; resolved on PATH when empty")
    ffprobe_path: str = Field(default="", description="ffprobe binary; resolved on PATH when empty")

    def resolve_ffmpeg(self) -> Optional[str]:
        return self.ffmpeg_path or shutil.which("ffmpeg")

    def resolve_ffprobe(self) -> Optional[str]:
        return self.ffprobe_path or shutil.which("ffprobe")


class AuthSettings(BaseModel):
    """Upload token verification settings."""

    algorithm: str = Field(default="RS256", description="JWT algorithm: RS256 or HS256")
    public_key: str = Field(default="", description="PEM public key for RS256 tokens")
    shared_secret: str = Field(default="", description="Shared secret for HS256 tokens")
    token_ttl_sec: int = Field(default=300, gt=0, description="Expected lifetime of upload tokens")

    @property
    def verification_key(self) -> str:
        if self.algorithm == "HS256":
            return self.shared_secret or self.public_key
        return self.public_key

    def validate_consistency(self) -> None:
        if self.algorithm not in {"RS256", "HS256"}:
            raise ConfigurationError(f"JWT_ALG must be RS256 or HS256, got '{self.algorithm}'")
        if self.algorithm == "RS256" and not self.public_key:
            raise ConfigurationError("RS256 requires JWT_PUBLIC_KEY to be set")
        if self.algorithm == "HS256" and not self.verification_key:
            raise ConfigurationError("HS256 requires JWT_SHARED_SECRET or UPLOAD_TOKEN_SECRET to be set")


class Config(BaseModel):
    """Configuration settings for the Media Vault service."""

    STORAGE: StorageSettings = Field(default_factory=StorageSettings, description="Storage tree settings")
    UPLOAD: UploadSettings = Field(default_factory=UploadSettings, description="Upload limits and allow-lists")
    MEDIA: MediaSettings = Field(default_factory=MediaSettings, description="Normalization settings")
    AUTH: AuthSettings = Field(default_factory=AuthSettings, description="Upload token settings")

    APP_ENV: str = Field(default="production", description="Deployment environment name")
    APP_HOST: str = Field(default="0.0.0.0", description="FastAPI host")
    APP_PORT: int = Field(default=4000, description="FastAPI port")
    APP_RELOAD: bool = Field(default=False, description="FastAPI reload mode")
    APP_WORKERS: int = Field(default=1, description="Gunicorn worker processes")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    def __init__(self, *, strict_auth: bool = False):
        super().__init__()
        self.load_from_environment()
        if strict_auth:
            self.AUTH.validate_consistency()

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    def load_from_environment(self):
        """Load configuration from environment variables."""
        base_dir = os.getenv("BASE_DIR")
        if base_dir:
            self.STORAGE.base_dir = base_dir
        self.STORAGE.tmp_dir = os.getenv("TMP_DIR", "")
        self.STORAGE.originals_dir = os.getenv("ORIG_DIR", "")
        self.STORAGE.thumbs_dir = os.getenv("THUMB_DIR", "")
        self.STORAGE.apply_base_dir_defaults()

        index_override = os.getenv("STORAGE_DIGEST_INDEX")
        if index_override:
            self.STORAGE.digest_index_enabled = index_override.lower() in TRUTHY_ENV_VALUES

        lock_mode = os.getenv("STORAGE_LOCK_MODE")
        if lock_mode:
            normalized = lock_mode.strip().lower()
            if normalized not in {"none", "process"}:
                raise ConfigurationError(f"STORAGE_LOCK_MODE must be none or process, got '{lock_mode}'")
            self.STORAGE.lock_mode = normalized

        max_upload_mb = os.getenv("MAX_UPLOAD_MB")
        if max_upload_mb:
            try:
                parsed = float(max_upload_mb)
                if parsed > 0:
                    self.UPLOAD.max_upload_bytes = round(parsed * 1024 * 1024)
            except ValueError:
                pass

        allowed_image = os.getenv("ALLOWED_IMAGE_MIME")
        if allowed_image:
            values = [value.strip() for value in allowed_image.split(",") if value.strip()]
            if values:
                self.UPLOAD.allowed_image_mime = values

        allowed_video = os.getenv("ALLOWED_VIDEO_MIME")
        if allowed_video:
            values = [value.strip() for value in allowed_video.split(",") if value.strip()]
            if values:
                self.UPLOAD.allowed_video_mime = values

        duration_override = os.getenv("MAX_VIDEO_DURATION_SEC")
        if duration_override:
            try:
                parsed = int(duration_override)
                if parsed > 0:
                    self.UPLOAD.max_video_duration_sec = parsed
            except ValueError:
                pass

        thumb_image_max = os.getenv("THUMB_IMAGE_MAX")
        if thumb_image_max:
            try:
                parsed = int(thumb_image_max)
                if parsed > 0:
                    self.MEDIA.thumb_image_max = parsed
            except ValueError:
                pass

        thumb_video_width = os.getenv("THUMB_VIDEO_WIDTH")
        if thumb_video_width:
            try:
                parsed = int(thumb_video_width)
                if parsed > 0:
                    self.MEDIA.thumb_video_width = parsed
            except ValueError:
                pass

        self.MEDIA.ffmpeg_path = os.getenv("FFMPEG_PATH", self.MEDIA.ffmpeg_path)
        self.MEDIA.ffprobe_path = os.getenv("FFPROBE_PATH", self.MEDIA.ffprobe_path)

        # Upload token verification
        self.AUTH.algorithm = os.getenv("JWT_ALG", self.AUTH.algorithm).strip().upper()
        self.AUTH.public_key = os.getenv("JWT_PUBLIC_KEY", "")
        self.AUTH.shared_secret = os.getenv("JWT_SHARED_SECRET", "") or os.getenv("UPLOAD_TOKEN_SECRET", "")
        ttl_override = os.getenv("UPLOAD_TOKEN_TTL_SEC")
        if ttl_override:
            try:
                parsed = int(ttl_override)
                if parsed > 0:
                    self.AUTH.token_ttl_sec = parsed
            except ValueError:
                pass

        # FastAPI Configuration
        self.APP_ENV = os.getenv("APP_ENV", self.APP_ENV)
        self.APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
        self.APP_PORT = int(os.getenv("APP_PORT", os.getenv("PORT", "4000")))
        self.APP_RELOAD = os.getenv("APP_RELOAD", "false").lower() in TRUTHY_ENV_VALUES
        self.APP_WORKERS = int(os.getenv("APP_WORKERS", "1"))

        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


config = Config()
