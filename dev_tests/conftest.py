"""Shared pytest fixtures for Media Vault tests."""

import os
import sys

import pytest

# Add project root and this directory to path
TESTS_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.dirname(TESTS_DIR))
sys.path.insert(0, TESTS_DIR)

from config import MediaSettings, StorageSettings, UploadSettings  # noqa: E402
from media_helpers import FIXED_NOW, FakeToolRunner, make_image_bytes, make_video_bytes  # noqa: E402
from models import MediaKind, UploadClaim  # noqa: E402
from services.media_tools import MediaTools  # noqa: E402
from services.path_allocator import PathAllocator  # noqa: E402


# ============================================================================
# Media Payloads
# ============================================================================

@pytest.fixture
def jpeg_bytes():
    return make_image_bytes()


@pytest.fixture
def png_bytes():
    return make_image_bytes(fmt="PNG")


@pytest.fixture
def mp4_bytes():
    return make_video_bytes()


# ============================================================================
# Settings / Storage
# ============================================================================

@pytest.fixture
def storage_settings(tmp_path):
    """Storage roots under a per-test temporary directory."""
    return StorageSettings(base_dir=str(tmp_path / "storage"))


@pytest.fixture
def upload_settings():
    return UploadSettings()


@pytest.fixture
def media_settings():
    return MediaSettings(ffmpeg_path="ffmpeg", ffprobe_path="ffprobe")


@pytest.fixture
def allocator(storage_settings):
    """Allocator with initialised roots and a clock pinned to FIXED_NOW."""
    allocator = PathAllocator(storage_settings, clock=lambda: FIXED_NOW)
    allocator.ensure_roots()
    return allocator


# ============================================================================
# Claims
# ============================================================================

@pytest.fixture
def image_claim():
    return UploadClaim(subject_id="user-1", kind=MediaKind.IMAGE)


@pytest.fixture
def video_claim():
    return UploadClaim(subject_id="user-1", kind=MediaKind.VIDEO)


# ============================================================================
# Codec Tools
# ============================================================================

@pytest.fixture
def fake_runner():
    return FakeToolRunner()


@pytest.fixture
def media_tools(media_settings, fake_runner):
    return MediaTools(media_settings, runner=fake_runner)
