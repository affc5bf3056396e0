"""
Shared fixtures for integration tests.

These fixtures handle:
- A per-test Config pointing storage at a temporary directory
- HS256 upload tokens
- Codec binaries replaced by FakeToolRunner
"""

import os
import time
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from media_helpers import FakeToolRunner

TEST_SECRET = "integration-secret"


# ============================================================================
# Application Fixtures
# ============================================================================

@pytest.fixture
def test_config(tmp_path):
    """Config loaded from an environment that points at tmp storage."""
    from config import Config

    env = {
        "BASE_DIR": str(tmp_path / "storage"),
        "TMP_DIR": "",
        "ORIG_DIR": "",
        "THUMB_DIR": "",
        "JWT_ALG": "HS256",
        "JWT_SHARED_SECRET": TEST_SECRET,
        "MAX_UPLOAD_MB": "1",
        "FFMPEG_PATH": "ffmpeg",
        "FFPROBE_PATH": "ffprobe",
    }
    with patch.dict(os.environ, env, clear=False):
        return Config()


@pytest.fixture
def fake_runner():
    return FakeToolRunner()


@pytest.fixture
def client(test_config, fake_runner):
    """
    TestClient with media services rebuilt from test_config.

    The ingestor and catalog share the router's allocator but run codec
    tools through fake_runner.
    """
    import media_router
    from core.app_state import app
    from services.ingestion import UploadIngestor
    from services.media_catalog import MediaCatalog

    media_router.reset_media_services()
    with patch.object(media_router, "config", test_config):
        def override_ingestor():
            return UploadIngestor.from_config(
                test_config, allocator=media_router.get_path_allocator(), runner=fake_runner
            )

        def override_catalog():
            return MediaCatalog.from_config(
                test_config, allocator=media_router.get_path_allocator(), runner=fake_runner
            )

        app.dependency_overrides[media_router.get_ingestor] = override_ingestor
        app.dependency_overrides[media_router.get_media_catalog] = override_catalog
        try:
            with TestClient(app) as test_client:
                yield test_client
        finally:
            app.dependency_overrides.clear()
            media_router.reset_media_services()


# ============================================================================
# Token Fixtures
# ============================================================================

@pytest.fixture
def make_token():
    def _make(kind="image", **claims):
        payload = {"sub": "user-7", "kind": kind, "exp": int(time.time()) + 300}
        payload.update(claims)
        return jwt.encode(payload, TEST_SECRET, algorithm="HS256")

    return _make


@pytest.fixture
def auth_headers(make_token):
    def _headers(kind="image", **claims):
        return {"Authorization": f"Bearer {make_token(kind, **claims)}"}

    return _headers
