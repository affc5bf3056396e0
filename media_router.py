"""FastAPI router handling media uploads and metadata lookups."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from config import config
from models import MediaMetadataView, UploadClaim, UploadResponse
from services.ingestion import UploadIngestor
from services.media_catalog import MediaCatalog
from services.media_errors import MediaError
from services.path_allocator import DigestIndex, PathAllocator
from services.upload_auth import UploadTokenVerifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["media"])

_path_allocator: Optional[PathAllocator] = None
_ingestor: Optional[UploadIngestor] = None
_catalog: Optional[MediaCatalog] = None
_token_verifier: Optional[UploadTokenVerifier] = None


def get_path_allocator() -> PathAllocator:
    """Resolve the allocator shared by ingestion and metadata lookups."""
    global _path_allocator
    if _path_allocator is None:
        index = DigestIndex() if config.STORAGE.digest_index_enabled else None
        _path_allocator = PathAllocator(config.STORAGE, index=index)
    return _path_allocator


def get_ingestor() -> UploadIngestor:
    global _ingestor
    if _ingestor is None:
        _ingestor = UploadIngestor.from_config(config, allocator=get_path_allocator())
    return _ingestor


def get_media_catalog() -> MediaCatalog:
    global _catalog
    if _catalog is None:
        _catalog = MediaCatalog.from_config(config, allocator=get_path_allocator())
    return _catalog


def get_token_verifier() -> UploadTokenVerifier:
    global _token_verifier
    if _token_verifier is None:
        _token_verifier = UploadTokenVerifier(config.AUTH)
    return _token_verifier


def reset_media_services() -> None:
    """Drop cached service instances so the next request rebuilds them from config."""
    global _path_allocator, _ingestor, _catalog, _token_verifier
    _path_allocator = None
    _ingestor = None
    _catalog = None
    _token_verifier = None


def _to_http_exception(exc: MediaError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def get_upload_claim(
    authorization: Optional[str] = Header(default=None),
    verifier: UploadTokenVerifier = Depends(get_token_verifier),
) -> UploadClaim:
    """Verify the bearer upload token before any of the body is read."""
    try:
        return verifier.verify_authorization_header(authorization)
    except MediaError as exc:
        raise _to_http_exception(exc) from exc


@router.post("/upload", response_model=UploadResponse)
async def upload_media(
    request: Request,
    claim: UploadClaim = Depends(get_upload_claim),
    ingestor: UploadIngestor = Depends(get_ingestor),
) -> UploadResponse:
    """Stream a single multipart file into the content-addressed store."""
    try:
        return await ingestor.handle_upload(
            request.stream(),
            request.headers.get("content-type"),
            claim,
            request_id=getattr(request.state, "request_id", None),
            content_length=request.headers.get("content-length"),
        )
    except MediaError as exc:
        raise _to_http_exception(exc) from exc
    except Exception as exc:
        logger.exception("Unexpected error processing upload", exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "processing_failed", "message": "Unable to process upload"},
        ) from exc


@router.get("/media/{sha}/meta", response_model=MediaMetadataView)
async def get_media_metadata(
    sha: str,
    catalog: MediaCatalog = Depends(get_media_catalog),
) -> MediaMetadataView:
    """Return metadata reconstructed from the stored original."""
    try:
        return await catalog.get_metadata_by_digest(sha)
    except MediaError as exc:
        raise _to_http_exception(exc) from exc
    except Exception as exc:
        logger.exception("Unexpected error reading media metadata", exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "processing_failed", "message": "Unable to read media metadata"},
        ) from exc
