"""
Media Vault - Content-addressed media upload API
================================================

Shared FastAPI application: logging setup, request logging middleware,
storage initialisation on startup, health check and the media router.
"""

import logging
import time
import uuid

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from config import Config, config
from media_router import get_path_allocator, router as media_router

# Setup logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
    ]
)

# Silence noisy third-party loggers to avoid cluttering output
_noisy_loggers = [
    'PIL',
    'PIL.PngImagePlugin',
    'PIL.TiffImagePlugin',
    'python_multipart',
    'python_multipart.multipart',
    'multipart',
    'httpx',
    'asyncio',
]
for _logger_name in _noisy_loggers:
    logging.getLogger(_logger_name).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs each request and its outcome with a request id.

    The id is taken from the X-Request-Id header when present, generated
    otherwise, stored on request.state and echoed on the response.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        logger.info(
            "http.request request_id=%s method=%s path=%s content_length=%s client=%s",
            request_id,
            request.method,
            request.url.path,
            request.headers.get("content-length"),
            request.client.host if request.client else None,
        )
        try:
            response = await call_next(request)
        except Exception:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.exception(
                "http.error request_id=%s method=%s path=%s duration_ms=%.3f",
                request_id,
                request.method,
                request.url.path,
                elapsed_ms,
            )
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        log = logger.warning if response.status_code >= 400 else logger.info
        log(
            "http.response request_id=%s method=%s path=%s status=%d duration_ms=%.3f",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


app = FastAPI(
    title="Media Vault",
    description="Content-addressed media upload and normalization service",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestLoggingMiddleware)
app.include_router(media_router)


@app.on_event("startup")
async def startup_event():
    """Create storage roots; refuse to start if they cannot be used."""
    get_path_allocator().ensure_roots()
    logger.info(
        "Media Vault ready (env=%s, originals=%s, thumbnails=%s)",
        config.APP_ENV,
        config.STORAGE.originals_dir,
        config.STORAGE.thumbs_dir,
    )
    if not config.AUTH.verification_key:
        logger.warning("auth.config.missing: uploads will be rejected until JWT keys are configured")


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok"}


__all__ = ["app", "config", "Config", "logger", "RequestLoggingMiddleware", "REQUEST_ID_HEADER"]
