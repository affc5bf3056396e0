"""Bearer upload token verification producing an UploadClaim."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from pydantic import ValidationError

from config import AuthSettings
from models import MediaKind, UploadClaim
from services.media_errors import AuthError, UploadValidationError

logger = logging.getLogger(__name__)

ABSOLUTE_MAX_VIDEO_SEC = 60


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class UploadTokenVerifier:
    """Verifies signed upload tokens and maps their claims onto UploadClaim."""

    def __init__(self, settings: AuthSettings, *, max_video_sec: int = ABSOLUTE_MAX_VIDEO_SEC) -> None:
        self.settings = settings
        self.max_video_sec = max_video_sec

    def verify_authorization_header(self, header: Optional[str]) -> UploadClaim:
        if not header:
            logger.warning("auth.header.missing")
            raise AuthError("Missing Authorization header")

        parts = header.split(" ")
        scheme = parts[0] if parts else ""
        token = parts[1] if len(parts) > 1 else ""
        if scheme.lower() != "bearer" or not token:
            logger.warning("auth.header.invalid")
            raise AuthError("Invalid Authorization header format")

        return self.verify_token(token)

    def verify_token(self, token: str) -> UploadClaim:
        key = self.settings.verification_key
        if not key:
            logger.error("auth.config.missing algorithm=%s", self.settings.algorithm)
            raise AuthError("JWT verification key not configured")

        try:
            decoded = jwt.decode(
                token,
                key,
                algorithms=[self.settings.algorithm],
                options={"require_exp": True, "verify_aud": False},
            )
        except JWTError as exc:
            logger.warning("auth.token.invalid reason=%s", exc.__class__.__name__)
            raise AuthError("Invalid or expired upload token") from exc

        claim = self._build_claim(decoded)
        logger.debug(
            "auth.token.verified user_id=%s kind=%s max_size=%s max_video_sec=%s",
            claim.subject_id,
            claim.kind.value,
            claim.max_size_bytes,
            claim.max_duration_sec,
        )
        return claim

    def _build_claim(self, decoded: Dict[str, Any]) -> UploadClaim:
        subject = decoded.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthError('Token is missing required claim "sub"')

        kind = decoded.get("kind")
        if kind not in (MediaKind.IMAGE.value, MediaKind.VIDEO.value):
            raise AuthError(f'Invalid token kind "{kind}"')

        max_size = self._optional_number(decoded, "maxSize")
        if max_size is not None and max_size < 1:
            raise AuthError('Token claim "maxSize" must be at least one byte')

        post_id = decoded.get("postId")
        if post_id is not None and not isinstance(post_id, str):
            raise AuthError('Token claim "postId" must be a string')

        max_video_sec = self._optional_number(decoded, "maxVideoSec")
        if max_video_sec is not None and max_video_sec > self.max_video_sec:
            logger.warning("auth.token.invalid-claim max_video_sec=%s", max_video_sec)
            raise UploadValidationError(f"maxVideoSec cannot exceed {self.max_video_sec} seconds")
        if max_video_sec is not None and max_video_sec <= 0:
            max_video_sec = None

        exp = decoded.get("exp")
        if not _is_number(exp):
            raise AuthError('Token claim "exp" must be a number')

        try:
            return UploadClaim(
                subject_id=subject,
                kind=MediaKind(kind),
                max_size_bytes=int(max_size) if max_size is not None else None,
                post_id=post_id,
                max_duration_sec=max_video_sec,
                expiry=datetime.fromtimestamp(exp, tz=timezone.utc),
            )
        except (ValidationError, OverflowError, ValueError, OSError) as exc:
            logger.warning("auth.token.invalid-claim error=%s", exc.__class__.__name__)
            raise AuthError("Upload token claims are invalid") from exc

    def _optional_number(self, decoded: Dict[str, Any], field: str) -> Optional[float]:
        value = decoded.get(field)
        if value is None:
            return None
        if not _is_number(value):
            raise AuthError(f'Token claim "{field}" must be a number')
        return value
