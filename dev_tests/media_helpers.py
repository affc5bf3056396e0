"""Builders and fakes shared by the Media Vault test modules."""

import io
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from PIL import Image

import json_utils as json
from services.media_tools import ToolResult, ToolRunner


FIXED_NOW = datetime(2024, 3, 9, 15, 30, tzinfo=timezone.utc)

# ISO-BMFF headers recognised by magic-byte detection
MP4_HEADER = b"\x00\x00\x00\x18ftypisom\x00\x00\x02\x00isommp41"
MOV_HEADER = b"\x00\x00\x00\x14ftypqt  \x00\x00\x02\x00qt  "

_CORNER_COLORS = {"RGB": (10, 200, 10), "RGBA": (10, 200, 10, 255), "L": 128, "LA": (128, 255)}


# ============================================================================
# Media Builders
# ============================================================================

def make_image_bytes(
    width: int = 64,
    height: int = 32,
    fmt: str = "JPEG",
    color=(200, 30, 30),
    orientation: Optional[int] = None,
    mode: str = "RGB",
) -> bytes:
    """Encode a solid-colour image, optionally tagged with an EXIF orientation."""
    img = Image.new(mode, (width, height), color)
    # Contrasting corner block so orientation changes are visible in pixels
    corner = Image.new(mode, (max(1, width // 4), max(1, height // 4)), _CORNER_COLORS.get(mode, 0))
    img.paste(corner, (0, 0))
    buffer = io.BytesIO()
    options: Dict[str, Any] = {}
    if orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = orientation
        options["exif"] = exif.tobytes()
    img.save(buffer, format=fmt, **options)
    return buffer.getvalue()


def make_video_bytes(header: bytes = MP4_HEADER, payload_size: int = 2048, seed: bytes = b"frame") -> bytes:
    body = (seed * (payload_size // len(seed) + 1))[:payload_size]
    return header + b"\x00\x00\x00\x08mdat" + body


# ============================================================================
# Codec Tool Fake
# ============================================================================

class FakeToolRunner(ToolRunner):
    """Stands in for ffprobe/ffmpeg and records every invocation.

    ffmpeg calls are recognised by their arguments: ``-c copy`` is the remux,
    ``libx264`` the re-encode, ``-frames:v`` the thumbnail extraction.
    """

    def __init__(
        self,
        *,
        duration: Optional[float] = 5.0,
        width: int = 640,
        height: int = 360,
        remux_fails: bool = False,
        reencode_fails: bool = False,
        thumbnail_fails: bool = False,
        probe_fails: bool = False,
    ) -> None:
        self.duration = duration
        self.width = width
        self.height = height
        self.remux_fails = remux_fails
        self.reencode_fails = reencode_fails
        self.thumbnail_fails = thumbnail_fails
        self.probe_fails = probe_fails
        self.calls: List[List[str]] = []

    @property
    def probe_calls(self) -> List[List[str]]:
        return [call for call in self.calls if Path(call[0]).name == "ffprobe"]

    @property
    def ffmpeg_calls(self) -> List[List[str]]:
        return [call for call in self.calls if Path(call[0]).name == "ffmpeg"]

    @property
    def remux_calls(self) -> List[List[str]]:
        return [call for call in self.ffmpeg_calls if "copy" in call]

    @property
    def reencode_calls(self) -> List[List[str]]:
        return [call for call in self.ffmpeg_calls if "libx264" in call]

    @property
    def thumbnail_calls(self) -> List[List[str]]:
        return [call for call in self.ffmpeg_calls if "-frames:v" in call]

    async def run(self, argv):
        command = [str(part) for part in argv]
        self.calls.append(command)

        if Path(command[0]).name == "ffprobe":
            if self.probe_fails:
                return ToolResult(argv=command, returncode=1, stderr="Invalid data found when processing input")
            payload = {
                "streams": [
                    {"codec_type": "audio", "codec_name": "aac"},
                    {"codec_type": "video", "codec_name": "h264", "width": self.width, "height": self.height},
                ],
                "format": {} if self.duration is None else {"duration": f"{self.duration:.6f}"},
            }
            return ToolResult(argv=command, returncode=0, stdout=json.dumps(payload).encode("utf-8"))

        output = Path(command[-1])
        source = Path(command[command.index("-i") + 1])
        if "-frames:v" in command:
            if self.thumbnail_fails:
                return ToolResult(argv=command, returncode=1, stderr="Output file is empty, nothing was encoded")
            output.write_bytes(make_image_bytes(fmt="JPEG"))
            return ToolResult(argv=command, returncode=0)
        if "copy" in command:
            if self.remux_fails:
                output.write_bytes(b"partial")
                return ToolResult(argv=command, returncode=1, stderr="Could not find tag for codec")
            shutil.copyfile(source, output)
            return ToolResult(argv=command, returncode=0)
        if "libx264" in command:
            if self.reencode_fails:
                return ToolResult(argv=command, returncode=1, stderr="Error while opening encoder")
            output.write_bytes(source.read_bytes() + b"reencoded")
            return ToolResult(argv=command, returncode=0)
        return ToolResult(argv=command, returncode=1, stderr="unexpected invocation")


# ============================================================================
# Stream Helpers
# ============================================================================

async def iter_chunks(data: bytes, chunk_size: int = 1024):
    for offset in range(0, len(data), chunk_size):
        yield data[offset:offset + chunk_size]


def build_multipart(files: List[tuple], fields: Optional[Dict[str, str]] = None, boundary: str = "vaultboundary42"):
    """Return (body, content_type) for (field, filename, content_type, data) file tuples."""
    parts: List[bytes] = []
    for name, value in (fields or {}).items():
        parts.append(
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
            f"{value}\r\n".encode("utf-8")
        )
    for field_name, filename, content_type, data in files:
        header = (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{field_name}"; filename="{filename}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        ).encode("utf-8")
        parts.append(header + data + b"\r\n")
    parts.append(f"--{boundary}--\r\n".encode("utf-8"))
    return b"".join(parts), f"multipart/form-data; boundary={boundary}"
