"""Async wrappers around the ffprobe/ffmpeg command line tools."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import json_utils as json
from config import MediaSettings
from services.media_errors import ToolFailureError

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2000


@dataclass
class ToolResult:
    """Outcome of one tool invocation. Non-zero exits are data, not exceptions."""

    argv: List[str]
    returncode: int
    stdout: bytes = b""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        tail = self.stderr.strip()[-STDERR_TAIL_CHARS:]
        name = Path(self.argv[0]).name if self.argv else "tool"
        return f"{name} exited with {self.returncode}: {tail or 'no output'}"


class ToolRunner:
    """Runs a command as a separate worker process without blocking the event loop."""

    async def run(self, argv: Sequence[str]) -> ToolResult:
        command = [str(part) for part in argv]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ToolFailureError(f"{command[0]} binary not found") from exc
        stdout, stderr = await process.communicate()
        return ToolResult(
            argv=command,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout or b"",
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
        )


@dataclass(frozen=True)
class VideoProbe:
    """Duration and dimensions reported by ffprobe."""

    duration_sec: Optional[float]
    width: Optional[int]
    height: Optional[int]


def summarize_probe(payload: Optional[Dict[str, Any]]) -> VideoProbe:
    """Duration from the container format; dimensions from the first video stream."""
    if not payload:
        return VideoProbe(duration_sec=None, width=None, height=None)
    fmt = payload.get("format") or {}
    raw_duration = fmt.get("duration")
    try:
        duration = float(raw_duration) if raw_duration not in (None, "", "N/A") else None
    except (TypeError, ValueError):
        duration = None
    streams = payload.get("streams") or []
    video = next((stream for stream in streams if stream.get("codec_type") == "video"), None) or {}
    return VideoProbe(duration_sec=duration, width=video.get("width"), height=video.get("height"))


class MediaTools:
    """Locates the codec binaries and runs them through a ToolRunner."""

    def __init__(self, settings: MediaSettings, runner: Optional[ToolRunner] = None) -> None:
        self.settings = settings
        self.runner = runner or ToolRunner()

    def _ffprobe(self) -> str:
        path = self.settings.resolve_ffprobe()
        if not path:
            raise ToolFailureError("ffprobe binary not found")
        return path

    def _ffmpeg(self) -> str:
        path = self.settings.resolve_ffmpeg()
        if not path:
            raise ToolFailureError("ffmpeg binary not found")
        return path

    async def probe(self, path: Union[str, Path]) -> VideoProbe:
        argv = [
            self._ffprobe(),
            "-v", "error",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(path),
        ]
        result = await self.runner.run(argv)
        if not result.ok:
            raise ToolFailureError(f"Unable to probe video: {result.describe()}")
        try:
            payload = json.loads(result.stdout) if result.stdout else {}
        except json.JSONDecodeError as exc:
            raise ToolFailureError("ffprobe returned malformed JSON") from exc
        return summarize_probe(payload)

    async def ffmpeg(self, args: Sequence[str]) -> ToolResult:
        result = await self.runner.run([self._ffmpeg(), *[str(arg) for arg in args]])
        if not result.ok:
            logger.debug("ffmpeg.failed returncode=%s", result.returncode)
        return result
