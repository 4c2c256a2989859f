"""ffprobe wrapper used to inspect finished captures."""
from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger(__name__)


class ProbeError(RuntimeError):
    """Raised when a capture file could not be probed."""


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Duration and stream metadata reported by ffprobe."""

    duration_seconds: float
    format_name: str | None = None
    streams: tuple[Mapping[str, Any], ...] = ()

    def _first_stream(self, codec_type: str) -> Mapping[str, Any] | None:
        for stream in self.streams:
            if stream.get("codec_type") == codec_type:
                return stream
        return None

    @property
    def video_stream(self) -> Mapping[str, Any] | None:
        return self._first_stream("video")

    @property
    def audio_stream(self) -> Mapping[str, Any] | None:
        return self._first_stream("audio")


def _coerce_duration(value: object) -> float | None:
    try:
        duration = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(duration) or duration < 0:
        return None
    return duration


def parse_probe_output(raw: bytes | str) -> ProbeResult:
    """Build a :class:`ProbeResult` from ``ffprobe -of json`` output.

    The container duration is preferred. FLV captures cut off mid-stream
    sometimes lack it, in which case the longest stream duration is used.
    """

    try:
        payload = json.loads(raw or "{}")
    except ValueError as exc:
        raise ProbeError("ffprobe returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise ProbeError("ffprobe returned an unexpected payload")
    format_info = payload.get("format")
    if not isinstance(format_info, dict):
        format_info = {}
    streams = tuple(item for item in payload.get("streams") or () if isinstance(item, dict))

    duration = _coerce_duration(format_info.get("duration"))
    if duration is None:
        candidates = [_coerce_duration(stream.get("duration")) for stream in streams]
        known = [value for value in candidates if value is not None]
        duration = max(known) if known else None
    if duration is None:
        raise ProbeError("ffprobe did not report a duration")

    format_name = format_info.get("format_name")
    return ProbeResult(
        duration_seconds=duration,
        format_name=format_name if isinstance(format_name, str) else None,
        streams=streams,
    )


class FfprobeMediaProber:
    """Run ffprobe as a subprocess and parse its JSON report."""

    def __init__(self, ffprobe_path: str = "ffprobe", *, timeout: float = 60.0) -> None:
        self._ffprobe_path = ffprobe_path
        self._timeout = float(timeout)

    def build_command(self, path: Path) -> list[str]:
        return [
            self._ffprobe_path,
            "-v",
            "error",
            "-show_entries",
            "format=duration,format_name,size:stream=codec_type,codec_name,duration",
            "-of",
            "json",
            str(path),
        ]

    async def probe(self, path: Path) -> ProbeResult:
        command = self.build_command(path)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProbeError(f"ffprobe unavailable: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self._timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ProbeError(f"ffprobe timed out after {self._timeout:g}s for {path.name}") from exc
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise ProbeError(detail or f"ffprobe exited with status {process.returncode}")
        result = parse_probe_output(stdout)
        logger.debug("Probed %s: %.1fs", path.name, result.duration_seconds)
        return result


__all__ = ["FfprobeMediaProber", "ProbeError", "ProbeResult", "parse_probe_output"]
