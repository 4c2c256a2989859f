"""Launching and supervising the external ffmpeg capture processes."""
from __future__ import annotations

import asyncio
import logging
import signal
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from .config import CaptureSettings

logger = logging.getLogger(__name__)


class CaptureLaunchError(RuntimeError):
    """Raised when the capture process could not be spawned."""


class CaptureEventKind(str, Enum):
    STARTED = "started"
    ENDED = "ended"
    ERRORED = "errored"


class TerminationReason(str, Enum):
    """Why a capture process exited.

    Only ``NORMAL`` captures are considered complete enough to process.
    """

    NORMAL = "normal"
    ABNORMAL = "abnormal"


@dataclass(frozen=True, slots=True)
class CaptureEvent:
    session_key: str
    kind: CaptureEventKind
    termination: TerminationReason | None = None
    return_code: int | None = None
    detail: str | None = None

    @classmethod
    def started(cls, session_key: str) -> "CaptureEvent":
        return cls(session_key=session_key, kind=CaptureEventKind.STARTED)

    @classmethod
    def ended(cls, session_key: str, return_code: int | None = 0) -> "CaptureEvent":
        return cls(
            session_key=session_key,
            kind=CaptureEventKind.ENDED,
            termination=TerminationReason.NORMAL,
            return_code=return_code,
        )

    @classmethod
    def errored(
        cls, session_key: str, detail: str | None = None, return_code: int | None = None
    ) -> "CaptureEvent":
        return cls(
            session_key=session_key,
            kind=CaptureEventKind.ERRORED,
            termination=TerminationReason.ABNORMAL,
            return_code=return_code,
            detail=detail,
        )


class CaptureProcess(Protocol):
    """Handle on a running capture owned by the registry."""

    def kill(self) -> None:  # pragma: no cover - protocol
        ...

    async def wait(self) -> None:  # pragma: no cover - protocol
        ...


class CaptureLauncher(Protocol):
    async def launch(
        self,
        session_key: str,
        source: str,
        output_path: Path,
        events: asyncio.Queue[CaptureEvent],
    ) -> CaptureProcess:  # pragma: no cover - protocol
        ...


class FfmpegCaptureProcess:
    """Watch an ffmpeg subprocess and publish its termination on ``events``."""

    _STDERR_TAIL = 20

    def __init__(
        self,
        session_key: str,
        process: asyncio.subprocess.Process,
        events: asyncio.Queue[CaptureEvent],
    ) -> None:
        self.session_key = session_key
        self._process = process
        self._events = events
        self._killed = False
        self._stderr_tail: deque[str] = deque(maxlen=self._STDERR_TAIL)
        self._watch_task = asyncio.create_task(self._watch(), name=f"capture:{session_key}")

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def killed(self) -> bool:
        return self._killed

    def kill(self) -> None:
        # An exit that already happened keeps its own termination reason.
        if self._process.returncode is not None:
            return
        try:
            self._process.send_signal(signal.SIGKILL)
        except ProcessLookupError:
            return
        self._killed = True

    async def wait(self) -> None:
        await asyncio.shield(self._watch_task)

    async def _drain_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            return
        async for raw_line in stream:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                self._stderr_tail.append(line)

    async def _watch(self) -> None:
        try:
            await self._drain_stderr()
            return_code = await self._process.wait()
        except Exception as exc:  # pragma: no cover - event loop teardown
            logger.exception("Lost track of capture process %s", self.session_key)
            self._events.put_nowait(CaptureEvent.errored(self.session_key, detail=str(exc)))
            return
        # A signal delivered after ffmpeg exited cleanly does not change its status.
        if return_code == 0:
            event = CaptureEvent.ended(self.session_key, return_code)
        elif self._killed or return_code == -signal.SIGKILL:
            event = CaptureEvent.errored(self.session_key, detail="killed", return_code=return_code)
        else:
            detail = "\n".join(self._stderr_tail) or f"ffmpeg exited with status {return_code}"
            event = CaptureEvent.errored(self.session_key, detail=detail, return_code=return_code)
        self._events.put_nowait(event)


class FfmpegCaptureLauncher:
    """Start ``ffmpeg`` copying a live stream into a local FLV file."""

    def __init__(self, settings: CaptureSettings) -> None:
        self._settings = settings

    def apply_settings(self, settings: CaptureSettings) -> None:
        self._settings = settings

    def build_command(self, source: str, output_path: Path) -> list[str]:
        return [
            self._settings.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-loglevel",
            "error",
            "-err_detect",
            "ignore_err",
            "-ignore_unknown",
            "-fflags",
            "nobuffer+genpts+igndts",
            "-i",
            self._settings.input_url(source),
            "-c",
            "copy",
            str(output_path),
        ]

    async def launch(
        self,
        session_key: str,
        source: str,
        output_path: Path,
        events: asyncio.Queue[CaptureEvent],
    ) -> FfmpegCaptureProcess:
        command = self.build_command(source, output_path)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CaptureLaunchError(f"Unable to start capture for {source}: {exc}") from exc
        logger.info("Capture command for %s: %s", session_key, " ".join(command))
        # Published before the watcher exists so STARTED always precedes termination.
        events.put_nowait(CaptureEvent.started(session_key))
        return FfmpegCaptureProcess(session_key, process, events)


__all__ = [
    "CaptureEvent",
    "CaptureEventKind",
    "CaptureLaunchError",
    "CaptureLauncher",
    "CaptureProcess",
    "FfmpegCaptureLauncher",
    "FfmpegCaptureProcess",
    "TerminationReason",
]
