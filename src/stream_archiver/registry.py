"""Registry of live capture sessions and the hand-off to replay processing."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable

from .artifacts import ReplayArtifact
from .capture import (
    CaptureEvent,
    CaptureEventKind,
    CaptureLauncher,
    CaptureLaunchError,
    CaptureProcess,
    TerminationReason,
)
from .config import CaptureSettings
from .event_log import EventLog

logger = logging.getLogger(__name__)

CompletionHandler = Callable[[ReplayArtifact], Awaitable[object]]

_FORBIDDEN_IDENTITY_CHARS = frozenset("/\\\0")


class AlreadyRecording(RuntimeError):
    """Raised when a capture with the same session key is already live."""


class NotRecording(RuntimeError):
    """Raised when stopping a capture that is not running."""


def make_session_key(source: str, label: str) -> str:
    return f"{source}-{label}".lower()


def _check_identity(value: str, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    value = value.strip()
    if value in {".", ".."} or any(char in _FORBIDDEN_IDENTITY_CHARS for char in value):
        raise ValueError(f"{name} contains characters not allowed in a file name")
    return value


@dataclass(slots=True)
class CaptureSession:
    session_key: str
    source: str
    label: str
    output_path: Path
    started_at: datetime
    process: CaptureProcess | None = None
    confirmed: bool = field(default=False)

    def to_dict(self) -> dict[str, object]:
        return {
            "session_key": self.session_key,
            "source": self.source,
            "label": self.label,
            "output_path": str(self.output_path),
            "started_at": self.started_at.isoformat(),
            "running": self.confirmed,
        }


class CaptureRegistry:
    """Own the live capture sessions, at most one per session key.

    Process lifecycle events arrive on an internal queue and are applied by a
    single consumer task, so sessions are only ever removed in one place.
    """

    def __init__(
        self,
        *,
        launcher: CaptureLauncher,
        settings: CaptureSettings | None = None,
        on_complete: CompletionHandler | None = None,
        event_log: EventLog | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._launcher = launcher
        self._settings = settings if settings is not None else CaptureSettings()
        self._on_complete = on_complete
        self._event_log = event_log
        self._clock = clock
        self._sessions: dict[str, CaptureSession] = {}
        self._lock = asyncio.Lock()
        self._events: asyncio.Queue[CaptureEvent] = asyncio.Queue()
        self._event_task: asyncio.Task[None] | None = None
        self._pipeline_tasks: set[asyncio.Task[object]] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def sessions(self) -> list[CaptureSession]:
        return sorted(self._sessions.values(), key=lambda session: session.started_at)

    def is_recording(self, source: str, label: str) -> bool:
        return make_session_key(source, label) in self._sessions

    @property
    def pending_pipelines(self) -> int:
        return sum(1 for task in self._pipeline_tasks if not task.done())

    def apply_settings(self, settings: CaptureSettings) -> None:
        self._settings = settings

    def output_path_for(self, source: str, label: str) -> Path:
        millis = int(self._clock() * 1000)
        return Path(self._settings.recordings_dir) / f"{source}_{label}_{millis}.flv"

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------
    async def start(self, source: str, label: str) -> Path:
        source = _check_identity(source, "source")
        label = _check_identity(label, "label")
        self._ensure_consumer()
        key = make_session_key(source, label)
        async with self._lock:
            if key in self._sessions:
                logger.info("%s is already being recorded.", key)
                raise AlreadyRecording(f"{key} is already being recorded")
            output_path = self.output_path_for(source, label)
            session = CaptureSession(
                session_key=key,
                source=source,
                label=label,
                output_path=output_path,
                started_at=datetime.now(timezone.utc),
            )
            self._sessions[key] = session
            logger.info("starting recording: %s", key)
            try:
                session.process = await self._launcher.launch(key, source, output_path, self._events)
            except CaptureLaunchError as exc:
                self._sessions.pop(key, None)
                logger.error("Failed to start recording %s: %s", key, exc)
                self._record("launch_failed", f"Could not start recording {key}.", session, error=str(exc))
                raise
        self._record("started", f"Recording {key} started.", session)
        return output_path

    async def stop(self, source: str, label: str) -> bool:
        key = make_session_key(source, label)
        async with self._lock:
            session = self._sessions.get(key)
            if session is None or session.process is None:
                logger.info("Not recording: %s", key)
                raise NotRecording(f"{key} is not being recorded")
            # The termination event deregisters the session.
            session.process.kill()
        logger.info("Stopping recording for: %s", key)
        return True

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------
    def _ensure_consumer(self) -> None:
        if self._event_task is None or self._event_task.done():
            self._event_task = asyncio.create_task(self._consume_events(), name="capture-registry-events")

    async def open(self) -> None:
        self._ensure_consumer()

    async def _consume_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._handle_event(event)
            except Exception:  # pragma: no cover - keep consuming
                logger.exception("Failed to handle capture event %s", event)
            finally:
                self._events.task_done()

    async def _handle_event(self, event: CaptureEvent) -> None:
        if event.kind is CaptureEventKind.STARTED:
            async with self._lock:
                session = self._sessions.get(event.session_key)
                if session is not None:
                    session.confirmed = True
            if session is not None:
                logger.info("[%s] Started recording stream: %s", session.label, session.source)
            return

        async with self._lock:
            session = self._sessions.pop(event.session_key, None)
        if session is None:
            logger.warning("Termination event for unknown capture %s", event.session_key)
            return

        if event.termination is TerminationReason.NORMAL:
            logger.info("[%s] Ended stream recording for: %s", session.label, session.source)
            self._record("ended", f"Recording {session.session_key} ended.", session)
            self._dispatch(session)
            return

        if event.detail == "killed":
            logger.warning("%s: Stream recording stopped!", session.source)
            self._record("stopped", f"Recording {session.session_key} stopped.", session)
        else:
            logger.error("%s: Stream recording error! %s", session.source, event.detail or "")
            self._record(
                "errored",
                f"Recording {session.session_key} failed.",
                session,
                error=event.detail,
                return_code=event.return_code,
            )

    def _dispatch(self, session: CaptureSession) -> None:
        if self._on_complete is None:
            return
        artifact = ReplayArtifact(
            file_path=session.output_path,
            source=session.source,
            label=session.label,
        )
        task = asyncio.create_task(
            self._on_complete(artifact), name=f"replay:{session.output_path.name}"
        )
        self._pipeline_tasks.add(task)
        task.add_done_callback(self._pipeline_task_done)

    def _pipeline_task_done(self, task: asyncio.Task[object]) -> None:
        self._pipeline_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Replay processing task %s failed", task.get_name(), exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until queued lifecycle events and dispatched replays are done."""

        await self._events.join()
        while self._pipeline_tasks:
            await asyncio.gather(*list(self._pipeline_tasks), return_exceptions=True)

    async def aclose(self, *, timeout: float = 10.0) -> None:
        async with self._lock:
            processes = [s.process for s in self._sessions.values() if s.process is not None]
            for process in processes:
                process.kill()
        if processes:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(process.wait() for process in processes)), timeout
                )
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for %d capture(s) to exit", len(processes))
        if self._event_task is not None:
            await self.wait_idle()
            self._event_task.cancel()
            try:
                await self._event_task
            except asyncio.CancelledError:
                pass
            self._event_task = None

    def _record(self, event: str, message: str, session: CaptureSession, **extra: object) -> None:
        if self._event_log is None:
            return
        metadata: dict[str, object | None] = {
            "source": session.source,
            "label": session.label,
            "file": session.output_path.name,
        }
        metadata.update(extra)
        self._event_log.record("capture", event, message, metadata=metadata)


__all__ = [
    "AlreadyRecording",
    "CaptureRegistry",
    "CaptureSession",
    "CompletionHandler",
    "NotRecording",
    "make_session_key",
]
