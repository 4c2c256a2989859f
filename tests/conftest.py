from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Iterable

import pytest

from stream_archiver.capture import CaptureEvent, CaptureLaunchError
from stream_archiver.config import MIB, QUARANTINE_DIR_ENV, RECORDINGS_DIR_ENV, SECRET_ENV
from stream_archiver.notify import AcknowledgeResponse, AcknowledgeTransportFailed, interpret_status
from stream_archiver.probe import ProbeError, ProbeResult
from stream_archiver.transfer import TransferFailed


def make_capture_file(path: Path, size_bytes: int) -> Path:
    """Create a sparse file of ``size_bytes`` without writing the data."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as handle:
        handle.truncate(size_bytes)
    return path


class StubProber:
    def __init__(self, duration: float = 120.0, *, errors: Iterable[str] = ()) -> None:
        self.duration = duration
        self._errors = list(errors)
        self.calls: list[Path] = []

    async def probe(self, path: Path) -> ProbeResult:
        self.calls.append(path)
        if self._errors:
            raise ProbeError(self._errors.pop(0))
        return ProbeResult(duration_seconds=self.duration, format_name="flv")


class ScriptedTransfer:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.uploads: list[tuple[Path, str]] = []

    async def upload(self, local_path: Path, remote_name: str) -> str:
        self.uploads.append((local_path, remote_name))
        if self.failures > 0:
            self.failures -= 1
            raise TransferFailed("Connection reset by peer")
        return f"videos_to_transcode/{remote_name}"


class ScriptedNotifier:
    def __init__(
        self,
        statuses: Iterable[int] = (200,),
        *,
        retry_status_code: int = 503,
        transport_error: bool = False,
    ) -> None:
        self._statuses = list(statuses)
        self._retry_status_code = retry_status_code
        self._transport_error = transport_error
        self.calls: list[tuple[str, str, str]] = []
        self.closed = False

    async def notify_new_replay(
        self, file_name: str, source: str, content_hash: str
    ) -> AcknowledgeResponse:
        self.calls.append((file_name, source, content_hash))
        if self._transport_error:
            raise AcknowledgeTransportFailed("Unable to reach transcoder: connection refused")
        index = min(len(self.calls) - 1, len(self._statuses) - 1)
        status = self._statuses[index]
        error = None if 200 <= status < 300 else {"error": f"status {status}"}
        return interpret_status(status, self._retry_status_code, error)

    async def close(self) -> None:
        self.closed = True


class FakeCaptureProcess:
    def __init__(self, session_key: str, output_path: Path, events: asyncio.Queue[CaptureEvent]) -> None:
        self.session_key = session_key
        self.output_path = output_path
        self.killed = False
        self._events = events
        self._done = asyncio.Event()

    def kill(self) -> None:
        if self._done.is_set():
            return
        self.killed = True
        self._finish(CaptureEvent.errored(self.session_key, detail="killed", return_code=-9))

    def finish(self) -> None:
        self._finish(CaptureEvent.ended(self.session_key))

    def crash(self, detail: str = "rtmp://nginx-server/live/alice: Connection refused") -> None:
        self._finish(CaptureEvent.errored(self.session_key, detail=detail, return_code=1))

    def _finish(self, event: CaptureEvent) -> None:
        self._done.set()
        self._events.put_nowait(event)

    async def wait(self) -> None:
        await self._done.wait()


class FakeLauncher:
    def __init__(self, *, fail: bool = False, capture_size: int | None = None) -> None:
        self.fail = fail
        self.capture_size = capture_size
        self.launches: list[tuple[str, str, Path]] = []
        self.processes: dict[str, FakeCaptureProcess] = {}

    async def launch(
        self,
        session_key: str,
        source: str,
        output_path: Path,
        events: asyncio.Queue[CaptureEvent],
    ) -> FakeCaptureProcess:
        self.launches.append((session_key, source, output_path))
        await asyncio.sleep(0)
        if self.fail:
            raise CaptureLaunchError(f"Unable to start capture for {source}: ffmpeg not found")
        if self.capture_size is not None:
            make_capture_file(output_path, self.capture_size)
        events.put_nowait(CaptureEvent.started(session_key))
        process = FakeCaptureProcess(session_key, output_path, events)
        self.processes[session_key] = process
        return process


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (SECRET_ENV, RECORDINGS_DIR_ENV, QUARANTINE_DIR_ENV):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def replay_file(tmp_path: Path) -> Path:
    return make_capture_file(tmp_path / "rec" / "alice_live_1700000000500.flv", 50 * MIB)
