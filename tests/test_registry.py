import asyncio
from pathlib import Path

import pytest

from stream_archiver.artifacts import ArtifactState, ReplayArtifact
from stream_archiver.capture import CaptureLaunchError
from stream_archiver.config import MIB, CaptureSettings, ReplaySettings, ValidationLimits
from stream_archiver.event_log import EventLog
from stream_archiver.pipeline import ReplayPipeline
from stream_archiver.registry import AlreadyRecording, CaptureRegistry, NotRecording, make_session_key
from stream_archiver.validation import ValidationGate

from conftest import FakeLauncher, ScriptedNotifier, ScriptedTransfer, StubProber


def run_async(coro):
    return asyncio.run(coro)


class CompletionRecorder:
    def __init__(self) -> None:
        self.artifacts: list[ReplayArtifact] = []

    async def __call__(self, artifact: ReplayArtifact) -> None:
        self.artifacts.append(artifact)


def _make_registry(tmp_path: Path, launcher: FakeLauncher, **kwargs) -> CaptureRegistry:
    settings = CaptureSettings(recordings_dir=str(tmp_path / "rec"))
    return CaptureRegistry(launcher=launcher, settings=settings, **kwargs)


def test_session_key_is_case_insensitive():
    assert make_session_key("Alice", "Live") == make_session_key("alice", "LIVE") == "alice-live"


def test_start_returns_timestamped_output_path(tmp_path: Path):
    async def _test() -> None:
        launcher = FakeLauncher()
        registry = _make_registry(tmp_path, launcher, clock=lambda: 1700000000.5)
        output_path = await registry.start("alice", "live")
        assert output_path == tmp_path / "rec" / "alice_live_1700000000500.flv"
        assert launcher.launches == [("alice-live", "alice", output_path)]
        assert registry.is_recording("ALICE", "live")
        await registry.aclose()

    run_async(_test())


def test_concurrent_start_for_same_key_launches_once(tmp_path: Path):
    async def _test() -> None:
        launcher = FakeLauncher()
        registry = _make_registry(tmp_path, launcher)
        results = await asyncio.gather(
            registry.start("alice", "live"),
            registry.start("ALICE", "Live"),
            return_exceptions=True,
        )
        started = [result for result in results if isinstance(result, Path)]
        rejected = [result for result in results if isinstance(result, AlreadyRecording)]
        assert len(started) == 1
        assert len(rejected) == 1
        assert len(launcher.launches) == 1
        assert len(registry.sessions()) == 1
        await registry.aclose()

    run_async(_test())


def test_different_labels_record_independently(tmp_path: Path):
    async def _test() -> None:
        launcher = FakeLauncher()
        registry = _make_registry(tmp_path, launcher)
        await registry.start("alice", "live")
        await registry.start("alice", "practice")
        await registry.wait_idle()
        sessions = registry.sessions()
        assert {session.session_key for session in sessions} == {"alice-live", "alice-practice"}
        assert all(session.confirmed for session in sessions)
        await registry.aclose()

    run_async(_test())


def test_stop_unknown_session_raises(tmp_path: Path):
    async def _test() -> None:
        registry = _make_registry(tmp_path, FakeLauncher())
        with pytest.raises(NotRecording):
            await registry.stop("nobody", "live")

    run_async(_test())


def test_stop_kills_process_without_dispatching(tmp_path: Path):
    async def _test() -> None:
        launcher = FakeLauncher()
        completed = CompletionRecorder()
        registry = _make_registry(tmp_path, launcher, on_complete=completed)
        await registry.start("alice", "live")

        assert await registry.stop("Alice", "LIVE") is True
        await registry.wait_idle()

        assert launcher.processes["alice-live"].killed
        assert registry.sessions() == []
        assert completed.artifacts == []

        # The key is free again once the termination was applied.
        await registry.start("alice", "live")
        assert len(launcher.launches) == 2
        await registry.aclose()

    run_async(_test())


def test_normal_termination_dispatches_once(tmp_path: Path):
    async def _test() -> None:
        launcher = FakeLauncher()
        completed = CompletionRecorder()
        registry = _make_registry(tmp_path, launcher, on_complete=completed)
        output_path = await registry.start("alice", "live")

        launcher.processes["alice-live"].finish()
        await registry.wait_idle()

        assert registry.sessions() == []
        assert len(completed.artifacts) == 1
        artifact = completed.artifacts[0]
        assert artifact.file_path == output_path
        assert (artifact.source, artifact.label) == ("alice", "live")
        assert artifact.state is ArtifactState.PENDING
        await registry.aclose()
        assert len(completed.artifacts) == 1

    run_async(_test())


def test_crashed_capture_is_not_dispatched(tmp_path: Path):
    async def _test() -> None:
        launcher = FakeLauncher()
        completed = CompletionRecorder()
        event_log = EventLog(tmp_path / "events.jsonl")
        registry = _make_registry(tmp_path, launcher, on_complete=completed, event_log=event_log)
        await registry.start("alice", "live")

        launcher.processes["alice-live"].crash()
        await registry.wait_idle()

        assert registry.sessions() == []
        assert completed.artifacts == []
        events = [entry.event for entry in event_log.tail(category="capture")]
        assert events == ["started", "errored"]
        await registry.aclose()

    run_async(_test())


def test_launch_failure_does_not_register_session(tmp_path: Path):
    async def _test() -> None:
        launcher = FakeLauncher(fail=True)
        registry = _make_registry(tmp_path, launcher)
        with pytest.raises(CaptureLaunchError):
            await registry.start("alice", "live")
        assert not registry.is_recording("alice", "live")

        launcher.fail = False
        await registry.start("alice", "live")
        assert registry.is_recording("alice", "live")
        await registry.aclose()

    run_async(_test())


@pytest.mark.parametrize("source", ["", "   ", "../etc", "a/b", ".."])
def test_invalid_identity_rejected(tmp_path: Path, source: str):
    async def _test() -> None:
        launcher = FakeLauncher()
        registry = _make_registry(tmp_path, launcher)
        with pytest.raises(ValueError):
            await registry.start(source, "live")
        assert launcher.launches == []

    run_async(_test())


def test_aclose_kills_live_captures(tmp_path: Path):
    async def _test() -> None:
        launcher = FakeLauncher()
        completed = CompletionRecorder()
        registry = _make_registry(tmp_path, launcher, on_complete=completed)
        await registry.start("alice", "live")
        await registry.start("bob", "live")

        await registry.aclose()

        assert all(process.killed for process in launcher.processes.values())
        assert registry.sessions() == []
        assert completed.artifacts == []

    run_async(_test())


def test_completed_capture_flows_through_replay_pipeline(tmp_path: Path):
    async def _test() -> None:
        launcher = FakeLauncher(capture_size=50 * MIB)
        notifier = ScriptedNotifier([200])
        pipeline = ReplayPipeline(
            gate=ValidationGate(StubProber(), ValidationLimits()),
            transfer=ScriptedTransfer(),
            notifier=notifier,
            settings=ReplaySettings(retry_delay_seconds=0, quarantine_dir=str(tmp_path / "quarantine")),
        )
        registry = _make_registry(tmp_path, launcher, on_complete=pipeline.on_capture_complete)
        output_path = await registry.start("alice", "live")
        assert output_path.exists()

        launcher.processes["alice-live"].finish()
        await registry.wait_idle()

        assert not output_path.exists()
        assert [call[0] for call in notifier.calls] == [output_path.name]
        assert registry.pending_pipelines == 0
        await registry.aclose()

    run_async(_test())
