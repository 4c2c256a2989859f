"""FastAPI application wiring the capture registry and replay pipeline."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .archives import ArchiveNotFound, ArchiveStore
from .capture import CaptureLauncher, CaptureLaunchError, FfmpegCaptureLauncher
from .config import ConfigManager
from .event_log import EVENT_CATEGORIES, EventLog
from .notify import TranscoderNotifier
from .pipeline import Acknowledger, ReplayPipeline, Transferer
from .probe import FfprobeMediaProber
from .registry import AlreadyRecording, CaptureRegistry, NotRecording
from .transfer import ScpTransferClient
from .validation import MediaProber, ValidationGate
from .version import APP_VERSION


class CapturePayload(BaseModel):
    source: str = Field(min_length=1, max_length=200)
    label: str = Field(min_length=1, max_length=200)


class ArchivePayload(BaseModel):
    file: str = Field(min_length=1)
    username: str = Field(min_length=1, max_length=200)


# Executable paths and the SSH identity are only read from the config file.
class CaptureSettingsPayload(BaseModel):
    recordings_dir: str | None = None
    input_url_template: str | None = None
    archive_dir: str | None = None


class ValidationLimitsPayload(BaseModel):
    min_size_bytes: int | None = None
    max_size_bytes: int | None = None
    min_duration_seconds: float | None = None
    max_duration_seconds: float | None = None


class TranscoderSettingsPayload(BaseModel):
    host: str | None = None
    port: int | None = None
    user: str | None = None
    remote_dir: str | None = None
    notify_url: str | None = None
    retry_status_code: int | None = None
    timeout_seconds: float | None = None
    transfer_timeout_seconds: float | None = None


class ReplaySettingsPayload(BaseModel):
    max_attempts: int | None = None
    retry_delay_seconds: float | None = None
    quarantine_dir: str | None = None


def _apply_settings(component: object, settings: object) -> None:
    apply = getattr(component, "apply_settings", None)
    if apply is not None:
        apply(settings)


def create_app(
    config_path: Path | str = Path("data/config.json"),
    *,
    launcher: CaptureLauncher | None = None,
    prober: MediaProber | None = None,
    transfer: Transferer | None = None,
    notifier: Acknowledger | None = None,
    event_log: EventLog | None = None,
) -> FastAPI:
    app = FastAPI(title="Stream Archiver", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_path = Path(config_path)
    config_manager = ConfigManager(config_path)
    capture_settings = config_manager.get_capture_settings()
    validation_limits = config_manager.get_validation_limits()
    transcoder_settings = config_manager.get_transcoder_settings()
    replay_settings = config_manager.get_replay_settings()

    if not transcoder_settings.secret:
        logger.warning("No transcoder secret configured; notifications will be unauthenticated")

    if event_log is None:
        event_log = EventLog(config_path.with_name("event_log.jsonl"))
    archive_store = ArchiveStore(
        config_path.with_name("archives.db"),
        root=capture_settings.archive_dir,
        event_log=event_log,
    )

    if launcher is None:
        launcher = FfmpegCaptureLauncher(capture_settings)
    if prober is None:
        prober = FfprobeMediaProber(validation_limits.ffprobe_path)
    if transfer is None:
        transfer = ScpTransferClient(transcoder_settings)
    if notifier is None:
        notifier = TranscoderNotifier(transcoder_settings)

    pipeline = ReplayPipeline(
        gate=ValidationGate(prober, validation_limits),
        transfer=transfer,
        notifier=notifier,
        settings=replay_settings,
        event_log=event_log,
    )
    registry = CaptureRegistry(
        launcher=launcher,
        settings=capture_settings,
        on_complete=pipeline.on_capture_complete,
        event_log=event_log,
    )

    app.state.config_manager = config_manager
    app.state.registry = registry
    app.state.pipeline = pipeline
    app.state.transfer = transfer
    app.state.notifier = notifier
    app.state.archive_store = archive_store
    app.state.event_log = event_log

    @app.on_event("startup")
    async def startup() -> None:
        event_log.record("system", "startup", "Stream archiver starting up.")
        await registry.open()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        event_log.record("system", "shutdown", "Stream archiver shutting down.")
        await registry.aclose()
        close = getattr(notifier, "close", None)
        if close is not None:
            await close()
        event_log.record(
            "system",
            "shutdown_complete",
            "Stream archiver shutdown sequence completed.",
        )

    @app.get("/api/captures")
    async def list_captures() -> dict[str, object]:
        return {
            "captures": [session.to_dict() for session in registry.sessions()],
            "pending_replays": registry.pending_pipelines,
        }

    @app.post("/api/captures/start")
    async def start_capture(payload: CapturePayload) -> dict[str, object]:
        try:
            output_path = await registry.start(payload.source, payload.label)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except AlreadyRecording as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except CaptureLaunchError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"output_path": str(output_path)}

    @app.post("/api/captures/stop")
    async def stop_capture(payload: CapturePayload) -> dict[str, object]:
        try:
            stopped = await registry.stop(payload.source, payload.label)
        except NotRecording as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"stopped": stopped}

    @app.get("/api/replays/quarantine")
    async def list_quarantine() -> dict[str, object]:
        try:
            entries = await asyncio.to_thread(pipeline.list_quarantined)
        except OSError as exc:
            logger.exception("Failed to list quarantined replays")
            raise HTTPException(status_code=500, detail="Unable to list quarantine") from exc
        return {"quarantined": entries}

    def _transcoder_payload() -> dict[str, object]:
        settings = config_manager.get_transcoder_settings()
        payload = settings.to_dict()
        payload["secret_configured"] = bool(settings.secret)
        return payload

    @app.get("/api/settings")
    async def get_settings() -> dict[str, object]:
        return {
            "capture": config_manager.get_capture_settings().to_dict(),
            "validation": config_manager.get_validation_limits().to_dict(),
            "transcoder": _transcoder_payload(),
            "replay": config_manager.get_replay_settings().to_dict(),
        }

    @app.post("/api/settings/capture")
    async def update_capture_settings(payload: CaptureSettingsPayload) -> dict[str, object]:
        data = payload.model_dump(exclude_none=True)
        if not data:
            raise HTTPException(status_code=400, detail="No capture settings provided")
        try:
            config_manager.set_capture_settings(data)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        settings = config_manager.get_capture_settings()
        registry.apply_settings(settings)
        _apply_settings(launcher, settings)
        archive_store.root = settings.archive_dir
        event_log.record("system", "settings_updated", "Capture settings updated.", metadata=data)
        return settings.to_dict()

    @app.post("/api/settings/validation")
    async def update_validation_limits(payload: ValidationLimitsPayload) -> dict[str, object]:
        data = payload.model_dump(exclude_none=True)
        if not data:
            raise HTTPException(status_code=400, detail="No validation limits provided")
        try:
            config_manager.set_validation_limits(data)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        limits = config_manager.get_validation_limits()
        pipeline.gate.apply_limits(limits)
        event_log.record("system", "settings_updated", "Validation limits updated.", metadata=data)
        return limits.to_dict()

    @app.post("/api/settings/transcoder")
    async def update_transcoder_settings(payload: TranscoderSettingsPayload) -> dict[str, object]:
        data = payload.model_dump(exclude_none=True)
        if not data:
            raise HTTPException(status_code=400, detail="No transcoder settings provided")
        try:
            config_manager.set_transcoder_settings(data)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        settings = config_manager.get_transcoder_settings()
        _apply_settings(transfer, settings)
        _apply_settings(notifier, settings)
        event_log.record("system", "settings_updated", "Transcoder settings updated.", metadata=data)
        return _transcoder_payload()

    @app.post("/api/settings/replay")
    async def update_replay_settings(payload: ReplaySettingsPayload) -> dict[str, object]:
        data = payload.model_dump(exclude_none=True)
        if not data:
            raise HTTPException(status_code=400, detail="No replay settings provided")
        try:
            config_manager.set_replay_settings(data)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        settings = config_manager.get_replay_settings()
        pipeline.apply_settings(settings)
        event_log.record("system", "settings_updated", "Replay settings updated.", metadata=data)
        return settings.to_dict()

    @app.get("/api/archives")
    async def list_archives(include_deleted: bool = False) -> dict[str, object]:
        records = await asyncio.to_thread(archive_store.list_archives, include_deleted=include_deleted)
        return {"archives": [record.to_dict() for record in records]}

    @app.post("/api/archives")
    async def register_archive(payload: ArchivePayload) -> dict[str, object]:
        try:
            record = await asyncio.to_thread(archive_store.add_archive, payload.file, payload.username)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return record.to_dict()

    @app.delete("/api/archives/{archive_id}")
    async def delete_archive(archive_id: str) -> dict[str, object]:
        try:
            await asyncio.to_thread(archive_store.get_archive, archive_id)
        except ArchiveNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        result = await asyncio.to_thread(archive_store.delete_archive, archive_id)
        if not result.get("success"):
            raise HTTPException(status_code=409, detail=result.get("message"))
        return result

    @app.get("/api/log")
    async def get_event_log(limit: int = 100, category: str | None = None) -> dict[str, object]:
        if category is not None and category not in EVENT_CATEGORIES:
            raise HTTPException(status_code=400, detail=f"Unknown category {category!r}")
        entries = event_log.tail(limit, category=category)
        return {"entries": [entry.to_dict() for entry in entries]}

    return app


__all__ = [
    "ArchivePayload",
    "CapturePayload",
    "CaptureSettingsPayload",
    "ReplaySettingsPayload",
    "TranscoderSettingsPayload",
    "ValidationLimitsPayload",
    "create_app",
]
