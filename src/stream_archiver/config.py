"""Configuration management for the stream archiver."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, TypeVar

MIB = 1024**2
GIB = 1024**3

SECRET_ENV = "ARCHIVER_TRANSCODER_SECRET"
RECORDINGS_DIR_ENV = "ARCHIVER_RECORDINGS_DIR"
QUARANTINE_DIR_ENV = "ARCHIVER_QUARANTINE_DIR"


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def _require_number(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be numeric")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(number):
        raise ValueError(f"{name} must be finite")
    return number


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """Where live streams are read from and where captures are written."""

    recordings_dir: str = "/archives/rec"
    input_url_template: str = "rtmp://nginx-server/live/{source}"
    archive_dir: str = "/archives"
    ffmpeg_path: str = "ffmpeg"

    def __post_init__(self) -> None:
        object.__setattr__(self, "recordings_dir", _require_text(self.recordings_dir, "recordings_dir"))
        template = _require_text(self.input_url_template, "input_url_template")
        if "{source}" not in template:
            raise ValueError("input_url_template must contain a {source} placeholder")
        object.__setattr__(self, "input_url_template", template)
        object.__setattr__(self, "archive_dir", _require_text(self.archive_dir, "archive_dir"))
        object.__setattr__(self, "ffmpeg_path", _require_text(self.ffmpeg_path, "ffmpeg_path"))

    def input_url(self, source: str) -> str:
        return self.input_url_template.format(source=source)

    def to_dict(self) -> dict[str, str]:
        return {
            "recordings_dir": self.recordings_dir,
            "input_url_template": self.input_url_template,
            "archive_dir": self.archive_dir,
            "ffmpeg_path": self.ffmpeg_path,
        }


@dataclass(frozen=True, slots=True)
class ValidationLimits:
    """Bounds a finished capture must satisfy before it is processed."""

    min_size_bytes: int = 10 * MIB
    max_size_bytes: int = 6 * GIB
    min_duration_seconds: float = 30.0
    max_duration_seconds: float = 6 * 60 * 60.0
    ffprobe_path: str = "ffprobe"

    def __post_init__(self) -> None:
        min_size = int(_require_number(self.min_size_bytes, "min_size_bytes"))
        max_size = int(_require_number(self.max_size_bytes, "max_size_bytes"))
        if min_size < 0 or max_size <= 0:
            raise ValueError("Size limits must be positive")
        if min_size > max_size:
            raise ValueError("min_size_bytes cannot exceed max_size_bytes")
        min_duration = _require_number(self.min_duration_seconds, "min_duration_seconds")
        max_duration = _require_number(self.max_duration_seconds, "max_duration_seconds")
        if min_duration < 0 or max_duration <= 0:
            raise ValueError("Duration limits must be positive")
        if min_duration > max_duration:
            raise ValueError("min_duration_seconds cannot exceed max_duration_seconds")
        object.__setattr__(self, "min_size_bytes", min_size)
        object.__setattr__(self, "max_size_bytes", max_size)
        object.__setattr__(self, "min_duration_seconds", min_duration)
        object.__setattr__(self, "max_duration_seconds", max_duration)
        object.__setattr__(self, "ffprobe_path", _require_text(self.ffprobe_path, "ffprobe_path"))

    def to_dict(self) -> dict[str, object]:
        return {
            "min_size_bytes": self.min_size_bytes,
            "max_size_bytes": self.max_size_bytes,
            "min_duration_seconds": self.min_duration_seconds,
            "max_duration_seconds": self.max_duration_seconds,
            "ffprobe_path": self.ffprobe_path,
        }


@dataclass(frozen=True, slots=True)
class TranscoderSettings:
    """Connection details for the remote replay transcoding host.

    ``secret`` is only ever supplied through the environment and is never
    written back to the configuration file.
    """

    host: str = "transcoder.internal"
    port: int = 22
    user: str = "transcoder"
    identity_file: str = "creds/ssh-key"
    remote_dir: str = "videos_to_transcode"
    notify_url: str = "https://transcoder.internal/stream"
    retry_status_code: int = 503
    timeout_seconds: float = 30.0
    transfer_timeout_seconds: float = 3600.0
    scp_path: str = "scp"
    secret: str | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        for name in ("host", "user", "identity_file", "remote_dir", "notify_url", "scp_path"):
            object.__setattr__(self, name, _require_text(getattr(self, name), name))
        port = int(_require_number(self.port, "port"))
        if not (0 < port < 65536):
            raise ValueError("port must be between 1 and 65535")
        retry_code = int(_require_number(self.retry_status_code, "retry_status_code"))
        if not (100 <= retry_code <= 599) or 200 <= retry_code < 300:
            raise ValueError("retry_status_code must be a non-2xx HTTP status")
        timeout = _require_number(self.timeout_seconds, "timeout_seconds")
        if timeout <= 0:
            raise ValueError("timeout_seconds must be positive")
        transfer_timeout = _require_number(self.transfer_timeout_seconds, "transfer_timeout_seconds")
        if transfer_timeout < timeout:
            raise ValueError("transfer_timeout_seconds cannot be shorter than timeout_seconds")
        object.__setattr__(self, "port", port)
        object.__setattr__(self, "retry_status_code", retry_code)
        object.__setattr__(self, "timeout_seconds", timeout)
        object.__setattr__(self, "transfer_timeout_seconds", transfer_timeout)
        object.__setattr__(self, "remote_dir", self.remote_dir.rstrip("/") or "/")

    def to_dict(self) -> dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "identity_file": self.identity_file,
            "remote_dir": self.remote_dir,
            "notify_url": self.notify_url,
            "retry_status_code": self.retry_status_code,
            "timeout_seconds": self.timeout_seconds,
            "transfer_timeout_seconds": self.transfer_timeout_seconds,
            "scp_path": self.scp_path,
        }


@dataclass(frozen=True, slots=True)
class ReplaySettings:
    """Retry and quarantine policy for the replay pipeline."""

    max_attempts: int = 3
    retry_delay_seconds: float = 5.0
    quarantine_dir: str = "/archives/quarantine"

    def __post_init__(self) -> None:
        attempts = int(_require_number(self.max_attempts, "max_attempts"))
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        delay = _require_number(self.retry_delay_seconds, "retry_delay_seconds")
        if delay < 0:
            raise ValueError("retry_delay_seconds must not be negative")
        object.__setattr__(self, "max_attempts", attempts)
        object.__setattr__(self, "retry_delay_seconds", delay)
        object.__setattr__(self, "quarantine_dir", _require_text(self.quarantine_dir, "quarantine_dir"))

    def to_dict(self) -> dict[str, object]:
        return {
            "max_attempts": self.max_attempts,
            "retry_delay_seconds": self.retry_delay_seconds,
            "quarantine_dir": self.quarantine_dir,
        }


DEFAULT_CAPTURE_SETTINGS = CaptureSettings()
DEFAULT_VALIDATION_LIMITS = ValidationLimits()
DEFAULT_TRANSCODER_SETTINGS = TranscoderSettings()
DEFAULT_REPLAY_SETTINGS = ReplaySettings()

_SectionT = TypeVar("_SectionT")


def _parse_section(value: Any, *, default: _SectionT) -> _SectionT:
    """Overlay ``value`` onto ``default`` and re-run its validation."""

    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError(f"{type(default).__name__} payload must be an object")
    known = {item.name for item in fields(default)} - {"secret"}
    unknown = sorted(set(value) - known)
    if unknown:
        raise ValueError(f"Unknown {type(default).__name__} fields: {', '.join(unknown)}")
    return replace(default, **dict(value))


class ConfigManager:
    """Stores archiver configuration on disk with thread-safety."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        (
            self._capture,
            self._validation,
            self._transcoder,
            self._replay,
        ) = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(
        self,
    ) -> tuple[CaptureSettings, ValidationLimits, TranscoderSettings, ReplaySettings]:
        if not self._path.exists():
            return (
                DEFAULT_CAPTURE_SETTINGS,
                DEFAULT_VALIDATION_LIMITS,
                DEFAULT_TRANSCODER_SETTINGS,
                DEFAULT_REPLAY_SETTINGS,
            )
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            return (
                _parse_section(payload.get("capture"), default=DEFAULT_CAPTURE_SETTINGS),
                _parse_section(payload.get("validation"), default=DEFAULT_VALIDATION_LIMITS),
                _parse_section(payload.get("transcoder"), default=DEFAULT_TRANSCODER_SETTINGS),
                _parse_section(payload.get("replay"), default=DEFAULT_REPLAY_SETTINGS),
            )
        except (OSError, TypeError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "capture": self._capture.to_dict(),
            "validation": self._validation.to_dict(),
            "transcoder": self._transcoder.to_dict(),
            "replay": self._replay.to_dict(),
        }
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    # ------------------------------------------------------------------
    # Accessors. Environment overrides are applied on read only.
    # ------------------------------------------------------------------
    def get_capture_settings(self) -> CaptureSettings:
        with self._lock:
            settings = self._capture
        override = os.getenv(RECORDINGS_DIR_ENV)
        if override:
            settings = replace(settings, recordings_dir=override)
        return settings

    def set_capture_settings(self, data: Mapping[str, Any]) -> CaptureSettings:
        with self._lock:
            settings = _parse_section(data, default=self._capture)
            self._capture = settings
            self._save()
        return settings

    def get_validation_limits(self) -> ValidationLimits:
        with self._lock:
            return self._validation

    def set_validation_limits(self, data: Mapping[str, Any]) -> ValidationLimits:
        with self._lock:
            limits = _parse_section(data, default=self._validation)
            self._validation = limits
            self._save()
        return limits

    def get_transcoder_settings(self) -> TranscoderSettings:
        with self._lock:
            settings = self._transcoder
        secret = os.getenv(SECRET_ENV)
        if secret:
            settings = replace(settings, secret=secret)
        return settings

    def set_transcoder_settings(self, data: Mapping[str, Any]) -> TranscoderSettings:
        with self._lock:
            settings = _parse_section(data, default=self._transcoder)
            self._transcoder = settings
            self._save()
        return settings

    def get_replay_settings(self) -> ReplaySettings:
        with self._lock:
            settings = self._replay
        override = os.getenv(QUARANTINE_DIR_ENV)
        if override:
            settings = replace(settings, quarantine_dir=override)
        return settings

    def set_replay_settings(self, data: Mapping[str, Any]) -> ReplaySettings:
        with self._lock:
            settings = _parse_section(data, default=self._replay)
            self._replay = settings
            self._save()
        return settings


__all__ = [
    "CaptureSettings",
    "ConfigManager",
    "DEFAULT_CAPTURE_SETTINGS",
    "DEFAULT_REPLAY_SETTINGS",
    "DEFAULT_TRANSCODER_SETTINGS",
    "DEFAULT_VALIDATION_LIMITS",
    "GIB",
    "MIB",
    "QUARANTINE_DIR_ENV",
    "RECORDINGS_DIR_ENV",
    "ReplaySettings",
    "SECRET_ENV",
    "TranscoderSettings",
    "ValidationLimits",
]
