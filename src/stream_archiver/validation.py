"""Eligibility checks run on a finished capture before it leaves the host."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .artifacts import ReplayArtifact
from .config import MIB, ValidationLimits
from .probe import ProbeError, ProbeResult

logger = logging.getLogger(__name__)


class MediaProber(Protocol):
    async def probe(self, path: Path) -> ProbeResult:  # pragma: no cover - protocol
        ...


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Accept, or reject with a reason.

    ``permanent`` rejections can never succeed on retry. Transient ones come
    from a failed probe call and may.
    """

    accepted: bool
    reason: str | None = None
    permanent: bool = False

    @classmethod
    def accept(cls) -> "ValidationResult":
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: str, *, permanent: bool) -> "ValidationResult":
        return cls(accepted=False, reason=reason, permanent=permanent)


def _format_size(size: int) -> str:
    return f"{size / MIB:.1f} MiB"


class ValidationGate:
    def __init__(self, prober: MediaProber, limits: ValidationLimits | None = None) -> None:
        self._prober = prober
        self._limits = limits if limits is not None else ValidationLimits()

    @property
    def limits(self) -> ValidationLimits:
        return self._limits

    def apply_limits(self, limits: ValidationLimits) -> None:
        self._limits = limits

    def check_size(self, size: int) -> ValidationResult:
        limits = self._limits
        if size < limits.min_size_bytes:
            return ValidationResult.reject(
                f"File too small ({_format_size(size)} < {_format_size(limits.min_size_bytes)})",
                permanent=True,
            )
        if size > limits.max_size_bytes:
            return ValidationResult.reject(
                f"File too large ({_format_size(size)} > {_format_size(limits.max_size_bytes)})",
                permanent=True,
            )
        return ValidationResult.accept()

    def check_duration(self, duration: float) -> ValidationResult:
        limits = self._limits
        if duration < limits.min_duration_seconds:
            return ValidationResult.reject(
                f"Replay too short ({duration:.1f}s < {limits.min_duration_seconds:g}s)",
                permanent=True,
            )
        if duration > limits.max_duration_seconds:
            return ValidationResult.reject(
                f"Replay too long ({duration:.1f}s > {limits.max_duration_seconds:g}s)",
                permanent=True,
            )
        return ValidationResult.accept()

    async def validate(self, artifact: ReplayArtifact) -> ValidationResult:
        try:
            size = artifact.file_path.stat().st_size
        except FileNotFoundError:
            return ValidationResult.reject("Capture file is missing", permanent=True)
        except OSError as exc:
            logger.warning("[%s] Unable to stat capture: %s", artifact.file_name, exc)
            return ValidationResult.reject(f"Unable to stat capture: {exc}", permanent=False)
        artifact.file_size_bytes = size
        result = self.check_size(size)
        if not result.accepted:
            return result

        try:
            probe = await self._prober.probe(artifact.file_path)
        except ProbeError as exc:
            logger.warning("[%s] Probe failed: %s", artifact.file_name, exc)
            return ValidationResult.reject(f"Probe failed: {exc}", permanent=False)
        artifact.duration_seconds = probe.duration_seconds
        minutes, seconds = divmod(int(probe.duration_seconds), 60)
        logger.info("[%s] Replay is %d:%02d", artifact.file_name, minutes, seconds)
        return self.check_duration(probe.duration_seconds)


__all__ = ["MediaProber", "ValidationGate", "ValidationResult"]
