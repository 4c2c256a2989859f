"""Replay processing pipeline: validate, transfer, acknowledge, clean up."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Protocol

from .artifacts import ArtifactState, PipelineOutcome, ReplayArtifact
from .config import ReplaySettings
from .event_log import EventLog
from .notify import AcknowledgeResponse, AcknowledgeTransportFailed, AckVerdict
from .transfer import TransferFailed
from .validation import ValidationGate

logger = logging.getLogger(__name__)


class Transferer(Protocol):
    async def upload(self, local_path: Path, remote_name: str) -> str:  # pragma: no cover - protocol
        ...


class Acknowledger(Protocol):
    async def notify_new_replay(
        self, file_name: str, source: str, content_hash: str
    ) -> AcknowledgeResponse:  # pragma: no cover - protocol
        ...


@dataclass(slots=True)
class PipelineReport:
    """Summary of one ``on_capture_complete`` run."""

    file_name: str
    state: ArtifactState
    attempts: int
    outcome: PipelineOutcome
    reason: str | None = None
    final_path: Path | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "file_name": self.file_name,
            "state": self.state.value,
            "attempts": self.attempts,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "final_path": str(self.final_path) if self.final_path is not None else None,
            "error": self.error,
        }


def _quarantine_target(directory: Path, name: str) -> Path:
    target = directory / name
    if not target.exists():
        return target
    stem, suffix = Path(name).stem, Path(name).suffix
    index = 1
    while True:
        candidate = directory / f"{stem}.{index}{suffix}"
        if not candidate.exists():
            return candidate
        index += 1


class ReplayPipeline:
    """Drive a completed capture to either deletion or quarantine.

    Every attempt re-runs all stages against the same local file. The local
    file is only deleted after the transcoder acknowledged it, and is moved
    aside rather than deleted on any terminal failure.
    """

    def __init__(
        self,
        *,
        gate: ValidationGate,
        transfer: Transferer,
        notifier: Acknowledger,
        settings: ReplaySettings | None = None,
        event_log: EventLog | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._gate = gate
        self._transfer = transfer
        self._notifier = notifier
        self._settings = settings if settings is not None else ReplaySettings()
        self._event_log = event_log
        self._sleep = sleep

    @property
    def settings(self) -> ReplaySettings:
        return self._settings

    @property
    def quarantine_dir(self) -> Path:
        return Path(self._settings.quarantine_dir)

    @property
    def gate(self) -> ValidationGate:
        return self._gate

    def apply_settings(self, settings: ReplaySettings) -> None:
        """Use ``settings`` for replays that start after this call."""

        self._settings = settings

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------
    async def run_once(self, artifact: ReplayArtifact) -> PipelineOutcome:
        """Run validation, transfer and acknowledgment once.

        :class:`AcknowledgeTransportFailed` is deliberately not converted into
        an outcome; the caller aborts the retry loop when it escapes.
        """

        name = artifact.file_name

        artifact.state = ArtifactState.VALIDATING
        verdict = await self._gate.validate(artifact)
        if not verdict.accepted:
            artifact.last_error = verdict.reason
            if verdict.permanent:
                logger.warning("[%s] Rejected: %s", name, verdict.reason)
                return PipelineOutcome.FATAL_FAILURE
            return PipelineOutcome.RETRYABLE_FAILURE

        artifact.state = ArtifactState.TRANSFERRING
        logger.info("[%s] Transferring to replay transcode server...", name)
        try:
            await self._transfer.upload(artifact.file_path, name)
        except TransferFailed as exc:
            logger.warning("[%s] Transfer failed: %s", name, exc)
            artifact.last_error = f"Transfer failed: {exc}"
            return PipelineOutcome.RETRYABLE_FAILURE

        artifact.state = ArtifactState.ACKNOWLEDGING
        logger.info("[%s] Notifying replay transcode server...", name)
        try:
            content_hash = await artifact.ensure_content_hash()
        except OSError as exc:
            logger.warning("[%s] Unable to hash replay: %s", name, exc)
            artifact.last_error = f"Unable to hash replay: {exc}"
            return PipelineOutcome.RETRYABLE_FAILURE
        response = await self._notifier.notify_new_replay(name, artifact.source, content_hash)
        if response.verdict is AckVerdict.ACCEPTED:
            artifact.state = ArtifactState.SUCCEEDED
            artifact.last_error = None
            return PipelineOutcome.SUCCEEDED
        if response.verdict is AckVerdict.RETRY:
            logger.info("[%s] Transcoder asked for a retry (HTTP %s)", name, response.status_code)
            artifact.last_error = f"Transcoder not ready (HTTP {response.status_code})"
            return PipelineOutcome.RETRYABLE_FAILURE
        detail = f": {response.error}" if response.error else ""
        logger.error("[%s] Transcoder rejected replay (HTTP %s)%s", name, response.status_code, detail)
        artifact.last_error = f"Transcoder rejected replay (HTTP {response.status_code}){detail}"
        return PipelineOutcome.FATAL_FAILURE

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------
    async def on_capture_complete(self, artifact: ReplayArtifact) -> PipelineReport:
        name = artifact.file_name
        max_attempts = self._settings.max_attempts
        if artifact.state.terminal:
            raise ValueError(f"Replay {name} already finished as {artifact.state.value}")
        logger.info("[%s] Replay for %s saved to %s", artifact.label, artifact.source, artifact.file_path)

        outcome = PipelineOutcome.FATAL_FAILURE
        while artifact.attempt_count < max_attempts:
            artifact.attempt_count += 1
            try:
                outcome = await self.run_once(artifact)
            except AcknowledgeTransportFailed as exc:
                logger.error("[%s] Transcoder unreachable, not retrying: %s", name, exc)
                artifact.last_error = str(exc)
                outcome = PipelineOutcome.FATAL_FAILURE
                break
            if outcome is PipelineOutcome.SUCCEEDED:
                return await self._finish_success(artifact)
            if outcome is PipelineOutcome.FATAL_FAILURE:
                break
            if artifact.attempt_count >= max_attempts:
                logger.warning("[%s] Giving up after %d attempts", name, artifact.attempt_count)
                break
            logger.warning(
                "[%s] Attempt %d/%d failed: %s",
                name,
                artifact.attempt_count,
                max_attempts,
                artifact.last_error,
            )
            if self._settings.retry_delay_seconds > 0:
                await self._sleep(self._settings.retry_delay_seconds)
        return await self._quarantine(artifact, outcome)

    async def _finish_success(self, artifact: ReplayArtifact) -> PipelineReport:
        name = artifact.file_name
        report = PipelineReport(
            file_name=name,
            state=ArtifactState.SUCCEEDED,
            attempts=artifact.attempt_count,
            outcome=PipelineOutcome.SUCCEEDED,
        )
        logger.info("[%s] %s will now be deleted...", name, artifact.file_path)
        try:
            await asyncio.to_thread(artifact.file_path.unlink)
        except FileNotFoundError:
            logger.warning("[%s] Source file already removed", name)
        except OSError as exc:
            logger.exception("[%s] Replay source delete failed", name)
            report.error = str(exc)
            self._record("delete_failed", f"Replay {name} acknowledged but not deleted: {exc}", artifact)
            return report
        artifact.state = ArtifactState.DELETED
        report.state = ArtifactState.DELETED
        logger.info("[%s] Replay processing complete!", name)
        self._record("succeeded", f"Replay {name} processed after {artifact.attempt_count} attempt(s).", artifact)
        return report

    async def _quarantine(self, artifact: ReplayArtifact, outcome: PipelineOutcome) -> PipelineReport:
        name = artifact.file_name
        report = PipelineReport(
            file_name=name,
            state=artifact.state,
            attempts=artifact.attempt_count,
            outcome=outcome,
            reason=artifact.last_error,
        )
        directory = self.quarantine_dir
        try:
            if not await asyncio.to_thread(artifact.file_path.exists):
                logger.error("[%s] Nothing to quarantine, file is missing", name)
                artifact.state = ArtifactState.QUARANTINED
                report.state = ArtifactState.QUARANTINED
                self._record("quarantined", f"Replay {name} failed and its file is missing.", artifact)
                return report
            await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
            target = _quarantine_target(directory, name)
            moved = await asyncio.to_thread(shutil.move, str(artifact.file_path), str(target))
        except OSError as exc:
            logger.exception("[%s] Failed to move replay into quarantine", name)
            report.error = str(exc)
            self._record("quarantine_failed", f"Replay {name} could not be quarantined: {exc}", artifact)
            return report
        artifact.state = ArtifactState.QUARANTINED
        report.state = ArtifactState.QUARANTINED
        report.final_path = Path(moved)
        logger.error(
            "[%s] Quarantined after %d attempt(s): %s",
            name,
            artifact.attempt_count,
            artifact.last_error,
        )
        self._record("quarantined", f"Replay {name} moved to quarantine.", artifact, path=str(moved))
        return report

    def _record(self, event: str, message: str, artifact: ReplayArtifact, **extra: object) -> None:
        if self._event_log is None:
            return
        metadata: dict[str, object | None] = {
            "file": artifact.file_name,
            "source": artifact.source,
            "label": artifact.label,
            "attempts": artifact.attempt_count,
            "reason": artifact.last_error,
        }
        metadata.update(extra)
        self._event_log.record("replay", event, message, metadata=metadata)

    # ------------------------------------------------------------------
    # Quarantine inspection
    # ------------------------------------------------------------------
    def list_quarantined(self) -> list[dict[str, object]]:
        directory = self.quarantine_dir
        if not directory.is_dir():
            return []
        entries: list[dict[str, object]] = []
        for path in sorted(directory.iterdir()):
            if not path.is_file():
                continue
            stat = path.stat()
            entries.append(
                {
                    "name": path.name,
                    "size_bytes": stat.st_size,
                    "modified_at": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                }
            )
        return entries


__all__ = ["Acknowledger", "PipelineReport", "ReplayPipeline", "Transferer"]
