"""Replay artifacts and the outcomes a pipeline attempt can produce."""
from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

_HASH_CHUNK_BYTES = 1024 * 1024


class PipelineOutcome(str, Enum):
    """Result of one complete pipeline attempt."""

    SUCCEEDED = "succeeded"
    RETRYABLE_FAILURE = "retryable-failure"
    FATAL_FAILURE = "fatal-failure"


class ArtifactState(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    TRANSFERRING = "transferring"
    ACKNOWLEDGING = "acknowledging"
    SUCCEEDED = "succeeded"
    DELETED = "deleted"
    QUARANTINED = "quarantined"

    @property
    def terminal(self) -> bool:
        return self in (ArtifactState.DELETED, ArtifactState.QUARANTINED)


def hash_file(path: Path) -> str:
    """Return the SHA-256 hex digest of ``path``."""

    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_HASH_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(slots=True)
class ReplayArtifact:
    """A completed capture file awaiting replay processing."""

    file_path: Path
    source: str
    label: str
    file_size_bytes: int | None = None
    duration_seconds: float | None = None
    content_hash: str | None = None
    attempt_count: int = 0
    state: ArtifactState = ArtifactState.PENDING
    last_error: str | None = None

    def __post_init__(self) -> None:
        self.file_path = Path(self.file_path)

    @property
    def file_name(self) -> str:
        return self.file_path.name

    async def ensure_content_hash(self) -> str:
        # The file is not modified between attempts so the digest is reused.
        if self.content_hash is None:
            self.content_hash = await asyncio.to_thread(hash_file, self.file_path)
        return self.content_hash

    def to_dict(self) -> dict[str, object]:
        return {
            "file_path": str(self.file_path),
            "file_name": self.file_name,
            "source": self.source,
            "label": self.label,
            "file_size_bytes": self.file_size_bytes,
            "duration_seconds": self.duration_seconds,
            "content_hash": self.content_hash,
            "attempt_count": self.attempt_count,
            "state": self.state.value,
            "last_error": self.last_error,
        }


__all__ = ["ArtifactState", "PipelineOutcome", "ReplayArtifact", "hash_file"]
