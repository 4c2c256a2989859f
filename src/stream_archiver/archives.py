"""Index of archived replays and deletion by archive id."""
from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock

from .event_log import EventLog

logger = logging.getLogger(__name__)


class ArchiveNotFound(LookupError):
    """Raised when an archive id is not present in the index."""


@dataclass(slots=True)
class ArchiveRecord:
    id: str
    file: str
    username: str
    deleted: bool
    created_at: datetime

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload


class ArchiveStore:
    """SQLite backed record of archive files and their deleted flag."""

    def __init__(
        self,
        db_path: Path | str = Path("data/archives.db"),
        *,
        root: Path | str | None = None,
        event_log: EventLog | None = None,
    ) -> None:
        self._db_path = Path(db_path)
        self._root = Path(root) if root is not None else None
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._event_log = event_log
        self._mutex = RLock()
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def root(self) -> Path | None:
        """Directory every indexed archive must live under, if restricted."""

        return self._root

    @root.setter
    def root(self, value: Path | str | None) -> None:
        self._root = Path(value) if value is not None else None

    def _check_within_root(self, path: Path) -> None:
        if self._root is None:
            return
        if not path.resolve().is_relative_to(self._root.resolve()):
            raise ValueError(f"{path} is outside the archive directory {self._root}")

    def add_archive(self, file: Path | str, username: str) -> ArchiveRecord:
        path = Path(file)
        if not username.strip():
            raise ValueError("username is required")
        self._check_within_root(path)
        if self._root is not None and not path.is_file():
            raise ValueError(f"archive file not found: {path}")
        record = ArchiveRecord(
            id=uuid.uuid4().hex,
            file=str(path),
            username=username,
            deleted=False,
            created_at=datetime.now(timezone.utc),
        )
        with self._mutex:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO archives (id, file, username, deleted, created_at) VALUES (?, ?, ?, 0, ?)",
                    (record.id, record.file, record.username, record.created_at.isoformat()),
                )
                conn.commit()
        logger.info("Registered archive %s for %s: %s", record.id, username, record.file)
        if self._event_log is not None:
            self._event_log.record(
                "archive",
                "registered",
                f"Archive {record.id} registered.",
                metadata={"username": username, "file": record.file},
            )
        return record

    def get_archive(self, archive_id: str) -> ArchiveRecord:
        with self._mutex:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, file, username, deleted, created_at FROM archives WHERE id = ?",
                    (str(archive_id),),
                ).fetchone()
        if row is None:
            raise ArchiveNotFound(f"archive not found: {archive_id}")
        return self._row_to_record(row)

    def list_archives(self, *, include_deleted: bool = False) -> list[ArchiveRecord]:
        query = "SELECT id, file, username, deleted, created_at FROM archives"
        if not include_deleted:
            query += " WHERE deleted = 0"
        query += " ORDER BY created_at DESC"
        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(query).fetchall()
        return [self._row_to_record(row) for row in rows]

    def delete_archive(self, archive_id: str) -> dict[str, object]:
        """Remove an archive's file and flag its record as deleted.

        Failures are reported in the returned payload rather than raised.
        """

        try:
            with self._mutex:
                record = self.get_archive(archive_id)
                if record.deleted:
                    raise ValueError(f"archive already deleted: {archive_id}")
                self._check_within_root(Path(record.file))
                Path(record.file).unlink()
                logger.info("%s's archive deleted: %s", record.username, archive_id)
                with self._connect() as conn:
                    conn.execute("UPDATE archives SET deleted = 1 WHERE id = ?", (record.id,))
                    conn.commit()
        except (ArchiveNotFound, ValueError, OSError, sqlite3.Error) as exc:
            logger.warning("Failed to delete archive %s: %s", archive_id, exc)
            return {"success": False, "message": str(exc)}
        if self._event_log is not None:
            self._event_log.record(
                "archive",
                "deleted",
                f"Archive {archive_id} deleted.",
                metadata={"username": record.username, "file": record.file},
            )
        return {"success": True, "message": f"archive deleted: {archive_id}"}

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS archives (
                    id TEXT PRIMARY KEY,
                    file TEXT NOT NULL,
                    username TEXT NOT NULL,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_archives_username ON archives(username)")

    def _row_to_record(self, row: sqlite3.Row) -> ArchiveRecord:
        return ArchiveRecord(
            id=str(row["id"]),
            file=str(row["file"]),
            username=str(row["username"]),
            deleted=bool(row["deleted"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )


__all__ = ["ArchiveNotFound", "ArchiveRecord", "ArchiveStore"]
