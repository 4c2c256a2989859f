"""Copy finished captures to the replay transcoding host over scp."""
from __future__ import annotations

import asyncio
import logging
import math
from pathlib import Path

from .config import TranscoderSettings

logger = logging.getLogger(__name__)


class TransferFailed(RuntimeError):
    """Raised when a capture could not be copied to the remote host."""


class ScpTransferClient:
    """Upload files with the system ``scp`` binary.

    Authentication relies on a pre-provisioned identity file. ``BatchMode``
    makes scp fail instead of prompting when that key is rejected.
    """

    def __init__(self, settings: TranscoderSettings, *, timeout: float | None = None) -> None:
        self._settings = settings
        self._timeout_override = float(timeout) if timeout is not None else None

    @property
    def timeout(self) -> float:
        if self._timeout_override is not None:
            return self._timeout_override
        return self._settings.transfer_timeout_seconds

    def apply_settings(self, settings: TranscoderSettings) -> None:
        self._settings = settings

    def remote_path(self, remote_name: str) -> str:
        return f"{self._settings.remote_dir}/{remote_name}"

    def build_command(self, local_path: Path, remote_name: str) -> list[str]:
        settings = self._settings
        return [
            settings.scp_path,
            "-q",
            "-i",
            settings.identity_file,
            "-P",
            str(settings.port),
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-o",
            f"ConnectTimeout={math.ceil(settings.timeout_seconds)}",
            str(local_path),
            f"{settings.user}@{settings.host}:{self.remote_path(remote_name)}",
        ]

    async def upload(self, local_path: Path, remote_name: str) -> str:
        command = self.build_command(local_path, remote_name)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TransferFailed(f"scp command unavailable: {exc}") from exc
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), self.timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise TransferFailed(f"scp timed out after {self.timeout:g}s uploading {local_path.name}") from exc
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise TransferFailed(detail or f"scp exited with status {process.returncode}")
        destination = self.remote_path(remote_name)
        logger.info("Transferred %s to %s:%s", local_path.name, self._settings.host, destination)
        return destination


__all__ = ["ScpTransferClient", "TransferFailed"]
