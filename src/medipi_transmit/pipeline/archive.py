from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..config import TransmitterConfig
from ..constants import INTERACTION
from ..errors import ArchiveIOError
from ..models import DevicesPayload
from ..utils import format_spine_utc


def archive_filename(instant: Optional[datetime] = None) -> str:
    """<interaction with ':' -> '_'>_at_<spine UTC>.log"""
    return f"{INTERACTION.replace(':', '_')}_at_{format_spine_utc(instant)}.log"


class ArchiveWriter:
    """Writes a plaintext copy of each outbound payload to a local directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    @classmethod
    def from_config(cls, config: TransmitterConfig) -> Optional["ArchiveWriter"]:
        """None when medipi.outboundpayload is absent or blank."""
        if not config.archive_enabled:
            return None
        return cls(Path(config.outbound_payload.strip()))

    def write(self, payload: DevicesPayload, instant: Optional[datetime] = None) -> Path:
        """
        Persist the canonical payload bytes.

        The directory is never created. Existing files are never overwritten.
        A file left half-written by an I/O error is removed before raising.
        """
        if not self.directory.is_dir():
            raise ArchiveIOError(f"Outbound payload directory does not exist: {self.directory}")

        data = payload.to_canonical_bytes()
        path = self.directory / archive_filename(instant)
        try:
            f = path.open("xb")
        except OSError as exc:
            raise ArchiveIOError(f"Cannot create outbound payload file {path}: {exc}") from exc

        try:
            with f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            path.unlink(missing_ok=True)
            raise ArchiveIOError(f"Cannot write outbound payload file {path}: {exc}") from exc
        return path
