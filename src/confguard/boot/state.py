"""Boot-confirmation sentinels.

Three flag files in the state directory drive the boot cycle:

- ``commit-requested``: a staged tree is waiting for the next boot
- ``boot-pending``: the staged tree was applied, the boot is unconfirmed
- ``boot-verified``: the boot stayed up for the dwell time

``pending`` and ``verified`` are never meant to coexist; writers set the new
flag before clearing the old one, so a crash in between leaves ``verified``
visible and the boot guard treats the boot as confirmed.
"""

import os
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from confguard.core.constants import (
    COMMIT_REQUEST_MARKER,
    PENDING_MARKER,
    VERIFIED_MARKER,
)
from confguard.fs.paths import fsync_dir


class BootState(str, Enum):
    NO_PENDING = "no-pending"
    PENDING = "pending"
    VERIFIED = "verified"


class BootMarkers:
    """Reads and writes the sentinel files of one state directory."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.pending = state_dir / PENDING_MARKER
        self.verified = state_dir / VERIFIED_MARKER
        self.commit_request = state_dir / COMMIT_REQUEST_MARKER

    def state(self) -> BootState:
        if self.verified.exists():
            return BootState.VERIFIED
        if self.pending.exists():
            return BootState.PENDING
        return BootState.NO_PENDING

    def commit_requested(self) -> bool:
        return self.commit_request.exists()

    def set(self, marker: Path) -> str:
        """Create ``marker`` with a human-readable timestamp; returns the stamp."""
        stamp = datetime.now(UTC).isoformat()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with open(marker, "w", encoding="utf-8") as fh:
            fh.write(stamp + "\n")
            fh.flush()
            os.fsync(fh.fileno())
        fsync_dir(self.state_dir)
        return stamp

    def clear(self, marker: Path) -> bool:
        """Remove ``marker``; returns True if it existed."""
        try:
            marker.unlink()
        except FileNotFoundError:
            return False
        fsync_dir(self.state_dir)
        return True

    def read(self, marker: Path) -> str | None:
        try:
            return marker.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
