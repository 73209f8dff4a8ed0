"""Run manifest and metadata persistence.

Each run directory holds:
- ``manifest.txt``: append-only TSV, one ``original_path<TAB>backup_path``
  line per backed-up file, fsync'd before the call returns
- ``metadata.json``: ``{"timestamp", "host", "run_id"}``

A backup path of ``-`` records that the original did not exist before the
run; restoring such an entry means deleting the file.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from confguard.core.constants import ABSENT_BACKUP, MANIFEST_NAME, METADATA_NAME
from confguard.utils.debug import debug

_FORBIDDEN = ("\t", "\n", "\r")


@dataclass(frozen=True)
class ManifestEntry:
    """One ``(original_path, backup_path)`` pair of a run manifest."""

    original_path: Path
    backup_path: Path | None

    @property
    def absent(self) -> bool:
        """True if the original did not exist when the run first touched it."""
        return self.backup_path is None

    def to_line(self) -> str:
        backup = ABSENT_BACKUP if self.backup_path is None else str(self.backup_path)
        return f"{self.original_path}\t{backup}\n"

    @classmethod
    def from_line(cls, line: str) -> "ManifestEntry":
        original, sep, backup = line.rstrip("\n").partition("\t")
        if not sep or not original or not backup:
            raise ValueError(f"malformed manifest line: {line!r}")
        return cls(
            original_path=Path(original),
            backup_path=None if backup == ABSENT_BACKUP else Path(backup),
        )


def is_manifest_safe(path: str | Path) -> bool:
    """Return False for paths that cannot be represented in the TSV manifest."""
    text = str(path)
    return not any(ch in text for ch in _FORBIDDEN)


class ManifestWriter:
    """Appends entries to a run manifest with per-line durability.

    The file is opened in append mode, so entries written by an earlier
    process for the same run are preserved.
    """

    def __init__(self, run_dir: Path) -> None:
        self.path = run_dir / MANIFEST_NAME
        self._file: TextIO | None = None

    def append(self, entry: ManifestEntry) -> None:
        """Append one entry and fsync it before returning.

        Raises:
            OSError: If the manifest cannot be written
            ValueError: If either path cannot be represented in TSV
        """
        if not is_manifest_safe(entry.original_path) or (
            entry.backup_path is not None and not is_manifest_safe(entry.backup_path)
        ):
            raise ValueError(f"path not representable in manifest: {entry.original_path!r}")

        if self._file is None:
            self._file = open(self.path, "a", encoding="utf-8")

        self._file.write(entry.to_line())
        self._file.flush()
        os.fsync(self._file.fileno())
        debug(f"Appended manifest entry: {entry.original_path} -> {entry.backup_path}")

    def close(self) -> None:
        """Close the manifest file."""
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> "ManifestWriter":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


def read_manifest(path: Path, unreadable: list[str] | None = None) -> list[ManifestEntry]:
    """Load every entry of a manifest file in append order.

    A torn final line (crash mid-append, no trailing newline) is ignored;
    the backup it would describe was written before it, and its original was
    never mutated because mutation waits for the append to complete.

    Args:
        path: Manifest file
        unreadable: When given, malformed lines are collected here and
            skipped instead of raising

    Raises:
        FileNotFoundError: If the manifest does not exist
        ValueError: On a malformed line when ``unreadable`` is not given
    """
    entries: list[ManifestEntry] = []
    with open(path, encoding="utf-8") as fh:
        lines = fh.readlines()
    for index, line in enumerate(lines):
        if not line.strip():
            continue
        if not line.endswith("\n") and index == len(lines) - 1:
            debug(f"Ignoring torn trailing manifest line in {path}")
            continue
        try:
            entries.append(ManifestEntry.from_line(line))
        except ValueError:
            if unreadable is None:
                raise
            debug(f"Skipping malformed manifest line {index + 1} in {path}")
            unreadable.append(line.rstrip("\n"))
    return entries


def write_metadata(run_dir: Path, metadata: dict[str, Any]) -> Path:
    """Write ``metadata.json`` durably."""
    path = run_dir / METADATA_NAME
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(metadata, fh, indent=2, sort_keys=True)
        fh.write("\n")
        fh.flush()
        os.fsync(fh.fileno())
    return path


def read_metadata(run_dir: Path) -> dict[str, Any]:
    """Read ``metadata.json`` of a run."""
    with open(run_dir / METADATA_NAME, encoding="utf-8") as fh:
        data: dict[str, Any] = json.load(fh)
    return data
