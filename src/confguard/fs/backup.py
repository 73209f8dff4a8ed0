"""Run bookkeeping and first-touch backups.

A run is one deployment attempt: a directory under the backup root named by
a timestamp-derived, lexicographically sortable id, holding the run's
metadata, its append-only manifest and the preserved original files.

The manifest entry for a path is fsync'd before ``backup`` returns, and
callers only mutate a path after ``backup`` has returned, so a rollback can
never "restore" a file to content it only gained during the run.
"""

import os
import socket
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

from confguard.core.constants import (
    MANIFEST_NAME,
    RUN_CLOSED_MARKER,
    RUN_FILES_DIR,
    RUN_ID_FORMAT,
)
from confguard.core.errors import BackupError, ManifestNotFound, RunClosed, RunNotFound
from confguard.fs.manifest import (
    ManifestEntry,
    ManifestWriter,
    is_manifest_safe,
    read_manifest,
    read_metadata,
    write_metadata,
)
from confguard.fs.paths import copy_preserving, encode_backup_name
from confguard.utils.debug import debug


class BackupStatus(str, Enum):
    """Result of a ``backup`` call."""

    BACKED = "backed"
    ALREADY_BACKED = "already_backed"
    ABSENT_RECORDED = "absent_recorded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class BackupOutcome:
    """Result of backing up a single path."""

    path: Path
    status: BackupStatus
    backup_path: Path | None = None
    reason: str | None = None

    @property
    def protected(self) -> bool:
        """True if the run can restore ``path`` to its pre-run state."""
        return self.status in (
            BackupStatus.BACKED,
            BackupStatus.ALREADY_BACKED,
            BackupStatus.ABSENT_RECORDED,
        )


@dataclass
class Run:
    """One deployment attempt.

    Attributes:
        id: Sortable timestamp-derived identifier
        created_at: Creation time (UTC)
        host: Hostname the run was created on
        directory: Run directory under the backup root
        manifest: Entries in append order; first backup of a path wins
        closed: True once the session ended; closed runs are read-only
        unreadable: Raw manifest lines that could not be parsed
    """

    id: str
    created_at: datetime
    host: str
    directory: Path
    manifest: list[ManifestEntry] = field(default_factory=list)
    closed: bool = False
    unreadable: list[str] = field(default_factory=list)
    _index: dict[str, ManifestEntry] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        for entry in self.manifest:
            self._index.setdefault(str(entry.original_path), entry)

    @property
    def manifest_path(self) -> Path:
        return self.directory / MANIFEST_NAME

    def entry_for(self, path: Path) -> ManifestEntry | None:
        return self._index.get(str(_key(path)))

    def _record(self, entry: ManifestEntry) -> None:
        self.manifest.append(entry)
        self._index[str(entry.original_path)] = entry


def _key(path: Path | str) -> Path:
    """Absolute, unresolved form of ``path`` (symlinks keep their own identity)."""
    return Path(os.path.abspath(path))


class BackupManager:
    """Creates runs and preserves original files before their first mutation.

    Args:
        backup_root: Directory holding one subdirectory per run
    """

    def __init__(self, backup_root: Path) -> None:
        self.backup_root = backup_root
        self.failed_count = 0
        self._writers: dict[str, ManifestWriter] = {}

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(self) -> Run:
        """Allocate a new run directory with an empty manifest and metadata.

        Raises:
            BackupError: (fatal) if the run directory cannot be created
        """
        try:
            self.backup_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupError(
                self.backup_root, f"cannot create backup root: {e}", fatal=True
            ) from e

        created_at = datetime.now(UTC)
        candidate = created_at
        latest = self.latest_run_id()
        if latest is not None:
            floor = datetime.strptime(latest, RUN_ID_FORMAT).replace(tzinfo=UTC)
            if candidate <= floor:
                candidate = floor + timedelta(microseconds=1)

        while True:
            run_id = candidate.strftime(RUN_ID_FORMAT)
            run_dir = self.backup_root / run_id
            try:
                run_dir.mkdir()
                break
            except FileExistsError:
                candidate += timedelta(microseconds=1)
            except OSError as e:
                raise BackupError(run_dir, f"cannot create run directory: {e}", fatal=True) from e

        host = socket.gethostname()
        try:
            (run_dir / RUN_FILES_DIR).mkdir()
            (run_dir / MANIFEST_NAME).touch()
            write_metadata(
                run_dir,
                {"timestamp": created_at.isoformat(), "host": host, "run_id": run_id},
            )
        except OSError as e:
            raise BackupError(run_dir, f"cannot initialise run directory: {e}", fatal=True) from e

        debug(f"Created run {run_id} at {run_dir}")
        return Run(id=run_id, created_at=created_at, host=host, directory=run_dir)

    def list_runs(self) -> list[str]:
        """Return every run id on disk, oldest first."""
        if not self.backup_root.is_dir():
            return []
        return sorted(
            p.name
            for p in self.backup_root.iterdir()
            if p.is_dir() and not p.name.startswith(".") and _is_run_id(p.name)
        )

    def latest_run_id(self) -> str | None:
        """Return the lexicographically greatest run id, if any."""
        runs = self.list_runs()
        return runs[-1] if runs else None

    def resolve_run_id(self, run_id: str) -> str:
        """Resolve ``"last"`` and check that the run exists.

        Raises:
            RunNotFound: If there is no such run
        """
        if run_id == "last":
            latest = self.latest_run_id()
            if latest is None:
                raise RunNotFound(run_id)
            return latest
        if not _is_run_id(run_id) or not (self.backup_root / run_id).is_dir():
            raise RunNotFound(run_id)
        return run_id

    def open_run(self, run_id: str) -> Run:
        """Load an existing run (metadata, manifest, closed flag).

        Malformed manifest lines do not prevent loading; they are kept in
        ``Run.unreadable`` so callers can report them.

        Raises:
            RunNotFound: If the run directory does not exist
            ManifestNotFound: If the run has no manifest
        """
        run_id = self.resolve_run_id(run_id)
        run_dir = self.backup_root / run_id
        manifest_path = run_dir / MANIFEST_NAME
        if not manifest_path.is_file():
            raise ManifestNotFound(run_id, manifest_path)

        try:
            metadata = read_metadata(run_dir)
            created_at = datetime.fromisoformat(metadata["timestamp"])
            host = str(metadata.get("host", ""))
        except (OSError, ValueError, KeyError) as e:
            debug(f"Unreadable metadata for run {run_id}: {e}")
            created_at = datetime.strptime(run_id, RUN_ID_FORMAT).replace(tzinfo=UTC)
            host = ""

        unreadable: list[str] = []
        manifest = read_manifest(manifest_path, unreadable)
        return Run(
            id=run_id,
            created_at=created_at,
            host=host,
            directory=run_dir,
            manifest=manifest,
            closed=(run_dir / RUN_CLOSED_MARKER).exists(),
            unreadable=unreadable,
        )

    def close_run(self, run: Run) -> None:
        """Mark a run read-only; later ``backup`` calls raise ``RunClosed``."""
        writer = self._writers.pop(run.id, None)
        if writer is not None:
            writer.close()
        if not run.closed:
            (run.directory / RUN_CLOSED_MARKER).write_text(
                datetime.now(UTC).isoformat() + "\n", encoding="utf-8"
            )
            run.closed = True
        debug(f"Closed run {run.id}")

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def backup(self, run: Run, path: Path) -> BackupOutcome:
        """Preserve ``path`` in ``run`` unless it is already preserved.

        Args:
            run: Active run
            path: Live file about to be mutated

        Returns:
            BackupOutcome; ``FAILED`` outcomes are counted in ``failed_count``

        Raises:
            RunClosed: If the run is closed
            BackupError: (fatal) if the run directory or manifest is unwritable
        """
        if run.closed:
            raise RunClosed(run.id)

        original = _key(path)
        existing = run.entry_for(original)
        if existing is not None:
            return BackupOutcome(
                path=original,
                status=BackupStatus.ALREADY_BACKED,
                backup_path=existing.backup_path,
            )

        if not is_manifest_safe(original):
            return self._failed(original, "path contains tab or newline")
        if not original.exists():
            return BackupOutcome(
                path=original, status=BackupStatus.SKIPPED, reason="no-such-file"
            )
        if not original.is_file():
            return self._failed(original, "not a regular file")

        backup_path = run.directory / RUN_FILES_DIR / encode_backup_name(original)
        try:
            copy_preserving(original, backup_path)
        except OSError as e:
            if not os.access(run.directory / RUN_FILES_DIR, os.W_OK):
                raise BackupError(
                    run.directory, f"run directory unwritable: {e}", fatal=True
                ) from e
            if backup_path.exists():
                backup_path.unlink()
            return self._failed(original, f"copy failed: {e}")

        entry = ManifestEntry(original_path=original, backup_path=backup_path)
        self._append(run, entry)
        debug(f"Backed up {original} -> {backup_path}")
        return BackupOutcome(path=original, status=BackupStatus.BACKED, backup_path=backup_path)

    def record_absent(self, run: Run, path: Path) -> BackupOutcome:
        """Record that ``path`` does not exist yet, so rollback deletes it.

        If the path does exist this is an ordinary ``backup``.
        """
        if run.closed:
            raise RunClosed(run.id)

        original = _key(path)
        existing = run.entry_for(original)
        if existing is not None:
            return BackupOutcome(
                path=original,
                status=BackupStatus.ALREADY_BACKED,
                backup_path=existing.backup_path,
            )
        if original.exists() or original.is_symlink():
            return self.backup(run, original)
        if not is_manifest_safe(original):
            return self._failed(original, "path contains tab or newline")

        self._append(run, ManifestEntry(original_path=original, backup_path=None))
        debug(f"Recorded absent original {original}")
        return BackupOutcome(path=original, status=BackupStatus.ABSENT_RECORDED)

    def _append(self, run: Run, entry: ManifestEntry) -> None:
        writer = self._writers.get(run.id)
        if writer is None:
            writer = self._writers[run.id] = ManifestWriter(run.directory)
        try:
            writer.append(entry)
        except (OSError, ValueError) as e:
            raise BackupError(run.manifest_path, f"manifest append failed: {e}", fatal=True) from e
        run._record(entry)

    def _failed(self, path: Path, reason: str) -> BackupOutcome:
        self.failed_count += 1
        debug(f"Backup of {path} failed: {reason}")
        return BackupOutcome(path=path, status=BackupStatus.FAILED, reason=reason)


def _is_run_id(name: str) -> bool:
    try:
        datetime.strptime(name, RUN_ID_FORMAT)
    except ValueError:
        return False
    return True
