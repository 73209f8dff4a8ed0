"""Rollback engine: replay a run manifest to restore prior state.

Every manifest entry is restored independently; a failure is counted and
the pass continues. Restoring is idempotent, so running the same rollback
twice converges on the same filesystem state.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from confguard.fs.backup import BackupManager
from confguard.fs.manifest import ManifestEntry
from confguard.fs.paths import atomic_copy, fsync_dir

Regenerator = Callable[[], None]


@dataclass
class RollbackResult:
    """Summary of one rollback pass.

    Attributes:
        run_id: Run whose manifest was replayed
        restored: Entries restored (or, for absent originals, removed)
        failed: Entries that could not be restored
        verification_ok: Every original is back in its recorded state
        restored_paths: Live paths restored, in manifest order
        failures: Reason per failed path (including regenerator failures)
        regenerated: Sources whose derived artifacts were rebuilt
    """

    run_id: str
    restored: int = 0
    failed: int = 0
    verification_ok: bool = False
    restored_paths: list[Path] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    regenerated: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "restored": self.restored,
            "failed": self.failed,
            "verification_ok": self.verification_ok,
            "restored_paths": [str(p) for p in self.restored_paths],
            "failures": dict(self.failures),
            "regenerated": list(self.regenerated),
        }


class RollbackEngine:
    """Restores the originals recorded in a run manifest.

    Args:
        backups: Backup manager for the backup root holding the runs
        regenerators: Derived-artifact rebuilders keyed by the live source
            path they depend on (e.g. the bootloader menu keyed by
            ``/etc/default/grub``); run only if that source was restored
        logger: Optional structlog logger
    """

    def __init__(
        self,
        backups: BackupManager,
        regenerators: Mapping[Path, Regenerator] | None = None,
        logger: Any = None,
    ) -> None:
        self.backups = backups
        self.regenerators = dict(regenerators or {})
        self._logger = logger or structlog.get_logger()

    def rollback(self, run_id: str = "last", *, regenerate: bool = True) -> RollbackResult:
        """Restore every original recorded by ``run_id`` (or the latest run).

        Raises:
            RunNotFound: Unknown run; nothing is written
            ManifestNotFound: Run without a manifest; nothing is written
        """
        run = self.backups.open_run(run_id)
        log = self._logger.bind(run_id=run.id)
        result = RollbackResult(run_id=run.id)

        for entry in run.manifest:
            try:
                self._restore(entry)
            except OSError as e:
                result.failed += 1
                result.failures[str(entry.original_path)] = str(e)
                log.warning("rollback.failed", path=str(entry.original_path), error=str(e))
                continue
            result.restored += 1
            result.restored_paths.append(entry.original_path)
            log.debug("rollback.restored", path=str(entry.original_path), absent=entry.absent)

        for line in run.unreadable:
            result.failed += 1
            result.failures[f"manifest:{line}"] = "malformed manifest line"
            log.warning("rollback.unreadable_entry", line=line)

        if regenerate:
            restored = set(result.restored_paths)
            for source, regenerator in self.regenerators.items():
                if source not in restored:
                    continue
                try:
                    regenerator()
                except Exception as e:
                    result.failures[f"regenerate:{source}"] = str(e)
                    log.error("rollback.regenerate_failed", source=str(source), error=str(e))
                    continue
                result.regenerated.append(str(source))

        result.verification_ok = not run.unreadable and all(
            _in_recorded_state(entry) for entry in run.manifest
        )
        log.info(
            "rollback.summary",
            restored=result.restored,
            failed=result.failed,
            verification_ok=result.verification_ok,
        )
        return result

    def _restore(self, entry: ManifestEntry) -> None:
        original = entry.original_path
        if entry.backup_path is None:
            if original.exists() or original.is_symlink():
                original.unlink()
                fsync_dir(original.parent)
            return
        if not entry.backup_path.is_file():
            raise FileNotFoundError(f"backup missing: {entry.backup_path}")
        atomic_copy(entry.backup_path, original)


def _in_recorded_state(entry: ManifestEntry) -> bool:
    if entry.backup_path is None:
        return not entry.original_path.exists()
    return entry.original_path.exists()
