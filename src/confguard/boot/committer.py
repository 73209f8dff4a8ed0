"""Boot-time commit of the staged tree.

Runs once, early at boot, before user-facing services start. Every file of
the staging tree is copied onto its mirrored live path through a sibling
temp file and rename; then the stale ``verified`` flag is cleared,
``pending`` is written and the commit request is removed so later boots do
not re-apply the same tree. The staging tree is consumed.
"""

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import structlog

from confguard.boot.rollback import RollbackEngine
from confguard.boot.state import BootMarkers
from confguard.core.constants import STAGED_INDEX
from confguard.core.errors import CommitError, ConfGuardError
from confguard.core.settings import GuardSettings
from confguard.fs.atomic import CriticalSection
from confguard.fs.backup import BackupManager, Run
from confguard.fs.paths import ensure_parent_dir, fsync_dir, get_temp_path, is_temp_path
from confguard.fs.staging import read_staged_index


@dataclass
class CommitReport:
    """Result of a commit attempt."""

    status: Literal["committed", "skipped"]
    run_id: str | None = None
    applied: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    pending_since: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "run_id": self.run_id,
            "applied": list(self.applied),
            "failed": dict(self.failed),
            "pending_since": self.pending_since,
        }


class Committer:
    """Applies the staged tree to the live filesystem.

    Args:
        settings: Host settings
        backups: Backup manager holding the run that protects the tree
        rollback_engine: Engine used to undo a commit that mostly failed
        logger: Optional structlog logger
    """

    def __init__(
        self,
        settings: GuardSettings,
        backups: BackupManager | None = None,
        rollback_engine: RollbackEngine | None = None,
        logger: Any = None,
    ) -> None:
        self.settings = settings
        self.backups = backups or BackupManager(settings.backup_root)
        self.rollback_engine = rollback_engine or RollbackEngine(self.backups)
        self.markers = BootMarkers(settings.state_dir)
        self.critical: CriticalSection | None = None
        self._logger = logger or structlog.get_logger()

    def staged_targets(self) -> list[str]:
        """Logical target paths currently present in the staging tree."""
        root = self.settings.staging
        if not root.is_dir():
            return []
        return sorted(
            "/" + str(p.relative_to(root))
            for p in root.rglob("*")
            if p.is_file() and not is_temp_path(p)
        )

    def commit(self) -> CommitReport:
        """Apply the staged tree and mark the boot pending.

        Returns:
            CommitReport; ``skipped`` when no commit was requested

        Raises:
            CommitError: More than half of the staged files failed to copy;
                the files that did copy are rolled back and no boot is
                marked pending
        """
        if not self.markers.commit_requested():
            self._logger.info("commit.skipped", reason="no commit requested")
            return CommitReport(status="skipped")

        index = read_staged_index(self.settings.state_dir)
        run_id = index.get("run_id")
        log = self._logger.bind(run_id=run_id)
        run = self._open_run(run_id)
        report = CommitReport(status="committed", run_id=run_id)

        targets = self.staged_targets()
        for target in targets:
            live = self.settings.live_path(target)
            if run is None or run.entry_for(live) is None:
                report.failed[target] = "original not recorded in run manifest"
                log.warning("commit.unprotected", target=target)
                continue
            try:
                self._copy(self.settings.staging_path(target), live)
            except OSError as e:
                report.failed[target] = str(e)
                log.warning("commit.copy_failed", target=target, error=str(e))
                continue
            report.applied.append(target)

        if targets and len(report.failed) * 2 > len(targets):
            if run is not None and report.applied:
                self.rollback_engine.rollback(run.id)
            self._consume()
            log.error("commit.aborted", applied=len(report.applied), failed=len(report.failed))
            raise CommitError(
                len(report.applied), len(report.failed), "majority of staged files failed"
            )

        self.markers.clear(self.markers.verified)
        report.pending_since = self.markers.set(self.markers.pending)
        self._consume()
        log.info(
            "commit.summary",
            applied=len(report.applied),
            failed=len(report.failed),
            pending_since=report.pending_since,
        )
        return report

    def _open_run(self, run_id: str | None) -> Run | None:
        if not run_id:
            return None
        try:
            return self.backups.open_run(run_id)
        except ConfGuardError as e:
            self._logger.error("commit.run_unavailable", run_id=run_id, error=str(e))
            return None

    def _copy(self, staged: Path, live: Path) -> None:
        """Replace ``live`` with ``staged``, keeping live ownership and mode."""
        with CriticalSection(self.settings.state_dir, "commit_copy", live, owner=self) as guard:
            ensure_parent_dir(live)
            temp = get_temp_path(live)
            guard.set_phase("begin", temp_path=temp)
            try:
                shutil.copyfile(staged, temp)
                reference = live if live.exists() else staged
                shutil.copymode(reference, temp)
                if live.exists():
                    st = live.stat()
                    try:
                        os.chown(temp, st.st_uid, st.st_gid)
                    except PermissionError:
                        self._logger.debug("commit.chown_skipped", path=str(live))
                with open(temp, "rb") as fh:
                    os.fsync(fh.fileno())
                guard.set_phase("copied")
                os.replace(temp, live)
                fsync_dir(live.parent)
                guard.set_phase("replaced")
            finally:
                if temp.exists():
                    temp.unlink()

    def _consume(self) -> None:
        """Discard the staging tree, its index and the commit request."""
        staging = self.settings.staging
        if staging.exists():
            shutil.rmtree(staging)
        (self.settings.state_dir / STAGED_INDEX).unlink(missing_ok=True)
        self.markers.clear(self.markers.commit_request)
