"""Deployment session state and the single-session host lock.

A ``DeploymentSession`` is the explicit value threaded through every
staging, transaction and backup call: the active run, the reboot-required
bit, the files staged so far and the critical files changed in place.

Only one session may be active per host. ``SessionLock`` holds an
exclusive, non-blocking ``flock`` for the life of the session and records
the active run id in a sentinel file; a sentinel whose lock is free was
left by a crashed session.
"""

from __future__ import annotations

import fcntl
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from confguard.boot.state import BootMarkers, BootState
from confguard.core.constants import ACTIVE_RUN_MARKER, LOCK_NAME
from confguard.core.errors import BootPending, ConfGuardError, SessionBusy
from confguard.core.settings import GuardSettings
from confguard.core.validator import BootloaderValidator, KernelParamValidator, ValidatorSet
from confguard.fs.backup import BackupManager, BackupOutcome, Run
from confguard.fs.paths import expand_touch_paths
from confguard.utils.debug import debug

if TYPE_CHECKING:  # pragma: no cover - typing only
    from confguard.fs.atomic import CriticalSection
    from confguard.fs.staging import StagedFile


class SessionLock:
    """Exclusive per-host lock plus active-run sentinel.

    Args:
        state_dir: Directory holding ``session.lock`` and ``active-run``
    """

    def __init__(self, state_dir: Path) -> None:
        self.lock_path = state_dir / LOCK_NAME
        self.marker_path = state_dir / ACTIVE_RUN_MARKER
        self._fd: int | None = None
        self._marked = False

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> str | None:
        """Take the lock without blocking.

        Returns:
            Run id left in the sentinel by a crashed session, if any

        Raises:
            SessionBusy: If another live process holds the lock
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise SessionBusy(self.holder()) from e
        self._fd = fd
        stale = self.holder()
        if stale:
            debug(f"Found stale active-run sentinel for {stale}")
        return stale

    def holder(self) -> str | None:
        """Run id recorded in the active-run sentinel."""
        try:
            return self.marker_path.read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None

    def mark_active(self, run_id: str) -> None:
        self.marker_path.write_text(run_id + "\n", encoding="utf-8")
        self._marked = True

    def release(self) -> None:
        """Clear our sentinel and drop the lock."""
        if self._fd is None:
            return
        if self._marked:
            self.marker_path.unlink(missing_ok=True)
            self._marked = False
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None


def build_validators(settings: GuardSettings) -> ValidatorSet:
    """Validator instances configured for this host's settings."""
    return ValidatorSet(
        bootloader=BootloaderValidator(
            external_stores=[settings.live_path(s) for s in settings.boot_param_stores]
        ),
        kernel_params=KernelParamValidator(proc_sys_root=settings.proc_sys_root),
    )


@dataclass
class DeploymentSession:
    """Explicit state of one deployment session.

    Attributes:
        settings: Host locations and tunables
        backups: Backup manager owning ``run``
        run: The active run
        lock: Held session lock
        validators: Validators configured for this host
        reboot_required: Set once anything is staged for the next boot
        staged: Most recent staged write per logical target path
        critical_modified: Logical targets replaced in place this session
        critical: Critical section currently open, if any
        preseeded: Outcomes of the pre-session backups of the touch list
    """

    settings: GuardSettings
    backups: BackupManager
    run: Run
    lock: SessionLock
    validators: ValidatorSet
    reboot_required: bool = False
    staged: dict[str, StagedFile] = field(default_factory=dict)
    critical_modified: set[str] = field(default_factory=set)
    critical: CriticalSection | None = None
    preseeded: list[BackupOutcome] = field(default_factory=list)

    @property
    def run_id(self) -> str:
        return self.run.id

    @property
    def active(self) -> bool:
        return self.lock.held and not self.run.closed

    @classmethod
    def begin(
        cls,
        settings: GuardSettings,
        touch_paths: Iterable[str] = (),
        backups: BackupManager | None = None,
    ) -> DeploymentSession:
        """Start a session: lock, recover, create a run, pre-seed backups.

        Args:
            settings: Host settings
            touch_paths: Logical paths (files or directories) that will be
                touched; existing files below them are backed up first
            backups: Optional backup manager (defaults to one on
                ``settings.backup_root``)

        Returns:
            The session, with the pre-seed outcomes in ``preseeded``

        Raises:
            SessionBusy: If another session is active
            BootPending: If the last committed boot is not yet verified
            BackupError: If the run directory cannot be created
        """
        from confguard.fs.atomic import recover_interrupted

        backups = backups or BackupManager(settings.backup_root)
        lock = SessionLock(settings.state_dir)
        stale = lock.acquire()
        try:
            markers = BootMarkers(settings.state_dir)
            if markers.state() is BootState.PENDING:
                raise BootPending(markers.read(markers.pending))
            recover_interrupted(settings.state_dir)
            if stale is not None:
                _close_stale_run(backups, stale)
            run = backups.create_run()
            lock.mark_active(run.id)
        except BaseException:
            lock.release()
            raise

        session = cls(
            settings=settings,
            backups=backups,
            run=run,
            lock=lock,
            validators=build_validators(settings),
        )
        try:
            session.preseeded = [
                backups.backup(run, path)
                for path in expand_touch_paths(list(touch_paths), settings.live_root)
            ]
        except BaseException:
            session.end()
            raise
        return session

    def end(self) -> None:
        """Close the run and release the host lock."""
        try:
            if not self.run.closed:
                self.backups.close_run(self.run)
        finally:
            self.lock.release()

    def __enter__(self) -> DeploymentSession:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.end()


def _close_stale_run(backups: BackupManager, run_id: str) -> None:
    try:
        run = backups.open_run(run_id)
    except ConfGuardError as e:
        debug(f"Stale run {run_id} not loadable: {e}")
        return
    backups.close_run(run)
