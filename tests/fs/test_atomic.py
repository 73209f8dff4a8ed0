"""Tests for atomic in-place replacement and critical-section recovery."""

import json
import signal
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from confguard.core.constants import CRITICAL_MARKER
from confguard.core.errors import TransactionError, ValidationError
from confguard.core.session import DeploymentSession
from confguard.core.settings import GuardSettings
from confguard.core.transforms import kernel_params_transform, replace_content
from confguard.fs.atomic import (
    AtomicFileTransaction,
    CriticalSection,
    InterruptedOperation,
    recover_interrupted,
    signal_guard,
)
from confguard.fs.backup import BackupOutcome, BackupStatus
from confguard.fs.manifest import read_manifest

GRUB = "/etc/default/grub"
GRUB_WITH_ROOT = 'GRUB_TIMEOUT=5\nGRUB_CMDLINE_LINUX="root=UUID=abc rhgb quiet"\n'
GRUB_WITHOUT_ROOT = 'GRUB_TIMEOUT=5\nGRUB_CMDLINE_LINUX="rhgb quiet"\n'


def _leftovers(directory: Path) -> list[str]:
    return [p.name for p in directory.iterdir() if ".confguard-" in p.name]


class TestApply:
    def test_backup_holds_bytes_before_first_change(
        self,
        session: DeploymentSession,
        settings: GuardSettings,
        write_live: Callable[[str, str], Path],
    ) -> None:
        live = write_live("/etc/environment", "EDITOR=vi\n")
        transaction = AtomicFileTransaction(session)

        transaction.apply("/etc/environment", replace_content(b"EDITOR=nano\n"))
        transaction.apply("/etc/environment", replace_content(b"EDITOR=vim\n"))

        entries = read_manifest(session.run.manifest_path)
        assert len(entries) == 1
        assert entries[0].backup_path is not None
        assert entries[0].backup_path.read_bytes() == b"EDITOR=vi\n"
        assert live.read_bytes() == b"EDITOR=vim\n"

    def test_applies_kernel_params(
        self, session: DeploymentSession, write_live: Callable[[str, str], Path]
    ) -> None:
        live = write_live(GRUB, GRUB_WITH_ROOT)

        outcome = AtomicFileTransaction(session).apply(
            GRUB, kernel_params_transform(["mitigations=auto"])
        )

        assert outcome.status == "applied"
        assert b"root=UUID=abc rhgb quiet mitigations=auto" in live.read_bytes()
        assert GRUB in session.critical_modified
        assert outcome.backup_path is not None
        assert outcome.backup_path.read_text() == GRUB_WITH_ROOT

    def test_rejected_content_leaves_target_untouched(
        self, session: DeploymentSession, write_live: Callable[[str, str], Path]
    ) -> None:
        live = write_live(GRUB, GRUB_WITH_ROOT)

        with pytest.raises(ValidationError):
            AtomicFileTransaction(session).apply(GRUB, replace_content(GRUB_WITHOUT_ROOT.encode()))

        assert live.read_text() == GRUB_WITH_ROOT
        assert read_manifest(session.run.manifest_path) == []
        assert _leftovers(live.parent) == []

    def test_cmdline_without_root_device_is_rejected(
        self, session: DeploymentSession, write_live: Callable[[str, str], Path]
    ) -> None:
        live = write_live(GRUB, GRUB_WITHOUT_ROOT)

        with pytest.raises(ValidationError) as exc_info:
            AtomicFileTransaction(session).apply(GRUB, kernel_params_transform(["quiet", "splash"]))

        assert exc_info.value.domain == "bootloader"
        assert live.read_text() == GRUB_WITHOUT_ROOT
        assert GRUB not in session.critical_modified

    def test_noop_transform_is_unchanged(
        self, session: DeploymentSession, write_live: Callable[[str, str], Path]
    ) -> None:
        write_live(GRUB, GRUB_WITH_ROOT)

        outcome = AtomicFileTransaction(session).apply(GRUB, kernel_params_transform(["quiet"]))

        assert outcome.status == "unchanged"
        assert read_manifest(session.run.manifest_path) == []

    def test_failing_transform(
        self, session: DeploymentSession, write_live: Callable[[str, str], Path]
    ) -> None:
        live = write_live("/etc/environment", "EDITOR=vi\n")

        def explode(_content: bytes) -> bytes:
            raise RuntimeError("producer bug")

        with pytest.raises(TransactionError, match="producer bug"):
            AtomicFileTransaction(session).apply("/etc/environment", explode)

        assert live.read_bytes() == b"EDITOR=vi\n"
        assert _leftovers(live.parent) == []

    def test_missing_target(self, session: DeploymentSession) -> None:
        with pytest.raises(TransactionError, match="does not exist"):
            AtomicFileTransaction(session).apply("/etc/environment", replace_content(b"A=1\n"))

    def test_unprotected_original_is_not_replaced(
        self,
        session: DeploymentSession,
        settings: GuardSettings,
        write_live: Callable[[str, str], Path],
    ) -> None:
        live = write_live("/etc/environment", "EDITOR=vi\n")
        failed = BackupOutcome(path=live, status=BackupStatus.FAILED, reason="copy failed: EIO")

        with patch.object(session.backups, "backup", return_value=failed):
            with pytest.raises(TransactionError, match="could not be backed up"):
                AtomicFileTransaction(session).apply(
                    "/etc/environment", replace_content(b"EDITOR=vim\n")
                )

        assert live.read_bytes() == b"EDITOR=vi\n"
        assert not (settings.state_dir / CRITICAL_MARKER).exists()

    def test_marker_write_failure_after_replace_still_applies(
        self,
        session: DeploymentSession,
        settings: GuardSettings,
        write_live: Callable[[str, str], Path],
    ) -> None:
        live = write_live("/etc/environment", "EDITOR=vi\n")
        set_phase = CriticalSection.set_phase

        def full_disk_on_replaced(self: CriticalSection, phase: str, **extra: object) -> None:
            if phase == "replaced":
                raise OSError(28, "No space left on device")
            set_phase(self, phase, **extra)  # type: ignore[arg-type]

        with patch.object(
            CriticalSection, "set_phase", autospec=True, side_effect=full_disk_on_replaced
        ):
            outcome = AtomicFileTransaction(session).apply(
                "/etc/environment", replace_content(b"EDITOR=vim\n")
            )

        assert outcome.status == "applied"
        assert live.read_bytes() == b"EDITOR=vim\n"
        assert "/etc/environment" in session.critical_modified
        assert not (settings.state_dir / CRITICAL_MARKER).exists()

    def test_interrupt_inside_section_recovers(
        self,
        session: DeploymentSession,
        settings: GuardSettings,
        write_live: Callable[[str, str], Path],
    ) -> None:
        live = write_live("/etc/environment", "EDITOR=vi\n")

        def interrupted(_content: bytes) -> bytes:
            raise InterruptedOperation(signal.SIGTERM)

        with pytest.raises(InterruptedOperation):
            AtomicFileTransaction(session).apply("/etc/environment", interrupted)

        assert live.read_bytes() == b"EDITOR=vi\n"
        assert _leftovers(live.parent) == []
        assert not (settings.state_dir / CRITICAL_MARKER).exists()
        assert session.critical is None


class TestCriticalSection:
    def test_marker_tracks_phase(self, tmp_path: Path) -> None:
        target = tmp_path / "grub"
        with CriticalSection(tmp_path, "atomic_replace", target) as section:
            section.set_phase("copied", temp_path=tmp_path / ".grub.tmp", run_id="r1")
            record = json.loads((tmp_path / CRITICAL_MARKER).read_text())

        assert record["phase"] == "copied"
        assert record["target"] == str(target)
        assert record["run_id"] == "r1"
        assert not (tmp_path / CRITICAL_MARKER).exists()

    def test_exception_removes_temp(self, tmp_path: Path) -> None:
        temp = tmp_path / ".grub.confguard-tmp-1"

        with pytest.raises(OSError):
            with CriticalSection(tmp_path, "atomic_replace", tmp_path / "grub") as section:
                section.set_phase("begin", temp_path=temp)
                temp.write_text("partial")
                raise OSError("disk full")

        assert not temp.exists()
        assert not (tmp_path / CRITICAL_MARKER).exists()


class TestRecoverInterrupted:
    def test_no_marker(self, tmp_path: Path) -> None:
        assert recover_interrupted(tmp_path) is None

    def test_removes_stale_temp(self, tmp_path: Path) -> None:
        temp = tmp_path / ".grub.confguard-tmp-2"
        temp.write_text("partial")
        (tmp_path / CRITICAL_MARKER).write_text(
            json.dumps(
                {"target": str(tmp_path / "grub"), "temp_path": str(temp), "phase": "copied"}
            )
        )

        record = recover_interrupted(tmp_path)

        assert record is not None
        assert record["recovery"] == "temp_removed"
        assert not temp.exists()
        assert not (tmp_path / CRITICAL_MARKER).exists()

    def test_after_replace_nothing_to_undo(self, tmp_path: Path) -> None:
        (tmp_path / CRITICAL_MARKER).write_text(
            json.dumps({"target": str(tmp_path / "grub"), "temp_path": None, "phase": "replaced"})
        )

        record = recover_interrupted(tmp_path)

        assert record is not None
        assert record["recovery"] == "consistent"

    def test_corrupt_marker_is_discarded(self, tmp_path: Path) -> None:
        (tmp_path / CRITICAL_MARKER).write_text("{not json")

        assert recover_interrupted(tmp_path) is None
        assert not (tmp_path / CRITICAL_MARKER).exists()


def test_signal_guard_restores_handlers(session: DeploymentSession) -> None:
    before = signal.getsignal(signal.SIGTERM)

    with signal_guard(session):
        assert signal.getsignal(signal.SIGTERM) != before

    assert signal.getsignal(signal.SIGTERM) == before
