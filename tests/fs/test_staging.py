"""Tests for off-path staging of next-boot configuration."""

import json
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from confguard.core.errors import BackupError, ValidationError
from confguard.core.session import DeploymentSession
from confguard.core.settings import GuardSettings
from confguard.core.validator import ConfigDomain
from confguard.fs.backup import BackupOutcome, BackupStatus
from confguard.fs.manifest import read_manifest
from confguard.fs.staging import ConfigWriter, read_staged_index

TARGET = "/etc/sysctl.d/99-tune.conf"


class TestStageWrite:
    def test_stages_without_touching_live(
        self, session: DeploymentSession, settings: GuardSettings
    ) -> None:
        staged = ConfigWriter(session).stage_write(TARGET, b"vm.swappiness = 10\n")

        assert staged.domain is ConfigDomain.KERNEL_PARAM_STORE
        assert not settings.live_path(TARGET).exists()
        assert settings.staging_path(TARGET).read_bytes() == b"vm.swappiness = 10\n"
        assert session.reboot_required
        assert session.staged[TARGET] is staged

    def test_records_absent_original_before_staging(
        self, session: DeploymentSession, settings: GuardSettings
    ) -> None:
        ConfigWriter(session).stage_write(TARGET, b"vm.swappiness = 10\n")

        entries = read_manifest(session.run.manifest_path)
        assert [e.original_path for e in entries] == [settings.live_path(TARGET)]
        assert entries[0].absent

    def test_backs_up_existing_original(
        self,
        session: DeploymentSession,
        settings: GuardSettings,
        write_live: Callable[[str, str], Path],
    ) -> None:
        write_live(TARGET, "vm.swappiness = 60\n")

        ConfigWriter(session).stage_write(TARGET, b"vm.swappiness = 10\n")

        entry = session.run.entry_for(settings.live_path(TARGET))
        assert entry is not None
        assert entry.backup_path is not None
        assert entry.backup_path.read_bytes() == b"vm.swappiness = 60\n"
        assert settings.live_path(TARGET).read_bytes() == b"vm.swappiness = 60\n"

    def test_writes_index_and_commit_request(
        self, session: DeploymentSession, settings: GuardSettings
    ) -> None:
        staged = ConfigWriter(session).stage_write(TARGET, b"vm.swappiness = 10\n")

        index = read_staged_index(settings.state_dir)
        assert index["run_id"] == session.run_id
        assert index["targets"][TARGET]["sha256"] == staged.digest
        assert index["targets"][TARGET]["domain"] == "kernel_param_store"
        assert (settings.state_dir / "commit-requested").exists()

    def test_rejection_stages_nothing(
        self, session: DeploymentSession, settings: GuardSettings
    ) -> None:
        with pytest.raises(ValidationError):
            ConfigWriter(session).stage_write(TARGET, b"vm.not_a_parameter = 1\n")

        assert not settings.staging_path(TARGET).exists()
        assert read_manifest(session.run.manifest_path) == []
        assert not session.reboot_required
        assert not (settings.state_dir / "commit-requested").exists()

    def test_target_cannot_escape_staging_root(
        self,
        session: DeploymentSession,
        settings: GuardSettings,
        tmp_path: Path,
        tree_snapshot: Callable[[Path], dict[str, bytes]],
    ) -> None:
        before = tree_snapshot(tmp_path)

        with pytest.raises(ValueError, match=r"\.\."):
            ConfigWriter(session).stage_write(
                "/../../../escaped.conf", b"vm.swappiness = 10\n", ConfigDomain.GENERIC
            )

        assert tree_snapshot(tmp_path) == before
        assert not (tmp_path.parent / "escaped.conf").exists()
        assert read_manifest(session.run.manifest_path) == []
        assert not session.reboot_required

    def test_unprotected_original_is_not_staged(
        self, session: DeploymentSession, settings: GuardSettings
    ) -> None:
        failed = BackupOutcome(
            path=settings.live_path(TARGET), status=BackupStatus.FAILED, reason="copy failed"
        )
        with patch.object(session.backups, "record_absent", return_value=failed):
            with pytest.raises(BackupError) as exc_info:
                ConfigWriter(session).stage_write(TARGET, b"vm.swappiness = 10\n")

        assert not exc_info.value.fatal
        assert not settings.staging_path(TARGET).exists()

    def test_restaging_keeps_first_backup(
        self,
        session: DeploymentSession,
        settings: GuardSettings,
        write_live: Callable[[str, str], Path],
    ) -> None:
        write_live(TARGET, "vm.swappiness = 60\n")
        writer = ConfigWriter(session)

        writer.stage_write(TARGET, b"vm.swappiness = 10\n")
        writer.stage_write(TARGET, b"vm.swappiness = 5\n")

        assert len(read_manifest(session.run.manifest_path)) == 1
        assert settings.staging_path(TARGET).read_bytes() == b"vm.swappiness = 5\n"


class TestStageAppend:
    def test_append_composes_onto_live_content(
        self,
        session: DeploymentSession,
        settings: GuardSettings,
        write_live: Callable[[str, str], Path],
    ) -> None:
        write_live("/etc/sysctl.conf", "vm.swappiness = 60")

        staged = ConfigWriter(session).stage_append("/etc/sysctl.conf", b"vm.dirty_ratio = 15\n")

        assert staged.content_bytes == b"vm.swappiness = 60\nvm.dirty_ratio = 15\n"
        assert settings.live_path("/etc/sysctl.conf").read_bytes() == b"vm.swappiness = 60"

    def test_append_composes_onto_earlier_staging(self, session: DeploymentSession) -> None:
        writer = ConfigWriter(session)

        writer.stage_append(TARGET, b"vm.swappiness = 10\n")
        staged = writer.stage_append(TARGET, b"vm.dirty_ratio = 15\n")

        assert staged.content_bytes == b"vm.swappiness = 10\nvm.dirty_ratio = 15\n"

    def test_append_to_missing_file(self, session: DeploymentSession) -> None:
        staged = ConfigWriter(session).stage_append(TARGET, b"vm.swappiness = 10\n")

        assert staged.content_bytes == b"vm.swappiness = 10\n"


def test_adopts_staging_left_by_uncommitted_session(settings: GuardSettings) -> None:
    """Targets staged by an older session stay covered by the newest run."""
    with DeploymentSession.begin(settings) as first:
        ConfigWriter(first).stage_write(TARGET, b"vm.swappiness = 10\n")

    with DeploymentSession.begin(settings) as second:
        ConfigWriter(second).stage_write("/etc/sysctl.conf", b"vm.dirty_ratio = 15\n")
        covered = {str(e.original_path) for e in second.run.manifest}

    index = json.loads((settings.state_dir / "staged.json").read_text())
    assert index["run_id"] == second.run_id
    assert set(index["targets"]) == {TARGET, "/etc/sysctl.conf"}
    assert covered == {
        str(settings.live_path(TARGET)),
        str(settings.live_path("/etc/sysctl.conf")),
    }
