"""Tests for the boot-time commit of the staged tree."""

import os
import stat
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from confguard.boot.committer import Committer
from confguard.boot.state import BootMarkers
from confguard.core.errors import CommitError
from confguard.core.session import DeploymentSession
from confguard.core.settings import GuardSettings
from confguard.fs.staging import ConfigWriter

TARGET = "/etc/sysctl.d/99-tune.conf"


def _stage(settings: GuardSettings, items: dict[str, bytes]) -> None:
    with DeploymentSession.begin(settings) as session:
        writer = ConfigWriter(session)
        for target, content in items.items():
            writer.stage_write(target, content)


class TestCommit:
    def test_staged_content_goes_live(self, settings: GuardSettings) -> None:
        _stage(settings, {TARGET: b"vm.swappiness = 10"})

        report = Committer(settings).commit()

        assert report.status == "committed"
        assert report.applied == [TARGET]
        assert settings.live_path(TARGET).read_bytes() == b"vm.swappiness = 10"

    def test_marks_pending_and_consumes_staging(self, settings: GuardSettings) -> None:
        _stage(settings, {TARGET: b"vm.swappiness = 10\n"})
        markers = BootMarkers(settings.state_dir)

        report = Committer(settings).commit()

        assert markers.pending.exists()
        assert report.pending_since == markers.read(markers.pending)
        assert not markers.commit_requested()
        assert not settings.staging.exists()
        assert not (settings.state_dir / "staged.json").exists()

    def test_second_commit_is_skipped(self, settings: GuardSettings) -> None:
        _stage(settings, {TARGET: b"vm.swappiness = 10\n"})
        Committer(settings).commit()

        assert Committer(settings).commit().status == "skipped"

    def test_nothing_requested(self, settings: GuardSettings) -> None:
        report = Committer(settings).commit()

        assert report.status == "skipped"
        assert not BootMarkers(settings.state_dir).pending.exists()

    def test_clears_stale_verified_flag(self, settings: GuardSettings) -> None:
        markers = BootMarkers(settings.state_dir)
        markers.set(markers.verified)
        _stage(settings, {TARGET: b"vm.swappiness = 10\n"})

        Committer(settings).commit()

        assert not markers.verified.exists()
        assert markers.pending.exists()

    def test_keeps_live_mode(
        self, settings: GuardSettings, write_live: Callable[[str, str], Path]
    ) -> None:
        live = write_live(TARGET, "vm.swappiness = 60\n")
        os.chmod(live, 0o640)
        _stage(settings, {TARGET: b"vm.swappiness = 10\n"})

        Committer(settings).commit()

        assert live.read_bytes() == b"vm.swappiness = 10\n"
        assert stat.S_IMODE(live.stat().st_mode) == 0o640

    def test_unprotected_file_is_not_applied(self, settings: GuardSettings) -> None:
        _stage(
            settings,
            {TARGET: b"vm.swappiness = 10\n", "/etc/sysctl.conf": b"vm.dirty_ratio = 5\n"},
        )
        stray = settings.staging_path("/etc/sysctl.d/50-stray.conf")
        stray.write_bytes(b"vm.swappiness = 1\n")

        report = Committer(settings).commit()

        assert "/etc/sysctl.d/50-stray.conf" in report.failed
        assert not settings.live_path("/etc/sysctl.d/50-stray.conf").exists()
        assert sorted(report.applied) == ["/etc/sysctl.conf", TARGET]

    def test_ignores_leftover_temp_files(self, settings: GuardSettings) -> None:
        _stage(settings, {TARGET: b"vm.swappiness = 10\n"})
        leftover = settings.staging_path("/etc/sysctl.d/.99-tune.conf.confguard-tmp-abcd1234")
        leftover.write_bytes(b"partial")

        assert Committer(settings).staged_targets() == [TARGET]


class TestMajorityFailure:
    def test_aborts_without_pending(self, settings: GuardSettings) -> None:
        _stage(settings, {TARGET: b"vm.swappiness = 10\n"})

        with patch.object(Committer, "_copy", side_effect=OSError("read-only filesystem")):
            with pytest.raises(CommitError) as exc_info:
                Committer(settings).commit()

        markers = BootMarkers(settings.state_dir)
        assert exc_info.value.failed == 1
        assert not markers.pending.exists()
        assert not markers.commit_requested()
        assert not settings.live_path(TARGET).exists()

    def test_rolls_back_the_files_that_did_copy(
        self, settings: GuardSettings, write_live: Callable[[str, str], Path]
    ) -> None:
        first = write_live("/etc/sysctl.d/10-a.conf", "vm.swappiness = 60\n")
        _stage(
            settings,
            {
                "/etc/sysctl.d/10-a.conf": b"vm.swappiness = 10\n",
                "/etc/sysctl.d/20-b.conf": b"vm.dirty_ratio = 15\n",
                "/etc/sysctl.d/30-c.conf": b"vm.dirty_ratio = 20\n",
            },
        )
        real_copy = Committer._copy

        def flaky(self: Committer, staged: Path, live: Path) -> None:
            if live.name != "10-a.conf":
                raise OSError("no space left on device")
            real_copy(self, staged, live)

        with patch.object(Committer, "_copy", autospec=True, side_effect=flaky):
            with pytest.raises(CommitError) as exc_info:
                Committer(settings).commit()

        assert exc_info.value.applied == 1
        assert exc_info.value.failed == 2
        assert first.read_bytes() == b"vm.swappiness = 60\n"
        assert not BootMarkers(settings.state_dir).pending.exists()
