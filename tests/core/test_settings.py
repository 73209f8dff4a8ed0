"""Tests for GuardSettings resolution."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from confguard.core.constants import DEFAULT_DWELL_SECONDS, DEFAULT_STATE_DIR
from confguard.core.settings import GuardSettings


class TestDefaults:
    def test_staging_root_follows_state_dir(self, tmp_path: Path) -> None:
        settings = GuardSettings(state_dir=tmp_path / "state")

        assert settings.staging == tmp_path / "state" / "staging"

    def test_explicit_staging_root_wins(self, tmp_path: Path) -> None:
        settings = GuardSettings(state_dir=tmp_path / "state", staging_root=tmp_path / "stage")

        assert settings.staging == tmp_path / "stage"

    def test_builtin_defaults(self) -> None:
        settings = GuardSettings()

        assert settings.live_root == Path("/")
        assert settings.state_dir == Path(DEFAULT_STATE_DIR)
        assert settings.dwell_seconds == DEFAULT_DWELL_SECONDS
        assert settings.grub_mkconfig_cmd == ["grub2-mkconfig", "-o", "/boot/grub2/grub.cfg"]

    def test_negative_dwell_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GuardSettings(dwell_seconds=-1)


class TestPathMapping:
    def test_live_and_staging_paths(self, tmp_path: Path) -> None:
        settings = GuardSettings(live_root=tmp_path / "root", state_dir=tmp_path / "state")

        assert settings.live_path("/etc/sysctl.conf") == tmp_path / "root" / "etc" / "sysctl.conf"
        assert (
            settings.staging_path("/etc/sysctl.d/99-x.conf")
            == tmp_path / "state" / "staging" / "etc" / "sysctl.d" / "99-x.conf"
        )

    def test_relative_targets_rejected(self) -> None:
        with pytest.raises(ValueError, match="absolute"):
            GuardSettings().live_path("etc/sysctl.conf")

    @pytest.mark.parametrize(
        "target", ["/etc/../../outside.conf", "/../escape", "/etc/sysctl.d/../x"]
    )
    def test_parent_components_rejected(self, tmp_path: Path, target: str) -> None:
        settings = GuardSettings(live_root=tmp_path / "root", state_dir=tmp_path / "state")

        with pytest.raises(ValueError, match=r"\.\."):
            settings.staging_path(target)
        with pytest.raises(ValueError, match=r"\.\."):
            settings.live_path(target)


class TestFromEnv:
    """Explicit argument > environment > default."""

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("CONFGUARD_STATE_DIR", str(tmp_path / "env-state"))
        monkeypatch.setenv("CONFGUARD_DWELL_SECONDS", "120")

        settings = GuardSettings.from_env()

        assert settings.state_dir == tmp_path / "env-state"
        assert settings.dwell_seconds == 120

    def test_overrides_beat_environment(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv("CONFGUARD_STATE_DIR", str(tmp_path / "env-state"))

        settings = GuardSettings.from_env(state_dir=tmp_path / "cli-state")

        assert settings.state_dir == tmp_path / "cli-state"

    def test_none_overrides_fall_through(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv("CONFGUARD_BACKUP_ROOT", str(tmp_path / "env-backups"))

        settings = GuardSettings.from_env(backup_root=None)

        assert settings.backup_root == tmp_path / "env-backups"

    def test_list_fields_from_strings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CONFGUARD_BOOT_PARAM_STORES", "/etc/kernel/cmdline, /boot/grubenv")
        monkeypatch.setenv("CONFGUARD_GRUB_MKCONFIG_CMD", "grub-mkconfig -o /boot/grub/grub.cfg")

        settings = GuardSettings.from_env()

        assert settings.boot_param_stores == ["/etc/kernel/cmdline", "/boot/grubenv"]
        assert settings.grub_mkconfig_cmd == ["grub-mkconfig", "-o", "/boot/grub/grub.cfg"]
