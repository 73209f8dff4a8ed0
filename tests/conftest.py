"""Pytest configuration and fixtures for confguard tests.

Every fixture points the engine at directories below ``tmp_path``: a fake
live root, a fake ``/proc/sys`` and a fake uptime file, so nothing here
ever touches the real system.
"""

import os
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
import structlog

from confguard.core.session import DeploymentSession
from confguard.core.settings import ENV_PREFIX, GuardSettings

#: Kernel parameters that exist in the fake /proc/sys
PROC_SYS_KEYS = (
    "vm/swappiness",
    "vm/dirty_ratio",
    "net/ipv4/ip_forward",
    "kernel/sched_autogroup_enabled",
)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop CONFGUARD_* variables and reset structlog after each test."""
    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            monkeypatch.delenv(name, raising=False)
    yield
    structlog.reset_defaults()


@pytest.fixture
def live_root(tmp_path: Path) -> Path:
    root = tmp_path / "root"
    (root / "etc").mkdir(parents=True)
    return root


@pytest.fixture
def proc_sys(tmp_path: Path) -> Path:
    base = tmp_path / "proc" / "sys"
    for key in PROC_SYS_KEYS:
        path = base / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("0\n")
    return base


@pytest.fixture
def uptime_file(tmp_path: Path) -> Path:
    path = tmp_path / "uptime"
    path.write_text("12.50 40.00\n")
    return path


@pytest.fixture
def settings(
    tmp_path: Path, live_root: Path, proc_sys: Path, uptime_file: Path
) -> GuardSettings:
    """Settings rooted entirely below ``tmp_path`` with a 60s dwell."""
    return GuardSettings(
        live_root=live_root,
        backup_root=tmp_path / "backups",
        state_dir=tmp_path / "state",
        dwell_seconds=60,
        proc_sys_root=proc_sys,
        uptime_path=uptime_file,
        unit_dir=tmp_path / "units",
    )


@pytest.fixture
def write_live(live_root: Path) -> Callable[[str, str | bytes], Path]:
    """Create a file at a logical path below the live root."""

    def _write(target: str, content: str | bytes) -> Path:
        path = live_root / target.lstrip("/")
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            content = content.encode("utf-8")
        path.write_bytes(content)
        return path

    return _write


@pytest.fixture
def session(settings: GuardSettings) -> Iterator[DeploymentSession]:
    """An open deployment session with no pre-seeded backups."""
    active = DeploymentSession.begin(settings, touch_paths=())
    try:
        yield active
    finally:
        active.end()


def snapshot(root: Path) -> dict[str, bytes]:
    """Map every regular file below ``root`` to its bytes."""
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.fixture
def tree_snapshot() -> Callable[[Path], dict[str, bytes]]:
    return snapshot
