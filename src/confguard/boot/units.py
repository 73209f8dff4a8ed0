"""systemd units that schedule the boot cycle.

- ``confguard-guard.service``: very early, only when ``boot-pending`` exists
- ``confguard-commit.service``: after the guard, only when a commit is requested
- ``confguard-verify.timer``: started with ``multi-user.target`` and fires
  ``confguard-verify.service`` once, ``dwell_seconds`` after that target is
  reached; ``OnActiveSec`` counts from timer activation, not from kernel
  boot, and the default ``Before=timers.target`` ordering is dropped since it
  would cycle with ``After=multi-user.target``
"""

from pathlib import Path

from confguard.core.constants import COMMIT_REQUEST_MARKER, PENDING_MARKER
from confguard.core.settings import GuardSettings
from confguard.fs.paths import atomic_write_bytes

GUARD_UNIT = "confguard-guard.service"
COMMIT_UNIT = "confguard-commit.service"
VERIFY_UNIT = "confguard-verify.service"
VERIFY_TIMER = "confguard-verify.timer"


def _environment(settings: GuardSettings) -> str:
    pairs = [
        f"CONFGUARD_STATE_DIR={settings.state_dir}",
        f"CONFGUARD_BACKUP_ROOT={settings.backup_root}",
        f"CONFGUARD_STAGING_ROOT={settings.staging}",
        f"CONFGUARD_DWELL_SECONDS={settings.dwell_seconds}",
    ]
    return " ".join(f'"{pair}"' for pair in pairs)


def render_units(settings: GuardSettings, executable: str) -> dict[str, str]:
    """Render unit file contents keyed by unit name."""
    env = _environment(settings)
    pending = settings.state_dir / PENDING_MARKER
    commit_request = settings.state_dir / COMMIT_REQUEST_MARKER

    return {
        GUARD_UNIT: f"""[Unit]
Description=confguard boot guard (roll back unverified configuration)
DefaultDependencies=no
After=local-fs.target
Before=sysinit.target {COMMIT_UNIT}
ConditionPathExists={pending}

[Service]
Type=oneshot
Environment={env}
ExecStart={executable} guard

[Install]
WantedBy=sysinit.target
""",
        COMMIT_UNIT: f"""[Unit]
Description=confguard commit of staged configuration
DefaultDependencies=no
After=local-fs.target {GUARD_UNIT}
Before=sysinit.target systemd-sysctl.service systemd-modules-load.service
ConditionPathExists={commit_request}

[Service]
Type=oneshot
Environment={env}
ExecStart={executable} commit

[Install]
WantedBy=sysinit.target
""",
        VERIFY_UNIT: f"""[Unit]
Description=confguard boot verification
After=multi-user.target
ConditionPathExists={pending}

[Service]
Type=oneshot
Environment={env}
ExecStart={executable} verify
""",
        VERIFY_TIMER: f"""[Unit]
Description=confguard boot verification {settings.dwell_seconds}s after multi-user.target
DefaultDependencies=no
After=multi-user.target
Conflicts=shutdown.target
Before=shutdown.target

[Timer]
OnActiveSec={settings.dwell_seconds}s
AccuracySec=1s
Unit={VERIFY_UNIT}

[Install]
WantedBy=multi-user.target
""",
    }


def install_units(settings: GuardSettings, executable: str) -> list[Path]:
    """Write the rendered units into ``settings.unit_dir``."""
    written = []
    for name, text in render_units(settings, executable).items():
        path = settings.unit_dir / name
        atomic_write_bytes(path, text.encode("utf-8"))
        written.append(path)
    return written
