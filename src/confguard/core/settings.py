"""Settings for confguard.

All locations the engine touches are collected in ``GuardSettings`` so that
every component can be pointed at a temporary root in tests. Values resolve
in the order: explicit argument, ``CONFGUARD_*`` environment variable,
built-in default.
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from confguard.core.constants import (
    DEFAULT_BACKUP_ROOT,
    DEFAULT_BOOT_PARAM_STORES,
    DEFAULT_DWELL_SECONDS,
    DEFAULT_GRUB_MKCONFIG_CMD,
    DEFAULT_STATE_DIR,
    DEFAULT_UNIT_DIR,
)

__all__ = ["GuardSettings", "ENV_PREFIX"]

ENV_PREFIX = "CONFGUARD_"


class GuardSettings(BaseModel):
    """Locations and tunables for one host.

    Attributes:
        live_root: Filesystem root that logical target paths live under
        backup_root: Directory holding one subdirectory per run
        state_dir: Directory holding sentinels, lock and staged index
        staging_root: Off-path mirror tree (defaults to ``state_dir/staging``)
        dwell_seconds: Seconds the verify timer waits after multi-user.target,
            and the minimum uptime before a boot is verified.
            Too short confirms boots that are about to fail; too long rolls
            back healthy but slow boots that get rebooted early.
        proc_sys_root: Kernel parameter namespace for sysctl dry-runs
        uptime_path: Uptime source consulted by the verifier
        boot_param_stores: Logical paths of external kernel command-line stores
        grub_mkconfig_cmd: Command regenerating the bootloader menu
        log_file: Optional structured log destination
        unit_dir: Directory systemd units are installed into
    """

    live_root: Path = Path("/")
    backup_root: Path = Path(DEFAULT_BACKUP_ROOT)
    state_dir: Path = Path(DEFAULT_STATE_DIR)
    staging_root: Path | None = None
    dwell_seconds: int = Field(default=DEFAULT_DWELL_SECONDS, ge=0)
    proc_sys_root: Path = Path("/proc/sys")
    uptime_path: Path = Path("/proc/uptime")
    boot_param_stores: list[str] = Field(
        default_factory=lambda: list(DEFAULT_BOOT_PARAM_STORES)
    )
    grub_mkconfig_cmd: list[str] = Field(
        default_factory=lambda: list(DEFAULT_GRUB_MKCONFIG_CMD)
    )
    log_file: Path | None = None
    unit_dir: Path = Path(DEFAULT_UNIT_DIR)

    @field_validator("boot_param_stores", "grub_mkconfig_cmd", mode="before")
    @classmethod
    def split_string_lists(cls, value: Any) -> Any:
        """Accept shell-style strings for list fields (environment input)."""
        if isinstance(value, str):
            if "," in value:
                return [part.strip() for part in value.split(",") if part.strip()]
            return shlex.split(value)
        return value

    @model_validator(mode="after")
    def default_staging_root(self) -> "GuardSettings":
        if self.staging_root is None:
            self.staging_root = self.state_dir / "staging"
        return self

    @property
    def staging(self) -> Path:
        """Staging root, always resolved."""
        assert self.staging_root is not None
        return self.staging_root

    def live_path(self, target: str | Path) -> Path:
        """Map a logical absolute target path onto the live filesystem.

        Raises:
            ValueError: If ``target`` is relative or contains ``..``
        """
        return self.live_root / _relative(target)

    def staging_path(self, target: str | Path) -> Path:
        """Map a logical absolute target path into the staging tree."""
        return self.staging / _relative(target)

    @classmethod
    def from_env(cls, **overrides: Any) -> "GuardSettings":
        """Build settings from ``CONFGUARD_*`` variables plus explicit overrides.

        Overrides whose value is ``None`` are ignored so CLI options that were
        not given fall through to the environment.
        """
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            env_value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if env_value:
                values[name] = env_value
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _relative(target: str | Path) -> Path:
    path = Path(target)
    if not path.is_absolute():
        raise ValueError(f"target path must be absolute: {target}")
    if ".." in path.parts:
        raise ValueError(f"target path must not contain '..': {target}")
    return path.relative_to(path.anchor)
