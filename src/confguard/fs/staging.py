"""Off-path staging of configuration for the next boot.

``ConfigWriter`` writes generated content into a mirror tree under the
staging root (``<staging_root>/etc/sysctl.d/99-x.conf``) and never touches
the live path. The committer copies the tree onto the live filesystem at
the next boot; until then a crash leaves every staged path untouched.

The staged index (``staged.json`` in the state directory) records which
run owns the staged tree so the committer and rollback agree on the
manifest that protects it.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from confguard.boot.state import BootMarkers
from confguard.core.constants import STAGED_INDEX
from confguard.core.errors import BackupError
from confguard.core.validator import ConfigDomain, domain_for_path
from confguard.fs.paths import atomic_write_bytes
from confguard.utils.debug import debug

if TYPE_CHECKING:  # pragma: no cover - typing only
    from confguard.core.session import DeploymentSession


@dataclass
class StagedFile:
    """Most recent content staged for one target."""

    target_path: str
    content_bytes: bytes
    domain: ConfigDomain

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.content_bytes).hexdigest()


def read_staged_index(state_dir: Path) -> dict[str, Any]:
    """Load the staged index, or an empty one."""
    try:
        data: dict[str, Any] = json.loads((state_dir / STAGED_INDEX).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {"run_id": None, "targets": {}}
    data.setdefault("targets", {})
    return data


def write_staged_index(state_dir: Path, index: dict[str, Any]) -> None:
    atomic_write_bytes(
        state_dir / STAGED_INDEX,
        json.dumps(index, indent=2, sort_keys=True).encode("utf-8"),
    )


class ConfigWriter:
    """Stages content for the next boot within a deployment session.

    Args:
        session: Active deployment session
    """

    def __init__(self, session: DeploymentSession) -> None:
        self.session = session
        self.markers = BootMarkers(session.settings.state_dir)
        self._adopted = False

    def stage_write(
        self, target: str, content: bytes, domain: ConfigDomain | None = None
    ) -> StagedFile:
        """Stage ``content`` as the next-boot content of ``target``.

        The content is validated first; a rejection stages nothing and adds
        no manifest entry. The live original (or its absence) is recorded in
        the run before the staged file is written.

        Raises:
            ValidationError: Content rejected
            BackupError: The original could not be preserved
        """
        session = self.session
        settings = session.settings
        domain = ConfigDomain(domain) if domain is not None else domain_for_path(target)
        live = settings.live_path(target)

        session.validators.validate(domain, live, content).raise_for_error(target)
        self._adopt_previous_staging()

        outcome = session.backups.record_absent(session.run, live)
        if not outcome.protected:
            raise BackupError(live, outcome.reason or "backup failed")

        atomic_write_bytes(settings.staging_path(target), content)
        staged = StagedFile(target_path=target, content_bytes=content, domain=domain)
        session.staged[target] = staged
        session.reboot_required = True
        self._record(staged)
        debug(f"Staged {target} ({len(content)} bytes, {domain.value})")
        return staged

    def stage_append(
        self, target: str, content: bytes, domain: ConfigDomain | None = None
    ) -> StagedFile:
        """Append ``content`` to the next-boot content of ``target``.

        The first append to a target that exists live starts from the live
        bytes, so appends compose onto the real current file rather than an
        empty one.
        """
        staging_file = self.session.settings.staging_path(target)
        live = self.session.settings.live_path(target)

        if target in self.session.staged:
            base = self.session.staged[target].content_bytes
        elif staging_file.is_file():
            base = staging_file.read_bytes()
        elif live.is_file():
            base = live.read_bytes()
        else:
            base = b""

        if base and not base.endswith(b"\n"):
            base += b"\n"
        return self.stage_write(target, base + content, domain)

    def _record(self, staged: StagedFile) -> None:
        state_dir = self.session.settings.state_dir
        index = read_staged_index(state_dir)
        index["run_id"] = self.session.run_id
        index["targets"][staged.target_path] = {
            "domain": staged.domain.value,
            "sha256": staged.digest,
            "staged_at": datetime.now(UTC).isoformat(),
        }
        write_staged_index(state_dir, index)
        self.markers.set(self.markers.commit_request)

    def _adopt_previous_staging(self) -> None:
        """Take over a staged tree left by an earlier, never-committed session.

        Its targets are still in their original live state, so recording
        them in the current run keeps ``rollback("last")`` complete.
        """
        if self._adopted:
            return
        self._adopted = True
        session = self.session
        index = read_staged_index(session.settings.state_dir)
        previous = index.get("run_id")
        if not previous or previous == session.run_id:
            return
        for target in index["targets"]:
            outcome = session.backups.record_absent(
                session.run, session.settings.live_path(target)
            )
            if not outcome.protected:
                raise BackupError(target, outcome.reason or "backup failed")
        index["run_id"] = session.run_id
        write_staged_index(session.settings.state_dir, index)
        debug(f"Adopted {len(index['targets'])} staged targets from run {previous}")
