"""Atomic in-place replacement of live-critical files.

``AtomicFileTransaction.apply`` changes a file immediately instead of at
the next boot: copy to a sibling temp file, transform, validate, back up
the original, rename over the target. Any failure leaves the target
byte-identical to its state before the call.

Each transaction runs inside a ``CriticalSection``: a JSON marker in the
state directory records which single file is mid-mutation and how far the
transaction got. An interrupt inside the section unwinds through the guard,
which removes the temp file; a marker left behind by a killed process is
cleaned up by ``recover_interrupted`` when the next session begins.
"""

from __future__ import annotations

import json
import os
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol

from confguard.core.constants import CRITICAL_MARKER
from confguard.core.errors import ConfGuardError, TransactionError
from confguard.core.validator import ConfigDomain, domain_for_path
from confguard.fs.paths import (
    atomic_write_bytes,
    copy_preserving,
    fsync_dir,
    get_temp_path,
)
from confguard.utils.debug import debug

if TYPE_CHECKING:  # pragma: no cover - typing only
    from confguard.core.session import DeploymentSession

Phase = Literal["begin", "copied", "transformed", "backed_up", "replaced"]


class CriticalOwner(Protocol):
    """Anything that tracks the critical section it currently has open."""

    critical: CriticalSection | None


class InterruptedOperation(BaseException):
    """Raised from a signal handler while a critical section is open.

    Derives from ``BaseException`` so it unwinds through ``except Exception``
    blocks to the guard and then to the top-level handler, which re-delivers
    the signal with its default disposition.
    """

    def __init__(self, signum: int) -> None:
        self.signum = signum
        super().__init__(f"interrupted by signal {signum}")


class CriticalSection:
    """Scoped marker for one single-file mutation.

    Args:
        state_dir: Directory the marker file lives in
        op: Operation name (``atomic_replace``, ``commit_copy``)
        target: Live path being mutated
        owner: Object whose ``critical`` attribute points at the open section
    """

    def __init__(
        self,
        state_dir: Path,
        op: str,
        target: Path,
        owner: CriticalOwner | None = None,
    ) -> None:
        self.marker_path = state_dir / CRITICAL_MARKER
        self.op = op
        self.target = target
        self.owner = owner
        self.phase: Phase = "begin"
        self.temp_path: Path | None = None
        self.run_id: str | None = None

    def set_phase(self, phase: Phase, **extra: Any) -> None:
        """Record progress durably before the next step runs."""
        self.phase = phase
        if "temp_path" in extra:
            self.temp_path = extra["temp_path"]
        if "run_id" in extra:
            self.run_id = extra["run_id"]
        self._write()

    def _write(self) -> None:
        record = {
            "op": self.op,
            "target": str(self.target),
            "temp_path": str(self.temp_path) if self.temp_path else None,
            "phase": self.phase,
            "run_id": self.run_id,
            "pid": os.getpid(),
            "updated_at": datetime.now(UTC).isoformat(),
        }
        self.marker_path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_bytes(self.marker_path, json.dumps(record, sort_keys=True).encode("utf-8"))

    def __enter__(self) -> CriticalSection:
        self._write()
        if self.owner is not None:
            self.owner.critical = self
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        try:
            if exc_type is not None:
                _recover(self.target, self.temp_path, self.phase)
            self.marker_path.unlink(missing_ok=True)
        finally:
            if self.owner is not None:
                self.owner.critical = None


def _recover(target: Path, temp_path: Path | None, phase: str) -> str:
    """Return the single file to a consistent state after an interruption.

    Before the rename the target still holds its original bytes and only
    the temp file needs removing; after the rename the target holds new,
    already validated bytes whose original is in the run manifest.
    """
    if temp_path is not None and temp_path.exists():
        temp_path.unlink()
        debug(f"Recovered {target}: removed temp {temp_path} (phase {phase})")
        return "temp_removed"
    debug(f"Recovered {target}: nothing to undo (phase {phase})")
    return "consistent"


def recover_interrupted(state_dir: Path) -> dict[str, Any] | None:
    """Clean up after a critical section whose process was killed.

    Returns:
        The marker record plus the recovery action, or None if no marker
    """
    marker = state_dir / CRITICAL_MARKER
    try:
        record: dict[str, Any] = json.loads(marker.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        debug(f"Unreadable critical-operation marker {marker}: {e}")
        marker.unlink(missing_ok=True)
        return None

    temp = Path(record["temp_path"]) if record.get("temp_path") else None
    record["recovery"] = _recover(Path(record["target"]), temp, str(record.get("phase")))
    marker.unlink(missing_ok=True)
    return record


@contextmanager
def signal_guard(owner: CriticalOwner) -> Iterator[None]:
    """Route SIGINT/SIGTERM/SIGHUP through the open critical section.

    Inside a critical section the handler raises ``InterruptedOperation`` so
    the guard can recover its file; outside one the signal gets its default
    disposition immediately.
    """

    def _handler(signum: int, _frame: object | None) -> None:
        if owner.critical is not None:
            raise InterruptedOperation(signum)
        signal.signal(signum, signal.SIG_DFL)
        signal.raise_signal(signum)

    previous: dict[int, Any] = {}
    for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
        try:
            previous[sig] = signal.signal(sig, _handler)
        except ValueError:  # pragma: no cover - not in main thread
            continue
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def redeliver(exc: InterruptedOperation) -> None:
    """Terminate the way the original signal would have."""
    signal.signal(exc.signum, signal.SIG_DFL)
    signal.raise_signal(exc.signum)


@dataclass
class TransactionOutcome:
    """Result of an atomic in-place change."""

    target: str
    live_path: Path
    status: Literal["applied", "unchanged"]
    backup_path: Path | None = None


class AtomicFileTransaction:
    """Validate, back up and atomically replace one live file.

    Args:
        session: Active deployment session
    """

    def __init__(self, session: DeploymentSession) -> None:
        self.session = session

    def apply(
        self,
        target: str,
        transform: Callable[[bytes], bytes],
        domain: ConfigDomain | None = None,
    ) -> TransactionOutcome:
        """Apply ``transform`` to ``target`` in place.

        Args:
            target: Logical absolute path of an existing file
            transform: Function mapping current bytes to new bytes
            domain: Validator domain (inferred from the path when omitted)

        Returns:
            TransactionOutcome (``unchanged`` when the transform is a no-op)

        Raises:
            ValidationError: New content rejected; target untouched
            TransactionError: Replace could not complete; target untouched
            BackupError: (fatal) run directory unusable; target untouched
        """
        session = self.session
        domain = ConfigDomain(domain) if domain is not None else domain_for_path(target)
        live = session.settings.live_path(target)
        if not live.is_file():
            raise TransactionError(target, "target does not exist or is not a regular file")

        with CriticalSection(
            session.settings.state_dir, "atomic_replace", live, owner=session
        ) as guard:
            temp = get_temp_path(live)
            guard.set_phase("begin", temp_path=temp, run_id=session.run_id)
            try:
                copy_preserving(live, temp)
                guard.set_phase("copied")
                current = temp.read_bytes()
                try:
                    updated = transform(current)
                except Exception as e:
                    raise TransactionError(target, f"transform failed: {e}") from e
                if not isinstance(updated, bytes):
                    raise TransactionError(target, "transform must return bytes")
                if updated == current:
                    return TransactionOutcome(target=target, live_path=live, status="unchanged")

                with open(temp, "r+b") as fh:
                    fh.write(updated)
                    fh.truncate()
                    fh.flush()
                    os.fsync(fh.fileno())
                guard.set_phase("transformed")

                session.validators.validate(domain, live, updated).raise_for_error(target)

                backup = session.backups.backup(session.run, live)
                if not backup.protected:
                    raise TransactionError(
                        target, f"original could not be backed up: {backup.reason}"
                    )
                guard.set_phase("backed_up")

                os.replace(temp, live)
            except ConfGuardError:
                raise
            except OSError as e:
                raise TransactionError(target, str(e)) from e
            finally:
                if temp.exists():
                    temp.unlink()

            # New bytes are live past this point; completion bookkeeping cannot fail the apply.
            try:
                fsync_dir(live.parent)
                guard.set_phase("replaced")
            except OSError as e:
                debug(f"Replaced {live} but could not record completion: {e}")

        session.critical_modified.add(target)
        debug(f"Atomically replaced {live}")
        return TransactionOutcome(
            target=target, live_path=live, status="applied", backup_path=backup.backup_path
        )
