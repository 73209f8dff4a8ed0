"""Custom exceptions for confguard.

This module defines typed exceptions used throughout the application for
error handling and CLI reporting. Every error carries the structured fields
needed to render it as JSON via ``to_dict()``.
"""

from pathlib import Path
from typing import Any


class ConfGuardError(Exception):
    """Base exception for all confguard errors.

    All custom exceptions should inherit from this base class to allow
    for broad exception handling when needed.
    """

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for JSON output."""
        return {"error": "confguard_error", "reason": str(self)}


class ValidationError(ConfGuardError):
    """Raised when content is rejected by a domain validator.

    Rejected content is never committed; the target is left untouched.

    Attributes:
        domain: Configuration domain whose validator rejected the content
        path: Target path the content was destined for
        reason: Human-readable rejection reason
    """

    def __init__(self, domain: str, path: str | Path, reason: str) -> None:
        self.domain = domain
        self.path = str(path)
        self.reason = reason
        super().__init__(f"{domain} validation failed for {self.path}: {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "validation_failed",
            "domain": self.domain,
            "path": self.path,
            "reason": self.reason,
        }

    def __repr__(self) -> str:
        return (
            f"ValidationError(domain={self.domain!r}, path={self.path!r}, "
            f"reason={self.reason!r})"
        )


class BackupError(ConfGuardError):
    """Raised when an original file cannot be preserved.

    Per-file copy failures are reported as outcomes instead; this exception
    is raised when the run directory itself is unusable (``fatal=True``) or
    when a caller needs a backup to exist before mutating a path.

    Attributes:
        path: File or run directory that failed
        reason: Human-readable failure reason
        fatal: True if no session can proceed
    """

    def __init__(self, path: str | Path, reason: str, fatal: bool = False) -> None:
        self.path = str(path)
        self.reason = reason
        self.fatal = fatal
        message = f"Backup failed for {self.path}: {reason}"
        if fatal:
            message += " (fatal)"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "backup_failed",
            "path": self.path,
            "reason": self.reason,
            "fatal": self.fatal,
        }


class TransactionError(ConfGuardError):
    """Raised when an atomic replace could not complete.

    The original file is always preserved when this is raised.
    """

    def __init__(self, path: str | Path, reason: str) -> None:
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Transaction on {self.path} aborted: {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {"error": "transaction_failed", "path": self.path, "reason": self.reason}


class RunNotFound(ConfGuardError):
    """Raised when a rollback target run does not exist."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' not found")

    def to_dict(self) -> dict[str, Any]:
        return {"error": "run_not_found", "run_id": self.run_id}


class ManifestNotFound(ConfGuardError):
    """Raised when a run exists but has no readable manifest."""

    def __init__(self, run_id: str, path: str | Path) -> None:
        self.run_id = run_id
        self.path = str(path)
        super().__init__(f"Manifest for run '{run_id}' not found at {self.path}")

    def to_dict(self) -> dict[str, Any]:
        return {"error": "manifest_not_found", "run_id": self.run_id, "path": self.path}


class RunClosed(ConfGuardError):
    """Raised when a closed run is asked to record another backup."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' is closed and read-only")

    def to_dict(self) -> dict[str, Any]:
        return {"error": "run_closed", "run_id": self.run_id}


class SessionBusy(ConfGuardError):
    """Raised when another deployment session holds the host lock.

    Attributes:
        holder: Run id (or lock description) of the session holding the lock
    """

    def __init__(self, holder: str | None = None) -> None:
        self.holder = holder
        message = "Another deployment session is active"
        if holder:
            message += f" (run {holder})"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": "session_busy", "holder": self.holder}


class CommitError(ConfGuardError):
    """Raised when the boot-time commit could not apply the staged tree.

    Attributes:
        applied: Number of staged files copied onto the live filesystem
        failed: Number of staged files that could not be copied
        reason: Human-readable failure reason
    """

    def __init__(self, applied: int, failed: int, reason: str) -> None:
        self.applied = applied
        self.failed = failed
        self.reason = reason
        super().__init__(
            f"Commit aborted ({applied} applied, {failed} failed): {reason}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "commit_failed",
            "applied": self.applied,
            "failed": self.failed,
            "reason": self.reason,
        }


class BootPending(ConfGuardError):
    """Raised when a new session is requested before the last commit is confirmed.

    Until the pending boot is verified (or rolled back), the boot guard
    restores the latest run; a new run would take that place.

    Attributes:
        pending_since: Timestamp recorded in the pending marker, if readable
    """

    def __init__(self, pending_since: str | None = None) -> None:
        self.pending_since = pending_since
        message = "A committed boot is still awaiting verification"
        if pending_since:
            message += f" (pending since {pending_since})"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": "boot_pending", "pending_since": self.pending_since}
