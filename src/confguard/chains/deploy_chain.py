"""Deploy chain for orchestrating staged and immediate configuration changes.

This module provides the DeploymentChain class, the single entry point for
the stage -> commit-at-boot -> verify cycle and its rollback paths. It
converts per-file failures into outcomes so one rejected file never aborts
the rest of a session, and reports through structured logging and Rich
console output.
"""

from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import structlog
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
)

from confguard.boot.committer import CommitReport, Committer
from confguard.boot.rollback import Regenerator, RollbackEngine, RollbackResult
from confguard.boot.state import BootMarkers, BootState
from confguard.boot.verifier import BootGuard, GuardReport, HealthCheck, Verifier, VerifyReport
from confguard.core.constants import DEFAULT_TOUCH_PATHS
from confguard.core.errors import BackupError, TransactionError, ValidationError
from confguard.core.plan import PlanItem
from confguard.core.session import DeploymentSession, SessionLock
from confguard.core.settings import GuardSettings
from confguard.core.transforms import kernel_params_transform, replace_content
from confguard.core.validator import ConfigDomain, domain_for_path
from confguard.fs.atomic import AtomicFileTransaction, InterruptedOperation, redeliver, signal_guard
from confguard.fs.backup import BackupManager, BackupOutcome, BackupStatus
from confguard.fs.staging import ConfigWriter, read_staged_index

Mode = Literal["stage", "append", "atomic"]
Phase = Literal["idle", "staged", "pending", "verified"]


@dataclass
class DeployOutcome:
    """Result of one producer item within a session."""

    target: str
    mode: Mode
    domain: str
    status: Literal["staged", "applied", "unchanged", "rejected", "failed"]
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "mode": self.mode,
            "domain": self.domain,
            "status": self.status,
            "reason": self.reason,
        }


@dataclass
class DeployReport:
    """Summary of a whole deployment session."""

    run_id: str
    outcomes: list[DeployOutcome] = field(default_factory=list)
    backups: list[BackupOutcome] = field(default_factory=list)
    reboot_required: bool = False

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def rejected_count(self) -> int:
        return self.count("rejected")

    @property
    def failed_count(self) -> int:
        return self.count("failed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "reboot_required": self.reboot_required,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "backups": {
                status.value: sum(1 for b in self.backups if b.status is status)
                for status in BackupStatus
            },
        }


@dataclass
class DeploymentStatus:
    """Where the host is in the stage -> pending -> verified cycle."""

    phase: Phase
    boot_state: BootState
    active_run: str | None
    latest_run: str | None
    staged_targets: list[str]
    pending_since: str | None = None
    verified_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "boot_state": self.boot_state.value,
            "active_run": self.active_run,
            "latest_run": self.latest_run,
            "staged_targets": list(self.staged_targets),
            "pending_since": self.pending_since,
            "verified_at": self.verified_at,
        }


class DeploymentChain:
    """Orchestrates deployment sessions, boot-time commit and recovery.

    Args:
        settings: Host settings (resolved from the environment when omitted)
        logger: Optional structlog logger instance
        ui: Optional Rich console for output
        regenerators: Derived-artifact rebuilders for rollback, keyed by
            logical source path (e.g. ``/etc/default/grub``)
        health_check: Optional readiness probe for boot verification
    """

    def __init__(
        self,
        settings: GuardSettings | None = None,
        logger: Any = None,
        ui: Console | None = None,
        regenerators: Mapping[str, Regenerator] | None = None,
        health_check: HealthCheck | None = None,
    ) -> None:
        self.settings = settings or GuardSettings.from_env()
        self._logger = logger or structlog.get_logger()
        self._ui = ui or Console(stderr=True)
        self.backups = BackupManager(self.settings.backup_root)
        self.markers = BootMarkers(self.settings.state_dir)
        self.health_check = health_check
        self.engine = RollbackEngine(
            self.backups,
            regenerators={
                self.settings.live_path(source): fn for source, fn in (regenerators or {}).items()
            },
            logger=self._logger,
        )

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def begin_deployment(
        self, touch_paths: Sequence[str] = DEFAULT_TOUCH_PATHS
    ) -> DeploymentSession:
        """Open a session: take the host lock, create a run, pre-seed backups.

        Raises:
            SessionBusy: Another session is active
            BootPending: The last committed boot is not yet verified
            BackupError: The run directory could not be created
        """
        session = DeploymentSession.begin(
            self.settings, touch_paths=touch_paths, backups=self.backups
        )
        self._logger.info(
            "deploy.begin",
            run_id=session.run_id,
            preseeded=sum(1 for o in session.preseeded if o.status is BackupStatus.BACKED),
            failed=sum(1 for o in session.preseeded if o.status is BackupStatus.FAILED),
        )
        return session

    def stage(
        self,
        session: DeploymentSession,
        target: str,
        content: bytes,
        domain: ConfigDomain | None = None,
        *,
        append: bool = False,
    ) -> DeployOutcome:
        """Stage ``content`` for ``target`` to go live at the next boot."""
        mode: Mode = "append" if append else "stage"
        resolved = ConfigDomain(domain) if domain is not None else domain_for_path(target)
        invalid = self._invalid_target(target)
        if invalid is not None:
            return self._outcome(session, target, mode, resolved, "rejected", invalid)
        writer = ConfigWriter(session)
        try:
            if append:
                writer.stage_append(target, content, resolved)
            else:
                writer.stage_write(target, content, resolved)
        except ValidationError as e:
            return self._outcome(session, target, mode, resolved, "rejected", e.reason)
        except BackupError as e:
            if e.fatal:
                raise
            return self._outcome(session, target, mode, resolved, "failed", e.reason)
        return self._outcome(session, target, mode, resolved, "staged")

    def apply_atomic(
        self,
        session: DeploymentSession,
        target: str,
        transform: Callable[[bytes], bytes],
        domain: ConfigDomain | None = None,
    ) -> DeployOutcome:
        """Change ``target`` in place immediately (validated, backed up, atomic)."""
        resolved = ConfigDomain(domain) if domain is not None else domain_for_path(target)
        invalid = self._invalid_target(target)
        if invalid is not None:
            return self._outcome(session, target, "atomic", resolved, "rejected", invalid)
        try:
            with signal_guard(session):
                outcome = AtomicFileTransaction(session).apply(target, transform, resolved)
        except ValidationError as e:
            return self._outcome(session, target, "atomic", resolved, "rejected", e.reason)
        except TransactionError as e:
            return self._outcome(session, target, "atomic", resolved, "failed", e.reason)
        except InterruptedOperation as e:
            self._logger.error("deploy.interrupted", target=target, signum=e.signum)
            session.end()
            redeliver(e)
            raise
        return self._outcome(session, target, "atomic", resolved, outcome.status)

    def end_deployment(self, session: DeploymentSession) -> None:
        """Close the run and release the host lock."""
        session.end()
        self._logger.info(
            "deploy.end",
            run_id=session.run_id,
            staged=len(session.staged),
            critical_modified=sorted(session.critical_modified),
            reboot_required=session.reboot_required,
        )

    def deploy(
        self,
        items: Sequence[PlanItem],
        touch_paths: Sequence[str] = DEFAULT_TOUCH_PATHS,
    ) -> DeployReport:
        """Run a whole session over producer items."""
        session = self.begin_deployment(touch_paths)
        report = DeployReport(run_id=session.run_id, backups=list(session.preseeded))
        try:
            with self._create_progress() as progress:
                task = progress.add_task(f"Deploy run {session.run_id}", total=len(items))
                for item in items:
                    outcome = self._deploy_item(session, item)
                    report.outcomes.append(outcome)
                    self._show_item_result(outcome)
                    progress.advance(task)
        finally:
            report.reboot_required = session.reboot_required
            self.end_deployment(session)

        self._logger.info(
            "deploy.summary",
            run_id=report.run_id,
            total_items=len(items),
            staged=report.count("staged"),
            applied=report.count("applied"),
            rejected=report.rejected_count,
            failed=report.failed_count,
        )
        return report

    def _deploy_item(self, session: DeploymentSession, item: PlanItem) -> DeployOutcome:
        if item.mode == "atomic":
            transform = (
                kernel_params_transform(item.kernel_params)
                if item.kernel_params
                else replace_content(item.content_bytes())
            )
            return self.apply_atomic(session, item.target, transform, item.domain)
        return self.stage(
            session, item.target, item.content_bytes(), item.domain, append=item.mode == "append"
        )

    def _invalid_target(self, target: str) -> str | None:
        try:
            self.settings.live_path(target)
        except ValueError as e:
            return str(e)
        return None

    def _outcome(
        self,
        session: DeploymentSession,
        target: str,
        mode: Mode,
        domain: ConfigDomain,
        status: Literal["staged", "applied", "unchanged", "rejected", "failed"],
        reason: str | None = None,
    ) -> DeployOutcome:
        log = self._logger.bind(run_id=session.run_id, target=target, mode=mode)
        if status in ("rejected", "failed"):
            log.warning(f"deploy.{status}", domain=domain.value, reason=reason)
        else:
            log.info(f"deploy.{status}", domain=domain.value)
        return DeployOutcome(
            target=target, mode=mode, domain=domain.value, status=status, reason=reason
        )

    # ------------------------------------------------------------------
    # Boot cycle
    # ------------------------------------------------------------------

    def commit_at_boot(self) -> CommitReport:
        """Apply the staged tree (early boot) and mark the boot pending."""
        committer = Committer(
            self.settings, backups=self.backups, rollback_engine=self.engine, logger=self._logger
        )
        with self._exclusive(), signal_guard(committer):
            try:
                return committer.commit()
            except InterruptedOperation as e:
                self._logger.error("commit.interrupted", signum=e.signum)
                redeliver(e)
                raise

    def verify(self, *, force: bool = False) -> VerifyReport:
        """Confirm the current boot if the dwell time has elapsed."""
        verifier = Verifier(
            self.markers,
            self.settings.uptime_path,
            self.settings.dwell_seconds,
            health_check=self.health_check,
            logger=self._logger,
        )
        return verifier.confirm(force=force)

    def boot_guard(self) -> GuardReport:
        """Roll back the latest run if the previous boot was never verified."""
        with self._exclusive():
            return BootGuard(self.markers, self.engine, logger=self._logger).run()

    def status(self) -> DeploymentStatus:
        boot_state = self.markers.state()
        staged_targets = sorted(read_staged_index(self.settings.state_dir)["targets"])
        phase: Phase
        if self.markers.commit_requested():
            phase = "staged"
        elif boot_state is BootState.PENDING:
            phase = "pending"
        elif boot_state is BootState.VERIFIED:
            phase = "verified"
        else:
            phase = "idle"
        return DeploymentStatus(
            phase=phase,
            boot_state=boot_state,
            active_run=SessionLock(self.settings.state_dir).holder(),
            latest_run=self.backups.latest_run_id(),
            staged_targets=staged_targets,
            pending_since=self.markers.read(self.markers.pending),
            verified_at=self.markers.read(self.markers.verified),
        )

    def list_runs(self) -> list[str]:
        return self.backups.list_runs()

    def rollback(self, run_id: str = "last", *, regenerate: bool = True) -> RollbackResult:
        """Restore the originals recorded by ``run_id``.

        Raises:
            SessionBusy: A deployment session is active
            RunNotFound: Unknown run; nothing is written
            ManifestNotFound: Run has no manifest; nothing is written
        """
        with self._exclusive():
            result = self.engine.rollback(run_id, regenerate=regenerate)
        for path in result.restored_paths:
            self._ui.print(f"↩️ [blue]RESTORED[/blue] {path}")
        for path, reason in result.failures.items():
            self._ui.print(f"❌ [red]FAILED[/red] {path} ({reason})")
        return result

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        lock = SessionLock(self.settings.state_dir)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()

    # ------------------------------------------------------------------
    # Rich output
    # ------------------------------------------------------------------

    def _create_progress(self) -> Progress:
        """Create Rich progress display."""
        return Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=self._ui,
            transient=True,
        )

    def _show_item_result(self, outcome: DeployOutcome) -> None:
        """Show Rich output for item result."""
        name = Path(outcome.target)
        if outcome.status == "staged":
            self._ui.print(f"📦 [green]STAGED[/green] {name} ({outcome.domain})")
        elif outcome.status == "applied":
            self._ui.print(f"✅ [green]APPLIED[/green] {name} ({outcome.domain})")
        elif outcome.status == "unchanged":
            self._ui.print(f"🔍 [blue]UNCHANGED[/blue] {name}")
        elif outcome.status == "rejected":
            self._ui.print(f"⚠️ [yellow]REJECTED[/yellow] {name} ({outcome.reason})")
        elif outcome.status == "failed":
            self._ui.print(f"❌ [red]FAILED[/red] {name} ({outcome.reason})")
