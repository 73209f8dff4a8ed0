"""Boot confirmation (dead-man's switch) and the early-boot guard.

``Verifier.confirm`` is fired by a one-shot timer once the system has been
up at its normal target for the dwell time; it turns ``pending`` into
``verified``. If the machine reboots or crashes first, the timer never
fires and ``pending`` survives into the next boot.

``BootGuard.run`` executes early on every boot. Finding ``pending`` without
``verified`` means the previous boot never stabilised: it rolls back the
latest run exactly once and clears ``pending`` whatever the outcome, so a
failing rollback can never loop across boots.
"""

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import structlog

from confguard.boot.rollback import RollbackEngine, RollbackResult
from confguard.boot.state import BootMarkers, BootState
from confguard.core.errors import ConfGuardError

HealthCheck = Callable[[], bool]


def read_uptime(path: Path) -> float:
    """Seconds since boot, from a ``/proc/uptime``-formatted file."""
    return float(path.read_text(encoding="utf-8").split()[0])


@dataclass
class VerifyReport:
    status: Literal["verified", "already_verified", "not_pending", "dwell_not_elapsed", "unhealthy"]
    uptime: float | None = None
    dwell_seconds: int = 0
    verified_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "uptime": self.uptime,
            "dwell_seconds": self.dwell_seconds,
            "verified_at": self.verified_at,
        }


class Verifier:
    """Confirms a pending boot after the dwell time.

    The dwell time cannot tell a slow boot from a failing one: a boot that
    is healthy but rebooted before ``dwell_seconds`` elapse is rolled back.
    Keep it longer than the slowest expected boot-to-stable time.

    Args:
        markers: Boot sentinels
        uptime_path: ``/proc/uptime``-formatted uptime source
        dwell_seconds: Required stable uptime
        health_check: Optional extra readiness probe
    """

    def __init__(
        self,
        markers: BootMarkers,
        uptime_path: Path,
        dwell_seconds: int,
        health_check: HealthCheck | None = None,
        logger: Any = None,
    ) -> None:
        self.markers = markers
        self.uptime_path = uptime_path
        self.dwell_seconds = dwell_seconds
        self.health_check = health_check
        self._logger = logger or structlog.get_logger()

    def confirm(self, *, force: bool = False) -> VerifyReport:
        """Mark the current boot verified if it has been stable long enough.

        Args:
            force: Skip the uptime check (operator confirmation)
        """
        state = self.markers.state()
        if state is BootState.VERIFIED:
            # A crash between setting verified and clearing pending
            self.markers.clear(self.markers.pending)
            return VerifyReport(
                status="already_verified",
                dwell_seconds=self.dwell_seconds,
                verified_at=self.markers.read(self.markers.verified),
            )
        if state is BootState.NO_PENDING:
            return VerifyReport(status="not_pending", dwell_seconds=self.dwell_seconds)

        uptime = None if force else read_uptime(self.uptime_path)
        if uptime is not None and uptime < self.dwell_seconds:
            self._logger.info("verify.dwell_not_elapsed", uptime=uptime, dwell=self.dwell_seconds)
            return VerifyReport(
                status="dwell_not_elapsed", uptime=uptime, dwell_seconds=self.dwell_seconds
            )
        if self.health_check is not None and not self.health_check():
            self._logger.warning("verify.unhealthy")
            return VerifyReport(status="unhealthy", uptime=uptime, dwell_seconds=self.dwell_seconds)

        verified_at = self.markers.set(self.markers.verified)
        self.markers.clear(self.markers.pending)
        self._logger.info("verify.confirmed", uptime=uptime, verified_at=verified_at)
        return VerifyReport(
            status="verified",
            uptime=uptime,
            dwell_seconds=self.dwell_seconds,
            verified_at=verified_at,
        )


@dataclass
class GuardReport:
    action: Literal["noop", "rolled_back", "rollback_failed"]
    reason: str
    result: RollbackResult | None = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "reason": self.reason,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }


class BootGuard:
    """Rolls back the latest run when the previous boot was never verified."""

    def __init__(self, markers: BootMarkers, engine: RollbackEngine, logger: Any = None) -> None:
        self.markers = markers
        self.engine = engine
        self._logger = logger or structlog.get_logger()

    def run(self) -> GuardReport:
        pending = self.markers.pending.exists()
        verified = self.markers.verified.exists()

        if not pending:
            return GuardReport(action="noop", reason="no pending boot")
        if verified:
            self.markers.clear(self.markers.pending)
            return GuardReport(action="noop", reason="previous boot verified")

        since = self.markers.read(self.markers.pending)
        self._logger.warning("guard.unverified_boot", pending_since=since)
        try:
            result = self.engine.rollback("last")
        except ConfGuardError as e:
            self._logger.error("guard.rollback_failed", error=str(e))
            return GuardReport(action="rollback_failed", reason=str(e), error=e.to_dict())
        finally:
            self.markers.clear(self.markers.pending)

        self._logger.warning(
            "guard.rolled_back",
            run_id=result.run_id,
            restored=result.restored,
            failed=result.failed,
        )
        return GuardReport(
            action="rolled_back",
            reason=f"boot pending since {since} was never verified",
            result=result,
        )
