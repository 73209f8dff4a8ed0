"""confguard: transactional configuration deployment with boot-time rollback."""

from confguard.chains.deploy_chain import DeploymentChain, DeploymentStatus, DeployOutcome
from confguard.core.errors import (
    BackupError,
    BootPending,
    CommitError,
    ConfGuardError,
    ManifestNotFound,
    RunNotFound,
    SessionBusy,
    TransactionError,
    ValidationError,
)
from confguard.core.settings import GuardSettings
from confguard.core.validator import ConfigDomain

__version__ = "0.1.0"

__all__ = [
    "BackupError",
    "BootPending",
    "CommitError",
    "ConfGuardError",
    "ConfigDomain",
    "DeployOutcome",
    "DeploymentChain",
    "DeploymentStatus",
    "GuardSettings",
    "ManifestNotFound",
    "RunNotFound",
    "SessionBusy",
    "TransactionError",
    "ValidationError",
    "__version__",
]
